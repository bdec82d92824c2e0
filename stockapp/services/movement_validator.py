"""Pure validation of proposed stock movements.

Nothing in this module touches the database: callers hand in an item snapshot
and a request, and get back either a :class:`ValidatedMovement` or one of the
typed errors from :mod:`stockapp.errors`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from stockapp.errors import (
    InsufficientStock,
    InvalidDate,
    InvalidQuantity,
    ItemNotFound,
    ValidationError,
)
from stockapp.models import MovementType
from stockapp.utils.payload import (
    CENTS,
    optional_id,
    optional_text,
    parse_datetime,
    parse_money,
)

EDITABLE_FIELDS = (
    "item_id",
    "movement_type",
    "quantity",
    "unit_price",
    "reference_number",
    "supplier_id",
    "customer",
    "notes",
    "location_id",
    "received_by",
    "movement_date",
)


@dataclass(frozen=True)
class ItemSnapshot:
    id: int
    quantity: int
    name: str | None = None

    @classmethod
    def from_item(cls, item, *, quantity: int | None = None) -> "ItemSnapshot":
        return cls(
            id=item.id,
            quantity=int(item.quantity if quantity is None else quantity),
            name=item.name,
        )


@dataclass(frozen=True)
class MovementRequest:
    """A movement as proposed by the caller, before any checks."""

    item_id: int | None
    movement_type: Any
    quantity: Any
    movement_date: Any
    unit_price: Any = None
    reference_number: str | None = None
    supplier_id: int | None = None
    customer: str | None = None
    notes: str | None = None
    location_id: int | None = None
    received_by: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MovementRequest":
        return cls(
            item_id=optional_id(payload.get("item_id"), field="item_id"),
            movement_type=payload.get("movement_type"),
            quantity=payload.get("quantity"),
            movement_date=payload.get("movement_date"),
            unit_price=payload.get("unit_price"),
            reference_number=optional_text(payload.get("reference_number"), limit=120),
            supplier_id=optional_id(payload.get("supplier_id"), field="supplier_id"),
            customer=optional_text(payload.get("customer"), limit=255),
            notes=optional_text(payload.get("notes")),
            location_id=optional_id(payload.get("location_id"), field="location_id"),
            received_by=optional_text(payload.get("received_by"), limit=255),
        )

    @classmethod
    def from_movement(cls, movement) -> "MovementRequest":
        return cls(**{field: getattr(movement, field) for field in EDITABLE_FIELDS})

    def merged_with(self, payload: Mapping[str, Any]) -> "MovementRequest":
        """Overlay the fields present in ``payload`` on top of this request."""

        provided = {key: payload[key] for key in EDITABLE_FIELDS if key in payload}
        if not provided:
            raise ValidationError("No fields to update")
        parsed = MovementRequest.from_payload(provided)
        return replace(self, **{key: getattr(parsed, key) for key in provided})


@dataclass(frozen=True)
class ValidatedMovement:
    item_id: int
    movement_type: str
    quantity: int
    movement_date: datetime
    unit_price: Decimal | None
    total_value: Decimal | None
    reference_number: str | None = None
    supplier_id: int | None = None
    customer: str | None = None
    notes: str | None = None
    location_id: int | None = None
    received_by: str | None = None

    @property
    def delta(self) -> int:
        return MovementType.delta(self.movement_type, self.quantity)

    def as_fields(self) -> dict[str, Any]:
        return asdict(self)


def parse_movement_type(value: Any) -> str:
    movement_type = (optional_text(value) or "").upper()
    if movement_type not in MovementType.ALL_TYPES:
        raise ValidationError("Movement type must be IN or OUT.")
    return movement_type


def parse_quantity(value: Any) -> int:
    if value is None or isinstance(value, bool):
        raise InvalidQuantity()
    try:
        number = Decimal(str(value).strip())
    except ArithmeticError:
        raise InvalidQuantity() from None
    if not number.is_finite() or number != number.to_integral_value() or number <= 0:
        raise InvalidQuantity()
    return int(number)


def parse_movement_date(value: Any) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise InvalidDate()
    return parsed


def compute_total_value(quantity: int, unit_price: Decimal | None) -> Decimal | None:
    if unit_price is None:
        return None
    return (Decimal(quantity) * unit_price).quantize(CENTS, rounding=ROUND_HALF_UP)


def validate(item: ItemSnapshot | None, request: MovementRequest) -> ValidatedMovement:
    """Check ``request`` against ``item`` and return the normalized movement."""

    if item is None:
        raise ItemNotFound()

    movement_type = parse_movement_type(request.movement_type)
    quantity = parse_quantity(request.quantity)
    movement_date = parse_movement_date(request.movement_date)
    unit_price = parse_money(request.unit_price, field="Unit price")

    if movement_type == MovementType.OUT and quantity > item.quantity:
        raise InsufficientStock(requested=quantity, available=item.quantity)

    return ValidatedMovement(
        item_id=item.id,
        movement_type=movement_type,
        quantity=quantity,
        movement_date=movement_date,
        unit_price=unit_price,
        total_value=compute_total_value(quantity, unit_price),
        reference_number=request.reference_number,
        supplier_id=request.supplier_id,
        customer=request.customer,
        notes=request.notes,
        location_id=request.location_id,
        received_by=request.received_by,
    )
