from __future__ import annotations

import secrets
from typing import Any, Mapping

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import or_

from stockapp.errors import Conflict, ItemNotFound, NotFound, ValidationError
from stockapp.extensions import db
from stockapp.models import (
    ActivityLog,
    Category,
    Item,
    Location,
    StockStatus,
    Subcategory,
    Supplier,
    UserRole,
)
from stockapp.security import current_actor, require_roles
from stockapp.services.activity import record_activity
from stockapp.services.ledger import LedgerStore, atomic
from stockapp.utils.payload import (
    optional_id,
    optional_text,
    parse_bool,
    parse_int,
    parse_money,
    require_json,
    required_text,
)

bp = Blueprint("stock_items", __name__, url_prefix="/api/stock-items")

ENTITY_TYPE = "stock_item"
BARCODE_PREFIX = "BC"


def generate_barcode() -> str:
    for _ in range(20):
        candidate = f"{BARCODE_PREFIX}{secrets.randbelow(1_000_000):06d}"
        if not Item.query.filter_by(barcode=candidate).first():
            return candidate
    raise Conflict("Could not allocate a unique barcode. Provide one explicitly.")


def _get_item_or_404(item_id: int) -> Item:
    item = db.session.get(Item, item_id)
    if item is None:
        raise ItemNotFound()
    return item


def _resolve_reference(model, value: Any, *, field: str, label: str):
    identifier = optional_id(value, field=field)
    if identifier is None:
        return None
    if db.session.get(model, identifier) is None:
        raise NotFound(f"{label} not found")
    return identifier


def _ensure_unique_barcode(barcode: str, *, exclude_id: int | None = None) -> None:
    query = Item.query.filter(Item.barcode == barcode)
    if exclude_id is not None:
        query = query.filter(Item.id != exclude_id)
    if query.first() is not None:
        raise Conflict(f"Barcode {barcode} is already assigned to another item.")


def _apply_fields(item: Item, payload: Mapping[str, Any]) -> None:
    """Overwrite the item fields present in ``payload``. ``status`` is derived."""

    if "name" in payload:
        item.name = required_text(payload, "name")
    if "description" in payload:
        item.description = optional_text(payload.get("description"))
    if "barcode" in payload:
        barcode = optional_text(payload.get("barcode"), limit=64)
        if barcode is None:
            raise ValidationError("Barcode cannot be empty.")
        _ensure_unique_barcode(barcode, exclude_id=item.id)
        item.barcode = barcode
    if "quantity" in payload:
        item.quantity = parse_int(payload.get("quantity"), field="Quantity", minimum=0)
    if "unit_price" in payload:
        item.unit_price = parse_money(payload.get("unit_price"), field="Unit price", allow_none=False)
    if "min_quantity" in payload:
        raw = payload.get("min_quantity")
        item.min_quantity = 0 if raw in (None, "") else parse_int(raw, field="Minimum quantity", minimum=0)
    if "category_id" in payload:
        item.category_id = _resolve_reference(
            Category, payload.get("category_id"), field="category_id", label="Category"
        )
    if "subcategory_id" in payload:
        item.subcategory_id = _resolve_reference(
            Subcategory, payload.get("subcategory_id"), field="subcategory_id", label="Subcategory"
        )
    if "location_id" in payload:
        item.location_id = _resolve_reference(
            Location, payload.get("location_id"), field="location_id", label="Location"
        )
    if "supplier_id" in payload:
        item.supplier_id = _resolve_reference(
            Supplier, payload.get("supplier_id"), field="supplier_id", label="Supplier"
        )
    if "is_active" in payload:
        item.is_active = parse_bool(payload.get("is_active"))

    if item.subcategory_id is not None:
        subcategory = db.session.get(Subcategory, item.subcategory_id)
        if item.category_id is None:
            item.category_id = subcategory.category_id
        elif subcategory.category_id != item.category_id:
            raise ValidationError("Subcategory does not belong to the selected category.")

    item.refresh_status()


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_items():
    search = (request.args.get("search") or "").strip()
    location_code = (request.args.get("location") or "").strip()
    category_name = (request.args.get("category") or "").strip()
    status = (request.args.get("status") or "").strip()
    include_inactive = parse_bool(request.args.get("include_inactive"))

    query = Item.query
    if not include_inactive:
        query = query.filter(Item.is_active.is_(True))
    if search:
        like_pattern = f"%{search}%"
        query = query.filter(
            or_(
                Item.name.ilike(like_pattern),
                Item.description.ilike(like_pattern),
                Item.barcode.ilike(like_pattern),
            )
        )
    if location_code and location_code != "all":
        query = query.join(Location, Location.id == Item.location_id).filter(
            Location.code == location_code
        )
    if category_name and category_name != "all":
        query = query.join(Category, Category.id == Item.category_id).filter(
            Category.name == category_name
        )
    if status and status != "all":
        if status not in StockStatus.ALL_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(StockStatus.ALL_STATUSES)}."
            )
        query = query.filter(Item.status == status)

    items = query.order_by(Item.name.asc(), Item.id.asc()).all()
    return jsonify([item.to_dict() for item in items])


@bp.get("/<int:item_id>")
@require_roles(UserRole.VIEWER)
def get_item(item_id: int):
    return jsonify(_get_item_or_404(item_id).to_dict())


@bp.get("/barcode/<string:barcode>")
@require_roles(UserRole.VIEWER)
def get_item_by_barcode(barcode: str):
    item = Item.query.filter_by(barcode=barcode.strip()).first()
    if item is None:
        raise ItemNotFound(f"No item found with barcode {barcode}")
    return jsonify(item.to_dict())


@bp.post("")
@require_roles(UserRole.EMPLOYEE)
def create_item():
    actor = current_actor()
    payload = dict(require_json(request.get_json(silent=True)))
    payload.pop("status", None)

    required_text(payload, "name")
    if payload.get("quantity") in (None, ""):
        raise ValidationError("Quantity is required.")
    if payload.get("unit_price") in (None, ""):
        raise ValidationError("Unit price is required.")
    if not optional_text(payload.get("barcode")):
        payload["barcode"] = generate_barcode()

    item = Item(created_by=actor.id, min_quantity=0, is_active=True)
    _apply_fields(item, payload)

    with atomic(db.session) as session:
        session.add(item)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=item.id,
            entity_name=item.name,
            description=f"Created stock item {item.name} ({item.barcode})",
            new_values=item.to_dict(),
        )

    current_app.logger.info("Created stock item %s (%s) by user %s", item.id, item.barcode, actor.id)
    return jsonify(item.to_dict()), 201


@bp.put("/<int:item_id>")
@require_roles(UserRole.EMPLOYEE)
def update_item(item_id: int):
    actor = current_actor()
    payload = dict(require_json(request.get_json(silent=True)))
    payload.pop("status", None)
    store = LedgerStore(db.session, lock_timeout=current_app.config["LOCK_TIMEOUT_SECONDS"])

    with store.transaction() as session:
        # Status is derived from quantity; read it under the movement lock.
        item = store.lock_item_for_update(item_id)
        if item is None:
            raise ItemNotFound()
        old_values = item.to_dict()
        _apply_fields(item, payload)
        session.flush()
        session.expire(item, ["category", "subcategory", "location", "supplier"])
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=item.id,
            entity_name=item.name,
            description=f"Updated stock item {item.name}",
            old_values=old_values,
            new_values=item.to_dict(),
        )

    return jsonify(item.to_dict())


@bp.delete("/<int:item_id>")
@require_roles(UserRole.MANAGER)
def delete_item(item_id: int):
    actor = current_actor()
    store = LedgerStore(db.session, lock_timeout=current_app.config["LOCK_TIMEOUT_SECONDS"])

    with store.transaction() as session:
        item = store.lock_item_for_update(item_id)
        if item is None:
            raise ItemNotFound()
        old_values = item.to_dict()
        store.delete_item(item)
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=item_id,
            entity_name=old_values["name"],
            description=f"Deleted stock item {old_values['name']}",
            old_values=old_values,
        )

    current_app.logger.info("Deleted stock item %s by user %s", item_id, actor.id)
    return jsonify({"message": "Item deleted", "id": item_id})
