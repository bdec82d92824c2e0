import os
import sys
from datetime import datetime
from decimal import Decimal

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from stockapp.errors import (
    InsufficientStock,
    InvalidDate,
    InvalidQuantity,
    ItemNotFound,
    ValidationError,
)
from stockapp.services.movement_validator import (
    ItemSnapshot,
    MovementRequest,
    compute_total_value,
    validate,
)


def _request(**overrides):
    payload = {
        "item_id": 1,
        "movement_type": "OUT",
        "quantity": 5,
        "movement_date": "2024-05-01",
    }
    payload.update(overrides)
    return MovementRequest.from_payload(payload)


def test_missing_item_is_rejected():
    with pytest.raises(ItemNotFound):
        validate(None, _request())


def test_out_movement_within_stock_is_accepted():
    validated = validate(ItemSnapshot(id=1, quantity=12), _request(quantity="5"))

    assert validated.movement_type == "OUT"
    assert validated.quantity == 5
    assert validated.delta == -5
    assert validated.movement_date == datetime(2024, 5, 1)


def test_out_movement_exceeding_stock_reports_requested_and_available():
    with pytest.raises(InsufficientStock) as excinfo:
        validate(ItemSnapshot(id=1, quantity=12), _request(quantity=50))

    error = excinfo.value
    assert error.requested == 50
    assert error.available == 12
    assert error.message == "Cannot remove 50 items. Only 12 available in stock."
    assert error.to_dict() == {
        "error": "Cannot remove 50 items. Only 12 available in stock.",
        "kind": "insufficient_stock",
        "requested": 50,
        "available": 12,
    }


def test_out_of_exact_on_hand_quantity_is_allowed():
    validated = validate(ItemSnapshot(id=1, quantity=15), _request(quantity=15))
    assert validated.delta == -15


def test_in_movement_has_no_upper_bound():
    validated = validate(
        ItemSnapshot(id=1, quantity=0), _request(movement_type="in", quantity=10_000)
    )
    assert validated.movement_type == "IN"
    assert validated.delta == 10_000


@pytest.mark.parametrize("quantity", [0, -3, "2.5", "abc", None, True, "NaN"])
def test_non_positive_or_fractional_quantity_is_invalid(quantity):
    with pytest.raises(InvalidQuantity):
        validate(ItemSnapshot(id=1, quantity=100), _request(quantity=quantity))


@pytest.mark.parametrize("movement_date", [None, "", "yesterday", "2024-13-45"])
def test_missing_or_unparseable_date_is_invalid(movement_date):
    with pytest.raises(InvalidDate):
        validate(ItemSnapshot(id=1, quantity=100), _request(movement_date=movement_date))


def test_timezone_aware_dates_are_normalized_to_utc():
    validated = validate(
        ItemSnapshot(id=1, quantity=100),
        _request(movement_date="2024-05-01T12:00:00+02:00"),
    )
    assert validated.movement_date == datetime(2024, 5, 1, 10, 0)


def test_unknown_movement_type_is_a_validation_error():
    with pytest.raises(ValidationError) as excinfo:
        validate(ItemSnapshot(id=1, quantity=100), _request(movement_type="SIDEWAYS"))
    assert not isinstance(excinfo.value, InvalidQuantity)


def test_total_value_is_quantity_times_price_rounded_to_cents():
    validated = validate(
        ItemSnapshot(id=1, quantity=0),
        _request(movement_type="IN", quantity=40, unit_price="2.50"),
    )
    assert validated.unit_price == Decimal("2.50")
    assert validated.total_value == Decimal("100.00")


def test_total_value_is_absent_without_unit_price():
    validated = validate(ItemSnapshot(id=1, quantity=10), _request(quantity=2))
    assert validated.unit_price is None
    assert validated.total_value is None


def test_compute_total_value_rounds_half_up():
    assert compute_total_value(3, Decimal("0.335")) == Decimal("1.01")
    assert compute_total_value(3, None) is None


def test_negative_unit_price_is_rejected():
    with pytest.raises(ValidationError):
        validate(ItemSnapshot(id=1, quantity=10), _request(quantity=1, unit_price="-1"))


def test_placeholder_references_become_none():
    request = MovementRequest.from_payload(
        {
            "item_id": "7",
            "movement_type": "IN",
            "quantity": 1,
            "movement_date": "2024-05-01",
            "supplier_id": "__no-supplier",
            "location_id": "UNSPECIFIED",
            "customer": "   ",
        }
    )
    assert request.item_id == 7
    assert request.supplier_id is None
    assert request.location_id is None
    assert request.customer is None


def test_non_numeric_reference_is_rejected():
    with pytest.raises(ValidationError):
        MovementRequest.from_payload({"item_id": 1, "supplier_id": "acme"})


def test_merged_with_overlays_only_provided_fields():
    original = _request(reference_number="PO-1", notes="first")
    merged = original.merged_with({"quantity": 9, "notes": ""})

    assert merged.quantity == 9
    assert merged.notes is None
    assert merged.reference_number == "PO-1"
    assert merged.movement_type == "OUT"


def test_merged_with_requires_at_least_one_field():
    with pytest.raises(ValidationError):
        _request().merged_with({"unrelated": True})
