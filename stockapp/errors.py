"""Typed failures raised by the stock services and rendered by the API."""

from __future__ import annotations

from typing import Any


class StockError(Exception):
    """Base class for every failure the API reports with a stable shape."""

    kind = "error"
    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: dict[str, Any] = dict(details)
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "kind": self.kind}
        payload.update(self.details)
        return payload


class ValidationError(StockError):
    kind = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class InvalidQuantity(ValidationError):
    kind = "invalid_quantity"
    default_message = "Quantity must be a positive whole number."


class InvalidDate(ValidationError):
    kind = "invalid_date"
    default_message = "Movement date is required and must be an ISO date."


class InsufficientStock(StockError):
    kind = "insufficient_stock"
    status_code = 400

    def __init__(self, requested: int, available: int, message: str | None = None) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            message
            or (
                f"Cannot remove {requested} items. "
                f"Only {available} available in stock."
            ),
            requested=requested,
            available=available,
        )


class NotFound(StockError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class ItemNotFound(NotFound):
    default_message = "Item not found"


class MovementNotFound(NotFound):
    default_message = "Movement not found"


class Conflict(StockError):
    kind = "conflict"
    status_code = 409
    default_message = "Conflict"


class Busy(StockError):
    kind = "busy"
    status_code = 409
    default_message = "The item is being updated by another request. Try again."


class Unauthorized(StockError):
    kind = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(StockError):
    kind = "forbidden"
    status_code = 403
    default_message = "You do not have permission to perform this action."


class StorageFailure(StockError):
    kind = "storage_failure"
    status_code = 500
    default_message = "The database could not complete the request."

