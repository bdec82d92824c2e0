"""Parsing helpers for JSON request bodies.

Every API handler funnels raw client values through these helpers so the
service layer only ever sees typed values or ``None``. UI placeholder values
for "no selection" are converted to ``None`` here and nowhere else.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from stockapp.errors import ValidationError

UNSPECIFIED_SENTINELS = frozenset({"", "UNSPECIFIED", "__no-supplier", "none", "null"})

CENTS = Decimal("0.01")


def require_json(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def optional_text(value: Any, *, limit: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if limit is not None:
        text = text[:limit]
    return text


def required_text(payload: Mapping[str, Any], field: str, *, label: str | None = None) -> str:
    text = optional_text(payload.get(field))
    if text is None:
        raise ValidationError(f"{label or field.replace('_', ' ').capitalize()} is required.")
    return text


def optional_id(value: Any, *, field: str) -> int | None:
    """Return a numeric primary key or ``None`` for empty/placeholder values."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip() in UNSPECIFIED_SENTINELS:
        return None
    try:
        identifier = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a numeric id.") from None
    if identifier <= 0:
        raise ValidationError(f"{field} must be a numeric id.")
    return identifier


def parse_int(value: Any, *, field: str, minimum: int | None = None) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a whole number.")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a whole number.") from None
    if not number.is_finite() or number != number.to_integral_value():
        raise ValidationError(f"{field} must be a whole number.")
    result = int(number)
    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be at least {minimum}.")
    return result


def parse_money(value: Any, *, field: str, allow_none: bool = True) -> Decimal | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_none:
            return None
        raise ValidationError(f"{field} is required.")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a non-negative number.")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a non-negative number.") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must be a non-negative number.")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO date or datetime into a naive UTC ``datetime``."""

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date(value: Any, *, field: str) -> date | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"{field} must be an ISO date.")
    return parsed.date()


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def choice(value: Any, options: Iterable[str], *, field: str, default: str | None = None) -> str:
    options = list(options)
    text = optional_text(value)
    if text is None:
        if default is not None:
            return default
        raise ValidationError(f"{field} is required.")
    if text not in options:
        raise ValidationError(f"{field} must be one of: {', '.join(options)}.")
    return text
