"""Read-side aggregations over items and movement history.

These helpers never write. They run at the database's default isolation, so a
report taken while movements are being applied reflects some committed state.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from stockapp.models import (
    Category,
    Item,
    Location,
    Movement,
    MovementType,
    Supplier,
    money_to_string,
    utcnow,
)
from stockapp.utils.csv_export import CsvExport

ZERO = Decimal("0.00")

CHART_TIMEFRAMES = {"week": 7, "month": 30, "quarter": 90}

ITEM_COLUMNS = (
    ("id", "ID"),
    ("barcode", "Barcode"),
    ("name", "Name"),
    ("category_name", "Category"),
    ("location_code", "Location"),
    ("quantity", "Quantity"),
    ("min_quantity", "Minimum"),
    ("unit_price", "Unit Price"),
    ("total_value", "Total Value"),
    ("status", "Status"),
    ("stock_label", "Stock Label"),
)

MOVEMENT_COLUMNS = (
    ("id", "ID"),
    ("movement_date", "Date"),
    ("movement_type", "Type"),
    ("item_name", "Item"),
    ("quantity", "Quantity"),
    ("unit_price", "Unit Price"),
    ("total_value", "Total Value"),
    ("reference_number", "Reference"),
    ("supplier", "Supplier"),
    ("customer", "Customer"),
    ("location", "Location"),
    ("user_name", "Recorded By"),
)

VALUATION_COLUMNS = (
    ("group", "Group"),
    ("name", "Name"),
    ("item_count", "Items"),
    ("quantity", "Quantity"),
    ("value", "Value"),
)


def utilization(item_count: int, capacity: int | None) -> float | None:
    if not capacity:
        return None
    return round(item_count / capacity, 4)


def _active_items(session: Session):
    return (
        session.query(Item)
        .options(
            joinedload(Item.category),
            joinedload(Item.subcategory),
            joinedload(Item.location),
            joinedload(Item.supplier),
        )
        .filter(Item.is_active.is_(True))
    )


def item_rows(session: Session) -> list[dict]:
    items = _active_items(session).order_by(Item.name.asc(), Item.id.asc()).all()
    return [item.to_dict() for item in items]


def low_stock_items(session: Session) -> list[dict]:
    items = (
        _active_items(session)
        .filter(Item.quantity <= Item.min_quantity)
        .order_by(Item.quantity.asc(), Item.name.asc())
        .all()
    )
    return [item.to_dict() for item in items]


def critical_items(session: Session) -> list[dict]:
    """Items below half of their minimum quantity."""

    items = (
        _active_items(session)
        .filter(Item.quantity * 2 < Item.min_quantity)
        .order_by(Item.quantity.asc(), Item.name.asc())
        .all()
    )
    return [item.to_dict() for item in items]


def _group_totals(items, key, label) -> list[dict]:
    groups: dict[str, dict] = OrderedDict()
    for item in items:
        name = key(item) or "Unassigned"
        bucket = groups.setdefault(
            name, {"group": label, "name": name, "item_count": 0, "quantity": 0, "value": ZERO}
        )
        bucket["item_count"] += 1
        bucket["quantity"] += int(item.quantity or 0)
        bucket["value"] += item.total_value
    rows = sorted(groups.values(), key=lambda row: (-row["value"], row["name"]))
    for row in rows:
        row["value"] = money_to_string(row["value"])
    return rows


def valuation(session: Session) -> dict:
    items = _active_items(session).all()
    total = sum((item.total_value for item in items), ZERO)
    return {
        "total_value": money_to_string(total),
        "total_quantity": sum(int(item.quantity or 0) for item in items),
        "item_count": len(items),
        "by_category": _group_totals(
            items, lambda item: item.category.name if item.category else None, "category"
        ),
        "by_location": _group_totals(
            items, lambda item: item.location.name if item.location else None, "location"
        ),
    }


def valuation_rows(session: Session) -> list[dict]:
    summary = valuation(session)
    rows = summary["by_category"] + summary["by_location"]
    rows.append(
        {
            "group": "total",
            "name": "All items",
            "item_count": summary["item_count"],
            "quantity": summary["total_quantity"],
            "value": summary["total_value"],
        }
    )
    return rows


def top_items(session: Session, limit: int = 10) -> list[dict]:
    items = _active_items(session).all()
    ranked = sorted(items, key=lambda item: (-item.total_value, item.name))
    return [item.to_dict() for item in ranked[: max(limit, 0)]]


def _movement_query(
    session: Session,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    location_id: int | None = None,
    movement_type: str | None = None,
):
    query = session.query(Movement)
    if date_from is not None:
        query = query.filter(Movement.movement_date >= datetime.combine(date_from, time.min))
    if date_to is not None:
        upper_bound = datetime.combine(date_to + timedelta(days=1), time.min)
        query = query.filter(Movement.movement_date < upper_bound)
    if location_id is not None:
        query = query.filter(Movement.location_id == location_id)
    if movement_type is not None:
        query = query.filter(Movement.movement_type == movement_type)
    return query


def movement_aggregates(session: Session, **filters) -> dict:
    """Per-type counts, quantities and values for the filtered movements."""

    totals = {
        movement_type: {"count": 0, "quantity": 0, "total_value": ZERO}
        for movement_type in MovementType.ALL_TYPES
    }
    for movement in _movement_query(session, **filters).all():
        bucket = totals[movement.movement_type]
        bucket["count"] += 1
        bucket["quantity"] += int(movement.quantity)
        bucket["total_value"] += Decimal(movement.total_value or 0)

    by_type = [
        {
            "movement_type": movement_type,
            "count": bucket["count"],
            "quantity": bucket["quantity"],
            "total_value": money_to_string(bucket["total_value"]),
        }
        for movement_type, bucket in totals.items()
    ]
    return {
        "by_type": by_type,
        "net_quantity": totals[MovementType.IN]["quantity"] - totals[MovementType.OUT]["quantity"],
        "movement_count": sum(bucket["count"] for bucket in totals.values()),
    }


def movement_rows(session: Session, **filters) -> list[dict]:
    movements = (
        _movement_query(session, **filters)
        .options(
            joinedload(Movement.item),
            joinedload(Movement.supplier),
            joinedload(Movement.location),
            joinedload(Movement.user),
        )
        .order_by(Movement.movement_date.desc(), Movement.id.desc())
        .all()
    )
    return [movement.to_dict() for movement in movements]


EXPORTS = {
    "stock-items": CsvExport("stock-items.csv", ITEM_COLUMNS, item_rows),
    "low-stock": CsvExport("low-stock.csv", ITEM_COLUMNS, low_stock_items),
    "movements": CsvExport("movements.csv", MOVEMENT_COLUMNS, movement_rows, filterable=True),
    "valuation": CsvExport("valuation.csv", VALUATION_COLUMNS, valuation_rows),
}


def location_utilization(session: Session) -> list[dict]:
    counts = dict(
        session.query(Item.location_id, func.count(Item.id))
        .filter(Item.location_id.isnot(None))
        .group_by(Item.location_id)
        .all()
    )
    rows = []
    for location in session.query(Location).order_by(Location.block, Location.code, Location.name):
        item_count = counts.get(location.id, 0)
        rows.append(
            {
                "id": location.id,
                "name": location.name,
                "code": location.code,
                "block": location.block,
                "status": location.status,
                "capacity": location.capacity,
                "item_count": item_count,
                "utilization": utilization(item_count, location.capacity),
            }
        )
    return rows


def dashboard_stats(session: Session, *, recent_days: int = 7) -> dict:
    items = session.query(Item).filter(Item.is_active.is_(True)).all()
    since = utcnow() - timedelta(days=recent_days)
    recent_movements = (
        session.query(func.count(Movement.id)).filter(Movement.movement_date >= since).scalar()
    )
    return {
        "total_items": len(items),
        "low_stock_count": sum(1 for item in items if item.quantity <= item.min_quantity),
        "out_of_stock_count": sum(1 for item in items if item.quantity <= 0),
        "total_value": money_to_string(sum((item.total_value for item in items), ZERO)),
        "category_count": session.query(func.count(Category.id)).scalar(),
        "recent_movements": recent_movements or 0,
        "recent_days": recent_days,
    }


def chart_series(session: Session, timeframe: str = "week") -> list[dict]:
    """Per-day stock in/out totals for the trailing ``timeframe``."""

    days = CHART_TIMEFRAMES[timeframe]
    today = utcnow().date()
    start = today - timedelta(days=days - 1)

    series: dict[date, dict] = OrderedDict()
    for offset in range(days):
        day = start + timedelta(days=offset)
        series[day] = {"date": day.isoformat(), "stock_in": 0, "stock_out": 0}

    movements = _movement_query(session, date_from=start, date_to=today).all()
    for movement in movements:
        bucket = series.get(movement.movement_date.date())
        if bucket is None:
            continue
        key = "stock_in" if movement.movement_type == MovementType.IN else "stock_out"
        bucket[key] += int(movement.quantity)
    return list(series.values())


ALERT_LIMITS = {"low_stock": 50, "movement": 50, "supplier_new": 20}
ALERT_MOVEMENT_WINDOW = timedelta(hours=24)
ALERT_SUPPLIER_WINDOW = timedelta(days=7)


def _alert(alert_id, alert_type, title, message, level, created_at, **meta) -> dict:
    return {
        "id": alert_id,
        "type": alert_type,
        "title": title,
        "message": message,
        "level": level,
        "created_at": created_at.isoformat(),
        "meta": meta,
    }


def alerts(session: Session, *, now: datetime | None = None) -> list[dict]:
    """Low stock, the last day's movements and new suppliers, newest first."""

    now = now or utcnow()
    feed = []

    low_stock = (
        _active_items(session)
        .filter(Item.quantity <= Item.min_quantity)
        .order_by(Item.quantity.asc(), Item.name.asc())
        .limit(ALERT_LIMITS["low_stock"])
    )
    for item in low_stock:
        feed.append(
            _alert(
                f"lowstock-{item.id}",
                "low_stock",
                f"Low stock: {item.name}",
                f"Only {item.quantity} left (min {item.min_quantity}). Consider reordering.",
                "warning",
                now,
                item_id=item.id,
                quantity=item.quantity,
                min_quantity=item.min_quantity,
            )
        )

    movements = (
        session.query(Movement)
        .options(joinedload(Movement.item), joinedload(Movement.user))
        .filter(Movement.movement_date >= now - ALERT_MOVEMENT_WINDOW)
        .order_by(Movement.movement_date.desc(), Movement.id.desc())
        .limit(ALERT_LIMITS["movement"])
    )
    for movement in movements:
        verb = "received" if movement.movement_type == MovementType.IN else "removed"
        message = f"{movement.quantity} {verb}"
        if movement.total_value is not None:
            message += f" ({money_to_string(movement.total_value)})"
        message += f" by {movement.user.name if movement.user else 'unknown'}"
        feed.append(
            _alert(
                f"mv-{movement.id}",
                "movement",
                f"{movement.movement_type} {movement.item.name}",
                message,
                "info",
                movement.movement_date,
                movement_id=movement.id,
                item_id=movement.item_id,
            )
        )

    suppliers = (
        session.query(Supplier)
        .filter(Supplier.created_at >= now - ALERT_SUPPLIER_WINDOW)
        .order_by(Supplier.created_at.desc())
        .limit(ALERT_LIMITS["supplier_new"])
    )
    for supplier in suppliers:
        feed.append(
            _alert(
                f"supplier-new-{supplier.id}",
                "supplier_new",
                f"New supplier: {supplier.name}",
                f"Supplier {supplier.name} was added (code {supplier.code}).",
                "success",
                supplier.created_at,
                supplier_id=supplier.id,
            )
        )

    # Stable sort keeps low stock ahead of same-instant entries.
    feed.sort(key=lambda alert: alert["created_at"], reverse=True)
    return feed
