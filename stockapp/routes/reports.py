from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from stockapp.errors import NotFound, ValidationError
from stockapp.extensions import db
from stockapp.models import MovementType, UserRole
from stockapp.security import require_roles
from stockapp.services import reports
from stockapp.utils.payload import optional_id, parse_date, parse_int

bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _movement_filters() -> dict:
    movement_type = (request.args.get("movement_type") or "").strip().upper()
    if movement_type in ("", "ALL"):
        movement_type = None
    elif movement_type not in MovementType.ALL_TYPES:
        raise ValidationError("Movement type must be IN or OUT.")

    date_from = parse_date(request.args.get("date_from"), field="date_from")
    date_to = parse_date(request.args.get("date_to"), field="date_to")
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must be on or before date_to.")

    return {
        "date_from": date_from,
        "date_to": date_to,
        "location_id": optional_id(request.args.get("location_id"), field="location_id"),
        "movement_type": movement_type,
    }


@bp.get("/low-stock")
@require_roles(UserRole.VIEWER)
def low_stock():
    return jsonify(reports.low_stock_items(db.session))


@bp.get("/critical")
@require_roles(UserRole.VIEWER)
def critical():
    return jsonify(reports.critical_items(db.session))


@bp.get("/valuation")
@require_roles(UserRole.VIEWER)
def valuation():
    return jsonify(reports.valuation(db.session))


@bp.get("/top-items")
@require_roles(UserRole.VIEWER)
def top_items():
    limit = request.args.get("limit")
    if limit in (None, ""):
        limit = current_app.config.get("REPORT_TOP_N", 10)
    else:
        limit = parse_int(limit, field="limit", minimum=1)
    return jsonify(reports.top_items(db.session, limit=limit))


@bp.get("/movements")
@require_roles(UserRole.VIEWER)
def movements():
    filters = _movement_filters()
    summary = reports.movement_aggregates(db.session, **filters)
    summary["filters"] = {
        key: value.isoformat() if hasattr(value, "isoformat") else value
        for key, value in filters.items()
    }
    return jsonify(summary)


@bp.get("/location-utilization")
@require_roles(UserRole.VIEWER)
def location_utilization():
    return jsonify(reports.location_utilization(db.session))


@bp.get("/export/<string:kind>.csv")
@require_roles(UserRole.VIEWER)
def export_csv(kind: str):
    export = reports.EXPORTS.get(kind)
    if export is None:
        raise NotFound(f"Unknown export {kind}")
    filters = _movement_filters() if export.filterable else {}
    return export.response(export.fetch_rows(db.session, **filters))
