from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from stockapp.extensions import db
from stockapp.models import UserRole
from stockapp.security import require_roles
from stockapp.services import reports
from stockapp.utils.payload import choice

bp = Blueprint("dashboard", __name__, url_prefix="/api/dashboard")


@bp.get("/stats")
@require_roles(UserRole.VIEWER)
def stats():
    recent_days = current_app.config.get("RECENT_MOVEMENT_DAYS", 7)
    return jsonify(reports.dashboard_stats(db.session, recent_days=recent_days))


@bp.get("/chart")
@require_roles(UserRole.VIEWER)
def chart():
    timeframe = choice(
        request.args.get("timeframe"),
        reports.CHART_TIMEFRAMES,
        field="timeframe",
        default="week",
    )
    return jsonify({"timeframe": timeframe, "series": reports.chart_series(db.session, timeframe)})
