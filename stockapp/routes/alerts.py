from __future__ import annotations

from flask import Blueprint, jsonify

from stockapp.extensions import db
from stockapp.models import UserRole
from stockapp.security import require_roles
from stockapp.services import reports

bp = Blueprint("alerts", __name__, url_prefix="/api/alerts")


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_alerts():
    return jsonify({"alerts": reports.alerts(db.session)})
