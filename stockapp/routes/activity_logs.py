from __future__ import annotations

from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import or_

from stockapp.errors import ValidationError
from stockapp.models import ActivityLog, UserRole, utcnow
from stockapp.security import require_roles
from stockapp.utils.payload import optional_id, parse_int

bp = Blueprint("activity_logs", __name__, url_prefix="/api/activity-logs")

DATE_WINDOWS = {
    "today": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


@bp.get("")
@require_roles(UserRole.MANAGER)
def list_activity_logs():
    query = ActivityLog.query

    search = (request.args.get("search") or "").strip()
    if search:
        like_pattern = f"%{search}%"
        query = query.filter(
            or_(
                ActivityLog.description.ilike(like_pattern),
                ActivityLog.entity_name.ilike(like_pattern),
                ActivityLog.user_name.ilike(like_pattern),
            )
        )

    action = (request.args.get("action") or "").strip().upper()
    if action and action != "ALL":
        if action not in ActivityLog.ALL_ACTIONS:
            raise ValidationError(f"action must be one of: {', '.join(ActivityLog.ALL_ACTIONS)}.")
        query = query.filter(ActivityLog.action == action)

    entity_type = (request.args.get("entity_type") or "").strip()
    if entity_type and entity_type != "all":
        query = query.filter(ActivityLog.entity_type == entity_type)

    user_id = optional_id(request.args.get("user_id"), field="user_id")
    if user_id is not None:
        query = query.filter(ActivityLog.user_id == user_id)

    window = (request.args.get("date") or "").strip().lower()
    if window and window != "all":
        if window not in DATE_WINDOWS:
            raise ValidationError("date must be one of: today, week, month.")
        if window == "today":
            now = utcnow()
            since = now.replace(hour=0, minute=0, second=0, microsecond=0)
        else:
            since = utcnow() - DATE_WINDOWS[window]
        query = query.filter(ActivityLog.created_at >= since)

    default_limit = current_app.config.get("ACTIVITY_LOG_PAGE_SIZE", 50)
    limit = request.args.get("limit")
    limit = default_limit if limit in (None, "") else parse_int(limit, field="limit", minimum=1)
    offset = request.args.get("offset")
    offset = 0 if offset in (None, "") else parse_int(offset, field="offset", minimum=0)

    total = query.count()
    logs = (
        query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .offset(offset)
        .limit(min(limit, 500))
        .all()
    )
    return jsonify({"logs": [log.to_dict() for log in logs], "total": total})
