from __future__ import annotations

import re
from typing import Any, Mapping

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_

from stockapp.errors import Conflict, NotFound, ValidationError
from stockapp.extensions import db
from stockapp.models import (
    ACTIVE,
    ActivityLog,
    Location,
    Movement,
    RECORD_STATUSES,
    User,
    UserRole,
)
from stockapp.security import current_actor, require_admin
from stockapp.services.activity import record_activity
from stockapp.services.ledger import LedgerStore, atomic
from stockapp.services.passwords import generate_temporary_password
from stockapp.utils.payload import (
    choice,
    optional_id,
    optional_text,
    parse_date,
    require_json,
    required_text,
)

bp = Blueprint("users", __name__, url_prefix="/api/users")

ENTITY_TYPE = "user"
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _get_user_or_404(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def _normalize_email(payload: Mapping[str, Any]) -> str:
    email = required_text(payload, "email", label="Email").lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Email address is not valid.")
    return email[:255]


def _ensure_unique_email(email: str, *, exclude_id: int | None = None) -> None:
    query = User.query.filter(func.lower(User.email) == email)
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    if query.first() is not None:
        raise Conflict(f"A user with email {email} already exists.")


def apply_user_fields(user: User, payload: Mapping[str, Any], *, creating: bool) -> None:
    if creating or "name" in payload:
        user.name = required_text(payload, "name", label="Name")[:255]
    if creating or "email" in payload:
        email = _normalize_email(payload)
        _ensure_unique_email(email, exclude_id=user.id)
        user.email = email
    if creating or "role" in payload:
        user.role = choice(payload.get("role"), UserRole.ALL_ROLES, field="Role", default=UserRole.EMPLOYEE)
    if creating or "status" in payload:
        user.status = choice(payload.get("status"), RECORD_STATUSES, field="Status", default=ACTIVE)
    if "location_id" in payload:
        location_id = optional_id(payload.get("location_id"), field="location_id")
        if location_id is not None and db.session.get(Location, location_id) is None:
            raise NotFound("Location not found")
        user.location_id = location_id
    if "phone" in payload:
        user.phone = optional_text(payload.get("phone"), limit=64)
    if "department" in payload:
        user.department = optional_text(payload.get("department"), limit=120)
    if "join_date" in payload:
        user.join_date = parse_date(payload.get("join_date"), field="Join date")


def _issue_temporary_password(user: User) -> str:
    password = generate_temporary_password(current_app.config.get("TEMP_PASSWORD_LENGTH", 12))
    user.set_password(password)
    user.must_change_password = True
    return password


@bp.get("")
@require_admin
def list_users():
    query = User.query
    role = (request.args.get("role") or "").strip()
    if role and role != "all":
        query = query.filter(User.role == role)
    status = (request.args.get("status") or "").strip()
    if status and status != "all":
        query = query.filter(User.status == status)
    search = (request.args.get("search") or "").strip()
    if search:
        like_pattern = f"%{search}%"
        query = query.filter(
            or_(
                User.name.ilike(like_pattern),
                User.email.ilike(like_pattern),
                User.department.ilike(like_pattern),
            )
        )
    users = query.order_by(User.name.asc()).all()
    return jsonify([user.to_dict() for user in users])


@bp.get("/<int:user_id>")
@require_admin
def get_user(user_id: int):
    return jsonify(_get_user_or_404(user_id).to_dict())


@bp.post("")
@require_admin
def create_user():
    actor = current_actor()
    payload = require_json(request.get_json(silent=True))
    user = User()
    apply_user_fields(user, payload, creating=True)
    temporary_password = _issue_temporary_password(user)

    with atomic(db.session) as session:
        session.add(user)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=user.id,
            entity_name=user.name,
            description=f"Created user {user.email} with role {user.role}",
            new_values=user.to_dict(),
        )

    current_app.logger.info("Created user %s (%s) by admin %s", user.id, user.role, actor.id)
    response = user.to_dict()
    response["temporary_password"] = temporary_password
    return jsonify(response), 201


@bp.put("/<int:user_id>")
@require_admin
def update_user(user_id: int):
    actor = current_actor()
    user = _get_user_or_404(user_id)
    payload = require_json(request.get_json(silent=True))
    old_values = user.to_dict()

    if user.id == actor.id:
        if "role" in payload and payload.get("role") != user.role:
            raise ValidationError("You cannot change your own role.")
        if "status" in payload and payload.get("status") != ACTIVE:
            raise ValidationError("You cannot deactivate your own account.")

    with atomic(db.session) as session:
        apply_user_fields(user, payload, creating=False)
        session.flush()
        session.expire(user, ["location"])
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=user.id,
            entity_name=user.name,
            description=f"Updated user {user.email}",
            old_values=old_values,
            new_values=user.to_dict(),
        )

    return jsonify(user.to_dict())


@bp.post("/<int:user_id>/reset-password")
@require_admin
def reset_password(user_id: int):
    actor = current_actor()
    user = _get_user_or_404(user_id)

    with atomic(db.session) as session:
        temporary_password = _issue_temporary_password(user)
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=user.id,
            entity_name=user.name,
            description=f"Reset password for {user.email}",
        )

    current_app.logger.info("Password reset for user %s by admin %s", user.id, actor.id)
    return jsonify(
        {
            "message": "Password reset",
            "user": user.to_dict(),
            "temporary_password": temporary_password,
        }
    )


@bp.delete("/<int:user_id>")
@require_admin
def delete_user(user_id: int):
    actor = current_actor()
    if user_id == actor.id:
        raise Conflict("You cannot delete your own account.")
    store = LedgerStore(db.session, lock_timeout=current_app.config["LOCK_TIMEOUT_SECONDS"])

    with store.transaction() as session:
        user = store.lock_row(User, user_id)
        if user is None:
            raise NotFound("User not found")
        movements_count = Movement.query.filter(Movement.user_id == user.id).count()
        if movements_count:
            raise Conflict(
                f"Cannot delete user. They recorded {movements_count} stock movements. "
                "Deactivate the account instead.",
                movements_count=movements_count,
            )

        old_values = user.to_dict()
        session.delete(user)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=user_id,
            entity_name=old_values["name"],
            description=f"Deleted user {old_values['email']}",
            old_values=old_values,
        )

    return jsonify({"message": "User deleted", "id": user_id})
