from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_user, logout_user
from sqlalchemy import func

from stockapp.errors import Unauthorized, ValidationError
from stockapp.extensions import db
from stockapp.models import ActivityLog, User, UserRole, utcnow
from stockapp.routes.users import apply_user_fields
from stockapp.security import current_actor, require_roles
from stockapp.services.activity import Actor, record_activity
from stockapp.services.ledger import atomic
from stockapp.utils.payload import optional_text, require_json

bp = Blueprint("auth", __name__, url_prefix="/api/auth")

MIN_PASSWORD_LENGTH = 8
PROFILE_FIELDS = ("name", "email", "phone", "department")


@bp.post("/login")
def login():
    payload = require_json(request.get_json(silent=True))
    email = (optional_text(payload.get("email")) or "").lower()
    password = payload.get("password") or ""
    if not email or not password:
        raise ValidationError("Email and password are required.")

    user = User.query.filter(func.lower(User.email) == email).first()
    if user is None or not user.check_password(password):
        current_app.logger.info("Rejected login for %s", email)
        raise Unauthorized("Invalid email or password")
    if not user.is_active:
        current_app.logger.info("Rejected login for inactive user %s", email)
        raise Unauthorized("This account is inactive. Contact an administrator.")

    with atomic(db.session) as session:
        user.last_login_at = utcnow()
        record_activity(
            session,
            actor=Actor.from_user(user),
            action=ActivityLog.ACTION_LOGIN,
            entity_type="user",
            entity_id=user.id,
            entity_name=user.name,
            description=f"{user.name} signed in",
        )

    login_user(user)
    return jsonify(user.to_dict())


@bp.post("/logout")
@require_roles(UserRole.VIEWER)
def logout():
    actor = current_actor()
    with atomic(db.session) as session:
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_LOGOUT,
            entity_type="user",
            entity_id=actor.id,
            entity_name=actor.name,
            description=f"{actor.name} signed out",
        )
    logout_user()
    return jsonify({"message": "Logged out"})


@bp.get("/me")
@require_roles(UserRole.VIEWER)
def me():
    return jsonify(current_user.to_dict())


@bp.post("/change-password")
@require_roles(UserRole.VIEWER)
def change_password():
    payload = require_json(request.get_json(silent=True))
    current_password = payload.get("current_password") or ""
    new_password = payload.get("new_password") or ""

    if not current_password or not new_password:
        raise ValidationError("Current and new password are required.")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"New password must be at least {MIN_PASSWORD_LENGTH} characters long."
        )

    user = db.session.get(User, current_user.id)
    if not user.check_password(current_password):
        raise ValidationError("Current password is incorrect.")
    if user.check_password(new_password):
        raise ValidationError("New password must differ from the current password.")

    with atomic(db.session) as session:
        user.set_password(new_password)
        user.must_change_password = False
        record_activity(
            session,
            actor=Actor.from_user(user),
            action=ActivityLog.ACTION_UPDATE,
            entity_type="user",
            entity_id=user.id,
            entity_name=user.name,
            description="Changed password",
        )

    return jsonify({"message": "Password updated", "user": user.to_dict()})


@bp.put("/profile")
@require_roles(UserRole.VIEWER)
def update_profile():
    """Let the signed-in user edit their own contact details."""

    payload = require_json(request.get_json(silent=True))
    changes = {key: payload[key] for key in PROFILE_FIELDS if key in payload}
    if not changes:
        raise ValidationError(f"Provide at least one of: {', '.join(PROFILE_FIELDS)}.")

    user = db.session.get(User, current_user.id)
    old_values = user.to_dict()
    with atomic(db.session) as session:
        apply_user_fields(user, changes, creating=False)
        session.flush()
        record_activity(
            session,
            actor=Actor.from_user(user),
            action=ActivityLog.ACTION_UPDATE,
            entity_type="user",
            entity_id=user.id,
            entity_name=user.name,
            description="Updated own profile",
            old_values=old_values,
            new_values=user.to_dict(),
        )

    return jsonify(user.to_dict())
