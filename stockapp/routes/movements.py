from __future__ import annotations

from datetime import datetime, time, timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import or_

from stockapp.errors import MovementNotFound, ValidationError
from stockapp.extensions import db
from stockapp.models import Item, Movement, MovementType, UserRole
from stockapp.security import current_actor, require_roles
from stockapp.services.ledger import LedgerStore
from stockapp.services.movement_applier import MovementApplier
from stockapp.services.movement_validator import MovementRequest
from stockapp.utils.payload import optional_id, parse_date, require_json

bp = Blueprint("movements", __name__, url_prefix="/api/movements")

RECENT_LIMIT = 10


def _applier() -> MovementApplier:
    store = LedgerStore(db.session, lock_timeout=current_app.config["LOCK_TIMEOUT_SECONDS"])
    return MovementApplier(store, current_actor())


def _ordered(query):
    return query.order_by(Movement.movement_date.desc(), Movement.created_at.desc(), Movement.id.desc())


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_movements():
    query = Movement.query.join(Item, Item.id == Movement.item_id)

    item_id = optional_id(request.args.get("item_id"), field="item_id")
    if item_id is not None:
        query = query.filter(Movement.item_id == item_id)

    movement_type = (request.args.get("movement_type") or "").strip().upper()
    if movement_type and movement_type != "ALL":
        if movement_type not in MovementType.ALL_TYPES:
            raise ValidationError("Movement type must be IN or OUT.")
        query = query.filter(Movement.movement_type == movement_type)

    location_id = optional_id(request.args.get("location_id"), field="location_id")
    if location_id is not None:
        query = query.filter(Movement.location_id == location_id)

    date_from = parse_date(request.args.get("date_from"), field="date_from")
    if date_from is not None:
        query = query.filter(Movement.movement_date >= datetime.combine(date_from, time.min))
    date_to = parse_date(request.args.get("date_to"), field="date_to")
    if date_to is not None:
        upper_bound = datetime.combine(date_to + timedelta(days=1), time.min)
        query = query.filter(Movement.movement_date < upper_bound)

    search = (request.args.get("search") or "").strip()
    if search:
        like_pattern = f"%{search}%"
        query = query.filter(
            or_(Item.name.ilike(like_pattern), Movement.reference_number.ilike(like_pattern))
        )

    return jsonify([movement.to_dict() for movement in _ordered(query).all()])


@bp.get("/recent")
@require_roles(UserRole.VIEWER)
def recent_movements():
    movements = _ordered(Movement.query).limit(RECENT_LIMIT).all()
    return jsonify([movement.to_dict() for movement in movements])


@bp.get("/<int:movement_id>")
@require_roles(UserRole.VIEWER)
def get_movement(movement_id: int):
    movement = db.session.get(Movement, movement_id)
    if movement is None:
        raise MovementNotFound()
    return jsonify(movement.to_dict())


@bp.post("")
@require_roles(UserRole.EMPLOYEE)
def create_movement():
    payload = require_json(request.get_json(silent=True))
    request_data = MovementRequest.from_payload(payload)
    if request_data.item_id is None:
        raise ValidationError("Item is required.")

    movement = _applier().record(request_data)
    return jsonify(movement.to_dict()), 201


@bp.put("/<int:movement_id>")
@require_roles(UserRole.MANAGER)
def update_movement(movement_id: int):
    payload = require_json(request.get_json(silent=True))
    movement = _applier().apply_update(movement_id, payload)
    return jsonify(movement.to_dict())


@bp.delete("/<int:movement_id>")
@require_roles(UserRole.MANAGER)
def delete_movement(movement_id: int):
    removed = _applier().apply_delete(movement_id)
    return jsonify({"message": "Movement deleted", "movement": removed})
