from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_

from stockapp.errors import Conflict, NotFound
from stockapp.extensions import db
from stockapp.models import (
    ActivityLog,
    ACTIVE,
    Item,
    Location,
    Movement,
    RECORD_STATUSES,
    UserRole,
)
from stockapp.security import current_actor, require_roles
from stockapp.services.activity import record_activity
from stockapp.services.ledger import LedgerStore, atomic
from stockapp.services.reports import utilization
from stockapp.utils.payload import (
    choice,
    optional_text,
    parse_int,
    require_json,
    required_text,
)

bp = Blueprint("locations", __name__, url_prefix="/api/locations")

ENTITY_TYPE = "location"


def _item_counts() -> dict[int, int]:
    return dict(
        db.session.query(Item.location_id, func.count(Item.id))
        .filter(Item.location_id.isnot(None))
        .group_by(Item.location_id)
        .all()
    )


def _serialize(location: Location, item_count: int) -> dict:
    payload = location.to_dict()
    payload["item_count"] = item_count
    payload["utilization"] = utilization(item_count, location.capacity)
    return payload


def _get_location_or_404(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if location is None:
        raise NotFound("Location not found")
    return location


def _apply_fields(location: Location, payload: Mapping[str, Any], *, creating: bool) -> None:
    if creating or "name" in payload:
        location.name = required_text(payload, "name", label="Location name")
    if creating or "code" in payload:
        location.code = choice(payload.get("code"), Location.CODES, field="Location code")
        if not optional_text(payload.get("block")):
            location.block = Location.derive_block(location.code)
    if optional_text(payload.get("block")):
        location.block = optional_text(payload.get("block"), limit=64)
    if creating or "type" in payload:
        location.type = choice(
            payload.get("type"),
            Location.TYPES,
            field="Location type",
            default=Location.TYPE_STORAGE_ROOM,
        )
    if creating or "status" in payload:
        location.status = choice(payload.get("status"), RECORD_STATUSES, field="Status", default=ACTIVE)
    if creating or "capacity" in payload:
        raw = payload.get("capacity")
        location.capacity = 0 if raw in (None, "") else parse_int(raw, field="Capacity", minimum=0)
    if "description" in payload:
        location.description = optional_text(payload.get("description"))
    if "manager" in payload:
        location.manager = optional_text(payload.get("manager"), limit=120)


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_locations():
    query = Location.query
    status = (request.args.get("status") or "").strip()
    if status and status != "all":
        query = query.filter(Location.status == status)
    block = (request.args.get("block") or "").strip()
    if block and block != "all":
        query = query.filter(Location.block == block)
    search = (request.args.get("search") or "").strip()
    if search:
        like_pattern = f"%{search}%"
        query = query.filter(
            or_(
                Location.name.ilike(like_pattern),
                Location.code.ilike(like_pattern),
                Location.description.ilike(like_pattern),
            )
        )

    counts = _item_counts()
    locations = query.order_by(Location.block.asc(), Location.code.asc(), Location.name.asc()).all()
    return jsonify([_serialize(location, counts.get(location.id, 0)) for location in locations])


@bp.get("/codes")
@require_roles(UserRole.VIEWER)
def list_location_codes():
    return jsonify(
        [{"code": code, "block": Location.derive_block(code)} for code in Location.CODES]
    )


@bp.get("/<int:location_id>")
@require_roles(UserRole.VIEWER)
def get_location(location_id: int):
    location = _get_location_or_404(location_id)
    return jsonify(_serialize(location, _item_counts().get(location.id, 0)))


@bp.post("")
@require_roles(UserRole.MANAGER)
def create_location():
    actor = current_actor()
    payload = require_json(request.get_json(silent=True))
    location = Location()
    _apply_fields(location, payload, creating=True)

    with atomic(db.session) as session:
        session.add(location)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=location.id,
            entity_name=location.name,
            description=f"Created location {location.name} ({location.code})",
            new_values=location.to_dict(),
        )

    return jsonify(_serialize(location, 0)), 201


@bp.put("/<int:location_id>")
@require_roles(UserRole.MANAGER)
def update_location(location_id: int):
    actor = current_actor()
    location = _get_location_or_404(location_id)
    payload = require_json(request.get_json(silent=True))
    old_values = location.to_dict()

    with atomic(db.session) as session:
        _apply_fields(location, payload, creating=False)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=location.id,
            entity_name=location.name,
            description=f"Updated location {location.name}",
            old_values=old_values,
            new_values=location.to_dict(),
        )

    return jsonify(_serialize(location, _item_counts().get(location.id, 0)))


@bp.delete("/<int:location_id>")
@require_roles(UserRole.MANAGER)
def delete_location(location_id: int):
    actor = current_actor()
    store = LedgerStore(db.session, lock_timeout=current_app.config["LOCK_TIMEOUT_SECONDS"])

    with store.transaction() as session:
        location = store.lock_row(Location, location_id)
        if location is None:
            raise NotFound("Location not found")
        items_count = Item.query.filter(Item.location_id == location.id).count()
        movements_count = Movement.query.filter(Movement.location_id == location.id).count()
        if items_count or movements_count:
            raise Conflict(
                "Cannot delete location while items or movements reference it. "
                "Move the items or mark the location inactive instead.",
                items_count=items_count,
                movements_count=movements_count,
            )

        old_values = location.to_dict()
        session.delete(location)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=location_id,
            entity_name=old_values["name"],
            description=f"Deleted location {old_values['name']}",
            old_values=old_values,
        )

    return jsonify({"message": "Location deleted", "id": location_id})
