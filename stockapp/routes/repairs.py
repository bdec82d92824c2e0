from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, jsonify, request
from sqlalchemy import or_

from stockapp.errors import Conflict, NotFound, ValidationError
from stockapp.extensions import db
from stockapp.models import (
    ActivityLog,
    Repair,
    RepairPriority,
    RepairStatus,
    UserRole,
    utcnow,
)
from stockapp.security import current_actor, require_roles
from stockapp.services.activity import record_activity
from stockapp.services.ledger import atomic
from stockapp.utils.payload import choice, optional_text, require_json, required_text

bp = Blueprint("repairs", __name__, url_prefix="/api/repairs")

ENTITY_TYPE = "repair"


def _get_repair_or_404(repair_id: int) -> Repair:
    repair = db.session.get(Repair, repair_id)
    if repair is None:
        raise NotFound("Repair not found")
    return repair


def _apply_fields(repair: Repair, payload: Mapping[str, Any], *, creating: bool) -> None:
    if creating or "item_name" in payload:
        repair.item_name = required_text(payload, "item_name", label="Item name")[:255]
    if creating or "issue_description" in payload:
        repair.issue_description = required_text(
            payload, "issue_description", label="Issue description"
        )
    if "description" in payload:
        repair.description = optional_text(payload.get("description"))
    if creating or "status" in payload:
        if payload.get("status") == RepairStatus.RETURNED:
            raise ValidationError("Use the return action to mark a repair as returned.")
        repair.status = choice(
            payload.get("status"),
            RepairStatus.EDITABLE_STATUSES,
            field="Status",
            default=RepairStatus.PENDING,
        )
    if creating or "priority" in payload:
        repair.priority = choice(
            payload.get("priority"),
            RepairPriority.ALL_PRIORITIES,
            field="Priority",
            default=RepairPriority.MEDIUM,
        )
    if "assigned_to" in payload:
        repair.assigned_to = optional_text(payload.get("assigned_to"), limit=255)
    if "notes" in payload:
        repair.notes = optional_text(payload.get("notes"))


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_repairs():
    query = Repair.query
    status = (request.args.get("status") or "").strip()
    if status and status != "all":
        query = query.filter(Repair.status == status)
    priority = (request.args.get("priority") or "").strip()
    if priority and priority != "all":
        query = query.filter(Repair.priority == priority)
    search = (request.args.get("search") or "").strip()
    if search:
        like_pattern = f"%{search}%"
        query = query.filter(
            or_(
                Repair.item_name.ilike(like_pattern),
                Repair.issue_description.ilike(like_pattern),
                Repair.assigned_to.ilike(like_pattern),
            )
        )
    repairs = query.order_by(Repair.created_at.desc(), Repair.id.desc()).all()
    return jsonify([repair.to_dict() for repair in repairs])


@bp.get("/<int:repair_id>")
@require_roles(UserRole.VIEWER)
def get_repair(repair_id: int):
    return jsonify(_get_repair_or_404(repair_id).to_dict())


@bp.post("")
@require_roles(UserRole.EMPLOYEE)
def create_repair():
    actor = current_actor()
    payload = require_json(request.get_json(silent=True))
    repair = Repair()
    _apply_fields(repair, payload, creating=True)

    with atomic(db.session) as session:
        session.add(repair)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=repair.id,
            entity_name=repair.item_name,
            description=f"Logged repair for {repair.item_name}",
            new_values=repair.to_dict(),
        )

    return jsonify(repair.to_dict()), 201


@bp.put("/<int:repair_id>")
@require_roles(UserRole.EMPLOYEE)
def update_repair(repair_id: int):
    actor = current_actor()
    repair = _get_repair_or_404(repair_id)
    if repair.is_returned:
        raise Conflict("Returned repairs can no longer be edited.")
    payload = require_json(request.get_json(silent=True))
    old_values = repair.to_dict()

    with atomic(db.session) as session:
        _apply_fields(repair, payload, creating=False)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=repair.id,
            entity_name=repair.item_name,
            description=f"Updated repair for {repair.item_name}",
            old_values=old_values,
            new_values=repair.to_dict(),
        )

    return jsonify(repair.to_dict())


@bp.post("/<int:repair_id>/return")
@require_roles(UserRole.EMPLOYEE)
def mark_as_returned(repair_id: int):
    actor = current_actor()
    repair = _get_repair_or_404(repair_id)
    if repair.is_returned:
        raise Conflict("Repair has already been returned.")
    if repair.status != RepairStatus.FIXED:
        raise Conflict("Only fixed repairs can be marked as returned.", status=repair.status)

    old_values = repair.to_dict()
    with atomic(db.session) as session:
        repair.status = RepairStatus.RETURNED
        repair.returned_date = utcnow()
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=repair.id,
            entity_name=repair.item_name,
            description=f"Returned {repair.item_name} to service",
            old_values=old_values,
            new_values=repair.to_dict(),
        )

    return jsonify(repair.to_dict())


@bp.delete("/<int:repair_id>")
@require_roles(UserRole.EMPLOYEE)
def delete_repair(repair_id: int):
    actor = current_actor()
    repair = _get_repair_or_404(repair_id)
    old_values = repair.to_dict()

    with atomic(db.session) as session:
        session.delete(repair)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=repair_id,
            entity_name=old_values["item_name"],
            description=f"Deleted repair for {old_values['item_name']}",
            old_values=old_values,
        )

    return jsonify({"message": "Repair deleted", "id": repair_id})
