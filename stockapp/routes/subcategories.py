from __future__ import annotations

from flask import Blueprint, jsonify, request
from sqlalchemy import func, update

from stockapp.errors import Conflict, NotFound, ValidationError
from stockapp.extensions import db
from stockapp.models import ActivityLog, Category, Item, Subcategory, UserRole
from stockapp.security import current_actor, require_roles
from stockapp.services.activity import record_activity
from stockapp.services.ledger import atomic
from stockapp.utils.payload import optional_id, optional_text, require_json, required_text

bp = Blueprint("subcategories", __name__, url_prefix="/api/subcategories")

ENTITY_TYPE = "subcategory"


def _get_subcategory_or_404(subcategory_id: int) -> Subcategory:
    subcategory = db.session.get(Subcategory, subcategory_id)
    if subcategory is None:
        raise NotFound("Subcategory not found")
    return subcategory


def _ensure_unique_name(category_id: int, name: str, *, exclude_id: int | None = None) -> None:
    query = Subcategory.query.filter(
        Subcategory.category_id == category_id,
        func.lower(Subcategory.name) == name.lower(),
    )
    if exclude_id is not None:
        query = query.filter(Subcategory.id != exclude_id)
    if query.first() is not None:
        raise Conflict(f"Subcategory {name} already exists in this category.")


def _resolve_category(value) -> int:
    category_id = optional_id(value, field="category_id")
    if category_id is None:
        raise ValidationError("Category is required.")
    if db.session.get(Category, category_id) is None:
        raise NotFound("Category not found")
    return category_id


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_subcategories():
    query = Subcategory.query
    category_id = optional_id(request.args.get("category_id"), field="category_id")
    if category_id is not None:
        query = query.filter(Subcategory.category_id == category_id)
    subcategories = query.order_by(Subcategory.name.asc()).all()
    return jsonify([subcategory.to_dict() for subcategory in subcategories])


@bp.get("/<int:subcategory_id>")
@require_roles(UserRole.VIEWER)
def get_subcategory(subcategory_id: int):
    return jsonify(_get_subcategory_or_404(subcategory_id).to_dict())


@bp.post("")
@require_roles(UserRole.MANAGER)
def create_subcategory():
    actor = current_actor()
    payload = require_json(request.get_json(silent=True))
    category_id = _resolve_category(payload.get("category_id"))
    name = required_text(payload, "name", label="Subcategory name")
    _ensure_unique_name(category_id, name)

    subcategory = Subcategory(
        category_id=category_id,
        name=name,
        description=optional_text(payload.get("description")),
    )
    with atomic(db.session) as session:
        session.add(subcategory)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=subcategory.id,
            entity_name=subcategory.name,
            description=f"Created subcategory {subcategory.name}",
            new_values=subcategory.to_dict(),
        )

    return jsonify(subcategory.to_dict()), 201


@bp.put("/<int:subcategory_id>")
@require_roles(UserRole.MANAGER)
def update_subcategory(subcategory_id: int):
    actor = current_actor()
    subcategory = _get_subcategory_or_404(subcategory_id)
    payload = require_json(request.get_json(silent=True))
    old_values = subcategory.to_dict()

    category_id = subcategory.category_id
    if "category_id" in payload:
        category_id = _resolve_category(payload.get("category_id"))
    name = subcategory.name
    if "name" in payload:
        name = required_text(payload, "name", label="Subcategory name")
    _ensure_unique_name(category_id, name, exclude_id=subcategory.id)

    with atomic(db.session) as session:
        moved = category_id != subcategory.category_id
        subcategory.category_id = category_id
        subcategory.name = name
        if "description" in payload:
            subcategory.description = optional_text(payload.get("description"))
        if moved:
            # Items keep their subcategory, so they follow it to the new parent.
            session.execute(
                update(Item)
                .where(Item.subcategory_id == subcategory.id)
                .values(category_id=category_id)
                .execution_options(synchronize_session="fetch")
            )
        session.flush()
        session.expire(subcategory, ["category"])
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=subcategory.id,
            entity_name=subcategory.name,
            description=f"Updated subcategory {subcategory.name}",
            old_values=old_values,
            new_values=subcategory.to_dict(),
        )

    return jsonify(subcategory.to_dict())


@bp.delete("/<int:subcategory_id>")
@require_roles(UserRole.MANAGER)
def delete_subcategory(subcategory_id: int):
    actor = current_actor()
    subcategory = _get_subcategory_or_404(subcategory_id)
    old_values = subcategory.to_dict()

    with atomic(db.session) as session:
        session.execute(
            update(Item)
            .where(Item.subcategory_id == subcategory.id)
            .values(subcategory_id=None)
            .execution_options(synchronize_session="fetch")
        )
        session.delete(subcategory)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=subcategory_id,
            entity_name=old_values["name"],
            description=f"Deleted subcategory {old_values['name']}",
            old_values=old_values,
        )

    return jsonify({"message": "Subcategory deleted", "id": subcategory_id})
