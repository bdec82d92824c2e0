from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_, update

from stockapp.errors import Conflict, NotFound
from stockapp.extensions import db
from stockapp.models import ActivityLog, Category, Item, UserRole
from stockapp.security import current_actor, require_roles
from stockapp.services.activity import record_activity
from stockapp.services.ledger import atomic
from stockapp.utils.payload import optional_text, require_json, required_text

bp = Blueprint("categories", __name__, url_prefix="/api/categories")

ENTITY_TYPE = "category"


def _get_category_or_404(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFound("Category not found")
    return category


def _ensure_unique_name(name: str, *, exclude_id: int | None = None) -> None:
    query = Category.query.filter(func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first() is not None:
        raise Conflict(f"A category named {name} already exists.")


def _serialize(category: Category, item_counts: dict[int, int]) -> dict:
    payload = category.to_dict(include_subcategories=True)
    payload["item_count"] = item_counts.get(category.id, 0)
    return payload


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_categories():
    categories = Category.query.order_by(Category.name.asc()).all()
    item_counts = dict(
        db.session.query(Item.category_id, func.count(Item.id))
        .filter(Item.category_id.isnot(None))
        .group_by(Item.category_id)
        .all()
    )
    return jsonify([_serialize(category, item_counts) for category in categories])


@bp.get("/<int:category_id>")
@require_roles(UserRole.VIEWER)
def get_category(category_id: int):
    category = _get_category_or_404(category_id)
    count = Item.query.filter(Item.category_id == category.id).count()
    return jsonify(_serialize(category, {category.id: count}))


@bp.post("")
@require_roles(UserRole.MANAGER)
def create_category():
    actor = current_actor()
    payload = require_json(request.get_json(silent=True))
    name = required_text(payload, "name", label="Category name")
    _ensure_unique_name(name)

    category = Category(name=name, description=optional_text(payload.get("description")))
    with atomic(db.session) as session:
        session.add(category)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=category.id,
            entity_name=category.name,
            description=f"Created category {category.name}",
            new_values=category.to_dict(),
        )

    return jsonify(_serialize(category, {})), 201


@bp.put("/<int:category_id>")
@require_roles(UserRole.MANAGER)
def update_category(category_id: int):
    actor = current_actor()
    category = _get_category_or_404(category_id)
    payload = require_json(request.get_json(silent=True))
    old_values = category.to_dict()

    if "name" in payload:
        name = required_text(payload, "name", label="Category name")
        _ensure_unique_name(name, exclude_id=category.id)
    else:
        name = category.name

    with atomic(db.session) as session:
        category.name = name
        if "description" in payload:
            category.description = optional_text(payload.get("description"))
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=category.id,
            entity_name=category.name,
            description=f"Updated category {category.name}",
            old_values=old_values,
            new_values=category.to_dict(),
        )

    count = Item.query.filter(Item.category_id == category.id).count()
    return jsonify(_serialize(category, {category.id: count}))


@bp.delete("/<int:category_id>")
@require_roles(UserRole.MANAGER)
def delete_category(category_id: int):
    """Delete a category, its subcategories, and item references to either."""

    actor = current_actor()
    category = _get_category_or_404(category_id)
    old_values = category.to_dict(include_subcategories=True)
    subcategory_ids = [sub.id for sub in category.subcategories]

    with atomic(db.session) as session:
        conditions = [Item.category_id == category.id]
        if subcategory_ids:
            conditions.append(Item.subcategory_id.in_(subcategory_ids))
        cleared = session.execute(
            update(Item)
            .where(or_(*conditions))
            .values(category_id=None, subcategory_id=None)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        session.delete(category)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=category_id,
            entity_name=old_values["name"],
            description=(
                f"Deleted category {old_values['name']} with "
                f"{len(subcategory_ids)} subcategories"
            ),
            old_values=old_values,
        )

    current_app.logger.info(
        "Deleted category %s (%d subcategories, %d items unassigned)",
        category_id,
        len(subcategory_ids),
        cleared,
    )
    return jsonify(
        {
            "message": "Category deleted",
            "id": category_id,
            "subcategories_deleted": len(subcategory_ids),
            "items_unassigned": cleared,
        }
    )

