from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_

from stockapp.errors import Conflict, NotFound
from stockapp.extensions import db
from stockapp.models import ACTIVE, ActivityLog, Item, Movement, RECORD_STATUSES, Supplier, UserRole
from stockapp.security import current_actor, require_roles
from stockapp.services.activity import record_activity
from stockapp.services.ledger import LedgerStore, atomic
from stockapp.utils.payload import choice, optional_text, parse_money, require_json, required_text

bp = Blueprint("suppliers", __name__, url_prefix="/api/suppliers")

ENTITY_TYPE = "supplier"

TEXT_FIELDS = {
    "contact_person": 255,
    "email": 255,
    "phone": 64,
    "address": 255,
    "city": 120,
    "country": 120,
    "postal_code": 32,
    "tax_id": 64,
    "payment_terms": 120,
    "notes": None,
}


def _counts(model, column) -> dict[int, int]:
    return dict(
        db.session.query(column, func.count(model.id))
        .filter(column.isnot(None))
        .group_by(column)
        .all()
    )


def _serialize(supplier: Supplier, items: dict[int, int], movements: dict[int, int]) -> dict:
    payload = supplier.to_dict()
    payload["items_count"] = items.get(supplier.id, 0)
    payload["movements_count"] = movements.get(supplier.id, 0)
    return payload


def _serialize_one(supplier: Supplier) -> dict:
    items = Item.query.filter(Item.supplier_id == supplier.id).count()
    movements = Movement.query.filter(Movement.supplier_id == supplier.id).count()
    return _serialize(supplier, {supplier.id: items}, {supplier.id: movements})


def _get_supplier_or_404(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFound("Supplier not found")
    return supplier


def _ensure_unique_code(code: str, *, exclude_id: int | None = None) -> None:
    query = Supplier.query.filter(func.lower(Supplier.code) == code.lower())
    if exclude_id is not None:
        query = query.filter(Supplier.id != exclude_id)
    if query.first() is not None:
        raise Conflict(f"Supplier code {code} is already in use.")


def _apply_fields(supplier: Supplier, payload: Mapping[str, Any], *, creating: bool) -> None:
    if creating or "name" in payload:
        supplier.name = required_text(payload, "name", label="Supplier name")
    if creating or "code" in payload:
        code = required_text(payload, "code", label="Supplier code")[:64]
        _ensure_unique_code(code, exclude_id=supplier.id)
        supplier.code = code
    for field, limit in TEXT_FIELDS.items():
        if field in payload:
            setattr(supplier, field, optional_text(payload.get(field), limit=limit))
    if creating or "credit_limit" in payload:
        amount = parse_money(payload.get("credit_limit"), field="Credit limit")
        supplier.credit_limit = amount if amount is not None else 0
    if creating or "status" in payload:
        supplier.status = choice(payload.get("status"), RECORD_STATUSES, field="Status", default=ACTIVE)


@bp.get("")
@require_roles(UserRole.VIEWER)
def list_suppliers():
    query = Supplier.query
    status = (request.args.get("status") or "").strip()
    if status and status != "all":
        query = query.filter(Supplier.status == status)
    search = (request.args.get("search") or "").strip()
    if search:
        like_pattern = f"%{search}%"
        query = query.filter(
            or_(
                Supplier.name.ilike(like_pattern),
                Supplier.code.ilike(like_pattern),
                Supplier.contact_person.ilike(like_pattern),
                Supplier.email.ilike(like_pattern),
            )
        )

    items = _counts(Item, Item.supplier_id)
    movements = _counts(Movement, Movement.supplier_id)
    suppliers = query.order_by(Supplier.name.asc()).all()
    return jsonify([_serialize(supplier, items, movements) for supplier in suppliers])


@bp.get("/<int:supplier_id>")
@require_roles(UserRole.VIEWER)
def get_supplier(supplier_id: int):
    return jsonify(_serialize_one(_get_supplier_or_404(supplier_id)))


@bp.post("")
@require_roles(UserRole.MANAGER)
def create_supplier():
    actor = current_actor()
    payload = require_json(request.get_json(silent=True))
    supplier = Supplier(created_by=actor.id)
    _apply_fields(supplier, payload, creating=True)

    with atomic(db.session) as session:
        session.add(supplier)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=supplier.id,
            entity_name=supplier.name,
            description=f"Created supplier {supplier.name} ({supplier.code})",
            new_values=supplier.to_dict(),
        )

    return jsonify(_serialize(supplier, {}, {})), 201


@bp.put("/<int:supplier_id>")
@require_roles(UserRole.MANAGER)
def update_supplier(supplier_id: int):
    actor = current_actor()
    supplier = _get_supplier_or_404(supplier_id)
    payload = require_json(request.get_json(silent=True))
    old_values = supplier.to_dict()

    with atomic(db.session) as session:
        _apply_fields(supplier, payload, creating=False)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=supplier.id,
            entity_name=supplier.name,
            description=f"Updated supplier {supplier.name}",
            old_values=old_values,
            new_values=supplier.to_dict(),
        )

    return jsonify(_serialize_one(supplier))


@bp.delete("/<int:supplier_id>")
@require_roles(UserRole.MANAGER)
def delete_supplier(supplier_id: int):
    actor = current_actor()
    store = LedgerStore(db.session, lock_timeout=current_app.config["LOCK_TIMEOUT_SECONDS"])

    with store.transaction() as session:
        supplier = store.lock_row(Supplier, supplier_id)
        if supplier is None:
            raise NotFound("Supplier not found")
        items_count = Item.query.filter(Item.supplier_id == supplier.id).count()
        movements_count = Movement.query.filter(Movement.supplier_id == supplier.id).count()
        if items_count or movements_count:
            raise Conflict(
                f"Cannot delete supplier. It is linked to {items_count} items and "
                f"{movements_count} movements. Consider deactivating the supplier instead.",
                items_count=items_count,
                movements_count=movements_count,
            )

        old_values = supplier.to_dict()
        session.delete(supplier)
        session.flush()
        record_activity(
            session,
            actor=actor,
            action=ActivityLog.ACTION_DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=supplier_id,
            entity_name=old_values["name"],
            description=f"Deleted supplier {old_values['name']}",
            old_values=old_values,
        )

    return jsonify({"message": "Supplier deleted", "id": supplier_id})
