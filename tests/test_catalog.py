import os
import sys
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from stockapp import create_app
from stockapp.extensions import db
from stockapp.models import ActivityLog, Item, Movement, Subcategory, Supplier, User, UserRole
from stockapp.services.ledger import LedgerStore


@pytest.fixture
def app():
    app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login_as(app, client, role):
    email = f"{role}@example.com"
    with app.app_context():
        user = User(name=role.title(), email=email, role=role)
        user.set_password("password123")
        db.session.add(user)
        db.session.commit()
    response = client.post("/api/auth/login", json={"email": email, "password": "password123"})
    assert response.status_code == 200
    return client


@pytest.fixture
def manager(app, client):
    return login_as(app, client, UserRole.MANAGER)


def add_item(app, **fields):
    fields.setdefault("name", "Widget")
    fields.setdefault("barcode", "BC000001")
    with app.app_context():
        item = Item(quantity=5, unit_price=Decimal("2.00"), **fields)
        db.session.add(item)
        db.session.commit()
        return item.id


############################
# CATEGORIES
############################
def test_employee_cannot_manage_categories(app, client):
    login_as(app, client, UserRole.EMPLOYEE)

    assert client.post("/api/categories", json={"name": "Tools"}).status_code == 403
    assert client.get("/api/categories").status_code == 200


def test_category_crud_and_unique_name(manager):
    created = manager.post("/api/categories", json={"name": "Tools", "description": "Hand tools"})
    assert created.status_code == 201
    category_id = created.get_json()["id"]

    duplicate = manager.post("/api/categories", json={"name": "tools"})
    assert duplicate.status_code == 409

    renamed = manager.put(f"/api/categories/{category_id}", json={"name": "Power Tools"})
    assert renamed.status_code == 200
    assert renamed.get_json()["name"] == "Power Tools"

    listing = manager.get("/api/categories").get_json()
    assert [row["name"] for row in listing] == ["Power Tools"]
    assert listing[0]["item_count"] == 0

    assert manager.post("/api/categories", json={"name": "  "}).status_code == 400


def test_deleting_category_cascades_subcategories_and_unassigns_items(app, manager):
    category_id = manager.post("/api/categories", json={"name": "Fasteners"}).get_json()["id"]
    subcategory_id = manager.post(
        "/api/subcategories", json={"name": "Bolts", "category_id": category_id}
    ).get_json()["id"]
    item_id = add_item(app, category_id=category_id, subcategory_id=subcategory_id)

    response = manager.delete(f"/api/categories/{category_id}")

    assert response.status_code == 200
    body = response.get_json()
    assert body["subcategories_deleted"] == 1
    assert body["items_unassigned"] == 1
    with app.app_context():
        item = db.session.get(Item, item_id)
        assert item.category_id is None
        assert item.subcategory_id is None
        assert db.session.get(Subcategory, subcategory_id) is None
        assert ActivityLog.query.filter_by(entity_type="category", action="DELETE").count() == 1


############################
# SUBCATEGORIES
############################
def test_subcategory_name_is_unique_within_category(manager):
    first = manager.post("/api/categories", json={"name": "A"}).get_json()["id"]
    second = manager.post("/api/categories", json={"name": "B"}).get_json()["id"]

    assert manager.post("/api/subcategories", json={"name": "Misc", "category_id": first}).status_code == 201
    assert manager.post("/api/subcategories", json={"name": "Misc", "category_id": first}).status_code == 409
    assert manager.post("/api/subcategories", json={"name": "Misc", "category_id": second}).status_code == 201
    assert manager.post("/api/subcategories", json={"name": "Misc"}).status_code == 400
    assert manager.post("/api/subcategories", json={"name": "Misc", "category_id": 99}).status_code == 404

    filtered = manager.get(f"/api/subcategories?category_id={first}").get_json()
    assert len(filtered) == 1


def test_moving_subcategory_moves_its_items(app, manager):
    first = manager.post("/api/categories", json={"name": "A"}).get_json()["id"]
    second = manager.post("/api/categories", json={"name": "B"}).get_json()["id"]
    subcategory_id = manager.post(
        "/api/subcategories", json={"name": "Misc", "category_id": first}
    ).get_json()["id"]
    item_id = add_item(app, category_id=first, subcategory_id=subcategory_id)

    response = manager.put(f"/api/subcategories/{subcategory_id}", json={"category_id": second})

    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Item, item_id).category_id == second


def test_deleting_subcategory_clears_item_reference(app, manager):
    category_id = manager.post("/api/categories", json={"name": "A"}).get_json()["id"]
    subcategory_id = manager.post(
        "/api/subcategories", json={"name": "Misc", "category_id": category_id}
    ).get_json()["id"]
    item_id = add_item(app, category_id=category_id, subcategory_id=subcategory_id)

    assert manager.delete(f"/api/subcategories/{subcategory_id}").status_code == 200

    with app.app_context():
        item = db.session.get(Item, item_id)
        assert item.subcategory_id is None
        assert item.category_id == category_id


############################
# LOCATIONS
############################
def test_location_code_must_be_known_and_block_is_derived(manager):
    rejected = manager.post("/api/locations", json={"name": "Mystery", "code": "Z-Block"})
    assert rejected.status_code == 400

    created = manager.post(
        "/api/locations", json={"name": "Store Room 1", "code": "A-Block-SR1", "capacity": 4}
    )
    assert created.status_code == 201
    body = created.get_json()
    assert body["block"] == "A-Block"
    assert body["type"] == "storage_room"
    assert body["utilization"] == 0.0

    codes = manager.get("/api/locations/codes").get_json()
    assert {"code": "Office Storage", "block": "Office"} in codes


def test_location_listing_reports_utilization(app, manager):
    location_id = manager.post(
        "/api/locations", json={"name": "Store Room 2", "code": "B-Block-SR2", "capacity": 4}
    ).get_json()["id"]
    add_item(app, location_id=location_id)

    listing = manager.get("/api/locations?block=B-Block").get_json()

    assert len(listing) == 1
    assert listing[0]["item_count"] == 1
    assert listing[0]["utilization"] == 0.25
    assert manager.get("/api/locations?block=A-Block").get_json() == []


def test_location_delete_is_blocked_while_referenced(app, manager):
    location_id = manager.post(
        "/api/locations", json={"name": "Office", "code": "Office Storage"}
    ).get_json()["id"]
    item_id = add_item(app, location_id=location_id)

    blocked = manager.delete(f"/api/locations/{location_id}")
    assert blocked.status_code == 409
    assert blocked.get_json()["items_count"] == 1

    manager.put(f"/api/stock-items/{item_id}", json={"location_id": None})
    assert manager.delete(f"/api/locations/{location_id}").status_code == 200
    assert manager.get(f"/api/locations/{location_id}").status_code == 404


############################
# SUPPLIERS
############################
def test_supplier_crud_and_unique_code(manager):
    created = manager.post(
        "/api/suppliers", json={"name": "Acme", "code": "ACM", "email": "sales@acme.test"}
    )
    assert created.status_code == 201
    body = created.get_json()
    assert body["credit_limit"] == "0.00"
    assert body["status"] == "active"

    assert manager.post("/api/suppliers", json={"name": "Other", "code": "acm"}).status_code == 409
    assert manager.post("/api/suppliers", json={"name": "No Code"}).status_code == 400

    updated = manager.put(
        f"/api/suppliers/{body['id']}", json={"credit_limit": "1500", "status": "inactive"}
    )
    assert updated.status_code == 200
    assert updated.get_json()["credit_limit"] == "1500.00"
    assert manager.get("/api/suppliers?status=inactive").get_json()[0]["code"] == "ACM"
    assert manager.get("/api/suppliers?search=acme").get_json()[0]["name"] == "Acme"


def test_supplier_delete_is_blocked_by_movements(app, manager):
    supplier_id = manager.post("/api/suppliers", json={"name": "Acme", "code": "ACM"}).get_json()["id"]
    item_id = add_item(app)
    with app.app_context():
        user = User.query.filter_by(email="manager@example.com").one()
        db.session.add(
            Movement(
                item_id=item_id,
                user_id=user.id,
                movement_type="IN",
                quantity=1,
                supplier_id=supplier_id,
                movement_date=datetime(2024, 5, 1),
            )
        )
        db.session.commit()

    blocked = manager.delete(f"/api/suppliers/{supplier_id}")

    assert blocked.status_code == 409
    body = blocked.get_json()
    assert body["movements_count"] == 1
    assert "deactivating" in body["error"]
    assert manager.get(f"/api/suppliers/{supplier_id}").get_json()["movements_count"] == 1


def test_supplier_delete_counts_movements_committed_before_the_lock(app, manager, monkeypatch):
    supplier_id = manager.post("/api/suppliers", json={"name": "Acme", "code": "ACM"}).get_json()["id"]
    item_id = add_item(app)
    original_lock_row = LedgerStore.lock_row

    def receive_then_lock(store, model, row_id):
        with Session(db.engine) as other:
            user = other.query(User).filter_by(email="manager@example.com").one()
            other.add(
                Movement(
                    item_id=item_id,
                    user_id=user.id,
                    movement_type="IN",
                    quantity=1,
                    supplier_id=supplier_id,
                    movement_date=datetime(2024, 5, 1),
                )
            )
            other.commit()
        return original_lock_row(store, model, row_id)

    monkeypatch.setattr(LedgerStore, "lock_row", receive_then_lock)

    response = manager.delete(f"/api/suppliers/{supplier_id}")

    assert response.status_code == 409
    assert response.get_json()["movements_count"] == 1
    with app.app_context():
        assert db.session.get(Supplier, supplier_id) is not None
        assert ActivityLog.query.filter_by(entity_type="supplier", action="DELETE").count() == 0
