import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from stockapp import create_app
from stockapp.extensions import db
from stockapp.models import ActivityLog, User, UserRole


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
    with app.app_context():
        user = User(name="Tech", email="tech@example.com", role=UserRole.EMPLOYEE)
        user.set_password("password123")
        db.session.add(user)
        db.session.commit()
    client = app.test_client()
    client.post("/api/auth/login", json={"email": "tech@example.com", "password": "password123"})
    return client


def open_repair(client, **overrides):
    payload = {"item_name": "Drill", "issue_description": "Chuck slips", "priority": "high"}
    payload.update(overrides)
    return client.post("/api/repairs", json=payload)


def test_create_repair_defaults(client):
    response = open_repair(client, priority=None)

    assert response.status_code == 201
    body = response.get_json()
    assert body["status"] == "pending"
    assert body["priority"] == "medium"
    assert body["returned_date"] is None


def test_create_repair_requires_fields(client):
    assert client.post("/api/repairs", json={"item_name": "Drill"}).status_code == 400
    assert open_repair(client, priority="urgent").status_code == 400


def test_returned_is_only_reachable_from_fixed(client):
    repair_id = open_repair(client).get_json()["id"]

    direct = client.put(f"/api/repairs/{repair_id}", json={"status": "returned"})
    assert direct.status_code == 400

    early = client.post(f"/api/repairs/{repair_id}/return")
    assert early.status_code == 409

    assert client.put(f"/api/repairs/{repair_id}", json={"status": "fixed"}).status_code == 200
    returned = client.post(f"/api/repairs/{repair_id}/return")
    assert returned.status_code == 200
    assert returned.get_json()["status"] == "returned"
    assert returned.get_json()["returned_date"] is not None

    locked = client.put(f"/api/repairs/{repair_id}", json={"notes": "late note"})
    assert locked.status_code == 409
    assert client.post(f"/api/repairs/{repair_id}/return").status_code == 409


def test_list_filters_and_delete(app, client):
    first = open_repair(client, item_name="Drill", assigned_to="Kim").get_json()["id"]
    open_repair(client, item_name="Saw", priority="low")

    assert [row["item_name"] for row in client.get("/api/repairs?priority=low").get_json()] == ["Saw"]
    assert [row["item_name"] for row in client.get("/api/repairs?search=kim").get_json()] == ["Drill"]

    assert client.delete(f"/api/repairs/{first}").status_code == 200
    assert client.get(f"/api/repairs/{first}").status_code == 404
    with app.app_context():
        actions = sorted(
            entry.action for entry in ActivityLog.query.filter_by(entity_type="repair").all()
        )
    assert actions == ["CREATE", "CREATE", "DELETE"]
