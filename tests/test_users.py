import os
import sys
from datetime import datetime

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from stockapp import create_app
from stockapp.extensions import db
from stockapp.models import ActivityLog, Item, Movement, User, UserRole
from stockapp.services.passwords import generate_temporary_password

ADMIN_EMAIL = "root@example.com"
ADMIN_PASSWORD = "bootstrap-secret"


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "ADMIN_EMAIL": ADMIN_EMAIL,
            "ADMIN_PASSWORD": ADMIN_PASSWORD,
            "TEMP_PASSWORD_LENGTH": 14,
        }
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin(client):
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return client


def admin_id(app):
    with app.app_context():
        return User.query.filter_by(email=ADMIN_EMAIL).one().id


def test_create_user_returns_temporary_password(app, admin):
    response = admin.post(
        "/api/users",
        json={"name": "Dana", "email": "Dana@Example.com", "role": "manager", "department": "Stores"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["email"] == "dana@example.com"
    assert body["role"] == "manager"
    assert body["must_change_password"] is True
    temporary = body["temporary_password"]
    assert len(temporary) == 14

    admin.post("/api/auth/logout")
    login = admin.post("/api/auth/login", json={"email": "dana@example.com", "password": temporary})
    assert login.status_code == 200
    assert login.get_json()["must_change_password"] is True


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "x@example.com"},
        {"name": "No Email"},
        {"name": "Bad", "email": "not-an-email"},
        {"name": "Bad Role", "email": "r@example.com", "role": "owner"},
    ],
)
def test_create_user_validation(admin, payload):
    response = admin.post("/api/users", json=payload)

    assert response.status_code == 400
    assert response.get_json()["kind"] == "validation_error"


def test_duplicate_email_conflicts(admin):
    admin.post("/api/users", json={"name": "Dana", "email": "dana@example.com"})

    response = admin.post("/api/users", json={"name": "Other Dana", "email": "DANA@example.com"})

    assert response.status_code == 409


def test_non_admins_cannot_manage_users(app, client):
    with app.app_context():
        manager = User(name="Manager", email="manager@example.com", role=UserRole.MANAGER)
        manager.set_password("password123")
        db.session.add(manager)
        db.session.commit()
    client.post("/api/auth/login", json={"email": "manager@example.com", "password": "password123"})

    assert client.get("/api/users").status_code == 403
    assert client.post("/api/users", json={"name": "X", "email": "x@example.com"}).status_code == 403


def test_admin_cannot_demote_or_deactivate_self(app, admin):
    own_id = admin_id(app)

    demote = admin.put(f"/api/users/{own_id}", json={"role": "viewer"})
    deactivate = admin.put(f"/api/users/{own_id}", json={"status": "inactive"})
    delete = admin.delete(f"/api/users/{own_id}")

    assert demote.status_code == 400
    assert deactivate.status_code == 400
    assert delete.status_code == 409
    assert admin.put(f"/api/users/{own_id}", json={"phone": "555-0100"}).status_code == 200


def test_deactivated_user_cannot_log_in(admin):
    user_id = admin.post("/api/users", json={"name": "Sam", "email": "sam@example.com"}).get_json()["id"]
    password = admin.post(f"/api/users/{user_id}/reset-password").get_json()["temporary_password"]

    assert admin.put(f"/api/users/{user_id}", json={"status": "inactive"}).status_code == 200

    response = admin.post("/api/auth/login", json={"email": "sam@example.com", "password": password})
    assert response.status_code == 401


def test_reset_password_issues_new_temporary_password(app, admin):
    created = admin.post("/api/users", json={"name": "Sam", "email": "sam@example.com"}).get_json()

    response = admin.post(f"/api/users/{created['id']}/reset-password")

    assert response.status_code == 200
    body = response.get_json()
    assert body["temporary_password"] != created["temporary_password"]
    assert body["user"]["must_change_password"] is True
    with app.app_context():
        user = db.session.get(User, created["id"])
        assert user.check_password(body["temporary_password"])
        assert not user.check_password(created["temporary_password"])


def test_user_with_movements_cannot_be_deleted(app, admin):
    user_id = admin.post("/api/users", json={"name": "Sam", "email": "sam@example.com"}).get_json()["id"]
    with app.app_context():
        item = Item(name="Widget", barcode="BC000001", quantity=0, unit_price=1)
        db.session.add(item)
        db.session.flush()
        db.session.add(
            Movement(
                item_id=item.id,
                user_id=user_id,
                movement_type="IN",
                quantity=3,
                movement_date=datetime(2024, 5, 1),
            )
        )
        db.session.commit()

    response = admin.delete(f"/api/users/{user_id}")

    assert response.status_code == 409
    assert response.get_json()["movements_count"] == 1


def test_delete_user_records_activity(app, admin):
    user_id = admin.post("/api/users", json={"name": "Sam", "email": "sam@example.com"}).get_json()["id"]

    assert admin.delete(f"/api/users/{user_id}").status_code == 200
    assert admin.get(f"/api/users/{user_id}").status_code == 404
    with app.app_context():
        entry = ActivityLog.query.filter_by(entity_type="user", action="DELETE").one()
        assert entry.entity_id == str(user_id)
        assert entry.old_values["email"] == "sam@example.com"


def test_list_users_filters(admin):
    admin.post("/api/users", json={"name": "Viewer Vic", "email": "vic@example.com", "role": "viewer"})
    admin.post("/api/users", json={"name": "Employee Em", "email": "em@example.com"})

    viewers = admin.get("/api/users?role=viewer").get_json()
    searched = admin.get("/api/users?search=em@").get_json()

    assert [user["email"] for user in viewers] == ["vic@example.com"]
    assert [user["email"] for user in searched] == ["em@example.com"]


def test_temporary_passwords_mix_character_classes():
    password = generate_temporary_password(4)

    assert len(password) == 8
    assert any(char.isupper() for char in password)
    assert any(char.islower() for char in password)
    assert any(char.isdigit() for char in password)
    assert any(char in "!@#$%^&*" for char in password)
