import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from stockapp import create_app
from stockapp.extensions import db
from stockapp.models import ActivityLog, INACTIVE, User, UserRole


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


def create_user(app, email="alice@example.com", password="password123", role=UserRole.EMPLOYEE, **fields):
    with app.app_context():
        user = User(name="Alice", email=email, role=role, **fields)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id


def login(client, email="alice@example.com", password="password123"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def test_login_returns_profile_and_records_activity(app, client):
    user_id = create_user(app)

    response = login(client, email="ALICE@example.com")

    assert response.status_code == 200
    body = response.get_json()
    assert body["id"] == user_id
    assert body["role"] == "employee"
    assert "password_hash" not in body
    with app.app_context():
        entry = ActivityLog.query.filter_by(action=ActivityLog.ACTION_LOGIN).one()
        assert entry.user_id == user_id
        assert entry.ip_address == "127.0.0.1"
        assert db.session.get(User, user_id).last_login_at is not None


def test_login_rejects_bad_credentials(app, client):
    create_user(app)

    wrong_password = login(client, password="nope-nope")
    unknown_user = login(client, email="bob@example.com")
    missing_fields = client.post("/api/auth/login", json={"email": "alice@example.com"})

    assert wrong_password.status_code == 401
    assert wrong_password.get_json() == {"error": "Invalid email or password", "kind": "unauthorized"}
    assert unknown_user.status_code == 401
    assert missing_fields.status_code == 400


def test_inactive_account_cannot_log_in(app, client):
    create_user(app, status=INACTIVE)

    response = login(client)

    assert response.status_code == 401
    assert "inactive" in response.get_json()["error"]


def test_me_and_logout(app, client):
    create_user(app)
    login(client)

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.get_json()["email"] == "alice@example.com"

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401
    with app.app_context():
        assert ActivityLog.query.filter_by(action=ActivityLog.ACTION_LOGOUT).count() == 1


def test_change_password_clears_flag(app, client):
    user_id = create_user(app, must_change_password=True)
    login(client)

    too_short = client.post(
        "/api/auth/change-password", json={"current_password": "password123", "new_password": "short"}
    )
    wrong_current = client.post(
        "/api/auth/change-password", json={"current_password": "guess1234", "new_password": "brand-new-pass"}
    )
    changed = client.post(
        "/api/auth/change-password",
        json={"current_password": "password123", "new_password": "brand-new-pass"},
    )

    assert too_short.status_code == 400
    assert wrong_current.status_code == 400
    assert changed.status_code == 200
    assert changed.get_json()["user"]["must_change_password"] is False
    with app.app_context():
        user = db.session.get(User, user_id)
        assert user.check_password("brand-new-pass")


def test_bootstrap_admin_is_seeded_once(app):
    with app.app_context():
        admins = User.query.filter_by(email=app.config["ADMIN_EMAIL"]).all()
        assert len(admins) == 1
        assert admins[0].role == UserRole.ADMIN
        assert admins[0].check_password(app.config["ADMIN_PASSWORD"])


def test_profile_update_changes_own_contact_details(app, client):
    user_id = create_user(app)
    login(client)

    response = client.put(
        "/api/auth/profile",
        json={"name": "Alice Smith", "email": "Alice.Smith@Example.com", "department": "Stores", "role": "admin"},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["name"] == "Alice Smith"
    assert body["email"] == "alice.smith@example.com"
    assert body["department"] == "Stores"
    assert body["role"] == "employee"
    with app.app_context():
        entry = ActivityLog.query.filter_by(action=ActivityLog.ACTION_UPDATE, entity_type="user").one()
        assert entry.entity_id == str(user_id)
        assert entry.old_values["email"] == "alice@example.com"
        assert entry.new_values["email"] == "alice.smith@example.com"


def test_profile_update_rejects_taken_email_and_empty_body(app, client):
    create_user(app)
    create_user(app, email="bob@example.com")
    login(client)

    taken = client.put("/api/auth/profile", json={"email": "BOB@example.com", "name": "Renamed"})
    empty = client.put("/api/auth/profile", json={"role": "admin"})

    assert taken.status_code == 409
    assert empty.status_code == 400
    assert client.get("/api/auth/me").get_json()["name"] == "Alice"
    assert client.put("/api/auth/profile", json={"email": "not-an-email"}).status_code == 400


def test_profile_update_requires_login(client):
    assert client.put("/api/auth/profile", json={"name": "Nobody"}).status_code == 401
