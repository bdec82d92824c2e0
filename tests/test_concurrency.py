import os
import sys
import threading
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from stockapp import create_app, shutdown_app
from stockapp.errors import Busy, InsufficientStock
from stockapp.extensions import db
from stockapp.models import Item, Movement, User, UserRole
from stockapp.services.activity import Actor
from stockapp.services.ledger import LedgerStore
from stockapp.services.movement_applier import MovementApplier
from stockapp.services.movement_validator import MovementRequest


def _file_backed_app(database_path, lock_timeout):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{database_path}",
            "LOCK_TIMEOUT_SECONDS": lock_timeout,
        }
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
    shutdown_app(app)


@pytest.fixture
def app(tmp_path):
    yield from _file_backed_app(tmp_path / "stock.db", lock_timeout=10)


@pytest.fixture
def impatient_app(tmp_path):
    yield from _file_backed_app(tmp_path / "stock.db", lock_timeout=0.2)


def _seed(quantity):
    user = User(name="Floor Staff", email="floor@example.com", role=UserRole.EMPLOYEE)
    user.set_password("password123")
    item = Item(name="Bolt", barcode="BC100000", quantity=quantity, min_quantity=2, unit_price=Decimal("0.10"))
    db.session.add_all([user, item])
    db.session.commit()
    return Actor.from_user(user), item.id


def test_competing_outs_never_oversell(app):
    actor, item_id = _seed(quantity=10)
    engine = db.engine
    barrier = threading.Barrier(2)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        session = Session(engine)
        try:
            applier = MovementApplier(LedgerStore(session, lock_timeout=10), actor)
            request = MovementRequest.from_payload(
                {
                    "item_id": item_id,
                    "movement_type": "OUT",
                    "quantity": 7,
                    "movement_date": "2024-05-01",
                }
            )
            barrier.wait()
            try:
                applier.record(request)
                result = "ok"
            except InsufficientStock as exc:
                result = ("insufficient", exc.requested, exc.available)
        finally:
            session.close()
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes, key=str) == [("insufficient", 7, 3), "ok"]

    db.session.expire_all()
    assert db.session.get(Item, item_id).quantity == 3
    assert Movement.query.count() == 1


def test_sequential_sessions_see_committed_quantity(app):
    actor, item_id = _seed(quantity=5)

    for _ in range(2):
        with Session(db.engine) as session:
            MovementApplier(LedgerStore(session), actor).record(
                MovementRequest.from_payload(
                    {"item_id": item_id, "movement_type": "OUT", "quantity": 2, "movement_date": "2024-05-01"}
                )
            )

    db.session.expire_all()
    assert db.session.get(Item, item_id).quantity == 1


def test_waiting_on_a_held_lock_times_out_as_busy(impatient_app):
    actor, item_id = _seed(quantity=10)

    holder = Session(db.engine)
    try:
        holder.execute(
            text("UPDATE stock_items SET quantity = quantity WHERE id = :item_id"),
            {"item_id": item_id},
        )
        with Session(db.engine) as session:
            applier = MovementApplier(LedgerStore(session, lock_timeout=0.2), actor)
            with pytest.raises(Busy):
                applier.record(
                    MovementRequest.from_payload(
                        {"item_id": item_id, "movement_type": "OUT", "quantity": 3, "movement_date": "2024-05-01"}
                    )
                )
    finally:
        holder.rollback()
        holder.close()

    db.session.expire_all()
    assert db.session.get(Item, item_id).quantity == 10
    assert Movement.query.count() == 0
