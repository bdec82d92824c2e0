"""Storage access for stock items and their movements."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from stockapp.errors import (
    Busy,
    Conflict,
    InsufficientStock,
    ItemNotFound,
    NotFound,
    StockError,
    StorageFailure,
)
from stockapp.models import Item, Location, Movement, Supplier

logger = logging.getLogger(__name__)

LOCK_NOT_AVAILABLE = "55P03"
DEADLOCK_DETECTED = "40P01"


def is_lock_timeout(error: OperationalError) -> bool:
    original = getattr(error, "orig", None)
    pgcode = getattr(original, "pgcode", None)
    if pgcode in {LOCK_NOT_AVAILABLE, DEADLOCK_DETECTED}:
        return True
    return "database is locked" in str(error).lower()


def is_unique_violation(error: IntegrityError) -> bool:
    original = getattr(error, "orig", None)
    if getattr(original, "pgcode", None) == "23505":
        return True
    message = str(error).lower()
    return "unique" in message or "duplicate" in message


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing at all."""

    try:
        yield session
        session.commit()
    except StockError:
        session.rollback()
        raise
    except OperationalError as exc:
        session.rollback()
        if is_lock_timeout(exc):
            logger.warning("Timed out waiting for a row lock: %s", exc)
            raise Busy() from exc
        logger.warning("Database error while applying a change: %s", exc)
        raise StorageFailure() from exc
    except IntegrityError as exc:
        session.rollback()
        if is_unique_violation(exc):
            raise Conflict("A record with the same unique value already exists.") from exc
        logger.warning("Integrity error while applying a change: %s", exc)
        raise StorageFailure() from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("Database error while applying a change: %s", exc)
        raise StorageFailure() from exc
    except BaseException:
        # Covers aborted requests and worker shutdown.
        session.rollback()
        raise


class LedgerStore:
    """Owns reads and writes of items and movements for one session.

    The session is injected by the caller, so a request handler, a CLI task
    and a test thread can each bring their own connection.
    """

    def __init__(self, session: Session, *, lock_timeout: float = 5.0) -> None:
        self.session = session
        self.lock_timeout = lock_timeout

    @property
    def dialect(self) -> str:
        return self.session.get_bind().dialect.name

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with atomic(self.session) as session:
            yield session

    ############################
    # ITEMS
    ############################
    def get_item(self, item_id: int | None) -> Item | None:
        if item_id is None:
            return None
        return self.session.get(Item, item_id)

    def lock_row(self, model, row_id: int):
        """Serialize writers on one row and return it freshly read."""

        dialect = self.dialect
        if dialect == "postgresql":
            self.session.execute(
                text("SELECT set_config('lock_timeout', :value, true)"),
                {"value": f"{int(self.lock_timeout * 1000)}ms"},
            )
        elif dialect == "sqlite":
            # SQLite has no row locks. A no-op write takes the database write
            # lock before the row is read, which gives the same ordering.
            table = model.__table__
            self.session.execute(
                update(table).where(table.c.id == row_id).values(id=table.c.id)
            )

        statement = (
            select(model)
            .where(model.id == row_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.execute(statement).scalar_one_or_none()

    def lock_item_for_update(self, item_id: int) -> Item | None:
        return self.lock_row(Item, item_id)

    def lock_items_for_update(self, item_ids: Iterable[int]) -> dict[int, Item]:
        """Lock several items in ascending id order so writers never deadlock."""

        locked: dict[int, Item] = {}
        for item_id in sorted(set(item_ids)):
            item = self.lock_item_for_update(item_id)
            if item is None:
                raise ItemNotFound()
            locked[item_id] = item
        return locked

    def set_item_quantity(self, item: Item, quantity: int) -> Item:
        if quantity < 0:
            raise InsufficientStock(requested=item.quantity - quantity, available=item.quantity)
        item.quantity = quantity
        item.refresh_status()
        return item

    def movement_count(self, item_id: int) -> int:
        return self.session.execute(
            select(func.count(Movement.id)).where(Movement.item_id == item_id)
        ).scalar_one()

    def delete_item(self, item: Item) -> None:
        referenced = self.movement_count(item.id)
        if referenced:
            raise Conflict(
                f"Cannot delete item. It has {referenced} recorded movements. "
                "Consider marking it inactive instead.",
                movements_count=referenced,
            )
        self.session.delete(item)
        self.session.flush()

    ############################
    # MOVEMENTS
    ############################
    def get_movement(self, movement_id: int, *, refresh: bool = False) -> Movement | None:
        if refresh:
            statement = (
                select(Movement)
                .where(Movement.id == movement_id)
                .execution_options(populate_existing=True)
            )
            return self.session.execute(statement).scalar_one_or_none()
        return self.session.get(Movement, movement_id)

    def ensure_references(self, *, supplier_id: int | None, location_id: int | None) -> None:
        if supplier_id is not None and self.session.get(Supplier, supplier_id) is None:
            raise NotFound("Supplier not found")
        if location_id is not None and self.session.get(Location, location_id) is None:
            raise NotFound("Location not found")

    def insert_movement(self, fields: dict, *, user_id: int) -> Movement:
        movement = Movement(user_id=user_id, **fields)
        self.session.add(movement)
        self.session.flush()
        return movement

    def update_movement(self, movement: Movement, fields: dict) -> Movement:
        for key, value in fields.items():
            setattr(movement, key, value)
        self.session.flush()
        # Relationships loaded before the edit still point at the old rows.
        self.session.expire(movement, ["item", "supplier", "location"])
        return movement

    def delete_movement(self, movement: Movement) -> None:
        self.session.delete(movement)
        self.session.flush()
