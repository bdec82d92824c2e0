"""Apply stock movements to item quantities as single atomic units.

Every operation runs inside :meth:`LedgerStore.transaction`: the item row is
locked, sufficiency is re-checked against the freshly read quantity, and the
quantity change, movement row and activity entry commit together.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from stockapp.errors import (
    InsufficientStock,
    ItemNotFound,
    MovementNotFound,
    ValidationError,
)
from stockapp.models import ActivityLog, Movement, MovementType
from stockapp.services.activity import Actor, record_activity
from stockapp.services.ledger import LedgerStore
from stockapp.services.movement_validator import (
    ItemSnapshot,
    MovementRequest,
    ValidatedMovement,
    validate,
)

logger = logging.getLogger(__name__)

ENTITY_TYPE = "stock_movement"


def _describe(movement: Movement | ValidatedMovement, item_name: str | None) -> str:
    label = MovementType.LABELS.get(movement.movement_type, movement.movement_type)
    return f"{label}: {movement.quantity} x {item_name or 'item'}"


def _net_shortfall(current: int, final: int) -> InsufficientStock:
    return InsufficientStock(requested=current - final, available=current)


class MovementApplier:
    def __init__(self, store: LedgerStore, actor: Actor) -> None:
        self.store = store
        self.actor = actor

    def record(self, request: MovementRequest) -> Movement:
        """Validate ``request`` against the current item and apply it."""

        item = self.store.get_item(request.item_id)
        snapshot = ItemSnapshot.from_item(item) if item is not None else None
        return self.apply_create(validate(snapshot, request))

    def apply_create(self, validated: ValidatedMovement) -> Movement:
        with self.store.transaction() as session:
            item = self.store.lock_item_for_update(validated.item_id)
            if item is None:
                raise ItemNotFound()
            if validated.movement_type == MovementType.OUT and validated.quantity > item.quantity:
                raise InsufficientStock(requested=validated.quantity, available=item.quantity)
            self.store.ensure_references(
                supplier_id=validated.supplier_id, location_id=validated.location_id
            )

            self.store.set_item_quantity(item, item.quantity + validated.delta)
            movement = self.store.insert_movement(validated.as_fields(), user_id=self.actor.id)
            record_activity(
                session,
                actor=self.actor,
                action=ActivityLog.ACTION_CREATE,
                entity_type=ENTITY_TYPE,
                entity_id=movement.id,
                entity_name=item.name,
                description=_describe(movement, item.name),
                new_values=movement.to_dict(),
            )
            movement_id = movement.id
            quantity_after = item.quantity

        logger.info(
            "Recorded %s movement %s for item %s (%+d, now %s) by user %s",
            validated.movement_type,
            movement_id,
            validated.item_id,
            validated.delta,
            quantity_after,
            self.actor.id,
        )
        return movement

    def apply_update(self, movement_id: int, changes: Mapping[str, Any]) -> Movement:
        """Reverse the stored movement, re-validate the merged edit and apply it."""

        with self.store.transaction() as session:
            movement = self.store.get_movement(movement_id)
            if movement is None:
                raise MovementNotFound()
            request = MovementRequest.from_movement(movement).merged_with(changes)
            if request.item_id is None:
                raise ValidationError("Item is required.")

            locked = self.store.lock_items_for_update({movement.item_id, request.item_id})
            # Re-read under the lock; a concurrent edit may have changed it.
            movement = self.store.get_movement(movement_id, refresh=True)
            if movement is None:
                raise MovementNotFound()
            request = MovementRequest.from_movement(movement).merged_with(changes)
            if request.item_id is None:
                raise ValidationError("Item is required.")
            unlocked = {movement.item_id, request.item_id} - set(locked)
            if unlocked:
                locked.update(self.store.lock_items_for_update(unlocked))

            old_values = movement.to_dict()
            source = locked[movement.item_id]
            target = locked[request.item_id]
            restored = source.quantity - movement.delta

            if source is target:
                available = restored
            else:
                if restored < 0:
                    raise _net_shortfall(source.quantity, restored)
                available = target.quantity

            try:
                validated = validate(ItemSnapshot.from_item(target, quantity=available), request)
            except InsufficientStock as exc:
                if available >= 0:
                    raise
                raise _net_shortfall(target.quantity, available - exc.requested) from None

            final = available + validated.delta
            if final < 0:
                raise _net_shortfall(target.quantity, final)
            self.store.ensure_references(
                supplier_id=validated.supplier_id, location_id=validated.location_id
            )

            if source is not target:
                self.store.set_item_quantity(source, restored)
            self.store.set_item_quantity(target, final)
            self.store.update_movement(movement, validated.as_fields())
            record_activity(
                session,
                actor=self.actor,
                action=ActivityLog.ACTION_UPDATE,
                entity_type=ENTITY_TYPE,
                entity_id=movement.id,
                entity_name=target.name,
                description=_describe(movement, target.name),
                old_values=old_values,
                new_values=movement.to_dict(),
            )

        logger.info(
            "Updated movement %s (item %s -> %s, quantity now %s) by user %s",
            movement_id,
            old_values["item_id"],
            validated.item_id,
            final,
            self.actor.id,
        )
        return movement

    def apply_delete(self, movement_id: int) -> dict[str, Any]:
        """Reverse and remove a movement, returning its last stored state."""

        with self.store.transaction() as session:
            movement = self.store.get_movement(movement_id)
            if movement is None:
                raise MovementNotFound()
            item = self.store.lock_item_for_update(movement.item_id)
            movement = self.store.get_movement(movement_id, refresh=True)
            if movement is None:
                raise MovementNotFound()
            if item is None or item.id != movement.item_id:
                item = self.store.lock_items_for_update({movement.item_id})[movement.item_id]

            restored = item.quantity - movement.delta
            if restored < 0:
                raise InsufficientStock(requested=movement.quantity, available=item.quantity)

            old_values = movement.to_dict()
            description = _describe(movement, item.name)
            self.store.set_item_quantity(item, restored)
            self.store.delete_movement(movement)
            record_activity(
                session,
                actor=self.actor,
                action=ActivityLog.ACTION_DELETE,
                entity_type=ENTITY_TYPE,
                entity_id=movement_id,
                entity_name=item.name,
                description=description,
                old_values=old_values,
            )

        logger.info(
            "Deleted movement %s and restored item %s to %s by user %s",
            movement_id,
            old_values["item_id"],
            restored,
            self.actor.id,
        )
        return old_values
