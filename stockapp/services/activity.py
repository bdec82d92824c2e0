"""Activity log writes that ride along with the change they describe."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from flask import has_request_context, request
from sqlalchemy.orm import Session

from stockapp.models import ActivityLog


@dataclass(frozen=True)
class Actor:
    """The authenticated user a change is attributed to."""

    id: int
    name: str
    role: str

    @classmethod
    def from_user(cls, user) -> "Actor":
        return cls(id=user.id, name=user.name, role=user.role)


def _trimmed(value: str | None, *, limit: int) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    return value[:limit]


def resolve_client_ip() -> str | None:
    """Best effort extraction of the originating client IP address."""

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        parts = [part.strip() for part in forwarded_for.split(",") if part.strip()]
        if parts:
            return parts[0][:64]

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()[:64]

    remote_addr = request.remote_addr
    if remote_addr:
        return str(remote_addr)[:64]

    return None


def record_activity(
    session: Session,
    *,
    actor: Actor | None,
    action: str,
    entity_type: str,
    entity_id: Any = None,
    entity_name: str | None = None,
    description: str | None = None,
    old_values: Mapping[str, Any] | None = None,
    new_values: Mapping[str, Any] | None = None,
) -> ActivityLog:
    """Stage an :class:`ActivityLog` row on ``session``.

    Nothing is committed here. The entry becomes durable together with the
    caller's transaction, and a failed insert fails that transaction too.
    """

    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = resolve_client_ip()
        user_agent = request.user_agent.string if request.user_agent else None

    entry = ActivityLog(
        user_id=actor.id if actor else None,
        user_name=_trimmed(actor.name if actor else None, limit=255),
        action=action,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        entity_name=_trimmed(entity_name, limit=255),
        description=description,
        old_values=dict(old_values) if old_values is not None else None,
        new_values=dict(new_values) if new_values is not None else None,
        ip_address=_trimmed(ip_address, limit=64),
        user_agent=_trimmed(user_agent, limit=512),
    )
    session.add(entry)
    session.flush()
    return entry
