"""Shared security helpers and decorators for API protection."""

from __future__ import annotations

from functools import wraps

from flask_login import current_user

from stockapp.errors import Forbidden, Unauthorized
from stockapp.models import UserRole
from stockapp.services.activity import Actor


def current_actor() -> Actor:
    """Return the signed-in user as an :class:`Actor` or raise ``Unauthorized``."""

    if not current_user.is_authenticated:
        raise Unauthorized("Authentication required")
    return Actor.from_user(current_user)


def require_roles(minimum: str = UserRole.VIEWER):
    """Decorator ensuring the active user holds ``minimum`` or a higher role."""

    if minimum not in UserRole.RANK:
        raise ValueError(f"Unknown role: {minimum}")

    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                raise Unauthorized("Authentication required")

            if not current_user.has_role(minimum):
                raise Forbidden()

            return view_func(*args, **kwargs)

        return wrapped

    return decorator


def require_admin(view_func):
    """Decorator specialized for the administrator role."""

    return require_roles(UserRole.ADMIN)(view_func)
