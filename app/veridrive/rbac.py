from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, g

from app.veridrive.errors import AuthenticationError, AuthorizationError
from app.veridrive.models import User


def current_user() -> User | None:
    return getattr(g, "current_user", None)


def active_role() -> str | None:
    return getattr(g, "active_role", None)


def user_has_role(user: User | None, role_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return role_key in user.role_keys


def is_admin() -> bool:
    return active_role() == "admin"


def require_user() -> User:
    """Return the authenticated user or raise 401 (with the token failure reason when one was recorded)."""
    user = current_user()
    if user is None:
        err = getattr(g, "auth_error", None)
        raise err or AuthenticationError("Authentication required")
    return user


def require_auth(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        require_user()
        return fn(*args, **kwargs)

    return wrapped


def require_role(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Authorize against the request's active role (X-Active-Role, else the user's primary role)."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = require_user()
            role = active_role()
            if role not in roles:
                current_app.logger.warning(
                    "Forbidden: user=%s active_role=%s required=%s request_id=%s",
                    user.id,
                    role,
                    ",".join(roles),
                    getattr(g, "request_id", None),
                )
                raise AuthorizationError(f"Access denied. Required roles: {', '.join(roles)}")
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_self_or_admin(user_id: int) -> User:
    user = require_user()
    if user.id != user_id and not is_admin():
        raise AuthorizationError("Access denied. You can only access your own resources.")
    return user
