from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.teamdesk.errors import NotAuthenticatedError, UnauthorizedError
from app.teamdesk.models import User


def user_has_role(user: User | None, *roles: str) -> bool:
    if not user or not user.is_active:
        return False
    return user.role in roles


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            raise NotAuthenticatedError()
        return fn(*args, **kwargs)

    return wrapped


def require_role(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401, authenticated but wrong role -> 403
            if not user or not user.is_active:
                raise NotAuthenticatedError()
            if not user_has_role(user, *roles):
                raise UnauthorizedError()
            return fn(*args, **kwargs)

        return wrapped

    return decorator
