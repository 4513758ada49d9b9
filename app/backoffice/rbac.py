"""Role based access checks.

Permissions are granted only through roles; a user holds a permission when any
of their roles carries it. The ``admin`` role is additionally treated as the
supervisor role by modules that scope records per owner (chats, templates).
"""
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify, redirect, request, url_for

from app.backoffice.models import User

ADMIN_ROLE_KEY = "admin"


def wants_json() -> bool:
    return request.is_json or request.accept_mimetypes.best == "application/json"


def permission_keys(user: User | None) -> frozenset[str]:
    if not user or not user.is_active:
        return frozenset()
    return frozenset(p.key for role in user.roles for p in role.permissions)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def user_is_admin(user: User | None) -> bool:
    return bool(user and user.is_active and user.has_role(ADMIN_ROLE_KEY))


def _login_redirect():
    if wants_json():
        return jsonify({"error": "Authentication required."}), 401
    target = request.full_path.rstrip("?") if request.query_string else request.path
    return redirect(url_for("auth.login_get", next=target))


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Anonymous callers are sent to the login page; signed-in callers without the key get 403."""

    def decorator(view: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view)
        def guarded(*args: Any, **kwargs: Any):
            user: User | None = g.get("current_user")
            if not user or not user.is_active:
                return _login_redirect()
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return view(*args, **kwargs)

        return guarded

    return decorator
