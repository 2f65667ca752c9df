# permissions.py
"""
Role checks for the JSON API.
- role_required([...]): main route decorator (admin always passes).
- require_role(*roles): same thing, positional form.
- has_role/is_admin: helpers for handlers that branch on role.

Roles:
- user: own favorites, playlists, playback stats
- admin: everything a user can do + account creation and global stats
"""

from functools import wraps
from typing import Iterable, Set

from flask import abort
from flask_login import current_user, login_required


def role_required(allowed_roles: Iterable[str]):
    """
    Restrict a view to the given roles.
    Example:
        @role_required(["admin"])
        def view(): ...

    - Not signed in → 401 (login_manager.unauthorized).
    - admin always passes.
    - Wrong role → 403.
    """
    if isinstance(allowed_roles, str):
        allowed: Set[str] = {allowed_roles}
    else:
        allowed = set(allowed_roles or [])

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            role = getattr(current_user, "role", None)
            if role == "admin" or role in allowed:
                return view_func(*args, **kwargs)
            abort(403, description="Forbidden")

        return wrapped
    return decorator


def require_role(*roles: str):
    """Positional form of role_required: @require_role("admin")."""
    return role_required(list(roles))


def has_role(role: str) -> bool:
    """True if the current user has exactly this role."""
    return bool(current_user.is_authenticated and getattr(current_user, "role", None) == role)


def is_admin() -> bool:
    return has_role("admin")
