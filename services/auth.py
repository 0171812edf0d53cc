"""Authentication and authorization services."""

from __future__ import annotations

import logging
import secrets
from functools import wraps
from typing import Optional

from flask import flash, g, redirect, url_for
from werkzeug.security import generate_password_hash

from extensions import db
from models import ROLE_PERMISSIONS, User

logger = logging.getLogger(__name__)

# Reachable without a session; everything else under /admin and /api needs an admin.
PUBLIC_PATHS = ("/", "/login", "/logout")
PUBLIC_PREFIXES = ("/static/", "/api/webhooks/", "/media/")
PROTECTED_PREFIXES = ("/admin", "/api/")


def get_current_user() -> Optional[User]:
    """Return the currently logged-in user from ``flask.g``."""
    return getattr(g, "current_user", None)


def has_permission(user: Optional[User], permission: str) -> bool:
    if user is None or not user.is_active:
        return False
    permissions = ROLE_PERMISSIONS.get(user.role, set())
    return permission in permissions or "manage_all" in permissions


def is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS:
        return True
    return path.startswith(PUBLIC_PREFIXES)


def is_protected_path(path: str) -> bool:
    if is_public_path(path):
        return False
    return path == "/admin" or path.startswith(PROTECTED_PREFIXES)


def gate_decision(path: str, user: Optional[User]) -> Optional[str]:
    """Route-protection verdict for *path*.

    Returns ``None`` when the request may proceed, ``"login"`` when a session
    is required and ``"forbidden"`` when the user lacks the admin role.
    """
    if not is_protected_path(path):
        return None
    if user is None:
        return "login"
    if not has_permission(user, "manage_all"):
        return "forbidden"
    return None


def role_required(permission: str):
    """Decorator that checks user has *permission* (or ``manage_all``)."""

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = get_current_user()
            if not user:
                return redirect(url_for("auth.login"))
            if not has_permission(user, permission):
                flash("You do not have permission to access the admin console.", "danger")
                return redirect(url_for("auth.home"))
            return f(*args, **kwargs)

        return decorated

    return decorator


def ensure_admin_user(admin_email: str) -> None:
    """Create the bootstrap admin account when no admin exists yet."""
    if User.query.filter_by(role="admin").count() == 0:
        password = secrets.token_urlsafe(12)
        admin = User(
            email=admin_email,
            password_hash=generate_password_hash(password),
            role="admin",
            full_name="Deskly Admin",
        )
        db.session.add(admin)
        db.session.commit()
        # Print to stdout only, credentials never go to the log
        print(
            f"Created default admin user {admin_email}. Initial password: {password} "
            "(change immediately after first login)"
        )
