"""Authentication and authorization services."""

from __future__ import annotations

import logging
from functools import wraps
from typing import Optional

from flask import g, jsonify

from extensions import db
from models import ROLE_PERMISSIONS, OrganizationMember, User

logger = logging.getLogger(__name__)


def get_current_user() -> Optional[User]:
    """Return the currently logged-in user from ``flask.g``."""
    return getattr(g, "current_user", None)


def current_user_id() -> Optional[int]:
    user = get_current_user()
    return user.id if user else None


def login_required(f):
    """Decorator that answers 401 if the user is not authenticated."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_current_user():
            return jsonify({"error": "unauthenticated", "message": "Login required"}), 401
        return f(*args, **kwargs)

    return decorated


def superadmin_required(f):

    @wraps(f)
    def decorated(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({"error": "unauthenticated", "message": "Login required"}), 401
        if not user.is_superadmin:
            return jsonify({"error": "authorization_error", "message": "Superadmin only"}), 403
        return f(*args, **kwargs)

    return decorated


def _membership(user_id: int, organization_id: int) -> Optional[OrganizationMember]:
    return OrganizationMember.query.filter_by(
        user_id=user_id, organization_id=organization_id
    ).first()


def has_permission(user_id: int, organization_id: int, permission: str) -> bool:
    """Check that *user_id* holds *permission* in the organization.

    Superadmins hold every permission everywhere.
    """
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        return False
    if user.is_superadmin:
        return True
    membership = _membership(user_id, organization_id)
    if not membership:
        return False
    return permission in ROLE_PERMISSIONS.get(membership.role, set())


def is_org_admin(user_id: int, organization_id: int) -> bool:
    """True for organization owners/admins (and superadmins)."""
    return has_permission(user_id, organization_id, "manage_billing")


def can_manage_licenses(user_id: int, organization_id: int) -> bool:
    """Owners, admins and license managers may hand out and take back seats."""
    return has_permission(user_id, organization_id, "manage_licenses")


def is_org_member(user_id: int, organization_id: int) -> bool:
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        return False
    return user.is_superadmin or _membership(user_id, organization_id) is not None


def is_superadmin(user_id: int) -> bool:
    user = db.session.get(User, user_id)
    return bool(user and user.is_active and user.is_superadmin)
