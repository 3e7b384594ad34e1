# Overview: Identity collaborator: active users, role membership and role bootstrap.

"""
Authentication happens upstream of this service. What the workflow needs
from identity is narrow:

- the acting user exists and is active
- which role names the user holds

WHY: Every state change must be attributable to an active user.
"""

from __future__ import annotations

from ..extensions import db
from ..models import User, Role, UserRole
from .errors import NotFoundError, UnauthorizedTransitionError


DEFAULT_ROLES = (
    ("ADMIN", "Full system access"),
    ("SITE_ENGINEER", "Raises material requests for a site"),
    ("DIOCESAN_SITE_ENGINEER", "First-line technical review of requests"),
    ("PADIRI", "Diocesan review of requests"),
    ("DIRECTOR", "Final review of high-value requests"),
    ("STOREKEEPER", "Issues materials and maintains stock"),
)


def require_active_user(user_id: int | None) -> User:
    """Load the acting user or raise; inactive users cannot act."""
    if user_id is None:
        raise UnauthorizedTransitionError("An acting user is required")
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    if not user.is_active:
        raise UnauthorizedTransitionError(f"User {user_id} is inactive")
    return user


def roles_for_user(user_id: int) -> frozenset[str]:
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .all()
    )
    return frozenset(name for (name,) in rows)


def require_any_role(user: User, role_names, action: str) -> frozenset[str]:
    """Raise UnauthorizedTransitionError unless user holds one of role_names."""
    held = roles_for_user(user.id)
    if not held & frozenset(role_names):
        raise UnauthorizedTransitionError(
            f"User {user.id} may not {action} (requires one of: {', '.join(sorted(role_names))})"
        )
    return held


def assign_role(user_id: int, role_name: str) -> UserRole:
    """Assign role to user (idempotent). Caller commits."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise NotFoundError(f"Role {role_name} not found")

    existing = db.session.query(UserRole).filter_by(user_id=user_id, role_id=role.id).first()
    if existing:
        return existing

    user_role = UserRole(user_id=user_id, role_id=role.id)
    db.session.add(user_role)
    db.session.flush()
    # role_names() reads the selectin-loaded relationship
    user = db.session.get(User, user_id)
    if user is not None:
        db.session.expire(user, ["roles"])
    return user_role


def create_default_roles() -> list[Role]:
    """Create the standard roles if they don't exist. Caller commits."""
    roles = []
    for name, desc in DEFAULT_ROLES:
        role = db.session.query(Role).filter_by(name=name).first()
        if not role:
            role = Role(name=name, description=desc)
            db.session.add(role)
        roles.append(role)
    db.session.flush()
    return roles
