"""
Platform user administration: creating and looking up accounts, and changing
name, email, platform role or active flag. Every change leaves an audit entry.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.teamdesk.audit import record_event
from app.teamdesk.constants import AUDIT_CREATE, AUDIT_ROLE_CHANGED, AUDIT_STATUS_CHANGED, AUDIT_UPDATE, USER_ROLES
from app.teamdesk.errors import ValidationError
from app.teamdesk.models import User
from app.teamdesk.security import hash_password

logger = logging.getLogger(__name__)


def list_users(
    s: Session,
    *,
    search: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[User], int]:
    stmt = select(User)
    if search:
        like = f"%{search.strip().lower()}%"
        stmt = stmt.where(or_(func.lower(User.email).like(like), func.lower(User.name).like(like)))
    if role:
        stmt = stmt.where(User.role == role)
    if is_active is not None:
        stmt = stmt.where(User.is_active.is_(is_active))

    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(User.email.asc()).limit(limit).offset(offset)).all()
    return list(rows), int(total)


def _email_taken(s: Session, email: str, *, exclude_id: int | None = None) -> bool:
    stmt = select(User.id).where(func.lower(User.email) == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return s.scalar(stmt) is not None


def get_user(s: Session, user_id: int, *, team_id: int | None = None) -> User | None:
    """
    Look up one account. With team_id, only active members of that team are
    visible; without it (platform admins) any account is.
    """
    user = s.get(User, user_id)
    if user is None:
        return None
    if team_id is not None and (user.team_id != team_id or not user.is_active):
        return None
    return user


def create_user(
    s: Session,
    *,
    actor: User,
    name: str,
    email: str,
    password: str,
    role: str,
) -> User:
    """Create an account directly, placed in the actor's current team (if any)."""
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name or not email or not password or not role:
        raise ValidationError("Name, email, password and role are required.")
    if role not in USER_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(USER_ROLES)}.")
    if _email_taken(s, email):
        raise ValidationError("A user with this email already exists.")

    now = datetime.utcnow()
    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
        team_id=actor.team_id,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()

    record_event(
        s,
        actor_id=actor.id,
        team_id=user.team_id,
        action=AUDIT_CREATE,
        entity_type="user",
        entity_id=user.id,
        description="User created",
        metadata={"email": email, "role": role},
    )
    logger.info("User %s created by %s (role=%s team=%s)", user.id, actor.id, role, user.team_id)
    return user


def update_user(
    s: Session,
    user: User,
    *,
    actor: User,
    name: str | None = None,
    email: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
) -> User:
    """
    Apply whichever of name/email/role/is_active were given. A role change is
    audited as ROLE_CHANGED, an activation change as STATUS_CHANGED, a rename
    or new email as UPDATE.
    """
    if role is not None and role not in USER_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(USER_ROLES)}.")
    if user.id == actor.id and (
        (role is not None and role != user.role) or (is_active is not None and is_active != user.is_active)
    ):
        raise ValidationError("You cannot change your own role or status.")

    now = datetime.utcnow()

    if name is not None:
        name = name.strip()
        if not name:
            raise ValidationError("Name cannot be empty.")
        if name != user.name:
            before = user.name
            user.name = name
            user.updated_at = now
            s.flush()
            record_event(
                s,
                actor_id=actor.id,
                action=AUDIT_UPDATE,
                entity_type="user",
                entity_id=user.id,
                description="User profile updated",
                metadata={"before": {"name": before}, "after": {"name": name}},
            )

    if email is not None:
        email = email.strip().lower()
        if not email:
            raise ValidationError("Email cannot be empty.")
        if email != user.email:
            if _email_taken(s, email, exclude_id=user.id):
                raise ValidationError("A user with this email already exists.")
            before = user.email
            user.email = email
            user.updated_at = now
            s.flush()
            record_event(
                s,
                actor_id=actor.id,
                action=AUDIT_UPDATE,
                entity_type="user",
                entity_id=user.id,
                description="User email changed",
                metadata={"before": {"email": before}, "after": {"email": email}},
            )

    if role is not None and role != user.role:
        before = user.role
        user.role = role
        user.updated_at = now
        s.flush()
        record_event(
            s,
            actor_id=actor.id,
            action=AUDIT_ROLE_CHANGED,
            entity_type="user",
            entity_id=user.id,
            description=f"Role changed from {before} to {role}",
            metadata={"before": before, "after": role},
        )
        logger.info("User %s role changed %s -> %s by %s", user.id, before, role, actor.id)

    if is_active is not None and is_active != user.is_active:
        user.is_active = is_active
        user.updated_at = now
        s.flush()
        record_event(
            s,
            actor_id=actor.id,
            action=AUDIT_STATUS_CHANGED,
            entity_type="user",
            entity_id=user.id,
            description="User activated" if is_active else "User deactivated",
            metadata={"is_active": is_active},
        )
        logger.info("User %s is_active=%s by %s", user.id, is_active, actor.id)

    return user


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "is_active": user.is_active,
        "team_id": user.team_id,
        "team": {"id": user.team.id, "name": user.team.name} if user.team else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }
