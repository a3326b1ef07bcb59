from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.teamdesk.audit import audit_log_to_dict, list_audit_logs
from app.teamdesk.constants import AUDIT_ACTIONS, PLATFORM_ADMIN_ROLES, ROLE_SUPER_ADMIN
from app.teamdesk.db import db_session
from app.teamdesk.errors import NotFoundError, ValidationError
from app.teamdesk.models import User
from app.teamdesk.modules.users.service import create_user, get_user, list_users, update_user, user_to_dict
from app.teamdesk.rbac import require_login, require_role, user_has_role

bp = Blueprint("admin", __name__)

MAX_PAGE_SIZE = 100


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _int_arg(name: str, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.")


def _paging() -> tuple[int, int, int]:
    page = max(1, _int_arg("page", 1) or 1)
    limit = min(MAX_PAGE_SIZE, max(1, _int_arg("limit", 50) or 50))
    return page, limit, (page - 1) * limit


@bp.get("/audit-logs")
@require_role(*PLATFORM_ADMIN_ROLES)
def audit_logs_list():
    """
    Audit trail, newest first. Filters: action, entity_type, user_id, team_id,
    search (description contains). Paged with page/limit.
    """
    action = (request.args.get("action") or "").strip().upper() or None
    if action and action not in AUDIT_ACTIONS:
        raise ValidationError(f"Unknown action: {action}")
    page, limit, offset = _paging()

    rows, total = list_audit_logs(
        db_session(),
        user_id=_int_arg("user_id"),
        team_id=_int_arg("team_id"),
        action=action,
        entity_type=(request.args.get("entity_type") or "").strip() or None,
        search=(request.args.get("search") or "").strip() or None,
        limit=limit,
        offset=offset,
    )
    return jsonify(
        {
            "logs": [audit_log_to_dict(ev) for ev in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        }
    )


@bp.get("/users")
@require_role(*PLATFORM_ADMIN_ROLES)
def users_list():
    page, limit, offset = _paging()
    raw_active = (request.args.get("is_active") or "").strip().lower()
    is_active = None if not raw_active else raw_active in ("1", "true", "yes")
    users, total = list_users(
        db_session(),
        search=(request.args.get("search") or "").strip() or None,
        role=(request.args.get("role") or "").strip().upper() or None,
        is_active=is_active,
        limit=limit,
        offset=offset,
    )
    return jsonify(
        {
            "users": [user_to_dict(u) for u in users],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        }
    )


@bp.post("/users")
@require_role(*PLATFORM_ADMIN_ROLES)
def users_create():
    payload = request.get_json(silent=True) or {}
    fields = {}
    for key in ("name", "email", "password", "role"):
        value = payload.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string.")
        fields[key] = value or ""

    s = db_session()
    try:
        user = create_user(
            s,
            actor=_current_user(),
            name=fields["name"],
            email=fields["email"],
            password=fields["password"],
            role=fields["role"].strip().upper(),
        )
        s.commit()
    except Exception:
        s.rollback()
        raise
    return jsonify({"user": user_to_dict(user)}), 201


@bp.get("/users/<int:user_id>")
@require_login
def users_detail(user_id: int):
    """Platform admins see any account; everyone else only active members of their own team."""
    actor = _current_user()
    if user_has_role(actor, *PLATFORM_ADMIN_ROLES):
        user = get_user(db_session(), user_id)
    elif actor.team_id is None:
        user = None
    else:
        user = get_user(db_session(), user_id, team_id=actor.team_id)
    if user is None:
        raise NotFoundError("User not found.")
    return jsonify({"user": user_to_dict(user)})


@bp.put("/users/<int:user_id>")
@require_role(ROLE_SUPER_ADMIN)
def users_update(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError("User not found.")

    payload = request.get_json(silent=True) or {}
    is_active = payload.get("is_active")
    if is_active is not None and not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean.")
    role = payload.get("role")
    for key in ("name", "email", "role"):
        if payload.get(key) is not None and not isinstance(payload[key], str):
            raise ValidationError(f"{key} must be a string.")

    try:
        update_user(
            s,
            user,
            actor=_current_user(),
            name=payload.get("name"),
            email=payload.get("email"),
            role=role.strip().upper() if role is not None else None,
            is_active=is_active,
        )
        s.commit()
    except Exception:
        s.rollback()
        raise
    return jsonify({"user": user_to_dict(user)})
