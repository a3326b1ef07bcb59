from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.teamdesk.audit import record_event
from app.teamdesk.constants import AUDIT_CREATE, AUDIT_LOGIN, AUDIT_LOGOUT, ROLE_USER
from app.teamdesk.db import db_session
from app.teamdesk.errors import InvalidCredentialsError, NotAuthenticatedError, ValidationError
from app.teamdesk.models import AuthSession, User
from app.teamdesk.rate_limit import check_rate_limit, client_identifier, get_limiter
from app.teamdesk.security import hash_password, new_session_token, verify_password

bp = Blueprint("auth", __name__)

# Key under which the opaque session token lives in the signed cookie.
SESSION_TOKEN_KEY = "session_token"
DEFAULT_SESSION_TTL_HOURS = 24 * 7


# ─────────────────────────────────────────────────────────────────────────────
# Identity provider
# ─────────────────────────────────────────────────────────────────────────────


def signup(s: Session, *, email: str, password: str, name: str) -> User:
    email = (email or "").strip().lower()
    name = (name or "").strip()
    if not email or not password or not name:
        raise ValidationError("Email, password and name are required.")

    existing = s.scalar(select(User.id).where(func.lower(User.email) == email))
    if existing:
        raise ValidationError("A user with this email already exists.")

    now = datetime.utcnow()
    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        role=ROLE_USER,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()

    record_event(
        s,
        actor_id=user.id,
        action=AUDIT_CREATE,
        entity_type="user",
        entity_id=user.id,
        description="User signed up",
    )
    return user


def login(s: Session, *, email: str, password: str, ttl_hours: int = DEFAULT_SESSION_TTL_HOURS) -> AuthSession:
    """Check credentials and open a server-side session. Unknown, inactive and wrong password look the same."""
    email = (email or "").strip().lower()
    if not email or not password:
        raise ValidationError("Email and password are required.")

    user = s.scalar(select(User).where(func.lower(User.email) == email))
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise InvalidCredentialsError()

    auth_session = AuthSession(
        token=new_session_token(),
        user_id=user.id,
        expires_at=datetime.utcnow() + timedelta(hours=ttl_hours),
    )
    s.add(auth_session)
    s.flush()

    record_event(s, actor_id=user.id, action=AUDIT_LOGIN, entity_type="user", entity_id=user.id, description="User logged in")
    return auth_session


def logout(s: Session, token: str | None) -> None:
    if not token:
        return
    auth_session = s.scalar(select(AuthSession).where(AuthSession.token == token))
    if auth_session is None:
        return
    user_id = auth_session.user_id
    s.execute(delete(AuthSession).where(AuthSession.token == token))
    record_event(s, actor_id=user_id, action=AUDIT_LOGOUT, entity_type="user", entity_id=user_id, description="User logged out")


def get_session_user(s: Session, token: str | None) -> User | None:
    """
    Resolve an opaque token to its user. None when the token is missing,
    unknown or expired, or the user has been deactivated.
    """
    if not token:
        return None
    auth_session = s.scalar(select(AuthSession).where(AuthSession.token == token))
    if auth_session is None or auth_session.expires_at < datetime.utcnow():
        return None
    user = auth_session.user
    if user is None or not user.is_active:
        return None
    return user


def serialize_identity(user: User) -> dict[str, Any]:
    """The identity handed to callers: user, current team with the user's roles in it, and owned teams."""
    team_data = None
    if user.team is not None:
        team = user.team
        team_data = {
            "id": team.id,
            "name": team.name,
            "description": team.description,
            "is_active": team.is_active,
            "creator": {"id": team.creator.id, "name": team.creator.name, "email": team.creator.email},
            "member_count": sum(1 for m in team.members if m.is_active),
            "my_roles": [
                {"id": a.team_role.id, "name": a.team_role.name, "color": a.team_role.color}
                for a in user.team_roles
                if a.team_role.team_id == team.id and a.team_role.is_active
            ],
        }
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "is_active": user.is_active,
        "team_id": user.team_id,
        "team": team_data,
        "created_teams": [
            {
                "id": t.id,
                "name": t.name,
                "description": t.description,
                "is_active": t.is_active,
                "member_count": sum(1 for m in t.members if m.is_active),
            }
            for t in user.created_teams
        ],
    }


def load_current_user() -> None:
    """
    Loads g.current_user from the session token in the signed cookie.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    token = session.get(SESSION_TOKEN_KEY)
    if not token:
        g.current_user = None
        return

    try:
        user = get_session_user(db_session(), token)
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        user = None
    if user is None:
        session.pop(SESSION_TOKEN_KEY, None)
    g.current_user = user


# ─────────────────────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────────────────────


@bp.post("/signup")
def signup_post():
    check_rate_limit("auth")
    payload = request.get_json(silent=True) or {}
    s = db_session()
    try:
        user = signup(
            s,
            email=str(payload.get("email") or ""),
            password=str(payload.get("password") or ""),
            name=str(payload.get("name") or ""),
        )
        s.commit()
    except Exception:
        s.rollback()
        raise
    return jsonify({"user": serialize_identity(user)}), 201


@bp.post("/login")
def login_post():
    ip = client_identifier()
    check_rate_limit("auth", ip)
    payload = request.get_json(silent=True) or {}
    email = str(payload.get("email") or "").strip().lower()

    s = db_session()
    try:
        auth_session = login(
            s,
            email=email,
            password=str(payload.get("password") or ""),
            ttl_hours=current_app.config["SESSION_TTL_HOURS"],
        )
        s.commit()
    except InvalidCredentialsError:
        s.rollback()
        current_app.logger.warning("Login failed (email=%s ip=%s request_id=%s)", email, ip, getattr(g, "request_id", None))
        raise
    except Exception:
        s.rollback()
        raise

    session.clear()
    session.permanent = True
    session[SESSION_TOKEN_KEY] = auth_session.token
    get_limiter("auth").reset(ip)
    return jsonify({"ok": True, "expires_at": auth_session.expires_at.isoformat()})


@bp.post("/logout")
def logout_post():
    s = db_session()
    try:
        logout(s, session.get(SESSION_TOKEN_KEY))
        s.commit()
    except Exception:
        s.rollback()
        raise
    session.pop(SESSION_TOKEN_KEY, None)
    return jsonify({"ok": True})


@bp.get("/session")
def session_get():
    user: User | None = getattr(g, "current_user", None)
    if user is None:
        raise NotAuthenticatedError()
    return jsonify({"user": serialize_identity(user)})
