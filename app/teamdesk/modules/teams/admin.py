from __future__ import annotations

from typing import Any, Callable

from flask import Blueprint, current_app, g, jsonify, request

from app.teamdesk.db import db_session
from app.teamdesk.errors import NotFoundError, UnauthorizedError, ValidationError
from app.teamdesk.models import User
from app.teamdesk.modules.teams.models import TeamInvite, TeamRequest, TeamRole
from app.teamdesk.modules.teams.permissions import can_manage_team
from app.teamdesk.modules.teams.service import (
    accept_team_invite,
    approve_team_request,
    assign_team_role,
    cancel_team_request,
    create_team,
    create_team_invite,
    create_team_request,
    create_team_role,
    decline_team_invite,
    get_team,
    get_team_invites,
    get_team_members,
    get_team_requests,
    get_user_team_invites,
    get_user_team_requests,
    invite_to_dict,
    list_teams,
    reject_team_request,
    request_to_dict,
    role_to_dict,
    team_to_dict,
    user_brief,
)
from app.teamdesk.rate_limit import check_rate_limit
from app.teamdesk.rbac import require_login

bp = Blueprint("teams", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict[str, Any]:
    return request.get_json(silent=True) or {}


def _int_field(payload: dict[str, Any], key: str) -> int:
    raw = payload.get(key)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} is required and must be an integer.")


def _str_field(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string.")
    return value


def _check_action_limit() -> None:
    check_rate_limit("user_action", f"user:{_current_user().id}")


def _require_manager(team_id: int) -> None:
    if get_team(db_session(), team_id) is None:
        raise NotFoundError("Team not found.")
    if not can_manage_team(db_session(), _current_user(), team_id):
        raise UnauthorizedError()


def _commit(fn: Callable[[], Any]) -> Any:
    """Run one mutation and commit it, or roll everything back."""
    s = db_session()
    try:
        result = fn()
        s.commit()
    except Exception:
        s.rollback()
        raise
    return result


# ---------- Teams ----------
@bp.get("")
@require_login
def teams_list():
    teams = list_teams(db_session())
    return jsonify({"teams": [team_to_dict(t) for t in teams]})


@bp.post("")
@require_login
def teams_create():
    _check_action_limit()
    payload = _payload()
    user = _current_user()
    team = _commit(
        lambda: create_team(
            db_session(),
            name=_str_field(payload, "name") or "",
            description=_str_field(payload, "description"),
            creator=user,
        )
    )
    current_app.logger.info("Team %s created by user %s", team.id, user.id)
    return jsonify({"team": team_to_dict(team, detail=True)}), 201


@bp.get("/<int:team_id>")
@require_login
def teams_detail(team_id: int):
    team = get_team(db_session(), team_id)
    if team is None:
        raise NotFoundError("Team not found.")
    return jsonify({"team": team_to_dict(team, detail=True)})


@bp.get("/<int:team_id>/members")
@require_login
def teams_members(team_id: int):
    s = db_session()
    if get_team(s, team_id) is None:
        raise NotFoundError("Team not found.")
    members = get_team_members(s, team_id)
    return jsonify({"members": [user_brief(m) for m in members]})


@bp.get("/<int:team_id>/requests")
@require_login
def teams_pending_requests(team_id: int):
    _require_manager(team_id)
    rows = get_team_requests(db_session(), team_id)
    return jsonify({"requests": [request_to_dict(r) for r in rows]})


@bp.get("/<int:team_id>/invites")
@require_login
def teams_pending_invites(team_id: int):
    _require_manager(team_id)
    rows = get_team_invites(db_session(), team_id)
    return jsonify({"invites": [invite_to_dict(i) for i in rows]})


# ---------- Team roles ----------
@bp.post("/<int:team_id>/roles")
@require_login
def team_roles_create(team_id: int):
    _check_action_limit()
    _require_manager(team_id)
    payload = _payload()
    team = get_team(db_session(), team_id)
    role = _commit(
        lambda: create_team_role(
            db_session(),
            team,
            name=_str_field(payload, "name") or "",
            color=_str_field(payload, "color"),
            can_manage_requests=bool(payload.get("can_manage_requests")),
            actor=_current_user(),
        )
    )
    return jsonify({"role": role_to_dict(role)}), 201


@bp.post("/<int:team_id>/roles/<int:role_id>/members")
@require_login
def team_roles_assign(team_id: int, role_id: int):
    _check_action_limit()
    _require_manager(team_id)
    s = db_session()
    role = s.get(TeamRole, role_id)
    if role is None or role.team_id != team_id:
        raise NotFoundError("Team role not found.")
    user = s.get(User, _int_field(_payload(), "user_id"))
    if user is None:
        raise NotFoundError("User not found.")
    assignment = _commit(lambda: assign_team_role(s, role, user, actor=_current_user()))
    return jsonify({"assignment": {"id": assignment.id, "user_id": user.id, "team_role": role_to_dict(role)}}), 201


# ---------- Join requests ----------
@bp.get("/requests")
@require_login
def requests_mine():
    rows = get_user_team_requests(db_session(), _current_user().id)
    return jsonify({"requests": [request_to_dict(r) for r in rows]})


@bp.post("/requests")
@require_login
def requests_create():
    _check_action_limit()
    payload = _payload()
    team_id = _int_field(payload, "team_id")
    user = _current_user()
    req = _commit(
        lambda: create_team_request(db_session(), team_id=team_id, user_id=user.id, message=_str_field(payload, "message"))
    )
    return jsonify({"request": request_to_dict(req)}), 201


@bp.put("/requests/<int:request_id>")
@require_login
def requests_update(request_id: int):
    _check_action_limit()
    action = (_str_field(_payload(), "action") or "").strip().lower()
    s = db_session()
    user = _current_user()

    req = s.get(TeamRequest, request_id)
    if req is None:
        raise NotFoundError("Request not found.")

    if action in ("approve", "reject"):
        if not can_manage_team(s, user, req.team_id):
            raise UnauthorizedError()
        transition = approve_team_request if action == "approve" else reject_team_request
    elif action == "cancel":
        if req.user_id != user.id:
            raise UnauthorizedError("Only the requester can cancel a request.")
        transition = cancel_team_request
    else:
        raise ValidationError("action must be one of: approve, reject, cancel.")

    req = _commit(lambda: transition(s, request_id, actor_id=user.id))
    current_app.logger.info("Team request %s %s by user %s", request_id, action, user.id)
    return jsonify({"request": request_to_dict(req)})


# ---------- Invites ----------
@bp.get("/invites")
@require_login
def invites_mine():
    rows = get_user_team_invites(db_session(), _current_user().id)
    return jsonify({"invites": [invite_to_dict(i) for i in rows]})


@bp.post("/invites")
@require_login
def invites_create():
    _check_action_limit()
    payload = _payload()
    team_id = _int_field(payload, "team_id")
    user_id = _int_field(payload, "user_id")
    _require_manager(team_id)
    actor = _current_user()
    invite = _commit(
        lambda: create_team_invite(
            db_session(), team_id=team_id, user_id=user_id, invited_by=actor.id, message=_str_field(payload, "message")
        )
    )
    return jsonify({"invite": invite_to_dict(invite)}), 201


@bp.put("/invites/<int:invite_id>")
@require_login
def invites_update(invite_id: int):
    _check_action_limit()
    action = (_str_field(_payload(), "action") or "").strip().lower()
    s = db_session()
    user = _current_user()

    invite = s.get(TeamInvite, invite_id)
    if invite is None:
        raise NotFoundError("Invite not found.")
    if invite.user_id != user.id:
        raise UnauthorizedError("Only the invited user can respond to an invite.")

    if action == "accept":
        transition = accept_team_invite
    elif action == "decline":
        transition = decline_team_invite
    else:
        raise ValidationError("action must be one of: accept, decline.")

    invite = _commit(lambda: transition(s, invite_id, actor_id=user.id))
    current_app.logger.info("Team invite %s %s by user %s", invite_id, action, user.id)
    return jsonify({"invite": invite_to_dict(invite)})
