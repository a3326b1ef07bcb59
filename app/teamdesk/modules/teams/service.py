"""
Teams service layer.
Team/role management and the join request / invite lifecycle.

Nothing here commits. Callers run each operation inside one transaction and
commit once, so a transition and its cascade land together or not at all.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.teamdesk.audit import record_event
from app.teamdesk.constants import (
    AUDIT_CREATE,
    AUDIT_INVITE_ACCEPTED,
    AUDIT_INVITE_DECLINED,
    AUDIT_INVITE_SENT,
    AUDIT_REQUEST_APPROVED,
    AUDIT_REQUEST_REJECTED,
    AUDIT_REQUEST_SENT,
    AUDIT_UPDATE,
)
from app.teamdesk.errors import (
    AlreadyProcessedError,
    DuplicateInviteError,
    DuplicateRequestError,
    NotFoundError,
    UserAlreadyInTeamError,
    ValidationError,
)
from app.teamdesk.models import User

from .models import (
    INVITE_ACCEPTED,
    INVITE_DECLINED,
    INVITE_PENDING,
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    Team,
    TeamInvite,
    TeamRequest,
    TeamRole,
    UserTeamRole,
)

logger = logging.getLogger(__name__)

# Bulk UPDATEs below keep already-loaded objects in step with the row they changed.
_SYNC = {"synchronize_session": "evaluate"}


# ─────────────────────────────────────────────────────────────────────────────
# Teams
# ─────────────────────────────────────────────────────────────────────────────


def create_team(s: Session, *, name: str, description: str | None = None, creator: User) -> Team:
    """Create a new team owned by creator."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Team name is required.")

    now = datetime.utcnow()
    team = Team(
        name=name,
        description=(description or "").strip() or None,
        is_active=True,
        created_by=creator.id,
        created_at=now,
        updated_at=now,
    )
    s.add(team)
    s.flush()  # Get ID

    record_event(
        s,
        actor_id=creator.id,
        team_id=team.id,
        action=AUDIT_CREATE,
        entity_type="team",
        entity_id=team.id,
        description="Team created",
        metadata={"name": team.name},
    )
    return team


def list_teams(s: Session) -> list[Team]:
    return list(s.scalars(select(Team).where(Team.is_active.is_(True)).order_by(Team.name, Team.id)).all())


def get_team(s: Session, team_id: int) -> Team | None:
    return s.get(Team, team_id)


def get_team_members(s: Session, team_id: int) -> list[User]:
    return list(
        s.scalars(
            select(User).where(User.team_id == team_id, User.is_active.is_(True)).order_by(User.name, User.id)
        ).all()
    )


def create_team_role(
    s: Session,
    team: Team,
    *,
    name: str,
    actor: User,
    color: str | None = None,
    can_manage_requests: bool = False,
) -> TeamRole:
    """Add a named role to a team."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Role name is required.")
    exists = s.scalar(select(TeamRole.id).where(TeamRole.team_id == team.id, TeamRole.name == name))
    if exists:
        raise ValidationError(f"Role '{name}' already exists in this team.")

    role = TeamRole(
        team_id=team.id,
        name=name,
        color=(color or "").strip() or None,
        is_active=True,
        can_manage_requests=bool(can_manage_requests),
    )
    s.add(role)
    s.flush()

    record_event(
        s,
        actor_id=actor.id,
        team_id=team.id,
        action=AUDIT_CREATE,
        entity_type="team_role",
        entity_id=role.id,
        description="Team role created",
        metadata={"name": role.name, "can_manage_requests": role.can_manage_requests},
    )
    return role


def assign_team_role(s: Session, role: TeamRole, user: User, *, actor: User) -> UserTeamRole:
    """Give user a role in the team they currently belong to."""
    if user.team_id != role.team_id:
        raise ValidationError("User must be a member of the team to hold its roles.")
    if not role.is_active:
        raise ValidationError("Role is not active.")
    exists = s.scalar(
        select(UserTeamRole.id).where(UserTeamRole.user_id == user.id, UserTeamRole.team_role_id == role.id)
    )
    if exists:
        raise ValidationError("User already holds this role.")

    assignment = UserTeamRole(user_id=user.id, team_role_id=role.id)
    s.add(assignment)
    s.flush()

    record_event(
        s,
        actor_id=actor.id,
        team_id=role.team_id,
        action=AUDIT_UPDATE,
        entity_type="user",
        entity_id=user.id,
        description="Team role assigned",
        metadata={"team_role_id": role.id, "team_role": role.name},
    )
    return assignment


# ─────────────────────────────────────────────────────────────────────────────
# Creation
# ─────────────────────────────────────────────────────────────────────────────


def _require_team(s: Session, team_id: int) -> Team:
    team = s.get(Team, team_id)
    if team is None or not team.is_active:
        raise NotFoundError("Team not found.")
    return team


def _require_user(s: Session, user_id: int) -> User:
    user = s.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFoundError("User not found.")
    return user


def create_team_request(s: Session, *, team_id: int, user_id: int, message: str | None = None) -> TeamRequest:
    """
    A user asks to join a team. One pending request per (team, user); pending
    invites are not considered.
    """
    _require_team(s, team_id)
    _require_user(s, user_id)

    existing = s.scalar(
        select(TeamRequest.id).where(
            TeamRequest.team_id == team_id,
            TeamRequest.user_id == user_id,
            TeamRequest.status == REQUEST_PENDING,
        )
    )
    if existing:
        raise DuplicateRequestError("You already have a pending request for this team.")

    now = datetime.utcnow()
    req = TeamRequest(
        team_id=team_id,
        user_id=user_id,
        message=(message or "").strip() or None,
        status=REQUEST_PENDING,
        created_at=now,
        updated_at=now,
    )
    try:
        with s.begin_nested():
            s.add(req)
    except IntegrityError as e:
        # Lost a race against a concurrent create for the same pair.
        raise DuplicateRequestError("You already have a pending request for this team.") from e

    record_event(
        s,
        actor_id=user_id,
        team_id=team_id,
        action=AUDIT_REQUEST_SENT,
        entity_type="request",
        entity_id=req.id,
        description="Team join request sent",
    )
    logger.info("Team request %s created (team=%s user=%s)", req.id, team_id, user_id)
    return req


def create_team_invite(
    s: Session,
    *,
    team_id: int,
    user_id: int,
    invited_by: int,
    message: str | None = None,
) -> TeamInvite:
    """
    Invite a user to a team. The caller has already checked that invited_by
    may manage the team.
    """
    _require_team(s, team_id)
    _require_user(s, user_id)

    existing = s.scalar(
        select(TeamInvite.id).where(
            TeamInvite.team_id == team_id,
            TeamInvite.user_id == user_id,
            TeamInvite.status == INVITE_PENDING,
        )
    )
    if existing:
        raise DuplicateInviteError("A pending invite for this user already exists.")

    now = datetime.utcnow()
    invite = TeamInvite(
        team_id=team_id,
        user_id=user_id,
        invited_by=invited_by,
        message=(message or "").strip() or None,
        status=INVITE_PENDING,
        created_at=now,
        updated_at=now,
    )
    try:
        with s.begin_nested():
            s.add(invite)
    except IntegrityError as e:
        raise DuplicateInviteError("A pending invite for this user already exists.") from e

    record_event(
        s,
        actor_id=invited_by,
        team_id=team_id,
        action=AUDIT_INVITE_SENT,
        entity_type="invite",
        entity_id=invite.id,
        description="Team invite sent",
        metadata={"invited_user_id": user_id},
    )
    logger.info("Team invite %s created (team=%s user=%s by=%s)", invite.id, team_id, user_id, invited_by)
    return invite


# ─────────────────────────────────────────────────────────────────────────────
# Transitions
# ─────────────────────────────────────────────────────────────────────────────


def _load_pending_request(s: Session, request_id: int) -> TeamRequest:
    req = s.get(TeamRequest, request_id, with_for_update=True, populate_existing=True)
    if req is None:
        raise NotFoundError("Request not found.")
    if req.status != REQUEST_PENDING:
        raise AlreadyProcessedError("Request has already been processed.")
    return req


def _load_pending_invite(s: Session, invite_id: int) -> TeamInvite:
    invite = s.get(TeamInvite, invite_id, with_for_update=True, populate_existing=True)
    if invite is None:
        raise NotFoundError("Invite not found.")
    if invite.status != INVITE_PENDING:
        raise AlreadyProcessedError("Invite has already been processed.")
    return invite


def _lock_owner(s: Session, model: type[TeamRequest] | type[TeamInvite], item_id: int, missing: str) -> User:
    """
    Lock the user a request/invite belongs to before locking the item itself.
    Joining transitions for one user all queue on this row, so the cascade
    never waits on an item another joining transition already holds.
    """
    user_id = s.scalar(select(model.user_id).where(model.id == item_id))
    if user_id is None:
        raise NotFoundError(missing)
    user = s.get(User, user_id, with_for_update=True, populate_existing=True)
    if user is None:
        raise NotFoundError("User not found.")
    return user


def _require_teamless(user: User) -> None:
    if user.team_id is not None:
        raise UserAlreadyInTeamError("User already belongs to a team.")


def _resolve_request(s: Session, request_id: int, new_status: str, now: datetime) -> None:
    """PENDING -> new_status, re-checked in the UPDATE itself."""
    result = s.execute(
        update(TeamRequest)
        .where(TeamRequest.id == request_id, TeamRequest.status == REQUEST_PENDING)
        .values(status=new_status, updated_at=now)
        .execution_options(**_SYNC)
    )
    if result.rowcount != 1:
        raise AlreadyProcessedError("Request has already been processed.")


def _resolve_invite(s: Session, invite_id: int, new_status: str, now: datetime) -> None:
    result = s.execute(
        update(TeamInvite)
        .where(TeamInvite.id == invite_id, TeamInvite.status == INVITE_PENDING)
        .values(status=new_status, updated_at=now)
        .execution_options(**_SYNC)
    )
    if result.rowcount != 1:
        raise AlreadyProcessedError("Invite has already been processed.")


def _join_team(s: Session, user: User, team_id: int, now: datetime) -> None:
    result = s.execute(
        update(User)
        .where(User.id == user.id, User.team_id.is_(None))
        .values(team_id=team_id, updated_at=now)
        .execution_options(**_SYNC)
    )
    if result.rowcount != 1:
        raise UserAlreadyInTeamError("User already belongs to a team.")
    # Relationship collections were loaded before the UPDATE.
    s.expire(user, ["team"])
    team = s.get(Team, team_id)
    if team is not None:
        s.expire(team, ["members"])


def _close_other_pending(
    s: Session,
    user_id: int,
    now: datetime,
    *,
    keep_request_id: int | None = None,
    keep_invite_id: int | None = None,
) -> tuple[int, int]:
    """Reject the user's other pending requests and decline other pending invites."""
    req_stmt = update(TeamRequest).where(TeamRequest.user_id == user_id, TeamRequest.status == REQUEST_PENDING)
    if keep_request_id is not None:
        req_stmt = req_stmt.where(TeamRequest.id != keep_request_id)
    rejected = s.execute(req_stmt.values(status=REQUEST_REJECTED, updated_at=now).execution_options(**_SYNC)).rowcount

    inv_stmt = update(TeamInvite).where(TeamInvite.user_id == user_id, TeamInvite.status == INVITE_PENDING)
    if keep_invite_id is not None:
        inv_stmt = inv_stmt.where(TeamInvite.id != keep_invite_id)
    declined = s.execute(inv_stmt.values(status=INVITE_DECLINED, updated_at=now).execution_options(**_SYNC)).rowcount

    return int(rejected or 0), int(declined or 0)


def approve_team_request(s: Session, request_id: int, *, actor_id: int | None = None) -> TeamRequest:
    """
    Approve a pending request: the user joins the team and every other pending
    request/invite of that user is closed.

    Raises NotFoundError, AlreadyProcessedError, UserAlreadyInTeamError.
    """
    user = _lock_owner(s, TeamRequest, request_id, "Request not found.")
    req = _load_pending_request(s, request_id)
    _require_teamless(user)
    now = datetime.utcnow()

    _resolve_request(s, req.id, REQUEST_APPROVED, now)
    _join_team(s, user, req.team_id, now)
    rejected, declined = _close_other_pending(s, user.id, now, keep_request_id=req.id)

    record_event(
        s,
        actor_id=actor_id or user.id,
        team_id=req.team_id,
        action=AUDIT_REQUEST_APPROVED,
        entity_type="request",
        entity_id=req.id,
        description="Team join request approved",
        metadata={"user_id": user.id, "rejected_requests": rejected, "declined_invites": declined},
    )
    logger.info(
        "Team request %s approved: user %s joined team %s (closed %s requests, %s invites)",
        req.id,
        user.id,
        req.team_id,
        rejected,
        declined,
    )
    return req


def reject_team_request(s: Session, request_id: int, *, actor_id: int | None = None) -> TeamRequest:
    """Reject a pending request. No cascade."""
    req = _load_pending_request(s, request_id)
    _resolve_request(s, req.id, REQUEST_REJECTED, datetime.utcnow())

    record_event(
        s,
        actor_id=actor_id or req.user_id,
        team_id=req.team_id,
        action=AUDIT_REQUEST_REJECTED,
        entity_type="request",
        entity_id=req.id,
        description="Team join request rejected",
        metadata={"user_id": req.user_id},
    )
    return req


def cancel_team_request(s: Session, request_id: int, *, actor_id: int | None = None) -> TeamRequest:
    """
    Requester withdraws a pending request. Ends in REJECTED, same as a
    rejection; there is no separate cancelled state.
    """
    req = _load_pending_request(s, request_id)
    _resolve_request(s, req.id, REQUEST_REJECTED, datetime.utcnow())

    record_event(
        s,
        actor_id=actor_id or req.user_id,
        team_id=req.team_id,
        action=AUDIT_REQUEST_REJECTED,
        entity_type="request",
        entity_id=req.id,
        description="Team join request cancelled",
        metadata={"user_id": req.user_id, "cancelled": True},
    )
    return req


def accept_team_invite(s: Session, invite_id: int, *, actor_id: int | None = None) -> TeamInvite:
    """
    Accept a pending invite: the user joins the team and every pending request
    and every other pending invite of that user is closed.

    Raises NotFoundError, AlreadyProcessedError, UserAlreadyInTeamError.
    """
    user = _lock_owner(s, TeamInvite, invite_id, "Invite not found.")
    invite = _load_pending_invite(s, invite_id)
    _require_teamless(user)
    now = datetime.utcnow()

    _resolve_invite(s, invite.id, INVITE_ACCEPTED, now)
    _join_team(s, user, invite.team_id, now)
    rejected, declined = _close_other_pending(s, user.id, now, keep_invite_id=invite.id)

    record_event(
        s,
        actor_id=actor_id or user.id,
        team_id=invite.team_id,
        action=AUDIT_INVITE_ACCEPTED,
        entity_type="invite",
        entity_id=invite.id,
        description="Team invite accepted",
        metadata={"user_id": user.id, "rejected_requests": rejected, "declined_invites": declined},
    )
    logger.info(
        "Team invite %s accepted: user %s joined team %s (closed %s requests, %s invites)",
        invite.id,
        user.id,
        invite.team_id,
        rejected,
        declined,
    )
    return invite


def decline_team_invite(s: Session, invite_id: int, *, actor_id: int | None = None) -> TeamInvite:
    """Decline a pending invite. No cascade."""
    invite = _load_pending_invite(s, invite_id)
    _resolve_invite(s, invite.id, INVITE_DECLINED, datetime.utcnow())

    record_event(
        s,
        actor_id=actor_id or invite.user_id,
        team_id=invite.team_id,
        action=AUDIT_INVITE_DECLINED,
        entity_type="invite",
        entity_id=invite.id,
        description="Team invite declined",
    )
    return invite


# ─────────────────────────────────────────────────────────────────────────────
# Reads (pending only, newest first)
# ─────────────────────────────────────────────────────────────────────────────


def get_team_requests(s: Session, team_id: int) -> list[TeamRequest]:
    return list(
        s.scalars(
            select(TeamRequest)
            .where(TeamRequest.team_id == team_id, TeamRequest.status == REQUEST_PENDING)
            .order_by(TeamRequest.created_at.desc(), TeamRequest.id.desc())
        ).all()
    )


def get_team_invites(s: Session, team_id: int) -> list[TeamInvite]:
    return list(
        s.scalars(
            select(TeamInvite)
            .where(TeamInvite.team_id == team_id, TeamInvite.status == INVITE_PENDING)
            .order_by(TeamInvite.created_at.desc(), TeamInvite.id.desc())
        ).all()
    )


def get_user_team_requests(s: Session, user_id: int) -> list[TeamRequest]:
    return list(
        s.scalars(
            select(TeamRequest)
            .where(TeamRequest.user_id == user_id, TeamRequest.status == REQUEST_PENDING)
            .order_by(TeamRequest.created_at.desc(), TeamRequest.id.desc())
        ).all()
    )


def get_user_team_invites(s: Session, user_id: int) -> list[TeamInvite]:
    return list(
        s.scalars(
            select(TeamInvite)
            .where(TeamInvite.user_id == user_id, TeamInvite.status == INVITE_PENDING)
            .order_by(TeamInvite.created_at.desc(), TeamInvite.id.desc())
        ).all()
    )


# ─────────────────────────────────────────────────────────────────────────────
# JSON shapes
# ─────────────────────────────────────────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def user_brief(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def team_brief(team: Team | None) -> dict[str, Any] | None:
    if team is None:
        return None
    return {"id": team.id, "name": team.name, "description": team.description}


def role_to_dict(role: TeamRole) -> dict[str, Any]:
    return {
        "id": role.id,
        "team_id": role.team_id,
        "name": role.name,
        "color": role.color,
        "is_active": role.is_active,
        "can_manage_requests": role.can_manage_requests,
    }


def team_to_dict(team: Team, *, detail: bool = False) -> dict[str, Any]:
    members = [m for m in team.members if m.is_active]
    data: dict[str, Any] = {
        "id": team.id,
        "name": team.name,
        "description": team.description,
        "is_active": team.is_active,
        "created_at": _iso(team.created_at),
        "updated_at": _iso(team.updated_at),
        "creator": user_brief(team.creator),
        "member_count": len(members),
    }
    if detail:
        data["members"] = [user_brief(m) for m in members]
        data["roles"] = [role_to_dict(r) for r in team.roles]
    return data


def request_to_dict(req: TeamRequest) -> dict[str, Any]:
    return {
        "id": req.id,
        "team_id": req.team_id,
        "user_id": req.user_id,
        "message": req.message,
        "status": req.status,
        "created_at": _iso(req.created_at),
        "updated_at": _iso(req.updated_at),
        "team": team_brief(req.team),
        "user": user_brief(req.user),
    }


def invite_to_dict(invite: TeamInvite) -> dict[str, Any]:
    return {
        "id": invite.id,
        "team_id": invite.team_id,
        "user_id": invite.user_id,
        "invited_by": invite.invited_by,
        "message": invite.message,
        "status": invite.status,
        "created_at": _iso(invite.created_at),
        "updated_at": _iso(invite.updated_at),
        "team": team_brief(invite.team),
        "user": user_brief(invite.user),
        "sender": user_brief(invite.sender),
    }
