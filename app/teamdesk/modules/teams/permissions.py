"""
Who may manage a team's join requests and invites.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.teamdesk.constants import PLATFORM_ADMIN_ROLES

from .models import Team, TeamRole, UserTeamRole

if TYPE_CHECKING:
    from app.teamdesk.models import User


# Role names containing any of these (case-insensitive) grant management rights.
# Substring match: "QA Lead" matches "Lead", and so would "Junior Team Lead Trainee".
# TeamRole.can_manage_requests is the explicit alternative.
MANAGEMENT_ROLE_KEYWORDS = (
    "Tech Lead",
    "Design Lead",
    "Marketing Manager",
    "Team Lead",
    "Manager",
    "Lead",
    "Coordinator",
    "Supervisor",
)


def is_management_role_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(keyword.lower() in lowered for keyword in MANAGEMENT_ROLE_KEYWORDS)


def can_manage_team_requests(s: Session, user_id: int, team_id: int) -> bool:
    """
    True if user_id may approve/reject requests and send invites for team_id:
    the team creator, or a holder of an active leadership role in that team.
    Unknown team -> False.
    """
    team = s.get(Team, team_id)
    if team is None:
        return False

    if team.created_by == user_id:
        return True

    roles = s.scalars(
        select(TeamRole)
        .join(UserTeamRole, UserTeamRole.team_role_id == TeamRole.id)
        .where(
            UserTeamRole.user_id == user_id,
            TeamRole.team_id == team_id,
            TeamRole.is_active.is_(True),
        )
    ).all()

    return any(role.can_manage_requests or is_management_role_name(role.name) for role in roles)


def can_manage_team(s: Session, user: "User | None", team_id: int) -> bool:
    """Handler-level check: platform admins manage every team; others go through the resolver."""
    if not user or not user.is_active:
        return False
    if user.role in PLATFORM_ADMIN_ROLES:
        return s.get(Team, team_id) is not None
    return can_manage_team_requests(s, user.id, team_id)
