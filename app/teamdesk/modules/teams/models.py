from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.teamdesk.models import Base

if TYPE_CHECKING:
    from app.teamdesk.models import User


# TeamRequest.status
REQUEST_PENDING = "PENDING"
REQUEST_APPROVED = "APPROVED"
REQUEST_REJECTED = "REJECTED"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED)

# TeamInvite.status
INVITE_PENDING = "PENDING"
INVITE_ACCEPTED = "ACCEPTED"
INVITE_DECLINED = "DECLINED"
INVITE_STATUSES = (INVITE_PENDING, INVITE_ACCEPTED, INVITE_DECLINED)

_PENDING_ONLY = text("status = 'PENDING'")


class Team(Base):
    __tablename__ = "teams"
    __table_args__ = (
        Index("idx_teams_name", "name"),
        Index("idx_teams_created_by", "created_by"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    creator: Mapped["User"] = relationship(
        "User",
        foreign_keys=[created_by],
        back_populates="created_teams",
        lazy="selectin",
    )
    members: Mapped[list["User"]] = relationship(
        "User",
        foreign_keys="User.team_id",
        back_populates="team",
        lazy="selectin",
    )
    roles: Mapped[list["TeamRole"]] = relationship(
        "TeamRole",
        back_populates="team",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TeamRole.id",
    )


class TeamRole(Base):
    __tablename__ = "team_roles"
    __table_args__ = (
        UniqueConstraint("team_id", "name", name="uq_team_roles_team_name"),
        Index("idx_team_roles_team", "team_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "Tech Lead"
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)  # e.g. "#3B82F6"
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Explicit grant; name keywords still apply for roles that predate the flag
    can_manage_requests: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    team: Mapped[Team] = relationship(back_populates="roles")
    assignments: Mapped[list["UserTeamRole"]] = relationship(
        "UserTeamRole",
        back_populates="team_role",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class UserTeamRole(Base):
    __tablename__ = "user_team_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "team_role_id", name="uq_user_team_roles_pair"),
        Index("idx_user_team_roles_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    team_role_id: Mapped[int] = mapped_column(ForeignKey("team_roles.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped["User"] = relationship("User", back_populates="team_roles")
    team_role: Mapped[TeamRole] = relationship(back_populates="assignments", lazy="selectin")


class TeamRequest(Base):
    """User-initiated ask to join a team."""

    __tablename__ = "team_requests"
    __table_args__ = (
        # One open request per (team, user); resolved rows are history and may repeat.
        Index(
            "uq_team_requests_pending_pair",
            "team_id",
            "user_id",
            unique=True,
            sqlite_where=_PENDING_ONLY,
            postgresql_where=_PENDING_ONLY,
        ),
        Index("idx_team_requests_user_status", "user_id", "status"),
        Index("idx_team_requests_team_status", "team_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=REQUEST_PENDING)  # PENDING, APPROVED, REJECTED

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    team: Mapped[Team] = relationship(lazy="selectin")
    user: Mapped["User"] = relationship("User", lazy="selectin")


class TeamInvite(Base):
    """Team-side ask for a user to join."""

    __tablename__ = "team_invites"
    __table_args__ = (
        Index(
            "uq_team_invites_pending_pair",
            "team_id",
            "user_id",
            unique=True,
            sqlite_where=_PENDING_ONLY,
            postgresql_where=_PENDING_ONLY,
        ),
        Index("idx_team_invites_user_status", "user_id", "status"),
        Index("idx_team_invites_team_status", "team_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    invited_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=INVITE_PENDING)  # PENDING, ACCEPTED, DECLINED

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    team: Mapped[Team] = relationship(lazy="selectin")
    user: Mapped["User"] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    sender: Mapped["User"] = relationship("User", foreign_keys=[invited_by], lazy="selectin")
