from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from app.teamdesk.modules.teams.models import Team, UserTeamRole


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_team", "team_id"),
        Index("idx_users_role", "role"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="USER")  # SUPER_ADMIN, ADMIN, MANAGER, USER
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Zero or one team at any time
    team_id: Mapped[int | None] = mapped_column(
        ForeignKey("teams.id", ondelete="SET NULL", use_alter=True, name="fk_users_team_id"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    team: Mapped["Team | None"] = relationship(
        "Team",
        foreign_keys=[team_id],
        back_populates="members",
        lazy="selectin",
    )
    created_teams: Mapped[list["Team"]] = relationship(
        "Team",
        foreign_keys="Team.created_by",
        back_populates="creator",
        lazy="selectin",
    )
    team_roles: Mapped[list["UserTeamRole"]] = relationship(
        "UserTeamRole",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class AuthSession(Base):
    """
    Server-side login session. The opaque token is what the client holds.
    """

    __tablename__ = "sessions"
    __table_args__ = (
        Index("idx_sessions_user", "user_id"),
        Index("idx_sessions_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped[User] = relationship(lazy="joined")


class AuditLog(Base):
    """
    Append-only audit trail entry.
    Rows are only ever inserted; nothing in the application updates or deletes them.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_user", "user_id"),
        Index("idx_audit_logs_team", "team_id"),
        Index("idx_audit_logs_action", "action"),
        Index("idx_audit_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)  # actor
    team_id: Mapped[int | None] = mapped_column(ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)

    action: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "REQUEST_APPROVED"
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "request"
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # string for flexibility

    description: Mapped[str] = mapped_column(String(512), nullable=False)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    user: Mapped[User] = relationship(lazy="selectin")
    team: Mapped["Team | None"] = relationship("Team", lazy="selectin")


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.teamdesk.modules.teams.models import (  # noqa: E402,F401
    Team,
    TeamInvite,
    TeamRequest,
    TeamRole,
    UserTeamRole,
)
