"""initial schema: users, sessions, teams, team roles, requests, invites, audit logs

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

users.team_id and teams.created_by reference each other; on Postgres the
users -> teams FK is added after both tables exist.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PENDING_ONLY = sa.text("status = 'PENDING'")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=False), nullable=False)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False))
    return cols


def upgrade() -> None:
    is_sqlite = op.get_bind().dialect.name == "sqlite"

    users_fks = []
    if is_sqlite:
        # SQLite cannot ALTER in a constraint later; forward references are allowed inline.
        users_fks.append(
            sa.ForeignKeyConstraint(["team_id"], ["teams.id"], name="fk_users_team_id", ondelete="SET NULL")
        )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="USER"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("team_id", sa.Integer(), nullable=True),
        *_timestamps(),
        *users_fks,
    )
    op.create_index("idx_users_team", "users", ["team_id"])
    op.create_index("idx_users_role", "users", ["role"])

    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_teams_name", "teams", ["name"])
    op.create_index("idx_teams_created_by", "teams", ["created_by"])

    if not is_sqlite:
        op.create_foreign_key("fk_users_team_id", "users", "teams", ["team_id"], ["id"], ondelete="SET NULL")

    op.create_table(
        "sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("token", sa.String(length=128), nullable=False, unique=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=False), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("idx_sessions_user", "sessions", ["user_id"])
    op.create_index("idx_sessions_expires_at", "sessions", ["expires_at"])

    op.create_table(
        "team_roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("can_manage_requests", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(updated=False),
        sa.UniqueConstraint("team_id", "name", name="uq_team_roles_team_name"),
    )
    op.create_index("idx_team_roles_team", "team_roles", ["team_id"])

    op.create_table(
        "user_team_roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("team_role_id", sa.Integer(), sa.ForeignKey("team_roles.id", ondelete="CASCADE"), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("user_id", "team_role_id", name="uq_user_team_roles_pair"),
    )
    op.create_index("idx_user_team_roles_user", "user_team_roles", ["user_id"])

    op.create_table(
        "team_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        *_timestamps(),
    )
    op.create_index(
        "uq_team_requests_pending_pair",
        "team_requests",
        ["team_id", "user_id"],
        unique=True,
        sqlite_where=PENDING_ONLY,
        postgresql_where=PENDING_ONLY,
    )
    op.create_index("idx_team_requests_user_status", "team_requests", ["user_id", "status"])
    op.create_index("idx_team_requests_team_status", "team_requests", ["team_id", "status"])

    op.create_table(
        "team_invites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("invited_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        *_timestamps(),
    )
    op.create_index(
        "uq_team_invites_pending_pair",
        "team_invites",
        ["team_id", "user_id"],
        unique=True,
        sqlite_where=PENDING_ONLY,
        postgresql_where=PENDING_ONLY,
    )
    op.create_index("idx_team_invites_user_status", "team_invites", ["user_id", "status"])
    op.create_index("idx_team_invites_team_status", "team_invites", ["team_id", "status"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="SET NULL"), nullable=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=512), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
    )
    op.create_index("idx_audit_logs_user", "audit_logs", ["user_id"])
    op.create_index("idx_audit_logs_team", "audit_logs", ["team_id"])
    op.create_index("idx_audit_logs_action", "audit_logs", ["action"])
    op.create_index("idx_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    is_sqlite = op.get_bind().dialect.name == "sqlite"

    op.drop_table("audit_logs")
    op.drop_table("team_invites")
    op.drop_table("team_requests")
    op.drop_table("user_team_roles")
    op.drop_table("team_roles")
    op.drop_table("sessions")
    if not is_sqlite:
        op.drop_constraint("fk_users_team_id", "users", type_="foreignkey")
    op.drop_table("teams")
    op.drop_table("users")
