import os
import sys
from datetime import datetime
from pathlib import Path

from sqlalchemy import select

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.teamdesk.constants import ROLE_MANAGER, ROLE_SUPER_ADMIN, ROLE_USER
from app.teamdesk.models import User
from app.teamdesk.modules.teams.models import Team, TeamRole, UserTeamRole
from app.teamdesk.security import hash_password
from scripts._db_utils import script_session

# team name -> (description, [(role name, color)])
DEMO_TEAMS: dict[str, tuple[str, list[tuple[str, str]]]] = {
    "Development": (
        "Builds and ships the software",
        [
            ("Tech Lead", "#3B82F6"),
            ("Full Stack Developer", "#10B981"),
            ("Frontend Developer", "#F59E0B"),
            ("Backend Developer", "#8B5CF6"),
            ("QA Engineer", "#EF4444"),
        ],
    ),
    "Design": (
        "Product design and UX",
        [
            ("Design Lead", "#EC4899"),
            ("UX Designer", "#06B6D4"),
            ("UI Designer", "#84CC16"),
            ("Product Designer", "#F97316"),
        ],
    ),
    "Marketing": (
        "Marketing and sales",
        [
            ("Marketing Manager", "#6366F1"),
            ("Digital Marketing", "#14B8A6"),
            ("Content Creator", "#F43F5E"),
            ("SEO Specialist", "#A855F7"),
        ],
    ),
}

# Demo members: (email, name, platform role, team, team role)
DEMO_USERS = [
    ("techlead@example.com", "Carlos Tech Lead", ROLE_MANAGER, "Development", "Tech Lead"),
    ("fullstack@example.com", "Ana Full Stack", ROLE_USER, "Development", "Full Stack Developer"),
    ("designlead@example.com", "Beatriz Design Lead", ROLE_MANAGER, "Design", "Design Lead"),
    ("ux@example.com", "Pedro UX", ROLE_USER, "Design", "UX Designer"),
    ("marketing@example.com", "Julia Marketing", ROLE_MANAGER, "Marketing", "Marketing Manager"),
    ("newcomer@example.com", "Lucas Newcomer", ROLE_USER, None, None),
]


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the super admin and the demo teams/roles in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    Demo member accounts are only created with SEED_DEMO_USERS=1.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    demo_password = os.environ.get("DEMO_PASSWORD") or "change-me"
    with_demo_users = (os.environ.get("SEED_DEMO_USERS") or "").strip() == "1"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///teamdesk.db").strip()

    # Direct engine/session so this can run in release without building the Flask app.
    with script_session(db_url) as s:
        now = datetime.utcnow()

        admin = s.scalar(select(User).where(User.email == admin_email))
        if not admin:
            admin = User(
                email=admin_email,
                name="Administrator",
                password_hash=hash_password(admin_password),
                role=ROLE_SUPER_ADMIN,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            s.add(admin)
            s.flush()

        teams: dict[str, Team] = {}
        roles: dict[tuple[str, str], TeamRole] = {}
        for team_name, (description, role_specs) in DEMO_TEAMS.items():
            team = s.scalar(select(Team).where(Team.name == team_name))
            if not team:
                team = Team(
                    name=team_name,
                    description=description,
                    is_active=True,
                    created_by=admin.id,
                    created_at=now,
                    updated_at=now,
                )
                s.add(team)
                s.flush()
            teams[team_name] = team

            for role_name, color in role_specs:
                role = s.scalar(select(TeamRole).where(TeamRole.team_id == team.id, TeamRole.name == role_name))
                if not role:
                    role = TeamRole(team_id=team.id, name=role_name, color=color, is_active=True)
                    s.add(role)
                    s.flush()
                roles[(team_name, role_name)] = role

        if with_demo_users:
            for email, name, platform_role, team_name, role_name in DEMO_USERS:
                user = s.scalar(select(User).where(User.email == email))
                if user:
                    continue
                user = User(
                    email=email,
                    name=name,
                    password_hash=hash_password(demo_password),
                    role=platform_role,
                    is_active=True,
                    team_id=teams[team_name].id if team_name else None,
                    created_at=now,
                    updated_at=now,
                )
                s.add(user)
                s.flush()
                if team_name and role_name:
                    s.add(UserTeamRole(user_id=user.id, team_role_id=roles[(team_name, role_name)].id))

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
