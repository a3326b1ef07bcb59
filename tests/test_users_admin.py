"""Tests for platform user administration."""
import pytest
from werkzeug.security import generate_password_hash

from app.teamdesk import create_app
from app.teamdesk.db import session_scope
from app.teamdesk.errors import ValidationError
from app.teamdesk.models import AuditLog, Base, User
from app.teamdesk.modules.teams.models import Team
from app.teamdesk.modules.users.service import create_user, get_user, update_user


@pytest.fixture()
def teamdesk_app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("AUTH_RATE_LIMIT_MAX", "API_RATE_LIMIT_MAX", "ACTION_RATE_LIMIT_MAX"):
        monkeypatch.setenv(k, "1000")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        for email, name, role in (
            ("root@example.com", "Root", "SUPER_ADMIN"),
            ("admin@example.com", "Admin", "ADMIN"),
            ("jane@example.com", "Jane", "USER"),
        ):
            s.add(User(email=email, name=name, role=role, password_hash=generate_password_hash("pw")))

    return app


def _login(app, email):
    c = app.test_client()
    r = c.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return c


def _user_id(app, email):
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one().id


def test_user_listing_requires_platform_admin(teamdesk_app):
    r = _login(teamdesk_app, "jane@example.com").get("/api/admin/users")
    assert r.status_code == 403

    admin = _login(teamdesk_app, "admin@example.com")
    r = admin.get("/api/admin/users")
    assert r.status_code == 200
    assert [u["email"] for u in r.json["users"]] == ["admin@example.com", "jane@example.com", "root@example.com"]
    assert r.json["pagination"]["total"] == 3

    r = admin.get("/api/admin/users?role=user")
    assert [u["email"] for u in r.json["users"]] == ["jane@example.com"]

    r = admin.get("/api/admin/users?search=JAN")
    assert [u["name"] for u in r.json["users"]] == ["Jane"]


def test_only_super_admin_updates_users(teamdesk_app):
    jane_id = _user_id(teamdesk_app, "jane@example.com")
    r = _login(teamdesk_app, "admin@example.com").put(f"/api/admin/users/{jane_id}", json={"role": "MANAGER"})
    assert r.status_code == 403


def test_role_change_is_audited(teamdesk_app):
    jane_id = _user_id(teamdesk_app, "jane@example.com")
    root = _login(teamdesk_app, "root@example.com")

    r = root.put(f"/api/admin/users/{jane_id}", json={"role": "manager", "name": "Jane Doe"})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "MANAGER"
    assert r.json["user"]["name"] == "Jane Doe"

    with session_scope(teamdesk_app) as s:
        actions = [a for (a,) in s.query(AuditLog.action).filter(AuditLog.entity_id == str(jane_id)).order_by(AuditLog.id)]
    assert "ROLE_CHANGED" in actions
    assert "UPDATE" in actions


def test_invalid_updates(teamdesk_app):
    jane_id = _user_id(teamdesk_app, "jane@example.com")
    root_id = _user_id(teamdesk_app, "root@example.com")
    root = _login(teamdesk_app, "root@example.com")

    r = root.put(f"/api/admin/users/{jane_id}", json={"role": "OVERLORD"})
    assert r.status_code == 400

    r = root.put(f"/api/admin/users/{jane_id}", json={"is_active": "no"})
    assert r.status_code == 400

    r = root.put(f"/api/admin/users/{root_id}", json={"role": "USER"})
    assert r.status_code == 400

    r = root.put("/api/admin/users/999999", json={"name": "Ghost"})
    assert r.status_code == 404


def test_deactivation_ends_sessions(teamdesk_app):
    jane_id = _user_id(teamdesk_app, "jane@example.com")
    jane = _login(teamdesk_app, "jane@example.com")
    assert jane.get("/api/auth/session").status_code == 200

    root = _login(teamdesk_app, "root@example.com")
    r = root.put(f"/api/admin/users/{jane_id}", json={"is_active": False})
    assert r.status_code == 200
    assert r.json["user"]["is_active"] is False

    assert jane.get("/api/auth/session").status_code == 401

    with session_scope(teamdesk_app) as s:
        ev = s.query(AuditLog).filter(AuditLog.action == "STATUS_CHANGED").one()
        assert ev.entity_id == str(jane_id)


def _place_in_new_team(app, email, team_name="Ops"):
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == email).one()
        team = Team(name=team_name, created_by=user.id)
        s.add(team)
        s.flush()
        user.team_id = team.id
        return team.id


def test_admin_creates_user_in_own_team(teamdesk_app):
    team_id = _place_in_new_team(teamdesk_app, "admin@example.com")
    admin_id = _user_id(teamdesk_app, "admin@example.com")
    admin = _login(teamdesk_app, "admin@example.com")

    r = admin.post(
        "/api/admin/users",
        json={"name": "Kim", "email": "Kim@Example.com", "password": "secret", "role": "manager"},
    )
    assert r.status_code == 201
    assert r.json["user"]["email"] == "kim@example.com"
    assert r.json["user"]["role"] == "MANAGER"
    assert r.json["user"]["team_id"] == team_id

    # The new account can sign in with the given password
    _login(teamdesk_app, "kim@example.com")

    with session_scope(teamdesk_app) as s:
        kim = s.query(User).filter(User.email == "kim@example.com").one()
        ev = s.query(AuditLog).filter(AuditLog.action == "CREATE", AuditLog.entity_id == str(kim.id)).one()
        assert ev.user_id == admin_id
        assert ev.team_id == team_id


def test_create_user_validation(teamdesk_app):
    jane = _login(teamdesk_app, "jane@example.com")
    r = jane.post("/api/admin/users", json={"name": "X", "email": "x@example.com", "password": "pw", "role": "USER"})
    assert r.status_code == 403

    root = _login(teamdesk_app, "root@example.com")
    r = root.post("/api/admin/users", json={"name": "Dup", "email": "JANE@example.com", "password": "pw", "role": "USER"})
    assert r.status_code == 400

    r = root.post("/api/admin/users", json={"name": "NoPw", "email": "nopw@example.com", "role": "USER"})
    assert r.status_code == 400

    r = root.post("/api/admin/users", json={"name": "Bad", "email": "bad@example.com", "password": "pw", "role": "KING"})
    assert r.status_code == 400

    r = root.post("/api/admin/users", json={"name": 5, "email": "n@example.com", "password": "pw", "role": "USER"})
    assert r.status_code == 400

    with session_scope(teamdesk_app) as s:
        assert s.query(User).count() == 3


def test_user_lookup_is_team_scoped(teamdesk_app):
    team_id = _place_in_new_team(teamdesk_app, "jane@example.com")
    root_id = _user_id(teamdesk_app, "root@example.com")
    with session_scope(teamdesk_app) as s:
        mate = User(email="mate@example.com", name="Mate", password_hash=generate_password_hash("pw"), team_id=team_id)
        gone = User(
            email="gone@example.com",
            name="Gone",
            password_hash=generate_password_hash("pw"),
            team_id=team_id,
            is_active=False,
        )
        s.add_all([mate, gone])
        s.flush()
        mate_id, gone_id = mate.id, gone.id

    jane = _login(teamdesk_app, "jane@example.com")
    r = jane.get(f"/api/admin/users/{mate_id}")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "mate@example.com"
    assert jane.get(f"/api/admin/users/{gone_id}").status_code == 404
    assert jane.get(f"/api/admin/users/{root_id}").status_code == 404

    admin = _login(teamdesk_app, "admin@example.com")
    assert admin.get(f"/api/admin/users/{root_id}").status_code == 200
    assert admin.get(f"/api/admin/users/{gone_id}").status_code == 200
    assert admin.get("/api/admin/users/999999").status_code == 404

    assert teamdesk_app.test_client().get(f"/api/admin/users/{mate_id}").status_code == 401

    with session_scope(teamdesk_app) as s:
        assert get_user(s, mate_id, team_id=team_id).email == "mate@example.com"
        assert get_user(s, gone_id, team_id=team_id) is None


def test_email_change_checks_uniqueness(teamdesk_app):
    jane_id = _user_id(teamdesk_app, "jane@example.com")
    root = _login(teamdesk_app, "root@example.com")

    r = root.put(f"/api/admin/users/{jane_id}", json={"email": "ADMIN@example.com"})
    assert r.status_code == 400

    r = root.put(f"/api/admin/users/{jane_id}", json={"email": 42})
    assert r.status_code == 400

    r = root.put(f"/api/admin/users/{jane_id}", json={"email": "Jane.Doe@Example.com"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == "jane.doe@example.com"

    with session_scope(teamdesk_app) as s:
        assert s.get(User, jane_id).email == "jane.doe@example.com"
        ev = s.query(AuditLog).filter(AuditLog.description == "User email changed").one()
        assert ev.entity_id == str(jane_id)


def test_user_service_create_and_update(teamdesk_app):
    with session_scope(teamdesk_app) as s:
        root = s.query(User).filter(User.email == "root@example.com").one()
        user = create_user(s, actor=root, name=" Lee ", email="lee@example.com", password="pw", role="USER")
        assert user.name == "Lee"
        assert user.team_id is None

        with pytest.raises(ValidationError):
            create_user(s, actor=root, name="Lee 2", email="LEE@example.com", password="pw", role="USER")
        with pytest.raises(ValidationError):
            update_user(s, user, actor=root, email="   ")

        update_user(s, user, actor=root, email="lee@example.com")
        assert user.email == "lee@example.com"
