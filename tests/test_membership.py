"""Tests for the join request / invite lifecycle."""
import json

import pytest
from sqlalchemy import text
from werkzeug.security import generate_password_hash

from app.teamdesk import create_app
from app.teamdesk.db import session_scope
from app.teamdesk.errors import (
    AlreadyProcessedError,
    DuplicateInviteError,
    DuplicateRequestError,
    NotFoundError,
    UserAlreadyInTeamError,
)
from app.teamdesk.models import AuditLog, Base, User
from app.teamdesk.modules.teams import service as team_service
from app.teamdesk.modules.teams.models import Team, TeamInvite, TeamRequest
from app.teamdesk.modules.teams.service import (
    accept_team_invite,
    approve_team_request,
    cancel_team_request,
    create_team_invite,
    create_team_request,
    decline_team_invite,
    get_team_invites,
    get_team_requests,
    get_user_team_invites,
    get_user_team_requests,
    reject_team_request,
)


@pytest.fixture()
def teamdesk_app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def ids(teamdesk_app):
    out = {}
    with session_scope(teamdesk_app) as s:
        owner = User(email="owner@example.com", name="Owner", password_hash=generate_password_hash("pw"))
        alice = User(email="alice@example.com", name="Alice", password_hash=generate_password_hash("pw"))
        bob = User(email="bob@example.com", name="Bob", password_hash=generate_password_hash("pw"))
        s.add_all([owner, alice, bob])
        s.flush()
        teams = [Team(name=n, created_by=owner.id) for n in ("T1", "T2", "T3")]
        s.add_all(teams)
        s.flush()
        out.update(owner=owner.id, alice=alice.id, bob=bob.id, t1=teams[0].id, t2=teams[1].id, t3=teams[2].id)
    return out


def _actions(s, action):
    return s.query(AuditLog).filter(AuditLog.action == action).order_by(AuditLog.id).all()


def test_approve_closes_every_other_pending_item(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        r1 = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"], message="hi")
        r2 = create_team_request(s, team_id=ids["t2"], user_id=ids["alice"])
        inv = create_team_invite(s, team_id=ids["t3"], user_id=ids["alice"], invited_by=ids["owner"])
        other = create_team_request(s, team_id=ids["t2"], user_id=ids["bob"])
        r1_id, r2_id, inv_id, other_id = r1.id, r2.id, inv.id, other.id

    with session_scope(teamdesk_app) as s:
        req = approve_team_request(s, r1_id, actor_id=ids["owner"])
        assert req.status == "APPROVED"

    with session_scope(teamdesk_app) as s:
        assert s.get(User, ids["alice"]).team_id == ids["t1"]
        assert s.get(TeamRequest, r1_id).status == "APPROVED"
        assert s.get(TeamRequest, r2_id).status == "REJECTED"
        assert s.get(TeamInvite, inv_id).status == "DECLINED"
        # Other users are untouched
        assert s.get(TeamRequest, other_id).status == "PENDING"

        ev = _actions(s, "REQUEST_APPROVED")[-1]
        assert ev.user_id == ids["owner"]
        assert ev.team_id == ids["t1"]
        assert ev.entity_id == str(r1_id)
        assert json.loads(ev.metadata_json)["rejected_requests"] == 1
        assert json.loads(ev.metadata_json)["declined_invites"] == 1


def test_accept_closes_every_other_pending_item(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        req = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"])
        inv2 = create_team_invite(s, team_id=ids["t2"], user_id=ids["alice"], invited_by=ids["owner"])
        inv3 = create_team_invite(s, team_id=ids["t3"], user_id=ids["alice"], invited_by=ids["owner"])
        req_id, inv2_id, inv3_id = req.id, inv2.id, inv3.id

    with session_scope(teamdesk_app) as s:
        invite = accept_team_invite(s, inv2_id)
        assert invite.status == "ACCEPTED"

    with session_scope(teamdesk_app) as s:
        assert s.get(User, ids["alice"]).team_id == ids["t2"]
        assert s.get(TeamRequest, req_id).status == "REJECTED"
        assert s.get(TeamInvite, inv3_id).status == "DECLINED"
        assert get_user_team_requests(s, ids["alice"]) == []
        assert get_user_team_invites(s, ids["alice"]) == []
        # Actor defaults to the invitee
        assert _actions(s, "INVITE_ACCEPTED")[-1].user_id == ids["alice"]


def test_request_then_invite_from_other_team(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
        inv_id = create_team_invite(s, team_id=ids["t2"], user_id=ids["alice"], invited_by=ids["owner"]).id

    with session_scope(teamdesk_app) as s:
        approve_team_request(s, req_id)

    with session_scope(teamdesk_app) as s:
        with pytest.raises(AlreadyProcessedError):
            accept_team_invite(s, inv_id)

    with session_scope(teamdesk_app) as s:
        assert s.get(User, ids["alice"]).team_id == ids["t1"]


def test_duplicate_pending_request_is_rejected(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        create_team_request(s, team_id=ids["t1"], user_id=ids["alice"])

    with session_scope(teamdesk_app) as s:
        with pytest.raises(DuplicateRequestError):
            create_team_request(s, team_id=ids["t1"], user_id=ids["alice"])

    with session_scope(teamdesk_app) as s:
        assert len(get_team_requests(s, ids["t1"])) == 1


def test_new_request_allowed_after_rejection(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        first = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
    with session_scope(teamdesk_app) as s:
        reject_team_request(s, first, actor_id=ids["owner"])
    with session_scope(teamdesk_app) as s:
        second = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"])
        assert second.id != first
        assert second.status == "PENDING"


def test_duplicate_pending_invite_is_rejected(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        create_team_invite(s, team_id=ids["t1"], user_id=ids["bob"], invited_by=ids["owner"])

    with session_scope(teamdesk_app) as s:
        with pytest.raises(DuplicateInviteError):
            create_team_invite(s, team_id=ids["t1"], user_id=ids["bob"], invited_by=ids["owner"])


def test_request_and_invite_for_same_pair_may_coexist(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        create_team_request(s, team_id=ids["t1"], user_id=ids["bob"])
        create_team_invite(s, team_id=ids["t1"], user_id=ids["bob"], invited_by=ids["owner"])

    with session_scope(teamdesk_app) as s:
        assert len(get_team_requests(s, ids["t1"])) == 1
        assert len(get_team_invites(s, ids["t1"])) == 1


def test_unknown_team_or_user(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        with pytest.raises(NotFoundError):
            create_team_request(s, team_id=999999, user_id=ids["alice"])
        with pytest.raises(NotFoundError):
            create_team_invite(s, team_id=ids["t1"], user_id=999999, invited_by=ids["owner"])
        with pytest.raises(NotFoundError):
            approve_team_request(s, 999999)
        with pytest.raises(NotFoundError):
            decline_team_invite(s, 999999)


def test_resolved_items_cannot_transition_again(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
        inv_id = create_team_invite(s, team_id=ids["t2"], user_id=ids["bob"], invited_by=ids["owner"]).id

    with session_scope(teamdesk_app) as s:
        reject_team_request(s, req_id)
        decline_team_invite(s, inv_id)

    with session_scope(teamdesk_app) as s:
        for transition in (approve_team_request, reject_team_request, cancel_team_request):
            with pytest.raises(AlreadyProcessedError):
                transition(s, req_id)
        for transition in (accept_team_invite, decline_team_invite):
            with pytest.raises(AlreadyProcessedError):
                transition(s, inv_id)

    with session_scope(teamdesk_app) as s:
        assert s.get(TeamRequest, req_id).status == "REJECTED"
        assert s.get(TeamInvite, inv_id).status == "DECLINED"
        assert s.get(User, ids["alice"]).team_id is None


def test_cancel_ends_in_rejected(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id

    with session_scope(teamdesk_app) as s:
        assert cancel_team_request(s, req_id).status == "REJECTED"

    with session_scope(teamdesk_app) as s:
        ev = _actions(s, "REQUEST_REJECTED")[-1]
        assert json.loads(ev.metadata_json)["cancelled"] is True


def test_user_already_in_team_cannot_join_another(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        s.get(User, ids["bob"]).team_id = ids["t3"]
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["bob"]).id
        inv_id = create_team_invite(s, team_id=ids["t2"], user_id=ids["bob"], invited_by=ids["owner"]).id

    with session_scope(teamdesk_app) as s:
        with pytest.raises(UserAlreadyInTeamError):
            approve_team_request(s, req_id)
        with pytest.raises(UserAlreadyInTeamError):
            accept_team_invite(s, inv_id)

    with session_scope(teamdesk_app) as s:
        assert s.get(TeamRequest, req_id).status == "PENDING"
        assert s.get(TeamInvite, inv_id).status == "PENDING"
        assert s.get(User, ids["bob"]).team_id == ids["t3"]


def test_failed_transition_rolls_back_everything(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
        other_id = create_team_request(s, team_id=ids["t2"], user_id=ids["alice"]).id

    class Boom(Exception):
        pass

    with pytest.raises(Boom):
        with session_scope(teamdesk_app) as s:
            approve_team_request(s, req_id)
            raise Boom()

    with session_scope(teamdesk_app) as s:
        assert s.get(TeamRequest, req_id).status == "PENDING"
        assert s.get(TeamRequest, other_id).status == "PENDING"
        assert s.get(User, ids["alice"]).team_id is None
        assert _actions(s, "REQUEST_APPROVED") == []


def test_reads_are_pending_only_and_newest_first(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        a = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
        b = create_team_request(s, team_id=ids["t1"], user_id=ids["bob"]).id
        c = create_team_request(s, team_id=ids["t2"], user_id=ids["bob"]).id
        i1 = create_team_invite(s, team_id=ids["t3"], user_id=ids["alice"], invited_by=ids["owner"]).id
        i2 = create_team_invite(s, team_id=ids["t3"], user_id=ids["bob"], invited_by=ids["owner"]).id

    with session_scope(teamdesk_app) as s:
        reject_team_request(s, a)

    with session_scope(teamdesk_app) as s:
        assert [r.id for r in get_team_requests(s, ids["t1"])] == [b]
        assert [r.id for r in get_user_team_requests(s, ids["bob"])] == [c, b]
        assert [i.id for i in get_team_invites(s, ids["t3"])] == [i2, i1]
        assert [i.id for i in get_user_team_invites(s, ids["alice"])] == [i1]
        assert get_user_team_requests(s, ids["alice"]) == []


def test_creation_is_audited(teamdesk_app, ids):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
        inv_id = create_team_invite(s, team_id=ids["t2"], user_id=ids["bob"], invited_by=ids["owner"]).id

    with session_scope(teamdesk_app) as s:
        sent = _actions(s, "REQUEST_SENT")
        assert [(e.user_id, e.entity_id) for e in sent] == [(ids["alice"], str(req_id))]
        invited = _actions(s, "INVITE_SENT")
        assert [(e.user_id, e.entity_id) for e in invited] == [(ids["owner"], str(inv_id))]
        assert json.loads(invited[0].metadata_json) == {"invited_user_id": ids["bob"]}


def test_request_resolved_after_load_raises_already_processed(teamdesk_app, ids, monkeypatch):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
        other_id = create_team_request(s, team_id=ids["t2"], user_id=ids["alice"]).id

    original = team_service._load_pending_request

    def _stale_load(s, request_id):
        req = original(s, request_id)
        # Another transaction resolves the row; the loaded object still says PENDING.
        s.execute(text("UPDATE team_requests SET status = 'REJECTED' WHERE id = :id"), {"id": request_id})
        return req

    with monkeypatch.context() as m:
        m.setattr(team_service, "_load_pending_request", _stale_load)
        with pytest.raises(AlreadyProcessedError):
            with session_scope(teamdesk_app) as s:
                approve_team_request(s, req_id, actor_id=ids["owner"])

    with session_scope(teamdesk_app) as s:
        assert s.get(User, ids["alice"]).team_id is None
        assert s.get(TeamRequest, req_id).status == "PENDING"
        assert s.get(TeamRequest, other_id).status == "PENDING"
        assert _actions(s, "REQUEST_APPROVED") == []


def test_invite_resolved_after_load_raises_already_processed(teamdesk_app, ids, monkeypatch):
    with session_scope(teamdesk_app) as s:
        inv_id = create_team_invite(s, team_id=ids["t1"], user_id=ids["bob"], invited_by=ids["owner"]).id

    original = team_service._load_pending_invite

    def _stale_load(s, invite_id):
        invite = original(s, invite_id)
        s.execute(text("UPDATE team_invites SET status = 'DECLINED' WHERE id = :id"), {"id": invite_id})
        return invite

    with monkeypatch.context() as m:
        m.setattr(team_service, "_load_pending_invite", _stale_load)
        with pytest.raises(AlreadyProcessedError):
            with session_scope(teamdesk_app) as s:
                accept_team_invite(s, inv_id)

    with session_scope(teamdesk_app) as s:
        assert s.get(User, ids["bob"]).team_id is None
        assert s.get(TeamInvite, inv_id).status == "PENDING"
        assert _actions(s, "INVITE_ACCEPTED") == []


def test_user_joining_elsewhere_after_load_is_never_double_assigned(teamdesk_app, ids, monkeypatch):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id

    original = team_service._lock_owner

    def _stale_owner(s, model, item_id, missing):
        user = original(s, model, item_id, missing)
        s.execute(text("UPDATE users SET team_id = :t WHERE id = :u"), {"t": ids["t3"], "u": user.id})
        return user

    with monkeypatch.context() as m:
        m.setattr(team_service, "_lock_owner", _stale_owner)
        with pytest.raises(UserAlreadyInTeamError):
            with session_scope(teamdesk_app) as s:
                approve_team_request(s, req_id)

    with session_scope(teamdesk_app) as s:
        # The whole unit of work is gone, the concurrent write included.
        assert s.get(User, ids["alice"]).team_id is None
        assert s.get(TeamRequest, req_id).status == "PENDING"


def test_joining_transitions_lock_the_user_before_the_item(teamdesk_app, ids, monkeypatch):
    with session_scope(teamdesk_app) as s:
        req_id = create_team_request(s, team_id=ids["t1"], user_id=ids["alice"]).id
        inv_id = create_team_invite(s, team_id=ids["t2"], user_id=ids["bob"], invited_by=ids["owner"]).id

    calls = []

    def _spy(name, fn):
        def wrapper(*args, **kwargs):
            calls.append(name)
            return fn(*args, **kwargs)

        return wrapper

    with monkeypatch.context() as m:
        for name in ("_lock_owner", "_load_pending_request", "_load_pending_invite"):
            m.setattr(team_service, name, _spy(name, getattr(team_service, name)))
        with session_scope(teamdesk_app) as s:
            approve_team_request(s, req_id)
        with session_scope(teamdesk_app) as s:
            accept_team_invite(s, inv_id)

    assert calls == ["_lock_owner", "_load_pending_request", "_lock_owner", "_load_pending_invite"]
