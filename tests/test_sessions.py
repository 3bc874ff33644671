from datetime import timedelta

from sqlalchemy import func, select

from gatekeeper.models import AccountSession, LogoutReason
from gatekeeper.services import sessions
from gatekeeper.services.clock import utcnow
from gatekeeper.services.sessions import SessionStatus


def test_login_leaves_single_active_session(db):
    tokens = [sessions.login(db, 7, ip_address="10.0.0.1").token for _ in range(5)]

    active = db.scalar(
        select(func.count(AccountSession.id)).where(
            AccountSession.account_id == 7, AccountSession.active.is_(True)
        )
    )
    assert active == 1
    assert sessions.get_active_session(db, 7).token == tokens[-1]

    older = sessions.list_sessions(db, account_id=7, active=False)
    assert len(older) == 4
    assert {s.logout_reason for s in older} == {LogoutReason.FORCE_LOGOUT.value}
    assert all(s.logout_at is not None for s in older)


def test_displaced_token_reports_terminated(db):
    first = sessions.login(db, 8, "first-token-aaaaaaaa")
    sessions.login(db, 8, "second-token-bbbbbbb")

    assert sessions.validate(db, first.token) is SessionStatus.TERMINATED
    assert sessions.validate(db, "second-token-bbbbbbb") is SessionStatus.ACTIVE
    assert sessions.validate(db, "missing-token-ccccc") is SessionStatus.NOT_FOUND


def test_logins_of_other_accounts_are_independent(db):
    sessions.login(db, 1)
    sessions.login(db, 2)
    assert sessions.count_active_sessions(db, 1) == 1
    assert sessions.count_active_sessions(db, 2) == 1


def test_idle_session_expires(db):
    record = sessions.login(db, 9)
    later = utcnow() + timedelta(minutes=31)

    assert sessions.check(db, record.token, later).status is SessionStatus.EXPIRED
    stored = sessions.list_sessions(db, account_id=9)[0]
    assert stored.active is False
    assert stored.logout_reason == LogoutReason.SESSION_EXPIRED.value
    # a later check keeps reporting expired, not terminated
    assert sessions.validate(db, record.token) is SessionStatus.EXPIRED


def test_heartbeat_keeps_session_alive(db):
    record = sessions.login(db, 10)
    step = utcnow() + timedelta(minutes=20)
    assert sessions.heartbeat(db, record.token, step) is SessionStatus.ACTIVE
    assert sessions.validate(db, record.token, step + timedelta(minutes=20)) is SessionStatus.ACTIVE


def test_heartbeat_does_not_revive_terminated_session(db):
    first = sessions.login(db, 11)
    sessions.login(db, 11)
    assert sessions.heartbeat(db, first.token) is SessionStatus.TERMINATED


def test_force_logout_all(db, audit_records):
    sessions.login(db, 12)
    assert sessions.force_logout_all(db, 12, actor_id="admin-1") == 1
    assert sessions.get_active_session(db, 12) is None
    assert sessions.force_logout_all(db, 12, actor_id="admin-1") == 0
    actions = [r.action for r in audit_records]
    assert actions.count("SESSIONS_LOGGED_OUT") == 2
    assert audit_records[0].actor_id == "admin-1"


def test_terminate_session(db):
    record = sessions.login(db, 13)
    ended = sessions.terminate_session(db, record.id, actor_id="admin-1", reason="abuse")
    assert ended.active is False
    assert ended.logout_reason == LogoutReason.ADMIN_TERMINATED.value
    assert sessions.validate(db, record.token) is SessionStatus.TERMINATED


def test_prune_sessions_keeps_active(db):
    sessions.login(db, 14)
    sessions.login(db, 14)
    removed = sessions.prune_sessions(db, utcnow() + timedelta(minutes=1))
    db.commit()
    assert removed == 1
    assert sessions.get_active_session(db, 14) is not None
