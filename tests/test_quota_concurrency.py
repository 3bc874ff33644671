from concurrent.futures import ThreadPoolExecutor

from gatekeeper import db as db_module
from gatekeeper.services import quota, rate_config, sessions


def _consume(account_id: int) -> bool:
    with db_module.SessionLocal() as session:
        return quota.check_and_increment(session, account_id, "write-story").allowed


def test_concurrent_increments_never_exceed_limit(db):
    rate_config.set_limit_override(db, 50, 100, actor_id="admin-1")
    quota.get_or_create(db, 50)

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(_consume, [50] * 150))

    assert results.count(True) == 100
    assert results.count(False) == 50
    status = quota.usage_status(db, 50)
    assert status.total_usage == 100
    assert status.modules[0]["request_count"] == 100


def _login(account_id: int) -> str:
    with db_module.SessionLocal() as session:
        return sessions.login(session, account_id).token


def test_concurrent_logins_leave_one_active_session(db):
    with ThreadPoolExecutor(max_workers=5) as pool:
        tokens = list(pool.map(_login, [51] * 5))

    assert len(set(tokens)) == 5
    active = sessions.list_sessions(db, account_id=51, active=True)
    assert len(active) == 1
    assert active[0].token in tokens
