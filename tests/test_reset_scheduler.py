import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from gatekeeper import db as db_module
from gatekeeper.models import BlockType, QuotaRecord, ResetRun
from gatekeeper.services import blocks, clock, quota, rate_config, reset, sessions
from gatekeeper.services.reset import ResetScheduler


@pytest.mark.parametrize(
    "now,reset_time,expected",
    [
        # 23:30 local, still the 19th
        (datetime(2026, 10, 19, 16, 30, tzinfo=timezone.utc), "00:00", date(2026, 10, 19)),
        # 00:30 local on the 20th
        (datetime(2026, 10, 19, 17, 30, tzinfo=timezone.utc), "00:00", date(2026, 10, 20)),
        # 03:59 local belongs to the previous day with a 04:00 reset
        (datetime(2026, 10, 19, 20, 59, tzinfo=timezone.utc), "04:00", date(2026, 10, 19)),
        (datetime(2026, 10, 19, 21, 0, tzinfo=timezone.utc), "04:00", date(2026, 10, 20)),
    ],
)
def test_quota_day(now, reset_time, expected):
    assert clock.quota_day(now, "Asia/Ho_Chi_Minh", reset_time) == expected


def test_next_reset_at():
    now = datetime(2026, 10, 19, 20, 59, tzinfo=timezone.utc)
    assert clock.next_reset_at(now, "Asia/Ho_Chi_Minh", "04:00") == datetime(
        2026, 10, 19, 21, 0, tzinfo=timezone.utc
    )
    assert clock.next_reset_at(now, "UTC", "00:00") == datetime(
        2026, 10, 20, 0, 0, tzinfo=timezone.utc
    )


def test_naive_datetimes_are_utc():
    naive = datetime(2026, 1, 1, 12, 0)
    assert clock.ensure_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert clock.ensure_utc(None) is None


def test_unknown_timezone():
    with pytest.raises(ValueError):
        clock.load_zone("Nowhere/Atlantis")


def test_daily_reset_runs_once(db, audit_records):
    for _ in range(4):
        quota.check_and_increment(db, 60, "write-story")

    first = reset.run_daily_reset(db)
    assert first.skipped is False
    assert first.statistics["records_reset"] == 1
    assert quota.usage_status(db, 60).total_usage == 0
    assert "DAILY_RESET" in [r.action for r in audit_records]

    quota.check_and_increment(db, 60, "write-story")
    second = reset.run_daily_reset(db)
    assert second.skipped is True
    assert second.reset_date == first.reset_date
    # counters written after the reset survive the skipped run
    assert quota.usage_status(db, 60).total_usage == 1
    assert db.query(ResetRun).count() == 1


def test_forced_reset_runs_again(db):
    reset.run_daily_reset(db)
    quota.check_and_increment(db, 61, "write-story")

    forced = reset.run_daily_reset(db, force=True, actor_id="admin-1")
    assert forced.skipped is False
    assert forced.forced is True
    assert quota.usage_status(db, 61).total_usage == 0
    run = reset.recent_runs(db)[0]
    assert run.run_count == 2


def test_reset_prunes_old_data(db):
    policy = rate_config.get_policy(db)
    today = quota.current_day(policy)
    db.add(
        QuotaRecord(
            account_id=62,
            date=today - timedelta(days=policy.retention_days + 1),
            daily_limit=50,
            total_usage=10,
        )
    )
    db.commit()
    sessions.login(db, 62)
    sessions.login(db, 62)

    later = clock.utcnow() + timedelta(days=31)
    result = reset.run_daily_reset(db, now=later)
    assert result.statistics["records_pruned"] == 1
    assert result.statistics["sessions_pruned"] == 1
    assert sessions.get_active_session(db, 62) is not None


def test_reset_expires_due_blocks(db):
    blocks.create_manual_block(db, 63, BlockType.TEMPORARY, "test", 1, actor_id="admin-1")
    result = reset.run_daily_reset(db, now=clock.utcnow() + timedelta(hours=2))
    assert result.statistics["blocks_expired"] == 1


def test_scheduler_maybe_run_and_status():
    scheduler = ResetScheduler(session_factory=db_module.SessionLocal)
    assert scheduler.maybe_run().skipped is False
    assert scheduler.maybe_run().skipped is True
    assert scheduler.last_result is not None

    status = scheduler.status()
    assert status["reset_done_today"] is True
    assert status["running"] is False
    assert status["timezone"] == "Asia/Ho_Chi_Minh"


def test_seconds_until_next_is_bounded():
    scheduler = ResetScheduler(session_factory=db_module.SessionLocal)
    scheduler.poll_interval = 60
    assert 1.0 <= scheduler.seconds_until_next() <= 60.0


@pytest.mark.asyncio
async def test_scheduler_start_stop(audit_records):
    scheduler = ResetScheduler(session_factory=db_module.SessionLocal)
    scheduler.poll_interval = 1
    await scheduler.start(actor_id="admin-1")
    assert scheduler.running is True
    # a second start is a no-op
    await scheduler.start(actor_id="admin-1")

    for _ in range(50):
        if scheduler.last_result is not None:
            break
        await asyncio.sleep(0.1)
    await scheduler.stop(actor_id="admin-1")

    assert scheduler.running is False
    assert scheduler.last_result is not None
    actions = [r.action for r in audit_records]
    assert actions.count("RESET_SCHEDULER_STARTED") == 1
    assert "RESET_SCHEDULER_STOPPED" in actions
