from datetime import datetime, timedelta, timezone

import pytest

from gatekeeper.models import QuotaRecord
from gatekeeper.services import accounts, quota, rate_config
from gatekeeper.services.errors import NotFoundError
from gatekeeper.services.rate_config import RateLimitPolicy


def _override(db, account_id, limit):
    rate_config.set_limit_override(db, account_id, limit, actor_id="admin-1")


def test_limit_is_exact_at_boundary(db):
    accounts.upsert_account(db, 30, subscription_type="quarterly")
    for _ in range(299):
        assert quota.check_and_increment(db, 30, "write-story").allowed

    last = quota.check_and_increment(db, 30, "write-story")
    assert last.allowed
    assert last.total_usage == 300
    assert last.remaining == 0

    denied = quota.check_and_increment(db, 30, "write-story")
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.total_usage == 300
    assert denied.daily_limit == 300

    status = quota.usage_status(db, 30)
    assert status.total_usage == 300
    assert status.is_blocked is True
    assert [w["percentage"] for w in status.warnings] == [50, 75, 90]


def test_weighted_modules_and_item_count(db):
    check = quota.check_and_increment(db, 31, "batch-story-writing", 3)
    assert check.allowed
    assert check.weight == 6
    assert check.total_usage == 6
    # accounts without a tier mirror fall back to the free tier
    assert check.daily_limit == 50


def test_unrestricted_module_is_not_counted(db):
    check = quota.check_and_increment(db, 32, "translate")
    assert check.allowed
    assert check.restricted is False
    assert db.query(QuotaRecord).filter_by(account_id=32).count() == 0


def test_rejection_leaves_counters_untouched(db):
    _override(db, 33, 5)
    for _ in range(4):
        quota.check_and_increment(db, 33, "rewrite")

    denied = quota.check_and_increment(db, 33, "batch-rewrite")
    assert not denied.allowed
    assert denied.total_usage == 4
    assert denied.remaining == 1

    status = quota.usage_status(db, 33)
    assert status.total_usage == 4
    assert {m["module_id"]: m["request_count"] for m in status.modules} == {"rewrite": 4}

    assert quota.check_and_increment(db, 33, "rewrite").allowed


def test_exempt_account_is_unlimited(db):
    rate_config.set_exemption(db, 34, True, actor_id="admin-1")
    for _ in range(3):
        check = quota.check_and_increment(db, 34, "batch-rewrite", 50)
        assert check.allowed
        assert check.daily_limit is None
        assert check.remaining is None
    assert quota.usage_status(db, 34).total_usage == 300


def test_disabled_policy_allows_without_counting(db):
    rate_config.update_policy(db, {"is_enabled": False}, actor_id="admin-1")
    check = quota.check_and_increment(db, 35, "write-story")
    assert check.allowed
    assert check.restricted is False


def test_warnings_issue_once_per_threshold(db):
    _override(db, 36, 10)
    messages = [quota.check_and_increment(db, 36, "write-story").warning for _ in range(10)]

    assert messages[4] == rate_config.DEFAULT_WARNING_THRESHOLDS[0]["message"]
    assert messages[7] == rate_config.DEFAULT_WARNING_THRESHOLDS[1]["message"]
    assert messages[8] == rate_config.DEFAULT_WARNING_THRESHOLDS[2]["message"]
    assert sum(1 for m in messages if m) == 3


def test_warning_waits_for_exact_threshold(db):
    _override(db, 46, 300)
    for _ in range(149):
        check = quota.check_and_increment(db, 46, "write-story")
    # 149/300 rounds to 50% but has not crossed it
    assert check.percentage == 50
    assert check.warning is None
    assert quota.usage_status(db, 46).warnings == []

    crossed = quota.check_and_increment(db, 46, "write-story")
    assert crossed.total_usage == 150
    assert crossed.warning == "You have used 50% of today's quota."
    assert [w["percentage"] for w in quota.usage_status(db, 46).warnings] == [50]


def test_request_history_is_trimmed(db, monkeypatch):
    monkeypatch.setattr(quota.settings, "request_history_size", 3)
    for i in range(5):
        quota.check_and_increment(db, 37, "write-story", request_id=f"req-{i}")
    record = quota.get_or_create(db, 37)
    recent = quota.recent_requests(db, record.id)
    assert [r.request_id for r in recent] == ["req-4", "req-3", "req-2"]


def test_tier_change_updates_limit(db):
    accounts.upsert_account(db, 38, subscription_type="free")
    assert quota.check_and_increment(db, 38, "write-story").daily_limit == 50
    accounts.upsert_account(db, 38, subscription_type="lifetime")
    assert quota.check_and_increment(db, 38, "write-story").daily_limit == 500


def test_lowered_limit_marks_record_blocked(db):
    for _ in range(3):
        quota.check_and_increment(db, 39, "write-story")
    _override(db, 39, 2)
    status = quota.usage_status(db, 39)
    assert status.is_blocked is True
    assert status.remaining == 0
    assert not quota.check_and_increment(db, 39, "write-story").allowed


def test_reset_for_account(db, audit_records):
    for _ in range(3):
        quota.check_and_increment(db, 40, "write-story")
    record = quota.reset_for_account(db, 40, actor_id="admin-1")
    assert record.total_usage == 0
    assert record.is_blocked is False
    assert quota.usage_status(db, 40).modules == []
    assert audit_records[-1].action == "USAGE_RESET"
    assert audit_records[-1].details["previous_usage"] == 3


def test_reset_for_account_without_record(db):
    with pytest.raises(NotFoundError):
        quota.reset_for_account(db, 41, actor_id="admin-1")


def test_admin_usage_block(db, audit_records):
    with pytest.raises(NotFoundError):
        quota.set_quota_block(db, 47, True, "abuse", actor_id="admin-1")
    assert audit_records[-1].action == "USAGE_BLOCK_REJECTED"

    assert quota.check_and_increment(db, 47, "write-story").allowed
    record = quota.set_quota_block(db, 47, True, "abuse", actor_id="admin-1")
    assert record.admin_blocked is True
    assert record.admin_blocked_at is not None
    assert audit_records[-1].action == "USAGE_BLOCKED"
    assert audit_records[-1].details["reason"] == "abuse"

    denied = quota.check_and_increment(db, 47, "write-story")
    assert not denied.allowed
    assert denied.admin_blocked is True
    assert denied.block_reason == "abuse"
    status = quota.usage_status(db, 47)
    assert status.total_usage == 1
    assert status.is_blocked is False
    assert status.admin_blocked is True

    record = quota.set_quota_block(db, 47, False, actor_id="admin-1")
    assert record.admin_blocked is False
    assert record.admin_block_reason is None
    assert audit_records[-1].action == "USAGE_UNBLOCKED"
    assert quota.check_and_increment(db, 47, "write-story").total_usage == 2


def test_usage_status_reports_reset_boundary(db):
    now = datetime(2026, 10, 19, 16, 30, tzinfo=timezone.utc)
    status = quota.usage_status(db, 42, now=now)
    # 23:30 in Ho Chi Minh City, next midnight local is 17:00 UTC
    assert status.next_reset_at == datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc)
    assert status.timezone == "Asia/Ho_Chi_Minh"
    assert status.daily_limit == 50
    assert status.remaining == 50


def test_resolve_daily_limit_precedence():
    policy = RateLimitPolicy(
        daily_limit=200,
        subscription_limits={"free": 50, "monthly": 200},
        exempted_accounts=[1],
        limit_overrides={2: 999},
    )
    assert quota.resolve_daily_limit(policy, 1, "free") is None
    assert quota.resolve_daily_limit(policy, 2, "free") == 999
    assert quota.resolve_daily_limit(policy, 3, "monthly") == 200
    assert quota.resolve_daily_limit(policy, 3, "free") == 50
    assert quota.resolve_daily_limit(policy, 3, "enterprise") == 200


def test_usage_statistics(db):
    for _ in range(3):
        quota.check_and_increment(db, 43, "write-story")
    quota.check_and_increment(db, 44, "batch-rewrite", 2)

    day = quota.current_day(rate_config.get_policy(db))
    stats = quota.usage_stats(db, day - timedelta(days=6), day)
    assert stats["total_usage"] == 7
    assert stats["active_accounts"] == 2
    assert stats["per_day"][0]["accounts"] == 2

    modules = {m["module_id"]: m for m in quota.module_stats(db, day, day)}
    assert modules["batch-rewrite"]["weighted_usage"] == 4
    assert modules["write-story"]["request_count"] == 3

    heavy = quota.heavy_users(db, days=7, threshold=4)
    assert [h["account_id"] for h in heavy] == [44]


def test_usage_history(db):
    quota.check_and_increment(db, 45, "write-story")
    history = quota.usage_history(db, 45, days=7)
    assert len(history) == 1
    assert history[0].total_usage == 1
