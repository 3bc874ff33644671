import pytest
from sqlalchemy import update

from gatekeeper.models import RateLimitConfig
from gatekeeper.services import rate_config
from gatekeeper.services.errors import ConfigConflictError, ConfigValidationError


def test_default_policy_is_created(db):
    policy = rate_config.get_policy(db)
    assert policy.version == 1
    assert policy.daily_limit == 200
    assert policy.timezone == "Asia/Ho_Chi_Minh"
    assert policy.subscription_limits == {"free": 50, "monthly": 200, "quarterly": 300, "lifetime": 500}
    assert policy.module("write-story").weight == 1
    assert policy.module("batch-rewrite").weight == 2
    assert policy.module("translate") is None
    assert [w.percentage for w in policy.warning_thresholds] == [50, 75, 90]


def test_update_bumps_version(db, audit_records):
    rate_config.get_policy(db)
    policy = rate_config.update_policy(
        db, {"daily_limit": 300, "reset_time": "04:00"}, actor_id="admin-1"
    )
    assert policy.version == 2
    assert policy.daily_limit == 300
    assert policy.reset_time == "04:00"
    assert policy.updated_by == "admin-1"
    assert rate_config.get_policy(db).version == 2
    assert audit_records[-1].action == "CONFIG_UPDATED"
    assert audit_records[-1].details["fields"] == ["daily_limit", "reset_time"]


@pytest.mark.parametrize(
    "changes",
    [
        {"daily_limit": 0},
        {"daily_limit": 50001},
        {"reset_time": "24:00"},
        {"reset_time": "7:30"},
        {"timezone": "Mars/Olympus_Mons"},
        {"subscription_limits": {"free": -1}},
        {"limit_overrides": {"5": 0}},
        {"warning_thresholds": [{"percentage": 120, "message": "too much"}]},
        {"restricted_modules": [{"module_id": "write-story", "weight": 11}]},
        {
            "restricted_modules": [
                {"module_id": "rewrite", "weight": 1},
                {"module_id": "rewrite", "weight": 2},
            ]
        },
        {"no_such_field": True},
    ],
)
def test_invalid_update_is_rejected(db, audit_records, changes):
    with pytest.raises(ConfigValidationError) as exc:
        rate_config.update_policy(db, changes, actor_id="admin-1")
    assert exc.value.errors
    assert audit_records[-1].action == "CONFIG_UPDATE_REJECTED"
    assert rate_config.get_policy(db, fresh=True).version == 1


def test_tier_limit_zero_is_allowed(db):
    policy = rate_config.update_policy(
        db, {"subscription_limits": {"free": 0, "monthly": 200}}, actor_id="admin-1"
    )
    assert policy.subscription_limits["free"] == 0


def test_stale_version_conflicts(db, audit_records):
    rate_config.get_policy(db)
    rate_config.update_policy(db, {"daily_limit": 250}, actor_id="admin-1", expected_version=1)
    with pytest.raises(ConfigConflictError):
        rate_config.update_policy(db, {"daily_limit": 260}, actor_id="admin-2", expected_version=1)
    assert audit_records[-1].action == "CONFIG_UPDATE_REJECTED"
    policy = rate_config.get_policy(db, fresh=True)
    assert policy.daily_limit == 250
    assert policy.version == 2


def test_thresholds_are_sorted(db):
    policy = rate_config.update_policy(
        db,
        {
            "warning_thresholds": [
                {"percentage": 80, "message": "eighty"},
                {"percentage": 40, "message": "forty"},
            ]
        },
        actor_id="admin-1",
    )
    assert [w.percentage for w in policy.warning_thresholds] == [40, 80]


def test_exemptions_and_overrides(db):
    rate_config.set_exemption(db, 7, True, actor_id="admin-1")
    rate_config.set_exemption(db, 7, True, actor_id="admin-1")
    policy = rate_config.set_limit_override(db, 8, 1000, actor_id="admin-1")
    assert policy.exempted_accounts == [7]
    assert policy.is_exempt(7)
    assert policy.limit_overrides == {"8": 1000}

    policy = rate_config.set_exemption(db, 7, False, actor_id="admin-1")
    policy = rate_config.set_limit_override(db, 8, None, actor_id="admin-1")
    assert policy.exempted_accounts == []
    assert policy.limit_overrides == {}
    assert policy.version == 6


def test_cache_revalidates_against_stored_version(db, monkeypatch):
    monkeypatch.setattr(rate_config.settings, "config_cache_ttl_s", 0.0)
    cached = rate_config.get_policy(db)
    assert rate_config.get_policy(db) is cached

    # a change written by another replica bumps the stored version
    db.execute(
        update(RateLimitConfig).values(burst_limit=5, version=RateLimitConfig.version + 1)
    )
    db.commit()
    assert rate_config.get_policy(db).burst_limit == 5


def test_inactive_module_is_ungated(db):
    modules = [dict(m) for m in rate_config.DEFAULT_RESTRICTED_MODULES]
    modules[0]["is_active"] = False
    policy = rate_config.update_policy(db, {"restricted_modules": modules}, actor_id="admin-1")
    assert policy.module("write-story") is None
    assert policy.module("rewrite") is not None
