import pytest

from gatekeeper.services import fingerprints
from gatekeeper.services.errors import NotFoundError


def test_record_creates_then_bumps(db):
    first = fingerprints.record(db, 1, "fp-a", ip_address="1.1.1.1", device_info={"os": "mac"})
    assert first.session_count == 1
    assert first.device_info == {"os": "mac"}

    again = fingerprints.record(db, 1, "fp-a", ip_address="2.2.2.2")
    assert again.id == first.id
    assert again.session_count == 2
    assert again.ip_address == "2.2.2.2"
    assert again.device_info == {"os": "mac"}


def test_same_hash_on_two_accounts_is_two_devices(db):
    a = fingerprints.record(db, 1, "shared-hash")
    b = fingerprints.record(db, 2, "shared-hash")
    assert a.id != b.id
    assert fingerprints.count_devices(db, 1) == 1
    assert fingerprints.count_devices(db, 2) == 1


def test_record_requires_hash(db):
    with pytest.raises(ValueError):
        fingerprints.record(db, 1, "")


def test_count_devices_min_confidence(db):
    fingerprints.record(db, 3, "fp-1", confidence=0.9)
    fingerprints.record(db, 3, "fp-2", confidence=0.2)
    fingerprints.record(db, 3, "fp-3")
    assert fingerprints.count_devices(db, 3) == 3
    # unknown confidence still counts
    assert fingerprints.count_devices(db, 3, min_confidence=0.5) == 2


def test_increment_suspicion(db):
    device = fingerprints.record(db, 4, "fp-x")
    fingerprints.increment_suspicion(db, device.id, "rapid_location_changes", actor_id="admin-1")
    updated = fingerprints.increment_suspicion(
        db, device.id, "rapid_location_changes", actor_id="admin-1"
    )
    fingerprints.increment_suspicion(db, device.id, "unusual_usage_hours", actor_id="admin-1")

    assert updated.rapid_location_changes == 2
    assert fingerprints.suspicion_total(db, 4) == 3
    assert fingerprints.suspicion_breakdown(db, 4) == {
        "rapid_location_changes": 2,
        "unusual_usage_hours": 1,
        "simultaneous_activity": 0,
    }


def test_increment_suspicion_is_audited(db, audit_records):
    device = fingerprints.record(db, 8, "fp-a")
    fingerprints.increment_suspicion(db, device.id, "simultaneous_activity", actor_id="admin-3")
    fingerprints.increment_suspicion(db, device.id, "simultaneous_activity", actor_id="admin-3")

    recorded = audit_records[-1]
    assert recorded.action == "DEVICE_SUSPICION_RECORDED"
    assert recorded.actor_id == "admin-3"
    assert recorded.details == {
        "device_id": device.id,
        "account_id": 8,
        "kind": "simultaneous_activity",
        "count": 2,
    }


def test_increment_suspicion_rejects_unknown(db):
    device = fingerprints.record(db, 5, "fp-y")
    with pytest.raises(ValueError):
        fingerprints.increment_suspicion(db, device.id, "session_count", actor_id="admin-1")
    with pytest.raises(NotFoundError):
        fingerprints.increment_suspicion(db, 999999, "unusual_usage_hours", actor_id="admin-1")


def test_verify_is_audited(db, audit_records):
    device = fingerprints.record(db, 6, "fp-z")
    verified = fingerprints.verify(db, device.id, True, actor_id="admin-2")
    assert verified.is_verified is True
    assert audit_records[-1].action == "DEVICE_VERIFIED"
    assert audit_records[-1].details["account_id"] == 6


def test_ip_addresses_are_distinct(db):
    fingerprints.record(db, 7, "fp-1", ip_address="1.1.1.1")
    fingerprints.record(db, 7, "fp-2", ip_address="1.1.1.1")
    fingerprints.record(db, 7, "fp-3", ip_address="3.3.3.3")
    assert fingerprints.ip_addresses(db, 7) == ["1.1.1.1", "3.3.3.3"]
