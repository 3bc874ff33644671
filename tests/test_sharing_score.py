import pytest

from gatekeeper.services import fingerprints, sessions, sharing


@pytest.mark.parametrize(
    "devices,expected",
    [(0, 0), (1, 15), (2, 30), (3, 45), (4, 60), (12, 60)],
)
def test_hardware_score(devices, expected):
    assert sharing.hardware_score(devices) == expected


def test_component_scores_are_capped():
    assert sharing.behavior_score(500) == 100
    assert sharing.session_score(9) == 100
    assert sharing.behavior_score(-3) == 0


def test_compute_score_default_weights():
    result = sharing.compute_score(2, 4, 1)
    # 0.4 * 30 + 0.4 * 20 + 0.2 * 35
    assert result.score == 27
    assert (result.hardware_score, result.behavior_score, result.session_score) == (30, 20, 35)


def test_compute_score_custom_weights():
    result = sharing.compute_score(
        4, 20, 3, hardware_weight=0.0, behavior_weight=1.0, session_weight=0.0
    )
    assert result.score == 100


@pytest.mark.parametrize(
    "signals",
    [(0, 0, 0), (1, 2, 1), (5, 0, 3), (3, 30, 0), (40, 400, 40)],
)
def test_score_bounds(signals):
    result = sharing.compute_score(*signals)
    assert 0 <= result.score <= 100
    for part in (result.hardware_score, result.behavior_score, result.session_score):
        assert 0 <= part <= 100


def test_score_monotonic_in_behavior_and_sessions():
    previous = -1
    for suspicion in range(0, 30):
        score = sharing.compute_score(2, suspicion, 1).score
        assert score >= previous
        previous = score
    previous = -1
    for active in range(0, 5):
        score = sharing.compute_score(2, 3, active).score
        assert score >= previous
        previous = score


def test_score_monotonic_in_devices():
    parts = [sharing.hardware_score(devices) for devices in range(0, 11)]
    assert parts == sorted(parts)
    # the overflow step from three to four devices
    assert (parts[3], parts[4]) == (45, 60)

    for suspicion, active in [(0, 0), (3, 1), (12, 2)]:
        previous = -1
        for devices in range(0, 11):
            score = sharing.compute_score(devices, suspicion, active).score
            assert score >= previous
            previous = score


@pytest.mark.parametrize(
    "score,expected",
    [(0, None), (59, None), (60, "TEMPORARY"), (84, "TEMPORARY"), (85, "PERMANENT"), (100, "PERMANENT")],
)
def test_block_type_for(score, expected):
    assert sharing.block_type_for(score) == expected


def test_evaluate_collects_evidence(db):
    fingerprints.record(db, 21, "fp-1", ip_address="1.1.1.1")
    device = fingerprints.record(db, 21, "fp-2", ip_address="2.2.2.2")
    fingerprints.increment_suspicion(db, device.id, "rapid_location_changes", actor_id="admin-1")
    fingerprints.increment_suspicion(db, device.id, "simultaneous_activity", actor_id="admin-1")
    sessions.login(db, 21)

    result = sharing.evaluate(db, 21)

    assert result.score == sharing.compute_score(2, 2, 1).score
    assert result.evidence == {
        "concurrent_sessions": 1,
        "device_count": 2,
        "location_changes": 1,
        "ip_addresses": ["1.1.1.1", "2.2.2.2"],
        "suspicious_patterns": ["RAPID_LOCATION_CHANGES", "SIMULTANEOUS_ACTIVITY"],
    }
    assert result.as_dict()["evidence"]["device_count"] == 2


def test_evaluate_unknown_account_scores_zero(db):
    result = sharing.evaluate(db, 4040)
    assert result.score == 0
    assert result.evidence["suspicious_patterns"] == []
