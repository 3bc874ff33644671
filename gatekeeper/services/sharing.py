"""Composite account-sharing score.

``compute_score`` is a pure function over the three signals; ``evaluate``
gathers the signals for an account from the device and session tables.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from gatekeeper.config import Settings
from gatekeeper.services import fingerprints, sessions

settings = Settings()

DEVICE_OVERFLOW = 3
DEVICE_OVERFLOW_SCORE = 60
DEVICE_POINTS = 15
SUSPICION_POINTS = 5
SESSION_POINTS = 35


@dataclass
class SharingScore:
    score: int
    hardware_score: int
    behavior_score: int
    session_score: int
    evidence: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "hardware_score": self.hardware_score,
            "behavior_score": self.behavior_score,
            "session_score": self.session_score,
            "evidence": self.evidence,
        }


def hardware_score(device_count: int) -> int:
    if device_count > DEVICE_OVERFLOW:
        return DEVICE_OVERFLOW_SCORE
    return min(100, max(0, device_count) * DEVICE_POINTS)


def behavior_score(suspicion_total: int) -> int:
    return min(100, max(0, suspicion_total) * SUSPICION_POINTS)


def session_score(active_sessions: int) -> int:
    return min(100, max(0, active_sessions) * SESSION_POINTS)


def compute_score(
    device_count: int,
    suspicion_total: int,
    active_sessions: int,
    *,
    hardware_weight: float | None = None,
    behavior_weight: float | None = None,
    session_weight: float | None = None,
) -> SharingScore:
    hw = settings.sharing_hardware_weight if hardware_weight is None else hardware_weight
    bw = settings.sharing_behavior_weight if behavior_weight is None else behavior_weight
    sw = settings.sharing_session_weight if session_weight is None else session_weight
    h = hardware_score(device_count)
    b = behavior_score(suspicion_total)
    s = session_score(active_sessions)
    score = min(100, max(0, round(hw * h + bw * b + sw * s)))
    return SharingScore(score=score, hardware_score=h, behavior_score=b, session_score=s)


def evaluate(db: Session, account_id: int) -> SharingScore:
    device_count = fingerprints.count_devices(db, account_id)
    breakdown = fingerprints.suspicion_breakdown(db, account_id)
    active = sessions.count_active_sessions(db, account_id)
    result = compute_score(device_count, sum(breakdown.values()), active)
    result.evidence = {
        "concurrent_sessions": active,
        "device_count": device_count,
        "location_changes": breakdown["rapid_location_changes"],
        "ip_addresses": fingerprints.ip_addresses(db, account_id),
        "suspicious_patterns": [kind.upper() for kind, count in breakdown.items() if count],
    }
    return result


def block_type_for(score: int) -> str | None:
    """PERMANENT, TEMPORARY, or None when no block is warranted."""
    if score >= settings.sharing_permanent_threshold:
        return "PERMANENT"
    if score >= settings.sharing_temporary_threshold:
        return "TEMPORARY"
    return None
