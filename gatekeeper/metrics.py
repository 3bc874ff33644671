from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

# Gate decisions by action kind (login, register, module, other) and outcome
gate_decisions_total = Counter(
    "gate_decisions_total", "Policy gateway decisions", ["action", "outcome"]
)

# latency buckets tuned for a handful of DB round trips
_gate_latency_buckets = (
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
)

gate_latency_seconds = Histogram(
    "gate_latency_seconds", "Policy gateway decision latency", buckets=_gate_latency_buckets
)

# Quota rejects when the daily weighted limit would be exceeded
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests"
)

# Threshold warnings issued (50/75/90 % by default)
quota_warning_total = Counter(
    "quota_warning_total", "Quota threshold warnings issued", ["percentage"]
)

burst_reject_total = Counter(
    "burst_reject_total", "Number of burst window rejected requests"
)

sessions_force_logout_total = Counter(
    "sessions_force_logout_total", "Sessions deactivated other than by expiry", ["reason"]
)

blocks_created_total = Counter(
    "blocks_created_total", "Account blocks created", ["block_type"]
)

appeals_reviewed_total = Counter(
    "appeals_reviewed_total", "Block appeals reviewed", ["outcome"]
)

# result: ran | skipped | failed
daily_reset_total = Counter(
    "daily_reset_total", "Daily quota reset attempts", ["result"]
)

__all__ = [
    "gate_decisions_total",
    "gate_latency_seconds",
    "quota_reject_total",
    "quota_warning_total",
    "burst_reject_total",
    "sessions_force_logout_total",
    "blocks_created_total",
    "appeals_reviewed_total",
    "daily_reset_total",
]
