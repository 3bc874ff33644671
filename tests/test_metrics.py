from prometheus_client import REGISTRY

from tests.utils.auth import build_admin_headers, build_api_headers


def _value(name: str, labels: dict | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_gate_metrics(client):
    client.put(
        "/v1/admin/rate-limit/overrides/120", headers=build_admin_headers(), json={"limit": 1}
    )
    rejects = _value("quota_reject_total")
    denied = _value("gate_decisions_total", {"action": "module", "outcome": "deny"})

    headers = build_api_headers(120)
    assert client.post("/v1/gate/modules/write-story", headers=headers).status_code == 200
    assert client.post("/v1/gate/modules/write-story", headers=headers).status_code == 429

    assert _value("quota_reject_total") == rejects + 1
    assert _value("gate_decisions_total", {"action": "module", "outcome": "deny"}) == denied + 1

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "gate_decisions_total" in body
    assert "gate_latency_seconds_bucket" in body
    assert 'quota_warning_total{percentage="90"}' in body


def test_session_and_reset_metrics(client):
    displaced = _value("sessions_force_logout_total", {"reason": "FORCE_LOGOUT"})
    headers = build_api_headers(121)
    client.post("/v1/sessions", headers=headers)
    client.post("/v1/sessions", headers=headers)
    assert _value("sessions_force_logout_total", {"reason": "FORCE_LOGOUT"}) == displaced + 1

    ran = _value("daily_reset_total", {"result": "ran"})
    skipped = _value("daily_reset_total", {"result": "skipped"})
    client.post("/v1/admin/scheduler/trigger", headers=build_admin_headers())
    client.post("/v1/admin/scheduler/trigger", headers=build_admin_headers())
    assert _value("daily_reset_total", {"result": "ran"}) == ran + 1
    assert _value("daily_reset_total", {"result": "skipped"}) == skipped + 1
