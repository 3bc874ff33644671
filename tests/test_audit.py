import json
import logging

from gatekeeper.logger import JsonFormatter
from gatekeeper.services import audit


def test_failing_sink_does_not_propagate(audit_records):
    def _broken(record):
        raise RuntimeError("sink down")

    audit.register_sink(_broken)
    try:
        record = audit.emit("CONFIG_UPDATED", "admin-1", "updated", version=3)
    finally:
        audit.unregister_sink(_broken)

    assert record.details == {"version": 3}
    assert audit_records[-1] is record


def test_audit_record_is_logged_as_json(caplog):
    with caplog.at_level(logging.INFO, logger="gatekeeper.audit"):
        audit.emit("BLOCK_UNBLOCKED", 42, "Block 1 unblocked", block_id=1)

    entry = caplog.records[-1]
    payload = json.loads(JsonFormatter().format(entry))
    assert payload["message"] == "Block 1 unblocked"
    assert payload["audit_action"] == "BLOCK_UNBLOCKED"
    assert payload["actor_id"] == "42"
