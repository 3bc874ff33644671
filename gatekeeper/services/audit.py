"""Audit records for admin and policy mutations.

Persisting audit logs is the platform's job; this module only builds the
record and hands it to the registered sinks. The default sink writes to
the ``gatekeeper.audit`` logger so records end up in the JSON log stream.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, Field

from gatekeeper.services.clock import utcnow

audit_logger = logging.getLogger("gatekeeper.audit")
logger = logging.getLogger(__name__)


class AuditRecord(BaseModel):
    action: str
    actor_id: str
    summary: str
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


AuditSink = Callable[[AuditRecord], None]


def _log_sink(record: AuditRecord) -> None:
    audit_logger.info(
        record.summary,
        extra={
            "audit_action": record.action,
            "actor_id": record.actor_id,
            "audit_details": record.details,
        },
    )


_sinks: list[AuditSink] = [_log_sink]


def register_sink(sink: AuditSink) -> None:
    _sinks.append(sink)


def unregister_sink(sink: AuditSink) -> None:
    if sink in _sinks:
        _sinks.remove(sink)


def emit(action: str, actor_id: str, summary: str, **details: Any) -> AuditRecord:
    record = AuditRecord(action=action, actor_id=str(actor_id), summary=summary, details=details)
    for sink in list(_sinks):
        try:
            sink(record)
        except Exception:
            # sink failures never propagate to the audited mutation
            logger.exception("Audit sink %r failed", sink)
    return record


__all__ = ["AuditRecord", "emit", "register_sink", "unregister_sink"]
