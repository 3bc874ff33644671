"""Daily quota reset.

The reset for a local quota day is claimed by inserting its ``reset_runs``
row; the primary key makes a second claim for the same day fail, so the
reset runs once per day no matter how many workers or replicas call it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from gatekeeper import db as db_module
from gatekeeper.config import Settings
from gatekeeper.metrics import daily_reset_total
from gatekeeper.models import ResetRun
from gatekeeper.services import audit, blocks, fingerprints, quota, rate_config, sessions
from gatekeeper.services.clock import ensure_utc, local_now, next_reset_at, quota_day, utcnow

settings = Settings()
logger = logging.getLogger(__name__)

STAT_FIELDS = (
    "records_reset",
    "records_pruned",
    "sessions_pruned",
    "devices_pruned",
    "blocks_expired",
)


@dataclass
class ResetResult:
    ran_at: datetime
    reset_date: date
    skipped: bool
    forced: bool = False
    statistics: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ran_at": self.ran_at.isoformat(),
            "reset_date": self.reset_date.isoformat(),
            "skipped": self.skipped,
            "forced": self.forced,
            "statistics": dict(self.statistics),
        }


def _run_stats(run: ResetRun | None) -> dict[str, int]:
    if run is None:
        return {}
    return {name: getattr(run, name) or 0 for name in STAT_FIELDS}


def _skipped(run: ResetRun | None, now: datetime, day: date) -> ResetResult:
    daily_reset_total.labels(result="skipped").inc()
    return ResetResult(ran_at=now, reset_date=day, skipped=True, statistics=_run_stats(run))


def run_daily_reset(
    db: Session,
    *,
    force: bool = False,
    now: datetime | None = None,
    actor_id: str = blocks.SYSTEM_ACTOR,
) -> ResetResult:
    """Reset today's quota once, pruning old sessions, devices and records."""
    now = now or utcnow()
    policy = rate_config.get_policy(db, fresh=True)
    today = quota_day(now, policy.timezone, policy.reset_time)

    existing = db.get(ResetRun, today, populate_existing=True)
    if existing is not None and not force:
        return _skipped(existing, now, today)

    if existing is None:
        run = ResetRun(reset_date=today, ran_at=now, forced=force, run_count=1)
        db.add(run)
        try:
            db.flush()
        except IntegrityError:
            # claimed by another worker
            db.rollback()
            run = db.get(ResetRun, today, populate_existing=True)
            if not force:
                return _skipped(run, now, today)
            run.run_count += 1
    else:
        run = existing
        run.run_count += 1
    run.ran_at = now
    run.forced = force

    try:
        run.records_reset = quota.reset_all(db, today)
        run.records_pruned = quota.prune_records(db, today - timedelta(days=policy.retention_days))
        run.sessions_pruned = sessions.prune_sessions(
            db, now - timedelta(days=settings.session_retention_days)
        )
        run.devices_pruned = fingerprints.prune_devices(
            db, now - timedelta(days=settings.device_retention_days)
        )
        db.commit()
        run.blocks_expired = blocks.expire_due_blocks(db, now)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        daily_reset_total.labels(result="failed").inc()
        logger.exception("Daily reset for %s failed", today.isoformat())
        raise

    stats = _run_stats(run)
    daily_reset_total.labels(result="ran").inc()
    logger.info("Daily reset for %s done: %s", today.isoformat(), stats)
    audit.emit(
        "DAILY_RESET",
        actor_id,
        f"Daily reset for {today.isoformat()} ({'forced' if force else 'scheduled'})",
        reset_date=today.isoformat(),
        forced=force,
        **stats,
    )
    return ResetResult(ran_at=now, reset_date=today, skipped=False, forced=force, statistics=stats)


def recent_runs(db: Session, limit: int = 30) -> list[ResetRun]:
    return list(db.scalars(select(ResetRun).order_by(ResetRun.reset_date.desc()).limit(limit)))


class ResetScheduler:
    """Background task that fires the daily reset at the local boundary."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or db_module.SessionLocal
        self._task: asyncio.Task | None = None
        self._running = False
        self.poll_interval = settings.reset_poll_interval_s
        self.last_result: ResetResult | None = None

    @property
    def running(self) -> bool:
        return self._running

    def maybe_run(
        self, force: bool = False, *, now: datetime | None = None, actor_id: str = blocks.SYSTEM_ACTOR
    ) -> ResetResult:
        with self._session_factory() as db:
            result = run_daily_reset(db, force=force, now=now, actor_id=actor_id)
        if not result.skipped:
            self.last_result = result
        return result

    def seconds_until_next(self, now: datetime | None = None) -> float:
        """Sleep until the next boundary, waking at least every poll interval."""
        now = now or utcnow()
        with self._session_factory() as db:
            policy = rate_config.get_policy(db)
        until = (next_reset_at(now, policy.timezone, policy.reset_time) - now).total_seconds()
        return max(1.0, min(float(self.poll_interval), until + 1.0))

    def status(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        with self._session_factory() as db:
            policy = rate_config.get_policy(db)
            last = db.scalar(select(ResetRun).order_by(ResetRun.reset_date.desc()).limit(1))
            today = quota_day(now, policy.timezone, policy.reset_time)
            return {
                "running": self._running,
                "timezone": policy.timezone,
                "reset_time": policy.reset_time,
                "local_time": local_now(policy.timezone, now).isoformat(),
                "quota_day": today.isoformat(),
                "reset_done_today": last is not None and last.reset_date == today,
                "last_reset_date": last.reset_date.isoformat() if last else None,
                "last_reset_at": ensure_utc(last.ran_at).isoformat() if last else None,
                "next_reset_at": next_reset_at(now, policy.timezone, policy.reset_time).isoformat(),
            }

    async def start(self, actor_id: str = blocks.SYSTEM_ACTOR) -> None:
        if self._running:
            logger.warning("Reset scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Reset scheduler started (poll_interval=%ss)", self.poll_interval)
        audit.emit("RESET_SCHEDULER_STARTED", actor_id, "Reset scheduler started")

    async def stop(self, actor_id: str = blocks.SYSTEM_ACTOR) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reset scheduler stopped")
        audit.emit("RESET_SCHEDULER_STOPPED", actor_id, "Reset scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.maybe_run)
                delay = await asyncio.to_thread(self.seconds_until_next)
            except Exception:
                logger.exception("Reset scheduler iteration failed")
                delay = float(self.poll_interval)
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break


reset_scheduler = ResetScheduler()
