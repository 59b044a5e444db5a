from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from funding_pipeline.core.config import WatchdogConfig
from funding_pipeline.core.errors import RunTimeoutError

if TYPE_CHECKING:
    from funding_pipeline.jobs.run_manager import RunManager
    from funding_pipeline.services.store import PipelineStore

logger = logging.getLogger(__name__)

_NON_TERMINAL_RUN_STATUSES = {"pending", "processing"}


def lease_expired(job: dict[str, Any], now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = _parse_timestamp(job.get("lease_expires_at"))
    if lease is None:
        return False
    return lease <= now


def should_requeue(job: dict[str, Any], now: datetime | None = None) -> bool:
    return job.get("status") == "processing" and lease_expired(job, now=now)


def run_age_seconds(run: dict[str, Any], now: datetime | None = None) -> float | None:
    now = now or datetime.now(timezone.utc)
    started = _parse_timestamp(run.get("started_at")) or _parse_timestamp(run.get("created_at"))
    if started is None:
        return None
    return max(0.0, (now - started).total_seconds())


def run_overdue(run: dict[str, Any], *, timeout_seconds: int, now: datetime | None = None) -> bool:
    if run.get("status") not in _NON_TERMINAL_RUN_STATUSES:
        return False
    age = run_age_seconds(run, now=now)
    return age is not None and age >= timeout_seconds


@dataclass(slots=True)
class WatchdogReport:
    requeued_jobs: int = 0
    overdue_runs: list[str] = field(default_factory=list)
    timed_out_runs: list[str] = field(default_factory=list)


class Watchdog:
    """Returns abandoned chunk leases to the queue and times out runs that never finish."""

    def __init__(self, store: PipelineStore, run_manager: RunManager, config: WatchdogConfig | None = None) -> None:
        self.store = store
        self.run_manager = run_manager
        self.config = config or WatchdogConfig()

    async def sweep(self, now: datetime | None = None) -> WatchdogReport:
        now = now or datetime.now(timezone.utc)
        report = WatchdogReport()
        report.requeued_jobs = await self.store.requeue_expired_jobs(self.config.batch_size)
        if report.requeued_jobs:
            logger.info("requeued expired chunk leases: %s", report.requeued_jobs)

        stale_runs = await self.store.list_stale_runs(
            older_than_seconds=self.config.soft_timeout_seconds,
            limit=self.config.batch_size,
        )
        for run in stale_runs:
            snapshot = run.model_dump()
            if not run_overdue(snapshot, timeout_seconds=self.config.hard_timeout_seconds, now=now):
                report.overdue_runs.append(run.id)
                logger.warning(
                    "run exceeded soft timeout run_id=%s status=%s age_seconds=%.0f",
                    run.id,
                    run.status,
                    run_age_seconds(snapshot, now=now) or 0.0,
                )
                continue

            error = RunTimeoutError(
                f"run did not reach a terminal state within {self.config.hard_timeout_seconds}s",
                stage="watchdog",
                run_id=run.id,
            )
            if await self.run_manager.update_run_error(run.id, error, stage="watchdog"):
                report.timed_out_runs.append(run.id)
                logger.error("run marked failed by watchdog run_id=%s", run.id)
        return report


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
