from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from uuid import uuid4

from funding_pipeline.jobs.watchdog import should_requeue
from funding_pipeline.schemas.jobs import ChunkDescriptor, ChunkJobOut
from funding_pipeline.schemas.opportunities import OpportunityWrite, StoredOpportunity
from funding_pipeline.schemas.runs import (
    ACTIVE_RUN_STATUSES,
    COUNTER_FIELDS,
    TERMINAL_RUN_STATUSES,
    ProgressDelta,
    RunCounters,
    RunError,
    RunOut,
    StageMetrics,
)
from funding_pipeline.services.repository import RepositoryConflictError, RepositoryNotFoundError


class PipelineStore(Protocol):
    async def get_source(self, source_id: str) -> dict[str, Any] | None: ...

    async def insert_run(self, *, source_id: str, options: dict[str, Any], metrics: dict[str, Any]) -> RunOut: ...

    async def get_run(self, run_id: str) -> RunOut | None: ...

    async def claim_run(self, run_id: str) -> RunOut | None: ...

    async def list_pending_runs(self, limit: int) -> list[RunOut]: ...

    async def list_active_runs(self, source_id: str) -> list[RunOut]: ...

    async def list_stale_runs(self, *, older_than_seconds: int, limit: int) -> list[RunOut]: ...

    async def increment_run_counters(self, run_id: str, delta: ProgressDelta) -> None: ...

    async def transition_run(
        self,
        run_id: str,
        *,
        status: str,
        error: RunError | None,
        metrics: dict[str, Any],
    ) -> RunOut | None: ...

    async def insert_jobs(
        self, *, run_id: str, source_id: str, descriptors: list[ChunkDescriptor]
    ) -> list[ChunkJobOut]: ...

    async def get_job(self, job_id: str) -> ChunkJobOut | None: ...

    async def claim_job(self, job_id: str, lease_seconds: int) -> ChunkJobOut | None: ...

    async def update_job(
        self,
        job_id: str,
        *,
        status: str,
        expected_statuses: Iterable[str],
        error: RunError | None = None,
        counters: dict[str, int] | None = None,
        metrics: dict[str, Any] | None = None,
        stage_count: int | None = None,
    ) -> ChunkJobOut | None: ...

    async def list_jobs(self, run_id: str) -> list[ChunkJobOut]: ...

    async def list_claimable_jobs(self, limit: int, *, unclaimed_after_seconds: int) -> list[ChunkJobOut]: ...

    async def requeue_expired_jobs(self, limit: int) -> int: ...

    async def find_existing(self, source_id: str, source_native_id: str) -> StoredOpportunity | None: ...

    async def find_existing_many(self, source_id: str, source_native_ids: list[str]) -> dict[str, StoredOpportunity]: ...

    async def upsert_opportunities(
        self, *, source_id: str, run_id: str, writes: list[OpportunityWrite]
    ) -> list[StoredOpportunity]: ...

    async def record_event(
        self, *, entity_type: str, entity_id: str, event_type: str, payload: dict[str, Any]
    ) -> None: ...

    async def close(self) -> None: ...


class InMemoryStore:
    """Process-local store with the same contract as PostgresRepository, for tests and local runs."""

    def __init__(self, sources: Iterable[dict[str, Any]] = ()) -> None:
        self.sources: dict[str, dict[str, Any]] = {row["id"]: dict(row) for row in sources}
        self.runs: dict[str, RunOut] = {}
        self.jobs: dict[str, ChunkJobOut] = {}
        self.opportunities: dict[tuple[str, str], StoredOpportunity] = {}
        self.events: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    def add_source(self, row: dict[str, Any]) -> None:
        self.sources[row["id"]] = dict(row)

    async def get_source(self, source_id: str) -> dict[str, Any] | None:
        row = self.sources.get(source_id)
        return dict(row) if row is not None else None

    async def insert_run(self, *, source_id: str, options: dict[str, Any], metrics: dict[str, Any]) -> RunOut:
        if source_id not in self.sources:
            raise RepositoryNotFoundError("source not found")
        now = _now()
        run = RunOut(
            id=str(uuid4()),
            source_id=source_id,
            options=dict(options),
            metrics=dict(metrics),
            created_at=now,
            updated_at=now,
        )
        self.runs[run.id] = run
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunOut | None:
        run = self.runs.get(run_id)
        return run.model_copy(deep=True) if run is not None else None

    async def claim_run(self, run_id: str) -> RunOut | None:
        async with self._lock:
            run = self._require_run(run_id)
            if run.status != "pending":
                return None
            now = _now()
            run.status = "processing"
            run.started_at = now
            run.updated_at = now
            return run.model_copy(deep=True)

    async def list_pending_runs(self, limit: int) -> list[RunOut]:
        pending = [run for run in self.runs.values() if run.status == "pending"]
        pending.sort(key=lambda run: run.created_at or _now())
        return [run.model_copy(deep=True) for run in pending[:limit]]

    async def list_active_runs(self, source_id: str) -> list[RunOut]:
        return [
            run.model_copy(deep=True)
            for run in self.runs.values()
            if run.source_id == source_id and run.status in ACTIVE_RUN_STATUSES
        ]

    async def list_stale_runs(self, *, older_than_seconds: int, limit: int) -> list[RunOut]:
        cutoff = _now() - timedelta(seconds=older_than_seconds)
        stale = [
            run
            for run in self.runs.values()
            if run.status in ACTIVE_RUN_STATUSES and (run.started_at or run.created_at or _now()) <= cutoff
        ]
        return [run.model_copy(deep=True) for run in stale[:limit]]

    async def increment_run_counters(self, run_id: str, delta: ProgressDelta) -> None:
        async with self._lock:
            run = self._require_run(run_id)
            for name in COUNTER_FIELDS:
                setattr(run, name, getattr(run, name) + getattr(delta.counters, name))
            for stage, metrics in delta.stages.items():
                run.stages[stage] = run.stages.get(stage, StageMetrics()).merged(metrics)
            run.updated_at = _now()

    async def transition_run(
        self,
        run_id: str,
        *,
        status: str,
        error: RunError | None,
        metrics: dict[str, Any],
    ) -> RunOut | None:
        async with self._lock:
            run = self._require_run(run_id)
            if run.status in TERMINAL_RUN_STATUSES:
                return None
            now = _now()
            run.status = status  # type: ignore[assignment]
            run.error = error
            run.metrics = {**run.metrics, **metrics}
            run.completed_at = now
            run.updated_at = now
            return run.model_copy(deep=True)

    async def insert_jobs(
        self, *, run_id: str, source_id: str, descriptors: list[ChunkDescriptor]
    ) -> list[ChunkJobOut]:
        async with self._lock:
            run = self._require_run(run_id)
            if any(job.run_id == run_id for job in self.jobs.values()):
                raise RepositoryConflictError("chunks already exist for run")
            created: list[ChunkJobOut] = []
            now = _now()
            for descriptor in descriptors:
                job = ChunkJobOut(
                    id=str(uuid4()),
                    run_id=run_id,
                    source_id=source_id,
                    chunk_index=descriptor.chunk_index,
                    total_chunks=descriptor.total_chunks,
                    first_page=descriptor.first_page,
                    page_count=descriptor.page_count,
                    estimated_records=descriptor.estimated_records,
                    created_at=now,
                )
                self.jobs[job.id] = job
                created.append(job.model_copy(deep=True))
            run.total_chunks = len(descriptors)
            return created

    async def get_job(self, job_id: str) -> ChunkJobOut | None:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def claim_job(self, job_id: str, lease_seconds: int) -> ChunkJobOut | None:
        async with self._lock:
            job = self._require_job(job_id)
            if job.status != "pending":
                return None
            now = _now()
            job.status = "processing"
            job.attempt += 1
            job.started_at = job.started_at or now
            job.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return job.model_copy(deep=True)

    async def update_job(
        self,
        job_id: str,
        *,
        status: str,
        expected_statuses: Iterable[str],
        error: RunError | None = None,
        counters: dict[str, int] | None = None,
        metrics: dict[str, Any] | None = None,
        stage_count: int | None = None,
    ) -> ChunkJobOut | None:
        async with self._lock:
            job = self._require_job(job_id)
            if job.status not in set(expected_statuses):
                return None
            job.status = status  # type: ignore[assignment]
            if error is not None:
                job.error = error
            if counters is not None:
                job.counters = RunCounters.model_validate(counters)
            if metrics is not None:
                job.metrics = {**job.metrics, **metrics}
            if stage_count is not None:
                job.stage_count = stage_count
            if job.is_terminal:
                job.completed_at = _now()
                job.lease_expires_at = None
            return job.model_copy(deep=True)

    async def list_jobs(self, run_id: str) -> list[ChunkJobOut]:
        jobs = [job for job in self.jobs.values() if job.run_id == run_id]
        jobs.sort(key=lambda job: job.chunk_index)
        return [job.model_copy(deep=True) for job in jobs]

    async def list_claimable_jobs(self, limit: int, *, unclaimed_after_seconds: int) -> list[ChunkJobOut]:
        cutoff = _now() - timedelta(seconds=unclaimed_after_seconds)
        claimable = [
            job
            for job in self.jobs.values()
            if job.status == "pending"
            and (job.attempt > 0 or (job.created_at or _now()) <= cutoff)
            and self.runs.get(job.run_id) is not None
            and self.runs[job.run_id].status == "processing"
        ]
        claimable.sort(key=lambda job: (job.created_at or _now(), job.chunk_index))
        return [job.model_copy(deep=True) for job in claimable[:limit]]

    async def requeue_expired_jobs(self, limit: int) -> int:
        async with self._lock:
            now = _now()
            requeued = 0
            for job in self.jobs.values():
                if requeued >= limit:
                    break
                if not should_requeue(job.model_dump(), now=now):
                    continue
                job.status = "pending"
                job.lease_expires_at = None
                self.events.append(
                    {
                        "entity_type": "job",
                        "entity_id": job.id,
                        "event_type": "lease_requeued",
                        "payload": {"reason": "lease_expired"},
                    }
                )
                requeued += 1
            return requeued

    async def find_existing(self, source_id: str, source_native_id: str) -> StoredOpportunity | None:
        row = self.opportunities.get((source_id, source_native_id))
        return row.model_copy(deep=True) if row is not None else None

    async def find_existing_many(self, source_id: str, source_native_ids: list[str]) -> dict[str, StoredOpportunity]:
        found: dict[str, StoredOpportunity] = {}
        for native_id in source_native_ids:
            row = self.opportunities.get((source_id, native_id))
            if row is not None:
                found[native_id] = row.model_copy(deep=True)
        return found

    async def upsert_opportunities(
        self, *, source_id: str, run_id: str, writes: list[OpportunityWrite]
    ) -> list[StoredOpportunity]:
        async with self._lock:
            now = _now()
            staged: dict[tuple[str, str], StoredOpportunity] = {}
            for write in writes:
                key = (source_id, write.candidate.source_native_id)
                current = staged.get(key) or self.opportunities.get(key)
                fields = write.candidate.model_dump()
                if current is None:
                    staged[key] = StoredOpportunity(
                        **fields,
                        id=str(uuid4()),
                        source_id=source_id,
                        analysis=dict(write.analysis),
                        analyzed_at=now if write.analyzed else None,
                        last_seen_run_id=run_id,
                        created_at=now,
                        updated_at=now,
                    )
                    continue
                staged[key] = current.model_copy(
                    update={
                        **fields,
                        "analysis": dict(write.analysis) if write.analyzed else current.analysis,
                        "analyzed_at": now if write.analyzed else current.analyzed_at,
                        "last_seen_run_id": run_id,
                        "updated_at": now,
                    },
                    deep=True,
                )
            self.opportunities.update(staged)
            return [row.model_copy(deep=True) for row in staged.values()]

    async def record_event(
        self, *, entity_type: str, entity_id: str, event_type: str, payload: dict[str, Any]
    ) -> None:
        self.events.append(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_type": event_type,
                "payload": dict(payload),
                "created_at": _now(),
            }
        )

    async def close(self) -> None:
        return None

    def _require_run(self, run_id: str) -> RunOut:
        run = self.runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("run not found")
        return run

    def _require_job(self, job_id: str) -> ChunkJobOut:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job


def _now() -> datetime:
    return datetime.now(timezone.utc)
