from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from functools import lru_cache, wraps
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from funding_pipeline.core.config import get_settings
from funding_pipeline.schemas.jobs import ChunkDescriptor, ChunkJobOut
from funding_pipeline.schemas.opportunities import OpportunityWrite, StoredOpportunity
from funding_pipeline.schemas.runs import ProgressDelta, RunError, RunOut, StageMetrics


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


_T = TypeVar("_T")

_DATABASE_ERRORS = (pg_exc.PostgresError, pg_exc.InterfaceError, OSError, TimeoutError)


def _unavailable_on_database_error(
    method: Callable[..., Awaitable[_T]],
) -> Callable[..., Awaitable[_T]]:
    """Re-raise driver, socket and timeout failures as RepositoryUnavailableError."""

    @wraps(method)
    async def wrapper(*args: Any, **kwargs: Any) -> _T:
        try:
            return await method(*args, **kwargs)
        except _DATABASE_ERRORS as exc:
            raise RepositoryUnavailableError(f"database error in {method.__name__}: {exc}") from exc

    return wrapper


_RUN_COLUMNS = """
  r.id::text as id,
  r.source_id,
  r.status,
  r.options,
  r.processed,
  r.added,
  r.updated,
  r.skipped,
  r.failed,
  r.total_chunks,
  r.error,
  r.metrics,
  r.started_at,
  r.completed_at,
  r.created_at,
  r.updated_at
"""

_JOB_COLUMNS = """
  id::text as id,
  run_id::text as run_id,
  source_id,
  chunk_index,
  total_chunks,
  status,
  first_page,
  page_count,
  estimated_records,
  stage_count,
  attempt,
  lease_expires_at,
  counters,
  metrics,
  error,
  created_at,
  started_at,
  completed_at
"""

_OPPORTUNITY_COLUMNS = """
  id::text as id,
  source_id,
  source_native_id,
  title,
  maximum_award,
  minimum_award,
  total_funding_available,
  open_date,
  close_date,
  status,
  description,
  url,
  api_updated_at,
  extra,
  analysis,
  analyzed_at,
  last_seen_run_id::text as last_seen_run_id,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @_unavailable_on_database_error
    async def get_source(self, source_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id, name, enabled, configuration
            from funding_sources
            where id = $1
            """,
            source_id,
        )
        if row is None:
            return None
        return {
            "id": row["id"],
            "name": row["name"],
            "enabled": row["enabled"],
            "configuration": self._coerce_json_dict(row["configuration"]),
        }

    @_unavailable_on_database_error
    async def insert_run(self, *, source_id: str, options: dict[str, Any], metrics: dict[str, Any]) -> RunOut:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into pipeline_runs as r (source_id, options, metrics)
                values ($1, $2::jsonb, $3::jsonb)
                returning {_RUN_COLUMNS}
                """,
                source_id,
                json.dumps(options),
                json.dumps(metrics),
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("source not found") from exc
        return self._run_row_to_model(row)

    @_unavailable_on_database_error
    async def get_run(self, run_id: str) -> RunOut | None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(f"select {_RUN_COLUMNS} from pipeline_runs r where r.id = $1::uuid", run_id)
                if row is None:
                    return None
                stage_rows = await conn.fetch(
                    """
                    select stage, duration_ms, input_tokens, output_tokens, api_calls, batches
                    from pipeline_run_stage_metrics
                    where run_id = $1::uuid
                    """,
                    run_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._run_row_to_model(row, stage_rows)

    @_unavailable_on_database_error
    async def claim_run(self, run_id: str) -> RunOut | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update pipeline_runs r
            set status = 'processing', started_at = now(), updated_at = now()
            where r.id = $1::uuid and r.status = 'pending'
            returning {_RUN_COLUMNS}
            """,
            run_id,
        )
        if row is None:
            exists = await pool.fetchval("select 1 from pipeline_runs where id = $1::uuid", run_id)
            if not exists:
                raise RepositoryNotFoundError("run not found")
            return None
        return self._run_row_to_model(row)

    @_unavailable_on_database_error
    async def list_pending_runs(self, limit: int) -> list[RunOut]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_RUN_COLUMNS}
            from pipeline_runs r
            where r.status = 'pending'
            order by r.created_at asc
            limit $1
            """,
            max(1, min(limit, 1000)),
        )
        return [self._run_row_to_model(row) for row in rows]

    @_unavailable_on_database_error
    async def list_active_runs(self, source_id: str) -> list[RunOut]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_RUN_COLUMNS}
            from pipeline_runs r
            where r.source_id = $1 and r.status in ('pending', 'processing')
            order by r.created_at asc
            """,
            source_id,
        )
        return [self._run_row_to_model(row) for row in rows]

    @_unavailable_on_database_error
    async def list_stale_runs(self, *, older_than_seconds: int, limit: int) -> list[RunOut]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_RUN_COLUMNS}
            from pipeline_runs r
            where r.status in ('pending', 'processing')
              and coalesce(r.started_at, r.created_at) <= now() - ($1::int * interval '1 second')
            order by coalesce(r.started_at, r.created_at) asc
            limit $2
            """,
            older_than_seconds,
            max(1, min(limit, 1000)),
        )
        return [self._run_row_to_model(row) for row in rows]

    @_unavailable_on_database_error
    async def increment_run_counters(self, run_id: str, delta: ProgressDelta) -> None:
        pool = await self._get_pool()
        counters = delta.counters
        async with pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    update pipeline_runs
                    set
                      processed = processed + $2,
                      added = added + $3,
                      updated = updated + $4,
                      skipped = skipped + $5,
                      failed = failed + $6,
                      updated_at = now()
                    where id = $1::uuid
                    returning 1
                    """,
                    run_id,
                    counters.processed,
                    counters.added,
                    counters.updated,
                    counters.skipped,
                    counters.failed,
                )
                if not updated:
                    raise RepositoryNotFoundError("run not found")

                for stage, metrics in delta.stages.items():
                    await conn.execute(
                        """
                        insert into pipeline_run_stage_metrics as m (
                          run_id, stage, duration_ms, input_tokens, output_tokens, api_calls, batches
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7)
                        on conflict (run_id, stage) do update
                        set
                          duration_ms = m.duration_ms + excluded.duration_ms,
                          input_tokens = m.input_tokens + excluded.input_tokens,
                          output_tokens = m.output_tokens + excluded.output_tokens,
                          api_calls = m.api_calls + excluded.api_calls,
                          batches = m.batches + excluded.batches
                        """,
                        run_id,
                        stage,
                        metrics.duration_ms,
                        metrics.input_tokens,
                        metrics.output_tokens,
                        metrics.api_calls,
                        metrics.batches,
                    )

    @_unavailable_on_database_error
    async def transition_run(
        self,
        run_id: str,
        *,
        status: str,
        error: RunError | None,
        metrics: dict[str, Any],
    ) -> RunOut | None:
        if status not in {"completed", "failed"}:
            raise RepositoryValidationError("runs can only transition to a terminal status")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update pipeline_runs r
            set
              status = $2,
              error = $3::jsonb,
              metrics = r.metrics || $4::jsonb,
              completed_at = now(),
              updated_at = now()
            where r.id = $1::uuid and r.status in ('pending', 'processing')
            returning {_RUN_COLUMNS}
            """,
            run_id,
            status,
            json.dumps(error.model_dump()) if error is not None else None,
            json.dumps(metrics, default=str),
        )
        if row is None:
            exists = await pool.fetchval("select 1 from pipeline_runs where id = $1::uuid", run_id)
            if not exists:
                raise RepositoryNotFoundError("run not found")
            return None
        return self._run_row_to_model(row)

    @_unavailable_on_database_error
    async def insert_jobs(
        self, *, run_id: str, source_id: str, descriptors: list[ChunkDescriptor]
    ) -> list[ChunkJobOut]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    rows = []
                    for descriptor in descriptors:
                        row = await conn.fetchrow(
                            f"""
                            insert into pipeline_jobs (
                              run_id, source_id, chunk_index, total_chunks, first_page, page_count, estimated_records
                            )
                            values ($1::uuid, $2, $3, $4, $5, $6, $7)
                            returning {_JOB_COLUMNS}
                            """,
                            run_id,
                            source_id,
                            descriptor.chunk_index,
                            descriptor.total_chunks,
                            descriptor.first_page,
                            descriptor.page_count,
                            descriptor.estimated_records,
                        )
                        rows.append(row)
                    await conn.execute(
                        "update pipeline_runs set total_chunks = $2, updated_at = now() where id = $1::uuid",
                        run_id,
                        len(descriptors),
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("chunks already exist for run") from exc
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("run not found") from exc
        return [self._job_row_to_model(row) for row in rows]

    @_unavailable_on_database_error
    async def get_job(self, job_id: str) -> ChunkJobOut | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from pipeline_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_model(row) if row is not None else None

    @_unavailable_on_database_error
    async def claim_job(self, job_id: str, lease_seconds: int) -> ChunkJobOut | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update pipeline_jobs
                    set
                      status = 'processing',
                      attempt = attempt + 1,
                      started_at = coalesce(started_at, now()),
                      lease_expires_at = now() + ($2::int * interval '1 second')
                    where id = $1::uuid and status = 'pending'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    lease_seconds,
                )
                if not row:
                    exists = await conn.fetchval("select 1 from pipeline_jobs where id = $1::uuid", job_id)
                    if not exists:
                        raise RepositoryNotFoundError("job not found")
                    return None

                await self._insert_event(
                    conn,
                    entity_type="job",
                    entity_id=row["id"],
                    event_type="claimed",
                    payload={"lease_seconds": lease_seconds, "attempt": row["attempt"]},
                )
                return self._job_row_to_model(row)

    @_unavailable_on_database_error
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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update pipeline_jobs
            set
              status = $2,
              error = coalesce($4::jsonb, error),
              counters = coalesce($5::jsonb, counters),
              metrics = metrics || coalesce($6::jsonb, '{{}}'::jsonb),
              stage_count = coalesce($7, stage_count),
              completed_at = case when $2 in ('completed', 'failed') then now() else completed_at end,
              lease_expires_at = case when $2 in ('completed', 'failed') then null else lease_expires_at end
            where id = $1::uuid and status = any($3::text[])
            returning {_JOB_COLUMNS}
            """,
            job_id,
            status,
            list(expected_statuses),
            json.dumps(error.model_dump()) if error is not None else None,
            json.dumps(counters) if counters is not None else None,
            json.dumps(metrics, default=str) if metrics is not None else None,
            stage_count,
        )
        if row is None:
            exists = await pool.fetchval("select 1 from pipeline_jobs where id = $1::uuid", job_id)
            if not exists:
                raise RepositoryNotFoundError("job not found")
            return None
        return self._job_row_to_model(row)

    @_unavailable_on_database_error
    async def list_jobs(self, run_id: str) -> list[ChunkJobOut]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {_JOB_COLUMNS} from pipeline_jobs where run_id = $1::uuid order by chunk_index asc",
            run_id,
        )
        return [self._job_row_to_model(row) for row in rows]

    @_unavailable_on_database_error
    async def list_claimable_jobs(self, limit: int, *, unclaimed_after_seconds: int) -> list[ChunkJobOut]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from pipeline_jobs
            where id in (
              select j.id
              from pipeline_jobs j
              join pipeline_runs r on r.id = j.run_id
              where j.status = 'pending'
                and r.status = 'processing'
                and (j.attempt > 0 or j.created_at <= now() - ($2::int * interval '1 second'))
              order by j.created_at asc, j.chunk_index asc
              limit $1
            )
            order by created_at asc, chunk_index asc
            """,
            max(1, min(limit, 1000)),
            unclaimed_after_seconds,
        )
        return [self._job_row_to_model(row) for row in rows]

    @_unavailable_on_database_error
    async def requeue_expired_jobs(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from pipeline_jobs
                      where status = 'processing'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update pipeline_jobs j
                    set
                      status = 'pending',
                      lease_expires_at = null
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )

                for row in rows:
                    await self._insert_event(
                        conn,
                        entity_type="job",
                        entity_id=row["id"],
                        event_type="lease_requeued",
                        payload={"reason": "lease_expired"},
                    )
                return len(rows)

    async def find_existing(self, source_id: str, source_native_id: str) -> StoredOpportunity | None:
        found = await self.find_existing_many(source_id, [source_native_id])
        return found.get(source_native_id)

    @_unavailable_on_database_error
    async def find_existing_many(self, source_id: str, source_native_ids: list[str]) -> dict[str, StoredOpportunity]:
        if not source_native_ids:
            return {}
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_OPPORTUNITY_COLUMNS}
            from opportunities
            where source_id = $1 and source_native_id = any($2::text[])
            """,
            source_id,
            list(dict.fromkeys(source_native_ids)),
        )
        return {row["source_native_id"]: self._opportunity_row_to_model(row) for row in rows}

    @_unavailable_on_database_error
    async def upsert_opportunities(
        self, *, source_id: str, run_id: str, writes: list[OpportunityWrite]
    ) -> list[StoredOpportunity]:
        if not writes:
            return []
        pool = await self._get_pool()
        stored: list[StoredOpportunity] = []
        async with pool.acquire() as conn:
            async with conn.transaction():
                for write in writes:
                    candidate = write.candidate
                    row = await conn.fetchrow(
                        f"""
                        insert into opportunities as o (
                          source_id, source_native_id, title, maximum_award, minimum_award,
                          total_funding_available, open_date, close_date, status, description, url,
                          api_updated_at, extra, analysis, analyzed_at, last_seen_run_id
                        )
                        values (
                          $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb, $14::jsonb,
                          case when $15 then now() else null end, $16::uuid
                        )
                        on conflict (source_id, source_native_id) do update
                        set
                          title = excluded.title,
                          maximum_award = excluded.maximum_award,
                          minimum_award = excluded.minimum_award,
                          total_funding_available = excluded.total_funding_available,
                          open_date = excluded.open_date,
                          close_date = excluded.close_date,
                          status = excluded.status,
                          description = excluded.description,
                          url = excluded.url,
                          api_updated_at = excluded.api_updated_at,
                          extra = excluded.extra,
                          analysis = case when $15 then excluded.analysis else o.analysis end,
                          analyzed_at = case when $15 then now() else o.analyzed_at end,
                          last_seen_run_id = excluded.last_seen_run_id,
                          updated_at = now()
                        returning {_OPPORTUNITY_COLUMNS}
                        """,
                        source_id,
                        candidate.source_native_id,
                        candidate.title,
                        candidate.maximum_award,
                        candidate.minimum_award,
                        candidate.total_funding_available,
                        candidate.open_date,
                        candidate.close_date,
                        candidate.status,
                        candidate.description,
                        candidate.url,
                        candidate.api_updated_at,
                        json.dumps(candidate.extra, default=str),
                        json.dumps(write.analysis, default=str),
                        write.analyzed,
                        run_id,
                    )
                    stored.append(self._opportunity_row_to_model(row))
        return stored

    @_unavailable_on_database_error
    async def record_event(
        self, *, entity_type: str, entity_id: str, event_type: str, payload: dict[str, Any]
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._insert_event(
                conn,
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=event_type,
                payload=payload,
            )

    @staticmethod
    async def _insert_event(
        conn: asyncpg.Connection,
        *,
        entity_type: str,
        entity_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into pipeline_events (entity_type, entity_id, event_type, payload)
            values ($1, $2, $3, $4::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            json.dumps(payload, default=str),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FP_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _run_row_to_model(self, row: asyncpg.Record, stage_rows: list[asyncpg.Record] | None = None) -> RunOut:
        error = self._coerce_json_dict(row["error"])
        stages = {
            stage_row["stage"]: StageMetrics(
                duration_ms=float(stage_row["duration_ms"] or 0.0),
                input_tokens=int(stage_row["input_tokens"] or 0),
                output_tokens=int(stage_row["output_tokens"] or 0),
                api_calls=int(stage_row["api_calls"] or 0),
                batches=int(stage_row["batches"] or 0),
            )
            for stage_row in stage_rows or []
        }
        return RunOut(
            id=row["id"],
            source_id=row["source_id"],
            status=row["status"],
            options=self._coerce_json_dict(row["options"]),
            processed=row["processed"],
            added=row["added"],
            updated=row["updated"],
            skipped=row["skipped"],
            failed=row["failed"],
            total_chunks=row["total_chunks"],
            error=RunError.model_validate(error) if error else None,
            metrics=self._coerce_json_dict(row["metrics"]),
            stages=stages,
            started_at=self._coerce_datetime(row["started_at"]),
            completed_at=self._coerce_datetime(row["completed_at"]),
            created_at=self._coerce_datetime(row["created_at"]),
            updated_at=self._coerce_datetime(row["updated_at"]),
        )

    def _job_row_to_model(self, row: asyncpg.Record) -> ChunkJobOut:
        error = self._coerce_json_dict(row["error"])
        return ChunkJobOut(
            id=row["id"],
            run_id=row["run_id"],
            source_id=row["source_id"],
            chunk_index=row["chunk_index"],
            total_chunks=row["total_chunks"],
            status=row["status"],
            first_page=row["first_page"],
            page_count=row["page_count"],
            estimated_records=row["estimated_records"],
            stage_count=row["stage_count"],
            attempt=row["attempt"],
            lease_expires_at=self._coerce_datetime(row["lease_expires_at"]),
            counters=self._coerce_json_dict(row["counters"]),
            metrics=self._coerce_json_dict(row["metrics"]),
            error=RunError.model_validate(error) if error else None,
            created_at=self._coerce_datetime(row["created_at"]),
            started_at=self._coerce_datetime(row["started_at"]),
            completed_at=self._coerce_datetime(row["completed_at"]),
        )

    def _opportunity_row_to_model(self, row: asyncpg.Record) -> StoredOpportunity:
        return StoredOpportunity(
            id=row["id"],
            source_id=row["source_id"],
            source_native_id=row["source_native_id"],
            title=row["title"],
            maximum_award=self._coerce_float(row["maximum_award"]),
            minimum_award=self._coerce_float(row["minimum_award"]),
            total_funding_available=self._coerce_float(row["total_funding_available"]),
            open_date=row["open_date"],
            close_date=row["close_date"],
            status=row["status"],
            description=row["description"],
            url=row["url"],
            api_updated_at=row["api_updated_at"],
            extra=self._coerce_json_dict(row["extra"]),
            analysis=self._coerce_json_dict(row["analysis"]),
            analyzed_at=self._coerce_datetime(row["analyzed_at"]),
            last_seen_run_id=row["last_seen_run_id"],
            created_at=self._coerce_datetime(row["created_at"]),
            updated_at=self._coerce_datetime(row["updated_at"]),
        )

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_datetime(value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return None
            try:
                return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
            except ValueError:
                return None
        return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
