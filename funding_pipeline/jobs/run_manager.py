from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from funding_pipeline.core.config import RunManagerConfig
from funding_pipeline.core.errors import (
    PersistenceError,
    RunStartPersistenceError,
    error_from_exception,
)
from funding_pipeline.schemas.jobs import ChunkJobOut
from funding_pipeline.schemas.runs import ProgressDelta, RunCounters, RunError, RunEvent, RunOut
from funding_pipeline.services.repository import RepositoryError, RepositoryNotFoundError

if TYPE_CHECKING:
    from funding_pipeline.services.store import PipelineStore

logger = logging.getLogger(__name__)

RunListener = Callable[[RunEvent], Awaitable[None] | None]


def run_error_from(error: BaseException, *, stage: str | None = None) -> RunError:
    pipeline_error = error_from_exception(error, stage=stage)
    return RunError.model_validate(pipeline_error.to_dict())


def first_chunk_error(chunks: Iterable[ChunkJobOut]) -> RunError | None:
    """Error of the earliest failed chunk, ordered by completion time then index."""
    failed = [chunk for chunk in chunks if chunk.status == "failed"]
    if not failed:
        return None
    fallback = datetime.max.replace(tzinfo=timezone.utc)
    failed.sort(key=lambda chunk: (chunk.completed_at or fallback, chunk.chunk_index))
    first = failed[0]
    if first.error is not None:
        return first.error
    return RunError(kind="internal", message="chunk failed without a recorded error", chunk_index=first.chunk_index)


class RunManager:
    """Owns the run lifecycle: pending -> processing -> completed | failed."""

    def __init__(
        self,
        store: PipelineStore,
        config: RunManagerConfig | None = None,
        listeners: Iterable[RunListener] = (),
    ) -> None:
        self.store = store
        self.config = config or RunManagerConfig()
        self._listeners: list[RunListener] = list(listeners)

    def add_listener(self, listener: RunListener) -> None:
        self._listeners.append(listener)

    async def start_run(self, source_id: str, options: dict[str, Any] | None = None, **metrics: Any) -> str:
        try:
            run = await self.store.insert_run(source_id=source_id, options=dict(options or {}), metrics=metrics)
        except RepositoryError as exc:
            raise RunStartPersistenceError(
                f"could not create run for source {source_id}: {exc}",
                stage="start",
                details={"source_id": source_id},
            ) from exc

        await self._record_event(run.id, "run_created", {"source_id": source_id, "options": run.options})
        logger.info("run created run_id=%s source_id=%s", run.id, source_id)
        return run.id

    async def mark_processing(self, run_id: str) -> RunOut | None:
        try:
            run = await self.store.claim_run(run_id)
        except RepositoryError as exc:
            raise PersistenceError(f"could not start run: {exc}", stage="start", run_id=run_id) from exc
        if run is None:
            logger.info("run not claimable run_id=%s", run_id)
        return run

    async def get_run(self, run_id: str) -> RunOut | None:
        try:
            return await self.store.get_run(run_id)
        except RepositoryError as exc:
            raise PersistenceError(f"could not read run: {exc}", run_id=run_id) from exc

    async def update_progress(self, run_id: str, delta: ProgressDelta | RunCounters) -> bool:
        if isinstance(delta, RunCounters):
            delta = ProgressDelta(counters=delta)
        try:
            await self.store.increment_run_counters(run_id, delta)
        except RepositoryError as exc:
            logger.warning("progress update dropped run_id=%s: %s", run_id, exc)
            return False
        return True

    async def complete(self, run_id: str, final_metrics: dict[str, Any] | None = None) -> bool:
        return await self._transition(run_id, status="completed", error=None, metrics=final_metrics or {})

    async def update_run_error(
        self,
        run_id: str,
        error: BaseException | RunError,
        stage: str | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> bool:
        run_error = error if isinstance(error, RunError) else run_error_from(error, stage=stage)
        if run_error.stage is None and stage is not None:
            run_error = run_error.model_copy(update={"stage": stage})
        return await self._transition(run_id, status="failed", error=run_error, metrics=metrics or {})

    async def finalize(self, run_id: str, chunks: list[ChunkJobOut]) -> RunOut | None:
        """Finalize once every chunk is terminal; returns None while any chunk is still open."""
        open_chunks = [chunk.chunk_index for chunk in chunks if not chunk.is_terminal]
        if open_chunks:
            logger.debug("run not ready to finalize run_id=%s open_chunks=%s", run_id, open_chunks)
            return None

        completed = sum(1 for chunk in chunks if chunk.status == "completed")
        failed = len(chunks) - completed
        run = await self.get_run(run_id)
        filtered_out = sum(int(chunk.metrics.get("filtered_out", 0) or 0) for chunk in chunks)
        metrics = self._final_metrics(
            run, total=len(chunks), completed=completed, failed=failed, filtered_out=filtered_out
        )
        truncated = [chunk.chunk_index for chunk in chunks if chunk.metrics.get("truncated")]
        if truncated:
            metrics["truncated_chunks"] = truncated
            metrics["warnings"] = [
                f"chunk {index} stopped at the page cap before the source was exhausted" for index in truncated
            ]
            logger.warning("run finalized with truncated chunks run_id=%s chunks=%s", run_id, truncated)
        failed_chunks = [chunk for chunk in chunks if chunk.status == "failed"]
        if failed_chunks:
            metrics["chunk_errors"] = [
                {"chunk_index": chunk.chunk_index, **(chunk.error.model_dump() if chunk.error else {})}
                for chunk in failed_chunks[:20]
            ]

        if completed == 0:
            error = first_chunk_error(chunks) or RunError(
                kind="internal",
                message="run produced no chunks",
                stage="planning",
            )
            await self.update_run_error(run_id, error, metrics=metrics)
        else:
            await self.complete(run_id, metrics)
        return await self.get_run(run_id)

    def _final_metrics(
        self, run: RunOut | None, *, total: int, completed: int, failed: int, filtered_out: int = 0
    ) -> dict[str, Any]:
        metrics: dict[str, Any] = {
            "total_chunks": total,
            "completed_chunks": completed,
            "failed_chunks": failed,
            "filtered_out": filtered_out,
        }
        if run is None:
            return metrics
        input_tokens = sum(stage.input_tokens for stage in run.stages.values())
        output_tokens = sum(stage.output_tokens for stage in run.stages.values())
        metrics.update(
            {
                "bypassed_analysis": max(0, run.skipped - filtered_out),
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
                "estimated_cost_usd": round((input_tokens + output_tokens) * self.config.cost_per_token, 6),
                "api_calls": sum(stage.api_calls for stage in run.stages.values()),
            }
        )
        if run.started_at is not None:
            elapsed = datetime.now(timezone.utc) - run.started_at
            metrics["total_duration_ms"] = round(elapsed.total_seconds() * 1000, 1)
        return metrics

    async def _transition(
        self,
        run_id: str,
        *,
        status: str,
        error: RunError | None,
        metrics: dict[str, Any],
    ) -> bool:
        updated: RunOut | None = None
        for attempt in range(2):
            try:
                updated = await self.store.transition_run(run_id, status=status, error=error, metrics=metrics)
                break
            except RepositoryNotFoundError as exc:
                raise PersistenceError("run not found", stage="finalize", run_id=run_id) from exc
            except RepositoryError as exc:
                if attempt:
                    raise PersistenceError(
                        f"could not mark run {status}: {exc}",
                        stage="finalize",
                        run_id=run_id,
                        retryable=True,
                    ) from exc
                logger.warning("terminal transition failed, retrying once run_id=%s status=%s", run_id, status)
                await asyncio.sleep(self.config.terminal_retry_delay_seconds)

        if updated is None:
            logger.info("run already terminal, %s ignored run_id=%s", status, run_id)
            return False

        event = RunEvent(
            run_id=updated.id,
            source_id=updated.source_id,
            status=updated.status,
            counters=updated.counters,
            error=updated.error,
            metrics=updated.metrics,
            occurred_at=updated.completed_at or datetime.now(timezone.utc),
        )
        if status == "failed":
            logger.error("run failed run_id=%s error=%s", run_id, error.message if error else None)
        else:
            logger.info("run completed run_id=%s counters=%s", run_id, updated.counters.model_dump())
        await self._record_event(run_id, f"run_{status}", event.model_dump(mode="json"))
        await self._notify(event)
        return True

    async def _record_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self.store.record_event(entity_type="run", entity_id=run_id, event_type=event_type, payload=payload)
        except RepositoryError as exc:
            logger.warning("run event not recorded run_id=%s event=%s: %s", run_id, event_type, exc)

    async def _notify(self, event: RunEvent) -> None:
        for listener in self._listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("run listener failed run_id=%s", event.run_id)

