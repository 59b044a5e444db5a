from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from funding_pipeline.core.config import RunManagerConfig
from funding_pipeline.core.errors import ExtractionError, PersistenceError, RunStartError
from funding_pipeline.jobs.chunker import plan_chunks
from funding_pipeline.jobs.run_manager import RunManager, first_chunk_error
from funding_pipeline.schemas.jobs import ChunkJobOut
from funding_pipeline.schemas.runs import ProgressDelta, RunCounters, RunError, RunEvent, StageMetrics
from funding_pipeline.services.repository import RepositoryUnavailableError
from funding_pipeline.services.store import InMemoryStore

SOURCE_ROW = {"id": "src-1", "name": "Source", "enabled": True, "configuration": {}}


def _manager(store: InMemoryStore | None = None) -> tuple[InMemoryStore, RunManager]:
    store = store or InMemoryStore([SOURCE_ROW])
    return store, RunManager(store, RunManagerConfig(terminal_retry_delay_seconds=0.0))


def _chunk(index: int, status: str, *, completed_at: datetime | None = None, error: RunError | None = None) -> ChunkJobOut:
    return ChunkJobOut(
        id=f"job-{index}",
        run_id="run-1",
        source_id="src-1",
        chunk_index=index,
        total_chunks=3,
        status=status,
        completed_at=completed_at,
        error=error,
    )


def test_start_run_creates_pending_run_with_event() -> None:
    store, manager = _manager()

    run_id = asyncio.run(manager.start_run("src-1", {"triggered_by": "test"}))

    run = store.runs[run_id]
    assert run.status == "pending"
    assert run.options == {"triggered_by": "test"}
    assert run.counters.is_empty()
    assert [event["event_type"] for event in store.events] == ["run_created"]


def test_start_run_for_unknown_source_raises_without_creating_run() -> None:
    store, manager = _manager()

    with pytest.raises(RunStartError) as exc_info:
        asyncio.run(manager.start_run("missing"))

    assert isinstance(exc_info.value, PersistenceError)
    assert exc_info.value.run_id is None
    assert store.runs == {}


def test_update_run_error_is_idempotent_and_keeps_first_error() -> None:
    store, manager = _manager()

    async def run() -> tuple[bool, bool, bool, str]:
        run_id = await manager.start_run("src-1")
        await manager.mark_processing(run_id)
        first = await manager.update_run_error(run_id, ExtractionError("source down"), stage="extraction")
        second = await manager.update_run_error(run_id, RuntimeError("later failure"), stage="analysis")
        completed = await manager.complete(run_id)
        return first, second, completed, run_id

    first, second, completed, run_id = asyncio.run(run())
    run = store.runs[run_id]
    assert (first, second, completed) == (True, False, False)
    assert run.status == "failed"
    assert run.error is not None
    assert run.error.kind == "extraction"
    assert run.error.stage == "extraction"
    assert run.completed_at is not None


def test_unknown_exception_is_recorded_as_internal_error() -> None:
    store, manager = _manager()

    async def run() -> str:
        run_id = await manager.start_run("src-1")
        await manager.update_run_error(run_id, KeyError("boom"), stage="storage")
        return run_id

    run = store.runs[asyncio.run(run())]
    assert run.error is not None
    assert run.error.kind == "internal"
    assert run.error.stage == "storage"


def test_progress_updates_commute() -> None:
    store, manager = _manager()
    deltas = [
        ProgressDelta(
            counters=RunCounters(processed=3, added=2, skipped=1),
            stages={"analysis": StageMetrics(input_tokens=100, output_tokens=10, api_calls=1)},
        ),
        ProgressDelta(counters=RunCounters(processed=2, updated=1, failed=1)),
        ProgressDelta(
            counters=RunCounters(processed=4, skipped=4),
            stages={"analysis": StageMetrics(input_tokens=50, api_calls=2)},
        ),
    ]

    async def run() -> tuple[str, str]:
        forward = await manager.start_run("src-1")
        backward = await manager.start_run("src-1")
        await asyncio.gather(*(manager.update_progress(forward, delta) for delta in deltas))
        for delta in reversed(deltas):
            await manager.update_progress(backward, delta)
        return forward, backward

    forward, backward = asyncio.run(run())
    assert store.runs[forward].counters == store.runs[backward].counters
    assert store.runs[forward].counters == RunCounters(processed=9, added=2, updated=1, skipped=5, failed=1)
    assert store.runs[forward].counters.is_balanced()
    assert store.runs[forward].stages["analysis"] == store.runs[backward].stages["analysis"]
    assert store.runs[forward].stages["analysis"].api_calls == 3


def test_update_progress_drops_on_store_failure(monkeypatch) -> None:
    store, manager = _manager()

    async def broken(run_id, delta):
        raise RepositoryUnavailableError("database unavailable")

    monkeypatch.setattr(store, "increment_run_counters", broken)

    assert asyncio.run(manager.update_progress("run-1", RunCounters(processed=1))) is False


def test_terminal_transition_is_retried_once(monkeypatch) -> None:
    store, manager = _manager()
    original = store.transition_run
    calls = {"count": 0}

    async def flaky(run_id, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RepositoryUnavailableError("connection reset")
        return await original(run_id, **kwargs)

    async def run() -> tuple[str, bool]:
        run_id = await manager.start_run("src-1")
        monkeypatch.setattr(store, "transition_run", flaky)
        return run_id, await manager.complete(run_id, {"note": "done"})

    run_id, completed = asyncio.run(run())
    assert completed is True
    assert calls["count"] == 2
    assert store.runs[run_id].status == "completed"
    assert store.runs[run_id].metrics["note"] == "done"


def test_terminal_transition_raises_after_second_failure(monkeypatch) -> None:
    store, manager = _manager()

    async def broken(run_id, **kwargs):
        raise RepositoryUnavailableError("database unavailable")

    async def run() -> None:
        run_id = await manager.start_run("src-1")
        monkeypatch.setattr(store, "transition_run", broken)
        await manager.complete(run_id)

    with pytest.raises(PersistenceError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.retryable is True


def test_first_chunk_error_orders_by_completion_time() -> None:
    now = datetime.now(timezone.utc)
    chunks = [
        _chunk(0, "failed", completed_at=now, error=RunError(kind="analysis", message="late")),
        _chunk(1, "completed", completed_at=now - timedelta(minutes=5)),
        _chunk(2, "failed", completed_at=now - timedelta(minutes=1), error=RunError(kind="extraction", message="early")),
    ]

    error = first_chunk_error(chunks)
    assert error is not None
    assert error.message == "early"


def _run_with_chunks(store: InMemoryStore, manager: RunManager, statuses: list[tuple[str, RunError | None]]):
    async def run():
        run_id = await manager.start_run("src-1")
        await manager.mark_processing(run_id)
        descriptors = plan_chunks(len(statuses) * 10, 10, page_size=10)
        jobs = await store.insert_jobs(run_id=run_id, source_id="src-1", descriptors=descriptors)
        for job, (status, error) in zip(jobs, statuses):
            if status == "pending":
                continue
            await store.update_job(job.id, status=status, expected_statuses={"pending"}, error=error)
        await manager.update_progress(
            run_id,
            ProgressDelta(
                counters=RunCounters(processed=4, added=1, skipped=3),
                stages={"analysis": StageMetrics(input_tokens=600, output_tokens=400, api_calls=2)},
            ),
        )
        return await manager.finalize(run_id, await store.list_jobs(run_id))

    return asyncio.run(run())


def test_finalize_completes_run_when_some_chunks_succeed() -> None:
    store, manager = _manager()

    run = _run_with_chunks(
        store,
        manager,
        [("completed", None), ("failed", RunError(kind="extraction", message="page 3 failed", chunk_index=1))],
    )

    assert run is not None
    assert run.status == "completed"
    assert run.error is None
    assert run.metrics["total_chunks"] == 2
    assert run.metrics["completed_chunks"] == 1
    assert run.metrics["failed_chunks"] == 1
    assert run.metrics["chunk_errors"][0]["chunk_index"] == 1
    assert run.metrics["bypassed_analysis"] == 3
    assert run.metrics["total_tokens"] == 1000
    assert run.metrics["estimated_cost_usd"] == pytest.approx(0.01)
    assert run.metrics["api_calls"] == 2


def test_finalize_fails_run_when_every_chunk_failed() -> None:
    store, manager = _manager()

    run = _run_with_chunks(
        store,
        manager,
        [
            ("failed", RunError(kind="analysis", message="first", chunk_index=0)),
            ("failed", RunError(kind="analysis", message="second", chunk_index=1)),
        ],
    )

    assert run is not None
    assert run.status == "failed"
    assert run.error is not None
    assert run.error.message == "first"
    assert run.metrics["failed_chunks"] == 2


def test_finalize_waits_for_open_chunks() -> None:
    store, manager = _manager()

    run = _run_with_chunks(store, manager, [("completed", None), ("pending", None)])

    assert run is None
    assert all(stored.status == "processing" for stored in store.runs.values())


def test_listeners_receive_terminal_event_once_and_failures_are_isolated() -> None:
    received: list[RunEvent] = []

    async def async_listener(event: RunEvent) -> None:
        received.append(event)

    def broken_listener(event: RunEvent) -> None:
        raise RuntimeError("listener down")

    store, _ = _manager()
    manager = RunManager(store, RunManagerConfig(terminal_retry_delay_seconds=0.0), [broken_listener])
    manager.add_listener(async_listener)

    async def run() -> str:
        run_id = await manager.start_run("src-1")
        await manager.complete(run_id)
        await manager.update_run_error(run_id, RuntimeError("too late"))
        return run_id

    run_id = asyncio.run(run())
    assert len(received) == 1
    assert received[0].run_id == run_id
    assert received[0].status == "completed"
    assert [event["event_type"] for event in store.events] == ["run_created", "run_completed"]
