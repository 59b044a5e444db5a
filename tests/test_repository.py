from __future__ import annotations

import asyncio

import pytest
from asyncpg import exceptions as pg_exc

from funding_pipeline.core.config import ChunkerConfig, RunManagerConfig
from funding_pipeline.core.errors import PersistenceError
from funding_pipeline.jobs.chunker import JobChunker
from funding_pipeline.jobs.run_manager import RunManager
from funding_pipeline.schemas.runs import ProgressDelta, RunCounters
from funding_pipeline.services.repository import (
    PostgresRepository,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)


class ClosedPool:
    """Pool whose connections were dropped underneath it."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or pg_exc.ConnectionDoesNotExistError("connection was closed in the middle of operation")
        self.calls: list[str] = []

    def _fail(self, name: str):
        self.calls.append(name)
        raise self.error

    async def fetch(self, *args):
        self._fail("fetch")

    async def fetchrow(self, *args):
        self._fail("fetchrow")

    async def fetchval(self, *args):
        self._fail("fetchval")

    async def execute(self, *args):
        self._fail("execute")

    def acquire(self):
        self._fail("acquire")


class ForeignKeyPool(ClosedPool):
    async def fetchrow(self, *args):
        self.calls.append("fetchrow")
        raise pg_exc.ForeignKeyViolationError("insert violates foreign key")


def _repository(pool: ClosedPool) -> PostgresRepository:
    repository = PostgresRepository("postgresql://pipeline@localhost/pipeline", 1, 1)
    repository._pool = pool
    return repository


@pytest.mark.parametrize(
    "error",
    [
        pg_exc.ConnectionDoesNotExistError("connection was closed"),
        pg_exc.InterfaceError("cannot perform operation: another operation is in progress"),
        pg_exc.QueryCanceledError("canceling statement due to statement timeout"),
        ConnectionResetError("connection reset by peer"),
        TimeoutError(),
    ],
)
def test_driver_failures_surface_as_unavailable(error: Exception) -> None:
    repository = _repository(ClosedPool(error))

    with pytest.raises(RepositoryUnavailableError) as exc_info:
        asyncio.run(repository.list_jobs("run-1"))

    assert exc_info.value.__cause__ is error


def test_transaction_failures_surface_as_unavailable() -> None:
    repository = _repository(ClosedPool())

    with pytest.raises(RepositoryUnavailableError, match="increment_run_counters"):
        asyncio.run(repository.increment_run_counters("run-1", ProgressDelta(counters=RunCounters(processed=1))))


def test_specific_mappings_are_kept() -> None:
    repository = _repository(ForeignKeyPool())

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.insert_run(source_id="missing", options={}, metrics={}))


def test_run_manager_drops_progress_when_connection_is_lost() -> None:
    pool = ClosedPool()
    manager = RunManager(_repository(pool), RunManagerConfig(terminal_retry_delay_seconds=0.0))

    assert asyncio.run(manager.update_progress("run-1", RunCounters(processed=2, added=2))) is False
    assert pool.calls == ["acquire"]


def test_run_manager_retries_terminal_transition_then_raises() -> None:
    pool = ClosedPool()
    manager = RunManager(_repository(pool), RunManagerConfig(terminal_retry_delay_seconds=0.0))

    with pytest.raises(PersistenceError) as exc_info:
        asyncio.run(manager.complete("run-1", {"total_chunks": 1}))

    assert exc_info.value.retryable is True
    assert exc_info.value.stage == "finalize"
    assert pool.calls == ["fetchrow", "fetchrow"]


def test_chunk_terminal_status_retries_then_raises() -> None:
    pool = ClosedPool()
    chunker = JobChunker(_repository(pool), ChunkerConfig(terminal_retry_delay_seconds=0.0))

    with pytest.raises(PersistenceError) as exc_info:
        asyncio.run(chunker.record_chunk_status("job-1", "completed", counters=RunCounters()))

    assert exc_info.value.retryable is True
    assert pool.calls == ["fetchrow", "fetchrow"]
