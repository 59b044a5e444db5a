from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from funding_pipeline.core.config import ChunkerConfig
from funding_pipeline.core.errors import PersistenceError
from funding_pipeline.schemas.jobs import (
    CHUNK_STATUS_ORDER,
    TERMINAL_CHUNK_STATUSES,
    ChunkDescriptor,
    ChunkJobOut,
    ChunkProgress,
)
from funding_pipeline.schemas.runs import RunCounters, RunError
from funding_pipeline.services.repository import RepositoryError, RepositoryNotFoundError

if TYPE_CHECKING:
    from funding_pipeline.services.store import PipelineStore

logger = logging.getLogger(__name__)


def plan_chunks(
    volume_estimate: int | None,
    max_chunk_size: int,
    *,
    page_size: int,
    seekable: bool = True,
) -> list[ChunkDescriptor]:
    """Split an estimated record volume into contiguous page ranges.

    The last chunk is always open-ended so records past the estimate are still read.
    """
    page_size = max(1, page_size)
    pages_per_chunk = max(1, max_chunk_size // page_size)
    records_per_chunk = pages_per_chunk * page_size

    if volume_estimate is None or not seekable or volume_estimate <= records_per_chunk:
        return [
            ChunkDescriptor(
                chunk_index=0,
                total_chunks=1,
                first_page=0,
                page_count=None,
                estimated_records=max(0, volume_estimate) if volume_estimate is not None else None,
            )
        ]

    total_pages = math.ceil(volume_estimate / page_size)
    total_chunks = math.ceil(total_pages / pages_per_chunk)
    descriptors: list[ChunkDescriptor] = []
    for index in range(total_chunks):
        is_last = index == total_chunks - 1
        remaining = volume_estimate - index * records_per_chunk
        descriptors.append(
            ChunkDescriptor(
                chunk_index=index,
                total_chunks=total_chunks,
                first_page=index * pages_per_chunk,
                page_count=None if is_last else pages_per_chunk,
                estimated_records=min(records_per_chunk, remaining),
            )
        )
    return descriptors


def is_extraction_complete(chunks: Iterable[ChunkJobOut]) -> bool:
    chunks = list(chunks)
    return bool(chunks) and all(chunk.status in TERMINAL_CHUNK_STATUSES for chunk in chunks)


def allowed_previous_statuses(target: str) -> set[str]:
    rank = CHUNK_STATUS_ORDER.get(target)
    if rank is None:
        raise ValueError(f"unknown chunk status: {target}")
    return {status for status, value in CHUNK_STATUS_ORDER.items() if value < rank}


class JobChunker:
    def __init__(self, store: PipelineStore, config: ChunkerConfig | None = None) -> None:
        self.store = store
        self.config = config or ChunkerConfig()

    def plan(
        self,
        volume_estimate: int | None,
        max_chunk_size: int | None = None,
        *,
        page_size: int | None = None,
        seekable: bool = True,
    ) -> list[ChunkDescriptor]:
        return plan_chunks(
            volume_estimate,
            max_chunk_size or self.config.max_chunk_size,
            page_size=page_size or self.config.page_size,
            seekable=seekable,
        )

    async def create_chunks(
        self, run_id: str, source_id: str, descriptors: list[ChunkDescriptor]
    ) -> list[ChunkJobOut]:
        try:
            chunks = await self.store.insert_jobs(run_id=run_id, source_id=source_id, descriptors=descriptors)
        except RepositoryError as exc:
            raise PersistenceError(f"could not create chunks: {exc}", stage="planning", run_id=run_id) from exc
        logger.info("created chunks run_id=%s total=%s", run_id, len(chunks))
        return chunks

    async def claim_chunk(self, chunk_id: str, lease_seconds: int) -> ChunkJobOut | None:
        try:
            return await self.store.claim_job(chunk_id, lease_seconds)
        except RepositoryError as exc:
            raise PersistenceError(f"could not claim chunk: {exc}", stage="claim") from exc

    async def get_chunk(self, chunk_id: str) -> ChunkJobOut | None:
        try:
            return await self.store.get_job(chunk_id)
        except RepositoryError as exc:
            raise PersistenceError(f"could not read chunk: {exc}") from exc

    async def list_chunks(self, run_id: str) -> list[ChunkJobOut]:
        try:
            return await self.store.list_jobs(run_id)
        except RepositoryError as exc:
            raise PersistenceError(f"could not list chunks: {exc}", run_id=run_id) from exc

    async def record_chunk_status(
        self,
        chunk_id: str,
        status: str,
        *,
        error: RunError | None = None,
        counters: RunCounters | None = None,
        metrics: dict[str, Any] | None = None,
        stage_count: int | None = None,
    ) -> ChunkJobOut | None:
        """Move a chunk forward; returns None when the chunk had already moved past ``status``."""
        expected = allowed_previous_statuses(status)
        terminal = status in TERMINAL_CHUNK_STATUSES
        attempts = 2 if terminal else 1
        updated: ChunkJobOut | None = None
        for attempt in range(attempts):
            try:
                updated = await self.store.update_job(
                    chunk_id,
                    status=status,
                    expected_statuses=expected,
                    error=error,
                    counters=counters.model_dump() if counters is not None else None,
                    metrics=metrics,
                    stage_count=stage_count,
                )
                break
            except RepositoryNotFoundError as exc:
                raise PersistenceError("chunk not found", stage="chunk_status") from exc
            except RepositoryError as exc:
                if attempt + 1 >= attempts:
                    raise PersistenceError(
                        f"could not mark chunk {status}: {exc}",
                        stage="chunk_status",
                        retryable=True,
                    ) from exc
                logger.warning("chunk status update failed, retrying once chunk_id=%s status=%s", chunk_id, status)
                await asyncio.sleep(self.config.terminal_retry_delay_seconds)

        if updated is None:
            logger.info("chunk status unchanged chunk_id=%s requested=%s", chunk_id, status)
            return None
        if terminal:
            await self._record_event(updated, f"chunk_{status}")
        return updated

    async def progress(self, run_id: str) -> ChunkProgress:
        chunks = await self.list_chunks(run_id)
        status_counts = Counter(chunk.status for chunk in chunks)
        terminal = sum(status_counts[status] for status in TERMINAL_CHUNK_STATUSES)
        counters = RunCounters()
        input_tokens = 0
        output_tokens = 0
        duration_ms = 0.0
        for chunk in chunks:
            counters = counters.merged(chunk.counters)
            input_tokens += int(chunk.metrics.get("input_tokens", 0) or 0)
            output_tokens += int(chunk.metrics.get("output_tokens", 0) or 0)
            duration_ms += float(chunk.metrics.get("duration_ms", 0.0) or 0.0)

        return ChunkProgress(
            run_id=run_id,
            total_chunks=len(chunks),
            status_counts=dict(status_counts),
            completion_percentage=round(terminal / len(chunks) * 100, 1) if chunks else 0.0,
            is_extraction_complete=is_extraction_complete(chunks),
            has_failures=status_counts["failed"] > 0,
            counters=counters,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
        )

    async def _record_event(self, chunk: ChunkJobOut, event_type: str) -> None:
        payload: dict[str, Any] = {
            "run_id": chunk.run_id,
            "chunk_index": chunk.chunk_index,
            "counters": chunk.counters.model_dump(),
        }
        if chunk.error is not None:
            payload["error"] = chunk.error.model_dump()
        try:
            await self.store.record_event(entity_type="job", entity_id=chunk.id, event_type=event_type, payload=payload)
        except RepositoryError as exc:
            logger.warning("chunk event not recorded chunk_id=%s: %s", chunk.id, exc)
