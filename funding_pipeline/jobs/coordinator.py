from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from pydantic import ValidationError

from funding_pipeline.core.config import CoordinatorConfig
from funding_pipeline.core.errors import (
    ConfigurationError,
    ExtractionError,
    PersistenceError,
    PipelineError,
    RunStartConfigurationError,
    RunStartError,
    RunStartPersistenceError,
    error_from_exception,
)
from funding_pipeline.core.telemetry import pipeline_context
from funding_pipeline.jobs.batcher import AnalysisBatcher, AnalysisItem, AnalysisReport
from funding_pipeline.jobs.change_detector import ChangeDetector
from funding_pipeline.jobs.chunker import JobChunker
from funding_pipeline.jobs.relevance_filter import FilterReport, RelevanceFilter
from funding_pipeline.jobs.run_manager import RunManager, run_error_from
from funding_pipeline.schemas.jobs import ChunkJobOut
from funding_pipeline.schemas.opportunities import CandidateRecord, OpportunityWrite, StoredOpportunity
from funding_pipeline.schemas.runs import ProgressDelta, RunCounters, RunOptions, RunOut, StageMetrics
from funding_pipeline.schemas.sources import SourceConfig, parse_source_config
from funding_pipeline.services.repository import RepositoryError
from funding_pipeline.services.source_client import SourceClient

if TYPE_CHECKING:
    from funding_pipeline.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class ChunkOutcome:
    chunk_id: str
    chunk_index: int
    status: str
    counters: RunCounters
    stage_count: int
    error: PipelineError | None = None
    stages: dict[str, StageMetrics] = field(default_factory=dict)
    filter_report: FilterReport | None = None
    pages_read: int = 0
    truncated: bool = False


class ProcessCoordinator:
    """Sequences extraction, change detection, analysis, relevance filtering and storage for one run at a time."""

    def __init__(
        self,
        *,
        store: PipelineStore,
        source_client: SourceClient,
        batcher: AnalysisBatcher,
        run_manager: RunManager,
        chunker: JobChunker,
        detector: ChangeDetector,
        relevance_filter: RelevanceFilter | None = None,
        config: CoordinatorConfig | None = None,
    ) -> None:
        self.store = store
        self.source_client = source_client
        self.batcher = batcher
        self.run_manager = run_manager
        self.chunker = chunker
        self.detector = detector
        self.relevance_filter = relevance_filter or RelevanceFilter()
        self.config = config or CoordinatorConfig()

    async def start_run(self, source_id: str, options: dict[str, Any] | None = None) -> str:
        """Validate the source and enqueue a pending run.

        Raises a RunStartError subclass when no run could be created; the caller then has
        no run record to inspect. Processing happens later in ``execute_run``.
        """
        with tracer.start_as_current_span("pipeline.start_run") as span:
            span.set_attribute("source.id", source_id)
            try:
                run_options = self._parse_options(options)
                await self._load_source(source_id)
                concurrent = await self._active_run_ids(source_id)
                metrics: dict[str, Any] = {}
                if concurrent:
                    logger.warning(
                        "source already has active runs source_id=%s active=%s",
                        source_id,
                        ",".join(concurrent),
                    )
                    metrics = {"concurrent_run_detected": True, "concurrent_run_ids": concurrent}
                run_id = await self.run_manager.start_run(
                    source_id,
                    run_options.model_dump(exclude_none=True),
                    **metrics,
                )
            except RunStartError as exc:
                await self._report_start_rejection(source_id, exc)
                raise
            span.set_attribute("run.id", run_id)
            return run_id

    async def execute_run(self, run_id: str) -> RunOut | None:
        with pipeline_context(run_id=run_id), tracer.start_as_current_span("pipeline.run") as span:
            span.set_attribute("run.id", run_id)
            run = await self.run_manager.mark_processing(run_id)
            if run is None:
                return await self.run_manager.get_run(run_id)
            span.set_attribute("source.id", run.source_id)

            try:
                source = await self._source_for_run(run)
                chunks = await self._plan(run, source)
            except Exception as exc:
                if not isinstance(exc, PipelineError):
                    logger.exception("run planning failed unexpectedly run_id=%s", run_id)
                error = error_from_exception(exc, stage="planning").with_context(run_id=run_id)
                await self.run_manager.update_run_error(run_id, error, stage=error.stage)
                return await self.run_manager.get_run(run_id)

            span.set_attribute("run.total_chunks", len(chunks))
            await self._process_chunks(run, source, chunks)
            return await self._finalize(run_id)

    async def resume_chunk(self, chunk_id: str) -> RunOut | None:
        """Process a chunk returned to the queue after its worker disappeared."""
        chunk = await self.chunker.get_chunk(chunk_id)
        if chunk is None or chunk.status != "pending":
            return None
        run = await self.run_manager.get_run(chunk.run_id)
        if run is None or run.status != "processing":
            return None

        with pipeline_context(run_id=run.id, source_id=run.source_id, chunk_index=chunk.chunk_index):
            try:
                source = await self._source_for_run(run)
            except PipelineError as exc:
                claimed = await self.chunker.claim_chunk(chunk.id, self.config.claim_lease_seconds)
                if claimed is None:
                    return None
                exc.with_context(run_id=run.id, chunk_index=chunk.chunk_index)
                await self.chunker.record_chunk_status(claimed.id, "failed", error=run_error_from(exc))
                return await self._finalize(run.id)

            outcome = await self.process_chunk(run, source, chunk)
            if outcome is None:
                return None
            return await self._finalize(run.id)

    async def process_chunk(self, run: RunOut, source: SourceConfig, chunk: ChunkJobOut) -> ChunkOutcome | None:
        with (
            pipeline_context(run_id=run.id, source_id=source.id, chunk_index=chunk.chunk_index),
            tracer.start_as_current_span("pipeline.chunk") as span,
        ):
            span.set_attribute("run.id", run.id)
            span.set_attribute("chunk.index", chunk.chunk_index)
            claimed = await self.chunker.claim_chunk(chunk.id, self.config.claim_lease_seconds)
            if claimed is None:
                logger.info("chunk already claimed run_id=%s chunk_index=%s", run.id, chunk.chunk_index)
                return None

            outcome = await self._run_chunk_stages(run, source, claimed)
            span.set_attribute("chunk.status", outcome.status)

            await self.run_manager.update_progress(
                run.id,
                ProgressDelta(counters=outcome.counters, stages=outcome.stages),
            )
            await self.chunker.record_chunk_status(
                claimed.id,
                outcome.status,
                error=run_error_from(outcome.error) if outcome.error is not None else None,
                counters=outcome.counters,
                metrics=_chunk_metrics(outcome),
                stage_count=outcome.stage_count,
            )
            return outcome

    async def _run_chunk_stages(self, run: RunOut, source: SourceConfig, chunk: ChunkJobOut) -> ChunkOutcome:
        outcome = ChunkOutcome(
            chunk_id=chunk.id,
            chunk_index=chunk.chunk_index,
            status="completed",
            counters=RunCounters(),
            stage_count=0,
        )
        force_full = bool(run.options.get("force_full_reprocessing"))
        candidates: list[CandidateRecord] = []
        stage = "extraction"
        try:
            started = time.perf_counter()
            records, outcome.pages_read, outcome.truncated = await self._extract_chunk(source, chunk)
            candidates = _unique_by_native_id(records)
            outcome.stages["extraction"] = StageMetrics(duration_ms=_elapsed_ms(started))
            outcome.stage_count = 1

            stage = "change_detection"
            started = time.perf_counter()
            existing = await self._find_existing(source.id, candidates)
            items = self._partition(candidates, existing, force_full=force_full)
            outcome.stages["change_detection"] = StageMetrics(duration_ms=_elapsed_ms(started))
            outcome.stage_count = 2

            stage = "analysis"
            report = await self.batcher.analyze(items)
            outcome.stages["analysis"] = StageMetrics(
                duration_ms=report.duration_ms,
                input_tokens=report.input_tokens,
                output_tokens=report.output_tokens,
                api_calls=report.api_calls,
                batches=len(report.batches),
            )
            outcome.stage_count = 3

            stage = "filter"
            started = time.perf_counter()
            outcome.filter_report = self.relevance_filter.apply(report.outcomes)
            outcome.stages["filter"] = StageMetrics(duration_ms=_elapsed_ms(started))
            outcome.stage_count = 4

            stage = "storage"
            started = time.perf_counter()
            outcome.counters = await self._persist(run, source, report)
            outcome.stages["storage"] = StageMetrics(duration_ms=_elapsed_ms(started))
            outcome.stage_count = 5

            if report.errors:
                outcome.error = report.errors[0]
        except PipelineError as exc:
            outcome.error = exc.with_context(stage=stage)
            outcome.counters = RunCounters(processed=len(candidates), failed=len(candidates))
        except Exception as exc:
            logger.exception("chunk failed unexpectedly run_id=%s chunk_index=%s", run.id, chunk.chunk_index)
            outcome.error = error_from_exception(exc, stage=stage)
            outcome.counters = RunCounters(processed=len(candidates), failed=len(candidates))

        if outcome.error is not None:
            outcome.error.with_context(run_id=run.id, chunk_index=chunk.chunk_index)
            outcome.status = "failed"
            logger.error(
                "chunk failed run_id=%s chunk_index=%s stage=%s kind=%s: %s",
                run.id,
                chunk.chunk_index,
                outcome.error.stage,
                outcome.error.kind,
                outcome.error.message,
            )
        else:
            logger.info(
                "chunk completed run_id=%s chunk_index=%s counters=%s",
                run.id,
                chunk.chunk_index,
                outcome.counters.model_dump(),
            )
        return outcome

    async def _extract_chunk(
        self, source: SourceConfig, chunk: ChunkJobOut
    ) -> tuple[list[CandidateRecord], int, bool]:
        """Read the chunk's pages; the flag is set when an open-ended chunk stopped at the page cap."""
        token = self.source_client.initial_token(source, chunk.first_page)
        max_pages = chunk.page_count or self.config.max_pages_per_chunk
        records: list[CandidateRecord] = []
        pages_read = 0
        while pages_read < max_pages:
            page, token = await self._extract_page_with_retries(source, token)
            records.extend(page)
            pages_read += 1
            if token is None:
                return records, pages_read, False
        truncated = chunk.page_count is None
        if truncated:
            logger.warning(
                "chunk truncated at page cap source_id=%s chunk_index=%s pages=%s",
                source.id,
                chunk.chunk_index,
                pages_read,
            )
        return records, pages_read, truncated

    async def _extract_page_with_retries(
        self, source: SourceConfig, token: str | None
    ) -> tuple[list[CandidateRecord], str | None]:
        for attempt in range(self.config.extraction_max_retries + 1):
            try:
                return await self.source_client.extract_page(source, token)
            except ExtractionError as exc:
                if not exc.retryable or attempt >= self.config.extraction_max_retries:
                    exc.details["attempts"] = attempt + 1
                    raise
                logger.warning(
                    "page extraction failed, retry %s/%s source_id=%s token=%s: %s",
                    attempt + 1,
                    self.config.extraction_max_retries,
                    source.id,
                    token,
                    exc.message,
                )
                await asyncio.sleep(self.config.extraction_retry_delay_seconds)
        raise ExtractionError("page extraction retries exhausted", stage="extraction")

    async def _find_existing(self, source_id: str, candidates: list[CandidateRecord]) -> dict[str, StoredOpportunity]:
        try:
            return await self.store.find_existing_many(
                source_id,
                [candidate.source_native_id for candidate in candidates],
            )
        except RepositoryError as exc:
            raise PersistenceError(f"existing record lookup failed: {exc}", stage="change_detection") from exc

    def _partition(
        self,
        candidates: list[CandidateRecord],
        existing: dict[str, StoredOpportunity],
        *,
        force_full: bool,
    ) -> list[AnalysisItem]:
        items: list[AnalysisItem] = []
        for candidate in candidates:
            stored = existing.get(candidate.source_native_id)
            if stored is None or force_full:
                needs_analysis = True
            else:
                needs_analysis = self.detector.detect(stored, candidate)
            items.append(AnalysisItem(candidate=candidate, existing=stored, needs_analysis=needs_analysis))
        return items

    async def _persist(self, run: RunOut, source: SourceConfig, report: AnalysisReport) -> RunCounters:
        writes: list[OpportunityWrite] = []
        added = updated = skipped = failed = 0
        for outcome in report.outcomes:
            if outcome.kind == "failed":
                failed += 1
                continue
            if outcome.kind == "filtered":
                skipped += 1
                continue
            if outcome.kind == "bypassed":
                skipped += 1
                writes.append(
                    OpportunityWrite(
                        candidate=outcome.candidate,
                        analysis=outcome.analysis or {},
                        analyzed=False,
                        action="skipped",
                    )
                )
                continue
            action = "updated" if outcome.existing is not None else "added"
            if action == "updated":
                updated += 1
            else:
                added += 1
            writes.append(
                OpportunityWrite(candidate=outcome.candidate, analysis=outcome.analysis or {}, action=action)
            )

        try:
            await self.store.upsert_opportunities(source_id=source.id, run_id=run.id, writes=writes)
        except RepositoryError as exc:
            raise PersistenceError(f"opportunity upsert failed: {exc}", stage="storage") from exc

        return RunCounters(
            processed=len(report.outcomes),
            added=added,
            updated=updated,
            skipped=skipped,
            failed=failed,
        )

    async def _process_chunks(self, run: RunOut, source: SourceConfig, chunks: list[ChunkJobOut]) -> None:
        semaphore = asyncio.Semaphore(self.config.worker_count)

        async def worker(chunk: ChunkJobOut) -> ChunkOutcome | None:
            async with semaphore:
                return await self.process_chunk(run, source, chunk)

        results = await asyncio.gather(
            *(worker(chunk) for chunk in chunks if chunk.status == "pending"),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                # chunk stays processing until its lease expires and the watchdog requeues it
                logger.error("chunk status could not be recorded run_id=%s: %s", run.id, result)

    async def _plan(self, run: RunOut, source: SourceConfig) -> list[ChunkJobOut]:
        existing = await self.chunker.list_chunks(run.id)
        if existing:
            return existing

        volume: int | None = None
        if source.pagination.seekable:
            try:
                volume = await self.source_client.estimate_volume(source)
            except ExtractionError as exc:
                logger.warning("volume estimate unavailable source_id=%s: %s", source.id, exc.message)
        descriptors = self.chunker.plan(
            volume,
            page_size=source.pagination.page_size,
            seekable=source.pagination.seekable,
        )
        logger.info(
            "planned run run_id=%s source_id=%s volume=%s chunks=%s",
            run.id,
            source.id,
            volume,
            len(descriptors),
        )
        return await self.chunker.create_chunks(run.id, run.source_id, descriptors)

    async def _finalize(self, run_id: str) -> RunOut | None:
        chunks = await self.chunker.list_chunks(run_id)
        finalized = await self.run_manager.finalize(run_id, chunks)
        return finalized or await self.run_manager.get_run(run_id)

    async def _load_source(self, source_id: str) -> SourceConfig:
        try:
            row = await self.store.get_source(source_id)
        except RepositoryError as exc:
            raise RunStartPersistenceError(f"source lookup failed: {exc}", stage="start") from exc
        if row is None:
            raise RunStartConfigurationError(f"unknown source {source_id}", stage="configuration")
        if not row.get("enabled", True):
            raise RunStartConfigurationError(f"source {source_id} is disabled", stage="configuration")
        try:
            return parse_source_config(row)
        except ConfigurationError as exc:
            raise RunStartConfigurationError(exc.message, stage="configuration", details=exc.details) from exc

    async def _source_for_run(self, run: RunOut) -> SourceConfig:
        try:
            row = await self.store.get_source(run.source_id)
        except RepositoryError as exc:
            raise PersistenceError(f"source lookup failed: {exc}", stage="configuration", run_id=run.id) from exc
        if row is None:
            raise ConfigurationError(f"unknown source {run.source_id}", stage="configuration", run_id=run.id)
        return parse_source_config(row)

    async def _active_run_ids(self, source_id: str) -> list[str]:
        try:
            runs = await self.store.list_active_runs(source_id)
        except RepositoryError as exc:
            raise RunStartPersistenceError(f"active run lookup failed: {exc}", stage="start") from exc
        return [run.id for run in runs]

    @staticmethod
    def _parse_options(options: dict[str, Any] | None) -> RunOptions:
        try:
            return RunOptions.model_validate(options or {})
        except ValidationError as exc:
            raise RunStartConfigurationError(
                "run options are invalid",
                stage="configuration",
                details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc

    async def _report_start_rejection(self, source_id: str, error: RunStartError) -> None:
        logger.error("run start rejected source_id=%s kind=%s: %s", source_id, error.kind, error.message)
        try:
            await self.store.record_event(
                entity_type="source",
                entity_id=source_id,
                event_type="run_start_rejected",
                payload=error.to_dict(),
            )
        except RepositoryError as exc:
            logger.warning("run start rejection not recorded source_id=%s: %s", source_id, exc)


def _unique_by_native_id(candidates: list[CandidateRecord]) -> list[CandidateRecord]:
    unique: dict[str, CandidateRecord] = {}
    for candidate in candidates:
        unique[candidate.source_native_id] = candidate
    return list(unique.values())


def _chunk_metrics(outcome: ChunkOutcome) -> dict[str, Any]:
    stages = outcome.stages
    metrics: dict[str, Any] = {
        "duration_ms": round(sum(stage.duration_ms for stage in stages.values()), 1),
        "input_tokens": sum(stage.input_tokens for stage in stages.values()),
        "output_tokens": sum(stage.output_tokens for stage in stages.values()),
        "stages": {name: stage.model_dump() for name, stage in stages.items()},
        "pages_read": outcome.pages_read,
    }
    if outcome.filter_report is not None:
        metrics["filter"] = outcome.filter_report.as_metrics()
        metrics["filtered_out"] = outcome.filter_report.excluded
    if outcome.truncated:
        metrics["truncated"] = True
    return metrics


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)
