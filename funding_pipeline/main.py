from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass

from opentelemetry import trace

from funding_pipeline.core.config import Settings, build_pipeline_config, get_settings
from funding_pipeline.core.telemetry import (
    configure_pipeline_logging,
    setup_pipeline_telemetry,
    shutdown_pipeline_telemetry,
)
from funding_pipeline.jobs.batcher import AnalysisBatcher, StructuredAnalysisClient
from funding_pipeline.jobs.change_detector import ChangeDetector
from funding_pipeline.jobs.chunker import JobChunker
from funding_pipeline.jobs.coordinator import ProcessCoordinator
from funding_pipeline.jobs.relevance_filter import RelevanceFilter
from funding_pipeline.jobs.run_manager import RunManager
from funding_pipeline.jobs.watchdog import Watchdog
from funding_pipeline.services.analysis_client import get_analysis_client
from funding_pipeline.services.repository import get_repository
from funding_pipeline.services.source_client import SourceClient
from funding_pipeline.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class Pipeline:
    store: PipelineStore
    run_manager: RunManager
    chunker: JobChunker
    coordinator: ProcessCoordinator
    watchdog: Watchdog


def build_pipeline(
    settings: Settings,
    *,
    store: PipelineStore | None = None,
    analysis_client: StructuredAnalysisClient | None = None,
    source_client: SourceClient | None = None,
) -> Pipeline:
    config = build_pipeline_config(settings)
    store = store or get_repository()
    run_manager = RunManager(store, config.run_manager)
    chunker = JobChunker(store, config.chunker)
    coordinator = ProcessCoordinator(
        store=store,
        source_client=source_client or SourceClient(timeout_seconds=settings.source_timeout_seconds),
        batcher=AnalysisBatcher(analysis_client or get_analysis_client(), config.batcher),
        run_manager=run_manager,
        chunker=chunker,
        detector=ChangeDetector(config.detector),
        relevance_filter=RelevanceFilter(config.relevance),
        config=config.coordinator,
    )
    return Pipeline(
        store=store,
        run_manager=run_manager,
        chunker=chunker,
        coordinator=coordinator,
        watchdog=Watchdog(store, run_manager, config.watchdog),
    )


async def poll_once(pipeline: Pipeline, settings: Settings) -> int:
    """Execute pending runs and orphaned chunks once; returns how many units were handled."""
    handled = 0
    for run in await pipeline.store.list_pending_runs(limit=settings.worker_count):
        with tracer.start_as_current_span("worker.process_run") as span:
            span.set_attribute("run.id", run.id)
            finished = await pipeline.coordinator.execute_run(run.id)
            if finished is not None:
                logger.info("run %s finished with status=%s", run.id, finished.status)
        handled += 1

    orphaned = await pipeline.store.list_claimable_jobs(
        limit=settings.worker_count,
        unclaimed_after_seconds=settings.claim_lease_seconds,
    )
    for chunk in orphaned:
        with tracer.start_as_current_span("worker.resume_chunk") as span:
            span.set_attribute("chunk.id", chunk.id)
            await pipeline.coordinator.resume_chunk(chunk.id)
        handled += 1
    return handled


async def run_worker() -> None:
    settings = get_settings()
    configure_pipeline_logging()
    telemetry_runtime = setup_pipeline_telemetry(settings)
    pipeline = build_pipeline(settings)

    backoff = settings.poll_interval_seconds
    last_sweep_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_sweep_at >= settings.watchdog_interval_seconds:
                        report = await pipeline.watchdog.sweep()
                        if report.timed_out_runs:
                            logger.info("watchdog timed out runs: %s", ",".join(report.timed_out_runs))
                        last_sweep_at = now

                    handled = await poll_once(pipeline, settings)
                    if not handled:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await pipeline.store.close()
        shutdown_pipeline_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
