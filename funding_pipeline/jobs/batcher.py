from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from opentelemetry import trace

from funding_pipeline.core.config import BatcherConfig
from funding_pipeline.core.errors import AnalysisError
from funding_pipeline.schemas.opportunities import CandidateRecord, OutcomeKind, StoredOpportunity
from funding_pipeline.services.analysis_client import StructuredResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "opportunities": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "source_native_id": {"type": "string"},
                    "summary": {"type": "string"},
                    "eligible_applicants": {"type": "array", "items": {"type": "string"}},
                    "eligible_project_types": {"type": "array", "items": {"type": "string"}},
                    "funding_type": {"type": "string"},
                    "relevance_score": {"type": "number", "minimum": 0, "maximum": 10},
                    "relevance_reasoning": {"type": "string"},
                },
                "required": ["source_native_id", "summary"],
            },
        }
    },
    "required": ["opportunities"],
}

_PROMPT_HEADER = (
    "Analyze each funding opportunity below. Return exactly one entry per opportunity, "
    "keyed by its source_native_id."
)


class StructuredAnalysisClient(Protocol):
    async def call_with_schema(self, prompt: str, schema: dict[str, Any]) -> StructuredResult: ...


@dataclass(slots=True)
class AnalysisItem:
    candidate: CandidateRecord
    existing: StoredOpportunity | None = None
    needs_analysis: bool = True


@dataclass(slots=True)
class AnalysisOutcome:
    candidate: CandidateRecord
    kind: OutcomeKind
    existing: StoredOpportunity | None = None
    analysis: dict[str, Any] | None = None
    error: AnalysisError | None = None
    batch_index: int | None = None


@dataclass(slots=True)
class BatchMetrics:
    batch_index: int
    size: int
    attempts: int = 0
    api_calls: int = 0
    duration_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    succeeded: int = 0
    failed: int = 0
    individual_retries: int = 0


@dataclass(slots=True)
class AnalysisReport:
    outcomes: list[AnalysisOutcome]
    batches: list[BatchMetrics] = field(default_factory=list)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for outcome in self.outcomes if outcome.kind == kind)

    @property
    def errors(self) -> list[AnalysisError]:
        return [outcome.error for outcome in self.outcomes if outcome.error is not None]

    @property
    def input_tokens(self) -> int:
        return sum(batch.input_tokens for batch in self.batches)

    @property
    def output_tokens(self) -> int:
        return sum(batch.output_tokens for batch in self.batches)

    @property
    def api_calls(self) -> int:
        return sum(batch.api_calls for batch in self.batches)

    @property
    def duration_ms(self) -> float:
        return sum(batch.duration_ms for batch in self.batches)


def build_batch_prompt(candidates: list[CandidateRecord]) -> str:
    records = [candidate.model_dump(exclude_none=True) for candidate in candidates]
    return f"{_PROMPT_HEADER}\n\n{json.dumps(records, ensure_ascii=False, default=str)}"


class AnalysisBatcher:
    """Sends records that need analysis to the service in token-bounded batches."""

    def __init__(self, client: StructuredAnalysisClient, config: BatcherConfig | None = None) -> None:
        self.client = client
        self.config = config or BatcherConfig()

    def estimate_tokens(self, candidate: CandidateRecord) -> int:
        return self.config.base_tokens_per_record + math.ceil(candidate.content_length() / self.config.chars_per_token)

    def batch_size_for(self, candidates: list[CandidateRecord]) -> int:
        if not candidates:
            return self.config.default_batch_size
        average = sum(self.estimate_tokens(candidate) for candidate in candidates) / len(candidates)
        fit = int(self.config.token_ceiling // max(1.0, average))
        if fit < self.config.default_batch_size:
            return max(self.config.min_batch_size, fit)
        return min(self.config.max_batch_size, max(self.config.default_batch_size, fit))

    def plan_batches(self, candidates: list[CandidateRecord]) -> list[list[int]]:
        """Group candidate positions into batches that each fit the token ceiling."""
        size = self.batch_size_for(candidates)
        batches: list[list[int]] = []
        for start in range(0, len(candidates), size):
            positions = list(range(start, min(start + size, len(candidates))))
            batches.extend(self._split_over_ceiling(positions, candidates))
        return batches

    def _split_over_ceiling(self, positions: list[int], candidates: list[CandidateRecord]) -> list[list[int]]:
        groups: list[list[int]] = []
        current: list[int] = []
        current_tokens = 0
        for position in positions:
            tokens = self.estimate_tokens(candidates[position])
            if current and current_tokens + tokens > self.config.token_ceiling:
                groups.append(current)
                current, current_tokens = [], 0
            current.append(position)
            current_tokens += tokens
        if current:
            groups.append(current)
        return groups

    async def analyze(self, items: list[AnalysisItem]) -> AnalysisReport:
        outcomes: list[AnalysisOutcome | None] = [None] * len(items)
        pending: list[int] = []
        for position, item in enumerate(items):
            if item.needs_analysis:
                pending.append(position)
                continue
            outcomes[position] = AnalysisOutcome(
                candidate=item.candidate,
                kind="bypassed",
                existing=item.existing,
                analysis=dict(item.existing.analysis) if item.existing is not None else None,
            )

        report = AnalysisReport(outcomes=[])
        candidates = [items[position].candidate for position in pending]
        for batch_index, group in enumerate(self.plan_batches(candidates)):
            batch_items = [items[pending[offset]] for offset in group]
            with tracer.start_as_current_span("analysis.batch") as span:
                span.set_attribute("analysis.batch_index", batch_index)
                span.set_attribute("analysis.batch_size", len(batch_items))
                batch_outcomes, metrics = await self._run_batch(batch_index, batch_items)
                span.set_attribute("analysis.failed", metrics.failed)
            report.batches.append(metrics)
            for offset, outcome in zip(group, batch_outcomes):
                outcomes[pending[offset]] = outcome

        report.outcomes = [outcome for outcome in outcomes if outcome is not None]
        if len(report.outcomes) != len(items):
            raise RuntimeError("analysis batcher lost records")
        return report

    async def _run_batch(
        self, batch_index: int, items: list[AnalysisItem]
    ) -> tuple[list[AnalysisOutcome], BatchMetrics]:
        metrics = BatchMetrics(batch_index=batch_index, size=len(items))
        started = time.perf_counter()
        try:
            result = await self._call_with_retries(batch_index, [item.candidate for item in items], metrics)
        except AnalysisError as exc:
            metrics.failed = len(items)
            metrics.duration_ms = _elapsed_ms(started)
            logger.error("analysis batch failed batch_index=%s size=%s: %s", batch_index, len(items), exc.message)
            return [self._failed(item, exc, batch_index) for item in items], metrics

        analyses = _analyses_for(result.data, items)
        missing = [item for item in items if item.candidate.source_native_id not in analyses]
        last_error: AnalysisError | None = None
        if missing and len(items) > 1:
            logger.warning(
                "analysis batch returned %s of %s records, retrying missing individually batch_index=%s",
                len(items) - len(missing),
                len(items),
                batch_index,
            )
            for item in missing:
                metrics.individual_retries += 1
                try:
                    single = await self._call_with_retries(batch_index, [item.candidate], metrics)
                except AnalysisError as exc:
                    last_error = exc
                    continue
                recovered = _analyses_for(single.data, [item]).get(item.candidate.source_native_id)
                if recovered is not None:
                    analyses[item.candidate.source_native_id] = recovered

        outcomes: list[AnalysisOutcome] = []
        for item in items:
            analysis = analyses.get(item.candidate.source_native_id)
            if analysis is None:
                error = last_error or AnalysisError(
                    "analysis result missing for record",
                    details={"source_native_id": item.candidate.source_native_id},
                )
                outcomes.append(self._failed(item, error, batch_index))
                continue
            outcomes.append(
                AnalysisOutcome(
                    candidate=item.candidate,
                    kind="analyzed",
                    existing=item.existing,
                    analysis=analysis,
                    batch_index=batch_index,
                )
            )
        metrics.succeeded = sum(1 for outcome in outcomes if outcome.kind == "analyzed")
        metrics.failed = len(outcomes) - metrics.succeeded
        metrics.duration_ms = _elapsed_ms(started)
        return outcomes, metrics

    async def _call_with_retries(
        self, batch_index: int, candidates: list[CandidateRecord], metrics: BatchMetrics
    ) -> StructuredResult:
        prompt = build_batch_prompt(candidates)
        attempt = 0
        while True:
            metrics.attempts += 1
            metrics.api_calls += 1
            try:
                result = await self.client.call_with_schema(prompt, ANALYSIS_SCHEMA)
            except AnalysisError as exc:
                if not exc.retryable or attempt >= self.config.max_retries:
                    raise AnalysisError(
                        f"analysis batch failed after {metrics.attempts} attempts: {exc.message}",
                        stage="analysis",
                        batch_index=batch_index,
                        details={"last_error": exc.to_dict()},
                    ) from exc
                logger.warning(
                    "analysis call failed, retry %s/%s in %.1fs batch_index=%s: %s",
                    attempt + 1,
                    self.config.max_retries,
                    self.config.retry_delay_seconds,
                    batch_index,
                    exc.message,
                )
                await asyncio.sleep(self.config.retry_delay_seconds)
                attempt += 1
                continue
            metrics.input_tokens += result.input_tokens
            metrics.output_tokens += result.output_tokens
            return result

    @staticmethod
    def _failed(item: AnalysisItem, error: AnalysisError, batch_index: int) -> AnalysisOutcome:
        return AnalysisOutcome(
            candidate=item.candidate,
            kind="failed",
            existing=item.existing,
            error=error.with_context(stage="analysis", batch_index=batch_index),
            batch_index=batch_index,
        )


def _analysis_entries(data: dict[str, Any]) -> list[dict[str, Any]]:
    entries = data.get("opportunities")
    if not isinstance(entries, list):
        return []
    return [entry for entry in entries if isinstance(entry, dict)]


def _analyses_by_id(data: dict[str, Any]) -> dict[str, dict[str, Any]]:
    analyses: dict[str, dict[str, Any]] = {}
    for entry in _analysis_entries(data):
        native_id = entry.get("source_native_id")
        if isinstance(native_id, str) and native_id:
            analyses[native_id] = entry
    return analyses


def _analyses_for(data: dict[str, Any], items: list[AnalysisItem]) -> dict[str, dict[str, Any]]:
    """Key returned entries by id; a single-record call accepts its lone entry whatever id it echoes."""
    analyses = _analyses_by_id(data)
    if len(items) == 1:
        native_id = items[0].candidate.source_native_id
        entries = _analysis_entries(data)
        if native_id not in analyses and len(entries) == 1:
            analyses[native_id] = {**entries[0], "source_native_id": native_id}
    return analyses


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)
