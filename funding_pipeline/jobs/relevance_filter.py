from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Literal

from funding_pipeline.core.config import RelevanceFilterConfig
from funding_pipeline.jobs.batcher import AnalysisOutcome

logger = logging.getLogger(__name__)

ExclusionReason = Literal["low_score", "missing_score"]


@dataclass(slots=True)
class FilterReport:
    evaluated: int = 0
    included: int = 0
    excluded: int = 0
    reasons: Counter[str] = field(default_factory=Counter)

    def as_metrics(self) -> dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "included": self.included,
            "filtered_out": self.excluded,
            "reasons": dict(self.reasons),
        }


class RelevanceFilter:
    """Drops newly analyzed records whose relevance score falls below the configured threshold.

    Only records without a stored counterpart are evaluated. Updates to stored records always
    pass so their analysis keeps tracking the source.
    """

    def __init__(self, config: RelevanceFilterConfig | None = None) -> None:
        self.config = config or RelevanceFilterConfig()

    def exclusion_reason(self, outcome: AnalysisOutcome) -> ExclusionReason | None:
        score = relevance_score(outcome.analysis)
        if score is None:
            return "missing_score"
        if score < self.config.threshold:
            return "low_score"
        return None

    def apply(self, outcomes: list[AnalysisOutcome]) -> FilterReport:
        """Mark excluded outcomes as ``filtered`` in place and report what was dropped."""
        report = FilterReport()
        if not self.config.enabled:
            return report
        for outcome in outcomes:
            if outcome.kind != "analyzed" or outcome.existing is not None:
                continue
            report.evaluated += 1
            reason = self.exclusion_reason(outcome)
            if reason is None:
                report.included += 1
                continue
            outcome.kind = "filtered"
            report.excluded += 1
            report.reasons[reason] += 1
            logger.debug(
                "record filtered source_native_id=%s reason=%s threshold=%s",
                outcome.candidate.source_native_id,
                reason,
                self.config.threshold,
            )
        return report


def relevance_score(analysis: dict[str, Any] | None) -> float | None:
    if not analysis:
        return None
    value = analysis.get("relevance_score")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
