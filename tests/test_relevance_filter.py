from __future__ import annotations

import pytest

from funding_pipeline.core.config import RelevanceFilterConfig
from funding_pipeline.jobs.batcher import AnalysisOutcome
from funding_pipeline.jobs.relevance_filter import RelevanceFilter, relevance_score
from funding_pipeline.schemas.opportunities import CandidateRecord, StoredOpportunity


def _outcome(native_id: str, analysis: dict | None, *, kind: str = "analyzed", stored: bool = False) -> AnalysisOutcome:
    existing = StoredOpportunity(source_native_id=native_id, id=f"opp-{native_id}", source_id="src") if stored else None
    return AnalysisOutcome(
        candidate=CandidateRecord(source_native_id=native_id),
        kind=kind,
        existing=existing,
        analysis=analysis,
    )


@pytest.mark.parametrize(
    ("analysis", "expected"),
    [
        ({"relevance_score": 7}, 7.0),
        ({"relevance_score": 1.5}, 1.5),
        ({"relevance_score": "8"}, None),
        ({"relevance_score": True}, None),
        ({"summary": "no score"}, None),
        (None, None),
    ],
)
def test_relevance_score_reads_numeric_scores_only(analysis, expected) -> None:
    assert relevance_score(analysis) == expected


def test_new_records_below_threshold_or_unscored_are_filtered() -> None:
    outcomes = [
        _outcome("keep", {"relevance_score": 2}),
        _outcome("low", {"relevance_score": 1.9}),
        _outcome("unscored", {"summary": "x"}),
    ]

    report = RelevanceFilter(RelevanceFilterConfig(threshold=2.0)).apply(outcomes)

    assert [outcome.kind for outcome in outcomes] == ["analyzed", "filtered", "filtered"]
    assert report.as_metrics() == {
        "evaluated": 3,
        "included": 1,
        "filtered_out": 2,
        "reasons": {"low_score": 1, "missing_score": 1},
    }


def test_updates_bypassed_and_failed_outcomes_are_never_filtered() -> None:
    outcomes = [
        _outcome("update", {"relevance_score": 0}, stored=True),
        _outcome("bypassed", None, kind="bypassed", stored=True),
        _outcome("failed", None, kind="failed"),
    ]

    report = RelevanceFilter().apply(outcomes)

    assert [outcome.kind for outcome in outcomes] == ["analyzed", "bypassed", "failed"]
    assert report.evaluated == 0
    assert report.excluded == 0


def test_disabled_filter_keeps_everything() -> None:
    outcomes = [_outcome("low", {"relevance_score": 0})]

    report = RelevanceFilter(RelevanceFilterConfig(enabled=False)).apply(outcomes)

    assert outcomes[0].kind == "analyzed"
    assert report.evaluated == 0
