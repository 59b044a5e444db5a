from __future__ import annotations

from funding_pipeline.core.config import DetectorConfig
from funding_pipeline.jobs.change_detector import ChangeDetector, relative_amount_change
from funding_pipeline.schemas.opportunities import CandidateRecord


def _record(**overrides: object) -> CandidateRecord:
    payload: dict[str, object] = {
        "source_native_id": "opp-1",
        "maximum_award": 100000,
        "close_date": "2024-12-31",
        "status": "posted",
    }
    payload.update(overrides)
    return CandidateRecord(**payload)


def test_detect_ignores_amount_change_under_threshold() -> None:
    detector = ChangeDetector()
    assert detector.detect(_record(), _record(maximum_award=104000)) is False


def test_detect_flags_amount_change_over_threshold() -> None:
    detector = ChangeDetector()
    decision = detector.evaluate(_record(), _record(maximum_award=106000))

    assert decision.changed is True
    assert decision.changed_fields == ["maximum_award"]


def test_detect_treats_exact_threshold_as_unchanged() -> None:
    assert ChangeDetector().detect(_record(), _record(maximum_award=105000)) is False


def test_detect_flags_any_date_difference() -> None:
    decision = ChangeDetector().evaluate(
        _record(open_date="2024-01-01"),
        _record(open_date="2024-01-02", close_date="2025-01-01"),
    )

    assert decision.changed is True
    assert decision.changed_fields == ["open_date", "close_date"]


def test_detect_flags_status_difference() -> None:
    decision = ChangeDetector().evaluate(_record(), _record(status="closed"))
    assert decision.changed_fields == ["status"]


def test_detect_treats_missing_fields_as_not_evaluable() -> None:
    detector = ChangeDetector()
    existing = _record(maximum_award=None, close_date=None, status=None)
    candidate = _record(maximum_award=500000, close_date="2030-01-01", status="forecasted")

    assert detector.detect(existing, candidate) is False
    assert detector.detect(candidate, existing) is False


def test_detect_handles_zero_existing_amount() -> None:
    detector = ChangeDetector()
    assert detector.detect(_record(maximum_award=0), _record(maximum_award=0)) is False
    assert detector.detect(_record(maximum_award=0), _record(maximum_award=10)) is True


def test_detect_without_existing_record_requires_analysis() -> None:
    assert ChangeDetector().detect(None, _record()) is True


def test_detect_uses_configured_threshold() -> None:
    strict = ChangeDetector(DetectorConfig(amount_change_threshold=0.01))
    assert strict.detect(_record(), _record(maximum_award=102000)) is True


def test_detect_ignores_descriptive_fields() -> None:
    detector = ChangeDetector()
    assert detector.detect(_record(title="Old"), _record(title="New", description="changed")) is False


def test_detect_is_repeatable_for_identical_inputs() -> None:
    detector = ChangeDetector()
    existing = _record()
    candidate = _record(maximum_award=150000, status="closed")

    first = detector.evaluate(existing, candidate)
    second = detector.evaluate(existing, candidate)
    assert first.changed == second.changed
    assert first.changed_fields == second.changed_fields


def test_relative_amount_change_requires_both_sides() -> None:
    assert relative_amount_change(None, 10.0) is None
    assert relative_amount_change(10.0, None) is None
    assert relative_amount_change(200.0, 150.0) == 0.25
