from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from funding_pipeline.core.config import DetectorConfig

ChangedField = Literal["maximum_award", "open_date", "close_date", "status"]
DATE_FIELDS: tuple[ChangedField, ...] = ("open_date", "close_date")


class ComparableRecord(Protocol):
    maximum_award: float | None
    open_date: str | None
    close_date: str | None
    status: str | None


@dataclass(slots=True)
class ChangeDecision:
    changed: bool
    changed_fields: list[ChangedField] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class ChangeDetector:
    """Decides whether a stored record and a fresh candidate differ enough to need re-analysis."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self.config = config or DetectorConfig()

    def detect(self, existing: ComparableRecord | None, candidate: ComparableRecord) -> bool:
        return self.evaluate(existing, candidate).changed

    def evaluate(self, existing: ComparableRecord | None, candidate: ComparableRecord) -> ChangeDecision:
        return evaluate_material_change(
            existing=existing,
            candidate=candidate,
            amount_change_threshold=self.config.amount_change_threshold,
        )


def evaluate_material_change(
    *,
    existing: ComparableRecord | None,
    candidate: ComparableRecord,
    amount_change_threshold: float = 0.05,
) -> ChangeDecision:
    if existing is None:
        return ChangeDecision(changed=True, metadata={"reason": "no_existing_record"})

    changed_fields: list[ChangedField] = []
    metadata: dict[str, Any] = {}

    relative_change = relative_amount_change(
        _as_amount(getattr(existing, "maximum_award", None)),
        _as_amount(getattr(candidate, "maximum_award", None)),
    )
    if relative_change is not None:
        metadata["maximum_award_relative_change"] = relative_change
        if relative_change > amount_change_threshold:
            changed_fields.append("maximum_award")

    for name in DATE_FIELDS:
        if _values_differ(getattr(existing, name, None), getattr(candidate, name, None)):
            changed_fields.append(name)

    if _values_differ(getattr(existing, "status", None), getattr(candidate, "status", None)):
        changed_fields.append("status")

    metadata["reason"] = "material_change" if changed_fields else "no_material_change"
    return ChangeDecision(changed=bool(changed_fields), changed_fields=changed_fields, metadata=metadata)


def relative_amount_change(existing: float | None, candidate: float | None) -> float | None:
    """Relative change from existing to candidate, or None when either side cannot be evaluated."""
    if existing is None or candidate is None:
        return None
    if existing == 0:
        return 0.0 if candidate == 0 else math.inf
    return abs(candidate - existing) / abs(existing)


def _as_amount(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(amount):
        return None
    return amount


def _values_differ(existing: Any, candidate: Any) -> bool:
    if existing is None or candidate is None:
        return False
    return existing != candidate
