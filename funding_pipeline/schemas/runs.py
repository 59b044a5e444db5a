from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RunStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_RUN_STATUSES: frozenset[str] = frozenset({"pending", "processing"})
COUNTER_FIELDS = ("processed", "added", "updated", "skipped", "failed")


class RunError(BaseModel):
    kind: str
    message: str
    stage: str | None = None
    chunk_index: int | None = None
    batch_index: int | None = None
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class RunCounters(BaseModel):
    processed: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def merged(self, other: "RunCounters") -> "RunCounters":
        return RunCounters(**{name: getattr(self, name) + getattr(other, name) for name in COUNTER_FIELDS})

    def is_empty(self) -> bool:
        return all(getattr(self, name) == 0 for name in COUNTER_FIELDS)

    def is_balanced(self) -> bool:
        return self.processed == self.added + self.updated + self.skipped + self.failed


class StageMetrics(BaseModel):
    duration_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    api_calls: int = 0
    batches: int = 0

    def merged(self, other: "StageMetrics") -> "StageMetrics":
        return StageMetrics(
            duration_ms=self.duration_ms + other.duration_ms,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            api_calls=self.api_calls + other.api_calls,
            batches=self.batches + other.batches,
        )


class ProgressDelta(BaseModel):
    """Increments reported by one unit of work; never cumulative totals."""

    counters: RunCounters = Field(default_factory=RunCounters)
    stages: dict[str, StageMetrics] = Field(default_factory=dict)


class RunOut(BaseModel):
    id: str
    source_id: str
    status: RunStatus = "pending"
    options: dict[str, Any] = Field(default_factory=dict)
    processed: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    total_chunks: int = 0
    error: RunError | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    stages: dict[str, StageMetrics] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def counters(self) -> RunCounters:
        return RunCounters(**{name: getattr(self, name) for name in COUNTER_FIELDS})

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class RunOptions(BaseModel):
    force_full_reprocessing: bool = False
    triggered_by: str | None = None
    notes: str | None = None


class RunEvent(BaseModel):
    """Published on every terminal run transition."""

    run_id: str
    source_id: str
    status: RunStatus
    counters: RunCounters
    error: RunError | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime
