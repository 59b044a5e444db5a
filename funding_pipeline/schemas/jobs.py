from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from funding_pipeline.schemas.runs import RunCounters, RunError

ChunkStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_CHUNK_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
CHUNK_STATUS_ORDER: dict[str, int] = {"pending": 0, "processing": 1, "completed": 2, "failed": 2}


@dataclass(frozen=True, slots=True)
class ChunkDescriptor:
    chunk_index: int
    total_chunks: int
    first_page: int
    page_count: int | None
    estimated_records: int | None


class ChunkJobOut(BaseModel):
    id: str
    run_id: str
    source_id: str
    chunk_index: int
    total_chunks: int
    status: ChunkStatus = "pending"
    first_page: int = 0
    page_count: int | None = None
    estimated_records: int | None = None
    stage_count: int = 0
    attempt: int = 0
    lease_expires_at: datetime | None = None
    counters: RunCounters = Field(default_factory=RunCounters)
    metrics: dict[str, Any] = Field(default_factory=dict)
    error: RunError | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CHUNK_STATUSES


class ChunkProgress(BaseModel):
    run_id: str
    total_chunks: int
    status_counts: dict[str, int] = Field(default_factory=dict)
    completion_percentage: float = 0.0
    is_extraction_complete: bool = False
    has_failures: bool = False
    counters: RunCounters = Field(default_factory=RunCounters)
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: float = 0.0
