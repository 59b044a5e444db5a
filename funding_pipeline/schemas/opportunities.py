from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

CANDIDATE_FIELDS = (
    "source_native_id",
    "title",
    "maximum_award",
    "minimum_award",
    "total_funding_available",
    "open_date",
    "close_date",
    "status",
    "description",
    "url",
    "api_updated_at",
)

OutcomeKind = Literal["analyzed", "bypassed", "filtered", "failed"]
PersistAction = Literal["added", "updated", "skipped"]


class CandidateRecord(BaseModel):
    """One opportunity as freshly extracted from a source, before any persistence decision."""

    source_native_id: str
    title: str | None = None
    maximum_award: float | None = None
    minimum_award: float | None = None
    total_funding_available: float | None = None
    open_date: str | None = None
    close_date: str | None = None
    status: str | None = None
    description: str | None = None
    url: str | None = None
    api_updated_at: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def content_length(self) -> int:
        size = len(self.title or "") + len(self.description or "")
        for value in self.extra.values():
            if isinstance(value, str):
                size += len(value)
        return size


class StoredOpportunity(CandidateRecord):
    id: str
    source_id: str
    analysis: dict[str, Any] = Field(default_factory=dict)
    analyzed_at: datetime | None = None
    last_seen_run_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OpportunityWrite(BaseModel):
    """A candidate plus the analysis that should be stored with it."""

    candidate: CandidateRecord
    analysis: dict[str, Any] = Field(default_factory=dict)
    analyzed: bool = True
    action: PersistAction
