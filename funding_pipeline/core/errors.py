from __future__ import annotations

from typing import Any, Literal

ErrorKind = Literal["extraction", "analysis", "persistence", "configuration", "timeout", "internal"]


class PipelineError(Exception):
    """Base pipeline error carrying stage context for diagnosis."""

    kind: ErrorKind = "internal"
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        run_id: str | None = None,
        chunk_index: int | None = None,
        batch_index: int | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.run_id = run_id
        self.chunk_index = chunk_index
        self.batch_index = batch_index
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details or {}

    def with_context(
        self,
        *,
        stage: str | None = None,
        run_id: str | None = None,
        chunk_index: int | None = None,
        batch_index: int | None = None,
    ) -> PipelineError:
        self.stage = self.stage or stage
        self.run_id = self.run_id or run_id
        if self.chunk_index is None:
            self.chunk_index = chunk_index
        if self.batch_index is None:
            self.batch_index = batch_index
        return self

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage,
            "chunk_index": self.chunk_index,
            "batch_index": self.batch_index,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ExtractionError(PipelineError):
    """Raised when a source API is unreachable or returns a malformed response."""

    kind: ErrorKind = "extraction"


class AnalysisError(PipelineError):
    """Raised when the analysis service fails after retries are exhausted."""

    kind: ErrorKind = "analysis"


class PersistenceError(PipelineError):
    """Raised when a storage read or write fails."""

    kind: ErrorKind = "persistence"


class ConfigurationError(PipelineError):
    """Raised when a source configuration is missing or invalid."""

    kind: ErrorKind = "configuration"


class RunTimeoutError(PipelineError):
    """Raised by the watchdog when a run outlives its hard timeout."""

    kind: ErrorKind = "timeout"


class RunStartError(PipelineError):
    """Raised when a run could not be created; no run record exists to inspect."""


class RunStartConfigurationError(ConfigurationError, RunStartError):
    pass


class RunStartPersistenceError(PersistenceError, RunStartError):
    pass


def error_from_exception(exc: BaseException, *, stage: str | None = None) -> PipelineError:
    if isinstance(exc, PipelineError):
        return exc.with_context(stage=stage)
    return PipelineError(f"{type(exc).__name__}: {exc}", stage=stage)
