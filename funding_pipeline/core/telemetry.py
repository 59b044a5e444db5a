from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import Span, SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from funding_pipeline.core.config import Settings

PIPELINE_LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s run_id=%(run_id)s chunk=%(chunk_index)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
)

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(frozen=True, slots=True)
class PipelineContext:
    """Run and chunk being worked on by the current task."""

    run_id: str | None = None
    source_id: str | None = None
    chunk_index: int | None = None

    def span_attributes(self) -> dict[str, str | int]:
        attributes: dict[str, str | int] = {}
        if self.run_id is not None:
            attributes["run.id"] = self.run_id
        if self.source_id is not None:
            attributes["source.id"] = self.source_id
        if self.chunk_index is not None:
            attributes["chunk.index"] = self.chunk_index
        return attributes


_PIPELINE_CONTEXT: ContextVar[PipelineContext] = ContextVar("pipeline_context", default=PipelineContext())


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def current_pipeline_context() -> PipelineContext:
    return _PIPELINE_CONTEXT.get()


@contextmanager
def pipeline_context(
    *,
    run_id: str | None = None,
    source_id: str | None = None,
    chunk_index: int | None = None,
) -> Iterator[PipelineContext]:
    """Bind run/chunk identifiers to log records and spans emitted inside the block.

    Unset arguments inherit from the enclosing binding, so a chunk block nested in a run
    block keeps the run id. Each asyncio task works on its own copy of the binding.
    """
    current = _PIPELINE_CONTEXT.get()
    bound = replace(
        current,
        run_id=run_id if run_id is not None else current.run_id,
        source_id=source_id if source_id is not None else current.source_id,
        chunk_index=chunk_index if chunk_index is not None else current.chunk_index,
    )
    token = _PIPELINE_CONTEXT.set(bound)
    try:
        yield bound
    finally:
        _PIPELINE_CONTEXT.reset(token)


class PipelineContextSpanProcessor(SpanProcessor):
    """Copies the bound run/chunk identifiers onto every span, including instrumented HTTP calls."""

    def on_start(self, span: Span, parent_context: Context | None = None) -> None:
        for key, value in _PIPELINE_CONTEXT.get().span_attributes().items():
            span.set_attribute(key, value)


def configure_pipeline_logging(level: int = logging.INFO) -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=PIPELINE_LOG_FORMAT)


def setup_pipeline_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                "pipeline.worker_count": settings.worker_count,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    provider.add_span_processor(PipelineContextSpanProcessor())
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_pipeline_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if not endpoint:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; pipeline spans for %s stay in process",
            settings.otel_service_name,
        )
        return None
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def annotate_record(record: logging.LogRecord) -> logging.LogRecord:
    """Attach run, chunk and trace identifiers used by ``PIPELINE_LOG_FORMAT``."""
    bound = _PIPELINE_CONTEXT.get()
    record.run_id = bound.run_id or "-"
    record.source_id = bound.source_id or "-"
    record.chunk_index = "-" if bound.chunk_index is None else bound.chunk_index
    span_context = trace.get_current_span().get_span_context()
    record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else "0" * 32
    record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else "0" * 16
    return record


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        return annotate_record(_BASE_LOG_RECORD_FACTORY(*args, **kwargs))

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
