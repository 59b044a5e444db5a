from __future__ import annotations

import logging

from opentelemetry.sdk.trace import TracerProvider

from funding_pipeline.core.config import RelevanceFilterConfig, Settings, build_pipeline_config, get_settings
from funding_pipeline.core.telemetry import (
    PIPELINE_LOG_FORMAT,
    PipelineContext,
    PipelineContextSpanProcessor,
    TelemetryRuntime,
    annotate_record,
    current_pipeline_context,
    parse_otlp_headers,
    pipeline_context,
    setup_pipeline_telemetry,
)


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("FP_BATCH_MAX_SIZE", "12")
    monkeypatch.setenv("FP_MATERIAL_CHANGE_THRESHOLD", "0.1")
    monkeypatch.setenv("FP_WORKER_COUNT", "4")
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()

    config = build_pipeline_config(settings)
    assert config.batcher.max_batch_size == 12
    assert config.detector.amount_change_threshold == 0.1
    assert config.coordinator.worker_count == 4


def test_pipeline_config_defaults() -> None:
    config = build_pipeline_config(Settings())

    assert config.batcher.default_batch_size == 5
    assert config.batcher.token_ceiling == 6000
    assert config.detector.amount_change_threshold == 0.05
    assert config.run_manager.cost_per_token == 0.00001
    assert config.chunker.max_chunk_size == 500


def test_pipeline_config_clamps_inconsistent_values() -> None:
    config = build_pipeline_config(
        Settings(
            batch_default_size=8,
            batch_max_size=3,
            worker_count=0,
            run_soft_timeout_seconds=600,
            run_hard_timeout_seconds=60,
        )
    )

    assert config.batcher.max_batch_size == 8
    assert config.coordinator.worker_count == 1
    assert config.watchdog.hard_timeout_seconds == 600


def test_parse_otlp_headers() -> None:
    assert parse_otlp_headers(None) == {}
    assert parse_otlp_headers("authorization=Bearer abc, x-team = data ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "data",
    }


def test_telemetry_disabled_returns_inert_runtime() -> None:
    runtime = setup_pipeline_telemetry(Settings(otel_enabled=False))
    assert runtime == TelemetryRuntime(enabled=False, provider=None)


def test_relevance_filter_settings() -> None:
    config = build_pipeline_config(Settings(relevance_threshold=-1, relevance_filter_enabled=False))

    assert config.relevance.threshold == 0.0
    assert config.relevance.enabled is False
    assert build_pipeline_config(Settings()).relevance == RelevanceFilterConfig(enabled=True, threshold=2.0)


def test_settings_do_not_define_app_name() -> None:
    assert "app_name" not in Settings.model_fields


def test_pipeline_context_nests_and_resets() -> None:
    assert current_pipeline_context() == PipelineContext()

    with pipeline_context(run_id="run-1", source_id="grants"):
        with pipeline_context(chunk_index=3) as bound:
            assert bound == PipelineContext(run_id="run-1", source_id="grants", chunk_index=3)
            record = annotate_record(logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None))
        assert current_pipeline_context().chunk_index is None

    assert current_pipeline_context() == PipelineContext()
    assert (record.run_id, record.source_id, record.chunk_index) == ("run-1", "grants", 3)
    assert record.trace_id == "0" * 32


def test_unbound_records_use_placeholders() -> None:
    record = annotate_record(logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None))

    assert (record.run_id, record.chunk_index) == ("-", "-")
    assert PIPELINE_LOG_FORMAT % {**record.__dict__, "asctime": "now", "message": "msg"}


def test_context_span_processor_stamps_bound_identifiers() -> None:
    provider = TracerProvider()
    provider.add_span_processor(PipelineContextSpanProcessor())
    tracer = provider.get_tracer("test")

    with pipeline_context(run_id="run-9", chunk_index=1):
        with tracer.start_as_current_span("http.request") as span:
            attributes = dict(span.attributes)

    assert attributes == {"run.id": "run-9", "chunk.index": 1}
