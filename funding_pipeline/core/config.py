from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = 8192
    anthropic_timeout_seconds: float = 120.0
    analysis_concurrency: int = 2
    analysis_cost_per_token: float = 0.00001
    source_timeout_seconds: float = 30.0
    material_change_threshold: float = 0.05
    relevance_filter_enabled: bool = True
    relevance_threshold: float = 2.0
    batch_default_size: int = 5
    batch_min_size: int = 1
    batch_max_size: int = 15
    batch_token_ceiling: int = 6000
    batch_chars_per_token: int = 4
    batch_base_tokens_per_record: int = 150
    batch_max_retries: int = 3
    batch_retry_delay_seconds: float = 2.0
    chunk_page_size: int = 100
    chunk_max_records: int = 500
    worker_count: int = 2
    extraction_max_retries: int = 3
    extraction_retry_delay_seconds: float = 1.0
    max_pages_per_chunk: int = 200
    terminal_retry_delay_seconds: float = 0.5
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 900
    watchdog_interval_seconds: float = 30.0
    watchdog_batch_size: int = 100
    run_soft_timeout_seconds: int = 1800
    run_hard_timeout_seconds: int = 7200
    otel_enabled: bool = True
    otel_service_name: str = "funding-pipeline-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True, slots=True)
class DetectorConfig:
    amount_change_threshold: float = 0.05


@dataclass(frozen=True, slots=True)
class RelevanceFilterConfig:
    enabled: bool = True
    threshold: float = 2.0


@dataclass(frozen=True, slots=True)
class BatcherConfig:
    default_batch_size: int = 5
    min_batch_size: int = 1
    max_batch_size: int = 15
    token_ceiling: int = 6000
    chars_per_token: int = 4
    base_tokens_per_record: int = 150
    max_retries: int = 3
    retry_delay_seconds: float = 2.0


@dataclass(frozen=True, slots=True)
class ChunkerConfig:
    page_size: int = 100
    max_chunk_size: int = 500
    terminal_retry_delay_seconds: float = 0.5


@dataclass(frozen=True, slots=True)
class RunManagerConfig:
    terminal_retry_delay_seconds: float = 0.5
    cost_per_token: float = 0.00001


@dataclass(frozen=True, slots=True)
class CoordinatorConfig:
    worker_count: int = 2
    claim_lease_seconds: int = 900
    extraction_max_retries: int = 3
    extraction_retry_delay_seconds: float = 1.0
    max_pages_per_chunk: int = 200


@dataclass(frozen=True, slots=True)
class WatchdogConfig:
    batch_size: int = 100
    soft_timeout_seconds: int = 1800
    hard_timeout_seconds: int = 7200


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    detector: DetectorConfig
    batcher: BatcherConfig
    relevance: RelevanceFilterConfig
    chunker: ChunkerConfig
    run_manager: RunManagerConfig
    coordinator: CoordinatorConfig
    watchdog: WatchdogConfig


def build_pipeline_config(settings: Settings) -> PipelineConfig:
    return PipelineConfig(
        detector=DetectorConfig(amount_change_threshold=settings.material_change_threshold),
        relevance=RelevanceFilterConfig(
            enabled=settings.relevance_filter_enabled,
            threshold=max(0.0, settings.relevance_threshold),
        ),
        batcher=BatcherConfig(
            default_batch_size=max(1, settings.batch_default_size),
            min_batch_size=max(1, settings.batch_min_size),
            max_batch_size=max(settings.batch_default_size, settings.batch_max_size),
            token_ceiling=max(1, settings.batch_token_ceiling),
            chars_per_token=max(1, settings.batch_chars_per_token),
            base_tokens_per_record=max(0, settings.batch_base_tokens_per_record),
            max_retries=max(0, settings.batch_max_retries),
            retry_delay_seconds=max(0.0, settings.batch_retry_delay_seconds),
        ),
        chunker=ChunkerConfig(
            page_size=max(1, settings.chunk_page_size),
            max_chunk_size=max(1, settings.chunk_max_records),
            terminal_retry_delay_seconds=max(0.0, settings.terminal_retry_delay_seconds),
        ),
        run_manager=RunManagerConfig(
            terminal_retry_delay_seconds=max(0.0, settings.terminal_retry_delay_seconds),
            cost_per_token=max(0.0, settings.analysis_cost_per_token),
        ),
        coordinator=CoordinatorConfig(
            worker_count=max(1, settings.worker_count),
            claim_lease_seconds=max(1, settings.claim_lease_seconds),
            extraction_max_retries=max(0, settings.extraction_max_retries),
            extraction_retry_delay_seconds=max(0.0, settings.extraction_retry_delay_seconds),
            max_pages_per_chunk=max(1, settings.max_pages_per_chunk),
        ),
        watchdog=WatchdogConfig(
            batch_size=max(1, settings.watchdog_batch_size),
            soft_timeout_seconds=max(1, settings.run_soft_timeout_seconds),
            hard_timeout_seconds=max(settings.run_soft_timeout_seconds, settings.run_hard_timeout_seconds),
        ),
    )
