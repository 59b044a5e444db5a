from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import anthropic

from funding_pipeline.core.config import get_settings
from funding_pipeline.core.errors import AnalysisError

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504, 529}


@dataclass(slots=True)
class StructuredResult:
    data: dict[str, Any]
    input_tokens: int
    output_tokens: int
    model: str
    stop_reason: str | None = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


class AnalysisClient:
    """Anthropic Messages client that forces a single tool call to get schema-shaped output."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 8192,
        timeout_seconds: float = 120.0,
        concurrency: int = 2,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    async def call_with_schema(
        self,
        prompt: str,
        schema: dict[str, Any],
        *,
        system: str | None = None,
        tool_name: str = "record_analysis",
    ) -> StructuredResult:
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "tools": [
                {
                    "name": tool_name,
                    "description": "Record the structured analysis for every opportunity in the request.",
                    "input_schema": schema,
                }
            ],
            "tool_choice": {"type": "tool", "name": tool_name},
        }
        if system:
            request["system"] = system

        async with self._semaphore:
            try:
                message = await self._get_client().messages.create(**request)
            except anthropic.APITimeoutError as exc:
                raise AnalysisError("analysis service timed out", stage="analysis", retryable=True) from exc
            except anthropic.APIConnectionError as exc:
                raise AnalysisError("analysis service unreachable", stage="analysis", retryable=True) from exc
            except anthropic.APIStatusError as exc:
                raise AnalysisError(
                    f"analysis service returned {exc.status_code}",
                    stage="analysis",
                    retryable=exc.status_code in _RETRYABLE_STATUS_CODES,
                    details={"status_code": exc.status_code},
                ) from exc

        data = _tool_input(message.content, tool_name)
        if data is None:
            raise AnalysisError(
                "analysis response did not include structured output",
                stage="analysis",
                retryable=True,
                details={"stop_reason": message.stop_reason},
            )

        usage = message.usage
        result = StructuredResult(
            data=data,
            input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            model=message.model,
            stop_reason=message.stop_reason,
        )
        if result.truncated:
            logger.warning("analysis response hit max_tokens model=%s output_tokens=%s", result.model, result.output_tokens)
        return result

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            # retries are owned by the batcher
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client


def _tool_input(content: list[Any], tool_name: str) -> dict[str, Any] | None:
    for block in content:
        if getattr(block, "type", None) != "tool_use" or getattr(block, "name", None) != tool_name:
            continue
        payload = getattr(block, "input", None)
        if isinstance(payload, dict):
            return payload
    return None


@lru_cache
def get_analysis_client() -> AnalysisClient:
    settings = get_settings()
    return AnalysisClient(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.anthropic_max_tokens,
        timeout_seconds=settings.anthropic_timeout_seconds,
        concurrency=settings.analysis_concurrency,
    )
