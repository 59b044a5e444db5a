from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import anthropic
import httpx
import pytest

from funding_pipeline.core.errors import AnalysisError
from funding_pipeline.jobs.batcher import ANALYSIS_SCHEMA
from funding_pipeline.services.analysis_client import AnalysisClient

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class FakeMessages:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


class FakeAnthropic:
    def __init__(self, messages: FakeMessages) -> None:
        self.messages = messages
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _message(content: list[Any], *, stop_reason: str = "tool_use") -> SimpleNamespace:
    return SimpleNamespace(
        content=content,
        usage=SimpleNamespace(input_tokens=321, output_tokens=54),
        model="claude-test",
        stop_reason=stop_reason,
    )


def _tool_block(payload: dict[str, Any], name: str = "record_analysis") -> SimpleNamespace:
    return SimpleNamespace(type="tool_use", name=name, input=payload)


def _client(messages: FakeMessages) -> tuple[AnalysisClient, FakeAnthropic]:
    fake = FakeAnthropic(messages)
    return AnalysisClient(model="claude-test", max_tokens=1024, client=fake), fake


def test_call_with_schema_forces_tool_and_returns_usage() -> None:
    payload = {"opportunities": [{"source_native_id": "a", "summary": "ok"}]}
    messages = FakeMessages(_message([SimpleNamespace(type="text", text="thinking"), _tool_block(payload)]))
    client, _ = _client(messages)

    result = asyncio.run(client.call_with_schema("analyze these", ANALYSIS_SCHEMA, system="be brief"))

    assert result.data == payload
    assert result.input_tokens == 321
    assert result.output_tokens == 54
    assert result.truncated is False
    request = messages.requests[0]
    assert request["model"] == "claude-test"
    assert request["max_tokens"] == 1024
    assert request["tool_choice"] == {"type": "tool", "name": "record_analysis"}
    assert request["tools"][0]["input_schema"] is ANALYSIS_SCHEMA
    assert request["system"] == "be brief"
    assert request["messages"] == [{"role": "user", "content": "analyze these"}]


def test_truncated_response_is_flagged() -> None:
    messages = FakeMessages(_message([_tool_block({"opportunities": []})], stop_reason="max_tokens"))
    client, _ = _client(messages)

    assert asyncio.run(client.call_with_schema("p", ANALYSIS_SCHEMA)).truncated is True


def test_missing_tool_output_is_retryable_analysis_error() -> None:
    messages = FakeMessages(_message([SimpleNamespace(type="text", text="sorry")], stop_reason="end_turn"))
    client, _ = _client(messages)

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(client.call_with_schema("p", ANALYSIS_SCHEMA))

    assert exc_info.value.retryable is True
    assert exc_info.value.details["stop_reason"] == "end_turn"


@pytest.mark.parametrize(
    ("error", "retryable"),
    [
        (anthropic.APITimeoutError(request=_REQUEST), True),
        (anthropic.APIConnectionError(request=_REQUEST), True),
        (anthropic.APIStatusError("rate limited", response=httpx.Response(429, request=_REQUEST), body=None), True),
        (anthropic.APIStatusError("overloaded", response=httpx.Response(529, request=_REQUEST), body=None), True),
        (anthropic.APIStatusError("bad request", response=httpx.Response(400, request=_REQUEST), body=None), False),
    ],
)
def test_service_errors_map_to_analysis_errors(error: Exception, retryable: bool) -> None:
    client, _ = _client(FakeMessages(error=error))

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(client.call_with_schema("p", ANALYSIS_SCHEMA))

    assert exc_info.value.retryable is retryable
    assert exc_info.value.stage == "analysis"


def test_close_releases_underlying_client() -> None:
    client, fake = _client(FakeMessages())

    asyncio.run(client.close())

    assert fake.closed is True
