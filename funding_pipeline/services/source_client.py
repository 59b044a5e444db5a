from __future__ import annotations

import logging
from typing import Any

import httpx

from funding_pipeline.core.errors import ExtractionError
from funding_pipeline.schemas.opportunities import CandidateRecord
from funding_pipeline.schemas.sources import SourceConfig

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {408, 425, 429}
_AMOUNT_FIELDS = {"maximum_award", "minimum_award", "total_funding_available"}


class SourceClient:
    """Reads one page at a time from a configured JSON source API."""

    def __init__(self, *, timeout_seconds: float = 30.0, client: httpx.AsyncClient | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._client = client

    def initial_token(self, source: SourceConfig, page_ordinal: int = 0) -> str | None:
        pagination = source.pagination
        if pagination.type == "page":
            return str(pagination.start_page + page_ordinal)
        if pagination.type == "offset":
            return str(page_ordinal * pagination.page_size)
        return None

    async def estimate_volume(self, source: SourceConfig) -> int | None:
        if not source.response.total_path:
            return None
        payload = await self._fetch(source, self.initial_token(source, 0))
        return _as_int(_dig(payload, source.response.total_path))

    async def extract_page(
        self, source: SourceConfig, page_token: str | None
    ) -> tuple[list[CandidateRecord], str | None]:
        if page_token is None:
            page_token = self.initial_token(source, 0)
        payload = await self._fetch(source, page_token)
        raw_records = _dig(payload, source.response.records_path) if source.response.records_path else payload
        if not isinstance(raw_records, list):
            raise ExtractionError(
                "source response has no record list",
                stage="extraction",
                details={"source_id": source.id, "records_path": source.response.records_path},
            )

        candidates: list[CandidateRecord] = []
        dropped = 0
        for raw in raw_records:
            candidate = map_candidate(raw, source.field_mapping) if isinstance(raw, dict) else None
            if candidate is None:
                dropped += 1
                continue
            candidates.append(candidate)
        if dropped:
            logger.warning("dropped %s source records without an id source_id=%s", dropped, source.id)

        return candidates, self._next_token(source, page_token, payload, len(raw_records))

    def _next_token(self, source: SourceConfig, page_token: str | None, payload: Any, raw_count: int) -> str | None:
        pagination = source.pagination
        if pagination.type == "none" or raw_count == 0:
            return None
        if pagination.type == "cursor":
            cursor = _dig(payload, source.response.next_cursor_path or "")
            return str(cursor) if cursor not in (None, "") else None

        if raw_count < pagination.page_size:
            return None
        current = _as_int(page_token) or 0
        total = _as_int(_dig(payload, source.response.total_path)) if source.response.total_path else None
        if pagination.type == "page":
            consumed = (current - pagination.start_page + 1) * pagination.page_size
            if total is not None and consumed >= total:
                return None
            return str(current + 1)
        next_offset = current + pagination.page_size
        if total is not None and next_offset >= total:
            return None
        return str(next_offset)

    def _request_parts(self, source: SourceConfig, page_token: str | None) -> tuple[dict[str, Any], dict[str, Any] | None]:
        pagination = source.pagination
        paging: dict[str, Any] = {}
        if pagination.type == "page":
            paging = {pagination.page_param: _as_int(page_token), pagination.limit_param: pagination.page_size}
        elif pagination.type == "offset":
            paging = {pagination.offset_param: _as_int(page_token) or 0, pagination.limit_param: pagination.page_size}
        elif pagination.type == "cursor":
            paging = {pagination.limit_param: pagination.page_size}
            if page_token:
                paging[pagination.cursor_param] = page_token

        params = dict(source.params)
        body = dict(source.body) if source.body is not None else None
        if pagination.in_body and source.method == "POST":
            body = {**(body or {}), **paging}
        else:
            params.update(paging)
        return params, body

    async def _fetch(self, source: SourceConfig, page_token: str | None) -> Any:
        params, body = self._request_parts(source, page_token)
        try:
            if self._client is not None:
                response = await self._send(self._client, source, params, body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await self._send(client, source, params, body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise ExtractionError(
                f"source returned {status_code}",
                stage="extraction",
                retryable=status_code >= 500 or status_code in _RETRYABLE_STATUS_CODES,
                details={"source_id": source.id, "status_code": status_code, "page_token": page_token},
            ) from exc
        except httpx.TransportError as exc:
            raise ExtractionError(
                f"source unreachable: {exc}",
                stage="extraction",
                retryable=True,
                details={"source_id": source.id, "page_token": page_token},
            ) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise ExtractionError(
                "source returned malformed JSON",
                stage="extraction",
                details={"source_id": source.id, "page_token": page_token},
            ) from exc

    @staticmethod
    async def _send(
        client: httpx.AsyncClient,
        source: SourceConfig,
        params: dict[str, Any],
        body: dict[str, Any] | None,
    ) -> httpx.Response:
        if source.method == "POST":
            return await client.post(source.endpoint, params=params, json=body or {}, headers=source.headers)
        return await client.get(source.endpoint, params=params, headers=source.headers)


def map_candidate(raw: dict[str, Any], field_mapping: dict[str, str]) -> CandidateRecord | None:
    native_id = _as_text(_dig(raw, field_mapping.get("source_native_id", "")))
    if native_id is None:
        return None

    values: dict[str, Any] = {"source_native_id": native_id}
    used_keys: set[str] = set()
    for target, path in field_mapping.items():
        used_keys.add(path.split(".", 1)[0])
        if target == "source_native_id":
            continue
        value = _dig(raw, path)
        values[target] = _as_amount(value) if target in _AMOUNT_FIELDS else _as_text(value)

    values["extra"] = {key: value for key, value in raw.items() if key not in used_keys and value is not None}
    return CandidateRecord(**values)


def _dig(payload: Any, path: str) -> Any:
    if not path:
        return None
    current = payload
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_amount(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").strip()
        if not value:
            return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
