from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from funding_pipeline.core.errors import ConfigurationError
from funding_pipeline.schemas.opportunities import CANDIDATE_FIELDS

PaginationType = Literal["page", "offset", "cursor", "none"]


class PaginationConfig(BaseModel):
    type: PaginationType = "none"
    page_param: str = "page"
    limit_param: str = "limit"
    offset_param: str = "offset"
    cursor_param: str = "cursor"
    page_size: int = Field(default=100, ge=1, le=10000)
    start_page: int = Field(default=1, ge=0)
    in_body: bool = False

    @property
    def seekable(self) -> bool:
        return self.type in {"page", "offset"}


class ResponseConfig(BaseModel):
    records_path: str = "data"
    total_path: str | None = None
    next_cursor_path: str | None = None


class SourceConfig(BaseModel):
    id: str
    name: str
    enabled: bool = True
    endpoint: str
    method: Literal["GET", "POST"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)
    body: dict[str, Any] | None = None
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    response: ResponseConfig = Field(default_factory=ResponseConfig)
    field_mapping: dict[str, str] = Field(default_factory=dict)

    @field_validator("endpoint")
    @classmethod
    def endpoint_must_be_http(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return stripped

    @model_validator(mode="after")
    def mapping_must_be_known(self) -> "SourceConfig":
        unknown = sorted(set(self.field_mapping) - set(CANDIDATE_FIELDS))
        if unknown:
            raise ValueError(f"field_mapping has unknown target fields: {', '.join(unknown)}")
        if "source_native_id" not in self.field_mapping:
            raise ValueError("field_mapping must map source_native_id")
        if self.pagination.type == "cursor" and not self.response.next_cursor_path:
            raise ValueError("cursor pagination requires response.next_cursor_path")
        return self


def parse_source_config(row: dict[str, Any]) -> SourceConfig:
    """Build a SourceConfig from a funding_sources row, raising ConfigurationError on bad input."""
    configuration = row.get("configuration")
    if not isinstance(configuration, dict):
        raise ConfigurationError(
            "source configuration is missing",
            stage="configuration",
            details={"source_id": row.get("id")},
        )
    payload = {
        **configuration,
        "id": row.get("id"),
        "name": row.get("name") or row.get("id"),
        "enabled": row.get("enabled", True),
    }
    try:
        return SourceConfig.model_validate(payload)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        raise ConfigurationError(
            "source configuration is invalid",
            stage="configuration",
            details={"source_id": row.get("id"), "errors": errors},
        ) from exc
