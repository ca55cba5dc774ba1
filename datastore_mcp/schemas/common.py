"""Shared ToolRequest / ToolResponse envelope and error schema."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ErrorKind(str, Enum):
    """Fixed error taxonomy exposed to tool callers."""

    UNKNOWN_TOOL = "UnknownTool"
    INVALID_ARGUMENTS = "InvalidArguments"
    BACKEND_NOT_CONFIGURED = "BackendNotConfigured"
    CONNECTION_ERROR = "ConnectionError"
    CONNECTION_TIMEOUT = "ConnectionTimeout"
    AUTH_ERROR = "AuthError"
    QUERY_SYNTAX_ERROR = "QuerySyntaxError"
    NOT_FOUND = "NotFound"
    LIMIT_EXCEEDED = "LimitExceeded"
    INTERNAL_ERROR = "InternalError"


class ToolRequest(BaseModel):
    """One decoded tool invocation as delivered by the transport."""

    model_config = ConfigDict(frozen=True)

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    """Structured error returned when a tool fails."""

    kind: ErrorKind
    message: str
    hint: str | None = None


class QueryResult(BaseModel):
    """Normalized rows/documents in their outward (JSON-safe) form."""

    rows: list[dict[str, Any]] = Field(default_factory=list)
    truncated: bool = False


class Meta(BaseModel):
    """Execution metadata attached to every response."""

    execution_ms: float = Field(..., description="Wall-clock milliseconds")
    row_count: int | None = Field(None, description="Number of rows returned")


class ToolResponse(BaseModel):
    """Standard envelope for every tool result.

    Exactly one of ``data`` and ``error`` is populated.
    """

    tool: str
    ok: bool
    data: QueryResult | None = None
    error: ErrorDetail | None = None
    meta: Meta

    @model_validator(mode="after")
    def check_one_payload(self) -> "ToolResponse":
        if (self.data is None) == (self.error is None):
            raise ValueError("exactly one of data and error must be set")
        if self.ok != (self.data is not None):
            raise ValueError("ok must be true iff data is set")
        return self
