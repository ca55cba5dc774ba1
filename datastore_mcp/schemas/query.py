"""Query specification and page schemas used by the executors."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MAX_ROWS = 500
HARD_MAX_ROWS = 10_000


def clamp_row_cap(value: int) -> int:
    """Clamp a requested row cap into ``[1, HARD_MAX_ROWS]``."""
    return max(1, min(int(value), HARD_MAX_ROWS))


class QuerySpec(BaseModel):
    """A read query bound for one backend.

    ``scope`` is the database (document store) the query targets; ``None``
    falls back to the configured default.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    scope: str | None = None
    row_cap: int = DEFAULT_MAX_ROWS

    @field_validator("row_cap")
    @classmethod
    def clamp_cap(cls, v: int) -> int:
        return clamp_row_cap(v)


class ResultPage(BaseModel):
    """One fetched batch of backend-native rows or documents.

    The relational executor sets ``exhausted`` when the cursor ran dry; the
    document executor carries the backend ``continuation`` token instead.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    rows: list[dict[str, Any]] = Field(default_factory=list)
    continuation: str | None = None
    exhausted: bool = False


class BoundedRows(BaseModel):
    """Backend-native rows cut to a cap, with the truncation flag."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    rows: list[dict[str, Any]]
    truncated: bool = False
