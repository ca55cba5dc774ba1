"""Pydantic schemas: tool envelope, value model, query specs."""

from datastore_mcp.schemas.common import (
    ErrorDetail,
    ErrorKind,
    Meta,
    QueryResult,
    ToolRequest,
    ToolResponse,
)
from datastore_mcp.schemas.query import BoundedRows, QuerySpec, ResultPage
from datastore_mcp.schemas.values import Value, from_wire

__all__ = [
    "BoundedRows",
    "ErrorDetail",
    "ErrorKind",
    "Meta",
    "QueryResult",
    "QuerySpec",
    "ResultPage",
    "ToolRequest",
    "ToolResponse",
    "Value",
    "from_wire",
]
