"""Result normalizer – backend-native rows/documents to the outward row shape."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from datastore_mcp.schemas.common import QueryResult
from datastore_mcp.schemas.query import BoundedRows
from datastore_mcp.schemas.values import (
    ArrayValue,
    BoolValue,
    BytesValue,
    DocumentValue,
    FloatValue,
    IntValue,
    NullValue,
    StringValue,
    TimestampValue,
    Value,
)


def _float_value(v: float) -> Value:
    if math.isnan(v):
        return StringValue(value="NaN")
    if math.isinf(v):
        return StringValue(value="Infinity" if v > 0 else "-Infinity")
    return FloatValue(value=v)


def to_value(obj: Any) -> Value:
    """Map any backend value to exactly one ``Value`` variant.

    Decimals and UUIDs become strings so no precision is lost; dates and
    times of day keep their ISO text; non-finite floats become their JSON
    spelling as strings.  Unknown types fall back to ``str()``.
    """
    if obj is None:
        return NullValue()
    # bool before int: bool is an int subclass
    if isinstance(obj, bool):
        return BoolValue(value=obj)
    if isinstance(obj, int):
        return IntValue(value=int(obj))
    if isinstance(obj, float):
        return _float_value(obj)
    if isinstance(obj, str):
        return StringValue(value=obj)
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return BytesValue(value=bytes(obj))
    if isinstance(obj, datetime):
        return TimestampValue(value=obj)
    if isinstance(obj, (date, time)):
        return StringValue(value=obj.isoformat())
    if isinstance(obj, (Decimal, UUID)):
        return StringValue(value=str(obj))
    if isinstance(obj, timedelta):
        return FloatValue(value=obj.total_seconds())
    if isinstance(obj, Mapping):
        return DocumentValue(value={str(k): to_value(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        return ArrayValue(value=[to_value(item) for item in obj])
    return StringValue(value=str(obj))


def normalize_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """Convert one row/document to an ordered name -> wire-value mapping."""
    return {str(name): to_value(value).to_wire() for name, value in row.items()}


def normalize_rows(bounded: BoundedRows, row_cap: int) -> QueryResult:
    """Build the outward payload, re-checking the row cap.

    Executors already stop at the cap; rows beyond it here are dropped and the
    result is flagged as truncated.
    """
    rows = bounded.rows
    truncated = bounded.truncated
    if len(rows) > row_cap:
        rows = rows[:row_cap]
        truncated = True
    return QueryResult(rows=[normalize_row(r) for r in rows], truncated=truncated)
