"""Tagged value model shared by the relational and document backends.

Every scalar a backend returns becomes exactly one variant of ``Value``.  Each
variant knows its outward (JSON-safe) form via ``to_wire()``; ``from_wire()``
parses that form back.  Timestamps go out as canonical ISO-8601 UTC strings
and therefore parse back as ``StringValue``.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

BYTES_TAG = "$bytes"


class _ValueBase(BaseModel):
    model_config = ConfigDict(frozen=True, strict=True)

    def to_wire(self) -> Any:
        raise NotImplementedError


class NullValue(_ValueBase):
    kind: Literal["null"] = "null"

    def to_wire(self) -> None:
        return None


class BoolValue(_ValueBase):
    kind: Literal["bool"] = "bool"
    value: bool

    def to_wire(self) -> bool:
        return self.value


class IntValue(_ValueBase):
    kind: Literal["int"] = "int"
    value: int

    def to_wire(self) -> int:
        return self.value


class FloatValue(_ValueBase):
    kind: Literal["float"] = "float"
    value: float

    def to_wire(self) -> float:
        return self.value


class StringValue(_ValueBase):
    kind: Literal["string"] = "string"
    value: str

    def to_wire(self) -> str:
        return self.value


class BytesValue(_ValueBase):
    """Binary data, emitted as a length-prefixed base64 payload."""

    kind: Literal["bytes"] = "bytes"
    value: bytes

    def to_wire(self) -> dict[str, dict[str, Any]]:
        return {
            BYTES_TAG: {
                "length": len(self.value),
                "base64": base64.b64encode(self.value).decode("ascii"),
            }
        }


class TimestampValue(_ValueBase):
    """A point in time, always held as an aware UTC datetime."""

    kind: Literal["timestamp"] = "timestamp"
    value: datetime

    @field_validator("value")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def to_wire(self) -> str:
        return self.value.isoformat(timespec="microseconds").replace("+00:00", "Z")


class ArrayValue(_ValueBase):
    kind: Literal["array"] = "array"
    value: list[Value]

    def to_wire(self) -> list[Any]:
        return [item.to_wire() for item in self.value]


class DocumentValue(_ValueBase):
    """Nested document; key order is preserved."""

    kind: Literal["document"] = "document"
    value: dict[str, Value]

    def to_wire(self) -> dict[str, Any]:
        return {key: item.to_wire() for key, item in self.value.items()}


Value = Annotated[
    Union[
        NullValue,
        BoolValue,
        IntValue,
        FloatValue,
        StringValue,
        BytesValue,
        TimestampValue,
        ArrayValue,
        DocumentValue,
    ],
    Field(discriminator="kind"),
]

ArrayValue.model_rebuild()
DocumentValue.model_rebuild()


def _parse_bytes(payload: Any) -> BytesValue:
    if not isinstance(payload, dict) or set(payload) != {"length", "base64"}:
        raise ValueError(f"{BYTES_TAG} payload must have exactly 'length' and 'base64'")
    try:
        data = base64.b64decode(payload["base64"], validate=True)
    except (binascii.Error, TypeError) as exc:
        raise ValueError(f"{BYTES_TAG} payload is not valid base64") from exc
    if len(data) != payload["length"]:
        raise ValueError(
            f"{BYTES_TAG} length prefix {payload['length']} does not match {len(data)} bytes"
        )
    return BytesValue(value=data)


def from_wire(obj: Any) -> Value:
    """Parse an outward JSON value back into the tagged model."""
    if obj is None:
        return NullValue()
    if isinstance(obj, bool):
        return BoolValue(value=obj)
    if isinstance(obj, int):
        return IntValue(value=obj)
    if isinstance(obj, float):
        return FloatValue(value=obj)
    if isinstance(obj, str):
        return StringValue(value=obj)
    if isinstance(obj, list):
        return ArrayValue(value=[from_wire(item) for item in obj])
    if isinstance(obj, dict):
        if set(obj) == {BYTES_TAG}:
            return _parse_bytes(obj[BYTES_TAG])
        return DocumentValue(value={str(k): from_wire(v) for k, v in obj.items()})
    raise TypeError(f"Not a wire value: {type(obj).__name__}")
