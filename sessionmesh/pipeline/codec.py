"""
Value Codec: Wire Values, Chunk Merging and Rows

Wire values are JSON-like: strings for STRING, INT64, NUMERIC, BYTES
(base64), JSON, DATE and TIMESTAMP; bool for BOOL; float or one of
"NaN"/"Infinity"/"-Infinity" for FLOAT64; lists for ARRAY and STRUCT;
None for null.

Merging (for values split across chunks) is type-directed:
- strings concatenate
- lists concatenate, recursing into (last of head, first of tail) when
  the last element of head is itself mergeable
- null is never mergeable
"""

from __future__ import annotations

import base64
import datetime
import json
import re
from decimal import Decimal
from typing import Any, Iterator, Sequence, Union

from sessionmesh.core.errors import StreamProtocolError
from sessionmesh.transport.protocols import Field, FieldType, TypeCode

_FLOAT_SPECIALS = {"NaN": float("nan"), "Infinity": float("inf"), "-Infinity": float("-inf")}
_TIMESTAMP_RE = re.compile(r"^(?P<base>[^.Z+]+)(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$")


# =============================================================================
# MERGING
# =============================================================================
def is_mergeable(value: Any) -> bool:
    """Whether a chunked value can absorb its continuation."""
    return isinstance(value, (str, list))


def _element_type(field_type: FieldType, index: int) -> FieldType:
    if field_type.code is TypeCode.ARRAY:
        if field_type.array_element_type is None:
            raise StreamProtocolError.violation("ARRAY type without element type")
        return field_type.array_element_type
    if index >= len(field_type.struct_fields):
        raise StreamProtocolError.violation(f"STRUCT has no field at index {index}")
    return field_type.struct_fields[index].type


def merge_values(field_type: FieldType, head: Any, tail: Any) -> Any:
    """
    Merge the incomplete tail of one chunk with the head of the next.

    Never mutates its inputs; a checkpoint may still reference them.
    """
    if field_type.code in (TypeCode.ARRAY, TypeCode.STRUCT):
        if not isinstance(head, list) or not isinstance(tail, list):
            raise StreamProtocolError.violation(
                f"cannot merge {type(head).__name__} with {type(tail).__name__} "
                f"as {field_type.code.name}"
            )
        if not head or not tail:
            return head + tail
        last = head[-1]
        if is_mergeable(last):
            merged = merge_values(_element_type(field_type, len(head) - 1), last, tail[0])
            return head[:-1] + [merged] + tail[1:]
        return head + tail

    if isinstance(head, str) and isinstance(tail, str):
        return head + tail

    raise StreamProtocolError.violation(
        f"cannot merge {type(head).__name__} with {type(tail).__name__} "
        f"as {field_type.code.name}"
    )


# =============================================================================
# DECODING
# =============================================================================
def _decode_timestamp(value: str) -> datetime.datetime:
    match = _TIMESTAMP_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    frac = (match.group("frac") or "")[:6].ljust(6, "0")
    tz = match.group("tz") or "Z"
    if tz == "Z":
        tz = "+00:00"
    return datetime.datetime.fromisoformat(f"{match.group('base')}.{frac}{tz}")


def decode_value(field_type: FieldType, value: Any) -> Any:
    """Translate a wire value to its Python value."""
    if value is None:
        return None

    code = field_type.code
    if code is TypeCode.STRING:
        return value
    if code is TypeCode.BOOL:
        return bool(value)
    if code is TypeCode.INT64:
        return int(value)
    if code is TypeCode.FLOAT64:
        if isinstance(value, str) and value in _FLOAT_SPECIALS:
            return _FLOAT_SPECIALS[value]
        return float(value)
    if code is TypeCode.NUMERIC:
        return Decimal(value)
    if code is TypeCode.BYTES:
        return base64.b64decode(value)
    if code is TypeCode.JSON:
        return json.loads(value)
    if code is TypeCode.DATE:
        return datetime.date.fromisoformat(value)
    if code is TypeCode.TIMESTAMP:
        return _decode_timestamp(value)
    if code is TypeCode.ARRAY:
        assert field_type.array_element_type is not None
        return [decode_value(field_type.array_element_type, v) for v in value]
    if code is TypeCode.STRUCT:
        return {
            f.name or str(i): decode_value(f.type, v)
            for i, (f, v) in enumerate(zip(field_type.struct_fields, value))
        }
    raise StreamProtocolError.violation(f"unsupported type {code.name}")


# =============================================================================
# ROWS
# =============================================================================
class Row:
    """
    One decoded result row.

    Supports positional and by-name access:
        row[0], row["NAME"], row.to_dict()
    """

    __slots__ = ("_fields", "_values")

    def __init__(self, fields: Sequence[Field], values: Sequence[Any]) -> None:
        self._fields = tuple(fields)
        self._values = tuple(values)

    @classmethod
    def decode(cls, fields: Sequence[Field], wire_values: Sequence[Any]) -> Row:
        return cls(fields, [decode_value(f.type, v) for f, v in zip(fields, wire_values)])

    def __getitem__(self, key: Union[int, str]) -> Any:
        if isinstance(key, str):
            for f, v in zip(self._fields, self._values):
                if f.name == key:
                    return v
            raise KeyError(key)
        return self._values[key]

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Row):
            return self._values == other._values and self.names == other.names
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._values)

    @property
    def fields(self) -> tuple[Field, ...]:
        return self._fields

    @property
    def names(self) -> list[str]:
        return [f.name for f in self._fields]

    def to_list(self) -> list[Any]:
        return list(self._values)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: v for f, v in zip(self._fields, self._values)}

    def __repr__(self) -> str:
        return f"Row({self.to_dict()!r})"
