from __future__ import annotations

import datetime as dt
import decimal
import json
import re
import uuid
from collections.abc import Callable, Sequence
from typing import Any, Final, Literal

from .errors import ValidationError
from .models import ColumnInfo, ColumnType, TypeKind
from .validation import validate_mac_address, validate_network_address


ScalarKind = Literal[
    "int", "decimal", "float", "bool", "date", "datetime", "time", "uuid", "bytes", "str"
]

_SCALAR_PATTERNS: Final[tuple[tuple[re.Pattern[str], ScalarKind], ...]] = (
    (
        re.compile(
            r"^(int|int2|int4|int8|integer|bigint|smallint|tinyint|mediumint"
            r"|serial|serial2|serial4|serial8|smallserial|bigserial)$"
        ),
        "int",
    ),
    (re.compile(r"^(numeric|decimal|money)$"), "decimal"),
    (re.compile(r"^(real|float|float4|float8|double|double precision)$"), "float"),
    (re.compile(r"^(bool|boolean)$"), "bool"),
    (re.compile(r"^date$"), "date"),
    (re.compile(r"^(timestamp|timestamptz|datetime)( with(out)? time zone)?$"), "datetime"),
    (re.compile(r"^(time|timetz)( with(out)? time zone)?$"), "time"),
    (re.compile(r"^uuid$"), "uuid"),
    (re.compile(r"^(bytea|blob|binary|varbinary)$"), "bytes"),
)

_TRUE: Final[frozenset[str]] = frozenset({"true", "t", "1", "yes", "y", "on"})
_FALSE: Final[frozenset[str]] = frozenset({"false", "f", "0", "no", "n", "off"})


def scalar_kind(column_type: ColumnType) -> ScalarKind:
    """Python value family for a primitive column type (``str`` if unknown)."""
    if column_type.kind is not TypeKind.PRIMITIVE:
        return "str"
    for pattern, kind in _SCALAR_PATTERNS:
        if pattern.match(column_type.name):
            return kind
    return "str"


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(raw)


def _parse_datetime(raw: str) -> dt.datetime:
    value = raw.strip()
    if len(value) == 10:
        return dt.datetime.combine(dt.date.fromisoformat(value), dt.time())
    if value.endswith(("Z", "z")):
        value = f"{value[:-1]}+00:00"
    return dt.datetime.fromisoformat(value)


_SCALAR_PARSERS: Final[dict[ScalarKind, Callable[[str], Any]]] = {
    "int": lambda raw: int(raw.strip()),
    "decimal": lambda raw: decimal.Decimal(raw.strip()),
    "float": lambda raw: float(raw.strip()),
    "bool": _parse_bool,
    "date": lambda raw: dt.date.fromisoformat(raw.strip()),
    "datetime": _parse_datetime,
    "time": lambda raw: dt.time.fromisoformat(raw.strip()),
    "uuid": lambda raw: uuid.UUID(raw.strip()),
    "bytes": lambda raw: raw.encode(),
    "str": lambda raw: raw,
}


def split_array_literal(raw: str) -> list[str]:
    """Split ``{a,b}``, ``[a,b]`` or ``a,b`` into stripped, unquoted items.

    A JSON array is decoded as JSON first so quoted items may contain commas.
    """
    value = raw.strip()
    if value.startswith("["):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, list):
            return ["" if item is None else str(item) for item in decoded]
    if value[:1] in "{[" and value[-1:] in "}]":
        value = value[1:-1]
    if not value.strip():
        return []
    return [item.strip().strip('"') for item in value.split(",")]


def coerce_value(
    raw: Any,
    column: ColumnInfo,
    *,
    enum_values: Callable[[str], Sequence[str]] | None = None,
) -> Any:
    """Convert a caller-supplied value to the Python type of *column*.

    Strings are parsed according to the resolved column type; values that are
    already typed (decoded JSON bodies) pass through, except lists bound for
    array columns, whose items are coerced one by one.

    Args:
        raw: Value from a filter string or a request body.
        column: Target column.
        enum_values: Lookup of enum labels; when given, enum values are checked.

    Raises:
        ValidationError: If *raw* cannot represent a value of the column type.
    """
    if raw is None:
        return None

    column_type = column.type
    try:
        return _coerce(raw, column_type, enum_values)
    except ValidationError:
        raise
    except (ValueError, ArithmeticError) as exc:
        raise ValidationError(
            f"Invalid value {raw!r} for column {column.name!r} of type {column_type}"
        ) from exc


def _coerce(
    raw: Any,
    column_type: ColumnType,
    enum_values: Callable[[str], Sequence[str]] | None,
) -> Any:
    match column_type.kind:
        case TypeKind.ARRAY:
            assert column_type.element is not None
            items = split_array_literal(raw) if isinstance(raw, str) else raw
            if not isinstance(items, (list, tuple)):
                raise ValueError(raw)
            return [_coerce(item, column_type.element, enum_values) for item in items]
        case TypeKind.JSON:
            if isinstance(raw, str):
                try:
                    return json.loads(raw)
                except json.JSONDecodeError:
                    return raw
            return raw
        case TypeKind.ENUM:
            value = str(raw)
            if enum_values is not None:
                labels = enum_values(column_type.name)
                if labels and value not in labels:
                    raise ValidationError(
                        f"Invalid enum value {value!r} for type {column_type.name!r}. "
                        f"Valid values: {list(labels)}"
                    )
            return value
        case TypeKind.NETWORK:
            return validate_network_address(str(raw))
        case TypeKind.MAC:
            return validate_mac_address(str(raw))
        case TypeKind.COMPOSITE:
            return raw
        case _:
            if raw is None or not isinstance(raw, str):
                return raw
            return _SCALAR_PARSERS[scalar_kind(column_type)](raw)
