"""Filter operator table.

Each operator name maps to exactly one SQL fragment shape. Builders receive the
SQLAlchemy column, the raw operand string and the reflected column, and return
a boolean clause in which every operand is a bound parameter.
"""

from __future__ import annotations

import json
import operator as op
from collections.abc import Callable, Sequence
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from .coercion import coerce_value, split_array_literal
from .datastructures import frozendict
from .errors import ValidationError
from .models import ColumnInfo, TypeKind
from .tools import sa_type


ValueCoercer = Callable[[Any, ColumnInfo], Any]
OperatorBuilder = Callable[[sa.ColumnElement[Any], Any, ColumnInfo, ValueCoercer], sa.ColumnElement[bool]]

_TS_CONFIG: Final[str] = "english"


def _bind(column: sa.ColumnElement[Any], value: Any, type_: Any = None) -> sa.BindParameter[Any]:
    return sa.bindparam(
        getattr(column, "key", None) or "param",
        value,
        type_=type_ if type_ is not None else column.type,
        unique=True,
    )


def _compare(fn: Callable[[Any, Any], Any]) -> OperatorBuilder:
    def _build(column, raw, info, coerce):  # type: ignore[no-untyped-def]
        return fn(column, _bind(column, coerce(raw, info)))

    return _build


def _pattern(prefix: str = "", suffix: str = "", *, insensitive: bool = False) -> OperatorBuilder:
    def _build(column, raw, info, coerce):  # type: ignore[no-untyped-def]
        pattern = _bind(column, f"{prefix}{raw}{suffix}", sa.String())
        return column.ilike(pattern) if insensitive else column.like(pattern)

    return _build


def _is(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    match str(raw).strip().lower():
        case "null":
            return column.is_(None)
        case "notnull" | "not.null":
            return column.is_not(None)
        case "true":
            return column.is_(sa.true())
        case "false":
            return column.is_(sa.false())
    raise ValidationError(f"Operator 'is' expects null, notnull, true or false, got {raw!r}")


def _is_not_null(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    return column.is_not(None)


def _in_values(column, values, info, coerce):  # type: ignore[no-untyped-def]
    return [_bind(column, coerce(value, info)) for value in values]


def _in(column, values, info, coerce):  # type: ignore[no-untyped-def]
    return column.in_(_in_values(column, values, info, coerce))


def _not_in(column, values, info, coerce):  # type: ignore[no-untyped-def]
    return column.not_in(_in_values(column, values, info, coerce))


def _jsonb(column: sa.ColumnElement[Any]) -> Any:
    return sa.type_coerce(column, postgresql.JSONB())


def _key_list(raw: Any) -> list[str]:
    keys = split_array_literal(str(raw))
    if not keys:
        raise ValidationError("JSON key operators require at least one key: [\"k1\",\"k2\"]")
    return keys


def _has_key(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    return _jsonb(column).has_key(_bind(column, str(raw), sa.String()))


def _has_all_keys(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    return _jsonb(column).has_all(_bind(column, _key_list(raw), postgresql.ARRAY(sa.String())))


def _has_any_keys(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    return _jsonb(column).has_any(_bind(column, _key_list(raw), postgresql.ARRAY(sa.String())))


def _json_document(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError(f"Invalid JSON document: {raw}") from None


def _json_contains(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    return _jsonb(column).contains(_bind(column, _json_document(raw), postgresql.JSONB()))


def _json_contained(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    return _jsonb(column).contained_by(_bind(column, _json_document(raw), postgresql.JSONB()))


def _array_items(raw: Any, info: ColumnInfo, coerce: ValueCoercer) -> list[Any]:
    if info.type.kind is TypeKind.ARRAY:
        values = coerce(raw if not isinstance(raw, str) else split_array_literal(raw), info)
    else:
        values = split_array_literal(str(raw)) if isinstance(raw, str) else list(raw)
    if not values:
        raise ValidationError("Array operators require at least one value")
    return list(values)


def _array(column: sa.ColumnElement[Any], info: ColumnInfo) -> Any:
    array_type = sa_type(info.type) if info.type.kind is TypeKind.ARRAY else postgresql.ARRAY(sa.String())
    return sa.type_coerce(column, array_type), array_type


def _array_contains(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    array, array_type = _array(column, info)
    return array.contains(_bind(column, _array_items(raw, info, coerce), array_type))


def _array_overlap(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    array, array_type = _array(column, info)
    return array.overlap(_bind(column, _array_items(raw, info, coerce), array_type))


def _array_length(column, raw, info, coerce):  # type: ignore[no-untyped-def]
    try:
        length = int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"arraylength expects an integer, got {raw!r}") from None
    return sa.func.array_length(column, 1) == _bind(column, length, sa.Integer())


def _text_search(query_fn: str) -> OperatorBuilder:
    def _build(column, raw, info, coerce):  # type: ignore[no-untyped-def]
        document = sa.func.to_tsvector(_TS_CONFIG, column)
        query = getattr(sa.func, query_fn)(_TS_CONFIG, _bind(column, str(raw), sa.String()))
        return document.bool_op("@@")(query)

    return _build


OPERATORS: Final[frozendict[str, OperatorBuilder]] = frozendict({
    "eq": _compare(op.eq),
    "neq": _compare(op.ne),
    "gt": _compare(op.gt),
    "gte": _compare(op.ge),
    "lt": _compare(op.lt),
    "lte": _compare(op.le),
    "like": _pattern(),
    "ilike": _pattern(insensitive=True),
    "startswith": _pattern(suffix="%"),
    "endswith": _pattern(prefix="%"),
    "is": _is,
    "isnotnull": _is_not_null,
    "in": _in,
    "notin": _not_in,
    "haskey": _has_key,
    "haskeys": _has_all_keys,
    "hasanykeys": _has_any_keys,
    "jsoncontains": _json_contains,
    "jsoncontained": _json_contained,
    "contains": _json_contains,
    "containedin": _json_contained,
    "exists": _has_key,
    "existsany": _has_any_keys,
    "existsall": _has_all_keys,
    "arraycontains": _array_contains,
    "arrayhasall": _array_contains,
    "arrayhasany": _array_overlap,
    "arraylength": _array_length,
    "fts": _text_search("plainto_tsquery"),
    "plfts": _text_search("phraseto_tsquery"),
    "wfts": _text_search("websearch_to_tsquery"),
})

LIST_OPERATORS: Final[frozenset[str]] = frozenset({"in", "notin"})
JSON_OPERATORS: Final[frozenset[str]] = frozenset(
    {
        "haskey", "haskeys", "hasanykeys", "jsoncontains", "jsoncontained",
        "contains", "containedin", "exists", "existsany", "existsall",
    }
)
PATTERN_OPERATORS: Final[frozenset[str]] = frozenset({"like", "ilike", "startswith", "endswith"})


def is_operator(name: str) -> bool:
    return name in OPERATORS


def build_condition(
    name: str,
    column: sa.ColumnElement[Any],
    operand: Any | Sequence[Any],
    info: ColumnInfo,
    coerce: ValueCoercer = coerce_value,
) -> sa.ColumnElement[bool]:
    """Compile one filter leaf into a boolean clause.

    Args:
        name: Operator name (``eq``, ``in``, ``haskey``, ...).
        column: Column being filtered.
        operand: Raw operand; a sequence of values for ``in``/``notin``.
        info: Reflected column, drives literal coercion.
        coerce: Literal coercion hook.

    Raises:
        ValidationError: For unknown operators or invalid operands.
    """
    try:
        builder = OPERATORS[name]
    except KeyError:
        raise ValidationError(f"Unknown filter operator: {name}") from None
    return builder(column, operand, info, coerce)
