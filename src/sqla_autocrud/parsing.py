"""Parsers for the query-string grammar.

``select=title,actors(name,age)``
    projection with embedded relations, see :func:`parse_select`.
``age=gt.30&or=(tier.eq.gold,tier.eq.platinum)``
    filters, see :func:`parse_filters`.
``actors.age=gt.30``
    filters scoped to an embedded relation, see :func:`parse_embedded_filters`.
``order=name.asc,created_at.desc.nullslast``
    sorting, see :func:`parse_order`.
``expand=orders(limit:5,order_items)``
    relation expansion, see :func:`parse_expand`.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Final, Union

from .errors import ValidationError
from .models import Comparison, ExpandNode, Group, InList, Predicate, SelectField, SortSpec
from .operators import LIST_OPERATORS, OPERATORS


if TYPE_CHECKING:
    from .validation import IdentifierValidator


ParamValue = Union[str, Sequence[str]]
Params = Mapping[str, ParamValue]

CONTROL_PARAMETERS: Final[frozenset[str]] = frozenset({
    "select",
    "order",
    "limit",
    "offset",
    "first",
    "after",
    "last",
    "before",
    "orderBy",
    "orderDirection",
    "expand",
})

_OPERATOR_TOKEN: Final = re.compile(r"^[a-z]+$")
_SORT_MODIFIERS: Final[frozenset[str]] = frozenset({"asc", "desc", "nullsfirst", "nullslast"})


def split_top_level(raw: str, sep: str = ",") -> list[str]:
    """Split *raw* on *sep* outside parentheses and double quotes."""
    parts: list[str] = []
    depth = 0
    quoted = False
    start = 0
    for index, char in enumerate(raw):
        if char == '"':
            quoted = not quoted
        elif quoted:
            continue
        elif char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        elif char == sep and depth == 0:
            parts.append(raw[start:index])
            start = index + 1
    parts.append(raw[start:])
    return parts


def _is_balanced(raw: str) -> bool:
    depth = 0
    for char in raw:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def _values(value: ParamValue) -> list[str]:
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def parse_select(raw: str | None) -> list[SelectField]:
    """Parse a projection string into an ordered list of fields.

    Embedded relations nest: ``customers(name,orders(total))``. An empty or
    missing projection selects every column. A token whose parentheses do not
    close is kept verbatim as a plain column name and left for validation.

    Example:
        >>> [f.name for f in parse_select("title,actors(name,age)")]
        ['title', 'actors']
    """
    if raw is None or not raw.strip():
        return [SelectField.wildcard()]

    fields: list[SelectField] = []
    for token in split_top_level(raw):
        token = token.strip()
        if not token:
            continue
        if token == "*":
            fields.append(SelectField.wildcard())
            continue

        paren = token.find("(")
        if paren > 0 and token.endswith(")") and _is_balanced(token):
            name = token[:paren].strip()
            fields.append(SelectField.embedded(name, parse_select(token[paren + 1 : -1])))
        else:
            fields.append(SelectField(token))

    return fields or [SelectField.wildcard()]


def parse_filters(params: Params, *, validator: IdentifierValidator | None = None) -> Group:
    """Parse filter parameters into an AND group.

    Every plain ``column=op.value`` pair becomes one leaf; a key with several
    values yields several leaves. ``or=(a.op.v,b.op.v)`` becomes a nested OR
    group; ``and(...)``/``or(...)`` may nest inside it. Control parameters and
    dotted keys (embedded-relation filters) are skipped.

    Args:
        params: Query parameters, single- or multi-valued.
        validator: When given, raw operands are checked for size and quoting.

    Raises:
        ValidationError: On unknown operators or malformed groups.
    """
    items: list[Predicate] = []
    for key, value in params.items():
        if key in CONTROL_PARAMETERS:
            continue
        for raw in _values(value):
            if key in ("or", "and"):
                items.append(_parse_group(key, raw, validator))
            elif "." not in key:
                items.append(parse_condition(key, raw, validator=validator))
    return Group("and", tuple(items))


def parse_condition(
    column: str,
    raw: str,
    *,
    validator: IdentifierValidator | None = None,
) -> Comparison | InList:
    """Parse ``op.value`` for *column*; a bare value means ``eq``.

    A bare value whose text before the first dot is a lowercase word reads as
    an operator, so such values need an explicit ``eq.`` prefix
    (``email=eq.alice.smith@example.com``).
    """
    name, sep, operand = raw.partition(".")
    if not sep or name not in OPERATORS:
        if sep and _OPERATOR_TOKEN.match(name):
            raise ValidationError(
                f"Unknown filter operator {name!r} for column {column!r}; "
                "prefix values containing a dot with 'eq.'"
            )
        name, operand = "eq", raw

    if name in LIST_OPERATORS:
        if validator is not None:
            validator.validate_in_list_values(operand)
        return InList(column, tuple(_split_list(operand)), negated=name == "notin")

    if validator is not None:
        validator.validate_filter_value(operand)
    return Comparison(column, name, operand)


def _split_list(raw: str) -> list[str]:
    inner = raw.strip()
    if inner.startswith("(") and inner.endswith(")"):
        inner = inner[1:-1]
    values = [item.strip() for item in split_top_level(inner)]
    if not inner.strip() or any(not item for item in values):
        raise ValidationError(f"Invalid value list: {raw}")
    return [_unquote(item) for item in values]


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _parse_group(
    operator: str,
    raw: str,
    validator: IdentifierValidator | None,
) -> Group:
    inner = raw.strip()
    if not (inner.startswith("(") and inner.endswith(")")) or not _is_balanced(inner):
        raise ValidationError(f"Invalid {operator} group, expected {operator}=(...): {raw}")

    items: list[Predicate] = []
    for condition in split_top_level(inner[1:-1]):
        condition = condition.strip()
        if not condition:
            continue
        for nested in ("and", "or"):
            if condition.startswith(f"{nested}("):
                items.append(_parse_group(nested, condition[len(nested) :], validator))
                break
        else:
            column, sep, rest = condition.partition(".")
            if not sep or not column:
                raise ValidationError(f"Invalid condition in {operator} group: {condition}")
            items.append(parse_condition(column, rest, validator=validator))

    if not items:
        raise ValidationError(f"Empty {operator} group")
    return Group(operator, tuple(items))  # type: ignore[arg-type]


def parse_embedded_filters(fields: Sequence[SelectField], params: Params) -> None:
    """Move ``relation.column=op.value`` parameters onto embedded fields.

    The filter maps of *fields* are filled in place; nested relations are
    addressed by their full path (``customers.orders.total=gt.10``). Keys that
    match no embedded field are ignored, as are non-dotted keys.
    """
    for key, value in params.items():
        if key in CONTROL_PARAMETERS or "." not in key:
            continue

        *path, column = key.split(".")
        target = _find_embedded(fields, path)
        if target is not None and column:
            values = _values(value)
            if values:
                target.filters[column] = values[-1]


def _find_embedded(fields: Sequence[SelectField], path: Sequence[str]) -> SelectField | None:
    target: SelectField | None = None
    current = fields
    for name in path:
        target = next((f for f in current if f.is_embedded and f.name == name), None)
        if target is None:
            return None
        current = target.fields
    return target


def iter_embedded(fields: Sequence[SelectField]) -> Iterator[SelectField]:
    """Yield embedded fields depth first."""
    for field in fields:
        if field.is_embedded:
            yield field
            yield from iter_embedded(field.fields)


def parse_order(raw: str | None) -> list[SortSpec]:
    """Parse ``col.asc,col2.desc.nullslast`` into sort specs.

    Raises:
        ValidationError: On an empty column or an unknown modifier.
    """
    if raw is None or not raw.strip():
        return []

    specs: list[SortSpec] = []
    for token in raw.split(","):
        column, *modifiers = token.strip().split(".")
        if not column:
            raise ValidationError(f"Invalid order clause: {raw}")

        descending = False
        nulls = None
        for modifier in modifiers:
            match modifier.lower():
                case "asc":
                    descending = False
                case "desc":
                    descending = True
                case "nullsfirst":
                    nulls = "first"
                case "nullslast":
                    nulls = "last"
                case _:
                    raise ValidationError(
                        f"Invalid order modifier {modifier!r}, expected one of {sorted(_SORT_MODIFIERS)}"
                    )
        specs.append(SortSpec(column, descending, nulls))  # type: ignore[arg-type]
    return specs


def parse_sort(params: Params) -> list[SortSpec]:
    """Sort from ``order=...`` or the ``orderBy``/``orderDirection`` pair."""
    if "order" in params:
        return parse_order(_values(params["order"])[-1])

    if "orderBy" not in params:
        return []

    column = _values(params["orderBy"])[-1].strip()
    direction = _values(params.get("orderDirection", "asc"))[-1].strip().lower() or "asc"
    if direction not in ("asc", "desc"):
        raise ValidationError(f"Invalid orderDirection {direction!r}, expected asc or desc")
    if not column:
        return []
    return [SortSpec(column, direction == "desc")]


def parse_expand(raw: str | None) -> list[ExpandNode]:
    """Parse ``expand=orders(limit:5,order_items),customers``.

    Inside the parentheses ``limit:N`` caps rows per parent, ``select:a;b``
    picks the related columns, and any other token is a nested expansion.

    Raises:
        ValidationError: On a non-integer or negative limit.
    """
    if raw is None or not raw.strip():
        return []

    nodes: list[ExpandNode] = []
    for token in split_top_level(raw):
        token = token.strip()
        if not token:
            continue

        paren = token.find("(")
        if paren < 0 or not token.endswith(")"):
            nodes.append(ExpandNode(token))
            continue

        limit: int | None = None
        select: str | None = None
        children: list[ExpandNode] = []
        for arg in split_top_level(token[paren + 1 : -1]):
            arg = arg.strip()
            key, sep, value = arg.partition(":")
            if sep and key.strip() == "limit":
                try:
                    limit = int(value.strip())
                except ValueError:
                    raise ValidationError(f"Invalid expand limit: {value}") from None
                if limit < 0:
                    raise ValidationError(f"Invalid expand limit: {value}")
            elif sep and key.strip() == "select":
                select = ",".join(part.strip() for part in value.split(";") if part.strip())
            elif arg:
                children.extend(parse_expand(arg))

        nodes.append(ExpandNode(token[:paren].strip(), limit, tuple(children), select or None))
    return nodes
