from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Final

from .errors import ValidationError
from .models import Predicate, SelectField, TableInfo, iter_leaves
from .relations import resolve_relation


if TYPE_CHECKING:
    from .catalog import SchemaCatalog


MAX_LIMIT: Final[int] = 1000
MAX_OFFSET: Final[int] = 1_000_000
MAX_VALUE_LENGTH: Final[int] = 4096

# 6-byte (macaddr) or 8-byte (macaddr8), one separator style throughout.
_MAC_RE: Final = re.compile(
    r"^[0-9a-fA-F]{2}(?P<sep>[:-])"
    r"(?:[0-9a-fA-F]{2}(?P=sep)){4}"
    r"(?:(?:[0-9a-fA-F]{2}(?P=sep)){2})?"
    r"[0-9a-fA-F]{2}$"
)


class IdentifierValidator:
    """Checks caller-supplied identifiers against the catalog.

    Table and column names are interpolated into SQL text by SQLAlchemy's
    quoting, so the only defense needed is that every name exists, compared
    case-sensitively, in the current :class:`TableInfo`. Values are always
    bound, so value checks are limited to structure and size.
    """

    __slots__ = ("catalog", "max_limit", "max_offset", "max_value_length")

    def __init__(
        self,
        catalog: SchemaCatalog,
        *,
        max_value_length: int = MAX_VALUE_LENGTH,
        max_limit: int = MAX_LIMIT,
        max_offset: int = MAX_OFFSET,
    ) -> None:
        self.catalog = catalog
        self.max_value_length = max_value_length
        self.max_limit = max_limit
        self.max_offset = max_offset

    def validate_table(self, name: str) -> TableInfo:
        if not name or not name.strip():
            raise ValidationError("Table name cannot be empty")

        table_info = self.catalog.get_schema().get(name)
        if table_info is None:
            raise ValidationError(f"Unknown table: {name}")
        return table_info

    def validate_columns(self, names: Iterable[str], table_info: TableInfo) -> None:
        for name in names:
            if not table_info.has_column(name):
                raise ValidationError(f"Unknown column {name!r} for table {table_info.name!r}")

    def validate_order_column(self, name: str, table_info: TableInfo) -> None:
        if not table_info.has_column(name):
            raise ValidationError(f"Invalid column for ordering: {name}")

    def validate_predicate(self, predicate: Predicate, table_info: TableInfo) -> None:
        """Ensure every leaf of *predicate* names a column of *table_info*."""
        for leaf in iter_leaves(predicate):
            if not table_info.has_column(leaf.column):
                raise ValidationError(f"Invalid column for filtering: {leaf.column}")

    def validate_select(self, fields: Sequence[SelectField], table_info: TableInfo) -> None:
        """Check projected columns and embedded relation names, recursively."""
        schema = self.catalog.get_schema()
        self._validate_select(fields, table_info, schema)

    def _validate_select(
        self,
        fields: Sequence[SelectField],
        table_info: TableInfo,
        schema: Mapping[str, TableInfo],
    ) -> None:
        for field in fields:
            if field.is_wildcard:
                continue
            if field.is_column:
                if not table_info.has_column(field.name):
                    raise ValidationError(
                        f"Unknown column {field.name!r} for table {table_info.name!r}"
                    )
                continue

            relation = resolve_relation(table_info, field.name, schema)
            if relation is None:
                raise ValidationError(
                    f"No relationship {field.name!r} declared for table {table_info.name!r}"
                )
            related = schema[relation.target]
            self._validate_select(field.fields, related, schema)
            for column in field.filters:
                if column not in ("or", "and") and not related.has_column(column):
                    raise ValidationError(
                        f"Invalid column for filtering {field.name!r}: {column}"
                    )

    def validate_filter_value(self, raw: str) -> None:
        if len(raw) > self.max_value_length:
            raise ValidationError(
                f"Filter value exceeds the maximum length of {self.max_value_length}"
            )
        if raw.count('"') % 2:
            raise ValidationError("Unterminated quote in filter value")

    def validate_in_list_values(self, raw: str) -> None:
        self.validate_filter_value(raw)

        depth = 0
        for char in raw:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth < 0:
                    break
        if depth != 0:
            raise ValidationError(f"Unbalanced parentheses in value list: {raw}")

        inner = raw.strip()
        if inner.startswith("(") and inner.endswith(")"):
            inner = inner[1:-1]
        if not inner.strip():
            raise ValidationError("Value list cannot be empty")

    def validate_pagination(self, offset: int, limit: int) -> None:
        if not 0 <= offset <= self.max_offset:
            raise ValidationError(f"Offset must be between 0 and {self.max_offset}")
        if not 0 < limit <= self.max_limit:
            raise ValidationError(f"Limit must be between 1 and {self.max_limit}")

    def validate_enum_value(self, type_name: str, value: str) -> str:
        labels = self.catalog.get_enum_values(type_name)
        if labels and value not in labels:
            raise ValidationError(
                f"Invalid enum value {value!r} for type {type_name!r}. Valid values: {labels}"
            )
        return value


def validate_network_address(address: str) -> str:
    """Accept an IPv4/IPv6 address or network in CIDR notation."""
    value = address.strip() if address else ""
    if not value:
        raise ValidationError("Network address cannot be empty")
    try:
        ipaddress.ip_interface(value)
    except ValueError:
        raise ValidationError(f"Invalid network address format: {address}") from None
    return value


def validate_mac_address(address: str) -> str:
    """Accept 6- or 8-byte MAC addresses separated by ``:`` or ``-``."""
    value = address.strip() if address else ""
    if not value:
        raise ValidationError("MAC address cannot be empty")
    if not _MAC_RE.match(value):
        raise ValidationError(f"Invalid MAC address format: {address}")
    return value
