from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING, Any, Literal, Union

from .datastructures import frozendict


if TYPE_CHECKING:
    import sqlalchemy as sa
    from sqlalchemy.engine import Dialect


class TypeKind(str, enum.Enum):
    PRIMITIVE = "primitive"
    ARRAY = "array"
    ENUM = "enum"
    COMPOSITE = "composite"
    NETWORK = "network"
    MAC = "mac"
    JSON = "json"


@dataclass(slots=True, frozen=True)
class ColumnType:
    """Resolved column type, decided once during reflection.

    ``name`` is the base type name for primitives, network, MAC and JSON
    columns (``integer``, ``inet``, ``jsonb``), the type name for enums and
    composites, and ``element.name`` for arrays.
    """

    kind: TypeKind
    name: str
    element: ColumnType | None = None

    @classmethod
    def primitive(cls, name: str) -> ColumnType:
        return cls(TypeKind.PRIMITIVE, name)

    @classmethod
    def array_of(cls, element: ColumnType) -> ColumnType:
        return cls(TypeKind.ARRAY, element.name, element)

    @property
    def is_array(self) -> bool:
        return self.kind is TypeKind.ARRAY

    def __str__(self) -> str:
        if self.element is not None:
            return f"{self.element}[]"
        return self.name


@dataclass(slots=True, frozen=True)
class ColumnInfo:
    name: str
    type: ColumnType
    nullable: bool = True
    primary_key: bool = False
    raw_type: str | None = None


@dataclass(slots=True, frozen=True)
class ForeignKeyInfo:
    """A declared foreign key; composite keys pair columns positionally."""

    columns: tuple[str, ...]
    referenced_table: str
    referenced_columns: tuple[str, ...]
    name: str | None = None

    def __post_init__(self) -> None:
        if not self.columns or len(self.columns) != len(self.referenced_columns):
            raise ValueError(
                f"Foreign key {self.name or self.columns!r} must pair each column "
                "with exactly one referenced column"
            )

    @property
    def is_composite(self) -> bool:
        return len(self.columns) > 1

    @property
    def pairs(self) -> tuple[tuple[str, str], ...]:
        return tuple(zip(self.columns, self.referenced_columns))


@dataclass(frozen=True)
class TableInfo:
    """Reflected metadata for one table or view. Immutable once built."""

    name: str
    columns: tuple[ColumnInfo, ...]
    foreign_keys: tuple[ForeignKeyInfo, ...] = ()
    is_view: bool = False
    schema: str | None = None

    @cached_property
    def columns_by_name(self) -> frozendict[str, ColumnInfo]:
        return frozendict((column.name, column) for column in self.columns)

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def primary_key(self) -> tuple[ColumnInfo, ...]:
        return tuple(column for column in self.columns if column.primary_key)

    def get_column(self, name: str) -> ColumnInfo | None:
        return self.columns_by_name.get(name)

    def has_column(self, name: str) -> bool:
        return name in self.columns_by_name


class SelectKind(str, enum.Enum):
    WILDCARD = "wildcard"
    COLUMN = "column"
    EMBEDDED = "embedded"


@dataclass(slots=True)
class SelectField:
    """One entry of a ``select=`` projection.

    Embedded fields own a nested projection and a filter map that applies to
    the related rows only. The filter map is filled in place by
    :func:`~sqla_autocrud.parsing.parse_embedded_filters`.
    """

    name: str
    kind: SelectKind = SelectKind.COLUMN
    fields: list[SelectField] = field(default_factory=list)
    filters: dict[str, str] = field(default_factory=dict)

    @classmethod
    def wildcard(cls) -> SelectField:
        return cls("*", SelectKind.WILDCARD)

    @classmethod
    def embedded(cls, name: str, fields: Sequence[SelectField]) -> SelectField:
        return cls(name, SelectKind.EMBEDDED, list(fields))

    @property
    def is_wildcard(self) -> bool:
        return self.kind is SelectKind.WILDCARD

    @property
    def is_embedded(self) -> bool:
        return self.kind is SelectKind.EMBEDDED

    @property
    def is_column(self) -> bool:
        return self.kind is SelectKind.COLUMN

    def column_names(self) -> tuple[str, ...]:
        """Plain column names of this embedded field's sub-selection.

        An empty tuple means "all columns".
        """
        if not self.fields or any(sub.is_wildcard for sub in self.fields):
            return ()
        return tuple(sub.name for sub in self.fields if sub.is_column)

    def embedded_fields(self) -> list[SelectField]:
        return [sub for sub in self.fields if sub.is_embedded]


@dataclass(slots=True, frozen=True)
class Comparison:
    column: str
    operator: str
    value: Any


@dataclass(slots=True, frozen=True)
class InList:
    column: str
    values: tuple[Any, ...]
    negated: bool = False

    @property
    def operator(self) -> str:
        return "notin" if self.negated else "in"


@dataclass(slots=True, frozen=True)
class Group:
    operator: Literal["and", "or"]
    items: tuple[Predicate, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.items)


Predicate = Union[Comparison, InList, Group]


def iter_leaves(predicate: Predicate) -> list[Comparison | InList]:
    """Flatten a predicate tree into its leaves, depth first."""
    if isinstance(predicate, Group):
        leaves: list[Comparison | InList] = []
        for item in predicate.items:
            leaves.extend(iter_leaves(item))
        return leaves
    return [predicate]


@dataclass(slots=True, frozen=True)
class SortSpec:
    column: str
    descending: bool = False
    nulls: Literal["first", "last"] | None = None


@dataclass(slots=True, frozen=True)
class OffsetPage:
    offset: int = 0
    limit: int = 100


@dataclass(slots=True, frozen=True)
class CursorPage:
    direction: Literal["forward", "backward"] = "forward"
    count: int = 100
    token: str | None = None

    @property
    def forward(self) -> bool:
        return self.direction == "forward"


PaginationSpec = Union[OffsetPage, CursorPage]


@dataclass(slots=True, frozen=True)
class ExpandNode:
    """A requested relation expansion with optional row limit and children."""

    name: str
    limit: int | None = None
    children: tuple[ExpandNode, ...] = ()
    select: str | None = None


@dataclass(slots=True, frozen=True)
class CompiledStatement:
    sql: str
    params: tuple[Any, ...]


@dataclass(slots=True, frozen=True)
class Statement:
    """A built statement plus the metadata needed to interpret its results.

    ``clause`` is the SQLAlchemy construct to execute. :meth:`compile` renders
    it for a dialect as SQL text with an ordered list of bind values.
    """

    clause: sa.Executable
    table: str
    operation: str
    sort: tuple[SortSpec, ...] = ()
    page: PaginationSpec | None = None

    def compile(self, dialect: Dialect | None = None) -> CompiledStatement:
        compiled = self.clause.compile(dialect=dialect)  # type: ignore[attr-defined]
        params = compiled.construct_params()
        if compiled.positiontup is not None:
            ordered = tuple(params[name] for name in compiled.positiontup)
        else:
            ordered = tuple(params[name] for name in compiled.bind_names.values() if name in params)
        return CompiledStatement(sql=compiled.string, params=ordered)

    def __str__(self) -> str:
        return self.compile().sql
