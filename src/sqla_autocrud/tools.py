from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from .coercion import ScalarKind, scalar_kind
from .models import ColumnInfo, ColumnType, TableInfo, TypeKind
from .relations import relations_cache_clear


_SCALAR_TYPES: Final[Mapping[ScalarKind, type[sa.types.TypeEngine[Any]]]] = {
    "int": sa.BigInteger,
    "decimal": sa.Numeric,
    "float": sa.Float,
    "bool": sa.Boolean,
    "date": sa.Date,
    "datetime": sa.DateTime,
    "time": sa.Time,
    "uuid": sa.Uuid,
    "bytes": sa.LargeBinary,
    "str": sa.String,
}


def sa_type(column_type: ColumnType) -> sa.types.TypeEngine[Any]:
    """SQLAlchemy type used to bind and read values of *column_type*.

    Enum, composite, network and MAC values are bound untyped so the database
    performs its own input conversion.
    """
    match column_type.kind:
        case TypeKind.ARRAY:
            assert column_type.element is not None
            return postgresql.ARRAY(sa_type(column_type.element))
        case TypeKind.JSON:
            if column_type.name == "jsonb":
                return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
            return sa.JSON()
        case TypeKind.PRIMITIVE:
            kind = scalar_kind(column_type)
            if kind == "datetime" and (
                "with time zone" in column_type.name or column_type.name == "timestamptz"
            ):
                return sa.DateTime(timezone=True)
            if kind == "str" and column_type.name not in {
                "text", "varchar", "character varying", "char", "character", "bpchar",
                "string", "nvarchar", "nchar", "clob",
            }:
                return sa.types.NULLTYPE
            return _SCALAR_TYPES[kind]()
        case _:
            return sa.types.NULLTYPE


@lru_cache(maxsize=512)
def _to_sa_table(table_info: TableInfo) -> sa.Table:
    """Build a detached :class:`sa.Table` mirroring *table_info* (cached)."""
    return sa.Table(
        table_info.name,
        sa.MetaData(),
        *(
            sa.Column(column.name, sa_type(column.type), primary_key=column.primary_key)
            for column in table_info.columns
        ),
        schema=table_info.schema,
    )


def to_sa_table(table_info: TableInfo) -> sa.Table:
    """Get the SQLAlchemy table construct for *table_info*.

    Identifiers reach SQL text only through this table's quoted names, so a
    statement built from it can never name a column the catalog does not know.
    """
    return _to_sa_table(table_info)


def get_primary_key(table_info: TableInfo) -> tuple[ColumnInfo, ...]:
    """Primary key columns of *table_info* in declared order.

    Views and key-less tables fall back to an ``id`` column when present.
    """
    if table_info.primary_key:
        return table_info.primary_key
    if (column := table_info.get_column("id")) is not None:
        return (column,)
    return ()


def tools_cache_clear() -> None:
    _to_sa_table.cache_clear()


def autocrud_cache_clear() -> None:
    """Drop every per-process construct cache (tables, relations)."""
    tools_cache_clear()
    relations_cache_clear()
