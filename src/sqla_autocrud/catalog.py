from __future__ import annotations

import logging
import re
import threading
import time
import warnings
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Final, final

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc

from .datastructures import TTLCache, frozendict
from .errors import DataAccessError
from .models import ColumnInfo, ColumnType, ForeignKeyInfo, TableInfo, TypeKind


if TYPE_CHECKING:
    from .config import Settings


logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL: Final[float] = 300.0

_TYPE_PATTERNS: Final[tuple[tuple[re.Pattern[str], TypeKind], ...]] = (
    (re.compile(r"^jsonb?$"), TypeKind.JSON),
    (re.compile(r"^(inet|cidr)$"), TypeKind.NETWORK),
    (re.compile(r"^macaddr8?$"), TypeKind.MAC),
)
_MODIFIER_RE: Final = re.compile(r"\s*\(.*\)")

_PG_PRIVILEGES: Final = sa.text(
    """
    SELECT c.relname AS table_name,
           a.attname AS column_name,
           has_table_privilege(c.oid, 'SELECT') AS table_readable,
           has_column_privilege(c.oid, a.attnum, 'SELECT') AS column_readable
    FROM pg_catalog.pg_attribute a
    JOIN pg_catalog.pg_class c ON a.attrelid = c.oid
    JOIN pg_catalog.pg_namespace n ON c.relnamespace = n.oid
    WHERE n.nspname = :schema
      AND c.relkind IN ('r', 'p', 'v', 'm', 'f')
      AND a.attnum > 0
      AND NOT a.attisdropped
    """
)
_PG_COLUMN_TYPES: Final = sa.text(
    """
    SELECT c.relname AS table_name,
           a.attname AS column_name,
           pg_catalog.format_type(a.atttypid, a.atttypmod) AS full_type
    FROM pg_catalog.pg_attribute a
    JOIN pg_catalog.pg_class c ON a.attrelid = c.oid
    JOIN pg_catalog.pg_namespace n ON c.relnamespace = n.oid
    WHERE n.nspname = :schema
      AND a.attnum > 0
      AND NOT a.attisdropped
    """
)
_PG_CUSTOM_TYPES: Final = sa.text(
    """
    SELECT t.typname AS type_name, t.typtype AS type_kind
    FROM pg_catalog.pg_type t
    JOIN pg_catalog.pg_namespace n ON t.typnamespace = n.oid
    LEFT JOIN pg_catalog.pg_class c ON t.typrelid = c.oid
    WHERE n.nspname = :schema
      AND (t.typtype = 'e' OR (t.typtype = 'c' AND c.relkind = 'c'))
    """
)
_PG_COMPOSITE_FIELDS: Final = sa.text(
    """
    SELECT a.attname AS field_name,
           pg_catalog.format_type(a.atttypid, a.atttypmod) AS field_type
    FROM pg_catalog.pg_type t
    JOIN pg_catalog.pg_namespace n ON t.typnamespace = n.oid
    JOIN pg_catalog.pg_attribute a ON a.attrelid = t.typrelid
    WHERE n.nspname = :schema
      AND t.typname = :type_name
      AND a.attnum > 0
      AND NOT a.attisdropped
    ORDER BY a.attnum
    """
)


def _base_type_name(raw: str) -> str:
    name = _MODIFIER_RE.sub("", raw.strip().lower())
    # "myschema"."mood" -> mood
    return name.rsplit(".", 1)[-1].strip('"')


def classify_type(
    raw: str,
    *,
    enums: Collection[str] = (),
    composites: Collection[str] = (),
) -> ColumnType:
    """Resolve a raw database type string into a :class:`ColumnType`.

    Array types (``text[]``, ``_int4``) recurse on their element type. Names in
    *enums* or *composites* become enum or composite references; otherwise
    the name is matched against the JSON, network and MAC patterns and falls
    back to a primitive.
    """
    raw = raw.strip()
    if raw.endswith("[]"):
        return ColumnType.array_of(
            classify_type(raw[:-2], enums=enums, composites=composites)
        )

    name = _base_type_name(raw)
    if name.startswith("_") and len(name) > 1:
        return ColumnType.array_of(
            classify_type(name[1:], enums=enums, composites=composites)
        )
    if name in enums:
        return ColumnType(TypeKind.ENUM, name)
    if name in composites:
        return ColumnType(TypeKind.COMPOSITE, name)

    for pattern, kind in _TYPE_PATTERNS:
        if pattern.match(name):
            return ColumnType(kind, name)

    return ColumnType.primitive(name)


def _raw_type_of(type_: sa.types.TypeEngine[Any], dialect: sa.Dialect) -> str:
    if isinstance(type_, sa.ARRAY):
        return f"{_raw_type_of(type_.item_type, dialect)}[]"
    try:
        return type_.compile(dialect=dialect).lower()
    except sa_exc.CompileError:
        return str(type_).lower()


@dataclass(slots=True)
class _VendorTypes:
    column_types: dict[tuple[str, str], str] = field(default_factory=dict)
    enums: frozenset[str] = frozenset()
    composites: frozenset[str] = frozenset()


@final
class SchemaCatalog:
    """Reflected, TTL-cached view of the tables a role can read.

    The catalog reflects one schema in a single pass and publishes it as an
    immutable snapshot (``frozendict`` of :class:`TableInfo`). Refreshes happen
    lazily on first access and after ``ttl`` seconds; they build a new snapshot
    off to the side and swap it in, so concurrent readers see either the old or
    the new mapping in full.

    A process normally owns one catalog, registered with :func:`init_catalog`
    at startup and fetched with :func:`get_catalog`.

    Args:
        engine: Engine used for reflection queries.
        schema: Schema to reflect; ``None`` selects the connection default.
        ttl: Seconds a snapshot stays fresh.
        clock: Wall-clock source (``time.time``).
    """

    __instance: ClassVar[SchemaCatalog | None] = None

    def __init__(
        self,
        engine: sa.Engine,
        schema: str | None = None,
        *,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.schema = schema
        self._clock = clock
        self._snapshots: TTLCache[str, Mapping[str, TableInfo]] = TTLCache(ttl, clock=clock)
        self._types: TTLCache[tuple[str, str, str], Any] = TTLCache(ttl, clock=clock)
        self._refresh_lock = threading.Lock()
        self._default_schema: str | None = None

    @property
    def ttl(self) -> float:
        return self._snapshots.ttl

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def schema_key(self) -> str:
        """Cache key for the configured schema."""
        if self.schema is not None:
            return self.schema
        if self._default_schema is None:
            with self.engine.connect() as conn:
                self._default_schema = sa.inspect(conn).default_schema_name or ""
        return self._default_schema

    def get_schema(self) -> Mapping[str, TableInfo]:
        """Return the current ``table name -> TableInfo`` snapshot.

        Reflects on first use and once the snapshot is ``ttl`` seconds old.
        While one thread refreshes an expired snapshot, other threads keep
        reading the previous one.

        Raises:
            DataAccessError: If the reflection pass fails. The previous
                snapshot is kept.
        """
        key = self.schema_key
        entry = self._snapshots.get_entry(key)
        if entry is not None and not entry.is_expired(self._clock()):
            return entry.value

        if not self._refresh_lock.acquire(blocking=entry is None):
            assert entry is not None
            return entry.value

        try:
            entry = self._snapshots.get_entry(key)
            if entry is not None and not entry.is_expired(self._clock()):
                return entry.value

            snapshot = self._reflect(key)
            self._snapshots.put(key, snapshot)
            return snapshot
        finally:
            self._refresh_lock.release()

    def get_table(self, name: str) -> TableInfo | None:
        return self.get_schema().get(name)

    def clear_cache(self) -> None:
        self._snapshots.clear()
        self._types.clear()
        logger.info("Schema cache cleared")

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Evict expired snapshots and type lookups every *interval* seconds."""
        self._snapshots.start_sweeper(interval)
        self._types.start_sweeper(interval)

    def stop_sweeper(self) -> None:
        self._snapshots.stop_sweeper()
        self._types.stop_sweeper()

    def get_enum_values(self, type_name: str) -> list[str]:
        """Return the labels of enum *type_name* in declaration order.

        Unknown types and dialects without enums yield an empty list.
        """
        return list(
            self._types.get_or_compute(
                (self.schema_key, "enum", type_name), self._load_enum_values
            )
        )

    def get_composite_fields(self, type_name: str) -> dict[str, str]:
        """Return ``field name -> field type`` for composite *type_name*."""
        return dict(
            self._types.get_or_compute(
                (self.schema_key, "composite", type_name), self._load_composite_fields
            )
        )

    def _load_enum_values(self, key: tuple[str, str, str]) -> tuple[str, ...]:
        schema, _, type_name = key
        if self.dialect_name != "postgresql":
            return ()
        try:
            with self.engine.connect() as conn:
                enums = sa.inspect(conn).get_enums(schema=schema or None)  # type: ignore[attr-defined]
        except sa_exc.SQLAlchemyError as exc:
            logger.warning("Failed to read enum values for %r: %s", type_name, exc)
            return ()
        for enum in enums:
            if enum["name"] == type_name:
                return tuple(enum["labels"])
        return ()

    def _load_composite_fields(self, key: tuple[str, str, str]) -> frozendict[str, str]:
        schema, _, type_name = key
        if self.dialect_name != "postgresql":
            return frozendict()
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    _PG_COMPOSITE_FIELDS, {"schema": schema, "type_name": type_name}
                ).all()
        except sa_exc.SQLAlchemyError as exc:
            logger.warning("Failed to read composite type %r: %s", type_name, exc)
            return frozendict()
        return frozendict((row.field_name, row.field_type) for row in rows)

    def _reflect(self, schema: str) -> Mapping[str, TableInfo]:
        logger.debug("Reflecting schema %r (%s)", schema, self.dialect_name)
        try:
            with self.engine.connect() as conn, warnings.catch_warnings():
                # Unrecognised vendor types are classified below.
                warnings.simplefilter("ignore", category=sa_exc.SAWarning)
                tables = self._reflect_tables(conn, self.schema)
        except sa_exc.SQLAlchemyError as exc:
            logger.exception("Failed to reflect schema %r", schema)
            raise DataAccessError(
                f"Failed to reflect database schema {schema!r}", operation="reflect"
            ) from exc

        logger.info("Reflected %d tables from schema %r", len(tables), schema)
        return tables

    def _reflect_tables(self, conn: sa.Connection, schema: str | None) -> frozendict[str, TableInfo]:
        inspector = sa.inspect(conn)
        views = set(inspector.get_view_names(schema=schema))
        names = [*inspector.get_table_names(schema=schema), *sorted(views)]

        readable = self._readable_columns(conn, schema)
        vendor = self._vendor_types(conn, schema)

        tables: dict[str, TableInfo] = {}
        for name in names:
            if readable is not None and name not in readable:
                continue

            primary_key = set(
                inspector.get_pk_constraint(name, schema=schema).get("constrained_columns") or ()
            )
            columns: list[ColumnInfo] = []
            for column in inspector.get_columns(name, schema=schema):
                column_name = column["name"]
                if readable is not None and column_name not in readable[name]:
                    continue
                columns.append(
                    self._column_info(conn.dialect, name, column, column_name in primary_key, vendor)
                )

            foreign_keys = tuple(
                ForeignKeyInfo(
                    columns=tuple(fk["constrained_columns"]),
                    referenced_table=fk["referred_table"],
                    referenced_columns=tuple(fk["referred_columns"]),
                    name=fk.get("name"),
                )
                for fk in inspector.get_foreign_keys(name, schema=schema)
                if fk.get("constrained_columns") and fk.get("referred_table")
            )
            tables[name] = TableInfo(
                name=name,
                columns=tuple(columns),
                foreign_keys=foreign_keys,
                is_view=name in views,
                schema=schema,
            )

        return frozendict(tables)

    def _readable_columns(
        self, conn: sa.Connection, schema: str | None
    ) -> dict[str, set[str]] | None:
        """Map each readable table to its readable columns (PostgreSQL only)."""
        if conn.dialect.name != "postgresql":
            return None

        readable: dict[str, set[str]] = {}
        rows = conn.execute(_PG_PRIVILEGES, {"schema": schema or self.schema_key})
        for row in rows:
            if row.table_readable or row.column_readable:
                columns = readable.setdefault(row.table_name, set())
                if row.column_readable:
                    columns.add(row.column_name)
        return readable

    def _vendor_types(self, conn: sa.Connection, schema: str | None) -> _VendorTypes:
        if conn.dialect.name != "postgresql":
            return _VendorTypes()

        params = {"schema": schema or self.schema_key}
        try:
            with conn.begin_nested():
                custom = conn.execute(_PG_CUSTOM_TYPES, params).all()
                column_types = conn.execute(_PG_COLUMN_TYPES, params).all()
        except sa_exc.SQLAlchemyError as exc:
            logger.warning("Vendor type detection failed for schema %r: %s", params["schema"], exc)
            return _VendorTypes()

        return _VendorTypes(
            column_types={(row.table_name, row.column_name): row.full_type for row in column_types},
            enums=frozenset(row.type_name for row in custom if row.type_kind == "e"),
            composites=frozenset(row.type_name for row in custom if row.type_kind == "c"),
        )

    @staticmethod
    def _column_info(
        dialect: sa.Dialect,
        table: str,
        column: Mapping[str, Any],
        primary_key: bool,
        vendor: _VendorTypes,
    ) -> ColumnInfo:
        name = column["name"]
        type_ = column["type"]
        raw = vendor.column_types.get((table, name)) or _raw_type_of(type_, dialect)

        enums: Collection[str] = vendor.enums
        if isinstance(type_, sa.Enum) and type_.name:
            enums = {*enums, type_.name.lower()}

        return ColumnInfo(
            name=name,
            type=classify_type(raw, enums=enums, composites=vendor.composites),
            nullable=bool(column.get("nullable", True)),
            primary_key=primary_key,
            raw_type=raw,
        )

    @classmethod
    def from_settings(cls, engine: sa.Engine, settings: Settings) -> SchemaCatalog:
        return cls(engine, settings.schema, ttl=settings.cache_ttl)

    @classmethod
    def install(cls, catalog: SchemaCatalog) -> None:
        cls.__instance = catalog

    @classmethod
    def current(cls) -> SchemaCatalog:
        if cls.__instance is None:
            raise RuntimeError("SchemaCatalog is not initialized, call init_catalog() first")
        return cls.__instance

    @classmethod
    def reset(cls) -> None:
        """Forget the process-wide catalog (primarily for tests)."""
        cls.__instance = None


def init_catalog(catalog: SchemaCatalog) -> SchemaCatalog:
    """Register *catalog* as the process-wide catalog and return it.

    Example:
        >>> engine = sa.create_engine("postgresql+psycopg2://app@db/app")
        >>> init_catalog(SchemaCatalog(engine, schema="public"))
    """
    SchemaCatalog.install(catalog)
    return catalog


def get_catalog() -> SchemaCatalog:
    """Return the process-wide catalog registered by :func:`init_catalog`."""
    return SchemaCatalog.current()
