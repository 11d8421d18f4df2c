from __future__ import annotations

import contextlib
import logging
import warnings
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc

from .builder import KeyValue, QueryBuilder
from .catalog import SchemaCatalog
from .complexity import QueryComplexityAnalyzer
from .config import Settings
from .errors import DataAccessError, ValidationError
from .loader import RelationshipLoader, RequestScope, request_scope
from .models import CursorPage, ExpandNode, OffsetPage, PaginationSpec, SelectField, Statement, TableInfo
from .parsing import (
    Params,
    parse_embedded_filters,
    parse_expand,
    parse_filters,
    parse_select,
    parse_sort,
)
from .relations import Relation, resolve_relation
from .validation import IdentifierValidator


logger = logging.getLogger(__name__)

Row = dict[str, Any]

_CURSOR_PARAMETERS = ("first", "after", "last", "before")


def _last(params: Params, name: str) -> str | None:
    value = params.get(name)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value[-1]) if value else None


def _int_param(params: Params, name: str, default: int) -> int:
    raw = _last(params, name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ValidationError(f"Parameter {name!r} must be an integer, got {raw!r}") from None


def _key_of(row: Mapping[str, Any], columns: Sequence[str]) -> Any:
    values = tuple(row.get(column) for column in columns)
    if any(value is None for value in values):
        return None
    return values[0] if len(values) == 1 else values


def _constraint_message(exc: sa_exc.IntegrityError) -> str:
    diag = getattr(exc.orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if constraint:
        return f"violates constraint {constraint!r}"
    return str(exc.orig).strip().splitlines()[0] if exc.orig is not None else "integrity error"


class RecordService:
    """Generic CRUD over every table the catalog exposes.

    Reads take query parameters in the ``select``/filter/``order``/page
    grammar of :mod:`sqla_autocrud.parsing` and return plain dictionaries.
    Writes run in one transaction per call. Every operation takes the
    caller's :class:`RequestScope`, which carries the relation memo and the
    deadline for that request.

    Args:
        engine: Engine statements run on.
        catalog: Schema catalog; built from *engine* and *settings* if omitted.
        settings: Limits and defaults; :class:`Settings` defaults if omitted.

    Example:
        >>> service = RecordService(engine)
        >>> with service.scope() as ctx:
        ...     page = service.list_records(ctx, "orders", {"status": "eq.paid", "limit": "10"})
    """

    def __init__(
        self,
        engine: sa.Engine,
        catalog: SchemaCatalog | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.engine = engine
        self.settings = settings or Settings()
        self.catalog = catalog or SchemaCatalog.from_settings(engine, self.settings)
        self.validator = IdentifierValidator(
            self.catalog,
            max_value_length=self.settings.max_value_length,
            max_limit=self.settings.max_limit,
            max_offset=self.settings.max_offset,
        )
        self.builder = QueryBuilder(
            self.catalog,
            engine.dialect.name,
            validator=self.validator,
            composite_key_delimiter=self.settings.composite_key_delimiter,
        )
        self.analyzer = QueryComplexityAnalyzer.from_settings(self.settings)

    def start_cache_sweeper(self) -> None:
        """Evict expired catalog entries every ``settings.cache_sweep_interval`` seconds."""
        self.catalog.start_sweeper(self.settings.cache_sweep_interval)

    def close(self) -> None:
        self.catalog.stop_sweeper()

    def scope(self, timeout: float | None = None) -> contextlib.AbstractContextManager[RequestScope]:
        """Open a request scope with its own connection."""
        return request_scope(self.engine, timeout=timeout)

    @contextlib.contextmanager
    def _connection(self, ctx: RequestScope) -> Iterator[sa.Connection]:
        if ctx.connection is not None:
            yield ctx.connection
        else:
            with self.engine.connect() as connection:
                yield connection

    @contextlib.contextmanager
    def _errors(self, table: str, operation: str) -> Iterator[None]:
        try:
            yield
        except sa_exc.IntegrityError as exc:
            raise ValidationError(
                f"Cannot {operation} {table}: {_constraint_message(exc)}"
            ) from exc
        except sa_exc.SQLAlchemyError as exc:
            logger.exception("Failed to %s %s", operation, table)
            raise DataAccessError(f"Failed to {operation} {table}", table=table, operation=operation) from exc

    def _execute(self, connection: sa.Connection, statement: Statement) -> sa.CursorResult[Any]:
        if logger.isEnabledFor(logging.DEBUG):
            compiled = statement.compile(connection.dialect)
            logger.debug("%s on %s: %s %r", statement.operation, statement.table, compiled.sql, compiled.params)
        return connection.execute(statement.clause)

    def _rows(self, connection: sa.Connection, statement: Statement) -> list[Row]:
        return [dict(row) for row in self._execute(connection, statement).mappings()]

    # -- reads -----------------------------------------------------------

    def pagination(self, params: Params) -> PaginationSpec:
        """Cursor page when any of first/after/last/before is given, else offset."""
        default = self.settings.default_limit
        if any(name in params for name in _CURSOR_PARAMETERS):
            if "last" in params or "before" in params:
                return CursorPage("backward", _int_param(params, "last", default), _last(params, "before"))
            return CursorPage("forward", _int_param(params, "first", default), _last(params, "after"))
        return OffsetPage(_int_param(params, "offset", 0), _int_param(params, "limit", default))

    def list_records(self, ctx: RequestScope, table: str, params: Params) -> dict[str, Any]:
        """List one page of *table*.

        Returns:
            ``{"data", "pagination"}`` for offset pages, or
            ``{"edges", "pageInfo", "totalCount"}`` for cursor pages.

        Raises:
            ValidationError: For unknown identifiers, malformed parameters or
                a request over the complexity ceilings.
            DataAccessError: If the database rejects the query.
        """
        table_info = self.validator.validate_table(table)
        fields = parse_select(_last(params, "select"))
        parse_embedded_filters(fields, params)
        predicate = parse_filters(params, validator=self.validator)
        sort = parse_sort(params)
        expand = parse_expand(_last(params, "expand"))
        page = self.pagination(params)

        limit = page.limit if isinstance(page, OffsetPage) else page.count
        self.analyzer.validate(table, predicate, limit, [*expand, *fields])

        statement = self.builder.build_select(table_info, fields, predicate, sort, page, expand)
        count = self.builder.build_count(table_info, predicate)
        with self._connection(ctx) as connection, self._errors(table, "select"):
            rows = self._rows(connection, statement)
            if isinstance(page, CursorPage):
                has_more = len(rows) > page.count
                rows = rows[: page.count]
                if not page.forward:
                    rows.reverse()
            total = self._execute(connection, count).scalar_one()

            loader = RelationshipLoader(connection, ctx, self.builder)
            self._expand_fields(loader, rows, table_info, fields)
            self._expand_nodes(loader, rows, table_info, expand)

        if isinstance(page, OffsetPage):
            return {
                "data": rows,
                "pagination": {
                    "offset": page.offset,
                    "limit": page.limit,
                    "total": total,
                    "hasMore": page.offset + len(rows) < total,
                },
            }

        key = statement.sort[0]
        codec = self.builder.cursor_codec(table_info, key)
        edges = [{"node": row, "cursor": codec.encode_row(row)} for row in rows]
        more_forward, more_backward = (has_more, page.token is not None)
        if not page.forward:
            more_forward, more_backward = more_backward, more_forward
        return {
            "edges": edges,
            "pageInfo": {
                "hasNextPage": more_forward,
                "hasPreviousPage": more_backward,
                "startCursor": edges[0]["cursor"] if edges else None,
                "endCursor": edges[-1]["cursor"] if edges else None,
            },
            "totalCount": total,
        }

    def get_record(
        self,
        ctx: RequestScope,
        table: str,
        key: KeyValue,
        select: str | None = None,
        expand: str | None = None,
    ) -> Row | None:
        """Fetch one row by primary key; ``None`` if it does not exist.

        Composite keys are given as ``"7,3"`` in key-column order, or as a
        sequence or mapping of the key values.
        """
        table_info = self.validator.validate_table(table)
        fields = parse_select(select)
        nodes = parse_expand(expand)
        statement = self.builder.build_get(table_info, key, fields, nodes)
        with self._connection(ctx) as connection, self._errors(table, "get"):
            rows = self._rows(connection, statement)
            if not rows:
                return None
            loader = RelationshipLoader(connection, ctx, self.builder)
            self._expand_fields(loader, rows, table_info, fields)
            self._expand_nodes(loader, rows, table_info, nodes)
        return rows[0]

    def expand_rows(
        self,
        ctx: RequestScope,
        rows: list[Row],
        table_info: TableInfo,
        embedded_fields: Sequence[SelectField],
    ) -> list[Row]:
        """Attach the embedded relations of *embedded_fields* to *rows* in place.

        Forward relations become a nested object (or ``None``), reverse
        relations a list of rows. Each relation costs at most one query per
        request scope, whatever the number of rows.
        """
        with self._connection(ctx) as connection, self._errors(table_info.name, "expand"):
            loader = RelationshipLoader(connection, ctx, self.builder)
            self._expand_fields(loader, rows, table_info, embedded_fields)
        return rows

    def _relation(self, table_info: TableInfo, name: str) -> tuple[Relation, TableInfo]:
        schema = self.catalog.get_schema()
        relation = resolve_relation(table_info, name, schema)
        if relation is None:
            raise ValidationError(f"No relationship {name!r} declared for table {table_info.name!r}")
        return relation, schema[relation.target]

    def _attach(
        self,
        loader: RelationshipLoader,
        rows: list[Row],
        relation: Relation,
        related: TableInfo,
        projection: Sequence[str],
        *,
        limit: int | None = None,
        predicate: Any = None,
    ) -> list[Row]:
        keys = [_key_of(row, relation.local_columns) for row in rows]
        attached: list[Row] = []
        if relation.many:
            grouped = loader.load_many(
                related,
                relation.remote_columns,
                relation.local_columns,
                keys,
                projection,
                limit,
                predicate=predicate,
            )
            for row, key in zip(rows, keys):
                children = [dict(child) for child in grouped.get(key, [])] if key is not None else []
                row[relation.name] = children
                attached.extend(children)
        else:
            found = loader.load_one(related, relation.remote_columns, keys, projection, predicate=predicate)
            for row, key in zip(rows, keys):
                parent = found.get(key) if key is not None else None
                row[relation.name] = dict(parent) if parent is not None else None
                if parent is not None:
                    attached.append(row[relation.name])
        return attached

    def _expand_fields(
        self,
        loader: RelationshipLoader,
        rows: list[Row],
        table_info: TableInfo,
        fields: Sequence[SelectField],
    ) -> None:
        if not rows:
            return
        for field in fields:
            if not field.is_embedded:
                continue
            relation, related = self._relation(table_info, field.name)
            predicate = parse_filters(field.filters, validator=self.validator) if field.filters else None
            projection = self.builder.projected_columns(related, field.fields)
            if len(projection) == len(related.columns):
                projection = []

            attached = self._attach(loader, rows, relation, related, projection, predicate=predicate)
            self._expand_fields(loader, attached, related, field.embedded_fields())

    def _expand_nodes(
        self,
        loader: RelationshipLoader,
        rows: list[Row],
        table_info: TableInfo,
        nodes: Sequence[ExpandNode],
    ) -> None:
        if not rows:
            return
        for node in nodes:
            relation, related = self._relation(table_info, node.name)
            projection: list[str] = []
            if node.select:
                projection = self.builder.projected_columns(
                    related, parse_select(node.select), node.children
                )
            limit = None
            if node.limit is not None and relation.many:
                limit = node.limit
                if limit > self.settings.max_limit:
                    warnings.warn(
                        f"Expand limit {limit} for {node.name!r} exceeds {self.settings.max_limit}. "
                        "Using the maximum.",
                        stacklevel=2,
                    )
                    limit = self.settings.max_limit

            attached = self._attach(loader, rows, relation, related, projection, limit=limit)
            self._expand_nodes(loader, attached, related, node.children)

    # -- writes ----------------------------------------------------------

    def _write(self, statement: Statement, fallback: Sequence[Row]) -> list[Row]:
        with self._errors(statement.table, statement.operation), self.engine.begin() as connection:
            result = self._execute(connection, statement)
            if result.returns_rows:
                return [dict(row) for row in result.mappings()]
            if result.rowcount == 0:
                return []
            return [dict(row) for row in fallback]

    def create_record(self, ctx: RequestScope, table: str, data: Mapping[str, Any]) -> Row:
        ctx.check(table)
        table_info = self.validator.validate_table(table)
        rows = self._write(self.builder.build_insert(table_info, data), [dict(data)])
        return rows[0]

    def create_records(self, ctx: RequestScope, table: str, records: Sequence[Mapping[str, Any]]) -> list[Row]:
        """Insert *records* in one multi-row statement and transaction."""
        ctx.check(table)
        table_info = self.validator.validate_table(table)
        return self._write(self.builder.build_bulk_insert(table_info, records), [dict(r) for r in records])

    def update_record(
        self,
        ctx: RequestScope,
        table: str,
        key: KeyValue,
        data: Mapping[str, Any],
    ) -> Row | None:
        """Update the row identified by *key*; ``None`` if no row matched."""
        ctx.check(table)
        table_info = self.validator.validate_table(table)
        rows = self._write(self.builder.build_update(table_info, data, key), [dict(data)])
        return rows[0] if rows else None

    def upsert_records(
        self,
        ctx: RequestScope,
        table: str,
        records: Sequence[Mapping[str, Any]],
        update_columns: Sequence[str] | None = None,
    ) -> list[Row]:
        """Insert or update *records* by primary key.

        Args:
            ctx: Request scope.
            table: Target table.
            records: Rows to write.
            update_columns: Columns overwritten on conflict; ``None`` for all
                non-key columns given, empty to keep existing rows untouched.
        """
        ctx.check(table)
        table_info = self.validator.validate_table(table)
        statement = self.builder.build_bulk_upsert(table_info, records, update_columns)
        return self._write(statement, [dict(r) for r in records])

    def delete_record(self, ctx: RequestScope, table: str, key: KeyValue) -> Row | None:
        """Delete the row identified by *key*; returns it, or ``None`` if absent."""
        ctx.check(table)
        table_info = self.validator.validate_table(table)
        rows = self._write(self.builder.build_delete(table_info, key), [{}])
        return rows[0] if rows else None
