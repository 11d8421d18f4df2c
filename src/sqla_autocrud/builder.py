from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite

from .coercion import coerce_value
from .cursor import CursorCodec
from .errors import ValidationError
from .models import (
    ColumnInfo,
    CursorPage,
    ExpandNode,
    Group,
    InList,
    OffsetPage,
    PaginationSpec,
    Predicate,
    SelectField,
    SortSpec,
    Statement,
    TableInfo,
)
from .operators import build_condition
from .relations import resolve_relation
from .tools import get_primary_key, to_sa_table
from .validation import IdentifierValidator


if TYPE_CHECKING:
    from .catalog import SchemaCatalog


KeyValue = Union[str, Sequence[Any], Mapping[str, Any]]

ROW_NUMBER_LABEL: Final[str] = "_autocrud_rn"
_RETURNING_DIALECTS: Final[frozenset[str]] = frozenset(
    {"postgresql", "sqlite", "mariadb", "mssql", "oracle"}
)
_UPSERT_INSERTS: Final[Mapping[str, Any]] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class QueryBuilder:
    """Compiles parsed requests into parameterized SQLAlchemy statements.

    Every identifier is checked against the catalog before a construct is
    built, and every caller value is coerced to the column's Python type and
    bound; nothing a caller sends is rendered into SQL text.

    Args:
        catalog: Source of :class:`TableInfo` snapshots and enum labels.
        dialect_name: Target dialect; defaults to the catalog engine's.
        validator: Identifier validator, built from *catalog* if omitted.
        composite_key_delimiter: Separator of composite key strings.
    """

    def __init__(
        self,
        catalog: SchemaCatalog,
        dialect_name: str | None = None,
        *,
        validator: IdentifierValidator | None = None,
        composite_key_delimiter: str = ",",
    ) -> None:
        self.catalog = catalog
        self.dialect_name = dialect_name or catalog.dialect_name
        self.validator = validator or IdentifierValidator(catalog)
        self.composite_key_delimiter = composite_key_delimiter

    @property
    def dialect(self) -> sa.Dialect:
        return sa.engine.make_url(f"{self.dialect_name}://").get_dialect()()

    @property
    def supports_returning(self) -> bool:
        return self.dialect_name in _RETURNING_DIALECTS

    def coerce(self, raw: Any, column: ColumnInfo) -> Any:
        return coerce_value(raw, column, enum_values=self.catalog.get_enum_values)

    # -- predicates ------------------------------------------------------

    def build_where(
        self,
        table_info: TableInfo,
        predicate: Predicate | None,
        table: sa.FromClause | None = None,
    ) -> sa.ColumnElement[bool] | None:
        """Compile *predicate* against *table_info*; ``None`` when empty.

        Raises:
            ValidationError: If a leaf names an unknown column, or carries an
                unknown operator or an invalid value.
        """
        if predicate is None:
            return None
        self.validator.validate_predicate(predicate, table_info)
        source = table if table is not None else to_sa_table(table_info)
        return self._compile_predicate(predicate, table_info, source)

    def _compile_predicate(
        self,
        predicate: Predicate,
        table_info: TableInfo,
        table: sa.FromClause,
    ) -> sa.ColumnElement[bool] | None:
        if isinstance(predicate, Group):
            clauses = [
                clause
                for item in predicate.items
                if (clause := self._compile_predicate(item, table_info, table)) is not None
            ]
            if not clauses:
                return None
            combine = sa.or_ if predicate.operator == "or" else sa.and_
            return combine(*clauses) if len(clauses) > 1 else clauses[0]

        info = table_info.columns_by_name[predicate.column]
        operand = predicate.values if isinstance(predicate, InList) else predicate.value
        return build_condition(predicate.operator, table.c[predicate.column], operand, info, self.coerce)

    # -- reads -----------------------------------------------------------

    def projected_columns(
        self,
        table_info: TableInfo,
        projection: Sequence[SelectField] | None,
        expand: Sequence[ExpandNode] = (),
    ) -> list[str]:
        """Column names to fetch for *projection*.

        Local columns of embedded relations, and of the relations named in
        *expand*, are included so the related rows can be resolved after the
        parent rows are read.

        Raises:
            ValidationError: For unknown columns or relation names.
        """
        if not projection:
            return list(table_info.column_names)

        self.validator.validate_select(projection, table_info)
        if any(field.is_wildcard for field in projection):
            return list(table_info.column_names)

        schema = self.catalog.get_schema()
        names: list[str] = []
        for field in projection:
            if field.is_column:
                names.append(field.name)
            elif field.is_embedded:
                relation = resolve_relation(table_info, field.name, schema)
                assert relation is not None
                names.extend(relation.local_columns)
        for node in expand:
            relation = resolve_relation(table_info, node.name, schema)
            if relation is None:
                raise ValidationError(
                    f"No relationship {node.name!r} declared for table {table_info.name!r}"
                )
            names.extend(relation.local_columns)
        return list(dict.fromkeys(names))

    def _order_by(self, table: sa.FromClause, sort: Sequence[SortSpec], reverse: bool = False) -> list[Any]:
        clauses = []
        for spec in sort:
            column = table.c[spec.column]
            clause = column.desc() if spec.descending != reverse else column.asc()
            nulls = spec.nulls
            if nulls is not None and reverse:
                nulls = "last" if nulls == "first" else "first"
            if nulls == "first":
                clause = clause.nulls_first()
            elif nulls == "last":
                clause = clause.nulls_last()
            clauses.append(clause)
        return clauses

    def cursor_sort(self, table_info: TableInfo, sort: Sequence[SortSpec]) -> SortSpec:
        """Sort column a cursor page is keyed on: first sort spec, else the key."""
        if sort:
            return sort[0]
        primary_key = get_primary_key(table_info)
        if not primary_key:
            raise ValidationError(
                f"Cursor pagination on {table_info.name!r} requires an order column or a primary key"
            )
        return SortSpec(primary_key[0].name)

    def cursor_codec(self, table_info: TableInfo, key: SortSpec) -> CursorCodec:
        """Codec for cursors keyed on *key*; the primary key breaks ties."""
        tiebreak = tuple(
            column.name for column in get_primary_key(table_info) if column.name != key.column
        )
        return CursorCodec(table_info.name, key.column, key.descending, tiebreak)

    def _keyset(
        self,
        table: sa.FromClause,
        table_info: TableInfo,
        key: SortSpec,
        codec: CursorCodec,
        token: str,
        forward: bool,
    ) -> sa.ColumnElement[bool]:
        value, tiebreak_values = codec.decode_key(token)
        # scan order: the sort order for forward pages, its reverse for backward ones
        ascending = key.descending != forward
        nullable = table_info.columns_by_name[key.column].nullable
        nulls_after = (key.nulls or "last") == "last" if forward else (key.nulls or "last") == "first"

        def beyond(name: str, raw: Any) -> sa.ColumnElement[bool]:
            column = table.c[name]
            bound = sa.bindparam(name, raw, type_=column.type, unique=True)
            return column > bound if ascending else column < bound

        column = table.c[key.column]
        strict: sa.ColumnElement[bool] | None
        if value is None:
            strict = column.is_not(None) if nullable and not nulls_after else None
        else:
            strict = beyond(key.column, value)
            if nullable and nulls_after:
                strict = sa.or_(strict, column.is_(None))

        parts = [] if strict is None else [strict]
        if codec.tiebreak:
            same = (
                column.is_(None)
                if value is None
                else column == sa.bindparam(key.column, value, type_=column.type, unique=True)
            )
            ties = []
            for index, name in enumerate(codec.tiebreak):
                equal = [
                    table.c[prior] == sa.bindparam(prior, raw, type_=table.c[prior].type, unique=True)
                    for prior, raw in zip(codec.tiebreak[:index], tiebreak_values)
                ]
                ties.append(sa.and_(*equal, beyond(name, tiebreak_values[index])))
            parts.append(sa.and_(same, sa.or_(*ties)))
        if not parts:
            return sa.false()
        return parts[0] if len(parts) == 1 else sa.or_(*parts)

    def build_select(
        self,
        table_info: TableInfo,
        projection: Sequence[SelectField] | None = None,
        predicate: Predicate | None = None,
        sort: Sequence[SortSpec] = (),
        pagination: PaginationSpec | None = None,
        expand: Sequence[ExpandNode] = (),
    ) -> Statement:
        """Build a ``SELECT`` for one page of *table_info*.

        Offset pages render ``LIMIT``/``OFFSET``. Cursor pages fetch
        ``count + 1`` rows so the caller can tell whether another page exists;
        they are keyed on the first sort column (or the primary key), with the
        order reversed for backward pages and a keyset condition derived from
        the decoded cursor.

        Raises:
            ValidationError: For unknown columns, bad pagination or a cursor
                issued for another table, column or direction.
        """
        for spec in sort:
            self.validator.validate_order_column(spec.column, table_info)

        table = to_sa_table(table_info)
        columns = self.projected_columns(table_info, projection, expand)
        stmt = sa.select(*(table.c[name] for name in columns))

        where = self.build_where(table_info, predicate, table)
        if where is not None:
            stmt = stmt.where(where)

        effective_sort = tuple(sort)
        match pagination:
            case OffsetPage(offset=offset, limit=limit):
                self.validator.validate_pagination(offset, limit)
                stmt = stmt.order_by(*self._order_by(table, sort)).offset(offset).limit(limit)
            case CursorPage() as page:
                if not 0 < page.count <= self.validator.max_limit:
                    raise ValidationError(f"Page size must be between 1 and {self.validator.max_limit}")
                key = self.cursor_sort(table_info, sort)
                self.validator.validate_order_column(key.column, table_info)
                if table_info.columns_by_name[key.column].nullable:
                    key = SortSpec(key.column, key.descending, key.nulls or "last")
                else:
                    key = SortSpec(key.column, key.descending)
                effective_sort = (key,)
                codec = self.cursor_codec(table_info, key)
                for name in (key.column, *codec.tiebreak):
                    if name not in columns:
                        stmt = stmt.add_columns(table.c[name])
                        columns.append(name)
                if page.token:
                    stmt = stmt.where(self._keyset(table, table_info, key, codec, page.token, page.forward))
                ordering = (key, *(SortSpec(name, key.descending) for name in codec.tiebreak))
                stmt = stmt.order_by(*self._order_by(table, ordering, reverse=not page.forward))
                stmt = stmt.limit(page.count + 1)
            case None:
                stmt = stmt.order_by(*self._order_by(table, sort))
            case _:
                raise ValidationError(f"Unsupported pagination: {pagination!r}")

        return Statement(stmt, table_info.name, "select", effective_sort, pagination)

    def build_get(
        self,
        table_info: TableInfo,
        key: KeyValue,
        projection: Sequence[SelectField] | None = None,
        expand: Sequence[ExpandNode] = (),
    ) -> Statement:
        """``SELECT`` of the single row whose primary key is *key*."""
        table = to_sa_table(table_info)
        columns = self.projected_columns(table_info, projection, expand)
        stmt = (
            sa.select(*(table.c[name] for name in columns))
            .where(self.key_condition(table_info, key))
            .limit(1)
        )
        return Statement(stmt, table_info.name, "get")

    def build_count(self, table_info: TableInfo, predicate: Predicate | None = None) -> Statement:
        table = to_sa_table(table_info)
        stmt = sa.select(sa.func.count()).select_from(table)
        where = self.build_where(table_info, predicate, table)
        if where is not None:
            stmt = stmt.where(where)
        return Statement(stmt, table_info.name, "count")

    def build_related_select(
        self,
        table_info: TableInfo,
        key_columns: Sequence[str],
        keys: Sequence[Any],
        columns: Sequence[str] = (),
        *,
        limit: int | None = None,
        predicate: Predicate | None = None,
        sort: Sequence[SortSpec] = (),
    ) -> Statement:
        """Fetch the rows of *table_info* whose *key_columns* match *keys*.

        One ``IN`` list carries every key (a row-value ``IN`` for composite
        keys). With *limit*, a ``row_number()`` window partitioned by the key
        caps the rows returned per key.
        """
        if not keys:
            raise ValidationError("Related select needs at least one key")
        self.validator.validate_columns(key_columns, table_info)
        self.validator.validate_columns(columns, table_info)
        for spec in sort:
            self.validator.validate_order_column(spec.column, table_info)

        table = to_sa_table(table_info)
        names = list(dict.fromkeys([*(columns or table_info.column_names), *key_columns]))
        key_exprs = [table.c[name] for name in key_columns]
        infos = [table_info.columns_by_name[name] for name in key_columns]

        if len(key_exprs) == 1:
            match = key_exprs[0].in_([self._bind(key_exprs[0], infos[0], key) for key in keys])
        else:
            match = sa.tuple_(*key_exprs).in_([
                sa.tuple_(*(self._bind(expr, info, part) for expr, info, part in zip(key_exprs, infos, key)))
                for key in keys
            ])

        where = self.build_where(table_info, predicate, table)
        conditions = [match] if where is None else [match, where]
        ordering = sort or tuple(SortSpec(column.name) for column in get_primary_key(table_info))

        if limit is None:
            stmt = (
                sa.select(*(table.c[name] for name in names))
                .where(*conditions)
                .order_by(*self._order_by(table, ordering))
            )
            return Statement(stmt, table_info.name, "select", tuple(ordering))

        row_number = (
            sa.func.row_number()
            .over(partition_by=key_exprs, order_by=self._order_by(table, ordering) or key_exprs)
            .label(ROW_NUMBER_LABEL)
        )
        ranked = (
            sa.select(*(table.c[name] for name in names), row_number)
            .where(*conditions)
            .subquery(f"{table_info.name}_ranked")
        )
        stmt = (
            sa.select(*(ranked.c[name] for name in names))
            .where(ranked.c[ROW_NUMBER_LABEL] <= limit)
            .order_by(*self._order_by(ranked, ordering), ranked.c[ROW_NUMBER_LABEL])
        )
        return Statement(stmt, table_info.name, "select", tuple(ordering))

    # -- keys ------------------------------------------------------------

    def parse_composite_key(self, key: str, expected_part_count: int) -> list[str]:
        """Split a composite key string such as ``"7,3"`` into its parts.

        Raises:
            ValidationError: On empty parts or a part count that does not
                match the primary key.
        """
        if key is None or not str(key).strip():
            raise ValidationError("Key cannot be empty")

        parts = [part.strip() for part in str(key).split(self.composite_key_delimiter)]
        if any(not part for part in parts):
            raise ValidationError(f"Composite key {key!r} has an empty part")
        if len(parts) != expected_part_count:
            raise ValidationError(
                f"Composite key {key!r} has {len(parts)} parts, expected {expected_part_count}"
            )
        return parts

    def build_composite_key_conditions(
        self,
        pk_columns: Sequence[ColumnInfo | str],
        table_info: TableInfo,
        values: Sequence[Any],
    ) -> sa.ColumnElement[bool]:
        """One bound equality per key column, in declared order, ANDed."""
        if len(pk_columns) != len(values):
            raise ValidationError(
                f"Expected {len(pk_columns)} key values for {table_info.name!r}, got {len(values)}"
            )

        table = to_sa_table(table_info)
        conditions = []
        for column, value in zip(pk_columns, values):
            name = column if isinstance(column, str) else column.name
            self.validator.validate_order_column(name, table_info)
            info = table_info.columns_by_name[name]
            conditions.append(table.c[name] == self._bind(table.c[name], info, value))
        return sa.and_(*conditions)

    def key_condition(self, table_info: TableInfo, key: KeyValue) -> sa.ColumnElement[bool]:
        """Match one row by primary key given as string, sequence or mapping."""
        primary_key = get_primary_key(table_info)
        if not primary_key:
            raise ValidationError(f"Table {table_info.name!r} has no primary key")

        if isinstance(key, Mapping):
            missing = [column.name for column in primary_key if column.name not in key]
            if missing:
                raise ValidationError(f"Key for {table_info.name!r} is missing {missing}")
            values: Sequence[Any] = [key[column.name] for column in primary_key]
        elif isinstance(key, str):
            if len(primary_key) > 1:
                values = self.parse_composite_key(key, len(primary_key))
            else:
                if not key.strip():
                    raise ValidationError("Key cannot be empty")
                values = [key.strip()]
        elif isinstance(key, Sequence):
            values = list(key)
        else:
            values = [key]
        return self.build_composite_key_conditions(primary_key, table_info, values)

    def _bind(self, column: sa.ColumnElement[Any], info: ColumnInfo, raw: Any) -> sa.BindParameter[Any]:
        return sa.bindparam(info.name, self.coerce(raw, info), type_=column.type, unique=True)

    # -- writes ----------------------------------------------------------

    def _values(self, table_info: TableInfo, record: Mapping[str, Any]) -> dict[str, Any]:
        if not record:
            raise ValidationError(f"No values given for {table_info.name!r}")
        self.validator.validate_columns(record, table_info)
        return {
            name: self.coerce(value, table_info.columns_by_name[name])
            for name, value in record.items()
        }

    def _rows(self, table_info: TableInfo, records: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        if not records:
            raise ValidationError(f"No records given for {table_info.name!r}")

        columns = list(self._values(table_info, records[0]))
        rows = []
        for index, record in enumerate(records):
            extra = [name for name in record if name not in columns]
            if extra:
                self.validator.validate_columns(extra, table_info)
                raise ValidationError(
                    f"Record {index} has columns {extra} that the first record does not set"
                )
            rows.append({
                name: self.coerce(record.get(name), table_info.columns_by_name[name])
                for name in columns
            })
        return rows

    def _returning(self, stmt: Any, table: sa.Table) -> Any:
        return stmt.returning(*table.c) if self.supports_returning else stmt

    def _writable(self, table_info: TableInfo, operation: str) -> sa.Table:
        if table_info.is_view:
            raise ValidationError(f"Cannot {operation} view {table_info.name!r}")
        return to_sa_table(table_info)

    def build_insert(self, table_info: TableInfo, values: Mapping[str, Any]) -> Statement:
        table = self._writable(table_info, "insert into")
        stmt = sa.insert(table).values(self._values(table_info, values))
        return Statement(self._returning(stmt, table), table_info.name, "insert")

    def build_bulk_insert(self, table_info: TableInfo, records: Sequence[Mapping[str, Any]]) -> Statement:
        """Multi-row ``INSERT`` with one placeholder group per record.

        Column order comes from the first record; keys it sets that a later
        record omits are bound as ``NULL``.
        """
        table = self._writable(table_info, "insert into")
        stmt = sa.insert(table).values(self._rows(table_info, records))
        return Statement(self._returning(stmt, table), table_info.name, "bulk_insert")

    def build_update(self, table_info: TableInfo, values: Mapping[str, Any], key: KeyValue) -> Statement:
        table = self._writable(table_info, "update")
        stmt = (
            sa.update(table)
            .where(self.key_condition(table_info, key))
            .values(self._values(table_info, values))
        )
        return Statement(self._returning(stmt, table), table_info.name, "update")

    def build_delete(self, table_info: TableInfo, key: KeyValue) -> Statement:
        table = self._writable(table_info, "delete from")
        stmt = sa.delete(table).where(self.key_condition(table_info, key))
        return Statement(self._returning(stmt, table), table_info.name, "delete")

    def build_upsert(
        self,
        table_info: TableInfo,
        values: Mapping[str, Any],
        update_columns: Sequence[str] | None = None,
    ) -> Statement:
        return self.build_bulk_upsert(table_info, [values], update_columns, operation="upsert")

    def build_bulk_upsert(
        self,
        table_info: TableInfo,
        records: Sequence[Mapping[str, Any]],
        update_columns: Sequence[str] | None = None,
        *,
        operation: str = "bulk_upsert",
    ) -> Statement:
        """``INSERT ... ON CONFLICT (pk) DO UPDATE``.

        Args:
            table_info: Target table; its primary key is the conflict target.
            records: Rows to insert.
            update_columns: Columns overwritten on conflict. ``None`` updates
                every non-key column the records set; an empty sequence turns
                the statement into ``DO NOTHING``.

        Raises:
            ValidationError: If the dialect has no upsert, the table has no
                primary key, or a column is unknown.
        """
        insert = _UPSERT_INSERTS.get(self.dialect_name)
        if insert is None:
            raise ValidationError(f"Upsert is not supported on {self.dialect_name}")

        table = self._writable(table_info, "upsert into")
        primary_key = [column.name for column in get_primary_key(table_info)]
        if not primary_key:
            raise ValidationError(f"Table {table_info.name!r} has no primary key")

        rows = self._rows(table_info, records)
        if update_columns is None:
            update_columns = [name for name in rows[0] if name not in primary_key]
        else:
            self.validator.validate_columns(update_columns, table_info)

        stmt = insert(table).values(rows)
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=primary_key,
                set_={name: stmt.excluded[name] for name in update_columns},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=primary_key)
        return Statement(self._returning(stmt, table), table_info.name, operation)
