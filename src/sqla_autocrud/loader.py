from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Callable, Hashable, Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, Any, Final, Union

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc

from .errors import LoadCancelledError
from .models import Predicate, SortSpec, TableInfo


if TYPE_CHECKING:
    from .builder import QueryBuilder


logger = logging.getLogger(__name__)

Columns = Union[str, Sequence[str]]
Row = dict[str, Any]

QUERY_CANCELED: Final[str] = "57014"
_MISSING: Final = object()


def _columns(columns: Columns) -> tuple[str, ...]:
    return (columns,) if isinstance(columns, str) else tuple(columns)


def _key_of(row: Row, columns: tuple[str, ...]) -> Any:
    if len(columns) == 1:
        return row[columns[0]]
    return tuple(row[column] for column in columns)


@contextlib.contextmanager
def _statement_timeout(connection: sa.Connection, remaining: float | None) -> Iterator[None]:
    """Cap PostgreSQL statements inside the block at *remaining* seconds.

    `set_config(..., true)` lasts until the end of the transaction, so the
    previous value is put back once the block succeeds. On failure the
    enclosing savepoint rollback undoes it.
    """
    if remaining is None:
        yield
        return
    previous = connection.execute(sa.select(sa.func.current_setting("statement_timeout"))).scalar_one()
    connection.execute(
        sa.select(sa.func.set_config("statement_timeout", str(max(int(remaining * 1000), 1)), True))
    )
    yield
    connection.execute(sa.select(sa.func.set_config("statement_timeout", previous, True)))


def _is_query_canceled(exc: sa_exc.DBAPIError) -> bool:
    orig = exc.orig
    return QUERY_CANCELED in (getattr(orig, "pgcode", None), getattr(orig, "sqlstate", None))


class RequestScope:
    """Per-request state for relationship loading.

    Holds the batch memo, an optional deadline and a cancel event. Use it as a
    context manager: the memo is dropped when the scope closes, so nothing
    loaded for one request is visible to another.

    Args:
        connection: Connection reads in this scope should use, if any.
        timeout: Seconds until the scope's deadline; ``None`` for no deadline.
        clock: Monotonic clock used for the deadline.

    Example:
        >>> with RequestScope(timeout=2.0) as scope:
        ...     loader = RelationshipLoader(conn, scope, builder)
    """

    __slots__ = ("connection", "deadline", "memo", "_cancelled", "_clock", "_closed")

    def __init__(
        self,
        connection: sa.Connection | None = None,
        *,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection = connection
        self._clock = clock
        self.deadline = clock() + timeout if timeout is not None else None
        self.memo: dict[Hashable, dict[Any, Any]] = {}
        self._cancelled = threading.Event()
        self._closed = False

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` without one."""
        if self.deadline is None:
            return None
        return max(self.deadline - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, table: str | None = None) -> None:
        """Raise :class:`LoadCancelledError` if the scope can no longer load."""
        if self._closed:
            raise LoadCancelledError("Request scope is closed", table=table, operation="load")
        if self.cancelled:
            raise LoadCancelledError("Request was cancelled", table=table, operation="load")
        if self.expired:
            raise LoadCancelledError("Request deadline exceeded", table=table, operation="load")

    def close(self) -> None:
        self.memo.clear()
        self._closed = True

    def __enter__(self) -> RequestScope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@contextlib.contextmanager
def request_scope(engine: sa.Engine, *, timeout: float | None = None) -> Iterator[RequestScope]:
    """Open a connection and a :class:`RequestScope` bound to it."""
    with engine.connect() as connection, RequestScope(connection, timeout=timeout) as scope:
        yield scope


class RelationshipLoader:
    """Batches relation lookups so each distinct request costs one query.

    Lookups are memoized in the :class:`RequestScope` under
    ``(table, columns, referenced columns, projection, limit, filters)``.
    Only keys not already in the memo are fetched, all of them in a single
    ``IN`` statement; the results are then handed back per key.

    Args:
        connection: Connection the batches run on.
        scope: Request scope owning the memo and the deadline.
        builder: Builds the batch statements.
    """

    def __init__(self, connection: sa.Connection, scope: RequestScope, builder: QueryBuilder) -> None:
        self.connection = connection
        self.scope = scope
        self.builder = builder

    def _table(self, table: TableInfo | str) -> TableInfo:
        if isinstance(table, TableInfo):
            return table
        return self.builder.validator.validate_table(table)

    def load_many(
        self,
        related_table: TableInfo | str,
        fk_column: Columns,
        referenced_column: Columns,
        keys: Iterable[Any],
        projection: Sequence[str] = (),
        limit: int | None = None,
        *,
        predicate: Predicate | None = None,
        sort: Sequence[SortSpec] = (),
    ) -> dict[Any, list[Row]]:
        """Load the rows of *related_table* that point at each key (one-to-many).

        Args:
            related_table: Table holding the foreign key.
            fk_column: Foreign key column(s) on *related_table*.
            referenced_column: Parent column(s) the keys were read from.
            keys: Parent key values; tuples for composite keys.
            projection: Columns to fetch, empty for all.
            limit: Maximum rows per key.
            predicate: Extra filter applied to related rows.
            sort: Order of rows within each key.

        Returns:
            ``key -> rows`` for every non-null key; keys with no rows map to
            an empty list.

        Raises:
            LoadCancelledError: If the scope is cancelled or past its deadline.
        """
        table_info = self._table(related_table)
        fk_columns = _columns(fk_column)
        memo = self.scope.memo.setdefault(
            (
                "many",
                table_info.name,
                fk_columns,
                _columns(referenced_column),
                tuple(projection),
                limit,
                predicate,
                tuple(sort),
            ),
            {},
        )

        wanted = [key for key in dict.fromkeys(keys) if key is not None]
        unseen = [key for key in wanted if key not in memo]
        if unseen:
            rows = self._fetch(table_info, fk_columns, unseen, projection, limit, predicate, sort)
            if rows is None:
                return {key: memo.get(key, []) for key in wanted}

            grouped: dict[Any, list[Row]] = {key: [] for key in unseen}
            for row in rows:
                grouped.setdefault(_key_of(row, fk_columns), []).append(row)
            memo.update(grouped)

        return {key: memo[key] for key in wanted}

    def load_one(
        self,
        related_table: TableInfo | str,
        referenced_column: Columns,
        keys: Iterable[Any],
        projection: Sequence[str] = (),
        *,
        predicate: Predicate | None = None,
    ) -> dict[Any, Row]:
        """Load the row of *related_table* each key points at (many-to-one).

        Keys without a matching row are absent from the result.

        Raises:
            LoadCancelledError: If the scope is cancelled or past its deadline.
        """
        table_info = self._table(related_table)
        ref_columns = _columns(referenced_column)
        memo = self.scope.memo.setdefault(
            ("one", table_info.name, ref_columns, tuple(projection), predicate),
            {},
        )

        wanted = [key for key in dict.fromkeys(keys) if key is not None]
        unseen = [key for key in wanted if key not in memo]
        if unseen:
            rows = self._fetch(table_info, ref_columns, unseen, projection, None, predicate, ())
            if rows is not None:
                found: dict[Any, Any] = dict.fromkeys(unseen, _MISSING)
                for row in rows:
                    key = _key_of(row, ref_columns)
                    if found.get(key, _MISSING) is _MISSING:
                        found[key] = row
                memo.update(found)

        return {key: memo[key] for key in wanted if memo.get(key, _MISSING) is not _MISSING}

    def _fetch(
        self,
        table_info: TableInfo,
        key_columns: tuple[str, ...],
        keys: Sequence[Any],
        projection: Sequence[str],
        limit: int | None,
        predicate: Predicate | None,
        sort: Sequence[SortSpec],
    ) -> list[Row] | None:
        """Run one batch; ``None`` when the database rejected it."""
        self.scope.check(table_info.name)

        statement = self.builder.build_related_select(
            table_info,
            key_columns,
            keys,
            projection,
            limit=limit,
            predicate=predicate,
            sort=sort,
        )
        postgres = self.connection.dialect.name == "postgresql"
        try:
            with self.connection.begin_nested() if postgres else contextlib.nullcontext():
                remaining = self.scope.remaining() if postgres else None
                with _statement_timeout(self.connection, remaining):
                    rows = [dict(row) for row in self.connection.execute(statement.clause).mappings()]
        except sa_exc.DBAPIError as exc:
            if _is_query_canceled(exc):
                raise LoadCancelledError(
                    "Relationship batch was cancelled by the database",
                    table=table_info.name,
                    operation="load",
                ) from exc
            logger.exception(
                "Relationship batch on %s failed for %d keys", table_info.name, len(keys)
            )
            return None

        logger.debug(
            "Loaded %d %s rows for %d keys on %s",
            len(rows),
            table_info.name,
            len(keys),
            ",".join(key_columns),
        )
        return rows
