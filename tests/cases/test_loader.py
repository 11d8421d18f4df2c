from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa

from sqla_autocrud.errors import LoadCancelledError
from sqla_autocrud.loader import RelationshipLoader, RequestScope, request_scope
from sqla_autocrud.models import SortSpec
from sqla_autocrud.parsing import parse_filters
from sqla_autocrud.service import RecordService

from ..helpers import FakeClock


@pytest.fixture
def connection(engine: sa.Engine) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        yield conn


@pytest.fixture
def scope(connection: sa.Connection) -> Iterator[RequestScope]:
    with RequestScope(connection) as scope:
        yield scope


@pytest.fixture
def loader(
    connection: sa.Connection,
    scope: RequestScope,
    service: RecordService,
    seed_data: dict[str, list[dict[str, Any]]],
) -> RelationshipLoader:
    return RelationshipLoader(connection, scope, service.builder)


def _queries(statements: list[str], table: str) -> int:
    return sum(f"FROM {table} " in f"{sql} " for sql in statements)


class TestLoadMany:
    def test_groups_rows_per_key(self, loader: RelationshipLoader) -> None:
        result = loader.load_many("orders", "customer_id", "id", [1, 2, 3])

        assert [row["id"] for row in result[1]] == [1, 2, 3]
        assert [row["id"] for row in result[2]] == [4]
        assert result[3] == []

    def test_one_query_per_unseen_batch(self, loader: RelationshipLoader, statements: list[str]) -> None:
        loader.load_many("orders", "customer_id", "id", [1, 2, 3])
        assert _queries(statements, "orders") == 1

        loader.load_many("orders", "customer_id", "id", [1, 2, 3])
        assert _queries(statements, "orders") == 1

        result = loader.load_many("orders", "customer_id", "id", [2, 4])
        assert _queries(statements, "orders") == 2
        assert list(result) == [2, 4]
        assert result[4] == []

    def test_null_and_duplicate_keys(self, loader: RelationshipLoader) -> None:
        result = loader.load_many("orders", "customer_id", "id", [None, 2, 2])

        assert list(result) == [2]

    def test_memo_is_per_projection(self, loader: RelationshipLoader, statements: list[str]) -> None:
        loader.load_many("orders", "customer_id", "id", [1])
        narrow = loader.load_many("orders", "customer_id", "id", [1], ["total"])

        assert _queries(statements, "orders") == 2
        assert set(narrow[1][0]) == {"total", "customer_id"}

    def test_limit_per_key(self, loader: RelationshipLoader) -> None:
        result = loader.load_many("orders", "customer_id", "id", [1, 2], limit=2)

        assert [row["id"] for row in result[1]] == [1, 2]
        assert [row["id"] for row in result[2]] == [4]
        assert all("_autocrud_rn" not in row for row in result[1])

    def test_limit_follows_sort(self, loader: RelationshipLoader) -> None:
        result = loader.load_many(
            "orders", "customer_id", "id", [1], limit=1, sort=[SortSpec("id", descending=True)]
        )

        assert [row["id"] for row in result[1]] == [3]

    def test_predicate(self, loader: RelationshipLoader) -> None:
        result = loader.load_many(
            "orders", "customer_id", "id", [1, 2], predicate=parse_filters({"status": "eq.pending"})
        )

        assert [row["id"] for row in result[1]] == [2]
        assert result[2] == []

    def test_composite_keys(self, loader: RelationshipLoader) -> None:
        columns = ("order_id", "line_no")
        result = loader.load_many("shipments", columns, columns, [(1, 1), (1, 2), (2, 1)])

        assert [row["carrier"] for row in result[(1, 1)]] == ["ups"]
        assert [row["carrier"] for row in result[(1, 2)]] == ["dhl"]
        assert result[(2, 1)] == []


class TestLoadOne:
    def test_missing_keys_absent(self, loader: RelationshipLoader) -> None:
        result = loader.load_one("customers", "id", [1, 2, 1, 99])

        assert set(result) == {1, 2}
        assert result[1]["name"] == "alice"

    def test_missing_keys_memoized(self, loader: RelationshipLoader, statements: list[str]) -> None:
        loader.load_one("customers", "id", [1, 99])
        loader.load_one("customers", "id", [99, 1])

        assert _queries(statements, "customers") == 1

    def test_self_reference(self, loader: RelationshipLoader) -> None:
        result = loader.load_one("categories", "id", [1, 2])

        assert result[2]["parent_id"] == 1
        assert result[1]["parent_id"] is None


class TestScope:
    def test_cancelled(self, loader: RelationshipLoader, scope: RequestScope) -> None:
        scope.cancel()

        with pytest.raises(LoadCancelledError, match="cancelled") as exc_info:
            loader.load_many("orders", "customer_id", "id", [1])
        assert exc_info.value.table == "orders"

    def test_cancel_does_not_drop_memo_hits(self, loader: RelationshipLoader, scope: RequestScope) -> None:
        loader.load_many("orders", "customer_id", "id", [1])
        scope.cancel()

        assert len(loader.load_many("orders", "customer_id", "id", [1])[1]) == 3

    def test_deadline(self, connection: sa.Connection, service: RecordService, seed_data: Any) -> None:
        clock = FakeClock()
        scope = RequestScope(connection, timeout=5, clock=clock)
        loader = RelationshipLoader(connection, scope, service.builder)

        assert scope.remaining() == 5
        clock.advance(6)
        assert scope.remaining() == 0
        assert scope.expired

        with pytest.raises(LoadCancelledError, match="deadline"):
            loader.load_one("customers", "id", [1])

    def test_closed(self, loader: RelationshipLoader, scope: RequestScope) -> None:
        loader.load_many("orders", "customer_id", "id", [1])
        scope.close()

        assert scope.memo == {}
        with pytest.raises(LoadCancelledError, match="closed"):
            loader.load_many("orders", "customer_id", "id", [2])

    def test_no_deadline(self) -> None:
        scope = RequestScope()

        assert scope.remaining() is None
        assert not scope.expired
        scope.check()

    def test_request_scope_owns_connection(self, engine: sa.Engine) -> None:
        with request_scope(engine, timeout=10) as scope:
            assert scope.connection is not None
            assert not scope.closed

        assert scope.closed
        assert scope.connection.closed


class TestFailures:
    def test_failed_batch_is_logged_and_not_memoized(
        self,
        loader: RelationshipLoader,
        scope: RequestScope,
        db_backend: str,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        if db_backend == "postgres":
            pytest.skip("full text search exists on PostgreSQL")

        predicate = parse_filters({"note": "fts.gift"})
        with caplog.at_level(logging.ERROR, logger="sqla_autocrud.loader"):
            result = loader.load_many("orders", "customer_id", "id", [1], predicate=predicate)

        assert result == {1: []}
        assert "Relationship batch on orders failed" in caplog.text
        assert all(1 not in memo for memo in scope.memo.values())

    @pytest.mark.postgres
    def test_statement_timeout_applied(
        self, engine: sa.Engine, service: RecordService, seed_data: Any, statements: list[str]
    ) -> None:
        with request_scope(engine, timeout=30) as scope:
            assert scope.connection is not None
            loader = RelationshipLoader(scope.connection, scope, service.builder)
            result = loader.load_many("orders", "customer_id", "id", [1])

        assert len(result[1]) == 3
        assert any("set_config" in sql for sql in statements)


    @pytest.mark.postgres
    def test_statement_timeout_restored_after_batch(
        self, engine: sa.Engine, service: RecordService, seed_data: Any
    ) -> None:
        with request_scope(engine, timeout=30) as scope:
            assert scope.connection is not None
            before = scope.connection.execute(sa.text("SHOW statement_timeout")).scalar()
            loader = RelationshipLoader(scope.connection, scope, service.builder)
            loader.load_many("orders", "customer_id", "id", [1])
            loader.load_one("customers", "id", [2])

            after = scope.connection.execute(sa.text("SHOW statement_timeout")).scalar()

        assert after == before
