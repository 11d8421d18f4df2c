from __future__ import annotations

import datetime as dt
import decimal
import os
from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa

from sqla_autocrud import autocrud_cache_clear
from sqla_autocrud.builder import QueryBuilder
from sqla_autocrud.catalog import SchemaCatalog
from sqla_autocrud.loader import RequestScope
from sqla_autocrud.service import RecordService
from sqla_autocrud.validation import IdentifierValidator

from .models import Base, Category, Customer, Order, OrderItem, Product, Shipment, StaticCatalog


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+psycopg2://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config, echo=False)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def _create_tables(engine: sa.Engine) -> Iterator[None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def seed_data(engine: sa.Engine, _create_tables: None) -> Iterator[dict[str, list[dict[str, Any]]]]:
    created = dt.datetime(2024, 1, 1, 12, 0)
    data: dict[str, list[dict[str, Any]]] = {
        "customers": [
            {"id": 1, "name": "alice", "email": "alice@example.com", "tier": "gold", "age": 34,
             "active": True, "created_at": created},
            {"id": 2, "name": "bob", "email": None, "tier": "platinum", "age": 41,
             "active": True, "created_at": created + dt.timedelta(days=1)},
            {"id": 3, "name": "charlie", "email": "charlie@example.com", "tier": "basic", "age": 25,
             "active": False, "created_at": created + dt.timedelta(days=2)},
            {"id": 4, "name": "dana", "email": "dana@example.com", "tier": "gold", "age": 29,
             "active": True, "created_at": created + dt.timedelta(days=3)},
        ],
        "products": [
            {"id": 1, "name": "keyboard", "price": decimal.Decimal("49.90")},
            {"id": 2, "name": "mouse", "price": decimal.Decimal("19.90")},
        ],
        "orders": [
            {"id": 1, "customer_id": 1, "status": "paid", "total": decimal.Decimal("69.80"), "note": None},
            {"id": 2, "customer_id": 1, "status": "pending", "total": decimal.Decimal("19.90"), "note": "gift"},
            {"id": 3, "customer_id": 1, "status": "paid", "total": decimal.Decimal("49.90"), "note": None},
            {"id": 4, "customer_id": 2, "status": "paid", "total": decimal.Decimal("19.90"), "note": None},
        ],
        "order_items": [
            {"order_id": 1, "line_no": 1, "product_id": 1, "quantity": 1},
            {"order_id": 1, "line_no": 2, "product_id": 2, "quantity": 1},
            {"order_id": 2, "line_no": 1, "product_id": 2, "quantity": 1},
            {"order_id": 4, "line_no": 1, "product_id": 2, "quantity": 1},
        ],
        "shipments": [
            {"id": 1, "order_id": 1, "line_no": 1, "carrier": "ups"},
            {"id": 2, "order_id": 1, "line_no": 2, "carrier": "dhl"},
        ],
        "categories": [
            {"id": 1, "name": "root", "parent_id": None},
            {"id": 2, "name": "child_1", "parent_id": 1},
            {"id": 3, "name": "child_2", "parent_id": 1},
            {"id": 4, "name": "grandchild", "parent_id": 2},
        ],
    }
    models = (Customer, Product, Order, OrderItem, Shipment, Category)
    with engine.begin() as conn:
        for model in models:
            conn.execute(sa.insert(model.__table__), data[model.__tablename__])

    yield data

    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(sa.delete(table))


@pytest.fixture
def catalog(engine: sa.Engine, _create_tables: None) -> SchemaCatalog:
    return SchemaCatalog(engine, ttl=300)


@pytest.fixture
def service(engine: sa.Engine, catalog: SchemaCatalog) -> RecordService:
    return RecordService(engine, catalog)


@pytest.fixture
def ctx(service: RecordService) -> Iterator[RequestScope]:
    with service.scope() as scope:
        yield scope


@pytest.fixture
def statements(engine: sa.Engine) -> Iterator[list[str]]:
    """SQL text of every statement the engine runs during the test."""
    executed: list[str] = []

    def _record(conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        executed.append(statement)

    sa.event.listen(engine, "before_cursor_execute", _record)
    yield executed
    sa.event.remove(engine, "before_cursor_execute", _record)


@pytest.fixture
def static_catalog() -> StaticCatalog:
    return StaticCatalog()


@pytest.fixture
def validator(static_catalog: StaticCatalog) -> IdentifierValidator:
    return IdentifierValidator(static_catalog)  # type: ignore[arg-type]


@pytest.fixture
def builder(static_catalog: StaticCatalog) -> QueryBuilder:
    return QueryBuilder(static_catalog, "postgresql")  # type: ignore[arg-type]


@pytest.fixture
def sqlite_builder(static_catalog: StaticCatalog) -> QueryBuilder:
    return QueryBuilder(static_catalog, "sqlite")  # type: ignore[arg-type]


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    autocrud_cache_clear()


@pytest.fixture
def reset_catalog_singleton() -> Iterator[None]:
    saved = SchemaCatalog._SchemaCatalog__instance  # type: ignore[attr-defined]
    yield
    SchemaCatalog._SchemaCatalog__instance = saved  # type: ignore[attr-defined]


# Multi-dialect: auto-skip @pytest.mark.postgres on other backends

@pytest.fixture(autouse=True)
def _skip_postgres_only(request: pytest.FixtureRequest, db_backend: str) -> None:
    if request.node.get_closest_marker("postgres") and db_backend != "postgres":
        pytest.skip("PostgreSQL-only feature")
