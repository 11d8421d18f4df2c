"""Basic sqla-autocrud usage examples.

Demonstrates catalog setup, filtered and embedded reads, cursor pages,
expansion and writes against an in-memory SQLite database.

Run with ``python -m examples.basic_usage`` from the repository root.
"""

from __future__ import annotations

import logging
from typing import Any

import sqlalchemy as sa

from sqla_autocrud import RecordService, SchemaCatalog, Settings, init_catalog

from .models import Base


# ── 1. Initialize once at startup ────────────────────────────────────

engine = sa.create_engine("sqlite://")


def setup() -> RecordService:
    Base.metadata.create_all(engine)
    settings = Settings.from_env()

    # Reflects lazily on first use and refreshes after settings.cache_ttl
    catalog = init_catalog(SchemaCatalog.from_settings(engine, settings))
    return RecordService(engine, catalog, settings)


def seed(service: RecordService) -> None:
    with service.scope() as ctx:
        service.create_records(ctx, "customers", [
            {"id": 1, "name": "alice", "tier": "gold"},
            {"id": 2, "name": "bob", "tier": "basic"},
        ])
        service.create_records(ctx, "orders", [
            {"id": 1, "customer_id": 1, "status": "paid", "total": "69.80"},
            {"id": 2, "customer_id": 1, "status": "pending", "total": "19.90"},
            {"id": 3, "customer_id": 2, "status": "paid", "total": "5.00"},
        ])
        service.create_records(ctx, "order_items", [
            {"order_id": 1, "line_no": 1, "sku": "KB-01"},
            {"order_id": 1, "line_no": 2, "sku": "MS-02"},
        ])


# ── 2. Filters, projection and embedding ─────────────────────────────


def gold_customers_with_paid_orders(service: RecordService) -> list[dict[str, Any]]:
    with service.scope() as ctx:
        page = service.list_records(ctx, "customers", {
            "select": "name,orders(id,total)",
            "tier": "eq.gold",
            "orders.status": "eq.paid",
            "order": "name.asc",
        })
    return page["data"]


# ── 3. Cursor pages ──────────────────────────────────────────────────


def all_orders_by_cursor(service: RecordService) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    params: dict[str, Any] = {"first": "2", "order": "id"}
    with service.scope() as ctx:
        while True:
            page = service.list_records(ctx, "orders", params)
            rows.extend(edge["node"] for edge in page["edges"])
            if not page["pageInfo"]["hasNextPage"]:
                return rows
            params = {**params, "after": page["pageInfo"]["endCursor"]}


# ── 4. Expansion and composite keys ──────────────────────────────────


def order_with_items(service: RecordService) -> dict[str, Any] | None:
    with service.scope(timeout=5) as ctx:
        return service.get_record(ctx, "orders", "1", expand="customers,order_items(limit:10)")


def delete_line(service: RecordService) -> dict[str, Any] | None:
    with service.scope() as ctx:
        return service.delete_record(ctx, "order_items", "1,2")


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    service = setup()
    seed(service)
    print(gold_customers_with_paid_orders(service))
    print(all_orders_by_cursor(service))
    print(order_with_items(service))
    print(delete_line(service))
