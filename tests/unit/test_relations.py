from __future__ import annotations

from sqla_autocrud.relations import relation_names, resolve_relation

from ..models import SCHEMA


class TestResolveRelation:
    def test_forward(self) -> None:
        relation = resolve_relation(SCHEMA["orders"], "customers", SCHEMA)

        assert relation is not None
        assert not relation.many
        assert relation.target == "customers"
        assert relation.local_columns == ("customer_id",)
        assert relation.remote_columns == ("id",)

    def test_reverse(self) -> None:
        relation = resolve_relation(SCHEMA["customers"], "orders", SCHEMA)

        assert relation is not None
        assert relation.many
        assert relation.local_columns == ("id",)
        assert relation.remote_columns == ("customer_id",)

    def test_by_constraint_name(self) -> None:
        relation = resolve_relation(SCHEMA["shipments"], "fk_shipments_order_items", SCHEMA)

        assert relation is not None
        assert relation.name == "fk_shipments_order_items"
        assert relation.target == "order_items"

    def test_composite_pairs_positionally(self) -> None:
        relation = resolve_relation(SCHEMA["order_items"], "shipments", SCHEMA)

        assert relation is not None
        assert relation.many
        assert relation.foreign_key.pairs == (("order_id", "order_id"), ("line_no", "line_no"))
        assert relation.local_columns == ("order_id", "line_no")

    def test_self_reference_prefers_forward(self) -> None:
        relation = resolve_relation(SCHEMA["categories"], "categories", SCHEMA)

        assert relation is not None
        assert not relation.many
        assert relation.local_columns == ("parent_id",)

    def test_unrelated(self) -> None:
        assert resolve_relation(SCHEMA["products"], "customers", SCHEMA) is None
        assert resolve_relation(SCHEMA["products"], "nope", SCHEMA) is None

    def test_plain_mapping_accepted(self) -> None:
        assert resolve_relation(SCHEMA["customers"], "orders", dict(SCHEMA)) == resolve_relation(
            SCHEMA["customers"], "orders", SCHEMA
        )


class TestRelationNames:
    def test_forward_then_reverse(self) -> None:
        assert relation_names(SCHEMA["order_items"], SCHEMA) == ["orders", "products", "shipments"]

    def test_no_relations(self) -> None:
        assert relation_names(SCHEMA["paid_orders"], SCHEMA) == []
