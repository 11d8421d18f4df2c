from __future__ import annotations

import pytest

from sqla_autocrud.complexity import QueryAnalysis, QueryComplexityAnalyzer
from sqla_autocrud.config import Settings
from sqla_autocrud.errors import ComplexityError
from sqla_autocrud.models import ExpandNode
from sqla_autocrud.parsing import parse_filters, parse_select


@pytest.fixture
def analyzer() -> QueryComplexityAnalyzer:
    return QueryComplexityAnalyzer()


class TestAnalyze:
    def test_bare_request(self, analyzer: QueryComplexityAnalyzer) -> None:
        assert analyzer.analyze("customers") == QueryAnalysis(score=110, depth=1, breadth=1)
        assert analyzer.analyze("customers").as_dict() == {"score": 110, "depth": 1, "breadth": 1}

    def test_small_page_is_cheaper(self, analyzer: QueryComplexityAnalyzer) -> None:
        assert analyzer.analyze("customers", limit=5).score == 15
        assert analyzer.analyze("customers", limit=5000).score == 110

    def test_filters(self, analyzer: QueryComplexityAnalyzer) -> None:
        params = {"age": "gt.30", "or": "(tier.eq.gold,tier.eq.platinum)"}
        analysis = analyzer.analyze("customers", params)

        assert analysis.score == 110 + 5 + 15 + 5 + 5
        assert analysis.breadth == 4

    def test_parsed_predicate_scores_like_params(self, analyzer: QueryComplexityAnalyzer) -> None:
        params = {"name": "like.al%", "id": "in.(1,2,3)", "profile": "haskey.theme"}

        assert analyzer.analyze("customers", parse_filters(params)) == analyzer.analyze("customers", params)
        assert analyzer.analyze("customers", params).score == 110 + 15 + 11 + 13

    def test_nested_expansion_scores_above_flat(self, analyzer: QueryComplexityAnalyzer) -> None:
        flat = analyzer.analyze("customers", expand="orders")
        nested = analyzer.analyze("customers", expand="orders(order_items)")

        assert flat == QueryAnalysis(score=150, depth=2, breadth=2)
        assert nested == QueryAnalysis(score=200, depth=3, breadth=3)
        assert nested.score > flat.score

    def test_siblings_widen_but_do_not_deepen(self, analyzer: QueryComplexityAnalyzer) -> None:
        analysis = analyzer.analyze("orders", expand="customers,order_items")

        assert analysis.depth == 2
        assert analysis.breadth == 3

    def test_limited_expansion(self, analyzer: QueryComplexityAnalyzer) -> None:
        analysis = analyzer.analyze("customers", expand=[ExpandNode("orders", limit=40)])

        assert analysis.score == 110 + 20 + 10 + 40
        assert analysis.breadth == 1 + 4

    def test_select_embedding_counts_as_expansion(self, analyzer: QueryComplexityAnalyzer) -> None:
        fields = parse_select("name,orders(total,order_items(quantity))")

        assert analyzer.analyze("customers", expand=fields).depth == 3


class TestValidate:
    def test_within_limits(self, analyzer: QueryComplexityAnalyzer) -> None:
        assert analyzer.validate("customers", expand="orders") == QueryAnalysis(150, 2, 2)

    def test_depth_exceeded(self) -> None:
        analyzer = QueryComplexityAnalyzer(max_depth=2)

        with pytest.raises(ComplexityError, match="depth 3 exceeds maximum allowed 2") as exc_info:
            analyzer.validate("customers", expand="orders(order_items)")
        assert exc_info.value.depth == 3
        assert exc_info.value.score == 200

    def test_score_exceeded(self) -> None:
        analyzer = QueryComplexityAnalyzer(max_score=100)

        with pytest.raises(ComplexityError, match="complexity score"):
            analyzer.validate("customers")

    def test_disabled(self) -> None:
        analyzer = QueryComplexityAnalyzer(max_score=1, enabled=False)

        assert analyzer.validate("customers", expand="orders(order_items)") is None

    def test_from_settings(self) -> None:
        analyzer = QueryComplexityAnalyzer.from_settings(Settings(max_complexity_score=50, max_depth=4))

        assert analyzer.get_limits() == {
            "max_score": 50,
            "max_depth": 4,
            "max_breadth": 50,
            "enabled": True,
        }
