from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Union

from .errors import ComplexityError
from .models import ExpandNode, Group, InList, Predicate, SelectField, iter_leaves
from .operators import JSON_OPERATORS
from .parsing import Params, parse_expand, parse_filters


if TYPE_CHECKING:
    from .config import Settings


logger = logging.getLogger(__name__)

Expansion = Union[str, Sequence[ExpandNode], Sequence[SelectField], None]

BASE_COST: Final[int] = 10
LIMIT_COST_CAP: Final[int] = 100
FILTER_COST: Final[int] = 5
OR_GROUP_COST: Final[int] = 15
PATTERN_COST: Final[int] = 10
IN_ITEM_COST: Final[int] = 2
JSON_COST: Final[int] = 8
RELATION_COST: Final[int] = 20
NESTING_COST: Final[int] = 10
RELATION_ROWS_CAP: Final[int] = 50


@dataclass(slots=True, frozen=True)
class QueryAnalysis:
    score: int
    depth: int
    breadth: int

    def as_dict(self) -> dict[str, int]:
        return {"score": self.score, "depth": self.depth, "breadth": self.breadth}


def _expand_nodes(expand: Expansion) -> list[ExpandNode]:
    if expand is None:
        return []
    if isinstance(expand, str):
        return parse_expand(expand)

    nodes: list[ExpandNode] = []
    for item in expand:
        if isinstance(item, ExpandNode):
            nodes.append(item)
        elif item.is_embedded:
            nodes.append(ExpandNode(item.name, children=tuple(_expand_nodes(item.fields))))
    return nodes


class QueryComplexityAnalyzer:
    """Scores a read request before it runs and rejects the expensive ones.

    The score grows with the page size, the number and kind of filters, and
    every expanded relation, weighted by how deep it is nested and how many
    rows it may fan out to. ``depth`` is the longest expansion chain plus the
    root table; ``breadth`` counts the root, the filters and the related rows
    in units of ``assumed_fanout``.

    Args:
        max_score: Ceiling on the total score.
        max_depth: Ceiling on the expansion depth.
        max_breadth: Ceiling on the breadth.
        assumed_fanout: Rows assumed per parent for unlimited relations.
        enabled: When ``False`` :meth:`validate` accepts everything.
    """

    def __init__(
        self,
        max_score: int = 1000,
        max_depth: int = 10,
        max_breadth: int = 50,
        assumed_fanout: int = 10,
        enabled: bool = True,
    ) -> None:
        self.max_score = max_score
        self.max_depth = max_depth
        self.max_breadth = max_breadth
        self.assumed_fanout = max(assumed_fanout, 1)
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> QueryComplexityAnalyzer:
        return cls(
            max_score=settings.max_complexity_score,
            max_depth=settings.max_depth,
            max_breadth=settings.max_breadth,
            assumed_fanout=settings.assumed_fanout,
            enabled=settings.complexity_enabled,
        )

    def analyze(
        self,
        table: str,
        filters: Predicate | Params | None = None,
        limit: int = LIMIT_COST_CAP,
        expand: Expansion = None,
    ) -> QueryAnalysis:
        """Score a request against *table*.

        Args:
            table: Root table name.
            filters: Parsed predicate or raw filter parameters.
            limit: Requested page size.
            expand: Expand string, parsed expand nodes or a select list whose
                embedded fields count as expansions.
        """
        score = BASE_COST + min(max(limit, 0), LIMIT_COST_CAP)
        breadth = 1

        predicate = parse_filters(filters) if isinstance(filters, Mapping) else filters
        if predicate is not None:
            filter_score, filter_count = self._score_predicate(predicate)
            score += filter_score
            breadth += filter_count

        relation_score, chain, relation_breadth = self._score_expansion(_expand_nodes(expand), 1)
        analysis = QueryAnalysis(score + relation_score, 1 + chain, breadth + relation_breadth)
        logger.debug("Complexity of %s: %s", table, analysis)
        return analysis

    def _score_predicate(self, predicate: Predicate) -> tuple[int, int]:
        score = 0
        if isinstance(predicate, Group):
            if predicate.operator == "or":
                score += OR_GROUP_COST
            for item in predicate.items:
                item_score, _ = self._score_predicate(item)
                score += item_score
            return score, len(iter_leaves(predicate))

        score += FILTER_COST
        if isinstance(predicate, InList):
            score += IN_ITEM_COST * len(predicate.values)
        elif predicate.operator in ("like", "ilike"):
            score += PATTERN_COST
        elif predicate.operator in JSON_OPERATORS:
            score += JSON_COST
        return score, 1

    def _score_expansion(self, nodes: Sequence[ExpandNode], level: int) -> tuple[int, int, int]:
        score = 0
        chain = 0
        breadth = 0
        for node in nodes:
            rows = node.limit if node.limit is not None else self.assumed_fanout
            score += RELATION_COST + NESTING_COST * level + min(rows, RELATION_ROWS_CAP)
            breadth += max(math.ceil(rows / self.assumed_fanout), 1)

            child_score, child_chain, child_breadth = self._score_expansion(node.children, level + 1)
            score += child_score
            breadth += child_breadth
            chain = max(chain, 1 + child_chain)
        return score, chain, breadth

    def validate(
        self,
        table: str,
        filters: Predicate | Params | None = None,
        limit: int = LIMIT_COST_CAP,
        expand: Expansion = None,
    ) -> QueryAnalysis | None:
        """Analyze a request and enforce the configured ceilings.

        Returns:
            The analysis, or ``None`` when analysis is disabled.

        Raises:
            ComplexityError: If the score, depth or breadth is over its limit.
        """
        if not self.enabled:
            return None

        analysis = self.analyze(table, filters, limit, expand)
        checks = (
            ("complexity score", analysis.score, self.max_score),
            ("depth", analysis.depth, self.max_depth),
            ("breadth", analysis.breadth, self.max_breadth),
        )
        for label, value, ceiling in checks:
            if value > ceiling:
                raise ComplexityError(
                    f"Query {label} {value} exceeds maximum allowed {ceiling}",
                    score=analysis.score,
                    depth=analysis.depth,
                    breadth=analysis.breadth,
                )
        return analysis

    def get_limits(self) -> dict[str, Any]:
        return {
            "max_score": self.max_score,
            "max_depth": self.max_depth,
            "max_breadth": self.max_breadth,
            "enabled": self.enabled,
        }
