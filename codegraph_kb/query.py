"""
Query engine: five retrieval strategies over one store generation.

=========  ===============================  ======  =======
strategy   matches on                       tokens  latency
=========  ===============================  ======  =======
metadata   name, path, kind, visibility     2 000   50 ms
signature  metadata + declared signature    5 000   100 ms
body       every field incl. body text      20 000  500 ms
traversal  seed + direction + depth         30 000  500 ms
cluster    cluster name/id or entity id     4 000   50 ms
=========  ===============================  ======  =======

Budgets are reported, not enforced: a result that overruns is logged and
flagged ``over_budget`` but returned whole.  A query with no matches is a
normal result (``is_miss``), never an error.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .cancellation import CancellationToken, check
from .errors import QueryError
from .models import CodeEntity, DependencyEdge, SemanticCluster, estimate_tokens
from .predicates import FIELDS, TRUE, PredicateLike, as_predicate
from .store import GenerationReader

logger = logging.getLogger(__name__)


class Strategy:
    AUTO = "auto"
    METADATA = "metadata"
    SIGNATURE = "signature"
    BODY = "body"
    TRAVERSAL = "traversal"
    CLUSTER = "cluster"

    ALL = (METADATA, SIGNATURE, BODY, TRAVERSAL, CLUSTER)


METADATA_FIELDS = frozenset({
    "entity_id", "name", "qualified_name", "file_path", "entity_kind", "language",
    "is_public", "is_test", "line_start", "line_end", "parent_name",
    "complexity_score", "token_count",
})
SIGNATURE_FIELDS = METADATA_FIELDS | {"signature"}
DIRECTIONS = ("forward", "reverse", "both")


@dataclass(frozen=True)
class StrategySpec:
    name: str
    fields: frozenset
    token_budget: int
    latency_ms: float


STRATEGY_SPECS: dict[str, StrategySpec] = {
    Strategy.METADATA: StrategySpec(Strategy.METADATA, METADATA_FIELDS, 2000, 50.0),
    Strategy.SIGNATURE: StrategySpec(Strategy.SIGNATURE, SIGNATURE_FIELDS, 5000, 100.0),
    Strategy.BODY: StrategySpec(Strategy.BODY, frozenset(FIELDS), 20000, 500.0),
    Strategy.TRAVERSAL: StrategySpec(Strategy.TRAVERSAL, SIGNATURE_FIELDS, 30000, 500.0),
    Strategy.CLUSTER: StrategySpec(Strategy.CLUSTER, frozenset(), 4000, 50.0),
}


@dataclass
class Query:
    """A retrieval request; ``strategy='auto'`` lets the engine choose."""
    strategy: str = Strategy.AUTO
    predicate: PredicateLike = None
    include_body: bool = False
    include_refs: bool = False
    include_tests: bool = False
    seed: Optional[str] = None
    direction: str = "forward"
    max_depth: int = 2
    edge_kinds: Optional[list[str]] = None
    cluster: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class QueryResult:
    """Entities (plus edges/clusters for traversal and cluster queries)."""
    strategy: str
    generation_id: str
    entities: list[CodeEntity] = field(default_factory=list)
    edges: list[DependencyEdge] = field(default_factory=list)
    clusters: list[SemanticCluster] = field(default_factory=list)
    hops: dict[str, int] = field(default_factory=dict)
    include_body: bool = False
    include_refs: bool = False
    estimated_tokens: int = 0
    elapsed_ms: float = 0.0
    token_budget: int = 0
    latency_budget_ms: float = 0.0

    @property
    def is_miss(self) -> bool:
        """True when nothing matched: an authoritative "does not exist"."""
        return not self.entities and not self.clusters

    @property
    def over_budget(self) -> bool:
        return (self.estimated_tokens > self.token_budget
                or self.elapsed_ms > self.latency_budget_ms)

    def entity_dicts(self) -> list[dict[str, Any]]:
        out = []
        for e in self.entities:
            d = e.to_dict(include_body=self.include_body, include_refs=self.include_refs)
            if self.strategy == Strategy.METADATA:
                d.pop("signature", None)
            if e.entity_id in self.hops:
                d["hop"] = self.hops[e.entity_id]
            out.append(d)
        return out

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "strategy": self.strategy,
            "generation_id": self.generation_id,
            "entities": self.entity_dicts(),
            "is_miss": self.is_miss,
            "estimated_tokens": self.estimated_tokens,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "token_budget": self.token_budget,
            "latency_budget_ms": self.latency_budget_ms,
            "over_budget": self.over_budget,
        }
        if self.strategy == Strategy.TRAVERSAL:
            out["edges"] = [e.to_dict() for e in self.edges]
        if self.strategy == Strategy.CLUSTER:
            out["clusters"] = [c.to_dict() for c in self.clusters]
        return out


class QueryEngine:
    """
    Dispatches :class:`Query` objects against a pinned
    :class:`~codegraph_kb.store.GenerationReader`.
    """

    def __init__(self, reader: GenerationReader) -> None:
        self.reader = reader

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def choose_strategy(query: Query) -> str:
        """Pick the cheapest strategy able to answer *query*."""
        if query.strategy != Strategy.AUTO:
            return query.strategy
        if query.cluster:
            return Strategy.CLUSTER
        if query.seed:
            return Strategy.TRAVERSAL
        referenced = as_predicate(query.predicate).fields()
        if "body_text" in referenced:
            return Strategy.BODY
        if "signature" in referenced:
            return Strategy.SIGNATURE
        return Strategy.METADATA

    @staticmethod
    def _validate(strategy: str, query: Query) -> None:
        if strategy not in STRATEGY_SPECS:
            raise QueryError(f"unknown strategy {strategy!r}; expected auto or one of {list(Strategy.ALL)}")
        spec = STRATEGY_SPECS[strategy]
        referenced = as_predicate(query.predicate).fields()
        if strategy == Strategy.CLUSTER:
            if not query.cluster and not query.seed:
                raise QueryError("cluster strategy needs a cluster pattern or an entity id")
            if referenced:
                raise QueryError("cluster strategy does not take a predicate")
            return
        unsupported = referenced - spec.fields
        if unsupported:
            raise QueryError(
                f"{strategy} strategy cannot match on {sorted(unsupported)}; "
                f"use the {'body' if 'body_text' in unsupported else 'signature'} strategy"
            )
        if strategy == Strategy.TRAVERSAL:
            if not query.seed:
                raise QueryError("traversal strategy needs a seed entity id")
            if query.direction not in DIRECTIONS:
                raise QueryError(f"direction must be one of {list(DIRECTIONS)}")
            if query.max_depth < 0:
                raise QueryError("max_depth must be >= 0")

    def run(self, query: Query, cancel_token: Optional[CancellationToken] = None) -> QueryResult:
        """
        Execute *query*.

        Raises
        ------
        QueryError
            Malformed predicate, unknown strategy, or an explicit strategy
            asked to match fields it does not cover.
        OperationCancelled
            If *cancel_token* fires.
        """
        strategy = self.choose_strategy(query)
        self._validate(strategy, query)
        spec = STRATEGY_SPECS[strategy]
        check(cancel_token)

        started = time.perf_counter()
        result = QueryResult(
            strategy=strategy,
            generation_id=self.reader.generation_id,
            include_body=query.include_body,
            include_refs=query.include_refs,
            token_budget=spec.token_budget,
            latency_budget_ms=spec.latency_ms,
        )
        if strategy == Strategy.TRAVERSAL:
            self._traverse(query, result, cancel_token)
        elif strategy == Strategy.CLUSTER:
            self._cluster(query, result)
        else:
            result.entities = self.reader.scan(
                as_predicate(query.predicate),
                include_body=query.include_body,
                include_refs=query.include_refs,
                include_tests=query.include_tests,
                limit=query.limit,
                cancel_token=cancel_token,
            )
        result.elapsed_ms = (time.perf_counter() - started) * 1000.0
        result.estimated_tokens = estimate_tokens(json.dumps(result.entity_dicts()))
        if result.clusters:
            result.estimated_tokens += estimate_tokens(
                json.dumps([c.to_dict() for c in result.clusters]))

        if result.is_miss:
            logger.debug("%s query matched nothing in %s", strategy, result.generation_id)
        if result.over_budget:
            logger.warning(
                "%s query over budget: %d tokens (budget %d), %.1fms (budget %.0fms)",
                strategy, result.estimated_tokens, spec.token_budget,
                result.elapsed_ms, spec.latency_ms,
            )
        return result

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _traverse(self, query: Query, result: QueryResult,
                  cancel_token: Optional[CancellationToken]) -> None:
        hops, edges = self.reader.traverse(
            query.seed,
            direction=query.direction,
            max_depth=query.max_depth,
            edge_kinds=query.edge_kinds,
            include_tests=query.include_tests,
            cancel_token=cancel_token,
        )
        if not hops:
            return
        ordered = sorted(hops, key=lambda i: (hops[i], i))
        entities = self.reader.get_entities(
            ordered, include_body=query.include_body, include_refs=query.include_refs)
        predicate = as_predicate(query.predicate)
        if predicate is not TRUE:
            entities = [e for e in entities
                        if e.entity_id == query.seed or predicate.evaluate(e)]
        if not query.include_tests:
            entities = [e for e in entities if not e.is_test]
        if query.limit is not None:
            entities = entities[: query.limit]
        kept = {e.entity_id for e in entities}
        result.entities = entities
        result.hops = {i: hops[i] for i in kept}
        result.edges = [e for e in edges if e.from_id in kept and e.to_id in kept]

    def _cluster(self, query: Query, result: QueryResult) -> None:
        clusters: list[SemanticCluster] = []
        if query.cluster:
            clusters = self.reader.clusters(query.cluster)
        if query.seed:
            owner = self.reader.cluster_of(query.seed)
            if owner is not None and owner.cluster_id not in {c.cluster_id for c in clusters}:
                clusters.append(owner)
        result.clusters = clusters
        member_ids = [m for c in clusters for m in c.member_ids]
        entities = self.reader.get_entities(
            member_ids, include_body=query.include_body, include_refs=query.include_refs)
        if not query.include_tests:
            entities = [e for e in entities if not e.is_test]
        result.entities = entities

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def blast_radius(self, entity_id: str, max_depth: int = 3,
                     cancel_token: Optional[CancellationToken] = None) -> QueryResult:
        """Everything that transitively depends on *entity_id*."""
        return self.run(
            Query(strategy=Strategy.TRAVERSAL, seed=entity_id,
                  direction="reverse", max_depth=max_depth),
            cancel_token=cancel_token,
        )
