"""
Semantic clustering: partition a generation into cohesive, size-bounded units.

Pipeline:

1. Affinity graph over entity pairs, the weighted sum of four signals:
   dependency edges, shared capitalised type names in signatures
   (data-flow proxy), file co-change, and name-token similarity.
2. Louvain community detection (networkx) with a fixed seed.
3. Minimum-description-length refinement of boundary entities.
4. Bound enforcement: oversized groups are re-split, undersized groups are
   merged into their most affine neighbour or left unclustered.
5. Quality metrics, cohesion filter, validation and naming.

The engine reads only from a :class:`~codegraph_kb.store.GenerationReader`;
publishing goes through :meth:`GraphStore.publish_clusters` in a single
transaction.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Iterable, Optional

import networkx as nx

from .cancellation import CancellationToken, check
from .config import Config
from .errors import ClusterBoundViolation
from .models import CodeEntity, DependencyEdge, EntityKind, SemanticCluster
from .store import GenerationReader, GraphStore

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")
_TYPE_TOKEN_RE = re.compile(r"\b[A-Z][A-Za-z0-9_]*\b")
_SPLIT_RE = re.compile(r"[^A-Za-z0-9]+")

CLUSTERABLE_KINDS = (EntityKind.FUNCTION, EntityKind.TYPE, EntityKind.OTHER)


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

def name_tokens(name: str) -> set[str]:
    """``parseHttpRequest`` / ``parse_http_request`` → {parse, http, request}."""
    tokens: set[str] = set()
    for part in _SPLIT_RE.split(name):
        for tok in _CAMEL_RE.findall(part):
            if len(tok) >= 2 and not tok.isdigit():
                tokens.add(tok.lower())
    return tokens


def type_tokens(entity: CodeEntity) -> set[str]:
    """Capitalised identifiers in a signature, minus the entity's own name."""
    return set(_TYPE_TOKEN_RE.findall(entity.signature)) - {entity.name}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _size_cost(size: int) -> float:
    return size * math.log2(size + 1) if size > 0 else 0.0


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ClusteringResult:
    """Outcome of one clustering run (not yet published)."""
    generation_id: str
    clusters: list[SemanticCluster] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)
    modularity: float = 0.0
    entity_count: int = 0
    unclustered: int = 0

    @property
    def average_cohesion(self) -> float:
        if not self.clusters:
            return 0.0
        return sum(c.cohesion_score for c in self.clusters) / len(self.clusters)

    @property
    def average_coupling(self) -> float:
        if not self.clusters:
            return 0.0
        return sum(c.coupling_score for c in self.clusters) / len(self.clusters)

    def summary(self) -> dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "cluster_count": len(self.clusters),
            "entity_count": self.entity_count,
            "unclustered": self.unclustered,
            "rejected": len(self.rejected),
            "modularity": round(self.modularity, 6),
            "average_cohesion": round(self.average_cohesion, 4),
            "average_coupling": round(self.average_coupling, 4),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "clusters": [c.to_dict() for c in self.clusters],
            "rejected_groups": list(self.rejected),
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ClusteringEngine:
    """
    Parameters
    ----------
    reader:
        Generation to cluster.
    config:
        Bounds, weights and algorithm parameters (``CLUSTER_*``,
        ``SIGNAL_WEIGHTS``).
    """

    def __init__(self, reader: GenerationReader, config: Optional[Config] = None) -> None:
        self.reader = reader
        self.config = config or Config()
        cfg = self.config
        self.min_size = cfg.CLUSTER_MIN_SIZE
        self.max_size = cfg.CLUSTER_MAX_SIZE
        self.min_tokens = cfg.CLUSTER_MIN_TOKENS
        self.max_tokens = cfg.CLUSTER_MAX_TOKENS
        self.weights = {
            "dependency": 1.0, "dataflow": 0.8, "cochange": 0.6, "textual": 0.4,
            **cfg.SIGNAL_WEIGHTS,
        }
        self._tokens: dict[str, int] = {}

    # ------------------------------------------------------------------
    # 1. Affinity
    # ------------------------------------------------------------------

    def _candidate_pairs(self, token_sets: dict[str, set[str]]) -> Iterable[tuple[str, str]]:
        """Pairs sharing at least one token whose document frequency is acceptable."""
        index: dict[str, list[str]] = defaultdict(list)
        for eid in sorted(token_sets):
            for tok in token_sets[eid]:
                index[tok].append(eid)
        pairs: set[tuple[str, str]] = set()
        max_df = self.config.CLUSTER_MAX_TOKEN_DF
        for tok in sorted(index):
            ids = index[tok]
            if len(ids) < 2 or len(ids) > max_df:
                continue
            pairs.update(combinations(ids, 2))
        return sorted(pairs)

    def build_affinity(
        self,
        entities: list[CodeEntity],
        edges: list[DependencyEdge],
        cochange: dict[tuple[str, str], float],
    ) -> nx.Graph:
        """Weighted undirected affinity graph (nodes inserted in id order)."""
        signals: dict[tuple[str, str], dict[str, float]] = defaultdict(dict)

        def add(a: str, b: str, signal: str, value: float) -> None:
            if a == b or value <= 0:
                return
            key = (a, b) if a < b else (b, a)
            signals[key][signal] = max(signals[key].get(signal, 0.0), min(value, 1.0))

        ids = {e.entity_id for e in entities}
        for edge in edges:
            if edge.from_id in ids and edge.to_id in ids:
                add(edge.from_id, edge.to_id, "dependency", 1.0)

        types = {e.entity_id: type_tokens(e) for e in entities}
        for a, b in self._candidate_pairs(types):
            add(a, b, "dataflow", jaccard(types[a], types[b]))

        names = {e.entity_id: name_tokens(e.qualified_name) for e in entities}
        threshold = self.config.CLUSTER_MIN_TEXT_SIMILARITY
        for a, b in self._candidate_pairs(names):
            sim = jaccard(names[a], names[b])
            if sim >= threshold:
                add(a, b, "textual", sim)

        if cochange:
            by_file: dict[str, list[str]] = defaultdict(list)
            for e in entities:
                by_file[e.file_path].append(e.entity_id)
            limit = self.config.CLUSTER_MAX_TOKEN_DF ** 2
            for (fa, fb), score in sorted(cochange.items()):
                if fa == fb or fa not in by_file or fb not in by_file:
                    continue
                if len(by_file[fa]) * len(by_file[fb]) > limit:
                    continue
                for a in by_file[fa]:
                    for b in by_file[fb]:
                        add(a, b, "cochange", score)

        graph = nx.Graph()
        for e in sorted(entities, key=lambda x: x.entity_id):
            graph.add_node(e.entity_id)
        for (a, b) in sorted(signals):
            weight = sum(self.weights.get(sig, 0.0) * val for sig, val in signals[(a, b)].items())
            if weight > 0:
                graph.add_edge(a, b, weight=weight)
        logger.debug("Affinity graph: %d nodes, %d weighted pairs",
                     graph.number_of_nodes(), graph.number_of_edges())
        return graph

    # ------------------------------------------------------------------
    # 2. Community detection
    # ------------------------------------------------------------------

    def _louvain(self, graph: nx.Graph, resolution: float) -> list[list[str]]:
        if graph.number_of_nodes() == 0:
            return []
        if graph.number_of_edges() == 0:
            return [[n] for n in sorted(graph.nodes)]
        communities = nx.community.louvain_communities(
            graph, weight="weight", resolution=resolution, seed=self.config.CLUSTER_SEED,
        )
        return sorted((sorted(c) for c in communities), key=lambda c: c[0])

    # ------------------------------------------------------------------
    # 3. MDL refinement
    # ------------------------------------------------------------------

    def _refine(self, graph: nx.Graph, communities: list[list[str]],
                cancel_token: Optional[CancellationToken]) -> list[list[str]]:
        """
        Move boundary entities to a neighbouring community when
        ``cut + lambda * sum(size * log2(size + 1))`` decreases and the
        target stays within the upper bounds.
        """
        lam = self.config.CLUSTER_MDL_LAMBDA
        assign: dict[str, int] = {n: i for i, c in enumerate(communities) for n in c}
        sizes = [len(c) for c in communities]
        tokens = [sum(self._tokens[n] for n in c) for c in communities]

        for _ in range(max(0, self.config.CLUSTER_REFINE_PASSES)):
            check(cancel_token)
            moved = 0
            for node in sorted(graph.nodes):
                src = assign[node]
                links: dict[int, float] = defaultdict(float)
                for nbr, data in graph[node].items():
                    links[assign[nbr]] += data["weight"]
                if not any(c != src for c in links):
                    continue
                w_src = links.get(src, 0.0)
                base = _size_cost(sizes[src] - 1) - _size_cost(sizes[src])
                best, best_delta = None, -1e-9
                for dst in sorted(links):
                    if dst == src:
                        continue
                    if sizes[dst] + 1 > self.max_size or tokens[dst] + self._tokens[node] > self.max_tokens:
                        continue
                    delta = (w_src - links[dst]) + lam * (
                        base + _size_cost(sizes[dst] + 1) - _size_cost(sizes[dst]))
                    if delta < best_delta:
                        best, best_delta = dst, delta
                if best is not None:
                    assign[node] = best
                    sizes[src] -= 1
                    sizes[best] += 1
                    tokens[src] -= self._tokens[node]
                    tokens[best] += self._tokens[node]
                    moved += 1
            if not moved:
                break
        grouped: dict[int, list[str]] = defaultdict(list)
        for node in sorted(assign):
            grouped[assign[node]].append(node)
        return sorted(grouped.values(), key=lambda c: c[0])

    # ------------------------------------------------------------------
    # 4. Bounds
    # ------------------------------------------------------------------

    def _group_tokens(self, members: Iterable[str]) -> int:
        return sum(self._tokens[m] for m in members)

    def _oversized(self, members: list[str]) -> bool:
        return len(members) > self.max_size or self._group_tokens(members) > self.max_tokens

    def _undersized(self, members: list[str]) -> bool:
        return len(members) < self.min_size or self._group_tokens(members) < self.min_tokens

    def _chunk(self, graph: nx.Graph, members: list[str]) -> list[list[str]]:
        """Deterministic BFS-order chunking within the upper bounds."""
        sub = graph.subgraph(members)
        order: list[str] = []
        seen: set[str] = set()
        for start in sorted(members):
            if start in seen:
                continue
            seen.add(start)
            queue = [start]
            while queue:
                node = queue.pop(0)
                order.append(node)
                for nbr in sorted(sub[node]):
                    if nbr not in seen:
                        seen.add(nbr)
                        queue.append(nbr)
        chunks: list[list[str]] = []
        current: list[str] = []
        for node in order:
            if current and (len(current) + 1 > self.max_size
                            or self._group_tokens(current) + self._tokens[node] > self.max_tokens):
                chunks.append(sorted(current))
                current = []
            current.append(node)
        if current:
            chunks.append(sorted(current))
        return chunks

    def _split(self, graph: nx.Graph, members: list[str], resolution: float,
               depth: int = 0) -> list[list[str]]:
        if not self._oversized(members):
            return [members]
        if depth < 3:
            parts = self._louvain(graph.subgraph(members).copy(), resolution * 2.0)
            if len(parts) > 1:
                out: list[list[str]] = []
                for part in parts:
                    out.extend(self._split(graph, part, resolution * 2.0, depth + 1))
                return out
        return self._chunk(graph, members)

    def _merge_small(self, graph: nx.Graph,
                     groups: list[list[str]]) -> tuple[list[list[str]], list[str]]:
        """Merge undersized groups into their most affine neighbour; return (groups, leftovers)."""
        by_gid: dict[int, list[str]] = {i: sorted(g) for i, g in enumerate(groups)}
        owner = {n: gid for gid, g in by_gid.items() for n in g}
        changed = True
        while changed:
            changed = False
            for gid in sorted(by_gid, key=lambda k: (len(by_gid[k]), by_gid[k][0])):
                small = by_gid.get(gid)
                if small is None or not self._undersized(small):
                    continue
                links: dict[int, float] = defaultdict(float)
                for node in small:
                    for nbr, data in graph[node].items():
                        if owner[nbr] != gid:
                            links[owner[nbr]] += data["weight"]
                target = None
                for other, _w in sorted(links.items(), key=lambda kv: (-kv[1], by_gid[kv[0]][0])):
                    if not self._oversized(small + by_gid[other]):
                        target = other
                        break
                if target is None:
                    continue
                by_gid[target] = sorted(by_gid[target] + small)
                for node in small:
                    owner[node] = target
                del by_gid[gid]
                changed = True
        kept = [g for g in by_gid.values() if not self._undersized(g)]
        leftovers = sorted(n for g in by_gid.values() if self._undersized(g) for n in g)
        return sorted(kept, key=lambda g: g[0]), leftovers

    # ------------------------------------------------------------------
    # 5. Metrics and naming
    # ------------------------------------------------------------------

    @staticmethod
    def _metrics(graph: nx.Graph, members: list[str], total_weight: float) -> tuple[float, float, float]:
        member_set = set(members)
        internal = 0.0
        incident = 0.0
        for node in members:
            for nbr, data in graph[node].items():
                w = data["weight"]
                incident += w
                if nbr in member_set:
                    internal += w
        internal /= 2.0
        external = incident - 2.0 * internal
        linked = internal + external
        cohesion = internal / linked if linked > 0 else 0.0
        coupling = external / linked if linked > 0 else 0.0
        modularity = 0.0
        if total_weight > 0:
            modularity = internal / total_weight - (incident / (2.0 * total_weight)) ** 2
        return cohesion, coupling, modularity

    @staticmethod
    def _name(entities: list[CodeEntity]) -> str:
        counts: Counter = Counter()
        for e in entities:
            counts.update(name_tokens(e.name))
        if not counts:
            return "cluster_unit"
        token = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
        return f"{token}_unit"

    # ------------------------------------------------------------------
    # Run / publish
    # ------------------------------------------------------------------

    def run(self, cancel_token: Optional[CancellationToken] = None) -> ClusteringResult:
        """
        Compute (but do not publish) a clustering of the reader's generation.

        Raises
        ------
        OperationCancelled
            If *cancel_token* fires; nothing is persisted.
        """
        entities = [
            e for e in self.reader.iter_all(include_tests=False)
            if e.entity_kind in CLUSTERABLE_KINDS
        ]
        by_id = {e.entity_id: e for e in entities}
        self._tokens = {e.entity_id: e.token_count for e in entities}
        result = ClusteringResult(generation_id=self.reader.generation_id,
                                  entity_count=len(entities))
        if not entities:
            return result

        check(cancel_token)
        graph = self.build_affinity(entities, self.reader.all_edges(), self.reader.cochange_scores())
        total_weight = graph.size(weight="weight")

        check(cancel_token)
        resolution = self.config.CLUSTER_RESOLUTION
        communities = self._louvain(graph, resolution)
        communities = self._refine(graph, communities, cancel_token)

        check(cancel_token)
        bounded: list[list[str]] = []
        for community in communities:
            bounded.extend(self._split(graph, community, resolution))
        groups, leftovers = self._merge_small(graph, bounded)

        check(cancel_token)
        clusters: list[SemanticCluster] = []
        min_cohesion = self.config.CLUSTER_MIN_COHESION
        for members in groups:
            cohesion, coupling, contribution = self._metrics(graph, members, total_weight)
            if cohesion < min_cohesion:
                result.rejected.append({
                    "member_ids": members,
                    "reason": f"cohesion {cohesion:.3f} below minimum {min_cohesion:.2f}",
                })
                continue
            candidate = SemanticCluster(
                cluster_id="",
                name=self._name([by_id[m] for m in members]),
                member_ids=members,
                cohesion_score=cohesion,
                coupling_score=coupling,
                modularity_contribution=contribution,
                token_count=self._group_tokens(members),
            )
            try:
                candidate.validate(self.min_size, self.max_size, self.min_tokens, self.max_tokens)
            except ClusterBoundViolation as e:
                result.rejected.append({"member_ids": members, "reason": str(e)})
                continue
            clusters.append(candidate)

        for i, cluster in enumerate(sorted(clusters, key=lambda c: c.member_ids[0]), start=1):
            cluster.cluster_id = f"cluster_{i:03d}"
            result.clusters.append(cluster)

        clustered = {m for c in result.clusters for m in c.member_ids}
        result.unclustered = len(entities) - len(clustered)
        partition = [set(c.member_ids) for c in result.clusters]
        partition.extend({n} for n in sorted(graph.nodes) if n not in clustered)
        if total_weight > 0:
            result.modularity = nx.community.modularity(graph, partition, weight="weight")

        for rejected in result.rejected:
            logger.info("Rejected cluster candidate (%d members): %s",
                        len(rejected["member_ids"]), rejected["reason"])
        logger.info(
            "Clustering %s: %d clusters, %d unclustered, %d rejected, %d leftovers, modularity %.4f",
            result.generation_id, len(result.clusters), result.unclustered,
            len(result.rejected), len(leftovers), result.modularity,
        )
        return result

    def publish(self, store: GraphStore, result: ClusteringResult) -> None:
        """Re-validate and atomically replace the generation's cluster set."""
        for cluster in result.clusters:
            cluster.validate(self.min_size, self.max_size, self.min_tokens, self.max_tokens)
        store.publish_clusters(result.generation_id, result.clusters, result.summary())
