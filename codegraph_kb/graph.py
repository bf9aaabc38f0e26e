"""
NetworkX view of one generation's dependency graph.

The store answers queries directly in SQL; this in-memory view is used
for whole-graph statistics and as the reference implementation of
breadth-first traversal.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

import networkx as nx

from .models import DependencyEdge
from .store import GenerationReader

logger = logging.getLogger(__name__)


class CodeGraph:
    """
    Directed graph whose nodes are entity ids and whose edges point from
    the referencing entity to the referenced one.

    Node attributes: name, entity_kind, file_path, token_count, is_test.
    Edge attribute ``kinds``: set of edge kinds between the pair.
    """

    def __init__(self) -> None:
        self._g: nx.DiGraph = nx.DiGraph()

    @property
    def nx_graph(self) -> nx.DiGraph:
        return self._g

    def add_edge(self, edge: DependencyEdge) -> None:
        if not self._g.has_node(edge.from_id) or not self._g.has_node(edge.to_id):
            return
        if self._g.has_edge(edge.from_id, edge.to_id):
            self._g[edge.from_id][edge.to_id]["kinds"].add(edge.edge_kind)
        else:
            self._g.add_edge(edge.from_id, edge.to_id, kinds={edge.edge_kind})

    @classmethod
    def from_reader(cls, reader: GenerationReader, include_tests: bool = False) -> "CodeGraph":
        """Load every entity and edge of a generation."""
        graph = cls()
        for e in reader.iter_all(include_tests=include_tests):
            graph._g.add_node(
                e.entity_id,
                name=e.name,
                entity_kind=e.entity_kind,
                file_path=e.file_path,
                token_count=e.token_count,
                is_test=e.is_test,
            )
        for edge in reader.all_edges():
            graph.add_edge(edge)
        logger.debug("Loaded graph for %s: %d nodes, %d edges",
                     reader.generation_id, graph._g.number_of_nodes(), graph._g.number_of_edges())
        return graph

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def bfs(
        self,
        seed: str,
        direction: str = "forward",
        max_depth: int = 2,
        edge_kinds: Optional[Iterable[str]] = None,
    ) -> dict[str, int]:
        """
        Return ``{entity_id: hop}`` for everything within *max_depth* hops.

        ``direction`` is ``forward`` (follow references), ``reverse``
        (follow referrers) or ``both``.
        """
        if not self._g.has_node(seed):
            return {}
        kinds = set(edge_kinds) if edge_kinds else None
        view = self._g
        if kinds is not None:
            view = nx.subgraph_view(
                self._g, filter_edge=lambda u, v: bool(self._g[u][v]["kinds"] & kinds)
            )
        if direction == "reverse":
            view = view.reverse(copy=False)
        elif direction == "both":
            view = view.to_undirected(as_view=True)
        elif direction != "forward":
            raise ValueError(f"unknown direction {direction!r}")
        return dict(nx.single_source_shortest_path_length(view, seed, cutoff=max_depth))

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self, top: int = 5) -> dict[str, Any]:
        """
        Return aggregate statistics about the graph.

        Returns
        -------
        dict
            Keys: node_count, edge_count, components, largest_component,
            isolated, most_referenced (top fan-in entity ids).
        """
        g = self._g
        components = list(nx.weakly_connected_components(g)) if g.number_of_nodes() else []
        fan_in = sorted(g.in_degree(), key=lambda item: (-item[1], item[0]))
        return {
            "node_count": g.number_of_nodes(),
            "edge_count": g.number_of_edges(),
            "components": len(components),
            "largest_component": max((len(c) for c in components), default=0),
            "isolated": sum(1 for _ in nx.isolates(g)),
            "most_referenced": [
                {"entity_id": nid, "reverse_refs": deg}
                for nid, deg in fan_in[:top] if deg > 0
            ],
        }
