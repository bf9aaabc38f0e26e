"""
Programmatic API for codegraph_kb: use as a library from Python code.

Every entry point takes a store directory and returns plain, JSON-ready
structures.  Example usage::

    from codegraph_kb.api import ingest_directory, run_query, build_context_pack

    report = ingest_directory("path/to/repo", ".codegraph_kb/store")
    hits = run_query(".codegraph_kb/store", predicate="name ~ '^parse_' AND is_public = true")
    pack = build_context_pack(".codegraph_kb/store", "token refresh", token_budget=6000)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .cancellation import CancellationToken
from .clustering import ClusteringEngine
from .config import Config
from .context import ContextSelector, TaskType
from .graph import CodeGraph
from .ingest import Ingestor
from .predicates import PredicateLike
from .query import Query, QueryEngine, Strategy
from .store import GraphStore

logger = logging.getLogger(__name__)


def open_store(store_path: str, config: Optional[Config] = None) -> GraphStore:
    cfg = config or Config()
    return GraphStore(store_path, keep_generations=cfg.KEEP_GENERATIONS)


def ingest_directory(
    root: str,
    store_path: str,
    incremental: bool = False,
    config: Optional[Config] = None,
    cancel_token: Optional[CancellationToken] = None,
    recluster: bool = False,
    progress_callback: Optional[Callable[[int, int, str], None]] = None,
    include_tests: Optional[bool] = None,
) -> dict[str, Any]:
    """
    Ingest *root* into a new generation of the store at *store_path*.

    With *recluster* the fresh generation is clustered before returning and
    the clustering summary is added under ``"clustering"``.
    """
    cfg = config or Config()
    store = open_store(store_path, cfg)
    report = Ingestor(store, cfg).ingest(
        root,
        incremental=incremental,
        cancel_token=cancel_token,
        progress_callback=progress_callback,
        include_tests=include_tests,
    )
    out = report.to_dict()
    if recluster:
        out["clustering"] = _cluster_store(store, cfg, cancel_token)
    return out


def run_query(
    store_path: str,
    strategy: str = Strategy.AUTO,
    predicate: PredicateLike = None,
    include_body: bool = False,
    include_refs: bool = False,
    seed: Optional[str] = None,
    direction: str = "forward",
    max_depth: int = 2,
    include_tests: bool = False,
    limit: Optional[int] = None,
    edge_kinds: Optional[list[str]] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> list[dict[str, Any]]:
    """
    Run one query and return its entity dicts.

    Raises
    ------
    QueryError
        Malformed predicate or strategy misuse.
    StoreUnavailable
        No published generation.
    """
    result = query_detailed(
        store_path,
        Query(
            strategy=strategy,
            predicate=predicate,
            include_body=include_body,
            include_refs=include_refs,
            include_tests=include_tests,
            seed=seed,
            direction=direction,
            max_depth=max_depth,
            edge_kinds=edge_kinds,
            limit=limit,
        ),
        cancel_token=cancel_token,
    )
    return result["entities"]


def query_detailed(store_path: str, query: Query,
                   cancel_token: Optional[CancellationToken] = None) -> dict[str, Any]:
    """Like :func:`run_query` but returns the full result (budgets, edges, clusters)."""
    with open_store(store_path).open_reader() as reader:
        return QueryEngine(reader).run(query, cancel_token=cancel_token).to_dict()


def blast_radius(store_path: str, entity_id: str, max_depth: int = 3) -> dict[str, Any]:
    """Entities that transitively depend on *entity_id*, with the edges between them."""
    with open_store(store_path).open_reader() as reader:
        result = QueryEngine(reader).blast_radius(entity_id, max_depth=max_depth)
        return {
            "entity_id": entity_id,
            "max_depth": max_depth,
            "entities": result.entity_dicts(),
            "edges": [e.to_dict() for e in result.edges],
            "is_miss": result.is_miss,
        }


def query_clusters(store_path: str, pattern: Optional[str] = None,
                   entity_id: Optional[str] = None) -> list[dict[str, Any]]:
    """Clusters matching a glob over id/name, plus the cluster owning *entity_id*."""
    with open_store(store_path).open_reader() as reader:
        clusters = reader.clusters(pattern) if pattern or not entity_id else []
        if entity_id:
            owner = reader.cluster_of(entity_id)
            if owner is not None and owner.cluster_id not in {c.cluster_id for c in clusters}:
                clusters.append(owner)
        return [c.to_dict() for c in clusters]


def _cluster_store(store: GraphStore, config: Config,
                   cancel_token: Optional[CancellationToken] = None) -> dict[str, Any]:
    with store.open_reader() as reader:
        engine = ClusteringEngine(reader, config)
        result = engine.run(cancel_token=cancel_token)
    engine.publish(store, result)
    return result.to_dict()


def build_clusters(store_path: str, config: Optional[Config] = None,
                   cancel_token: Optional[CancellationToken] = None) -> dict[str, Any]:
    """Cluster the current generation and publish the result."""
    cfg = config or Config()
    return _cluster_store(open_store(store_path, cfg), cfg, cancel_token)


def build_context_pack(
    store_path: str,
    task: str,
    token_budget: int = 8000,
    task_type: str = TaskType.EXPLORE,
    config: Optional[Config] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> dict[str, Any]:
    """
    Select context for *task* (an entity id or free-text keywords).

    The result lists selected units with per-item and running token totals,
    the total, and the exclusion log.
    """
    cfg = config or Config()
    with open_store(store_path, cfg).open_reader() as reader:
        pack = ContextSelector(reader, cfg).select(
            task, task_type=task_type, token_budget=token_budget, cancel_token=cancel_token)
        out = pack.to_dict()
        out["task"] = task
        out["generation_id"] = reader.generation_id
        return out


def store_status(store_path: str) -> dict[str, Any]:
    """Summary of the store: generations, counts, last clustering run, graph shape."""
    store = open_store(store_path)
    current = store.current_generation()
    status: dict[str, Any] = {
        "store_path": store.path,
        "current_generation": current,
        "generations": store.list_generations(),
    }
    if current is None:
        return status
    with store.open_reader(current) as reader:
        status.update(reader.stats())
        status["meta"] = reader.meta()
        status["last_cluster_run"] = reader.last_cluster_run()
        status["graph"] = CodeGraph.from_reader(reader).stats()
    return status
