"""
`codegraph-kb` command line.

Commands
--------
codegraph-kb index ROOT                        -- full ingestion into a new generation
codegraph-kb index ROOT --incremental          -- re-extract only changed files
codegraph-kb index ROOT --cluster              -- ingest, then cluster the new generation
codegraph-kb index ROOT --watch                -- ingest, then re-ingest on file changes
codegraph-kb query --where "name ~ '^parse'"   -- progressive query (strategy auto)
codegraph-kb query --seed ID --direction reverse --depth 3
codegraph-kb cluster                           -- cluster the current generation
codegraph-kb clusters [--name GLOB] [--entity ID]
codegraph-kb context "token refresh" --budget 6000 [--task-type bugfix]
codegraph-kb status

All commands print JSON on stdout; logs go to ``.codegraph_kb/logs``.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Optional

from tqdm import tqdm

from . import __version__, api
from .config import Config
from .context import TaskType
from .errors import CodegraphError, OperationCancelled, QueryError, StoreUnavailable
from .log_setup import setup_logger
from .query import DIRECTIONS, Query, Strategy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _emit(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, sort_keys=False, default=str)
    sys.stdout.write("\n")


def _store_path(args: argparse.Namespace, config: Config) -> str:
    return args.store or config.STORE_DIR


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_index(args: argparse.Namespace, config: Config) -> None:
    store_path = _store_path(args, config)
    pbar = tqdm(total=None, unit="file", desc="Extracting", file=sys.stderr,
                disable=args.quiet)

    def _progress(current: int, total: int, filename: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(filename), refresh=False)
        pbar.update(1)

    try:
        report = api.ingest_directory(
            args.root,
            store_path,
            incremental=args.incremental,
            config=config,
            recluster=args.cluster,
            progress_callback=_progress,
            include_tests=True if args.include_tests else None,
        )
    finally:
        pbar.close()
    _emit(report)

    if args.watch:
        from .store import GraphStore
        from .watcher import KBWatcher

        print("Watching for changes... (Ctrl+C to stop)", file=sys.stderr)
        store = GraphStore(store_path, keep_generations=config.KEEP_GENERATIONS)
        watcher = KBWatcher(args.root, store, config,
                            on_update=lambda r: _emit(r.to_dict()))
        watcher.start()


def _cmd_query(args: argparse.Namespace, config: Config) -> None:
    result = api.query_detailed(
        _store_path(args, config),
        Query(
            strategy=args.strategy,
            predicate=args.where,
            include_body=args.body,
            include_refs=args.refs,
            include_tests=args.include_tests,
            seed=args.seed,
            direction=args.direction,
            max_depth=args.depth,
            edge_kinds=args.edge_kind or None,
            cluster=args.cluster,
            limit=args.limit,
        ),
    )
    _emit(result)


def _cmd_cluster(args: argparse.Namespace, config: Config) -> None:
    _emit(api.build_clusters(_store_path(args, config), config=config))


def _cmd_clusters(args: argparse.Namespace, config: Config) -> None:
    _emit(api.query_clusters(_store_path(args, config), pattern=args.name,
                             entity_id=args.entity))


def _cmd_context(args: argparse.Namespace, config: Config) -> None:
    _emit(api.build_context_pack(
        _store_path(args, config), args.task,
        token_budget=args.budget, task_type=args.task_type, config=config,
    ))


def _cmd_status(args: argparse.Namespace, config: Config) -> None:
    _emit(api.store_status(_store_path(args, config)))


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codegraph-kb",
        description="Code graph ingestion, progressive queries, clustering and context packs",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--store", default=None,
                        help="Store directory (default: store_dir from config)")
    parser.add_argument("--config", default=None, help="Path to a .codegraph_kb.yaml file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")
    parser.add_argument("-q", "--quiet", action="store_true", help="No progress bar")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --- index ---
    index_p = subparsers.add_parser("index", help="Ingest a source tree")
    index_p.add_argument("root", help="Directory to ingest")
    index_p.add_argument("--incremental", action="store_true",
                         help="Only re-extract files whose content changed")
    index_p.add_argument("--cluster", action="store_true",
                         help="Cluster the new generation after ingestion")
    index_p.add_argument("--include-tests", action="store_true",
                         help="Keep test entities in the generation")
    index_p.add_argument("--watch", action="store_true",
                         help="After ingesting, re-ingest incrementally on file changes")
    index_p.set_defaults(func=_cmd_index)

    # --- query ---
    query_p = subparsers.add_parser("query", help="Query the current generation")
    query_p.add_argument("--strategy", default=Strategy.AUTO,
                         choices=[Strategy.AUTO, *Strategy.ALL])
    query_p.add_argument("--where", default=None,
                         help="Predicate, e.g. \"entity_kind = 'function' AND name ~ '^get_'\"")
    query_p.add_argument("--body", action="store_true", help="Include body text")
    query_p.add_argument("--refs", action="store_true", help="Include forward/reverse refs")
    query_p.add_argument("--include-tests", action="store_true")
    query_p.add_argument("--seed", default=None, help="Seed entity id for traversal")
    query_p.add_argument("--direction", default="forward", choices=list(DIRECTIONS))
    query_p.add_argument("--depth", type=int, default=2)
    query_p.add_argument("--edge-kind", action="append", default=[],
                         help="Restrict traversal to this edge kind (repeatable)")
    query_p.add_argument("--cluster", default=None, help="Cluster id or name glob")
    query_p.add_argument("--limit", type=int, default=None)
    query_p.set_defaults(func=_cmd_query)

    # --- cluster ---
    cluster_p = subparsers.add_parser("cluster", help="Cluster the current generation")
    cluster_p.set_defaults(func=_cmd_cluster)

    # --- clusters ---
    clusters_p = subparsers.add_parser("clusters", help="List published clusters")
    clusters_p.add_argument("--name", default=None, help="Glob over cluster id or name")
    clusters_p.add_argument("--entity", default=None, help="Cluster owning this entity id")
    clusters_p.set_defaults(func=_cmd_clusters)

    # --- context ---
    context_p = subparsers.add_parser("context", help="Build a budgeted context pack")
    context_p.add_argument("task", help="Entity id or free-text keywords")
    context_p.add_argument("--budget", type=int, default=8000, help="Token budget")
    context_p.add_argument("--task-type", default=TaskType.EXPLORE, choices=list(TaskType.ALL))
    context_p.set_defaults(func=_cmd_context)

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show store summary")
    status_p.set_defaults(func=_cmd_status)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    """
    Entry point for ``codegraph-kb``.

    Returns the process exit code: 0 on success, 1 when the store is
    unavailable or the run failed, 2 for a bad query, 130 when cancelled.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = Config.load(args.config)
    setup_logger(config.LOG_DIR, verbose=args.verbose)

    try:
        args.func(args, config)
    except QueryError as exc:
        print(f"Invalid query: {exc}", file=sys.stderr)
        return 2
    except StoreUnavailable as exc:
        print(f"Store unavailable: {exc}", file=sys.stderr)
        return 1
    except OperationCancelled:
        print("Cancelled.", file=sys.stderr)
        return 130
    except (CodegraphError, FileNotFoundError) as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
