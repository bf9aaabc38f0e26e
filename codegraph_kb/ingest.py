"""
Ingestion pipeline: source tree → new store generation.

1. Walk the root (skipping build/vendor directories and .gitignore matches)
2. Extract entities from every supported file on a thread pool
3. Reuse unchanged files from the previous generation (incremental mode)
4. Resolve raw references over the full entity set
5. Mine co-change scores from git history
6. Write everything in one staged transaction and swap CURRENT
"""

from __future__ import annotations

import fnmatch
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from .cancellation import CancellationToken, check
from .cochange import mine_cochange
from .complexity import ComplexityScorer
from .config import Config
from .errors import OperationCancelled, ParseError
from .extractor import ExtractorRegistry, compute_hash, extractor_class_for
from .models import CodeEntity, IngestionReport
from .resolver import ReferenceResolver
from .store import GraphStore
from .test_detector import TestDetector

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

# ---------------------------------------------------------------------------
# Directory / file exclusion rules
# ---------------------------------------------------------------------------

SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    ".git", "vendor", ".codegraph_kb",
    ".venv", "venv", "env",
    ".tox", ".mypy_cache", ".pytest_cache",
    "target",
    "bin", "obj",
    "coverage",
    ".next", ".nuxt",
    "out", ".output",
    "eggs", ".eggs",
    ".cache",
})


def load_gitignore_patterns(root: str) -> list[str]:
    """Read ``.gitignore`` from *root* and return its glob patterns."""
    gi_path = os.path.join(root, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    with open(gi_path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if line and not line.startswith("#") and not line.startswith("!"):
                patterns.append(line.rstrip("/").lstrip("/"))
    return patterns


def is_ignored(rel_path: str, patterns: list[str]) -> bool:
    """Return True if *rel_path* (POSIX, relative) matches a gitignore pattern."""
    name = rel_path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatch(name, p) or fnmatch.fnmatch(rel_path, p) for p in patterns
    )


def walk_source_files(root: str) -> list[str]:
    """
    Return POSIX paths (relative to *root*) of every file an extractor
    accepts, in sorted order.  Extension-less files are kept when their
    shebang names a supported interpreter.
    """
    patterns = load_gitignore_patterns(root)
    results: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root, topdown=True):
        rel_dir = os.path.relpath(dirpath, root).replace(os.sep, "/")
        rel_dir = "" if rel_dir == "." else rel_dir
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in SKIP_DIRS
            and not d.startswith(".")
            and not is_ignored(f"{rel_dir}/{d}" if rel_dir else d, patterns)
        )
        for fname in sorted(filenames):
            rel_path = f"{rel_dir}/{fname}" if rel_dir else fname
            if is_ignored(rel_path, patterns):
                continue
            head = b""
            if not os.path.splitext(fname)[1]:
                try:
                    with open(os.path.join(dirpath, fname), "rb") as fh:
                        head = fh.read(256)
                except OSError:
                    continue
            if extractor_class_for(rel_path, head) is not None:
                results.append(rel_path)
    return sorted(results)


# ---------------------------------------------------------------------------
# Per-file work
# ---------------------------------------------------------------------------

@dataclass
class _FileOutcome:
    path: str
    hash: str = ""
    language: str = ""
    entities: list[CodeEntity] = field(default_factory=list)
    error: Optional[str] = None
    reused: bool = False


class Ingestor:
    """
    Builds store generations from a source tree.

    Parameters
    ----------
    store:
        Target :class:`~codegraph_kb.store.GraphStore`.
    config:
        Settings; defaults are used when omitted.
    complexity_scorer:
        Optional override of the per-function complexity metric.
    """

    def __init__(
        self,
        store: GraphStore,
        config: Optional[Config] = None,
        complexity_scorer: Optional[ComplexityScorer] = None,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.registry = ExtractorRegistry(
            detector=TestDetector(self.config.TEST_PATH_PATTERNS),
            complexity_scorer=complexity_scorer,
        )

    def _extract_file(
        self,
        root: str,
        rel_path: str,
        previous_hashes: dict[str, str],
        cancel_token: Optional[CancellationToken],
    ) -> _FileOutcome:
        check(cancel_token)
        outcome = _FileOutcome(path=rel_path)
        try:
            with open(os.path.join(root, rel_path), "rb") as fh:
                source = fh.read()
        except OSError as e:
            outcome.error = f"cannot read file: {e}"
            return outcome
        outcome.hash = compute_hash(source)
        if previous_hashes.get(rel_path) == outcome.hash:
            outcome.reused = True
            return outcome
        try:
            result = self.registry.extract(source, rel_path)
        except ParseError as e:
            outcome.error = e.message
            partial = e.partial
            if partial is not None:
                outcome.language = partial.language
                outcome.entities = list(partial.entities)
            logger.warning("Parse error in %s: %s", rel_path, e)
            return outcome
        outcome.language = result.language
        outcome.entities = result.entities
        return outcome

    def ingest(
        self,
        root_path: str,
        incremental: bool = False,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
        include_tests: Optional[bool] = None,
    ) -> IngestionReport:
        """
        Ingest *root_path* into a new generation and make it current.

        Parameters
        ----------
        root_path:
            Directory to ingest.
        incremental:
            Re-extract only files whose content hash changed since the
            current generation; the result is identical to a full run.
        cancel_token:
            Checked between files and before publishing.  On cancellation
            the staged generation is discarded and the current one is kept.
        progress_callback:
            Called with ``(current, total, file_path)`` as files complete.
        include_tests:
            Override ``config.INCLUDE_TESTS``.

        Raises
        ------
        StoreUnavailable
            If the store cannot be read or written.
        OperationCancelled
            If *cancel_token* fires.
        """
        start = time.time()
        root = os.path.abspath(root_path)
        if not os.path.isdir(root):
            raise FileNotFoundError(f"not a directory: {root_path}")
        keep_tests = self.config.INCLUDE_TESTS if include_tests is None else include_tests
        report = IngestionReport()

        files = walk_source_files(root)
        report.files_scanned = len(files)
        logger.info("Ingesting %s: %d source files (incremental=%s)", root, len(files), incremental)

        parent = self.store.current_generation()
        previous = self.store.open_reader(parent) if incremental and parent else None
        try:
            previous_hashes: dict[str, str] = {}
            previous_files: dict[str, dict] = {}
            if previous is not None:
                if previous.meta().get("include_tests", False) == keep_tests:
                    previous_hashes = previous.file_hashes()
                    previous_files = previous.files()
                else:
                    logger.info("Test inclusion changed since %s; re-extracting all files", parent)

            with self.store.begin_generation(root, parent=parent) as writer:
                outcomes = self._run_extraction(root, files, previous_hashes,
                                                cancel_token, progress_callback)

                reused = sorted(o.path for o in outcomes.values() if o.reused)
                if reused:
                    by_file: dict[str, list[CodeEntity]] = {}
                    for entity in previous.entities_for_files(reused):
                        by_file.setdefault(entity.file_path, []).append(entity)
                    for path in reused:
                        outcome = outcomes[path]
                        outcome.entities = by_file.get(path, [])
                        outcome.language = previous_files[path]["language"]
                        outcome.error = previous_files[path]["error"]
                    report.files_reused = len(reused)

                kept: list[CodeEntity] = []
                for path in files:
                    outcome = outcomes[path]
                    if outcome.error:
                        report.record_error(path, outcome.error)
                    file_kept = [e for e in outcome.entities if keep_tests or not e.is_test]
                    report.entities_excluded += len(outcome.entities) - len(file_kept)
                    kept.extend(file_kept)
                    writer.add_file(path, outcome.hash, outcome.language or "unknown",
                                    len(file_kept), outcome.error)

                check(cancel_token)
                resolver = ReferenceResolver(kept)
                edges, gaps = resolver.resolve_all(kept)
                report.references_unresolved = len(gaps)

                report.entities_created = writer.add_entities(
                    sorted(kept, key=lambda e: e.entity_id))
                report.edges_created = writer.add_edges(edges)

                if self.config.COCHANGE_ENABLED:
                    git_timeout = float(self.config.COCHANGE_TIMEOUT)
                    left = cancel_token.remaining() if cancel_token is not None else None
                    if left is not None:
                        git_timeout = min(git_timeout, left)
                    writer.set_cochange(mine_cochange(
                        root,
                        max_commits=self.config.COCHANGE_MAX_COMMITS,
                        max_files_per_commit=self.config.COCHANGE_MAX_FILES_PER_COMMIT,
                        known_files=set(files),
                        timeout=git_timeout,
                    ))
                writer.set_meta("include_tests", keep_tests)
                writer.set_meta("incremental", incremental)

                check(cancel_token)
                report.generation_id = writer.commit()
        except OperationCancelled:
            logger.info("Ingestion of %s cancelled; generation %s kept", root, parent)
            raise
        finally:
            if previous is not None:
                previous.close()

        report.duration_ms = (time.time() - start) * 1000.0
        logger.info(
            "Ingestion complete: %d entities (%d excluded), %d edges, %d unresolved refs, "
            "%d file errors, %d files reused in %.1fms",
            report.entities_created, report.entities_excluded, report.edges_created,
            report.references_unresolved, report.files_with_errors, report.files_reused,
            report.duration_ms,
        )
        return report

    def _run_extraction(
        self,
        root: str,
        files: list[str],
        previous_hashes: dict[str, str],
        cancel_token: Optional[CancellationToken],
        progress_callback: Optional[ProgressCallback],
    ) -> dict[str, _FileOutcome]:
        outcomes: dict[str, _FileOutcome] = {}
        total = len(files)
        workers = max(1, int(self.config.MAX_WORKERS))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._extract_file, root, path, previous_hashes, cancel_token): path
                for path in files
            }
            try:
                for done, future in enumerate(as_completed(futures), start=1):
                    outcome = future.result()
                    outcomes[outcome.path] = outcome
                    if progress_callback:
                        progress_callback(done, total, outcome.path)
                    check(cancel_token)
            except BaseException:
                pool.shutdown(wait=True, cancel_futures=True)
                raise
        return outcomes
