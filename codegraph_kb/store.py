"""
Generation-versioned SQLite graph store.

Layout of a store directory::

    <store>/CURRENT                    active generation id
    <store>/generations/<id>.db        one self-contained database per generation
    <store>/staging/<id>.db            generation being written

A :class:`GenerationWriter` fills a staged database inside one transaction;
``commit()`` moves it into ``generations/`` and swaps ``CURRENT`` with
``os.replace``.  A :class:`GenerationReader` holds its own connection to one
generation file, so a later swap (or prune) never changes what it sees.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .cancellation import CancellationToken, check
from .errors import StoreUnavailable
from .models import CodeEntity, DependencyEdge, RawReference, SemanticCluster
from .predicates import TRUE, Compare, Predicate, all_of, register_sql_functions

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS files (
    path          TEXT PRIMARY KEY,
    hash          TEXT NOT NULL,
    language      TEXT NOT NULL DEFAULT '',
    entity_count  INTEGER NOT NULL DEFAULT 0,
    error         TEXT DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS entities (
    entity_id         TEXT PRIMARY KEY,
    entity_kind       TEXT NOT NULL,
    language          TEXT NOT NULL,
    name              TEXT NOT NULL,
    qualified_name    TEXT NOT NULL,
    file_path         TEXT NOT NULL,
    line_start        INTEGER NOT NULL,
    line_end          INTEGER NOT NULL,
    signature         TEXT NOT NULL DEFAULT '',
    body_text         TEXT NOT NULL DEFAULT '',
    is_public         INTEGER NOT NULL DEFAULT 1,
    is_test           INTEGER NOT NULL DEFAULT 0,
    complexity_score  INTEGER DEFAULT NULL,
    parent_name       TEXT DEFAULT NULL,
    token_count       INTEGER NOT NULL DEFAULT 0,
    raw_refs          TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_entities_name     ON entities(name);
CREATE INDEX IF NOT EXISTS idx_entities_file     ON entities(file_path);
CREATE INDEX IF NOT EXISTS idx_entities_kind     ON entities(entity_kind);
CREATE INDEX IF NOT EXISTS idx_entities_language ON entities(language);
CREATE INDEX IF NOT EXISTS idx_entities_test     ON entities(is_test);

CREATE TABLE IF NOT EXISTS edges (
    from_id    TEXT NOT NULL,
    to_id      TEXT NOT NULL,
    edge_kind  TEXT NOT NULL,
    ordinal    INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (from_id, to_id, edge_kind)
) WITHOUT ROWID;

CREATE INDEX IF NOT EXISTS idx_edges_to ON edges(to_id);

CREATE TABLE IF NOT EXISTS cochange (
    file_a  TEXT NOT NULL,
    file_b  TEXT NOT NULL,
    score   REAL NOT NULL,
    PRIMARY KEY (file_a, file_b)
) WITHOUT ROWID;

CREATE TABLE IF NOT EXISTS cluster_runs (
    run_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at  REAL NOT NULL,
    summary     TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS clusters (
    cluster_id               TEXT PRIMARY KEY,
    name                     TEXT NOT NULL,
    cohesion_score           REAL NOT NULL,
    coupling_score           REAL NOT NULL,
    modularity_contribution  REAL NOT NULL,
    token_count              INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS cluster_members (
    cluster_id  TEXT NOT NULL,
    entity_id   TEXT NOT NULL,
    position    INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (cluster_id, entity_id)
) WITHOUT ROWID;

CREATE INDEX IF NOT EXISTS idx_cluster_members_entity ON cluster_members(entity_id);
"""

_META_COLUMNS = (
    "entity_id, entity_kind, language, name, qualified_name, file_path, "
    "line_start, line_end, signature, is_public, is_test, complexity_score, "
    "parent_name, token_count"
)

_CURRENT_FILE = "CURRENT"
_BATCH = 500


def new_generation_id() -> str:
    """Sortable, collision-resistant generation id."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{stamp}-{secrets.token_hex(3)}"


def _chunks(items: list, size: int = _BATCH) -> Iterable[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _open_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    register_sql_functions(conn)
    return conn


# ---------------------------------------------------------------------------
# Store handle
# ---------------------------------------------------------------------------

class GraphStore:
    """
    Explicit handle on a store directory.

    Parameters
    ----------
    path:
        Store directory; created if absent.
    keep_generations:
        How many published generations to keep on disk (>= 1).
    """

    def __init__(self, path: str, keep_generations: int = 3) -> None:
        self.path = os.path.abspath(path)
        self.keep_generations = max(1, int(keep_generations))
        self._generations_dir = os.path.join(self.path, "generations")
        self._staging_dir = os.path.join(self.path, "staging")
        try:
            os.makedirs(self._generations_dir, exist_ok=True)
            os.makedirs(self._staging_dir, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"cannot create store at {self.path}: {e}") from e

    def __repr__(self) -> str:
        return f"GraphStore({self.path!r})"

    # ------------------------------------------------------------------
    # Generation bookkeeping
    # ------------------------------------------------------------------

    def generation_path(self, generation_id: str) -> str:
        return os.path.join(self._generations_dir, f"{generation_id}.db")

    def current_generation(self) -> Optional[str]:
        """Return the active generation id, or None for an empty store."""
        pointer = os.path.join(self.path, _CURRENT_FILE)
        try:
            with open(pointer, "r", encoding="utf-8") as f:
                gen_id = f.read().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailable(f"cannot read {pointer}: {e}") from e
        if gen_id and os.path.isfile(self.generation_path(gen_id)):
            return gen_id
        return None

    def list_generations(self) -> list[str]:
        """Published generation ids, oldest first."""
        try:
            names = os.listdir(self._generations_dir)
        except OSError as e:
            raise StoreUnavailable(f"cannot list generations: {e}") from e
        return sorted(n[:-3] for n in names if n.endswith(".db"))

    def open_reader(self, generation_id: Optional[str] = None) -> "GenerationReader":
        """
        Open a reader pinned to *generation_id* (default: current).

        Raises
        ------
        StoreUnavailable
            If the store holds no such generation or it cannot be opened.
        """
        gen_id = generation_id or self.current_generation()
        if gen_id is None:
            raise StoreUnavailable(f"store {self.path} has no published generation")
        db_path = self.generation_path(gen_id)
        if not os.path.isfile(db_path):
            raise StoreUnavailable(f"generation {gen_id} not found in {self.path}")
        return GenerationReader(db_path, gen_id)

    def begin_generation(self, root_path: str = "", parent: Optional[str] = None) -> "GenerationWriter":
        """Start writing a new staged generation."""
        return GenerationWriter(self, new_generation_id(), root_path, parent)

    def _publish(self, generation_id: str, staged_path: str) -> None:
        """Move a committed staging file into place and swap CURRENT."""
        final_path = self.generation_path(generation_id)
        pointer = os.path.join(self.path, _CURRENT_FILE)
        tmp_pointer = f"{pointer}.{generation_id}.tmp"
        try:
            os.replace(staged_path, final_path)
            with open(tmp_pointer, "w", encoding="utf-8") as f:
                f.write(generation_id)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_pointer, pointer)
        except OSError as e:
            raise StoreUnavailable(f"cannot publish generation {generation_id}: {e}") from e
        logger.info("Published generation %s", generation_id)
        self.prune()

    def prune(self, keep: Optional[int] = None) -> list[str]:
        """Delete the oldest generations beyond *keep*; never the current one."""
        keep = self.keep_generations if keep is None else max(1, keep)
        current = self.current_generation()
        generations = self.list_generations()
        doomed = [g for g in generations[:-keep] if g != current] if len(generations) > keep else []
        removed = []
        for gen_id in doomed:
            base = self.generation_path(gen_id)
            try:
                for suffix in ("", "-wal", "-shm"):
                    if os.path.exists(base + suffix):
                        os.remove(base + suffix)
                removed.append(gen_id)
            except OSError as e:
                logger.warning("Could not prune generation %s: %s", gen_id, e)
        if removed:
            logger.debug("Pruned generations: %s", ", ".join(removed))
        return removed

    # ------------------------------------------------------------------
    # Cluster publication
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self, generation_id: str):
        """Yield a writable connection to a published generation."""
        try:
            conn = _open_connection(self.generation_path(generation_id))
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open generation {generation_id}: {e}") from e
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def publish_clusters(
        self,
        generation_id: str,
        clusters: list[SemanticCluster],
        summary: Optional[dict[str, Any]] = None,
    ) -> None:
        """Replace the cluster set of a generation in a single transaction."""
        try:
            with self._connect(generation_id) as conn:
                conn.execute("DELETE FROM cluster_members")
                conn.execute("DELETE FROM clusters")
                conn.executemany(
                    "INSERT INTO clusters (cluster_id, name, cohesion_score, coupling_score, "
                    "modularity_contribution, token_count) VALUES (?, ?, ?, ?, ?, ?)",
                    [
                        (c.cluster_id, c.name, c.cohesion_score, c.coupling_score,
                         c.modularity_contribution, c.token_count)
                        for c in clusters
                    ],
                )
                conn.executemany(
                    "INSERT INTO cluster_members (cluster_id, entity_id, position) VALUES (?, ?, ?)",
                    [
                        (c.cluster_id, member, pos)
                        for c in clusters
                        for pos, member in enumerate(c.member_ids)
                    ],
                )
                conn.execute(
                    "INSERT INTO cluster_runs (created_at, summary) VALUES (?, ?)",
                    (time.time(), json.dumps(summary or {}, sort_keys=True)),
                )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot publish clusters to {generation_id}: {e}") from e
        logger.info("Published %d clusters to generation %s", len(clusters), generation_id)


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class GenerationWriter:
    """
    Builds one generation inside a single transaction on a staged file.

    Use as a context manager: leaving the block with an exception (or
    without :meth:`commit`) discards the staged generation.
    """

    def __init__(self, store: GraphStore, generation_id: str,
                 root_path: str = "", parent: Optional[str] = None) -> None:
        self.store = store
        self.generation_id = generation_id
        self.root_path = root_path
        self.parent = parent
        self._staged_path = os.path.join(store._staging_dir, f"{generation_id}.db")
        self._ordinals: dict[str, int] = {}
        self._entity_ids: set[str] = set()
        self._edge_keys: set[tuple[str, str, str]] = set()
        self._done = False
        try:
            self._conn = _open_connection(self._staged_path)
            self._conn.isolation_level = None
            self._conn.executescript(_SCHEMA)
            self._conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot stage generation {generation_id}: {e}") from e

    def __enter__(self) -> "GenerationWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._done:
            self.abort()

    def _execute_many(self, sql: str, rows: list[tuple]) -> None:
        try:
            self._conn.executemany(sql, rows)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"write failed in staged generation: {e}") from e

    def add_file(self, path: str, hash_: str, language: str,
                 entity_count: int = 0, error: Optional[str] = None) -> None:
        self._execute_many(
            "INSERT OR REPLACE INTO files (path, hash, language, entity_count, error) "
            "VALUES (?, ?, ?, ?, ?)",
            [(path, hash_, language, entity_count, error)],
        )

    def add_entities(self, entities: Iterable[CodeEntity]) -> int:
        """Insert entities; duplicate ids are skipped.  Returns rows written."""
        rows = []
        for e in entities:
            if e.entity_id in self._entity_ids:
                logger.debug("Duplicate entity id skipped: %s", e.entity_id)
                continue
            self._entity_ids.add(e.entity_id)
            rows.append((
                e.entity_id, e.entity_kind, e.language, e.name, e.qualified_name,
                e.file_path, e.line_start, e.line_end, e.signature, e.body_text,
                int(e.is_public), int(e.is_test), e.complexity_score, e.parent_name,
                e.token_count, json.dumps([r.to_list() for r in e.raw_refs]),
            ))
        self._execute_many(
            "INSERT INTO entities (entity_id, entity_kind, language, name, qualified_name, "
            "file_path, line_start, line_end, signature, body_text, is_public, is_test, "
            "complexity_score, parent_name, token_count, raw_refs) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        return len(rows)

    def add_edges(self, edges: Iterable[DependencyEdge]) -> int:
        """
        Insert edges in forward-reference order.  Self loops, duplicates and
        edges whose endpoints were not added to this generation are dropped.
        """
        rows = []
        for edge in edges:
            key = (edge.from_id, edge.to_id, edge.edge_kind)
            if (edge.from_id == edge.to_id or key in self._edge_keys
                    or edge.from_id not in self._entity_ids
                    or edge.to_id not in self._entity_ids):
                continue
            self._edge_keys.add(key)
            ordinal = self._ordinals.get(edge.from_id, 0)
            self._ordinals[edge.from_id] = ordinal + 1
            rows.append((edge.from_id, edge.to_id, edge.edge_kind, ordinal))
        self._execute_many(
            "INSERT INTO edges (from_id, to_id, edge_kind, ordinal) VALUES (?, ?, ?, ?)",
            rows,
        )
        return len(rows)

    def set_cochange(self, scores: dict[tuple[str, str], float]) -> None:
        self._execute_many(
            "INSERT OR REPLACE INTO cochange (file_a, file_b, score) VALUES (?, ?, ?)",
            [(a, b, s) for (a, b), s in sorted(scores.items())],
        )

    def set_meta(self, key: str, value: Any) -> None:
        self._execute_many(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
            [(key, json.dumps(value))],
        )

    @property
    def entity_count(self) -> int:
        return len(self._entity_ids)

    @property
    def edge_count(self) -> int:
        return len(self._edge_keys)

    def commit(self) -> str:
        """Commit the transaction, publish the generation and return its id."""
        if self._done:
            raise StoreUnavailable(f"generation {self.generation_id} already finished")
        self.set_meta("generation_id", self.generation_id)
        self.set_meta("schema_version", SCHEMA_VERSION)
        self.set_meta("created_at", time.time())
        self.set_meta("root_path", self.root_path)
        self.set_meta("parent", self.parent)
        self.set_meta("entity_count", self.entity_count)
        self.set_meta("edge_count", self.edge_count)
        try:
            self._conn.execute("COMMIT")
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.close()
        except sqlite3.Error as e:
            self.abort()
            raise StoreUnavailable(f"cannot commit generation {self.generation_id}: {e}") from e
        self._done = True
        self.store._publish(self.generation_id, self._staged_path)
        return self.generation_id

    def abort(self) -> None:
        """Discard the staged generation; CURRENT is untouched."""
        if self._done:
            return
        self._done = True
        try:
            self._conn.rollback()
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Error closing staged generation %s: %s", self.generation_id, e)
        for suffix in ("", "-journal", "-wal", "-shm"):
            try:
                os.remove(self._staged_path + suffix)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove staged file %s: %s", self._staged_path + suffix, e)
        logger.info("Discarded staged generation %s", self.generation_id)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

class GenerationReader:
    """
    Read-only view of one generation.

    Entities come back metadata-first: ``body_text`` is only loaded with
    ``include_body=True`` and ``forward_refs``/``reverse_refs`` only with
    ``include_refs=True``.
    """

    def __init__(self, db_path: str, generation_id: str) -> None:
        self.db_path = db_path
        self.generation_id = generation_id
        try:
            self._conn = _open_connection(db_path)
            self._conn.execute("PRAGMA query_only=ON")
            self._conn.execute("SELECT 1 FROM meta LIMIT 1").fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open generation {generation_id}: {e}") from e

    def __enter__(self) -> "GenerationReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"query failed on generation {self.generation_id}: {e}") from e

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @staticmethod
    def _columns(include_body: bool, include_raw: bool = False) -> str:
        cols = _META_COLUMNS + (", body_text" if include_body else "")
        return cols + (", raw_refs" if include_raw else "")

    def _to_entity(self, row: sqlite3.Row, include_body: bool, include_raw: bool = False) -> CodeEntity:
        keys = row.keys()
        return CodeEntity(
            entity_id=row["entity_id"],
            entity_kind=row["entity_kind"],
            language=row["language"],
            name=row["name"],
            qualified_name=row["qualified_name"],
            file_path=row["file_path"],
            line_start=row["line_start"],
            line_end=row["line_end"],
            signature=row["signature"],
            body_text=row["body_text"] if include_body and "body_text" in keys else "",
            is_public=bool(row["is_public"]),
            is_test=bool(row["is_test"]),
            complexity_score=row["complexity_score"],
            parent_name=row["parent_name"],
            token_count=row["token_count"],
            raw_refs=(
                [RawReference.from_list(r) for r in json.loads(row["raw_refs"])]
                if include_raw and "raw_refs" in keys else []
            ),
        )

    def _attach_refs(self, entities: list[CodeEntity]) -> None:
        ids = [e.entity_id for e in entities]
        forward = self.forward_map(ids)
        reverse = self.reverse_map(ids)
        for e in entities:
            e.forward_refs = forward.get(e.entity_id, [])
            e.reverse_refs = reverse.get(e.entity_id, [])

    def get_entity(self, entity_id: str, include_body: bool = False,
                   include_refs: bool = False) -> Optional[CodeEntity]:
        """Primary-key lookup."""
        rows = self._query(
            f"SELECT {self._columns(include_body)} FROM entities WHERE entity_id = ?",
            (entity_id,),
        )
        if not rows:
            return None
        entity = self._to_entity(rows[0], include_body)
        if include_refs:
            self._attach_refs([entity])
        return entity

    def get_entities(self, entity_ids: Iterable[str], include_body: bool = False,
                     include_refs: bool = False) -> list[CodeEntity]:
        """Batch lookup; results follow the input order, unknown ids are skipped."""
        ids = list(dict.fromkeys(entity_ids))
        found: dict[str, CodeEntity] = {}
        for chunk in _chunks(ids):
            for row in self._query(
                f"SELECT {self._columns(include_body)} FROM entities "
                f"WHERE entity_id IN ({_placeholders(len(chunk))})",
                chunk,
            ):
                found[row["entity_id"]] = self._to_entity(row, include_body)
        entities = [found[i] for i in ids if i in found]
        if include_refs:
            self._attach_refs(entities)
        return entities

    def scan(
        self,
        predicate: Optional[Predicate] = None,
        include_body: bool = False,
        include_refs: bool = False,
        include_tests: bool = False,
        limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[CodeEntity]:
        """Return entities matching *predicate*, ordered by ``entity_id``."""
        pred = predicate or TRUE
        if not include_tests:
            pred = all_of([pred, Compare("is_test", "=", False)])
        where, params = pred.to_sql()
        sql = f"SELECT {self._columns(include_body)} FROM entities WHERE {where} ORDER BY entity_id"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + [int(limit)]
        out: list[CodeEntity] = []
        try:
            cursor = self._conn.execute(sql, params)
            for i, row in enumerate(cursor):
                if i % 256 == 0:
                    check(cancel_token)
                out.append(self._to_entity(row, include_body))
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"scan failed on generation {self.generation_id}: {e}") from e
        if include_refs:
            self._attach_refs(out)
        return out

    def match(self, field: str, pattern: str, mode: str = "exact",
              include_body: bool = False, include_tests: bool = False) -> list[CodeEntity]:
        """Single-field lookup: ``mode`` is exact, glob, regex or contains."""
        op = {"exact": "=", "glob": "glob", "regex": "~", "contains": "contains"}.get(mode)
        if op is None:
            raise ValueError(f"unknown match mode {mode!r}")
        return self.scan(Compare(field, op, pattern), include_body=include_body,
                         include_tests=include_tests)

    def iter_all(self, include_body: bool = False, include_raw: bool = False,
                 include_tests: bool = True) -> list[CodeEntity]:
        """Every entity (tests included by default), ordered by id."""
        where = "" if include_tests else "WHERE is_test = 0"
        rows = self._query(
            f"SELECT {self._columns(include_body, include_raw)} FROM entities "
            f"{where} ORDER BY entity_id"
        )
        return [self._to_entity(r, include_body, include_raw) for r in rows]

    def entities_for_files(self, paths: Iterable[str]) -> list[CodeEntity]:
        """Full entities (bodies and raw refs) of the given files."""
        paths = sorted(set(paths))
        out: list[CodeEntity] = []
        for chunk in _chunks(paths):
            rows = self._query(
                f"SELECT {self._columns(True, True)} FROM entities "
                f"WHERE file_path IN ({_placeholders(len(chunk))}) ORDER BY entity_id",
                chunk,
            )
            out.extend(self._to_entity(r, True, True) for r in rows)
        return out

    def test_entity_ids(self) -> set[str]:
        return {r[0] for r in self._query("SELECT entity_id FROM entities WHERE is_test = 1")}

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    @staticmethod
    def _to_edge(row: sqlite3.Row) -> DependencyEdge:
        return DependencyEdge(row["from_id"], row["to_id"], row["edge_kind"])

    def forward_refs(self, entity_id: str) -> list[str]:
        return self.forward_map([entity_id]).get(entity_id, [])

    def reverse_refs(self, entity_id: str) -> list[str]:
        return self.reverse_map([entity_id]).get(entity_id, [])

    def forward_map(self, entity_ids: Iterable[str]) -> dict[str, list[str]]:
        """``{from_id: [to_id, ...]}`` in the order references appear in source."""
        ids = list(dict.fromkeys(entity_ids))
        out: dict[str, list[str]] = {}
        for chunk in _chunks(ids):
            rows = self._query(
                f"SELECT from_id, to_id, MIN(ordinal) AS o FROM edges "
                f"WHERE from_id IN ({_placeholders(len(chunk))}) "
                f"GROUP BY from_id, to_id ORDER BY from_id, o, to_id",
                chunk,
            )
            for r in rows:
                out.setdefault(r["from_id"], []).append(r["to_id"])
        return out

    def reverse_map(self, entity_ids: Iterable[str]) -> dict[str, list[str]]:
        """``{to_id: sorted [from_id, ...]}``."""
        ids = list(dict.fromkeys(entity_ids))
        out: dict[str, list[str]] = {}
        for chunk in _chunks(ids):
            rows = self._query(
                f"SELECT DISTINCT to_id, from_id FROM edges "
                f"WHERE to_id IN ({_placeholders(len(chunk))}) ORDER BY to_id, from_id",
                chunk,
            )
            for r in rows:
                out.setdefault(r["to_id"], []).append(r["from_id"])
        return out

    def all_edges(self) -> list[DependencyEdge]:
        rows = self._query(
            "SELECT from_id, to_id, edge_kind FROM edges ORDER BY from_id, ordinal, to_id, edge_kind"
        )
        return [self._to_edge(r) for r in rows]

    def edges_touching(self, entity_ids: Iterable[str]) -> list[DependencyEdge]:
        """Edges with at least one endpoint in *entity_ids*."""
        ids = list(dict.fromkeys(entity_ids))
        seen: dict[tuple[str, str, str], DependencyEdge] = {}
        for chunk in _chunks(ids):
            ph = _placeholders(len(chunk))
            for r in self._query(
                f"SELECT from_id, to_id, edge_kind FROM edges "
                f"WHERE from_id IN ({ph}) OR to_id IN ({ph})",
                chunk + chunk,
            ):
                seen[(r["from_id"], r["to_id"], r["edge_kind"])] = self._to_edge(r)
        return [seen[k] for k in sorted(seen)]

    def edges_among(self, entity_ids: Iterable[str]) -> list[DependencyEdge]:
        """Edges with both endpoints in *entity_ids*."""
        members = set(entity_ids)
        return [e for e in self.edges_touching(members)
                if e.from_id in members and e.to_id in members]

    def neighbors(self, entity_ids: Iterable[str], direction: str = "forward",
                  edge_kinds: Optional[Iterable[str]] = None) -> dict[str, set[str]]:
        """
        One BFS level: ``{source_id: {neighbor_id, ...}}`` following
        forward (caller → callee), reverse, or both directions.
        """
        ids = list(dict.fromkeys(entity_ids))
        kinds = sorted(set(edge_kinds)) if edge_kinds else None
        out: dict[str, set[str]] = {}
        pairs = []
        if direction in ("forward", "both"):
            pairs.append(("from_id", "to_id"))
        if direction in ("reverse", "both"):
            pairs.append(("to_id", "from_id"))
        if not pairs:
            raise ValueError(f"unknown direction {direction!r}")
        for src_col, dst_col in pairs:
            for chunk in _chunks(ids):
                sql = (f"SELECT {src_col} AS src, {dst_col} AS dst FROM edges "
                       f"WHERE {src_col} IN ({_placeholders(len(chunk))})")
                params: list[Any] = list(chunk)
                if kinds:
                    sql += f" AND edge_kind IN ({_placeholders(len(kinds))})"
                    params.extend(kinds)
                for r in self._query(sql, params):
                    out.setdefault(r["src"], set()).add(r["dst"])
        return out

    def traverse(
        self,
        seed: str,
        direction: str = "forward",
        max_depth: int = 2,
        edge_kinds: Optional[Iterable[str]] = None,
        include_tests: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> tuple[dict[str, int], list[DependencyEdge]]:
        """
        Breadth-first walk from *seed*.

        Returns ``({entity_id: hop}, induced_edges)`` where ``hop`` is the
        depth of first discovery (seed = 0).  No node is visited twice and
        nothing beyond *max_depth* hops is returned.
        """
        if self.get_entity(seed) is None:
            return {}, []
        kinds = set(edge_kinds) if edge_kinds else None
        excluded = set() if include_tests else self.test_entity_ids()
        hops: dict[str, int] = {seed: 0}
        frontier = [seed]
        depth = 0
        while frontier and depth < max_depth:
            check(cancel_token)
            depth += 1
            adjacency = self.neighbors(frontier, direction, kinds)
            next_frontier: list[str] = []
            for node in frontier:
                for nbr in sorted(adjacency.get(node, ())):
                    if nbr in hops or nbr in excluded:
                        continue
                    hops[nbr] = depth
                    next_frontier.append(nbr)
            frontier = next_frontier
        edges = [
            e for e in self.edges_among(hops)
            if kinds is None or e.edge_kind in kinds
        ]
        return hops, edges

    # ------------------------------------------------------------------
    # Files, co-change, clusters, stats
    # ------------------------------------------------------------------

    def files(self) -> dict[str, dict[str, Any]]:
        rows = self._query("SELECT path, hash, language, entity_count, error FROM files ORDER BY path")
        return {
            r["path"]: {
                "hash": r["hash"], "language": r["language"],
                "entity_count": r["entity_count"], "error": r["error"],
            }
            for r in rows
        }

    def file_hashes(self) -> dict[str, str]:
        return {r["path"]: r["hash"] for r in self._query("SELECT path, hash FROM files")}

    def cochange_scores(self) -> dict[tuple[str, str], float]:
        rows = self._query("SELECT file_a, file_b, score FROM cochange")
        return {(r["file_a"], r["file_b"]): r["score"] for r in rows}

    def meta(self) -> dict[str, Any]:
        return {r["key"]: json.loads(r["value"]) for r in self._query("SELECT key, value FROM meta")}

    def _clusters_where(self, where: str = "", params: Iterable[Any] = ()) -> list[SemanticCluster]:
        rows = self._query(
            f"SELECT cluster_id, name, cohesion_score, coupling_score, modularity_contribution, "
            f"token_count FROM clusters {where} ORDER BY cluster_id",
            params,
        )
        if not rows:
            return []
        ids = [r["cluster_id"] for r in rows]
        members: dict[str, list[str]] = {}
        for chunk in _chunks(ids):
            for m in self._query(
                f"SELECT cluster_id, entity_id FROM cluster_members "
                f"WHERE cluster_id IN ({_placeholders(len(chunk))}) ORDER BY cluster_id, position",
                chunk,
            ):
                members.setdefault(m["cluster_id"], []).append(m["entity_id"])
        return [
            SemanticCluster(
                cluster_id=r["cluster_id"],
                name=r["name"],
                member_ids=members.get(r["cluster_id"], []),
                cohesion_score=r["cohesion_score"],
                coupling_score=r["coupling_score"],
                modularity_contribution=r["modularity_contribution"],
                token_count=r["token_count"],
            )
            for r in rows
        ]

    def clusters(self, pattern: Optional[str] = None) -> list[SemanticCluster]:
        """All clusters, or those whose id or name matches the glob *pattern*."""
        if pattern:
            return self._clusters_where("WHERE cluster_id GLOB ? OR name GLOB ?", (pattern, pattern))
        return self._clusters_where()

    def cluster(self, cluster_id: str) -> Optional[SemanticCluster]:
        found = self._clusters_where("WHERE cluster_id = ?", (cluster_id,))
        return found[0] if found else None

    def cluster_of(self, entity_id: str) -> Optional[SemanticCluster]:
        rows = self._query("SELECT cluster_id FROM cluster_members WHERE entity_id = ?", (entity_id,))
        return self.cluster(rows[0]["cluster_id"]) if rows else None

    def cluster_membership(self) -> dict[str, str]:
        """``{entity_id: cluster_id}`` for every clustered entity."""
        return {r["entity_id"]: r["cluster_id"]
                for r in self._query("SELECT entity_id, cluster_id FROM cluster_members")}

    def last_cluster_run(self) -> Optional[dict[str, Any]]:
        rows = self._query("SELECT run_id, created_at, summary FROM cluster_runs "
                           "ORDER BY run_id DESC LIMIT 1")
        if not rows:
            return None
        return {"run_id": rows[0]["run_id"], "created_at": rows[0]["created_at"],
                **json.loads(rows[0]["summary"])}

    def stats(self) -> dict[str, Any]:
        """
        Aggregate counts for the generation.

        Returns
        -------
        dict
            Keys: generation_id, entity_count, edge_count, file_count,
            cluster_count, kinds, languages, edge_kinds, test_entities.
        """
        kinds = {r[0]: r[1] for r in self._query(
            "SELECT entity_kind, COUNT(*) FROM entities GROUP BY entity_kind")}
        languages = {r[0]: r[1] for r in self._query(
            "SELECT language, COUNT(*) FROM entities GROUP BY language")}
        edge_kinds = {r[0]: r[1] for r in self._query(
            "SELECT edge_kind, COUNT(*) FROM edges GROUP BY edge_kind")}
        return {
            "generation_id": self.generation_id,
            "entity_count": sum(kinds.values()),
            "edge_count": sum(edge_kinds.values()),
            "file_count": self._query("SELECT COUNT(*) FROM files")[0][0],
            "cluster_count": self._query("SELECT COUNT(*) FROM clusters")[0][0],
            "test_entities": self._query("SELECT COUNT(*) FROM entities WHERE is_test = 1")[0][0],
            "kinds": kinds,
            "languages": languages,
            "edge_kinds": edge_kinds,
        }
