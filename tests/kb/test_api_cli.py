"""
Tests for codegraph_kb.api, codegraph_kb.cli, codegraph_kb.watcher and
codegraph_kb.log_setup
"""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

import pytest

WORDS = {
    "auth": ["login", "logout", "token", "session", "verify"],
    "bill": ["invoice", "charge", "refund", "ledger", "receipt"],
}


@pytest.fixture()
def populated(store, entity_factory, generation_builder):
    """Two dense five-function modules joined by one call; returns the store."""
    ents, edges = [], []
    for prefix, words in WORDS.items():
        group = [
            entity_factory(f"{prefix}_{w}", f"{prefix}/svc.py", line_start=i * 10 + 1,
                           line_end=i * 10 + 8, tokens=200)
            for i, w in enumerate(words)
        ]
        edges += [(a.entity_id, b.entity_id) for i, a in enumerate(group) for b in group[i + 1:]]
        ents += group
    edges.append((ents[0].entity_id, ents[5].entity_id))
    generation_builder(store, ents, edges)
    store.entities = {e.name: e for e in ents}
    return store


@pytest.fixture()
def cli_env(tmp_path, monkeypatch):
    """Run the CLI from an empty directory with logs and git mining contained."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CODEGRAPH_KB_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("CODEGRAPH_KB_COCHANGE_ENABLED", "0")
    yield tmp_path
    for handler in list(logging.getLogger("codegraph_kb").handlers):
        logging.getLogger("codegraph_kb").removeHandler(handler)
        handler.close()


def _run_cli(capsys, *argv):
    from codegraph_kb.cli import main
    code = main(list(argv))
    out, err = capsys.readouterr()
    return code, (json.loads(out) if out.strip() else None), err


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

class TestApi:
    def test_status_of_empty_store(self, tmp_path):
        from codegraph_kb.api import store_status
        status = store_status(str(tmp_path / "fresh"))
        assert status["current_generation"] is None
        assert status["generations"] == []

    def test_status_of_populated_store(self, populated):
        from codegraph_kb.api import store_status
        status = store_status(populated.path)
        assert status["current_generation"] == populated.current_generation()
        assert status["entity_count"] == 10
        assert status["graph"]["edge_count"] == 21
        assert status["last_cluster_run"] is None

    def test_run_query(self, populated):
        from codegraph_kb.api import run_query
        hits = run_query(populated.path, predicate="name glob 'auth_*' AND is_public = true")
        assert len(hits) == 5
        assert {h["file_path"] for h in hits} == {"auth/svc.py"}
        assert run_query(populated.path, predicate="name = 'nothing'") == []

    def test_run_query_traversal(self, populated):
        from codegraph_kb.api import run_query
        seed = populated.entities["auth_login"].entity_id
        hits = run_query(populated.path, seed=seed, max_depth=1)
        assert {h["name"] for h in hits} == {
            "auth_login", "auth_logout", "auth_token", "auth_session", "auth_verify", "bill_invoice",
        }
        assert all("hop" in h for h in hits)

    def test_query_error_propagates(self, populated):
        from codegraph_kb.api import run_query
        from codegraph_kb.errors import QueryError
        with pytest.raises(QueryError):
            run_query(populated.path, strategy="metadata", predicate="body_text contains 'x'")

    def test_blast_radius(self, populated):
        from codegraph_kb.api import blast_radius
        target = populated.entities["bill_invoice"].entity_id
        out = blast_radius(populated.path, target, max_depth=1)
        assert {e["name"] for e in out["entities"]} == {"bill_invoice", "auth_login"}
        assert out["edges"] == [{"from_id": populated.entities["auth_login"].entity_id,
                                 "to_id": target, "edge_kind": "calls"}]
        assert blast_radius(populated.path, "python:function:nope:x_py:1-2")["is_miss"] is True

    def test_build_and_query_clusters(self, populated):
        from codegraph_kb.api import build_clusters, query_clusters, store_status
        summary = build_clusters(populated.path)
        assert summary["cluster_count"] == 2
        assert [c["name"] for c in query_clusters(populated.path)] == ["auth_unit", "bill_unit"]
        assert [c["cluster_id"] for c in query_clusters(populated.path, pattern="bill*")] == ["cluster_002"]
        owner = query_clusters(populated.path, entity_id=populated.entities["auth_token"].entity_id)
        assert [c["cluster_id"] for c in owner] == ["cluster_001"]
        assert store_status(populated.path)["last_cluster_run"]["cluster_count"] == 2

    def test_build_context_pack(self, populated):
        from codegraph_kb.api import build_clusters, build_context_pack
        build_clusters(populated.path)
        pack = build_context_pack(populated.path, populated.entities["auth_login"].entity_id,
                                  token_budget=1200, task_type="bugfix")
        assert pack["generation_id"] == populated.current_generation()
        assert pack["task"] == populated.entities["auth_login"].entity_id
        assert [i["unit_id"] for i in pack["items"]] == ["cluster_001"]
        assert pack["total_tokens"] == 1000
        assert pack["exclusions"] == [{"unit_id": "cluster_002", "reason": "over_budget",
                                       "token_count": 1000, "relevance": pytest.approx(0.14)}]

    def test_ingest_directory_with_recluster(self, tmp_path, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.api import ingest_directory
        root = write_tree({"app/core.py": "def helper():\n    return 1\n\n\ndef main():\n    return helper()\n"})
        out = ingest_directory(root, str(tmp_path / "store"), config=no_cochange_config, recluster=True)
        assert out["entities_created"] == 3
        assert out["edges_created"] >= 1
        assert out["clustering"]["generation_id"] == out["generation_id"]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestCli:
    def test_status_on_empty_store(self, cli_env, capsys):
        code, out, _ = _run_cli(capsys, "--store", str(cli_env / "store"), "status")
        assert code == 0
        assert out["current_generation"] is None

    def test_query_without_generation(self, cli_env, capsys):
        code, out, err = _run_cli(capsys, "--store", str(cli_env / "store"), "query", "--where", "name = x")
        assert code == 1
        assert out is None
        assert "Store unavailable" in err

    def test_bad_predicate_exit_code(self, cli_env, capsys, populated):
        code, out, err = _run_cli(capsys, "--store", populated.path, "query", "--where", "name = = x")
        assert code == 2
        assert "Invalid query" in err

    def test_query_json(self, cli_env, capsys, populated):
        code, out, _ = _run_cli(capsys, "--store", populated.path, "query",
                                "--where", "name glob 'bill_*'", "--limit", "2")
        assert code == 0
        assert out["strategy"] == "metadata"
        assert len(out["entities"]) == 2
        assert out["is_miss"] is False

    def test_traversal_json(self, cli_env, capsys, populated):
        seed = populated.entities["bill_invoice"].entity_id
        code, out, _ = _run_cli(capsys, "--store", populated.path, "query", "--seed", seed,
                                "--direction", "reverse", "--depth", "1", "--edge-kind", "calls")
        assert code == 0
        assert out["strategy"] == "traversal"
        assert {e["name"] for e in out["entities"]} == {"bill_invoice", "auth_login"}
        assert len(out["edges"]) == 1

    def test_cluster_clusters_and_context(self, cli_env, capsys, populated):
        code, out, _ = _run_cli(capsys, "--store", populated.path, "cluster")
        assert code == 0 and out["cluster_count"] == 2
        code, out, _ = _run_cli(capsys, "--store", populated.path, "clusters", "--name", "auth*")
        assert code == 0 and [c["cluster_id"] for c in out] == ["cluster_001"]
        code, out, _ = _run_cli(capsys, "--store", populated.path, "context", "invoice refund",
                                "--budget", "5000", "--task-type", "feature")
        assert code == 0
        assert out["focus_matched_by"] == "keywords"
        assert out["total_tokens"] <= 5000

    def test_bad_task_type_rejected_by_argparse(self, cli_env, populated):
        from codegraph_kb.cli import main
        with pytest.raises(SystemExit):
            main(["--store", populated.path, "context", "x", "--task-type", "deploy"])

    def test_logs_written_to_configured_dir(self, cli_env, capsys):
        _run_cli(capsys, "--store", str(cli_env / "store"), "status")
        assert list((cli_env / "logs").glob("codegraph_*.log"))

    def test_index_end_to_end(self, cli_env, capsys, write_tree):
        pytest.importorskip("tree_sitter_python")
        root = write_tree({"pkg/a.py": "def a():\n    return b()\n\n\ndef b():\n    return 1\n"})
        store_path = str(cli_env / "store")
        code, out, _ = _run_cli(capsys, "-q", "--store", store_path, "index", root)
        assert code == 0
        assert out["files_scanned"] == 1
        code, out, _ = _run_cli(capsys, "--store", store_path, "index", root, "--incremental")
        assert out["files_reused"] == 1
        code, out, _ = _run_cli(capsys, "--store", store_path, "query", "--where", "name = 'b'", "--refs")
        assert out["entities"][0]["reverse_refs"]

    def test_index_missing_root(self, cli_env, capsys):
        code, _, err = _run_cli(capsys, "-q", "--store", str(cli_env / "store"), "index",
                                str(cli_env / "missing"))
        assert code == 1
        assert "not a directory" in err


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class TestWatcherHandler:
    def _handler(self, tmp_path, **kwargs):
        from codegraph_kb.watcher import KBFileHandler
        ingestor = MagicMock()
        handler = KBFileHandler(ingestor, str(tmp_path), debounce_seconds=60, **kwargs)
        return handler, ingestor

    @pytest.mark.parametrize("path,ignored", [
        ("pkg/a.py", False),
        ("web/app.ts", False),
        ("README.md", True),
        ("node_modules/x/index.js", True),
        (".git/HEAD", True),
        ("bin_scripts/tool", False),
    ])
    def test_should_ignore(self, tmp_path, path, ignored):
        handler, _ = self._handler(tmp_path)
        assert handler.should_ignore(path) is ignored

    def test_events_batch_into_one_run(self, tmp_path):
        from watchdog.events import FileDeletedEvent, FileModifiedEvent, FileMovedEvent
        updates = []
        handler, ingestor = self._handler(tmp_path, on_update=updates.append)
        ingestor.ingest.return_value = MagicMock(generation_id="g1")
        try:
            handler.on_modified(FileModifiedEvent(str(tmp_path / "pkg" / "a.py")))
            handler.on_deleted(FileDeletedEvent(str(tmp_path / "pkg" / "b.py")))
            handler.on_moved(FileMovedEvent(str(tmp_path / "c.py"), str(tmp_path / "d.py")))
            handler.on_modified(FileModifiedEvent(str(tmp_path / "notes.txt")))
            assert handler.pending == {"pkg/a.py", "pkg/b.py", "c.py", "d.py"}
            report = handler.flush()
        finally:
            handler.cancel()
        ingestor.ingest.assert_called_once_with(str(tmp_path), incremental=True)
        assert report.generation_id == "g1"
        assert updates == [report]
        assert handler.pending == set()
        assert handler.flush() is None

    def test_failed_run_is_logged_not_raised(self, tmp_path, caplog):
        from watchdog.events import FileModifiedEvent
        from codegraph_kb.errors import StoreUnavailable
        handler, ingestor = self._handler(tmp_path)
        ingestor.ingest.side_effect = StoreUnavailable("disk full")
        handler.on_modified(FileModifiedEvent(str(tmp_path / "a.py")))
        handler.cancel()
        with caplog.at_level(logging.WARNING, logger="codegraph_kb.watcher"):
            assert handler.flush() is None
        assert "disk full" in caplog.text

    def test_paths_outside_root_ignored(self, tmp_path):
        from watchdog.events import FileModifiedEvent
        handler, _ = self._handler(tmp_path / "root")
        handler.on_modified(FileModifiedEvent(str(tmp_path / "elsewhere.py")))
        assert handler.pending == set()


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

class TestLogSetup:
    def test_file_and_console_handlers(self, tmp_path):
        from codegraph_kb.log_setup import setup_logger
        logger = setup_logger(str(tmp_path / "logs"))
        try:
            assert [type(h) for h in logger.handlers] == [logging.FileHandler]
            logger = setup_logger(str(tmp_path / "logs"), verbose=True)
            assert [type(h) for h in logger.handlers] == [logging.FileHandler, logging.StreamHandler]
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
