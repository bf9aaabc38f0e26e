"""
Tests for codegraph_kb.ingest

Directory walking needs no grammar; the pipeline tests need
``tree_sitter_python``.
"""

from __future__ import annotations

import os

import pytest


def _project(n_good: int = 9, broken: bool = True) -> dict[str, str]:
    files = {
        "app/core.py": """\
            def helper(x):
                return x * 2


            class Service:
                def run(self, value):
                    return helper(value)
            """,
    }
    for i in range(1, n_good):
        files[f"app/mod{i}.py"] = f"""\
            from app.core import helper


            def step{i}(v):
                return helper(v) + {i}
            """
    if broken:
        files["app/broken.py"] = """\
            def fine():
                return 1


            def broken(:
                pass
            """
    return files


def _snapshot(store):
    with store.open_reader() as reader:
        entities = [
            e.to_dict(include_body=True) | {"raw": [r.to_list() for r in e.raw_refs]}
            for e in reader.iter_all(include_body=True, include_raw=True)
        ]
        edges = [e.to_dict() for e in reader.all_edges()]
        files = reader.files()
    return entities, edges, files


# ---------------------------------------------------------------------------
# Walking
# ---------------------------------------------------------------------------

class TestWalkSourceFiles:
    def test_skips_vendor_hidden_and_unsupported(self, write_tree):
        from codegraph_kb.ingest import walk_source_files
        root = write_tree({
            "a.py": "x = 1\n",
            "README.md": "# hi\n",
            "node_modules/lib/index.js": "module.exports = 1;\n",
            ".hidden/secret.py": "x = 1\n",
            "pkg/b.go": "package pkg\n",
            "__pycache__/a.py": "x = 1\n",
        })
        assert walk_source_files(root) == ["a.py", "pkg/b.go"]

    def test_respects_gitignore(self, write_tree):
        from codegraph_kb.ingest import walk_source_files
        root = write_tree({
            ".gitignore": "generated/\n*_pb2.py\n# comment\n",
            "a.py": "x = 1\n",
            "generated/out.py": "x = 1\n",
            "api_pb2.py": "x = 1\n",
        })
        assert walk_source_files(root) == ["a.py"]

    def test_shebang_scripts_included(self, write_tree):
        from codegraph_kb.ingest import walk_source_files
        root = write_tree({
            "scripts/tool": "#!/usr/bin/env python3\nprint('hi')\n",
            "scripts/notes": "just text\n",
        })
        assert walk_source_files(root) == ["scripts/tool"]

    def test_is_ignored_matches_name_or_path(self):
        from codegraph_kb.ingest import is_ignored
        assert is_ignored("a/b/c.log", ["*.log"])
        assert is_ignored("build/x.py", ["build"])
        assert not is_ignored("src/x.py", ["build"])


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestIngestor:
    def test_partial_success_with_one_broken_file(self, store, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.ingest import Ingestor
        root = write_tree(_project())
        report = Ingestor(store, no_cochange_config).ingest(root)
        assert report.files_scanned == 10
        assert report.files_with_errors == 1
        assert report.errors[0]["file"] == "app/broken.py"
        assert report.entities_created > 0
        assert report.generation_id == store.current_generation()
        with store.open_reader() as reader:
            names = {e.name for e in reader.scan()}
            assert "fine" in names
            assert reader.files()["app/broken.py"]["error"]

    def test_references_resolved_across_files(self, store, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.ingest import Ingestor
        root = write_tree(_project(broken=False))
        Ingestor(store, no_cochange_config).ingest(root)
        with store.open_reader() as reader:
            helper = reader.match("name", "helper")[0]
            callers = {reader.get_entity(i).name for i in reader.reverse_refs(helper.entity_id)}
        assert {"run", "step1", "step8"} <= callers

    def test_idempotent(self, tmp_path, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.ingest import Ingestor
        from codegraph_kb.store import GraphStore
        root = write_tree(_project())
        store = GraphStore(str(tmp_path / "store"))
        ingestor = Ingestor(store, no_cochange_config)
        ingestor.ingest(root)
        first = _snapshot(store)
        ingestor.ingest(root)
        assert _snapshot(store) == first
        assert len(store.list_generations()) == 2

    def test_incremental_equals_full(self, tmp_path, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.ingest import Ingestor
        from codegraph_kb.store import GraphStore
        root = write_tree(_project())
        inc_store = GraphStore(str(tmp_path / "inc"))
        Ingestor(inc_store, no_cochange_config).ingest(root)

        write_tree({
            "app/mod1.py": """\
                from app.core import helper


                def step1(v):
                    return helper(v) - 1


                def extra():
                    return step1(3)
                """,
        })
        os.remove(os.path.join(root, "app", "mod2.py"))

        report = Ingestor(inc_store, no_cochange_config).ingest(root, incremental=True)
        assert report.files_reused == 8
        full_store = GraphStore(str(tmp_path / "full"))
        Ingestor(full_store, no_cochange_config).ingest(root)
        assert _snapshot(inc_store) == _snapshot(full_store)
        with inc_store.open_reader() as reader:
            assert reader.match("name", "step2") == []
            assert len(reader.match("name", "extra")) == 1

    def test_cancellation_keeps_previous_generation(self, store, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.cancellation import CancellationToken
        from codegraph_kb.errors import OperationCancelled
        from codegraph_kb.ingest import Ingestor
        root = write_tree(_project())
        ingestor = Ingestor(store, no_cochange_config)
        first = ingestor.ingest(root).generation_id

        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            ingestor.ingest(root, cancel_token=token)
        assert store.current_generation() == first
        assert store.list_generations() == [first]
        assert os.listdir(os.path.join(store.path, "staging")) == []

    def test_expired_timeout_cancels(self, store, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.cancellation import CancellationToken
        from codegraph_kb.errors import OperationCancelled
        from codegraph_kb.ingest import Ingestor
        root = write_tree(_project())
        with pytest.raises(OperationCancelled):
            Ingestor(store, no_cochange_config).ingest(root, cancel_token=CancellationToken(timeout=0))
        assert store.current_generation() is None

    def test_test_entities_excluded_by_default(self, store, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.ingest import Ingestor
        files = _project(broken=False)
        files["tests/test_core.py"] = """\
            from app.core import helper


            def test_helper():
                assert helper(2) == 4
            """
        root = write_tree(files)
        report = Ingestor(store, no_cochange_config).ingest(root)
        assert report.entities_excluded >= 2
        with store.open_reader() as reader:
            assert reader.stats()["test_entities"] == 0
            assert reader.match("name", "test_helper", include_tests=True) == []
            helper = reader.match("name", "helper")[0]
            assert all(not reader.get_entity(i).is_test
                       for i in reader.reverse_refs(helper.entity_id))

    def test_include_tests_override(self, store, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.ingest import Ingestor
        files = _project(broken=False)
        files["tests/test_core.py"] = "def test_helper():\n    assert True\n"
        root = write_tree(files)
        report = Ingestor(store, no_cochange_config).ingest(root, include_tests=True)
        assert report.entities_excluded == 0
        with store.open_reader() as reader:
            hits = reader.match("name", "test_helper", include_tests=True)
            assert len(hits) == 1 and hits[0].is_test

    def test_progress_callback(self, store, write_tree, no_cochange_config):
        pytest.importorskip("tree_sitter_python")
        from codegraph_kb.ingest import Ingestor
        root = write_tree(_project(n_good=4, broken=False))
        calls = []
        Ingestor(store, no_cochange_config).ingest(
            root, progress_callback=lambda cur, total, name: calls.append((cur, total, name)))
        assert [c[0] for c in calls] == [1, 2, 3, 4]
        assert {c[1] for c in calls} == {4}
        assert {c[2] for c in calls} == {"app/core.py", "app/mod1.py", "app/mod2.py", "app/mod3.py"}

    def test_missing_root(self, store, tmp_path, no_cochange_config):
        from codegraph_kb.ingest import Ingestor
        with pytest.raises(FileNotFoundError):
            Ingestor(store, no_cochange_config).ingest(str(tmp_path / "nope"))

    def test_cochange_mined_when_enabled(self, store, write_tree):
        pytest.importorskip("tree_sitter_python")
        from unittest.mock import patch
        from codegraph_kb.config import Config
        from codegraph_kb.ingest import Ingestor
        root = write_tree(_project(n_good=3, broken=False))
        scores = {("app/core.py", "app/mod1.py"): 0.5}
        with patch("codegraph_kb.ingest.mine_cochange", return_value=scores) as mined:
            Ingestor(store, Config()).ingest(root)
        assert mined.call_args.kwargs["known_files"] == {"app/core.py", "app/mod1.py", "app/mod2.py"}
        with store.open_reader() as reader:
            assert reader.cochange_scores() == scores
        assert mined.call_args.kwargs["timeout"] == 30.0

    def test_git_timeout_capped_by_cancel_deadline(self, store, write_tree):
        pytest.importorskip("tree_sitter_python")
        from unittest.mock import patch
        from codegraph_kb.cancellation import CancellationToken
        from codegraph_kb.config import Config
        from codegraph_kb.ingest import Ingestor
        root = write_tree(_project(n_good=2, broken=False))
        with patch("codegraph_kb.ingest.mine_cochange", return_value={}) as mined:
            Ingestor(store, Config()).ingest(root, cancel_token=CancellationToken(timeout=5))
        assert 0 < mined.call_args.kwargs["timeout"] <= 5
