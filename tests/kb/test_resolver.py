"""
Unit tests for codegraph_kb.resolver and codegraph_kb.cochange
"""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest


class TestResolutionTiers:
    def test_self_qualifier_prefers_own_type(self, entity_factory):
        from codegraph_kb.models import RawReference
        from codegraph_kb.resolver import ReferenceResolver
        caller = entity_factory("run", "app/jobs.py", parent="Job", line_start=3, line_end=6,
                                refs=[("save", "call", "self")])
        own = entity_factory("save", "app/jobs.py", parent="Job", line_start=8, line_end=9)
        other = entity_factory("save", "app/jobs.py", parent="Repo", line_start=12, line_end=13)
        resolver = ReferenceResolver([caller, own, other])
        target = resolver.resolve_reference(caller, RawReference("save", "call", "self"))
        assert target.entity_id == own.entity_id

    def test_same_file_beats_same_module(self, entity_factory):
        from codegraph_kb.models import RawReference
        from codegraph_kb.resolver import ReferenceResolver
        caller = entity_factory("main", "app/a.py")
        local = entity_factory("helper", "app/a.py", line_start=10, line_end=12)
        sibling = entity_factory("helper", "app/b.py")
        resolver = ReferenceResolver([caller, sibling, local])
        assert resolver.resolve_reference(caller, RawReference("helper")).entity_id == local.entity_id

    def test_same_module_beats_public_elsewhere(self, entity_factory):
        from codegraph_kb.models import RawReference
        from codegraph_kb.resolver import ReferenceResolver
        caller = entity_factory("main", "app/a.py")
        sibling = entity_factory("helper", "app/b.py", is_public=False)
        far = entity_factory("helper", "lib/c.py")
        resolver = ReferenceResolver([caller, sibling, far])
        assert resolver.resolve_reference(caller, RawReference("helper")).entity_id == sibling.entity_id

    def test_private_elsewhere_is_not_visible(self, entity_factory):
        from codegraph_kb.models import RawReference
        from codegraph_kb.resolver import ReferenceResolver
        caller = entity_factory("main", "app/a.py")
        hidden = entity_factory("_helper", "lib/c.py", is_public=False)
        resolver = ReferenceResolver([caller, hidden])
        assert resolver.resolve_reference(caller, RawReference("_helper")) is None

    def test_type_references_only_hit_types(self, entity_factory):
        from codegraph_kb.models import RawReference
        from codegraph_kb.resolver import ReferenceResolver
        caller = entity_factory("main", "app/a.py")
        func = entity_factory("User", "app/a.py", line_start=10, line_end=11)
        cls = entity_factory("User", "app/models.py", kind="type")
        resolver = ReferenceResolver([caller, func, cls])
        assert resolver.resolve_reference(caller, RawReference("User", "type")).entity_id == cls.entity_id

    def test_languages_do_not_mix(self, entity_factory):
        from codegraph_kb.models import RawReference
        from codegraph_kb.resolver import ReferenceResolver
        caller = entity_factory("main", "app/a.py")
        go_fn = entity_factory("helper", "app/a.go", language="go")
        resolver = ReferenceResolver([caller, go_fn])
        assert resolver.resolve_reference(caller, RawReference("helper")) is None

    def test_imports_resolve_to_modules(self, entity_factory):
        from codegraph_kb.models import RawReference
        from codegraph_kb.resolver import ReferenceResolver
        caller = entity_factory("main", "app/a.py")
        module = entity_factory("util", "pkg/util.py", kind="module")
        module.qualified_name = "pkg.util"
        resolver = ReferenceResolver([caller, module])
        assert resolver.resolve_reference(caller, RawReference("pkg.util", "import")) is module
        assert resolver.resolve_reference(caller, RawReference("other.util", "import")) is module


class TestResolveAll:
    def test_edges_and_gaps(self, entity_factory):
        from codegraph_kb.resolver import ReferenceResolver
        a = entity_factory("a", "app/x.py", refs=[("b", "call"), ("missing", "call"), ("a", "call"),
                                                  ("b", "call", "self")])
        b = entity_factory("b", "app/x.py", line_start=10, line_end=12)
        edges, gaps = ReferenceResolver([a, b]).resolve_all([a, b])
        assert [(e.from_id, e.to_id, e.edge_kind) for e in edges] == [(a.entity_id, b.entity_id, "calls")]
        assert [(g.from_id, g.name) for g in gaps] == [(a.entity_id, "missing")]

    def test_resolution_is_order_independent(self, entity_factory):
        from codegraph_kb.resolver import ReferenceResolver
        ents = [
            entity_factory("main", "app/a.py", refs=[("helper", "call")]),
            entity_factory("helper", "app/b.py"),
            entity_factory("helper", "app/c.py"),
        ]
        forward, _ = ReferenceResolver(ents).resolve_all(ents)
        backward, _ = ReferenceResolver(list(reversed(ents))).resolve_all(list(reversed(ents)))
        assert forward == backward
        assert forward[0].to_id == ents[1].entity_id


# ---------------------------------------------------------------------------
# Co-change
# ---------------------------------------------------------------------------

class TestCochange:
    def test_parse_git_log(self):
        from codegraph_kb.cochange import parse_git_log
        output = "\x1e\na.py\nb.py\n\n\x1e\nb.py\n\x1e\n"
        assert parse_git_log(output) == [["a.py", "b.py"], ["b.py"]]

    def test_scores_normalised_by_rarer_file(self):
        from codegraph_kb.cochange import cochange_scores
        commits = [["a.py", "b.py"], ["a.py", "b.py"], ["a.py"], ["b.py", "c.py"]]
        scores = cochange_scores(commits)
        assert scores[("a.py", "b.py")] == pytest.approx(2 / 3)
        assert scores[("b.py", "c.py")] == pytest.approx(1.0)
        assert ("a.py", "c.py") not in scores

    def test_large_commits_ignored(self):
        from codegraph_kb.cochange import cochange_scores
        commits = [[f"f{i}.py" for i in range(10)], ["f0.py", "f1.py"]]
        scores = cochange_scores(commits, max_files_per_commit=5)
        assert scores == {("f0.py", "f1.py"): 1.0}

    def test_known_files_filter(self):
        from codegraph_kb.cochange import cochange_scores
        scores = cochange_scores([["a.py", "README.md"]], known_files={"a.py"})
        assert scores == {}

    def test_not_a_work_tree(self, tmp_path):
        from codegraph_kb import cochange
        completed = subprocess.CompletedProcess(args=[], returncode=128, stdout="", stderr="fatal")
        with patch.object(cochange.subprocess, "run", return_value=completed):
            assert cochange.mine_cochange(str(tmp_path)) == {}

    def test_missing_git_binary(self, tmp_path):
        from codegraph_kb import cochange
        with patch.object(cochange.subprocess, "run", side_effect=FileNotFoundError("git")):
            assert cochange.mine_cochange(str(tmp_path)) == {}

    def test_git_timeout_yields_no_scores(self, tmp_path):
        from codegraph_kb import cochange
        hung = subprocess.TimeoutExpired(cmd=["git"], timeout=0.5)
        with patch.object(cochange.subprocess, "run", side_effect=hung) as run:
            assert cochange.mine_cochange(str(tmp_path), timeout=0.5) == {}
        assert run.call_args.kwargs["timeout"] == 0.5

    def test_git_log_timeout_after_work_tree_check(self, tmp_path):
        from codegraph_kb import cochange
        outputs = [
            subprocess.CompletedProcess([], 0, stdout="true\n", stderr=""),
            subprocess.TimeoutExpired(cmd=["git", "log"], timeout=2.0),
        ]
        with patch.object(cochange.subprocess, "run", side_effect=outputs) as run:
            assert cochange.mine_cochange(str(tmp_path), timeout=2.0) == {}
        assert all(c.kwargs["timeout"] == 2.0 for c in run.call_args_list)

    def test_mine_from_log(self, tmp_path):
        from codegraph_kb import cochange
        outputs = [
            subprocess.CompletedProcess([], 0, stdout="true\n", stderr=""),
            subprocess.CompletedProcess([], 0, stdout="\x1e\na.py\nb.py\n\x1e\na.py\nb.py\n", stderr=""),
        ]
        with patch.object(cochange.subprocess, "run", side_effect=outputs) as run:
            scores = cochange.mine_cochange(str(tmp_path), max_commits=10)
        assert scores == {("a.py", "b.py"): 1.0}
        log_args = run.call_args_list[1][0][0]
        assert log_args[:3] == ["git", "-C", str(tmp_path)]
        assert "-n10" in log_args
