"""
Unit tests for codegraph_kb.context
"""

from __future__ import annotations

import pytest


@pytest.fixture()
def config_loader(store, entity_factory, generation_builder):
    """
    ::

        main (200) ──► parse_config (100) ──► read_file (200)
        reload (250) ─┘        │
        test_parse (test) ─────┤
                               └──► validate (300) ──► schema_a (200), schema_b (200)

    validate, schema_a and schema_b form ``cluster_001`` (700 tokens);
    ``ping`` is unconnected.
    """
    def build(cochange=None):
        ents = {
            "parse_config": entity_factory("parse_config", "cfg/parser.py", tokens=100),
            "read_file": entity_factory("read_file", "io/files.py", tokens=200),
            "validate": entity_factory("validate", "cfg/schema.py", line_start=1, line_end=9, tokens=300),
            "schema_a": entity_factory("schema_a", "cfg/schema.py", line_start=11, line_end=19, tokens=200),
            "schema_b": entity_factory("schema_b", "cfg/schema.py", line_start=21, line_end=29, tokens=200),
            "main": entity_factory("main", "app/cli.py", tokens=200),
            "reload": entity_factory("reload", "app/server.py", tokens=250),
            "ping": entity_factory("ping", "net/ping.py", tokens=50),
            "test_parse": entity_factory("test_parse", "tests/test_parser.py", is_test=True),
        }
        e = {k: v.entity_id for k, v in ents.items()}
        edges = [
            (e["main"], e["parse_config"]),
            (e["reload"], e["parse_config"]),
            (e["test_parse"], e["parse_config"]),
            (e["parse_config"], e["read_file"]),
            (e["parse_config"], e["validate"]),
            (e["validate"], e["schema_a"], "references_type"),
            (e["validate"], e["schema_b"], "references_type"),
        ]
        gen = generation_builder(store, list(ents.values()), edges, cochange=cochange)
        from codegraph_kb.models import SemanticCluster
        store.publish_clusters(gen, [SemanticCluster(
            "cluster_001", "schema_unit",
            sorted([e["validate"], e["schema_a"], e["schema_b"]]),
            cohesion_score=1.0, token_count=700,
        )])
        return ents

    return build


def _select(store, focus, config=None, tie_breaker=None, **kwargs):
    from codegraph_kb.context import ContextSelector
    with store.open_reader() as reader:
        return ContextSelector(reader, config, tie_breaker=tie_breaker).select(focus, **kwargs)


class TestFocus:
    def test_by_entity_id(self, store, config_loader):
        ents = config_loader()
        pack = _select(store, ents["parse_config"].entity_id)
        assert pack.focus_entity_id == ents["parse_config"].entity_id
        assert pack.focus_matched_by == "entity_id"
        first = pack.items[0]
        assert first.entity_ids == [ents["parse_config"].entity_id]
        assert first.relevance == 1.0

    def test_by_keywords(self, store, config_loader):
        ents = config_loader()
        pack = _select(store, "fix the config parser crash")
        assert pack.focus_entity_id == ents["parse_config"].entity_id
        assert pack.focus_matched_by == "keywords"

    def test_filler_words_do_not_pick_the_focus(self, store, entity_factory, generation_builder):
        other = entity_factory("other", "app/other.py")
        load_config = entity_factory("load_config", "x/y.py")
        generation_builder(store, [other, load_config])
        pack = _select(store, "fix the bug in config loading")
        assert pack.focus_entity_id == load_config.entity_id

    def test_only_filler_words_match_nothing(self, store, entity_factory, generation_builder):
        generation_builder(store, [entity_factory("other", "app/other.py")])
        pack = _select(store, "fix the bug")
        assert pack.focus_entity_id is None
        assert pack.items == []

    def test_no_match_gives_empty_pack(self, store, config_loader):
        config_loader()
        pack = _select(store, "zzqx vvwy")
        assert pack.focus_entity_id is None
        assert pack.items == []
        assert pack.to_dict()["total_tokens"] == 0


class TestSelection:
    @pytest.mark.parametrize("budget", [0, 50, 99, 100, 150, 299, 300, 350, 700, 1000, 1299, 1450, 10000])
    @pytest.mark.parametrize("task_type", ["explore", "bugfix", "feature", "refactor"])
    def test_budget_never_exceeded(self, store, config_loader, budget, task_type):
        ents = config_loader()
        pack = _select(store, ents["parse_config"].entity_id,
                       task_type=task_type, token_budget=budget)
        assert pack.total_tokens <= budget
        running = 0
        for item in pack.items:
            running += item.token_count
            assert item.running_total == running
        assert len(set(pack.entity_ids)) == len(pack.entity_ids)

    def test_large_budget_takes_every_connected_unit(self, store, config_loader):
        ents = config_loader()
        pack = _select(store, ents["parse_config"].entity_id, token_budget=10000)
        assert {i.unit_id for i in pack.items} == {
            ents["parse_config"].entity_id, ents["read_file"].entity_id,
            ents["main"].entity_id, ents["reload"].entity_id, "cluster_001",
        }
        cluster = next(i for i in pack.items if i.unit_id == "cluster_001")
        assert cluster.kind == "cluster"
        assert len(cluster.entity_ids) == 3
        assert ents["ping"].entity_id not in pack.entity_ids
        assert ents["test_parse"].entity_id not in pack.entity_ids
        assert pack.total_tokens == 1450

    def test_over_budget_exclusions(self, store, config_loader):
        ents = config_loader()
        pack = _select(store, ents["parse_config"].entity_id, token_budget=150)
        assert [i.unit_id for i in pack.items] == [ents["parse_config"].entity_id]
        reasons = {x.unit_id: x.reason for x in pack.exclusions}
        assert reasons == {
            ents["read_file"].entity_id: "over_budget",
            ents["main"].entity_id: "over_budget",
            ents["reload"].entity_id: "over_budget",
            "cluster_001": "over_budget",
        }
        assert [x.unit_id for x in pack.exclusions] == sorted(reasons)

    def test_below_relevance_exclusions(self, store, config_loader):
        from codegraph_kb.config import Config
        ents = config_loader()
        cfg = Config()
        cfg.CONTEXT_RELEVANCE_CUTOFF = 0.9
        pack = _select(store, ents["parse_config"].entity_id, config=cfg, token_budget=10000)
        assert len(pack.items) == 1
        assert pack.exclusions
        assert {x.reason for x in pack.exclusions} == {"below_relevance_threshold"}

    def test_seed_cluster_over_budget_falls_back_to_entity(self, store, config_loader):
        ents = config_loader()
        pack = _select(store, ents["validate"].entity_id, token_budget=350)
        assert [i.unit_id for i in pack.items] == [ents["validate"].entity_id]
        assert pack.items[0].kind == "entity"
        assert ("cluster_001", "over_budget") in {(x.unit_id, x.reason) for x in pack.exclusions}
        assert pack.total_tokens == 300

    @pytest.mark.parametrize("task_type,expected", [
        ("bugfix", "read_file"),
        ("refactor", "main"),
    ])
    def test_task_type_steers_direction(self, store, config_loader, task_type, expected):
        ents = config_loader()
        pack = _select(store, ents["parse_config"].entity_id,
                       task_type=task_type, token_budget=300)
        assert [i.unit_id for i in pack.items] == [
            ents["parse_config"].entity_id, ents[expected].entity_id,
        ]

    def test_cochange_raises_relevance(self, store, config_loader):
        ents = config_loader(cochange={("app/server.py", "cfg/parser.py"): 1.0})
        pack = _select(store, ents["parse_config"].entity_id, token_budget=350)
        assert pack.items[1].unit_id == ents["reload"].entity_id
        assert pack.items[1].relevance == pytest.approx(1.0)

    def test_cochange_alone_makes_a_candidate(self, store, config_loader):
        ents = config_loader(cochange={("cfg/parser.py", "net/ping.py"): 1.0})
        pack = _select(store, ents["parse_config"].entity_id, token_budget=100000)
        ping = next(i for i in pack.items if i.unit_id == ents["ping"].entity_id)
        assert ping.relevance == pytest.approx(0.3)
        assert ents["test_parse"].entity_id not in pack.entity_ids

    def test_cochange_only_candidate_logged_when_over_budget(self, store, config_loader):
        ents = config_loader(cochange={("cfg/parser.py", "net/ping.py"): 1.0})
        pack = _select(store, ents["parse_config"].entity_id, token_budget=120)
        assert [i.unit_id for i in pack.items] == [ents["parse_config"].entity_id]
        reasons = {x.unit_id: x.reason for x in pack.exclusions}
        assert reasons[ents["ping"].entity_id] == "over_budget"

    def test_default_tie_breaker_orders_by_unit_id(self, store, config_loader):
        ents = config_loader()
        pack = _select(store, ents["parse_config"].entity_id, token_budget=300)
        assert pack.items[1].unit_id == ents["main"].entity_id

    def test_custom_tie_breaker(self, store, config_loader):
        ents = config_loader()
        pack = _select(store, ents["parse_config"].entity_id, token_budget=300,
                       tie_breaker=lambda unit: tuple(-ord(c) for c in unit.unit_id))
        assert pack.items[1].unit_id == ents["read_file"].entity_id

    def test_selection_is_deterministic(self, store, config_loader):
        ents = config_loader()
        first = _select(store, ents["parse_config"].entity_id, token_budget=700)
        second = _select(store, ents["parse_config"].entity_id, token_budget=700)
        assert first.to_dict() == second.to_dict()


class TestValidation:
    def test_unknown_task_type(self, store, config_loader):
        from codegraph_kb.errors import QueryError
        ents = config_loader()
        with pytest.raises(QueryError):
            _select(store, ents["main"].entity_id, task_type="deploy")

    def test_negative_budget(self, store, config_loader):
        from codegraph_kb.errors import QueryError
        ents = config_loader()
        with pytest.raises(QueryError):
            _select(store, ents["main"].entity_id, token_budget=-1)

    def test_cancelled(self, store, config_loader):
        from codegraph_kb.cancellation import CancellationToken
        from codegraph_kb.errors import OperationCancelled
        ents = config_loader()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            _select(store, ents["main"].entity_id, cancel_token=token)
