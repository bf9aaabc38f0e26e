"""
Shared helpers for the codegraph_kb tests.

Synthetic generations are written straight through ``GenerationWriter`` so
most tests need neither tree-sitter nor a source tree.
"""

from __future__ import annotations

import textwrap

import pytest


def make_entity(
    name: str,
    file_path: str = "pkg/mod.py",
    kind: str = "function",
    language: str = "python",
    line_start: int = 1,
    line_end: int = 5,
    parent: str | None = None,
    is_public: bool = True,
    is_test: bool = False,
    tokens: int = 50,
    signature: str | None = None,
    body: str | None = None,
    refs=(),
):
    """Build a CodeEntity with a well-formed id."""
    from codegraph_kb.models import CodeEntity, RawReference, make_entity_id

    qualified = f"{parent}.{name}" if parent else name
    return CodeEntity(
        entity_id=make_entity_id(language, kind, qualified, file_path, line_start, line_end),
        entity_kind=kind,
        language=language,
        name=name,
        qualified_name=qualified,
        file_path=file_path,
        line_start=line_start,
        line_end=line_end,
        signature=signature if signature is not None else f"def {name}()",
        body_text=body if body is not None else f"def {name}():\n    pass",
        is_public=is_public,
        is_test=is_test,
        complexity_score=1 if kind == "function" else None,
        parent_name=parent,
        token_count=tokens,
        raw_refs=[r if isinstance(r, RawReference) else RawReference(*r) for r in refs],
    )


def build_generation(store, entities, edges=(), cochange=None, meta=None) -> str:
    """Write *entities*/*edges* as a new current generation and return its id."""
    from codegraph_kb.models import DependencyEdge

    with store.begin_generation("synthetic") as writer:
        files = sorted({e.file_path for e in entities})
        for path in files:
            count = sum(1 for e in entities if e.file_path == path)
            writer.add_file(path, f"hash-{path}", entities[0].language, count)
        writer.add_entities(sorted(entities, key=lambda e: e.entity_id))
        writer.add_edges(
            e if isinstance(e, DependencyEdge) else DependencyEdge(*e) for e in edges
        )
        if cochange:
            writer.set_cochange(cochange)
        for key, value in (meta or {}).items():
            writer.set_meta(key, value)
        return writer.commit()


@pytest.fixture()
def entity_factory():
    return make_entity


@pytest.fixture()
def generation_builder():
    return build_generation


@pytest.fixture()
def store(tmp_path):
    from codegraph_kb.store import GraphStore
    return GraphStore(str(tmp_path / "store"))


@pytest.fixture()
def write_tree(tmp_path):
    """Return a function writing ``{relative_path: source}`` under tmp_path/src."""
    root = tmp_path / "src"
    root.mkdir()

    def _write(files: dict[str, str]) -> str:
        for rel, text in files.items():
            p = root / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(textwrap.dedent(text), encoding="utf-8")
        return str(root)

    return _write


@pytest.fixture()
def no_cochange_config():
    """Config with git mining disabled so tests never shell out."""
    from codegraph_kb.config import Config
    cfg = Config()
    cfg.COCHANGE_ENABLED = False
    return cfg
