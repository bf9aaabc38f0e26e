"""
Raw-reference resolution.

Turns the names an entity mentions (:class:`~codegraph_kb.models.RawReference`)
into :class:`~codegraph_kb.models.DependencyEdge` records, searching in tiers:

1. ``self``/``this``/``cls`` (or an explicit type) qualifier → members of that type
2. the same file
3. the same module (directory)
4. public entities anywhere else

Within a tier the smallest ``entity_id`` wins, so resolution is a pure
function of the entity set.  Imports resolve to module entities by dotted
path, then by last path segment.  Anything left over is a
:class:`~codegraph_kb.errors.ResolutionGap`.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional

from .errors import ResolutionGap
from .models import CodeEntity, DependencyEdge, EntityKind, RawReference, RefKind

logger = logging.getLogger(__name__)

SELF_QUALIFIERS = frozenset({"self", "this", "cls", "Self", "@"})

# Languages whose entities may reference each other.
_LANGUAGE_FAMILY = {
    "typescript": "javascript",
    "javascript": "javascript",
    "cpp": "c",
    "c": "c",
}

_TARGET_KINDS = {
    RefKind.CALL: (EntityKind.FUNCTION, EntityKind.TYPE),
    RefKind.TYPE: (EntityKind.TYPE,),
    RefKind.INHERIT: (EntityKind.TYPE,),
}


def _family(language: str) -> str:
    return _LANGUAGE_FAMILY.get(language, language)


class ReferenceResolver:
    """
    Index over one generation's entity set.

    Parameters
    ----------
    entities:
        Every entity that may be a reference target.
    """

    def __init__(self, entities: Iterable[CodeEntity]) -> None:
        self._by_name: dict[tuple[str, str], list[CodeEntity]] = defaultdict(list)
        self._modules: dict[tuple[str, str], list[CodeEntity]] = defaultdict(list)
        self._modules_by_tail: dict[tuple[str, str], list[CodeEntity]] = defaultdict(list)
        for e in sorted(entities, key=lambda x: x.entity_id):
            family = _family(e.language)
            if e.entity_kind == EntityKind.MODULE:
                self._modules[(family, e.qualified_name)].append(e)
                self._modules_by_tail[(family, e.qualified_name.rsplit(".", 1)[-1])].append(e)
            else:
                self._by_name[(family, e.name)].append(e)

    # ------------------------------------------------------------------
    # Single reference
    # ------------------------------------------------------------------

    def _pick(self, source: CodeEntity, candidates: list[CodeEntity],
              qualifier: str) -> Optional[CodeEntity]:
        if not candidates:
            return None
        if qualifier:
            owner = source.parent_name if qualifier in SELF_QUALIFIERS else qualifier.rsplit(".", 1)[-1]
            if owner:
                members = [c for c in candidates if c.parent_name == owner]
                if members:
                    same_file = [c for c in members if c.file_path == source.file_path]
                    return (same_file or members)[0]
        for c in candidates:
            if c.file_path == source.file_path:
                return c
        module = source.module_path
        for c in candidates:
            if c.module_path == module:
                return c
        for c in candidates:
            if c.is_public:
                return c
        return None

    def resolve_reference(self, source: CodeEntity, ref: RawReference) -> Optional[CodeEntity]:
        """Return the target of *ref* from *source*, or None if unresolved."""
        family = _family(source.language)
        if ref.kind == RefKind.IMPORT:
            exact = self._modules.get((family, ref.name))
            if exact:
                return exact[0]
            tail = ref.name.rsplit(".", 1)[-1]
            return self._pick(source, self._modules_by_tail.get((family, tail), []), "")
        kinds = _TARGET_KINDS.get(ref.kind, (EntityKind.FUNCTION, EntityKind.TYPE))
        candidates = [c for c in self._by_name.get((family, ref.name), []) if c.entity_kind in kinds]
        return self._pick(source, candidates, ref.qualifier)

    # ------------------------------------------------------------------
    # Whole entities
    # ------------------------------------------------------------------

    def resolve(self, source: CodeEntity) -> tuple[list[DependencyEdge], list[ResolutionGap]]:
        """Resolve every raw reference of *source* in source order."""
        edges: list[DependencyEdge] = []
        gaps: list[ResolutionGap] = []
        seen: set[tuple[str, str]] = set()
        for ref in source.raw_refs:
            target = self.resolve_reference(source, ref)
            if target is None:
                gaps.append(ResolutionGap(source.entity_id, ref.name, ref.kind))
                continue
            if target.entity_id == source.entity_id:
                continue
            edge_kind = RefKind.EDGE_KIND.get(ref.kind, "other")
            key = (target.entity_id, edge_kind)
            if key in seen:
                continue
            seen.add(key)
            edges.append(DependencyEdge(source.entity_id, target.entity_id, edge_kind))
        return edges, gaps

    def resolve_all(
        self, entities: Iterable[CodeEntity]
    ) -> tuple[list[DependencyEdge], list[ResolutionGap]]:
        """Resolve many entities (sorted by id for a deterministic edge order)."""
        all_edges: list[DependencyEdge] = []
        all_gaps: list[ResolutionGap] = []
        for entity in sorted(entities, key=lambda x: x.entity_id):
            edges, gaps = self.resolve(entity)
            all_edges.extend(edges)
            all_gaps.extend(gaps)
        for gap in all_gaps:
            logger.debug("Unresolved %s reference %r from %s", gap.kind, gap.name, gap.from_id)
        return all_edges, all_gaps
