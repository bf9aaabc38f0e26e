"""
Context selection: pick the most relevant clusters/entities for a task
within a token budget.

Selection starts at the unit (cluster, or the lone entity when it is not
clustered) holding the focus entity and greedily adds neighbouring or
co-changing units by ``relevance / token_cost``.  Relevance mixes direct
dependency links into the current selection (weighted by direction
according to the task type) with file co-change.  Every candidate left
out is recorded with its reason.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .cancellation import CancellationToken, check
from .clustering import name_tokens
from .config import Config
from .errors import QueryError
from .models import CodeEntity, EntityKind
from .predicates import Compare, Or
from .store import GenerationReader

logger = logging.getLogger(__name__)


class TaskType:
    EXPLORE = "explore"
    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"

    ALL = (EXPLORE, BUGFIX, FEATURE, REFACTOR)


# "forward": the selection references the candidate (callees, used types).
# "reverse": the candidate references the selection (callers, dependants).
DIRECTION_WEIGHTS: dict[str, dict[str, float]] = {
    TaskType.EXPLORE: {"forward": 1.0, "reverse": 1.0},
    TaskType.BUGFIX: {"forward": 1.0, "reverse": 0.6},
    TaskType.FEATURE: {"forward": 0.8, "reverse": 0.8},
    TaskType.REFACTOR: {"forward": 0.6, "reverse": 1.0},
}

OVER_BUDGET = "over_budget"
BELOW_RELEVANCE = "below_relevance_threshold"

_KEYWORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{2,}")

# Filler words dropped from free-text focus keywords.
_STOP_WORDS = frozenset({
    "the", "and", "for", "with", "from", "that", "this", "into", "onto", "when",
    "where", "what", "why", "how", "are", "was", "were", "has", "have", "not",
    "but", "all", "any", "can", "should", "would", "could", "fix", "bug", "bugs",
    "add", "make", "use", "issue", "please", "some", "its", "our", "there",
})


@dataclass
class Unit:
    """A selectable bundle: a cluster or a single unclustered entity."""
    unit_id: str
    kind: str                 # "cluster" | "entity"
    name: str
    member_ids: list[str]
    token_count: int
    files: frozenset = frozenset()


@dataclass
class ContextItem:
    unit_id: str
    kind: str
    name: str
    entity_ids: list[str]
    token_count: int
    relevance: float
    running_total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "kind": self.kind,
            "name": self.name,
            "entity_ids": list(self.entity_ids),
            "token_count": self.token_count,
            "relevance": round(self.relevance, 4),
            "running_total": self.running_total,
        }


@dataclass
class Exclusion:
    unit_id: str
    reason: str
    token_count: int
    relevance: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "reason": self.reason,
            "token_count": self.token_count,
            "relevance": round(self.relevance, 4),
        }


@dataclass
class ContextPack:
    """Selected units in selection order plus the exclusion log."""
    task_type: str
    token_budget: int
    focus_entity_id: Optional[str] = None
    focus_matched_by: str = ""
    items: list[ContextItem] = field(default_factory=list)
    exclusions: list[Exclusion] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(item.token_count for item in self.items)

    @property
    def entity_ids(self) -> list[str]:
        return [eid for item in self.items for eid in item.entity_ids]

    def to_dict(self) -> dict[str, Any]:
        return {
            "focus_entity_id": self.focus_entity_id,
            "focus_matched_by": self.focus_matched_by,
            "task_type": self.task_type,
            "token_budget": self.token_budget,
            "total_tokens": self.total_tokens,
            "items": [i.to_dict() for i in self.items],
            "exclusions": [x.to_dict() for x in self.exclusions],
        }


TieBreaker = Callable[[Unit], Any]


def _default_tie_breaker(unit: Unit) -> Any:
    return unit.unit_id


class ContextSelector:
    """
    Parameters
    ----------
    reader:
        Generation to select from (clusters are read from it).
    config:
        ``CONTEXT_*`` settings.
    tie_breaker:
        Sort key applied after ``relevance / tokens`` and relevance; the
        default orders by unit id.
    """

    def __init__(
        self,
        reader: GenerationReader,
        config: Optional[Config] = None,
        tie_breaker: Optional[TieBreaker] = None,
    ) -> None:
        self.reader = reader
        self.config = config or Config()
        self.tie_breaker = tie_breaker or _default_tie_breaker
        self._membership: dict[str, str] = {}
        self._clusters: dict[str, Unit] = {}
        self._entity_units: dict[str, Unit] = {}

    # ------------------------------------------------------------------
    # Focus
    # ------------------------------------------------------------------

    def resolve_focus(self, focus: str) -> tuple[Optional[CodeEntity], str]:
        """
        Return ``(entity, matched_by)`` for an entity id or free-text keywords.

        Keywords score 3 per name hit, 2 per signature hit and 1 per file
        path hit (case-insensitive); the best score wins, ties by id.
        """
        entity = self.reader.get_entity(focus)
        if entity is not None and not entity.is_test:
            return entity, "entity_id"

        words = ({w.lower() for w in _KEYWORD_RE.findall(focus)}
                 | {t for t in name_tokens(focus) if len(t) >= 3})
        keywords = sorted(words - _STOP_WORDS)
        if not keywords:
            return None, ""
        parts = []
        for kw in keywords:
            pattern = f"(?i){re.escape(kw)}"
            parts.extend(Compare(f, "~", pattern) for f in ("name", "signature", "file_path"))
        candidates = self.reader.scan(Or(*parts))
        best: Optional[CodeEntity] = None
        best_score = 0
        for cand in candidates:
            name, sig, path = cand.name.lower(), cand.signature.lower(), cand.file_path.lower()
            score = sum(
                3 * (kw in name) + 2 * (kw in sig) + (kw in path) for kw in keywords
            )
            if cand.entity_kind == EntityKind.MODULE:
                score -= 1
            if score > best_score or (score == best_score and best is not None
                                      and cand.entity_id < best.entity_id):
                best, best_score = cand, score
        return (best, "keywords") if best is not None and best_score > 0 else (None, "")

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def _load_clusters(self) -> None:
        self._membership = self.reader.cluster_membership()
        self._clusters = {}
        for cluster in self.reader.clusters():
            files = frozenset(e.file_path for e in self.reader.get_entities(cluster.member_ids))
            self._clusters[cluster.cluster_id] = Unit(
                unit_id=cluster.cluster_id,
                kind="cluster",
                name=cluster.name,
                member_ids=list(cluster.member_ids),
                token_count=cluster.token_count,
                files=files,
            )

    def _units_for(self, entity_ids: list[str]) -> dict[str, Unit]:
        """Map entity ids to their units, creating singleton units on demand."""
        out: dict[str, Unit] = {}
        missing = []
        for eid in entity_ids:
            cid = self._membership.get(eid)
            if cid is not None and cid in self._clusters:
                out[eid] = self._clusters[cid]
            elif eid in self._entity_units:
                out[eid] = self._entity_units[eid]
            else:
                missing.append(eid)
        for e in self.reader.get_entities(missing):
            if e.is_test:
                continue
            unit = Unit(e.entity_id, "entity", e.qualified_name or e.name,
                        [e.entity_id], e.token_count, frozenset({e.file_path}))
            self._entity_units[e.entity_id] = unit
            out[e.entity_id] = unit
        return out

    def _cochanged_ids(self, selected_files: set[str],
                       cochange: dict[tuple[str, str], float]) -> set[str]:
        """Ids of entities in files that co-change with the selection."""
        partners = set()
        for (a, b), score in cochange.items():
            if score <= 0:
                continue
            if a in selected_files and b not in selected_files:
                partners.add(b)
            elif b in selected_files and a not in selected_files:
                partners.add(a)
        if not partners:
            return set()
        pred = Or(*[Compare("file_path", "=", f) for f in sorted(partners)])
        return {e.entity_id for e in self.reader.scan(pred)}

    def _candidate_units(self, selected_ids: set[str], taken: set[str],
                         selected_files: set[str],
                         cochange: dict[tuple[str, str], float]) -> dict[str, Unit]:
        frontier = set(selected_ids)
        seen = set(selected_ids)
        for _ in range(max(1, self.config.CONTEXT_MAX_CANDIDATE_HOPS)):
            adjacency = self.reader.neighbors(sorted(frontier), "both")
            frontier = {n for nbrs in adjacency.values() for n in nbrs} - seen
            seen |= frontier
            if not frontier:
                break
        seen |= self._cochanged_ids(selected_files, cochange)
        units = self._units_for(sorted(seen - selected_ids))
        return {u.unit_id: u for u in units.values() if u.unit_id not in taken}

    # ------------------------------------------------------------------
    # Relevance
    # ------------------------------------------------------------------

    def _relevance(self, unit: Unit, selected_ids: set[str], selected_files: set[str],
                   weights: dict[str, float], cochange: dict[tuple[str, str], float]) -> float:
        members = set(unit.member_ids)
        forward = reverse = 0
        for edge in self.reader.edges_touching(unit.member_ids):
            if edge.from_id in selected_ids and edge.to_id in members:
                forward += 1
            elif edge.from_id in members and edge.to_id in selected_ids:
                reverse += 1
        dep = min(1.0, (weights["forward"] * forward + weights["reverse"] * reverse)
                  / max(len(members), 1))
        co = 0.0
        for f in unit.files:
            for s in selected_files:
                if f != s:
                    key = (f, s) if f < s else (s, f)
                    co = max(co, cochange.get(key, 0.0))
        return (self.config.CONTEXT_DEPENDENCY_WEIGHT * dep
                + self.config.CONTEXT_COCHANGE_WEIGHT * co)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(
        self,
        focus: str,
        task_type: str = TaskType.EXPLORE,
        token_budget: int = 8000,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ContextPack:
        """
        Build a :class:`ContextPack` whose total token count never exceeds
        *token_budget*.

        Raises
        ------
        QueryError
            Unknown task type or negative budget.
        OperationCancelled
            If *cancel_token* fires.
        """
        if task_type not in DIRECTION_WEIGHTS:
            raise QueryError(f"unknown task type {task_type!r}; expected one of {list(TaskType.ALL)}")
        if token_budget < 0:
            raise QueryError("token_budget must be >= 0")
        pack = ContextPack(task_type=task_type, token_budget=token_budget)
        weights = DIRECTION_WEIGHTS[task_type]
        cutoff = self.config.CONTEXT_RELEVANCE_CUTOFF

        entity, matched_by = self.resolve_focus(focus)
        if entity is None:
            logger.info("Context focus %r matched no entity", focus)
            return pack
        pack.focus_entity_id = entity.entity_id
        pack.focus_matched_by = matched_by

        self._load_clusters()
        cochange = self.reader.cochange_scores()
        excluded: dict[str, Exclusion] = {}

        def exclude(unit: Unit, reason: str, relevance: float) -> None:
            if unit.unit_id not in excluded:
                excluded[unit.unit_id] = Exclusion(unit.unit_id, reason, unit.token_count, relevance)
                logger.debug("Context: excluded %s (%s, %d tokens, relevance %.3f)",
                             unit.unit_id, reason, unit.token_count, relevance)

        def take(unit: Unit, relevance: float) -> None:
            pack.items.append(ContextItem(
                unit.unit_id, unit.kind, unit.name, list(unit.member_ids),
                unit.token_count, relevance, pack.total_tokens + unit.token_count,
            ))

        seed = self._units_for([entity.entity_id]).get(entity.entity_id)
        if seed is None:
            return pack
        if seed.token_count <= token_budget:
            take(seed, 1.0)
        else:
            exclude(seed, OVER_BUDGET, 1.0)
            if seed.kind == "cluster" and entity.token_count <= token_budget:
                take(Unit(entity.entity_id, "entity", entity.qualified_name or entity.name,
                          [entity.entity_id], entity.token_count,
                          frozenset({entity.file_path})), 1.0)
            else:
                pack.exclusions = list(excluded.values())
                return pack

        taken = {item.unit_id for item in pack.items} | {seed.unit_id}
        selected_ids = {eid for item in pack.items for eid in item.entity_ids}
        selected_files = {entity.file_path}

        while True:
            check(cancel_token)
            remaining = token_budget - pack.total_tokens
            candidates = self._candidate_units(selected_ids, taken | set(excluded),
                                               selected_files, cochange)
            if not candidates:
                break
            scored = []
            for unit in candidates.values():
                if unit.token_count > remaining:
                    exclude(unit, OVER_BUDGET,
                            self._relevance(unit, selected_ids, selected_files, weights, cochange))
                    continue
                scored.append((unit, self._relevance(unit, selected_ids, selected_files,
                                                     weights, cochange)))
            eligible = [(u, r) for u, r in scored if r >= cutoff]
            if not eligible:
                for unit, rel in scored:
                    exclude(unit, BELOW_RELEVANCE, rel)
                break
            unit, rel = min(
                eligible,
                key=lambda ur: (-(ur[1] / max(ur[0].token_count, 1)), -ur[1],
                                self.tie_breaker(ur[0])),
            )
            take(unit, rel)
            taken.add(unit.unit_id)
            selected_ids.update(unit.member_ids)
            selected_files.update(unit.files)

        pack.exclusions = sorted(excluded.values(), key=lambda x: (x.reason, x.unit_id))
        logger.info(
            "Context pack for %s (%s): %d units, %d/%d tokens, %d exclusions",
            pack.focus_entity_id, task_type, len(pack.items), pack.total_tokens,
            token_budget, len(pack.exclusions),
        )
        return pack
