"""
Core data models shared by extraction, storage, query and clustering.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ClusterBoundViolation

# ---------------------------------------------------------------------------
# Kind constants
# ---------------------------------------------------------------------------

class EntityKind:
    FUNCTION = "function"
    TYPE = "type"
    MODULE = "module"
    OTHER = "other"

    ALL = (FUNCTION, TYPE, MODULE, OTHER)


class EdgeKind:
    CALLS = "calls"
    REFERENCES_TYPE = "references_type"
    OTHER = "other"

    ALL = (CALLS, REFERENCES_TYPE, OTHER)


class RefKind:
    """Kinds of raw (unresolved) references produced by the extractor."""
    CALL = "call"
    TYPE = "type"
    INHERIT = "inherit"
    IMPORT = "import"

    EDGE_KIND = {
        CALL: EdgeKind.CALLS,
        TYPE: EdgeKind.REFERENCES_TYPE,
        INHERIT: EdgeKind.REFERENCES_TYPE,
        IMPORT: EdgeKind.OTHER,
    }


# ---------------------------------------------------------------------------
# Entity-ID helpers
# ---------------------------------------------------------------------------

def sanitize_path(path: str) -> str:
    """Flatten a file path for use inside an entity id."""
    return re.sub(r"[/\\.]", "_", path)


def make_entity_id(
    language: str,
    kind: str,
    qualified_name: str,
    file_path: str,
    line_start: int,
    line_end: int,
) -> str:
    return (
        f"{language}:{kind}:{qualified_name}:"
        f"{sanitize_path(file_path)}:{line_start}-{line_end}"
    )


def estimate_tokens(text: str) -> int:
    """Rough token estimate: len(text) // 4."""
    return len(text) // 4


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawReference:
    """A name referenced by an entity before resolution."""
    name: str
    kind: str = RefKind.CALL
    qualifier: str = ""       # e.g. "self" for self.method(), "os" for os.path

    def to_list(self) -> list[str]:
        return [self.name, self.kind, self.qualifier]

    @classmethod
    def from_list(cls, raw: list) -> "RawReference":
        name, kind, qualifier = (list(raw) + ["", "", ""])[:3]
        return cls(name=name, kind=kind or RefKind.CALL, qualifier=qualifier or "")


@dataclass
class CodeEntity:
    """A named, located unit of code."""
    entity_id: str
    entity_kind: str
    language: str
    name: str
    qualified_name: str
    file_path: str
    line_start: int
    line_end: int
    signature: str = ""
    body_text: str = ""
    is_public: bool = True
    is_test: bool = False
    complexity_score: Optional[int] = None
    parent_name: Optional[str] = None
    token_count: int = 0
    forward_refs: list[str] = field(default_factory=list)
    reverse_refs: list[str] = field(default_factory=list)
    raw_refs: list[RawReference] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.token_count and (self.signature or self.body_text):
            self.token_count = estimate_tokens(self.signature + "\n" + self.body_text)

    @property
    def module_path(self) -> str:
        """Directory of the entity's file, used as its module scope."""
        head, _, _ = self.file_path.rpartition("/")
        return head

    def to_dict(
        self,
        include_body: bool = False,
        include_refs: bool = False,
    ) -> dict[str, Any]:
        """Return a JSON-ready dict; the body and refs are opt-in."""
        out: dict[str, Any] = {
            "entity_id": self.entity_id,
            "entity_kind": self.entity_kind,
            "language": self.language,
            "name": self.name,
            "qualified_name": self.qualified_name,
            "file_path": self.file_path,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "signature": self.signature,
            "is_public": self.is_public,
            "is_test": self.is_test,
            "complexity_score": self.complexity_score,
            "token_count": self.token_count,
        }
        if include_body:
            out["body_text"] = self.body_text
        if include_refs:
            out["forward_refs"] = list(self.forward_refs)
            out["reverse_refs"] = list(self.reverse_refs)
        return out


@dataclass(frozen=True)
class DependencyEdge:
    """Directed relationship: *from_id* references/calls *to_id*."""
    from_id: str
    to_id: str
    edge_kind: str = EdgeKind.CALLS

    def to_dict(self) -> dict[str, str]:
        return {"from_id": self.from_id, "to_id": self.to_id, "edge_kind": self.edge_kind}


@dataclass
class SemanticCluster:
    """A cohesive, size-bounded group of entities."""
    cluster_id: str
    name: str
    member_ids: list[str]
    cohesion_score: float = 0.0
    coupling_score: float = 0.0
    modularity_contribution: float = 0.0
    token_count: int = 0

    def validate(
        self,
        min_size: int,
        max_size: int,
        min_tokens: int = 0,
        max_tokens: Optional[int] = None,
    ) -> None:
        """
        Raise :class:`ClusterBoundViolation` if the cluster is out of bounds.
        """
        n = len(self.member_ids)
        if n < min_size or n > max_size:
            raise ClusterBoundViolation(
                f"{self.cluster_id}: {n} members outside [{min_size}, {max_size}]",
                member_count=n, token_count=self.token_count,
            )
        if self.token_count < min_tokens or (
            max_tokens is not None and self.token_count > max_tokens
        ):
            raise ClusterBoundViolation(
                f"{self.cluster_id}: {self.token_count} tokens outside "
                f"[{min_tokens}, {max_tokens}]",
                member_count=n, token_count=self.token_count,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "name": self.name,
            "member_ids": list(self.member_ids),
            "member_count": len(self.member_ids),
            "cohesion_score": round(self.cohesion_score, 4),
            "coupling_score": round(self.coupling_score, 4),
            "modularity_contribution": round(self.modularity_contribution, 6),
            "token_count": self.token_count,
        }


@dataclass
class IngestionReport:
    """Summary of one ingestion run."""
    generation_id: str = ""
    entities_created: int = 0
    entities_excluded: int = 0
    edges_created: int = 0
    files_scanned: int = 0
    files_reused: int = 0
    files_with_errors: int = 0
    references_unresolved: int = 0
    duration_ms: float = 0.0
    errors: list[dict[str, str]] = field(default_factory=list)

    def record_error(self, file_path: str, message: str) -> None:
        self.files_with_errors += 1
        self.errors.append({"file": file_path, "message": message})

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return self.duration_ms / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "entities_created": self.entities_created,
            "entities_excluded": self.entities_excluded,
            "edges_created": self.edges_created,
            "files_scanned": self.files_scanned,
            "files_reused": self.files_reused,
            "files_with_errors": self.files_with_errors,
            "references_unresolved": self.references_unresolved,
            "duration_ms": round(self.duration_ms, 1),
            "errors": list(self.errors),
        }
