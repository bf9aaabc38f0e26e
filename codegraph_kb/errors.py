"""
Error taxonomy for the code graph.

Only :class:`StoreUnavailable` is fatal to an operation.  Parse failures are
recorded per file, resolution gaps are counted and dropped, and an empty
query result is a normal answer rather than an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class CodegraphError(Exception):
    """Base class for all codegraph_kb errors."""


class ParseError(CodegraphError):
    """
    A single file could not be parsed cleanly.

    Parameters
    ----------
    message:
        Human readable reason.
    file_path:
        File the error belongs to.
    line:
        1-based line of the first syntax error, if known.
    partial:
        The :class:`~codegraph_kb.extractor.ExtractionResult` holding the
        entities recovered before the failure point (may be empty).
    """

    def __init__(
        self,
        message: str,
        file_path: str = "",
        line: Optional[int] = None,
        partial: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.file_path = file_path
        self.line = line
        self.partial = partial

    def __str__(self) -> str:
        where = self.file_path
        if self.line is not None:
            where = f"{where}:{self.line}"
        return f"{where}: {self.message}" if where else self.message


class StoreUnavailable(CodegraphError):
    """The backing store cannot be opened or written."""


class ClusterBoundViolation(CodegraphError):
    """A computed cluster falls outside its configured size/token bounds."""

    def __init__(self, message: str, member_count: int = 0, token_count: int = 0) -> None:
        super().__init__(message)
        self.member_count = member_count
        self.token_count = token_count


class OperationCancelled(CodegraphError):
    """The caller cancelled the operation or its timeout elapsed."""


class QueryError(CodegraphError, ValueError):
    """A query is malformed or asks a strategy for fields it cannot serve."""


@dataclass(frozen=True)
class ResolutionGap:
    """A raw reference that matched no known entity.  Recorded, never raised."""
    from_id: str
    name: str
    kind: str
