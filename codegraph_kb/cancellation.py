"""
Caller-supplied cancellation tokens.

Ingestion, clustering, queries and context selection all accept an optional
token and poll it at safe points (between files, between BFS levels, between
clustering phases).
"""

from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import OperationCancelled


class CancellationToken:
    """
    Cooperative cancellation flag with an optional deadline.

    Parameters
    ----------
    timeout:
        Seconds from construction after which the token counts as cancelled.
        ``None`` means no deadline.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self.reason = ""

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.reason = self.reason or "timeout elapsed"
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")


def check(token: Optional[CancellationToken]) -> None:
    """Raise :class:`OperationCancelled` if *token* is set."""
    if token is not None:
        token.raise_if_cancelled()
