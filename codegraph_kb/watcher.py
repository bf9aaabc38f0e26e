"""
File watcher for incremental re-ingestion.

Uses watchdog to monitor a source tree.  Change events are collected and,
once the tree has been quiet for ``debounce_seconds``, one incremental
ingestion run publishes a new generation covering every change seen.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import Config
from .errors import CodegraphError
from .extractor import extractor_class_for
from .ingest import SKIP_DIRS, Ingestor
from .models import IngestionReport
from .store import GraphStore

logger = logging.getLogger(__name__)


class KBFileHandler(FileSystemEventHandler):
    """
    Watchdog event handler that batches changes into incremental runs.

    Parameters
    ----------
    ingestor:
        The :class:`~codegraph_kb.ingest.Ingestor` to drive.
    root:
        Directory being watched.
    debounce_seconds:
        Quiet period after the last relevant event before re-ingesting.
    on_update:
        Called with the :class:`IngestionReport` of each completed run.
    """

    def __init__(
        self,
        ingestor: Ingestor,
        root: str,
        debounce_seconds: float = 0.5,
        on_update: Optional[Callable[[IngestionReport], None]] = None,
    ) -> None:
        super().__init__()
        self._ingestor = ingestor
        self._root = os.path.abspath(root)
        self._debounce = debounce_seconds
        self._on_update = on_update
        self._pending: set[str] = set()
        self._lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._note(event.src_path)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._note(event.src_path)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._note(event.src_path)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._note(event.src_path)
            self._note(event.dest_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path: str) -> Optional[str]:
        try:
            rel = os.path.relpath(os.fsdecode(abs_path), self._root)
        except ValueError:
            return None
        if rel.startswith(".."):
            return None
        return rel.replace(os.sep, "/")

    def should_ignore(self, rel_path: str) -> bool:
        """True for paths inside skipped directories or with no extractor."""
        parts = rel_path.split("/")
        if any(p in SKIP_DIRS or p.startswith(".") for p in parts[:-1]):
            return True
        return extractor_class_for(rel_path) is None and bool(os.path.splitext(rel_path)[1])

    def _note(self, abs_path) -> None:
        rel_path = self._rel_path(abs_path)
        if rel_path is None or self.should_ignore(rel_path):
            return
        with self._lock:
            self._pending.add(rel_path)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self.flush)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pending(self) -> set[str]:
        with self._lock:
            return set(self._pending)

    def flush(self) -> Optional[IngestionReport]:
        """Run one incremental ingestion if any change is pending."""
        with self._lock:
            changed = sorted(self._pending)
            self._pending.clear()
            self._timer = None
        if not changed:
            return None
        with self._run_lock:
            logger.info("[watcher] %d changed file(s): %s", len(changed), ", ".join(changed[:5]))
            try:
                report = self._ingestor.ingest(self._root, incremental=True)
            except (CodegraphError, OSError) as exc:
                logger.warning("[watcher] Incremental ingestion failed: %s", exc)
                return None
        logger.info("[watcher] Published generation %s", report.generation_id)
        if self._on_update is not None:
            self._on_update(report)
        return report

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class KBWatcher:
    """
    High-level wrapper around a watchdog observer.

    Usage::

        watcher = KBWatcher("/path/to/project", GraphStore(".codegraph_kb/store"))
        watcher.start_background()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        root: str,
        store: GraphStore,
        config: Optional[Config] = None,
        debounce_seconds: float = 0.5,
        on_update: Optional[Callable[[IngestionReport], None]] = None,
    ) -> None:
        self._root = os.path.abspath(root)
        self._observer: Optional[Observer] = None
        self.handler = KBFileHandler(Ingestor(store, config), self._root,
                                     debounce_seconds, on_update)

    def start_background(self) -> None:
        """Start the observer thread and return immediately."""
        observer = Observer()
        observer.schedule(self.handler, self._root, recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("[watcher] Watching %s", self._root)

    def start(self) -> None:
        """Watch until interrupted."""
        self.start_background()
        try:
            while self._observer is not None and self._observer.is_alive():
                self._observer.join(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def stop(self) -> None:
        self.handler.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("[watcher] Stopped")
