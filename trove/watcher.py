"""
File watcher for the note tree.

Watches ``base_dir`` with watchdog and forwards changes to a callback as
``callback(path, kind)`` where kind is "created", "modified" or "deleted".

Events are debounced: each event (re)starts a timer, and when the tree
has been quiet for ``debounce`` seconds the pending set is flushed. Events
for the same path coalesce to one (the latest kind wins). If more than
``max_pending`` distinct paths pile up, the pending set is dropped and a
single ``on_overflow()`` call (normally a full reconciliation) replaces
them, so a burst never queues unboundedly. Deleting or moving a whole
directory also schedules that full pass, since watchdog may report it as
one directory event with nothing for the files inside.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .file_store import NOTE_SUFFIX, iter_note_files

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Path, str], None]


def is_note_path(path: Path) -> bool:
    """Markdown files that aren't hidden (editor swap and temp files are)."""
    return path.suffix == NOTE_SUFFIX and not path.name.startswith(".")


def _is_hidden(path: str) -> bool:
    return Path(path).name.startswith(".")


class Watcher(FileSystemEventHandler):
    """Debounced, coalescing watchdog handler for note files."""

    def __init__(
        self,
        base_dir: Union[str, Path],
        callback: ChangeCallback,
        debounce: float = 0.5,
        max_pending: int = 500,
        on_overflow: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            base_dir: Directory to watch (recursively)
            callback: Called once per changed path after the debounce window
            debounce: Quiet period in seconds before pending changes are flushed
            max_pending: Distinct pending paths before falling back to on_overflow
            on_overflow: Called instead of per-path callbacks after an overflow
        """
        super().__init__()
        self.base_dir = Path(base_dir)
        self.callback = callback
        self.debounce = debounce
        self.max_pending = max_pending
        self.on_overflow = on_overflow

        self._pending: dict[Path, str] = {}
        self._overflowed = False
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._observer: Optional[Observer] = None

        # Statistics
        self.events_received = 0
        self.changes_dispatched = 0
        self.overflows = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start watching in a background observer thread."""
        if self._observer is not None:
            return
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(self, str(self.base_dir), recursive=True)
        self._observer.start()
        logger.info("Watching %s (debounce %.2fs)", self.base_dir, self.debounce)

    def stop(self) -> None:
        """Stop watching and flush whatever is still pending."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
            logger.info("Stopped watching %s", self.base_dir)
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self.flush()

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # -------------------------------------------------------------------------
    # watchdog events
    # -------------------------------------------------------------------------

    def on_created(self, event):
        if not event.is_directory:
            self.record(Path(event.src_path), "created")
        elif not _is_hidden(event.src_path) and any(iter_note_files(Path(event.src_path))):
            # A populated directory moved in from outside the tree
            self.request_full_pass(f"directory added: {event.src_path}")

    def on_modified(self, event):
        if not event.is_directory:
            self.record(Path(event.src_path), "modified")

    def on_deleted(self, event):
        if not event.is_directory:
            self.record(Path(event.src_path), "deleted")
        elif not _is_hidden(event.src_path):
            self.request_full_pass(f"directory deleted: {event.src_path}")

    def on_moved(self, event):
        """A move is a delete of the source and a create of the destination.

        Directory moves may arrive as one event with no per-file events,
        so they fall back to a full pass.
        """
        if event.is_directory:
            if not (_is_hidden(event.src_path) and _is_hidden(event.dest_path)):
                self.request_full_pass(f"directory moved: {event.src_path}")
            return
        self.record(Path(event.src_path), "deleted")
        self.record(Path(event.dest_path), "created")

    # -------------------------------------------------------------------------
    # Coalescing
    # -------------------------------------------------------------------------

    def record(self, path: Path, kind: str) -> None:
        """Queue a change and restart the debounce timer."""
        if not is_note_path(path):
            return
        with self._lock:
            self.events_received += 1
            if not self._overflowed:
                self._pending[path] = kind
                if len(self._pending) > self.max_pending:
                    logger.warning(
                        "More than %d pending changes, falling back to a full pass",
                        self.max_pending,
                    )
                    self._pending.clear()
                    self._overflowed = True
            self._restart_timer()

    def request_full_pass(self, reason: str) -> None:
        """Replace whatever is pending with one on_overflow() call."""
        with self._lock:
            self.events_received += 1
            if not self._overflowed:
                logger.info("Scheduling a full pass (%s)", reason)
            self._pending.clear()
            self._overflowed = True
            self._restart_timer()

    def _restart_timer(self) -> None:
        # Caller holds self._lock
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(self.debounce, self.flush)
        self._timer.daemon = True
        self._timer.start()

    def flush(self) -> int:
        """
        Dispatch pending changes now.

        Creates and modifications go before deletions, so a file moved
        within the tree is seen at its new path before the old path is
        dropped.

        Returns:
            Number of callbacks made (an overflow counts as one)
        """
        with self._lock:
            pending = self._pending
            overflowed = self._overflowed
            self._pending = {}
            self._overflowed = False
            self._timer = None

        if overflowed:
            self.overflows += 1
            if self.on_overflow is not None:
                try:
                    self.on_overflow()
                except Exception as e:
                    logger.warning("Full pass after overflow failed: %s", e)
            return 1

        ordered = sorted(pending.items(), key=lambda item: item[1] == "deleted")
        for path, kind in ordered:
            try:
                self.callback(path, kind)
            except Exception as e:
                logger.warning("Change handler failed for %s (%s): %s", path, kind, e)
            self.changes_dispatched += 1
        if ordered:
            logger.debug("Dispatched %d change(s)", len(ordered))
        return len(ordered)
