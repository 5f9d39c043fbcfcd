"""
Reconciliation: bring the index store and vector index back in line with
the file store.

The files are the truth. A full pass walks every note file, compares the
body hash with the indexed row, and repairs whatever differs:

- no row: added (index row, then best-effort embedding)
- hash differs: updated (index row, then re-embed)
- same hash, different path: updated (index row only; the vector is still valid)
- otherwise: skipped

Rows whose id was not seen in the walk are deleted from both indexes, and
vector entries with no index row are pruned. Running a pass twice with no
file changes in between is a no-op the second time.
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union

from .embeddings import safe_embed
from .file_store import MalformedNoteError, FileStore, iter_note_files, load_note
from .index_store import IndexStore
from .protocol import EmbeddingProvider, VectorIndexProtocol
from .types import Note, VectorDocument, content_hash, embedding_text

logger = logging.getLogger(__name__)

CHANGE_KINDS = ("created", "modified", "deleted")


@dataclass
class ReconcileStats:
    """
    Outcome counts of a reconciliation pass.

    ``scanned`` counts readable note files. ``unreadable`` files are
    counted separately and are not part of ``scanned``. ``embedded``
    counts vectors written for notes that were otherwise consistent but
    had no vector (an earlier embedding failed).
    """
    scanned: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    unreadable: int = 0
    orphans_removed: int = 0
    embedded: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Reconciler:
    """Repairs the derived stores from the file store."""

    def __init__(
        self,
        file_store: FileStore,
        index_store: IndexStore,
        vector_index: VectorIndexProtocol,
        embedder: EmbeddingProvider,
        embed_timeout: Optional[float] = None,
    ):
        self._files = file_store
        self._index = index_store
        self._vectors = vector_index
        self._embedder = embedder
        self._embed_timeout = embed_timeout

    # -------------------------------------------------------------------------
    # Full pass
    # -------------------------------------------------------------------------

    def run(self) -> ReconcileStats:
        """Walk every note file and repair the derived stores."""
        stats = ReconcileStats()
        base_dir = self._files.base_dir
        logger.info("Reconciliation started: %s", base_dir)

        vector_ids = self._vector_ids()
        seen: dict[str, Path] = {}

        for path in iter_note_files(base_dir):
            try:
                note = load_note(path)
            except (OSError, UnicodeDecodeError, MalformedNoteError) as e:
                logger.warning("Skipping unreadable note file %s: %s", path, e)
                stats.unreadable += 1
                continue

            stats.scanned += 1
            if note.id in seen:
                logger.warning(
                    "Duplicate note id %s in %s (already at %s), ignoring",
                    note.id, path, seen[note.id],
                )
                stats.skipped += 1
                continue
            seen[note.id] = path

            try:
                outcome = self._apply(note, path, vector_ids, stats)
            except Exception as e:
                logger.warning("Failed to reconcile %s: %s", path, e)
                stats.failed += 1
                continue
            setattr(stats, outcome, getattr(stats, outcome) + 1)
            logger.debug("Reconciled %s (%s): %s", note.id, path, outcome)

        for id in self._index.iter_ids():
            if id in seen:
                continue
            self._drop(id)
            vector_ids.discard(id)
            stats.deleted += 1
            logger.debug("Reconciled %s: deleted", id)

        for id in sorted(vector_ids - set(self._index.iter_ids())):
            self._remove_vector(id)
            stats.orphans_removed += 1
            logger.debug("Pruned orphan vector %s", id)

        logger.info("Reconciliation finished: %s", stats.to_dict())
        return stats

    # -------------------------------------------------------------------------
    # Targeted passes (driven by the watcher)
    # -------------------------------------------------------------------------

    def reconcile_file(self, path: Union[str, Path]) -> str:
        """
        Reconcile one file.

        Returns:
            The outcome: "added", "updated", "skipped", "unreadable",
            "duplicate" or "missing"
        """
        path = Path(path)
        if not path.is_file():
            return "missing"
        try:
            note = load_note(path)
        except (OSError, UnicodeDecodeError, MalformedNoteError) as e:
            logger.warning("Skipping unreadable note file %s: %s", path, e)
            return "unreadable"

        owner = self._files.path_for(note.id)
        if owner is not None and Path(owner) != path and self._holds(Path(owner), note.id):
            logger.warning(
                "Duplicate note id %s in %s (already at %s), ignoring", note.id, path, owner
            )
            return "duplicate"

        vector_ids = self._vector_ids()
        outcome = self._apply(note, path, vector_ids, ReconcileStats())
        logger.debug("Reconciled %s (%s): %s", note.id, path, outcome)
        return outcome

    def remove_file(self, path: Union[str, Path]) -> bool:
        """
        Mirror the deletion of one file into the derived stores.

        Nothing is deleted if the note indexed at this path now lives in
        another existing file (it was moved).

        Returns:
            True if a note was removed
        """
        path = Path(path)
        if path.is_file():
            # Recreated before the event was handled
            return False
        row = self._index.get_note_by_file_path(str(path))
        self._files.unregister_file(path)
        if row is None:
            return False

        current = self._files.path_for(row.id)
        if current is not None and Path(current) != path and self._holds(Path(current), row.id):
            logger.debug("Note %s moved to %s, not removing", row.id, current)
            return False

        self._drop(row.id)
        logger.debug("Reconciled %s (%s): deleted", row.id, path)
        return True

    def handle_change(self, path: Union[str, Path], kind: str) -> None:
        """
        Watcher callback: apply one change event.

        ``kind`` is "created", "modified" or "deleted". The file's current
        state decides what happens, so stale or reordered events are safe.
        """
        if kind not in CHANGE_KINDS:
            raise ValueError(f"Unknown change kind: {kind!r}")
        path = Path(path)
        try:
            if path.is_file():
                self.reconcile_file(path)
            else:
                self.remove_file(path)
        except Exception as e:
            logger.warning("Failed to apply %s event for %s: %s", kind, path, e)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _apply(self, note: Note, path: Path, vector_ids: set[str], stats: ReconcileStats) -> str:
        """Reconcile one parsed note. Returns the outcome bucket name."""
        meta = note.metadata
        digest = content_hash(note.content)
        row = self._index.get_note(meta.id)
        self._files.register_file(meta.id, path)

        if row is None:
            self._index.upsert_note(meta, note.content, str(path), digest)
            self._embed(note, vector_ids, stats)
            return "added"

        if row.content_hash != digest:
            self._index.upsert_note(meta, note.content, str(path), digest)
            self._embed(note, vector_ids, stats)
            return "updated"

        if row.file_path != str(path):
            self._index.upsert_note(meta, note.content, str(path), digest)
            return "updated"

        if meta.id not in vector_ids:
            if self._embed(note, vector_ids, stats):
                stats.embedded += 1
        return "skipped"

    def _embed(self, note: Note, vector_ids: set[str], stats: ReconcileStats) -> bool:
        """Best-effort embed and vector upsert. False if no vector was written."""
        meta = note.metadata
        text = embedding_text(meta.title, note.content)
        vector = safe_embed(
            self._embedder, text, timeout=self._embed_timeout, context=meta.id
        )
        if vector is None:
            return False
        try:
            self._vectors.upsert(VectorDocument(
                id=meta.id, vector=vector, text=text, type=meta.type, title=meta.title,
            ))
        except Exception as e:
            logger.warning("Vector upsert failed for %s: %s", meta.id, e)
            return False
        vector_ids.add(meta.id)
        return True

    def _drop(self, id: str) -> None:
        """Remove an id from the index, the vector index and the file-store index."""
        self._index.delete_note(id)
        self._remove_vector(id)
        self._files.unregister(id)

    def _remove_vector(self, id: str) -> None:
        try:
            self._vectors.remove(id)
        except Exception as e:
            logger.warning("Vector remove failed for %s: %s", id, e)

    def _vector_ids(self) -> set[str]:
        try:
            return set(self._vectors.list_ids())
        except Exception as e:
            logger.warning("Could not list vector ids: %s", e)
            return set()

    @staticmethod
    def _holds(path: Path, id: str) -> bool:
        """True if path is a readable note file with this id."""
        try:
            return path.is_file() and load_note(path).id == id
        except (OSError, UnicodeDecodeError, MalformedNoteError):
            return False
