"""
Main API for trove.

``KnowledgeBase`` ties the three stores together:

- writes go to the file store first, then the index, then (best effort)
  the vector index
- reads prefer the file and fall back to the index row
- search runs keyword, semantic or hybrid queries
- ``reconcile()`` and ``watch()`` repair drift from out-of-band edits

Example:
    kb = KnowledgeBase()
    note = kb.create("Sourdough starter", "Feed daily with equal parts...", tags=["baking"])
    results = kb.search("starter feeding")
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

from .config import StoreConfig, get_config_dir, load_or_create_config
from .embeddings import create_embedding_provider, safe_embed
from .errors import NotFoundError, ValidationError
from .file_store import FileStore
from .index_store import IndexStore
from .protocol import EmbeddingProvider, VectorIndexProtocol
from .reconciler import Reconciler, ReconcileStats
from .search import SEARCH_MODES, SearchService
from .types import (
    CONTENT_STATUSES,
    DEFAULT_CATEGORY,
    Note,
    NoteMetadata,
    NoteRow,
    SearchResult,
    VectorDocument,
    content_hash,
    embedding_text,
    utc_now,
)
from .watcher import Watcher

logger = logging.getLogger(__name__)

# Fields whose change alters the vector document
_EMBEDDED_FIELDS = ("title", "type")


class KnowledgeBase:
    """
    A knowledge store: markdown files, a SQLite index and a vector index.

    All public operations hold one re-entrant lock, so a watcher thread and
    caller threads never interleave inside an operation.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        file_store: Optional[FileStore] = None,
        index_store: Optional[IndexStore] = None,
        vector_index: Optional[VectorIndexProtocol] = None,
        embedder: Optional[EmbeddingProvider] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Defaults to TROVE_STORE_PATH or ~/.trove.
            config: Pre-loaded StoreConfig (skips config discovery)
            file_store: Injected file store
            index_store: Injected index store
            vector_index: Injected vector index
            embedder: Injected embedding provider
        """
        self._lock = threading.RLock()
        self._watcher: Optional[Watcher] = None

        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            store_dir = Path(store_path).expanduser().resolve() if store_path else get_config_dir()
            self._config = load_or_create_config(store_dir)

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._config.path)

        # --- Storage backends (injected or created from config) ---
        self._files = file_store or FileStore(self._config.knowledge_path)
        self._index = index_store or IndexStore(self._config.database_path)
        if vector_index is None:
            from .vector_index import ChromaVectorIndex
            vector_index = ChromaVectorIndex(
                self._config.vectors_path, dimension=self._config.dimension
            )
        self._vectors = vector_index
        self._embedder = embedder or create_embedding_provider(self._config)

        self._search = SearchService(self._index, self._vectors, self._files)
        self._reconciler = Reconciler(
            self._files,
            self._index,
            self._vectors,
            self._embedder,
            embed_timeout=self._config.embed_timeout,
        )

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def file_store(self) -> FileStore:
        return self._files

    @property
    def index_store(self) -> IndexStore:
        return self._index

    @property
    def vector_index(self) -> VectorIndexProtocol:
        return self._vectors

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(
        self,
        title: str,
        content: str = "",
        *,
        type: str = "note",
        tags: Optional[list[str]] = None,
        links: Optional[list[str]] = None,
        category: Optional[str] = None,
        **fields: Any,
    ) -> Note:
        """
        Create a new note with a fresh id.

        Extra keyword arguments are optional metadata fields
        (``source_url``, ``author``, ``gist``, ``status``, ``input_source``, ...).

        Raises:
            ValidationError: unknown type/status or empty title
        """
        now = utc_now()
        try:
            metadata = NoteMetadata(
                id=str(uuid.uuid4()),
                type=type,
                title=title,
                created=now,
                updated=now,
                tags=list(tags or []),
                links=list(links or []),
                category=category or DEFAULT_CATEGORY,
                **fields,
            )
        except TypeError as e:
            raise ValidationError(str(e)) from e
        return self.save(metadata, content)

    def save(self, metadata: NoteMetadata, content: str) -> Note:
        """
        Write a note through all three stores: file, index, then vector.

        Embedding failure is logged and leaves the note keyword-searchable;
        the next reconciliation retries it.
        """
        try:
            metadata.validate()
        except ValueError as e:
            raise ValidationError(str(e)) from e
        with self._lock:
            path = self._files.save(metadata, content)
            self._index.upsert_note(metadata, content, path, content_hash(content))
            self._embed(metadata, content)
            logger.info("Saved %s %s: %s", metadata.type, metadata.id, metadata.title)
            return Note(metadata=metadata, content=content, file_path=path)

    def update(
        self,
        id: str,
        content: Optional[str] = None,
        **changes: Any,
    ) -> Note:
        """
        Change a note's body and/or metadata fields.

        If the note's file has gone missing, the note is rebuilt from its
        index row and saved to a fresh file.

        Raises:
            NotFoundError: no note with this id
            ValidationError: the changed metadata is invalid
        """
        changes.pop("id", None)
        with self._lock:
            row = self._index.get_note(id)
            path = self._files.path_for(id) or (row.file_path if row else None)
            existing = self._files.read(path) if path else None
            if existing is not None and existing.id != id:
                existing = None
            if existing is None and row is None:
                raise NotFoundError("Note", id)

            try:
                if existing is not None:
                    note = self._files.update(existing.file_path, changes, content)
                    file_path = note.file_path
                else:
                    logger.warning("Note file missing for %s, rebuilding from index", id)
                    base = row.to_note()
                    metadata = dataclasses.replace(base.metadata, **changes, updated=utc_now())
                    body = base.content if content is None else content
                    file_path = self._files.save(metadata, body)
                    note = Note(metadata=metadata, content=body, file_path=file_path)
            except (TypeError, ValueError) as e:
                raise ValidationError(str(e)) from e

            self._index.upsert_note(
                note.metadata, note.content, file_path, content_hash(note.content)
            )
            if existing is None or content is not None or any(f in changes for f in _EMBEDDED_FIELDS):
                self._embed(note.metadata, note.content)
            logger.info("Updated %s: %s", id, ", ".join(sorted(changes)) or "content")
            return note

    def set_status(self, id: str, status: str) -> Note:
        """Move a note through its lifecycle (saved, read, archived)."""
        if status not in CONTENT_STATUSES:
            raise ValidationError(f"Unknown status: {status!r}")
        return self.update(id, status=status)

    def link(self, id_a: str, id_b: str) -> tuple[Note, Note]:
        """
        Link two notes to each other (both directions).

        Raises:
            NotFoundError: either note does not exist
            ValidationError: a note can't link to itself
        """
        if id_a == id_b:
            raise ValidationError("A note cannot link to itself")
        with self._lock:
            a = self.get(id_a)
            if a is None:
                raise NotFoundError("Note", id_a)
            b = self.get(id_b)
            if b is None:
                raise NotFoundError("Note", id_b)

            if id_b not in a.metadata.links:
                a = self.update(id_a, links=a.metadata.links + [id_b])
            if id_a not in b.metadata.links:
                b = self.update(id_b, links=b.metadata.links + [id_a])
            return a, b

    def delete(self, id: str) -> None:
        """
        Delete a note from the file store, then the index, then the vectors.

        Raises:
            NotFoundError: no note with this id
        """
        with self._lock:
            row = self._index.get_note(id)
            path = self._files.path_for(id) or (row.file_path if row else None)
            if path is None:
                raise NotFoundError("Note", id)
            self._files.remove(path)
            self._files.unregister(id)
            self._index.delete_note(id)
            try:
                self._vectors.remove(id)
            except Exception as e:
                logger.warning("Vector remove failed for %s: %s", id, e)
            logger.info("Deleted %s", id)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[Note]:
        """A note by id: from its file, else from the index row. None if unknown."""
        with self._lock:
            note = self._files.read_by_id(id)
            if note is not None and note.id == id:
                return note
            row = self._index.get_note(id)
            if row is None:
                return None
            note = self._files.read(row.file_path)
            if note is not None and note.id == id:
                return note
            logger.warning("Note file missing for %s (%s), using indexed copy", id, row.file_path)
            return row.to_note()

    def list(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
        category: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NoteRow]:
        """Index rows matching all given filters, newest first (at most 100)."""
        with self._lock:
            return self._index.list_notes(
                type=type,
                status=status,
                category=category,
                date_from=date_from,
                date_to=date_to,
                limit=limit,
                offset=offset,
            )

    def search(
        self,
        query: str,
        mode: str = "hybrid",
        type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SearchResult]:
        """
        Search notes.

        Semantic and hybrid modes embed the query first; if that fails the
        search falls back to keyword mode.
        """
        if mode not in SEARCH_MODES:
            raise ValidationError(f"Unknown search mode: {mode!r}")
        limit = self._config.default_limit if limit is None else limit
        with self._lock:
            if mode == "keyword":
                return self._search.keyword(query, type=type, limit=limit)

            vector = safe_embed(
                self._embedder, query, timeout=self._config.embed_timeout, context="query"
            )
            if vector is None:
                logger.warning("Query embedding unavailable, using keyword search")
                return self._search.keyword(query, type=type, limit=limit)
            if mode == "semantic":
                return self._search.semantic(query, vector, type=type, limit=limit)
            return self._search.hybrid(query, vector, type=type, limit=limit)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile(self) -> ReconcileStats:
        """Full reconciliation pass."""
        with self._lock:
            return self._reconciler.run()

    def handle_change(self, path: str | Path, kind: str) -> None:
        """Apply one file change event (watcher callback)."""
        with self._lock:
            self._reconciler.handle_change(path, kind)

    def watch(self) -> Watcher:
        """
        Start watching the note tree; changes are reconciled as they happen.

        Returns the running watcher. ``close()`` stops it.
        """
        with self._lock:
            if self._watcher is None:
                self._watcher = Watcher(
                    self._files.base_dir,
                    self.handle_change,
                    debounce=self._config.watch_debounce,
                    max_pending=self._config.watch_max_pending,
                    on_overflow=self.reconcile,
                )
                self._watcher.start()
            return self._watcher

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _embed(self, metadata: NoteMetadata, content: str) -> bool:
        """Best-effort vector write for a note."""
        text = embedding_text(metadata.title, content)
        vector = safe_embed(
            self._embedder, text, timeout=self._config.embed_timeout, context=metadata.id
        )
        if vector is None:
            return False
        try:
            self._vectors.upsert(VectorDocument(
                id=metadata.id,
                vector=vector,
                text=text,
                type=metadata.type,
                title=metadata.title,
            ))
        except Exception as e:
            logger.warning("Vector upsert failed for %s: %s", metadata.id, e)
            return False
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop the watcher, then close the stores once no operation holds them."""
        watcher, self._watcher = getattr(self, "_watcher", None), None
        if watcher is not None:
            # Outside the lock: stop() flushes into handle_change(), which takes it
            watcher.stop()

        with self._lock:
            if getattr(self, "_vectors", None) is not None:
                self._vectors.close()
                self._vectors = None
            if getattr(self, "_index", None) is not None:
                self._index.close()
                self._index = None

            # Remove ops log handler to avoid handler accumulation
            if getattr(self, "_ops_log_handler", None) is not None:
                from .logging_config import remove_ops_log
                remove_ops_log(self._ops_log_handler)
                self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass
