"""
Vector index using ChromaDB.

One persistent collection holds one entry per note id: the embedding, the
text that was embedded (as the Chroma document), and ``type``/``title``
as metadata for filtering and display.

Distances are squared L2; the similarity score is ``1 / (1 + distance)``,
which is monotonic and stays finite for zero vectors.
"""

import logging
from pathlib import Path
from typing import Optional

import chromadb
from chromadb.config import Settings

from .config import DEFAULT_DIMENSION
from .errors import ValidationError
from .types import VectorDocument, VectorSearchResult

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "notes"


class ChromaVectorIndex:
    """
    Persistent ChromaDB-backed vector index.

    The dimension is fixed per instance; every upserted or queried vector
    must match it.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        dimension: int = DEFAULT_DIMENSION,
        collection: str = DEFAULT_COLLECTION,
    ):
        """
        Args:
            path: Directory for the Chroma database; None for an in-memory index
            dimension: Length of every vector
            collection: Collection name
        """
        if dimension <= 0:
            raise ValidationError(f"Invalid vector dimension: {dimension}")
        self._dimension = dimension
        settings = Settings(anonymized_telemetry=False)
        if path is None:
            self._client = chromadb.EphemeralClient(settings=settings)
        else:
            Path(path).mkdir(parents=True, exist_ok=True)
            self._client = chromadb.PersistentClient(path=str(path), settings=settings)
        self._collection = self._client.get_or_create_collection(
            name=collection,
            metadata={"hnsw:space": "l2"},
        )
        logger.info(
            "Vector index initialized: %s (%d vectors, dim=%d)",
            path or "<memory>", self._collection.count(), dimension,
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    def _check_dimension(self, vector: list[float]) -> None:
        if len(vector) != self._dimension:
            raise ValidationError(
                f"Vector dimension mismatch: got {len(vector)}, expected {self._dimension}"
            )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert(self, document: VectorDocument) -> None:
        """Insert or replace the entry for ``document.id``."""
        self._check_dimension(document.vector)
        self._collection.upsert(
            ids=[document.id],
            embeddings=[list(document.vector)],
            documents=[document.text],
            metadatas=[{"type": document.type, "title": document.title}],
        )

    def remove(self, id: str) -> None:
        """Remove an entry. Unknown ids are a no-op."""
        existing = self._collection.get(ids=[id], include=[])["ids"]
        if existing:
            self._collection.delete(ids=[id])

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def search(self, vector: list[float], limit: int) -> list[VectorSearchResult]:
        """Up to ``limit`` nearest entries, most similar first."""
        self._check_dimension(vector)
        total = self._collection.count()
        n = min(int(limit), total)
        if n <= 0:
            return []

        results = self._collection.query(
            query_embeddings=[list(vector)],
            n_results=n,
            include=["metadatas", "documents", "distances"],
        )
        ids = (results.get("ids") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        documents = (results.get("documents") or [[]])[0]

        hits = []
        for i, id in enumerate(ids):
            meta = metadatas[i] or {}
            hits.append(VectorSearchResult(
                id=id,
                score=1.0 / (1.0 + max(0.0, float(distances[i]))),
                type=str(meta.get("type", "")),
                title=str(meta.get("title", "")),
                text=documents[i] or "",
            ))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def list_ids(self) -> list[str]:
        """Every id in the index."""
        return list(self._collection.get(include=[])["ids"])

    def count(self) -> int:
        return self._collection.count()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release the client. Chroma persists on write, so nothing is flushed here."""
        self._collection = None
        self._client = None
