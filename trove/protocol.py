"""
Protocol definitions for the pluggable parts of the engine.

- VectorIndexProtocol: the nearest-neighbour store (ChromaDB locally)
- EmbeddingProvider: the text -> vector capability injected into search
  and reconciliation

Structural subtyping: implementations don't inherit from these, which
keeps test fakes plain classes.
"""

from typing import Protocol, runtime_checkable

from .types import VectorDocument, VectorSearchResult


@runtime_checkable
class VectorIndexProtocol(Protocol):
    """
    Abstract vector search backend.

    Implemented by:
    - ChromaVectorIndex (local ChromaDB)
    - MockVectorIndex (tests)
    """

    @property
    def dimension(self) -> int: ...

    def upsert(self, document: VectorDocument) -> None:
        """Insert or replace by id. The vector must have ``dimension`` entries."""
        ...

    def search(self, vector: list[float], limit: int) -> list[VectorSearchResult]:
        """Up to ``limit`` nearest neighbours, most similar first."""
        ...

    def remove(self, id: str) -> None:
        """Remove by id. Unknown ids are a no-op."""
        ...

    def list_ids(self) -> list[str]: ...

    def count(self) -> int: ...

    def close(self) -> None: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider instance must be used for both indexing and querying
    to ensure consistent vectors.
    """

    @property
    def dimension(self) -> int:
        """
        The dimensionality of the embedding vectors.

        Must match the vector index's configured dimension.
        """
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Raises on failure; callers inside the engine go through
        ``embeddings.safe_embed`` which logs and absorbs errors.
        """
        ...


