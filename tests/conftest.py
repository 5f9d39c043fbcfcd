"""
Shared pytest fixtures for trove tests.

Provides a deterministic embedding provider and an in-memory vector index
so tests never need a network or ChromaDB.
"""

import hashlib
import math
from pathlib import Path
from typing import Optional

import pytest

from trove.api import KnowledgeBase
from trove.file_store import FileStore
from trove.index_store import IndexStore
from trove.reconciler import Reconciler
from trove.types import NoteMetadata, VectorDocument, VectorSearchResult

MOCK_DIMENSION = 16


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash. Counts calls, and
    can be told to fail (every call, or calls whose text contains a marker).
    """

    def __init__(self, dimension: int = MOCK_DIMENSION):
        self._dimension = dimension
        self.embed_calls = 0
        self.texts: list[str] = []
        self.fail = False
        self.fail_on: Optional[str] = None
        self.vectors: dict[str, list[float]] = {}

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        self.texts.append(text)
        if self.fail or (self.fail_on and self.fail_on in text):
            raise RuntimeError("embedding service unavailable")
        if text in self.vectors:
            return list(self.vectors[text])
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i + 2], 16) / 255.0 for i in range(0, 2 * self._dimension, 2)][:self._dimension]


class MockVectorIndex:
    """In-memory vector index with L2 distance."""

    def __init__(self, dimension: int = MOCK_DIMENSION):
        self._dimension = dimension
        self.docs: dict[str, VectorDocument] = {}
        self.closed = False

    @property
    def dimension(self) -> int:
        return self._dimension

    def upsert(self, document: VectorDocument) -> None:
        if len(document.vector) != self._dimension:
            raise ValueError("dimension mismatch")
        self.docs[document.id] = document

    def search(self, vector: list[float], limit: int) -> list[VectorSearchResult]:
        scored = []
        for doc in self.docs.values():
            distance = math.dist(vector, doc.vector) ** 2
            scored.append(VectorSearchResult(
                id=doc.id, score=1.0 / (1.0 + distance), type=doc.type,
                title=doc.title, text=doc.text,
            ))
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:limit]

    def remove(self, id: str) -> None:
        self.docs.pop(id, None)

    def list_ids(self) -> list[str]:
        return list(self.docs)

    def count(self) -> int:
        return len(self.docs)

    def close(self) -> None:
        self.closed = True


def make_meta(
    id: str = "note-1",
    title: str = "Hello",
    type: str = "note",
    created: str = "2024-01-15T10:00:00.000Z",
    **fields,
) -> NoteMetadata:
    """NoteMetadata with sensible defaults for tests."""
    fields.setdefault("updated", created)
    return NoteMetadata(id=id, type=type, title=title, created=created, **fields)


def write_raw(path: Path, text: str) -> Path:
    """Write a file out of band, as a user editing the tree would."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def embedder():
    return MockEmbeddingProvider()


@pytest.fixture
def vector_index():
    return MockVectorIndex()


@pytest.fixture
def knowledge_dir(tmp_path):
    return tmp_path / "knowledge"


@pytest.fixture
def file_store(knowledge_dir):
    return FileStore(knowledge_dir)


@pytest.fixture
def index_store(tmp_path):
    store = IndexStore(tmp_path / "trove.db")
    yield store
    store.close()


@pytest.fixture
def reconciler(file_store, index_store, vector_index, embedder):
    return Reconciler(file_store, index_store, vector_index, embedder)


@pytest.fixture
def kb(tmp_path, file_store, index_store, vector_index, embedder):
    """KnowledgeBase over real file/index stores and mock vectors/embeddings."""
    knowledge = KnowledgeBase(
        tmp_path,
        file_store=file_store,
        index_store=index_store,
        vector_index=vector_index,
        embedder=embedder,
    )
    yield knowledge
    knowledge.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (real filesystem observers, ChromaDB)"
    )
