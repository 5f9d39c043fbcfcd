"""
Tests for the ChromaDB vector index.

Each test uses its own persistent directory; Chroma's in-memory clients
share state within a process.
"""

import pytest

pytest.importorskip("chromadb")

from trove.errors import ValidationError
from trove.types import VectorDocument
from trove.vector_index import ChromaVectorIndex

DIM = 4


def _doc(id, vector, type="note", title=None):
    return VectorDocument(id=id, vector=vector, text=f"text of {id}", type=type, title=title or id)


@pytest.fixture
def index(tmp_path):
    idx = ChromaVectorIndex(tmp_path / "vectors", dimension=DIM)
    yield idx
    idx.close()


@pytest.mark.slow
class TestChromaVectorIndex:
    """upsert/search/remove against a real Chroma collection."""

    def test_nearest_first(self, index):
        """Hits come back nearest first, with their metadata."""
        index.upsert(_doc("x", [1.0, 0.0, 0.0, 0.0]))
        index.upsert(_doc("y", [0.0, 1.0, 0.0, 0.0]))
        index.upsert(_doc("z", [0.9, 0.1, 0.0, 0.0], type="article"))

        hits = index.search([1.0, 0.0, 0.0, 0.0], limit=3)

        assert [h.id for h in hits] == ["x", "z", "y"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[0].score > hits[1].score > hits[2].score
        assert hits[1].type == "article"
        assert hits[1].title == "z"
        assert hits[1].text == "text of z"

    def test_limit_larger_than_count(self, index):
        """Asking for more hits than vectors is fine."""
        index.upsert(_doc("x", [1.0, 0.0, 0.0, 0.0]))
        assert len(index.search([1.0, 0.0, 0.0, 0.0], limit=50)) == 1

    def test_empty_index(self, index):
        """An empty collection returns no hits."""
        assert index.search([1.0, 0.0, 0.0, 0.0], limit=5) == []

    def test_upsert_replaces(self, index):
        """Upserting an id replaces its vector and metadata."""
        index.upsert(_doc("x", [1.0, 0.0, 0.0, 0.0], title="Old"))
        index.upsert(_doc("x", [0.0, 1.0, 0.0, 0.0], title="New"))
        assert index.count() == 1
        [hit] = index.search([0.0, 1.0, 0.0, 0.0], limit=1)
        assert hit.title == "New"
        assert hit.score == pytest.approx(1.0)

    def test_dimension_enforced(self, index):
        """Vectors of the wrong size are rejected."""
        with pytest.raises(ValidationError):
            index.upsert(_doc("x", [1.0, 0.0]))
        with pytest.raises(ValidationError):
            index.search([1.0], limit=1)

    def test_remove_is_idempotent(self, index):
        """Removing missing ids is not an error."""
        index.upsert(_doc("x", [1.0, 0.0, 0.0, 0.0]))
        index.remove("x")
        index.remove("x")
        index.remove("never-existed")
        assert index.count() == 0

    def test_list_ids(self, index):
        """list_ids() returns every stored id."""
        index.upsert(_doc("a", [1.0, 0.0, 0.0, 0.0]))
        index.upsert(_doc("b", [0.0, 1.0, 0.0, 0.0]))
        assert sorted(index.list_ids()) == ["a", "b"]

    def test_zero_vectors(self, index):
        """All-zero vectors are stored and found."""
        index.upsert(_doc("a", [0.0] * DIM))
        index.upsert(_doc("b", [0.0] * DIM))
        hits = index.search([0.0] * DIM, limit=2)
        assert {h.id for h in hits} == {"a", "b"}
        assert all(h.score == pytest.approx(1.0) for h in hits)

    def test_persists_across_instances(self, tmp_path):
        """Vectors survive closing and reopening the collection."""
        first = ChromaVectorIndex(tmp_path / "v", dimension=DIM)
        first.upsert(_doc("a", [1.0, 0.0, 0.0, 0.0]))
        first.close()
        second = ChromaVectorIndex(tmp_path / "v", dimension=DIM)
        assert second.list_ids() == ["a"]
        second.close()


def test_invalid_dimension(tmp_path):
    """A non-positive dimension is refused."""
    with pytest.raises(ValidationError):
        ChromaVectorIndex(tmp_path / "v", dimension=0)
