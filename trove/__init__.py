"""
trove: a personal knowledge store.

Notes live as markdown files with YAML frontmatter. A SQLite index adds
filtering and full-text search, a ChromaDB index adds semantic search,
and a reconciler keeps both in line with the files.

Quick start:
    from trove import KnowledgeBase

    kb = KnowledgeBase()
    kb.create("Sourdough starter", "Feed daily...", tags=["baking"])
    for result in kb.search("starter"):
        print(result.score, result.note.metadata.title)
"""

from .api import KnowledgeBase
from .errors import NotFoundError, TroveError, ValidationError
from .reconciler import ReconcileStats
from .search import reciprocal_rank_fusion
from .types import Note, NoteMetadata, SearchResult

__version__ = "0.1.0"
__all__ = [
    "KnowledgeBase",
    "Note",
    "NoteMetadata",
    "NotFoundError",
    "ReconcileStats",
    "SearchResult",
    "TroveError",
    "ValidationError",
    "reciprocal_rank_fusion",
]
