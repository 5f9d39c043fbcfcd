"""
Keyword, semantic and hybrid search.

Keyword search is SQLite FTS5 over the index store. Semantic search is
nearest-neighbour lookup in the vector index. Hybrid search fuses the two
ranked lists with Reciprocal Rank Fusion, which needs only ranks, so the
incomparable bm25 and vector scores never have to be normalised.

Every hit is resolved to a full note: from its file when the file is
present and still holds that id, otherwise from the index row's copy of
the content.
"""

import logging
from typing import Iterable, Optional

from .file_store import FileStore
from .index_store import IndexStore
from .protocol import VectorIndexProtocol
from .types import NoteRow, SearchResult

logger = logging.getLogger(__name__)

# RRF smoothing constant; damps the weight of the very top ranks
RRF_K = 60

KEYWORD_SCORE = 1.0

SEARCH_MODES = ("keyword", "semantic", "hybrid")


def reciprocal_rank_fusion(*ranked_lists: Iterable[str], k: int = RRF_K) -> list[tuple[str, float]]:
    """
    Fuse ranked id lists into one ranking.

    Each id scores ``sum(1 / (k + rank))`` over the lists it appears in,
    with 1-based ranks. Results are sorted by score, highest first; ties
    keep first-seen order.

    >>> reciprocal_rank_fusion(["A", "B"], ["B", "C"])[0][0]
    'B'
    """
    scores: dict[str, float] = {}
    for ranked in ranked_lists:
        seen = set()
        for rank, id in enumerate(ranked, start=1):
            if id in seen:
                continue
            seen.add(id)
            scores[id] = scores.get(id, 0.0) + 1.0 / (k + rank)
    # sorted() is stable, so equal scores stay in insertion order
    return sorted(scores.items(), key=lambda item: item[1], reverse=True)


class SearchService:
    """Composes the index store and vector index into ranked note results."""

    def __init__(
        self,
        index_store: IndexStore,
        vector_index: VectorIndexProtocol,
        file_store: FileStore,
    ):
        self._index = index_store
        self._vectors = vector_index
        self._files = file_store

    # -------------------------------------------------------------------------
    # Modes
    # -------------------------------------------------------------------------

    def keyword(self, query: str, type: Optional[str] = None, limit: int = 10) -> list[SearchResult]:
        """FTS search in store order, each with a uniform score."""
        rows = self._index.search_fts(query, type=type, limit=limit)
        results = []
        for row in rows:
            highlights = [row.snippet] if row.snippet else []
            results.append(self._resolve(row, KEYWORD_SCORE, highlights))
        return results

    def semantic(
        self,
        query: str,
        vector: list[float],
        type: Optional[str] = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """
        Nearest-neighbour search with an already-embedded query.

        ``query`` is not used for ranking; it is accepted so all three
        modes share one call shape. Hits whose id has no index row are
        skipped.
        """
        hits = self._vector_candidates(vector, type, limit)
        results = []
        for hit in hits:
            row = self._index.get_note(hit.id)
            if row is None:
                logger.debug("Skipping dangling vector entry %s", hit.id)
                continue
            results.append(self._resolve(row, hit.score))
            if len(results) >= limit:
                break
        return results

    def hybrid(
        self,
        query: str,
        vector: list[float],
        type: Optional[str] = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """
        Keyword and semantic candidates (``limit * 2`` each), fused with RRF.

        Vector ranks are counted after the type filter is applied.
        """
        if limit <= 0:
            return []
        fetch = limit * 2
        fts_rows = self._index.search_fts(query, type=type, limit=fetch)
        vector_hits = self._vector_candidates(vector, type, fetch)

        rows = {row.id: row for row in fts_rows}
        fused = reciprocal_rank_fusion(
            [row.id for row in fts_rows],
            [hit.id for hit in vector_hits],
        )

        results = []
        for id, score in fused:
            row = rows.get(id) or self._index.get_note(id)
            if row is None:
                logger.debug("Skipping dangling vector entry %s", id)
                continue
            highlights = [row.snippet] if row.snippet else []
            results.append(self._resolve(row, score, highlights))
            if len(results) >= limit:
                break
        return results

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _vector_candidates(self, vector: list[float], type: Optional[str], limit: int):
        """Vector hits, type-filtered, truncated to limit.

        Over-fetches when filtering so the filter doesn't starve the result.
        """
        if limit <= 0:
            return []
        fetch = limit * 2 if type else limit
        hits = self._vectors.search(vector, fetch)
        if type:
            hits = [h for h in hits if h.type == type]
        return hits[:limit]

    def _resolve(self, row: NoteRow, score: float, highlights: Optional[list[str]] = None) -> SearchResult:
        """Full note for a row: from its file, else from the row itself."""
        note = self._files.read(row.file_path)
        if note is None or note.id != row.id:
            logger.warning(
                "Note file missing for %s (%s), using indexed copy", row.id, row.file_path
            )
            note = row.to_note()
        return SearchResult(note=note, score=score, highlights=list(highlights or []))
