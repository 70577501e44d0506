"""
Vector similarity search over an EmbeddingStore.

Exhaustive scan: every candidate that survives the metadata filters is
scored by cosine similarity against the query vector. Scores can then be
down-weighted by document age (time decay) and, in hybrid search, fused
with a keyword-match score computed over the stored summaries.
"""

import logging
import math
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

from .config import SearchSettings
from .embedding_store import EmbeddingStore
from .errors import DocumentNotFound
from .types import (
    SearchFilter,
    SearchResult,
    TimeDecay,
    try_parse_timestamp,
    utc_now,
    vector_norm,
)

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were",
})

_SECONDS_PER_DAY = 86400


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of the angle between two vectors.

    Returns 0.0 when the lengths differ or either vector is empty or has zero norm.
    """
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = vector_norm(a)
    norm_b = vector_norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def decay_weight(date: str, now: datetime, decay: TimeDecay) -> float:
    """
    Age weight for a document date: ``max(exp(-days / half_life), min_weight)``.

    Future dates give a weight above 1. Unparseable dates take ``min_weight``.
    """
    doc_dt = try_parse_timestamp(date)
    if doc_dt is None:
        return decay.min_weight
    days_since = (now - doc_dt).total_seconds() / _SECONDS_PER_DAY
    factor = math.exp(-days_since / decay.half_life_days)
    return max(factor, decay.min_weight)


def extract_keywords(query: str) -> list[str]:
    """Lowercase whitespace tokens longer than two characters, minus stop words."""
    return [
        word for word in query.lower().split()
        if len(word) > 2 and word not in STOP_WORDS
    ]


def keyword_score(text: str, keywords: list[str]) -> float:
    """Fraction of ``keywords`` that occur as substrings of ``text``."""
    if not keywords:
        return 0.0
    lower = (text or "").lower()
    matches = sum(1 for keyword in keywords if keyword in lower)
    return matches / len(keywords)


class SimilaritySearch:
    """
    Ranks stored embeddings against a query vector.

    Example:
        search = SimilaritySearch(store)
        results = search.search(
            query_vector,
            filters=SearchFilter(document_types=("laboratory",)),
            time_decay=TimeDecay(half_life_days=30),
        )
    """

    def __init__(
        self,
        store: EmbeddingStore,
        *,
        settings: Optional[SearchSettings] = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._settings = settings or SearchSettings()
        self._now = now

    @property
    def store(self) -> EmbeddingStore:
        return self._store

    def default_decay(self) -> TimeDecay:
        """Time decay built from the configured half-life and floor."""
        return TimeDecay(
            enabled=True,
            half_life_days=self._settings.half_life_days,
            min_weight=self._settings.min_weight,
        )

    def search(
        self,
        query_vector: list[float],
        *,
        filters: Optional[SearchFilter] = None,
        threshold: Optional[float] = None,
        max_results: Optional[int] = None,
        time_decay: Optional[TimeDecay] = None,
    ) -> list[SearchResult]:
        """
        Find the stored documents most similar to ``query_vector``.

        Args:
            query_vector: Query embedding
            filters: Metadata constraints on the candidate set
            threshold: Minimum raw cosine similarity, applied before decay
            max_results: Result limit (default from settings)
            time_decay: Age down-weighting; None or disabled means none

        Returns:
            Results sorted by relevance_score, highest first
        """
        started = time.perf_counter()
        limit = max_results if max_results is not None else self._settings.max_results
        candidates = self._candidates(filters)
        now = self._now()

        results = []
        for document_id in candidates:
            if document_id not in self._store:
                continue
            record = self._store.get(document_id)
            if record.vector is None or record.metadata is None:
                continue

            similarity = cosine_similarity(query_vector, record.vector)
            if threshold is not None and similarity < threshold:
                continue

            relevance = similarity
            if time_decay is not None and time_decay.enabled:
                relevance = similarity * decay_weight(record.metadata.date, now, time_decay)

            results.append(SearchResult(
                document_id=document_id,
                similarity=similarity,
                relevance_score=relevance,
                metadata=record.metadata,
                excerpt=self._excerpt(record.metadata.summary),
            ))

        results.sort(key=lambda r: r.relevance_score, reverse=True)
        results = results[:max(limit, 0)]

        logger.debug("Vector search: %d candidates, %d results in %.2fms",
                     len(candidates), len(results), (time.perf_counter() - started) * 1000)
        return results

    def hybrid_search(
        self,
        query_text: str,
        query_vector: list[float],
        *,
        filters: Optional[SearchFilter] = None,
        threshold: Optional[float] = None,
        max_results: Optional[int] = None,
        time_decay: Optional[TimeDecay] = None,
    ) -> list[SearchResult]:
        """
        Vector search re-ranked by keyword overlap with the stored summaries.

        Fetches twice the requested number of vector results, then ranks by
        ``vector_weight × relevance + keyword_weight × keyword_score``.
        """
        limit = max_results if max_results is not None else self._settings.max_results
        vector_results = self.search(
            query_vector,
            filters=filters,
            threshold=threshold,
            max_results=limit * 2,
            time_decay=time_decay,
        )

        keywords = extract_keywords(query_text)
        vector_weight = self._settings.vector_weight
        kw_weight = self._settings.keyword_weight

        fused = []
        for result in vector_results:
            kw = keyword_score(result.metadata.summary, keywords)
            fused.append(SearchResult(
                document_id=result.document_id,
                similarity=result.similarity,
                relevance_score=result.relevance_score * vector_weight + kw * kw_weight,
                metadata=result.metadata,
                excerpt=result.excerpt,
                keyword_score=kw,
            ))

        fused.sort(key=lambda r: r.relevance_score, reverse=True)
        return fused[:max(limit, 0)]

    def find_similar_documents(self, document_id: str, **options) -> list[SearchResult]:
        """
        Documents most similar to a stored document, excluding itself.

        Accepts the same keyword options as search().

        Raises:
            DocumentNotFound: If the document has no stored vector
        """
        source = self._store.get_vector(document_id)
        if source is None:
            raise DocumentNotFound(document_id)
        results = self.search(source, **options)
        return [r for r in results if r.document_id != document_id]

    # Internals

    def _candidates(self, filters: Optional[SearchFilter]) -> list[str]:
        # Snapshot the id list; the store may change between calls
        all_ids = self._store.all_ids()
        if filters is None or filters.is_empty():
            return all_ids

        candidates = set(all_ids)
        if filters.document_types:
            candidates &= _union(self._store.by_type(t) for t in filters.document_types)
        if filters.date_range is not None:
            candidates &= set(self._store.by_date_range(
                filters.date_range.start, filters.date_range.end,
            ))
        if filters.tags:
            candidates &= _union(self._store.by_tag(t) for t in filters.tags)

        # Keep store order for stable ranking of equal scores
        return [doc_id for doc_id in all_ids if doc_id in candidates]

    def _excerpt(self, summary: str) -> str:
        summary = summary or ""
        length = self._settings.excerpt_length
        if len(summary) <= length:
            return summary
        return summary[:length] + "..."


def _union(groups: Iterable[list[str]]) -> set[str]:
    result: set[str] = set()
    for group in groups:
        result.update(group)
    return result
