"""
Three-stage document search over raw document metadata.

Stage 1 keeps documents in the requested categories.  Stage 2 scores the
survivors against the substantive (non-temporal) search terms using each
document's medical-term list and tags.  Stage 3 runs only when the query
contains temporal vocabulary ("latest", "recent", "historical") and
narrows the result set by document date.

Documents are plain mappings as produced by the document store:

    {
        "id": "doc1",
        "content": {"title": "Blood Test Results", "summary": "..."},
        "metadata": {"category": "laboratory", "tags": ["blood"]},
        "medicalTerms": ["blood", "glucose"],
        "created_at": "2024-01-15T10:00:00Z",
    }
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from .config import TermSearchSettings
from .errors import InvalidSearchInput
from .types import try_parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Top-level date fields, in order of preference; metadata.date is the last resort
DATE_FIELDS = ("created_at", "date", "timestamp", "createdAt")

EXACT_TERM_SCORE = 2.0
PARTIAL_TERM_SCORE = 1.0
TAG_SCORE = 1.5
CATEGORY_FALLBACK_RELEVANCE = 0.5

LATEST_BOOST = 0.5
RECENT_BOOST = 0.3
RECENT_FALLBACK_BOOST = 0.2
CLASSIFY_LATEST_FRACTION = 0.1
HALF = 0.5

PREVIEW_RELEVANCE = 0.8
PREVIEW_LENGTH = 200


# -----------------------------------------------------------------------------
# Document accessors
# -----------------------------------------------------------------------------

def document_id(doc: Mapping) -> str:
    return str(doc.get("id", ""))


def document_metadata(doc: Mapping) -> Mapping:
    metadata = doc.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def document_category(doc: Mapping) -> str:
    return document_metadata(doc).get("category") or "unknown"


def document_date(doc: Mapping) -> Optional[datetime]:
    """First parseable date among the known date fields, or None."""
    for name in DATE_FIELDS:
        dt = try_parse_timestamp(doc.get(name))
        if dt is not None:
            return dt
    return try_parse_timestamp(document_metadata(doc).get("date"))


def document_title(doc: Mapping) -> str:
    content = doc.get("content")
    if isinstance(content, Mapping) and content.get("title"):
        return str(content["title"])
    return f"Document {document_id(doc)}"


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [v for v in value if isinstance(v, str) and v]


def _medical_terms(doc: Mapping) -> list[str]:
    terms = doc.get("medicalTerms")
    if terms is None:
        terms = doc.get("medical_terms")
    return _string_list(terms)


# -----------------------------------------------------------------------------
# Query and results
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class TermQuery:
    """Validated search input."""
    terms: tuple[str, ...]
    document_types: Optional[tuple[str, ...]] = None
    include_content: bool = False
    limit: Optional[int] = None
    threshold: Optional[float] = None

    @classmethod
    def from_params(cls, params: Any) -> "TermQuery":
        """
        Build a query from tool-call parameters.

        Accepts both ``documentTypes``/``includeContent`` and the snake_case
        spellings.

        Raises:
            InvalidSearchInput: If terms are missing, empty, or not strings
        """
        if not isinstance(params, Mapping):
            raise InvalidSearchInput("search parameters must be an object")
        terms = params.get("terms")
        if not isinstance(terms, (list, tuple)) or not terms:
            raise InvalidSearchInput("search terms are required and must be an array")
        if not all(isinstance(t, str) for t in terms):
            raise InvalidSearchInput("search terms must be strings")
        cleaned = tuple(t.strip() for t in terms if t.strip())
        if not cleaned:
            raise InvalidSearchInput("search terms must not be blank")

        types = params.get("documentTypes", params.get("document_types"))
        if types is not None and not isinstance(types, (list, tuple)):
            raise InvalidSearchInput("documentTypes must be an array")

        limit = params.get("limit")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise InvalidSearchInput("limit must be a positive integer")
        threshold = params.get("threshold")
        if threshold is not None and (isinstance(threshold, bool) or not isinstance(threshold, (int, float))):
            raise InvalidSearchInput("threshold must be a number")

        return cls(
            terms=cleaned,
            document_types=tuple(str(t) for t in types) if types else None,
            include_content=bool(params.get("includeContent", params.get("include_content", False))),
            limit=limit,
            threshold=float(threshold) if threshold is not None else None,
        )


@dataclass
class TermMatch:
    """A document that survived the pipeline, with its score and match labels."""
    document: Mapping
    relevance: float
    matched_terms: list[str] = field(default_factory=list)
    temporal_class: Optional[str] = None

    @property
    def document_id(self) -> str:
        return document_id(self.document)

    def preview(self) -> Optional[str]:
        """Content preview for highly relevant matches, None otherwise."""
        content = self.document.get("content")
        if self.relevance <= PREVIEW_RELEVANCE or not content:
            return None
        if isinstance(content, str):
            if len(content) <= PREVIEW_LENGTH:
                return content
            return content[:PREVIEW_LENGTH] + "..."
        if isinstance(content, Mapping):
            return content.get("summary") or "Content available"
        return None

    def to_dict(self, include_content: bool = False) -> dict:
        """JSON form used at the tool boundary."""
        data: dict[str, Any] = {
            "documentId": self.document_id,
            "title": document_title(self.document),
            "category": document_category(self.document),
            "relevance": self.relevance,
            "matchedTerms": list(self.matched_terms),
        }
        if self.temporal_class is not None:
            data["temporalClass"] = self.temporal_class
        if include_content:
            preview = self.preview()
            if preview is not None:
                data["preview"] = preview
        return data


@dataclass
class _Dated:
    match: TermMatch
    date: Optional[datetime]


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------

class TermSearchPipeline:
    """
    Category, term, and temporal search over document metadata.

    Example:
        pipeline = TermSearchPipeline()
        matches = pipeline.search(documents, ["latest", "heart"],
                                  document_types=["cardiology"])
        matches[0].matched_terms   # ["heart", "tag:heart", "temporal:latest"]
    """

    def __init__(
        self,
        settings: Optional[TermSearchSettings] = None,
        *,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or TermSearchSettings()
        self._temporal_vocabulary = {t.lower() for t in self._settings.temporal_terms}
        self._now = now

    @property
    def settings(self) -> TermSearchSettings:
        return self._settings

    def is_temporal(self, term: str) -> bool:
        return term.lower() in self._temporal_vocabulary

    def search(
        self,
        documents: Sequence[Mapping],
        terms: Sequence[str],
        *,
        document_types: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> list[TermMatch]:
        """
        Run all three stages and return the ranked matches.

        Args:
            documents: Full document corpus (also the reference set for
                temporal classification)
            terms: Search terms; temporal vocabulary and substantive terms mixed
            document_types: Categories to keep; None or empty keeps all
            limit: Maximum matches (default from settings)
            threshold: Minimum relevance; enforced only when the
                ``enforce_threshold`` setting is on

        Raises:
            InvalidSearchInput: If terms is empty
        """
        if not terms:
            raise InvalidSearchInput("search terms are required and must be an array")
        limit = limit or self._settings.default_limit
        threshold = threshold if threshold is not None else self._settings.default_threshold

        temporal = [t for t in terms if self.is_temporal(t)]
        substantive = [t for t in terms if not self.is_temporal(t)]
        logger.debug("Term search: %d documents, substantive=%s temporal=%s",
                     len(documents), substantive, temporal)

        stage_one = self.filter_by_category(documents, document_types)
        if not stage_one:
            logger.debug("No documents passed category filtering")
            return []

        stage_two = self.refine_by_terms(stage_one, substantive)

        results = stage_two
        if temporal:
            results = self.apply_temporal(stage_two, temporal, documents)

        results.sort(key=lambda m: m.relevance, reverse=True)
        if self._settings.enforce_threshold:
            results = [m for m in results if m.relevance >= threshold]
        limited = results[:limit]

        logger.info("Term search: %d -> %d (category) -> %d (terms) -> %d (temporal) -> %d",
                    len(documents), len(stage_one), len(stage_two), len(results), len(limited))
        return limited

    # Stage 1

    def filter_by_category(
        self,
        documents: Sequence[Mapping],
        document_types: Optional[Iterable[str]],
    ) -> list[Mapping]:
        wanted = set(document_types or ())
        if not wanted:
            return list(documents)
        return [doc for doc in documents if document_category(doc) in wanted]

    # Stage 2

    def refine_by_terms(self, documents: Sequence[Mapping], terms: Sequence[str]) -> list[TermMatch]:
        """
        Score documents against substantive terms.

        Falls back to every document at relevance 0.5 with a
        ``category:<category>`` label when there are no terms or nothing matched.
        """
        matches = []
        if terms:
            lowered = [t.lower() for t in terms]
            max_score = len(terms) * EXACT_TERM_SCORE
            for doc in documents:
                raw, labels = _score_document(doc, lowered)
                if raw > 0:
                    matches.append(TermMatch(
                        document=doc,
                        relevance=min(raw / max_score, 1.0),
                        matched_terms=labels,
                    ))
            if matches:
                return matches
            logger.debug("No term matches, keeping %d category-filtered documents", len(documents))

        return [
            TermMatch(
                document=doc,
                relevance=CATEGORY_FALLBACK_RELEVANCE,
                matched_terms=[f"category:{document_category(doc)}"],
            )
            for doc in documents
        ]

    # Stage 3

    def classify(self, doc_date: Optional[datetime], corpus_dates: Sequence[datetime]) -> str:
        """
        Temporal class of a date relative to the corpus.

        ``corpus_dates`` must be sorted newest first.
        """
        if doc_date is None or not corpus_dates:
            return "historical"
        top = max(1, math.floor(len(corpus_dates) * CLASSIFY_LATEST_FRACTION))
        if doc_date in corpus_dates[:top]:
            return "latest"
        if doc_date >= self._recent_cutoff():
            return "recent"
        return "historical"

    def apply_temporal(
        self,
        matches: list[TermMatch],
        temporal_terms: Sequence[str],
        corpus: Sequence[Mapping],
    ) -> list[TermMatch]:
        """
        Narrow matches by date according to the temporal terms.

        Each term replaces the working set, so the last temporal term decides
        the outcome.
        """
        corpus_dates = sorted(
            (d for d in (document_date(doc) for doc in corpus) if d is not None),
            reverse=True,
        )
        dated = []
        for match in matches:
            doc_date = document_date(match.document)
            match.temporal_class = self.classify(doc_date, corpus_dates)
            dated.append(_Dated(match, doc_date))
        dated.sort(key=_date_sort_key)

        distinct = list(dict.fromkeys(t.lower() for t in temporal_terms))
        if len(distinct) > 1:
            logger.warning("Several temporal terms given %s; only '%s' takes effect",
                           distinct, distinct[-1])

        results = matches
        for term in temporal_terms:
            policy = term.lower()
            if policy == "latest":
                results = self._latest(dated)
            elif policy == "recent":
                results = self._recent(dated)
            elif policy == "historical":
                results = self._historical(dated)
            else:
                logger.debug("No temporal policy for '%s'", term)
        return results

    def _latest(self, dated: list[_Dated]) -> list[TermMatch]:
        count = max(1, math.ceil(len(dated) * self._settings.latest_fraction))
        return [_boosted(d.match, LATEST_BOOST, "temporal:latest") for d in dated[:count]]

    def _recent(self, dated: list[_Dated]) -> list[TermMatch]:
        cutoff = self._recent_cutoff()
        recent = [d for d in dated if d.date is not None and d.date >= cutoff]
        if recent:
            return [_boosted(d.match, RECENT_BOOST, "temporal:recent") for d in recent]
        count = max(1, math.floor(len(dated) * HALF))
        return [
            _boosted(d.match, RECENT_FALLBACK_BOOST, "temporal:recent_fallback")
            for d in dated[:count]
        ]

    def _historical(self, dated: list[_Dated]) -> list[TermMatch]:
        start = math.floor(len(dated) * HALF)
        return [_boosted(d.match, 0.0, "temporal:historical") for d in dated[start:]]

    def _recent_cutoff(self) -> datetime:
        return self._now() - timedelta(days=self._settings.recent_days)


def _score_document(doc: Mapping, terms: list[str]) -> tuple[float, list[str]]:
    raw = 0.0
    labels: list[str] = []
    medical_terms = _medical_terms(doc)
    for term in terms:
        for doc_term in medical_terms:
            lower = doc_term.lower()
            if lower == term:
                raw += EXACT_TERM_SCORE
                labels.append(doc_term)
            elif term in lower or lower in term:
                raw += PARTIAL_TERM_SCORE
                labels.append(doc_term)
    tags = _string_list(document_metadata(doc).get("tags"))
    for term in terms:
        for tag in tags:
            if term in tag.lower():
                raw += TAG_SCORE
                labels.append(f"tag:{tag}")
    return raw, labels


def _date_sort_key(item: _Dated):
    # Dated documents first, newest first; relevance breaks ties and orders the undated
    if item.date is not None:
        return (0, -item.date.timestamp(), -item.match.relevance)
    return (1, 0.0, -item.match.relevance)


def _boosted(match: TermMatch, boost: float, label: str) -> TermMatch:
    return TermMatch(
        document=match.document,
        relevance=min(match.relevance + boost, 1.0) if boost else match.relevance,
        matched_terms=[*match.matched_terms, label],
        temporal_class=match.temporal_class,
    )


# -----------------------------------------------------------------------------
# Tool boundary
# -----------------------------------------------------------------------------

def search_documents(
    params: Any,
    documents: Sequence[Mapping],
    pipeline: Optional[TermSearchPipeline] = None,
) -> dict:
    """
    Run a term search from tool-call parameters.

    Never raises for bad input: validation problems come back as
    ``{"matches": [], "error": {"type": "InvalidSearchInput", "message": ...}}``.
    """
    pipeline = pipeline or TermSearchPipeline()
    try:
        query = TermQuery.from_params(params)
    except InvalidSearchInput as e:
        logger.info("Rejected search input: %s", e)
        return {"matches": [], "error": {"type": "InvalidSearchInput", "message": str(e)}}

    matches = pipeline.search(
        documents,
        query.terms,
        document_types=query.document_types,
        limit=query.limit,
        threshold=query.threshold,
    )
    return {
        "terms": list(query.terms),
        "matches": [m.to_dict(include_content=query.include_content) for m in matches],
    }


def format_search_results(payload: dict) -> str:
    """Render a search_documents payload as the text shown to a chat model."""
    error = payload.get("error")
    if error:
        return f"Error: {error['message']}"

    matches = payload.get("matches", [])
    if not matches:
        terms = ", ".join(payload.get("terms", []))
        return (
            f"No documents found matching the search terms: {terms}. "
            "Please try different or more general terms."
        )

    lines = [f"Found {len(matches)} relevant documents:", ""]
    for index, match in enumerate(matches, start=1):
        category = match.get("category")
        lines.append(f"{index}. **{match['title']}**")
        lines.append(f"   - Category: {category if category and category != 'unknown' else 'Unknown'}")
        lines.append(f"   - Relevance: {match['relevance'] * 100:.1f}%")
        lines.append(f"   - Matched terms: {', '.join(match['matchedTerms'])}")
        if match.get("preview"):
            lines.append(f"   - Preview: {match['preview']}")
        lines.append("")
    return "\n".join(lines)
