"""
Data types for the context retrieval engine.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timezone
from typing import Any, Optional


# Default upper bound on stored summary length (characters)
MAX_SUMMARY_LENGTH = 1000


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse an ISO timestamp or date to a timezone-aware UTC datetime.

    Accepts date-only strings (``2024-01-15``), naive timestamps (taken as
    UTC), and timestamps with a ``Z`` or explicit offset suffix.
    Raises ValueError for anything else.
    """
    if not isinstance(ts, str) or not ts:
        raise ValueError(f"Not a timestamp: {ts!r}")
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def try_parse_timestamp(ts: Any) -> Optional[datetime]:
    """Like parse_utc_timestamp, but returns None for missing or invalid input."""
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    try:
        return parse_utc_timestamp(ts)
    except (ValueError, TypeError, OverflowError):
        return None


def is_date_only(ts: str) -> bool:
    """True for a bare ``YYYY-MM-DD`` date with no time component."""
    return isinstance(ts, str) and len(ts) == 10 and ts[4] == "-" and ts[7] == "-"


def end_of_day(dt: datetime) -> datetime:
    """Last representable instant of the day containing ``dt``."""
    return datetime.combine(dt.date(), time.max, tzinfo=dt.tzinfo)


def month_bucket(date: str) -> str:
    """Year-month index key for an ISO date string (``YYYY-MM``)."""
    return (date or "")[:7]


def truncate_summary(summary: str, limit: int = MAX_SUMMARY_LENGTH) -> str:
    """Bound a summary to ``limit`` characters."""
    summary = summary or ""
    return summary if len(summary) <= limit else summary[:limit]


@dataclass
class EmbeddingMetadata:
    """
    Descriptive metadata stored alongside an embedding vector.

    Attributes:
        document_type: Category of the source document (e.g. "laboratory")
        date: ISO date of the source document; drives the month index,
            date-range filters, time decay, and eviction order
        provider: Name of the provider that produced the vector
        model: Model identifier used by that provider
        summary: Short text summary, used for excerpts and keyword scoring
        tags: Free-form tags, indexed for filtering
        language: Optional language code of the source document
    """
    document_type: str
    date: str
    provider: str = "unknown"
    model: str = "unknown"
    summary: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)
    language: Optional[str] = None

    def __post_init__(self) -> None:
        # Tags arrive as lists from JSON; store as an immutable set
        if not isinstance(self.tags, frozenset):
            self.tags = frozenset(t for t in (self.tags or ()) if t)


@dataclass
class EmbeddingRecord:
    """
    One document's embedding as held by the EmbeddingStore.

    ``document_id`` is the store key: adding a second record with the same
    document_id replaces the first.
    """
    id: str
    document_id: str
    vector: list[float]
    metadata: EmbeddingMetadata
    timestamp: str = ""

    @property
    def dimensions(self) -> int:
        return len(self.vector) if self.vector is not None else 0

    def with_summary(self, summary: str) -> "EmbeddingRecord":
        """Copy of this record with only the summary replaced."""
        return replace(self, metadata=replace(self.metadata, summary=summary))


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range; ISO strings, date-only ends cover the whole day."""
    start: str
    end: str


@dataclass(frozen=True)
class SearchFilter:
    """
    Candidate filter for vector search.

    Values within a field are OR-ed; populated fields are AND-ed together.
    Empty or None fields do not constrain the search.
    """
    document_types: Optional[tuple[str, ...]] = None
    date_range: Optional[DateRange] = None
    tags: Optional[tuple[str, ...]] = None

    def is_empty(self) -> bool:
        return not self.document_types and self.date_range is None and not self.tags


@dataclass(frozen=True)
class TimeDecay:
    """Exponential time-decay settings applied after the similarity threshold."""
    enabled: bool = True
    half_life_days: float = 30.0
    min_weight: float = 0.1


@dataclass(frozen=True)
class SearchResult:
    """
    A ranked match from vector search.

    Attributes:
        document_id: Matched document
        similarity: Raw cosine similarity in [-1, 1]
        relevance_score: Ranking value after decay and fusion (may exceed 1)
        metadata: Snapshot of the record metadata at search time
        excerpt: Leading part of the summary
        keyword_score: Fraction of query keywords found (hybrid search only)
    """
    document_id: str
    similarity: float
    relevance_score: float
    metadata: EmbeddingMetadata
    excerpt: str = ""
    keyword_score: Optional[float] = None

    def __str__(self) -> str:
        return f"{self.document_id} [{self.relevance_score:.3f}]: {self.excerpt[:60]}"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of an embedding provider."""
    name: str
    model: str
    dimensions: int
    cost_per_1k_tokens: Optional[float] = None


def vector_norm(vector: list[float]) -> float:
    """Euclidean (L2) norm."""
    return math.sqrt(sum(v * v for v in vector))
