"""
In-memory embedding store with secondary indices.

Holds decrypted embedding records for one user session, keyed by
document ID, with inverted indices by document type, year-month bucket
and tag.  Nothing is persisted: the store is rebuilt from source
documents whenever a session starts.

Memory use is an estimate (vector payload plus a fixed per-record
overhead), recomputed on every mutation.  When the estimate grows past
the configured budget, ``evict_to_target`` drops the records with the
oldest document dates first.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from .errors import DocumentNotFound
from .types import (
    MAX_SUMMARY_LENGTH,
    EmbeddingRecord,
    end_of_day,
    is_date_only,
    month_bucket,
    parse_utc_timestamp,
    truncate_summary,
    try_parse_timestamp,
)

logger = logging.getLogger(__name__)

BYTES_PER_FLOAT = 4
DEFAULT_RECORD_OVERHEAD_BYTES = 1024
_BYTES_PER_MB = 1024 * 1024

# Records with unparseable dates sort before everything else
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class EmbeddingStore:
    """
    Bounded-memory collection of embedding records.

    Example:
        store = EmbeddingStore(max_memory_mb=50)
        store.add(record)
        store.by_type("laboratory")
        store.evict_to_target()
    """

    def __init__(
        self,
        max_memory_mb: float = 50.0,
        *,
        record_overhead_bytes: int = DEFAULT_RECORD_OVERHEAD_BYTES,
        eviction_ratio: float = 0.8,
        max_summary_length: int = MAX_SUMMARY_LENGTH,
    ) -> None:
        self.max_memory_mb = max_memory_mb
        self._record_overhead_bytes = record_overhead_bytes
        self._eviction_ratio = eviction_ratio
        self._max_summary_length = max_summary_length

        self._records: dict[str, EmbeddingRecord] = {}

        self._type_index: dict[str, set[str]] = {}   # document_type -> ids
        self._date_index: dict[str, set[str]] = {}   # YYYY-MM -> ids
        self._tag_index: dict[str, set[str]] = {}    # tag -> ids

        self._memory_mb = 0.0

        logger.debug("EmbeddingStore initialized (max %.1f MB)", max_memory_mb)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add(self, record: EmbeddingRecord) -> None:
        """Insert a record, replacing any previous record for the same document."""
        document_id = record.document_id
        summary = truncate_summary(record.metadata.summary, self._max_summary_length)
        if summary != record.metadata.summary:
            record = record.with_summary(summary)

        previous = self._records.get(document_id)
        if previous is not None:
            self._unindex(document_id, previous)

        self._records[document_id] = record
        self._index(document_id, record)
        self._recompute_memory()

        logger.debug("Added embedding %s (%d dims)", document_id, record.dimensions)

    def add_batch(self, records: Iterable[EmbeddingRecord]) -> int:
        """
        Add records one at a time.

        Best effort: a record that cannot be added is logged and skipped,
        the rest of the batch still goes in.

        Returns:
            Number of records added
        """
        added = 0
        for record in records:
            try:
                self.add(record)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping embedding %s: %s",
                    getattr(record, "document_id", "?"), e,
                )
                continue
            added += 1
        logger.info("Added embedding batch: %d records", added)
        return added

    def remove(self, document_id: str) -> bool:
        """Remove a record and all its index entries. Returns False if absent."""
        record = self._records.pop(document_id, None)
        if record is None:
            return False
        self._unindex(document_id, record)
        self._recompute_memory()
        logger.debug("Removed embedding %s", document_id)
        return True

    def update_summary(self, document_id: str, summary: str) -> EmbeddingRecord:
        """Replace only the summary of a stored record.

        Summaries are not indexed, so no index maintenance is needed.

        Raises:
            DocumentNotFound: If the document is not in the store
        """
        record = self._records.get(document_id)
        if record is None:
            raise DocumentNotFound(document_id)
        updated = record.with_summary(truncate_summary(summary, self._max_summary_length))
        self._records[document_id] = updated
        return updated

    def clear(self) -> None:
        """Drop every record and index."""
        self._records.clear()
        self._type_index.clear()
        self._date_index.clear()
        self._tag_index.clear()
        self._memory_mb = 0.0
        logger.info("Cleared embedding store")

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, document_id: str) -> EmbeddingRecord:
        """Return the record for a document.

        Raises:
            DocumentNotFound: If the document is not in the store
        """
        record = self._records.get(document_id)
        if record is None:
            raise DocumentNotFound(document_id)
        return record

    def get_vector(self, document_id: str) -> Optional[list[float]]:
        record = self._records.get(document_id)
        return record.vector if record is not None else None

    def all_ids(self) -> list[str]:
        return list(self._records)

    def by_type(self, document_type: str) -> list[str]:
        return list(self._type_index.get(document_type, ()))

    def by_month(self, bucket: str) -> list[str]:
        """IDs whose document date falls in a ``YYYY-MM`` bucket."""
        return list(self._date_index.get(bucket, ()))

    def by_tag(self, tag: str) -> list[str]:
        return list(self._tag_index.get(tag, ()))

    def by_date_range(self, start: str, end: str) -> list[str]:
        """
        IDs whose document date lies within [start, end].

        Linear scan over all records. A date-only ``end`` covers the whole
        day. Records with unparseable dates never match.

        Raises:
            ValueError: If start or end is not an ISO date
        """
        start_dt = parse_utc_timestamp(start)
        end_dt = parse_utc_timestamp(end)
        if is_date_only(end):
            end_dt = end_of_day(end_dt)

        matched = []
        for document_id, record in list(self._records.items()):
            doc_dt = try_parse_timestamp(record.metadata.date)
            if doc_dt is not None and start_dt <= doc_dt <= end_dt:
                matched.append(document_id)
        return matched

    # -------------------------------------------------------------------------
    # Memory management
    # -------------------------------------------------------------------------

    @property
    def memory_mb(self) -> float:
        """Current estimated memory use in MB."""
        return self._memory_mb

    def stats(self) -> dict:
        """Record count, memory estimate, and index cardinalities."""
        return {
            "document_count": len(self._records),
            "memory_mb": self._memory_mb,
            "max_memory_mb": self.max_memory_mb,
            "indexes": {
                "types": len(self._type_index),
                "dates": len(self._date_index),
                "tags": len(self._tag_index),
            },
        }

    def has_capacity(self, estimated_mb: float = 0.1) -> bool:
        """Check whether ``estimated_mb`` more would fit within the budget."""
        return self._memory_mb + estimated_mb <= self.max_memory_mb

    def evict_to_target(self, target_mb: Optional[float] = None) -> int:
        """
        Remove oldest-dated records until the estimate is at or below target.

        Ordering is by document date, not by access: this is content-age
        eviction. Records with unparseable dates go first.

        Args:
            target_mb: Memory target; defaults to eviction_ratio × max

        Returns:
            Number of records removed
        """
        target = target_mb if target_mb is not None else self.max_memory_mb * self._eviction_ratio
        if self._memory_mb <= target:
            return 0

        oldest_first = sorted(
            self._records.items(),
            key=lambda item: try_parse_timestamp(item[1].metadata.date) or _OLDEST,
        )
        removed = 0
        for document_id, _ in oldest_first:
            if self._memory_mb <= target:
                break
            self.remove(document_id)
            removed += 1

        logger.info("Evicted %d embeddings (now %.3f MB, target %.3f MB)",
                    removed, self._memory_mb, target)
        return removed

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _index(self, document_id: str, record: EmbeddingRecord) -> None:
        meta = record.metadata
        self._type_index.setdefault(meta.document_type, set()).add(document_id)
        self._date_index.setdefault(month_bucket(meta.date), set()).add(document_id)
        for tag in meta.tags:
            self._tag_index.setdefault(tag, set()).add(document_id)

    def _unindex(self, document_id: str, record: EmbeddingRecord) -> None:
        meta = record.metadata
        _discard(self._type_index, meta.document_type, document_id)
        _discard(self._date_index, month_bucket(meta.date), document_id)
        for tag in meta.tags:
            _discard(self._tag_index, tag, document_id)

    def _recompute_memory(self) -> None:
        # Approximation: float32 payload plus fixed per-record overhead
        total_bytes = sum(r.dimensions * BYTES_PER_FLOAT for r in self._records.values())
        total_bytes += len(self._records) * self._record_overhead_bytes
        self._memory_mb = total_bytes / _BYTES_PER_MB


def _discard(index: dict[str, set[str]], key: str, document_id: str) -> None:
    """Remove an id from an index bucket, pruning the bucket when empty."""
    bucket = index.get(key)
    if bucket is None:
        return
    bucket.discard(document_id)
    if not bucket:
        del index[key]
