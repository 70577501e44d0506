"""
Embedding generation for source documents.

Builds an embedding summary for each document (title, tags, body text and
the latest value of each recorded signal), embeds the summaries through
the provider registry in batches, and writes the result back to the
document store: ``embedding_vector`` (AES-256-GCM, base64) when a key is
given, otherwise a plain ``embedding`` list.  The written fields are the
ones ContextLoader reads, so a generated corpus loads without further
conversion.
"""

import asyncio
import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from .errors import EmbeddingError
from .loader import encrypt_vector, has_embedding
from .protocol import DocumentStoreProtocol
from .providers.base import ProviderRegistry
from .types import utc_now

logger = logging.getLogger(__name__)

MAX_SUMMARY_CHARS = 8000
MIN_SUMMARY_CHARS = 10
MIN_SUITABLE_CHARS = 50
MAX_SIGNALS = 10
DEFAULT_GENERATION_BATCH_SIZE = 5

# Structured records with no narrative text
UNSUITABLE_TYPES = frozenset({"profile", "health"})

_BODY_FIELDS = ("text", "content", "body", "description")
_WHITESPACE = re.compile(r"\s+")


def medical_summary(signals: Any) -> str:
    """``name: value`` for the latest value of up to ten signals."""
    if not isinstance(signals, Mapping):
        return ""
    parts = []
    for name, signal in signals.items():
        values = signal.get("values") if isinstance(signal, Mapping) else None
        if not values:
            continue
        latest = values[0]
        if isinstance(latest, Mapping) and latest.get("value"):
            parts.append(f"{name}: {latest['value']}")
    return ", ".join(parts[:MAX_SIGNALS])


def document_summary(document: Mapping) -> str:
    """
    The text embedded for a document.

    Whitespace is collapsed and the result is capped at 8000 characters
    (plus "..." when cut).
    """
    metadata = document.get("metadata") or {}
    content = document.get("content")
    if not content:
        return metadata.get("title") or ""
    if isinstance(content, str):
        content = {"text": content}

    parts = []
    title = content.get("title")
    if title:
        parts.append(title)
    if metadata.get("title") and metadata["title"] != title:
        parts.append(metadata["title"])
    tags = content.get("tags")
    if tags:
        parts.append("Tags: " + ", ".join(str(t) for t in tags))
    for name in _BODY_FIELDS:
        if content.get(name):
            parts.append(str(content[name]))
            break
    findings = medical_summary(content.get("signals"))
    if findings:
        parts.append(f"Medical findings: {findings}")

    summary = _WHITESPACE.sub(" ", "\n\n".join(parts).strip())
    if len(summary) > MAX_SUMMARY_CHARS:
        summary = summary[:MAX_SUMMARY_CHARS] + "..."
    return summary


def is_suitable(document: Mapping) -> bool:
    """False for structured record types and documents with too little text."""
    if document.get("type") in UNSUITABLE_TYPES:
        return False
    return len(document_summary(document)) >= MIN_SUITABLE_CHARS


@dataclass
class GenerationReport:
    """
    Outcome of a generate_embeddings() call.

    Documents that already carried an embedding count as successful but
    are not listed in ``generated``.
    """
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    generated: list[str] = field(default_factory=list)
    results: dict[str, bool] = field(default_factory=dict)

    def record(self, document_id: str, ok: bool) -> None:
        self.results[document_id] = ok
        if ok:
            self.successful += 1
        else:
            self.failed += 1


class EmbeddingGenerator:
    """
    Creates embeddings for documents and stores them with the documents.

    Example:
        generator = EmbeddingGenerator(registry, documents)
        report = await generator.generate_embeddings(documents.list_documents(), key)
        report.successful, report.failed
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        documents: DocumentStoreProtocol,
        *,
        batch_size: int = DEFAULT_GENERATION_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._registry = registry
        self._documents = documents
        self._batch_size = batch_size

    async def generate_for_document(
        self,
        document: Mapping,
        key: Optional[bytes] = None,
        *,
        force: bool = False,
    ) -> bool:
        """
        Embed one document and write the embedding back.

        Returns True if the document has an embedding afterwards. Failures
        are logged, never raised.
        """
        document_id = document.get("id")
        if has_embedding(document) and not force:
            logger.debug("Document %s already has an embedding", document_id)
            return True

        summary = document_summary(document)
        if len(summary) < MIN_SUMMARY_CHARS:
            logger.warning("Summary too short to embed for %s (%d chars)",
                           document_id, len(summary))
            return False

        try:
            generated = await asyncio.to_thread(self._registry.generate, summary)
            self._store_embedding(document, generated.vector, summary, generated.provider, key)
        except Exception as e:
            logger.error("Failed to generate embedding for %s: %s", document_id, e)
            return False
        return True

    async def generate_embeddings(
        self,
        documents: Iterable[Mapping],
        key: Optional[bytes] = None,
        *,
        force: bool = False,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> GenerationReport:
        """
        Embed every suitable document that lacks an embedding.

        Args:
            documents: Source documents
            key: Encryption key; without one the vector is stored in plain
            force: Regenerate embeddings that already exist
            on_progress: Called as ``(completed, total)`` after each batch

        Returns:
            Per-document outcomes and counts
        """
        report = GenerationReport()
        pending = []
        for doc in documents:
            if has_embedding(doc) and not force:
                report.record(str(doc.get("id")), True)
            elif not is_suitable(doc):
                logger.debug("Skipping %s: not suitable for embedding", doc.get("id"))
                report.skipped += 1
            else:
                pending.append(doc)

        logger.info("Generating embeddings for %d of %d documents (batch size %d)",
                    len(pending), len(pending) + report.successful + report.skipped,
                    self._batch_size)

        for start in range(0, len(pending), self._batch_size):
            group = pending[start:start + self._batch_size]
            outcomes = await self._generate_group(group, key)
            for doc, ok in zip(group, outcomes):
                report.record(str(doc.get("id")), ok)
                if ok:
                    report.generated.append(str(doc.get("id")))
            if on_progress is not None:
                on_progress(start + len(group), len(pending))

        logger.info("Embedding generation finished: %d successful, %d failed, %d skipped",
                    report.successful, report.failed, report.skipped)
        return report

    async def _generate_group(self, group: Sequence[Mapping], key: Optional[bytes]) -> list[bool]:
        summaries = [document_summary(doc) for doc in group]
        try:
            batch = await asyncio.to_thread(self._registry.generate_batch, summaries)
        except EmbeddingError as e:
            logger.error("Embedding batch of %d failed: %s", len(group), e)
            return [False] * len(group)

        outcomes = []
        for doc, summary, vector in zip(group, summaries, batch.vectors):
            try:
                self._store_embedding(doc, vector, summary, batch.provider, key)
            except Exception as e:
                # Per-document failures never abort the group
                logger.error("Failed to store embedding for %s: %s", doc.get("id"), e)
                outcomes.append(False)
                continue
            outcomes.append(True)
        return outcomes

    def _store_embedding(
        self,
        document: Mapping,
        vector: list[float],
        summary: str,
        provider: str,
        key: Optional[bytes],
    ) -> dict:
        instance = self._registry.get(provider)
        model = instance.get_info().model if instance is not None else "unknown"

        updated = dict(document)
        if key is not None:
            blob = encrypt_vector(vector, key)
            updated["embedding_vector"] = base64.b64encode(blob).decode("ascii")
            updated.pop("embedding", None)
        else:
            updated["embedding"] = list(vector)
            updated.pop("embedding_vector", None)
        updated["embedding_summary"] = summary
        updated["embedding_provider"] = provider
        updated["embedding_model"] = model
        updated["embedding_timestamp"] = utc_now().isoformat()

        self._documents.update_document(updated)
        logger.debug("Stored embedding for %s (%s, %d dims)",
                     updated.get("id"), provider, len(vector))
        return updated
