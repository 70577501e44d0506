"""
Loading source documents into an EmbeddingStore.

Documents carry their embedding either encrypted (``embedding_vector``,
AES-256-GCM over packed float32 values) or, for unencrypted corpora, as a
plain ``embedding`` list.  Loading runs in fixed-size groups: every
document in a group is decrypted concurrently, the group is awaited as a
whole, and the survivors are added to the store before the next group
starts.  A document that fails to decrypt is logged and left out.
"""

import asyncio
import base64
import logging
import os
import struct
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .embedding_store import EmbeddingStore
from .protocol import Decryptor
from .types import EmbeddingMetadata, EmbeddingRecord, utc_now

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
DEFAULT_BATCH_SIZE = 10
NO_SUMMARY = "No summary available"


# -----------------------------------------------------------------------------
# Vector encoding
# -----------------------------------------------------------------------------

def vector_from_bytes(data: bytes) -> list[float]:
    """Unpack little-endian float32 values.

    Raises:
        ValueError: If the length is not a multiple of 4
    """
    if len(data) % 4:
        raise ValueError(f"Vector payload length {len(data)} is not a multiple of 4")
    return [v for (v,) in struct.iter_unpack("<f", data)]


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return struct.pack(f"<{len(vector)}f", *vector)


class AesGcmDecryptor:
    """AES-256-GCM decryptor for blobs laid out as nonce (12) | tag (16) | ciphertext."""

    def decrypt(self, ciphertext: bytes, key: bytes) -> bytes:
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise ValueError("Encrypted data too short")
        nonce = ciphertext[:NONCE_SIZE]
        tag = ciphertext[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        body = ciphertext[NONCE_SIZE + TAG_SIZE:]

        cipher = Cipher(algorithms.AES(key), modes.GCM(nonce, tag))
        decryptor = cipher.decryptor()
        return decryptor.update(body) + decryptor.finalize()


def encrypt_vector(vector: Sequence[float], key: bytes) -> bytes:
    """Encrypt a vector into the layout AesGcmDecryptor reads."""
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    body = encryptor.update(vector_to_bytes(vector)) + encryptor.finalize()
    return nonce + encryptor.tag + body


def _blob_bytes(blob: Any) -> bytes:
    # JSON transports carry the blob base64-encoded
    if isinstance(blob, (bytes, bytearray, memoryview)):
        return bytes(blob)
    if isinstance(blob, str):
        return base64.b64decode(blob, validate=True)
    raise TypeError(f"Unsupported embedding blob type: {type(blob).__name__}")


# -----------------------------------------------------------------------------
# Record construction
# -----------------------------------------------------------------------------

def has_embedding(document: Mapping) -> bool:
    """True if the document carries an encrypted or plain embedding."""
    return bool(document.get("embedding_vector")) or bool(document.get("embedding"))


def document_type(document: Mapping) -> str:
    metadata = document.get("metadata") or {}
    return document.get("type") or metadata.get("category") or "unknown"


def record_from_document(document: Mapping, vector: list[float]) -> EmbeddingRecord:
    """
    Build the store record for a document and its decrypted vector.

    Field defaults: summary "No summary available", date and timestamp the
    current time, provider and model "unknown".
    """
    metadata = document.get("metadata") or {}
    now = utc_now().isoformat()
    created = document.get("created_at")
    return EmbeddingRecord(
        id=f"emb_{document['id']}",
        document_id=str(document["id"]),
        vector=vector,
        metadata=EmbeddingMetadata(
            document_type=document_type(document),
            date=created or now,
            provider=document.get("embedding_provider") or "unknown",
            model=document.get("embedding_model") or "unknown",
            summary=document.get("embedding_summary") or NO_SUMMARY,
            tags=metadata.get("tags") or (),
            language=metadata.get("language"),
        ),
        timestamp=document.get("embedding_timestamp") or created or now,
    )


@dataclass
class LoadReport:
    """Outcome of a load() call."""
    loaded: int = 0
    failed: int = 0
    skipped: int = 0
    evicted: int = 0
    elapsed_ms: float = 0.0


# -----------------------------------------------------------------------------
# Loader
# -----------------------------------------------------------------------------

class ContextLoader:
    """
    Populates an EmbeddingStore from source documents.

    Example:
        loader = ContextLoader(store, AesGcmDecryptor())
        report = await loader.load(documents, key)
        report.loaded, report.failed
    """

    def __init__(
        self,
        store: EmbeddingStore,
        decryptor: Optional[Decryptor] = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._store = store
        self._decryptor = decryptor or AesGcmDecryptor()
        self._batch_size = batch_size

    async def load(
        self,
        documents: Iterable[Mapping],
        key: Optional[bytes] = None,
        *,
        document_types: Optional[Iterable[str]] = None,
    ) -> LoadReport:
        """
        Decrypt and add every document that carries an embedding.

        Args:
            documents: Source documents
            key: Decryption key for ``embedding_vector`` blobs
            document_types: If given, only documents of these types load

        Returns:
            Counts of loaded, failed, skipped and evicted documents
        """
        started = time.perf_counter()
        wanted = set(document_types) if document_types else None
        report = LoadReport()

        candidates = []
        for doc in documents:
            if not has_embedding(doc) or (wanted is not None and document_type(doc) not in wanted):
                report.skipped += 1
                continue
            candidates.append(doc)

        for start in range(0, len(candidates), self._batch_size):
            group = candidates[start:start + self._batch_size]
            decrypted = await asyncio.gather(*(self._decrypt_or_none(doc, key) for doc in group))
            records = [r for r in decrypted if r is not None]
            report.failed += len(group) - len(records)
            report.loaded += self._store.add_batch(records)
            logger.debug("Processed embedding group: %d of %d decrypted", len(records), len(group))

        if self._store.memory_mb > self._store.max_memory_mb:
            report.evicted = self._store.evict_to_target()

        report.elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("Loaded %d embeddings (%d failed, %d skipped, %d evicted) in %.1fms",
                    report.loaded, report.failed, report.skipped, report.evicted,
                    report.elapsed_ms)
        return report

    async def add_document(self, document: Mapping, key: Optional[bytes] = None) -> bool:
        """Decrypt and add a single document. Returns False if it could not be added."""
        if not has_embedding(document):
            return False
        record = await self._decrypt_or_none(document, key)
        if record is None:
            return False
        self._store.add(record)
        return True

    def remove_document(self, document_id: str) -> bool:
        return self._store.remove(document_id)

    async def decrypt_document(self, document: Mapping, key: Optional[bytes] = None) -> EmbeddingRecord:
        """
        Build the record for one document.

        Raises:
            ValueError: If the document has no embedding, or the blob is malformed
            cryptography.exceptions.InvalidTag: If authentication fails
        """
        blob = document.get("embedding_vector")
        if blob:
            if key is None:
                raise ValueError("Decryption key required for encrypted embeddings")
            plaintext = await asyncio.to_thread(self._decryptor.decrypt, _blob_bytes(blob), key)
            vector = vector_from_bytes(plaintext)
        elif document.get("embedding"):
            vector = [float(v) for v in document["embedding"]]
        else:
            raise ValueError(f"Document {document.get('id')} does not have an embedding")
        return record_from_document(document, vector)

    async def _decrypt_or_none(self, document: Mapping, key: Optional[bytes]) -> Optional[EmbeddingRecord]:
        try:
            return await self.decrypt_document(document, key)
        except Exception as e:
            # Per-document failures never abort the group
            logger.error("Failed to decrypt embedding for %s: %s", document.get("id"), e)
            return None
