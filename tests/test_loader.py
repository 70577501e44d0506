"""
Tests for loading encrypted and plain embeddings into the store.
"""

import base64
import os

import pytest

from medctx.embedding_store import EmbeddingStore
from medctx.loader import (
    AesGcmDecryptor,
    ContextLoader,
    encrypt_vector,
    record_from_document,
    vector_from_bytes,
    vector_to_bytes,
)


KEY = bytes(range(32))


def _encrypted(doc_id, vector, *, doc_type="laboratory", encode=True, key=KEY):
    blob = encrypt_vector(vector, key)
    return {
        "id": doc_id,
        "type": doc_type,
        "created_at": "2024-01-15T10:00:00Z",
        "embedding_vector": base64.b64encode(blob).decode() if encode else blob,
        "embedding_summary": f"Summary {doc_id}",
    }


class CountingDecryptor(AesGcmDecryptor):
    def __init__(self):
        self.calls = 0

    def decrypt(self, ciphertext, key):
        self.calls += 1
        return super().decrypt(ciphertext, key)


class TestCrypto:

    def test_vector_bytes_are_little_endian_float32(self):
        assert vector_to_bytes([1.0]) == b"\x00\x00\x80\x3f"
        assert vector_from_bytes(b"\x00\x00\x80\x3f") == [1.0]

    def test_misaligned_payload_rejected(self):
        with pytest.raises(ValueError):
            vector_from_bytes(b"\x00\x00\x80")

    def test_decrypt_encrypted_vector(self):
        blob = encrypt_vector([0.5, -0.25, 2.0], KEY)
        assert vector_from_bytes(AesGcmDecryptor().decrypt(blob, KEY)) == [0.5, -0.25, 2.0]

    def test_short_blob(self):
        with pytest.raises(ValueError, match="too short"):
            AesGcmDecryptor().decrypt(b"\x00" * 20, KEY)


class TestLoad:

    @pytest.mark.asyncio
    async def test_loads_encrypted_documents(self):
        store = EmbeddingStore()
        docs = [_encrypted("a", [1.0, 0.0]), _encrypted("b", [0.0, 1.0], encode=False)]
        report = await ContextLoader(store).load(docs, KEY)

        assert report.loaded == 2
        assert report.failed == 0
        assert store.get_vector("a") == [1.0, 0.0]
        assert store.get("b").metadata.summary == "Summary b"

    @pytest.mark.asyncio
    async def test_bad_documents_fail_without_aborting_group(self):
        store = EmbeddingStore()
        docs = [
            _encrypted("good", [1.0, 0.0]),
            _encrypted("wrong-key", [1.0, 0.0], key=os.urandom(32)),
            {"id": "garbage", "embedding_vector": "not base64!!"},
            _encrypted("also-good", [0.0, 1.0]),
        ]
        report = await ContextLoader(store).load(docs, KEY)

        assert report.loaded == 2
        assert report.failed == 2
        assert set(store.all_ids()) == {"good", "also-good"}

    @pytest.mark.asyncio
    async def test_missing_key_fails_encrypted_only(self, embedded_corpus):
        store = EmbeddingStore()
        docs = embedded_corpus + [_encrypted("enc", [1.0])]
        report = await ContextLoader(store).load(docs)
        assert report.loaded == 5
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_documents_without_embeddings_skipped(self, corpus, embedded_corpus):
        store = EmbeddingStore()
        report = await ContextLoader(store).load(corpus[:2] + embedded_corpus[2:])
        assert report.skipped == 2
        assert report.loaded == 3

    @pytest.mark.asyncio
    async def test_document_types_filter(self, embedded_corpus):
        store = EmbeddingStore()
        report = await ContextLoader(store).load(embedded_corpus, document_types=["laboratory"])
        assert set(store.all_ids()) == {"doc1", "doc5"}
        assert report.skipped == 3

    @pytest.mark.asyncio
    async def test_groups_of_batch_size(self):
        store = EmbeddingStore()
        decryptor = CountingDecryptor()
        docs = [_encrypted(f"d{i}", [float(i), 1.0]) for i in range(7)]
        report = await ContextLoader(store, decryptor, batch_size=3).load(docs, KEY)
        assert report.loaded == 7
        assert decryptor.calls == 7

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ContextLoader(EmbeddingStore(), batch_size=0)

    @pytest.mark.asyncio
    async def test_evicts_when_over_budget(self):
        per_record_mb = (256 * 4 + 1024) / (1024 * 1024)
        store = EmbeddingStore(max_memory_mb=per_record_mb * 3)
        docs = []
        for i, date in enumerate(["2024-01-01", "2023-01-01", "2022-01-01", "2021-01-01"]):
            doc = _encrypted(f"d{i}", [0.1] * 256)
            doc["created_at"] = date
            docs.append(doc)

        report = await ContextLoader(store).load(docs, KEY)

        assert report.loaded == 4
        assert report.evicted > 0
        assert "d0" in store
        assert "d3" not in store
        assert store.memory_mb <= store.max_memory_mb


class TestSingleDocument:

    @pytest.mark.asyncio
    async def test_add_and_remove(self, embedded_corpus):
        store = EmbeddingStore()
        loader = ContextLoader(store)
        assert await loader.add_document(embedded_corpus[0]) is True
        assert "doc1" in store
        assert loader.remove_document("doc1") is True
        assert loader.remove_document("doc1") is False

    @pytest.mark.asyncio
    async def test_add_without_embedding(self, corpus):
        assert await ContextLoader(EmbeddingStore()).add_document(corpus[0]) is False

    @pytest.mark.asyncio
    async def test_decrypt_document_without_embedding_raises(self, corpus):
        with pytest.raises(ValueError, match="does not have an embedding"):
            await ContextLoader(EmbeddingStore()).decrypt_document(corpus[0])


class TestRecord:

    def test_defaults(self):
        record = record_from_document({"id": "x"}, [1.0])
        assert record.id == "emb_x"
        assert record.document_id == "x"
        assert record.metadata.summary == "No summary available"
        assert record.metadata.provider == "unknown"
        assert record.metadata.model == "unknown"
        assert record.metadata.document_type == "unknown"
        assert record.metadata.date == record.timestamp

    def test_metadata_from_document(self, embedded_corpus):
        doc = embedded_corpus[1]
        record = record_from_document(doc, doc["embedding"])
        assert record.metadata.document_type == "imaging"
        assert record.metadata.date == "2024-01-10T14:30:00Z"
        assert record.metadata.tags == frozenset({"chest", "x-ray", "lungs"})
        assert record.metadata.provider == "mock"
