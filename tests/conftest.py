"""
Shared pytest fixtures for medctx tests.

Provides deterministic mock providers, a record factory, and a small
medical document corpus so no test touches the network.
"""

import copy
import hashlib
from datetime import datetime, timezone
from typing import Any

import pytest

from medctx.config import ContextConfig, ProviderSettings
from medctx.providers.base import ProviderRegistry, normalize_vector
from medctx.types import EmbeddingMetadata, EmbeddingRecord, ProviderDescriptor


FIXED_NOW = datetime(2024, 1, 30, 12, 0, 0, tzinfo=timezone.utc)


def fixed_now() -> datetime:
    return FIXED_NOW


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no network access.
    """

    def __init__(self, name: str = "mock", dimensions: int = 16, available: bool = True):
        self.name = name
        self.dimensions = dimensions
        self.available = available
        self.embed_calls = 0
        self.batch_calls = 0

    def get_info(self) -> ProviderDescriptor:
        return ProviderDescriptor(self.name, "mock-model", self.dimensions, 0.0)

    def is_available(self) -> bool:
        return self.available

    def generate_embedding(self, text: str, **options: Any) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        h = hashlib.md5(text.encode()).hexdigest()
        values = [int(h[i:i+2], 16) / 255.0 - 0.5 for i in range(0, 32, 2)]
        # Repeat to the full dimension
        values = (values * (self.dimensions // len(values) + 1))[:self.dimensions]
        return normalize_vector(values)

    def generate_batch_embeddings(self, texts: list[str], **options: Any) -> list[list[float]]:
        self.batch_calls += 1
        return [self.generate_embedding(t) for t in texts]


class FailingProvider(MockEmbeddingProvider):
    """Always raises from generate; counts attempts."""

    def __init__(self, name: str = "failing", error: Exception | None = None):
        super().__init__(name=name)
        self.error = error or RuntimeError("backend exploded")

    def generate_embedding(self, text: str, **options: Any) -> list[float]:
        self.embed_calls += 1
        raise self.error

    def generate_batch_embeddings(self, texts: list[str], **options: Any) -> list[list[float]]:
        self.batch_calls += 1
        raise self.error


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def now():
    """Clock pinned to 2024-01-30T12:00:00Z."""
    return fixed_now


@pytest.fixture
def provider_factory():
    """Build mock providers: provider_factory("name", fail=True, available=False)."""
    def _make(name: str = "mock", *, fail: bool = False, available: bool = True,
              error: Exception | None = None, dimensions: int = 16):
        if fail:
            provider = FailingProvider(name, error)
        else:
            provider = MockEmbeddingProvider(name, dimensions=dimensions)
        provider.available = available
        return provider
    return _make


@pytest.fixture
def registry():
    """Registry with a mock primary provider and no timeout thread."""
    reg = ProviderRegistry(timeout=None)
    reg.register("mock", MockEmbeddingProvider())
    reg.set_primary("mock")
    yield reg
    reg.close()


@pytest.fixture
def make_record():
    """Factory for EmbeddingRecords with sensible defaults."""
    def _make(
        document_id: str,
        vector: list[float] | None = None,
        *,
        document_type: str = "laboratory",
        date: str = "2024-01-15",
        tags=(),
        summary: str = "",
        dimensions: int = 4,
    ) -> EmbeddingRecord:
        if vector is None:
            vector = [1.0] + [0.0] * (dimensions - 1)
        return EmbeddingRecord(
            id=f"emb_{document_id}",
            document_id=document_id,
            vector=list(vector),
            metadata=EmbeddingMetadata(
                document_type=document_type,
                date=date,
                summary=summary or f"Summary of {document_id}",
                tags=frozenset(tags),
            ),
            timestamp=date,
        )
    return _make


_CORPUS = [
    {
        "id": "doc1",
        "content": {"title": "Blood Test Results", "summary": "Fasting glucose and lipid panel."},
        "metadata": {"category": "laboratory", "tags": ["blood", "glucose", "cholesterol"]},
        "medicalTerms": ["blood", "glucose", "cholesterol", "hdl", "ldl", "triglycerides"],
        "created_at": "2024-01-15T10:00:00Z",
        "type": "laboratory",
        "embedding_summary": "Blood test with fasting glucose, HDL and LDL cholesterol",
    },
    {
        "id": "doc2",
        "content": {"title": "Chest X-ray Report"},
        "metadata": {"category": "imaging", "tags": ["chest", "x-ray", "lungs"]},
        "medicalTerms": ["chest", "x-ray", "lungs", "radiology", "imaging"],
        "created_at": "2024-01-10T14:30:00Z",
        "type": "imaging",
        "embedding_summary": "Chest x-ray shows clear lungs",
    },
    {
        "id": "doc3",
        "content": {"title": "Heart Medication Prescription"},
        "metadata": {"category": "medications", "tags": ["heart", "medication", "prescription"]},
        "medicalTerms": ["heart", "medication", "prescription", "cardiac", "lisinopril"],
        "created_at": "2024-01-20T09:15:00Z",
        "type": "medications",
        "embedding_summary": "Lisinopril prescribed for heart health",
    },
    {
        "id": "doc4",
        "content": {"title": "ECG Results"},
        "metadata": {"category": "cardiology", "tags": ["ecg", "heart", "rhythm"]},
        "medicalTerms": ["ecg", "heart", "rhythm", "cardiac", "electrocardiogram"],
        "created_at": "2024-01-25T11:45:00Z",
        "type": "cardiology",
        "embedding_summary": "ECG shows normal sinus rhythm",
    },
    {
        "id": "doc5",
        "content": {"title": "Old Lab Results"},
        "metadata": {"category": "laboratory", "tags": ["blood", "old"]},
        "medicalTerms": ["blood", "laboratory", "glucose"],
        "created_at": "2023-06-01T08:00:00Z",
        "type": "laboratory",
        "embedding_summary": "Older blood panel with glucose",
    },
]


@pytest.fixture
def corpus() -> list[dict]:
    """The five-document corpus spanning 2023-06-01 to 2024-01-25."""
    return copy.deepcopy(_CORPUS)


@pytest.fixture
def embedded_corpus(corpus) -> list[dict]:
    """The corpus with plain ``embedding`` lists from the mock provider."""
    provider = MockEmbeddingProvider()
    corpus = copy.deepcopy(corpus)
    for doc in corpus:
        doc["embedding"] = provider.generate_embedding(doc["embedding_summary"])
        doc["embedding_provider"] = "mock"
        doc["embedding_model"] = "mock-model"
    return corpus


@pytest.fixture
def context_config(tmp_path) -> ContextConfig:
    """Config rooted in a temp dir with no providers configured."""
    return ContextConfig(path=tmp_path, providers=ProviderSettings(timeout=None))


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "e2e: marks tests as end-to-end (require real providers)"
    )
