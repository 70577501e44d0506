"""
Embedding providers.

Each class satisfies the EmbeddingProvider protocol and registers itself
under a config type name:

- ``openai``: OpenAI-compatible ``/embeddings`` HTTP API
- ``ollama``: local Ollama server (``/api/embed``)
- ``hash``: deterministic offline vectors derived from a text hash
"""

import hashlib
import logging
import os
import struct
from typing import Any

import requests

from ..errors import EmbeddingError, ProviderUnavailable
from ..types import ProviderDescriptor
from .base import normalize_vector, register_provider_type, validate_dimensions

logger = logging.getLogger(__name__)


class OpenAIEmbedding:
    """
    Embedding provider using the OpenAI embeddings API.

    Requires: MEDCTX_OPENAI_API_KEY or OPENAI_API_KEY environment variable
    (or an explicit api_key). Any server speaking the same protocol can be
    used by setting base_url.

    Default model is text-embedding-3-small (1536 dims, $0.02 per MTok).
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key: str | None = None,
        base_url: str = "https://api.openai.com/v1",
        cost_per_1k_tokens: float | None = 0.00002,
        name: str = "openai",
        timeout: float = 30.0,
    ):
        self.model = model
        self.dimensions = dimensions
        self.base_url = base_url.rstrip("/")
        self.cost_per_1k_tokens = cost_per_1k_tokens
        self.name = name
        self.timeout = timeout
        self._api_key = (
            api_key or
            os.environ.get("MEDCTX_OPENAI_API_KEY") or
            os.environ.get("OPENAI_API_KEY") or
            ""
        )

    def get_info(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            name=self.name,
            model=self.model,
            dimensions=self.dimensions,
            cost_per_1k_tokens=self.cost_per_1k_tokens,
        )

    def is_available(self) -> bool:
        return bool(self._api_key)

    def generate_embedding(self, text: str, **options: Any) -> list[float]:
        return self._request(text, options)[0]

    def generate_batch_embeddings(self, texts: list[str], **options: Any) -> list[list[float]]:
        if not texts:
            return []
        return self._request(list(texts), options)

    def _request(self, payload: str | list[str], options: dict) -> list[list[float]]:
        if not self._api_key:
            raise ProviderUnavailable("OpenAI API key not configured")

        response = requests.post(
            f"{self.base_url}/embeddings",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            json={
                "input": payload,
                "model": options.get("model") or self.model,
                "encoding_format": "float",
            },
            timeout=(10, self.timeout),  # (connect, read)
        )
        if not response.ok:
            try:
                detail = response.json().get("error", {}).get("message", "")
            except ValueError:
                detail = response.text[:200] if response.text else ""
            raise EmbeddingError(
                f"OpenAI API error (model={self.model}): "
                f"HTTP {response.status_code}. {detail}"
            )

        data = response.json()
        items = sorted(data["data"], key=lambda item: item.get("index", 0))
        vectors = []
        for item in items:
            vector = [float(v) for v in item["embedding"]]
            validate_dimensions(vector, self.dimensions, self.name)
            vectors.append(normalize_vector(vector))

        logger.debug("OpenAI embeddings: %d vectors, usage=%s", len(vectors), data.get("usage"))
        return vectors


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    Available only while the server is reachable and the model is installed.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        dimensions: int = 768,
        base_url: str | None = None,
        name: str = "ollama",
        timeout: float = 60.0,
    ):
        from .ollama_utils import ollama_base_url
        self.model = model
        self.dimensions = dimensions
        self.base_url = ollama_base_url(base_url)
        self.name = name
        self.timeout = timeout

    def get_info(self) -> ProviderDescriptor:
        return ProviderDescriptor(name=self.name, model=self.model, dimensions=self.dimensions)

    def is_available(self) -> bool:
        from .ollama_utils import ollama_has_model
        return ollama_has_model(self.base_url, self.model)

    def generate_embedding(self, text: str, **options: Any) -> list[float]:
        return self._request([text])[0]

    def generate_batch_embeddings(self, texts: list[str], **options: Any) -> list[list[float]]:
        if not texts:
            return []
        return self._request(list(texts))

    def _request(self, texts: list[str]) -> list[list[float]]:
        try:
            response = requests.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model, "input": texts},
                timeout=(10, self.timeout),
            )
        except requests.ConnectionError as e:
            raise ProviderUnavailable(f"Cannot reach Ollama at {self.base_url}") from e
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise EmbeddingError(
                f"Ollama embedding failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )

        vectors = []
        for raw in response.json()["embeddings"]:
            vector = [float(v) for v in raw]
            validate_dimensions(vector, self.dimensions, self.name)
            vectors.append(normalize_vector(vector))
        return vectors


class HashEmbedding:
    """
    Deterministic embedding provider derived from a SHA-256 text hash.

    Produces the same unit vector for the same text on every run, with no
    model download or network access. The vectors carry no semantic
    meaning; this is the offline fallback and the test provider.
    """

    def __init__(self, dimensions: int = 384, name: str = "hash"):
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self.dimensions = dimensions
        self.name = name

    def get_info(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            name=self.name, model="sha256", dimensions=self.dimensions,
            cost_per_1k_tokens=0.0,
        )

    def is_available(self) -> bool:
        return True

    def generate_embedding(self, text: str, **options: Any) -> list[float]:
        values: list[float] = []
        counter = 0
        while len(values) < self.dimensions:
            digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
            # 8 unsigned 32-bit ints per digest, mapped to [-1, 1]
            for (value,) in struct.iter_unpack(">I", digest):
                values.append(value / 0xFFFFFFFF * 2 - 1)
            counter += 1
        return normalize_vector(values[:self.dimensions])

    def generate_batch_embeddings(self, texts: list[str], **options: Any) -> list[list[float]]:
        return [self.generate_embedding(t, **options) for t in texts]


register_provider_type("openai", OpenAIEmbedding)
register_provider_type("ollama", OllamaEmbedding)
register_provider_type("hash", HashEmbedding)
