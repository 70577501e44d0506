"""
Base provider protocol and the embedding provider registry.

Providers implement the EmbeddingProvider protocol structurally - no
explicit inheritance required.  The registry holds named provider
instances and picks one per call: the requested (or primary) provider
first, then the fallbacks in order.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from ..errors import (
    AllProvidersFailed,
    DimensionMismatch,
    ProviderTimeout,
    ProviderUnavailable,
)
from ..types import ProviderDescriptor, vector_norm

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates unit-length vector embeddings from text.

    Implementations must normalize output vectors to unit L2 norm (zero
    vectors pass through unchanged) and raise DimensionMismatch when the
    backend returns a vector whose length differs from get_info().dimensions.

    Example implementation:
        class SentenceTransformerEmbedding:
            def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
                from sentence_transformers import SentenceTransformer
                self.model = SentenceTransformer(model_name)

            def get_info(self) -> ProviderDescriptor:
                return ProviderDescriptor("sentence-transformers", self.model_name,
                                          self.model.get_sentence_embedding_dimension())

            def is_available(self) -> bool:
                return True

            def generate_embedding(self, text: str, **options) -> list[float]:
                return normalize_vector(self.model.encode(text).tolist())

            def generate_batch_embeddings(self, texts, **options):
                return [normalize_vector(v) for v in self.model.encode(texts).tolist()]
    """

    def get_info(self) -> ProviderDescriptor:
        """Name, model, dimensions and cost of this provider."""
        ...

    def is_available(self) -> bool:
        """
        Check whether the provider can serve a request right now.

        Called before every attempt; results must not be cached across calls
        by the registry.
        """
        ...

    def generate_embedding(self, text: str, **options: Any) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed
            **options: Provider-specific options (e.g. model override)

        Returns:
            A unit-length list of floats

        Raises:
            DimensionMismatch: If the backend returned the wrong vector length
            ProviderUnavailable: If the provider cannot serve the request
        """
        ...

    def generate_batch_embeddings(self, texts: list[str], **options: Any) -> list[list[float]]:
        """
        Generate embeddings for multiple texts, one per input, in input order.
        """
        ...


def normalize_vector(vector: list[float]) -> list[float]:
    """Scale a vector to unit L2 norm. Zero vectors are returned unchanged."""
    magnitude = vector_norm(vector)
    if magnitude == 0:
        return list(vector)
    return [v / magnitude for v in vector]


def validate_dimensions(vector: list[float], expected: int, provider: str = "") -> None:
    """Raise DimensionMismatch unless ``vector`` has ``expected`` entries."""
    if len(vector) != expected:
        raise DimensionMismatch(expected, len(vector), provider)


# -----------------------------------------------------------------------------
# Provider types (config-driven construction)
# -----------------------------------------------------------------------------

_provider_types: dict[str, type] = {}
_types_loaded = False


def register_provider_type(name: str, provider_class: type) -> None:
    """Register an embedding provider class under a config type name."""
    _provider_types[name] = provider_class


def _ensure_provider_types_loaded() -> None:
    """Lazily import the bundled provider module so it can register itself."""
    global _types_loaded
    if _types_loaded:
        return
    _types_loaded = True
    from . import embeddings  # noqa: F401


def list_provider_types() -> list[str]:
    """List registered provider type names."""
    _ensure_provider_types_loaded()
    return list(_provider_types)


def create_provider(type_name: str, params: Optional[dict] = None) -> EmbeddingProvider:
    """Create a provider instance from its type name and constructor params."""
    _ensure_provider_types_loaded()
    if type_name not in _provider_types:
        available = ", ".join(_provider_types) or "none"
        raise ValueError(
            f"Unknown embedding provider type: '{type_name}'. "
            f"Available types: {available}."
        )
    try:
        return _provider_types[type_name](**(params or {}))
    except ImportError as e:
        raise RuntimeError(
            f"Failed to create embedding provider '{type_name}': {e}\n"
            f"Install required dependencies."
        ) from e
    except (TypeError, ValueError) as e:
        raise RuntimeError(
            f"Failed to create embedding provider '{type_name}': {e}"
        ) from e


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class GeneratedEmbedding:
    """An embedding together with the provider that produced it."""
    vector: list[float]
    provider: str


@dataclass(frozen=True)
class GeneratedBatch:
    """Batch embeddings together with the provider that produced them."""
    vectors: list[list[float]]
    provider: str


@dataclass
class _CircuitState:
    failures: int = 0
    open_until: float = 0.0


class ProviderRegistry:
    """
    Named embedding providers with primary/fallback selection.

    Every provider call is bounded by ``timeout`` seconds; a call that
    overruns counts as a failure and the next candidate is tried (the
    overrunning call is abandoned, not cancelled). A provider that fails
    ``failure_threshold`` times in a row is skipped for ``cooldown_seconds``.

    Example:
        registry = ProviderRegistry(timeout=10)
        registry.register("openai", OpenAIEmbedding())
        registry.register("local", OllamaEmbedding())
        registry.set_primary("openai")
        registry.set_fallbacks(["local"])

        result = registry.generate("chest pain on exertion")
        result.provider   # "openai", or "local" if openai failed
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = 30.0,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._providers: dict[str, EmbeddingProvider] = {}
        self._primary: Optional[str] = None
        self._fallbacks: list[str] = []
        self._timeout = timeout
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._circuits: dict[str, _CircuitState] = {}

    # Registration

    def register(self, name: str, provider: EmbeddingProvider) -> None:
        """Register (or replace) a provider instance under ``name``."""
        self._providers[name] = provider
        self._circuits.pop(name, None)
        info = provider.get_info()
        logger.info("Registered embedding provider %s (%s, %d dims)",
                    name, info.model, info.dimensions)

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)
        self._circuits.pop(name, None)
        self._fallbacks = [n for n in self._fallbacks if n != name]
        if self._primary == name:
            self._primary = None

    def set_primary(self, name: str) -> None:
        """Set the default provider.

        Raises:
            KeyError: If no provider is registered under ``name``
        """
        if name not in self._providers:
            raise KeyError(f"Provider {name} not registered")
        self._primary = name

    def set_fallbacks(self, names: list[str]) -> None:
        """Set the fallback order. Unregistered names are dropped."""
        self._fallbacks = [n for n in names if n in self._providers]

    @property
    def primary(self) -> Optional[str]:
        return self._primary

    @property
    def fallbacks(self) -> list[str]:
        return list(self._fallbacks)

    def get(self, name: str) -> Optional[EmbeddingProvider]:
        return self._providers.get(name)

    def list_providers(self) -> list[tuple[str, ProviderDescriptor]]:
        """Registered providers with their descriptors."""
        return [(name, p.get_info()) for name, p in self._providers.items()]

    # Generation

    def generate(
        self,
        text: str,
        provider: Optional[str] = None,
        **options: Any,
    ) -> GeneratedEmbedding:
        """
        Embed ``text`` with the first provider that succeeds.

        Args:
            text: Text to embed
            provider: Provider to try first (default: the primary)
            **options: Passed through to the provider

        Raises:
            AllProvidersFailed: If every candidate is unavailable or fails
        """
        name, vector = self._first_success(
            lambda p: p.generate_embedding(text, **options),
            provider,
            "embedding",
        )
        logger.debug("Generated embedding with %s (%d chars, %d dims)",
                     name, len(text), len(vector))
        return GeneratedEmbedding(vector=vector, provider=name)

    def generate_batch(
        self,
        texts: list[str],
        provider: Optional[str] = None,
        **options: Any,
    ) -> GeneratedBatch:
        """Batch counterpart of generate(); one provider serves the whole batch."""
        if not texts:
            return GeneratedBatch(vectors=[], provider=provider or self._primary or "")
        name, vectors = self._first_success(
            lambda p: p.generate_batch_embeddings(list(texts), **options),
            provider,
            "batch embedding",
        )
        logger.info("Generated %d batch embeddings with %s", len(texts), name)
        return GeneratedBatch(vectors=vectors, provider=name)

    def close(self) -> None:
        """Release provider resources and forget failure history."""
        for name, provider in self._providers.items():
            close = getattr(provider, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.warning("Closing provider %s failed: %s", name, e)
        self._circuits.clear()

    # Internals

    def _candidates(self, requested: Optional[str]) -> list[str]:
        first = requested or self._primary
        ordered = ([first] if first else []) + self._fallbacks
        # Keep the first occurrence of each name
        return list(dict.fromkeys(ordered))

    def _first_success(self, call, requested: Optional[str], what: str):
        errors: dict[str, BaseException] = {}
        for name in self._candidates(requested):
            provider = self._providers.get(name)
            if provider is None:
                continue
            if self._circuit_open(name):
                logger.debug("Skipping %s: circuit open after repeated failures", name)
                continue
            try:
                if not provider.is_available():
                    logger.debug("Skipping %s: unavailable", name)
                    continue
                result = self._call_with_timeout(call, provider, name)
            except ProviderUnavailable as e:
                logger.debug("Skipping %s: %s", name, e)
                continue
            except Exception as e:
                # Any provider failure moves on to the next candidate
                logger.error("Embedding %s failed with %s: %s", what, name, e)
                errors[name] = e
                self._record_failure(name)
                continue
            self._record_success(name)
            return name, result
        raise AllProvidersFailed(errors)

    def _call_with_timeout(self, call, provider: EmbeddingProvider, name: str):
        if self._timeout is None:
            return call(provider)
        # An overrunning call is abandoned on its own daemon thread
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def _run() -> None:
            try:
                outcome["result"] = call(provider)
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        threading.Thread(target=_run, name=f"medctx-provider-{name}", daemon=True).start()
        if not done.wait(self._timeout):
            raise ProviderTimeout(
                f"Provider {name} did not respond within {self._timeout:g}s"
            )
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def _circuit_open(self, name: str) -> bool:
        state = self._circuits.get(name)
        if state is None or state.open_until == 0.0:
            return False
        if self._clock() >= state.open_until:
            # Cooldown over: allow one trial call
            state.open_until = 0.0
            state.failures = self._failure_threshold - 1
            return False
        return True

    def _record_failure(self, name: str) -> None:
        if self._failure_threshold <= 0:
            return
        state = self._circuits.setdefault(name, _CircuitState())
        state.failures += 1
        if state.failures >= self._failure_threshold:
            state.open_until = self._clock() + self._cooldown_seconds
            logger.warning("Provider %s disabled for %gs after %d consecutive failures",
                           name, self._cooldown_seconds, state.failures)

    def _record_success(self, name: str) -> None:
        self._circuits.pop(name, None)
