"""
Per-session application context.

A ContextSession owns everything that serves one user session: the
embedding store, the provider registry, the similarity search, the term
search pipeline and the loader.  It is created when the session starts
and closed when it ends; nothing here is shared across sessions.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .config import ContextConfig, ProviderSettings, load_or_create_config
from .embedding_store import EmbeddingStore
from .generation import EmbeddingGenerator, GenerationReport
from .loader import ContextLoader, LoadReport
from .protocol import Decryptor, DocumentStoreProtocol, InMemoryDocumentStore
from .providers.base import GeneratedEmbedding, ProviderRegistry, create_provider
from .similarity import SimilaritySearch
from .term_search import TermSearchPipeline, search_documents
from .types import EmbeddingRecord, SearchFilter, SearchResult, utc_now

logger = logging.getLogger(__name__)


def build_registry(settings: ProviderSettings) -> ProviderRegistry:
    """
    Create a ProviderRegistry from provider settings.

    A provider that cannot be constructed is logged and left out; the
    primary and fallback lists only keep names that were registered.
    """
    registry = ProviderRegistry(
        timeout=settings.timeout,
        failure_threshold=settings.failure_threshold,
        cooldown_seconds=settings.cooldown_seconds,
    )
    for provider_config in settings.providers:
        try:
            provider = create_provider(provider_config.type, provider_config.params)
        except (RuntimeError, ValueError) as e:
            logger.warning("Embedding provider %s not created: %s", provider_config.name, e)
            continue
        registry.register(provider_config.name, provider)

    if settings.primary and registry.get(settings.primary) is not None:
        registry.set_primary(settings.primary)
    elif settings.primary:
        logger.warning("Primary embedding provider %s is not registered", settings.primary)
    registry.set_fallbacks(list(settings.fallbacks))
    return registry


class ContextSession:
    """
    Semantic context for one session.

    Example:
        with ContextSession(config, documents=InMemoryDocumentStore(docs)) as session:
            await session.load(key)
            results = session.search_text("recent cholesterol results")
            payload = session.search_documents({"terms": ["latest", "heart"]})
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        *,
        documents: Optional[DocumentStoreProtocol] = None,
        registry: Optional[ProviderRegistry] = None,
        decryptor: Optional[Decryptor] = None,
        now: Callable[[], datetime] = utc_now,
        ops_log: bool = False,
    ) -> None:
        self._config = config or load_or_create_config()
        self._documents = documents if documents is not None else InMemoryDocumentStore()
        self._now = now

        store_settings = self._config.store
        self._store = EmbeddingStore(
            store_settings.max_memory_mb,
            record_overhead_bytes=store_settings.record_overhead_bytes,
            eviction_ratio=store_settings.eviction_ratio,
            max_summary_length=store_settings.max_summary_length,
        )
        self._registry = registry if registry is not None else build_registry(self._config.providers)
        self._search = SimilaritySearch(self._store, settings=self._config.search, now=now)
        self._pipeline = TermSearchPipeline(self._config.term_search, now=now)
        self._loader = ContextLoader(
            self._store, decryptor, batch_size=self._config.loader.batch_size,
        )
        self._generator = EmbeddingGenerator(
            self._registry, self._documents,
            batch_size=self._config.loader.generation_batch_size,
        )

        self._ops_log_handler = None
        if ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._config.path)

        self._closed = False
        logger.debug("Context session opened (config %s)", self._config.path)

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ContextConfig:
        return self._config

    @property
    def store(self) -> EmbeddingStore:
        return self._store

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def search(self) -> SimilaritySearch:
        return self._search

    @property
    def pipeline(self) -> TermSearchPipeline:
        return self._pipeline

    @property
    def loader(self) -> ContextLoader:
        return self._loader

    @property
    def generator(self) -> EmbeddingGenerator:
        return self._generator

    @property
    def documents(self) -> DocumentStoreProtocol:
        return self._documents

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def load(
        self,
        key: Optional[bytes] = None,
        *,
        document_types: Optional[Iterable[str]] = None,
    ) -> LoadReport:
        """Populate the store from every document in the document store."""
        return await self._loader.load(
            self._documents.list_documents(), key, document_types=document_types,
        )

    async def generate_embeddings(
        self,
        key: Optional[bytes] = None,
        *,
        force: bool = False,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> GenerationReport:
        """
        Create embeddings for documents that lack them and load the new ones.

        The embeddings are written back to the document store, then each
        newly generated one is added to the embedding store.
        """
        report = await self._generator.generate_embeddings(
            self._documents.list_documents(), key, force=force, on_progress=on_progress,
        )
        for document_id in report.generated:
            document = self._documents.get_document(document_id)
            if document is not None:
                await self._loader.add_document(document, key)
        return report

    def embed_query(self, text: str, provider: Optional[str] = None) -> GeneratedEmbedding:
        return self._registry.generate(text, provider=provider)

    def search_text(
        self,
        query: str,
        *,
        filters: Optional[SearchFilter] = None,
        threshold: Optional[float] = None,
        max_results: Optional[int] = None,
        decay: bool = True,
        hybrid: bool = True,
    ) -> list[SearchResult]:
        """
        Embed ``query`` and rank the stored documents against it.

        Raises:
            AllProvidersFailed: If no provider could embed the query
        """
        query_vector = self.embed_query(query).vector
        time_decay = self._search.default_decay() if decay else None
        if hybrid:
            return self._search.hybrid_search(
                query, query_vector,
                filters=filters, threshold=threshold,
                max_results=max_results, time_decay=time_decay,
            )
        return self._search.search(
            query_vector,
            filters=filters, threshold=threshold,
            max_results=max_results, time_decay=time_decay,
        )

    def find_similar(self, document_id: str, **options: Any) -> list[SearchResult]:
        return self._search.find_similar_documents(document_id, **options)

    def search_documents(self, params: Any) -> dict:
        """Three-stage term search over the session's documents (tool payload)."""
        return search_documents(params, self._documents.list_documents(), self._pipeline)

    def update_summary(self, document_id: str, summary: str) -> EmbeddingRecord:
        """
        Replace a document's summary in the store and in the document store.

        Raises:
            DocumentNotFound: If the document has no stored embedding
        """
        record = self._store.update_summary(document_id, summary)
        source = self._documents.get_document(document_id)
        if source is not None:
            source["embedding_summary"] = record.metadata.summary
            self._documents.update_document(source)
        return record

    def remove_document(self, document_id: str) -> bool:
        """Drop a document's embedding. Returns False if none was loaded."""
        return self._loader.remove_document(document_id)

    def stats(self) -> dict:
        stats = self._store.stats()
        stats["providers"] = {
            "primary": self._registry.primary,
            "fallbacks": self._registry.fallbacks,
            "registered": [name for name, _ in self._registry.list_providers()],
        }
        return stats

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Drop the store and release provider resources."""
        if self._closed:
            return
        self._closed = True
        self._store.clear()
        self._registry.close()
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None
        logger.debug("Context session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
