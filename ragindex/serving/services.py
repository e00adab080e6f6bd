"""
Service Container
-----------------
Builds every client the indexing core needs from an AppConfig and owns
their lifecycle: open once at process start, `close()` at shutdown.  No
module-level singletons; tests build a container with in-memory backends
and fakes through the same constructor.

    AppConfig
        |
        v
    tokenizer, cache, corpus stats, embedder, Qdrant, metadata DB, storage
        |
        v
    IndexingPipeline -> ContentLifecycleManager      (ingest / delete)
    HybridSearchEngine                               (search)
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from ragindex.chunking.chunker import HierarchicalChunker
from ragindex.chunking.tokenizer import Tokenizer, build_tokenizer
from ragindex.config import AppConfig
from ragindex.embedding.bm25 import BM25SparseEncoder
from ragindex.embedding.corpus_stats import CorpusStatistics, InMemoryCorpusStatistics, RedisCorpusStatistics
from ragindex.embedding.embedder import EmbeddingProvider, JinaEmbeddingClient, LateChunkingEmbedder
from ragindex.embedding.pipeline import IndexingPipeline
from ragindex.lifecycle.manager import ContentLifecycleManager
from ragindex.retrieval.retriever import HybridSearchEngine
from ragindex.retrieval.search_cache import SearchCache
from ragindex.schemas import (
    DeduplicationStats,
    DeleteResult,
    IngestResult,
    SearchFilters,
    SearchOptions,
    SearchResponse,
    TenantContext,
    UploadedFile,
)
from ragindex.storage.converter import ConverterRouter, DocumentConverter
from ragindex.storage.file_storage import ArtifactStorage
from ragindex.storage.metadata_store import MetadataStore
from ragindex.storage.qdrant_store import QdrantVectorStore
from ragindex.storage.uploader import VectorUploadManager
from ragindex.utils.cache import CacheStore, NullCache, RedisCache
from ragindex.utils.retry import RetryPolicy


class RAGServices:
    def __init__(
        self,
        config: AppConfig,
        tokenizer: Optional[Tokenizer] = None,
        provider: Optional[EmbeddingProvider] = None,
        cache: Optional[CacheStore] = None,
        stats: Optional[CorpusStatistics] = None,
        store: Optional[QdrantVectorStore] = None,
        metadata: Optional[MetadataStore] = None,
        converter: Optional[DocumentConverter] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config
        self.retry = retry_policy or RetryPolicy.from_config(config.retry)

        self.tokenizer = tokenizer or build_tokenizer(config.chunking)
        self.cache = cache if cache is not None else self._build_cache()
        self.stats = stats or self._build_stats()
        self.provider = provider or JinaEmbeddingClient.from_config(config.embedding)
        self.store = store or QdrantVectorStore.from_config(config.qdrant, config.embedding.dimensions, self.retry)
        self.metadata = metadata or MetadataStore.from_config(config.database, config.quota.default_org_quota_bytes)
        self.converter = converter or ConverterRouter.from_config(config.storage, self.retry)
        self.artifacts = ArtifactStorage(config.storage.uploads_dir)

        self.chunker = HierarchicalChunker.from_config(self.tokenizer, config.chunking)
        self.encoder = BM25SparseEncoder.from_config(config.bm25)
        self.embedder = LateChunkingEmbedder(
            self.provider,
            self.tokenizer,
            cache=self.cache,
            retry_policy=self.retry,
            dimensions=config.embedding.dimensions,
            max_batch_tokens=config.embedding.max_batch_tokens,
            cache_ttl=config.embedding.cache_ttl_seconds,
        )
        self.uploader = VectorUploadManager(self.store, self.metadata, config.upload.batch_size)
        self.search_cache = SearchCache(self.cache, config.cache.search_ttl_seconds)
        self.pipeline = IndexingPipeline(
            self.chunker, self.encoder, self.stats, self.embedder, self.uploader, self.metadata
        )
        self.lifecycle = ContentLifecycleManager(
            metadata=self.metadata,
            storage=self.artifacts,
            converter=self.converter,
            pipeline=self.pipeline,
            store=self.store,
            uploader=self.uploader,
            stats=self.stats,
            search_cache=self.search_cache,
            max_file_size=config.storage.max_file_size_bytes,
        )
        self.engine = HybridSearchEngine(
            self.store, self.embedder, self.encoder, self.stats, self.search_cache, config.search.rrf_k
        )

    def _build_cache(self) -> CacheStore:
        if not self.config.cache.enabled:
            return NullCache()
        return RedisCache(self.config.cache.redis_url, socket_timeout=self.config.cache.socket_timeout_seconds)

    def _build_stats(self) -> CorpusStatistics:
        cfg = self.config.bm25
        if cfg.stats_backend == "redis":
            return RedisCorpusStatistics.from_url(
                self.config.cache.redis_url,
                socket_timeout=self.config.cache.socket_timeout_seconds,
                retry_policy=self.retry,
            )
        # Single-process counts; other processes sharing stats_path merge on save
        stats = InMemoryCorpusStatistics()
        if Path(cfg.stats_path).exists():
            stats.load(cfg.stats_path)
        return stats

    # --- Setup ----------------------------------------------------------------

    def initialize(self) -> None:
        """Create tables and the vector collection if missing."""
        self.metadata.create_tables()
        self.store.ensure_collection()
        logger.info("[Services] Metadata tables and vector collection ready")

    # --- Operations -----------------------------------------------------------

    def ingest(self, upload: UploadedFile, tenant: TenantContext) -> IngestResult:
        return self.lifecycle.ingest(upload, tenant)

    def search(
        self,
        query: str,
        tenant: TenantContext,
        filters: Optional[SearchFilters] = None,
        options: Optional[SearchOptions] = None,
    ) -> SearchResponse:
        """Tenant-scoped search. The tenant's organization always wins over `filters`."""
        filters = (filters or SearchFilters(organization_id=tenant.organization_id)).model_copy(
            update={"organization_id": tenant.organization_id}
        )
        return self.engine.search(query, filters, options)

    def delete(self, document_id: str) -> DeleteResult:
        return self.lifecycle.delete(document_id)

    def delete_course(self, course_id: str, organization_id: Optional[str] = None) -> list[DeleteResult]:
        return self.lifecycle.delete_course(course_id, organization_id)

    def deduplication_stats(self, organization_id: Optional[str] = None) -> DeduplicationStats:
        return self.lifecycle.deduplication_stats(organization_id)

    # --- Lifecycle ------------------------------------------------------------

    def close(self) -> None:
        if isinstance(self.stats, InMemoryCorpusStatistics):
            self.stats.save(self.config.bm25.stats_path)
        for name, closer in (
            ("embedder", self.embedder.close),
            ("converter", getattr(self.converter, "close", None)),
            ("vector store", self.store.close),
            ("metadata", self.metadata.close),
            ("cache", self.cache.close),
            ("corpus stats", getattr(self.stats, "close", None)),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception as exc:
                logger.warning(f"[Services] Closing {name} failed: {exc}")
        logger.info("[Services] Closed")

    def __enter__(self) -> "RAGServices":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
