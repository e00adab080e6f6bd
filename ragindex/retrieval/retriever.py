"""
Hybrid Search Engine
--------------------
Embeds the query twice (dense via the embedder, sparse as the query's own
BM25 vector against the current corpus statistics), runs two independent filtered searches against
Qdrant, and merges them with Reciprocal Rank Fusion.

    RRF score = sum over lists containing the item of 1 / (k + rank)

Ranks are 1-based and k defaults to 60.  Ties are broken by dense rank,
then sparse rank, then point id, so the output order is fully
deterministic.  Tenant and content filters are applied inside both store
queries, never afterwards.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ragindex.embedding.bm25 import BM25SparseEncoder, tokenize_for_bm25
from ragindex.embedding.corpus_stats import CorpusStatistics
from ragindex.embedding.embedder import LateChunkingEmbedder
from ragindex.errors import ValidationError
from ragindex.retrieval.search_cache import SearchCache
from ragindex.schemas import RankSource, SearchFilters, SearchOptions, SearchResponse, SearchResult
from ragindex.storage.payload import VectorPayload
from ragindex.storage.qdrant_store import QdrantVectorStore, ScoredHit
from ragindex.storage.uploader import point_id

RRF_K = 60


@dataclass
class FusedHit:
    id: str
    score: float
    dense_rank: Optional[int] = None
    sparse_rank: Optional[int] = None

    @property
    def rank_source(self) -> RankSource:
        if self.dense_rank is not None and self.sparse_rank is not None:
            return RankSource.BOTH
        return RankSource.DENSE if self.dense_rank is not None else RankSource.SPARSE


def reciprocal_rank_fusion(dense_ids: list[str], sparse_ids: list[str], k: int = RRF_K) -> list[FusedHit]:
    """Fuse two ranked id lists. Duplicate ids within one list keep their best rank."""
    hits: dict[str, FusedHit] = {}
    for rank, pid in enumerate(dense_ids, start=1):
        hit = hits.setdefault(pid, FusedHit(pid, 0.0))
        if hit.dense_rank is None:
            hit.dense_rank = rank
            hit.score += 1.0 / (k + rank)
    for rank, pid in enumerate(sparse_ids, start=1):
        hit = hits.setdefault(pid, FusedHit(pid, 0.0))
        if hit.sparse_rank is None:
            hit.sparse_rank = rank
            hit.score += 1.0 / (k + rank)

    def order(h: FusedHit) -> tuple:
        return (
            -h.score,
            h.dense_rank if h.dense_rank is not None else math.inf,
            h.sparse_rank if h.sparse_rank is not None else math.inf,
            h.id,
        )

    return sorted(hits.values(), key=order)


class HybridSearchEngine:
    """
    Usage:
        engine = HybridSearchEngine(store, embedder, encoder, stats, SearchCache(cache))
        response = engine.search("gradient descent", SearchFilters(organization_id="org-1"))
    """

    def __init__(
        self,
        store: QdrantVectorStore,
        embedder: LateChunkingEmbedder,
        encoder: BM25SparseEncoder,
        stats: CorpusStatistics,
        cache: Optional[SearchCache] = None,
        rrf_k: int = RRF_K,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.encoder = encoder
        self.stats = stats
        self.cache = cache
        self.rrf_k = rrf_k

    def search(
        self,
        query: str,
        filters: SearchFilters,
        options: Optional[SearchOptions] = None,
    ) -> SearchResponse:
        options = options or SearchOptions()
        if not query or not query.strip():
            raise ValidationError("Search query is empty")
        start = time.perf_counter()

        cache_key = None
        if self.cache is not None and options.use_cache:
            cache_key = self.cache.key(query, filters, options)
            cached = self.cache.get(cache_key)
            if cached is not None:
                cached.metadata["cached"] = True
                logger.debug(f"[Search] Cache hit for {query[:60]!r}")
                return cached

        conditions = filters.conditions()
        prefetch = options.limit * 2

        dense_hits = self.store.search_dense(
            self.embedder.embed_query(query), conditions, prefetch, options.score_threshold
        )
        sparse_hits: list[ScoredHit] = []
        if options.enable_hybrid:
            tokens = tokenize_for_bm25(query)
            if tokens:
                snapshot = self.stats.snapshot(tokens)
                if options.idf_only_query:
                    sparse_vec = self.encoder.encode_query(tokens, snapshot)
                else:
                    sparse_vec = self.encoder.encode(tokens, snapshot)
                sparse_hits = self.store.search_sparse(sparse_vec, conditions, prefetch)

        if options.enable_hybrid:
            results = self._fuse(dense_hits, sparse_hits, options.limit)
            search_type = "hybrid"
        else:
            results = self._dense_only(dense_hits, options.limit)
            search_type = "dense"

        if options.include_parent_context:
            self._attach_parents(results)

        response = SearchResponse(
            results=results,
            metadata={
                "total_results": len(results),
                "search_type": search_type,
                "dense_candidates": len(dense_hits),
                "sparse_candidates": len(sparse_hits),
                "cached": False,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        if cache_key is not None:
            self.cache.set(cache_key, response)

        logger.info(
            f"[Search] {search_type} | org={filters.organization_id} course={filters.course_id} | "
            f"dense={len(dense_hits)} sparse={len(sparse_hits)} -> {len(results)} results"
        )
        return response

    # --- Helpers --------------------------------------------------------------

    def _fuse(self, dense_hits: list[ScoredHit], sparse_hits: list[ScoredHit], limit: int) -> list[SearchResult]:
        payloads = {h.id: h.payload for h in (*sparse_hits, *dense_hits)}
        fused = reciprocal_rank_fusion([h.id for h in dense_hits], [h.id for h in sparse_hits], self.rrf_k)
        return [
            self._result(h.id, h.score, payloads[h.id], h.rank_source, h.dense_rank, h.sparse_rank)
            for h in fused[:limit]
        ]

    def _dense_only(self, dense_hits: list[ScoredHit], limit: int) -> list[SearchResult]:
        return [
            self._result(h.id, h.score, h.payload, RankSource.DENSE, rank, None)
            for rank, h in enumerate(dense_hits[:limit], start=1)
        ]

    @staticmethod
    def _result(
        pid: str,
        score: float,
        raw_payload: Optional[dict],
        source: RankSource,
        dense_rank: Optional[int],
        sparse_rank: Optional[int],
    ) -> SearchResult:
        payload = VectorPayload.parse(raw_payload, pid)
        return SearchResult(
            chunk_id=payload.chunk_id,
            document_id=payload.document_id,
            score=score,
            content=payload.content,
            payload=payload.to_dict(),
            rank_source=source,
            dense_rank=dense_rank,
            sparse_rank=sparse_rank,
        )

    def _attach_parents(self, results: list[SearchResult]) -> None:
        parent_ids = {
            r.payload["parent_chunk_id"]: point_id(r.payload["parent_chunk_id"])
            for r in results
            if r.payload.get("parent_chunk_id")
        }
        if not parent_ids:
            return
        found = self.store.retrieve(list(dict.fromkeys(parent_ids.values())))
        for r in results:
            parent_chunk_id = r.payload.get("parent_chunk_id")
            if not parent_chunk_id:
                continue
            raw = found.get(parent_ids[parent_chunk_id])
            if raw is None:
                continue
            parent = VectorPayload.parse(raw, parent_ids[parent_chunk_id])
            # Parent must share the child's tenant
            if parent.organization_id == r.payload["organization_id"]:
                r.parent_content = parent.content
