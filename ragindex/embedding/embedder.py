"""
Late-Chunking Embedder
----------------------
Dense embeddings for chunks and queries, built on an external long-context
embedding provider (Jina embeddings v3 over HTTP by default).

Late chunking: the cache-miss chunks of a document are sent together, in
order, as one request with `late_chunking=true`.  The provider encodes the
concatenation as a single long context and pools the token-level output back
per input, so each chunk's vector carries context from its neighbours (a term
defined in chunk 3 still informs chunk 7) for the same token cost as
embedding the chunks one by one.

Flow for `embed_texts`:
  1. cache lookup per text, key = sha256(text + ":" + task + ":" + mode);
     a late-chunked vector depends on its neighbours, so it never answers
     for a plain one (a child whose text equals its parent) or vice versa
  2. misses grouped in original order into token-bounded groups
     (MAX_BATCH_TOKENS keeps each group inside the provider context window)
  3. one provider call per group, retried through the shared RetryPolicy
  4. fresh vectors written back to the cache (TTL CACHE_TTL)
  5. merge_in_order() rebuilds the output strictly in input order

Cache failures are logged by the cache layer and only cost a miss.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import httpx
import numpy as np
import orjson
from loguru import logger

from ragindex.chunking.schemas import EnrichedChunk
from ragindex.chunking.tokenizer import Tokenizer
from ragindex.config import EmbeddingConfig
from ragindex.embedding.bm25 import SparseVector
from ragindex.errors import CorruptionError, ExternalServiceError, ServiceTimeoutError, ValidationError
from ragindex.utils.cache import CacheStore, NullCache
from ragindex.utils.helpers import sha256_hex
from ragindex.utils.retry import RetryPolicy

MODEL = "jina-embeddings-v3"
DIMENSIONS = 768
MAX_BATCH_TOKENS = 8000
CACHE_TTL = 3600

TASK_PASSAGE = "passage"
TASK_QUERY = "query"
_JINA_TASKS = {TASK_PASSAGE: "retrieval.passage", TASK_QUERY: "retrieval.query"}


@dataclass
class ProviderResponse:
    vectors: list[list[float]]
    total_tokens: int = 0


@dataclass
class EmbeddingResult:
    chunk_id: str
    dense_vector: list[float]
    sparse_vector: SparseVector
    token_count: int


class EmbeddingProvider(Protocol):
    model: str

    def embed(self, texts: list[str], task: str, late_chunking: bool) -> ProviderResponse: ...

    def close(self) -> None: ...


# --- Jina HTTP client ---------------------------------------------------------

class JinaEmbeddingClient:
    """
    Minimal client for the Jina embeddings API.

    Status mapping:
      400 / 422           -> ValidationError (malformed input, no retry)
      401 / 402 / 403     -> ExternalServiceError(retryable=False)
      429 / 5xx           -> ExternalServiceError(retryable=True)
      timeout             -> ServiceTimeoutError
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.jina.ai/v1/embeddings",
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        timeout: float = 60.0,
        min_request_interval: float = 0.04,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_url = api_url
        self.model = model
        self.dimensions = dimensions
        self.min_request_interval = min_request_interval
        self._client = http_client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        self._rate_lock = threading.Lock()
        self._last_request = 0.0

    @classmethod
    def from_config(cls, cfg: EmbeddingConfig) -> "JinaEmbeddingClient":
        if not cfg.api_key:
            logger.warning("[Embedder] JINA_API_KEY is not set; provider calls will be rejected")
        return cls(
            api_key=cfg.api_key,
            api_url=cfg.api_url,
            model=cfg.model,
            dimensions=cfg.dimensions,
            timeout=cfg.timeout_seconds,
            min_request_interval=cfg.min_request_interval,
        )

    def _throttle(self) -> None:
        with self._rate_lock:
            wait = self._last_request + self.min_request_interval - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    def embed(self, texts: list[str], task: str, late_chunking: bool) -> ProviderResponse:
        if task not in _JINA_TASKS:
            raise ValidationError(f"Unknown embedding task: {task!r}")
        payload = {
            "model": self.model,
            "input": texts,
            "task": _JINA_TASKS[task],
            "dimensions": self.dimensions,
            "late_chunking": late_chunking,
            "embedding_type": "float",
            "normalized": True,
        }
        self._throttle()
        start = time.perf_counter()
        try:
            response = self._client.post(self.api_url, content=orjson.dumps(payload), headers=self._headers)
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(f"request timed out: {exc}", service="jina") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"request failed: {exc}", service="jina") from exc
        elapsed = time.perf_counter() - start

        if response.status_code >= 400:
            raise _map_status(response)

        try:
            body = orjson.loads(response.content)
            data = sorted(body["data"], key=lambda d: d["index"])
            vectors = [d["embedding"] for d in data]
            tokens = int(body.get("usage", {}).get("total_tokens", 0))
        except (orjson.JSONDecodeError, KeyError, TypeError) as exc:
            raise CorruptionError(f"Malformed embedding response: {exc}") from exc

        logger.debug(
            f"[Embedder] Jina call: {len(texts)} texts | late_chunking={late_chunking} | "
            f"{tokens} tokens | {elapsed:.2f}s"
        )
        return ProviderResponse(vectors=vectors, total_tokens=tokens)

    def close(self) -> None:
        self._client.close()


def _map_status(response: httpx.Response) -> Exception:
    status = response.status_code
    detail = response.text[:300]
    if status in (400, 422):
        return ValidationError(f"Embedding provider rejected input ({status}): {detail}")
    if status in (401, 402, 403):
        return ExternalServiceError(detail, service="jina", retryable=False, status_code=status)
    return ExternalServiceError(detail, service="jina", retryable=status == 429 or status >= 500, status_code=status)


# --- Order-preserving merge ---------------------------------------------------

def merge_in_order(
    total: int,
    cached: dict[int, list[float]],
    fresh: dict[int, list[float]],
) -> list[list[float]]:
    """
    Combine cache hits and freshly computed vectors by input position.

    Every position in range(total) must be supplied exactly once.
    """
    overlap = cached.keys() & fresh.keys()
    if overlap:
        raise CorruptionError(f"Positions supplied twice during merge: {sorted(overlap)[:5]}")
    merged: list[list[float]] = []
    for i in range(total):
        vector = cached.get(i)
        if vector is None:
            vector = fresh.get(i)
        if vector is None:
            raise CorruptionError(f"No embedding for input position {i}")
        merged.append(vector)
    return merged


def group_by_tokens(positions: Sequence[int], token_counts: Sequence[int], max_tokens: int) -> list[list[int]]:
    """Split positions, in order, into groups whose token sum stays <= max_tokens."""
    groups: list[list[int]] = []
    current: list[int] = []
    used = 0
    for pos in positions:
        n = token_counts[pos]
        if current and used + n > max_tokens:
            groups.append(current)
            current, used = [], 0
        current.append(pos)
        used += n
    if current:
        groups.append(current)
    return groups


def l2_normalize(vectors: list[list[float]]) -> list[list[float]]:
    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).tolist()


# --- Embedder -----------------------------------------------------------------

@dataclass
class _Usage:
    total_api_calls: int = 0
    total_tokens_used: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class LateChunkingEmbedder:
    """
    Usage:
        embedder = LateChunkingEmbedder(JinaEmbeddingClient.from_config(cfg), tokenizer, cache=RedisCache(url))
        vectors = embedder.embed_chunks(children, task="passage")
        query_vec = embedder.embed_query("what is late chunking?")
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        tokenizer: Tokenizer,
        cache: Optional[CacheStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        dimensions: int = DIMENSIONS,
        max_batch_tokens: int = MAX_BATCH_TOKENS,
        cache_ttl: int = CACHE_TTL,
    ) -> None:
        self.provider = provider
        self.tokenizer = tokenizer
        self.cache = cache if cache is not None else NullCache()
        self.retry = retry_policy or RetryPolicy()
        self.dimensions = dimensions
        self.max_batch_tokens = max_batch_tokens
        self.cache_ttl = cache_ttl
        self._usage = _Usage()

    @staticmethod
    def cache_key(text: str, task: str, late_chunking: bool = False) -> str:
        mode = "late" if late_chunking else "plain"
        return f"embedding:{sha256_hex(f'{text}:{task}:{mode}')}"

    def embed_texts(self, texts: list[str], task: str = TASK_PASSAGE, late_chunking: bool = True) -> list[list[float]]:
        """Embed texts in order; returns one vector per input text."""
        if task not in (TASK_PASSAGE, TASK_QUERY):
            raise ValidationError(f"Unknown embedding task: {task!r}")
        if not texts:
            return []

        keys = [self.cache_key(t, task, late_chunking) for t in texts]
        cached: dict[int, list[float]] = {}
        for i, raw in enumerate(self.cache.get_many(keys)):
            vector = self._decode_cached(raw)
            if vector is not None:
                cached[i] = vector

        misses = [i for i in range(len(texts)) if i not in cached]
        fresh: dict[int, list[float]] = {}
        if misses:
            counts = {i: self.tokenizer.count(texts[i]) for i in misses}
            token_counts = [counts.get(i, 0) for i in range(len(texts))]
            for group in group_by_tokens(misses, token_counts, self.max_batch_tokens):
                if len(group) == 1 and token_counts[group[0]] > self.max_batch_tokens:
                    logger.warning(
                        f"[Embedder] Input {group[0]} has {token_counts[group[0]]} tokens, "
                        f"above max_batch_tokens={self.max_batch_tokens}; provider may truncate"
                    )
                vectors = self._call_provider([texts[i] for i in group], task, late_chunking)
                fresh.update(zip(group, vectors))
            self.cache.set_many(
                {keys[i]: orjson.dumps(v) for i, v in fresh.items()},
                self.cache_ttl,
            )

        with self._usage.lock:
            self._usage.cache_hits += len(cached)
            self._usage.cache_misses += len(misses)
        logger.debug(
            f"[Embedder] {len(texts)} texts | task={task} | cache hits={len(cached)} | "
            f"fresh={len(fresh)} | late_chunking={late_chunking}"
        )
        return merge_in_order(len(texts), cached, fresh)

    def embed_chunks(
        self,
        chunks: Sequence[EnrichedChunk],
        task: str = TASK_PASSAGE,
        late_chunking: bool = True,
    ) -> list[list[float]]:
        return self.embed_texts([c.content for c in chunks], task=task, late_chunking=late_chunking)

    def embed_query(self, text: str) -> list[float]:
        """Single query vector: task=query, no late chunking."""
        if not text.strip():
            raise ValidationError("Query text is empty")
        return self.embed_texts([text], task=TASK_QUERY, late_chunking=False)[0]

    def _call_provider(self, texts: list[str], task: str, late_chunking: bool) -> list[list[float]]:
        response = self.retry.call(self.provider.embed, texts, task, late_chunking)
        if len(response.vectors) != len(texts):
            raise CorruptionError(
                f"Provider returned {len(response.vectors)} vectors for {len(texts)} inputs"
            )
        for vector in response.vectors:
            if len(vector) != self.dimensions:
                raise CorruptionError(f"Expected {self.dimensions}-d vectors, provider returned {len(vector)}-d")
        with self._usage.lock:
            self._usage.total_api_calls += 1
            self._usage.total_tokens_used += response.total_tokens
        return l2_normalize(response.vectors)

    def _decode_cached(self, raw: Optional[bytes]) -> Optional[list[float]]:
        if raw is None:
            return None
        try:
            vector = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("[Embedder] Ignoring undecodable cache entry")
            return None
        if not isinstance(vector, list) or len(vector) != self.dimensions:
            logger.warning("[Embedder] Ignoring cache entry with wrong dimensionality")
            return None
        return vector

    def usage_summary(self) -> dict:
        with self._usage.lock:
            return {
                "model": getattr(self.provider, "model", "unknown"),
                "total_api_calls": self._usage.total_api_calls,
                "total_tokens_used": self._usage.total_tokens_used,
                "cache_hits": self._usage.cache_hits,
                "cache_misses": self._usage.cache_misses,
            }

    def close(self) -> None:
        self.provider.close()
