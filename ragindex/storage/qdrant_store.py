"""
Qdrant Vector Store
-------------------
Adapter over qdrant-client.  One collection holds every tenant's points;
each point has a named dense vector ("dense", cosine) and a named sparse
vector ("sparse").  Tenant and content filters are always translated into
Qdrant filter conditions so isolation is enforced by the store, never by
post-filtering in Python.

Every call runs under the shared RetryPolicy; transport failures become
ExternalServiceError / ServiceTimeoutError.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar

import httpx
from loguru import logger
from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from ragindex.config import QdrantConfig
from ragindex.embedding.bm25 import SparseVector
from ragindex.errors import ExternalServiceError, ServiceTimeoutError, ValidationError
from ragindex.storage.payload import INDEXED_FIELDS
from ragindex.utils.retry import RetryPolicy

DENSE = "dense"
SPARSE = "sparse"
SCROLL_PAGE = 256

T = TypeVar("T")


@dataclass
class VectorPoint:
    id: str
    dense_vector: list[float]
    sparse_vector: SparseVector
    payload: dict[str, Any]

    def to_struct(self) -> models.PointStruct:
        vector: dict[str, Any] = {DENSE: self.dense_vector}
        # No lexical terms, no sparse vector
        if len(self.sparse_vector):
            vector[SPARSE] = models.SparseVector(
                indices=list(self.sparse_vector.indices),
                values=list(self.sparse_vector.values),
            )
        return models.PointStruct(id=self.id, vector=vector, payload=self.payload)


@dataclass
class ScoredHit:
    id: str
    score: float
    payload: Optional[dict[str, Any]]


def build_filter(conditions: Mapping[str, Any]) -> models.Filter:
    """Exact-match conditions; list values match any of their items."""
    must: list[models.FieldCondition] = []
    for key, value in conditions.items():
        if isinstance(value, (list, tuple, set)):
            match: Any = models.MatchAny(any=list(value))
        else:
            match = models.MatchValue(value=value)
        must.append(models.FieldCondition(key=key, match=match))
    return models.Filter(must=must)


class QdrantVectorStore:
    def __init__(
        self,
        client: QdrantClient,
        collection: str = "course_embeddings",
        dimensions: int = 768,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.client = client
        self.collection = collection
        self.dimensions = dimensions
        self.retry = retry_policy or RetryPolicy()

    @classmethod
    def from_config(cls, cfg: QdrantConfig, dimensions: int, retry_policy: Optional[RetryPolicy] = None) -> "QdrantVectorStore":
        if cfg.url == ":memory:":
            client = QdrantClient(location=":memory:")
        else:
            client = QdrantClient(url=cfg.url, api_key=cfg.api_key, timeout=int(cfg.timeout_seconds))
        return cls(client, cfg.collection, dimensions, retry_policy)

    # --- Plumbing -------------------------------------------------------------

    def _call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        def attempt() -> T:
            try:
                return fn(*args, **kwargs)
            except UnexpectedResponse as exc:
                status = exc.status_code
                retryable = status is None or status == 429 or status >= 500
                raise ExternalServiceError(str(exc), service="qdrant", retryable=retryable, status_code=status) from exc
            except httpx.TimeoutException as exc:
                raise ServiceTimeoutError(str(exc), service="qdrant") from exc
            except (ResponseHandlingException, httpx.TransportError) as exc:
                raise ExternalServiceError(str(exc), service="qdrant") from exc

        return self.retry.call(attempt)

    # --- Collection -----------------------------------------------------------

    def ensure_collection(self) -> bool:
        """Create the collection and payload indexes if missing. True if created."""
        if self._call(self.client.collection_exists, self.collection):
            return False
        self._call(
            self.client.create_collection,
            collection_name=self.collection,
            vectors_config={DENSE: models.VectorParams(size=self.dimensions, distance=models.Distance.COSINE)},
            sparse_vectors_config={SPARSE: models.SparseVectorParams()},
        )
        for field in INDEXED_FIELDS:
            self._call(
                self.client.create_payload_index,
                collection_name=self.collection,
                field_name=field,
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
        logger.info(f"[Qdrant] Created collection '{self.collection}' ({self.dimensions}-d dense + sparse)")
        return True

    # --- Writes ---------------------------------------------------------------

    def upsert(self, points: list[VectorPoint]) -> None:
        if not points:
            return
        self._call(
            self.client.upsert,
            collection_name=self.collection,
            points=[p.to_struct() for p in points],
            wait=True,
        )

    def delete(self, conditions: Mapping[str, Any]) -> int:
        """Delete every point matching `conditions`; returns how many matched."""
        if not conditions:
            raise ValidationError("Refusing to delete with an empty filter")
        flt = build_filter(conditions)
        matched = self.count(conditions)
        if matched:
            self._call(
                self.client.delete,
                collection_name=self.collection,
                points_selector=models.FilterSelector(filter=flt),
                wait=True,
            )
        logger.debug(f"[Qdrant] Deleted {matched} points matching {dict(conditions)}")
        return matched

    # --- Reads ----------------------------------------------------------------

    def count(self, conditions: Mapping[str, Any]) -> int:
        result = self._call(
            self.client.count,
            collection_name=self.collection,
            count_filter=build_filter(conditions),
            exact=True,
        )
        return result.count

    def search_dense(
        self,
        vector: list[float],
        conditions: Mapping[str, Any],
        limit: int,
        score_threshold: Optional[float] = None,
    ) -> list[ScoredHit]:
        response = self._call(
            self.client.query_points,
            collection_name=self.collection,
            query=vector,
            using=DENSE,
            query_filter=build_filter(conditions),
            limit=limit,
            with_payload=True,
            score_threshold=score_threshold,
        )
        return [ScoredHit(str(p.id), p.score, p.payload) for p in response.points]

    def search_sparse(self, vector: SparseVector, conditions: Mapping[str, Any], limit: int) -> list[ScoredHit]:
        if not len(vector):
            return []
        response = self._call(
            self.client.query_points,
            collection_name=self.collection,
            query=models.SparseVector(indices=list(vector.indices), values=list(vector.values)),
            using=SPARSE,
            query_filter=build_filter(conditions),
            limit=limit,
            with_payload=True,
        )
        # Zero score means no shared term; those are not lexical matches
        return [ScoredHit(str(p.id), p.score, p.payload) for p in response.points if p.score > 0]

    def retrieve(self, ids: list[str]) -> dict[str, dict[str, Any]]:
        if not ids:
            return {}
        records = self._call(
            self.client.retrieve,
            collection_name=self.collection,
            ids=ids,
            with_payload=True,
        )
        return {str(r.id): r.payload or {} for r in records}

    def scroll(self, conditions: Mapping[str, Any], with_vectors: bool = False) -> Iterator[models.Record]:
        """Iterate every point matching `conditions`, page by page."""
        offset = None
        flt = build_filter(conditions)
        while True:
            records, offset = self._call(
                self.client.scroll,
                collection_name=self.collection,
                scroll_filter=flt,
                limit=SCROLL_PAGE,
                offset=offset,
                with_payload=True,
                with_vectors=with_vectors,
            )
            yield from records
            if offset is None:
                break

    def close(self) -> None:
        self.client.close()
