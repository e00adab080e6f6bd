"""
Vector Upload Manager
---------------------
Turns enriched chunks plus their embeddings into Qdrant points and writes
them in bounded batches.

Point ids are UUIDv5(chunk_id), so re-uploading a document overwrites the
same points instead of duplicating them; a retried upload is harmless.
A document is only marked `indexed` after every batch landed.  If any batch
fails, the points already written for that document are removed and the
document is marked `failed` with the reason, so search never sees a
half-indexed document.
"""
from __future__ import annotations

import uuid
from typing import Optional, Sequence

from loguru import logger

from ragindex.chunking.schemas import EnrichedChunk
from ragindex.embedding.embedder import EmbeddingResult
from ragindex.errors import CorruptionError, RagIndexError, ValidationError
from ragindex.schemas import VectorStatus
from ragindex.storage.metadata_store import MetadataStore
from ragindex.storage.payload import VectorPayload
from ragindex.storage.qdrant_store import QdrantVectorStore, VectorPoint

BATCH_SIZE = 100
MAX_BATCH_SIZE = 500

POINT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "ragindex/chunk")


def point_id(chunk_id: str) -> str:
    return str(uuid.uuid5(POINT_NAMESPACE, chunk_id))


def build_points(chunks: Sequence[EnrichedChunk], embeddings: Sequence[EmbeddingResult]) -> list[VectorPoint]:
    """Pair chunks with their embeddings (same order, same ids) into points."""
    if len(chunks) != len(embeddings):
        raise CorruptionError(f"{len(chunks)} chunks but {len(embeddings)} embeddings")
    points: list[VectorPoint] = []
    for chunk, emb in zip(chunks, embeddings):
        if chunk.chunk_id != emb.chunk_id:
            raise CorruptionError(f"Embedding order mismatch: {chunk.chunk_id} != {emb.chunk_id}")
        points.append(
            VectorPoint(
                id=point_id(chunk.chunk_id),
                dense_vector=emb.dense_vector,
                sparse_vector=emb.sparse_vector,
                payload=VectorPayload.from_chunk(chunk).to_dict(),
            )
        )
    return points


class VectorUploadManager:
    def __init__(
        self,
        store: QdrantVectorStore,
        metadata: MetadataStore,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValidationError(f"batch_size must be within 1..{MAX_BATCH_SIZE}, got {batch_size}")
        self.store = store
        self.metadata = metadata
        self.batch_size = batch_size

    def upload_points(self, points: Sequence[VectorPoint]) -> int:
        """Upsert points in batches. Idempotent on point id."""
        for i in range(0, len(points), self.batch_size):
            batch = list(points[i: i + self.batch_size])
            self.store.upsert(batch)
            logger.debug(f"[Uploader] Batch {i // self.batch_size + 1}: {len(batch)} points")
        return len(points)

    def upload_document(self, document_id: str, points: Sequence[VectorPoint], chunk_count: Optional[int] = None) -> int:
        """
        Replace a document's points and mark it indexed.

        On failure the document's partial points are removed, the row is
        marked failed, and the original error is re-raised.
        """
        for p in points:
            if p.payload.get("document_id") != document_id:
                raise ValidationError(f"Point {p.id} belongs to {p.payload.get('document_id')}, not {document_id}")
        try:
            stale = self.store.delete({"document_id": document_id})
            if stale:
                logger.info(f"[Uploader] Removed {stale} stale points for {document_id}")
            uploaded = self.upload_points(points)
            self.metadata.set_status(
                document_id,
                VectorStatus.INDEXED,
                chunk_count=chunk_count if chunk_count is not None else uploaded,
            )
        except Exception as exc:
            self._fail(document_id, exc)
            raise
        logger.info(f"[Uploader] {document_id}: {uploaded} points indexed")
        return uploaded

    def _fail(self, document_id: str, exc: Exception) -> None:
        logger.error(f"[Uploader] Upload for {document_id} failed: {exc!r}")
        try:
            self.store.delete({"document_id": document_id})
        except RagIndexError as cleanup_exc:
            logger.error(f"[Uploader] Could not remove partial points for {document_id}: {cleanup_exc}")
        try:
            self.metadata.set_status(document_id, VectorStatus.FAILED, error_message=str(exc)[:1000])
        except RagIndexError as status_exc:
            logger.error(f"[Uploader] Could not mark {document_id} failed: {status_exc}")
