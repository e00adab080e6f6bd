"""
Content Lifecycle Manager
-------------------------
Owns what happens to a file between upload and deletion:

  Ingest
    1. validate, hash (sha256 of the raw bytes)
    2. reserve tenant quota (atomic, ceiling checked) before any row exists
    3. find-or-create the original row for the hash
         created  -> store artifact, convert, run the indexing pipeline,
                     then serve any references that queued up meanwhile
         existing -> create a reference row (+1 on the original) and copy
                     the already computed vectors under the new tenant.
                     No embedding provider call is made.

  Delete
    - a document's own vectors go first, then its row (references) or a
      tombstone (originals that other tenants still reference)
    - when the count reaches zero the physical artifact, any remaining
      vectors and the original row are removed, and the BM25 token lists
      recorded on the original row are subtracted from the corpus statistics

Quota is charged per logical file: every tenant pays for its own copy even
when the bytes are stored once.
"""
from __future__ import annotations

from typing import Optional

from loguru import logger

from ragindex.chunking.schemas import ChunkLevel
from ragindex.embedding.bm25 import SparseVector
from ragindex.embedding.corpus_stats import CorpusStatistics
from ragindex.embedding.pipeline import IndexingPipeline
from ragindex.errors import ConflictError, CorruptionError, DocumentNotFoundError, RagIndexError, ValidationError
from ragindex.retrieval.search_cache import SearchCache
from ragindex.schemas import (
    DeduplicationStats,
    DeleteResult,
    IngestResult,
    TenantContext,
    UploadedFile,
    VectorStatus,
)
from ragindex.storage.converter import DocumentConverter
from ragindex.storage.file_storage import ArtifactStorage
from ragindex.storage.metadata_store import DocumentRecord, MetadataStore
from ragindex.storage.payload import VectorPayload
from ragindex.storage.qdrant_store import DENSE, SPARSE, QdrantVectorStore, VectorPoint
from ragindex.storage.uploader import VectorUploadManager, point_id
from ragindex.utils.helpers import sha256_hex, utc_now

MAX_FILE_SIZE = 100 * 1024 * 1024


def rebase_chunk_id(chunk_id: Optional[str], source_document_id: str, target_document_id: str) -> Optional[str]:
    """Move a chunk id from one document's namespace to another's."""
    if chunk_id is None:
        return None
    prefix = f"{source_document_id}:"
    if not chunk_id.startswith(prefix):
        raise CorruptionError(f"Chunk {chunk_id} does not belong to document {source_document_id}")
    return f"{target_document_id}:{chunk_id[len(prefix):]}"


class ContentLifecycleManager:
    def __init__(
        self,
        metadata: MetadataStore,
        storage: ArtifactStorage,
        converter: DocumentConverter,
        pipeline: IndexingPipeline,
        store: QdrantVectorStore,
        uploader: VectorUploadManager,
        stats: CorpusStatistics,
        search_cache: Optional[SearchCache] = None,
        max_file_size: int = MAX_FILE_SIZE,
    ) -> None:
        self.metadata = metadata
        self.storage = storage
        self.converter = converter
        self.pipeline = pipeline
        self.store = store
        self.uploader = uploader
        self.stats = stats
        self.search_cache = search_cache
        self.max_file_size = max_file_size

    # ── Ingest ────────────────────────────────────────────────────────────────

    def ingest(self, upload: UploadedFile, tenant: TenantContext) -> IngestResult:
        if tenant.course_id is None:
            raise ValidationError("Ingest requires a course_id")
        if upload.size == 0:
            raise ValidationError(f"{upload.filename} is empty")
        if upload.size > self.max_file_size:
            raise ValidationError(f"{upload.filename} is {upload.size} bytes, limit is {self.max_file_size}")

        content_hash = sha256_hex(upload.content)
        self.metadata.reserve_quota(tenant.organization_id, upload.size)

        row_committed = False
        try:
            for attempt in (1, 2):
                original, created = self.metadata.find_or_create_original(
                    content_hash,
                    tenant.organization_id,
                    tenant.course_id,
                    upload.filename,
                    upload.mime_type,
                    upload.size,
                )
                if created:
                    row_committed = True
                    result = self._ingest_original(original, upload)
                    break
                try:
                    reference = self.metadata.create_reference(
                        original.id,
                        tenant.organization_id,
                        tenant.course_id,
                        upload.filename,
                        upload.mime_type,
                        upload.size,
                    )
                except ConflictError:
                    if attempt == 2:
                        raise
                    logger.warning(f"[Lifecycle] Original {original.id} changed under us; re-reading")
                    continue
                row_committed = True
                result = self._ingest_reference(reference, upload)
                break
        except Exception:
            if not row_committed:
                self.metadata.release_quota(tenant.organization_id, upload.size)
            raise
        finally:
            self._invalidate(tenant.organization_id, tenant.course_id)

        logger.info(
            f"[Lifecycle] Ingested {upload.filename} -> {result.document_id} | "
            f"deduplicated={result.deduplicated} | status={result.vector_status.value}"
        )
        return result

    def _ingest_original(self, original: DocumentRecord, upload: UploadedFile) -> IngestResult:
        path = self.storage.save(upload.content, original.content_hash, upload.filename)
        self.metadata.set_storage_path(original.id, path)
        try:
            markdown = self.converter.convert(upload)
            outcome = self.pipeline.run(self.metadata.get(original.id), markdown)
        except Exception as exc:
            self._mark_failed(original.id, exc)
            raise
        self._serve_pending_references(original.id)
        return IngestResult(
            document_id=original.id,
            deduplicated=False,
            vector_status=VectorStatus.INDEXED,
            chunk_count=outcome.child_count,
        )

    def _ingest_reference(self, reference: DocumentRecord, upload: UploadedFile) -> IngestResult:
        original = self.metadata.get(reference.original_id)
        copied = 0
        try:
            if original.vector_status == VectorStatus.FAILED:
                self._recover_failed_original(original, reference, upload)
            elif original.vector_status == VectorStatus.INDEXED:
                source = self._vector_source(original, exclude=reference.id)
                if source is not None:
                    copied = self.duplicate_vectors(source, reference)
                else:
                    # No live copy left to duplicate from; index this reference itself
                    markdown = self.converter.convert(upload)
                    self.pipeline.run(reference, markdown, update_stats=False)
            else:
                logger.info(
                    f"[Lifecycle] Original {original.id} is {original.vector_status.value}; "
                    f"reference {reference.id} queued"
                )
        except Exception as exc:
            self._mark_failed(reference.id, exc)
            raise

        current = self.metadata.get(reference.id)
        return IngestResult(
            document_id=reference.id,
            deduplicated=True,
            original_document_id=original.id,
            vector_status=current.vector_status,
            vectors_duplicated=copied,
            chunk_count=current.chunk_count,
        )

    def _recover_failed_original(self, original: DocumentRecord, reference: DocumentRecord, upload: UploadedFile) -> None:
        """Re-index content whose first indexing failed, then serve queued references."""
        if original.storage_path:
            data = self.storage.read(original.storage_path, original.content_hash)
        else:
            data = upload.content
            self.metadata.set_storage_path(
                original.id, self.storage.save(data, original.content_hash, original.filename)
            )
        markdown = self.converter.convert(UploadedFile(filename=original.filename, content=data, mime_type=original.mime_type))
        target = reference if original.is_deleted else self.metadata.get(original.id)
        logger.info(f"[Lifecycle] Re-indexing failed content {original.content_hash[:12]} as {target.id}")
        self.pipeline.run(target, markdown)
        if not original.is_deleted:
            self._serve_pending_references(original.id)

    def _vector_source(self, original: DocumentRecord, exclude: Optional[str] = None) -> Optional[DocumentRecord]:
        """A document whose points can be copied: the original, or an indexed reference once it is tombstoned."""
        if not original.is_deleted and original.vector_status == VectorStatus.INDEXED:
            return original
        for ref in self.metadata.references_of(original.id, status=VectorStatus.INDEXED):
            if ref.id != exclude:
                return ref
        return None

    def _serve_pending_references(self, original_id: str) -> None:
        original = self.metadata.get(original_id)
        for ref in self.metadata.references_of(original_id, status=VectorStatus.PENDING):
            try:
                self.duplicate_vectors(original, ref)
            except RagIndexError as exc:
                logger.error(f"[Lifecycle] Could not serve queued reference {ref.id}: {exc}")
                self._mark_failed(ref.id, exc)

    # ── Vector duplication ────────────────────────────────────────────────────

    def duplicate_vectors(self, source: DocumentRecord, target: DocumentRecord) -> int:
        """
        Copy every point of `source` to `target`: same embeddings, tenancy and
        chunk ids rewritten.  Returns the number of points written.
        """
        now = utc_now()
        points: list[VectorPoint] = []
        children = 0
        for record in self.store.scroll({"document_id": source.id}, with_vectors=True):
            payload = VectorPayload.parse(record.payload, record.id)
            vectors = record.vector if isinstance(record.vector, dict) else {}
            dense, sparse = vectors.get(DENSE), vectors.get(SPARSE)
            if dense is None:
                raise CorruptionError(f"Point {record.id} of {source.id} is missing its dense vector")

            new_chunk_id = rebase_chunk_id(payload.chunk_id, source.id, target.id)
            copy = payload.model_copy(
                update={
                    "chunk_id": new_chunk_id,
                    "parent_chunk_id": rebase_chunk_id(payload.parent_chunk_id, source.id, target.id),
                    "sibling_chunk_ids": [rebase_chunk_id(s, source.id, target.id) for s in payload.sibling_chunk_ids],
                    "document_id": target.id,
                    "organization_id": target.organization_id,
                    "course_id": target.course_id,
                    "document_name": target.filename,
                    "indexed_at": now,
                    "last_updated": now,
                }
            )
            if copy.level == ChunkLevel.CHILD:
                children += 1
            points.append(
                VectorPoint(
                    id=point_id(new_chunk_id),
                    dense_vector=list(dense),
                    sparse_vector=SparseVector(tuple(sparse.indices), tuple(sparse.values)) if sparse else SparseVector(),
                    payload=copy.to_dict(),
                )
            )

        if not points:
            raise CorruptionError(f"Source document {source.id} has no vectors to duplicate")
        written = self.uploader.upload_document(target.id, points, chunk_count=children)
        logger.info(f"[Lifecycle] Duplicated {written} points {source.id} -> {target.id} (org={target.organization_id})")
        return written

    # ── Delete ────────────────────────────────────────────────────────────────

    def delete(self, document_id: str) -> DeleteResult:
        record = self.metadata.get(document_id)
        if record.is_deleted:
            raise DocumentNotFoundError(document_id)
        original_id = record.original_id or record.id

        vectors_deleted = self.store.delete({"document_id": record.id})

        if record.is_original:
            remaining = self.metadata.release_original(record.id)
        else:
            remaining = self.metadata.remove_reference(record.id)
        self.metadata.release_quota(record.organization_id, record.file_size)

        physical_deleted = False
        freed = 0
        if remaining == 0:
            original = self.metadata.get(original_id)
            vectors_deleted += self.store.delete({"document_id": original_id})
            if original.storage_path:
                freed = self.storage.delete(original.storage_path)
            for tokens in self.metadata.corpus_tokens(original_id):
                self.stats.remove_document(tokens)
            self.metadata.purge_original(original_id)
            physical_deleted = True

        self._invalidate(record.organization_id, record.course_id)
        logger.info(
            f"[Lifecycle] Deleted {document_id} | vectors={vectors_deleted} | "
            f"remaining_references={remaining} | physical_deleted={physical_deleted}"
        )
        return DeleteResult(
            document_id=document_id,
            physical_deleted=physical_deleted,
            remaining_references=remaining,
            vectors_deleted=vectors_deleted,
            storage_freed_bytes=freed,
        )

    def delete_course(self, course_id: str, organization_id: Optional[str] = None) -> list[DeleteResult]:
        """Delete every document of a course, then sweep any stray points."""
        results = [self.delete(doc.id) for doc in self.metadata.documents_for_course(course_id, organization_id)]
        sweep = {"course_id": course_id}
        if organization_id is not None:
            sweep["organization_id"] = organization_id
        stray = self.store.delete(sweep)
        if stray:
            logger.warning(f"[Lifecycle] Course sweep removed {stray} orphaned points for {course_id}")
        if organization_id is not None:
            self._invalidate(organization_id, course_id)
        logger.info(f"[Lifecycle] Course {course_id}: {len(results)} documents deleted")
        return results

    def deduplication_stats(self, organization_id: Optional[str] = None) -> DeduplicationStats:
        return self.metadata.deduplication_stats(organization_id)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _mark_failed(self, document_id: str, exc: Exception) -> None:
        try:
            current = self.metadata.get(document_id)
            if current.vector_status != VectorStatus.FAILED:
                self.metadata.set_status(document_id, VectorStatus.FAILED, error_message=str(exc)[:1000])
        except RagIndexError as status_exc:
            logger.error(f"[Lifecycle] Could not mark {document_id} failed: {status_exc}")

    def _invalidate(self, organization_id: str, course_id: Optional[str]) -> None:
        if self.search_cache is not None:
            self.search_cache.invalidate(organization_id, course_id)
