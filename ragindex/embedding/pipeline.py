"""
Indexing Pipeline
-----------------
Runs one document from markdown to indexed vectors:

    normalise -> chunk -> enrich -> corpus stats -> BM25 sparse
              -> dense (children with late chunking, parents without)
              -> upload

Chunk order is preserved end to end: the splitter emits chunks in document
order, the enricher and embedder keep it, and points are built by zipping
chunks with their embeddings positionally.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from loguru import logger

from ragindex.chunking.chunker import HierarchicalChunker
from ragindex.chunking.enricher import enrich_chunks, page_offsets_from_markers
from ragindex.chunking.schemas import DocumentContext, EnrichedChunk
from ragindex.embedding.bm25 import BM25SparseEncoder, tokenize_for_bm25
from ragindex.embedding.corpus_stats import CorpusStatistics
from ragindex.embedding.embedder import TASK_PASSAGE, EmbeddingResult, LateChunkingEmbedder
from ragindex.errors import RagIndexError, ValidationError
from ragindex.schemas import VectorStatus
from ragindex.storage.metadata_store import DocumentRecord, MetadataStore
from ragindex.storage.uploader import VectorUploadManager, build_points
from ragindex.utils.helpers import normalize_markdown, utc_now


@dataclass
class PipelineResult:
    document_id: str
    parent_count: int
    child_count: int
    points_uploaded: int


class IndexingPipeline:
    def __init__(
        self,
        chunker: HierarchicalChunker,
        encoder: BM25SparseEncoder,
        stats: CorpusStatistics,
        embedder: LateChunkingEmbedder,
        uploader: VectorUploadManager,
        metadata: MetadataStore,
    ) -> None:
        self.chunker = chunker
        self.encoder = encoder
        self.stats = stats
        self.embedder = embedder
        self.uploader = uploader
        self.metadata = metadata

    def run(
        self,
        document: DocumentRecord,
        markdown: str,
        indexed_at: Optional[datetime] = None,
        update_stats: bool = True,
    ) -> PipelineResult:
        """
        Index `document` from its markdown.

        `update_stats=False` re-indexes content whose BM25 contribution is
        already counted (a second physical copy of known content).  Counted
        token lists are recorded on the original row so a later purge can
        subtract exactly what was added.
        """
        self.metadata.set_status(document.id, VectorStatus.INDEXING)
        owner_id = document.original_id or document.id
        counted: list[list[str]] = []
        try:
            text = normalize_markdown(markdown)
            context = DocumentContext(
                document_id=document.id,
                document_name=document.filename,
                organization_id=document.organization_id,
                course_id=document.course_id,
                content_hash=document.content_hash,
                indexed_at=indexed_at or utc_now(),
                page_offsets=page_offsets_from_markers(text),
            )
            chunked = self.chunker.chunk(text, document.id, normalize=False)
            if not chunked.children:
                raise ValidationError(f"{document.filename} has no indexable text")
            parents, children = enrich_chunks(chunked, context)

            child_tokens = [tokenize_for_bm25(c.content) for c in children]
            if update_stats:
                for tokens in child_tokens:
                    self.stats.add_document(tokens)
                    counted.append(tokens)
                self.metadata.set_corpus_tokens(owner_id, counted)

            results = self._embed(parents, children, child_tokens)
            points = build_points([*parents, *children], results)
            uploaded = self.uploader.upload_document(document.id, points, chunk_count=len(children))
        except Exception as exc:
            self._rollback_stats(owner_id, counted)
            self._mark_failed(document.id, exc)
            raise

        logger.info(
            f"[Pipeline] {document.filename} ({document.id}): {len(parents)} parents, "
            f"{len(children)} children, {uploaded} points"
        )
        return PipelineResult(document.id, len(parents), len(children), uploaded)

    def _embed(
        self,
        parents: list[EnrichedChunk],
        children: list[EnrichedChunk],
        child_tokens: list[list[str]],
    ) -> list[EmbeddingResult]:
        parent_tokens = [tokenize_for_bm25(p.content) for p in parents]
        vocabulary = {t for tokens in (*parent_tokens, *child_tokens) for t in tokens}
        snapshot = self.stats.snapshot(vocabulary)

        parent_vectors = self.embedder.embed_chunks(parents, task=TASK_PASSAGE, late_chunking=False)
        child_vectors = self.embedder.embed_chunks(children, task=TASK_PASSAGE, late_chunking=True)

        results: list[EmbeddingResult] = []
        for chunk, tokens, dense in zip(
            [*parents, *children],
            [*parent_tokens, *child_tokens],
            [*parent_vectors, *child_vectors],
        ):
            results.append(
                EmbeddingResult(
                    chunk_id=chunk.chunk_id,
                    dense_vector=dense,
                    sparse_vector=self.encoder.encode(tokens, snapshot),
                    token_count=chunk.token_count,
                )
            )
        return results

    def _rollback_stats(self, owner_id: str, counted: list[list[str]]) -> None:
        if not counted:
            return
        try:
            for tokens in counted:
                self.stats.remove_document(tokens)
            self.metadata.set_corpus_tokens(owner_id, None)
        except RagIndexError as exc:
            logger.error(f"[Pipeline] Could not roll back corpus statistics: {exc}")

    def _mark_failed(self, document_id: str, exc: Exception) -> None:
        try:
            record = self.metadata.get(document_id)
            if record.vector_status != VectorStatus.FAILED:
                self.metadata.set_status(document_id, VectorStatus.FAILED, error_message=str(exc)[:1000])
        except RagIndexError as status_exc:
            logger.error(f"[Pipeline] Could not mark {document_id} failed: {status_exc}")
