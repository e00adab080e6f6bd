"""
Core Pydantic schemas shared by the lifecycle manager, the search engine
and the CLI.  Chunk-level models live in `ragindex.chunking.schemas`; the
stored vector payload lives in `ragindex.storage.payload`.
"""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ragindex.chunking.schemas import ChunkLevel


# --- Enumerations ------------------------------------------------------------

class VectorStatus(str, Enum):
    PENDING = "pending"          # row exists, vectors not written yet
    INDEXING = "indexing"        # pipeline running
    INDEXED = "indexed"          # all points present
    FAILED = "failed"            # no visible points; see error_message


class RankSource(str, Enum):
    DENSE = "dense"
    SPARSE = "sparse"
    BOTH = "both"


# --- Ingest / delete ----------------------------------------------------------

class TenantContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: str
    course_id: Optional[str] = None

    @field_validator("organization_id", "course_id")
    @classmethod
    def _not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("tenant identifiers must not be blank")
        return v


class UploadedFile(BaseModel):
    filename: str
    content: bytes
    mime_type: str = "text/markdown"

    @classmethod
    def from_path(cls, path: str | Path, mime_type: Optional[str] = None) -> "UploadedFile":
        path = Path(path)
        return cls(filename=path.name, content=path.read_bytes(), mime_type=mime_type or guess_mime_type(path.name))

    @property
    def size(self) -> int:
        return len(self.content)


class IngestResult(BaseModel):
    document_id: str
    deduplicated: bool
    original_document_id: Optional[str] = None
    vector_status: VectorStatus
    vectors_duplicated: int = 0
    chunk_count: int = 0


class DeleteResult(BaseModel):
    document_id: str
    physical_deleted: bool
    remaining_references: int
    vectors_deleted: int = 0
    storage_freed_bytes: int = 0


class DeduplicationStats(BaseModel):
    original_files: int = 0
    reference_files: int = 0
    storage_saved_bytes: int = 0
    total_storage_used_bytes: int = 0

    @property
    def deduplication_ratio(self) -> float:
        total = self.original_files + self.reference_files
        return self.reference_files / total if total else 0.0


# --- Search -------------------------------------------------------------------

class SearchFilters(BaseModel):
    """
    Store-level filters.  `organization_id` is mandatory so every query is
    tenant scoped; the rest narrow further.
    """

    organization_id: str
    course_id: Optional[str] = None
    document_ids: Optional[list[str]] = None
    level: Optional[ChunkLevel] = ChunkLevel.CHILD
    has_code: Optional[bool] = None
    has_formulas: Optional[bool] = None
    has_tables: Optional[bool] = None
    has_images: Optional[bool] = None

    def conditions(self) -> dict[str, Any]:
        """Exact-match payload conditions (lists mean 'any of')."""
        conds: dict[str, Any] = {"organization_id": self.organization_id}
        if self.course_id is not None:
            conds["course_id"] = self.course_id
        if self.document_ids:
            conds["document_id"] = list(self.document_ids)
        if self.level is not None:
            conds["level"] = self.level.value
        for flag in ("has_code", "has_formulas", "has_tables", "has_images"):
            value = getattr(self, flag)
            if value is not None:
                conds[flag] = value
        return conds


class SearchOptions(BaseModel):
    limit: int = Field(10, ge=1, le=100)
    score_threshold: Optional[float] = None      # dense-side minimum cosine score
    enable_hybrid: bool = True
    idf_only_query: bool = False                 # sparse query side: IDF per term instead of full BM25
    include_parent_context: bool = False
    use_cache: bool = True


class SearchResult(BaseModel):
    chunk_id: str
    document_id: str
    score: float
    content: str
    payload: dict[str, Any]
    rank_source: RankSource
    dense_rank: Optional[int] = None
    sparse_rank: Optional[int] = None
    parent_content: Optional[str] = None


class SearchResponse(BaseModel):
    results: list[SearchResult] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Helpers ------------------------------------------------------------------

_MIME_BY_SUFFIX = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".pdf": "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".html": "text/html",
    ".htm": "text/html",
}


def guess_mime_type(filename: str) -> str:
    return _MIME_BY_SUFFIX.get(Path(filename).suffix.lower(), "application/octet-stream")
