"""
Chunk schemas - the units produced by the splitter and the enricher.

Parents are returned as retrieval context; children are what gets embedded
and indexed.  An EnrichedChunk is a Chunk plus the tenancy and structural
metadata needed by the vector payload, and is frozen once produced.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ChunkLevel(str, Enum):
    PARENT = "parent"
    CHILD = "child"


class Chunk(BaseModel):
    # Identity
    chunk_id: str                        # "{document_id}:p{n}" or "{document_id}:p{n}:c{m}"
    level: ChunkLevel
    chunk_index: int                     # Position among chunks of the same level
    parent_chunk_id: Optional[str] = None
    sibling_chunk_ids: list[str] = Field(default_factory=list)

    # Content
    text: str
    token_count: int
    heading_path: list[str] = Field(default_factory=list)

    # Offsets into the normalised document text
    char_start: int = 0
    char_end: int = 0
    overlap_tokens: int = 0              # Tokens repeated from the previous child
    overlap_chars: int = 0               # Same overlap measured in characters

    @property
    def new_text(self) -> str:
        """Text with the leading overlap removed."""
        return self.text[self.overlap_chars:]


class ChunkingResult(BaseModel):
    parents: list[Chunk] = Field(default_factory=list)
    children: list[Chunk] = Field(default_factory=list)

    def children_of(self, parent_chunk_id: str) -> list[Chunk]:
        return [c for c in self.children if c.parent_chunk_id == parent_chunk_id]

    @property
    def total_chunks(self) -> int:
        return len(self.parents) + len(self.children)


class DocumentContext(BaseModel):
    """Document-level facts the enricher attaches to every chunk."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    document_name: str
    organization_id: str
    course_id: str
    content_hash: str
    document_version: int = 1
    indexed_at: Optional[datetime] = None
    # Character offset where each page starts, when the converter knows pages
    page_offsets: Optional[tuple[int, ...]] = None


class EnrichedChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Chunk structure
    chunk_id: str
    level: ChunkLevel
    parent_chunk_id: Optional[str] = None
    sibling_chunk_ids: tuple[str, ...] = ()
    content: str
    token_count: int
    char_count: int
    chunk_index: int
    total_chunks: int
    overlap_tokens: int = 0
    heading_path: tuple[str, ...] = ()
    chapter: Optional[str] = None
    section: Optional[str] = None

    # Document / tenancy
    document_id: str
    document_name: str
    organization_id: str
    course_id: str
    content_hash: str
    document_version: int = 1

    # Structural flags and back-references
    has_code: bool = False
    has_formulas: bool = False
    has_tables: bool = False
    has_images: bool = False
    image_refs: tuple[str, ...] = ()
    table_refs: tuple[str, ...] = ()
    page_number: Optional[int] = None
    page_range: Optional[tuple[int, int]] = None

    # Timestamps
    indexed_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def heading_label(self) -> str:
        return " > ".join(self.heading_path)
