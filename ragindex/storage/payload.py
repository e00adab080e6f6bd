"""
Vector payload schema.

The single definition of what the uploader writes next to each point and
what the search engine expects to read back.  Payloads are validated on the
way in and on the way out; anything that fails validation on read is
surfaced as a CorruptionError instead of being passed along half-parsed.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ragindex.chunking.schemas import ChunkLevel, EnrichedChunk
from ragindex.errors import CorruptionError

PAYLOAD_SCHEMA_VERSION = 1

# Payload fields the store indexes for filtering
INDEXED_FIELDS = ("organization_id", "course_id", "document_id", "chunk_id", "level", "content_hash")


class VectorPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION

    # Chunk
    chunk_id: str
    level: ChunkLevel
    parent_chunk_id: Optional[str] = None
    sibling_chunk_ids: list[str] = []
    content: str
    token_count: int
    char_count: int
    chunk_index: int
    total_chunks: int
    overlap_tokens: int = 0
    heading_path: list[str] = []
    chapter: Optional[str] = None
    section: Optional[str] = None

    # Document / tenancy
    document_id: str
    document_name: str
    organization_id: str
    course_id: str
    content_hash: str
    document_version: int = 1

    # Structure
    has_code: bool = False
    has_formulas: bool = False
    has_tables: bool = False
    has_images: bool = False
    image_refs: list[str] = []
    table_refs: list[str] = []
    page_number: Optional[int] = None
    page_range: Optional[list[int]] = None

    indexed_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @classmethod
    def from_chunk(cls, chunk: EnrichedChunk) -> "VectorPayload":
        data = chunk.model_dump()
        data["sibling_chunk_ids"] = list(chunk.sibling_chunk_ids)
        data["heading_path"] = list(chunk.heading_path)
        data["image_refs"] = list(chunk.image_refs)
        data["table_refs"] = list(chunk.table_refs)
        data["page_range"] = list(chunk.page_range) if chunk.page_range else None
        return cls.model_validate(data)

    @classmethod
    def parse(cls, raw: Optional[dict[str, Any]], point_id: Any = None) -> "VectorPayload":
        if not raw:
            raise CorruptionError(f"Point {point_id} has no payload")
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as exc:
            raise CorruptionError(f"Malformed payload on point {point_id}: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @property
    def heading_label(self) -> str:
        return " > ".join(self.heading_path)
