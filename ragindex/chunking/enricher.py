"""
Metadata Enricher
-----------------
Turns a Chunk plus its DocumentContext into an immutable EnrichedChunk.
The function is pure: it only scans the chunk text with regular
expressions and copies document-level facts, so the same inputs always give
the same output (timestamps come from the context, not the clock).

Detected features:
  - code:      fenced blocks (``` or ~~~)
  - formulas:  $$...$$, \\[...\\], \\(...\\) and inline $...$
  - tables:    a pipe row followed by a |---|---| separator row
  - images:    ![alt](src) and <img src="...">
"""
from __future__ import annotations

import re
from bisect import bisect_right
from typing import Optional

from ragindex.chunking.schemas import Chunk, ChunkingResult, DocumentContext, EnrichedChunk

_CODE_FENCE_RE = re.compile(r"^[ \t]{0,3}(```|~~~)", re.MULTILINE)
_BLOCK_MATH_RE = re.compile(r"\$\$.+?\$\$|\\\[.+?\\\]", re.DOTALL)
_INLINE_MATH_RE = re.compile(r"\\\(.+?\\\)|(?<![\\$\w])\$(?![\s$])[^$\n]+?(?<![\s\\])\$(?![\d$])")
_TABLE_SEPARATOR_RE = re.compile(r"^[ \t]*\|?[ \t]*:?-{3,}:?[ \t]*(\|[ \t]*:?-{3,}:?[ \t]*)+\|?[ \t]*$", re.MULTILINE)
_MD_IMAGE_RE = re.compile(r"!\[[^\]]*\]\(\s*<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_HTML_IMAGE_RE = re.compile(r"<img\b[^>]*?\bsrc\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_PAGE_MARKER_RE = re.compile(r"<!--\s*page\s*:?\s*(\d+)\s*-->", re.IGNORECASE)


# --- Detectors ----------------------------------------------------------------

def has_code(text: str) -> bool:
    return bool(_CODE_FENCE_RE.search(text))


def has_formulas(text: str) -> bool:
    return bool(_BLOCK_MATH_RE.search(text) or _INLINE_MATH_RE.search(text))


def table_headers(text: str) -> list[str]:
    """Header row of every markdown table in `text`."""
    lines = text.split("\n")
    headers: list[str] = []
    for i in range(1, len(lines)):
        if _TABLE_SEPARATOR_RE.fullmatch(lines[i]) and "|" in lines[i - 1]:
            headers.append(lines[i - 1].strip())
    return headers


def image_refs(text: str) -> list[str]:
    refs = _MD_IMAGE_RE.findall(text) + _HTML_IMAGE_RE.findall(text)
    return list(dict.fromkeys(refs))


def page_offsets_from_markers(text: str) -> Optional[tuple[int, ...]]:
    """
    Page start offsets from `<!-- page N -->` markers left by the converter.

    Returns None when the document carries no page markers.  Page N starts at
    the marker; text before the first marker belongs to page 1.
    """
    markers = [(int(m.group(1)), m.start()) for m in _PAGE_MARKER_RE.finditer(text)]
    if not markers:
        return None
    offsets = [0]
    for page, start in markers:
        while len(offsets) < page:
            offsets.append(start)
    return tuple(offsets)


def _pages(chunk: Chunk, page_offsets: Optional[tuple[int, ...]]) -> tuple[Optional[int], Optional[tuple[int, int]]]:
    if not page_offsets:
        return None, None
    first = max(bisect_right(page_offsets, chunk.char_start), 1)
    last = max(bisect_right(page_offsets, max(chunk.char_end - 1, chunk.char_start)), first)
    return first, (first, last)


# --- Enrichment ---------------------------------------------------------------

def enrich_chunk(chunk: Chunk, context: DocumentContext, total_chunks: int) -> EnrichedChunk:
    text = chunk.text
    tables = table_headers(text)
    images = image_refs(text)
    page_number, page_range = _pages(chunk, context.page_offsets)
    path = tuple(chunk.heading_path)

    return EnrichedChunk(
        chunk_id=chunk.chunk_id,
        level=chunk.level,
        parent_chunk_id=chunk.parent_chunk_id,
        sibling_chunk_ids=tuple(chunk.sibling_chunk_ids),
        content=text,
        token_count=chunk.token_count,
        char_count=len(text),
        chunk_index=chunk.chunk_index,
        total_chunks=total_chunks,
        overlap_tokens=chunk.overlap_tokens,
        heading_path=path,
        chapter=path[0] if path else None,
        section=path[1] if len(path) > 1 else None,
        document_id=context.document_id,
        document_name=context.document_name,
        organization_id=context.organization_id,
        course_id=context.course_id,
        content_hash=context.content_hash,
        document_version=context.document_version,
        has_code=has_code(text),
        has_formulas=has_formulas(text),
        has_tables=bool(tables),
        has_images=bool(images),
        image_refs=tuple(images),
        table_refs=tuple(tables),
        page_number=page_number,
        page_range=page_range,
        indexed_at=context.indexed_at,
        last_updated=context.indexed_at,
    )


def enrich_chunks(result: ChunkingResult, context: DocumentContext) -> tuple[list[EnrichedChunk], list[EnrichedChunk]]:
    """Enrich a whole ChunkingResult, preserving order. Returns (parents, children)."""
    parents = [enrich_chunk(c, context, len(result.parents)) for c in result.parents]
    children = [enrich_chunk(c, context, len(result.children)) for c in result.children]
    return parents, children
