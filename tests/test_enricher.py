from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from ragindex.chunking.chunker import HierarchicalChunker
from ragindex.chunking.enricher import (
    enrich_chunk,
    enrich_chunks,
    has_code,
    has_formulas,
    image_refs,
    page_offsets_from_markers,
    table_headers,
)
from ragindex.chunking.schemas import Chunk, ChunkLevel, DocumentContext

from tests.conftest import COURSE_DOC

INDEXED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def context() -> DocumentContext:
    return DocumentContext(
        document_id="doc-1",
        document_name="lecture.md",
        organization_id="org-1",
        course_id="course-1",
        content_hash="ab" * 32,
        indexed_at=INDEXED_AT,
    )


def _chunk(text: str, path=("Chapter", "Section", "Sub"), start: int = 0) -> Chunk:
    return Chunk(
        chunk_id="doc-1:p0:c0",
        level=ChunkLevel.CHILD,
        chunk_index=0,
        parent_chunk_id="doc-1:p0",
        text=text,
        token_count=len(text.split()),
        heading_path=list(path),
        char_start=start,
        char_end=start + len(text),
    )


# --- Detectors ----------------------------------------------------------------

def test_detects_fenced_code():
    assert has_code("intro\n```python\nx = 1\n```")
    assert has_code("~~~\nplain\n~~~")
    assert not has_code("use `inline` code only")


@pytest.mark.parametrize(
    "text",
    [
        "Energy is $E = mc^2$ here.",
        "Block:\n$$\\int_0^1 x\\,dx$$",
        "Display \\[a^2 + b^2\\] form",
        "Inline \\(x_i\\) form",
    ],
)
def test_detects_formulas(text):
    assert has_formulas(text)


@pytest.mark.parametrize("text", ["It costs $5 and $10 today.", "Range $5-$10 only", "no math here"])
def test_currency_is_not_math(text):
    assert not has_formulas(text)


def test_table_headers_and_images():
    text = "| Method | Effect |\n|---|---|\n| a | b |\n\n![d](img/a.png) and <img src='img/b.svg'>"
    assert table_headers(text) == ["| Method | Effect |"]
    assert image_refs(text) == ["img/a.png", "img/b.svg"]
    assert table_headers("a | b\nnot a separator") == []


def test_page_offsets_from_markers():
    text = "<!-- page 1 -->\nfirst\n<!-- page 2 -->\nsecond"
    offsets = page_offsets_from_markers(text)
    assert offsets == (0, text.index("<!-- page 2"))
    assert page_offsets_from_markers("no markers") is None


# --- Enrichment ---------------------------------------------------------------

def test_enrich_copies_context_and_structure(context):
    enriched = enrich_chunk(_chunk("Weight decay adds $\\lambda w^2$.\n```\ncode\n```"), context, total_chunks=5)
    assert enriched.document_id == "doc-1"
    assert enriched.organization_id == "org-1"
    assert enriched.course_id == "course-1"
    assert enriched.chapter == "Chapter"
    assert enriched.section == "Section"
    assert enriched.heading_label == "Chapter > Section > Sub"
    assert enriched.total_chunks == 5
    assert enriched.has_code and enriched.has_formulas
    assert not enriched.has_tables and not enriched.has_images
    assert enriched.indexed_at == enriched.last_updated == INDEXED_AT
    assert enriched.page_number is None


def test_enrich_without_headings(context):
    enriched = enrich_chunk(_chunk("text", path=()), context, total_chunks=1)
    assert enriched.chapter is None and enriched.section is None


def test_enrich_is_pure(context):
    chunk = _chunk("| a | b |\n|---|---|\n| 1 | 2 |")
    assert enrich_chunk(chunk, context, 3) == enrich_chunk(chunk, context, 3)


def test_enriched_chunk_is_frozen(context):
    enriched = enrich_chunk(_chunk("text"), context, total_chunks=1)
    with pytest.raises(PydanticValidationError):
        enriched.content = "changed"


def test_page_numbers_from_offsets():
    ctx = DocumentContext(
        document_id="d", document_name="n", organization_id="o", course_id="c",
        content_hash="h", page_offsets=(0, 100, 200),
    )
    on_page_two = enrich_chunk(_chunk("x" * 50, start=120), ctx, 1)
    spanning = enrich_chunk(_chunk("x" * 150, start=90), ctx, 1)
    assert on_page_two.page_number == 2 and on_page_two.page_range == (2, 2)
    assert spanning.page_number == 1 and spanning.page_range == (1, 3)


def test_enrich_chunks_flags_real_document(tokenizer, context):
    result = HierarchicalChunker(tokenizer, 60, 20, 4).chunk(COURSE_DOC, "doc-1")
    parents, children = enrich_chunks(result, context)
    assert len(parents) == len(result.parents)
    assert [c.chunk_id for c in children] == [c.chunk_id for c in result.children]
    assert all(c.total_chunks == len(children) for c in children)
    assert any(p.has_code for p in parents)
    assert any(p.has_formulas for p in parents)
    assert any(p.has_tables for p in parents)
    assert any("images/dropout.png" in p.image_refs for p in parents)
    assert {p.chapter for p in parents} == {"Neural Networks"}
