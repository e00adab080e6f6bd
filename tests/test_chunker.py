from __future__ import annotations

import re

import pytest

from ragindex.chunking.chunker import HierarchicalChunker, split_sections
from ragindex.chunking.schemas import ChunkLevel
from ragindex.errors import ValidationError
from ragindex.utils.helpers import normalize_markdown

from tests.conftest import COURSE_DOC, OTHER_DOC, CharTokenizer


def _squash(text: str) -> str:
    return re.sub(r"\s+", "", text)


def _long_doc() -> str:
    sentences = [f"Sentence number {i} talks about topic {i % 7} in some detail." for i in range(60)]
    body = " ".join(sentences[:30]) + "\n\n" + " ".join(sentences[30:])
    return f"# Long chapter\n\n{body}\n\n## Short section\n\nJust a few words here.\n"


@pytest.fixture
def chunker(tokenizer) -> HierarchicalChunker:
    return HierarchicalChunker(tokenizer, parent_size=60, child_size=20, overlap=4)


@pytest.mark.parametrize("doc", [COURSE_DOC, OTHER_DOC, _long_doc(), "plain text without headings at all."])
def test_children_minus_overlap_reconstruct_document(chunker, doc):
    result = chunker.chunk(doc, document_id="doc")
    rebuilt = "".join(c.new_text for c in result.children)
    assert _squash(rebuilt) == _squash(normalize_markdown(doc))


@pytest.mark.parametrize("doc", [COURSE_DOC, _long_doc()])
def test_token_bounds_hold_for_both_levels(chunker, tokenizer, doc):
    result = chunker.chunk(doc, document_id="doc")
    assert result.parents and result.children
    for parent in result.parents:
        assert tokenizer.count(parent.text) == parent.token_count <= 60
    for child in result.children:
        assert tokenizer.count(child.text) == child.token_count <= 20


def test_parents_cover_document(chunker):
    doc = _long_doc()
    result = chunker.chunk(doc, document_id="doc")
    rebuilt = "".join(p.text for p in result.parents)
    assert _squash(rebuilt) == _squash(normalize_markdown(doc))


def test_children_link_to_parent_and_siblings(chunker):
    result = chunker.chunk(_long_doc(), document_id="doc-7")
    parent_ids = {p.chunk_id for p in result.parents}
    for child in result.children:
        assert child.level == ChunkLevel.CHILD
        assert child.parent_chunk_id in parent_ids
        family = [c.chunk_id for c in result.children_of(child.parent_chunk_id)]
        assert child.sibling_chunk_ids == [cid for cid in family if cid != child.chunk_id]
        assert child.chunk_id.startswith(f"{child.parent_chunk_id}:c")
    assert [c.chunk_index for c in result.children] == list(range(len(result.children)))


def test_chunk_ids_are_deterministic(chunker):
    first = chunker.chunk(COURSE_DOC, document_id="d1")
    second = chunker.chunk(COURSE_DOC, document_id="d1")
    assert [c.chunk_id for c in first.children] == [c.chunk_id for c in second.children]
    assert first.parents[0].chunk_id == "d1:p0"


def test_overlap_repeats_tail_of_previous_child(chunker):
    result = chunker.chunk(_long_doc(), document_id="doc")
    overlapped = 0
    for parent in result.parents:
        family = result.children_of(parent.chunk_id)
        assert family[0].overlap_tokens == 0
        for prev, child in zip(family, family[1:]):
            head = child.text[: child.overlap_chars].rstrip()
            assert prev.text.endswith(head)
            assert child.overlap_tokens <= 4
            overlapped += child.overlap_tokens > 0
    assert overlapped > 0


def test_heading_paths_follow_structure(chunker):
    doc = "# A\n\nintro\n\n## B\n\nbee\n\n### C\n\nsea\n\n## D\n\ndee\n"
    result = chunker.chunk(doc, document_id="doc")
    assert [p.heading_path for p in result.parents] == [["A"], ["A", "B"], ["A", "B", "C"], ["A", "D"]]


def test_headings_inside_code_fences_are_ignored():
    text = "# Real\n\n```python\n# not a heading\nx = 1\n```\n\n## Sub\n\ntext\n"
    sections = split_sections(text)
    assert [s.heading_path for s in sections] == [["Real"], ["Real", "Sub"]]
    assert "# not a heading" in text[sections[0].start:sections[0].end]


def test_oversized_word_is_hard_split_not_dropped():
    chunker = HierarchicalChunker(CharTokenizer(), parent_size=100, child_size=20, overlap=5)
    doc = "x" * 250
    result = chunker.chunk(doc, document_id="doc")
    assert len(result.parents) == 3
    assert all(c.token_count <= 20 for c in result.children)
    assert "".join(c.new_text for c in result.children) == doc


def test_whitespace_only_document_yields_nothing(chunker):
    result = chunker.chunk("  \n\n \t\n", document_id="doc")
    assert result.parents == [] and result.children == []


@pytest.mark.parametrize(
    "parent, child, overlap",
    [(100, 200, 10), (100, 50, 50), (0, 10, 1), (100, 50, -1)],
)
def test_invalid_sizes_are_rejected(tokenizer, parent, child, overlap):
    with pytest.raises(ValidationError):
        HierarchicalChunker(tokenizer, parent_size=parent, child_size=child, overlap=overlap)
