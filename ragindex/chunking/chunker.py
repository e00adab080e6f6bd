"""
Hierarchical Chunker
--------------------
Splits normalised markdown into a two-level hierarchy:

  - PARENT chunks follow the document structure.  Every ATX heading
    (`#`..`######`, outside fenced code) opens a new section and the
    section's ancestor headings become its `heading_path`.  A section
    larger than `parent_size` tokens is split into several parents.

  - CHILD chunks are cut from each parent with a real tokenizer.  Text is
    split recursively on paragraph, line, sentence and word boundaries and
    greedily packed up to `child_size` tokens; `overlap` tokens from the tail
    of one child are repeated at the head of the next child of the same
    parent.  A single sentence longer than `child_size` is hard-split at a
    token boundary, never dropped.

Every chunk is a contiguous span of the normalised text and records its
character offsets plus how much of its head is overlap, so the children
minus their overlap always reconstruct the document (modulo whitespace).
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger
from nltk.tokenize.punkt import PunktSentenceTokenizer

from ragindex.chunking.schemas import Chunk, ChunkingResult, ChunkLevel
from ragindex.chunking.tokenizer import Tokenizer
from ragindex.config import ChunkingConfig
from ragindex.errors import ValidationError
from ragindex.utils.helpers import normalize_markdown


# ── Constants ─────────────────────────────────────────────────────────────────

PARENT_SIZE = 1500
CHILD_SIZE = 400
OVERLAP = 50

_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(\S.*?)[ \t]*#*[ \t]*$")
_FENCE_RE = re.compile(r"^[ \t]{0,3}(`{3,}|~{3,})")
_PARAGRAPH_RE = re.compile(r"\n[ \t]*\n")
_LINE_RE = re.compile(r"\n")
_WORD_RE = re.compile(r"\s+")

# Untrained punkt works offline and returns character spans
_SENTENCES = PunktSentenceTokenizer()


@dataclass
class Section:
    start: int
    end: int
    heading_path: list[str]


Span = tuple[int, int]


# ── Structural pass ───────────────────────────────────────────────────────────

def split_sections(text: str) -> list[Section]:
    """Split text at heading lines that sit outside fenced code blocks."""
    sections: list[Section] = []
    stack: list[tuple[int, str]] = []
    current_start = 0
    current_path: list[str] = []
    fence: Optional[str] = None
    offset = 0

    for line in text.splitlines(keepends=True):
        stripped = line.rstrip("\n")
        fence_match = _FENCE_RE.match(stripped)
        if fence_match:
            marker = fence_match.group(1)
            if fence is None:
                fence = marker[0]
            elif marker[0] == fence:
                fence = None
        elif fence is None:
            heading = _HEADING_RE.match(stripped)
            if heading:
                if offset > current_start:
                    sections.append(Section(current_start, offset, current_path))
                level = len(heading.group(1))
                while stack and stack[-1][0] >= level:
                    stack.pop()
                stack.append((level, heading.group(2).strip()))
                current_start = offset
                current_path = [title for _, title in stack]
        offset += len(line)

    if len(text) > current_start:
        sections.append(Section(current_start, len(text), current_path))
    return sections


# ── Main Chunker ──────────────────────────────────────────────────────────────

class HierarchicalChunker:
    """
    Parent/child chunker with exact token budgets.

    Usage:
        chunker = HierarchicalChunker(TiktokenTokenizer())
        result = chunker.chunk(markdown, document_id="doc-1")
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        parent_size: int = PARENT_SIZE,
        child_size: int = CHILD_SIZE,
        overlap: int = OVERLAP,
    ) -> None:
        if parent_size <= 0 or child_size <= 0 or overlap < 0:
            raise ValidationError("Chunk sizes must be positive and overlap non-negative")
        if child_size > parent_size:
            raise ValidationError(f"child_size ({child_size}) exceeds parent_size ({parent_size})")
        if overlap >= child_size:
            raise ValidationError(f"overlap ({overlap}) must be smaller than child_size ({child_size})")
        self.tokenizer = tokenizer
        self.parent_size = parent_size
        self.child_size = child_size
        self.overlap = overlap

    @classmethod
    def from_config(cls, tokenizer: Tokenizer, cfg: ChunkingConfig) -> "HierarchicalChunker":
        return cls(tokenizer, cfg.parent_size, cfg.child_size, cfg.overlap)

    def chunk(self, markdown: str, document_id: str, normalize: bool = True) -> ChunkingResult:
        """
        Chunk a document.

        Args:
            markdown:     Converted document text.
            document_id:  Used to build deterministic chunk ids.
            normalize:    Run `normalize_markdown` first (offsets refer to
                          the normalised text either way).
        """
        text = normalize_markdown(markdown) if normalize else markdown
        result = ChunkingResult()
        if not text.strip():
            logger.warning(f"[Chunker] {document_id}: empty document, no chunks produced")
            return result

        count = self.tokenizer.count
        for section in split_sections(text):
            for p_start, p_end in self._parent_spans(text, section):
                parent_id = f"{document_id}:p{len(result.parents)}"
                parent_text = text[p_start:p_end]
                result.parents.append(
                    Chunk(
                        chunk_id=parent_id,
                        level=ChunkLevel.PARENT,
                        chunk_index=len(result.parents),
                        text=parent_text,
                        token_count=count(parent_text),
                        heading_path=list(section.heading_path),
                        char_start=p_start,
                        char_end=p_end,
                    )
                )
                result.children.extend(
                    self._children(text, p_start, p_end, parent_id, section.heading_path, len(result.children))
                )

        logger.debug(
            f"[Chunker] {document_id}: {len(result.parents)} parents, "
            f"{len(result.children)} children | sizes {self.parent_size}/{self.child_size}/{self.overlap}"
        )
        return result

    # --- Parents --------------------------------------------------------------

    def _parent_spans(self, text: str, section: Section) -> list[Span]:
        span = _trim(text, section.start, section.end)
        if span is None:
            return []
        if self._fits(text, span[0], span[1], self.parent_size):
            return [span]
        units = self._units(text, span[0], span[1], self.parent_size)
        return [(s, e) for s, e, _ in self._pack(text, units, self.parent_size, overlap=0)]

    # --- Children -------------------------------------------------------------

    def _children(
        self,
        text: str,
        start: int,
        end: int,
        parent_id: str,
        heading_path: list[str],
        index_offset: int,
    ) -> list[Chunk]:
        units = self._units(text, start, end, self.child_size)
        packed = self._pack(text, units, self.child_size, overlap=self.overlap)
        ids = [f"{parent_id}:c{i}" for i in range(len(packed))]

        children: list[Chunk] = []
        for i, (c_start, c_end, overlap_chars) in enumerate(packed):
            child_text = text[c_start:c_end]
            overlap_text = child_text[:overlap_chars].strip()
            children.append(
                Chunk(
                    chunk_id=ids[i],
                    level=ChunkLevel.CHILD,
                    chunk_index=index_offset + i,
                    parent_chunk_id=parent_id,
                    sibling_chunk_ids=[cid for cid in ids if cid != ids[i]],
                    text=child_text,
                    token_count=self.tokenizer.count(child_text),
                    heading_path=list(heading_path),
                    char_start=c_start,
                    char_end=c_end,
                    overlap_tokens=self.tokenizer.count(overlap_text) if overlap_text else 0,
                    overlap_chars=overlap_chars,
                )
            )
        return children

    # --- Recursive splitting --------------------------------------------------

    def _units(self, text: str, start: int, end: int, limit: int) -> list[Span]:
        """Partition [start, end) into contiguous spans each fitting `limit`."""
        return self._split(text, start, end, limit, 0)

    def _split(self, text: str, start: int, end: int, limit: int, depth: int) -> list[Span]:
        if self._fits(text, start, end, limit):
            return [(start, end)]

        splitters: list[Callable[[str, int, int], list[int]]] = [
            _regex_boundaries(_PARAGRAPH_RE),
            _regex_boundaries(_LINE_RE),
            _sentence_boundaries,
            _regex_boundaries(_WORD_RE),
        ]
        while depth < len(splitters):
            cuts = splitters[depth](text, start, end)
            if cuts:
                spans: list[Span] = []
                bounds = [start, *cuts, end]
                for s, e in zip(bounds, bounds[1:]):
                    spans.extend(self._split(text, s, e, limit, depth + 1))
                return spans
            depth += 1

        return self._hard_split(text, start, end, limit)

    def _hard_split(self, text: str, start: int, end: int, limit: int) -> list[Span]:
        """Cut at the largest prefix that fits, repeatedly."""
        logger.debug(f"[Chunker] Hard-splitting {end - start} chars that exceed {limit} tokens")
        spans: list[Span] = []
        pos = start
        while pos < end:
            cut = self._fit_prefix(text, pos, end, limit)
            spans.append((pos, cut))
            pos = cut
        return spans

    def _fit_prefix(self, text: str, start: int, end: int, limit: int) -> int:
        """Largest `cut` in (start, end] with count(text[start:cut]) <= limit."""
        lo, hi = start + 1, end
        best = start + 1
        while lo <= hi:
            mid = (lo + hi) // 2
            if self.tokenizer.count(text[start:mid]) <= limit:
                best = mid
                lo = mid + 1
            else:
                hi = mid - 1
        return best

    # --- Greedy packing -------------------------------------------------------

    def _pack(self, text: str, units: list[Span], limit: int, overlap: int) -> list[tuple[int, int, int]]:
        """
        Greedily merge contiguous units into chunks of at most `limit` tokens.

        Returns (start, end, overlap_chars) triples.  When `overlap` > 0 each
        chunk after the first starts with the tail of the previous one.
        """
        packed: list[tuple[int, int, int]] = []
        prev: Optional[Span] = None
        i = 0
        while i < len(units):
            head = _trim(text, units[i][0], units[i][1])
            if head is None:
                i += 1
                continue
            new_start = head[0]

            chunk_start = new_start
            if overlap and prev is not None:
                chunk_start = self._overlap_start(text, prev, overlap)
                if not self._fits(text, chunk_start, units[i][1], limit):
                    chunk_start = new_start

            j = i
            while j + 1 < len(units) and self._fits(text, chunk_start, units[j + 1][1], limit):
                j += 1

            span = _trim(text, chunk_start, units[j][1])
            if span is not None:
                packed.append((span[0], span[1], new_start - span[0]))
                prev = span
            i = j + 1
        return packed

    def _overlap_start(self, text: str, prev: Span, overlap: int) -> int:
        """Start offset of the longest word-aligned suffix of `prev` within `overlap` tokens."""
        p_start, p_end = prev
        lo, hi = p_start, p_end
        best = p_end
        while lo <= hi:
            mid = (lo + hi) // 2
            if self.tokenizer.count(text[mid:p_end]) <= overlap:
                best = mid
                hi = mid - 1
            else:
                lo = mid + 1
        # Snap forward to a word boundary so the overlap never starts mid-word
        if best > p_start and not text[best - 1].isspace():
            ws = _WORD_RE.search(text, best, p_end)
            if ws:
                best = ws.end()
        return best if best < p_end else p_end

    def _fits(self, text: str, start: int, end: int, limit: int) -> bool:
        return self.tokenizer.count(text[start:end].strip()) <= limit


# ── Boundary helpers ──────────────────────────────────────────────────────────

def _trim(text: str, start: int, end: int) -> Optional[Span]:
    """Shrink [start, end) to exclude surrounding whitespace; None if blank."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if start < end else None


def _regex_boundaries(pattern: re.Pattern) -> Callable[[str, int, int], list[int]]:
    def boundaries(text: str, start: int, end: int) -> list[int]:
        return [m.end() for m in pattern.finditer(text, start, end) if start < m.end() < end]

    return boundaries


def _sentence_boundaries(text: str, start: int, end: int) -> list[int]:
    spans = list(_SENTENCES.span_tokenize(text[start:end]))
    return [start + s for s, _ in spans[1:] if 0 < s < end - start]
