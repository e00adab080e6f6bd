"""
BM25 Sparse Vector Generator
----------------------------
Builds the lexical half of hybrid search from scratch: each chunk becomes a
sparse vector whose dimensions are hashed terms and whose values are BM25
term weights computed against a corpus statistics snapshot.

    IDF(t)      = ln((N - df + 0.5) / (df + 0.5) + 1)
    weight(t,d) = IDF(t) * tf * (k1 + 1) / (tf + k1 * (1 - b + b * |d| / avgdl))

Terms map to dimensions with a stable blake2b hash modulo `vocab_size`.
Colliding terms share (sum into) one slot; `collision_report` measures how
often that happens for a given vocabulary so the slot count can be tuned.

Everything here is pure: the same (tokens, snapshot, k1, b, vocab_size)
always produce the same vector.
"""
from __future__ import annotations

import hashlib
import math
import re
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Iterable

from ragindex.config import BM25Config
from ragindex.embedding.corpus_stats import CorpusSnapshot
from ragindex.errors import ValidationError

K1 = 1.5
B = 0.75
VOCAB_SIZE = 100_000

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class SparseVector:
    indices: tuple[int, ...] = ()
    values: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        if len(self.indices) != len(self.values):
            raise ValidationError("Sparse vector indices and values differ in length")

    def __len__(self) -> int:
        return len(self.indices)

    def as_dict(self) -> dict[int, float]:
        return dict(zip(self.indices, self.values))

    def to_json(self) -> dict:
        return {"indices": list(self.indices), "values": list(self.values)}


def tokenize_for_bm25(text: str) -> list[str]:
    """Lowercase word tokens (Unicode aware), single characters dropped."""
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) > 1]


def term_index(term: str, vocab_size: int = VOCAB_SIZE) -> int:
    digest = hashlib.blake2b(term.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % vocab_size


def idf(df: int, total_chunks: int) -> float:
    return math.log((total_chunks - df + 0.5) / (df + 0.5) + 1.0)


def collision_report(terms: Iterable[str], vocab_size: int = VOCAB_SIZE) -> dict:
    """
    How many distinct terms share a slot with another term.

    Returns counts plus `collision_rate` = colliding terms / distinct terms.
    """
    slots: dict[int, int] = defaultdict(int)
    distinct = set(terms)
    for term in distinct:
        slots[term_index(term, vocab_size)] += 1
    colliding = sum(n for n in slots.values() if n > 1)
    return {
        "vocab_size": vocab_size,
        "distinct_terms": len(distinct),
        "used_slots": len(slots),
        "colliding_terms": colliding,
        "collision_rate": colliding / len(distinct) if distinct else 0.0,
    }


class BM25SparseEncoder:
    """
    Usage:
        encoder = BM25SparseEncoder()
        vec = encoder.encode(tokenize_for_bm25(text), stats.snapshot())
    """

    def __init__(self, k1: float = K1, b: float = B, vocab_size: int = VOCAB_SIZE) -> None:
        if k1 < 0:
            raise ValidationError(f"k1 must be non-negative, got {k1}")
        if not 0.0 <= b <= 1.0:
            raise ValidationError(f"b must be within [0, 1], got {b}")
        if vocab_size <= 0:
            raise ValidationError(f"vocab_size must be positive, got {vocab_size}")
        self.k1 = k1
        self.b = b
        self.vocab_size = vocab_size

    @classmethod
    def from_config(cls, cfg: BM25Config) -> "BM25SparseEncoder":
        return cls(cfg.k1, cfg.b, cfg.vocab_size)

    def term_weights(self, tokens: list[str], snapshot: CorpusSnapshot) -> dict[str, float]:
        """BM25 weight per distinct term of a chunk (before hashing)."""
        if not tokens:
            return {}
        n = snapshot.total_chunks
        avgdl = snapshot.avg_chunk_length or float(len(tokens))
        norm = self.k1 * (1.0 - self.b + self.b * (len(tokens) / avgdl))
        weights: dict[str, float] = {}
        for term, tf in Counter(tokens).items():
            weights[term] = idf(snapshot.df(term), n) * (tf * (self.k1 + 1.0)) / (tf + norm)
        return weights

    def encode(self, tokens: list[str], snapshot: CorpusSnapshot) -> SparseVector:
        return self._hash(self.term_weights(tokens, snapshot))

    def encode_query(self, tokens: list[str], snapshot: CorpusSnapshot) -> SparseVector:
        """IDF per distinct term, no tf saturation or length norm. Opt-in alternative to encode()."""
        n = snapshot.total_chunks
        return self._hash({t: idf(snapshot.df(t), n) for t in dict.fromkeys(tokens)})

    def _hash(self, weights: dict[str, float]) -> SparseVector:
        slots: dict[int, float] = defaultdict(float)
        # Sorted so floating point summation order (and thus output) is stable
        for term in sorted(weights):
            slots[term_index(term, self.vocab_size)] += weights[term]
        indices = sorted(i for i, v in slots.items() if v != 0.0)
        return SparseVector(tuple(indices), tuple(slots[i] for i in indices))
