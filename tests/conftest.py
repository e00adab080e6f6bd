from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
import pytest
from qdrant_client import QdrantClient

from ragindex.config import AppConfig
from ragindex.embedding.corpus_stats import InMemoryCorpusStatistics
from ragindex.embedding.embedder import ProviderResponse
from ragindex.serving.services import RAGServices
from ragindex.storage.metadata_store import MetadataStore
from ragindex.storage.qdrant_store import QdrantVectorStore
from ragindex.utils.cache import MemoryCache
from ragindex.utils.retry import RetryPolicy

DIMS = 16

_PIECE_RE = re.compile(r"\s*\S+|\s+")


class WordTokenizer:
    """Lossless whitespace tokenizer: one token per word (leading spaces attached)."""

    name = "test:words"

    def __init__(self) -> None:
        self._vocab: dict[str, int] = {}
        self._inverse: dict[int, str] = {}

    def _id(self, piece: str) -> int:
        if piece not in self._vocab:
            self._vocab[piece] = len(self._vocab)
            self._inverse[self._vocab[piece]] = piece
        return self._vocab[piece]

    def encode(self, text: str) -> list[int]:
        return [self._id(p) for p in _PIECE_RE.findall(text)]

    def decode(self, ids: list[int]) -> str:
        return "".join(self._inverse[i] for i in ids)

    def count(self, text: str) -> int:
        return len(_PIECE_RE.findall(text))


class CharTokenizer:
    """One token per character; forces hard splits inside long words."""

    name = "test:chars"

    def encode(self, text: str) -> list[int]:
        return [ord(c) for c in text]

    def decode(self, ids: list[int]) -> str:
        return "".join(chr(i) for i in ids)

    def count(self, text: str) -> int:
        return len(text)


def bag_of_words_vector(text: str, dims: int = DIMS) -> list[float]:
    vec = np.zeros(dims)
    for word in re.findall(r"\w+", text.lower()):
        slot = int.from_bytes(hashlib.blake2b(word.encode(), digest_size=4).digest(), "big") % dims
        vec[slot] += 1.0
    if not vec.any():
        vec[0] = 1.0
    return (vec / np.linalg.norm(vec)).tolist()


@dataclass
class ProviderCall:
    texts: list[str]
    task: str
    late_chunking: bool


@dataclass
class FakeEmbeddingProvider:
    """Deterministic provider; records every call and can fail on demand."""

    dims: int = DIMS
    model: str = "fake-embeddings"
    calls: list[ProviderCall] = field(default_factory=list)
    failures: list[Exception] = field(default_factory=list)
    fail_when: Optional[Callable[[list[str]], Optional[Exception]]] = None

    def embed(self, texts: list[str], task: str, late_chunking: bool) -> ProviderResponse:
        self.calls.append(ProviderCall(list(texts), task, late_chunking))
        if self.failures:
            raise self.failures.pop(0)
        if self.fail_when is not None:
            exc = self.fail_when(texts)
            if exc is not None:
                raise exc
        vectors = [bag_of_words_vector(t, self.dims) for t in texts]
        return ProviderResponse(vectors=vectors, total_tokens=sum(len(t.split()) for t in texts))

    def close(self) -> None:
        pass


@pytest.fixture
def tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def memory_cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def no_wait() -> RetryPolicy:
    return RetryPolicy.no_wait()


@pytest.fixture
def vector_store(no_wait) -> QdrantVectorStore:
    store = QdrantVectorStore(QdrantClient(location=":memory:"), "test_chunks", DIMS, no_wait)
    store.ensure_collection()
    yield store
    store.close()


@pytest.fixture
def metadata() -> MetadataStore:
    store = MetadataStore.from_url("sqlite://", default_quota_bytes=10_000_000)
    store.create_tables()
    yield store
    store.close()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig.model_validate(
        {
            "chunking": {"parent_size": 60, "child_size": 20, "overlap": 4},
            "bm25": {"stats_path": str(tmp_path / "corpus_stats.json")},
            "embedding": {"dimensions": DIMS, "max_batch_tokens": 500},
            "cache": {"enabled": False, "search_ttl_seconds": 300},
            "storage": {"uploads_dir": str(tmp_path / "uploads")},
            "quota": {"default_org_quota_bytes": 10_000_000},
            "logging": {"level": "WARNING", "file": str(tmp_path / "test.log")},
        }
    )


@pytest.fixture
def services(app_config, tokenizer, provider, memory_cache, vector_store, metadata, no_wait) -> RAGServices:
    svc = RAGServices(
        app_config,
        tokenizer=tokenizer,
        provider=provider,
        cache=memory_cache,
        stats=InMemoryCorpusStatistics(),
        store=vector_store,
        metadata=metadata,
        retry_policy=no_wait,
    )
    svc.initialize()
    return svc


COURSE_DOC = """# Neural Networks

Neural networks learn representations from data. Each layer applies a linear map followed by a nonlinearity.
Training uses gradient descent to minimise a loss function over many examples.

## Backpropagation

Backpropagation computes gradients layer by layer using the chain rule. It reuses intermediate activations
so the cost stays linear in the number of parameters. Without it deep models would be impractical to train.

```python
# gradients are accumulated here
loss.backward()
```

## Regularisation

Dropout randomly zeroes activations during training. Weight decay adds the penalty $\\lambda \\|w\\|^2$ to the loss.

| Method | Effect |
|--------|--------|
| Dropout | reduces co-adaptation |
| Weight decay | shrinks weights |

![dropout diagram](images/dropout.png)
"""

OTHER_DOC = """# Qdrant Basics

Qdrant stores dense and sparse vectors side by side. Payload filters restrict every query to one tenant.
Reciprocal rank fusion merges the dense and sparse result lists without comparing raw scores.
"""
