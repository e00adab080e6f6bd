"""
Corpus Statistics Store
-----------------------
Global BM25 statistics shared by every ingest: number of indexed chunks,
total token length (for the running average) and per-term document
frequency.

Two backends share one interface:
  - InMemoryCorpusStatistics: a lock serialises every mutation, so
    concurrent ingest threads never lose increments.  Persisted with
    export()/import_state() or save()/load(); save() merges into the file
    under a FileLock, but live sharing across processes needs Redis.
  - RedisCorpusStatistics: counters live in Redis and are bumped with
    INCRBY / HINCRBY inside one MULTI/EXEC pipeline, which makes updates
    from independent worker processes atomic.

Readers take a CorpusSnapshot.  A snapshot may lag the very latest ingest
slightly; BM25 weights tolerate that.
"""
from __future__ import annotations

import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional, Protocol

import redis
from filelock import FileLock, Timeout
from loguru import logger

from ragindex.errors import ExternalServiceError, ServiceTimeoutError, ValidationError
from ragindex.utils.helpers import load_json, save_json
from ragindex.utils.retry import RetryPolicy

EXPORT_VERSION = 1


@dataclass(frozen=True)
class CorpusSnapshot:
    total_chunks: int = 0
    total_length: int = 0
    document_frequency: Mapping[str, int] = field(default_factory=dict)

    @property
    def avg_chunk_length(self) -> float:
        return self.total_length / self.total_chunks if self.total_chunks else 0.0

    def df(self, term: str) -> int:
        return self.document_frequency.get(term, 0)


class CorpusStatistics(Protocol):
    def add_document(self, tokens: list[str]) -> None: ...

    def remove_document(self, tokens: list[str]) -> None: ...

    def snapshot(self, terms: Optional[Iterable[str]] = None) -> CorpusSnapshot: ...

    def export(self) -> dict: ...

    def import_state(self, state: dict) -> None: ...


def _validate_state(state: dict) -> tuple[int, int, dict[str, int]]:
    try:
        total_chunks = int(state["total_chunks"])
        total_length = int(state["total_length"])
        df = {str(k): int(v) for k, v in dict(state["document_frequency"]).items()}
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed corpus statistics export: {exc}") from exc
    if total_chunks < 0 or total_length < 0 or any(v < 0 for v in df.values()):
        raise ValidationError("Corpus statistics counters must be non-negative")
    return total_chunks, total_length, df


# --- In-memory backend --------------------------------------------------------

LOCK_TIMEOUT_SECONDS = 30.0

_State = tuple[int, int, dict[str, int]]


def _merge(on_disk: _State, base: _State, current: _State) -> _State:
    """on_disk + (current - base), clamped at zero; terms at zero are dropped."""
    total_chunks = max(on_disk[0] + current[0] - base[0], 0)
    total_length = max(on_disk[1] + current[1] - base[1], 0)
    df = Counter(on_disk[2])
    for term in set(base[2]) | set(current[2]):
        df[term] += current[2].get(term, 0) - base[2].get(term, 0)
    return total_chunks, total_length, {t: n for t, n in df.items() if n > 0}


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(f"{path}.lock")
    try:
        lock.acquire(timeout=LOCK_TIMEOUT_SECONDS)
    except Timeout as exc:
        raise ExternalServiceError(
            f"Could not lock {path} within {LOCK_TIMEOUT_SECONDS}s", service="corpus-stats"
        ) from exc
    try:
        yield
    finally:
        lock.release()


class InMemoryCorpusStatistics:
    """
    Process-local statistics, optionally persisted to a JSON file.

    Several processes may point at the same file.  save() takes a FileLock
    and merges the changes made here since the last load()/save() into the
    state on disk, so no process overwrites another's counts.  Each process
    still only sees the others' ingests after its next load(); workers that
    must share counts live should use RedisCorpusStatistics.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_chunks = 0
        self._total_length = 0
        self._df: Counter[str] = Counter()
        # State as last read from / written to the stats file
        self._base: _State = (0, 0, {})

    def add_document(self, tokens: list[str]) -> None:
        """Count one chunk: df for each distinct term, chunk count, total length."""
        distinct = set(tokens)
        with self._lock:
            self._total_chunks += 1
            self._total_length += len(tokens)
            self._df.update(distinct)

    def remove_document(self, tokens: list[str]) -> None:
        """Undo add_document for a chunk that is no longer indexed."""
        distinct = set(tokens)
        with self._lock:
            self._total_chunks = max(self._total_chunks - 1, 0)
            self._total_length = max(self._total_length - len(tokens), 0)
            for term in distinct:
                remaining = self._df[term] - 1
                if remaining > 0:
                    self._df[term] = remaining
                else:
                    self._df.pop(term, None)

    def snapshot(self, terms: Optional[Iterable[str]] = None) -> CorpusSnapshot:
        with self._lock:
            if terms is None:
                df = dict(self._df)
            else:
                df = {t: self._df[t] for t in set(terms) if t in self._df}
            return CorpusSnapshot(self._total_chunks, self._total_length, MappingProxyType(df))

    def export(self) -> dict:
        with self._lock:
            return {
                "version": EXPORT_VERSION,
                "total_chunks": self._total_chunks,
                "total_length": self._total_length,
                "document_frequency": dict(self._df),
            }

    def import_state(self, state: dict) -> None:
        """Replace the counters. The file baseline is kept, so a later save() writes exactly this state."""
        total_chunks, total_length, df = _validate_state(state)
        with self._lock:
            self._total_chunks = total_chunks
            self._total_length = total_length
            self._df = Counter(df)
        logger.info(f"[CorpusStats] Imported {total_chunks} chunks, {len(df)} terms")

    def save(self, path: str | Path) -> None:
        path = Path(path)
        with _locked(path):
            on_disk: _State = _validate_state(load_json(path)) if path.exists() else (0, 0, {})
            with self._lock:
                current = (self._total_chunks, self._total_length, dict(self._df))
                merged = _merge(on_disk, self._base, current)
                self._total_chunks, self._total_length = merged[0], merged[1]
                self._df = Counter(merged[2])
                self._base = (merged[0], merged[1], dict(merged[2]))
            save_json(self.export(), path)
        logger.info(f"[CorpusStats] Saved {merged[0]} chunks to {path}")

    def load(self, path: str | Path) -> None:
        path = Path(path)
        with _locked(path):
            state = _validate_state(load_json(path))
        self.import_state({"total_chunks": state[0], "total_length": state[1], "document_frequency": state[2]})
        with self._lock:
            self._base = (state[0], state[1], dict(state[2]))


# --- Redis backend ------------------------------------------------------------

class RedisCorpusStatistics:
    """
    Corpus statistics shared between worker processes through Redis.

    Keys:
      {prefix}total_chunks   integer
      {prefix}total_length   integer
      {prefix}df             hash term -> document frequency
    """

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "ragindex:corpus:",
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._client = client
        self._chunks_key = f"{key_prefix}total_chunks"
        self._length_key = f"{key_prefix}total_length"
        self._df_key = f"{key_prefix}df"
        self._retry = retry_policy or RetryPolicy()

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0, **kwargs) -> "RedisCorpusStatistics":
        client = redis.Redis.from_url(
            url, socket_timeout=socket_timeout, socket_connect_timeout=socket_timeout, decode_responses=True
        )
        return cls(client, **kwargs)

    def _run(self, fn, *args, idempotent: bool = True):
        def call():
            try:
                return fn(*args)
            except redis.TimeoutError as exc:
                if not idempotent:
                    # The increments may already be applied; replaying would double count
                    raise ExternalServiceError(
                        f"Timed out, outcome unknown: {exc}", service="corpus-stats", retryable=False
                    ) from exc
                raise ServiceTimeoutError(str(exc), service="corpus-stats") from exc
            except (redis.ConnectionError, OSError) as exc:
                raise ExternalServiceError(str(exc), service="corpus-stats") from exc
            except redis.RedisError as exc:
                raise ExternalServiceError(str(exc), service="corpus-stats", retryable=False) from exc

        return self._retry.call(call)

    def _apply(self, tokens: list[str], sign: int) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.incrby(self._chunks_key, sign)
        pipe.incrby(self._length_key, sign * len(tokens))
        for term in set(tokens):
            pipe.hincrby(self._df_key, term, sign)
        pipe.execute()

    def add_document(self, tokens: list[str]) -> None:
        self._run(self._apply, tokens, 1, idempotent=False)

    def remove_document(self, tokens: list[str]) -> None:
        self._run(self._apply, tokens, -1, idempotent=False)

    def _read(self, terms: Optional[list[str]]) -> CorpusSnapshot:
        pipe = self._client.pipeline(transaction=True)
        pipe.get(self._chunks_key)
        pipe.get(self._length_key)
        if terms is None:
            pipe.hgetall(self._df_key)
        elif terms:
            pipe.hmget(self._df_key, terms)
        results = pipe.execute()
        total_chunks = max(int(results[0] or 0), 0)
        total_length = max(int(results[1] or 0), 0)
        if terms is None:
            df = {str(k): int(v) for k, v in (results[2] or {}).items() if int(v) > 0}
        elif terms:
            df = {t: int(v) for t, v in zip(terms, results[2]) if v is not None and int(v) > 0}
        else:
            df = {}
        return CorpusSnapshot(total_chunks, total_length, MappingProxyType(df))

    def snapshot(self, terms: Optional[Iterable[str]] = None) -> CorpusSnapshot:
        term_list = None if terms is None else sorted(set(terms))
        return self._run(self._read, term_list)

    def export(self) -> dict:
        snap = self.snapshot()
        return {
            "version": EXPORT_VERSION,
            "total_chunks": snap.total_chunks,
            "total_length": snap.total_length,
            "document_frequency": dict(snap.document_frequency),
        }

    def _replace(self, total_chunks: int, total_length: int, df: dict[str, int]) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.delete(self._df_key)
        pipe.set(self._chunks_key, total_chunks)
        pipe.set(self._length_key, total_length)
        if df:
            pipe.hset(self._df_key, mapping=df)
        pipe.execute()

    def import_state(self, state: dict) -> None:
        total_chunks, total_length, df = _validate_state(state)
        self._run(self._replace, total_chunks, total_length, df)
        logger.info(f"[CorpusStats] Imported {total_chunks} chunks, {len(df)} terms into Redis")

    def close(self) -> None:
        self._client.close()
