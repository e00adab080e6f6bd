from __future__ import annotations

import threading
from collections import defaultdict

import pytest
import redis

from ragindex.embedding.corpus_stats import InMemoryCorpusStatistics, RedisCorpusStatistics
from ragindex.errors import ExternalServiceError, ServiceTimeoutError, ValidationError
from ragindex.serving.services import RAGServices
from ragindex.utils.retry import RetryPolicy


class _FakePipeline:
    def __init__(self, server: "FakeRedis") -> None:
        self._server = server
        self._ops: list = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        self._server.executions += 1
        if self._server.fail:
            raise self._server.fail_with("connection refused")
        return [getattr(self._server, name)(*args, **kwargs) for name, args, kwargs in self._ops]


class FakeRedis:
    """Just enough of the redis-py client surface for the statistics backend."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = defaultdict(dict)
        self.fail = False
        self.fail_with: type[Exception] = redis.ConnectionError
        self.executions = 0

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    def incrby(self, key, amount):
        self.values[key] = str(int(self.values.get(key, 0)) + amount)
        return int(self.values[key])

    def hincrby(self, key, field, amount):
        self.hashes[key][field] = str(int(self.hashes[key].get(field, 0)) + amount)
        return int(self.hashes[key][field])

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value):
        self.values[key] = str(value)
        return True

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hmget(self, key, fields):
        return [self.hashes.get(key, {}).get(f) for f in fields]

    def hset(self, key, mapping):
        self.hashes[key].update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    def delete(self, key):
        return int(self.hashes.pop(key, None) is not None)

    def close(self):
        pass


# --- In-memory backend --------------------------------------------------------

def test_add_and_snapshot():
    stats = InMemoryCorpusStatistics()
    stats.add_document(["alpha", "beta", "alpha"])
    stats.add_document(["beta"])
    snap = stats.snapshot()
    assert snap.total_chunks == 2
    assert snap.total_length == 4
    assert snap.avg_chunk_length == 2.0
    assert snap.df("alpha") == 1 and snap.df("beta") == 2 and snap.df("gamma") == 0


def test_snapshot_restricted_to_terms():
    stats = InMemoryCorpusStatistics()
    stats.add_document(["alpha", "beta", "gamma"])
    snap = stats.snapshot(["beta", "missing"])
    assert dict(snap.document_frequency) == {"beta": 1}
    assert snap.total_chunks == 1


def test_remove_reverses_add():
    stats = InMemoryCorpusStatistics()
    stats.add_document(["alpha", "beta"])
    stats.add_document(["beta", "gamma"])
    stats.remove_document(["alpha", "beta"])
    stats.remove_document(["beta", "gamma"])
    assert stats.export()["total_chunks"] == 0
    assert stats.export()["total_length"] == 0
    assert stats.export()["document_frequency"] == {}


def test_concurrent_adds_are_not_lost():
    stats = InMemoryCorpusStatistics()

    def worker():
        for _ in range(200):
            stats.add_document(["shared", "term"])

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    snap = stats.snapshot()
    assert snap.total_chunks == 1600
    assert snap.total_length == 3200
    assert snap.df("shared") == 1600


def test_export_import_round_trip(tmp_path):
    stats = InMemoryCorpusStatistics()
    stats.add_document(["alpha", "beta"])
    path = tmp_path / "stats.json"
    stats.save(path)

    restored = InMemoryCorpusStatistics()
    restored.load(path)
    assert restored.export() == stats.export()


def test_saves_from_two_processes_merge(tmp_path):
    path = tmp_path / "stats.json"
    seed = InMemoryCorpusStatistics()
    seed.add_document(["alpha"])
    seed.save(path)

    first, second = InMemoryCorpusStatistics(), InMemoryCorpusStatistics()
    first.load(path)
    second.load(path)
    first.add_document(["alpha", "beta"])
    second.add_document(["gamma"])
    second.remove_document(["alpha"])
    first.save(path)
    second.save(path)

    on_disk = InMemoryCorpusStatistics()
    on_disk.load(path)
    snap = on_disk.snapshot()
    assert snap.total_chunks == 2
    assert snap.total_length == 3
    assert dict(snap.document_frequency) == {"alpha": 1, "beta": 1, "gamma": 1}
    assert second.export() == on_disk.export()


def test_import_then_save_replaces_file(tmp_path):
    path = tmp_path / "stats.json"
    seed = InMemoryCorpusStatistics()
    seed.add_document(["old"])
    seed.save(path)

    stats = InMemoryCorpusStatistics()
    stats.load(path)
    stats.import_state({"total_chunks": 5, "total_length": 20, "document_frequency": {"new": 3}})
    stats.save(path)

    restored = InMemoryCorpusStatistics()
    restored.load(path)
    assert restored.snapshot().total_chunks == 5
    assert dict(restored.snapshot().document_frequency) == {"new": 3}


@pytest.mark.parametrize(
    "state",
    [
        {},
        {"total_chunks": "many", "total_length": 1, "document_frequency": {}},
        {"total_chunks": -1, "total_length": 0, "document_frequency": {}},
        {"total_chunks": 1, "total_length": 1, "document_frequency": {"a": -2}},
    ],
)
def test_import_rejects_malformed_state(state):
    stats = InMemoryCorpusStatistics()
    stats.add_document(["kept"])
    with pytest.raises(ValidationError):
        stats.import_state(state)
    assert stats.snapshot().total_chunks == 1


# --- Redis backend ------------------------------------------------------------

@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_stats(fake_redis) -> RedisCorpusStatistics:
    return RedisCorpusStatistics(fake_redis, key_prefix="t:", retry_policy=RetryPolicy.no_wait())


def test_redis_backend_counts_like_memory(redis_stats):
    memory = InMemoryCorpusStatistics()
    for tokens in (["alpha", "beta", "alpha"], ["beta", "gamma"]):
        redis_stats.add_document(tokens)
        memory.add_document(tokens)
    redis_stats.remove_document(["beta", "gamma"])
    memory.remove_document(["beta", "gamma"])

    assert redis_stats.export() == memory.export()
    assert dict(redis_stats.snapshot(["alpha", "gamma"]).document_frequency) == {"alpha": 1}


def test_redis_import_replaces_state(redis_stats):
    redis_stats.add_document(["old"])
    redis_stats.import_state({"total_chunks": 5, "total_length": 20, "document_frequency": {"new": 3}})
    snap = redis_stats.snapshot()
    assert snap.total_chunks == 5
    assert dict(snap.document_frequency) == {"new": 3}


def test_redis_failure_maps_to_external_service_error(redis_stats, fake_redis):
    fake_redis.fail = True
    with pytest.raises(ExternalServiceError) as info:
        redis_stats.add_document(["alpha"])
    assert info.value.retryable


def test_redis_mutation_timeout_is_not_replayed(redis_stats, fake_redis):
    fake_redis.fail = True
    fake_redis.fail_with = redis.TimeoutError
    with pytest.raises(ExternalServiceError) as info:
        redis_stats.add_document(["alpha"])
    assert not info.value.retryable
    assert not isinstance(info.value, ServiceTimeoutError)
    assert fake_redis.executions == 1


def test_redis_read_timeout_is_retried(redis_stats, fake_redis):
    fake_redis.fail = True
    fake_redis.fail_with = redis.TimeoutError
    with pytest.raises(ServiceTimeoutError):
        redis_stats.snapshot()
    assert fake_redis.executions == 3


def test_services_pass_cache_socket_timeout_to_redis_stats(
    app_config, tokenizer, provider, memory_cache, vector_store, metadata, no_wait, monkeypatch
):
    seen = {}

    def from_url(cls, url, socket_timeout=2.0, **kwargs):
        seen.update(url=url, socket_timeout=socket_timeout)
        return cls(FakeRedis(), **kwargs)

    monkeypatch.setattr(RedisCorpusStatistics, "from_url", classmethod(from_url))
    config = app_config.model_copy(
        update={
            "bm25": app_config.bm25.model_copy(update={"stats_backend": "redis"}),
            "cache": app_config.cache.model_copy(update={"socket_timeout_seconds": 0.5}),
        }
    )
    svc = RAGServices(
        config,
        tokenizer=tokenizer,
        provider=provider,
        cache=memory_cache,
        store=vector_store,
        metadata=metadata,
        retry_policy=no_wait,
    )
    assert isinstance(svc.stats, RedisCorpusStatistics)
    assert seen == {"url": config.cache.redis_url, "socket_timeout": 0.5}
