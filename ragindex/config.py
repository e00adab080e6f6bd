"""
Configuration
-------------
Settings live in `config/config.yaml`; secrets and endpoints come from the
environment (a `.env` file is honoured via python-dotenv) and override the
YAML values.  Every section is a pydantic model so bad values fail at load
time rather than deep inside an ingest.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from ragindex.errors import ValidationError

DEFAULT_CONFIG_PATH = "config/config.yaml"


class ChunkingConfig(BaseModel):
    parent_size: int = 1500
    child_size: int = 400
    overlap: int = 50
    tokenizer: Literal["tiktoken", "huggingface"] = "tiktoken"
    tokenizer_model: str = "cl100k_base"      # encoding name or HF model id

    @model_validator(mode="after")
    def _check_sizes(self) -> "ChunkingConfig":
        if self.parent_size <= 0 or self.child_size <= 0 or self.overlap < 0:
            raise ValueError("chunk sizes must be positive and overlap non-negative")
        if self.child_size > self.parent_size:
            raise ValueError("child_size must not exceed parent_size")
        if self.overlap >= self.child_size:
            raise ValueError("overlap must be smaller than child_size")
        return self


class BM25Config(BaseModel):
    k1: float = Field(1.5, ge=0.0)
    b: float = Field(0.75, ge=0.0, le=1.0)
    vocab_size: int = Field(100_000, gt=0)
    stats_backend: Literal["memory", "redis"] = "memory"     # memory: one process; use redis for several workers
    stats_path: str = "data/corpus_stats.json"


class EmbeddingConfig(BaseModel):
    api_url: str = "https://api.jina.ai/v1/embeddings"
    api_key: str = ""
    model: str = "jina-embeddings-v3"
    dimensions: int = 768
    max_batch_tokens: int = 8000              # provider context window budget
    timeout_seconds: float = 60.0
    min_request_interval: float = 0.04        # client-side rate limit
    cache_ttl_seconds: int = 3600


class QdrantConfig(BaseModel):
    url: str = ":memory:"
    api_key: Optional[str] = None
    collection: str = "course_embeddings"
    timeout_seconds: float = 30.0


class CacheConfig(BaseModel):
    enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    search_ttl_seconds: int = 300
    socket_timeout_seconds: float = 2.0


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///data/ragindex.db"
    echo: bool = False


class StorageConfig(BaseModel):
    uploads_dir: str = "data/uploads"
    max_file_size_bytes: int = 100 * 1024 * 1024
    converter_url: Optional[str] = None
    converter_timeout_seconds: float = 120.0


class RetryConfig(BaseModel):
    max_attempts: int = Field(3, ge=1)
    backoff_multiplier: float = 1.0
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 4.0


class SearchConfig(BaseModel):
    rrf_k: int = Field(60, gt=0)


class UploadConfig(BaseModel):
    batch_size: int = Field(100, ge=1, le=500)


class QuotaConfig(BaseModel):
    default_org_quota_bytes: int = 1024 * 1024 * 1024


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = "logs/ragindex.log"
    components: dict[str, str] = Field(default_factory=dict)   # e.g. {"Retry": "DEBUG"}


class AppConfig(BaseModel):
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    bm25: BM25Config = Field(default_factory=BM25Config)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    qdrant: QdrantConfig = Field(default_factory=QdrantConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# Environment variable -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "JINA_API_KEY": ("embedding", "api_key"),
    "QDRANT_URL": ("qdrant", "url"),
    "QDRANT_API_KEY": ("qdrant", "api_key"),
    "REDIS_URL": ("cache", "redis_url"),
    "DATABASE_URL": ("database", "url"),
    "CONVERTER_URL": ("storage", "converter_url"),
    "LOG_LEVEL": ("logging", "level"),
}


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            raw.setdefault(section, {})[key] = value
    return raw


def load_config(path: str | Path | None = DEFAULT_CONFIG_PATH, use_env: bool = True) -> AppConfig:
    """
    Load YAML config (if present) and overlay environment secrets.

    A missing file is not an error: defaults plus environment are enough
    to run against local services.
    """
    raw: dict[str, Any] = {}
    if path is not None and Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    if use_env:
        load_dotenv()
        raw = _apply_env(raw)
    try:
        return AppConfig.model_validate(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid configuration: {exc}") from exc
