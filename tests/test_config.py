from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from ragindex.config import AppConfig, load_config
from ragindex.errors import ValidationError

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config" / "config.yaml"


def test_repo_config_loads():
    cfg = load_config(REPO_CONFIG, use_env=False)
    assert cfg.chunking.parent_size == 1500
    assert cfg.chunking.child_size == 400
    assert cfg.chunking.overlap == 50
    assert cfg.bm25.k1 == 1.5 and cfg.bm25.b == 0.75
    assert cfg.embedding.dimensions == 768
    assert cfg.search.rrf_k == 60
    assert cfg.upload.batch_size == 100


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(tmp_path / "absent.yaml", use_env=False)
    assert cfg == AppConfig()


def test_environment_overrides_secrets(tmp_path, monkeypatch):
    monkeypatch.setenv("JINA_API_KEY", "jina-test")
    monkeypatch.setenv("QDRANT_URL", "http://qdrant:6333")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.chdir(tmp_path)
    cfg = load_config(REPO_CONFIG)
    assert cfg.embedding.api_key == "jina-test"
    assert cfg.qdrant.url == "http://qdrant:6333"
    assert cfg.logging.level == "DEBUG"


@pytest.mark.parametrize(
    "body",
    [
        "chunking:\n  parent_size: 100\n  child_size: 200\n",
        "chunking:\n  child_size: 100\n  overlap: 100\n",
        "bm25:\n  b: 1.5\n",
        "upload:\n  batch_size: 501\n",
        "bm25:\n  stats_backend: sqlite\n",
    ],
)
def test_invalid_values_fail_at_load(tmp_path, body):
    path = tmp_path / "config.yaml"
    path.write_text(body)
    with pytest.raises(ValidationError):
        load_config(path, use_env=False)


def test_repo_config_has_no_unknown_keys():
    with open(REPO_CONFIG, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    sections = AppConfig.model_fields
    for section, values in raw.items():
        assert section in sections, section
        model = sections[section].annotation
        unknown = set(values) - set(model.model_fields)
        assert not unknown, f"{section}: {sorted(unknown)}"
