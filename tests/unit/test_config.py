"""Tests for the replykb config loader."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest
import yaml

from replykb.config import ConfigError, ReplyKBConfig, load_config


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


def _load(tmp_path: Path, global_cfg: Path | None = None) -> ReplyKBConfig:
    return load_config(
        project_dir=tmp_path,
        global_config_path=global_cfg or tmp_path / "nonexistent" / "config.yaml",
    )


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("REPLYKB_EMBEDDING_MODEL", "REPLYKB_DB_PATH", "REPLYKB_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Defaults (no config files present)
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path) -> None:
    cfg = _load(tmp_path)

    assert cfg.database.path == "replykb.db"
    assert cfg.embedding.model == "openai/text-embedding-3-small"
    assert cfg.embedding.batch_size == 100
    assert cfg.embedding.rate_limit_cooldown == 60.0
    assert cfg.embedding.max_consecutive_failures == 3
    assert cfg.chunking.chunk_size == 1000
    assert cfg.chunking.overlap == 0.15
    assert cfg.retrieval.top_k == 5
    assert cfg.retrieval.mode == "dense"
    assert cfg.retrieval.max_distance is None
    assert cfg.crawler.max_pages == 20
    assert cfg.backfill.max_errors == 10
    assert cfg.retrain.delay == 1.0
    assert cfg.logging.level == "INFO"


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_global_overrides_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"retrieval": {"top_k": 8}})

    cfg = _load(tmp_path, global_cfg)
    assert cfg.retrieval.top_k == 8
    assert cfg.retrieval.mode == "dense"


def test_global_empty_file(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("", encoding="utf-8")

    assert _load(tmp_path, global_cfg).retrieval.top_k == 5


def test_project_overrides_global(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"crawler": {"max_pages": 50, "delay": 2.0}})
    _write_yaml(tmp_path / "replykb.yaml", {"crawler": {"max_pages": 5}})

    cfg = _load(tmp_path, global_cfg)
    assert cfg.crawler.max_pages == 5
    assert cfg.crawler.delay == 2.0  # deep merge keeps the global value


def test_project_sections_parsed(tmp_path: Path) -> None:
    _write_yaml(
        tmp_path / "replykb.yaml",
        {
            "database": {"path": "kb/support.db"},
            "embedding": {"model": "ollama/nomic-embed-text", "dimensions": 768},
            "chunking": {"chunk_size": 500, "overlap": 0.1},
            "retrieval": {"mode": "hybrid", "rrf_k": 30, "max_distance": 0.4},
            "backfill": {"batch_size": 25},
            "retrain": {"delay": 0.5},
            "logging": {"level": "debug"},
        },
    )

    cfg = _load(tmp_path)
    assert cfg.database.path == "kb/support.db"
    assert cfg.embedding.model == "ollama/nomic-embed-text"
    assert cfg.embedding.dimensions == 768
    assert cfg.chunking.chunk_size == 500
    assert cfg.retrieval.mode == "hybrid"
    assert cfg.retrieval.rrf_k == 30
    assert cfg.retrieval.max_distance == 0.4
    assert cfg.backfill.batch_size == 25
    assert cfg.retrain.delay == 0.5
    assert cfg.logging.level == "DEBUG"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "section",
    [
        {"retrieval": {"mode": "fuzzy"}},
        {"chunking": {"overlap": 0.5}},
        {"chunking": {"chunk_size": 0}},
        {"embedding": {"batch_size": 0}},
        {"crawler": {"max_pages": 0}},
        {"retrieval": {"max_distance": 0}},
    ],
)
def test_out_of_range_values_raise(tmp_path: Path, section: dict) -> None:
    _write_yaml(tmp_path / "replykb.yaml", section)

    with pytest.raises(ConfigError):
        _load(tmp_path)


@pytest.mark.parametrize(
    "bad_key",
    ["api_key", "apikey", "OPENAI_API_KEY", "secret", "password", "token", "api-key"],
)
def test_global_config_rejects_api_key_fields(tmp_path: Path, bad_key: str) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text(f"{bad_key}: sk-abc123\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="forbidden key"):
        _load(tmp_path, global_cfg)


def test_global_config_rejects_nested_api_key(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"api_key": "sk-secret"}})

    with pytest.raises(ConfigError, match="forbidden key"):
        _load(tmp_path, global_cfg)


def test_max_tokens_style_keys_allowed(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"retrieval": {"top_k": 3}})

    assert _load(tmp_path, global_cfg).retrieval.top_k == 3


def test_unknown_top_level_key_warns(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"unknown_section": {"foo": "bar"}})

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        cfg = _load(tmp_path, global_cfg)

    assert any("unknown_section" in str(w.message) for w in caught)
    assert cfg.retrieval.top_k == 5


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------


def test_env_var_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_yaml(tmp_path / "replykb.yaml", {"embedding": {"model": "openai/text-embedding-3-large"}})
    monkeypatch.setenv("REPLYKB_EMBEDDING_MODEL", "mistral/mistral-embed")
    monkeypatch.setenv("REPLYKB_DB_PATH", "/srv/kb.db")
    monkeypatch.setenv("REPLYKB_LOG_LEVEL", "warning")

    cfg = _load(tmp_path)
    assert cfg.embedding.model == "mistral/mistral-embed"
    assert cfg.database.path == "/srv/kb.db"
    assert cfg.logging.level == "WARNING"


def test_config_does_not_execute_yaml_load(tmp_path: Path) -> None:
    """Python object tags are rejected by safe_load instead of executed."""
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("!!python/object/apply:os.system ['echo pwned']\n", encoding="utf-8")

    with pytest.raises(yaml.YAMLError):
        _load(tmp_path, global_cfg)
