"""replykb configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (REPLYKB_EMBEDDING_MODEL, REPLYKB_DB_PATH, REPLYKB_LOG_LEVEL)
  3. Per-project replykb.yaml  (working directory)
  4. Global ~/.replykb/config.yaml  (defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".replykb"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "replykb.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or top_k.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # access_token, auth_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "database",
        "embedding",
        "chunking",
        "retrieval",
        "crawler",
        "backfill",
        "retrain",
        "logging",
    ]
)

_RETRIEVAL_MODES: frozenset[str] = frozenset(["dense", "keyword", "hybrid"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseCfg:
    """SQLite database location (replykb.yaml: database:)."""

    path: str = "replykb.db"


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (replykb.yaml: embedding:).

    Attributes:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Vector size produced by *model*.
        batch_size: Maximum number of texts per provider call.
        rate_limit_cooldown: Seconds to wait after a rate-limit response.
        max_rate_limit_retries: Cool-down retries per batch before giving up.
        max_consecutive_failures: Non-rate-limit failures in a row before aborting.
    """

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100
    rate_limit_cooldown: float = 60.0
    max_rate_limit_retries: int = 10
    max_consecutive_failures: int = 3


@dataclass
class ChunkingCfg:
    """Chunk window in characters and overlap fraction (replykb.yaml: chunking:)."""

    chunk_size: int = 1000
    overlap: float = 0.15


@dataclass
class RetrievalCfg:
    """Retrieval configuration (replykb.yaml: retrieval:)."""

    top_k: int = 5
    mode: str = "dense"  # dense | keyword | hybrid
    rrf_k: int = 60
    max_distance: float | None = None  # drop dense hits farther than this


@dataclass
class CrawlerCfg:
    """Website crawler limits (replykb.yaml: crawler:)."""

    max_pages: int = 20
    delay: float = 0.0
    timeout: int = 30
    max_bytes: int = 5 * 1024 * 1024
    max_redirects: int = 3
    user_agent: str = "replykb/0.1 (+crawler)"


@dataclass
class BackfillCfg:
    """Bulk re-embedding configuration (replykb.yaml: backfill:)."""

    batch_size: int = 100
    max_errors: int = 10
    batch_delay: float = 0.2


@dataclass
class RetrainCfg:
    """Retraining pacing (replykb.yaml: retrain:)."""

    delay: float = 1.0


@dataclass
class LoggingCfg:
    """Log level for the CLI (replykb.yaml: logging:)."""

    level: str = "INFO"


@dataclass
class ReplyKBConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    crawler: CrawlerCfg = field(default_factory=CrawlerCfg)
    backfill: BackfillCfg = field(default_factory=BackfillCfg)
    retrain: RetrainCfg = field(default_factory=RetrainCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _validate(cfg: ReplyKBConfig) -> None:
    if cfg.retrieval.mode not in _RETRIEVAL_MODES:
        raise ConfigError(
            f"retrieval.mode must be one of {', '.join(sorted(_RETRIEVAL_MODES))}, "
            f"got '{cfg.retrieval.mode}'"
        )
    if not 0.0 <= cfg.chunking.overlap < 0.5:
        raise ConfigError(f"chunking.overlap must be in [0.0, 0.5), got {cfg.chunking.overlap}")
    max_distance = cfg.retrieval.max_distance
    if max_distance is not None and not 0.0 < max_distance <= 2.0:
        raise ConfigError(f"retrieval.max_distance must be in (0.0, 2.0], got {max_distance}")
    if cfg.chunking.chunk_size < 1:
        raise ConfigError(f"chunking.chunk_size must be >= 1, got {cfg.chunking.chunk_size}")
    if cfg.embedding.batch_size < 1:
        raise ConfigError(f"embedding.batch_size must be >= 1, got {cfg.embedding.batch_size}")
    if cfg.crawler.max_pages < 1:
        raise ConfigError(f"crawler.max_pages must be >= 1, got {cfg.crawler.max_pages}")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> ReplyKBConfig:
    """Build a *ReplyKBConfig* from a merged raw YAML dict."""
    cfg = ReplyKBConfig()

    if "database" in data:
        d = data["database"]
        cfg.database = DatabaseCfg(path=str(d.get("path", cfg.database.path)))

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
            rate_limit_cooldown=float(
                e.get("rate_limit_cooldown", cfg.embedding.rate_limit_cooldown)
            ),
            max_rate_limit_retries=int(
                e.get("max_rate_limit_retries", cfg.embedding.max_rate_limit_retries)
            ),
            max_consecutive_failures=int(
                e.get("max_consecutive_failures", cfg.embedding.max_consecutive_failures)
            ),
        )

    if "chunking" in data:
        c = data["chunking"]
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=float(c.get("overlap", cfg.chunking.overlap)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            mode=str(r.get("mode", cfg.retrieval.mode)),
            rrf_k=int(r.get("rrf_k", cfg.retrieval.rrf_k)),
            max_distance=_optional_float(r.get("max_distance", cfg.retrieval.max_distance)),
        )

    if "crawler" in data:
        cr = data["crawler"]
        cfg.crawler = CrawlerCfg(
            max_pages=int(cr.get("max_pages", cfg.crawler.max_pages)),
            delay=float(cr.get("delay", cfg.crawler.delay)),
            timeout=int(cr.get("timeout", cfg.crawler.timeout)),
            max_bytes=int(cr.get("max_bytes", cfg.crawler.max_bytes)),
            max_redirects=int(cr.get("max_redirects", cfg.crawler.max_redirects)),
            user_agent=str(cr.get("user_agent", cfg.crawler.user_agent)),
        )

    if "backfill" in data:
        b = data["backfill"]
        cfg.backfill = BackfillCfg(
            batch_size=int(b.get("batch_size", cfg.backfill.batch_size)),
            max_errors=int(b.get("max_errors", cfg.backfill.max_errors)),
            batch_delay=float(b.get("batch_delay", cfg.backfill.batch_delay)),
        )

    if "retrain" in data:
        rt = data["retrain"]
        cfg.retrain = RetrainCfg(delay=float(rt.get("delay", cfg.retrain.delay)))

    if "logging" in data:
        lg = data["logging"]
        cfg.logging = LoggingCfg(level=str(lg.get("level", cfg.logging.level)).upper())

    return cfg


def _apply_env_overrides(cfg: ReplyKBConfig) -> ReplyKBConfig:
    """Apply REPLYKB_* environment variable overrides."""
    if model := os.environ.get("REPLYKB_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if db_path := os.environ.get("REPLYKB_DB_PATH"):
        cfg.database.path = db_path
    if level := os.environ.get("REPLYKB_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ReplyKBConfig:
    """Load and return a merged *ReplyKBConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *replykb.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *ReplyKBConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or a value
            is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg
