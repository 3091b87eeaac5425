"""LiteLLM embedding client with batching, rate-limit cool-down and failure cap.

All embedding calls (write path, backfill, query) route through this module.

- Input is split into batches of ``batch_size`` texts; output order and
  cardinality always match the input.
- A rate-limit response pauses for ``rate_limit_cooldown`` seconds and the
  same batch is retried.
- Other provider errors are retried until ``max_consecutive_failures`` batches
  in a row have failed, then EmbeddingError is raised.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

import litellm

from replykb.errors import EmbeddingError, ProviderRateLimited

logger = logging.getLogger(__name__)

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

_NEWLINES_RE = re.compile(r"\s*\n+\s*")

# Provider → env var mapping for API key validation
_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "ollama": None,  # Local, no key required
}


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100
    rate_limit_cooldown: float = 60.0
    max_rate_limit_retries: int = 10
    max_consecutive_failures: int = 3

    @classmethod
    def from_cfg(cls, cfg) -> "EmbeddingConfig":
        """Build from a replykb.config.EmbeddingCfg section."""
        return cls(
            model=cfg.model,
            dimensions=cfg.dimensions,
            batch_size=cfg.batch_size,
            rate_limit_cooldown=cfg.rate_limit_cooldown,
            max_rate_limit_retries=cfg.max_rate_limit_retries,
            max_consecutive_failures=cfg.max_consecutive_failures,
        )


def is_rate_limit(exc: BaseException) -> bool:
    """True for litellm.RateLimitError or any error carrying HTTP status 429."""
    if isinstance(exc, litellm.RateLimitError):
        return True
    return getattr(exc, "status_code", None) == 429 or getattr(exc, "status", None) == 429


class EmbeddingClient:
    """Embed batches of text through ``litellm.embedding()``.

    Args:
        config: Embedding configuration (model, batch size, retry policy).
        sleep:  Sleep function used for cool-downs (injectable for tests).
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or EmbeddingConfig()
        if self.config.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self.config.model

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, returning one vector per input in the same order.

        Raises:
            ProviderRateLimited: A batch stayed rate-limited after all cool-downs.
            EmbeddingError: Too many consecutive non-rate-limit batch failures,
                or the provider returned the wrong number of vectors.
        """
        vectors: list[list[float]] = []
        size = self.config.batch_size
        failures = 0
        start = 0
        while start < len(texts):
            batch = texts[start : start + size]
            rate_limited = 0
            while True:
                try:
                    vectors.extend(self._embed_batch(batch))
                    failures = 0
                    break
                except Exception as exc:
                    if is_rate_limit(exc):
                        rate_limited += 1
                        if rate_limited > self.config.max_rate_limit_retries:
                            raise ProviderRateLimited(
                                f"Embedding provider still rate-limiting after "
                                f"{self.config.max_rate_limit_retries} cool-downs"
                            ) from exc
                        logger.warning(
                            "Rate limited on batch of %d, waiting %.0fs",
                            len(batch),
                            self.config.rate_limit_cooldown,
                        )
                        self._sleep(self.config.rate_limit_cooldown)
                        continue
                    if isinstance(exc, EmbeddingError):
                        raise
                    failures += 1
                    logger.warning(
                        "Embedding batch failed (%d/%d): %s",
                        failures,
                        self.config.max_consecutive_failures,
                        exc,
                    )
                    if failures >= self.config.max_consecutive_failures:
                        raise EmbeddingError(
                            f"Embedding aborted after {failures} consecutive batch "
                            f"failures: {exc}"
                        ) from exc
            start += size
        return vectors

    def embed_one(self, text: str) -> list[float]:
        """Embed a single text (e.g. a search query)."""
        return self.embed([text])[0]

    def check_api_key(self) -> None:
        """Check that the required API key env var is set for the model.

        Raises:
            EnvironmentError: If the required key is missing from environment.
        """
        model = self.config.model
        provider = model.split("/")[0].lower() if "/" in model else "openai"
        env_var = _PROVIDER_ENV.get(provider)
        if env_var is None:
            return
        if not os.getenv(env_var):
            raise EnvironmentError(
                f"API key not found for provider '{provider}'. "
                f"Set the {env_var} environment variable."
            )

    # ------------------------------------------------------------------
    # Provider call
    # ------------------------------------------------------------------

    def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        """One provider call. Newlines are flattened before embedding."""
        prepared = [_NEWLINES_RE.sub(" ", t).strip() or " " for t in batch]
        response = litellm.embedding(model=self.config.model, input=prepared)
        data = list(response.data)
        if len(data) != len(batch):
            raise EmbeddingError(
                f"Provider returned {len(data)} vectors for {len(batch)} inputs"
            )
        try:
            data.sort(key=lambda item: item["index"])
        except (KeyError, TypeError):
            pass  # provider did not report indexes; keep response order
        return [list(item["embedding"]) for item in data]
