"""Tests for EmbeddingClient."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from replykb.errors import EmbeddingError, ProviderRateLimited
from replykb.ingest.embedding_client import EmbeddingClient, EmbeddingConfig, is_rate_limit

_TARGET = "replykb.ingest.embedding_client.litellm.embedding"


class _RateLimited(Exception):
    status_code = 429


def _response(vectors, indexes=None):
    response = MagicMock()
    indexes = indexes if indexes is not None else range(len(vectors))
    response.data = [{"embedding": v, "index": i} for v, i in zip(vectors, indexes)]
    return response


def _echo(model=None, input=(), **kwargs):
    """One vector per input whose first component is the input's length."""
    return _response([[float(len(t)), 0.0, 0.0, 1.0] for t in input])


def _client(sleeps=None, **overrides) -> EmbeddingClient:
    config = EmbeddingConfig(
        dimensions=4,
        batch_size=overrides.pop("batch_size", 2),
        rate_limit_cooldown=overrides.pop("rate_limit_cooldown", 60.0),
        max_rate_limit_retries=overrides.pop("max_rate_limit_retries", 3),
        max_consecutive_failures=overrides.pop("max_consecutive_failures", 2),
    )
    return EmbeddingClient(config, sleep=(sleeps.append if sleeps is not None else lambda _: None))


# ------------------------------------------------------------------
# Batching and ordering
# ------------------------------------------------------------------


def test_embed_batches_and_preserves_order():
    texts = ["a", "bb", "ccc", "dddd", "eeeee"]
    with patch(_TARGET, side_effect=_echo) as mocked:
        vectors = _client(batch_size=2).embed(texts)

    assert mocked.call_count == 3
    assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]


def test_embed_reorders_by_reported_index():
    shuffled = _response([[2.0, 0, 0, 1], [1.0, 0, 0, 1]], indexes=[1, 0])
    with patch(_TARGET, return_value=shuffled):
        vectors = _client().embed(["one", "two"])
    assert [v[0] for v in vectors] == [1.0, 2.0]


def test_newlines_flattened_before_embedding():
    with patch(_TARGET, side_effect=_echo) as mocked:
        _client().embed(["Refunds\n\n  within 30 days"])
    assert mocked.call_args.kwargs["input"] == ["Refunds within 30 days"]


def test_embed_empty_list_makes_no_call():
    with patch(_TARGET) as mocked:
        assert _client().embed([]) == []
    mocked.assert_not_called()


def test_wrong_vector_count_raises():
    with patch(_TARGET, return_value=_response([[1.0, 0, 0, 1]])):
        with pytest.raises(EmbeddingError, match="1 vectors for 2 inputs"):
            _client().embed(["a", "b"])


def test_embed_one():
    with patch(_TARGET, side_effect=_echo):
        assert _client().embed_one("abc")[0] == 3.0


# ------------------------------------------------------------------
# Rate limiting
# ------------------------------------------------------------------


def test_rate_limit_cools_down_and_retries_same_batch():
    sleeps: list[float] = []
    with patch(_TARGET, side_effect=[_RateLimited(), _RateLimited(), _echo(input=["a"])]) as mocked:
        vectors = _client(sleeps, rate_limit_cooldown=60.0).embed(["a"])

    assert sleeps == [60.0, 60.0]
    assert mocked.call_count == 3
    assert len(vectors) == 1


def test_rate_limit_gives_up_after_max_retries():
    sleeps: list[float] = []
    with patch(_TARGET, side_effect=_RateLimited()):
        with pytest.raises(ProviderRateLimited):
            _client(sleeps, max_rate_limit_retries=2).embed(["a"])
    assert len(sleeps) == 2


def test_is_rate_limit_by_status():
    assert is_rate_limit(_RateLimited())
    assert not is_rate_limit(RuntimeError("boom"))


# ------------------------------------------------------------------
# Consecutive failures
# ------------------------------------------------------------------


def test_consecutive_failures_abort():
    with patch(_TARGET, side_effect=RuntimeError("provider down")) as mocked:
        with pytest.raises(EmbeddingError, match="2 consecutive"):
            _client(max_consecutive_failures=2).embed(["a"])
    assert mocked.call_count == 2


def test_transient_failure_then_success():
    with patch(_TARGET, side_effect=[RuntimeError("blip"), _echo(input=["a", "b"])]):
        vectors = _client(max_consecutive_failures=2).embed(["a", "b"])
    assert len(vectors) == 2


def test_success_resets_failure_count():
    side_effects = [
        RuntimeError("blip"),
        _echo(input=["a", "b"]),
        RuntimeError("blip"),
        _echo(input=["c", "d"]),
    ]
    with patch(_TARGET, side_effect=side_effects):
        vectors = _client(batch_size=2, max_consecutive_failures=2).embed(["a", "b", "c", "d"])
    assert len(vectors) == 4


# ------------------------------------------------------------------
# API key check
# ------------------------------------------------------------------


def test_check_api_key_missing(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="OPENAI_API_KEY"):
        _client().check_api_key()


def test_check_api_key_present(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    _client().check_api_key()


def test_check_api_key_local_provider(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    EmbeddingClient(EmbeddingConfig(model="ollama/nomic-embed-text")).check_api_key()
