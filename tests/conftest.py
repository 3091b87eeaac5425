"""Shared pytest fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from replykb.crawl.web import FetchedPage
from replykb.db.connection import Database
from replykb.db.repository import Repository
from replykb.db.schema import initialize
from replykb.errors import FetchError
from replykb.ingest.embedding_client import EmbeddingClient, EmbeddingConfig
from replykb.ingest.splitter import ChunkSplitter
from replykb.ingest.store import KnowledgeStore

MODEL = "openai/text-embedding-3-small"

# Topic words mapped onto the first three axes of a 4-d test vector.
_TOPICS = ("refund", "shipping", "password")


def topic_vector(text: str) -> list[float]:
    """Deterministic 4-d vector: one axis per topic word, plus a constant axis."""
    lowered = text.lower()
    return [1.0 if word in lowered else 0.0 for word in _TOPICS] + [0.1]


def fake_embedding(model=None, input=(), **kwargs):
    """Stand-in for litellm.embedding() returning topic vectors."""
    response = MagicMock()
    response.data = [{"embedding": topic_vector(t), "index": i} for i, t in enumerate(input)]
    return response


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "replykb.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def mock_embedding():
    """Patch litellm.embedding with topic vectors for the whole test."""
    with patch(
        "replykb.ingest.embedding_client.litellm.embedding", side_effect=fake_embedding
    ) as mocked:
        yield mocked


@pytest.fixture
def embedder():
    """Embedding client with 4-d vectors, no cool-down and a single-failure cap."""
    config = EmbeddingConfig(
        model=MODEL,
        dimensions=4,
        batch_size=100,
        rate_limit_cooldown=0.0,
        max_rate_limit_retries=2,
        max_consecutive_failures=1,
    )
    return EmbeddingClient(config, sleep=lambda _: None)


@pytest.fixture
def store(repo, embedder):
    return KnowledgeStore(repo, embedder, ChunkSplitter(chunk_size=200, overlap=0.15))


class FakeSite:
    """In-memory fetcher: normalised URL -> HTML body, with optional redirects."""

    def __init__(self, pages: dict[str, str], redirects: dict[str, str] | None = None) -> None:
        self.pages = pages
        self.redirects = redirects or {}
        self.fetched: list[str] = []

    def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        final = self.redirects.get(url, url)
        if final not in self.pages:
            raise FetchError(f"HTTP Error 404: Not Found ({url})")
        return FetchedPage(url=final, body=self.pages[final], content_type="text/html")

    @staticmethod
    def page(title: str, text: str, links: tuple[str, ...] = ()) -> str:
        anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
        return (
            f"<html><head><title>{title}</title></head>"
            f"<body><nav>{anchors}</nav><main><p>{text}</p></main></body></html>"
        )


@pytest.fixture
def fake_site():
    return FakeSite


@pytest.fixture
def cli_env(tmp_path, monkeypatch, mock_embedding):
    """Isolated CLI environment: empty config, fake API key, patched embeddings.

    Returns the --db path to pass to commands.
    """
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("replykb.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    for var in ("REPLYKB_EMBEDDING_MODEL", "REPLYKB_DB_PATH", "REPLYKB_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    return tmp_path / "kb.db"
