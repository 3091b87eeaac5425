"""Tenant-scoped retriever: dense (cosine), keyword (FTS5) or hybrid via RRF.

Dense is the default: the query is embedded with the same model used at
ingest and the nearest chunks of the tenant (optionally one agent) are
returned by ascending cosine distance, each paired with its document title.

Reciprocal Rank Fusion (hybrid mode):
  score(d) = 1 / (k + rank_dense) + 1 / (k + rank_bm25)   k = 60
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from replykb.db.models import Chunk
from replykb.db.repository import Repository
from replykb.errors import ProviderFailure, RetrievalError, ValidationError
from replykb.ingest.embedding_client import EmbeddingClient

logger = logging.getLogger(__name__)

_RRF_K = 60


@dataclass
class RetrieverConfig:
    """Configuration for the retriever.

    Attributes:
        mode: Retrieval mode — 'dense' (default), 'keyword', or 'hybrid'.
        top_k: Maximum number of snippets to return.
        rrf_k: Reciprocal Rank Fusion constant (hybrid mode only).
        max_distance: Cosine distance cutoff for dense hits; None keeps
            every nearest neighbour.
    """

    mode: str = "dense"  # dense | keyword | hybrid
    top_k: int = 5
    rrf_k: int = _RRF_K
    max_distance: float | None = None


@dataclass
class Snippet:
    """A retrieved chunk attributed to its source document.

    Attributes:
        text: Chunk text.
        document_title: Title of the document the chunk came from.
        document_id: Id of that document.
        score: Cosine distance (dense, lower is better), bm25 score (keyword),
            or RRF score (hybrid, higher is better).
    """

    text: str
    document_title: str
    document_id: str
    score: float


def retrieve_context(
    repo: Repository,
    embedder: EmbeddingClient,
    tenant_id: int,
    query: str,
    agent_id: int | None = None,
    top_k: int | None = None,
    config: RetrieverConfig | None = None,
) -> list[Snippet]:
    """Return up to *top_k* snippets for *query* from the tenant's knowledge base.

    Raises:
        ValidationError: Invalid tenant id, blank query, or top_k < 1.
        RetrievalError: The query could not be embedded.
    """
    config = config or RetrieverConfig()
    limit = top_k if top_k is not None else config.top_k
    _validate(tenant_id, query, limit)

    if config.mode == "keyword":
        rows = repo.search_keyword(tenant_id, query, limit=limit, agent_id=agent_id)
        return [_to_snippet(chunk, title, score) for chunk, title, score in rows]

    query_embedding = _embed_query(embedder, query)
    dense = repo.search_similar(
        tenant_id, query_embedding, embedder.model, limit=limit, agent_id=agent_id
    )
    if config.max_distance is not None:
        dense = [row for row in dense if row[2] <= config.max_distance]

    if config.mode == "dense":
        return [_to_snippet(chunk, title, distance) for chunk, title, distance in dense]

    keyword = repo.search_keyword(tenant_id, query, limit=limit, agent_id=agent_id)
    return _rrf_fuse(dense, keyword, top_k=limit, k=config.rrf_k)


def retrieve_or_empty(
    repo: Repository,
    embedder: EmbeddingClient,
    tenant_id: int,
    query: str,
    agent_id: int | None = None,
    top_k: int | None = None,
    config: RetrieverConfig | None = None,
) -> list[Snippet]:
    """Like retrieve_context(), but a retrieval failure yields [] so a chat turn can go on."""
    try:
        return retrieve_context(repo, embedder, tenant_id, query, agent_id, top_k, config)
    except RetrievalError as exc:
        logger.warning("Retrieval failed for tenant %s, answering without context: %s", tenant_id, exc)
        return []


def format_context(snippets: list[Snippet]) -> str:
    """Render snippets as the numbered, source-attributed grounding block.

    Returns "" when there is nothing to ground on.
    """
    if not snippets:
        return ""
    parts = [
        f"[{i}] (Source: {s.document_title or 'Untitled'})\n{s.text.strip()}"
        for i, s in enumerate(snippets, start=1)
    ]
    return "\n\n".join(parts)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _validate(tenant_id: int, query: str, top_k: int) -> None:
    if isinstance(tenant_id, bool) or not isinstance(tenant_id, int) or tenant_id < 1:
        raise ValidationError(f"tenant_id must be a positive integer, got {tenant_id!r}")
    if not query or not query.strip():
        raise ValidationError("query must be a non-empty string")
    if top_k < 1:
        raise ValidationError(f"top_k must be >= 1, got {top_k}")


def _embed_query(embedder: EmbeddingClient, query: str) -> list[float]:
    try:
        return embedder.embed_one(query)
    except ProviderFailure as exc:
        raise RetrievalError(f"Could not embed query: {exc}") from exc


def _to_snippet(chunk: Chunk, title: str, score: float) -> Snippet:
    return Snippet(text=chunk.text, document_title=title, document_id=chunk.document_id, score=score)


# ------------------------------------------------------------------
# RRF fusion
# ------------------------------------------------------------------


def _rrf_fuse(
    dense_results: list[tuple[Chunk, str, float]],
    keyword_results: list[tuple[Chunk, str, float]],
    top_k: int,
    k: int = _RRF_K,
) -> list[Snippet]:
    """Combine dense and BM25 ranked lists via Reciprocal Rank Fusion."""
    dense_rank = {chunk.id: i + 1 for i, (chunk, _, _) in enumerate(dense_results)}
    keyword_rank = {chunk.id: i + 1 for i, (chunk, _, _) in enumerate(keyword_results)}

    entries: dict[int, tuple[Chunk, str]] = {}
    for chunk, title, _ in dense_results + keyword_results:
        entries.setdefault(chunk.id, (chunk, title))

    n_dense = len(dense_results)
    n_keyword = len(keyword_results)
    scored: list[Snippet] = []
    for chunk_id, (chunk, title) in entries.items():
        dr = dense_rank.get(chunk_id, n_dense + k)
        kr = keyword_rank.get(chunk_id, n_keyword + k)
        score = 1.0 / (k + dr) + 1.0 / (k + kr)
        scored.append(_to_snippet(chunk, title, score))

    scored.sort(key=lambda s: s.score, reverse=True)
    return scored[:top_k]
