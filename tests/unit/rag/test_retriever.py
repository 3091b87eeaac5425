"""Tests for retrieve_context() and friends."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from replykb.db.vectors import build_vector_index
from replykb.errors import RetrievalError, ValidationError
from replykb.ingest.store import DocumentInput
from replykb.rag.retriever import (
    RetrieverConfig,
    Snippet,
    format_context,
    retrieve_context,
    retrieve_or_empty,
)

_TARGET = "replykb.ingest.embedding_client.litellm.embedding"


@pytest.fixture
def kb(store, mock_embedding):
    """Tenant 1 has a refund page and a shipping page; tenant 2 has its own refund page."""
    store.store_document(
        DocumentInput(tenant_id=1, title="Refund Policy", text="Refunds are issued within 30 days.")
    )
    store.store_document(
        DocumentInput(tenant_id=1, title="Shipping", text="Shipping takes five business days.")
    )
    store.store_document(
        DocumentInput(tenant_id=1, agent_id=7, title="Agent Passwords", text="Password resets for agent 7.")
    )
    store.store_document(
        DocumentInput(tenant_id=2, title="Other Refunds", text="Refunds for tenant two only.")
    )
    return store


def _retrieve(kb, query, tenant_id=1, **kwargs):
    return retrieve_context(kb.repo, kb.embedder, tenant_id, query, **kwargs)


# ------------------------------------------------------------------
# Dense retrieval
# ------------------------------------------------------------------


def test_refund_question_finds_refund_policy(kb):
    snippets = _retrieve(kb, "What is your refund policy?", top_k=2)

    assert snippets[0].document_title == "Refund Policy"
    assert "30 days" in snippets[0].text
    assert snippets[0].score == pytest.approx(0.0, abs=1e-5)
    assert snippets[0].score <= snippets[1].score


def test_results_never_cross_tenants(kb):
    for tenant_id in (1, 2):
        snippets = _retrieve(kb, "refund", tenant_id=tenant_id, top_k=10)
        ids = {d.id for d in kb.repo.list_documents(tenant_id)}
        assert snippets
        assert {s.document_id for s in snippets} <= ids


def test_top_k_limits_results(kb):
    assert len(_retrieve(kb, "refund", top_k=1)) == 1
    assert len(_retrieve(kb, "refund", top_k=10)) == 3


def test_max_distance_keeps_only_relevant_document(kb):
    snippets = _retrieve(kb, "refund policy", top_k=5, config=RetrieverConfig(max_distance=0.5))

    assert [s.document_title for s in snippets] == ["Refund Policy"]
    assert len(snippets) <= 5


def test_agent_scope_is_exact(kb):
    snippets = _retrieve(kb, "password reset", agent_id=7, top_k=10)
    assert [s.document_title for s in snippets] == ["Agent Passwords"]


def test_empty_knowledge_base_returns_empty_list(store, mock_embedding):
    assert retrieve_context(store.repo, store.embedder, 1, "refund policy") == []


def test_dense_search_through_index(kb):
    build_vector_index(kb.repo.conn, kb.embedder.model, dimensions=4)

    snippets = _retrieve(kb, "refund policy?", top_k=1)

    assert [s.document_title for s in snippets] == ["Refund Policy"]


def test_default_top_k_from_config(kb):
    snippets = _retrieve(kb, "refund", config=RetrieverConfig(top_k=2))
    assert len(snippets) == 2


# ------------------------------------------------------------------
# Keyword and hybrid
# ------------------------------------------------------------------


def test_keyword_mode_skips_embedding(kb, mock_embedding):
    mock_embedding.reset_mock()

    snippets = _retrieve(kb, "shipping", config=RetrieverConfig(mode="keyword"))

    mock_embedding.assert_not_called()
    assert [s.document_title for s in snippets] == ["Shipping"]


def test_hybrid_mode_fuses_rankings(kb):
    snippets = _retrieve(kb, "refund", top_k=3, config=RetrieverConfig(mode="hybrid"))

    assert snippets[0].document_title == "Refund Policy"
    assert snippets[0].score > snippets[-1].score


# ------------------------------------------------------------------
# Validation and failure
# ------------------------------------------------------------------


@pytest.mark.parametrize("query", ["", "   ", "\n"])
def test_blank_query_rejected(kb, query):
    with pytest.raises(ValidationError):
        _retrieve(kb, query)


@pytest.mark.parametrize("tenant_id", [0, -1, None, True])
def test_invalid_tenant_rejected(kb, tenant_id):
    with pytest.raises(ValidationError):
        _retrieve(kb, "refund", tenant_id=tenant_id)


def test_invalid_top_k_rejected(kb):
    with pytest.raises(ValidationError):
        _retrieve(kb, "refund", top_k=0)


def test_embedding_failure_raises_retrieval_error(kb):
    with patch(_TARGET, side_effect=RuntimeError("provider down")):
        with pytest.raises(RetrievalError, match="provider down"):
            _retrieve(kb, "refund")


def test_retrieve_or_empty_degrades(kb):
    with patch(_TARGET, side_effect=RuntimeError("provider down")):
        assert retrieve_or_empty(kb.repo, kb.embedder, 1, "refund") == []


def test_retrieve_or_empty_still_validates(kb):
    with pytest.raises(ValidationError):
        retrieve_or_empty(kb.repo, kb.embedder, 1, " ")


# ------------------------------------------------------------------
# format_context
# ------------------------------------------------------------------


def test_format_context_numbers_and_attributes():
    snippets = [
        Snippet(text=" Refunds within 30 days. ", document_title="Refund Policy", document_id="a", score=0.1),
        Snippet(text="Ships in 5 days.", document_title="", document_id="b", score=0.4),
    ]

    assert format_context(snippets) == (
        "[1] (Source: Refund Policy)\nRefunds within 30 days.\n\n"
        "[2] (Source: Untitled)\nShips in 5 days."
    )


def test_format_context_empty():
    assert format_context([]) == ""
