"""Tests for vector encoding and the per-model similarity index."""

from __future__ import annotations

import pytest

from replykb.db.models import Chunk, Document
from replykb.db.vectors import (
    build_vector_index,
    decode_vector,
    encode_vector,
    model_to_slug,
    vec_table_exists,
    vec_table_name,
)

MODEL = "openai/text-embedding-3-small"
TABLE = "vec_chunks_openai_text_embedding_3_small"


@pytest.mark.parametrize("model,expected", [
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("cohere/embed-english-v3.0", "cohere_embed_english_v3_0"),
    ("local/all-MiniLM-L6-v2", "local_all_minilm_l6_v2"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_vec_table_name():
    assert vec_table_name(model_to_slug(MODEL)) == TABLE


def test_vec_table_name_rejects_unsanitised_slug():
    with pytest.raises(ValueError, match="model_to_slug"):
        vec_table_name("openai/model; DROP TABLE chunks")


def test_encode_decode_vector():
    blob = encode_vector([0.5, -1.0, 0.25, 0.0])
    assert len(blob) == 16
    assert decode_vector(blob) == [0.5, -1.0, 0.25, 0.0]
    assert decode_vector(None) is None


# --- build_vector_index ---

def _seed(repo, tenant_id, doc_id, vectors, agent_id=None):
    doc = Document(
        id=doc_id,
        tenant_id=tenant_id,
        agent_id=agent_id,
        title=doc_id,
        content_kind="text",
        content="x",
        embedding_model=MODEL,
    )
    chunks = [
        Chunk(document_id=doc_id, tenant_id=tenant_id, chunk_index=i, text=f"chunk {i}", embedding=v)
        for i, v in enumerate(vectors)
    ]
    repo.add_document(doc, chunks)


def test_build_vector_index_loads_embedded_chunks(tmp_db, repo):
    _seed(repo, 1, "d1", [[1.0, 0.0, 0.0, 0.1], None])
    _seed(repo, 2, "d2", [[0.0, 1.0, 0.0, 0.1]])

    indexed = build_vector_index(tmp_db, MODEL, dimensions=4)

    assert indexed == 2
    assert vec_table_exists(tmp_db, TABLE)


def test_build_vector_index_rebuilds_from_scratch(tmp_db, repo):
    _seed(repo, 1, "d1", [[1.0, 0.0, 0.0, 0.1]])
    build_vector_index(tmp_db, MODEL, dimensions=4)
    _seed(repo, 1, "d2", [[0.0, 1.0, 0.0, 0.1]])  # indexed on insert

    assert tmp_db.execute(f"SELECT COUNT(*) FROM {TABLE}").fetchone()[0] == 2
    assert build_vector_index(tmp_db, MODEL, dimensions=4) == 2


def test_build_vector_index_rejects_zero_dimensions(tmp_db):
    with pytest.raises(ValueError, match="dimensions"):
        build_vector_index(tmp_db, MODEL, dimensions=0)
