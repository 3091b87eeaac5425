"""Vector encoding and per-model sqlite-vec similarity index management.

Chunk vectors live in ``chunks.embedding`` as float32 blobs (NULL until
embedded). The similarity index is a ``vec0`` virtual table per embedding
model, partitioned by tenant, with the chunk id as rowid. It is rebuilt in
bulk by build_vector_index() and kept in sync by the repository afterwards.
"""

from __future__ import annotations

import re
import sqlite3
import struct

from sqlite_vec import serialize_float32

# vec0 metadata columns cannot hold NULL; tenant-wide documents use 0.
TENANT_WIDE_AGENT = 0


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_name(model_slug: str) -> str:
    """Return the full vec index table name for a model slug."""
    if not re.fullmatch(r"[a-z0-9_]+", model_slug):
        raise ValueError(
            f"Invalid model_slug '{model_slug}' — use model_to_slug() to sanitize."
        )
    return f"vec_chunks_{model_slug}"


def encode_vector(vector: list[float]) -> bytes:
    """Pack *vector* as the little-endian float32 blob sqlite-vec expects."""
    return serialize_float32(vector)


def decode_vector(blob: bytes | None) -> list[float] | None:
    """Inverse of encode_vector(); None stays None."""
    if blob is None:
        return None
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))


def vec_table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def build_vector_index(conn: sqlite3.Connection, model: str, dimensions: int) -> int:
    """(Re)build the similarity index for *model* from all embedded chunks.

    Drops any existing index table, recreates it and bulk-loads every chunk
    whose vector is populated. Runs in one transaction.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        model: Embedding model string (table name derived via model_to_slug()).
        dimensions: Embedding vector dimensions (e.g. 1536).

    Returns:
        Number of vectors indexed.
    """
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    table = vec_table_name(model_to_slug(model))
    try:
        conn.execute(f"DROP TABLE IF EXISTS {table}")
        conn.execute(
            f"""
            CREATE VIRTUAL TABLE {table} USING vec0(
                tenant_id integer partition key,
                agent_id integer,
                embedding float[{dimensions}] distance_metric=cosine
            )
            """
        )
        conn.execute(
            f"""
            INSERT INTO {table}(rowid, tenant_id, agent_id, embedding)
            SELECT c.id, c.tenant_id, COALESCE(d.agent_id, ?), c.embedding
            FROM chunks c JOIN documents d ON d.id = c.document_id
            WHERE c.embedding IS NOT NULL AND d.embedding_model = ?
            """,
            (TENANT_WIDE_AGENT, model),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
