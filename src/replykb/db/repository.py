"""Repository pattern for all knowledge-store database operations.

Single interface for: documents, chunks, FTS5 search, vectors, similarity index.
Every read that can return chunk text is scoped by tenant id.
"""

from __future__ import annotations

import json
import re
import sqlite3

from replykb.db.models import Chunk, Document
from replykb.db.vectors import (
    TENANT_WIDE_AGENT,
    decode_vector,
    encode_vector,
    model_to_slug,
    vec_table_exists,
    vec_table_name,
)
from replykb.errors import ReferentialViolation

_DOCUMENT_COLUMNS = (
    "id, tenant_id, agent_id, title, content_kind, source_locator, content, "
    "metadata, embedding_model, created_at"
)
_CHUNK_COLUMNS = (
    "c.id, c.document_id, c.tenant_id, c.chunk_index, c.start_offset, c.end_offset, "
    "c.text, c.embedding, c.metadata, c.created_at"
)


class Repository:
    """Data access layer for documents and chunks.

    Wraps an open sqlite3.Connection. Multi-row writes (a document with its
    chunks, a replacement, a deletion) run in a single transaction so a chunk
    can never outlive its document. The connection is owned by the caller and
    must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see replykb.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(self, document: Document, chunks: list[Chunk]) -> list[int]:
        """Insert *document* and its *chunks* atomically. Returns chunk ids.

        Chunks carrying a vector are also added to the similarity index when
        one exists for the document's embedding model.
        """
        try:
            self._insert_document(document, chunks)
            chunk_ids = [self._insert_chunk(c, document) for c in chunks]
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        return chunk_ids

    def replace_document(
        self, tenant_id: int, old_document_id: str, document: Document, chunks: list[Chunk]
    ) -> list[int]:
        """Delete *old_document_id* and insert *document* + *chunks* in one transaction.

        Raises:
            LookupError: If the old document does not exist for *tenant_id*.
        """
        try:
            if not self._delete_document_rows(tenant_id, old_document_id):
                raise LookupError(
                    f"Document '{old_document_id}' not found for tenant {tenant_id}"
                )
            self._insert_document(document, chunks)
            chunk_ids = [self._insert_chunk(c, document) for c in chunks]
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        return chunk_ids

    def get_document(self, tenant_id: int, document_id: str) -> Document | None:
        """Return a document by id within *tenant_id*, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ? AND tenant_id = ?",
            (document_id, tenant_id),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(
        self, tenant_id: int, agent_id: int | None = None, content_kind: str | None = None
    ) -> list[Document]:
        """Return the tenant's documents, newest first.

        Args:
            tenant_id: Owning tenant.
            agent_id: Restrict to documents of this agent (None = all).
            content_kind: Restrict to one content kind (None = all).
        """
        sql = f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE tenant_id = ?"
        params: list = [tenant_id]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        if content_kind is not None:
            sql += " AND content_kind = ?"
            params.append(content_kind)
        sql += " ORDER BY created_at DESC, rowid DESC"
        return [_row_to_document(r) for r in self._conn.execute(sql, params).fetchall()]

    def delete_document(self, tenant_id: int, document_id: str) -> bool:
        """Delete a document with all its chunks, FTS rows and index rows.

        Returns:
            True if a document was deleted, False if it did not exist.
        """
        try:
            deleted = self._delete_document_rows(tenant_id, document_id)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        return deleted

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def list_chunks(self, document_id: str) -> list[Chunk]:
        """Return the chunks of *document_id* in order."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.document_id = ? ORDER BY c.chunk_index",
            (document_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.id = ?", (chunk_id,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def count_chunks_by_document(self, document_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
        ).fetchone()[0]

    def count_chunks(self, tenant_id: int) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE tenant_id = ?", (tenant_id,)
        ).fetchone()[0]

    def count_orphan_chunks(self) -> int:
        """Chunks whose document row is gone. Always 0 unless foreign keys were off."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks c LEFT JOIN documents d ON d.id = c.document_id "
            "WHERE d.id IS NULL"
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    def count_missing_embeddings(self, model: str | None = None) -> int:
        """Chunks without a vector, optionally only those of documents embedded with *model*."""
        if model is None:
            return self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE embedding IS NULL"
            ).fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks c JOIN documents d ON d.id = c.document_id "
            "WHERE c.embedding IS NULL AND d.embedding_model = ?",
            (model,),
        ).fetchone()[0]

    def fetch_missing_embeddings(
        self, limit: int, after_id: int = 0, model: str | None = None
    ) -> list[Chunk]:
        """Return up to *limit* chunks without a vector, by ascending id > *after_id*.

        With *model*, only chunks of documents recorded under that embedding model.
        """
        sql = f"SELECT {_CHUNK_COLUMNS} FROM chunks c JOIN documents d ON d.id = c.document_id "
        sql += "WHERE c.embedding IS NULL AND c.id > ?"
        params: list = [after_id]
        if model is not None:
            sql += " AND d.embedding_model = ?"
            params.append(model)
        rows = self._conn.execute(sql + " ORDER BY c.id LIMIT ?", (*params, limit)).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def embedding_dimensions(self, model: str) -> int | None:
        """Length of the stored vectors for *model*, or None if none are stored yet."""
        row = self._conn.execute(
            "SELECT length(c.embedding) FROM chunks c JOIN documents d ON d.id = c.document_id "
            "WHERE c.embedding IS NOT NULL AND d.embedding_model = ? LIMIT 1",
            (model,),
        ).fetchone()
        return row[0] // 4 if row else None

    def set_embeddings(self, vectors: list[tuple[int, list[float]]]) -> int:
        """Write vectors by chunk id. Only chunks still lacking a vector are touched.

        Returns:
            Number of chunks updated.
        """
        updated = 0
        try:
            for chunk_id, vector in vectors:
                cur = self._conn.execute(
                    "UPDATE chunks SET embedding = ? WHERE id = ? AND embedding IS NULL",
                    (encode_vector(vector), chunk_id),
                )
                if cur.rowcount:
                    updated += cur.rowcount
                    self._index_chunk(chunk_id, vector)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        return updated

    def search_similar(
        self,
        tenant_id: int,
        embedding: list[float],
        model: str,
        limit: int = 5,
        agent_id: int | None = None,
    ) -> list[tuple[Chunk, str, float]]:
        """Cosine nearest-neighbour search within one tenant (and agent).

        Uses the vec0 index for *model* when it exists, otherwise an exact
        scan with vec_distance_cosine().

        Returns:
            (chunk, document_title, distance) tuples sorted by ascending distance.
        """
        table = vec_table_name(model_to_slug(model))
        if vec_table_exists(self._conn, table):
            results = self._search_index(table, tenant_id, embedding, limit, agent_id)
        else:
            results = self._search_exact(tenant_id, embedding, model, limit, agent_id)

        for chunk, _, _ in results:
            if chunk.tenant_id != tenant_id:
                raise ReferentialViolation(
                    f"Chunk {chunk.id} of tenant {chunk.tenant_id} surfaced in a "
                    f"search scoped to tenant {tenant_id}"
                )
        return results

    def _search_exact(
        self,
        tenant_id: int,
        embedding: list[float],
        model: str,
        limit: int,
        agent_id: int | None,
    ) -> list[tuple[Chunk, str, float]]:
        sql = (
            f"SELECT {_CHUNK_COLUMNS}, d.title AS title, "
            "vec_distance_cosine(c.embedding, ?) AS distance "
            "FROM chunks c JOIN documents d ON d.id = c.document_id "
            "WHERE c.tenant_id = ? AND d.tenant_id = ? AND c.embedding IS NOT NULL "
            "AND d.embedding_model = ?"
        )
        params: list = [encode_vector(embedding), tenant_id, tenant_id, model]
        if agent_id is not None:
            sql += " AND d.agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY distance, c.id LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [(_row_to_chunk(r), r["title"], r["distance"]) for r in rows]

    def _search_index(
        self,
        table: str,
        tenant_id: int,
        embedding: list[float],
        limit: int,
        agent_id: int | None,
    ) -> list[tuple[Chunk, str, float]]:
        sql = f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? AND k = ? AND tenant_id = ?"
        params: list = [encode_vector(embedding), limit, tenant_id]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY distance"
        hits = self._conn.execute(sql, params).fetchall()

        results: list[tuple[Chunk, str, float]] = []
        for hit in hits:
            row = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS}, d.title AS title FROM chunks c "
                "JOIN documents d ON d.id = c.document_id WHERE c.id = ?",
                (hit["rowid"],),
            ).fetchone()
            if row is not None:
                results.append((_row_to_chunk(row), row["title"], hit["distance"]))
        return results

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def search_keyword(
        self, tenant_id: int, query: str, limit: int = 5, agent_id: int | None = None
    ) -> list[tuple[Chunk, str, float]]:
        """BM25 full-text search within one tenant. Returns (chunk, title, score) best-first.

        bm25() returns negative values; lower (more negative) = better match.
        """
        # FTS5 MATCH rejects punctuation like commas as syntax errors.
        terms = re.sub(r"[^\w\s]", " ", query).split()
        if not terms:
            return []
        fts_query = " OR ".join(f'"{t}"' for t in terms)
        sql = (
            f"SELECT {_CHUNK_COLUMNS}, d.title AS title, bm25(chunks_fts) AS score "
            "FROM chunks_fts JOIN chunks c ON c.id = chunks_fts.rowid "
            "JOIN documents d ON d.id = c.document_id "
            "WHERE chunks_fts MATCH ? AND c.tenant_id = ?"
        )
        params: list = [fts_query, tenant_id]
        if agent_id is not None:
            sql += " AND d.agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [(_row_to_chunk(r), r["title"], r["score"]) for r in rows]

    # ------------------------------------------------------------------
    # Internal write helpers (no commit)
    # ------------------------------------------------------------------

    def _insert_document(self, document: Document, chunks: list[Chunk]) -> None:
        for chunk in chunks:
            if chunk.document_id != document.id or chunk.tenant_id != document.tenant_id:
                raise ReferentialViolation(
                    f"Chunk {chunk.chunk_index} is linked to document "
                    f"'{chunk.document_id}' / tenant {chunk.tenant_id}, expected "
                    f"'{document.id}' / tenant {document.tenant_id}"
                )
        self._conn.execute(
            """
            INSERT INTO documents (id, tenant_id, agent_id, title, content_kind,
                                   source_locator, content, metadata, embedding_model)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document.id,
                document.tenant_id,
                document.agent_id,
                document.title,
                document.content_kind,
                document.source_locator,
                document.content,
                document.metadata,
                document.embedding_model,
            ),
        )

    def _insert_chunk(self, chunk: Chunk, document: Document) -> int:
        cur = self._conn.execute(
            """
            INSERT INTO chunks (document_id, tenant_id, chunk_index, start_offset,
                                end_offset, text, embedding, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.document_id,
                chunk.tenant_id,
                chunk.chunk_index,
                chunk.start_offset,
                chunk.end_offset,
                chunk.text,
                encode_vector(chunk.embedding) if chunk.embedding is not None else None,
                chunk.metadata,
            ),
        )
        chunk_id = cur.lastrowid
        chunk.id = chunk_id
        # Keep FTS5 in sync with explicit rowid mapping
        self._conn.execute(
            "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", (chunk_id, chunk.text)
        )
        if chunk.embedding is not None:
            self._index_chunk(chunk_id, chunk.embedding, document)
        return chunk_id

    def _index_chunk(
        self, chunk_id: int, vector: list[float], document: Document | None = None
    ) -> None:
        """Add one vector to its model's similarity index, if that index exists."""
        if document is None:
            row = self._conn.execute(
                "SELECT d.tenant_id, d.agent_id, d.embedding_model FROM chunks c "
                "JOIN documents d ON d.id = c.document_id WHERE c.id = ?",
                (chunk_id,),
            ).fetchone()
            tenant_id, agent_id, model = row["tenant_id"], row["agent_id"], row["embedding_model"]
        else:
            tenant_id, agent_id, model = document.tenant_id, document.agent_id, document.embedding_model
        if not model:
            return
        table = vec_table_name(model_to_slug(model))
        if not vec_table_exists(self._conn, table):
            return
        self._conn.execute(
            f"INSERT INTO {table}(rowid, tenant_id, agent_id, embedding) VALUES (?, ?, ?, ?)",
            (
                chunk_id,
                tenant_id,
                agent_id if agent_id is not None else TENANT_WIDE_AGENT,
                encode_vector(vector),
            ),
        )

    def _delete_document_rows(self, tenant_id: int, document_id: str) -> bool:
        exists = self._conn.execute(
            "SELECT 1 FROM documents WHERE id = ? AND tenant_id = ?", (document_id, tenant_id)
        ).fetchone()
        if exists is None:
            return False

        chunk_ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchall()
        ]
        if chunk_ids:
            placeholders = ",".join("?" * len(chunk_ids))
            # FTS and vec0 tables have no foreign keys; clear them explicitly.
            self._conn.execute(
                f"DELETE FROM chunks_fts WHERE rowid IN ({placeholders})", chunk_ids
            )
            for table in self._vec_tables():
                self._conn.execute(
                    f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                    chunk_ids,
                )
        # chunks rows go with the document (ON DELETE CASCADE)
        self._conn.execute(
            "DELETE FROM documents WHERE id = ? AND tenant_id = ?", (document_id, tenant_id)
        )
        return True

    def _vec_tables(self) -> list[str]:
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'vec_chunks_%' "
                "AND sql LIKE 'CREATE VIRTUAL TABLE%'"
            ).fetchall()
        ]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        tenant_id=row["tenant_id"],
        agent_id=row["agent_id"],
        title=row["title"],
        content_kind=row["content_kind"],
        source_locator=row["source_locator"],
        content=row["content"],
        metadata=row["metadata"],
        embedding_model=row["embedding_model"],
        created_at=row["created_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        tenant_id=row["tenant_id"],
        chunk_index=row["chunk_index"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        text=row["text"],
        embedding=decode_vector(row["embedding"]),
        metadata=row["metadata"],
        created_at=row["created_at"],
    )


def metadata_to_json(metadata: dict | None) -> str:
    """Serialise free-form metadata for the ``metadata`` TEXT columns."""
    return json.dumps(metadata or {}, sort_keys=True, default=str)
