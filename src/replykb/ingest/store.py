"""Knowledge store write path: validate → split → embed → persist atomically.

What is stored:
- One ``documents`` row holding the full text and metadata.
- One ``chunks`` row per splitter window, with its vector when embedding
  succeeded. If embedding fails the chunks are stored without vectors
  (excluded from similarity search until the backfill fills them in).
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from replykb.db.models import CONTENT_KINDS, Chunk, Document
from replykb.db.repository import Repository, metadata_to_json
from replykb.errors import ItemFailure, ProviderFailure, ValidationError
from replykb.ingest.embedding_client import EmbeddingClient
from replykb.ingest.splitter import ChunkSplitter

logger = logging.getLogger(__name__)


@dataclass
class DocumentInput:
    """Everything an ingestion entry point hands to ``store_document``."""

    tenant_id: int
    text: str
    title: str = ""
    content_kind: str = "text"
    agent_id: int | None = None
    source_locator: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoreResult:
    """Outcome of one write.

    ``embedded`` is False for a degraded success: the content is stored but
    its chunks have no vectors yet; ``error`` carries the provider message.
    """

    document_id: str
    chunks_stored: int
    embedded: bool = True
    error: str | None = None


@dataclass
class IngestReport:
    """Partial-success summary of a multi-item run (crawl, retrain, batch ingest)."""

    items_succeeded: int = 0
    chunks_stored: int = 0
    failures: list[ItemFailure] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)
    unembedded: int = 0  # items stored without vectors

    def add(self, result: StoreResult) -> None:
        self.items_succeeded += 1
        self.chunks_stored += result.chunks_stored
        self.document_ids.append(result.document_id)
        if not result.embedded:
            self.unembedded += 1

    def fail(self, item: str, exc: BaseException | str) -> None:
        if isinstance(exc, BaseException):
            self.failures.append(ItemFailure.from_exc(item, exc))
        else:
            self.failures.append(ItemFailure(item=item, error=exc))


def validate_scope(tenant_id: int, agent_id: int | None = None) -> None:
    """Raise ValidationError unless the tenant (and optional agent) ids are usable."""
    if isinstance(tenant_id, bool) or not isinstance(tenant_id, int) or tenant_id < 1:
        raise ValidationError(f"tenant_id must be a positive integer, got {tenant_id!r}")
    if agent_id is not None and (
        isinstance(agent_id, bool) or not isinstance(agent_id, int) or agent_id < 1
    ):
        raise ValidationError(f"agent_id must be a positive integer or None, got {agent_id!r}")


def validate_input(doc: DocumentInput) -> None:
    """Raise ValidationError for anything that must be rejected before a write."""
    validate_scope(doc.tenant_id, doc.agent_id)
    if not isinstance(doc.text, str) or not doc.text.strip():
        raise ValidationError("text must be a non-empty string")
    if doc.content_kind not in CONTENT_KINDS:
        raise ValidationError(
            f"Unknown content_kind '{doc.content_kind}'. "
            f"Expected one of: {', '.join(sorted(CONTENT_KINDS))}"
        )


class KnowledgeStore:
    """Tenant-scoped document storage on top of Repository.

    Args:
        repo:     Open Repository instance.
        embedder: Embedding client (its model name is recorded per document).
        splitter: Chunk splitter (defaults to 1000 chars / 15 % overlap).
    """

    def __init__(
        self,
        repo: Repository,
        embedder: EmbeddingClient,
        splitter: ChunkSplitter | None = None,
    ) -> None:
        self.repo = repo
        self.embedder = embedder
        self.splitter = splitter or ChunkSplitter()

    def store_document(self, doc: DocumentInput) -> StoreResult:
        """Persist *doc* and its chunks; the result carries the chunk count.

        Raises:
            ValidationError: Missing/invalid tenant, blank text, unknown kind.
        """
        validate_input(doc)
        document, chunks, error = self._prepare(doc)
        self.repo.add_document(document, chunks)
        logger.info(
            "Stored document %s (tenant %s, %s): %d chunks%s",
            document.id,
            document.tenant_id,
            document.content_kind,
            len(chunks),
            "" if error is None else " without vectors",
        )
        return StoreResult(
            document_id=document.id,
            chunks_stored=len(chunks),
            embedded=error is None,
            error=error,
        )

    def replace_document(self, tenant_id: int, document_id: str, doc: DocumentInput) -> StoreResult:
        """Delete-and-recreate *document_id* with new content in one transaction.

        Raises:
            ValidationError: Invalid input, or *doc* belongs to another tenant.
            LookupError: *document_id* does not exist for *tenant_id*.
        """
        validate_input(doc)
        if doc.tenant_id != tenant_id:
            raise ValidationError("Replacement document must belong to the same tenant")
        document, chunks, error = self._prepare(doc)
        self.repo.replace_document(tenant_id, document_id, document, chunks)
        logger.info("Replaced document %s with %s (%d chunks)", document_id, document.id, len(chunks))
        return StoreResult(
            document_id=document.id,
            chunks_stored=len(chunks),
            embedded=error is None,
            error=error,
        )

    def delete_document(self, tenant_id: int, document_id: str) -> bool:
        """Delete a document and all of its chunks. False if it did not exist."""
        return self.repo.delete_document(tenant_id, document_id)

    def list_documents(self, tenant_id: int, agent_id: int | None = None) -> list[Document]:
        return self.repo.list_documents(tenant_id, agent_id=agent_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare(self, doc: DocumentInput) -> tuple[Document, list[Chunk], str | None]:
        """Build the Document and Chunk rows; embedding failure is reported, not raised."""
        document_id = str(uuid.uuid4())
        spans = self.splitter.split_spans(doc.text)

        vectors: list[list[float]] | None = None
        error: str | None = None
        if spans:
            try:
                vectors = self.embedder.embed([s.text for s in spans])
            except ProviderFailure as exc:
                error = str(exc)
                logger.warning(
                    "Embedding failed for '%s' (tenant %s); storing %d chunks without vectors: %s",
                    doc.title,
                    doc.tenant_id,
                    len(spans),
                    exc,
                )

        metadata = dict(doc.metadata)
        metadata.setdefault("ingested_at", datetime.now(timezone.utc).isoformat())
        metadata.setdefault("word_count", len(doc.text.split()))

        document = Document(
            id=document_id,
            tenant_id=doc.tenant_id,
            agent_id=doc.agent_id,
            title=doc.title,
            content_kind=doc.content_kind,
            source_locator=doc.source_locator,
            content=doc.text,
            metadata=metadata_to_json(metadata),
            embedding_model=self.embedder.model,
        )
        chunks = [
            Chunk(
                document_id=document_id,
                tenant_id=doc.tenant_id,
                chunk_index=i,
                text=span.text,
                start_offset=span.start,
                end_offset=span.end,
                embedding=vectors[i] if vectors is not None else None,
                metadata=json.dumps({"position": i, "total": len(spans)}),
            )
            for i, span in enumerate(spans)
        ]
        return document, chunks, error
