"""Retraining: refresh stored documents in place.

Website documents are re-scraped from their URL; everything else is
re-chunked and re-embedded from its stored text. Each document is replaced
atomically (delete-and-recreate), so search never sees a half-refreshed
document. Documents are processed one at a time with a short pause between
them to stay under provider rate limits.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from replykb.crawl.crawler import WebsiteCrawler
from replykb.crawl.task import page_to_input
from replykb.db.models import KIND_WEBSITE, Document
from replykb.errors import ProviderFailure, ValidationError
from replykb.ingest.store import DocumentInput, IngestReport, KnowledgeStore, validate_scope

logger = logging.getLogger(__name__)

_IN_PROGRESS = "retrain already in progress"

_locks_guard = threading.Lock()
_active: set[tuple[int, str]] = set()


@contextmanager
def _document_lock(tenant_id: int, document_id: str) -> Iterator[bool]:
    """Non-blocking per-(tenant, document) lock. Yields False if already held."""
    key = (tenant_id, document_id)
    with _locks_guard:
        if key in _active:
            acquired = False
        else:
            _active.add(key)
            acquired = True
    try:
        yield acquired
    finally:
        if acquired:
            with _locks_guard:
                _active.discard(key)


class Retrainer:
    """Re-ingest existing documents one by one.

    Args:
        store:   Knowledge store holding the documents.
        crawler: Crawler used to re-scrape website documents.
        delay:   Seconds to wait between documents.
        sleep:   Sleep function (injectable for tests).
    """

    def __init__(
        self,
        store: KnowledgeStore,
        crawler: WebsiteCrawler | None = None,
        delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.crawler = crawler or WebsiteCrawler()
        self.delay = delay
        self._sleep = sleep

    def retrain(self, tenant_id: int, document_ids: list[str]) -> IngestReport:
        """Refresh each of *document_ids*; failures are recorded per document.

        Raises:
            ValidationError: Invalid tenant id or an empty id list.
        """
        validate_scope(tenant_id)
        if not document_ids:
            raise ValidationError("document_ids must not be empty")

        report = IngestReport()
        for i, document_id in enumerate(document_ids):
            if i > 0 and self.delay > 0:
                self._sleep(self.delay)
            with _document_lock(tenant_id, document_id) as acquired:
                if not acquired:
                    logger.warning("Skipping %s: %s", document_id, _IN_PROGRESS)
                    report.fail(document_id, _IN_PROGRESS)
                    continue
                self._retrain_one(tenant_id, document_id, report)

        logger.info(
            "Retrain for tenant %s: %d/%d documents refreshed, %d chunks",
            tenant_id,
            report.items_succeeded,
            len(document_ids),
            report.chunks_stored,
        )
        return report

    def _retrain_one(self, tenant_id: int, document_id: str, report: IngestReport) -> None:
        document = self.store.repo.get_document(tenant_id, document_id)
        if document is None:
            report.fail(document_id, "document not found")
            return
        try:
            doc = self._refreshed_input(document)
            if doc is None:
                report.fail(document_id, "nothing to store")
                return
            result = self.store.replace_document(tenant_id, document_id, doc)
        except (ProviderFailure, ValidationError, LookupError, sqlite3.Error) as exc:
            logger.warning("Retrain of %s failed: %s", document_id, exc)
            report.fail(document_id, exc)
            return
        report.add(result)
        logger.info("Retrained '%s' (%d chunks)", document.title, result.chunks_stored)

    def _refreshed_input(self, document: Document) -> DocumentInput | None:
        retrained_at = datetime.now(timezone.utc).isoformat()
        if document.content_kind == KIND_WEBSITE and document.source_locator:
            page = self.crawler.scrape_page(document.source_locator)
            if not page.text.strip():
                return None
            doc = page_to_input(
                page,
                document.tenant_id,
                document.agent_id,
                full_site=bool(document.metadata_dict.get("full_site_crawl")),
            )
            doc.metadata["retrained_at"] = retrained_at
            return doc

        metadata = document.metadata_dict
        metadata.pop("ingested_at", None)
        metadata["retrained_at"] = retrained_at
        return DocumentInput(
            tenant_id=document.tenant_id,
            agent_id=document.agent_id,
            title=document.title,
            content_kind=document.content_kind,
            source_locator=document.source_locator,
            text=document.content,
            metadata=metadata,
        )
