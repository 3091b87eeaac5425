"""Background website crawl with an observable lifecycle.

A full-site crawl is accepted immediately and runs on its own thread with its
own database connection; each page is stored as soon as it is extracted, so
progress is visible in the knowledge base while the crawl is still running.

    task = CrawlTask(db_path, tenant_id=1, seed_url="https://example.com",
                     embedder=EmbeddingClient())
    task.start()
    ...
    task.cancel()   # checked between pages
    task.join()
    task.status     # "cancelled"
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from replykb.crawl.crawler import CrawlReport, PageResult, WebsiteCrawler
from replykb.db.connection import Database
from replykb.db.repository import Repository
from replykb.db.schema import initialize
from replykb.errors import ItemFailure, ProviderFailure, ValidationError
from replykb.ingest.embedding_client import EmbeddingClient
from replykb.ingest.splitter import ChunkSplitter
from replykb.ingest.store import DocumentInput, IngestReport, KnowledgeStore

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
CANCELLED = "cancelled"
FAILED = "failed"


def page_to_input(
    page: PageResult, tenant_id: int, agent_id: int | None = None, full_site: bool = False
) -> DocumentInput:
    """Map a crawled page onto a ``website`` document."""
    metadata = {
        "url": page.url,
        "scraped_at": datetime.now(timezone.utc).isoformat(),
        "word_count": page.word_count,
    }
    if full_site:
        metadata["full_site_crawl"] = True
    return DocumentInput(
        tenant_id=tenant_id,
        agent_id=agent_id,
        title=page.title,
        content_kind="website",
        source_locator=page.url,
        text=page.text,
        metadata=metadata,
    )


class PageSink:
    """``on_page`` callback that stores each page and tallies the outcome.

    Store failures for one page are recorded and never abort the crawl.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        tenant_id: int,
        agent_id: int | None = None,
        full_site: bool = True,
    ) -> None:
        self.store = store
        self.tenant_id = tenant_id
        self.agent_id = agent_id
        self.full_site = full_site
        self.report = IngestReport()
        self._lock = threading.Lock()

    def __call__(self, page: PageResult) -> None:
        if not page.text.strip():
            logger.info("Skipping %s: nothing to store", page.url)
            with self._lock:
                self.report.fail(page.url, "nothing to store")
            return
        doc = page_to_input(page, self.tenant_id, self.agent_id, full_site=self.full_site)
        try:
            result = self.store.store_document(doc)
        except (ValidationError, ProviderFailure, sqlite3.Error) as exc:
            logger.warning("Could not store %s: %s", page.url, exc)
            with self._lock:
                self.report.fail(page.url, exc)
            return
        with self._lock:
            self.report.add(result)
        logger.info("Stored page %s (%d chunks)", page.title, result.chunks_stored)

    def snapshot(self) -> IngestReport:
        with self._lock:
            return IngestReport(
                items_succeeded=self.report.items_succeeded,
                chunks_stored=self.report.chunks_stored,
                failures=list(self.report.failures),
                document_ids=list(self.report.document_ids),
                unembedded=self.report.unembedded,
            )


class CrawlTask:
    """Thread-backed handle for one detached website crawl.

    Args:
        db_path:   Knowledge base file; the worker opens its own connection.
        tenant_id: Tenant that owns every stored page.
        seed_url:  Where the crawl starts.
        embedder:  Embedding client used by the worker's store.
        max_pages: Visit cap for the run.
        agent_id:  Optional agent scope for the stored pages.
        crawler:   Preconfigured crawler (default: WebsiteCrawler()).
        splitter:  Chunk splitter for the worker's store.
    """

    def __init__(
        self,
        db_path: Path | str,
        tenant_id: int,
        seed_url: str,
        embedder: EmbeddingClient,
        max_pages: int = 20,
        agent_id: int | None = None,
        crawler: WebsiteCrawler | None = None,
        splitter: ChunkSplitter | None = None,
    ) -> None:
        if max_pages < 1:
            raise ValidationError(f"max_pages must be >= 1, got {max_pages}")
        self.db_path = Path(db_path)
        self.tenant_id = tenant_id
        self.seed_url = seed_url
        self.embedder = embedder
        self.max_pages = max_pages
        self.agent_id = agent_id
        self.crawler = crawler or WebsiteCrawler()
        self.splitter = splitter

        self.status = PENDING
        self.error: str | None = None
        self.crawl_report: CrawlReport | None = None
        self._sink: PageSink | None = None
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"crawl-{tenant_id}", daemon=True
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "CrawlTask":
        if self.status != PENDING:
            raise RuntimeError(f"CrawlTask already {self.status}")
        self.status = RUNNING
        self._thread.start()
        return self

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker. Returns True once the task has finished."""
        if self._thread.is_alive():
            self._thread.join(timeout)
        return self.done

    def cancel(self) -> None:
        """Ask the worker to stop before its next page."""
        self._stop.set()

    @property
    def done(self) -> bool:
        return self.status in (COMPLETED, CANCELLED, FAILED)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @property
    def pages_stored(self) -> int:
        return self._sink.snapshot().items_succeeded if self._sink else 0

    @property
    def chunks_stored(self) -> int:
        return self._sink.snapshot().chunks_stored if self._sink else 0

    @property
    def failures(self) -> list[ItemFailure]:
        stored = self._sink.snapshot().failures if self._sink else []
        crawled = self.crawl_report.failures if self.crawl_report else []
        return list(crawled) + stored

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        conn = None
        try:
            conn = Database(self.db_path).connect()
            initialize(conn)
            store = KnowledgeStore(Repository(conn), self.embedder, self.splitter)
            self._sink = PageSink(store, self.tenant_id, self.agent_id, full_site=True)
            self.crawl_report = self.crawler.crawl(
                self.seed_url, self.max_pages, self._sink, stop_event=self._stop
            )
            self.status = CANCELLED if self.crawl_report.stopped else COMPLETED
            logger.info(
                "Crawl task for tenant %s %s: %d pages, %d chunks",
                self.tenant_id,
                self.status,
                self.pages_stored,
                self.chunks_stored,
            )
        except Exception as exc:
            self.error = str(exc) or exc.__class__.__name__
            self.status = FAILED
            logger.exception("Crawl task for tenant %s failed", self.tenant_id)
        finally:
            if conn is not None:
                conn.close()
