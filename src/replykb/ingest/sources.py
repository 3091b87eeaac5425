"""Ingestion entry points: text, uploaded files, Q&A pairs, videos and websites.

Each entry point turns its source into plain text and hands it to the
KnowledgeStore. Caller mistakes (bad tenant, blank text, malformed URL) raise
ValidationError; collaborator failures (extraction, transcription, fetch) are
recorded in the returned IngestReport so a batch never dies on one bad item.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from replykb.crawl.crawler import WebsiteCrawler
from replykb.crawl.task import CrawlTask, PageSink, page_to_input
from replykb.crawl.web import validate_url
from replykb.db.connection import database_file
from replykb.errors import FetchError, ProviderFailure, ValidationError
from replykb.ingest.extractors import (
    DefaultTextExtractor,
    LiteLLMTranscriber,
    TextExtractor,
    Transcriber,
    kind_for_mime,
)
from replykb.ingest.store import (
    DocumentInput,
    IngestReport,
    KnowledgeStore,
    validate_scope,
)

logger = logging.getLogger(__name__)

_DEFAULT_MAX_PAGES = 20

_VIDEO_ID_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/embed/)([^&\n?#/]+)"),
    re.compile(r"^([a-zA-Z0-9_-]{11})$"),
)


def extract_video_id(url: str) -> str:
    """Return the YouTube video id in *url* (watch, short, embed link or bare id).

    Raises:
        ValidationError: No id could be found.
    """
    candidate = url.strip()
    for pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return match.group(1)
    raise ValidationError(f"Invalid YouTube URL format: '{url}'")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class IngestService:
    """Source-specific ingestion on top of a KnowledgeStore.

    Args:
        store:       Knowledge store every item is written to.
        crawler:     Website crawler (default: WebsiteCrawler()).
        extractor:   File text extractor (default: DefaultTextExtractor()).
        transcriber: Video transcriber (default: LiteLLMTranscriber()).
        max_pages:   Default page cap for website crawls.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        crawler: WebsiteCrawler | None = None,
        extractor: TextExtractor | None = None,
        transcriber: Transcriber | None = None,
        max_pages: int = _DEFAULT_MAX_PAGES,
    ) -> None:
        self.store = store
        self.crawler = crawler or WebsiteCrawler()
        self.extractor = extractor or DefaultTextExtractor()
        self.transcriber = transcriber or LiteLLMTranscriber()
        self.max_pages = max_pages

    # ------------------------------------------------------------------
    # Single items
    # ------------------------------------------------------------------

    def ingest_text(
        self,
        tenant_id: int,
        text: str,
        title: str = "Text Document",
        agent_id: int | None = None,
    ) -> IngestReport:
        report = IngestReport()
        result = self.store.store_document(
            DocumentInput(
                tenant_id=tenant_id,
                agent_id=agent_id,
                title=title or "Text Document",
                content_kind="text",
                text=text,
                metadata={"added_at": _now(), "char_count": len(text)},
            )
        )
        report.add(result)
        return report

    def ingest_file(
        self,
        tenant_id: int,
        data: bytes,
        filename: str,
        mime_type: str,
        agent_id: int | None = None,
    ) -> IngestReport:
        """Extract text from an uploaded file and store it under its file name."""
        validate_scope(tenant_id, agent_id)
        report = IngestReport()
        try:
            text = self.extractor.extract_text(data, mime_type)
        except ProviderFailure as exc:
            logger.warning("Extraction failed for %s: %s", filename, exc)
            report.fail(filename, exc)
            return report
        if not text.strip():
            report.fail(filename, "no text could be extracted")
            return report

        result = self.store.store_document(
            DocumentInput(
                tenant_id=tenant_id,
                agent_id=agent_id,
                title=Path(filename).name or filename,
                content_kind=kind_for_mime(mime_type),
                source_locator=filename,
                text=text,
                metadata={"filename": filename, "mime_type": mime_type, "size": len(data)},
            )
        )
        report.add(result)
        return report

    def ingest_qa(
        self,
        tenant_id: int,
        question: str,
        answer: str,
        agent_id: int | None = None,
    ) -> IngestReport:
        """Store a question/answer pair as one small ``qa`` document."""
        if not question or not question.strip() or not answer or not answer.strip():
            raise ValidationError("question and answer must both be non-empty")
        question, answer = question.strip(), answer.strip()
        report = IngestReport()
        result = self.store.store_document(
            DocumentInput(
                tenant_id=tenant_id,
                agent_id=agent_id,
                title=f"Q&A: {question}",
                content_kind="qa",
                text=f"Q: {question}\nA: {answer}",
                metadata={"type": "qa_pair", "added_at": _now()},
            )
        )
        report.add(result)
        return report

    def ingest_transcript(
        self,
        tenant_id: int,
        video_url: str,
        agent_id: int | None = None,
    ) -> IngestReport:
        """Transcribe a YouTube video and store the transcript."""
        validate_scope(tenant_id, agent_id)
        video_id = extract_video_id(video_url)
        media_url = (
            video_url.strip()
            if "youtube.com" in video_url or "youtu.be" in video_url
            else f"https://www.youtube.com/watch?v={video_id}"
        )
        report = IngestReport()
        try:
            transcript = self.transcriber.transcribe(media_url)
        except ProviderFailure as exc:
            logger.warning("Transcription failed for video %s: %s", video_id, exc)
            report.fail(video_url, exc)
            return report
        if not transcript.text.strip():
            report.fail(video_url, "transcript is empty")
            return report

        canonical = f"https://www.youtube.com/watch?v={video_id}"
        result = self.store.store_document(
            DocumentInput(
                tenant_id=tenant_id,
                agent_id=agent_id,
                title=f"YouTube Video: {video_id}",
                content_kind="youtube",
                source_locator=canonical,
                text=transcript.text,
                metadata={
                    "video_id": video_id,
                    "url": canonical,
                    "thumbnail": f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg",
                    "word_count": transcript.word_count,
                    "duration": transcript.duration,
                    "extracted_at": _now(),
                },
            )
        )
        report.add(result)
        return report

    # ------------------------------------------------------------------
    # Websites
    # ------------------------------------------------------------------

    def ingest_page(self, tenant_id: int, url: str, agent_id: int | None = None) -> IngestReport:
        """Scrape and store exactly one page."""
        validate_scope(tenant_id, agent_id)
        _check_url(url)
        report = IngestReport()
        try:
            page = self.crawler.scrape_page(url)
        except FetchError as exc:
            logger.warning("Could not scrape %s: %s", url, exc)
            report.fail(url, exc)
            return report
        if not page.text.strip():
            report.fail(page.url, "nothing to store")
            return report
        report.add(self.store.store_document(page_to_input(page, tenant_id, agent_id)))
        return report

    def ingest_website(
        self,
        tenant_id: int,
        seed_url: str,
        max_pages: int | None = None,
        agent_id: int | None = None,
    ) -> IngestReport:
        """Crawl a site synchronously, storing each page as it arrives."""
        validate_scope(tenant_id, agent_id)
        _check_url(seed_url)
        sink = PageSink(self.store, tenant_id, agent_id, full_site=True)
        crawl = self.crawler.crawl(seed_url, max_pages or self.max_pages, sink)
        report = sink.snapshot()
        report.failures = list(crawl.failures) + report.failures
        logger.info(
            "Website %s: %d pages stored, %d chunks, %d failures",
            crawl.seed_url,
            report.items_succeeded,
            report.chunks_stored,
            len(report.failures),
        )
        return report

    def start_website_crawl(
        self,
        tenant_id: int,
        seed_url: str,
        max_pages: int | None = None,
        agent_id: int | None = None,
    ) -> CrawlTask:
        """Launch a background crawl and return its handle immediately.

        The task writes through its own connection to the same database file.
        """
        validate_scope(tenant_id, agent_id)
        _check_url(seed_url)
        task = CrawlTask(
            db_path=database_file(self.store.repo.conn),
            tenant_id=tenant_id,
            seed_url=seed_url,
            embedder=self.store.embedder,
            max_pages=max_pages or self.max_pages,
            agent_id=agent_id,
            crawler=self.crawler,
            splitter=self.store.splitter,
        )
        return task.start()


def _check_url(url: str) -> None:
    try:
        validate_url(url)
    except FetchError as exc:
        raise ValidationError(str(exc)) from exc
