"""Breadth-first, same-origin website crawler.

One page at a time: fetch → extract → ``on_page`` → enqueue new links.
Every normalised URL is fetched at most once per run and ``on_page`` never
sees the same normalised URL twice. A page that fails to fetch or parse is
logged, recorded and skipped; the run continues with the rest of the queue.
The run ends when the queue is empty or ``max_pages`` URLs were visited.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from replykb.crawl.web import (
    FetchedPage,
    PageFetcher,
    ParsedPage,
    normalize_url,
    parse_page,
    same_origin,
    validate_url,
)
from replykb.errors import FetchError, ItemFailure, ValidationError

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    def fetch(self, url: str) -> FetchedPage: ...


@dataclass
class PageResult:
    """One crawled page as handed to ``on_page``."""

    url: str
    title: str
    text: str
    word_count: int


@dataclass
class CrawlReport:
    """Summary of one crawl run.

    Attributes:
        seed_url: Normalised seed URL.
        visited: Normalised URLs fetched (or attempted), in visit order.
        pages: Number of ``on_page`` invocations.
        failures: Pages that could not be fetched or parsed.
        stopped: True when the run ended because a stop was requested.
    """

    seed_url: str
    visited: list[str] = field(default_factory=list)
    pages: int = 0
    failures: list[ItemFailure] = field(default_factory=list)
    stopped: bool = False


class WebsiteCrawler:
    """Crawl a site breadth-first, streaming each page to a callback.

    Args:
        fetcher: Object with ``fetch(url) -> FetchedPage`` (default PageFetcher).
        parser:  HTML-to-text step ``(body, content_type, url) -> ParsedPage``.
        delay:   Seconds to pause between fetches (politeness).
        sleep:   Sleep function (injectable for tests).
    """

    def __init__(
        self,
        fetcher: Fetcher | None = None,
        parser: Callable[[str, str, str], ParsedPage] = parse_page,
        delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.fetcher = fetcher or PageFetcher()
        self.parser = parser
        self.delay = delay
        self._sleep = sleep

    def scrape_page(self, url: str) -> PageResult:
        """Fetch and extract a single page.

        Raises:
            FetchError: The page could not be fetched or converted.
        """
        validate_url(url)
        fetched = self.fetcher.fetch(url)
        base = fetched.url or url
        parsed = self._parse(fetched, base)
        return _to_result(normalize_url(base), parsed)

    def crawl(
        self,
        seed_url: str,
        max_pages: int,
        on_page: Callable[[PageResult], None],
        stop_event: threading.Event | None = None,
    ) -> CrawlReport:
        """Visit up to *max_pages* same-origin pages starting at *seed_url*.

        Exceptions raised by *on_page* propagate and end the run.

        Raises:
            ValidationError: Bad seed URL or max_pages < 1.
        """
        if max_pages < 1:
            raise ValidationError(f"max_pages must be >= 1, got {max_pages}")
        try:
            validate_url(seed_url)
        except FetchError as exc:
            raise ValidationError(str(exc)) from exc

        seed = normalize_url(seed_url)
        origin = seed  # moved to the seed's redirect target on the first visit
        report = CrawlReport(seed_url=seed)
        queue: deque[str] = deque([seed])
        seen: set[str] = {seed}  # queued or visited
        delivered: set[str] = set()

        while queue and len(report.visited) < max_pages:
            if stop_event is not None and stop_event.is_set():
                report.stopped = True
                break
            url = queue.popleft()
            if url in delivered:
                # already reached through an earlier redirect
                continue
            if report.visited and self.delay > 0:
                self._sleep(self.delay)
            report.visited.append(url)

            try:
                fetched = self.fetcher.fetch(url)
                base = fetched.url or url
                final_url = normalize_url(base)
                if len(report.visited) == 1:
                    origin = final_url
                if not same_origin(final_url, origin) or final_url in delivered:
                    logger.info("Skipping %s: redirected to %s", url, final_url)
                    continue
                seen.add(final_url)
                # links resolve against the URL as served, not the crawl key
                parsed = self._parse(fetched, base)
            except Exception as exc:
                logger.warning("Crawl: skipping %s: %s", url, exc)
                report.failures.append(ItemFailure.from_exc(url, exc))
                continue

            delivered.add(final_url)
            report.pages += 1
            on_page(_to_result(final_url, parsed))

            for link in parsed.links:
                try:
                    candidate = normalize_url(link)
                except ValueError:
                    continue
                if candidate in seen or not same_origin(candidate, origin):
                    continue
                seen.add(candidate)
                queue.append(candidate)

        logger.info(
            "Crawl of %s finished: %d visited, %d pages, %d failures",
            seed,
            len(report.visited),
            report.pages,
            len(report.failures),
        )
        return report

    def _parse(self, fetched: FetchedPage, url: str) -> ParsedPage:
        try:
            return self.parser(fetched.body, fetched.content_type, url)
        except Exception as exc:
            raise FetchError(f"Could not extract text from '{url}': {exc}") from exc


def _to_result(url: str, parsed: ParsedPage) -> PageResult:
    return PageResult(
        url=url,
        title=parsed.title or url,
        text=parsed.text,
        word_count=len(parsed.text.split()),
    )
