"""Tests for WebsiteCrawler — breadth-first, same-origin, at-most-once."""

from __future__ import annotations

import threading

import pytest

from replykb.crawl.crawler import WebsiteCrawler
from replykb.crawl.web import parse_page
from replykb.errors import FetchError, ValidationError

SEED = "https://example.com"


def _crawl(site, max_pages=20, seed=SEED, **kwargs):
    pages = []
    report = WebsiteCrawler(fetcher=site, **kwargs).crawl(seed, max_pages, pages.append)
    return report, pages


# ------------------------------------------------------------------
# Limits
# ------------------------------------------------------------------


def test_max_pages_caps_callbacks(fake_site):
    links = tuple(f"/p{i}" for i in range(10))
    pages = {SEED: fake_site.page("Home", "Welcome.", links)}
    pages.update({f"{SEED}/p{i}": fake_site.page(f"Page {i}", f"Body {i}.") for i in range(10)})

    report, delivered = _crawl(fake_site(pages), max_pages=3)

    assert len(delivered) == 3
    assert [p.url for p in delivered] == [SEED, f"{SEED}/p0", f"{SEED}/p1"]
    assert report.pages == 3
    assert len(report.visited) == 3


def test_failed_page_skipped_and_counted(fake_site):
    pages = {SEED: fake_site.page("Home", "Welcome.", ("/a", "/b", "/c", "/d"))}
    for name in ("a", "b", "d"):
        pages[f"{SEED}/{name}"] = fake_site.page(name.upper(), f"Page {name}.")
    # /c is missing and fails with a 404

    report, delivered = _crawl(fake_site(pages), max_pages=10)

    assert len(delivered) == 4
    assert len(report.visited) == 5
    assert [f.item for f in report.failures] == [f"{SEED}/c"]
    assert "404" in report.failures[0].error


def test_failures_count_toward_max_pages(fake_site):
    pages = {SEED: fake_site.page("Home", "Welcome.", ("/missing", "/a"))}
    pages[f"{SEED}/a"] = fake_site.page("A", "Page a.")

    report, delivered = _crawl(fake_site(pages), max_pages=2)

    assert [p.url for p in delivered] == [SEED]
    assert report.visited == [SEED, f"{SEED}/missing"]


@pytest.mark.parametrize("max_pages", [0, -1])
def test_invalid_max_pages(fake_site, max_pages):
    with pytest.raises(ValidationError):
        _crawl(fake_site({}), max_pages=max_pages)


def test_invalid_seed(fake_site):
    with pytest.raises(ValidationError):
        _crawl(fake_site({}), seed="ftp://example.com")


def test_unreachable_seed_reports_failure(fake_site):
    report, delivered = _crawl(fake_site({}))
    assert delivered == []
    assert report.pages == 0
    assert [f.item for f in report.failures] == [SEED]


# ------------------------------------------------------------------
# Dedup and scope
# ------------------------------------------------------------------


def test_each_normalised_url_visited_once(fake_site):
    links = ("/a", "/a/", "/a?ref=nav", "/a#top", "https://EXAMPLE.com/a", "/b")
    pages = {
        SEED: fake_site.page("Home", "Welcome.", links),
        f"{SEED}/a": fake_site.page("A", "Page a.", ("/", "/b")),
        f"{SEED}/b": fake_site.page("B", "Page b.", ("/a",)),
    }
    site = fake_site(pages)

    report, delivered = _crawl(site)

    assert [p.url for p in delivered] == [SEED, f"{SEED}/a", f"{SEED}/b"]
    assert site.fetched == [SEED, f"{SEED}/a", f"{SEED}/b"]


def test_off_origin_links_not_followed(fake_site):
    links = ("https://other.com/x", "https://blog.example.com/y", "http://example.com/z", "/in")
    pages = {
        SEED: fake_site.page("Home", "Welcome.", links),
        f"{SEED}/in": fake_site.page("In", "Inside."),
    }
    site = fake_site(pages)

    _crawl(site)

    assert site.fetched == [SEED, f"{SEED}/in"]


def test_non_page_links_not_followed(fake_site):
    links = ("/guide.pdf", "mailto:help@example.com", "/logo.png", "/faq")
    pages = {
        SEED: fake_site.page("Home", "Welcome.", links),
        f"{SEED}/faq": fake_site.page("FAQ", "Questions."),
    }
    site = fake_site(pages)

    _crawl(site)

    assert site.fetched == [SEED, f"{SEED}/faq"]


def test_breadth_first_order(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/a", "/b")),
        f"{SEED}/a": fake_site.page("A", "Page a.", ("/a/deep",)),
        f"{SEED}/b": fake_site.page("B", "Page b."),
        f"{SEED}/a/deep": fake_site.page("Deep", "Deep page."),
    }

    _, delivered = _crawl(fake_site(pages))

    assert [p.url for p in delivered] == [SEED, f"{SEED}/a", f"{SEED}/b", f"{SEED}/a/deep"]


# ------------------------------------------------------------------
# Redirects
# ------------------------------------------------------------------


def test_redirect_to_delivered_page_skipped(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/new", "/old")),
        f"{SEED}/new": fake_site.page("New", "New page."),
    }
    site = fake_site(pages, redirects={f"{SEED}/old": f"{SEED}/new"})

    report, delivered = _crawl(site)

    assert [p.url for p in delivered] == [SEED, f"{SEED}/new"]
    assert report.failures == []


def test_redirect_to_queued_page_delivers_once(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/old", "/new")),
        f"{SEED}/new": fake_site.page("New", "New page."),
    }
    site = fake_site(pages, redirects={f"{SEED}/old": f"{SEED}/new"})

    report, delivered = _crawl(site)

    assert [p.url for p in delivered] == [SEED, f"{SEED}/new"]
    assert site.fetched == [SEED, f"{SEED}/old"]
    assert report.visited == [SEED, f"{SEED}/old"]


def test_relative_links_resolve_against_served_url(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/docs",)),
        f"{SEED}/docs/": fake_site.page("Docs", "Index.", ("intro",)),
        f"{SEED}/docs/intro": fake_site.page("Intro", "Getting started."),
    }
    site = fake_site(pages, redirects={f"{SEED}/docs": f"{SEED}/docs/"})

    report, delivered = _crawl(site)

    assert [p.url for p in delivered] == [SEED, f"{SEED}/docs", f"{SEED}/docs/intro"]
    assert report.failures == []


def test_seed_redirect_moves_origin(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/a", "http://example.com/b")),
        f"{SEED}/a": fake_site.page("A", "Page a."),
    }
    site = fake_site(pages, redirects={"http://example.com": SEED})

    report, delivered = _crawl(site, seed="http://example.com")

    assert [p.url for p in delivered] == [SEED, f"{SEED}/a"]
    assert site.fetched == ["http://example.com", f"{SEED}/a"]
    assert report.failures == []


def test_redirect_target_reported_under_final_url(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/old",)),
        f"{SEED}/new": fake_site.page("New", "New page.", ("/new",)),
    }
    site = fake_site(pages, redirects={f"{SEED}/old": f"{SEED}/new"})

    _, delivered = _crawl(site)

    assert [p.url for p in delivered] == [SEED, f"{SEED}/new"]
    assert site.fetched == [SEED, f"{SEED}/old"]


def test_redirect_off_origin_skipped(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/out",)),
        "https://other.com/landing": fake_site.page("Other", "Elsewhere."),
    }
    site = fake_site(pages, redirects={f"{SEED}/out": "https://other.com/landing"})

    _, delivered = _crawl(site)

    assert [p.url for p in delivered] == [SEED]


# ------------------------------------------------------------------
# Callback, pacing, stop
# ------------------------------------------------------------------


def test_page_result_fields(fake_site):
    pages = {SEED: "<html><body><p>Refunds within thirty days.</p></body></html>"}

    _, delivered = _crawl(fake_site(pages))

    page = delivered[0]
    assert page.title == SEED  # no <title> or <h1>
    assert page.word_count == 4
    assert "Refunds within thirty days." in page.text


def test_callback_errors_propagate(fake_site):
    def boom(page):
        raise RuntimeError("sink broken")

    site = fake_site({SEED: fake_site.page("Home", "Welcome.")})
    with pytest.raises(RuntimeError, match="sink broken"):
        WebsiteCrawler(fetcher=site).crawl(SEED, 5, boom)


def test_parser_errors_become_failures(fake_site):
    def bad_parser(body, content_type, url):
        raise ValueError("malformed")

    site = fake_site({SEED: fake_site.page("Home", "Welcome.")})
    pages = []
    report = WebsiteCrawler(fetcher=site, parser=bad_parser).crawl(SEED, 5, pages.append)

    assert pages == []
    assert "malformed" in report.failures[0].error


def test_delay_between_fetches(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/a", "/b")),
        f"{SEED}/a": fake_site.page("A", "Page a."),
        f"{SEED}/b": fake_site.page("B", "Page b."),
    }
    sleeps: list[float] = []

    _crawl(fake_site(pages), delay=0.5, sleep=sleeps.append)

    assert sleeps == [0.5, 0.5]


def test_stop_event_ends_run(fake_site):
    pages = {
        SEED: fake_site.page("Home", "Welcome.", ("/a", "/b")),
        f"{SEED}/a": fake_site.page("A", "Page a."),
        f"{SEED}/b": fake_site.page("B", "Page b."),
    }
    stop = threading.Event()
    delivered = []

    def on_page(page):
        delivered.append(page)
        stop.set()

    report = WebsiteCrawler(fetcher=fake_site(pages)).crawl(SEED, 10, on_page, stop_event=stop)

    assert report.stopped is True
    assert len(delivered) == 1


def test_scrape_page(fake_site):
    site = fake_site(
        {f"{SEED}/refunds/": fake_site.page("Refunds", "Within 30 days.")},
        redirects={f"{SEED}/help/refunds": f"{SEED}/refunds/"},
    )

    page = WebsiteCrawler(fetcher=site).scrape_page(f"{SEED}/help/refunds")

    assert page.url == f"{SEED}/refunds"
    assert page.title == "Refunds"


def test_scrape_page_links_resolve_against_served_url(fake_site):
    site = fake_site(
        {f"{SEED}/docs/": fake_site.page("Docs", "Index.", ("intro",))},
        redirects={f"{SEED}/docs": f"{SEED}/docs/"},
    )
    seen_bases = []

    def parser(body, content_type, url):
        seen_bases.append(url)
        return parse_page(body, content_type, url)

    page = WebsiteCrawler(fetcher=site, parser=parser).scrape_page(f"{SEED}/docs")

    assert page.url == f"{SEED}/docs"
    assert seen_bases == [f"{SEED}/docs/"]


def test_scrape_page_error(fake_site):
    with pytest.raises(FetchError):
        WebsiteCrawler(fetcher=fake_site({})).scrape_page(f"{SEED}/missing")
