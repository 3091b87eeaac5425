"""Page fetching and HTML-to-text conversion with SSRF protection.

Security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local ranges before
  any connection is established, and again for every redirect target.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: text/html and text/plain only.
- Max response body: 5 MB (configurable).
- Timeout: 30 seconds (connect + read, configurable).
- Max redirects: 3 (configurable).
"""

from __future__ import annotations

import ipaddress
import posixpath
import re
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from http.client import HTTPResponse

import html2text
from bs4 import BeautifulSoup

from replykb.errors import FetchError, SsrfError

_USER_AGENT = "replykb/0.1 (+crawler)"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
_ALLOWED_CONTENT_TYPES = {"text/html", "text/plain"}
_DEFAULT_PORTS = {("http", 80), ("https", 443)}

# Links to these are never enqueued by the crawler.
_SKIPPED_EXTENSIONS = frozenset(
    [
        ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp",
        ".css", ".js", ".json", ".xml", ".rss", ".zip", ".gz", ".tar", ".rar", ".7z",
        ".mp3", ".wav", ".mp4", ".avi", ".mov", ".webm", ".doc", ".docx", ".xls",
        ".xlsx", ".ppt", ".pptx", ".csv", ".exe", ".dmg",
    ]
)
_SKIPPED_LINK_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "ftp:")

_MULTISLASH_RE = re.compile(r"/{2,}")


@dataclass
class FetchedPage:
    """Raw fetch result. ``url`` is the final URL after redirects."""

    url: str
    body: str
    content_type: str


@dataclass
class ParsedPage:
    """Output of the HTML-to-text step."""

    title: str
    text: str
    links: list[str] = field(default_factory=list)


# ------------------------------------------------------------------
# URL helpers
# ------------------------------------------------------------------


def validate_url(url: str) -> None:
    """Raise FetchError unless *url* is an absolute http(s) URL with a host."""
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        raise FetchError(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )
    if not parsed.hostname:
        raise FetchError(f"URL has no hostname: {url}")


def normalize_url(url: str) -> str:
    """Canonical crawl key: scheme + host (+ non-default port) + path.

    Scheme and host are lower-cased, duplicate and trailing slashes removed,
    and the query string and fragment dropped.

    Examples:
        "HTTPS://Example.com:443/About/?a=1#team" -> "https://example.com/About"
        "https://example.com/" -> "https://example.com"
    """
    parts = urllib.parse.urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    try:
        port = parts.port
    except ValueError:
        port = None
    netloc = host if port is None or (scheme, port) in _DEFAULT_PORTS else f"{host}:{port}"
    path = _MULTISLASH_RE.sub("/", parts.path).rstrip("/")
    return f"{scheme}://{netloc}{path}"


def same_origin(url: str, other: str) -> bool:
    """True when both URLs share scheme and host (after normalisation)."""
    a = urllib.parse.urlsplit(normalize_url(url))
    b = urllib.parse.urlsplit(normalize_url(other))
    return a.scheme == b.scheme and a.netloc == b.netloc


def is_crawlable_link(href: str) -> bool:
    """Reject non-page links (mail, phone, scripts, images, archives, documents)."""
    lowered = href.strip().lower()
    if not lowered or lowered.startswith("#") or lowered.startswith(_SKIPPED_LINK_SCHEMES):
        return False
    ext = posixpath.splitext(urllib.parse.urlsplit(lowered).path)[1]
    return ext not in _SKIPPED_EXTENSIONS


# ------------------------------------------------------------------
# HTML → text
# ------------------------------------------------------------------


def _converter() -> html2text.HTML2Text:
    h2t = html2text.HTML2Text()
    h2t.ignore_links = True
    h2t.ignore_images = True
    h2t.body_width = 0
    return h2t


def page_to_text(html: str) -> tuple[str, str]:
    """Return ``(title, text)`` for an HTML document."""
    parsed = parse_page(html, "text/html", "")
    return parsed.title, parsed.text


def parse_page(body: str, content_type: str, base_url: str) -> ParsedPage:
    """Convert a fetched body into title, readable text and absolute links."""
    if content_type == "text/plain":
        return ParsedPage(title="", text=body.strip())

    soup = BeautifulSoup(body, "html.parser")

    # Links first: nav and footer are stripped from the text, not from discovery.
    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not is_crawlable_link(href):
            continue
        absolute = urllib.parse.urljoin(base_url, href) if base_url else href
        links.append(absolute)

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    if not title:
        h1 = soup.find("h1")
        if h1 is not None:
            title = h1.get_text(" ", strip=True)

    for tag in soup.find_all(["script", "style", "nav", "footer", "head", "noscript"]):
        tag.decompose()
    text = _converter().handle(str(soup)).strip()
    return ParsedPage(title=title, text=text, links=links)


# ------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------


def check_ssrf(url: str) -> None:
    """Resolve the hostname and block private/reserved IP ranges.

    Raises:
        SsrfError: Any resolved address is private, loopback, link-local,
            reserved, multicast or unspecified.
        FetchError: The URL has no hostname or DNS resolution failed.
    """
    hostname = urllib.parse.urlsplit(url).hostname
    if not hostname:
        raise FetchError(f"URL has no hostname: {url}")

    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise FetchError(f"DNS resolution failed for '{hostname}': {exc}") from exc

    for addrinfo in addrinfos:
        addr_str = addrinfo[4][0]
        try:
            ip = ipaddress.ip_address(addr_str)
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            raise SsrfError(
                f"URL resolves to private address ({ip}). "
                "Access to internal network addresses is not allowed."
            )


class PageFetcher:
    """Fetch one URL over HTTP(S) with the safety limits above."""

    def __init__(
        self,
        timeout: int = _TIMEOUT,
        max_bytes: int = _MAX_BYTES,
        max_redirects: int = _MAX_REDIRECTS,
        user_agent: str = _USER_AGENT,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.max_redirects = max_redirects
        self.user_agent = user_agent

    @classmethod
    def from_cfg(cls, cfg) -> "PageFetcher":
        """Build from a replykb.config.CrawlerCfg section."""
        return cls(
            timeout=cfg.timeout,
            max_bytes=cfg.max_bytes,
            max_redirects=cfg.max_redirects,
            user_agent=cfg.user_agent,
        )

    def fetch(self, url: str) -> FetchedPage:
        """Validate, SSRF-check and fetch *url*.

        Raises:
            FetchError: Bad scheme, network failure, disallowed content type,
                oversized body, or too many redirects.
            SsrfError: The URL (or a redirect target) is internal.
        """
        validate_url(url)
        check_ssrf(url)

        request = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        opener = urllib.request.build_opener(_LimitedRedirectHandler(self.max_redirects))

        try:
            response: HTTPResponse = opener.open(request, timeout=self.timeout)
        except (urllib.error.URLError, OSError) as exc:
            raise FetchError(f"Failed to fetch URL '{url}': {exc}") from exc

        with response:
            raw_ct = response.headers.get("Content-Type", "text/html")
            ct = raw_ct.split(";")[0].strip().lower()
            if ct not in _ALLOWED_CONTENT_TYPES:
                raise FetchError(
                    f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                    f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
                )

            body = response.read(self.max_bytes + 1)
            if len(body) > self.max_bytes:
                raise FetchError(
                    f"Response body exceeds {self.max_bytes // (1024 * 1024)} MB limit for URL '{url}'."
                )
            charset = response.headers.get_content_charset() or "utf-8"
            final_url = response.geturl() or url

        try:
            text = body.decode(charset, errors="replace")
        except LookupError:
            text = body.decode("utf-8", errors="replace")
        return FetchedPage(url=final_url, body=text, content_type=ct)


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects; SSRF-check each hop."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise FetchError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        validate_url(newurl)
        check_ssrf(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)
