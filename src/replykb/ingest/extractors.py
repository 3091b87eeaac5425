"""Collaborators that turn uploads and media into plain text.

The engine only depends on the two protocols below; the default adapters are
thin wrappers over pypdf, python-docx and ``litellm.transcription()``.
"""

from __future__ import annotations

import io
import logging
import posixpath
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Protocol

import docx
import litellm
import pypdf

from replykb.crawl.web import check_ssrf, validate_url
from replykb.errors import ExtractionError, FetchError

logger = logging.getLogger(__name__)

_PDF_MIME = "application/pdf"
_DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
_CSV_MIMES = {"text/csv", "application/csv"}
_TEXT_MIMES = {"application/json", "application/xml"}

_WHISPER_MODEL = "openai/whisper-1"
_MAX_MEDIA_BYTES = 25 * 1024 * 1024  # transcription API upload limit
_MEDIA_TYPE_PREFIXES = ("audio/", "video/")
_MEDIA_TYPES = {"application/octet-stream", "application/ogg"}


class TextExtractor(Protocol):
    def extract_text(self, data: bytes, mime_type: str) -> str: ...


@dataclass
class Transcript:
    """Speech-to-text result for one video or audio file."""

    text: str
    word_count: int
    duration: float | None = None


class Transcriber(Protocol):
    def transcribe(self, media_url: str) -> Transcript: ...


def kind_for_mime(mime_type: str) -> str:
    """Map an upload's MIME type onto a document content kind."""
    mime = mime_type.split(";")[0].strip().lower()
    if mime == _PDF_MIME or "pdf" in mime:
        return "pdf"
    if mime == _DOCX_MIME or "word" in mime:
        return "docx"
    if mime in _CSV_MIMES:
        return "csv"
    return "text"


class DefaultTextExtractor:
    """Plain text and CSV are decoded; PDF goes through pypdf, Word through python-docx."""

    def extract_text(self, data: bytes, mime_type: str) -> str:
        """Return the text of *data*.

        Raises:
            ExtractionError: Unsupported type or unreadable document.
        """
        kind = kind_for_mime(mime_type)
        mime = mime_type.split(";")[0].strip().lower()
        try:
            if kind == "pdf":
                return _pdf_text(data)
            if kind == "docx":
                return _docx_text(data)
            if kind == "csv" or mime.startswith("text/") or mime in _TEXT_MIMES:
                return _decode(data)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Could not extract text from {mime or 'file'}: {exc}") from exc
        raise ExtractionError(f"Unsupported file type '{mime_type}'")


def _decode(data: bytes) -> str:
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1")


def _pdf_text(data: bytes) -> str:
    reader = pypdf.PdfReader(io.BytesIO(data))
    parts: list[str] = []
    for page in reader.pages:
        page_text = (page.extract_text() or "").strip()
        if page_text:
            parts.append(page_text)
    return "\n\n".join(parts)


def _docx_text(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    paragraphs = [p.text.strip() for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        rows = [" | ".join(cell.text.strip() for cell in row.cells) for row in table.rows]
        if rows:
            paragraphs.append("\n".join(rows))
    return "\n\n".join(paragraphs)


class LiteLLMTranscriber:
    """Download a media file and transcribe it with ``litellm.transcription()``.

    The URL must serve audio or video directly. Video pages such as
    ``youtube.com/watch`` serve HTML and are rejected with ExtractionError;
    plug in a Transcriber that resolves such pages to use them.

    Args:
        model:     Speech-to-text model (default Whisper via OpenAI).
        timeout:   Download timeout in seconds.
        max_bytes: Largest media file accepted.
    """

    def __init__(
        self,
        model: str = _WHISPER_MODEL,
        timeout: int = 120,
        max_bytes: int = _MAX_MEDIA_BYTES,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.max_bytes = max_bytes

    def transcribe(self, media_url: str) -> Transcript:
        """Raises ExtractionError when the media cannot be fetched or transcribed."""
        try:
            data = self._download(media_url)
        except FetchError as exc:
            raise ExtractionError(f"Could not download media '{media_url}': {exc}") from exc

        media = io.BytesIO(data)
        media.name = posixpath.basename(urllib.parse.urlsplit(media_url).path) or "media.mp3"
        try:
            response = litellm.transcription(model=self.model, file=media)
        except Exception as exc:
            raise ExtractionError(f"Transcription failed for '{media_url}': {exc}") from exc

        text = (getattr(response, "text", None) or "").strip()
        if not text:
            raise ExtractionError(f"Transcription of '{media_url}' returned no text")
        duration = getattr(response, "duration", None)
        logger.info("Transcribed %s: %d words", media_url, len(text.split()))
        return Transcript(
            text=text,
            word_count=len(text.split()),
            duration=float(duration) if duration is not None else None,
        )

    def _download(self, url: str) -> bytes:
        validate_url(url)
        check_ssrf(url)
        request = urllib.request.Request(url, headers={"User-Agent": "replykb/0.1"})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
                if content_type and not _is_media_type(content_type):
                    raise ExtractionError(
                        f"'{url}' serves '{content_type}', not audio or video. "
                        "Pass a direct media URL."
                    )
                data = response.read(self.max_bytes + 1)
        except (urllib.error.URLError, OSError) as exc:
            raise FetchError(str(exc)) from exc
        if len(data) > self.max_bytes:
            raise FetchError(
                f"Media exceeds the {self.max_bytes // (1024 * 1024)} MB transcription limit"
            )
        return data


def _is_media_type(content_type: str) -> bool:
    return content_type.startswith(_MEDIA_TYPE_PREFIXES) or content_type in _MEDIA_TYPES
