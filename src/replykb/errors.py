"""Error taxonomy for the ingestion and retrieval engine.

Only ``ValidationError`` is meant to reach the caller of an ingestion or crawl
entry point as a hard failure. Provider failures are recorded per item
(see ``ItemFailure``) and summarised in partial-success reports.
"""

from __future__ import annotations

from dataclasses import dataclass


class ReplyKBError(Exception):
    """Base class for all replykb errors."""


class ValidationError(ReplyKBError, ValueError):
    """Input rejected before any write (missing tenant, empty text, bad kind)."""


class ProviderFailure(ReplyKBError, RuntimeError):
    """An external collaborator (embedding, extraction, fetch) failed."""


class ProviderRateLimited(ProviderFailure):
    """The embedding provider kept rate-limiting after all cool-down retries."""


class EmbeddingError(ProviderFailure):
    """Embedding batch failed for reasons other than rate limiting."""


class ExtractionError(ProviderFailure):
    """Text extraction or transcription failed for one item."""


class FetchError(ProviderFailure):
    """A web page could not be fetched or converted to text."""


class SsrfError(FetchError):
    """Raised when a URL resolves to a private or reserved address."""


class RetrievalError(ProviderFailure):
    """Query embedding failed, so no similarity search could run."""


class ReferentialViolation(ReplyKBError):
    """A chunk references a missing document. Indicates a bug, never recovered."""


@dataclass
class ItemFailure:
    """One failed item (page URL, document id, file name) inside a batch run."""

    item: str
    error: str

    @classmethod
    def from_exc(cls, item: str, exc: BaseException) -> "ItemFailure":
        return cls(item=item, error=str(exc) or exc.__class__.__name__)
