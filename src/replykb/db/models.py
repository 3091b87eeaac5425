"""Domain models for the knowledge store."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

# Content kinds accepted by the write path.
KIND_TEXT = "text"
KIND_CSV = "csv"
KIND_DOCX = "docx"
KIND_PDF = "pdf"
KIND_WEBSITE = "website"
KIND_YOUTUBE = "youtube"
KIND_QA = "qa"

CONTENT_KINDS: frozenset[str] = frozenset(
    [KIND_TEXT, KIND_CSV, KIND_DOCX, KIND_PDF, KIND_WEBSITE, KIND_YOUTUBE, KIND_QA]
)


@dataclass
class Document:
    id: str
    tenant_id: int
    title: str
    content_kind: str
    content: str
    agent_id: int | None = None
    source_locator: str | None = None
    metadata: str = field(default_factory=lambda: "{}")
    embedding_model: str = ""
    created_at: str | None = None

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)


@dataclass
class Chunk:
    document_id: str
    tenant_id: int
    chunk_index: int
    text: str
    start_offset: int = 0
    end_offset: int = 0
    embedding: list[float] | None = None
    metadata: str = field(default_factory=lambda: "{}")
    created_at: str | None = None
    id: int | None = None  # set after insert; None for unsaved chunks

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)
