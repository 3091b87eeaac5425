"""replykb write path — splitter, embedding client, knowledge store."""

from replykb.ingest.embedding_client import EmbeddingClient, EmbeddingConfig
from replykb.ingest.splitter import ChunkSplitter, TextSpan
from replykb.ingest.store import DocumentInput, IngestReport, KnowledgeStore, StoreResult

__all__ = [
    "ChunkSplitter",
    "TextSpan",
    "EmbeddingClient",
    "EmbeddingConfig",
    "KnowledgeStore",
    "DocumentInput",
    "StoreResult",
    "IngestReport",
]
