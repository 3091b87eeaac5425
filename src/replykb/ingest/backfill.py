"""Bulk re-embedding of chunks that have no vector yet.

Chunks end up without a vector when the embedding provider failed at ingest
time or after a schema migration. The coordinator walks them in ascending id
order, one batch at a time, so a batch that keeps failing is skipped rather
than fetched again. After a successful pass the similarity index for the
embedding model is rebuilt.

Only chunks of documents recorded under the embedder's model are filled in.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass

from replykb.db.repository import Repository
from replykb.db.vectors import build_vector_index
from replykb.errors import ProviderFailure
from replykb.ingest.embedding_client import EmbeddingClient

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    """Outcome of one backfill run.

    Attributes:
        processed: Chunks that received a vector in this run.
        total: Chunks lacking a vector for the embedder's model when the run started.
        other_models: Chunks lacking a vector whose documents name another model.
        error_count: Batches that failed.
        completed: False when the run stopped early on too many errors.
        index_built: True when the similarity index was rebuilt afterwards.
        indexed: Vectors in the rebuilt index.
    """

    processed: int
    total: int
    error_count: int = 0
    completed: bool = True
    index_built: bool = False
    indexed: int = 0
    other_models: int = 0


def backfill_missing_embeddings(
    repo: Repository,
    embedder: EmbeddingClient,
    batch_size: int = 100,
    max_errors: int = 10,
    batch_delay: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
    on_progress: Callable[[int, int], None] | None = None,
) -> BackfillReport:
    """Embed every chunk whose vector is missing and rebuild the similarity index.

    Re-running when nothing is missing is a no-op reporting ``total == 0``.

    Args:
        repo: Open repository.
        embedder: Embedding client (its model names the index to rebuild).
        batch_size: Chunks per provider call.
        max_errors: Stop once more than this many batches have failed.
        batch_delay: Pause between batches, in seconds.
        sleep: Sleep function (injectable for tests).
        on_progress: Called with ``(processed, total)`` after every batch.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    total = repo.count_missing_embeddings(embedder.model)
    other_models = repo.count_missing_embeddings() - total
    if other_models:
        logger.warning(
            "Backfill: %d chunks lack vectors but belong to documents embedded with "
            "another model than %s; retrain those documents instead",
            other_models,
            embedder.model,
        )
    if total == 0:
        logger.info("Backfill: no chunks are missing embeddings for %s", embedder.model)
        return BackfillReport(processed=0, total=0, other_models=other_models)

    logger.info("Backfill: %d chunks missing embeddings (model %s)", total, embedder.model)
    report = BackfillReport(processed=0, total=total, other_models=other_models)
    after_id = 0

    while True:
        batch = repo.fetch_missing_embeddings(batch_size, after_id=after_id, model=embedder.model)
        if not batch:
            break
        after_id = batch[-1].id

        try:
            vectors = embedder.embed([c.text for c in batch])
            report.processed += repo.set_embeddings(
                [(c.id, v) for c, v in zip(batch, vectors)]
            )
        except ProviderFailure as exc:
            report.error_count += 1
            logger.warning(
                "Backfill batch ending at chunk %d failed (%d/%d): %s",
                after_id,
                report.error_count,
                max_errors,
                exc,
            )
            if report.error_count > max_errors:
                report.completed = False
                logger.error(
                    "Backfill stopped after %d failed batches: %d/%d chunks embedded",
                    report.error_count,
                    report.processed,
                    total,
                )
                return report

        if on_progress is not None:
            on_progress(report.processed, total)
        logger.info("Backfill progress: %d/%d", report.processed, total)
        if batch_delay > 0:
            sleep(batch_delay)

    _rebuild_index(repo, embedder, report)
    logger.info(
        "Backfill complete: %d/%d chunks embedded, %d failed batches",
        report.processed,
        total,
        report.error_count,
    )
    return report


def _rebuild_index(repo: Repository, embedder: EmbeddingClient, report: BackfillReport) -> None:
    dimensions = repo.embedding_dimensions(embedder.model) or embedder.config.dimensions
    try:
        report.indexed = build_vector_index(repo.conn, embedder.model, dimensions)
    except (sqlite3.Error, ValueError) as exc:
        logger.error("Could not rebuild similarity index for %s: %s", embedder.model, exc)
        return
    report.index_built = True
    logger.info("Similarity index for %s rebuilt with %d vectors", embedder.model, report.indexed)
