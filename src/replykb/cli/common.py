"""Shared plumbing for replykb commands: options, config, database, services."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from replykb.cli.errors import (
    err_config,
    err_no_api_key,
    err_no_db,
    format_failures,
    warn_not_embedded,
)
from replykb.config import ConfigError, ReplyKBConfig, load_config
from replykb.crawl.crawler import WebsiteCrawler
from replykb.crawl.web import PageFetcher
from replykb.db.connection import Database
from replykb.db.repository import Repository
from replykb.db.schema import initialize
from replykb.ingest.embedding_client import EmbeddingClient, EmbeddingConfig
from replykb.ingest.splitter import ChunkSplitter
from replykb.ingest.store import IngestReport, KnowledgeStore

console = Console()

DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the knowledge base (default: database.path from config)."),
]
TenantOption = Annotated[int, typer.Option("--tenant", "-t", help="Tenant id.")]
AgentOption = Annotated[
    int | None,
    typer.Option("--agent", "-a", help="Agent id (omit for tenant-wide)."),
]


def load_settings(db: Path | None) -> tuple[ReplyKBConfig, Path]:
    """Load config for the working directory and resolve the database path."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    return cfg, db if db is not None else Path(cfg.database.path)


def open_db(db_path: Path, must_exist: bool = False) -> sqlite3.Connection:
    """Open (or create) the knowledge base and run migrations."""
    if must_exist and not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def build_embedder(cfg: ReplyKBConfig, check_key: bool = True) -> EmbeddingClient:
    embedder = EmbeddingClient(EmbeddingConfig.from_cfg(cfg.embedding))
    if check_key:
        try:
            embedder.check_api_key()
        except EnvironmentError as exc:
            provider = embedder.model.split("/")[0] if "/" in embedder.model else "openai"
            console.print(err_no_api_key(provider))
            raise typer.Exit(1) from exc
    return embedder


def build_store(conn: sqlite3.Connection, cfg: ReplyKBConfig, embedder: EmbeddingClient) -> KnowledgeStore:
    splitter = ChunkSplitter(chunk_size=cfg.chunking.chunk_size, overlap=cfg.chunking.overlap)
    return KnowledgeStore(Repository(conn), embedder, splitter)


def build_crawler(cfg: ReplyKBConfig) -> WebsiteCrawler:
    return WebsiteCrawler(fetcher=PageFetcher.from_cfg(cfg.crawler), delay=cfg.crawler.delay)


def print_report(report: IngestReport, noun: str = "documents") -> None:
    """Summarise a partial-success run on the console."""
    if report.items_succeeded:
        console.print(
            f"[green]✓[/] {report.items_succeeded} {noun} stored, {report.chunks_stored} chunks"
        )
    elif not report.failures:
        console.print(f"[yellow]No {noun} stored.[/]")
    if report.unembedded:
        console.print(warn_not_embedded(None))
    if report.failures:
        console.print(f"[yellow]{len(report.failures)} failed:[/]")
        console.print(format_failures(report.failures))
