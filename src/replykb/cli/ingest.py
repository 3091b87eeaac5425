"""replykb ingest — add content to a tenant's knowledge base.

Commands:
  replykb ingest text "..." --tenant 1 [--title T]
  replykb ingest file handbook.pdf --tenant 1
  replykb ingest qa --tenant 1 --question "..." --answer "..."
  replykb ingest youtube https://youtu.be/<id> --tenant 1
"""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Annotated

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from replykb.cli.common import (
    AgentOption,
    DbOption,
    TenantOption,
    build_crawler,
    build_embedder,
    build_store,
    console,
    load_settings,
    open_db,
    print_report,
)
from replykb.cli.errors import err_fetch_failed, err_invalid_input
from replykb.errors import ValidationError
from replykb.ingest.sources import IngestService
from replykb.ingest.store import IngestReport

ingest_app = typer.Typer(
    name="ingest",
    help="Ingest text, files, Q&A pairs or videos into a knowledge base.",
    add_completion=False,
)

_MIME_FALLBACK = {
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".csv": "text/csv",
    ".md": "text/markdown",
}


def _run(db: Path | None, action, spinner: str) -> IngestReport:
    """Open the knowledge base, run *action(service)* and close it again."""
    cfg, db_path = load_settings(db)
    embedder = build_embedder(cfg)
    conn = open_db(db_path)
    try:
        service = IngestService(
            build_store(conn, cfg, embedder),
            crawler=build_crawler(cfg),
            max_pages=cfg.crawler.max_pages,
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task(spinner, total=None)
            try:
                return action(service)
            except ValidationError as exc:
                console.print(err_invalid_input(str(exc)))
                raise typer.Exit(1) from exc
    finally:
        conn.close()


@ingest_app.command("text")
def ingest_text_cmd(
    text: Annotated[str, typer.Argument(help="Text to ingest.")],
    tenant: TenantOption,
    title: Annotated[str, typer.Option("--title", help="Document title.")] = "Text Document",
    agent: AgentOption = None,
    db: DbOption = None,
) -> None:
    """Store a block of text."""
    report = _run(db, lambda s: s.ingest_text(tenant, text, title=title, agent_id=agent), "Embedding…")
    print_report(report)


@ingest_app.command("file")
def ingest_file_cmd(
    path: Annotated[Path, typer.Argument(help="File to ingest (txt, csv, pdf, docx).")],
    tenant: TenantOption,
    mime_type: Annotated[
        str | None,
        typer.Option("--mime-type", help="Override the MIME type guessed from the extension."),
    ] = None,
    agent: AgentOption = None,
    db: DbOption = None,
) -> None:
    """Extract text from a file and store it."""
    if not path.is_file():
        console.print(err_invalid_input(f"File not found: '{path}'"))
        raise typer.Exit(1)
    mime = (
        mime_type
        or mimetypes.guess_type(path.name)[0]
        or _MIME_FALLBACK.get(path.suffix.lower(), "text/plain")
    )
    data = path.read_bytes()
    report = _run(
        db,
        lambda s: s.ingest_file(tenant, data, path.name, mime, agent_id=agent),
        f"Extracting {path.name}…",
    )
    print_report(report, "files")
    if report.failures and not report.items_succeeded:
        raise typer.Exit(1)


@ingest_app.command("qa")
def ingest_qa_cmd(
    tenant: TenantOption,
    question: Annotated[str, typer.Option("--question", "-q", help="The question.")],
    answer: Annotated[str, typer.Option("--answer", help="The answer.")],
    agent: AgentOption = None,
    db: DbOption = None,
) -> None:
    """Store a question/answer pair."""
    report = _run(
        db, lambda s: s.ingest_qa(tenant, question, answer, agent_id=agent), "Embedding…"
    )
    print_report(report, "Q&A pairs")


@ingest_app.command("youtube")
def ingest_youtube_cmd(
    url: Annotated[str, typer.Argument(help="YouTube URL or 11-character video id.")],
    tenant: TenantOption,
    agent: AgentOption = None,
    db: DbOption = None,
) -> None:
    """Transcribe a YouTube video and store the transcript."""
    report = _run(
        db,
        lambda s: s.ingest_transcript(tenant, url, agent_id=agent),
        "Transcribing (this can take a minute)…",
    )
    print_report(report, "transcripts")
    if report.failures and not report.items_succeeded:
        raise typer.Exit(1)


def scrape_cmd(
    url: Annotated[str, typer.Argument(help="Page URL (http/https).")],
    tenant: TenantOption,
    agent: AgentOption = None,
    db: DbOption = None,
) -> None:
    """Scrape and store a single web page."""
    report = _run(db, lambda s: s.ingest_page(tenant, url, agent_id=agent), f"Fetching {url}…")
    if report.failures and not report.items_succeeded:
        console.print(err_fetch_failed(url, report.failures[0].error))
        raise typer.Exit(1)
    print_report(report, "pages")


def crawl_cmd(
    url: Annotated[str, typer.Argument(help="Seed URL; only same-site links are followed.")],
    tenant: TenantOption,
    max_pages: Annotated[
        int | None,
        typer.Option("--max-pages", "-n", help="Visit at most this many pages (default from config)."),
    ] = None,
    agent: AgentOption = None,
    db: DbOption = None,
) -> None:
    """Crawl a website and store every page."""
    report = _run(
        db,
        lambda s: s.ingest_website(tenant, url, max_pages=max_pages, agent_id=agent),
        f"Crawling {url}…",
    )
    print_report(report, "pages")
