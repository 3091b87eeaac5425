"""replykb retrain / backfill — keep a knowledge base fresh.

Usage:
  replykb retrain <doc-id> [<doc-id> ...] --tenant 1
  replykb retrain --tenant 1 --websites        (re-scrape every website page)
  replykb backfill                             (embed chunks stored without vectors)
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

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
from replykb.cli.errors import err_invalid_input
from replykb.db.models import KIND_WEBSITE
from replykb.db.repository import Repository
from replykb.errors import ValidationError
from replykb.ingest.backfill import backfill_missing_embeddings
from replykb.ingest.retrain import Retrainer


def retrain_cmd(
    tenant: TenantOption,
    document_ids: Annotated[
        list[str] | None, typer.Argument(help="Documents to refresh (see documents list).")
    ] = None,
    websites: Annotated[
        bool, typer.Option("--websites", help="Refresh every website document of the tenant.")
    ] = False,
    agent: AgentOption = None,
    db: DbOption = None,
) -> None:
    """Re-scrape or re-embed documents, replacing each one atomically."""
    ids = list(document_ids or [])
    if not ids and not websites:
        console.print(err_invalid_input("Pass document ids or --websites."))
        raise typer.Exit(1)

    cfg, db_path = load_settings(db)
    embedder = build_embedder(cfg)
    conn = open_db(db_path, must_exist=True)
    try:
        store = build_store(conn, cfg, embedder)
        if websites:
            ids += [
                d.id
                for d in store.repo.list_documents(tenant, agent_id=agent, content_kind=KIND_WEBSITE)
                if d.id not in ids
            ]
        if not ids:
            console.print(f"[yellow]No website documents for tenant {tenant}.[/]")
            raise typer.Exit(0)

        retrainer = Retrainer(store, crawler=build_crawler(cfg), delay=cfg.retrain.delay)
        console.print(f"Retraining {len(ids)} documents…")
        try:
            report = retrainer.retrain(tenant, ids)
        except ValidationError as exc:
            console.print(err_invalid_input(str(exc)))
            raise typer.Exit(1) from exc
    finally:
        conn.close()

    print_report(report)


def backfill_cmd(
    batch_size: Annotated[
        int | None, typer.Option("--batch-size", help="Chunks per embedding call (default from config).")
    ] = None,
    db: DbOption = None,
) -> None:
    """Embed every chunk that has no vector yet and rebuild the similarity index."""
    cfg, db_path = load_settings(db)
    embedder = build_embedder(cfg)
    conn = open_db(db_path, must_exist=True)
    try:
        repo = Repository(conn)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Embedding…", total=None)

            def _on_progress(processed: int, total: int) -> None:
                prog.update(task, completed=processed, total=total)

            report = backfill_missing_embeddings(
                repo,
                embedder,
                batch_size=batch_size or cfg.backfill.batch_size,
                max_errors=cfg.backfill.max_errors,
                batch_delay=cfg.backfill.batch_delay,
                on_progress=_on_progress,
            )
    finally:
        conn.close()

    if report.other_models:
        console.print(
            f"[yellow]⚠[/] {report.other_models} chunks belong to documents embedded with another "
            f"model than {embedder.model}.\n  Re-embed them with:  replykb retrain <doc-id> --tenant <id>"
        )
    if report.total == 0:
        console.print(f"[green]✓[/] Nothing to backfill for {embedder.model}.")
        return
    console.print(
        f"[green]✓[/] Embedded {report.processed}/{report.total} chunks"
        + (f" ({report.error_count} failed batches)" if report.error_count else "")
    )
    if report.index_built:
        console.print(f"  Similarity index rebuilt ({report.indexed} vectors)")
    if not report.completed:
        console.print(
            "[yellow]⚠[/] Stopped early after repeated failures.\n"
            "  Check your embedding provider, then run:  replykb backfill"
        )
        raise typer.Exit(1)
