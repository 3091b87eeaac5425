"""replykb search — query a tenant's knowledge base.

Usage:
  replykb search "refund policy" --tenant 1
  replykb search "refund policy" --tenant 1 --mode hybrid --top-k 3 --context
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.table import Table

from replykb.cli.common import (
    AgentOption,
    DbOption,
    TenantOption,
    build_embedder,
    console,
    load_settings,
    open_db,
)
from replykb.cli.errors import err_invalid_input, err_retrieval
from replykb.db.repository import Repository
from replykb.errors import RetrievalError, ValidationError
from replykb.rag.retriever import RetrieverConfig, format_context, retrieve_context

_MODES = ("dense", "keyword", "hybrid")


def search_cmd(
    query: Annotated[str, typer.Argument(help="What to look for.")],
    tenant: TenantOption,
    agent: AgentOption = None,
    top_k: Annotated[
        int | None, typer.Option("--top-k", "-k", help="Maximum snippets (default from config).")
    ] = None,
    mode: Annotated[
        str | None, typer.Option("--mode", help="dense | keyword | hybrid (default from config).")
    ] = None,
    context: Annotated[
        bool, typer.Option("--context", help="Print the grounding block instead of a table.")
    ] = False,
    db: DbOption = None,
) -> None:
    """Retrieve the most relevant snippets for QUERY."""
    cfg, db_path = load_settings(db)
    mode = mode or cfg.retrieval.mode
    if mode not in _MODES:
        console.print(err_invalid_input(f"--mode must be one of {', '.join(_MODES)}, got '{mode}'"))
        raise typer.Exit(1)

    embedder = build_embedder(cfg, check_key=mode != "keyword")
    conn = open_db(db_path, must_exist=True)
    try:
        snippets = retrieve_context(
            Repository(conn),
            embedder,
            tenant,
            query,
            agent_id=agent,
            top_k=top_k,
            config=RetrieverConfig(
                mode=mode,
                top_k=cfg.retrieval.top_k,
                rrf_k=cfg.retrieval.rrf_k,
                max_distance=cfg.retrieval.max_distance,
            ),
        )
    except ValidationError as exc:
        console.print(err_invalid_input(str(exc)))
        raise typer.Exit(1) from exc
    except RetrievalError as exc:
        console.print(err_retrieval(str(exc)))
        raise typer.Exit(1) from exc
    finally:
        conn.close()

    if not snippets:
        console.print("[yellow]No matching content.[/]")
        return

    if context:
        console.print(format_context(snippets), markup=False, highlight=False)
        return

    table = Table(title=f"Results for “{query}”", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Source", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Snippet")
    for i, s in enumerate(snippets, start=1):
        preview = " ".join(s.text.split())
        if len(preview) > 160:
            preview = preview[:157] + "…"
        table.add_row(str(i), s.document_title or "Untitled", f"{s.score:.4f}", preview)
    console.print(table)
