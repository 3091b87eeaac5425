"""replykb documents — inspect and remove stored documents.

Commands:
  replykb documents list --tenant 1 [--agent 2] [--kind website]
  replykb documents delete <document-id> --tenant 1 [--yes]

Deleting a document removes its chunks, keyword-index rows and
similarity-index rows in the same transaction.
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.table import Table

from replykb.cli.common import AgentOption, DbOption, TenantOption, console, load_settings, open_db
from replykb.cli.errors import err_document_not_found, err_invalid_input
from replykb.db.models import CONTENT_KINDS
from replykb.db.repository import Repository

documents_app = typer.Typer(
    name="documents",
    help="List or delete stored documents.",
    add_completion=False,
)


@documents_app.command("list")
def documents_list_cmd(
    tenant: TenantOption,
    agent: AgentOption = None,
    kind: Annotated[
        str | None, typer.Option("--kind", help="Only this content kind (e.g. website, pdf).")
    ] = None,
    db: DbOption = None,
) -> None:
    """List a tenant's documents, newest first."""
    if kind is not None and kind not in CONTENT_KINDS:
        console.print(
            err_invalid_input(
                f"Unknown kind '{kind}'. Expected one of: {', '.join(sorted(CONTENT_KINDS))}"
            )
        )
        raise typer.Exit(1)

    _, db_path = load_settings(db)
    conn = open_db(db_path, must_exist=True)
    try:
        repo = Repository(conn)
        documents = repo.list_documents(tenant, agent_id=agent, content_kind=kind)
        counts = {d.id: repo.count_chunks_by_document(d.id) for d in documents}
    finally:
        conn.close()

    if not documents:
        console.print(f"[yellow]No documents for tenant {tenant}.[/]")
        raise typer.Exit(0)

    table = Table(title=f"Documents — tenant {tenant}", show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="bold")
    table.add_column("Kind")
    table.add_column("Agent", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Created")
    for d in documents:
        table.add_row(
            d.id,
            d.title or "Untitled",
            d.content_kind,
            str(d.agent_id) if d.agent_id is not None else "-",
            str(counts[d.id]),
            d.created_at or "",
        )
    console.print(table)
    console.print(f"\n  {len(documents)} documents, {sum(counts.values())} chunks")


@documents_app.command("delete")
def documents_delete_cmd(
    document_id: Annotated[str, typer.Argument(help="Document id (see documents list).")],
    tenant: TenantOption,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    db: DbOption = None,
) -> None:
    """Delete a document and all of its chunks."""
    _, db_path = load_settings(db)
    conn = open_db(db_path, must_exist=True)
    try:
        repo = Repository(conn)
        document = repo.get_document(tenant, document_id)
        if document is None:
            console.print(err_document_not_found(document_id, tenant))
            raise typer.Exit(1)

        chunk_count = repo.count_chunks_by_document(document_id)
        console.print(f"\nDelete document: [bold]{document.title or document_id}[/]")
        console.print(f"  Kind: {document.content_kind}  |  Chunks: {chunk_count}")

        if not yes and not typer.confirm("Confirm deletion?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        repo.delete_document(tenant, document_id)
        console.print(f"\n[green]✓[/] Deleted: {document.title or document_id}")
        console.print(f"  {chunk_count} chunks removed")
    finally:
        conn.close()
