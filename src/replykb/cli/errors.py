"""replykb rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from replykb.cli.errors import err_no_api_key, err_no_db
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from replykb.errors import ItemFailure


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "azure": "AZURE_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "voyage": "VOYAGE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = "replykb.db") -> str:
    """No knowledge base at *db_path*."""
    return (
        f"[red]Error:[/] No knowledge base found at '{db_path}'.\n"
        "  Ingest something first:  replykb ingest text --tenant 1 \"...\""
    )


def err_config(message: str) -> str:
    """Config file is invalid."""
    return f"[red]Error:[/] Invalid configuration.\n  {message}"


def err_invalid_input(message: str) -> str:
    """Input rejected before anything was written."""
    return f"[red]Error:[/] {message}\n  Nothing was written."


def err_fetch_failed(url: str, reason: str) -> str:
    return (
        f"[red]Error:[/] Could not fetch '{url}'.\n"
        f"  {reason}\n"
        "  Check that the page is reachable and serves HTML or plain text."
    )


def err_document_not_found(document_id: str, tenant_id: int) -> str:
    return (
        f"[yellow]Document not found:[/] '{document_id}' is not in tenant {tenant_id}'s knowledge base.\n"
        f"  Run:  replykb documents list --tenant {tenant_id}"
    )


def err_retrieval(message: str) -> str:
    """The search query could not be embedded."""
    return (
        f"[red]Error:[/] Search failed: {message}\n"
        "  Check your embedding provider and API key, then retry."
    )


def warn_not_embedded(error: str | None) -> str:
    """Content stored, but without vectors."""
    return (
        "[yellow]⚠[/] Stored without embeddings"
        + (f" ({error})" if error else "")
        + ".\n  It will not appear in search until you run:  replykb backfill"
    )


def format_failures(failures: list[ItemFailure], limit: int = 10) -> str:
    """Bullet list of per-item failures, truncated after *limit* entries."""
    lines = [f"  [red]✗[/] {f.item}: {f.error}" for f in failures[:limit]]
    if len(failures) > limit:
        lines.append(f"  … and {len(failures) - limit} more")
    return "\n".join(lines)
