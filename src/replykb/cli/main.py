"""replykb CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from replykb.cli.documents import documents_app
from replykb.cli.ingest import crawl_cmd, ingest_app, scrape_cmd
from replykb.cli.maintain import backfill_cmd, retrain_cmd
from replykb.cli.search import search_cmd
from replykb.config import ConfigError, load_config
from replykb.log import configure_logging


def _installed_version() -> str:
    try:
        return importlib.metadata.version("replykb")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"replykb {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="replykb",
    help=(
        "replykb — per-tenant knowledge bases for support chatbots.\n\n"
        "  replykb ingest / scrape / crawl   Add content.\n"
        "  replykb search                    Retrieve grounding snippets."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR (default: logging.level)."),
    ] = None,
) -> None:
    """replykb — per-tenant knowledge bases for support chatbots."""
    if log_level is None:
        try:
            log_level = load_config().logging.level
        except ConfigError:
            log_level = "INFO"  # the command itself reports the config error
    configure_logging(log_level)


app.add_typer(ingest_app, name="ingest")
app.add_typer(documents_app, name="documents")
app.command("scrape")(scrape_cmd)
app.command("crawl")(crawl_cmd)
app.command("search")(search_cmd)
app.command("retrain")(retrain_cmd)
app.command("backfill")(backfill_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed replykb version."""
    typer.echo(f"replykb {_installed_version()}")


if __name__ == "__main__":
    app()
