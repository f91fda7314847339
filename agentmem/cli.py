from __future__ import annotations

import logging

import typer
from rich import print
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .commands.common import resolve_project_for_cli, service_from_path
from .commands.maintenance_cmds import (
    config_set_cmd,
    config_show_cmd,
    config_unset_cmd,
    download_model_cmd,
    reindex_cmd,
    stats_cmd,
    status_cmd,
)
from .commands.memory_cmds import (
    clear_project_cmd,
    context_cmd,
    forget_cmd,
    recent_cmd,
    search_cmd,
)

app = typer.Typer(help="agentmem: long-term project memory for coding agents")
config_app = typer.Typer(help="Inspect and edit configuration")
app.add_typer(config_app, name="config")


def _service(db_path: str | None):
    return service_from_path(db_path)


def _configure_logging(verbose: bool) -> None:
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    _configure_logging(verbose)


@app.command()
def version() -> None:
    """Print the agentmem version."""

    print(__version__)


@app.command()
def status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show embedding model and vector index status."""

    status_cmd(service_factory=_service, db_path=db_path)


@app.command("download-model")
def download_model(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Download the embedding model and initialize the vector index."""

    download_model_cmd(service_factory=_service, db_path=db_path)


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(10, help="Max results"),
    kind: str = typer.Option("all", help="all, observations, prompts or sessions"),
    observation_type: str = typer.Option(None, "--type", help="Filter by observation type"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="Search across all projects"),
    lexical_only: bool = typer.Option(False, help="Skip loading the embedding model"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Hybrid search over stored memory."""

    search_cmd(
        service_factory=_service,
        resolve_project=resolve_project_for_cli,
        db_path=db_path,
        query=query,
        limit=limit,
        kind=kind,
        observation_type=observation_type,
        project=project,
        all_projects=all_projects,
        lexical_only=lexical_only,
    )


@app.command()
def context(
    prompt: str = typer.Argument("", help="Prompt to build context for"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print the memory context block for a prompt."""

    context_cmd(
        service_factory=_service,
        resolve_project=resolve_project_for_cli,
        db_path=db_path,
        prompt=prompt,
        project=project,
    )


@app.command()
def recent(
    limit: int = typer.Option(10, help="Number of observations"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show recent observations."""

    recent_cmd(
        service_factory=_service,
        resolve_project=resolve_project_for_cli,
        db_path=db_path,
        limit=limit,
        project=project,
    )


@app.command()
def reindex(
    project: str = typer.Option(None, help="Only reindex this project"),
    clear: bool = typer.Option(False, help="Drop existing vectors first"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Re-embed stored observations."""

    reindex_cmd(service_factory=_service, db_path=db_path, project=project, clear=clear)


@app.command()
def forget(
    observation_id: str = typer.Argument(..., help="Observation id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete an observation."""

    forget_cmd(service_factory=_service, db_path=db_path, observation_id=observation_id)


@app.command("clear-project")
def clear_project(
    project: str = typer.Argument(..., help="Project identifier"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete all memory of a project."""

    clear_project_cmd(service_factory=_service, db_path=db_path, project=project, yes=yes)


@app.command()
def stats(
    project: str = typer.Option(None, help="Limit counts to one project"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show store, vector and usage statistics."""

    stats_cmd(service_factory=_service, db_path=db_path, project=project)


@config_app.command("show")
def config_show(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Print the effective configuration."""

    config_show_cmd(db_path=db_path)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key, e.g. rrf_k"),
    value: str = typer.Argument(..., help="New value; empty clears string keys"),
) -> None:
    """Write a value to the config file."""

    config_set_cmd(key=key, value=value)


@config_app.command("unset")
def config_unset(key: str = typer.Argument(..., help="Config key to remove")) -> None:
    """Remove a key from the config file."""

    config_unset_cmd(key=key)


if __name__ == "__main__":
    app()
