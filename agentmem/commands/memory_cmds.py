from __future__ import annotations

import datetime as dt
import os

import typer
from rich import print
from rich.markup import escape

from ..service import MemoryService
from .common import ServiceFactory, compact, run_with_service


def _format_ts(epoch_ms: int) -> str:
    return dt.datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


def search_cmd(
    *,
    service_factory: ServiceFactory,
    resolve_project,
    db_path: str | None,
    query: str,
    limit: int,
    kind: str,
    observation_type: str | None,
    project: str | None,
    all_projects: bool,
    lexical_only: bool,
) -> None:
    """Search observations, prompts and session summaries."""

    resolved_project = resolve_project(os.getcwd(), project, all_projects=all_projects)

    async def action(service: MemoryService):
        if not lexical_only:
            await service.ensure_vectors(timeout=service.config.search_timeout_s)
        return await service.search(
            query,
            project_id=resolved_project,
            observation_type=observation_type,
            limit=limit,
            kind=kind,
        )

    try:
        results = run_with_service(service_factory, db_path, action)
    except ValueError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    if not results:
        print("[yellow]No matches[/yellow]")
        return
    for item in results:
        label = item.observation_type or item.kind
        print(f"[bold]{escape(f'[{item.id}]')}[/bold] ({label}) {escape(item.title)}")
        if item.excerpt:
            print(f"  {escape(compact(item.excerpt))}")
        print(f"  score={item.score:.4f} {_format_ts(item.created_at)}\n")


def context_cmd(
    *,
    service_factory: ServiceFactory,
    resolve_project,
    db_path: str | None,
    prompt: str,
    project: str | None,
) -> None:
    """Print the memory context block that would be injected for a prompt."""

    resolved_project = resolve_project(os.getcwd(), project, all_projects=False)
    if not resolved_project:
        print("[red]A project is required[/red]")
        raise typer.Exit(code=1)

    async def action(service: MemoryService) -> str | None:
        await service.ensure_vectors(timeout=service.config.search_timeout_s)
        return await service.build_context(prompt, resolved_project)

    context = run_with_service(service_factory, db_path, action)
    if not context:
        print("[yellow]No memory context for this project[/yellow]")
        return
    print(escape(context))


def recent_cmd(
    *,
    service_factory: ServiceFactory,
    resolve_project,
    db_path: str | None,
    limit: int,
    project: str | None,
) -> None:
    """Show the most recent observations for a project."""

    resolved_project = resolve_project(os.getcwd(), project, all_projects=False)
    if not resolved_project:
        print("[red]A project is required[/red]")
        raise typer.Exit(code=1)

    async def action(service: MemoryService):
        return service.store.recent_observations(resolved_project, limit)

    observations = run_with_service(service_factory, db_path, action)
    if not observations:
        print(f"[yellow]No observations for {resolved_project}[/yellow]")
        return
    for obs in observations:
        print(
            f"[bold]{escape(f'[{obs.id}]')}[/bold] ({obs.type}) "
            f"{escape(obs.title)} {_format_ts(obs.created_at)}"
        )
        if obs.narrative:
            print(f"  {escape(compact(obs.narrative))}")


def forget_cmd(
    *, service_factory: ServiceFactory, db_path: str | None, observation_id: str
) -> None:
    """Delete one observation and its vector."""

    async def action(service: MemoryService) -> bool:
        return await service.delete_observation(observation_id)

    if not run_with_service(service_factory, db_path, action):
        print(f"[red]Observation {observation_id} not found[/red]")
        raise typer.Exit(code=1)
    print(f"Observation {observation_id} deleted")


def clear_project_cmd(
    *,
    service_factory: ServiceFactory,
    db_path: str | None,
    project: str,
    yes: bool,
) -> None:
    """Delete every session, prompt, observation and vector of a project."""

    if not yes:
        typer.confirm(f"Delete all memory for project {project}?", abort=True)

    async def action(service: MemoryService) -> int:
        return await service.clear_project(project)

    removed = run_with_service(service_factory, db_path, action)
    print(f"Cleared project {project} ({removed} observations)")
