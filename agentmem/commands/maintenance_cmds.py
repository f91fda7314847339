from __future__ import annotations

import json
from typing import Any

import typer
from rich import print
from rich.markup import escape

from ..config import get_config_path, parse_config_value, write_config_file
from ..service import MemoryService
from .common import (
    ServiceFactory,
    config_with_db_path,
    read_config_or_exit,
    run_with_service,
)


def _format_tokens(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}k"
    return str(count)


def status_cmd(*, service_factory: ServiceFactory, db_path: str | None) -> None:
    """Show embedding model and index status without loading the model."""

    async def action(service: MemoryService) -> dict[str, Any]:
        return service.stats()

    data = run_with_service(service_factory, db_path, action)
    model = data["model"]
    print("[bold]Embeddings[/bold]")
    if model is None:
        print("- disabled")
    else:
        print(f"- Model: {model['model']}")
        print(f"- Status: {model['status']}")
        if model.get("error"):
            print(f"- Error: [red]{model['error']}[/red]")
    vectors = data["vectors"]
    if vectors is not None:
        print(f"- Index: {vectors['path']}")
    print(f"\n[bold]Store[/bold]\n- Path: {data['store']['db_path']}")


def download_model_cmd(*, service_factory: ServiceFactory, db_path: str | None) -> None:
    """Download the embedding model and bring the vector index up."""

    async def action(service: MemoryService) -> tuple[bool, dict[str, Any]]:
        if service.init is None:
            return False, {"error": "embeddings are disabled"}
        await service.init.initialize()
        if service.pipeline is None:
            return service.vectors_ready(), {}
        return service.vectors_ready(), service.pipeline.get_status().to_dict()

    ready, status = run_with_service(service_factory, db_path, action)
    if not ready:
        print(f"[red]Embedding model unavailable: {status.get('error', 'unknown error')}[/red]")
        raise typer.Exit(code=1)
    print(f"[green]Embedding model ready[/green] ({status.get('model')})")


def reindex_cmd(
    *,
    service_factory: ServiceFactory,
    db_path: str | None,
    project: str | None,
    clear: bool,
) -> None:
    """Re-embed stored observations into the vector index."""

    async def action(service: MemoryService) -> tuple[int, int, str | None]:
        if not await service.ensure_vectors():
            status = service.stats()["init"]
            return -1, 0, status.get("error") or status.get("state")
        queued = await service.reindex(project, clear=clear)
        if service.queue is not None:
            await service.queue.join()
        remaining = len(service.queue) if service.queue is not None else 0
        return queued, remaining, None

    queued, remaining, error = run_with_service(service_factory, db_path, action)
    if queued < 0:
        print(f"[red]Vector index unavailable: {error}[/red]")
        raise typer.Exit(code=1)
    print(f"Reindexed {queued - remaining} observations")
    if remaining:
        print(f"[yellow]{remaining} observations could not be embedded[/yellow]")


def stats_cmd(
    *, service_factory: ServiceFactory, db_path: str | None, project: str | None
) -> None:
    async def action(service: MemoryService) -> dict[str, Any]:
        return service.stats(project)

    data = run_with_service(service_factory, db_path, action)
    store = data["store"]
    print("[bold]Store[/bold]")
    print(f"- Path: {store['db_path']}")
    print(f"- Sessions: {store['sessions']} (active {store['active_sessions']})")
    print(f"- Prompts: {store['user_prompts']}")
    print(f"- Observations: {store['observations']}")
    for obs_type, count in store["observation_types"].items():
        print(f"  - {obs_type}: {count}")

    vectors = data["vectors"]
    print("\n[bold]Vectors[/bold]")
    if vectors is None:
        print("- Embeddings disabled")
    else:
        print(f"- Model: {vectors['model']} ({vectors['dimension']} dims)")
        print(f"- Indexed: {vectors['total_vectors'] if vectors['ready'] else 'not loaded'}")

    print("\n[bold]Usage[/bold]")
    if not data["usage"]:
        print("- No usage events recorded yet")
        return
    for event in data["usage"]:
        print(
            f"- {event['event']}: {event['count']} "
            f"(in ~{_format_tokens(int(event['tokens_read']))} tokens, "
            f"out ~{_format_tokens(int(event['tokens_written']))} tokens)"
        )


def config_show_cmd(*, db_path: str | None) -> None:
    cfg = config_with_db_path(db_path)
    print(f"[bold]Config file:[/bold] {get_config_path()}")
    print(escape(json.dumps(cfg.to_dict(), indent=2, default=str)))


def config_set_cmd(*, key: str, value: str) -> None:
    try:
        parsed = parse_config_value(key, value)
    except ValueError as exc:
        print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc
    data = read_config_or_exit()
    if parsed is None:
        data.pop(key, None)
    else:
        data[key] = parsed
    path = write_config_file(data)
    print(f"[green]Set {key} in {path}[/green]")


def config_unset_cmd(*, key: str) -> None:
    data = read_config_or_exit()
    if key not in data:
        print(f"[yellow]{key} is not set in {get_config_path()}[/yellow]")
        return
    data.pop(key)
    path = write_config_file(data)
    print(f"[green]Removed {key} from {path}[/green]")
