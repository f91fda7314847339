from __future__ import annotations

import asyncio
import os
import subprocess
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich import print

from ..config import AgentMemConfig, load_config, read_config_file
from ..service import MemoryService

T = TypeVar("T")

ServiceFactory = Callable[[str | None], MemoryService]


def config_with_db_path(db_path: str | None) -> AgentMemConfig:
    cfg = load_config()
    if db_path:
        cfg = replace(cfg, db_path=db_path)
    return cfg


def service_from_path(db_path: str | None) -> MemoryService:
    return MemoryService.from_config(config_with_db_path(db_path))


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def run_with_service(
    service_factory: ServiceFactory,
    db_path: str | None,
    action: Callable[[MemoryService], Awaitable[T]],
) -> T:
    """Run ``action`` against a fresh service and close it afterwards."""

    async def _main() -> T:
        service = service_factory(db_path)
        try:
            return await action(service)
        finally:
            await service.close()

    return asyncio.run(_main())


def _git_root(cwd: str) -> str | None:
    try:
        root = subprocess.check_output(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd,
            stderr=subprocess.DEVNULL,
            text=True,
        ).strip()
    except (OSError, subprocess.CalledProcessError):
        return None
    return root or None


def resolve_project_for_cli(cwd: str, project: str | None, *, all_projects: bool) -> str | None:
    if all_projects:
        return None
    if project:
        return project.strip() or None
    env_project = os.environ.get("AGENTMEM_PROJECT")
    if env_project:
        return env_project
    root = _git_root(cwd)
    if root and Path(root).is_dir():
        return Path(root).name
    return Path(cwd).resolve().name


def compact(text: str | None, limit: int = 160) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
