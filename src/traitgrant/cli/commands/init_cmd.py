from __future__ import annotations

import argparse

from traitgrant.application.services.project_service import ProjectService
from traitgrant.cli.context import CLIContext
from traitgrant.core.errors import ProjectNotInitializedError


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("init", help="Initialize traitgrant metadata and database")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    service = ProjectService(ctx.paths)
    result = service.init_project()

    if result.paths_created:
        for path in result.paths_created:
            ctx.console.print(f"[green]Created[/green] {path}")
    else:
        ctx.console.print("[yellow]Project paths already existed[/yellow]")

    ctx.console.print(f"[green]Database ready[/green] {result.db_path}")
    return 0


def require_initialized_project(ctx: CLIContext) -> None:
    project_service = ProjectService(ctx.paths)
    if not project_service.is_initialized():
        raise ProjectNotInitializedError(
            f"Project is not initialized. Run 'traitgrant init' first in {ctx.paths.project_root}"
        )
    project_service.init_project()
