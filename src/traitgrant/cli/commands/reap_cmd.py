from __future__ import annotations

import argparse
import time

from rich.panel import Panel

from traitgrant.application.services.expiry_reaper_service import ExpiryReaperService, ReapReport
from traitgrant.cli.commands.init_cmd import require_initialized_project
from traitgrant.cli.context import CLIContext
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("reap", help="Retire approved grants whose expiry has passed")
    parser.add_argument("--watch", action="store_true", help="Keep sweeping on an interval until interrupted")
    parser.add_argument("--interval", type=float, help="Seconds between sweeps in --watch mode")
    parser.add_argument("--batch-size", type=int, help="Records fetched per batch")
    parser.set_defaults(handler=run)


def _print_report(ctx: CLIContext, report: ReapReport) -> None:
    ctx.console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Scanned: {report.scanned}",
                    f"Expired: {report.expired}",
                    f"Skipped: {report.skipped}",
                    f"Failed: {report.failed}",
                ]
            ),
            title="Expiry Sweep",
        )
    )


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    require_initialized_project(ctx)
    reaper = ExpiryReaperService(
        VerificationRequestRepo(ctx.paths.db_path),
        interval_seconds=args.interval,
        batch_size=args.batch_size,
    )

    if not args.watch:
        report = reaper.sweep()
        _print_report(ctx, report)
        return 0 if report.failed == 0 else 1

    ctx.console.print(f"[green]Sweeping every {reaper.interval_seconds:g}s[/green] (Ctrl+C to stop)")
    try:
        while True:
            report = reaper.sweep()
            if report.scanned:
                _print_report(ctx, report)
            time.sleep(reaper.interval_seconds)
    except KeyboardInterrupt:
        ctx.console.print("[yellow]Stopped[/yellow]")
    return 0
