from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from traitgrant.cli.commands import init_cmd, reap_cmd, requests_cmd, web_cmd
from traitgrant.cli.context import CLIContext
from traitgrant.core.config import load_paths
from traitgrant.core.errors import TraitGrantError
from traitgrant.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="traitgrant",
        description="Time-bound consent for trait verification requests",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root to use for .traitgrant data (default: current working directory)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    init_cmd.register(subparsers)
    requests_cmd.register(subparsers)
    reap_cmd.register(subparsers)
    web_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    console = Console()

    paths = load_paths(args.project_root)
    ctx = CLIContext(paths=paths, console=console)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except TraitGrantError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
