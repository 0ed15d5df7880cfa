from __future__ import annotations

import argparse
from datetime import datetime

from rich.panel import Panel
from rich.table import Table

from traitgrant.application.services.consent_service import ConsentService
from traitgrant.application.services.lifecycle_service import DEFAULT_DURATION_DAYS
from traitgrant.cli.commands.init_cmd import require_initialized_project
from traitgrant.cli.context import CLIContext
from traitgrant.core.time import format_utc, now_utc
from traitgrant.domain.models.verification_request import VerificationRequest
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("requests", help="Verification request management")
    requests_subparsers = parser.add_subparsers(dest="requests_command", required=True)

    submit_parser = requests_subparsers.add_parser("submit", help="Create a pending verification request")
    submit_parser.add_argument("--subject", required=True, help="Subject (consent-granting party) id")
    submit_parser.add_argument("--requester", required=True, help="Requester id")
    submit_parser.add_argument("--requester-name", help="Requester display name")
    submit_parser.add_argument("--trait", required=True, help="Trait type being requested")
    submit_parser.set_defaults(handler=run_submit)

    list_parser = requests_subparsers.add_parser("list", help="List requests for a subject")
    list_parser.add_argument("--subject", required=True)
    list_parser.set_defaults(handler=run_list)

    show_parser = requests_subparsers.add_parser("show", help="Show a single request")
    show_parser.add_argument("request_id")
    show_parser.set_defaults(handler=run_show)

    respond_parser = requests_subparsers.add_parser("respond", help="Approve or deny a pending request")
    respond_parser.add_argument("request_id")
    decision = respond_parser.add_mutually_exclusive_group(required=True)
    decision.add_argument("--approve", action="store_true")
    decision.add_argument("--deny", action="store_true")
    respond_parser.add_argument(
        "--days",
        type=int,
        default=DEFAULT_DURATION_DAYS,
        help=f"Access duration in days when approving (default: {DEFAULT_DURATION_DAYS})",
    )
    respond_parser.set_defaults(handler=run_respond)

    revoke_parser = requests_subparsers.add_parser("revoke", help="Revoke an active grant")
    revoke_parser.add_argument("request_id")
    revoke_parser.set_defaults(handler=run_revoke)


def _service(ctx: CLIContext) -> ConsentService:
    return ConsentService(VerificationRequestRepo(ctx.paths.db_path))


def _ts(value: datetime | None) -> str:
    return format_utc(value) if value is not None else ""


def _print_record(ctx: CLIContext, service: ConsentService, record: VerificationRequest, title: str) -> None:
    reason = service.resolution_reason(record)
    lines = [
        f"ID: {record.id}",
        f"Subject: {record.subject_id}",
        f"Requester: {record.requester_display_name or record.requester_id}",
        f"Trait: {record.trait_type}",
        f"Status: {record.status.value}",
        f"Created: {_ts(record.created_at)}",
    ]
    if record.responded_at is not None:
        lines.append(f"Responded: {_ts(record.responded_at)}")
    if record.expires_at is not None:
        lines.append(f"Expires: {_ts(record.expires_at)}")
    if record.revoked_at is not None:
        lines.append(f"Revoked: {_ts(record.revoked_at)}")
    if reason is not None:
        lines.append(f"Reason: {reason.value}")
    ctx.console.print(Panel.fit("\n".join(lines), title=title))


def run_submit(args: argparse.Namespace, ctx: CLIContext) -> int:
    require_initialized_project(ctx)
    service = _service(ctx)
    record = service.submit(
        subject_id=args.subject,
        requester_id=args.requester,
        trait_type=args.trait,
        requester_display_name=args.requester_name,
    )
    _print_record(ctx, service, record, "Request Submitted")
    return 0


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    require_initialized_project(ctx)
    service = _service(ctx)
    now = now_utc()
    records = service.list_by_subject(args.subject, now=now)

    out = Table(title=f"Verification Requests for {args.subject} ({len(records)})")
    out.add_column("ID")
    out.add_column("Requester", overflow="fold")
    out.add_column("Trait")
    out.add_column("Status")
    out.add_column("Created")
    out.add_column("Expires")
    out.add_column("Reason")

    for r in records:
        reason = service.resolution_reason(r, now=now)
        out.add_row(
            r.id,
            r.requester_display_name or r.requester_id,
            r.trait_type,
            r.status.value,
            _ts(r.created_at),
            _ts(r.expires_at),
            reason.value if reason is not None else "",
        )

    ctx.console.print(out)
    return 0


def run_show(args: argparse.Namespace, ctx: CLIContext) -> int:
    require_initialized_project(ctx)
    service = _service(ctx)
    record = service.get(args.request_id)
    _print_record(ctx, service, record, "Verification Request")
    return 0


def run_respond(args: argparse.Namespace, ctx: CLIContext) -> int:
    require_initialized_project(ctx)
    service = _service(ctx)
    record = service.respond(
        args.request_id,
        approved=bool(args.approve),
        duration_days=args.days if args.approve else None,
    )
    _print_record(ctx, service, record, "Request Approved" if args.approve else "Request Denied")
    return 0


def run_revoke(args: argparse.Namespace, ctx: CLIContext) -> int:
    require_initialized_project(ctx)
    service = _service(ctx)
    record = service.revoke(args.request_id)
    _print_record(ctx, service, record, "Grant Revoked")
    return 0
