from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, StrictInt

from traitgrant.application.services.consent_service import ConsentService
from traitgrant.application.services.expiry_reaper_service import ExpiryReaperService
from traitgrant.application.services.lifecycle_service import (
    DEFAULT_DURATION_DAYS,
    LifecycleService,
)
from traitgrant.application.services.project_service import ProjectService
from traitgrant.core.config import AppPaths, read_bool_env
from traitgrant.core.errors import (
    AlreadyResolvedError,
    NotActiveError,
    NotFoundError,
    TraitGrantError,
    UnavailableError,
    ValidationError,
)
from traitgrant.core.time import format_utc, now_utc
from traitgrant.domain.models.verification_request import VerificationRequest
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo


class SubmitRequest(BaseModel):
    subject_id: str
    requester_id: str
    trait_type: str
    requester_display_name: str | None = None


class RespondRequest(BaseModel):
    approved: bool
    # No coercion from bool or str; the range is checked by the lifecycle service.
    expiry_days: StrictInt | None = None


class SweepResponse(BaseModel):
    scanned: int
    expired: int
    skipped: int
    failed: int


def _ts(value: datetime | None) -> str | None:
    return format_utc(value) if value is not None else None


def serialize_request(record: VerificationRequest, service: ConsentService, now: datetime) -> dict[str, Any]:
    reason = service.resolution_reason(record, now=now)
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "requester_id": record.requester_id,
        "requester_display_name": record.requester_display_name,
        "trait_type": record.trait_type,
        "status": record.status.value,
        "created_at": _ts(record.created_at),
        "responded_at": _ts(record.responded_at),
        "expires_at": _ts(record.expires_at),
        "revoked_at": _ts(record.revoked_at),
        "resolution_reason": reason.value if reason is not None else None,
    }


def _http_error(exc: TraitGrantError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, (AlreadyResolvedError, NotActiveError)):
        status_code = 409
    elif isinstance(exc, UnavailableError):
        status_code = 503
    elif isinstance(exc, ValidationError):
        status_code = 400
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=str(exc))


def create_app(paths: AppPaths, start_reaper: bool | None = None) -> FastAPI:
    app = FastAPI(title="traitgrant", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    project_service = ProjectService(paths)
    project_service.init_project()

    request_repo = VerificationRequestRepo(paths.db_path)
    lifecycle = LifecycleService(request_repo)
    consent_service = ConsentService(request_repo, lifecycle)
    reaper = ExpiryReaperService(request_repo, lifecycle)

    if start_reaper is None:
        start_reaper = read_bool_env("TRAITGRANT_REAPER_ENABLED", default=True)
    if start_reaper:
        reaper.start()

    @app.on_event("shutdown")
    def _shutdown_reaper() -> None:
        reaper.shutdown()

    @app.post("/api/init")
    def api_init() -> dict[str, Any]:
        result = project_service.init_project()
        return {
            "ok": True,
            "db_path": str(result.db_path),
            "paths_created": [str(p) for p in result.paths_created],
        }

    @app.post("/api/requests")
    def api_submit(req: SubmitRequest) -> dict[str, Any]:
        now = now_utc()
        try:
            record = consent_service.submit(
                subject_id=req.subject_id,
                requester_id=req.requester_id,
                trait_type=req.trait_type,
                requester_display_name=req.requester_display_name,
                now=now,
            )
        except TraitGrantError as exc:
            raise _http_error(exc) from exc
        return serialize_request(record, consent_service, now)

    @app.get("/api/requests/{request_id}")
    def api_get(request_id: str) -> dict[str, Any]:
        now = now_utc()
        try:
            record = consent_service.get(request_id, now=now)
        except TraitGrantError as exc:
            raise _http_error(exc) from exc
        return serialize_request(record, consent_service, now)

    @app.get("/api/subjects/{subject_id}/requests")
    def api_list(subject_id: str) -> dict[str, Any]:
        now = now_utc()
        try:
            records = consent_service.list_by_subject(subject_id, now=now)
        except TraitGrantError as exc:
            raise _http_error(exc) from exc
        return {
            "subject_id": subject_id,
            "count": len(records),
            "requests": [serialize_request(r, consent_service, now) for r in records],
        }

    @app.get("/api/subjects/{subject_id}/requests/buckets")
    def api_buckets(
        subject_id: str,
        denied_limit: int | None = Query(default=None, ge=0, le=10000),
    ) -> dict[str, Any]:
        now = now_utc()
        try:
            buckets = consent_service.bucket_by_subject(subject_id, now=now, denied_limit=denied_limit)
        except TraitGrantError as exc:
            raise _http_error(exc) from exc
        return {
            "subject_id": subject_id,
            "pending": [serialize_request(r, consent_service, now) for r in buckets.pending],
            "active": [serialize_request(r, consent_service, now) for r in buckets.active],
            "denied": [serialize_request(r, consent_service, now) for r in buckets.denied],
            "default_expiry_days": DEFAULT_DURATION_DAYS,
        }

    @app.post("/api/requests/{request_id}/respond")
    def api_respond(request_id: str, req: RespondRequest) -> dict[str, Any]:
        now = now_utc()
        try:
            record = consent_service.respond(
                request_id,
                approved=req.approved,
                duration_days=req.expiry_days,
                now=now,
            )
        except TraitGrantError as exc:
            raise _http_error(exc) from exc
        return serialize_request(record, consent_service, now)

    @app.post("/api/requests/{request_id}/revoke")
    def api_revoke(request_id: str) -> dict[str, Any]:
        now = now_utc()
        try:
            record = consent_service.revoke(request_id, now=now)
        except TraitGrantError as exc:
            raise _http_error(exc) from exc
        return serialize_request(record, consent_service, now)

    @app.post("/api/reaper/sweep")
    def api_reaper_sweep() -> SweepResponse:
        try:
            report = reaper.sweep()
        except TraitGrantError as exc:
            raise _http_error(exc) from exc
        return SweepResponse(
            scanned=report.scanned,
            expired=report.expired,
            skipped=report.skipped,
            failed=report.failed,
        )

    return app
