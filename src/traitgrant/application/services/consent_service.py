from __future__ import annotations

from datetime import datetime

from traitgrant.application.services.lifecycle_service import LifecycleService
from traitgrant.core.errors import InvalidDurationError, ValidationError
from traitgrant.core.ids import new_uuid
from traitgrant.core.time import ensure_utc, now_utc
from traitgrant.domain.models.verification_request import (
    RequestBuckets,
    VerificationRequest,
    VerificationStatus,
)
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo


class ConsentService:
    """Operation surface for verification requests.

    Reads return records with the effective status folded in, so an expired grant
    is never reported as approved even before the reaper has stored the change.
    Reads never write.
    """

    def __init__(
        self,
        request_repo: VerificationRequestRepo,
        lifecycle: LifecycleService | None = None,
    ) -> None:
        self.request_repo = request_repo
        self.lifecycle = lifecycle or LifecycleService(request_repo)

    def submit(
        self,
        subject_id: str,
        requester_id: str,
        trait_type: str,
        requester_display_name: str | None = None,
        now: datetime | None = None,
    ) -> VerificationRequest:
        record = VerificationRequest(
            id=new_uuid(),
            subject_id=_require(subject_id, "subject_id"),
            requester_id=_require(requester_id, "requester_id"),
            requester_display_name=_opt_str(requester_display_name),
            trait_type=_require(trait_type, "trait_type"),
            status=VerificationStatus.PENDING,
            created_at=_at(now),
        )
        self.request_repo.insert(record)
        return record

    def get(self, request_id: str, now: datetime | None = None) -> VerificationRequest:
        record = self.request_repo.get(request_id)
        return self.lifecycle.effective_view(record, _at(now))

    def list_by_subject(self, subject_id: str, now: datetime | None = None) -> list[VerificationRequest]:
        at = _at(now)
        return [self.lifecycle.effective_view(r, at) for r in self.request_repo.list_by_subject(subject_id)]

    def bucket_by_subject(
        self,
        subject_id: str,
        now: datetime | None = None,
        denied_limit: int | None = None,
    ) -> RequestBuckets:
        buckets = RequestBuckets(subject_id=subject_id)
        for record in self.list_by_subject(subject_id, now=now):
            if record.status == VerificationStatus.PENDING:
                buckets.pending.append(record)
            elif record.status == VerificationStatus.APPROVED:
                buckets.active.append(record)
            else:
                buckets.denied.append(record)
        if denied_limit is not None:
            # Most recently resolved first.
            buckets.denied.sort(key=_resolved_at, reverse=True)
            buckets.denied = buckets.denied[: max(0, denied_limit)]
        return buckets

    def respond(
        self,
        request_id: str,
        approved: bool,
        duration_days: int | None = None,
        now: datetime | None = None,
    ) -> VerificationRequest:
        if approved:
            if duration_days is None:
                raise InvalidDurationError("duration_days is required when approving a request")
            return self.lifecycle.approve(request_id, duration_days, now=_at(now))
        return self.lifecycle.deny(request_id, now=_at(now))

    def revoke(self, request_id: str, now: datetime | None = None) -> VerificationRequest:
        return self.lifecycle.revoke(request_id, now=_at(now))

    def resolution_reason(self, record: VerificationRequest, now: datetime | None = None):
        return self.lifecycle.resolution_reason(record, _at(now))


def _at(now: datetime | None) -> datetime:
    return ensure_utc(now) if now is not None else now_utc()


def _resolved_at(record: VerificationRequest) -> datetime:
    if record.revoked_at is not None:
        return record.revoked_at
    if record.expires_at is not None:
        return record.expires_at
    return record.responded_at or record.created_at


def _require(value: object, name: str) -> str:
    text = _opt_str(value)
    if text is None:
        raise ValidationError(f"{name} is required")
    return text


def _opt_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None
