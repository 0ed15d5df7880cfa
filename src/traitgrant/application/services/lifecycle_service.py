from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta

from traitgrant.core.errors import (
    AlreadyResolvedError,
    InvalidDurationError,
    NotActiveError,
    TransitionConflictError,
)
from traitgrant.core.time import ensure_utc, now_utc
from traitgrant.domain.models.verification_request import (
    ResolutionReason,
    VerificationRequest,
    VerificationStatus,
)
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo

logger = logging.getLogger(__name__)

MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 30
DEFAULT_DURATION_DAYS = 7


def validate_duration_days(duration_days: object) -> int:
    if isinstance(duration_days, bool) or not isinstance(duration_days, int):
        raise InvalidDurationError(
            f"Approval duration must be a whole number of days, got {duration_days!r}"
        )
    if not MIN_DURATION_DAYS <= duration_days <= MAX_DURATION_DAYS:
        raise InvalidDurationError(
            f"Approval duration must be between {MIN_DURATION_DAYS} and "
            f"{MAX_DURATION_DAYS} days, got {duration_days}"
        )
    return duration_days


def _latest_timestamp(record: VerificationRequest) -> datetime:
    stamps = [record.created_at, record.responded_at, record.revoked_at]
    return max(s for s in stamps if s is not None)


def _transition_time(record: VerificationRequest, now: datetime) -> datetime:
    # Never earlier than what is already recorded.
    return max(now, _latest_timestamp(record))


def is_expired(record: VerificationRequest, now: datetime) -> bool:
    return (
        record.status == VerificationStatus.APPROVED
        and record.expires_at is not None
        and ensure_utc(now) >= record.expires_at
    )


class LifecycleService:
    """State machine for verification requests.

    pending -> approved | denied, approved -> denied (revoke or expiry).
    denied is terminal. Every write goes through the repo's guarded transition.
    """

    def __init__(self, request_repo: VerificationRequestRepo) -> None:
        self.request_repo = request_repo

    def approve(
        self,
        request_id: str,
        duration_days: int,
        now: datetime | None = None,
    ) -> VerificationRequest:
        days = validate_duration_days(duration_days)
        at = ensure_utc(now) if now is not None else now_utc()

        def set_approved(record: VerificationRequest) -> VerificationRequest:
            responded_at = _transition_time(record, at)
            return replace(
                record,
                status=VerificationStatus.APPROVED,
                responded_at=responded_at,
                expires_at=responded_at + timedelta(days=days),
            )

        try:
            updated = self.request_repo.compare_and_transition(
                request_id, VerificationStatus.PENDING, set_approved
            )
        except TransitionConflictError as exc:
            raise AlreadyResolvedError(
                f"Verification request {request_id} was already resolved"
            ) from exc
        logger.info("Approved %s for %d day(s), expires %s", request_id, days, updated.expires_at)
        return updated

    def deny(self, request_id: str, now: datetime | None = None) -> VerificationRequest:
        at = ensure_utc(now) if now is not None else now_utc()

        def set_denied(record: VerificationRequest) -> VerificationRequest:
            return replace(
                record,
                status=VerificationStatus.DENIED,
                responded_at=_transition_time(record, at),
            )

        try:
            updated = self.request_repo.compare_and_transition(
                request_id, VerificationStatus.PENDING, set_denied
            )
        except TransitionConflictError as exc:
            raise AlreadyResolvedError(
                f"Verification request {request_id} was already resolved"
            ) from exc
        logger.info("Denied %s", request_id)
        return updated

    def revoke(self, request_id: str, now: datetime | None = None) -> VerificationRequest:
        at = ensure_utc(now) if now is not None else now_utc()

        def set_revoked(record: VerificationRequest) -> VerificationRequest:
            # A lapsed grant the reaper has not reached yet is not revocable.
            if is_expired(record, at):
                raise NotActiveError(f"Verification request {request_id} has already expired")
            return replace(
                record,
                status=VerificationStatus.DENIED,
                revoked_at=_transition_time(record, at),
            )

        try:
            updated = self.request_repo.compare_and_transition(
                request_id, VerificationStatus.APPROVED, set_revoked
            )
        except TransitionConflictError as exc:
            current = exc.current
            state = current.status.value if current is not None else "unknown"
            raise NotActiveError(
                f"Verification request {request_id} is not an active grant ({state})"
            ) from exc
        logger.info("Revoked %s", request_id)
        return updated

    def expire(self, request_id: str, now: datetime | None = None) -> VerificationRequest:
        """Demote a lapsed grant to denied. Raises TransitionConflictError on a lost race."""
        at = ensure_utc(now) if now is not None else now_utc()

        def set_expired(record: VerificationRequest) -> VerificationRequest:
            if not is_expired(record, at):
                raise TransitionConflictError(
                    f"Verification request {request_id} has not expired yet",
                    current=record,
                )
            return replace(record, status=VerificationStatus.DENIED)

        return self.request_repo.compare_and_transition(
            request_id, VerificationStatus.APPROVED, set_expired
        )

    @staticmethod
    def effective_status(record: VerificationRequest, now: datetime) -> VerificationStatus:
        if is_expired(record, now):
            return VerificationStatus.DENIED
        return record.status

    @staticmethod
    def effective_view(record: VerificationRequest, now: datetime) -> VerificationRequest:
        status = LifecycleService.effective_status(record, now)
        if status == record.status:
            return record
        return replace(record, status=status)

    @staticmethod
    def resolution_reason(record: VerificationRequest, now: datetime) -> ResolutionReason | None:
        if LifecycleService.effective_status(record, now) != VerificationStatus.DENIED:
            return None
        if record.revoked_at is not None:
            return ResolutionReason.REVOKED
        if record.expires_at is not None:
            return ResolutionReason.EXPIRED
        return ResolutionReason.EXPLICIT_DENY
