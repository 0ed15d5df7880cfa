from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ResolutionReason(str, Enum):
    """Why a request ended up denied. Derived from timestamps, never stored."""

    EXPLICIT_DENY = "explicit_deny"
    REVOKED = "revoked"
    EXPIRED = "expired"


IMMUTABLE_FIELDS = (
    "id",
    "subject_id",
    "requester_id",
    "requester_display_name",
    "trait_type",
    "created_at",
)


@dataclass(slots=True, frozen=True)
class VerificationRequest:
    id: str
    subject_id: str
    requester_id: str
    requester_display_name: str | None
    trait_type: str
    status: VerificationStatus
    created_at: datetime
    responded_at: datetime | None = None
    expires_at: datetime | None = None
    revoked_at: datetime | None = None


@dataclass(slots=True)
class RequestBuckets:
    subject_id: str
    pending: list[VerificationRequest] = field(default_factory=list)
    active: list[VerificationRequest] = field(default_factory=list)
    denied: list[VerificationRequest] = field(default_factory=list)
