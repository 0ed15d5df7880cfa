from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from traitgrant.core.errors import NotFoundError, TransitionConflictError, UnavailableError
from traitgrant.core.time import format_utc, parse_utc
from traitgrant.domain.models.verification_request import (
    IMMUTABLE_FIELDS,
    VerificationRequest,
    VerificationStatus,
)
from traitgrant.infrastructure.db.sqlite import get_connection

logger = logging.getLogger(__name__)

Mutator = Callable[[VerificationRequest], VerificationRequest]


class VerificationRequestRepo:
    """Durable storage for verification requests.

    ``compare_and_transition`` is the only write path for an existing record and
    the single synchronization point between concurrent responders.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn: sqlite3.Connection | None = None
        try:
            conn = get_connection(self.db_path)
            yield conn
        except sqlite3.OperationalError as exc:
            raise UnavailableError(f"Request store unavailable: {exc}") from exc
        finally:
            if conn is not None:
                if conn.in_transaction:
                    conn.rollback()
                conn.close()

    def insert(self, record: VerificationRequest) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO verification_requests (
                    id, subject_id, requester_id, requester_display_name, trait_type,
                    status, created_at, responded_at, expires_at, revoked_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._to_params(record),
            )

    def get(self, request_id: str) -> VerificationRequest:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM verification_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Verification request not found: {request_id}")
        return self._to_record(row)

    def list_by_subject(self, subject_id: str) -> list[VerificationRequest]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM verification_requests
                WHERE subject_id = ?
                ORDER BY created_at DESC, id ASC
                """,
                (subject_id,),
            ).fetchall()
        return [self._to_record(r) for r in rows]

    def list_expired_approved(self, now, limit: int = 500) -> list[VerificationRequest]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM verification_requests
                WHERE status = ?
                  AND expires_at IS NOT NULL
                  AND expires_at <= ?
                ORDER BY expires_at ASC, id ASC
                LIMIT ?
                """,
                (VerificationStatus.APPROVED.value, format_utc(now), max(1, int(limit))),
            ).fetchall()
        return [self._to_record(r) for r in rows]

    def compare_and_transition(
        self,
        request_id: str,
        expected_status: VerificationStatus,
        mutator: Mutator,
    ) -> VerificationRequest:
        """Apply ``mutator`` only if the stored status still equals ``expected_status``.

        The check and the write share one ``BEGIN IMMEDIATE`` transaction, so two
        callers racing on the same id cannot both succeed. Raises ``NotFoundError``,
        ``TransitionConflictError`` (with the current record attached) or
        ``UnavailableError``; on any failure nothing is written.
        """
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM verification_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Verification request not found: {request_id}")

            current = self._to_record(row)
            if current.status != expected_status:
                raise TransitionConflictError(
                    f"Verification request {request_id} is {current.status.value}, "
                    f"expected {expected_status.value}",
                    current=current,
                )

            updated = mutator(current)
            self._check_immutable(current, updated)

            cursor = conn.execute(
                """
                UPDATE verification_requests
                SET status = ?,
                    responded_at = ?,
                    expires_at = ?,
                    revoked_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    updated.status.value,
                    _opt_ts(updated.responded_at),
                    _opt_ts(updated.expires_at),
                    _opt_ts(updated.revoked_at),
                    request_id,
                    expected_status.value,
                ),
            )
            if cursor.rowcount != 1:
                raise TransitionConflictError(
                    f"Verification request {request_id} changed during transition",
                    current=current,
                )
            conn.commit()

        logger.debug(
            "Transitioned %s: %s -> %s",
            request_id,
            expected_status.value,
            updated.status.value,
        )
        return updated

    @staticmethod
    def _check_immutable(current: VerificationRequest, updated: VerificationRequest) -> None:
        for name in IMMUTABLE_FIELDS:
            if getattr(current, name) != getattr(updated, name):
                raise ValueError(f"Transition may not change immutable field: {name}")

    @staticmethod
    def _to_params(record: VerificationRequest) -> tuple[object, ...]:
        return (
            record.id,
            record.subject_id,
            record.requester_id,
            record.requester_display_name,
            record.trait_type,
            record.status.value,
            format_utc(record.created_at),
            _opt_ts(record.responded_at),
            _opt_ts(record.expires_at),
            _opt_ts(record.revoked_at),
        )

    @staticmethod
    def _to_record(row) -> VerificationRequest:
        return VerificationRequest(
            id=row["id"],
            subject_id=row["subject_id"],
            requester_id=row["requester_id"],
            requester_display_name=row["requester_display_name"],
            trait_type=row["trait_type"],
            status=VerificationStatus(row["status"]),
            created_at=parse_utc(row["created_at"]),
            responded_at=_opt_dt(row["responded_at"]),
            expires_at=_opt_dt(row["expires_at"]),
            revoked_at=_opt_dt(row["revoked_at"]),
        )


def _opt_ts(value) -> str | None:
    return format_utc(value) if value is not None else None


def _opt_dt(value: str | None):
    return parse_utc(value) if value else None
