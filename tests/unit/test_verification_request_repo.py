from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from traitgrant.core.errors import NotFoundError, TransitionConflictError, UnavailableError
from traitgrant.domain.models.verification_request import VerificationRequest, VerificationStatus
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo
from traitgrant.infrastructure.db.sqlite import get_connection, initialize_schema

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _repo(tmp_path: Path) -> VerificationRequestRepo:
    db_path = tmp_path / "traitgrant.db"
    schema_path = (
        Path(__file__).resolve().parents[2]
        / "src"
        / "traitgrant"
        / "infrastructure"
        / "db"
        / "schema.sql"
    )
    initialize_schema(db_path, schema_path)
    return VerificationRequestRepo(db_path)


def _pending(request_id: str, created_at: datetime = T0, subject_id: str = "p1") -> VerificationRequest:
    return VerificationRequest(
        id=request_id,
        subject_id=subject_id,
        requester_id="d1",
        requester_display_name="Dr. Lee",
        trait_type="blood_type",
        status=VerificationStatus.PENDING,
        created_at=created_at,
    )


def _deny(at: datetime):
    def mutator(record: VerificationRequest) -> VerificationRequest:
        return replace(record, status=VerificationStatus.DENIED, responded_at=at)

    return mutator


def test_insert_and_get_preserves_millisecond_timestamps(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    created = T0 + timedelta(milliseconds=123)
    repo.insert(_pending("r1", created_at=created))

    record = repo.get("r1")
    assert record.created_at == created
    assert record.created_at.tzinfo is not None
    assert record.status == VerificationStatus.PENDING
    assert record.responded_at is None
    assert record.expires_at is None
    assert record.requester_display_name == "Dr. Lee"


def test_get_unknown_raises_not_found(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    with pytest.raises(NotFoundError):
        repo.get("missing")


def test_list_by_subject_orders_newest_first_then_by_id(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert(_pending("b", created_at=T0))
    repo.insert(_pending("a", created_at=T0))
    repo.insert(_pending("c", created_at=T0 + timedelta(hours=1)))
    repo.insert(_pending("z", created_at=T0 + timedelta(hours=2), subject_id="other"))

    ids = [r.id for r in repo.list_by_subject("p1")]
    assert ids == ["c", "a", "b"]
    assert repo.list_by_subject("nobody") == []


def test_compare_and_transition_applies_mutator(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert(_pending("r1"))
    at = T0 + timedelta(minutes=5)

    updated = repo.compare_and_transition("r1", VerificationStatus.PENDING, _deny(at))

    assert updated.status == VerificationStatus.DENIED
    assert repo.get("r1") == updated
    assert repo.get("r1").responded_at == at


def test_compare_and_transition_conflict_leaves_record_untouched(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert(_pending("r1"))

    with pytest.raises(TransitionConflictError) as excinfo:
        repo.compare_and_transition("r1", VerificationStatus.APPROVED, _deny(T0))

    assert excinfo.value.current is not None
    assert excinfo.value.current.status == VerificationStatus.PENDING
    assert repo.get("r1").status == VerificationStatus.PENDING


def test_compare_and_transition_unknown_raises_not_found(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    with pytest.raises(NotFoundError):
        repo.compare_and_transition("missing", VerificationStatus.PENDING, _deny(T0))


def test_mutator_may_not_change_immutable_fields(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert(_pending("r1"))

    def hijack(record: VerificationRequest) -> VerificationRequest:
        return replace(record, subject_id="p2", status=VerificationStatus.DENIED, responded_at=T0)

    with pytest.raises(ValueError):
        repo.compare_and_transition("r1", VerificationStatus.PENDING, hijack)
    assert repo.get("r1").subject_id == "p1"
    assert repo.get("r1").status == VerificationStatus.PENDING


def test_mutator_error_rolls_back(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert(_pending("r1"))

    def boom(record: VerificationRequest) -> VerificationRequest:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        repo.compare_and_transition("r1", VerificationStatus.PENDING, boom)

    # The store is still writable afterwards.
    updated = repo.compare_and_transition("r1", VerificationStatus.PENDING, _deny(T0))
    assert updated.status == VerificationStatus.DENIED


def test_concurrent_transitions_only_one_succeeds(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert(_pending("r1"))
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[str] = []
    lock = threading.Lock()

    def _attempt(idx: int) -> None:
        local_repo = VerificationRequestRepo(repo.db_path)
        barrier.wait()
        try:
            local_repo.compare_and_transition(
                "r1", VerificationStatus.PENDING, _deny(T0 + timedelta(seconds=idx))
            )
            outcome = f"ok:{idx}"
        except TransitionConflictError:
            outcome = "conflict"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_attempt, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    winners = [r for r in results if r.startswith("ok:")]
    assert len(results) == workers
    assert len(winners) == 1
    winner_idx = int(winners[0].split(":")[1])
    assert repo.get("r1").responded_at == T0 + timedelta(seconds=winner_idx)


def test_list_expired_approved_filters_by_expiry(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    for request_id, days in (("short", 1), ("long", 10)):
        repo.insert(_pending(request_id))
        repo.compare_and_transition(
            request_id,
            VerificationStatus.PENDING,
            lambda r, d=days: replace(
                r,
                status=VerificationStatus.APPROVED,
                responded_at=T0,
                expires_at=T0 + timedelta(days=d),
            ),
        )
    repo.insert(_pending("pending"))

    expired = repo.list_expired_approved(T0 + timedelta(days=2))
    assert [r.id for r in expired] == ["short"]
    assert repo.list_expired_approved(T0 + timedelta(days=1))[0].id == "short"
    assert repo.list_expired_approved(T0 + timedelta(hours=23)) == []


def test_locked_store_raises_unavailable_and_changes_nothing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = _repo(tmp_path)
    repo.insert(_pending("r1"))

    monkeypatch.setenv("TRAITGRANT_SQLITE_CONNECT_TIMEOUT_SECONDS", "0.05")
    monkeypatch.setenv("TRAITGRANT_SQLITE_BUSY_TIMEOUT_MS", "50")

    blocker = get_connection(repo.db_path)
    blocker.execute("BEGIN IMMEDIATE;")
    try:
        with pytest.raises(UnavailableError):
            repo.compare_and_transition("r1", VerificationStatus.PENDING, _deny(T0))
    finally:
        blocker.rollback()
        blocker.close()

    assert repo.get("r1").status == VerificationStatus.PENDING
