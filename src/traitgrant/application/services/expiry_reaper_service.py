from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime

from traitgrant.application.services.lifecycle_service import LifecycleService
from traitgrant.core.config import read_float_env, read_int_env
from traitgrant.core.errors import NotFoundError, TransitionConflictError
from traitgrant.core.time import ensure_utc, now_utc
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReapReport:
    scanned: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0


class ExpiryReaperService:
    """Retires approved grants whose expiry has passed.

    Runs on its own thread, independent of reads. Each record is handled in its
    own guarded transition, so a lost race or a failing record never stops the
    sweep and never reaches foreground callers.
    """

    _DEFAULT_INTERVAL_SECONDS = 60.0
    _DEFAULT_BATCH_SIZE = 500

    def __init__(
        self,
        request_repo: VerificationRequestRepo,
        lifecycle: LifecycleService | None = None,
        *,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.request_repo = request_repo
        self.lifecycle = lifecycle or LifecycleService(request_repo)
        self.interval_seconds = interval_seconds or read_float_env(
            "TRAITGRANT_REAPER_INTERVAL_SECONDS", self._DEFAULT_INTERVAL_SECONDS
        )
        self.batch_size = batch_size or read_int_env("TRAITGRANT_REAPER_BATCH_SIZE", self._DEFAULT_BATCH_SIZE)
        self._stop = threading.Event()
        self._wakeup = threading.Event()
        self._worker: threading.Thread | None = None

    def sweep(self, now: datetime | None = None) -> ReapReport:
        at = ensure_utc(now) if now is not None else now_utc()
        report = ReapReport()
        # Records that were skipped or failed stay approved; remember them so the
        # batch loop does not fetch them forever.
        passed_over: set[str] = set()

        while True:
            limit = self.batch_size + len(passed_over)
            batch = self.request_repo.list_expired_approved(at, limit=limit)
            candidates = [r for r in batch if r.id not in passed_over]
            for record in candidates:
                report.scanned += 1
                try:
                    self.lifecycle.expire(record.id, now=at)
                    report.expired += 1
                except (TransitionConflictError, NotFoundError):
                    logger.debug("Expiry of %s lost a race; skipping", record.id)
                    report.skipped += 1
                    passed_over.add(record.id)
                except Exception:
                    logger.exception("Failed to expire verification request: %s", record.id)
                    report.failed += 1
                    passed_over.add(record.id)
            if len(batch) < limit:
                break

        if report.expired or report.failed:
            logger.info(
                "Expiry sweep: scanned=%d expired=%d skipped=%d failed=%d",
                report.scanned,
                report.expired,
                report.skipped,
                report.failed,
            )
        return report

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._worker_loop, daemon=True, name="expiry-reaper")
        self._worker.start()

    def shutdown(self) -> None:
        self._stop.set()
        self._wakeup.set()
        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=2.0)

    def wake(self) -> None:
        self._wakeup.set()

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Expiry sweep failed")
            self._wakeup.wait(timeout=self.interval_seconds)
            self._wakeup.clear()
