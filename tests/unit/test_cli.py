from __future__ import annotations

from pathlib import Path

import pytest

from traitgrant.cli.main import main
from traitgrant.core.config import load_paths
from traitgrant.infrastructure.db.repos.verification_request_repo import VerificationRequestRepo


@pytest.fixture(autouse=True)
def _no_home_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TRAITGRANT_HOME", raising=False)


def test_commands_require_init(tmp_path: Path) -> None:
    assert main(["--project-root", str(tmp_path), "requests", "list", "--subject", "p1"]) == 1


def test_submit_respond_and_revoke_flow(tmp_path: Path) -> None:
    root = ["--project-root", str(tmp_path)]
    assert main([*root, "init"]) == 0
    assert main([*root, "requests", "submit", "--subject", "p1", "--requester", "d1", "--trait", "blood_type"]) == 0

    repo = VerificationRequestRepo(load_paths(tmp_path).db_path)
    (record,) = repo.list_by_subject("p1")

    assert main([*root, "requests", "respond", record.id, "--approve", "--days", "0"]) == 1
    assert main([*root, "requests", "respond", record.id, "--approve", "--days", "3"]) == 0
    assert repo.get(record.id).status.value == "approved"

    assert main([*root, "requests", "list", "--subject", "p1"]) == 0
    assert main([*root, "requests", "show", record.id]) == 0
    assert main([*root, "requests", "revoke", record.id]) == 0
    assert main([*root, "requests", "revoke", record.id]) == 1
    assert repo.get(record.id).revoked_at is not None

    assert main([*root, "reap"]) == 0
