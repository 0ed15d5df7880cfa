from pathlib import Path

from fastapi.testclient import TestClient

from traitgrant.core.config import AppPaths
from traitgrant.web.app import create_app


def _client(tmp_path: Path) -> TestClient:
    project_root = tmp_path / "proj"
    project_root.mkdir(parents=True, exist_ok=True)
    paths = AppPaths(
        project_root=project_root,
        data_dir=project_root / ".traitgrant",
        db_path=project_root / ".traitgrant" / "traitgrant.db",
    )
    app = create_app(paths, start_reaper=False)
    return TestClient(app)


def test_web_app_end_to_end_smoke(tmp_path: Path) -> None:
    client = _client(tmp_path)

    r = client.post("/api/init")
    assert r.status_code == 200
    assert r.json()["ok"] is True

    r = client.post(
        "/api/requests",
        json={
            "subject_id": "p1",
            "requester_id": "d1",
            "requester_display_name": "Dr. Lee",
            "trait_type": "blood_type",
        },
    )
    assert r.status_code == 200
    created = r.json()
    assert created["status"] == "pending"
    assert created["responded_at"] is None
    request_id = created["id"]

    r = client.post(f"/api/requests/{request_id}/respond", json={"approved": True, "expiry_days": 31})
    assert r.status_code == 400

    r = client.post(f"/api/requests/{request_id}/respond", json={"approved": True})
    assert r.status_code == 400

    r = client.post(f"/api/requests/{request_id}/respond", json={"approved": True, "expiry_days": 7})
    assert r.status_code == 200
    approved = r.json()
    assert approved["status"] == "approved"
    assert approved["expires_at"] is not None

    r = client.post(f"/api/requests/{request_id}/respond", json={"approved": False})
    assert r.status_code == 409

    r = client.get("/api/subjects/p1/requests")
    assert r.status_code == 200
    listing = r.json()
    assert listing["count"] == 1
    assert listing["requests"][0]["status"] == "approved"

    r = client.get("/api/subjects/p1/requests/buckets")
    assert r.status_code == 200
    buckets = r.json()
    assert [x["id"] for x in buckets["active"]] == [request_id]
    assert buckets["pending"] == []
    assert buckets["default_expiry_days"] == 7

    r = client.post(f"/api/requests/{request_id}/revoke")
    assert r.status_code == 200
    revoked = r.json()
    assert revoked["status"] == "denied"
    assert revoked["revoked_at"] is not None
    assert revoked["resolution_reason"] == "revoked"

    r = client.post(f"/api/requests/{request_id}/revoke")
    assert r.status_code == 409

    r = client.get(f"/api/requests/{request_id}")
    assert r.status_code == 200
    assert r.json()["status"] == "denied"

    r = client.post("/api/reaper/sweep")
    assert r.status_code == 200
    assert r.json()["failed"] == 0


def test_web_app_error_mapping(tmp_path: Path) -> None:
    client = _client(tmp_path)

    assert client.get("/api/requests/missing").status_code == 404
    assert client.post("/api/requests/missing/revoke").status_code == 404
    assert client.post("/api/requests/missing/respond", json={"approved": False}).status_code == 404

    r = client.post("/api/requests", json={"subject_id": " ", "requester_id": "d1", "trait_type": "blood_type"})
    assert r.status_code == 400

    r = client.get("/api/subjects/nobody/requests")
    assert r.status_code == 200
    assert r.json()["requests"] == []


def test_web_app_rejects_non_integer_expiry_days(tmp_path: Path) -> None:
    client = _client(tmp_path)
    r = client.post("/api/requests", json={"subject_id": "p1", "requester_id": "d1", "trait_type": "blood_type"})
    request_id = r.json()["id"]

    for days in (True, 7.5, "7"):
        r = client.post(f"/api/requests/{request_id}/respond", json={"approved": True, "expiry_days": days})
        assert r.status_code in {400, 422}, days

    r = client.get(f"/api/requests/{request_id}")
    assert r.json()["status"] == "pending"
    assert r.json()["expires_at"] is None
