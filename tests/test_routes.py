"""Tests for the /director HTTP surface."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from director.errors import UnparseableResponseError
from director.main import create_app

USER = {"X-User-Id": "user-1"}
PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 64


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.delenv("WORKER_SHARED_SECRET", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "development")
    with TestClient(create_app(service=service)) as test_client:
        yield test_client


def _upload(client: TestClient, headers=USER) -> str:
    response = client.post(
        "/director/upload",
        files={"file": ("ring.png", PNG, "image/png")},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["job"]["job_id"]


def _wait_for_stage(client: TestClient, job_id: str, stage: str, timeout_sec: float = 2.0) -> dict:
    deadline = time.time() + timeout_sec
    while time.time() < deadline:
        state = client.get(f"/director/jobs/{job_id}", headers=USER).json()
        if state.get("stage") == stage:
            return state
        time.sleep(0.05)
    return client.get(f"/director/jobs/{job_id}", headers=USER).json()


def test_full_flow_over_http(client):
    job_id = _upload(client)

    pitches = client.post(f"/director/jobs/{job_id}/personas", json={}, headers=USER).json()
    assert len(pitches["pitches"]) == 4

    selected = client.post(f"/director/jobs/{job_id}/persona", json={"persona_id": "minimalist"}, headers=USER)
    assert selected.json()["engine"] == "kling"

    job = client.post(f"/director/jobs/{job_id}/init", json={"scene_count": 2}, headers=USER).json()
    assert job["stage"] == "STORYBOARD_REVIEW"

    for scene in job["scenes"]:
        approved = client.post(f"/director/jobs/{job_id}/scenes/{scene['id']}/approve", headers=USER)
        assert approved.status_code == 200

    rendering = client.post(
        f"/director/jobs/{job_id}/approve",
        json={"scene_ids": [s["id"] for s in job["scenes"]]},
        headers=USER,
    )
    assert rendering.json()["stage"] == "RENDERING"

    done = _wait_for_stage(client, job_id, "COMPLETED")
    assert done["stage"] == "COMPLETED"
    assert done["render_progress"] == 100


def test_policy_violations_map_to_400(client):
    job_id = _upload(client)
    client.post(f"/director/jobs/{job_id}/init", json={}, headers=USER)

    response = client.post(
        f"/director/jobs/{job_id}/refine",
        json={"refinements": [{"scene_id": "scene-1", "status": "YELLOW"}]},
        headers=USER,
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_refinement"

    response = client.post(f"/director/jobs/{job_id}/approve", json={"scene_ids": ["scene-1"]}, headers=USER)
    assert response.status_code == 400
    assert response.json()["detail"]["scene_ids"] == ["scene-1"]


def test_bad_upload_is_400(client):
    response = client.post(
        "/director/upload",
        files={"file": ("anim.gif", b"GIF89a", "image/gif")},
        headers=USER,
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_upload"


def test_ownership_and_missing_jobs(client):
    job_id = _upload(client)
    assert client.get(f"/director/jobs/{job_id}", headers={"X-User-Id": "intruder"}).status_code == 403
    assert client.get("/director/jobs/nope", headers=USER).status_code == 404
    assert client.get(f"/director/jobs/{job_id}").status_code == 422


def test_storyboard_failure_is_502(client, fakes):
    job_id = _upload(client)
    fakes.storyboard_error = UnparseableResponseError("no scenes")

    response = client.post(f"/director/jobs/{job_id}/init", json={}, headers=USER)
    assert response.status_code == 502
    assert client.get(f"/director/jobs/{job_id}", headers=USER).json()["stage"] == "IDLE"


def test_rate_limit_returns_429_with_retry_after(client):
    statuses = [
        client.post("/director/jobs/nope/render-jobs/ghost/cancel", headers=USER).status_code
        for _ in range(6)
    ]
    assert statuses == [404] * 5 + [429]

    denied = client.post("/director/jobs/nope/render-jobs/ghost/cancel", headers=USER)
    assert int(denied.headers["Retry-After"]) >= 1
    assert denied.json()["detail"]["code"] == "rate_limited"

    # other users keep their own budget
    assert client.post("/director/jobs/nope/render-jobs/ghost/cancel", headers={"X-User-Id": "user-2"}).status_code == 404


def test_render_cancel_requires_the_owning_user(client):
    job_id = _upload(client)
    client.post(f"/director/jobs/{job_id}/init", json={"scene_count": 1}, headers=USER)
    client.post(f"/director/jobs/{job_id}/scenes/scene-1/approve", headers=USER)
    rendering = client.post(f"/director/jobs/{job_id}/approve", json={"scene_ids": ["scene-1"]}, headers=USER).json()
    render_id = rendering["render_job_ids"][0]

    intruder = client.post(
        f"/director/jobs/{job_id}/render-jobs/{render_id}/cancel",
        headers={"X-User-Id": "intruder"},
    )
    assert intruder.status_code == 403
    assert client.post(f"/director/jobs/{job_id}/render-jobs/render-unknown/cancel", headers=USER).status_code == 404
    _wait_for_stage(client, job_id, "COMPLETED")


def test_catalog_endpoints(client):
    personas = client.get("/director/personas", headers=USER).json()
    assert {p["id"] for p in personas} == {"newtonian", "visionary", "minimalist", "provocateur"}

    styles = client.get("/director/styles", params={"include_premium": "false"}, headers=USER).json()
    assert styles and all(not s["is_premium"] for s in styles)


def test_health_and_metrics(client):
    assert client.get("/health").json()["status"] == "ok"
    _upload(client)
    snapshot = client.get("/metrics").json()
    assert snapshot["counters"]["requests.upload"] == 1
    assert "upload" in snapshot["latency"]


def test_shared_secret_is_enforced(service, monkeypatch):
    monkeypatch.setenv("WORKER_SHARED_SECRET", "s3cret")
    with TestClient(create_app(service=service)) as client:
        assert client.get("/director/personas", headers=USER).status_code == 401
        ok = client.get("/director/personas", headers={**USER, "X-Worker-Secret": "s3cret"})
        assert ok.status_code == 200
        assert client.get("/health").status_code == 200
