"""Tests for the REST API."""

import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient  # noqa: E402

from asset_reducer import api  # noqa: E402
from asset_reducer.store import AssetStore  # noqa: E402


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(api, "UPLOAD_DIR", tmp_path / "uploads")
    monkeypatch.setattr(api, "OUTPUT_DIR", tmp_path / "outputs")
    monkeypatch.setattr(api, "job_store", api.JobStore())
    return TestClient(api.app)


@pytest.fixture
def upload(write_source):
    path = write_source("crate", cols=100, rows=50)
    return {"file": ("crate.lodz", path.read_bytes(), "application/octet-stream")}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_analyze(client, upload, tmp_path):
    response = client.post("/analyze", files=upload)

    assert response.status_code == 200
    data = response.json()
    assert data["triangle_count"] == 10000
    assert data["part_count"] == 1
    assert {entry["quality"] for entry in data["suggested_levels"]} == {"original", "standard", "minimal"}
    # upload removed after analysis
    assert list((tmp_path / "uploads").iterdir()) == []


def test_analyze_rejects_unknown_extension(client):
    response = client.post("/analyze", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 400


def test_analyze_unreadable_asset(client):
    response = client.post("/analyze", files={"file": ("broken.lodz", b"garbage", "application/octet-stream")})
    assert response.status_code == 400
    assert "broken.lodz" in response.json()["detail"]


def test_reduce_job_lifecycle(client, upload, tmp_path):
    response = client.post("/reduce", params={"qualities": "standard,minimal"}, files=upload)
    assert response.status_code == 200
    job = response.json()
    assert job["qualities"] == ["standard", "minimal"]

    status = client.get(f"/jobs/{job['job_id']}").json()
    assert status["status"] == "completed"
    assert status["progress"] == 1.0
    outputs = {output["quality"]: output for output in status["outputs"]}
    assert set(outputs) == {"standard", "minimal"}
    assert 200 <= outputs["standard"]["triangle_count"] <= 3000

    download = client.get(outputs["minimal"]["download_url"])
    assert download.status_code == 200
    saved = tmp_path / "downloaded.lodz"
    saved.write_bytes(download.content)
    assert AssetStore().load(saved).triangle_count == outputs["minimal"]["triangle_count"]


def test_reduce_custom_ratio(client, upload):
    response = client.post("/reduce", params={"qualities": "custom", "ratio": 0.5}, files=upload)
    assert response.status_code == 200
    assert response.json()["qualities"] == ["custom_50"]


def test_reduce_rejects_bad_qualities(client, upload):
    assert client.post("/reduce", params={"qualities": "ultra"}, files=upload).status_code == 400
    assert client.post("/reduce", params={"qualities": "custom"}, files=upload).status_code == 400


def test_reduce_unreadable_asset_fails_job(client):
    files = {"file": ("broken.lodz", b"garbage", "application/octet-stream")}
    job = client.post("/reduce", files=files).json()

    status = client.get(f"/jobs/{job['job_id']}").json()
    assert status["status"] == "failed"
    assert status["error_message"]
    assert status["outputs"] == []


def test_unknown_job(client):
    assert client.get("/jobs/missing").status_code == 404
    assert client.get("/download/missing/standard").status_code == 404


def test_download_unknown_quality(client, upload):
    job = client.post("/reduce", params={"qualities": "minimal"}, files=upload).json()
    assert client.get(f"/download/{job['job_id']}/standard").status_code == 404
