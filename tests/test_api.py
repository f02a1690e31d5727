"""
End-to-end API tests against a pipeline with scripted engines.

Run with: pytest tests/test_api.py -v
"""

import json
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEngine, write_image, write_mp4_stub
from media_pipeline.core.operations import MediaKind
from media_pipeline.core.pipeline import MediaPipeline
from media_pipeline.core.storage import LocalArtifactStorage
from media_pipeline.main import create_app
from media_pipeline.routers import jobs, uploads


@pytest.fixture
def pipeline(tmp_path, watermark_dir):
    return MediaPipeline(
        storage=LocalArtifactStorage(),
        engines={
            MediaKind.IMAGE: FakeEngine(MediaKind.IMAGE, width=64, height=48),
            MediaKind.VIDEO: FakeEngine(MediaKind.VIDEO, width=1280, height=720),
        },
        upload_dir=tmp_path / "uploads",
        processed_dir=tmp_path / "processed",
        watermark_dir=watermark_dir,
    )


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline=pipeline, debug=True)) as test_client:
        yield test_client


@pytest.fixture
def png_bytes(tmp_path):
    return write_image(tmp_path / "upload-source.png", 64, 48).read_bytes()


def wait_for_state(client, job_id, states=("completed", "failed"), timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/jobs/{job_id}").json()
        if body["state"] in states:
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not reach {states}")


def assert_error(response, status, code):
    assert response.status_code == status
    error = response.json()["error"]
    assert error["code"] == code
    assert error["message"]
    return error


class TestImageUpload:
    def test_accepted_and_completed(self, client, png_bytes):
        response = client.post(
            "/api/images",
            files={"file": ("photo.png", png_bytes, "image/png")},
            data={"operations": json.dumps({"resize": {"width": 32}, "format": "webp"})},
        )
        assert response.status_code == 202
        body = response.json()
        assert body["jobId"].startswith("img-")
        assert body["state"] == "waiting"
        assert body["priority"] == "normal"
        assert body["operations"] == ["resize:32xauto", "format:webp:q80"]
        assert body["statusUrl"] == f"/api/jobs/{body['jobId']}"
        assert body["estimatedProcessingTime"].endswith("seconds")

        status = wait_for_state(client, body["jobId"])
        assert status["state"] == "completed"
        assert status["progress"] == 100
        assert status["result"]["media"]["width"] == 64
        assert status["downloadUrl"] == f"/api/jobs/{body['jobId']}/download"
        assert status["attempts_remaining"] == 2
        assert status["compression_ratio"] is not None
        assert status["artifact_expired"] is False

        download = client.get(status["downloadUrl"])
        assert download.status_code == 200
        assert download.content == b"transformed"
        assert "photo_processed.webp" in download.headers["content-disposition"]

    def test_priority_hint(self, client, png_bytes):
        response = client.post(
            "/api/images",
            files={"file": ("photo.png", png_bytes, "image/png")},
            data={"priority": "critical"},
        )
        assert response.status_code == 202
        assert response.json()["priority"] == "critical"

    def test_bad_operations_json(self, client, png_bytes, pipeline):
        response = client.post(
            "/api/images",
            files={"file": ("photo.png", png_bytes, "image/png")},
            data={"operations": "{not json"},
        )
        assert_error(response, 400, "INVALID_OPERATIONS")
        assert list(pipeline.upload_dir.iterdir()) == []

    def test_rejected_upload_is_discarded(self, client, png_bytes, pipeline):
        response = client.post(
            "/api/images",
            files={"file": ("photo.png", png_bytes, "image/png")},
            data={"operations": json.dumps({"explode": True})},
        )
        error = assert_error(response, 400, "UNSUPPORTED_OPERATION")
        assert "supported" in error["details"]
        assert list(pipeline.upload_dir.iterdir()) == []

    def test_wrong_media_type(self, client):
        response = client.post(
            "/api/images",
            files={"file": ("notes.txt", b"x" * 500, "text/plain")},
        )
        assert_error(response, 400, "UNSUPPORTED_MIME_TYPE")

    def test_disguised_executable(self, client):
        response = client.post(
            "/api/images",
            files={"file": ("photo.png", b"MZ" + b"\x00" * 500, "image/png")},
        )
        assert_error(response, 400, "INVALID_FILE_HEADER")

    def test_too_large(self, client, png_bytes, pipeline, monkeypatch):
        monkeypatch.setitem(uploads._SIZE_CAPS, MediaKind.IMAGE, 200)
        response = client.post(
            "/api/images",
            files={"file": ("photo.png", png_bytes, "image/png")},
        )
        assert_error(response, 413, "FILE_TOO_LARGE")
        assert list(pipeline.upload_dir.iterdir()) == []

    def test_missing_file_field(self, client):
        response = client.post("/api/images", data={"operations": "{}"})
        assert_error(response, 422, "INVALID_OPERATIONS")


class TestVideoUpload:
    def test_accepted_and_completed(self, client, tmp_path):
        data = write_mp4_stub(tmp_path / "clip-source.mp4").read_bytes()
        response = client.post(
            "/api/videos",
            files={"file": ("clip.mp4", data, "video/mp4")},
            data={"operations": json.dumps({"watermark": {"text": "demo"}, "quality": 60})},
        )
        assert response.status_code == 202
        body = response.json()
        assert body["jobId"].startswith("vid-")
        assert body["priority"] == "high"

        status = wait_for_state(client, body["jobId"])
        assert status["state"] == "completed"
        assert status["result"]["media"]["duration"] == 12.5

    def test_image_operations_rejected(self, client, tmp_path):
        data = write_mp4_stub(tmp_path / "clip-source.mp4").read_bytes()
        response = client.post(
            "/api/videos",
            files={"file": ("clip.mp4", data, "video/mp4")},
            data={"operations": json.dumps({"rotate": 90})},
        )
        assert_error(response, 400, "UNSUPPORTED_OPERATION")


class TestJobs:
    def test_malformed_job_id(self, client):
        assert_error(client.get("/api/jobs/not-a-job"), 400, "INVALID_JOB_ID")

    def test_unknown_job(self, client):
        assert_error(client.get("/api/jobs/img-deadbeef"), 404, "JOB_NOT_FOUND")

    def test_download_unknown_job(self, client):
        assert_error(client.get("/api/jobs/vid-deadbeef/download"), 404, "JOB_NOT_FOUND")

    def test_unknown_route(self, client):
        assert_error(client.get("/api/nothing"), 404, "HTTP_404")

    def test_missing_artifact_drops_download_url(self, client, png_bytes):
        job_id = client.post("/api/images", files={"file": ("photo.png", png_bytes, "image/png")}).json()["jobId"]
        status = wait_for_state(client, job_id)
        assert status["downloadUrl"]

        Path(status["result"]["output_path"]).unlink()

        status = client.get(f"/api/jobs/{job_id}").json()
        assert status["state"] == "completed"
        assert status["downloadUrl"] is None
        assert_error(client.get(f"/api/jobs/{job_id}/download"), 404, "FILE_NOT_FOUND")


class TestBulkStatus:
    def test_mixed_ids(self, client, png_bytes):
        job_id = client.post("/api/images", files={"file": ("photo.png", png_bytes, "image/png")}).json()["jobId"]
        wait_for_state(client, job_id)

        response = client.get("/api/jobs", params={"ids": f"{job_id}, vid-deadbeef,not-a-job,{job_id}"})
        assert response.status_code == 200
        jobs = response.json()["jobs"]
        assert list(jobs) == [job_id, "vid-deadbeef", "not-a-job"]
        assert jobs[job_id]["found"] is True
        assert jobs[job_id]["job"]["state"] == "completed"
        assert jobs[job_id]["job"]["downloadUrl"] == f"/api/jobs/{job_id}/download"
        assert jobs["vid-deadbeef"] == {
            "found": False,
            "job": None,
            "error": {"code": "JOB_NOT_FOUND", "message": "Job vid-deadbeef not found", "details": {"job_id": "vid-deadbeef"}},
        }
        assert jobs["not-a-job"]["error"]["code"] == "INVALID_JOB_ID"

    @pytest.mark.parametrize("query", ["", "?ids=", "?ids=,%20,"])
    def test_missing_ids(self, client, query):
        assert_error(client.get(f"/api/jobs{query}"), 400, "MISSING_JOB_IDS")

    def test_too_many_ids(self, client):
        ids = ",".join(f"img-{n:08x}" for n in range(jobs.MAX_BULK_JOB_IDS + 1))
        error = assert_error(client.get("/api/jobs", params={"ids": ids}), 400, "TOO_MANY_JOB_IDS")
        assert error["details"]["maximum"] == jobs.MAX_BULK_JOB_IDS


class TestOperationPreview:
    def test_image_plan(self, client, pipeline):
        response = client.post(
            "/api/images/validate-operations",
            json={"operations": {"format": "webp", "resize": {"width": 32}}, "mediaType": "image/png"},
        )
        assert response.status_code == 200
        assert response.json() == {
            "valid": True,
            "kind": "image",
            "operations": ["resize:32xauto", "format:webp:q80"],
            "requestedCount": 1,
            "outputFormat": "webp",
        }
        assert list(pipeline.upload_dir.iterdir()) == []
        assert pipeline.runtime(MediaKind.IMAGE).stats.snapshot().processed == 0

    def test_image_defaults_to_jpeg_source(self, client):
        body = client.post("/api/images/validate-operations", json={"operations": {}}).json()
        assert body["operations"] == ["format:jpeg:q85"]

    def test_video_plan(self, client):
        response = client.post(
            "/api/videos/validate-operations",
            json={"operations": {"trim": {"startTime": 5, "endTime": 20}, "watermark": {"text": "demo"}}},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "video"
        assert body["operations"][0] == "trim:5-20"
        assert body["requestedCount"] == 2
        assert body["outputFormat"] == "mp4"

    def test_trim_checked_against_duration(self, client):
        response = client.post(
            "/api/videos/validate-operations",
            json={"operations": {"trim": {"startTime": 5, "endTime": 20}}, "duration": 10},
        )
        assert_error(response, 400, "INVALID_TRIM")

    def test_rejected_operations(self, client):
        response = client.post("/api/images/validate-operations", json={"operations": {"explode": True}})
        assert_error(response, 400, "UNSUPPORTED_OPERATION")

    def test_unknown_media_type(self, client):
        response = client.post(
            "/api/videos/validate-operations",
            json={"operations": {}, "mediaType": "image/png"},
        )
        assert_error(response, 415, "UNSUPPORTED_MIME_TYPE")


class TestSecurityHeaders:
    def test_api_responses(self, client):
        response = client.get("/api/jobs/img-deadbeef")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert response.headers["Strict-Transport-Security"].startswith("max-age=31536000")
        assert "default-src 'none'" in response.headers["Content-Security-Policy"]
        assert response.headers["Cache-Control"] == "no-store"

    def test_docs_keep_their_assets(self, client):
        response = client.get("/docs")
        assert response.status_code == 200
        assert "Content-Security-Policy" not in response.headers
        assert response.headers["X-Frame-Options"] == "DENY"


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] in ("healthy", "degraded")
        assert body["processed"] == 0
        assert body["queueDepth"] == 0
        assert "avgProcessingTimeMs" in body

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"

    def test_request_id_generated(self, client):
        assert client.get("/health").headers["X-Request-ID"]

    def test_stats_per_queue(self, client, png_bytes):
        response = client.post("/api/images", files={"file": ("photo.png", png_bytes, "image/png")})
        wait_for_state(client, response.json()["jobId"])

        stats = client.get("/api/stats").json()
        assert set(stats["queues"]) == {"image", "video"}
        image = stats["queues"]["image"]
        assert image["processed"] == 1
        assert image["details"]["jobs"]["completed"] == 1
        assert image["details"]["pendingCleanup"] == 1
        assert "totalVideoDuration" in stats["queues"]["video"]["details"]
        assert stats["processed"] == 1
