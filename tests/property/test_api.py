"""Tests for the HTTP API: submission, polling, validation and stream admission."""

import asyncio
import json
import time
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from conftest import FakeFetcher, FakePublisher, FakeTranscoder
from media_relay.api.deps import get_coordinator, get_stream_gate
from media_relay.api.routes import SubmitJobRequest, media_relay_exception_handler
from media_relay.main import app
from media_relay.services.coordinator import PipelineCoordinator
from media_relay.services.stream_gate import StreamAdmissionGate
from media_relay.utils.errors import (
    CompressionError,
    DownloadError,
    MediaRelayError,
    PersistenceError,
    TeraBoxAPIError,
)


@pytest.fixture
def coordinator(temp_dir: Path) -> PipelineCoordinator:
    return PipelineCoordinator(
        fetcher=FakeFetcher(temp_dir, fail_urls={"https://cdn.example.com/missing.mp4"}),
        transcoder=FakeTranscoder(temp_dir),
        publisher=FakePublisher(),
        temp_dir=temp_dir,
    )


@pytest.fixture
def client(coordinator: PipelineCoordinator) -> Iterator[TestClient]:
    gate = StreamAdmissionGate(max_concurrent=1)
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_stream_gate] = lambda: gate
    # Entering the client keeps one event loop alive so stage tasks keep running.
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def wait_for_terminal(client: TestClient, job_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/jobs/{job_id}").json()
        if body["status"] in ("done", "error") or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


class TestSubmit:
    def test_submit_returns_immediately_and_completes(self, client: TestClient) -> None:
        response = client.post("/api/jobs", json={"source_url": "https://cdn.example.com/a.mp4"})

        assert response.status_code == 200
        body = response.json()
        assert body["job_id"].startswith("job_")
        assert body["status"] == "downloading"

        job = wait_for_terminal(client, body["job_id"])
        assert job["status"] == "done"
        assert job["result"] == f"mock://{body['job_id']}"

    def test_failed_job_reports_error(self, client: TestClient) -> None:
        response = client.post("/api/jobs", json={"source_url": "https://cdn.example.com/missing.mp4"})

        job = wait_for_terminal(client, response.json()["job_id"])

        assert job["status"] == "error"
        assert job["error_type"] == "DownloadError"

    def test_local_file_starts_at_compress(self, client: TestClient, temp_dir: Path) -> None:
        local = temp_dir / "upload_1_clip.mp4"
        local.write_bytes(b"local")

        response = client.post(
            "/api/jobs",
            json={"source_url": "clip.mp4", "local_file_path": str(local), "item_id": 3},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "compressing"
        assert wait_for_terminal(client, response.json()["job_id"])["status"] == "done"

    def test_missing_local_file_is_400(self, client: TestClient, temp_dir: Path) -> None:
        response = client.post(
            "/api/jobs",
            json={"source_url": "clip.mp4", "local_file_path": str(temp_dir / "nope.mp4")},
        )

        assert response.status_code == 400
        assert "not found" in response.json()["detail"]

    def test_local_file_outside_temp_dir_is_rejected(self, client: TestClient, temp_dir: Path) -> None:
        elsewhere = temp_dir.parent / "elsewhere"
        elsewhere.mkdir()
        precious = elsewhere / "precious.txt"
        precious.write_bytes(b"keep me")

        response = client.post(
            "/api/jobs",
            json={"source_url": "x", "local_file_path": str(precious)},
        )

        assert response.status_code == 400
        assert "inside" in response.json()["detail"]
        assert client.get("/api/status").json()["total"] == 0
        assert precious.read_bytes() == b"keep me"

    def test_relative_escape_from_temp_dir_is_rejected(self, client: TestClient, temp_dir: Path) -> None:
        precious = temp_dir.parent / "precious.txt"
        precious.write_bytes(b"keep me")

        response = client.post(
            "/api/jobs",
            json={"source_url": "x", "local_file_path": str(temp_dir / ".." / "precious.txt")},
        )

        assert response.status_code == 400
        assert precious.exists()

    @pytest.mark.parametrize("url", ["not a url", "ftp://cdn.example.com/a.mp4", "https://"])
    def test_non_http_url_is_400(self, client: TestClient, url: str) -> None:
        response = client.post("/api/jobs", json={"source_url": url})

        assert response.status_code == 400
        assert response.json()["error_type"] == "HTTPException"

    def test_missing_field_is_422(self, client: TestClient) -> None:
        response = client.post("/api/jobs", json={})

        assert response.status_code == 422
        body = response.json()
        assert body["error_type"] == "ValidationError"
        assert any(error["loc"][-1] == "source_url" for error in body["errors"])


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc, status_code",
        [
            (DownloadError("Download failed: 404", status_code=404), 502),
            (TeraBoxAPIError(403, "forbidden"), 502),
            (CompressionError("ffmpeg failed (1)", 1, "moov atom not found"), 500),
            (PersistenceError(7, "connection reset"), 503),
            (MediaRelayError("unexpected"), 500),
        ],
    )
    def test_application_errors_map_to_status(self, exc: MediaRelayError, status_code: int) -> None:
        response = asyncio.run(media_relay_exception_handler(None, exc))

        assert response.status_code == status_code
        body = json.loads(response.body)
        assert body == {"detail": str(exc), "error_type": type(exc).__name__}

    def test_error_schema_is_documented(self, client: TestClient) -> None:
        paths = client.get("/openapi.json").json()["paths"]

        assert "400" in paths["/api/jobs"]["post"]["responses"]
        assert "404" in paths["/api/jobs/{job_id}"]["get"]["responses"]


class TestPolling:
    def test_unknown_job_is_404(self, client: TestClient) -> None:
        response = client.get("/api/jobs/job_0_missing")

        assert response.status_code == 404
        assert response.json()["detail"] == "Job not found: job_0_missing"

    def test_status_and_listing(self, client: TestClient) -> None:
        ids = [
            client.post("/api/jobs", json={"source_url": f"https://cdn.example.com/{i}.mp4"}).json()["job_id"]
            for i in range(3)
        ]
        for job_id in ids:
            wait_for_terminal(client, job_id)

        status = client.get("/api/status").json()
        assert status["done_count"] == 3
        assert status["total"] == 3
        assert set(status["per_stage"]) == {"download", "compress", "upload"}

        listed = [job["id"] for job in client.get("/api/jobs").json()]
        assert sorted(listed) == sorted(ids)


class TestStreams:
    def test_admission_and_release(self, client: TestClient) -> None:
        first = client.post("/api/streams/v1").json()
        second = client.post("/api/streams/v2").json()

        assert first == {"item_id": "v1", "streaming": True, "queue_position": None}
        assert second == {"item_id": "v2", "streaming": False, "queue_position": 1}

        client.delete("/api/streams/v1")

        assert client.post("/api/streams/v2").json()["streaming"] is True


class TestRequestModel:
    @given(item_id=st.integers(max_value=0))
    @settings(max_examples=50)
    def test_non_positive_item_ids_rejected(self, item_id: int) -> None:
        with pytest.raises(ValidationError):
            SubmitJobRequest(source_url="https://cdn.example.com/a.mp4", item_id=item_id)

    def test_empty_source_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubmitJobRequest(source_url="")
