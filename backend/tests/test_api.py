import inspect
import io
import threading
import time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from conftest import StubBackend, StubEncoder, StubOffice
from doc2md import config, db
from doc2md.api import routes
from doc2md.conversion.ai_client import AIConversionClient
from doc2md.conversion.pipeline import FilePreparer
from doc2md.errors import UpstreamCallFailed
from doc2md.main import create_app
from doc2md.scheduler import LoopScheduler, ManualScheduler
from doc2md.upload_cache import LocalObjectStore, UploadCache


@pytest.fixture
def history_db(monkeypatch):
    monkeypatch.setattr(config, "DATABASE_URL", "sqlite:///:memory:")
    db.reset_engine()
    db.init_db()
    yield
    db.reset_engine()


@pytest.fixture
def services(tmp_path):
    scheduler = ManualScheduler()
    backend = StubBackend(completion="Project Plan")
    return SimpleNamespace(
        scheduler=scheduler,
        backend=backend,
        cache=UploadCache(LocalObjectStore(tmp_path / "cache"), scheduler),
        preparer=FilePreparer(StubOffice(), StubEncoder()),
        ai=AIConversionClient(backend, default_model="stub-model"),
    )


@pytest.fixture
def client(services, history_db):
    app = create_app(
        scheduler=services.scheduler,
        upload_cache=services.cache,
        preparer=services.preparer,
        ai_client=services.ai,
        on_task_finished=db.record_task,
        startup=None,
    )
    with TestClient(app) as c:
        yield c


def _upload(client, name="notes.txt", data=b"hello", media_type="text/plain"):
    return client.post("/api/upload", files={"file": (name, data, media_type)})


def _wait_for(client, url, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(url).json()
        if body["status"] in ("completed", "failed"):
            return body
        assert time.monotonic() < deadline, body
        time.sleep(0.01)


def test_health_and_limits(client):
    health = client.get("/api/health").json()
    assert health["status"] == "ok"
    assert health["office_configured"] is True

    limits = client.get("/api/limits").json()
    assert limits["max_files_per_task"] == config.MAX_FILES_PER_TASK
    assert limits["max_media_size_bytes"] > limits["max_document_size_bytes"]


def test_formats(client):
    formats = client.get("/api/convert/formats").json()["formats"]
    assert any(f["media_type"] == "application/pdf" for f in formats)


def test_upload_text(client):
    response = _upload(client)

    assert response.status_code == 200
    body = response.json()
    assert body["filename"] == "notes.txt"
    assert body["size"] == 5
    assert body["media_type"] == "text/plain"
    assert body["expires_in_ms"] == 900_000
    assert body["entry_id"]


def test_upload_image_reports_dimensions(client):
    buf = io.BytesIO()
    Image.new("RGB", (4, 3), "white").save(buf, format="PNG")

    body = _upload(client, "pic.png", buf.getvalue(), "image/png").json()

    assert body["width"] == 4
    assert body["height"] == 3


def test_upload_rejects_broken_image(client):
    response = _upload(client, "pic.png", b"not an image", "image/png")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_input"


def test_upload_rejects_unsupported_type(client):
    response = _upload(client, "bundle.zip", b"PK\x03\x04", "application/zip")

    assert response.status_code == 415
    assert response.json()["detail"]["code"] == "unsupported_format"


def test_upload_size_ceiling(client, monkeypatch):
    monkeypatch.setattr(routes, "MAX_DOCUMENT_SIZE_BYTES", 4)

    response = _upload(client, data=b"hello")

    assert response.status_code == 413
    assert response.json()["detail"]["code"] == "payload_too_large"


def test_upload_empty_file(client):
    assert _upload(client, data=b"").status_code == 400


def test_delete_upload_is_idempotent(client, services):
    entry_id = _upload(client).json()["entry_id"]

    assert client.delete(f"/api/upload/{entry_id}").json() == {"ok": True}
    assert client.delete(f"/api/upload/{entry_id}").json() == {"ok": True}
    assert entry_id not in services.cache


def test_uploads_do_not_start_timer_threads(tmp_path):
    scheduler = LoopScheduler()
    cache = UploadCache(LocalObjectStore(tmp_path / "cache"), scheduler)
    app = create_app(
        scheduler=scheduler,
        upload_cache=cache,
        preparer=FilePreparer(StubOffice(), StubEncoder()),
        ai_client=AIConversionClient(StubBackend(), default_model="stub-model"),
        on_task_finished=None,
        startup=None,
    )

    with TestClient(app) as c:
        for i in range(10):
            assert _upload(c, f"notes-{i}.txt").status_code == 200
        assert len(cache) == 10
        assert not [t for t in threading.enumerate() if isinstance(t, threading.Timer)]

    # shutdown clears the cache and cancels its expiry timers
    assert len(cache) == 0


def test_status_routes_run_on_the_event_loop():
    assert inspect.iscoroutinefunction(routes.conversion_status)
    assert inspect.iscoroutinefunction(routes.summary_status)


def test_conversion_task_flow(client):
    entry_id = _upload(client).json()["entry_id"]

    started = client.post("/api/convert/start", json={"files": [{"entry_id": entry_id}]})
    assert started.status_code == 200
    task_id = started.json()["task_id"]

    body = _wait_for(client, f"/api/convert/status/{task_id}")

    assert body["status"] == "completed"
    assert body["markdown"] == "# Doc\nbody"
    assert body["progress"] == 100
    assert "error" not in body


def test_conversion_failure_is_reported_with_code(client, services):
    services.backend.error = UpstreamCallFailed("Stub AI", "HTTP 503")
    entry_id = _upload(client).json()["entry_id"]
    task_id = client.post("/api/convert/start", json={"files": [entry_id]}).json()["task_id"]

    body = _wait_for(client, f"/api/convert/status/{task_id}")

    assert body["status"] == "failed"
    assert body["code"] == "upstream_call_failed"
    assert "HTTP 503" in body["error"]


def test_expired_upload_fails_task(client, services):
    entry_id = _upload(client).json()["entry_id"]
    services.scheduler.advance(901)

    task_id = client.post("/api/convert/start", json={"files": [{"entry_id": entry_id}]}).json()["task_id"]
    body = _wait_for(client, f"/api/convert/status/{task_id}")

    assert body["status"] == "failed"
    assert body["code"] == "cache_entry_expired"


def test_start_with_empty_list(client):
    response = client.post("/api/convert/start", json={"files": []})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_input"


def test_unknown_task_status(client):
    response = client.get("/api/convert/status/does-not-exist")

    assert response.status_code == 404
    assert response.json()["detail"] == {"error": "Task not found", "code": "task_not_found"}


def test_summary_flow(client):
    task_id = client.post("/api/summarize/start", json={"markdown": "# Long\n\ntext"}).json()["task_id"]

    body = _wait_for(client, f"/api/summarize/status/{task_id}")

    assert body["status"] == "completed"
    assert body["summary"] == "# Doc\nbody"
    # a summary id is not a conversion id
    assert client.get(f"/api/convert/status/{task_id}").status_code == 404


def test_summary_requires_text(client):
    assert client.post("/api/summarize/start", json={"markdown": "  "}).status_code == 400


def test_synchronous_conversion(client):
    response = client.post(
        "/api/convert",
        files=[
            ("files", ("a.txt", b"hello", "text/plain")),
            ("files", ("b.md", b"# B", "text/markdown")),
        ],
    )

    assert response.status_code == 200
    body = response.json()
    assert body["filename"] == "a.md"
    assert body["markdown"] == "Project Plan"
    assert body["stats"]["files"] == 2
    assert body["stats"]["input_bytes"] == 8


def test_generate_title(client, services):
    body = client.post("/api/generate-title", json={"markdown": "# Plan"}).json()
    assert body == {"title": "Project-Plan", "fallback": False}

    services.backend.error = UpstreamCallFailed("Stub AI", "down")
    body = client.post("/api/generate-title", json={"markdown": "# Plan"}).json()
    assert body["fallback"] is True
    assert body["title"].startswith("document-")


def test_session_header_is_created(client):
    response = client.get("/api/session/stats")

    assert response.headers.get("X-Session-ID")
    assert response.json()["tasks"] == 0


def test_session_history(client):
    headers = {"X-Session-ID": "sess-1"}
    entry_id = _upload(client).json()["entry_id"]
    task_id = client.post("/api/convert/start", json={"files": [entry_id]}, headers=headers).json()["task_id"]
    _wait_for(client, f"/api/convert/status/{task_id}")

    deadline = time.monotonic() + 5
    while not client.get("/api/session/activities", headers=headers).json()["activities"]:
        assert time.monotonic() < deadline
        time.sleep(0.01)

    activity = client.get("/api/session/activities", headers=headers).json()["activities"][0]
    assert activity["task_id"] == task_id
    assert activity["kind"] == "convert"
    assert activity["filenames"] == ["notes.txt"]
    assert activity["status"] == "completed"

    stats = client.get("/api/session/stats", headers=headers).json()
    assert stats["tasks"] == 1
    assert stats["completed"] == 1
    assert stats["files_converted"] == 1

    assert client.delete("/api/session/data", headers=headers).json() == {"deleted": 1}
    assert client.get("/api/session/activities", headers=headers).json()["activities"] == []
