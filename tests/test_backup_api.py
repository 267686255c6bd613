import threading

import pytest
from fastapi.testclient import TestClient

from conftest import FakeRuntime
from snapshot_server.config import Settings, get_settings
from snapshot_server.main import app
from snapshot_server.services.runtime_providers import get_runtime


@pytest.fixture
def fake_runtime(tmp_path):
    return FakeRuntime(files={"/var/backups/db.sql": b"dump"}, output=b"/var/backups/db.sql\n")


@pytest.fixture
def settings():
    s = Settings()
    s.ACCEPT_GRACE_SECONDS = 0
    s.BACKUP_ROOT = None
    s.RUN_LOG_DIR = None
    return s


@pytest.fixture
def client(fake_runtime, settings):
    app.dependency_overrides[get_runtime] = lambda: fake_runtime
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _body(tmp_path, **kw):
    body = {
        "name": "web",
        "ephemeral": True,
        "profiles": ["-", "nonet"],
        "command": ["/usr/local/bin/backup"],
        "environment": {"TZ": "UTC"},
        "destination": str(tmp_path / "out"),
    }
    body.update(kw)
    return body


def _registry(client):
    return client.app.state.registry


def test_accept_then_poll_success_once(client, tmp_path):
    resp = client.post("/backup", json=_body(tmp_path))
    assert resp.status_code == 202
    job_id = resp.headers["Request-ID"]
    assert resp.json()["id"] == job_id
    assert resp.json()["status"] == "accepted"
    assert resp.json()["name"] == "web"
    assert resp.json()["clone"].startswith("web-backup-")

    assert _registry(client).wait(job_id, timeout=5)

    first = client.get("/backup", headers={"Request-Id": job_id})
    assert first.status_code == 200
    assert first.headers["Request-ID"] == job_id
    assert (tmp_path / "out" / "db.sql").read_bytes() == b"dump"

    second = client.get("/backup", headers={"Request-Id": job_id})
    assert second.status_code == 404


def test_poll_reports_processing_until_done(client, fake_runtime, tmp_path):
    fake_runtime.exec_gate = threading.Event()
    job_id = client.post("/backup", json=_body(tmp_path)).headers["Request-ID"]

    resp = client.get("/backup", headers={"Request-Id": job_id})
    assert resp.status_code == 202
    assert resp.json()["status"] == "processing"
    assert job_id in client.get("/backup/list").json()

    fake_runtime.exec_gate.set()
    assert _registry(client).wait(job_id, timeout=5)
    assert client.get("/backup", headers={"Request-Id": job_id}).status_code == 200


def test_failed_job_returns_error_body(client, fake_runtime, tmp_path):
    fake_runtime.fail["exec"] = "command not found"
    job_id = client.post("/backup", json=_body(tmp_path)).headers["Request-ID"]
    assert _registry(client).wait(job_id, timeout=5)

    resp = client.get("/backup", headers={"Request-Id": job_id})
    assert resp.status_code == 500
    assert "command not found" in resp.json()["error"]
    assert fake_runtime.count("set_state", "stop") == 1


def test_poll_without_header_is_bad_request(client):
    resp = client.get("/backup")
    assert resp.status_code == 400
    assert "Request-ID" in resp.headers


def test_poll_unknown_id_is_not_found(client):
    resp = client.get("/backup", headers={"Request-Id": "deadbeef"})
    assert resp.status_code == 404
    assert resp.headers["Request-ID"] == "deadbeef"


def test_unknown_container_is_not_found(client, tmp_path):
    resp = client.post("/backup", json=_body(tmp_path, name="ghost"))
    assert resp.status_code == 404
    assert "ghost" in resp.json()["error"]
    assert client.get("/backup/list").json() == []


def test_runtime_lookup_failure_is_internal_error(client, fake_runtime, tmp_path):
    fake_runtime.fail["lookup"] = "connection refused"
    resp = client.post("/backup", json=_body(tmp_path))
    assert resp.status_code == 500
    assert "connection refused" in resp.json()["error"]


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "web"},
        {"name": "web", "command": [], "destination": "/srv"},
        {"name": "web", "command": ["x"], "destination": "relative/dir"},
        {"name": "web", "command": ["x"], "destination": "/srv", "clone_name": "evil"},
    ],
)
def test_malformed_body_is_bad_request(client, payload):
    resp = client.post("/backup", json=payload)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation error"


def test_invalid_json_is_bad_request(client):
    resp = client.post("/backup", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400


def test_caller_supplied_id_is_used_and_must_be_unique(client, fake_runtime, tmp_path):
    fake_runtime.exec_gate = threading.Event()
    headers = {"Request-Id": "nightly-42"}

    first = client.post("/backup", json=_body(tmp_path), headers=headers)
    assert first.status_code == 202
    assert first.headers["Request-ID"] == "nightly-42"

    second = client.post("/backup", json=_body(tmp_path), headers=headers)
    assert second.status_code == 409

    fake_runtime.exec_gate.set()
    assert _registry(client).wait("nightly-42", timeout=5)


def test_invalid_caller_id_is_rejected(client, tmp_path):
    resp = client.post("/backup", json=_body(tmp_path), headers={"Request-Id": "bad id/.."})
    assert resp.status_code == 400


def test_list_returns_tracked_ids(client, fake_runtime, tmp_path):
    fake_runtime.exec_gate = threading.Event()
    ids = {client.post("/backup", json=_body(tmp_path)).headers["Request-ID"] for _ in range(3)}

    listed = client.get("/backup/list")
    assert listed.status_code == 200
    assert set(listed.json()) == ids

    fake_runtime.exec_gate.set()
    for job_id in ids:
        assert _registry(client).wait(job_id, timeout=5)


def test_grace_window_returns_fast_result_synchronously(client, settings, tmp_path):
    settings.ACCEPT_GRACE_SECONDS = 5
    resp = client.post("/backup", json=_body(tmp_path))
    assert resp.status_code == 200
    job_id = resp.headers["Request-ID"]
    # already consumed
    assert client.get("/backup", headers={"Request-Id": job_id}).status_code == 404


def test_grace_window_returns_fast_failure_synchronously(client, settings, fake_runtime, tmp_path):
    settings.ACCEPT_GRACE_SECONDS = 5
    fake_runtime.fail["clone"] = "no space left"
    resp = client.post("/backup", json=_body(tmp_path))
    assert resp.status_code == 500
    assert "no space left" in resp.json()["error"]


def test_destination_outside_backup_root_is_rejected(client, settings, tmp_path):
    settings.BACKUP_ROOT = str(tmp_path / "backups")
    resp = client.post("/backup", json=_body(tmp_path, destination="/etc"))
    assert resp.status_code == 400

    inside = client.post("/backup", json=_body(tmp_path, destination=str(tmp_path / "backups" / "web")))
    assert inside.status_code == 202
    assert _registry(client).wait(inside.headers["Request-ID"], timeout=5)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert "Request-ID" in resp.headers


def test_health_reflects_injected_settings(client, settings):
    settings.BACKUP_ROOT = "/srv/backups"
    resp = client.get("/health")
    assert resp.json()["jobs_config"]["backup_root"] == "/srv/backups"
