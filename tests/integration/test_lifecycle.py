from __future__ import annotations
import json
from typing import List, Tuple

import pytest
from fastapi.testclient import TestClient

from coderunner.api.app import create_app
from coderunner.services.job_service import JobService

from conftest import python_settings


def _parse_sse(body: str) -> List[Tuple[str, dict]]:
    events = []
    for block in body.split("\n\n"):
        kind, data = None, None
        for line in block.splitlines():
            if line.startswith("event: "):
                kind = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        if kind is not None:
            events.append((kind, data))
    return events


@pytest.fixture
def client(workspace_root):
    svc = JobService(python_settings(workspace_root))
    with TestClient(create_app(svc)) as c:
        yield c


def test_lifecycle(client):
    r = client.post("/jobs", json={"job_id": "a1", "code": "print('hi')\n", "mode": "run"})
    assert r.status_code == 202
    assert r.json() == {"job_id": "a1"}

    r = client.get("/jobs/a1/events")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _parse_sse(r.text)
    assert ("stdout", {"job_id": "a1", "line": "hi"}) in events
    kind, done = events[-1]
    assert kind == "completed"
    assert done["job_id"] == "a1" and done["exit_code"] == 0 and done["cancelled"] is False
    assert [k for k, _ in events].count("completed") == 1


def test_generated_job_id(client):
    r = client.post("/jobs", json={"code": "print(1)\n"})
    assert r.status_code == 202
    job_id = r.json()["job_id"]
    assert job_id.startswith("job-")
    events = _parse_sse(client.get(f"/jobs/{job_id}/events").text)
    assert events[-1][0] == "completed"


def test_duplicate_and_cancel(client):
    code = "import time\nprint('ready', flush=True)\nwhile True:\n    time.sleep(0.05)\n"
    assert client.post("/jobs", json={"job_id": "a3", "code": code}).status_code == 202
    r = client.post("/jobs", json={"job_id": "a3", "code": code})
    assert r.status_code == 409

    st = client.get("/jobs/a3")
    assert st.status_code == 200 and st.json()["job_id"] == "a3"

    assert client.post("/jobs/a3/cancel").json() == {"ok": True, "reason": None}
    events = _parse_sse(client.get("/jobs/a3/events").text)
    kind, done = events[-1]
    assert kind == "completed" and done["cancelled"] is True and done["exit_code"] == -1

    assert client.post("/jobs/a3/cancel").json() == {"ok": False, "reason": "not_found"}
    assert client.get("/jobs/a3").status_code == 404


def test_failing_program_exit_code(client):
    client.post("/jobs", json={"job_id": "a2", "code": "def broken(:\n"})
    events = _parse_sse(client.get("/jobs/a2/events").text)
    assert any(k == "stderr" for k, _ in events)
    assert events[-1][0] == "completed" and events[-1][1]["exit_code"] != 0


def test_unknown_job(client):
    assert client.get("/jobs/missing/events").status_code == 404
    assert client.get("/jobs/missing").status_code == 404
    assert client.post("/jobs/missing/cancel").json()["ok"] is False


def test_invalid_mode_rejected(client):
    r = client.post("/jobs", json={"code": "x", "mode": "bench"})
    assert r.status_code == 422


def test_launch_error_maps_to_503(workspace_root):
    svc = JobService(python_settings(workspace_root, run_command=["/nonexistent/cargo", "run"]))
    with TestClient(create_app(svc)) as c:
        r = c.post("/jobs", json={"job_id": "x", "code": "print(1)\n"})
        assert r.status_code == 503
        assert r.json()["detail"].startswith("launch_error:")
        assert c.get("/jobs/x/events").status_code == 404


def test_health_and_toolchain(client, monkeypatch):
    assert client.get("/health").json() == {"ok": True, "active_jobs": 0}

    import coderunner.services.toolchain as toolchain
    monkeypatch.setattr(toolchain.shutil, "which", lambda name: None)
    r = client.get("/toolchain")
    assert r.status_code == 200
    assert r.json() == {
        "installed": False,
        "cargo_version": None,
        "rustc_version": None,
        "rustup_version": None,
    }
