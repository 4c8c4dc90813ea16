import base64
import json
import os
import threading
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from creastudio import studio_server
from creastudio.config.config import config
from creastudio.storage import StudioStorage
from creastudio.studio_server import StudioState, app, set_state
from creastudio.tools.catalog import load_catalog
from creastudio.utils.genai_client import CredentialRejectedError
from creastudio.workflows.video_job import CredentialState

PNG_URL = "data:image/png;base64," + base64.b64encode(b"\x89PNG-avatar").decode("ascii")


@pytest.fixture
def studio(tmp_path, fake_api):
    storage = StudioStorage.open(tmp_path / "studio.db")
    settings = dict(config)
    settings["results_dir"] = str(tmp_path / "results")
    state = StudioState(
        api=fake_api,
        storage=storage,
        catalog=load_catalog(config["catalog_file"]),
        settings=settings,
        credentials=CredentialState(selected=True),
        sleep=lambda _sec: None,
    )
    set_state(state)
    yield TestClient(app), state
    set_state(None)
    storage.close()


def _events(resp):
    return [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]


def _wait_for(client, job_id, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        job = client.get(f"/video/jobs/{job_id}").json()
        if not job["running"]:
            return job
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


def test_health_and_tools(studio):
    client, _ = studio
    assert client.get("/health").json()["status"] == "healthy"
    tool_ids = {t["tool_id"] for t in client.get("/tools").json()}
    assert {"ai_presenter", "story_generator", "image_studio"} <= tool_ids


def test_run_image_tool(studio, fake_api):
    client, _ = studio
    resp = client.post("/tools/image_studio/run", json={"values": {"prompt": "A castle in the clouds"}})
    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert base64.b64decode(body["content"]["data"]) == fake_api.images[0].data
    assert body["output_path"].endswith(".png")


def test_run_with_missing_fields_is_422(studio, fake_api):
    client, _ = studio
    resp = client.post("/tools/image_studio/run", json={"values": {"prompt": " "}})
    assert resp.status_code == 422
    assert resp.json()["detail"]["fields"] == ["prompt"]
    assert fake_api.calls == []


def test_unknown_tool_is_404(studio):
    client, _ = studio
    assert client.post("/tools/nope/run", json={}).status_code == 404


def test_stream_tool_emits_content_then_finish(studio):
    client, _ = studio
    resp = client.post("/tools/story_generator/stream", json={"values": {"prompt": "um dragão tímido"}})
    events = _events(resp)
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert [e["type"] for e in events] == ["content", "content", "content", "finish"]
    assert "".join(e["content"] for e in events[:-1]) == "Era uma vez"
    assert events[-1]["content"] == "Era uma vez"


def test_chat_stream_keeps_session(studio, fake_api):
    client, _ = studio
    events = _events(client.post("/chat/stream", json={"prompt": "Olá", "session_id": "s1"}))
    assert events[-1] == {"type": "finish", "content": "Era uma vez", "session_id": "s1"}

    history = client.get("/chat/s1").json()["messages"]
    assert [m["role"] for m in history] == ["model", "user", "model"]


def test_video_job_end_to_end(studio, fake_api):
    client, state = studio
    resp = client.post(
        "/video/jobs",
        json={"tool_id": "ai_avatar", "values": {"script": "Olá, eu sou seu gêmeo digital"},
              "images": {"reference_photo": PNG_URL}},
    )
    assert resp.status_code == 200
    job = _wait_for(client, resp.json()["job_id"])

    assert job["state"] == "complete"
    assert job["polls"] == 2
    result = client.get(f"/video/jobs/{job['job_id']}/result")
    assert result.status_code == 200
    assert result.content == fake_api.video_bytes
    assert result.headers["content-type"] == "video/mp4"
    assert state.video_jobs[job["job_id"]].outcome.video is None
    assert os.path.isfile(job["output_path"])


def test_video_requires_selected_key(studio):
    client, state = studio
    state.credentials.reset()
    resp = client.post(
        "/video/jobs",
        json={"tool_id": "ai_avatar", "values": {"script": "oi"}, "images": {"reference_photo": PNG_URL}},
    )
    assert resp.status_code == 412

    assert client.post("/credentials/select", json={}).json() == {"selected": True}
    assert client.get("/credentials").json() == {"selected": True}


def test_video_credential_error_deselects_key(studio, fake_api):
    client, state = studio
    fake_api.poll_error = CredentialRejectedError("404 NOT_FOUND")
    resp = client.post(
        "/video/jobs",
        json={"tool_id": "ai_avatar", "values": {"script": "oi"}, "images": {"reference_photo": PNG_URL}},
    )
    job = _wait_for(client, resp.json()["job_id"])
    assert job["kind"] == "invalid_credential"
    assert state.credentials.selected is False
    assert client.get(f"/video/jobs/{job['job_id']}/result").status_code == 404


def test_second_video_submit_for_busy_panel_is_409(studio, fake_api):
    client, state = studio
    release = threading.Event()
    state.sleep = lambda _sec: release.wait(timeout=5)
    payload = {"tool_id": "ai_avatar", "values": {"script": "oi"}, "images": {"reference_photo": PNG_URL},
               "panel_id": "p1"}

    first = client.post("/video/jobs", json=payload)
    assert first.status_code == 200
    assert client.post("/video/jobs", json=payload).status_code == 409

    client.post(f"/video/jobs/{first.json()['job_id']}/cancel")
    release.set()
    job = _wait_for(client, first.json()["job_id"])
    assert job["state"] == "failed"
    assert job["kind"] == "cancelled"
    assert fake_api.call_names().count("start_video") == 1


def test_resubmit_on_finished_panel_reports_submitted(studio):
    client, _ = studio
    payload = {"tool_id": "ai_avatar", "values": {"script": "oi"}, "images": {"reference_photo": PNG_URL},
               "panel_id": "p1"}
    first = _wait_for(client, client.post("/video/jobs", json=payload).json()["job_id"])
    assert first["state"] == "complete"

    # the worker never runs, so the new job has not reached the workflow yet
    with patch("creastudio.studio_server._run_video_job") as run:
        second = client.post("/video/jobs", json=payload).json()
        deadline = time.time() + 5
        while not run.called and time.time() < deadline:
            time.sleep(0.01)
    run.assert_called_once()

    assert second["state"] == "submitted"
    assert second["running"] is True
    assert client.get(f"/video/jobs/{second['job_id']}").json()["state"] == "submitted"
    assert client.get(f"/video/jobs/{first['job_id']}").json()["state"] == "complete"


def test_finished_video_jobs_are_evicted_per_panel(studio, monkeypatch):
    client, state = studio
    monkeypatch.setattr(studio_server, "MAX_FINISHED_JOBS_PER_PANEL", 2)

    def submit(panel_id):
        payload = {"tool_id": "ai_avatar", "values": {"script": "oi"}, "images": {"reference_photo": PNG_URL},
                   "panel_id": panel_id}
        return _wait_for(client, client.post("/video/jobs", json=payload).json()["job_id"])["job_id"]

    other = submit("outro")
    job_ids = [submit("p2") for _ in range(4)]

    assert list(state.video_jobs) == [other] + job_ids[1:]
    assert client.get(f"/video/jobs/{job_ids[0]}").status_code == 404
    assert all(job.outcome.video is None for job in state.video_jobs.values())
    assert client.get(f"/video/jobs/{job_ids[-1]}/result").status_code == 200


def test_result_file_removed_from_disk_is_404(studio):
    client, _ = studio
    resp = client.post(
        "/video/jobs",
        json={"tool_id": "ai_avatar", "values": {"script": "oi"}, "images": {"reference_photo": PNG_URL}},
    )
    job = _wait_for(client, resp.json()["job_id"])
    os.remove(job["output_path"])
    assert client.get(f"/video/jobs/{job['job_id']}/result").status_code == 404


def test_chat_sessions_are_bounded(studio, monkeypatch):
    client, state = studio
    monkeypatch.setattr(studio_server, "MAX_CHAT_SESSIONS", 2)
    for session_id in ("a", "b", "c"):
        client.post("/chat/stream", json={"prompt": "Olá", "session_id": session_id})

    assert list(state.chat_sessions) == ["b", "c"]
    assert client.get("/chat/a").status_code == 404


def test_video_rejects_non_image_upload(studio):
    client, _ = studio
    resp = client.post(
        "/video/jobs",
        json={"tool_id": "ai_avatar", "values": {"script": "oi"},
              "images": {"reference_photo": "data:text/plain;base64,b2k="}},
    )
    assert resp.status_code == 400


def test_scripts_crud(studio):
    client, _ = studio
    created = client.post("/scripts", json={"title": "Roteiro"}).json()
    assert created["status"] == "current"

    updated = client.put(f"/scripts/{created['id']}", json={"status": "completed", "documents": {"outline": "Ato 1"}})
    assert updated.json()["documents"]["outline"] == "Ato 1"
    assert client.get("/scripts", params={"status": "completed"}).json()[0]["id"] == created["id"]
    assert client.put(f"/scripts/{created['id']}", json={"status": "lixo"}).status_code == 400

    assert client.delete(f"/scripts/{created['id']}").status_code == 200
    assert client.get(f"/scripts/{created['id']}").status_code == 404


def test_brand_voices_crud(studio):
    client, _ = studio
    voice = client.post("/brand-voices", json={"name": "Marca", "content": "Tom leve"}).json()
    client.put(f"/brand-voices/{voice['id']}", json={"name": "Marca 2"})
    assert [v["name"] for v in client.get("/brand-voices").json()] == ["Marca 2"]
    assert client.post("/brand-voices", json={"name": ""}).status_code == 400
    assert client.delete(f"/brand-voices/{voice['id']}").status_code == 200


def test_user_flow(studio):
    client, _ = studio
    assert client.post("/users/register", json={"username": "ana", "email": "a@x.com", "password": "p"}).status_code == 200
    assert client.post("/users/register", json={"username": "ANA", "email": "b@x.com", "password": "p"}).status_code == 409
    assert client.get("/users/current").json() == {"username": "ana"}
    client.post("/users/logout")
    assert client.get("/users/current").status_code == 404
    assert client.post("/users/login", json={"username": "A@X.COM", "password": "p"}).json() == {"username": "ana"}
    assert client.post("/users/login", json={"username": "ana", "password": "q"}).status_code == 401


def test_cached_avatar_photo(studio):
    client, _ = studio
    client.put("/cache/images/my-ai-avatar-photo", json={"images": [PNG_URL]})
    assert client.get("/cache/images/my-ai-avatar-photo").json() == {"images": [PNG_URL]}
    assert client.get("/cache/images/other").status_code == 404
