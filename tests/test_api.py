import pytest
from fastapi.testclient import TestClient

from render_service.main import app, get_job_service


@pytest.fixture
def client(service):
    app.dependency_overrides[get_job_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_render_video_flow(client, scheduler, runner, media):
    payload = {
        "type": "render_video",
        "payload": {
            "backgroundPath": media["bg"],
            "audioPath": media["voice"],
            "lines": ["Hello world"],
            "durationSec": 12,
        },
    }
    create_resp = client.post("/jobs", json=payload)
    assert create_resp.status_code == 202
    job = create_resp.json()["job"]
    assert job["id"].startswith("job_")
    assert job["status"] == "queued"
    assert job["progress"] == 0
    assert job["payload"]["backgroundPath"] == media["bg"]

    assert scheduler.tick() == job["id"]
    scheduler.join(timeout=5)

    status_resp = client.get(f"/jobs/{job['id']}")
    assert status_resp.status_code == 200
    done = status_resp.json()["job"]
    assert done["status"] == "done"
    assert done["progress"] == 100
    assert done["result"]["url"].startswith("/outputs/video-")
    assert done["result"]["outFile"].endswith(".mp4")
    assert done["startedAt"] and done["finishedAt"]
    assert "-t" in runner.plans[0].args


def test_missing_background_is_rejected_and_not_stored(client, tmp_path):
    resp = client.post(
        "/jobs",
        json={
            "type": "render_video",
            "payload": {"backgroundPath": str(tmp_path / "nope.mp4"), "lines": ["Hi"]},
        },
    )
    assert resp.status_code == 400
    assert "not found" in resp.json()["detail"]

    list_resp = client.get("/jobs")
    assert list_resp.status_code == 200
    assert list_resp.json()["items"] == []


def test_overlong_reference_is_rejected_and_not_stored(client):
    resp = client.post("/jobs", json={"type": "render_waveform", "payload": {"audioPath": "a" * 300}})
    assert resp.status_code == 400
    assert "audioPath not found" in resp.json()["detail"]
    assert client.get("/jobs").json()["items"] == []


def test_audio_merge_needs_two_inputs(client, media):
    resp = client.post("/jobs", json={"type": "audio_merge", "payload": {"inputs": [media["voice"]]}})
    assert resp.status_code == 400
    assert "at least 2" in resp.json()["detail"]


def test_unknown_job_type_is_a_schema_error(client):
    resp = client.post("/jobs", json={"type": "transcode_everything", "payload": {}})
    assert resp.status_code == 422


def test_unknown_job_is_404(client):
    resp = client.get("/jobs/job_does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Job not found"


def test_list_is_newest_first(client, media):
    ids = []
    for inputs in ([media["voice"], media["music"]], [media["intro"], media["outro"]]):
        resp = client.post("/jobs", json={"type": "audio_merge", "payload": {"inputs": inputs}})
        assert resp.status_code == 202
        ids.append(resp.json()["job"]["id"])

    items = client.get("/jobs").json()["items"]
    assert [item["id"] for item in items] == list(reversed(ids))
    assert all(item["status"] == "queued" for item in items)


def test_failed_job_reports_error(client, scheduler, runner, media):
    from render_service.clients.ffmpeg import FFmpegExitError

    runner.progress = [35]
    runner.error = FFmpegExitError(message="ffmpeg failed (exit 1):\nInvalid data found", returncode=1)
    resp = client.post(
        "/jobs",
        json={"type": "render_waveform", "payload": {"audioPath": media["voice"], "lines": ["Listen"]}},
    )
    job_id = resp.json()["job"]["id"]
    scheduler.tick()
    scheduler.join(timeout=5)

    job = client.get(f"/jobs/{job_id}").json()["job"]
    assert job["status"] == "failed"
    assert "Invalid data found" in job["error"]
    assert job["progress"] == 35
    assert "result" not in job or job["result"] is None


def test_media_info(client, runner, media):
    runner.durations[media["voice"]] = 42.5
    resp = client.get("/media/info", params={"path": media["voice"]})
    assert resp.status_code == 200
    assert resp.json() == {"path": media["voice"], "durationSec": 42.5}


def test_media_info_unknown_path(client, tmp_path):
    resp = client.get("/media/info", params={"path": str(tmp_path / "missing.mp3")})
    assert resp.status_code == 400


def test_waveform_image_flow(client, scheduler, runner, media):
    resp = client.post(
        "/jobs",
        json={"type": "waveform_image", "payload": {"audioPath": media["voice"], "width": 100}},
    )
    assert resp.status_code == 202
    job = resp.json()["job"]

    scheduler.tick()
    scheduler.join(timeout=5)

    done = client.get(f"/jobs/{job['id']}").json()["job"]
    assert done["status"] == "done"
    assert done["result"]["url"].startswith("/outputs/waveform-")
    assert done["result"]["outFile"].endswith(".png")
    assert "showwavespic=s=400x300:colors=White" in runner.plans[0].args


def test_audio_process_payload_is_stored_with_resolved_preset(client, media):
    resp = client.post(
        "/jobs",
        json={
            "type": "audio_process",
            "payload": {"inputPath": media["voice"], "preset": "studio", "normalize": {"targetLUFS": -20}},
        },
    )
    assert resp.status_code == 202
    payload = resp.json()["job"]["payload"]
    assert payload["preset"] == "clean_voice"
    assert payload["normalize"] == {"targetLUFS": -20.0}


def test_audio_process_needs_input(client):
    resp = client.post("/jobs", json={"type": "audio_process", "payload": {"preset": "podcast"}})
    assert resp.status_code == 400
    assert "inputPath" in resp.json()["detail"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["activeJobId"] is None
