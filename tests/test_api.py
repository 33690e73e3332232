import pytest
from conftest import FakeRunner
from fastapi.testclient import TestClient

from streamvault.main import app
from streamvault.models.archive import ArchivedVideo
from streamvault.models.job import DownloadJob, DownloadStatus
from streamvault.workers.background import Runtime


@pytest.fixture
def runtime(config, probe, thumbnails):
    rt = Runtime(config, runner=FakeRunner(), probe=probe, thumbnails=thumbnails)
    app.state.runtime = rt
    yield rt
    del app.state.runtime
    rt.engine.dispose()


@pytest.fixture
def client(runtime) -> TestClient:
    # Used without a with-block so the lifespan (and the background workers) never start.
    return TestClient(app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_and_get_download(client, runtime):
    response = client.post("/api/downloads", json={"url": "https://example.com/live", "resolution": "720p"})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "starting"
    assert body["resolution"] == "720p"
    assert runtime.download_queue.qsize() == 1

    fetched = client.get(f"/api/downloads/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["url"] == "https://example.com/live"


def test_create_download_rejects_non_http_url(client):
    response = client.post("/api/downloads", json={"url": "ftp://example.com/file"})
    assert response.status_code == 422


def test_list_download_views(client, runtime):
    active = DownloadJob(url="https://example.com/1", status=DownloadStatus.DOWNLOADING)
    converted = DownloadJob(
        url="https://example.com/2",
        status=DownloadStatus.CONVERSION_COMPLETED,
        thumbnail="t_thumb_01.jpg",
        thumbnails=["t_thumb_01.jpg"],
    )
    runtime.store.upsert(active)
    runtime.store.upsert(converted)

    assert [j["id"] for j in client.get("/api/downloads").json()] == [active.id]
    converted_view = client.get("/api/downloads", params={"view": "converted"}).json()
    assert [j["id"] for j in converted_view] == [converted.id]
    assert converted_view[0]["thumbnail_url"] == "/media/thumbnails/t_thumb_01.jpg"
    assert len(client.get("/api/downloads", params={"view": "all"}).json()) == 2


def test_unknown_download_returns_404(client):
    assert client.get("/api/downloads/missing").status_code == 404
    assert client.post("/api/downloads/missing/stop").status_code == 404
    assert client.post("/api/downloads/missing/archive").status_code == 404
    assert client.delete("/api/downloads/missing").status_code == 404


def test_stop_idle_download_conflicts(client, runtime):
    job = DownloadJob(url="https://example.com/1", status=DownloadStatus.COMPLETED)
    runtime.store.upsert(job)

    assert client.post(f"/api/downloads/{job.id}/stop").status_code == 409


def test_archive_requires_terminal_status(client, runtime):
    running = DownloadJob(url="https://example.com/1", status=DownloadStatus.DOWNLOADING)
    done = DownloadJob(url="https://example.com/2", status=DownloadStatus.CONVERSION_COMPLETED)
    runtime.store.upsert(running)
    runtime.store.upsert(done)

    assert client.post(f"/api/downloads/{running.id}/archive").status_code == 409

    response = client.post(f"/api/downloads/{done.id}/archive")
    assert response.status_code == 200
    assert response.json()["status"] == "archiving"
    assert runtime.archive_queue.qsize() == 1


def test_delete_download(client, runtime):
    running = DownloadJob(url="https://example.com/1", status=DownloadStatus.CONVERTING)
    done = DownloadJob(url="https://example.com/2", status=DownloadStatus.FAILED)
    runtime.store.upsert(running)
    runtime.store.upsert(done)

    assert client.delete(f"/api/downloads/{running.id}").status_code == 409
    assert client.delete(f"/api/downloads/{done.id}").status_code == 204
    assert runtime.store.get(DownloadJob, done.id) is None


def test_conversion_routes(client):
    assert client.get("/api/conversions").json() == []
    assert client.post("/api/conversions/missing/cancel").status_code == 404


def test_archive_routes(client, runtime, config):
    path = config.archive_path / "show.webm"
    path.write_bytes(b"x" * 1536)
    video = ArchivedVideo(
        title="Show",
        file_path=str(path),
        file_name="show.webm",
        file_size_bytes=1536,
        thumbnail="v_thumb_01.jpg",
        thumbnails=["v_thumb_01.jpg"],
    )
    runtime.store.upsert(video)

    listing = client.get("/api/archives").json()
    assert len(listing) == 1
    assert listing[0]["file_size_formatted"] == "1.5 KB"
    assert listing[0]["video_url"] == "/media/archives/show.webm"
    assert listing[0]["thumbnail_url"] == "/media/thumbnails/v_thumb_01.jpg"

    assert client.get(f"/api/archives/{video.id}").status_code == 200
    assert client.delete(f"/api/archives/{video.id}").status_code == 204
    assert not path.exists()
    assert client.get(f"/api/archives/{video.id}").status_code == 404
    assert client.delete(f"/api/archives/{video.id}").status_code == 404


def test_subscription_crud(client):
    created = client.post(
        "/api/subscriptions",
        json={"url": "https://example.com/channel", "name": "Channel", "check_rate_minutes": 15},
    )
    assert created.status_code == 201
    sub_id = created.json()["id"]
    assert created.json()["is_enabled"] is True

    updated = client.patch(f"/api/subscriptions/{sub_id}", json={"is_enabled": False, "resolution": "480p"})
    assert updated.status_code == 200
    assert updated.json()["is_enabled"] is False
    assert updated.json()["resolution"] == "480p"
    assert updated.json()["check_rate_minutes"] == 15

    assert [s["id"] for s in client.get("/api/subscriptions").json()] == [sub_id]
    assert client.delete(f"/api/subscriptions/{sub_id}").status_code == 204
    assert client.patch(f"/api/subscriptions/{sub_id}", json={"name": "x"}).status_code == 404


def test_subscription_rejects_zero_rate(client):
    response = client.post("/api/subscriptions", json={"url": "https://example.com/c", "check_rate_minutes": 0})
    assert response.status_code == 422


def test_unknown_event_topic_is_rejected(client):
    assert client.get("/api/events/unknown").status_code == 422


def test_subscription_rejects_non_http_url(client):
    response = client.post("/api/subscriptions", json={"url": "ftp://example.com/channel"})
    assert response.status_code == 422
    assert client.get("/api/subscriptions").json() == []


def test_subscription_update_rejects_null_fields(client):
    created = client.post("/api/subscriptions", json={"url": "https://example.com/channel", "name": "Channel"})
    sub_id = created.json()["id"]

    for field in ("name", "check_rate_minutes", "resolution", "is_enabled"):
        response = client.patch(f"/api/subscriptions/{sub_id}", json={field: None})
        assert response.status_code == 422, field

    listing = client.get("/api/subscriptions").json()
    assert listing[0]["name"] == "Channel"
    assert listing[0]["check_rate_minutes"] == 30
    assert listing[0]["is_enabled"] is True


def test_download_response_links_media_files(client, runtime, config):
    job = DownloadJob(
        url="https://example.com/v",
        status=DownloadStatus.COMPLETED,
        output_path=str(config.download_path / "show.mp4"),
        converted_file_path=str(config.converted_path / "show.webm"),
    )
    runtime.store.upsert(job)

    body = client.get(f"/api/downloads/{job.id}").json()
    assert body["download_url"] == "/media/downloads/show.mp4"
    assert body["converted_url"] == "/media/converted/show.webm"

    pending = client.post("/api/downloads", json={"url": "https://example.com/live"}).json()
    assert pending["download_url"] == ""
    assert pending["converted_url"] == ""
