import asyncio
from pathlib import Path

import pytest
from conftest import FakeRunner, Script, download_output

from streamvault.models.job import ConversionJob, ConversionStatus, DownloadJob, DownloadStatus
from streamvault.services.converter import ConversionService
from streamvault.services.downloader import DownloadService, JobInFlightError, build_format_string
from streamvault.workers.queue import StageQueue


def _services(config, store, events, probe, thumbnails, runner):
    conversions = ConversionService(
        config, store, StageQueue("conversion"), events, runner, probe, thumbnails
    )
    downloads = DownloadService(
        config, store, StageQueue("download"), events, runner, conversions, thumbnails
    )
    return downloads, conversions


def test_format_string_for_known_resolutions():
    assert build_format_string("720p", "mp4") == (
        "bestvideo[height<=720][ext=mp4]+bestaudio/bestvideo[height<=720]+bestaudio/best[height<=720]/best"
    )
    assert build_format_string("1080P", "mkv").startswith("bestvideo[height<=1080][ext=mkv]")


def test_format_string_falls_back_to_best():
    expected = "best[ext=mp4]/bestvideo+bestaudio/best"
    assert build_format_string("Best", "mp4") == expected
    assert build_format_string("4k", "mp4") == expected
    assert build_format_string("", "mp4") == expected


def test_download_command(config, store, events, probe, thumbnails):
    downloads, _ = _services(config, store, events, probe, thumbnails, FakeRunner())
    job = DownloadJob(url="https://example.com/live", resolution="480p")

    cmd = downloads.build_command(job)

    assert cmd[0] == config.ytdlp_path
    assert cmd[-1] == "https://example.com/live"
    assert cmd[cmd.index("--output") + 1] == str(config.download_path / f"{job.id}.%(ext)s")
    assert cmd[cmd.index("--format") + 1].startswith("bestvideo[height<=480]")
    assert cmd[cmd.index("--retry-sleep") + 1] == "http:exp=10:120"
    for flag in ("--no-playlist", "--print-json", "--progress", "--newline"):
        assert flag in cmd


@pytest.mark.asyncio
async def test_start_download_persists_and_enqueues(config, store, events, probe, thumbnails, published):
    downloads, _ = _services(config, store, events, probe, thumbnails, FakeRunner())

    job = await downloads.start_download("https://example.com/live", "720p")

    assert store.get(DownloadJob, job.id).status == DownloadStatus.STARTING
    assert downloads.queue.qsize() == 1
    assert published == [("downloads", DownloadStatus.STARTING)]


@pytest.mark.asyncio
async def test_playable_download_skips_conversion(config, store, events, probe, thumbnails, published):
    runner = FakeRunner(Script(
        lines=[
            '{"id": "x", "title": "Morning show"}',
            "[download]  50.0% of 10.00MiB at 1.00MiB/s ETA 00:05",
            ("WARNING: slow connection", "stderr"),
        ],
        outputs=download_output("mp4"),
    ))
    downloads, conversions = _services(config, store, events, probe, thumbnails, runner)
    job = await downloads.start_download("https://example.com/live")

    await downloads.execute_download(job)

    saved = store.get(DownloadJob, job.id)
    assert saved.title == "Morning show"
    assert saved.status == DownloadStatus.CONVERSION_COMPLETED
    assert saved.progress == 100
    assert saved.converted_file_path == str(config.download_path / f"{job.id}.mp4")
    assert saved.thumbnail == f"{job.id}_thumb_01.jpg"
    assert len(saved.thumbnails) == 6
    assert conversions.queue.qsize() == 0
    assert store.get_conversion_by_download_id(job.id) is None
    assert not downloads.is_running(job.id)

    statuses = [status for topic, status in published if topic == "downloads"]
    assert statuses[:2] == [DownloadStatus.STARTING, DownloadStatus.DOWNLOADING]
    assert DownloadStatus.COMPLETED in statuses
    assert statuses[-1] == DownloadStatus.CONVERSION_COMPLETED


@pytest.mark.asyncio
async def test_non_playable_download_is_handed_to_conversion(config, store, events, probe, thumbnails):
    runner = FakeRunner(Script(outputs=download_output("mkv")))
    downloads, conversions = _services(config, store, events, probe, thumbnails, runner)
    job = await downloads.start_download("https://example.com/live")

    await downloads.execute_download(job)

    saved = store.get(DownloadJob, job.id)
    assert saved.status == DownloadStatus.CONVERTING
    assert saved.converted_file_path is None
    conversion = store.get_conversion_by_download_id(job.id)
    assert conversion.status == ConversionStatus.QUEUED
    assert conversion.source_path == str(config.download_path / f"{job.id}.mkv")
    assert conversion.output_path == str(config.converted_path / f"{job.id}.webm")
    assert conversions.queue.qsize() == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("exit_code", [137, 143])
async def test_killed_download_is_stopped_and_keeps_partial(
    exit_code, config, store, events, probe, thumbnails
):
    runner = FakeRunner(Script(exit_code=exit_code, outputs=lambda cmd: [
        Path(cmd[cmd.index("--output") + 1].replace("%(ext)s", "mkv.part"))
    ]))
    downloads, conversions = _services(config, store, events, probe, thumbnails, runner)
    job = await downloads.start_download("https://example.com/live")

    await downloads.execute_download(job)

    saved = store.get(DownloadJob, job.id)
    assert saved.output_path.endswith(".mkv.part")
    assert saved.status == DownloadStatus.CONVERTING
    conversion = store.get_conversion_by_download_id(job.id)
    assert conversion.output_path == str(config.converted_path / f"{job.id}.webm")


@pytest.mark.asyncio
async def test_stop_download_signals_running_job(config, store, events, probe, thumbnails, published):
    runner = FakeRunner(Script(wait_for_cancel=True))
    downloads, _ = _services(config, store, events, probe, thumbnails, runner)
    job = await downloads.start_download("https://example.com/live")

    task = asyncio.ensure_future(downloads.execute_download(job))
    await asyncio.sleep(0.01)
    assert downloads.is_running(job.id)
    assert downloads.stop_download(job.id) is True
    await asyncio.wait_for(task, timeout=1)

    assert store.get(DownloadJob, job.id).status == DownloadStatus.STOPPED
    assert downloads.stop_download(job.id) is False
    assert not downloads.is_running(job.id)


@pytest.mark.asyncio
async def test_shutdown_stops_running_download(config, store, events, probe, thumbnails):
    runner = FakeRunner(Script(wait_for_cancel=True))
    downloads, _ = _services(config, store, events, probe, thumbnails, runner)
    job = await downloads.start_download("https://example.com/live")
    shutdown = asyncio.Event()

    task = asyncio.ensure_future(downloads.execute_download(job, shutdown))
    await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, timeout=1)

    assert store.get(DownloadJob, job.id).status == DownloadStatus.STOPPED


@pytest.mark.asyncio
async def test_failed_download_records_exit_code(config, store, events, probe, thumbnails):
    runner = FakeRunner(Script(exit_code=1))
    downloads, conversions = _services(config, store, events, probe, thumbnails, runner)
    job = await downloads.start_download("https://example.com/live")

    await downloads.execute_download(job)

    saved = store.get(DownloadJob, job.id)
    assert saved.status == DownloadStatus.FAILED
    assert saved.error_message == "Download failed with exit code 1"
    assert conversions.queue.qsize() == 0


@pytest.mark.asyncio
async def test_completed_without_file_does_not_hand_off(config, store, events, probe, thumbnails):
    downloads, conversions = _services(config, store, events, probe, thumbnails, FakeRunner(Script()))
    job = await downloads.start_download("https://example.com/live")

    await downloads.execute_download(job)

    assert store.get(DownloadJob, job.id).status == DownloadStatus.COMPLETED
    assert conversions.queue.qsize() == 0


@pytest.mark.asyncio
async def test_hand_off_failure_marks_conversion_failed(config, store, events, probe, thumbnails):
    thumbnails.fail = True
    runner = FakeRunner(Script(outputs=download_output("mp4")))
    downloads, _ = _services(config, store, events, probe, thumbnails, runner)
    job = await downloads.start_download("https://example.com/live")

    await downloads.execute_download(job)

    saved = store.get(DownloadJob, job.id)
    assert saved.status == DownloadStatus.CONVERSION_FAILED
    assert saved.error_message == "Processing failed: ffmpeg missing"


@pytest.mark.asyncio
async def test_runner_exception_marks_job_failed(config, store, events, probe, thumbnails):
    class ExplodingRunner(FakeRunner):
        async def stream(self, cmd, on_line, cancel_event=None):
            raise FileNotFoundError("yt-dlp not found")

    downloads, _ = _services(config, store, events, probe, thumbnails, ExplodingRunner())
    job = await downloads.start_download("https://example.com/live")

    await downloads.execute_download(job)

    saved = store.get(DownloadJob, job.id)
    assert saved.status == DownloadStatus.FAILED
    assert saved.error_message == "yt-dlp not found"
    assert not downloads.is_running(job.id)


@pytest.mark.asyncio
async def test_delete_job_removes_files_and_records(config, store, events, probe, thumbnails):
    downloads, conversions = _services(config, store, events, probe, thumbnails, FakeRunner())
    original = config.download_path / "orig.mkv"
    converted = config.converted_path / "orig.webm"
    thumb = config.thumbnail_path / "t_thumb_01.jpg"
    for path in (original, converted, thumb):
        path.write_bytes(b"data")
    job = DownloadJob(
        url="https://example.com/live",
        status=DownloadStatus.CONVERSION_COMPLETED,
        output_path=str(original),
        converted_file_path=str(converted),
        thumbnail=thumb.name,
        thumbnails=[thumb.name],
    )
    store.upsert(job)
    store.upsert(ConversionJob(download_job_id=job.id, status=ConversionStatus.COMPLETED))

    assert downloads.delete_job(job.id) is True

    assert not original.exists()
    assert not converted.exists()
    assert not thumb.exists()
    assert store.get(DownloadJob, job.id) is None
    assert store.get_conversion_by_download_id(job.id) is None
    assert downloads.delete_job(job.id) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [DownloadStatus.DOWNLOADING, DownloadStatus.CONVERTING, DownloadStatus.ARCHIVING])
async def test_delete_refuses_jobs_in_flight(status, config, store, events, probe, thumbnails):
    downloads, _ = _services(config, store, events, probe, thumbnails, FakeRunner())
    job = DownloadJob(url="https://example.com/live", status=status)
    store.upsert(job)

    with pytest.raises(JobInFlightError):
        downloads.delete_job(job.id)
    assert store.get(DownloadJob, job.id) is not None
