"""下载服务：调用 yt-dlp 下载直播/影片流、解析进度并衔接转码。"""

import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger

from streamvault.config import Settings, render_filename
from streamvault.database import JobStore
from streamvault.models.job import (
    IN_FLIGHT_DOWNLOAD_STATUSES,
    DownloadJob,
    DownloadStatus,
    assign_thumbnails,
)
from streamvault.services.converter import ConversionService
from streamvault.services.media import ThumbnailGenerator, remove_file_quietly
from streamvault.services.process import ProcessRunner, link_events
from streamvault.services.progress import parse_download_line
from streamvault.workers.queue import EventQueue, StageQueue

# yt-dlp 被终止时的退出码（SIGKILL / SIGTERM）
STOPPED_EXIT_CODES = (137, 143)

# yt-dlp 的临时文件，不视为下载产出
_SIDE_FILE_SUFFIXES = (".ytdl", ".json", ".tmp")


class JobInFlightError(RuntimeError):
    """任务仍被流水线使用，不能删除。"""


def build_format_string(resolution: str, container: str = "mp4") -> str:
    """
    根据分辨率选项构建 yt-dlp format 字符串。

    参数：
        resolution: 1080p / 720p / 480p / 360p，其余值（含 Best）均视为最佳画质
        container: 优先选择的容器格式

    返回：
        yt-dlp format 选择表达式
    """
    best = f"best[ext={container}]/bestvideo+bestaudio/best"
    quality_map = {"best": best}
    for height in (1080, 720, 480, 360):
        quality_map[f"{height}p"] = (
            f"bestvideo[height<={height}][ext={container}]+bestaudio"
            f"/bestvideo[height<={height}]+bestaudio"
            f"/best[height<={height}]"
            f"/best"
        )
    return quality_map.get((resolution or "").strip().lower(), best)


class DownloadService:
    """管理下载任务的创建、执行、停止与删除。"""

    def __init__(
        self,
        config: Settings,
        store: JobStore,
        queue: StageQueue,
        events: EventQueue,
        runner: ProcessRunner,
        conversions: ConversionService,
        thumbnails: ThumbnailGenerator,
    ):
        self.config = config
        self.store = store
        self.queue = queue
        self.events = events
        self.runner = runner
        self.conversions = conversions
        self.thumbnails = thumbnails
        self._active: dict[str, asyncio.Event] = {}

    # ── 查询 ────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[DownloadJob]:
        return self.store.get(DownloadJob, job_id)

    def get_active_jobs(self) -> list[DownloadJob]:
        return self.store.get_active_downloads()

    def get_converted_jobs(self) -> list[DownloadJob]:
        return self.store.get_converted_downloads()

    def get_all_jobs(self) -> list[DownloadJob]:
        return self.store.find(DownloadJob, order_by=DownloadJob.started_at)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._active

    # ── 创建与停止 ──────────────────────────────────────────

    async def start_download(self, url: str, resolution: str = "Best") -> DownloadJob:
        """创建下载任务、持久化并放入下载队列。"""
        job = DownloadJob(url=url, resolution=resolution or "Best", status=DownloadStatus.STARTING)
        self.notify(job)
        self.queue.enqueue(job)
        logger.info(f"下载任务已入队 {job.id}: {url} ({job.resolution})")
        return job

    def stop_download(self, job_id: str) -> bool:
        """
        向正在执行的下载任务发送停止信号。

        真正的进程终止由执行中的任务完成，这里只负责发信号。
        """
        stop_event = self._active.get(job_id)
        if stop_event is None:
            return False
        stop_event.set()
        logger.info(f"已请求停止下载任务 {job_id}")
        return True

    # ── 执行 ────────────────────────────────────────────────

    def build_command(self, job: DownloadJob) -> list[str]:
        """构建 yt-dlp 下载命令。"""
        file_name = render_filename(self.config.download_filename_template, id=job.id)
        output_template = str(self.config.download_path / file_name)
        return [
            self.config.ytdlp_path,
            "--no-playlist",
            "--format", build_format_string(job.resolution, self.config.output_format),
            "--merge-output-format", self.config.output_format,
            "--output", output_template,
            "--print-json",
            "--progress",
            "--newline",
            "--retries", "15",
            "--fragment-retries", "15",
            "--retry-sleep", "http:exp=10:120",
            job.url,
        ]

    async def execute_download(self, job: DownloadJob, shutdown: Optional[asyncio.Event] = None) -> None:
        """
        执行一次下载，直到进入终态，并按结果衔接转码。

        所有异常在此捕获并写入任务错误信息，不会向上抛出。

        参数：
            job: 下载任务
            shutdown: 应用关闭事件，触发时等同于停止
        """
        stop_event = asyncio.Event()
        self._active[job.id] = stop_event
        link = link_events(shutdown, stop_event)
        try:
            self.config.download_path.mkdir(parents=True, exist_ok=True)
            cmd = self.build_command(job)
            logger.info(f"开始下载 {job.id}: {' '.join(cmd)}")

            job.status = DownloadStatus.DOWNLOADING
            job.error_message = None
            self.notify(job)

            def on_line(line: str, stream: str) -> None:
                if stream == "stderr":
                    logger.warning(f"yt-dlp stderr [{job.id}]: {line}")
                    return
                if parse_download_line(job, line):
                    self.notify(job)

            result = await self.runner.stream(cmd, on_line, stop_event)

            output_file = self.find_output_file(job.id)
            if output_file is not None:
                job.output_path = str(output_file)

            if result.cancelled or result.exit_code in STOPPED_EXIT_CODES:
                job.status = DownloadStatus.STOPPED
            elif result.exit_code == 0:
                job.status = DownloadStatus.COMPLETED
                job.progress = 100
            else:
                job.status = DownloadStatus.FAILED
                job.error_message = f"Download failed with exit code {result.exit_code}"
            self.notify(job)
            logger.info(f"下载任务 {job.id} 结束: {job.status.value}, 文件: {output_file}")

            if (
                job.status in (DownloadStatus.COMPLETED, DownloadStatus.STOPPED)
                and output_file is not None
                and output_file.exists()
            ):
                await self._hand_off(job, output_file)
        except Exception as e:
            logger.exception(f"下载任务执行失败 {job.id}: {e}")
            job.status = DownloadStatus.FAILED
            job.error_message = str(e)
            self.notify(job)
        finally:
            self._active.pop(job.id, None)
            if link is not None:
                link.cancel()

    async def _hand_off(self, job: DownloadJob, output_file: Path) -> None:
        """已是可直接播放的格式则只生成缩略图，否则交给转码队列。"""
        try:
            if self.is_web_playable(output_file):
                logger.info(f"{job.id} 已是可播放格式，跳过转码: {output_file}")
                thumbnails = await self.thumbnails.generate(output_file, job.id)
                job.status = DownloadStatus.CONVERSION_COMPLETED
                job.converted_file_path = str(output_file)
                assign_thumbnails(job, thumbnails)
                self.notify(job)
            else:
                job.status = DownloadStatus.CONVERTING
                self.notify(job)
                self.conversions.start_conversion(job)
        except Exception as e:
            logger.exception(f"下载任务 {job.id} 后续处理失败: {e}")
            job.status = DownloadStatus.CONVERSION_FAILED
            job.error_message = f"Processing failed: {e}"
            self.notify(job)

    def is_web_playable(self, file_path: Path) -> bool:
        return file_path.suffix.lower() in self.config.playable_extensions_list

    def find_output_file(self, job_id: str) -> Optional[Path]:
        """在下载目录中查找任务产出，优先返回未完成的 .part 文件。"""
        directory = self.config.download_path
        part_files = sorted(directory.glob(f"{job_id}.*.part"))
        if part_files:
            return part_files[0]
        files = sorted(
            f for f in directory.glob(f"{job_id}.*")
            if f.is_file() and f.suffix.lower() not in _SIDE_FILE_SUFFIXES
        )
        return files[0] if files else None

    # ── 删除 ────────────────────────────────────────────────

    def delete_job(self, job_id: str) -> bool:
        """
        删除下载任务及其所有文件（原始文件、转码文件、缩略图）和残留的转码记录。

        参数：
            job_id: 下载任务 ID

        返回：
            任务是否存在

        异常：
            JobInFlightError: 任务仍在下载、转码或归档中
        """
        job = self.store.get(DownloadJob, job_id)
        if job is None:
            return False
        if self.is_running(job_id) or job.status in IN_FLIGHT_DOWNLOAD_STATUSES:
            raise JobInFlightError(f"任务 {job_id} 正在处理中（{job.status.value}），无法删除")

        if job.converted_file_path:
            remove_file_quietly(Path(job.converted_file_path))
        if job.output_path:
            remove_file_quietly(Path(job.output_path))
        for file_name in job.thumbnails or []:
            remove_file_quietly(self.config.thumbnail_path / file_name)

        conversion = self.store.get_conversion_by_download_id(job_id)
        if conversion is not None:
            self.conversions.remove_conversion_job(conversion.id)

        self.store.delete(DownloadJob, job_id)
        logger.info(f"已删除下载任务 {job_id}")
        return True

    def notify(self, job: DownloadJob) -> None:
        """持久化下载任务并发布变更。"""
        self.store.upsert(job)
        self.events.publish("downloads", job)
