"""转码服务：调用 FFmpeg 转码、解析进度、生成缩略图并回写下载任务。"""

import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger

from streamvault.config import Settings, render_filename
from streamvault.database import JobStore
from streamvault.models.job import (
    ACTIVE_CONVERSION_STATUSES,
    ConversionJob,
    ConversionStatus,
    DownloadJob,
    DownloadStatus,
    assign_thumbnails,
)
from streamvault.services.media import MediaProbe, ThumbnailGenerator, remove_file_quietly
from streamvault.services.process import ProcessRunner, link_events
from streamvault.services.progress import FfmpegProgress
from streamvault.workers.queue import EventQueue, StageQueue

# 视为取消的退出码：SIGKILL、SIGTERM，以及 FFmpeg 收到中断时的 255
CANCELLED_EXIT_CODES = (137, 143, 255)
CANCELLED_MESSAGE = "Conversion cancelled"


def strip_part_suffix(name: str) -> str:
    """去掉未完成下载的 .part 后缀。"""
    if name.lower().endswith(".part"):
        return name[: -len(".part")]
    return name


class ConversionService:
    """管理转码任务的创建、执行与取消。"""

    def __init__(
        self,
        config: Settings,
        store: JobStore,
        queue: StageQueue,
        events: EventQueue,
        runner: ProcessRunner,
        probe: MediaProbe,
        thumbnails: ThumbnailGenerator,
    ):
        self.config = config
        self.store = store
        self.queue = queue
        self.events = events
        self.runner = runner
        self.probe = probe
        self.thumbnails = thumbnails
        self._active: dict[str, asyncio.Event] = {}

        logger.info(
            f"转码配置: ffmpeg={config.ffmpeg_path} video={config.video_codec} "
            f"audio={config.audio_codec} crf={config.video_crf} preset={config.video_preset} "
            f"bitrate={config.audio_bitrate} format={config.conversion_output_format}"
        )

    # ── 查询 ────────────────────────────────────────────────

    def get_active_conversions(self) -> list[ConversionJob]:
        return self.store.get_active_conversions()

    def get_conversion_by_download_id(self, download_job_id: str) -> Optional[ConversionJob]:
        return self.store.get_conversion_by_download_id(download_job_id)

    def remove_conversion_job(self, job_id: str) -> None:
        self.store.delete(ConversionJob, job_id)
        logger.info(f"已删除转码任务 {job_id}")

    # ── 创建与取消 ──────────────────────────────────────────

    def start_conversion(self, download_job: DownloadJob) -> ConversionJob:
        """
        为下载任务创建转码任务并放入转码队列。

        每个下载任务同一时间只允许一个活动转码任务；已有活动任务时直接返回它，
        残留的终态任务会被替换。

        参数：
            download_job: 来源下载任务

        返回：
            转码任务
        """
        existing = self.store.get_conversion_by_download_id(download_job.id)
        if existing is not None:
            if existing.status in ACTIVE_CONVERSION_STATUSES:
                logger.info(f"下载任务 {download_job.id} 已有活动转码任务 {existing.id}，不重复创建")
                return existing
            self.store.delete(ConversionJob, existing.id)

        source_name = strip_part_suffix(Path(download_job.output_path).name)
        file_name = render_filename(
            self.config.converted_filename_template,
            id=download_job.id,
            fn=Path(source_name).stem,
            ext=self.config.conversion_output_format,
        )

        job = ConversionJob(
            source_path=download_job.output_path,
            output_path=str(self.config.converted_path / file_name),
            title=download_job.title,
            original_url=download_job.url,
            download_job_id=download_job.id,
            status=ConversionStatus.QUEUED,
        )
        self.notify(job)
        self.queue.enqueue(job)
        logger.info(f"转码任务已入队 {job.id} ← 下载任务 {download_job.id}")
        return job

    def cancel_conversion(self, job_id: str) -> bool:
        """向正在执行的转码任务发送取消信号。"""
        stop_event = self._active.get(job_id)
        if stop_event is None:
            return False
        stop_event.set()
        logger.info(f"已请求取消转码任务 {job_id}")
        return True

    # ── 执行 ────────────────────────────────────────────────

    def build_command(self, job: ConversionJob) -> list[str]:
        """构建 FFmpeg 转码命令。"""
        cmd = [
            self.config.ffmpeg_path,
            "-i", job.source_path,
            "-c:v", self.config.video_codec,
        ]
        if self.config.video_codec == "libvpx-vp9":
            cmd += ["-crf", str(self.config.video_crf), "-b:v", "0"]
            if self.config.vp9_quality:
                cmd += ["-deadline", self.config.vp9_quality]
            if self.config.vp9_speed is not None:
                cmd += ["-cpu-used", str(self.config.vp9_speed)]
            if self.config.vp9_row_mt is not None:
                cmd += ["-row-mt", str(self.config.vp9_row_mt)]
            if self.config.vp9_tile_columns is not None:
                cmd += ["-tile-columns", str(self.config.vp9_tile_columns)]
        else:
            cmd += ["-crf", str(self.config.video_crf), "-preset", self.config.video_preset]
        cmd += [
            "-c:a", self.config.audio_codec,
            "-b:a", self.config.audio_bitrate,
            "-progress", "pipe:1",
            "-stats_period", str(self.config.progress_stats_period),
            "-y",
            job.output_path,
        ]
        return cmd

    async def execute_conversion(self, job: ConversionJob, shutdown: Optional[asyncio.Event] = None) -> None:
        """
        执行一次转码，直到进入终态。

        所有异常在此捕获并写入任务错误信息，不会向上抛出。

        参数：
            job: 转码任务
            shutdown: 应用关闭事件，触发时等同于取消
        """
        stop_event = asyncio.Event()
        self._active[job.id] = stop_event
        link = link_events(shutdown, stop_event)
        try:
            total_duration = await self.probe.duration(Path(job.source_path))
            if total_duration is None:
                logger.warning(f"未能获取源时长，转码 {job.id} 将不显示百分比")

            cmd = self.build_command(job)
            logger.info(f"执行 FFmpeg 命令: {' '.join(cmd)}")
            Path(job.output_path).parent.mkdir(parents=True, exist_ok=True)

            tracker = FfmpegProgress(total_duration)
            job.status = ConversionStatus.CONVERTING
            job.error_message = None
            self.notify(job)

            def on_line(line: str, stream: str) -> None:
                logger.debug(f"FFmpeg {stream}: {line}")
                # 不同版本的 FFmpeg 会把进度写到 stdout 或 stderr，两者同样解析
                if tracker.feed(job, line):
                    self.notify(job)

            result = await self.runner.stream(cmd, on_line, stop_event)
            output = Path(job.output_path)

            if result.cancelled or result.exit_code in CANCELLED_EXIT_CODES:
                job.status = ConversionStatus.FAILED
                job.error_message = CANCELLED_MESSAGE
                remove_file_quietly(output)
                self.notify(job)
                self._update_download_job(job.download_job_id, DownloadStatus.CONVERSION_FAILED, CANCELLED_MESSAGE)
            elif result.exit_code == 0 and output.exists():
                job.status = ConversionStatus.COMPLETED
                job.progress = 100
                self.notify(job)

                thumbnails = None
                try:
                    thumbnails = await self.thumbnails.generate(output, job.id)
                except Exception as e:
                    logger.exception(f"转码任务 {job.id} 缩略图生成失败: {e}")

                self._update_download_job(
                    job.download_job_id,
                    DownloadStatus.CONVERSION_COMPLETED,
                    None,
                    thumbnails=thumbnails,
                    converted_file_path=str(output),
                )
            else:
                job.status = ConversionStatus.FAILED
                if result.exit_code == 0:
                    job.error_message = "Conversion produced no output file"
                else:
                    job.error_message = f"Conversion failed with exit code {result.exit_code}"
                self.notify(job)
                self._update_download_job(job.download_job_id, DownloadStatus.CONVERSION_FAILED, job.error_message)

            logger.info(f"转码任务 {job.id} 结束: {job.status.value}")
        except Exception as e:
            logger.exception(f"转码任务执行失败 {job.id}: {e}")
            job.status = ConversionStatus.FAILED
            job.error_message = str(e)
            self.notify(job)
            self._update_download_job(job.download_job_id, DownloadStatus.CONVERSION_FAILED, str(e))
        finally:
            self._active.pop(job.id, None)
            if link is not None:
                link.cancel()

    def _update_download_job(
        self,
        download_job_id: str,
        status: DownloadStatus,
        error_message: Optional[str],
        thumbnails: Optional[list[str]] = None,
        converted_file_path: Optional[str] = None,
    ) -> None:
        """把转码结果回写到来源下载任务，记录缺失时仅告警。"""
        try:
            download_job = self.store.get(DownloadJob, download_job_id)
            if download_job is None:
                logger.warning(f"找不到下载任务 {download_job_id}，无法回写转码结果")
                return

            download_job.status = status
            download_job.error_message = error_message
            download_job.converted_file_path = converted_file_path
            if status == DownloadStatus.CONVERSION_COMPLETED:
                download_job.progress = 100
            assign_thumbnails(download_job, thumbnails)

            self.store.upsert(download_job)
            self.events.publish("downloads", download_job)
            logger.info(
                f"下载任务 {download_job_id} 状态更新为 {status.value}, 转码文件: {converted_file_path}"
            )
        except Exception as e:
            logger.exception(f"回写下载任务 {download_job_id} 失败: {e}")

    def notify(self, job: ConversionJob) -> None:
        """持久化转码任务并发布变更。"""
        self.store.upsert(job)
        self.events.publish("conversions", job)

