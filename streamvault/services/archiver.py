"""归档服务：把已完成的下载移入归档目录并登记为归档影片。"""

import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from streamvault.config import Settings
from streamvault.database import JobStore
from streamvault.models.archive import ArchivedVideo
from streamvault.models.job import DownloadJob, DownloadStatus, assign_thumbnails
from streamvault.services.converter import ConversionService, strip_part_suffix
from streamvault.services.media import ThumbnailGenerator, remove_file_quietly
from streamvault.workers.queue import EventQueue, StageQueue


def unique_archive_path(directory: Path, file_name: str, now: Optional[datetime] = None) -> Path:
    """
    计算归档目标路径，文件名冲突时追加时间戳，仍冲突再追加序号。

    参数：
        directory: 归档目录
        file_name: 期望的文件名（已去掉 .part）
        now: 时间戳来源，默认当前时间

    返回：
        不与现有文件冲突的路径
    """
    target = directory / file_name
    if not target.exists():
        return target

    stem, suffix = Path(file_name).stem, Path(file_name).suffix
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    target = directory / f"{stem}_{stamp}{suffix}"
    counter = 1
    while target.exists():
        target = directory / f"{stem}_{stamp}_{counter}{suffix}"
        counter += 1
    return target


class ArchiveService:
    """管理归档任务与归档影片。"""

    def __init__(
        self,
        config: Settings,
        store: JobStore,
        queue: StageQueue,
        events: EventQueue,
        conversions: ConversionService,
        thumbnails: ThumbnailGenerator,
    ):
        self.config = config
        self.store = store
        self.queue = queue
        self.events = events
        self.conversions = conversions
        self.thumbnails = thumbnails

    # ── 归档影片查询与删除 ──────────────────────────────────

    def get_archived_videos(self) -> list[ArchivedVideo]:
        """按归档时间倒序返回所有归档影片。"""
        return self.store.find(ArchivedVideo, order_by=ArchivedVideo.archived_at.desc())

    def get_video(self, video_id: str) -> Optional[ArchivedVideo]:
        return self.store.get(ArchivedVideo, video_id)

    def delete_video(self, video_id: str) -> bool:
        """删除归档影片的文件、缩略图与记录。"""
        video = self.store.get(ArchivedVideo, video_id)
        if video is None:
            return False

        if video.file_path:
            remove_file_quietly(Path(video.file_path))
        for file_name in video.thumbnails or []:
            remove_file_quietly(self.config.thumbnail_path / file_name)

        self.store.delete(ArchivedVideo, video_id)
        logger.info(f"已删除归档影片 {video_id}: {video.title}")
        return True

    # ── 归档任务 ────────────────────────────────────────────

    def archive_job(self, job: DownloadJob) -> DownloadJob:
        """把下载任务标记为归档中并放入归档队列。"""
        job.status = DownloadStatus.ARCHIVING
        job.progress = 0
        job.error_message = None
        self.notify(job)
        self.queue.enqueue(job)
        logger.info(f"归档任务已入队 {job.id}")
        return job

    async def execute_archive(self, job: DownloadJob) -> Optional[ArchivedVideo]:
        """
        执行一次归档。

        成功时删除下载任务与转码记录，并以 Archived 状态发布一次；
        失败时任务保留，状态为 ArchivingFailed。

        参数：
            job: 处于 Archiving 状态的下载任务

        返回：
            新建的归档影片，失败时返回 None
        """
        try:
            source = self._resolve_source(job)
            archive_dir = self.config.archive_path
            archive_dir.mkdir(parents=True, exist_ok=True)

            target = unique_archive_path(archive_dir, strip_part_suffix(source.name))
            logger.info(f"归档 {job.id}: {source} → {target}")
            shutil.move(str(source), str(target))

            file_size = target.stat().st_size
            self._set_progress(job, 10)

            video = ArchivedVideo(
                title=job.title,
                original_url=job.url,
                file_path=str(target),
                file_name=target.name,
                file_size_bytes=file_size,
            )
            self._set_progress(job, 20)

            async def on_thumbnail(done: int, total: int) -> None:
                self._set_progress(job, 20 + 70 * done / total)

            thumbnails = None
            try:
                thumbnails = await self.thumbnails.generate(target, video.id, on_thumbnail)
            except Exception as e:
                logger.exception(f"归档 {job.id} 缩略图生成失败: {e}")
            assign_thumbnails(video, thumbnails)

            self.store.upsert(video)
            self.events.publish("archives", video)

            # 转码过的任务，原始下载文件已无用
            if job.converted_file_path and job.output_path and Path(job.output_path) != source:
                remove_file_quietly(Path(job.output_path))

            conversion = self.store.get_conversion_by_download_id(job.id)
            if conversion is not None:
                self.conversions.remove_conversion_job(conversion.id)
            self.store.delete(DownloadJob, job.id)

            job.status = DownloadStatus.ARCHIVED
            job.progress = 100
            self.events.publish("downloads", job)
            logger.info(f"归档完成 {job.id} → 归档影片 {video.id} ({video.file_size_formatted})")
            return video
        except Exception as e:
            logger.exception(f"归档任务执行失败 {job.id}: {e}")
            job.status = DownloadStatus.ARCHIVING_FAILED
            job.error_message = str(e)
            self.notify(job)
            return None

    def _resolve_source(self, job: DownloadJob) -> Path:
        """优先使用转码文件，其次原始下载文件。"""
        if job.converted_file_path and Path(job.converted_file_path).exists():
            return Path(job.converted_file_path)
        if job.output_path and Path(job.output_path).exists():
            return Path(job.output_path)
        raise FileNotFoundError(f"找不到任务 {job.id} 的影片文件")

    def _set_progress(self, job: DownloadJob, progress: float) -> None:
        job.progress = progress
        self.notify(job)

    def notify(self, job: DownloadJob) -> None:
        """持久化下载任务并发布变更。"""
        self.store.upsert(job)
        self.events.publish("downloads", job)
