"""后台工作者：下载、转码、归档三个阶段与订阅轮询，以及组装它们的运行时。"""

import asyncio
from typing import Optional

from loguru import logger

from streamvault.config import Settings, settings
from streamvault.database import JobStore, get_engine, init_db
from streamvault.models.job import (
    RUNNING_DOWNLOAD_STATUSES,
    DownloadStatus,
)
from streamvault.services.archiver import ArchiveService
from streamvault.services.converter import ConversionService
from streamvault.services.downloader import DownloadService
from streamvault.services.media import MediaProbe, ThumbnailGenerator
from streamvault.services.process import ProcessRunner
from streamvault.services.subscriptions import StreamChecker, SubscriptionPoller
from streamvault.services.urls import UrlBuilder
from streamvault.workers.queue import EventQueue, StageQueue


class DownloadWorker:
    """下载阶段：每个任务一个协程，并行执行。"""

    def __init__(self, service: DownloadService):
        self.service = service
        self._tasks: set[asyncio.Task] = set()

    def resume(self) -> int:
        """把上次未结束的下载任务重新入队。"""
        jobs = self.service.store.get_downloads_by_status(*RUNNING_DOWNLOAD_STATUSES)
        for job in jobs:
            logger.info(f"恢复下载任务 {job.id} ({job.status.value})")
            self.service.queue.enqueue(job)
        return len(jobs)

    async def run(self, shutdown: asyncio.Event) -> None:
        self.resume()
        logger.info("下载工作者已启动")
        while True:
            try:
                job = await self.service.queue.dequeue(shutdown)
            except asyncio.CancelledError:
                break
            try:
                task = asyncio.ensure_future(self.service.execute_download(job, shutdown))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.exception(f"派发下载任务失败 {job.id}: {e}")

        if self._tasks:
            logger.info(f"等待 {len(self._tasks)} 个下载任务结束...")
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("下载工作者已停止")


class ConversionWorker:
    """转码阶段：严格串行，同一时间只运行一个转码。"""

    def __init__(self, service: ConversionService):
        self.service = service

    def resume(self) -> int:
        jobs = self.service.get_active_conversions()
        for job in jobs:
            logger.info(f"恢复转码任务 {job.id} ({job.status.value})")
            self.service.queue.enqueue(job)
        return len(jobs)

    async def run(self, shutdown: asyncio.Event) -> None:
        self.resume()
        logger.info("转码工作者已启动")
        while True:
            try:
                job = await self.service.queue.dequeue(shutdown)
            except asyncio.CancelledError:
                break
            try:
                await self.service.execute_conversion(job, shutdown)
            except Exception as e:
                logger.exception(f"转码工作者处理任务失败 {job.id}: {e}")
        logger.info("转码工作者已停止")


class ArchiveWorker:
    """归档阶段：串行执行。"""

    def __init__(self, service: ArchiveService):
        self.service = service

    def resume(self) -> int:
        jobs = self.service.store.get_downloads_by_status(DownloadStatus.ARCHIVING)
        for job in jobs:
            logger.info(f"恢复归档任务 {job.id}")
            self.service.queue.enqueue(job)
        return len(jobs)

    async def run(self, shutdown: asyncio.Event) -> None:
        self.resume()
        logger.info("归档工作者已启动")
        while True:
            try:
                job = await self.service.queue.dequeue(shutdown)
            except asyncio.CancelledError:
                break
            try:
                await self.service.execute_archive(job)
            except Exception as e:
                logger.exception(f"归档工作者处理任务失败 {job.id}: {e}")
        logger.info("归档工作者已停止")


class SubscriptionWorker:
    """订阅轮询的外层循环。"""

    def __init__(self, poller: SubscriptionPoller, tick_seconds: float):
        self.poller = poller
        self.tick_seconds = tick_seconds

    async def run(self, shutdown: asyncio.Event) -> None:
        await self.poller.run(shutdown, self.tick_seconds)


class Runtime:
    """
    按配置组装存储、队列、服务与工作者。

    start() 在事件循环中启动所有工作者，stop() 触发关闭事件并等待它们退出。
    """

    def __init__(
        self,
        config: Settings = settings,
        runner: Optional[ProcessRunner] = None,
        checker: Optional[StreamChecker] = None,
        probe: Optional[MediaProbe] = None,
        thumbnails: Optional[ThumbnailGenerator] = None,
    ):
        """
        参数：
            config: 应用配置
            runner: 外部进程执行器，默认 ProcessRunner
            checker: 直播检查器，默认 StreamChecker
            probe: 时长探测器，默认 MediaProbe
            thumbnails: 缩略图生成器，默认 ThumbnailGenerator
        """
        self.config = config
        config.ensure_directories()

        self.engine = get_engine(config.database_path, echo=config.debug)
        init_db(self.engine)
        self.store = JobStore(self.engine)
        migrated = self.store.migrate_legacy_archive(config.metadata_path)
        if migrated:
            logger.info(f"旧版归档记录迁移完成: {migrated} 条")

        self.events = EventQueue()
        self.download_queue: StageQueue = StageQueue("download")
        self.conversion_queue: StageQueue = StageQueue("conversion")
        self.archive_queue: StageQueue = StageQueue("archive")

        self.runner = runner or ProcessRunner(config.process_kill_timeout)
        self.probe = probe or MediaProbe(config.ffprobe_path)
        self.thumbnails = thumbnails or ThumbnailGenerator(config, self.probe)
        self.urls = UrlBuilder(config)

        self.conversions = ConversionService(
            config, self.store, self.conversion_queue, self.events, self.runner, self.probe, self.thumbnails
        )
        self.downloads = DownloadService(
            config, self.store, self.download_queue, self.events, self.runner, self.conversions, self.thumbnails
        )
        self.archives = ArchiveService(
            config, self.store, self.archive_queue, self.events, self.conversions, self.thumbnails
        )
        self.poller = SubscriptionPoller(self.store, self.downloads, checker or StreamChecker(config))

        self.workers = [
            DownloadWorker(self.downloads),
            ConversionWorker(self.conversions),
            ArchiveWorker(self.archives),
            SubscriptionWorker(self.poller, config.subscription_tick_seconds),
        ]
        self.shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        """启动所有后台工作者（需在事件循环中调用）。"""
        if self._tasks:
            return
        self.shutdown.clear()
        self._tasks = [asyncio.ensure_future(worker.run(self.shutdown)) for worker in self.workers]
        logger.info(f"后台工作者已启动: {len(self._tasks)} 个")

    async def stop(self) -> None:
        """通知所有工作者关闭并等待其结束。"""
        self.shutdown.set()
        if self._tasks:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"后台工作者异常退出: {result}")
        self._tasks = []
        self.engine.dispose()
        logger.info("后台工作者已全部停止")
