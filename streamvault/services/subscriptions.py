"""直播订阅：定期检查订阅频道是否开播，开播时自动发起下载。"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import yt_dlp
from loguru import logger

from streamvault.config import Settings
from streamvault.database import JobStore
from streamvault.models.job import RUNNING_DOWNLOAD_STATUSES, DownloadJob, utc_now
from streamvault.models.subscription import Subscription
from streamvault.services.downloader import DownloadService


class StreamChecker:
    """使用 yt-dlp 元数据判断地址当前是否在直播。"""

    def __init__(self, config: Settings):
        self.config = config

    def _opts(self) -> dict:
        return {
            "ffmpeg_location": self.config.ffmpeg_path,
            "quiet": True,
            "no_warnings": True,
            "no_color": True,
            "socket_timeout": 30,
            "skip_download": True,
            "noplaylist": True,
        }

    async def is_live(self, url: str) -> bool:
        """
        异步获取元数据并判断直播状态。

        参数：
            url: 频道或直播地址

        返回：
            是否正在直播；获取失败视为未开播
        """

        def _extract():
            with yt_dlp.YoutubeDL(self._opts()) as ydl:
                return ydl.extract_info(url, download=False)

        loop = asyncio.get_event_loop()
        try:
            info = await loop.run_in_executor(None, _extract)
        except Exception as e:
            logger.warning(f"直播状态检查失败 {url}: {e}")
            return False

        if not info:
            return False
        return info.get("live_status") == "is_live" or bool(info.get("is_live"))


class SubscriptionPoller:
    """检查到期订阅并在开播时触发下载。"""

    def __init__(self, store: JobStore, downloads: DownloadService, checker: StreamChecker):
        self.store = store
        self.downloads = downloads
        self.checker = checker

    @staticmethod
    def is_due(subscription: Subscription, now: datetime) -> bool:
        if subscription.last_checked_at is None:
            return True
        next_check = subscription.last_checked_at + timedelta(minutes=subscription.check_rate_minutes)
        return next_check <= now

    def has_running_download(self, url: str) -> bool:
        return bool(self.store.find(
            DownloadJob,
            DownloadJob.url == url,
            DownloadJob.status.in_(RUNNING_DOWNLOAD_STATUSES),
        ))

    async def check_subscriptions(self, now: Optional[datetime] = None) -> list[DownloadJob]:
        """
        检查所有已启用且到期的订阅。

        单个订阅的异常只记录日志，不影响其余订阅。

        参数：
            now: 当前时间（带时区），默认当前 UTC 时间

        返回：
            本轮新发起的下载任务
        """
        now = now or utc_now()
        started: list[DownloadJob] = []

        for subscription in self.store.get_enabled_subscriptions():
            if not self.is_due(subscription, now):
                continue
            try:
                if self.has_running_download(subscription.url):
                    logger.debug(f"订阅 {subscription.name or subscription.url} 已有下载在进行，跳过")
                elif await self.checker.is_live(subscription.url):
                    logger.info(f"订阅 {subscription.name or subscription.url} 已开播，开始下载")
                    job = await self.downloads.start_download(subscription.url, subscription.resolution)
                    subscription.last_triggered_at = now
                    started.append(job)
                subscription.last_checked_at = now
                self.store.upsert(subscription)
            except Exception as e:
                logger.exception(f"检查订阅失败 {subscription.id}: {e}")

        return started

    async def run(self, shutdown: asyncio.Event, tick_seconds: float = 60) -> None:
        """按固定间隔轮询，直到关闭事件触发。"""
        logger.info(f"订阅轮询已启动，间隔 {tick_seconds}s")
        while not shutdown.is_set():
            try:
                await self.check_subscriptions()
            except Exception as e:
                logger.exception(f"订阅轮询异常: {e}")
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=tick_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("订阅轮询已停止")
