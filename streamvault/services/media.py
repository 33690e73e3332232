"""媒体工具服务：使用 ffprobe 获取时长，使用 FFmpeg 截取多张缩略图。"""

import asyncio
import subprocess
from pathlib import Path
from typing import Awaitable, Callable, Optional

from loguru import logger

from streamvault.config import Settings, render_filename

# 缩略图截取位置（占总时长的比例）
THUMBNAIL_POSITIONS = (0.10, 0.25, 0.40, 0.55, 0.70, 0.85)

ThumbnailProgress = Callable[[int, int], Awaitable[None]]


class MediaProbe:
    """封装 ffprobe 查询媒体文件信息。"""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    async def duration(self, video_path: Path) -> Optional[float]:
        """
        异步获取媒体时长。

        参数：
            video_path: 媒体文件路径

        返回：
            时长（秒），无法获取时返回 None
        """
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(video_path),
        ]

        def _run() -> subprocess.CompletedProcess:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=30)

        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(None, _run)
        except Exception as e:
            logger.error(f"获取时长失败 {video_path}: {e}")
            return None

        if result.returncode != 0:
            logger.warning(f"ffprobe 退出码 {result.returncode} {video_path}: {result.stderr[-500:]}")
            return None

        try:
            value = float(result.stdout.strip())
        except ValueError:
            logger.warning(f"无法解析 ffprobe 输出: {result.stdout!r}")
            return None

        logger.info(f"影片时长 {video_path}: {value:.2f}s")
        return value


class ThumbnailGenerator:
    """使用 FFmpeg 在影片多个时间点截取缩略图。"""

    def __init__(self, config: Settings, probe: MediaProbe):
        """
        初始化缩略图生成器。

        参数：
            config: 应用配置（FFmpeg 路径、缩略图目录与文件名模板）
            probe: 时长探测器
        """
        self.config = config
        self.probe = probe

    async def generate(
        self,
        video_path: Path,
        key: str,
        progress_callback: Optional[ThumbnailProgress] = None,
    ) -> Optional[list[str]]:
        """
        在 10%/25%/40%/55%/70%/85% 处各截取一帧。

        单张失败只记录日志并跳过；时长未知时不生成任何缩略图。

        参数：
            video_path: 影片文件路径
            key: 缩略图文件名中的标识
            progress_callback: 每完成一步调用 (已完成数, 总数)

        返回：
            成功生成的缩略图文件名列表，全部失败时返回 None
        """
        duration = await self.probe.duration(video_path)
        if not duration or duration <= 0:
            logger.warning(f"无法确定影片时长，跳过缩略图生成: {video_path}")
            return None

        thumbnail_dir = self.config.thumbnail_path
        thumbnail_dir.mkdir(parents=True, exist_ok=True)
        total = len(THUMBNAIL_POSITIONS)
        generated: list[str] = []

        for idx, position in enumerate(THUMBNAIL_POSITIONS, start=1):
            file_name = render_filename(
                self.config.thumbnail_filename_template, id=key, index=f"{idx:02d}"
            )
            output_path = thumbnail_dir / file_name
            if await self._extract_frame(video_path, duration * position, output_path):
                generated.append(file_name)
            if progress_callback:
                await progress_callback(idx, total)

        logger.info(f"缩略图生成完成 key={key}: {len(generated)}/{total}")
        return generated or None

    async def _extract_frame(self, video_path: Path, timestamp: float, output_path: Path) -> bool:
        """
        异步调用 FFmpeg 提取指定时间戳的帧，缩放到 1280 宽。

        参数：
            video_path: 影片文件路径
            timestamp: 时间戳（秒）
            output_path: 输出图片路径

        返回：
            是否成功
        """
        cmd = [
            self.config.ffmpeg_path,
            "-ss", f"{timestamp:.3f}",
            "-i", str(video_path),
            "-vframes", "1",
            "-vf", "scale=1280:-1",
            "-q:v", "2",
            "-y",
            str(output_path),
        ]

        def _run():
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
            if result.returncode != 0:
                raise RuntimeError(f"FFmpeg 错误: {result.stderr[-500:]}")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, _run)
        except Exception as e:
            logger.error(f"提取帧失败 t={timestamp:.3f}s: {e}")
            return False
        return output_path.exists()


def remove_file_quietly(path: Path) -> bool:
    """尽力删除文件，失败只记录日志。"""
    try:
        if path.exists():
            path.unlink()
            logger.info(f"已删除文件: {path}")
            return True
    except OSError as e:
        logger.warning(f"删除文件失败 {path}: {e}")
    return False
