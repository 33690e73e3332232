"""进度解析：从 yt-dlp 与 FFmpeg 的逐行输出中提取百分比、速度、剩余时间与帧率。"""

import json
import re
from typing import Optional

# [download]  45.2% of 123.45MiB at 1.23MiB/s ETA 00:45
_DOWNLOAD_RE = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
_DOWNLOAD_SPEED_RE = re.compile(r"\bat\s+(\S+)")
_DOWNLOAD_ETA_RE = re.compile(r"\bETA\s+(\S+)")

# FFmpeg -progress 输出：out_time_ms 实际单位为微秒
_OUT_TIME_RE = re.compile(r"out_time_ms=(\d+)")
_SPEED_RE = re.compile(r"speed=\s*(\d+(?:\.\d+)?)x")
_FPS_RE = re.compile(r"fps=\s*(\d+(?:\.\d+)?)")


def parse_download_line(job, line: str) -> bool:
    """
    解析一行 yt-dlp 输出并更新下载任务。

    参数：
        job: DownloadJob
        line: 原始输出行

    返回：
        任务是否发生了需要持久化的变化（进度或标题）
    """
    text = line.strip()
    changed = False

    if text.startswith("{") and text.endswith("}"):
        try:
            info = json.loads(text)
        except ValueError:
            info = None
        if isinstance(info, dict) and info.get("title"):
            job.title = str(info["title"])
            changed = True

    match = _DOWNLOAD_RE.search(text)
    if match:
        job.progress = min(100.0, float(match.group(1)))
        speed = _DOWNLOAD_SPEED_RE.search(text, match.end())
        if speed and speed.group(1) != "Unknown":
            job.speed = speed.group(1)
        eta = _DOWNLOAD_ETA_RE.search(text, match.end())
        if eta and eta.group(1) != "Unknown":
            job.eta = eta.group(1)
        changed = True

    return changed


def format_eta(seconds: float) -> str:
    """将秒数格式化为 HH:MM:SS（不足 1 小时为 MM:SS）。"""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours >= 1:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class FfmpegProgress:
    """
    FFmpeg 进度解析器。

    -progress 输出每行一个键值，速度与已处理时长分属不同行，
    因此需要记住最近一次的速度用于计算剩余时间。
    """

    def __init__(self, total_duration: Optional[float]):
        """
        参数：
            total_duration: 源文件总时长（秒），未知时不计算百分比与剩余时间
        """
        self.total_duration = total_duration
        self.elapsed: Optional[float] = None
        self.speed: Optional[float] = None

    def feed(self, job, line: str) -> bool:
        """
        解析一行 FFmpeg 输出并更新转码任务。

        返回：
            是否更新了百分比（调用方据此持久化并通知）
        """
        speed_match = _SPEED_RE.search(line)
        if speed_match:
            speed = float(speed_match.group(1))
            if speed > 0:
                self.speed = speed
                job.speed = f"{speed:.2f}x"

        fps_match = _FPS_RE.search(line)
        if fps_match:
            job.fps = f"{float(fps_match.group(1)):.1f}"

        time_match = _OUT_TIME_RE.search(line)
        if not time_match or not self.total_duration or self.total_duration <= 0:
            return False

        self.elapsed = int(time_match.group(1)) / 1_000_000
        job.progress = min(100.0, self.elapsed / self.total_duration * 100)
        if self.speed:
            job.eta = format_eta((self.total_duration - self.elapsed) / self.speed)
        return True
