"""外部进程调用：逐行读取输出、支持取消并确保整个进程树退出。"""

import asyncio
import os
import re
import signal
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

LineHandler = Callable[[str, str], None]

# yt-dlp 与 ffmpeg 用 \r 覆盖同一行进度，\r 与 \n 都视为行结束
_LINE_BREAK_RE = re.compile(rb"\r\n|\r|\n")
_READ_CHUNK = 64 * 1024


@dataclass
class ProcessResult:
    """外部进程的执行结果。"""
    exit_code: int
    cancelled: bool = False


def normalize_exit_code(returncode: int) -> int:
    """被信号 N 终止的进程返回 -N，按 shell 约定换算为 128+N（SIGKILL→137，SIGTERM→143）。"""
    if returncode < 0:
        return 128 - returncode
    return returncode


class ProcessRunner:
    """启动外部进程，把 stdout/stderr 的每一行交给回调，并在取消时终止整个进程组。"""

    def __init__(self, kill_timeout: float = 10.0):
        """
        参数：
            kill_timeout: 发送 SIGTERM 后等待退出的秒数，超时改用 SIGKILL
        """
        self.kill_timeout = kill_timeout

    async def stream(
        self,
        cmd: list[str],
        on_line: LineHandler,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ProcessResult:
        """
        运行命令并逐行分发输出，直到进程退出或取消事件触发。

        输出读尽后才读取退出码；取消时会等待进程树完全退出后再返回。

        参数：
            cmd: 命令及参数
            on_line: 回调 (line, stream_name)，stream_name 为 "stdout" 或 "stderr"
            cancel_event: 取消事件

        返回：
            ProcessResult
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            start_new_session=(os.name != "nt"),
        )

        async def pump(stream: asyncio.StreamReader, name: str) -> None:
            # 按块读取，单行长度不受 StreamReader 缓冲上限约束
            pending = b""
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                parts = _LINE_BREAK_RE.split(pending + chunk)
                pending = parts.pop()
                # 跨块的 \r\n 会多切出一个空行，空行一律丢弃
                for part in parts:
                    if part:
                        on_line(part.decode("utf-8", errors="replace"), name)
            if pending:
                on_line(pending.decode("utf-8", errors="replace"), name)

        readers = asyncio.ensure_future(
            asyncio.gather(pump(process.stdout, "stdout"), pump(process.stderr, "stderr"))
        )
        cancel_task = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        cancelled = False
        try:
            if cancel_task is not None:
                done, _ = await asyncio.wait({readers, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
                if cancel_task in done and not readers.done():
                    cancelled = True
                    logger.info(f"收到取消信号，正在终止进程 pid={process.pid}")
                    await self.terminate(process)
            await readers
            returncode = await process.wait()
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
            if process.returncode is None:
                readers.cancel()
                await self.terminate(process)

        return ProcessResult(exit_code=normalize_exit_code(returncode), cancelled=cancelled)

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """终止进程及其子进程，等待其退出。"""
        if process.returncode is not None:
            return
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"进程未在 {self.kill_timeout}s 内退出，强制结束 pid={process.pid}")
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if os.name != "nt":
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            # 进程已退出
            pass


def link_events(source: Optional[asyncio.Event], target: asyncio.Event) -> Optional[asyncio.Task]:
    """source 触发时同步触发 target，返回监听任务（用完需取消）。"""
    if source is None:
        return None

    async def _forward() -> None:
        await source.wait()
        target.set()

    return asyncio.ensure_future(_forward())
