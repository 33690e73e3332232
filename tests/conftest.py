import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import pytest

# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from streamvault.config import Settings
from streamvault.database import JobStore, get_engine, init_db
from streamvault.services.process import ProcessResult
from streamvault.workers.queue import EventQueue


@dataclass
class Script:
    """One scripted external process run."""

    lines: list = field(default_factory=list)
    exit_code: int = 0
    outputs: Optional[Callable[[list], list]] = None
    wait_for_cancel: bool = False
    steps: int = 0


def download_output(ext: str) -> Callable[[list], list]:
    """Resolve the yt-dlp output template to a concrete file."""
    def _outputs(cmd: list) -> list:
        template = cmd[cmd.index("--output") + 1]
        return [Path(template.replace("%(ext)s", ext))]
    return _outputs


def conversion_output(cmd: list) -> list:
    return [Path(cmd[-1])]


class FakeRunner:
    """Stands in for ProcessRunner: replays scripted output lines and exit codes."""

    def __init__(self, *scripts: Script):
        self.scripts = list(scripts)
        self.commands: list = []
        self.running = 0
        self.max_running = 0
        self.on_start: Optional[Callable[[list], None]] = None

    def add(self, script: Script) -> None:
        self.scripts.append(script)

    async def stream(self, cmd, on_line, cancel_event=None) -> ProcessResult:
        self.commands.append(list(cmd))
        script = self.scripts.pop(0) if self.scripts else Script()
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.on_start:
                self.on_start(cmd)
            if script.outputs:
                for path in script.outputs(cmd):
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_bytes(b"\0" * 2048)
            for item in script.lines:
                line, stream = item if isinstance(item, tuple) else (item, "stdout")
                on_line(line, stream)
                await asyncio.sleep(0)
            for _ in range(script.steps):
                await asyncio.sleep(0.005)
            if script.wait_for_cancel and cancel_event is not None:
                await cancel_event.wait()
                return ProcessResult(exit_code=143, cancelled=True)
            return ProcessResult(exit_code=script.exit_code)
        finally:
            self.running -= 1


class FakeProbe:
    def __init__(self, duration: Optional[float] = 100.0):
        self.value = duration
        self.calls: list = []

    async def duration(self, video_path):
        self.calls.append(Path(video_path))
        return self.value


class FakeThumbnails:
    """Writes placeholder stills and reports progress like ThumbnailGenerator."""

    def __init__(self, config: Settings, count: int = 6, fail: bool = False):
        self.config = config
        self.count = count
        self.fail = fail
        self.calls: list = []

    async def generate(self, video_path, key, progress_callback=None):
        self.calls.append((Path(video_path), key))
        if self.fail:
            raise RuntimeError("ffmpeg missing")
        self.config.thumbnail_path.mkdir(parents=True, exist_ok=True)
        names = []
        for idx in range(1, self.count + 1):
            name = f"{key}_thumb_{idx:02d}.jpg"
            (self.config.thumbnail_path / name).write_bytes(b"jpg")
            names.append(name)
            if progress_callback:
                await progress_callback(idx, self.count)
        return names or None


@pytest.fixture
def config(tmp_path) -> Settings:
    cfg = Settings(_env_file=None, data_dir=str(tmp_path / "data"), process_kill_timeout=2.0)
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def store(config) -> JobStore:
    engine = get_engine(config.database_path)
    init_db(engine)
    yield JobStore(engine)
    engine.dispose()


@pytest.fixture
def events() -> EventQueue:
    return EventQueue()


@pytest.fixture
def published(events) -> list:
    """Every (topic, status) pair published, in order."""
    seen: list = []

    def _listener(topic, record):
        seen.append((topic, getattr(record, "status", None)))

    events.add_listener(_listener)
    return seen


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def thumbnails(config) -> FakeThumbnails:
    return FakeThumbnails(config)
