"""Shared test configuration and fixtures for all tests."""

import os
import stat
import subprocess
import sys
import textwrap
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil
import pytest

from mediaqueue.config.common import AppConfig
from mediaqueue.config.transcode import TranscodePolicy
from mediaqueue.domain.exceptions import InvalidTaskStateError, TaskLaunchError
from mediaqueue.domain.task import DownloadTask, TaskStatus, TranscodeTask
from mediaqueue.domain.task_store import TaskStore

# Pids above the kernel's pid_max never exist.
FAKE_PID_BASE = 2 ** 22 + 100

FAKE_TORRENT_SCRIPT = """
import sys
import time

args = sys.argv[1:]
if args[:1] == ["metainfo"]:
    with open(args[1], encoding="utf-8") as f:
        content = f.read()
    if "bad" in content:
        print("error: invalid metainfo", file=sys.stderr)
        sys.exit(2)
    print("magnet:?xt=urn:btih:abcdef&dn=Example+Show")
    sys.exit(0)

locator = args[1] if len(args) > 1 else ""
if "sleep" in locator:
    time.sleep(30)
    sys.exit(0)
if "silent" in locator:
    sys.exit(0)
if "fail" in locator:
    print("error: no peers found", file=sys.stderr, flush=True)
    sys.exit(3)
if "crash" in locator:
    sys.exit(3)

for line in (
    "1s: 1 torrents, 1 infos, 0 B/1 MB ready, upload 0 B, download 0 B/s",
    "2s: 1 torrents, 1 infos, 512 KB/1 MB ready, upload 0 B, download 512 KB/s",
    "3s: 1 torrents, 1 infos, 1 MB/1 MB ready, upload 16 KB, download 512 KB/s",
):
    print(line, flush=True)
    time.sleep(0.02)
"""

FAKE_FFMPEG_SCRIPT = """
import sys

args = sys.argv[1:]
if "-version" in args:
    print("ffmpeg version 6.0-fake")
    sys.exit(0)

print("Input #0, matroska,webm, from 'in.mkv':", file=sys.stderr)
print("  Duration: 00:00:10.00, start: 0.000000, bitrate: 1000 kb/s", file=sys.stderr, flush=True)
for out_time in ("00:00:02.500000", "00:00:05.000000", "00:00:10.000000"):
    print("frame=10")
    print(f"out_time={out_time}")
    print("speed=2.0x")
    print("progress=continue", flush=True)
print("progress=end", flush=True)
with open(args[-1], "w") as f:
    f.write("encoded")
"""


@pytest.fixture
def posix_only():
    if os.name == "nt":
        pytest.skip("fake tools are shebang scripts")


@pytest.fixture
def make_tool(tmp_path: Path, posix_only) -> Callable[[str, str], str]:
    """Writes an executable Python script named `name` and returns its path."""
    tools_dir = tmp_path / "tools"
    tools_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> str:
        path = tools_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """A config rooted in a temporary directory, with software-only encoding."""
    config = AppConfig(
        state_dir=tmp_path / "state",
        download_dir=tmp_path / "downloads",
        ffmpeg_path=str(tmp_path / "missing" / "ffmpeg"),
        ffprobe_path=str(tmp_path / "missing" / "ffprobe"),
        torrent_path=str(tmp_path / "missing" / "torrent"),
        transcode=TranscodePolicy(force_software=True),
    )
    config.ensure_dirs()
    return config


@pytest.fixture
def tool_config(app_config: AppConfig, make_tool) -> AppConfig:
    """`app_config` with the fake fetch tool and encoder installed."""
    app_config.torrent_path = make_tool("torrent", FAKE_TORRENT_SCRIPT)
    app_config.ffmpeg_path = make_tool("ffmpeg", FAKE_FFMPEG_SCRIPT)
    return app_config


@pytest.fixture
def download_store(app_config: AppConfig) -> TaskStore:
    return TaskStore(app_config.download_store_path, DownloadTask)


@pytest.fixture
def transcode_store(app_config: AppConfig) -> TaskStore:
    return TaskStore(app_config.transcode_store_path, TranscodeTask)


@pytest.fixture
def add_download(download_store: TaskStore):
    """Appends a waiting download record; later calls get later timestamps unless given."""
    counter = {"n": 0}
    base = datetime(2024, 1, 1, 12, 0, 0)

    def _add(locator: str = "magnet:?xt=urn:btih:one", created_at: Optional[datetime] = None, **fields) -> DownloadTask:
        counter["n"] += 1
        task = DownloadTask(
            id=f"download-{counter['n']}",
            locator=locator,
            output_dir=str(download_store.path.parent),
            created_at=created_at or base + timedelta(seconds=counter["n"]),
            **fields,
        )
        download_store.mutate(lambda tasks: tasks.append(task))
        return task

    return _add


@pytest.fixture
def dead_pid() -> int:
    """The pid of a process that has already exited."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def wait_for_exec(pid: int, marker: str, timeout: float = 5.0):
    """Until exec completes, a fresh child still shows the parent's command line."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if any(marker in part for part in psutil.Process(pid).cmdline()):
            return
        time.sleep(0.01)
    pytest.fail(f"pid {pid} never showed '{marker}' in its command line")


class FakeSupervisor:
    """Stands in for ProcessSupervisor: no child, finishes when the test says so."""

    def __init__(self, task_id: str, store: TaskStore, on_finished, pid: int):
        self.task_id = task_id
        self.store = store
        self.on_finished = on_finished
        self.pid = pid
        self.cancelled = False
        self.abandoned = False
        self._running = False
        self._done = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> int:
        def _activate(task):
            if task.status != TaskStatus.WAITING:
                raise InvalidTaskStateError(task.id)
            task.mark_active(self.pid, "fake")

        self.store.update_task(self.task_id, _activate)
        self._running = True
        return self.pid

    def cancel(self):
        self.cancelled = True

    def abandon(self):
        self.abandoned = True
        self._running = False
        self._done.set()

    def finish(self, status: TaskStatus = TaskStatus.COMPLETED):
        """Simulates the child exiting: final status unless already terminal, then the callback."""

        def _finalize(task):
            if task.is_terminal:
                return
            task.mark_finished(TaskStatus.CANCELLED if self.cancelled else status)

        self.store.update_task(self.task_id, _finalize)
        self._running = False
        self.on_finished(self)
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


class FakeLauncher:
    """Launcher for QueueScheduler that hands out FakeSupervisors."""

    def __init__(self, store: TaskStore):
        self.store = store
        self.supervisors: Dict[str, FakeSupervisor] = {}
        self.launched: List[str] = []
        self.fail_ids = set()

    def __call__(self, task, on_finished) -> FakeSupervisor:
        if task.id in self.fail_ids:
            raise TaskLaunchError(f"Could not start '{task.id}': [Errno 2] No such file or directory")
        supervisor = FakeSupervisor(task.id, self.store, on_finished, FAKE_PID_BASE + len(self.launched))
        self.supervisors[task.id] = supervisor
        self.launched.append(task.id)
        return supervisor


@pytest.fixture
def fake_launcher(download_store: TaskStore) -> FakeLauncher:
    return FakeLauncher(download_store)
