"""
Task records for the two work domains.

A task is the persisted unit of schedulable work: one download or one
transcode. Both variants share the lifecycle fields defined on `Task`; each
domain adds its own input payload and progress details. Records are written to
disk as plain mappings with every key present (optional values are `null`) and
a `kind` tag that selects the variant when loading.
"""
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional

from ..config.common import (
    DOMAIN_DOWNLOAD,
    DOMAIN_TRANSCODE,
    TASK_STATUS_ACTIVE,
    TASK_STATUS_CANCELLED,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
    TASK_STATUS_WAITING,
)


class TaskStatus(str, Enum):
    WAITING = TASK_STATUS_WAITING
    ACTIVE = TASK_STATUS_ACTIVE
    COMPLETED = TASK_STATUS_COMPLETED
    FAILED = TASK_STATUS_FAILED
    CANCELLED = TASK_STATUS_CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

_DATETIME_FIELDS = ("created_at", "started_at", "ended_at", "last_update")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class Task:
    """
    Lifecycle fields shared by every task variant.

    Invariants kept by the helper methods below:
    - `pid` is set if and only if `status` is `active`.
    - `started_at` is stamped on entering `active`, `ended_at` on leaving it.
    - `error` is only filled in for failures (or runtime error lines observed
      while active; the final status is still decided at exit).
    """

    kind: ClassVar[str] = ""

    id: str = ""
    status: TaskStatus = TaskStatus.WAITING
    created_at: datetime = field(default_factory=datetime.now)
    progress: float = 0.0
    speed: Optional[str] = None
    eta: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    command: Optional[str] = None
    last_update: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_active(self, pid: int, command: Optional[str] = None):
        self.status = TaskStatus.ACTIVE
        self.pid = pid
        self.started_at = datetime.now()
        self.ended_at = None
        self.error = None
        if command:
            self.command = command

    def mark_waiting(self):
        """Demotes a task back to the queue (used for orphans found at startup)."""
        self.status = TaskStatus.WAITING
        self.pid = None
        self.ended_at = datetime.now()
        self.speed = None
        self.eta = None

    def mark_finished(self, status: TaskStatus, error: Optional[str] = None):
        if not status.is_terminal:
            raise ValueError(f"mark_finished() needs a terminal status, got '{status.value}'")
        self.status = status
        self.pid = None
        self.ended_at = datetime.now()
        self.speed = None
        self.eta = None
        if status == TaskStatus.COMPLETED:
            self.progress = 1.0
        if status == TaskStatus.FAILED:
            self.error = error or self.error
        else:
            self.error = None

    def apply_progress(self, progress: Optional[float]):
        """Progress only ever moves forward and is kept inside [0, 1]."""
        if progress is None:
            return
        progress = min(1.0, max(0.0, float(progress)))
        if progress > self.progress:
            self.progress = progress

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        for key, value in asdict(self).items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, TaskStatus):
                value = value.value
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in _DATETIME_FIELDS:
            if key in values:
                values[key] = _parse_datetime(values[key])
        if "status" in values:
            values["status"] = TaskStatus(values["status"])
        if values.get("created_at") is None:
            values.pop("created_at", None)
        return cls(**values)


@dataclass
class DownloadTask(Task):
    kind: ClassVar[str] = DOMAIN_DOWNLOAD

    locator: str = ""
    output_dir: str = ""
    display_name: str = ""
    selected_files: List[str] = field(default_factory=list)
    downloaded_bytes: int = 0
    total_bytes: int = 0


@dataclass
class TranscodeTask(Task):
    kind: ClassVar[str] = DOMAIN_TRANSCODE

    input_file: str = ""
    output_file: str = ""
    video_codec: str = ""
    audio_codec: str = ""
    resolution: str = ""
    bitrate: str = ""
    custom_args: str = ""
    source_duration: Optional[float] = None
    acceleration: Optional[str] = None


TASK_TYPES = {DownloadTask.kind: DownloadTask, TranscodeTask.kind: TranscodeTask}


def generate_task_id(prefix: str, existing_ids: Iterable[str], now: Optional[float] = None) -> str:
    """
    Builds a new task id from the current time in milliseconds.

    Ids are never reused: if the timestamp collides with an id already present in
    the store, the number is bumped until it is unique.
    """
    taken = set(existing_ids)
    stamp = int((time.time() if now is None else now) * 1000)
    candidate = f"{prefix}-{stamp}"
    while candidate in taken:
        stamp += 1
        candidate = f"{prefix}-{stamp}"
    return candidate
