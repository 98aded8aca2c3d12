"""
Durable persistence of task records.

Each domain owns one human-readable YAML list file. The file is the only source
of truth for task state: every component that wants to change a task loads the
whole list, changes its copy in memory and writes the whole list back. There is
no partial-record update primitive on disk.
"""

import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Generic, List, Optional, Type, TypeVar

import yaml
from loguru import logger

from .exceptions import TaskNotFoundError, TaskStoreError
from .task import Task

T = TypeVar("T", bound=Task)
R = TypeVar("R")


class TaskStore(Generic[T]):
    """
    Manages the list file of one domain.

    This class makes the orchestration core restartable: a task written as
    `active` with a pid survives a crash of this process and is found again by
    the recovery pass on the next start.

    Lifecycle of a mutation:
    1. `load_all()` reads and parses the whole file (a missing file is an empty
       list and is created on the spot).
    2. The caller changes the returned objects.
    3. `save_all()` serialises the full list to a temporary file next to the
       target and atomically replaces the target with it.

    `mutate()` and `update_task()` run that cycle under a re-entrant lock, so
    threads of this process never lose each other's updates. Writers in other
    processes are not coordinated; the last writer wins, and the monitoring
    loop re-derives its fields from live process state on its next tick.

    Attributes:
        path (Path): The YAML list file.
        task_type (Type[Task]): The record class stored in this file.
        lock (threading.RLock): Guards load-modify-save cycles inside this process.
    """

    def __init__(self, path: Path, task_type: Type[T]):
        self.path = Path(path).resolve()
        self.task_type = task_type
        self.lock = threading.RLock()

    @property
    def domain(self) -> str:
        return self.task_type.kind

    def load_all(self) -> List[T]:
        """
        Loads every record of the domain.

        Returns:
            The records in file order. An absent file yields an empty list and an
            empty file is written so the state directory is self-describing.

        Raises:
            TaskStoreError: The file exists but cannot be read or parsed.
        """
        with self.lock:
            if not self.path.exists():
                logger.debug(f"Task store {self.path.name} does not exist yet, creating an empty one.")
                self.save_all([])
                return []

            try:
                with self.path.open("r", encoding="utf-8") as f:
                    raw = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                raise TaskStoreError(f"Could not read task store {self.path}: {e}") from e

            if raw is None:
                return []
            if not isinstance(raw, list):
                raise TaskStoreError(f"Task store {self.path} does not contain a list of records.")

            tasks: List[T] = []
            for index, item in enumerate(raw):
                if not isinstance(item, dict):
                    raise TaskStoreError(f"Record #{index} in {self.path} is not a mapping.")
                try:
                    tasks.append(self.task_type.from_dict(item))
                except (TypeError, ValueError) as e:
                    raise TaskStoreError(f"Record #{index} in {self.path} is invalid: {e}") from e
            return tasks

    def save_all(self, tasks: List[T]):
        """
        Replaces the file content with `tasks`.

        The list is written to a temporary sibling file, flushed to disk and then
        moved over the target with `os.replace`, so a reader never observes a
        half-written file and a failed write leaves the old content in place.

        Raises:
            TaskStoreError: Serialisation or any filesystem step failed.
        """
        with self.lock:
            payload = [task.to_dict() for task in tasks]
            tmp_path: Optional[str] = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
                )
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    yaml.safe_dump(payload, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
                tmp_path = None
            except (OSError, yaml.YAMLError) as e:
                raise TaskStoreError(f"Could not write task store {self.path}: {e}") from e
            finally:
                if tmp_path and os.path.exists(tmp_path):
                    try:
                        os.unlink(tmp_path)
                    except OSError as cleanup_error:
                        logger.warning(f"Could not remove temporary file {tmp_path}: {cleanup_error}")

    def mutate(self, func: Callable[[List[T]], R]) -> R:
        """
        Runs one load -> mutate -> save cycle.

        `func` receives the loaded list and may change it in place. If it raises,
        nothing is written and the exception propagates.
        """
        with self.lock:
            tasks = self.load_all()
            result = func(tasks)
            self.save_all(tasks)
            return result

    def update_task(self, task_id: str, func: Callable[[T], R]) -> R:
        """Applies `func` to one record and persists the whole list."""

        def _apply(tasks: List[T]) -> R:
            return func(find_task(tasks, task_id))

        return self.mutate(_apply)

    def get(self, task_id: str) -> T:
        return find_task(self.load_all(), task_id)


def find_task(tasks: List[T], task_id: str) -> T:
    for task in tasks:
        if task.id == task_id:
            return task
    raise TaskNotFoundError(f"Task '{task_id}' not found.")
