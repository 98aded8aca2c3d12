"""
Owns one child process from launch to its final status.

A supervisor is created by the queue scheduler for exactly one task. It starts
the child, records the task as active with the child's pid before reading any
output, drains stdout and stderr on two daemon threads, feeds each line to the
domain's progress tracker and writes the resulting updates to the task store.
A monitor thread waits for the exit and writes the final status.

The final status is written under the store lock and never replaces a status
that is already terminal, so an operator cancel always wins the race against a
natural exit.
"""

import os
import subprocess
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple

from loguru import logger

from ..config.common import AppConfig, READER_JOIN_TIMEOUT
from ..domain.exceptions import InvalidTaskStateError, TaskLaunchError, TaskNotFoundError, TaskStoreError
from ..domain.task import Task, TaskStatus
from ..domain.task_store import TaskStore
from ..utils.process_utils import format_command
from .logging_service import CommandLog, ErrorLog
from .progress_parser import ProgressUpdate

# Lines of stderr kept for the error log when a task fails.
OUTPUT_TAIL_LINES = 20


class ProcessSupervisor:
    """
    Supervises the child process of a single task.

    Args:
        task: The waiting task to run. Only its id is kept; the record is always
              re-read from the store before it is changed.
        store: The task store of the task's domain.
        command: Full argument vector, executable first.
        cwd: Working directory of the child.
        tracker: Progress tracker with `feed_stdout`, `feed_stderr` and `observed_progress`.
        config: Application config (stall timeout, log locations).
        on_finished: Called with this supervisor after the final status was written.
        on_activate: Called with the task record inside the activation write, for
                     domain fields decided at launch (e.g. the acceleration path).
    """

    def __init__(
        self,
        task: Task,
        store: TaskStore,
        command: List[str],
        cwd: Path,
        tracker,
        config: AppConfig,
        on_finished: Optional[Callable[["ProcessSupervisor"], None]] = None,
        on_activate: Optional[Callable[[Task], None]] = None,
    ):
        self.task_id = task.id
        self.store = store
        self.command = [str(part) for part in command]
        self.display_command = format_command(self.command)
        self.cwd = Path(cwd)
        self.tracker = tracker
        self.stall_timeout = config.stall_timeout
        self.on_finished = on_finished
        self.on_activate = on_activate
        self.command_log = CommandLog(config.command_log_path)
        self.error_log = ErrorLog(config.error_log_dir)

        self.process: Optional[subprocess.Popen] = None
        self.pid: Optional[int] = None
        self.returncode: Optional[int] = None
        self.final_status: Optional[TaskStatus] = None

        self._cancel_requested = False
        self._abandoned = False
        self._stalled = False
        self._monitor_error: Optional[str] = None
        self._exited = threading.Event()
        self._done = threading.Event()
        self._watchdog_stop = threading.Event()
        self._last_output = time.monotonic()
        self._stderr_tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        self._readers: List[threading.Thread] = []

    def __repr__(self):
        return f"ProcessSupervisor(task={self.task_id}, pid={self.pid})"

    @property
    def is_running(self) -> bool:
        return self.process is not None and not self._exited.is_set()

    # --- Launch ---

    def start(self) -> int:
        """
        Launches the child and marks the task active.

        Returns:
            The pid of the child.

        Raises:
            TaskLaunchError: The executable is missing or the OS refused to spawn it.
            InvalidTaskStateError: The task left `waiting` before it could be marked active.
            TaskStoreError: The activation could not be persisted. The child is killed.
        """
        if not self.cwd.is_dir():
            raise TaskLaunchError(f"Working directory does not exist: {self.cwd}")

        logger.info(f"Starting task {self.task_id}: {self.display_command}")
        self.command_log.write(self.task_id, self.display_command)
        try:
            self.process = subprocess.Popen(
                self.command,
                cwd=str(self.cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                creationflags=subprocess.CREATE_NO_WINDOW if os.name == "nt" else 0,
            )
        except OSError as e:
            raise TaskLaunchError(f"Could not start '{self.command[0]}': {e}") from e

        self.pid = self.process.pid

        def _activate(task: Task):
            if task.status != TaskStatus.WAITING:
                raise InvalidTaskStateError(
                    f"Task {task.id} is '{task.status.value}' and can no longer be started."
                )
            task.mark_active(self.pid, self.display_command)
            task.progress = 0.0
            task.last_update = datetime.now()
            if self.on_activate:
                self.on_activate(task)

        try:
            self.store.update_task(self.task_id, _activate)
        except (TaskStoreError, TaskNotFoundError, InvalidTaskStateError):
            logger.error(f"Could not record task {self.task_id} as active. Killing pid {self.pid}.")
            self._kill()
            # Drains and closes both pipes.
            self.process.communicate()
            self._exited.set()
            self._done.set()
            raise

        logger.info(f"Task {self.task_id} is active with pid {self.pid}.")
        self._last_output = time.monotonic()
        self._readers = [
            threading.Thread(
                target=self._read_stream,
                args=(self.process.stdout, self.tracker.feed_stdout, False),
                name=f"{self.task_id}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stream,
                args=(self.process.stderr, self.tracker.feed_stderr, True),
                name=f"{self.task_id}-stderr",
                daemon=True,
            ),
        ]
        for reader in self._readers:
            reader.start()
        if self.stall_timeout and self.stall_timeout > 0:
            threading.Thread(target=self._watchdog, name=f"{self.task_id}-watchdog", daemon=True).start()
        threading.Thread(target=self._monitor, name=f"{self.task_id}-monitor", daemon=True).start()
        return self.pid

    # --- Monitoring ---

    def _read_stream(self, stream, feed: Callable[[str], Optional[ProgressUpdate]], keep_tail: bool):
        try:
            for raw_line in stream:
                line = raw_line.rstrip("\r\n")
                self._last_output = time.monotonic()
                if not line:
                    continue
                if keep_tail:
                    self._stderr_tail.append(line)
                update = feed(line)
                if update is not None:
                    self._apply(update)
        except (OSError, ValueError) as e:
            if not self._exited.is_set():
                self._monitor_error = f"Error while reading output: {e}"
                logger.error(f"Task {self.task_id}: {self._monitor_error}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _apply(self, update: ProgressUpdate):
        def _update(task: Task):
            # A cancel may already have closed the record.
            if task.status != TaskStatus.ACTIVE or task.pid != self.pid:
                return
            update.apply_to(task)
            task.last_update = datetime.now()

        try:
            self.store.update_task(self.task_id, _update)
        except (TaskStoreError, TaskNotFoundError) as e:
            # The next parsed line writes fresh values again.
            logger.warning(f"Could not persist progress of task {self.task_id}: {e}")

    def _watchdog(self):
        interval = max(0.1, min(1.0, self.stall_timeout / 4))
        while not self._watchdog_stop.wait(interval):
            silent_for = time.monotonic() - self._last_output
            if silent_for > self.stall_timeout:
                logger.warning(f"Task {self.task_id}: no output for {int(silent_for)}s, killing pid {self.pid}.")
                self._stalled = True
                self._kill()
                break

    def _monitor(self):
        try:
            self.returncode = self.process.wait()
        except OSError as e:
            self._monitor_error = f"Error while waiting for the process: {e}"
            logger.error(f"Task {self.task_id}: {self._monitor_error}")
        finally:
            self._watchdog_stop.set()

        for reader in self._readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)

        try:
            if self._abandoned:
                logger.info(f"Task {self.task_id} abandoned with pid {self.pid}; it stays active until the next recovery.")
            else:
                self.finalize(self.returncode)
        finally:
            self._exited.set()
            try:
                if self.on_finished and not self._abandoned:
                    self.on_finished(self)
            finally:
                self._done.set()

    def finalize(self, returncode: Optional[int]):
        """
        Writes the final status of the task from the exit outcome.

        An already-terminal record is left as it is. Otherwise a requested cancel
        gives `cancelled`, a stall, monitoring error or non-zero exit gives
        `failed`, and a clean exit gives `completed`.
        """

        def _finalize(task: Task) -> Tuple[TaskStatus, Optional[str]]:
            if task.is_terminal:
                logger.info(f"Task {self.task_id} already {task.status.value}; keeping it.")
                return task.status, None
            if task.status == TaskStatus.ACTIVE and task.pid not in (None, self.pid):
                logger.warning(f"Task {self.task_id} is owned by pid {task.pid} now; not touching it.")
                return task.status, None

            if self._cancel_requested:
                task.mark_finished(TaskStatus.CANCELLED)
            elif self._stalled:
                task.mark_finished(TaskStatus.FAILED, f"No output for {self.stall_timeout}s, process killed")
            elif self._monitor_error:
                task.mark_finished(TaskStatus.FAILED, self._monitor_error)
            elif returncode is None or returncode != 0:
                task.mark_finished(TaskStatus.FAILED, task.error or f"exit code {returncode}")
            else:
                if not self.tracker.observed_progress:
                    logger.warning(f"Task {self.task_id} exited with code 0 without reporting any progress.")
                task.mark_finished(TaskStatus.COMPLETED)
            task.last_update = datetime.now()
            return task.status, task.error

        try:
            self.final_status, error = self.store.update_task(self.task_id, _finalize)
        except (TaskStoreError, TaskNotFoundError) as e:
            logger.error(f"Could not write the final status of task {self.task_id}: {e}")
            self.error_log.write(f"Task: {self.task_id}", f"Could not write final status: {e}")
            return

        if self.final_status == TaskStatus.FAILED and error:
            logger.error(f"Task {self.task_id} failed: {error}")
            self.error_log.write(
                f"Task: {self.task_id}",
                f"Command: {self.display_command}",
                f"Error: {error}",
                *(["Last output:", *self._stderr_tail] if self._stderr_tail else []),
            )
        else:
            logger.info(f"Task {self.task_id} finished: {self.final_status.value if self.final_status else None}")

    # --- Control ---

    def _kill(self):
        if self.process is None or self.process.poll() is not None:
            return
        try:
            self.process.kill()
        except OSError as e:
            logger.error(f"Failed to kill pid {self.pid} of task {self.task_id}: {e}")

    def cancel(self):
        """Requests termination. The task ends `cancelled` whatever the exit code."""
        self._cancel_requested = True
        logger.info(f"Cancelling task {self.task_id} (pid {self.pid}).")
        self._kill()

    def abandon(self):
        """Kills the child without writing a final status (application shutdown)."""
        self._abandoned = True
        self._kill()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the child exited and the final status was written. False on timeout."""
        return self._done.wait(timeout)
