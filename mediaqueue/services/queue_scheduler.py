"""
First-in, first-out scheduling with a capacity of one active task per domain.

The scheduler is the only component that moves a task from `waiting` to
`active`. Promotion is serialised by the scheduler lock; store writes are
serialised by the store lock. The lock order is always scheduler lock first,
store lock second.
"""

import threading
import time
from typing import Callable, List, Optional, Set

from loguru import logger

from ..domain.exceptions import (
    InvalidTaskStateError,
    MediaQueueException,
    SchedulerBusyError,
    TaskStoreError,
)
from ..domain.task import Task, TaskStatus
from ..domain.task_store import TaskStore, find_task
from ..utils.process_utils import kill_pid, pid_alive, process_matches
from .logging_service import ErrorLog
from .process_supervisor import ProcessSupervisor

# Builds a supervisor for a task. The scheduler starts it.
Launcher = Callable[[Task, Callable[[ProcessSupervisor], None]], ProcessSupervisor]


def next_waiting(tasks: List[Task]) -> Optional[Task]:
    """The earliest enqueued waiting task. `min` keeps list order for equal timestamps."""
    waiting = [task for task in tasks if task.status == TaskStatus.WAITING]
    if not waiting:
        return None
    return min(waiting, key=lambda task: task.created_at)


def active_tasks(tasks: List[Task]) -> List[Task]:
    return [task for task in tasks if task.status == TaskStatus.ACTIVE]


class QueueScheduler:
    """
    Runs the tasks of one domain one at a time.

    Attributes:
        store (TaskStore): The domain's task store.
        domain (str): The domain name, for logging.
        executable (str): The tool the domain runs. A pid recorded by another
            process is only killed while it still belongs to this tool.
    """

    def __init__(
        self,
        store: TaskStore,
        launcher: Launcher,
        error_log: Optional[ErrorLog] = None,
        executable: str = "",
    ):
        self.store = store
        self.domain = store.domain
        self.executable = executable
        self._launcher = launcher
        self._error_log = error_log
        self._lock = threading.RLock()
        self._supervisor: Optional[ProcessSupervisor] = None
        self._shutting_down = False

    # --- Supervisor tracking ---

    def active_supervisor(self) -> Optional[ProcessSupervisor]:
        with self._lock:
            if self._supervisor is not None and self._supervisor.is_running:
                return self._supervisor
            return None

    def owned_task_ids(self) -> Set[str]:
        """Ids of tasks whose child is supervised by this process."""
        supervisor = self.active_supervisor()
        return {supervisor.task_id} if supervisor else set()

    # --- Promotion ---

    def promote_next(self) -> Optional[str]:
        """
        Starts the oldest waiting task if the domain has no active task.

        Tasks whose launch fails are marked `failed` and the next one is tried.

        Returns:
            The id of the started task, or None if nothing was started.
        """
        with self._lock:
            if self._shutting_down:
                return None
            while True:
                if self.active_supervisor() is not None:
                    return None
                tasks = self.store.load_all()
                active = active_tasks(tasks)
                if active:
                    logger.debug(f"[{self.domain}] Task {active[0].id} is active. Nothing to promote.")
                    return None
                candidate = next_waiting(tasks)
                if candidate is None:
                    logger.debug(f"[{self.domain}] Queue is empty.")
                    return None
                if self._launch(candidate):
                    return candidate.id

    def resume_waiting(self, task_id: str) -> Task:
        """
        Starts a chosen waiting task out of FIFO order.

        Raises:
            SchedulerBusyError: Another task of the domain is active.
            InvalidTaskStateError: The task is not waiting.
            TaskNotFoundError: No task has this id.
        """
        with self._lock:
            tasks = self.store.load_all()
            task = find_task(tasks, task_id)
            active = active_tasks(tasks)
            if self.active_supervisor() is not None or active:
                busy_id = active[0].id if active else self._supervisor.task_id
                raise SchedulerBusyError(f"[{self.domain}] Task {busy_id} is already active.")
            if task.status != TaskStatus.WAITING:
                raise InvalidTaskStateError(f"Task {task_id} is '{task.status.value}', not waiting.")
            logger.info(f"[{self.domain}] Resuming task {task_id} ahead of the queue.")
            self._launch(task)
            return self.store.get(task_id)

    def _launch(self, task: Task) -> bool:
        """Starts `task`. Returns False if it could not be started (and was marked failed or skipped)."""
        try:
            supervisor = self._launcher(task, self._on_supervisor_finished)
            supervisor.start()
        except InvalidTaskStateError as e:
            logger.info(f"[{self.domain}] Skipping task {task.id}: {e}")
            return False
        except TaskStoreError:
            raise
        except MediaQueueException as e:
            logger.error(f"[{self.domain}] Could not start task {task.id}: {e}")
            self.store.update_task(task.id, lambda t: t.mark_finished(TaskStatus.FAILED, str(e)))
            if self._error_log:
                self._error_log.write(f"Task: {task.id}", f"Launch failed: {e}")
            return False

        self._supervisor = supervisor
        return True

    def _on_supervisor_finished(self, supervisor: ProcessSupervisor):
        if self._shutting_down:
            return
        try:
            self.promote_next()
        except TaskStoreError as e:
            logger.error(f"[{self.domain}] Could not promote the next task after {supervisor.task_id}: {e}")

    # --- Cancellation ---

    def cancel(self, task_id: str) -> Task:
        """
        Cancels a task in any state.

        Waiting tasks become `cancelled` without ever running. For an active task
        the child is killed first; its supervisor then promotes the next task.
        Terminal tasks are returned unchanged.

        Raises:
            TaskNotFoundError: No task has this id.
        """
        with self._lock:
            with self.store.lock:
                tasks = self.store.load_all()
                task = find_task(tasks, task_id)
                if task.is_terminal:
                    logger.info(f"[{self.domain}] Task {task_id} is already {task.status.value}.")
                    return task

                if task.status == TaskStatus.ACTIVE:
                    supervisor = self.active_supervisor()
                    if supervisor is not None and supervisor.task_id == task_id:
                        supervisor.cancel()
                    elif task.pid and pid_alive(task.pid):
                        # Supervised by another process, or left over from a crash.
                        if self.executable and process_matches(task.pid, self.executable):
                            logger.info(f"[{self.domain}] Killing pid {task.pid} of task {task_id}.")
                            kill_pid(task.pid)
                        else:
                            logger.warning(
                                f"[{self.domain}] Pid {task.pid} of task {task_id} is not {self.executable or 'a known tool'}; leaving it running."
                            )

                task.mark_finished(TaskStatus.CANCELLED)
                self.store.save_all(tasks)
                logger.info(f"[{self.domain}] Task {task_id} cancelled.")
                return task

    # --- Lifecycle ---

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until no child runs and nothing is left to promote.

        Returns:
            True when idle, False if `timeout` seconds passed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False

            supervisor = self.active_supervisor()
            if supervisor is not None:
                supervisor.wait(remaining)
                continue
            if self.promote_next() is None and self.active_supervisor() is None:
                return True

    def shutdown(self):
        """Kills the running child without closing its record; recovery picks it up on the next start."""
        with self._lock:
            self._shutting_down = True
            supervisor = self.active_supervisor()
        if supervisor is not None:
            logger.info(f"[{self.domain}] Shutting down: stopping task {supervisor.task_id}.")
            supervisor.abandon()
            supervisor.wait(timeout=10)
