"""
Startup reconciliation of task records left behind by an unclean exit.

A record that says `active` but has no supervisor in this process is an orphan:
its child either died with the previous run or is still running with nobody
reading its pipes. Pipes cannot be re-attached, so a surviving child is killed
and the task goes back to the queue.

A long-running `run --forever` repeats a dead-only pass on every poll, which
requeues tasks whose supervising process died without touching live children.
"""

from typing import Dict, List, Set, Tuple

from loguru import logger

from ..domain.task import TaskStatus
from ..utils.process_utils import kill_pid, pid_alive, process_matches
from .queue_scheduler import QueueScheduler


class RecoveryManager:
    """
    Demotes orphaned active tasks to `waiting` and restarts the queues.

    Args:
        schedulers: Scheduler per domain name.
        executables: Tool executable per domain name, used to make sure a pid
                     read from disk still belongs to that tool before killing it.
    """

    def __init__(self, schedulers: Dict[str, QueueScheduler], executables: Dict[str, str]):
        self.schedulers = schedulers
        self.executables = executables
        # (task id, pid) pairs seen dead on the previous dead-only pass, per domain.
        self._suspects: Dict[str, Set[Tuple[str, int]]] = {}

    def recover_domain(self, domain: str, dead_only: bool = False) -> List[str]:
        """
        Demotes the orphans of one domain.

        With `dead_only`, a record whose pid is alive is skipped, since another
        process may be supervising it. A dead one is demoted only if the previous
        dead-only pass saw the same task and pid dead too; that leaves a
        supervisor in another process time to write the final status.

        The store is written once, and only if a record changed.

        Returns:
            Ids of the demoted tasks.
        """
        scheduler = self.schedulers[domain]
        store = scheduler.store
        executable = self.executables.get(domain, "")
        owned = scheduler.owned_task_ids()

        previous = self._suspects.get(domain, set())
        suspects: Set[Tuple[str, int]] = set()

        with store.lock:
            tasks = store.load_all()
            demoted: List[str] = []
            for task in tasks:
                if task.status != TaskStatus.ACTIVE or task.id in owned:
                    continue

                if dead_only:
                    if task.pid and pid_alive(task.pid):
                        continue
                    key = (task.id, task.pid or 0)
                    if key not in previous:
                        suspects.add(key)
                        logger.debug(f"[{domain}] Pid {task.pid} of task {task.id} is gone. Requeueing it on the next pass.")
                        continue
                elif task.pid and pid_alive(task.pid):
                    if executable and process_matches(task.pid, executable):
                        logger.warning(f"[{domain}] Orphaned task {task.id} still runs as pid {task.pid}. Killing it.")
                        kill_pid(task.pid)
                    else:
                        logger.info(f"[{domain}] Pid {task.pid} of task {task.id} now belongs to another program. Leaving it alone.")

                task.mark_waiting()
                demoted.append(task.id)
                logger.info(f"[{domain}] Task {task.id} demoted to waiting.")

            if demoted:
                store.save_all(tasks)
        if dead_only:
            self._suspects[domain] = suspects
        return demoted

    def recover(self, dead_only: bool = False) -> Dict[str, List[str]]:
        """
        Runs recovery for every domain, then lets each scheduler promote.

        Running it twice in a row is harmless: the second pass finds the tasks
        promoted by the first one owned by live supervisors.
        """
        demoted = {domain: self.recover_domain(domain, dead_only) for domain in self.schedulers}
        total = sum(len(ids) for ids in demoted.values())
        if total:
            logger.info(f"Recovery demoted {total} orphaned task(s): {demoted}")
        else:
            logger.debug("Recovery found no orphaned tasks.")

        for scheduler in self.schedulers.values():
            scheduler.promote_next()
        return demoted
