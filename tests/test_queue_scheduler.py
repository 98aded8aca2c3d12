"""Tests for FIFO promotion, cancellation and shutdown of one domain queue."""

import subprocess
import sys
from datetime import datetime

import pytest

from mediaqueue.domain.exceptions import (
    InvalidTaskStateError,
    SchedulerBusyError,
    TaskNotFoundError,
)
from mediaqueue.domain.task import TaskStatus
from mediaqueue.services.logging_service import ErrorLog
from mediaqueue.services.queue_scheduler import QueueScheduler, next_waiting
from mediaqueue.utils.process_utils import pid_alive

from .conftest import FAKE_PID_BASE, FAKE_TORRENT_SCRIPT, wait_for_exec


@pytest.fixture
def scheduler(download_store, fake_launcher, app_config) -> QueueScheduler:
    return QueueScheduler(download_store, fake_launcher, ErrorLog(app_config.error_log_dir))


def statuses(store):
    return {task.id: task.status for task in store.load_all()}


class TestPromotion:
    def test_first_in_first_out(self, scheduler, add_download, download_store, fake_launcher):
        a = add_download("magnet:?xt=a")
        b = add_download("magnet:?xt=b")

        assert scheduler.promote_next() == a.id
        assert statuses(download_store) == {a.id: TaskStatus.ACTIVE, b.id: TaskStatus.WAITING}
        assert download_store.get(a.id).pid == FAKE_PID_BASE
        assert scheduler.promote_next() is None

        fake_launcher.supervisors[a.id].finish()
        assert statuses(download_store) == {a.id: TaskStatus.COMPLETED, b.id: TaskStatus.ACTIVE}
        assert fake_launcher.launched == [a.id, b.id]

    def test_order_follows_enqueue_time_not_file_order(self, scheduler, add_download):
        add_download("magnet:?xt=late", created_at=datetime(2024, 6, 1))
        early = add_download("magnet:?xt=early", created_at=datetime(2024, 1, 1))
        assert scheduler.promote_next() == early.id

    def test_next_waiting_keeps_file_order_on_ties(self, add_download, download_store):
        stamp = datetime(2024, 1, 1)
        first = add_download("magnet:?xt=a", created_at=stamp)
        add_download("magnet:?xt=b", created_at=stamp)
        assert next_waiting(download_store.load_all()).id == first.id

    def test_active_record_without_supervisor_blocks_promotion(self, scheduler, add_download, download_store, fake_launcher):
        a = add_download("magnet:?xt=a")
        add_download("magnet:?xt=b")
        download_store.update_task(a.id, lambda t: t.mark_active(FAKE_PID_BASE + 50))

        assert scheduler.promote_next() is None
        assert fake_launcher.launched == []

    def test_launch_failure_marks_failed_and_moves_on(self, scheduler, add_download, download_store, fake_launcher, app_config):
        a = add_download("magnet:?xt=a")
        b = add_download("magnet:?xt=b")
        fake_launcher.fail_ids.add(a.id)

        assert scheduler.promote_next() == b.id
        failed = download_store.get(a.id)
        assert failed.status == TaskStatus.FAILED
        assert "No such file or directory" in failed.error
        assert a.id in (app_config.error_log_dir / "error.txt").read_text(encoding="utf-8")

    def test_empty_queue(self, scheduler):
        assert scheduler.promote_next() is None


class TestCancel:
    def test_cancel_waiting_task_never_runs_it(self, scheduler, add_download, download_store, fake_launcher):
        a = add_download("magnet:?xt=a")
        b = add_download("magnet:?xt=b")
        scheduler.promote_next()

        cancelled = scheduler.cancel(b.id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.ended_at is not None

        fake_launcher.supervisors[a.id].finish()
        assert fake_launcher.launched == [a.id]
        assert download_store.get(b.id).status == TaskStatus.CANCELLED

    def test_cancel_active_task_kills_and_promotes_after_exit(self, scheduler, add_download, download_store, fake_launcher):
        a = add_download("magnet:?xt=a")
        b = add_download("magnet:?xt=b")
        scheduler.promote_next()
        supervisor = fake_launcher.supervisors[a.id]

        scheduler.cancel(a.id)
        assert supervisor.cancelled
        assert download_store.get(a.id).status == TaskStatus.CANCELLED
        assert download_store.get(a.id).pid is None
        assert fake_launcher.launched == [a.id]

        supervisor.finish(TaskStatus.FAILED)
        assert statuses(download_store) == {a.id: TaskStatus.CANCELLED, b.id: TaskStatus.ACTIVE}

    def test_cancel_orphan_with_dead_pid(self, scheduler, add_download, download_store, dead_pid):
        a = add_download("magnet:?xt=a")
        download_store.update_task(a.id, lambda t: t.mark_active(dead_pid))
        assert scheduler.cancel(a.id).status == TaskStatus.CANCELLED

    def test_cancel_orphan_kills_a_live_tool_process(self, add_download, download_store, fake_launcher, make_tool):
        torrent = make_tool("torrent", FAKE_TORRENT_SCRIPT)
        scheduler = QueueScheduler(download_store, fake_launcher, executable=torrent)
        child = subprocess.Popen([torrent, "download", "magnet:?xt=sleep"])
        try:
            wait_for_exec(child.pid, torrent)
            a = add_download("magnet:?xt=sleep")
            download_store.update_task(a.id, lambda t: t.mark_active(child.pid))

            assert scheduler.cancel(a.id).status == TaskStatus.CANCELLED
            child.wait(timeout=10)
            assert not pid_alive(child.pid)
        finally:
            if child.poll() is None:
                child.kill()
            child.wait()

    def test_cancel_orphan_leaves_an_unrelated_process_alone(self, add_download, download_store, fake_launcher, make_tool):
        torrent = make_tool("torrent", FAKE_TORRENT_SCRIPT)
        scheduler = QueueScheduler(download_store, fake_launcher, executable=torrent)
        stranger = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            wait_for_exec(stranger.pid, "time.sleep")
            a = add_download("magnet:?xt=a")
            download_store.update_task(a.id, lambda t: t.mark_active(stranger.pid))

            cancelled = scheduler.cancel(a.id)
            assert cancelled.status == TaskStatus.CANCELLED and cancelled.pid is None
            assert stranger.poll() is None
        finally:
            stranger.kill()
            stranger.wait()

    def test_cancel_terminal_task_is_a_no_op(self, scheduler, add_download, download_store, fake_launcher):
        a = add_download("magnet:?xt=a")
        scheduler.promote_next()
        fake_launcher.supervisors[a.id].finish()
        before = download_store.get(a.id)

        after = scheduler.cancel(a.id)
        assert after.status == TaskStatus.COMPLETED
        assert after.ended_at == before.ended_at

    def test_cancel_unknown_task(self, scheduler):
        with pytest.raises(TaskNotFoundError):
            scheduler.cancel("download-missing")


class TestResumeWaiting:
    def test_resume_jumps_the_queue(self, scheduler, add_download, download_store, fake_launcher):
        a = add_download("magnet:?xt=a")
        add_download("magnet:?xt=b")
        c = add_download("magnet:?xt=c")

        resumed = scheduler.resume_waiting(c.id)
        assert resumed.status == TaskStatus.ACTIVE
        assert fake_launcher.launched == [c.id]

        fake_launcher.supervisors[c.id].finish()
        assert download_store.get(a.id).status == TaskStatus.ACTIVE

    def test_resume_while_busy(self, scheduler, add_download):
        add_download("magnet:?xt=a")
        b = add_download("magnet:?xt=b")
        scheduler.promote_next()
        with pytest.raises(SchedulerBusyError):
            scheduler.resume_waiting(b.id)

    def test_resume_non_waiting_task(self, scheduler, add_download):
        a = add_download("magnet:?xt=a")
        scheduler.cancel(a.id)
        with pytest.raises(InvalidTaskStateError):
            scheduler.resume_waiting(a.id)


class TestLifecycle:
    def test_shutdown_abandons_and_keeps_the_record_active(self, scheduler, add_download, download_store, fake_launcher):
        a = add_download("magnet:?xt=a")
        add_download("magnet:?xt=b")
        scheduler.promote_next()

        scheduler.shutdown()
        assert fake_launcher.supervisors[a.id].abandoned
        assert download_store.get(a.id).status == TaskStatus.ACTIVE
        assert scheduler.promote_next() is None
        assert fake_launcher.launched == [a.id]

    def test_wait_idle(self, scheduler, add_download, fake_launcher):
        a = add_download("magnet:?xt=a")
        scheduler.promote_next()
        assert scheduler.wait_idle(timeout=0.2) is False

        fake_launcher.supervisors[a.id].finish()
        assert scheduler.wait_idle(timeout=1) is True
        assert scheduler.owned_task_ids() == set()
