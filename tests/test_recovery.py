"""Tests for startup recovery of orphaned active tasks."""

import subprocess
import sys

import pytest

from mediaqueue.config.common import DOMAIN_DOWNLOAD, DOMAIN_TRANSCODE
from mediaqueue.domain.task import TaskStatus
from mediaqueue.services.queue_scheduler import QueueScheduler
from mediaqueue.services.recovery import RecoveryManager
from mediaqueue.utils.process_utils import pid_alive

from .conftest import FAKE_TORRENT_SCRIPT, FakeLauncher, wait_for_exec


@pytest.fixture
def schedulers(download_store, transcode_store, fake_launcher):
    return {
        DOMAIN_DOWNLOAD: QueueScheduler(download_store, fake_launcher),
        DOMAIN_TRANSCODE: QueueScheduler(transcode_store, FakeLauncher(transcode_store)),
    }


def make_recovery(schedulers, torrent="torrent") -> RecoveryManager:
    return RecoveryManager(schedulers, {DOMAIN_DOWNLOAD: torrent, DOMAIN_TRANSCODE: "ffmpeg"})


class TestRecovery:
    def test_dead_orphan_is_demoted_and_restarted(self, schedulers, add_download, download_store, fake_launcher, dead_pid):
        orphan = add_download("magnet:?xt=a")
        download_store.update_task(orphan.id, lambda t: t.mark_active(dead_pid))

        demoted = make_recovery(schedulers).recover()
        assert demoted == {DOMAIN_DOWNLOAD: [orphan.id], DOMAIN_TRANSCODE: []}
        assert fake_launcher.launched == [orphan.id]
        record = download_store.get(orphan.id)
        assert record.status == TaskStatus.ACTIVE
        assert record.pid != dead_pid

    def test_second_pass_changes_nothing(self, schedulers, add_download, download_store, dead_pid):
        orphan = add_download("magnet:?xt=a")
        download_store.update_task(orphan.id, lambda t: t.mark_active(dead_pid))
        recovery = make_recovery(schedulers)
        recovery.recover()
        content = download_store.path.read_text(encoding="utf-8")

        assert recovery.recover() == {DOMAIN_DOWNLOAD: [], DOMAIN_TRANSCODE: []}
        assert download_store.path.read_text(encoding="utf-8") == content

    def test_clean_store_is_not_rewritten(self, schedulers, add_download, download_store):
        add_download("magnet:?xt=a")
        content = download_store.path.read_text(encoding="utf-8")
        assert make_recovery(schedulers).recover_domain(DOMAIN_DOWNLOAD) == []
        assert download_store.path.read_text(encoding="utf-8") == content

    def test_owned_task_is_skipped(self, schedulers, add_download, download_store):
        task = add_download("magnet:?xt=a")
        schedulers[DOMAIN_DOWNLOAD].promote_next()
        pid = download_store.get(task.id).pid

        assert make_recovery(schedulers).recover_domain(DOMAIN_DOWNLOAD) == []
        record = download_store.get(task.id)
        assert record.status == TaskStatus.ACTIVE and record.pid == pid

    def test_surviving_tool_process_is_killed(self, schedulers, make_tool, add_download, download_store):
        torrent = make_tool("torrent", FAKE_TORRENT_SCRIPT)
        child = subprocess.Popen([torrent, "download", "magnet:?xt=sleep"])
        try:
            wait_for_exec(child.pid, torrent)
            orphan = add_download("magnet:?xt=sleep")
            download_store.update_task(orphan.id, lambda t: t.mark_active(child.pid))

            demoted = make_recovery(schedulers, torrent).recover_domain(DOMAIN_DOWNLOAD)
            assert demoted == [orphan.id]
            assert not pid_alive(child.pid)
            assert download_store.get(orphan.id).status == TaskStatus.WAITING
        finally:
            if child.poll() is None:
                child.kill()
            child.wait()

    def test_recycled_pid_is_not_killed(self, schedulers, add_download, download_store):
        stranger = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            wait_for_exec(stranger.pid, "time.sleep")
            orphan = add_download("magnet:?xt=a")
            download_store.update_task(orphan.id, lambda t: t.mark_active(stranger.pid))

            assert make_recovery(schedulers).recover_domain(DOMAIN_DOWNLOAD) == [orphan.id]
            assert stranger.poll() is None
            record = download_store.get(orphan.id)
            assert record.status == TaskStatus.WAITING and record.pid is None
        finally:
            stranger.kill()
            stranger.wait()


class TestDeadOnlyPass:
    def test_dead_orphan_is_requeued_on_the_second_pass(self, schedulers, add_download, download_store, fake_launcher, dead_pid):
        orphan = add_download("magnet:?xt=a")
        download_store.update_task(orphan.id, lambda t: t.mark_active(dead_pid))
        recovery = make_recovery(schedulers)

        assert recovery.recover(dead_only=True) == {DOMAIN_DOWNLOAD: [], DOMAIN_TRANSCODE: []}
        assert download_store.get(orphan.id).status == TaskStatus.ACTIVE
        assert fake_launcher.launched == []

        assert recovery.recover(dead_only=True) == {DOMAIN_DOWNLOAD: [orphan.id], DOMAIN_TRANSCODE: []}
        assert fake_launcher.launched == [orphan.id]

    def test_task_finished_between_passes_is_left_alone(self, schedulers, add_download, download_store, fake_launcher, dead_pid):
        task = add_download("magnet:?xt=a")
        download_store.update_task(task.id, lambda t: t.mark_active(dead_pid))
        recovery = make_recovery(schedulers)
        recovery.recover(dead_only=True)

        download_store.update_task(task.id, lambda t: t.mark_finished(TaskStatus.COMPLETED))
        assert recovery.recover(dead_only=True) == {DOMAIN_DOWNLOAD: [], DOMAIN_TRANSCODE: []}
        assert download_store.get(task.id).status == TaskStatus.COMPLETED
        assert fake_launcher.launched == []

    def test_live_pid_is_never_touched(self, schedulers, add_download, download_store, fake_launcher):
        other = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            wait_for_exec(other.pid, "time.sleep")
            task = add_download("magnet:?xt=a")
            download_store.update_task(task.id, lambda t: t.mark_active(other.pid))
            recovery = make_recovery(schedulers)

            for _ in range(3):
                assert recovery.recover(dead_only=True) == {DOMAIN_DOWNLOAD: [], DOMAIN_TRANSCODE: []}
            assert other.poll() is None
            record = download_store.get(task.id)
            assert record.status == TaskStatus.ACTIVE and record.pid == other.pid
            assert fake_launcher.launched == []
        finally:
            other.kill()
            other.wait()
