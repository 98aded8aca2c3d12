"""Tests for ProcessSupervisor, driving the fake fetch tool as a real child process."""

import pytest

from mediaqueue.domain.exceptions import InvalidTaskStateError, TaskLaunchError, TaskNotFoundError
from mediaqueue.domain.task import DownloadTask, TaskStatus
from mediaqueue.services.process_supervisor import ProcessSupervisor
from mediaqueue.services.progress_parser import DownloadProgressTracker
from mediaqueue.utils.process_utils import format_command, kill_pid, pid_alive

WAIT = 15


@pytest.fixture
def supervise(tool_config, download_store):
    """Builds a supervisor that runs `torrent download <locator>` for a task."""
    finished = []

    def _make(task: DownloadTask, config=None) -> ProcessSupervisor:
        config = config or tool_config
        supervisor = ProcessSupervisor(
            task,
            download_store,
            [config.torrent_path, "download", task.locator],
            cwd=config.download_dir,
            tracker=DownloadProgressTracker(),
            config=config,
            on_finished=lambda sup: finished.append((sup.is_running, download_store.get(sup.task_id).status)),
        )
        return supervisor

    _make.finished = finished
    return _make


class TestSupervisedRun:
    def test_clean_exit_completes_the_task(self, supervise, add_download, download_store, tool_config):
        task = add_download("magnet:?xt=ok")
        supervisor = supervise(task)
        pid = supervisor.start()
        assert pid > 0
        assert supervisor.wait(WAIT)

        record = download_store.get(task.id)
        assert record.status == TaskStatus.COMPLETED
        assert record.progress == 1.0
        assert record.downloaded_bytes == 1024 ** 2
        assert record.total_bytes == 1024 ** 2
        assert record.pid is None and record.error is None
        assert record.command == format_command([tool_config.torrent_path, "download", "magnet:?xt=ok"])
        assert supervisor.final_status == TaskStatus.COMPLETED
        assert supervise.finished == [(False, TaskStatus.COMPLETED)]
        assert task.id in tool_config.command_log_path.read_text(encoding="utf-8")

    def test_record_is_active_right_after_start(self, supervise, add_download, download_store):
        task = add_download("magnet:?xt=sleep")
        supervisor = supervise(task)
        pid = supervisor.start()

        record = download_store.get(task.id)
        assert record.status == TaskStatus.ACTIVE
        assert record.pid == pid
        assert record.started_at is not None
        assert supervisor.is_running

        supervisor.cancel()
        assert supervisor.wait(WAIT)

    def test_error_line_and_non_zero_exit(self, supervise, add_download, download_store, tool_config):
        task = add_download("magnet:?xt=fail")
        supervisor = supervise(task)
        supervisor.start()
        assert supervisor.wait(WAIT)

        record = download_store.get(task.id)
        assert record.status == TaskStatus.FAILED
        assert record.error == "error: no peers found"
        error_log = (tool_config.error_log_dir / "error.txt").read_text(encoding="utf-8")
        assert task.id in error_log
        assert "no peers found" in error_log

    def test_silent_crash_reports_exit_code(self, supervise, add_download, download_store):
        task = add_download("magnet:?xt=crash")
        supervisor = supervise(task)
        supervisor.start()
        assert supervisor.wait(WAIT)

        record = download_store.get(task.id)
        assert record.status == TaskStatus.FAILED
        assert record.error == "exit code 3"
        assert supervisor.returncode == 3

    def test_silent_zero_exit_is_trusted(self, supervise, add_download, download_store):
        task = add_download("magnet:?xt=silent")
        supervisor = supervise(task)
        supervisor.start()
        assert supervisor.wait(WAIT)

        assert download_store.get(task.id).status == TaskStatus.COMPLETED
        assert not supervisor.tracker.observed_progress

    def test_cancel_kills_and_marks_cancelled(self, supervise, add_download, download_store):
        task = add_download("magnet:?xt=sleep")
        supervisor = supervise(task)
        pid = supervisor.start()
        supervisor.cancel()
        assert supervisor.wait(WAIT)

        record = download_store.get(task.id)
        assert record.status == TaskStatus.CANCELLED
        assert record.pid is None
        assert not pid_alive(pid)

    def test_terminal_record_is_not_overwritten_at_exit(self, supervise, add_download, download_store):
        task = add_download("magnet:?xt=sleep")
        supervisor = supervise(task)
        pid = supervisor.start()

        download_store.update_task(task.id, lambda t: t.mark_finished(TaskStatus.CANCELLED))
        assert kill_pid(pid)
        assert supervisor.wait(WAIT)

        assert download_store.get(task.id).status == TaskStatus.CANCELLED
        assert supervisor.final_status == TaskStatus.CANCELLED

    def test_stalled_child_is_killed(self, supervise, add_download, download_store, tool_config):
        tool_config.stall_timeout = 0.5
        task = add_download("magnet:?xt=sleep")
        supervisor = supervise(task)
        supervisor.start()
        assert supervisor.wait(WAIT)

        record = download_store.get(task.id)
        assert record.status == TaskStatus.FAILED
        assert record.error.startswith("No output for 0.5s")


class TestLaunchFailures:
    def test_missing_executable(self, app_config, download_store, add_download):
        task = add_download("magnet:?xt=ok")
        supervisor = ProcessSupervisor(
            task,
            download_store,
            [app_config.torrent_path, "download", task.locator],
            cwd=app_config.download_dir,
            tracker=DownloadProgressTracker(),
            config=app_config,
        )
        with pytest.raises(TaskLaunchError):
            supervisor.start()
        assert download_store.get(task.id).status == TaskStatus.WAITING
        assert not supervisor.is_running

    def test_missing_working_directory(self, supervise, add_download, tmp_path, download_store):
        task = add_download("magnet:?xt=ok")
        supervisor = supervise(task)
        supervisor.cwd = tmp_path / "gone"
        with pytest.raises(TaskLaunchError):
            supervisor.start()
        assert supervisor.process is None

    def test_unknown_task_kills_the_child(self, supervise):
        ghost = DownloadTask(id="download-ghost", locator="magnet:?xt=sleep")
        supervisor = supervise(ghost)
        with pytest.raises(TaskNotFoundError):
            supervisor.start()
        assert supervisor.process.returncode is not None
        assert supervisor.process.stdout.closed and supervisor.process.stderr.closed
        assert not pid_alive(supervisor.pid)
        assert supervisor.wait(0)

    def test_task_cancelled_before_activation(self, supervise, add_download, download_store):
        task = add_download("magnet:?xt=sleep")
        download_store.update_task(task.id, lambda t: t.mark_finished(TaskStatus.CANCELLED))
        supervisor = supervise(task)
        with pytest.raises(InvalidTaskStateError):
            supervisor.start()

        assert download_store.get(task.id).status == TaskStatus.CANCELLED
        assert not pid_alive(supervisor.pid)
