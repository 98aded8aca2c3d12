"""
This module provides classes for the plain-text log files kept next to the task
state.

The task files say what state a task is in; these logs say how it got there.
`CommandLog` records every command line that was launched so a failed run can be
reproduced by hand, and `ErrorLog` keeps a chronological record of failures
with the last lines the child printed.
"""

import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable

from loguru import logger


class Log:
    """
    A base class for the text log files.

    It resolves the log directory from a base path and makes sure it exists.
    Writes are appended under a class-wide lock so that supervisors of both
    domains can share a file without interleaving their entries.
    """

    linesep_marker: str = "=" * 50
    _write_lock = threading.Lock()

    def __init__(self, log_base_path: Path):
        self.log_file_path: Path
        if log_base_path.suffix:
            self.log_dir: Path = log_base_path.parent.resolve()
        else:
            self.log_dir: Path = log_base_path.resolve()
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def write(self, *args, **kwargs):
        raise NotImplementedError("Subclasses must implement the write() method.")

    def _append(self, content: str, fallback_lines: Iterable[str]):
        try:
            with self._write_lock:
                with self.log_file_path.open("a", encoding="utf-8") as f:
                    f.write(content)
        except OSError as e:
            # Keep the message in the application log if the file is unwritable.
            logger.error(f"Failed to write to {self.log_file_path}: {e}")
            for line in fallback_lines:
                logger.error(f"  - {line}")


class ErrorLog(Log):
    """
    Handles the writing of task failures to a plain text file.

    Each entry carries a timestamp, the task id, the error and optionally the
    tail of the child's output, followed by a separator line.
    """

    DEFAULT_ERROR_FILENAME = "error.txt"

    def __init__(self, error_log_dir: Path, filename: str = DEFAULT_ERROR_FILENAME):
        super().__init__(error_log_dir)
        self.log_file_path = self.log_dir / filename

    def write(self, *error_messages: str):
        """
        Appends one entry made of the given message parts.

        Args:
            *error_messages: Parts of the entry, written one per line.
        """
        if not error_messages:
            return

        stamp = datetime.now().isoformat(timespec="seconds")
        content = f"[{stamp}]\n" + "\n".join(error_messages) + "\n" + self.linesep_marker + "\n"
        self._append(content, error_messages)


class CommandLog(Log):
    """Appends one line per launched command: timestamp, task id, command line."""

    def __init__(self, command_log_path: Path):
        super().__init__(command_log_path)
        self.log_file_path = self.log_dir / command_log_path.name

    def write(self, task_id: str, command: str):
        stamp = datetime.now().isoformat(timespec="seconds")
        line = f"{stamp} [{task_id}] {command}\n"
        self._append(line, [line.rstrip()])
