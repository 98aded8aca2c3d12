"""
This module provides utility functions for running external tools and for
inspecting or terminating processes by pid.

`run_cmd` is used for the short one-shot invocations (GPU probes, encoder
capability checks, acceleration dry runs, locator resolution). Long-running
children are owned by `ProcessSupervisor` instead.
"""

import os
import shlex
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Union

import psutil
from loguru import logger


def format_command(cmd_list: Sequence[str]) -> str:
    """Returns a display-friendly, correctly quoted version of a command list."""
    try:
        if os.name == "nt":
            return subprocess.list2cmdline(list(cmd_list))
        return shlex.join(list(cmd_list))
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not format command list for display: {e}. Using simple join.")
        return " ".join(str(part) for part in cmd_list)


def run_cmd(
    cmd_parts: Union[str, List[str]],
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
    show_cmd: bool = False,
) -> Optional[subprocess.CompletedProcess]:
    """
    Executes an external command and captures its output.

    This is a wrapper around `subprocess.run` that adds logging and folds the
    "could not run at all" cases into a single `None` result, which is what the
    best-effort probes want: a probe that cannot run simply counts as negative.

    Args:
        cmd_parts: The command to execute, as a list of strings (preferred) or a
                   single string that will be split with shlex.
        timeout: Seconds before the command is killed and treated as failed.
        cwd: Working directory for the command.
        show_cmd: If True, the command will be logged at the DEBUG level before execution.

    Returns:
        A `subprocess.CompletedProcess` with decoded stdout/stderr, or `None` if
        the command could not be started, timed out, or the input was invalid.
    """
    cmd_list: List[str]

    if isinstance(cmd_parts, str):
        try:
            cmd_list = shlex.split(cmd_parts)
        except ValueError as e:
            logger.error(f"Error splitting command string with shlex: '{cmd_parts}'. Error: {e}")
            return None
    else:
        cmd_list = [str(part) for part in cmd_parts]

    if not cmd_list:
        logger.error("run_cmd received an empty command list.")
        return None

    display_cmd_str = format_command(cmd_list)
    if show_cmd:
        logger.debug(f"Executing command: {display_cmd_str}")

    try:
        result = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            cwd=str(cwd) if cwd else None,
            shell=False,
        )
    except FileNotFoundError:
        logger.debug(f"Command not found: '{cmd_list[0]}'.")
        return None
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {display_cmd_str}")
        return None
    except OSError as e:
        logger.error(f"Could not execute '{display_cmd_str}': {e}")
        return None

    if result.stdout and len(result.stdout) > 500:
        logger.trace(f"Command stdout (truncated): {result.stdout[:500]}...")
    elif result.stdout:
        logger.trace(f"Command stdout: {result.stdout}")

    if result.stderr and result.returncode != 0:
        logger.debug(f"Command stderr (error, rc={result.returncode}): {result.stderr[-2000:]}")
    elif result.stderr:
        logger.trace(f"Command stderr (non-error, rc={result.returncode}): {result.stderr[-2000:]}")

    return result


def pid_alive(pid: Optional[int]) -> bool:
    """True if a process with this pid exists and is not a zombie."""
    if not pid:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return psutil.pid_exists(pid)


def process_matches(pid: int, executable: str) -> bool:
    """
    True if the live process `pid` looks like an instance of `executable`.

    Pids are recycled by the OS, so a pid read back from a state file after a
    restart is only trusted when the process name or its command line refers to
    the expected tool.
    """
    target = Path(executable)
    names = {target.name.lower(), target.stem.lower()}
    try:
        proc = psutil.Process(pid)
        if proc.name().lower() in names:
            return True
        for part in proc.cmdline():
            part_path = Path(part)
            if part == executable or part_path.name.lower() in names:
                return True
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        logger.debug(f"Access denied while inspecting pid {pid}.")
        return False
    return False


def kill_pid(pid: int, timeout: float = 5.0) -> bool:
    """
    Forcefully terminates the process `pid`.

    Returns:
        True if the process is gone afterwards (or was already gone), False if it
        could not be killed. Failures are logged, never raised.
    """
    try:
        proc = psutil.Process(pid)
        proc.kill()
        proc.wait(timeout=timeout)
        logger.info(f"Terminated process {pid}.")
        return True
    except psutil.NoSuchProcess:
        return True
    except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
        logger.error(f"Error terminating process {pid}: {e}")
        return False
