"""
Common configuration settings used throughout the application.

This module contains globally shared configuration settings and constants that are
used across the whole MediaQueue application. It centralizes parameters for
logging, task state files, task status values and external tool locations.
It also handles the loading of user-specific configuration from an external
YAML file, producing an explicit `AppConfig` object that is handed to every
component instead of letting them discover paths from the working directory.
"""
import os
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from .download import DEFAULT_DOWNLOAD_DIR_NAME
from .transcode import TranscodePolicy

# --- User-Defined Path Configuration ---
# The user configuration lives in 'config.user.yaml' at the project root unless
# another file is passed on the command line with `--config`.

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
USER_CONFIG_PATH = PROJECT_ROOT / "config.user.yaml"


# --- Logging Configuration ---

# The format string for the Loguru logger. It defines the structure and appearance
# of log messages, including timestamp, level, module name, and the message itself.
LOGGER_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "{thread.name} - <level>{message}</level>"
)


# --- State Files ---
# One human-readable list file per domain. The files are rewritten in full on
# every mutation, so they double as the crash-recovery journal.

DOWNLOAD_STORE_FILE_NAME = "download_tasks.yaml"
TRANSCODE_STORE_FILE_NAME = "transcode_tasks.yaml"

# Plain-text log of every command line launched for a task.
COMMAND_TEXT = "cmd.txt"

# Directory (inside the state directory) for the plain-text failure log.
ERROR_LOG_DIR_NAME = "task_errors"


# --- Domains ---

DOMAIN_DOWNLOAD = "download"
DOMAIN_TRANSCODE = "transcode"
DOMAINS = (DOMAIN_DOWNLOAD, DOMAIN_TRANSCODE)


# --- Task Status Constants ---
# Exactly one status holds at a time and it is the only field the scheduler
# looks at when deciding what to run next.

TASK_STATUS_WAITING = "waiting"  # Enqueued, not yet bound to a child process.
TASK_STATUS_ACTIVE = "active"  # Bound to a running child process (pid is set).
TASK_STATUS_COMPLETED = "completed"  # Child exited cleanly.
TASK_STATUS_FAILED = "failed"  # Launch error, non-zero exit or monitoring failure.
TASK_STATUS_CANCELLED = "cancelled"  # Operator requested termination.


# --- Supervisor Settings ---

# Seconds without any output line before a child is considered frozen and killed.
# 0 disables the watchdog, which is the default because a torrent with no peers
# can legitimately stay quiet for a long time.
DEFAULT_STALL_TIMEOUT = 0

# Seconds to wait for the reader threads to drain after the child exits.
READER_JOIN_TIMEOUT = 10


# --- External Tools ---

FFMPEG_TOOL_NAME = "ffmpeg"
FFPROBE_TOOL_NAME = "ffprobe"
TORRENT_TOOL_NAME = "torrent"


def _executable_name(name: str) -> str:
    return f"{name}.exe" if platform.system() == "Windows" else name


def resolve_tool(name: str, explicit: Optional[str], tools_dir: Optional[Path]) -> str:
    """
    Resolves the executable path for an external tool.

    Resolution order:
    1. An explicit path from the user configuration.
    2. `<tools_dir>/<name>` or `<tools_dir>/<name>/<name>` when a tools directory
       is configured (the layout shipped with the desktop build).
    3. The system PATH (`shutil.which`).
    4. The bare name, leaving the final lookup to the OS at launch time.
    """
    if explicit:
        return str(Path(explicit).expanduser())

    exe = _executable_name(name)
    if tools_dir:
        for candidate in (tools_dir / exe, tools_dir / name / exe):
            if candidate.is_file():
                return str(candidate)

    found = shutil.which(exe)
    if found:
        return found
    return exe


@dataclass
class AppConfig:
    """
    Resolved, process-wide configuration.

    Every path in here is absolute after `load_config()`, so components never
    have to care about the working directory the application was started from.
    """

    state_dir: Path
    download_dir: Path
    ffmpeg_path: str = FFMPEG_TOOL_NAME
    ffprobe_path: str = FFPROBE_TOOL_NAME
    torrent_path: str = TORRENT_TOOL_NAME
    tools_dir: Optional[Path] = None
    module_update_dir: Optional[Path] = None
    log_file: Optional[Path] = None
    stall_timeout: float = DEFAULT_STALL_TIMEOUT
    transcode: TranscodePolicy = field(default_factory=TranscodePolicy)

    @property
    def download_store_path(self) -> Path:
        return self.state_dir / DOWNLOAD_STORE_FILE_NAME

    @property
    def transcode_store_path(self) -> Path:
        return self.state_dir / TRANSCODE_STORE_FILE_NAME

    @property
    def command_log_path(self) -> Path:
        return self.state_dir / COMMAND_TEXT

    @property
    def error_log_dir(self) -> Path:
        return self.state_dir / ERROR_LOG_DIR_NAME

    def ensure_dirs(self):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.download_dir.mkdir(parents=True, exist_ok=True)


def _as_path(value: Any, base: Path) -> Optional[Path]:
    if not value:
        return None
    path = Path(os.path.expandvars(str(value))).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Builds the `AppConfig` from the user YAML file.

    Missing or unreadable configuration is not fatal: the defaults place the
    state files and the `downloads` directory under the project root and look
    for the tools on the system PATH.

    Expected layout (every key optional)::

        paths:
          tools_dir: tools
          module_update_dir: null
          ffmpeg: null
          ffprobe: null
          torrent: null
          download_dir: downloads
          state_dir: .
          log_file: null
        supervisor:
          stall_timeout: 0
        transcode:
          frame_progress_scale: 100000
          fallback_increment: 0.001
          min_commit_delta: 0.005
          max_estimated_progress: 0.99
          dry_run_timeout: 30
          generic_hwaccel: null
          force_software: false
    """
    config_path = config_path or USER_CONFIG_PATH
    base = config_path.resolve().parent
    user_config: dict = {}

    if config_path.is_file():
        try:
            with config_path.open("r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not load or parse '{config_path}': {e}")
            user_config = {}
    else:
        logger.debug(f"User config '{config_path}' not found. Using defaults and the system PATH.")

    paths_config = user_config.get("paths") or {}
    supervisor_config = user_config.get("supervisor") or {}
    transcode_config = user_config.get("transcode") or {}

    tools_dir = _as_path(paths_config.get("tools_dir"), base)
    config = AppConfig(
        state_dir=_as_path(paths_config.get("state_dir"), base) or base,
        download_dir=_as_path(paths_config.get("download_dir"), base) or (base / DEFAULT_DOWNLOAD_DIR_NAME),
        tools_dir=tools_dir,
        module_update_dir=_as_path(paths_config.get("module_update_dir"), base),
        log_file=_as_path(paths_config.get("log_file"), base),
        ffmpeg_path=resolve_tool(FFMPEG_TOOL_NAME, paths_config.get("ffmpeg"), tools_dir),
        ffprobe_path=resolve_tool(FFPROBE_TOOL_NAME, paths_config.get("ffprobe"), tools_dir),
        torrent_path=resolve_tool(TORRENT_TOOL_NAME, paths_config.get("torrent"), tools_dir),
        stall_timeout=float(supervisor_config.get("stall_timeout", DEFAULT_STALL_TIMEOUT) or 0),
        transcode=TranscodePolicy.from_mapping(transcode_config),
    )
    logger.debug(f"Loaded configuration: {config}")
    return config
