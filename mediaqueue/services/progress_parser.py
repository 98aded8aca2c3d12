"""
Turns lines of child-process output into partial task updates.

The module has two layers:

* Stateless line parsers (`parse_download_line`, `parse_duration_line`,
  `parse_progress_pair`, `detect_error_line`) that recognise one grammar each
  and return `None` for anything else.
* Per-task trackers (`DownloadProgressTracker`, `TranscodeProgressTracker`) that
  hold the little state a domain needs between lines (cached total duration,
  last committed fraction, current speed) and decide which updates are worth
  writing to the task store.

Trackers are fed from two reader threads at once, so each one guards its state
with a lock. Only same-stream order is meaningful.
"""

import re
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from loguru import logger

from ..config.download import DOWNLOAD_STATUS_PATTERN
from ..config.transcode import TranscodePolicy
from ..domain.task import Task
from ..utils.format_utils import format_seconds, formatted_size, parse_clock, parse_size

DURATION_PATTERN = re.compile(r"Duration: (\d+):(\d+):(\d+\.\d+)")
ERROR_KEYWORD_PATTERN = re.compile(r"\berror\b", re.IGNORECASE)
PROGRESS_END = "end"
# Absorbs float error when a step equals min_commit_delta exactly.
COMMIT_TOLERANCE = 1e-9


@dataclass
class ProgressUpdate:
    """
    A partial update for one task record.

    `None` means "leave the field alone". `speed` and `eta` travel together: when
    a speed is reported the eta is replaced as well, even if it is unknown.
    """

    progress: Optional[float] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    error: Optional[str] = None
    downloaded_bytes: Optional[int] = None
    total_bytes: Optional[int] = None

    def apply_to(self, task: Task):
        task.apply_progress(self.progress)
        if self.speed is not None:
            task.speed = self.speed
            task.eta = self.eta
        if self.error:
            task.error = self.error
        if self.downloaded_bytes is not None and hasattr(task, "downloaded_bytes"):
            task.downloaded_bytes = self.downloaded_bytes
        if self.total_bytes is not None and hasattr(task, "total_bytes"):
            task.total_bytes = self.total_bytes


@dataclass
class DownloadStatus:
    """One parsed status line of the fetch tool."""

    elapsed_seconds: float
    torrents: int
    infos: int
    downloaded_bytes: int
    total_bytes: int
    uploaded_bytes: int
    rate_bytes: int


# --- Stateless line parsers ---


def parse_download_line(line: str) -> Optional[DownloadStatus]:
    """
    Parses a fetch-tool status line such as
    `1m2.5s: 1 torrents, 1 infos, 12.3 MB/700 MB ready, upload 1.2 MB, download 512 KB/s`.

    Returns None for any other line, including status lines whose sizes carry
    an unknown unit.
    """
    match = DOWNLOAD_STATUS_PATTERN.search(line)
    if not match:
        return None

    minutes, seconds, torrents, infos, downloaded, total, uploaded, rate = match.groups()
    try:
        return DownloadStatus(
            elapsed_seconds=int(minutes or 0) * 60 + float(seconds),
            torrents=int(torrents),
            infos=int(infos),
            downloaded_bytes=parse_size(downloaded),
            total_bytes=parse_size(total),
            uploaded_bytes=parse_size(uploaded),
            rate_bytes=parse_size(rate),
        )
    except ValueError as e:
        logger.trace(f"Ignoring download status line with unparseable size: {e}")
        return None


def parse_duration_line(line: str) -> Optional[float]:
    """Extracts the total duration in seconds from an encoder `Duration:` banner line."""
    match = DURATION_PATTERN.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_progress_pair(line: str) -> Optional[Tuple[str, str]]:
    """Splits a `key=value` line of the encoder's machine-readable progress block."""
    key, sep, value = line.strip().partition("=")
    if not sep or not key or " " in key:
        return None
    return key, value.strip()


def detect_error_line(line: str) -> Optional[str]:
    """Returns the stripped line if it reports an error, else None."""
    stripped = line.strip()
    if stripped and ERROR_KEYWORD_PATTERN.search(stripped):
        return stripped
    return None


def _parse_speed_factor(value: str) -> Optional[float]:
    try:
        return float(value.rstrip("x").strip())
    except ValueError:
        return None


# --- Per-task trackers ---


class DownloadProgressTracker:
    """
    Tracks the progress of one download.

    Every parsed status line is committed: the fetch tool only prints once per
    tick, so there is no need to throttle writes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.observed_progress = False

    def feed_stdout(self, line: str) -> Optional[ProgressUpdate]:
        return self._parse_status(line)

    def feed_stderr(self, line: str) -> Optional[ProgressUpdate]:
        update = self._parse_status(line)
        if update:
            return update
        error = detect_error_line(line)
        if error:
            return ProgressUpdate(error=error)
        return None

    def _parse_status(self, line: str) -> Optional[ProgressUpdate]:
        status = parse_download_line(line)
        if status is None:
            return None

        with self._lock:
            self.observed_progress = True

        progress = None
        if status.total_bytes > 0:
            progress = min(1.0, status.downloaded_bytes / status.total_bytes)

        eta = None
        remaining = status.total_bytes - status.downloaded_bytes
        if status.rate_bytes > 0 and status.total_bytes > 0:
            eta = format_seconds(max(0, remaining) / status.rate_bytes)

        return ProgressUpdate(
            progress=progress,
            speed=f"{formatted_size(status.rate_bytes)}/s",
            eta=eta,
            downloaded_bytes=status.downloaded_bytes,
            total_bytes=status.total_bytes,
        )


class TranscodeProgressTracker:
    """
    Estimates the progress of one encode from the encoder's two output streams.

    The fraction is computed with three tiers, best first:
    1. elapsed output time / total duration, once the duration is known;
    2. frame count / `frame_progress_scale`, when only frames are known;
    3. a running estimate that grows by `fallback_increment` per observed line.

    Estimates are capped at `max_estimated_progress` until the encoder prints
    `progress=end`, which yields exactly 1.0. An estimate is only committed when
    it moves at least `min_commit_delta` past the last committed value; the final
    1.0 is always committed.

    Attributes:
        total_duration (Optional[float]): Seconds of source media, if known.
        observed_progress (bool): True once any progress line has been seen.
    """

    def __init__(self, policy: TranscodePolicy, source_duration: Optional[float] = None):
        self.policy = policy
        self._lock = threading.Lock()
        self.total_duration: Optional[float] = source_duration if source_duration and source_duration > 0 else None
        self.elapsed: Optional[float] = None
        self.frame: int = 0
        self.speed: Optional[str] = None
        self.speed_factor: Optional[float] = None
        self._speed_dirty = False
        self._estimate = 0.0
        self._committed = 0.0
        self._ended = False
        self.observed_progress = False

    def feed_stdout(self, line: str) -> Optional[ProgressUpdate]:
        pair = parse_progress_pair(line)
        if pair is None:
            return None
        key, value = pair

        with self._lock:
            if self._ended:
                return None
            self.observed_progress = True

            if key == "out_time":
                elapsed = parse_clock(value)
                if elapsed is not None and elapsed >= 0:
                    self.elapsed = elapsed
            elif key == "frame":
                try:
                    self.frame = int(value)
                except ValueError:
                    pass
            elif key == "speed":
                factor = _parse_speed_factor(value)
                if factor is not None and value != self.speed:
                    self.speed = value
                    self.speed_factor = factor
                    self._speed_dirty = True
            elif key == "progress" and value == PROGRESS_END:
                self._ended = True
                self._committed = 1.0
                self._speed_dirty = False
                return ProgressUpdate(progress=1.0, speed=self.speed, eta=format_seconds(0) if self.speed else None)

            fraction = self._estimate_fraction()
            if fraction - self._committed >= self.policy.min_commit_delta - COMMIT_TOLERANCE:
                return self._commit(fraction)
            if key == "progress" and self._speed_dirty:
                return self._commit(None)
            return None

    def feed_stderr(self, line: str) -> Optional[ProgressUpdate]:
        error = detect_error_line(line)
        if error:
            return ProgressUpdate(error=error)

        duration = parse_duration_line(line)
        if duration is None or duration <= 0:
            return None

        with self._lock:
            if self.total_duration is not None:
                return None
            self.total_duration = duration
            logger.debug(f"Total duration announced by the encoder: {duration:.2f}s")
            if self._ended or not self.elapsed:
                return None
            fraction = self._estimate_fraction()
            if fraction > self._committed:
                return self._commit(fraction)
            return None

    def _estimate_fraction(self) -> float:
        cap = self.policy.max_estimated_progress
        if self.total_duration and self.elapsed:
            fraction = min(self.elapsed, self.total_duration) / self.total_duration
        elif self.frame > 0:
            fraction = self.frame / self.policy.frame_progress_scale
        else:
            self._estimate = min(cap, self._estimate + self.policy.fallback_increment)
            fraction = self._estimate
        return min(cap, max(0.0, fraction))

    def _eta(self) -> Optional[str]:
        if not (self.total_duration and self.elapsed is not None and self.speed_factor):
            return None
        return format_seconds(max(0.0, self.total_duration - self.elapsed) / self.speed_factor)

    def _commit(self, fraction: Optional[float]) -> ProgressUpdate:
        if fraction is not None:
            self._committed = fraction
        self._speed_dirty = False
        return ProgressUpdate(progress=fraction, speed=self.speed, eta=self._eta() if self.speed else None)
