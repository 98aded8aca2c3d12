"""
The MediaQueue facade: the public entry point for both work domains.

`MediaQueue` wires one task store and one queue scheduler per domain and
provides the launchers that turn a waiting task into a supervised child
process:

* downloads run `torrent download <locator>` inside the task's output directory;
* transcodes run `ffmpeg <selected arguments>` inside the output file's directory.

Everything a caller can do (enqueue, query, cancel, resume, recover, wait,
shut down) goes through this class.
"""

import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import ffmpeg
from loguru import logger

from ..config.common import DOMAIN_DOWNLOAD, DOMAIN_TRANSCODE, DOMAINS, AppConfig
from ..config.download import (
    DOWNLOAD_SUBCOMMAND,
    LOCATOR_RESOLUTION_TIMEOUT,
    MAGNET_SUBCOMMAND,
    METAINFO_SUBCOMMAND,
)
from ..domain.exceptions import (
    InvalidTaskError,
    LocatorResolutionError,
    TaskLaunchError,
    ToolNotFoundError,
)
from ..domain.task import DownloadTask, Task, TranscodeTask, generate_task_id
from ..domain.task_store import TaskStore
from ..services.encoder_selector import EncoderSelector
from ..services.logging_service import ErrorLog
from ..services.process_supervisor import ProcessSupervisor
from ..services.progress_parser import DownloadProgressTracker, TranscodeProgressTracker
from ..services.queue_scheduler import QueueScheduler
from ..services.recovery import RecoveryManager
from ..utils.process_utils import run_cmd


def ensure_tool(executable: str):
    """Raises ToolNotFoundError unless `executable` is a file or resolves on PATH."""
    if Path(executable).is_file() or shutil.which(executable):
        return
    raise ToolNotFoundError(f"Executable not found: '{executable}'")


def display_name_from_locator(locator: str) -> str:
    """The `dn` parameter of a magnet link, else a shortened locator."""
    query = parse_qs(urlparse(locator).query)
    names = query.get("dn")
    if names and names[0].strip():
        return names[0].strip()
    return locator if len(locator) <= 60 else locator[:57] + "..."


class MediaQueue:
    """
    Orchestrates the download and transcode queues.

    Args:
        config: The resolved application configuration.
        encoder_selector: Selector used for transcodes. Built from `config` if omitted.
        runner: `run_cmd`-compatible callable for one-shot tool invocations.
    """

    def __init__(
        self,
        config: AppConfig,
        encoder_selector: Optional[EncoderSelector] = None,
        runner: Callable = run_cmd,
    ):
        config.ensure_dirs()
        self.config = config
        self._runner = runner
        self.encoder_selector = encoder_selector or EncoderSelector(config, runner=runner)
        self.error_log = ErrorLog(config.error_log_dir)

        self.stores: Dict[str, TaskStore] = {
            DOMAIN_DOWNLOAD: TaskStore(config.download_store_path, DownloadTask),
            DOMAIN_TRANSCODE: TaskStore(config.transcode_store_path, TranscodeTask),
        }
        self.schedulers: Dict[str, QueueScheduler] = {
            DOMAIN_DOWNLOAD: QueueScheduler(
                self.stores[DOMAIN_DOWNLOAD], self._launch_download, self.error_log, config.torrent_path
            ),
            DOMAIN_TRANSCODE: QueueScheduler(
                self.stores[DOMAIN_TRANSCODE], self._launch_transcode, self.error_log, config.ffmpeg_path
            ),
        }
        self.recovery = RecoveryManager(
            self.schedulers,
            {name: scheduler.executable for name, scheduler in self.schedulers.items()},
        )

    # --- Launchers ---

    def _launch_download(self, task: DownloadTask, on_finished) -> ProcessSupervisor:
        ensure_tool(self.config.torrent_path)
        output_dir = Path(task.output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TaskLaunchError(f"Could not create output directory '{output_dir}': {e}") from e

        command = [self.config.torrent_path, DOWNLOAD_SUBCOMMAND, task.locator]
        return ProcessSupervisor(
            task,
            self.stores[DOMAIN_DOWNLOAD],
            command,
            output_dir,
            DownloadProgressTracker(),
            self.config,
            on_finished=on_finished,
        )

    def _launch_transcode(self, task: TranscodeTask, on_finished) -> ProcessSupervisor:
        ensure_tool(self.config.ffmpeg_path)
        if not Path(task.input_file).is_file():
            raise InvalidTaskError(f"Input file no longer exists: {task.input_file}")

        output_dir = Path(task.output_file).parent
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TaskLaunchError(f"Could not create output directory '{output_dir}': {e}") from e

        selection = self.encoder_selector.select(task)

        def _record_selection(record: Task):
            record.acceleration = selection.acceleration

        return ProcessSupervisor(
            task,
            self.stores[DOMAIN_TRANSCODE],
            [self.config.ffmpeg_path, *selection.args],
            output_dir,
            TranscodeProgressTracker(self.config.transcode, task.source_duration),
            self.config,
            on_finished=on_finished,
            on_activate=_record_selection,
        )

    # --- Enqueue ---

    def _append(self, domain: str, build: Callable[[str], Task], start: bool = True) -> str:
        store = self.stores[domain]

        def _add(tasks: List[Task]) -> str:
            task = build(generate_task_id(domain, (t.id for t in tasks)))
            tasks.append(task)
            return task.id

        task_id = store.mutate(_add)
        logger.info(f"[{domain}] Enqueued task {task_id}.")
        if start:
            self.schedulers[domain].promote_next()
        return task_id

    def enqueue_download(
        self,
        locator: str,
        output_dir: Optional[Path] = None,
        display_name: str = "",
        selected_files: Optional[List[str]] = None,
        start: bool = True,
    ) -> str:
        """
        Adds a download to the queue and starts it if nothing else is downloading.

        With `start=False` the task is only written to the store; whichever process
        next promotes the download queue runs it.

        Returns:
            The id of the new task.

        Raises:
            InvalidTaskError: The locator is empty.
        """
        locator = (locator or "").strip()
        if not locator:
            raise InvalidTaskError("A download needs a locator.")
        target_dir = Path(output_dir).expanduser().resolve() if output_dir else self.config.download_dir

        return self._append(
            DOMAIN_DOWNLOAD,
            lambda task_id: DownloadTask(
                id=task_id,
                locator=locator,
                output_dir=str(target_dir),
                display_name=display_name or display_name_from_locator(locator),
                selected_files=list(selected_files or []),
            ),
            start=start,
        )

    def resolve_locator(self, descriptor_path: Path) -> str:
        """
        Turns a .torrent descriptor into a magnet locator with `torrent metainfo <file> magnet`.

        Raises:
            InvalidTaskError: The descriptor file does not exist.
            ToolNotFoundError: The fetch tool cannot be found.
            LocatorResolutionError: The tool failed or printed no magnet link.
        """
        descriptor_path = Path(descriptor_path).expanduser().resolve()
        if not descriptor_path.is_file():
            raise InvalidTaskError(f"Descriptor file not found: {descriptor_path}")
        ensure_tool(self.config.torrent_path)

        cmd = [self.config.torrent_path, METAINFO_SUBCOMMAND, str(descriptor_path), MAGNET_SUBCOMMAND]
        result = self._runner(cmd, timeout=LOCATOR_RESOLUTION_TIMEOUT, show_cmd=True)
        if result is None:
            raise LocatorResolutionError(f"Could not run the fetch tool for {descriptor_path.name}.")
        if result.returncode != 0:
            raise LocatorResolutionError(
                f"Fetch tool failed for {descriptor_path.name} (exit code {result.returncode}): {(result.stderr or result.stdout).strip()}"
            )

        for line in (result.stdout or "").splitlines():
            if line.strip().startswith("magnet:"):
                logger.debug(f"Resolved {descriptor_path.name} to {line.strip()}")
                return line.strip()
        raise LocatorResolutionError(f"No magnet link in the fetch tool output for {descriptor_path.name}.")

    def enqueue_download_from_descriptor(
        self,
        descriptor_path: Path,
        output_dir: Optional[Path] = None,
        display_name: str = "",
        selected_files: Optional[List[str]] = None,
        start: bool = True,
    ) -> str:
        locator = self.resolve_locator(descriptor_path)
        return self.enqueue_download(
            locator,
            output_dir=output_dir,
            display_name=display_name or Path(descriptor_path).stem,
            selected_files=selected_files,
            start=start,
        )

    def probe_duration(self, input_file: Path) -> Optional[float]:
        """
        Reads the media duration with ffprobe. Best effort: any failure gives None
        and the encoder's own `Duration:` banner is used instead.
        """
        try:
            probe = ffmpeg.probe(str(input_file), cmd=self.config.ffprobe_path)
        except ffmpeg.Error as e:
            stderr = e.stderr.decode("utf-8", errors="replace") if isinstance(e.stderr, bytes) else e.stderr
            logger.warning(f"ffmpeg.probe failed for {input_file}: {stderr}")
            return None
        except OSError as e:
            logger.warning(f"Could not run ffprobe for {input_file}: {e}")
            return None

        candidates = [probe.get("format", {}).get("duration")]
        candidates += [s.get("duration") for s in probe.get("streams", []) if s.get("codec_type") == "video"]
        for value in candidates:
            try:
                duration = float(value)
            except (TypeError, ValueError):
                continue
            if duration > 0:
                return duration
        return None

    def enqueue_transcode(
        self,
        input_file: Path,
        output_file: Path,
        video_codec: str = "",
        audio_codec: str = "",
        resolution: str = "",
        bitrate: str = "",
        custom_args: str = "",
        start: bool = True,
    ) -> str:
        """
        Adds a transcode to the queue and starts it if the encoder is idle.

        Raises:
            InvalidTaskError: The input does not exist, or the output would overwrite it.
        """
        input_path = Path(input_file).expanduser().resolve()
        if not input_path.is_file():
            raise InvalidTaskError(f"Input file not found: {input_path}")
        if not output_file:
            raise InvalidTaskError("A transcode needs an output file.")
        output_path = Path(output_file).expanduser().resolve()
        if output_path == input_path:
            raise InvalidTaskError("The output file must differ from the input file.")

        source_duration = self.probe_duration(input_path)
        return self._append(
            DOMAIN_TRANSCODE,
            lambda task_id: TranscodeTask(
                id=task_id,
                input_file=str(input_path),
                output_file=str(output_path),
                video_codec=video_codec or "",
                audio_codec=audio_codec or "",
                resolution=resolution or "",
                bitrate=bitrate or "",
                custom_args=custom_args or "",
                source_duration=source_duration,
            ),
            start=start,
        )

    # --- Query / control ---

    def _scheduler(self, domain: str) -> QueueScheduler:
        if domain not in self.schedulers:
            raise InvalidTaskError(f"Unknown domain '{domain}'. Expected one of: {', '.join(DOMAINS)}")
        return self.schedulers[domain]

    def list_tasks(self, domain: str) -> List[Task]:
        return self._scheduler(domain).store.load_all()

    def get_task(self, domain: str, task_id: str) -> Task:
        return self._scheduler(domain).store.get(task_id)

    def cancel(self, domain: str, task_id: str) -> Task:
        return self._scheduler(domain).cancel(task_id)

    def resume_waiting(self, domain: str, task_id: str) -> Task:
        return self._scheduler(domain).resume_waiting(task_id)

    def promote_waiting(self) -> Dict[str, Optional[str]]:
        """Gives every idle domain a chance to start its oldest waiting task."""
        return {domain: scheduler.promote_next() for domain, scheduler in self.schedulers.items()}

    def recover(self) -> Dict[str, List[str]]:
        return self.recovery.recover()

    def poll(self) -> Dict[str, List[str]]:
        """
        One pass of the `run --forever` loop.

        Requeues tasks whose child died together with the process that supervised
        it, then promotes every idle domain. Live children of other processes are
        left to their supervisors.
        """
        return self.recovery.recover(dead_only=True)

    def wait_idle(self, domain: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the given domain (or both) has no running or promotable task.

        The timeout applies to each domain in turn.
        """
        domains = [domain] if domain else list(DOMAINS)
        return all(self._scheduler(name).wait_idle(timeout) for name in domains)

    def shutdown(self):
        """Stops both queues. Running tasks stay `active` on disk and are recovered on the next start."""
        for scheduler in self.schedulers.values():
            scheduler.shutdown()
