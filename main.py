"""
Main entry point for the MediaQueue application.

This script parses command-line arguments, configures logging, loads the user
configuration and dispatches to the requested command. The long-running `run`
command recovers tasks left over from an unclean exit and then works through
both queues.
"""

import sys
import time
from typing import List, Optional

import yaml
from loguru import logger

from mediaqueue.cli import get_args
from mediaqueue.config.common import DOMAIN_DOWNLOAD, DOMAIN_TRANSCODE, LOGGER_FORMAT, load_config
from mediaqueue.domain.exceptions import MediaQueueException
from mediaqueue.pipeline.orchestrator import MediaQueue
from mediaqueue.utils.module_updater import Modules


# Configure the logger for initial setup.
# The level is overridden once the command-line arguments are parsed.
logger.remove()
logger.add(sys.stderr, level="INFO", format=LOGGER_FORMAT)


def _print_yaml(data):
    print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True), end="")


def _run(queue: MediaQueue, forever: bool, poll_interval: float):
    queue.recover()
    if not forever:
        queue.wait_idle()
        return
    while True:
        queue.poll()
        time.sleep(poll_interval)


def _finish_enqueue(queue: MediaQueue, domain: str, task_id: str, no_wait: bool):
    """Blocks until the domain drains, unless the task was only enqueued."""
    if no_wait:
        logger.info(f"[{domain}] Task {task_id} is waiting for a `run --forever` process to start it.")
        return
    queue.wait_idle(domain)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function of the command-line interface.

    Returns:
        The process exit code: 0 on success, 1 when a command was rejected.
    """
    args = get_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level, format=LOGGER_FORMAT)

    config = load_config(args.config)
    if config.log_file:
        logger.add(config.log_file, level="DEBUG", format=LOGGER_FORMAT, rotation="10 MB", encoding="utf-8")
    logger.debug(f"Parsed arguments: {args}")

    # Verify external tools and run updates if configured
    Modules.run_all(config)

    queue = MediaQueue(config)
    try:
        if args.command == "run":
            _run(queue, args.forever, args.poll_interval)
        elif args.command == "add-download":
            if args.descriptor:
                task_id = queue.enqueue_download_from_descriptor(
                    args.descriptor, output_dir=args.output_dir, display_name=args.name, start=not args.no_wait
                )
            else:
                task_id = queue.enqueue_download(
                    args.locator, output_dir=args.output_dir, display_name=args.name, start=not args.no_wait
                )
            print(task_id)
            _finish_enqueue(queue, DOMAIN_DOWNLOAD, task_id, args.no_wait)
        elif args.command == "add-transcode":
            task_id = queue.enqueue_transcode(
                args.input,
                args.output,
                video_codec=args.video_codec,
                audio_codec=args.audio_codec,
                resolution=args.resolution,
                bitrate=args.bitrate,
                custom_args=args.ffmpeg_params,
                start=not args.no_wait,
            )
            print(task_id)
            _finish_enqueue(queue, DOMAIN_TRANSCODE, task_id, args.no_wait)
        elif args.command == "list":
            if args.id:
                _print_yaml(queue.get_task(args.domain, args.id).to_dict())
            else:
                _print_yaml([task.to_dict() for task in queue.list_tasks(args.domain)])
        elif args.command == "cancel":
            task = queue.cancel(args.domain, args.task_id)
            print(f"{task.id}: {task.status.value}")
        elif args.command == "resume":
            task = queue.resume_waiting(args.domain, args.task_id)
            print(f"{task.id}: {task.status.value}")
            queue.wait_idle(args.domain)
    except KeyboardInterrupt:
        logger.warning("Interrupted. Stopping running tasks; they will be resumed on the next run.")
        queue.shutdown()
        return 130
    except MediaQueueException as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    logger.success("MediaQueue finished.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
