import argparse
from pathlib import Path
from typing import List, Optional

from .config.common import DOMAINS


def get_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parses command-line arguments for MediaQueue.

    Commands:
        run            Recover orphaned tasks and process both queues.
        add-download   Enqueue a download from a magnet link or a .torrent file.
        add-transcode  Enqueue a transcode.
        list           Print the tasks of a domain as YAML.
        cancel         Cancel a task.
        resume         Start a chosen waiting task ahead of the queue.

    Returns:
        argparse.Namespace: An object containing the parsed command-line
                            arguments as attributes.
    """
    parser = argparse.ArgumentParser(description="Download and transcode task queues.")
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to the user configuration YAML (default: config.user.yaml at the project root)."
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO", choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set the logging level."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Recover orphaned tasks and process the queues.")
    run_parser.add_argument(
        "--forever", action="store_true",
        help="Keep polling for newly enqueued tasks instead of exiting when idle."
    )
    run_parser.add_argument(
        "--poll-interval", type=float, default=5.0,
        help="Seconds between queue polls with --forever."
    )

    download_parser = subparsers.add_parser("add-download", help="Enqueue a download.")
    download_parser.add_argument("locator", nargs="?", default=None, help="Magnet link.")
    download_parser.add_argument(
        "--descriptor", type=str, default=None,
        help="A .torrent file to resolve into a magnet link instead of LOCATOR."
    )
    download_parser.add_argument("--output-dir", type=str, default=None, help="Download directory.")
    download_parser.add_argument("--name", type=str, default="", help="Display name of the task.")
    download_parser.add_argument(
        "--no-wait", action="store_true",
        help="Only enqueue; a running `run --forever` starts the task."
    )

    transcode_parser = subparsers.add_parser("add-transcode", help="Enqueue a transcode.")
    transcode_parser.add_argument("input", help="Source media file.")
    transcode_parser.add_argument("output", help="Destination file; its extension picks the default codecs.")
    transcode_parser.add_argument("--video-codec", type=str, default="", help="Video codec, e.g. libx265.")
    transcode_parser.add_argument("--audio-codec", type=str, default="", help="Audio codec, e.g. aac.")
    transcode_parser.add_argument(
        "--resolution", type=str, default="",
        help="1080p, 720p, 480p, 360p, 240p, original, or WxH."
    )
    transcode_parser.add_argument("--bitrate", type=str, default="", help="Video bitrate, e.g. 2M.")
    transcode_parser.add_argument(
        "--ffmpeg-params", type=str, default="",
        help="Raw encoder arguments that replace codec, resolution and bitrate selection."
    )
    transcode_parser.add_argument(
        "--no-wait", action="store_true",
        help="Only enqueue; a running `run --forever` starts the task."
    )

    list_parser = subparsers.add_parser("list", help="Show the tasks of a domain.")
    list_parser.add_argument("domain", choices=DOMAINS)
    list_parser.add_argument("--id", type=str, default=None, help="Show only this task.")

    for name, help_text in (("cancel", "Cancel a task."), ("resume", "Start a waiting task now.")):
        control_parser = subparsers.add_parser(name, help=help_text)
        control_parser.add_argument("domain", choices=DOMAINS)
        control_parser.add_argument("task_id")

    args = parser.parse_args(argv)

    if args.command == "add-download":
        if bool(args.locator) == bool(args.descriptor):
            parser.error("add-download needs exactly one of LOCATOR or --descriptor.")
        if args.descriptor and not Path(args.descriptor).is_file():
            parser.error(f"The descriptor file '{args.descriptor}' does not exist.")

    if args.config:
        args.config = Path(args.config).expanduser().resolve()

    return args
