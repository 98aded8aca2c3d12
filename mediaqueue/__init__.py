"""
MediaQueue: durable, crash-recoverable queues for media downloads and transcodes.

Each domain runs at most one external child process at a time (the `torrent`
fetch tool or `ffmpeg`), parses its output into progress, and keeps the state
of every task in a YAML file that survives restarts.
"""

__version__ = "1.0.0"
