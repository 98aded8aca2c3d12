"""
Configuration Package for MediaQueue.

This package centralizes the static configuration settings for the application
and the loading of the user YAML file into an explicit `AppConfig` object.

This package includes settings for:
- Common application settings like logging format, state file names and task statuses.
- User-overridable paths for the external tools (`torrent`, `ffmpeg`, `ffprobe`).
- The download tool's sub-commands and status-line grammar.
- Transcode codec defaults, resolution presets, hardware acceleration detection and
  the progress-estimation policy.
"""
