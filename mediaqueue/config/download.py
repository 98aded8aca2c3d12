"""
Configuration settings related to downloads.

The download domain delegates all peer-to-peer work to the external `torrent`
command line tool. This module holds the sub-commands used to drive it, the
grammar of its periodic status line and the default output directory name.
"""
import re

# Sub-command that fetches the content behind a locator into the working directory.
DOWNLOAD_SUBCOMMAND = "download"

# Sub-command sequence that turns a .torrent descriptor into a magnet locator:
#   torrent metainfo <file> magnet
METAINFO_SUBCOMMAND = "metainfo"
MAGNET_SUBCOMMAND = "magnet"

# Timeout in seconds for the one-shot locator resolution.
LOCATOR_RESOLUTION_TIMEOUT = 60

# Default directory name for downloads when the user config does not set one.
DEFAULT_DOWNLOAD_DIR_NAME = "downloads"

# The fetch tool prints one status line per tick, for example:
#   1m2.5s: 1 torrents, 1 infos, 12.3 MB/700 MB ready, upload 1.2 MB, download 512 KB/s
# Groups: minutes (optional), seconds, torrents, infos, downloaded, total, upload, rate.
_SIZE = r"(\d+(?:\.\d+)?\s*[A-Za-z]*)"
DOWNLOAD_STATUS_PATTERN = re.compile(
    r"(?:(\d+)m)?(\d+(?:\.\d+)?)s: (\d+) torrents, (\d+) infos, "
    + _SIZE + "/" + _SIZE + r" ready, upload " + _SIZE + r", download " + _SIZE + r"/s"
)
