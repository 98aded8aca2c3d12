"""
This module provides the Modules class to handle the verification and updating
of the external tools the queues delegate to: the encoder (FFmpeg), its probe
companion (ffprobe) and the torrent fetch tool.
"""
import shutil
from pathlib import Path
from typing import Dict

from loguru import logger

from ..config.common import AppConfig
from .process_utils import run_cmd


class Modules:
    """
    A utility class to handle operations related to external modules.

    It reads the tool locations from the resolved `AppConfig`. Nothing in here is
    fatal: a missing tool only fails the tasks that need it, so startup checks
    log and carry on.
    """

    @staticmethod
    def update(config: AppConfig):
        """
        Updates external modules from the `module_update_dir` specified in the user config.

        If an update directory is configured and exists, this method moves all its
        contents to the tools directory (`tools_dir`), overwriting existing files
        if necessary. This provides a simple mechanism for users to drop in new
        versions of the tools.

        If the update path is not configured, this step is silently skipped.
        """
        update_dir = config.module_update_dir
        tools_dir = config.tools_dir
        if not update_dir:
            logger.debug("`module_update_dir` not configured in user config. Skipping module update check.")
            return

        if not tools_dir:
            logger.error(f"Cannot perform update: The update path '{update_dir}' is set, but the destination `tools_dir` is not.")
            return

        if not update_dir.is_dir():
            logger.warning(f"Configured module update directory '{update_dir}' does not exist. Skipping update.")
            return

        logger.info(f"Checking for module updates from '{update_dir}' to '{tools_dir}'...")

        update_items = list(update_dir.glob("*"))
        if not update_items:
            logger.info("No files found in module update directory. Nothing to do.")
            return

        tools_dir.mkdir(parents=True, exist_ok=True)
        for update_item_path in update_items:
            destination_path = tools_dir / update_item_path.name
            try:
                # Replace whole directories instead of merging into them.
                if destination_path.is_dir() and update_item_path.is_dir():
                    logger.info(f"Removing existing directory '{destination_path.name}' before update.")
                    shutil.rmtree(destination_path)

                shutil.move(str(update_item_path), str(destination_path))
                logger.info(f"Successfully moved '{update_item_path.name}' to '{destination_path}'")
            except (OSError, shutil.Error) as e:
                logger.error(f"Failed to move '{update_item_path.name}' to '{destination_path}': {e}")

    @staticmethod
    def tool_paths(config: AppConfig) -> Dict[str, str]:
        return {
            "ffmpeg": config.ffmpeg_path,
            "ffprobe": config.ffprobe_path,
            "torrent": config.torrent_path,
        }

    @staticmethod
    def verify_tool(name: str, executable: str) -> bool:
        """
        Checks that an external tool resolves to an executable file.

        The encoder is additionally asked for `-version`, and the first line of
        its answer is logged for confirmation.
        """
        resolved = executable if Path(executable).is_file() else shutil.which(executable)
        if not resolved:
            logger.warning(
                f"'{name}' was not found at '{executable}'. Tasks that need it will fail.\n"
                "You can either add it to your system's PATH or specify its location in the 'config.user.yaml' file."
            )
            return False

        if name == "ffmpeg":
            result = run_cmd([executable, "-version"], timeout=30)
            if result is None or result.returncode != 0:
                logger.error(f"FFmpeg version command failed: {result.stderr if result else 'could not run'}")
                return False
            version_lines = result.stdout.splitlines()
            if version_lines:
                logger.info(f"FFmpeg version check successful. Output (first line):\n{version_lines[0]}")
        else:
            logger.debug(f"Using {name} from '{resolved}'")
        return True

    @staticmethod
    def run_all(config: AppConfig) -> Dict[str, bool]:
        """
        A convenience method to run all startup checks and updates in sequence.
        This is typically called once when the application starts.

        Returns:
            Mapping of tool name to whether it was found and usable.
        """
        Modules.update(config)
        return {name: Modules.verify_tool(name, path) for name, path in Modules.tool_paths(config).items()}
