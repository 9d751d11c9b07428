"""
Shell utilities for probing external tools.

The transcoding engine is an external binary; these helpers check that it
can be found and report its version for logging and health checks.
"""

import shutil
import subprocess
from pathlib import Path

from loguru import logger


def check_command_available(cmd: str) -> bool:
    """
    Check if a command is available in the system.

    Args:
        cmd: Command name or absolute path

    Returns:
        True if command is available, False otherwise
    """
    if Path(cmd).is_absolute():
        return Path(cmd).is_file()
    return shutil.which(cmd) is not None


def get_command_version(cmd: str, version_flag: str = "-version") -> str | None:
    """
    Get the first line of a command's version output.

    Args:
        cmd: Command to check
        version_flag: Flag to get version (FFmpeg tools use ``-version``)

    Returns:
        Version string or None if not available
    """
    try:
        result = subprocess.run(
            [cmd, version_flag],
            capture_output=True,
            text=True,
            timeout=10,
            check=False,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        logger.warning(f"Could not get version of {cmd}: {exc}")
        return None

    if result.returncode != 0 or not result.stdout:
        return None
    return result.stdout.splitlines()[0].strip()
