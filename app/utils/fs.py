"""
Filesystem utilities for temporary upload and output files.

This module allocates collision-resistant temporary paths and removes
temporary files on a best-effort basis.
"""

import secrets
from pathlib import Path

from loguru import logger

# Random bytes per generated name (8 hex characters)
_TOKEN_BYTES = 4
_MAX_ALLOCATION_ATTEMPTS = 16


def ensure_directory(path: str | Path) -> Path:
    """
    Ensure directory exists, creating it if necessary.

    Args:
        path: Directory path to ensure

    Returns:
        Path object of the directory

    Raises:
        OSError: If directory cannot be created
    """
    path = Path(path)

    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Directory ensured: {path}")
        return path
    except OSError as exc:
        logger.error(f"Failed to create directory {path}: {exc}")
        raise


def allocate_temp_path(base_dir: str | Path) -> Path:
    """
    Produce a path inside ``base_dir`` that does not exist yet.

    The file itself is not created. ``base_dir`` does not need to exist;
    creating it is the caller's job.

    Args:
        base_dir: Working directory for temporary files

    Returns:
        Path to an unused file name in ``base_dir``

    Raises:
        ValueError: If ``base_dir`` is not a usable path string
    """
    if base_dir is None or str(base_dir).strip() == "" or "\x00" in str(base_dir):
        raise ValueError(f"Invalid base directory: {base_dir!r}")

    base = Path(base_dir)
    for _ in range(_MAX_ALLOCATION_ATTEMPTS):
        candidate = base / secrets.token_hex(_TOKEN_BYTES)
        if not candidate.exists():
            return candidate

    # Random tokens keep colliding only in a pathological directory
    return base / secrets.token_hex(_TOKEN_BYTES * 4)


def delete_file(path: str | Path | None) -> bool:
    """
    Delete a temporary file if it exists.

    Never raises: a missing file is a no-op and any other failure is logged.

    Args:
        path: File to delete

    Returns:
        True if a file was removed, False otherwise
    """
    if path is None:
        return False

    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.bind(event="cleanup", path=str(path), result="error").error(
            f"Failed to delete {path}: {exc}"
        )
        return False

    logger.bind(event="cleanup", path=str(path), result="success").info(f"Deleted {path}")
    return True


def get_readable_file_size(size_bytes: int) -> str:
    """
    Format a byte count for humans.

    Args:
        size_bytes: Size in bytes

    Returns:
        Size formatted as bytes, KB, MB or GB
    """
    if size_bytes < 1024:
        return f"{size_bytes} bytes"
    if size_bytes < 1024 ** 2:
        return f"{size_bytes / 1024:.2f} KB"
    if size_bytes < 1024 ** 3:
        return f"{size_bytes / 1024 ** 2:.2f} MB"
    return f"{size_bytes / 1024 ** 3:.2f} GB"
