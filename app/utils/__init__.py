"""
Utilities package for the Media Transcode Service.

This package contains utility modules for common operations.
"""

from .fs import (
    allocate_temp_path,
    delete_file,
    ensure_directory,
    get_readable_file_size,
)
from .shell import (
    check_command_available,
    get_command_version,
)

__all__ = [
    "allocate_temp_path", "delete_file", "ensure_directory", "get_readable_file_size",
    "check_command_available", "get_command_version",
]
