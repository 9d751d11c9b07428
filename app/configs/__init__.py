"""
Configuration package for the Media Transcode Service.

This package contains the FFmpeg parameter profiles served by the
conversion endpoints.
"""

from .profiles import (
    PROFILES,
    ParameterProfile,
    endpoint_path,
    get_profile,
    list_endpoints,
)

__all__ = [
    "PROFILES",
    "ParameterProfile",
    "endpoint_path",
    "get_profile",
    "list_endpoints",
]
