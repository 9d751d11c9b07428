"""
Services package for the Media Transcode Service.

This package contains the upload, conversion and delivery services and
the FFmpeg engine integration.
"""

from .delivery import (
    ResultDelivery,
    build_download_name,
)
from .engine import (
    BoundInvocation,
    EngineConfig,
    FFmpegBinding,
    ProcessResult,
    RawProcess,
    build_fallback_args,
    flatten_arguments,
    spawn_process,
)
from .orchestrator import (
    ConversionOrchestrator,
    get_orchestrator,
)
from .upload import UploadService

__all__ = [
    # Upload
    "UploadService",
    # Engine
    "EngineConfig",
    "FFmpegBinding",
    "BoundInvocation",
    "RawProcess",
    "ProcessResult",
    "build_fallback_args",
    "flatten_arguments",
    "spawn_process",
    # Orchestration
    "ConversionOrchestrator",
    "get_orchestrator",
    # Delivery
    "ResultDelivery",
    "build_download_name",
]
