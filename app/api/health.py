"""
Health check endpoints for the Media Transcode Service.

This module provides health check endpoints for monitoring
and service discovery.
"""

import platform
from datetime import datetime

import psutil
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from app.config import settings
from app.services.orchestrator import ConversionOrchestrator, get_orchestrator
from app.utils.shell import check_command_available, get_command_version

router = APIRouter()


@router.get("/healthz")
async def health_check() -> JSONResponse:
    """
    Basic health check endpoint.

    Returns:
        JSONResponse: Health status and basic information
    """
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": datetime.utcnow().isoformat()
        }
    )


@router.get("/health")
async def detailed_health_check(
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Detailed health check endpoint with system information.

    Returns:
        JSONResponse: Detailed health status, system metrics and engine status
    """
    try:
        system_info = {
            "platform": platform.system(),
            "python_version": platform.python_version(),
            "architecture": platform.architecture()[0]
        }

        system_metrics = {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage("/").percent
        }
    except (OSError, psutil.Error) as e:
        logger.error(f"Detailed health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unhealthy")

    dependencies = check_dependencies()
    status = "healthy" if dependencies["ffmpeg"]["available"] else "degraded"

    return JSONResponse(
        status_code=200,
        content={
            "status": status,
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": datetime.utcnow().isoformat(),
            "system": system_info,
            "metrics": system_metrics,
            "dependencies": dependencies,
            "conversions": orchestrator.get_statistics()
        }
    )


def check_dependencies() -> dict[str, dict]:
    """
    Check the status of the FFmpeg binaries.

    Returns:
        dict: Availability and version per binary
    """
    dependencies = {}
    for name, path in (("ffmpeg", settings.FFMPEG_PATH), ("ffprobe", settings.FFPROBE_PATH)):
        available = check_command_available(path)
        dependencies[name] = {
            "path": path,
            "available": available,
            "version": get_command_version(path) if available else None,
        }
    return dependencies
