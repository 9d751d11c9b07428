"""
FastAPI application entry point for the Media Transcode Service.

This module initializes the FastAPI application with proper configuration,
middleware, and routing for the media conversion service.
"""

import sys
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from app.api import conversion, health
from app.config import settings
from app.exceptions import BaseServiceError
from app.middleware import ErrorHandlingMiddleware, LoggingMiddleware
from app.models.response import ErrorResponse
from app.services.orchestrator import get_orchestrator
from app.utils.fs import ensure_directory, get_readable_file_size
from app.utils.shell import check_command_available, get_command_version


def validate_tool_paths() -> None:
    """Validate that the FFmpeg binaries are available."""
    required_tools = {
        "ffmpeg": settings.FFMPEG_PATH,
        "ffprobe": settings.FFPROBE_PATH,
    }

    missing_tools = []
    for tool_name, tool_path in required_tools.items():
        if not check_command_available(tool_path):
            missing_tools.append(f"{tool_name} (expected at {tool_path})")
            logger.warning(f"Tool not found: {tool_name} at {tool_path}")
        else:
            logger.info(f"Tool validated: {tool_name} - {get_command_version(tool_path)}")

    if missing_tools and settings.ENVIRONMENT == "production":
        raise RuntimeError(
            f"Required tools not found in production: {', '.join(missing_tools)}. "
            "Please ensure FFmpeg is installed."
        )
    elif missing_tools:
        logger.warning(
            f"Some tools not found (non-fatal in {settings.ENVIRONMENT}): {', '.join(missing_tools)}"
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Max upload size: {get_readable_file_size(settings.MAX_FILE_SIZE)}")
    logger.info(f"Conversion timeout: {settings.CONVERSION_TIMEOUT_MS / 1000:g}s")

    try:
        validate_tool_paths()
    except RuntimeError as exc:
        logger.error(f"Tool validation failed: {exc}")
        raise

    upload_dir = ensure_directory(settings.UPLOAD_DIR)
    logger.info(f"Upload directory: {upload_dir.resolve()}")

    yield

    # Shutdown
    logger.bind(event="shutdown", **get_orchestrator().get_statistics()).info(
        f"Shutting down {settings.APP_NAME}"
    )


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.APP_NAME,
        description="FastAPI-based service converting uploaded media files with FFmpeg",
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
        lifespan=lifespan
    )

    # Add middleware
    setup_middleware(app)

    # Register error handlers
    setup_exception_handlers(app)

    # Include routers
    setup_routers(app)

    # Setup logging
    setup_logging()

    return app


def setup_middleware(app: FastAPI) -> None:
    """
    Configure middleware for the FastAPI application.

    The last middleware added runs first.

    Args:
        app: FastAPI application instance
    """
    # Response compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # Last-resort error handling
    app.add_middleware(ErrorHandlingMiddleware)  # type: ignore

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Custom logging middleware
    app.add_middleware(LoggingMiddleware)  # type: ignore


async def service_error_handler(request: Request, exc: BaseServiceError) -> JSONResponse:
    """Render a service error as a JSON error body."""
    body = ErrorResponse(
        error=exc.title,
        message=exc.message,
        error_type=exc.error_type,
        details=exc.details,
        request_id=request.scope.get("request_id"),
    )
    logger.bind(
        event="request_failed",
        error_type=exc.error_type,
        status=exc.status_code,
        path=request.url.path,
    ).warning(exc.message)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


async def route_not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    """Answer unknown routes with a JSON 404."""
    logger.bind(event="route_not_found", path=request.url.path, method=request.method).warning(
        "Route not available"
    )
    return JSONResponse(
        status_code=404,
        content={
            "error": "Route not available",
            "path": request.url.path,
            "method": request.method,
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers for service errors and unknown routes.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(BaseServiceError, service_error_handler)
    app.add_exception_handler(404, route_not_found_handler)
    app.add_exception_handler(405, route_not_found_handler)


def setup_routers(app: FastAPI) -> None:
    """
    Include API routers in the FastAPI application.

    Args:
        app: FastAPI application instance
    """
    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(conversion.router, tags=["conversion"])


def setup_logging() -> None:
    """
    Configure logging with loguru.
    """
    logger.remove()  # Remove default handler

    if settings.LOG_JSON:
        logger.add(sys.stdout, level=settings.LOG_LEVEL, serialize=True)
    else:
        logger.add(
            sink=sys.stdout,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            level=settings.LOG_LEVEL,
            colorize=True
        )

    # Add file handler for production
    if settings.ENVIRONMENT == "production":
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)

        logger.add(
            "logs/app.log",
            rotation="1 day",
            retention="30 days",
            level=settings.LOG_LEVEL,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
        )


# Create the FastAPI application instance
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        timeout_keep_alive=settings.KEEP_ALIVE_TIMEOUT
    )
