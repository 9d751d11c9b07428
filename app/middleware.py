"""
Custom middleware for the Media Transcode Service.

This module contains custom middleware for request logging and
last-resort error handling.
"""

import time
import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger


class LoggingMiddleware:
    """
    Custom logging middleware for request/response logging.

    This middleware logs all incoming requests and outgoing responses
    with timing information and request IDs for better debugging.
    Log records emitted while the request is handled carry the request ID.
    """

    def __init__(self, app: Any) -> None:
        """
        Initialize the logging middleware.

        Args:
            app: ASGI application
        """
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        """
        Process the request and add logging.

        Args:
            scope: ASGI scope
            receive: ASGI receive callable
            send: ASGI send callable
        """
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = str(uuid.uuid4())[:8]
        scope["request_id"] = request_id
        start_time = time.time()
        status_code = None

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers
            await send(message)

        request = Request(scope, receive)
        with logger.contextualize(request_id=request_id):
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} - "
                f"Client: {request.client.host if request.client else 'unknown'}"
            )
            try:
                await self.app(scope, receive, send_wrapper)
            finally:
                process_time = time.time() - start_time
                logger.bind(event="request_complete", status=status_code, duration=round(process_time, 3)).info(
                    f"[{request_id}] Request completed with {status_code} in {process_time:.3f}s"
                )


class ErrorHandlingMiddleware:
    """
    Custom error handling middleware for consistent error responses.

    This middleware catches unhandled exceptions and returns
    consistent JSON error responses. If the response has already
    started there is nothing left to send and the error is only logged.
    """

    def __init__(self, app: Any) -> None:
        """
        Initialize the error handling middleware.

        Args:
            app: ASGI application
        """
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        """
        Process the request with error handling.

        Args:
            scope: ASGI scope
            receive: ASGI receive callable
            send: ASGI send callable
        """
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            logger.opt(exception=exc).error(f"Unhandled exception: {exc}")
            if response_started:
                return

            error_response = JSONResponse(
                status_code=500,
                content={
                    "error": "Internal Server Error",
                    "message": "An unexpected error occurred",
                    "request_id": scope.get("request_id", "unknown"),
                },
            )
            await error_response(scope, receive, send)
