"""
Result delivery service.

Streams a converted file to the client as an attachment and removes it
once the stream has ended, whether the transfer completed or not.
"""

import mimetypes
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from urllib.parse import quote

import aiofiles
from fastapi.responses import StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask
from starlette.types import Receive, Scope, Send

from app.exceptions import DeliveryFailedError
from app.models.response import DeliveryResult
from app.utils.fs import delete_file

DEFAULT_CHUNK_SIZE = 64 * 1024


def build_download_name(original_filename: str | None, extension: str) -> str:
    """
    Derive the attachment name for a converted file.

    ``"clip.final.mov"`` converted to ``mp4`` becomes ``"clip.final.mp4"``.

    Args:
        original_filename: Name declared by the client
        extension: Target extension without the dot

    Returns:
        Download file name
    """
    name = (original_filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    stem, dot, suffix = name.rpartition(".")
    if dot and stem:
        name = stem
    if not name.strip():
        name = "output"
    return f"{name}.{extension}"


def content_disposition(filename: str) -> str:
    """Attachment header value, RFC 6266 encoded when the name is not plain ASCII."""
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


class CleanupStreamingResponse(StreamingResponse):
    """
    StreamingResponse that runs its background task when sending fails too.

    On a client disconnect Starlette either returns normally (and runs the
    background task itself) or raises before reaching it. The second case
    is covered here so the task runs exactly once either way.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except BaseException:
            if self.background is not None:
                await self.background()
            raise


class ResultDelivery:
    """
    Streams one output file to one client.

    The file is deleted as soon as the response ends, including when the
    client disconnects or a read fails part way through.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_complete: Callable[[DeliveryResult], None] | None = None,
    ):
        """
        Initialize the delivery.

        Args:
            chunk_size: Bytes read per chunk
            on_complete: Called with the DeliveryResult once the stream ends
        """
        self.chunk_size = chunk_size
        self.on_complete = on_complete
        self.result: DeliveryResult | None = None
        self._bytes_sent = 0
        self._completed = False

    def deliver(self, output_path: Path, download_name: str) -> StreamingResponse:
        """
        Build the streaming response for ``output_path``.

        Args:
            output_path: Converted file
            download_name: Attachment file name

        Returns:
            StreamingResponse that deletes the file once it has been sent
        """
        output_path = Path(output_path)
        media_type = mimetypes.guess_type(download_name)[0] or "application/octet-stream"
        headers = {"Content-Disposition": content_disposition(download_name)}
        try:
            headers["Content-Length"] = str(output_path.stat().st_size)
        except OSError:
            pass

        logger.bind(event="delivery_start", file=str(output_path), name=download_name).info(
            f"Starting download of {download_name}"
        )
        return CleanupStreamingResponse(
            self._stream(output_path, download_name),
            media_type=media_type,
            headers=headers,
            background=BackgroundTask(self._cleanup, output_path, download_name),
        )

    async def _stream(self, output_path: Path, download_name: str) -> AsyncIterator[bytes]:
        failure: Exception | None = None
        try:
            async with aiofiles.open(output_path, "rb") as handle:
                while True:
                    chunk = await handle.read(self.chunk_size)
                    if not chunk:
                        break
                    self._bytes_sent += len(chunk)
                    yield chunk
            self._completed = True
        except Exception as exc:
            failure = exc
            raise
        finally:
            self._finish(output_path, download_name, failure)

    async def _cleanup(self, output_path: Path, download_name: str) -> None:
        # Runs after the response, even when the body iterator was abandoned
        self._finish(output_path, download_name, None)

    def _finish(self, output_path: Path, download_name: str, failure: Exception | None) -> None:
        delete_file(output_path)
        if self.result is not None:
            return

        if failure is None and self._completed:
            self.result = DeliveryResult(success=True, delivered_name=download_name, bytes_sent=self._bytes_sent)
            logger.bind(event="delivery_complete", name=download_name, bytes=self._bytes_sent).info(
                f"Delivered {download_name}"
            )
        else:
            reason = (str(failure) or failure.__class__.__name__) if failure else "client disconnected"
            error = DeliveryFailedError(str(output_path), reason)
            self.result = DeliveryResult(
                success=False,
                delivered_name=download_name,
                bytes_sent=self._bytes_sent,
                error=error.message,
            )
            logger.bind(event="download", error_type=error.error_type, bytes=self._bytes_sent).error(error.message)

        if self.on_complete is not None:
            try:
                self.on_complete(self.result)
            except Exception as exc:
                logger.warning(f"Delivery observer error: {exc}")
