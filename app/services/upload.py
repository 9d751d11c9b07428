"""
Streaming upload service.

This module ingests a ``multipart/form-data`` request body chunk by chunk,
persists the single accepted file part to disk while counting its bytes,
and enforces the file count and size limits while the body is still
arriving. The body is always consumed to the end, even when the upload is
already known to be rejected, so the client connection is never left with
unread bytes.
"""

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from loguru import logger
from python_multipart.exceptions import FormParserError
from python_multipart.multipart import MultipartParser, MultipartState, parse_options_header
from starlette.requests import ClientDisconnect

from app.exceptions import (
    EmptyUploadError,
    FileTooLargeError,
    MalformedUploadError,
    NoFileUploadedError,
    TooManyFilesError,
    UploadError,
)
from app.models.upload import UploadResult, UploadSession
from app.utils.fs import delete_file, get_readable_file_size

# Events queued by the parser callbacks for the async write loop
_OPEN = "open"
_DATA = "data"
_CLOSE = "close"


def _decode_header_value(value: bytes) -> str:
    """Decode a header parameter the way browsers encode it."""
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


class _MultipartReader:
    """
    Parser callbacks for one request body.

    ``python-multipart`` invokes these synchronously from ``parser.write``.
    They only track part boundaries and queue file events; the disk writes
    happen afterwards in ``UploadService`` so they can be awaited.
    """

    def __init__(self, session: UploadSession):
        self.session = session
        self.events: list[tuple[str, bytes | None]] = []

        self._header_field = b""
        self._header_value = b""
        self._content_disposition: bytes | None = None
        self._content_type: bytes | None = None
        self._accepting = False

    @property
    def callbacks(self) -> dict[str, Any]:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
        }

    def on_part_begin(self) -> None:
        self._content_disposition = None
        self._content_type = None
        self._accepting = False

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        field = self._header_field.lower()
        if field == b"content-disposition":
            self._content_disposition = self._header_value
        elif field == b"content-type":
            self._content_type = self._header_value
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        if self._content_disposition is None:
            raise MalformedUploadError("part without Content-Disposition header")

        _, options = parse_options_header(self._content_disposition)
        if b"name" not in options:
            raise MalformedUploadError('the Content-Disposition field "name" must be provided')

        field_name = _decode_header_value(options[b"name"])
        if b"filename" not in options:
            logger.debug(f"Ignoring form field: {field_name}")
            return

        session = self.session
        session.file_parts += 1
        if session.file_parts > session.max_files:
            if session.mark_too_many_files():
                logger.bind(event="upload_files_limit", max_files=session.max_files).error(
                    "Too many files uploaded"
                )
            return
        if session.file_parts > 1:
            logger.debug(f"Discarding extra file part in field {field_name}")
            return

        # Browsers may send a full client-side path
        filename = _decode_header_value(options[b"filename"]).replace("\\", "/").rsplit("/", 1)[-1]
        session.original_filename = filename
        session.mime_type = _decode_header_value(self._content_type) if self._content_type else None
        self._accepting = True
        self.events.append((_OPEN, None))

        logger.bind(event="upload_file", field=field_name, mimetype=session.mime_type).info(
            f"Uploading {filename}"
        )

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._accepting:
            self.events.append((_DATA, data[start:end]))

    def on_part_end(self) -> None:
        if self._accepting:
            self.events.append((_CLOSE, None))
            self._accepting = False


class UploadService:
    """Service that persists a streamed multipart upload to disk."""

    def __init__(self, max_files: int = 1):
        """
        Initialize the upload service.

        Args:
            max_files: Maximum number of file parts accepted per request
        """
        self.max_files = max_files

    async def ingest(
        self,
        stream: AsyncIterator[bytes],
        content_type: str | None,
        dest_path: Path,
        max_bytes: int,
    ) -> UploadResult:
        """
        Stream a multipart body to ``dest_path``.

        Args:
            stream: Request body chunks
            content_type: The request's Content-Type header
            dest_path: Where the accepted file is written
            max_bytes: Largest accepted file size in bytes

        Returns:
            UploadResult describing the persisted file

        Raises:
            TooManyFilesError: More than ``max_files`` file parts were sent
            FileTooLargeError: The file exceeded ``max_bytes``
            MalformedUploadError: The body could not be parsed
            NoFileUploadedError: The body contained no file part
            EmptyUploadError: The persisted file is missing or empty
        """
        session = UploadSession(saved_path=dest_path, max_bytes=max_bytes, max_files=self.max_files)
        logger.bind(event="upload_received", path=str(dest_path), content_type=content_type).info(
            f"Receiving upload into {dest_path}"
        )

        try:
            await self._consume(stream, content_type, session)
            result = await self._verify(session)
        except UploadError as exc:
            delete_file(dest_path)
            logger.bind(
                event="upload_failed",
                error_type=exc.error_type,
                bytes=session.bytes_received,
                file=session.original_filename,
            ).error(exc.message)
            raise

        logger.bind(
            event="upload_complete",
            name=result.original_filename,
            bytes=result.byte_count,
            path=str(result.saved_path),
        ).info(f"Upload complete: {result.original_filename} ({get_readable_file_size(result.byte_count)})")
        return result

    async def _consume(
        self,
        stream: AsyncIterator[bytes],
        content_type: str | None,
        session: UploadSession,
    ) -> None:
        """Parse and persist the whole body, draining it even after a failure."""
        reader = _MultipartReader(session)
        parse_error: str | None = None
        parser: MultipartParser | None = None
        writer = None

        try:
            parser = MultipartParser(self._get_boundary(content_type), reader.callbacks)
        except MalformedUploadError as exc:
            parse_error = exc.details["reason"]

        try:
            async for chunk in stream:
                if parse_error is not None or parser is None:
                    continue  # drain
                try:
                    parser.write(chunk)
                except (FormParserError, MalformedUploadError) as exc:
                    parse_error = self._reason(exc)
                    reader.events.clear()
                    continue
                writer = await self._apply_events(reader, session, writer)

            if parse_error is None and parser is not None:
                try:
                    parser.finalize()
                except FormParserError as exc:
                    parse_error = self._reason(exc)
                else:
                    if parser.state != MultipartState.END:
                        parse_error = "body ended before the closing boundary"
                    writer = await self._apply_events(reader, session, writer)
        except ClientDisconnect:
            parse_error = "client disconnected before the upload finished"
        finally:
            if writer is not None:
                await writer.close()

        if session.too_many_files:
            raise TooManyFilesError(session.max_files)
        if session.limit_hit:
            raise FileTooLargeError(
                session.original_filename or "upload",
                session.max_bytes,
                get_readable_file_size(session.max_bytes),
            )
        if parse_error is not None:
            raise MalformedUploadError(parse_error)

    async def _apply_events(self, reader: _MultipartReader, session: UploadSession, writer):
        """Apply queued part events to the destination file; returns the open handle."""
        for kind, data in reader.events:
            if kind == _OPEN:
                if not session.doomed:
                    writer = await aiofiles.open(session.saved_path, "wb")
            elif kind == _DATA:
                session.bytes_received += len(data)
                if writer is None:
                    continue
                if session.bytes_received > session.max_bytes:
                    session.mark_limit_hit()
                    logger.bind(
                        event="upload_size_limit",
                        file=session.original_filename,
                        max_bytes=session.max_bytes,
                    ).error(f"{session.original_filename} exceeds {get_readable_file_size(session.max_bytes)}")
                    await writer.close()
                    writer = None
                    continue
                await writer.write(data)
                session.bytes_written += len(data)
            elif kind == _CLOSE and writer is not None:
                await writer.close()
                writer = None
        reader.events.clear()

        if session.too_many_files and writer is not None:
            await writer.close()
            writer = None
        return writer

    async def _verify(self, session: UploadSession) -> UploadResult:
        """Check the persisted file once the body has been fully read."""
        if session.file_parts == 0:
            raise NoFileUploadedError()

        filename = session.original_filename or ""
        try:
            stats = await aiofiles.os.stat(session.saved_path)
        except FileNotFoundError:
            raise EmptyUploadError(filename)

        logger.bind(event="file_verification", size=stats.st_size, path=str(session.saved_path)).debug(
            "Verified uploaded file"
        )
        if stats.st_size == 0:
            raise EmptyUploadError(filename)

        return UploadResult(
            original_filename=filename,
            saved_path=session.saved_path,
            byte_count=stats.st_size,
            mime_type=session.mime_type,
        )

    @staticmethod
    def _get_boundary(content_type: str | None) -> bytes:
        """Extract the multipart boundary from a Content-Type header."""
        if not content_type:
            raise MalformedUploadError("missing Content-Type header")

        mime, params = parse_options_header(content_type)
        if mime != b"multipart/form-data":
            raise MalformedUploadError(f"expected multipart/form-data, got {mime.decode('latin-1')}")

        boundary = params.get(b"boundary")
        if not boundary:
            raise MalformedUploadError("missing multipart boundary")
        return boundary

    @staticmethod
    def _reason(exc: Exception) -> str:
        if isinstance(exc, MalformedUploadError):
            return exc.details["reason"]
        return str(exc) or exc.__class__.__name__
