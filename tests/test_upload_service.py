"""
Test the streaming upload service.
"""

import pytest
from starlette.requests import ClientDisconnect

from app.exceptions import (
    EmptyUploadError,
    FileTooLargeError,
    MalformedUploadError,
    NoFileUploadedError,
    TooManyFilesError,
)
from app.services.upload import UploadService

BOUNDARY = "----transcodeboundary7MA4YWxk"
CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


def file_part(content: bytes, filename: str = "song.wav", field: str = "file", mime: str = "audio/wav") -> bytes:
    return (
        f"--{BOUNDARY}\r\n"
        f'Content-Disposition: form-data; name="{field}"; filename="{filename}"\r\n'
        f"Content-Type: {mime}\r\n\r\n"
    ).encode() + content + b"\r\n"


def field_part(name: str, value: str) -> bytes:
    return (
        f"--{BOUNDARY}\r\n"
        f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
        f"{value}\r\n"
    ).encode()


def closing() -> bytes:
    return f"--{BOUNDARY}--\r\n".encode()


class ChunkedBody:
    """Async body stream that records how much of it was consumed."""

    def __init__(self, body: bytes, chunk_size: int = 7, error: Exception | None = None):
        self.body = body
        self.chunk_size = chunk_size
        self.error = error
        self.consumed = 0

    async def __aiter__(self):
        for offset in range(0, len(self.body), self.chunk_size):
            chunk = self.body[offset:offset + self.chunk_size]
            self.consumed += len(chunk)
            yield chunk
        if self.error is not None:
            raise self.error

    @property
    def drained(self) -> bool:
        return self.consumed == len(self.body)


@pytest.fixture
def service():
    return UploadService(max_files=1)


@pytest.fixture
def dest(tmp_path):
    return tmp_path / "0badf00d"


class TestUploadService:
    """Test upload ingestion."""

    @pytest.mark.asyncio
    async def test_single_file(self, service, dest):
        """Test that one file is persisted byte for byte."""
        payload = bytes(range(256)) * 40
        body = ChunkedBody(file_part(payload) + closing())

        result = await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024 * 1024)

        assert result.original_filename == "song.wav"
        assert result.saved_path == dest
        assert result.byte_count == len(payload)
        assert result.mime_type == "audio/wav"
        assert dest.read_bytes() == payload
        assert body.drained

    @pytest.mark.asyncio
    async def test_payload_containing_crlf(self, service, dest):
        """Test that line breaks inside the file survive parsing."""
        payload = b"line one\r\nline two\r\n--not-a-boundary\r\n"
        body = ChunkedBody(file_part(payload) + closing(), chunk_size=3)

        result = await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert dest.read_bytes() == payload
        assert result.byte_count == len(payload)

    @pytest.mark.asyncio
    async def test_form_fields_are_ignored(self, service, dest):
        """Test that non-file fields do not count as files."""
        body = ChunkedBody(field_part("quality", "high") + file_part(b"audio") + field_part("x", "y") + closing())

        result = await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert result.byte_count == 5
        assert dest.read_bytes() == b"audio"

    @pytest.mark.asyncio
    async def test_client_path_is_stripped(self, service, dest):
        """Test that a client-side directory is removed from the name."""
        body = ChunkedBody(file_part(b"audio", filename="C:\\Users\\me\\track.flac") + closing())

        result = await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert result.original_filename == "track.flac"

    @pytest.mark.asyncio
    async def test_exact_limit_is_accepted(self, service, dest):
        """Test a file of exactly max_bytes."""
        body = ChunkedBody(file_part(b"x" * 100) + closing())

        result = await service.ingest(body, CONTENT_TYPE, dest, max_bytes=100)

        assert result.byte_count == 100

    @pytest.mark.asyncio
    async def test_file_too_large(self, service, dest):
        """Test that an oversized file is rejected after draining the body."""
        body = ChunkedBody(file_part(b"x" * 101) + closing())

        with pytest.raises(FileTooLargeError) as exc_info:
            await service.ingest(body, CONTENT_TYPE, dest, max_bytes=100)

        assert exc_info.value.status_code == 413
        assert exc_info.value.error_type == "FILE_TOO_LARGE"
        assert "song.wav" in exc_info.value.message
        assert not dest.exists()
        assert body.drained

    @pytest.mark.asyncio
    async def test_too_many_files(self, service, dest):
        """Test that a second file part rejects the upload."""
        body = ChunkedBody(file_part(b"first") + file_part(b"second", filename="b.wav") + closing())

        with pytest.raises(TooManyFilesError) as exc_info:
            await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Too many files uploaded"
        assert not dest.exists()
        assert body.drained

    @pytest.mark.asyncio
    async def test_too_many_files_wins_over_size(self, service, dest):
        """Test the order in which rejections are reported."""
        body = ChunkedBody(file_part(b"x" * 50) + file_part(b"y", filename="b.wav") + closing())

        with pytest.raises(TooManyFilesError):
            await service.ingest(body, CONTENT_TYPE, dest, max_bytes=10)

        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_multiple_files_allowed(self, dest):
        """Test that only the first file is kept when more files are allowed."""
        service = UploadService(max_files=2)
        body = ChunkedBody(file_part(b"first") + file_part(b"second", filename="b.wav") + closing())

        result = await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert result.original_filename == "song.wav"
        assert result.byte_count == len(b"first")
        assert dest.read_bytes() == b"first"

    @pytest.mark.asyncio
    async def test_empty_file(self, service, dest):
        """Test that a zero-byte file is rejected."""
        body = ChunkedBody(file_part(b"") + closing())

        with pytest.raises(EmptyUploadError) as exc_info:
            await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert exc_info.value.message == "Uploaded file is empty"
        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_no_file_part(self, service, dest):
        """Test a body with form fields only."""
        body = ChunkedBody(field_part("name", "value") + closing())

        with pytest.raises(NoFileUploadedError):
            await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content_type",
        [None, "application/json", "multipart/form-data"],
    )
    async def test_bad_content_type(self, service, dest, content_type):
        """Test that non-multipart requests are rejected and drained."""
        body = ChunkedBody(file_part(b"audio") + closing())

        with pytest.raises(MalformedUploadError):
            await service.ingest(body, content_type, dest, max_bytes=1024)

        assert body.drained
        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_truncated_body(self, service, dest):
        """Test a body that ends before the closing boundary."""
        body = ChunkedBody(file_part(b"audio data"))

        with pytest.raises(MalformedUploadError) as exc_info:
            await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert exc_info.value.error_type == "MALFORMED_UPLOAD"
        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_part_without_name(self, service, dest):
        """Test a part whose Content-Disposition has no name."""
        raw = (
            f"--{BOUNDARY}\r\n"
            'Content-Disposition: form-data; filename="a.wav"\r\n\r\n'
            "audio\r\n"
        ).encode() + closing()

        with pytest.raises(MalformedUploadError):
            await service.ingest(ChunkedBody(raw), CONTENT_TYPE, dest, max_bytes=1024)

    @pytest.mark.asyncio
    async def test_client_disconnect(self, service, dest):
        """Test a client that goes away mid-upload."""
        body = ChunkedBody(file_part(b"x" * 64), error=ClientDisconnect())

        with pytest.raises(MalformedUploadError) as exc_info:
            await service.ingest(body, CONTENT_TYPE, dest, max_bytes=1024)

        assert "disconnected" in exc_info.value.details["reason"]
        assert not dest.exists()
