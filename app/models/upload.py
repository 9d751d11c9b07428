"""
Upload models for the Media Transcode Service.

This module defines the per-request upload session record and the result
reported once an upload has been persisted.
"""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field


class UploadSession(BaseModel):
    """
    Mutable state of one streaming upload.

    Only the ingestion loop mutates a session. ``limit_hit`` and
    ``too_many_files`` are set at most once; after either is set the session
    is doomed but the request body is still consumed to the end.
    """

    saved_path: Path = Field(..., description="Destination file for the accepted part")
    max_bytes: int = Field(..., gt=0, description="Maximum accepted file size in bytes")
    max_files: int = Field(default=1, ge=1, description="Maximum number of file parts")

    original_filename: str | None = Field(None, description="File name declared by the client")
    mime_type: str | None = Field(None, description="Content type declared by the client")

    bytes_received: int = Field(default=0, ge=0, description="Bytes of the accepted part seen so far")
    bytes_written: int = Field(default=0, ge=0, description="Bytes of the accepted part written to disk")
    file_parts: int = Field(default=0, ge=0, description="Number of file parts seen")
    limit_hit: bool = Field(default=False, description="Accepted part exceeded max_bytes")
    too_many_files: bool = Field(default=False, description="More than max_files file parts were sent")

    started_at: datetime = Field(default_factory=datetime.utcnow)

    def mark_limit_hit(self) -> bool:
        """Set ``limit_hit`` once. Returns True only on the first call."""
        if self.limit_hit:
            return False
        self.limit_hit = True
        return True

    def mark_too_many_files(self) -> bool:
        """Set ``too_many_files`` once. Returns True only on the first call."""
        if self.too_many_files:
            return False
        self.too_many_files = True
        return True

    @property
    def doomed(self) -> bool:
        """Whether the upload will be rejected once the body is drained."""
        return self.limit_hit or self.too_many_files


class UploadResult(BaseModel):
    """A verified, fully persisted upload."""

    original_filename: str = Field(..., description="File name declared by the client")
    saved_path: Path = Field(..., description="Where the file was saved")
    byte_count: int = Field(..., gt=0, description="Number of bytes persisted")
    mime_type: str | None = Field(None, description="Content type declared by the client")
