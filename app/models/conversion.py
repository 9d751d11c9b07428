"""
Conversion models for the Media Transcode Service.

This module defines the conversion job record owned by the orchestrator,
its state machine values, progress events and the final outcome.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class ConversionState(str, Enum):
    """Conversion job states."""

    PENDING = "pending"
    RUNNING_PRIMARY = "running-primary"
    RUNNING_FALLBACK = "running-fallback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {ConversionState.SUCCEEDED, ConversionState.FAILED, ConversionState.TIMED_OUT}
)


class ConversionMethod(str, Enum):
    """Execution path driving the engine."""

    NONE = "none"
    PRIMARY = "primary"
    FALLBACK = "fallback"


class ProgressEvent(BaseModel):
    """Progress notification emitted by the engine binding."""

    frames: int | None = None
    fps: float | None = None
    percent: float | None = Field(None, ge=0.0, le=100.0)
    timemark: str | None = None
    out_time_seconds: float | None = None
    speed: str | None = None


class ConversionJob(BaseModel):
    """
    One conversion attempt for one successful upload.

    Only ``ConversionOrchestrator`` changes ``state`` and ``method``.
    """

    job_id: str = Field(..., description="Unique job identifier")
    input_path: Path = Field(..., description="Uploaded input file")
    output_path: Path = Field(..., description="Output file of the current attempt")
    extension: str = Field(..., description="Target extension")
    output_options: list[str] = Field(default_factory=list, description="Ordered engine options")
    timeout_ms: int = Field(..., gt=0, description="Wall-clock budget in milliseconds")

    state: ConversionState = Field(default=ConversionState.PENDING)
    method: ConversionMethod = Field(default=ConversionMethod.NONE)
    timeout_armed: bool = Field(default=False)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None
    error_message: str | None = None
    last_progress: ProgressEvent | None = None


class ConversionOutcome(BaseModel):
    """Successful result of a conversion job."""

    job_id: str
    state: ConversionState
    method: ConversionMethod
    output_path: Path
    output_size: int = Field(..., gt=0)
    extension: str
    duration_seconds: float = Field(..., ge=0.0)
