"""
Response models for the Media Transcode Service API.

This module defines Pydantic models for API response formatting.
"""

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """JSON body returned for every failed request."""

    error: str = Field(..., description="Short error title")
    message: str = Field(..., description="Human readable error message")
    error_type: str | None = Field(None, description="Machine readable error code")
    details: dict[str, Any] = Field(default_factory=dict)
    request_id: str | None = Field(None, description="Request identifier from the logs")


class EndpointInfo(BaseModel):
    """One entry of the endpoint listing."""

    path: str
    methods: list[str]
    description: str


class DeliveryResult(BaseModel):
    """Outcome of streaming a converted file to the client."""

    success: bool
    delivered_name: str
    bytes_sent: int = Field(default=0, ge=0)
    error: str | None = None
