"""
Exception classes for the Media Transcode Service.

Every failure the service reports to a client is one of these. Each carries
a machine-readable ``error_type``, an HTTP ``status_code`` and a short
``title`` used as the ``error`` field of the JSON error body.
"""

from typing import Any


class ErrorTypes:
    """Error type constants."""

    TOO_MANY_FILES = "TOO_MANY_FILES"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    EMPTY_UPLOAD = "EMPTY_UPLOAD"
    MALFORMED_UPLOAD = "MALFORMED_UPLOAD"
    NO_FILE = "NO_FILE"
    INPUT_UNAVAILABLE = "INPUT_UNAVAILABLE"
    OUTPUT_MISSING = "OUTPUT_MISSING"
    OUTPUT_EMPTY = "OUTPUT_EMPTY"
    ENGINE_FAILED = "ENGINE_FAILED"
    TIMED_OUT = "TIMED_OUT"
    DELIVERY_FAILED = "DELIVERY_FAILED"


class BaseServiceError(Exception):
    """Base exception for all service errors."""

    status_code: int = 500
    title: str = "Internal server error"

    def __init__(self, message: str, error_type: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.details = details or {}


# Upload errors


class UploadError(BaseServiceError):
    """Raised when the upload phase fails."""

    status_code = 400
    title = "Upload failed"


class TooManyFilesError(UploadError):
    """Raised when the body carries more file parts than allowed."""

    def __init__(self, max_files: int):
        super().__init__(
            "Too many files uploaded",
            ErrorTypes.TOO_MANY_FILES,
            {"max_files": max_files},
        )


class FileTooLargeError(UploadError):
    """Raised when the uploaded file exceeds the byte limit."""

    status_code = 413

    def __init__(self, filename: str, max_bytes: int, readable_limit: str):
        super().__init__(
            f"File {filename} exceeds max size limit of {readable_limit}",
            ErrorTypes.FILE_TOO_LARGE,
            {"filename": filename, "max_bytes": max_bytes},
        )


class EmptyUploadError(UploadError):
    """Raised when the uploaded file is missing on disk or has no content."""

    def __init__(self, filename: str):
        super().__init__(
            "Uploaded file is empty",
            ErrorTypes.EMPTY_UPLOAD,
            {"filename": filename},
        )


class MalformedUploadError(UploadError):
    """Raised when the request body is not a well-formed multipart body."""

    def __init__(self, reason: str):
        super().__init__(
            f"Malformed upload: {reason}",
            ErrorTypes.MALFORMED_UPLOAD,
            {"reason": reason},
        )


class NoFileUploadedError(UploadError):
    """Raised when the body contains no file part at all."""

    def __init__(self):
        super().__init__("No file provided", ErrorTypes.NO_FILE)


# Conversion errors


class ConversionError(BaseServiceError):
    """Raised when the conversion phase fails."""

    title = "Conversion failed"


class InputUnavailableError(ConversionError):
    """Raised when the input file cannot be accessed or read."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(
            f"Could not access the uploaded file: {reason}",
            ErrorTypes.INPUT_UNAVAILABLE,
            {"file_path": file_path},
        )


class OutputMissingError(ConversionError):
    """Raised when the engine reported success but produced no file."""

    def __init__(self, file_path: str):
        super().__init__(
            "Output file was not created",
            ErrorTypes.OUTPUT_MISSING,
            {"file_path": file_path},
        )


class OutputEmptyError(ConversionError):
    """Raised when the engine reported success but the output is empty."""

    def __init__(self, file_path: str):
        super().__init__(
            "Output file is empty",
            ErrorTypes.OUTPUT_EMPTY,
            {"file_path": file_path},
        )


class EngineFailedError(ConversionError):
    """Raised when the transcoding engine fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str | None = None,
    ):
        super().__init__(
            message,
            ErrorTypes.ENGINE_FAILED,
            {"exit_code": exit_code, "stderr": stderr},
        )
        self.exit_code = exit_code


class ConversionTimeoutError(ConversionError):
    """Raised when the conversion exceeds its wall-clock budget."""

    status_code = 504

    def __init__(self, timeout_ms: int):
        super().__init__(
            f"Conversion timeout after {timeout_ms / 1000:g} seconds",
            ErrorTypes.TIMED_OUT,
            {"timeout_ms": timeout_ms},
        )


# Delivery errors


class DeliveryFailedError(BaseServiceError):
    """Raised when streaming the result to the client fails."""

    title = "Delivery failed"

    def __init__(self, file_path: str, reason: str):
        super().__init__(
            f"Failed to deliver converted file: {reason}",
            ErrorTypes.DELIVERY_FAILED,
            {"file_path": file_path},
        )
