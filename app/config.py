"""
Configuration settings for the Media Transcode Service.

This module handles environment variables, application settings,
and configuration validation using Pydantic Settings.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be overridden using environment variables
    with the same name (case-insensitive).
    """

    # Application settings
    APP_NAME: str = "Media Transcode Service"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Server settings
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    KEEP_ALIVE_TIMEOUT: int = 3600  # seconds

    # CORS settings
    ALLOWED_ORIGINS: list[str] = [
        "http://localhost:8080",
        "http://localhost:3000",
        "http://127.0.0.1:8080",
    ]

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # File upload settings
    MAX_FILE_SIZE: int = 500 * 1024 * 1024  # 500MB
    UPLOAD_DIR: str = "uploads"
    UPLOAD_CHUNK_SIZE: int = 64 * 1024

    # External tools settings
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_NICENESS: int = 15

    # Conversion settings
    CONVERSION_TIMEOUT_MS: int = 600_000  # 10 minutes

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment setting."""
        allowed_envs = ["development", "staging", "production"]
        if v not in allowed_envs:
            raise ValueError(f"ENVIRONMENT must be one of {allowed_envs}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level setting."""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}")
        return v.upper()

    @field_validator("MAX_FILE_SIZE")
    @classmethod
    def validate_max_file_size(cls, v: int) -> int:
        """Validate maximum file size."""
        if v <= 0:
            raise ValueError("MAX_FILE_SIZE must be positive")
        if v > 10 * 1024 * 1024 * 1024:  # 10GB
            raise ValueError("MAX_FILE_SIZE cannot exceed 10GB")
        return v

    @field_validator("CONVERSION_TIMEOUT_MS")
    @classmethod
    def validate_conversion_timeout(cls, v: int) -> int:
        """Validate conversion timeout."""
        if v <= 0:
            raise ValueError("CONVERSION_TIMEOUT_MS must be positive")
        return v

    @field_validator("UPLOAD_CHUNK_SIZE")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Validate download chunk size."""
        if v < 1024:
            raise ValueError("UPLOAD_CHUNK_SIZE must be at least 1024 bytes")
        return v

    @field_validator("FFMPEG_NICENESS")
    @classmethod
    def validate_niceness(cls, v: int) -> int:
        """Validate process niceness increment."""
        if not 0 <= v <= 19:
            raise ValueError("FFMPEG_NICENESS must be between 0 and 19")
        return v

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Create settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get application settings.

    Returns:
        Settings: Application settings instance
    """
    return settings


# Note: Environment-specific configurations should be set via environment variables
# Example .env for production:
#
#   ENVIRONMENT=production
#   LOG_LEVEL=WARNING
#   LOG_JSON=true
#   MAX_FILE_SIZE=1073741824
#   CONVERSION_TIMEOUT_MS=900000
#   FFMPEG_PATH=/usr/local/bin/ffmpeg
#   FFPROBE_PATH=/usr/local/bin/ffprobe
#   ALLOWED_ORIGINS=["https://your-domain.com"]
