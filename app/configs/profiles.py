"""
FFmpeg parameter profiles.

Each profile is an ordered list of FFmpeg output options for one target
format. Options are kept as the option strings an operator would type
(``"-codec:v libx264"``); the engine layer splits them into tokens.
"""

from pydantic import BaseModel, Field, field_validator

AUDIO_FORMATS = ("mp3", "m4a", "wav")
VIDEO_FORMATS = ("mp4", "webm")
IMAGE_FORMATS = ("jpg",)
COMPRESSION_CODECS = ("hevc", "av1")


class ParameterProfile(BaseModel):
    """Target format and FFmpeg output options for one conversion endpoint."""

    name: str = Field(..., description="Profile name")
    extension: str = Field(..., description="Output file extension without the dot")
    output_options: list[str] = Field(default_factory=list, description="Ordered FFmpeg output options")
    description: str | None = Field(None, description="Human readable description")

    model_config = {"frozen": True}

    @field_validator("extension")
    @classmethod
    def validate_extension(cls, v: str) -> str:
        """Strip a leading dot and reject path characters."""
        v = v.lstrip(".").lower()
        if not v or "/" in v or "\\" in v:
            raise ValueError(f"Invalid extension: {v!r}")
        return v


PROFILES: dict[str, ParameterProfile] = {
    profile.name: profile
    for profile in [
        ParameterProfile(
            name="jpg",
            extension="jpg",
            output_options=["-pix_fmt yuv422p"],
            description="Convert image to JPEG",
        ),
        ParameterProfile(
            name="m4a",
            extension="m4a",
            output_options=["-codec:a libfdk_aac"],
            description="Convert audio to AAC in an M4A container",
        ),
        ParameterProfile(
            name="mp3",
            extension="mp3",
            output_options=["-codec:a libmp3lame"],
            description="Convert audio to MP3",
        ),
        ParameterProfile(
            name="wav",
            extension="wav",
            output_options=["-codec:a pcm_s16le"],
            description="Convert audio to 16-bit PCM WAV",
        ),
        ParameterProfile(
            name="mp4",
            extension="mp4",
            output_options=[
                "-codec:v libx264",
                "-profile:v high",
                "-r 15",
                "-crf 23",
                "-preset ultrafast",
                "-b:v 500k",
                "-maxrate 500k",
                "-bufsize 1000k",
                "-vf scale=-2:640",
                "-threads 8",
                "-codec:a libfdk_aac",
                "-b:a 128k",
            ],
            description="Convert video to H.264/AAC MP4",
        ),
        ParameterProfile(
            name="webm",
            extension="webm",
            output_options=[
                "-codec:v libvpx-vp9",
                "-crf 30",
                "-b:v 0",
                "-codec:a libopus",
                "-b:a 128k",
            ],
            description="Convert video to VP9/Opus WebM",
        ),
        ParameterProfile(
            name="compress-mp4",
            extension="mp4",
            output_options=[
                "-codec:v libx264",
                "-profile:v high",
                "-preset slow",
                "-crf 28",
                "-r 24",
                "-vf scale=-2:480",
                "-movflags +faststart",
                "-codec:a aac",
                "-b:a 96k",
                "-ac 2",
                "-threads 0",
            ],
            description="Compress video to SD H.264 MP4",
        ),
        ParameterProfile(
            name="compress-webm",
            extension="webm",
            output_options=[
                "-codec:v libvpx-vp9",
                "-b:v 500k",
                "-maxrate 750k",
                "-crf 33",
                "-r 24",
                "-vf scale=-2:480",
                "-deadline good",
                "-cpu-used 2",
                "-codec:a libopus",
                "-b:a 96k",
                "-ac 2",
            ],
            description="Compress video to SD VP9 WebM",
        ),
        ParameterProfile(
            name="hevc",
            extension="mp4",
            output_options=[
                "-codec:v libx265",
                "-preset medium",
                "-crf 28",
                "-tag:v hvc1",
                "-movflags +faststart",
                "-codec:a aac",
                "-b:a 128k",
            ],
            description="Compress video to HEVC (H.265) MP4",
        ),
        ParameterProfile(
            name="av1",
            extension="mp4",
            output_options=[
                "-codec:v libsvtav1",
                "-preset 8",
                "-crf 35",
                "-movflags +faststart",
                "-codec:a aac",
                "-b:a 128k",
            ],
            description="Compress video to AV1 MP4",
        ),
    ]
}


def get_profile(name: str) -> ParameterProfile:
    """
    Look up a profile by name.

    Raises:
        KeyError: If no profile has that name
    """
    return PROFILES[name]


def endpoint_path(name: str) -> str:
    """
    Map a profile name to its conversion route.

    Args:
        name: Profile name

    Returns:
        Route path for the profile
    """
    if name.startswith("compress-"):
        return f"/video/compress/to/{name.split('-', 1)[1]}"
    if name in COMPRESSION_CODECS:
        return f"/video/compress/to/{name}"
    if name in AUDIO_FORMATS:
        return f"/convert/audio/to/{name}"
    if name in VIDEO_FORMATS:
        return f"/convert/video/to/{name}"
    if name in IMAGE_FORMATS:
        return f"/convert/image/to/{name}"
    return f"/{name}"


def list_endpoints(profiles: dict[str, ParameterProfile] | None = None) -> list[dict]:
    """
    Describe every conversion endpoint plus the informational ones.

    Args:
        profiles: Profiles to describe (defaults to all known profiles)

    Returns:
        List of ``{"path", "methods", "description"}`` dictionaries
    """
    profiles = PROFILES if profiles is None else profiles

    endpoints = [
        {
            "path": endpoint_path(name),
            "methods": ["POST"],
            "description": profile.description or f"Convert to {name} format",
        }
        for name, profile in profiles.items()
    ]
    endpoints.append({"path": "/docs", "methods": ["GET"], "description": "API Documentation"})
    endpoints.append({"path": "/endpoints", "methods": ["GET"], "description": "List available endpoints"})
    return endpoints
