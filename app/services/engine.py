"""
FFmpeg engine integration.

This module is the boundary to the external transcoding engine. It offers
two ways to drive the same FFmpeg binary:

* ``FFmpegBinding`` - the structured binding used as the primary path. It
  builds the command from the profile, runs FFmpeg at reduced priority and
  reports structured progress and errors.
* ``RawProcess`` - a plain process invocation with flattened arguments,
  used as the fallback path. It only reports the exit code and output.
"""

import asyncio
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

from loguru import logger

from app.exceptions import EngineFailedError
from app.models.conversion import ProgressEvent
from app.utils.shell import check_command_available

# Lines of stderr kept for error reports
STDERR_TAIL_LINES = 50
# Characters of output shown in a single log line
LOG_SNIPPET_LENGTH = 200
# Bytes of fallback process output kept per stream
OUTPUT_TAIL_BYTES = 8192


@dataclass(frozen=True)
class EngineConfig:
    """Engine binary locations, captured once at startup."""

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    niceness: int = 15

    @classmethod
    def from_settings(cls, settings) -> "EngineConfig":
        return cls(
            ffmpeg_path=settings.FFMPEG_PATH,
            ffprobe_path=settings.FFPROBE_PATH,
            niceness=settings.FFMPEG_NICENESS,
        )


class ProcessResult(NamedTuple):
    """Result of a finished engine process."""
    returncode: int
    stdout: str
    stderr: str


def split_option(option: str) -> list[str]:
    """Split one profile option such as ``"-codec:a libmp3lame"`` into tokens."""
    return [part.strip() for part in option.split(" ") if part.strip()]


def flatten_arguments(output_options: list[str]) -> list[str]:
    """
    Flatten profile options into a raw argument list.

    Profile order is preserved and empty tokens are dropped.

    Args:
        output_options: Ordered profile options

    Returns:
        Ordered list of argument tokens
    """
    args: list[str] = []
    for option in output_options:
        args.extend(split_option(option))
    return args


def build_fallback_args(input_path: Path, output_options: list[str], output_path: Path) -> list[str]:
    """Arguments for the raw process: input, flattened profile, output."""
    return ["-i", str(input_path), *flatten_arguments(output_options), str(output_path)]


def _format_timemark(seconds: float) -> str:
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{int(hours):02d}:{int(minutes):02d}:{secs:05.2f}"


def parse_progress_block(fields: dict[str, str], duration: float | None) -> ProgressEvent:
    """
    Build a progress event from one ``-progress`` key/value block.

    Args:
        fields: Keys and values reported by FFmpeg since the last block
        duration: Input duration in seconds, if known

    Returns:
        ProgressEvent with whatever could be parsed
    """
    event = ProgressEvent()

    try:
        event.frames = int(fields["frame"])
    except (KeyError, ValueError):
        pass

    try:
        event.fps = float(fields["fps"])
    except (KeyError, ValueError):
        pass

    # out_time_us and out_time_ms are both microseconds
    raw_time = fields.get("out_time_us") or fields.get("out_time_ms")
    if raw_time is not None:
        try:
            seconds = max(0.0, int(raw_time) / 1_000_000)
        except ValueError:
            seconds = None
        if seconds is not None:
            event.out_time_seconds = seconds
            event.timemark = _format_timemark(seconds)
            if duration:
                event.percent = min(100.0, seconds / duration * 100)

    speed = fields.get("speed")
    if speed and speed != "N/A":
        event.speed = speed

    return event


def _nice_preexec(niceness: int) -> Callable[[], None] | None:
    if os.name != "posix" or niceness <= 0:
        return None

    def _apply() -> None:
        os.nice(niceness)

    return _apply


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


class BoundInvocation:
    """A running FFmpeg command started by ``FFmpegBinding``."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: list[str],
        duration: float | None = None,
    ):
        self.process = process
        self.command = command
        self.duration = duration
        self._stderr_tail: list[str] = []

    async def run(self, on_progress: Callable[[ProgressEvent], None] | None = None) -> None:
        """
        Wait for FFmpeg to finish, forwarding progress events.

        Raises:
            EngineFailedError: If FFmpeg exits with a non-zero code
        """
        await asyncio.gather(
            self._read_progress(on_progress),
            self._read_stderr(),
        )
        returncode = await self.process.wait()

        stderr = "".join(self._stderr_tail)
        if returncode != 0:
            raise EngineFailedError(
                f"FFmpeg exited with code {returncode}",
                exit_code=returncode,
                stderr=stderr[-2000:],
            )
        logger.bind(event="ffmpeg_complete", pid=self.process.pid).debug(
            f"FFmpeg finished: {stderr[-LOG_SNIPPET_LENGTH:]}"
        )

    def kill(self) -> None:
        """Stop the process if it is still running."""
        _kill(self.process)

    async def _read_progress(self, on_progress: Callable[[ProgressEvent], None] | None) -> None:
        fields: dict[str, str] = {}
        while True:
            line = await self.process.stdout.readline()
            if not line:
                break

            key, sep, value = line.decode("utf-8", errors="ignore").strip().partition("=")
            if not sep:
                continue
            fields[key] = value.strip()
            if key != "progress":
                continue

            event = parse_progress_block(fields, self.duration)
            fields = {}
            logger.bind(
                event="ffmpeg_progress",
                frames=event.frames,
                fps=event.fps,
                percent=event.percent,
                timemark=event.timemark,
            ).debug("FFmpeg progress")

            if on_progress is not None:
                try:
                    on_progress(event)
                except Exception as exc:
                    logger.warning(f"Progress callback error: {exc}")

    async def _read_stderr(self) -> None:
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="ignore")
            self._stderr_tail.append(text)
            if len(self._stderr_tail) > STDERR_TAIL_LINES:
                self._stderr_tail.pop(0)
            logger.bind(event="ffmpeg_stderr").debug(text.rstrip()[:LOG_SNIPPET_LENGTH])


class FFmpegBinding:
    """
    Structured FFmpeg binding used as the primary conversion path.

    Starting an invocation can fail before FFmpeg runs (binary missing,
    process creation refused); callers treat that like a failed run.
    """

    def __init__(self, config: EngineConfig):
        """
        Initialize the binding.

        Args:
            config: Engine binary locations and priority
        """
        self.config = config

    def build_command(self, input_path: Path, output_options: list[str], output_path: Path) -> list[str]:
        """
        Build the FFmpeg command for a conversion.

        Args:
            input_path: Input media file
            output_options: Ordered profile options
            output_path: Output file

        Returns:
            Command list for subprocess execution
        """
        cmd = [self.config.ffmpeg_path, "-hide_banner", "-y", "-i", str(input_path)]
        for option in output_options:
            cmd.extend(split_option(option))
        cmd.extend(["-progress", "pipe:1", "-nostats", str(output_path)])
        return cmd

    async def start(
        self,
        input_path: Path,
        output_options: list[str],
        output_path: Path,
    ) -> BoundInvocation:
        """
        Start FFmpeg for one conversion.

        Raises:
            EngineFailedError: If FFmpeg is not available
            OSError: If the process cannot be created
        """
        if not check_command_available(self.config.ffmpeg_path):
            raise EngineFailedError(f"FFmpeg is not installed or not accessible: {self.config.ffmpeg_path}")

        cmd = self.build_command(input_path, output_options, output_path)
        logger.bind(event="ffmpeg_options", options=output_options).debug("FFmpeg options")

        duration = await self.probe_duration(input_path)

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            preexec_fn=_nice_preexec(self.config.niceness),
        )
        logger.bind(event="ffmpeg_start", pid=process.pid, command=" ".join(cmd)).info("FFmpeg started")
        return BoundInvocation(process, cmd, duration)

    async def probe_duration(self, input_path: Path) -> float | None:
        """Input duration in seconds from ffprobe, or None when unknown."""
        if not check_command_available(self.config.ffprobe_path):
            return None

        try:
            process = await asyncio.create_subprocess_exec(
                self.config.ffprobe_path,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(input_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=30)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug(f"ffprobe failed for {input_path}: {exc}")
            return None

        try:
            duration = float(stdout.decode().strip())
        except ValueError:
            return None
        return duration if duration > 0 else None


async def _read_tail(stream: asyncio.StreamReader | None, chunk_size: int = 4096) -> bytes:
    """Drain ``stream`` and return at most its last ``OUTPUT_TAIL_BYTES`` bytes."""
    tail = bytearray()
    if stream is None:
        return bytes(tail)
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        tail.extend(chunk)
        del tail[:-OUTPUT_TAIL_BYTES]
    return bytes(tail)


class RawProcess:
    """FFmpeg run as a plain external process with flattened arguments."""

    def __init__(self, process: asyncio.subprocess.Process, command: list[str]):
        self.process = process
        self.command = command

    @classmethod
    async def spawn(cls, binary: str, args: list[str]) -> "RawProcess":
        """
        Spawn ``binary`` with ``args``.

        Raises:
            OSError: If the process cannot be spawned
        """
        command = [binary, *args]
        logger.bind(event="ffmpeg_spawn", command=" ".join(command)).info("Spawning FFmpeg process")
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return cls(process, command)

    async def wait(self) -> ProcessResult:
        """Wait for the process to exit, keeping only the end of its output."""
        stdout, stderr = await asyncio.gather(
            _read_tail(self.process.stdout),
            _read_tail(self.process.stderr),
        )
        await self.process.wait()
        stdout_text = stdout.decode("utf-8", errors="ignore")
        stderr_text = stderr.decode("utf-8", errors="ignore")

        logger.bind(event="ffmpeg_process_close", code=self.process.returncode).info(
            f"FFmpeg process exited with code {self.process.returncode}"
        )
        if stderr_text:
            logger.debug(f"FFmpeg stderr: {stderr_text[-LOG_SNIPPET_LENGTH:]}")

        return ProcessResult(
            returncode=self.process.returncode,
            stdout=stdout_text,
            stderr=stderr_text,
        )

    def kill(self) -> None:
        """Stop the process if it is still running."""
        _kill(self.process)


async def spawn_process(binary: str, args: list[str]) -> RawProcess:
    """Spawn the engine as an independent process (fallback path)."""
    return await RawProcess.spawn(binary, args)
