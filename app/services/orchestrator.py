"""
Conversion orchestrator service for the Media Transcode Service.

The orchestrator drives one conversion job through the primary FFmpeg
binding, falls back to a raw FFmpeg process when the primary path fails,
and races both against a wall-clock timeout. Exactly one terminal outcome
is reported per job; events from a path that already lost the race are
ignored.

Every state change goes through ``_transition``, a compare-and-set on the
job state. The event loop runs callbacks one at a time and ``_transition``
never awaits, so the check and the update cannot interleave with another
path. Only the caller that wins the transition performs its side effects
(cleanup, reporting).
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import aiofiles
import aiofiles.os
from loguru import logger

from app.exceptions import (
    ConversionError,
    ConversionTimeoutError,
    EngineFailedError,
    InputUnavailableError,
    OutputEmptyError,
    OutputMissingError,
)
from app.models.conversion import (
    ConversionJob,
    ConversionMethod,
    ConversionOutcome,
    ConversionState,
    ProgressEvent,
)
from app.services.engine import (
    EngineConfig,
    FFmpegBinding,
    build_fallback_args,
    spawn_process,
)
from app.utils.fs import allocate_temp_path, delete_file

RUNNING_STATES = frozenset({ConversionState.RUNNING_PRIMARY, ConversionState.RUNNING_FALLBACK})

ProgressCallback = Callable[[ProgressEvent], None]


class ConversionOrchestrator:
    """Runs conversion jobs with a fallback path and a timeout."""

    def __init__(
        self,
        config: EngineConfig,
        binding: FFmpegBinding | None = None,
        spawner: Callable | None = None,
    ):
        """
        Initialize the conversion orchestrator.

        Args:
            config: Engine configuration captured at startup
            binding: Primary path binding (defaults to ``FFmpegBinding(config)``)
            spawner: Coroutine function starting the fallback process
        """
        self.config = config
        self.binding = binding or FFmpegBinding(config)
        self.spawner = spawner or spawn_process

        # Abandoned invocations keep running until killed; hold references
        # so their tasks are not garbage collected mid-flight.
        self._tasks: set[asyncio.Task] = set()

        self._stats = {
            "total_jobs": 0,
            "succeeded_jobs": 0,
            "failed_jobs": 0,
            "timed_out_jobs": 0,
            "fallback_used": 0,
            "total_processing_time": 0.0,
        }

    def get_statistics(self) -> dict:
        """Process-wide counters, for logging and health checks."""
        return dict(self._stats)

    async def convert(
        self,
        input_path: Path,
        output_path: Path,
        output_options: list[str],
        timeout_ms: int,
        extension: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ConversionOutcome:
        """
        Convert ``input_path`` into ``output_path``.

        The input file is deleted once the job reaches a terminal state,
        whatever the outcome. On failure any output produced by the job is
        deleted too.

        Args:
            input_path: Uploaded input file
            output_path: Output file for the primary attempt
            output_options: Ordered FFmpeg output options
            timeout_ms: Wall-clock budget for the whole job
            extension: Target extension (defaults to the output suffix)
            on_progress: Observer for progress events

        Returns:
            ConversionOutcome describing the produced file

        Raises:
            InputUnavailableError: Input missing or unreadable
            OutputMissingError: Engine succeeded but wrote no file
            OutputEmptyError: Engine succeeded but wrote an empty file
            EngineFailedError: Both paths failed
            ConversionTimeoutError: The timeout fired first
        """
        job = ConversionJob(
            job_id=str(uuid4()),
            input_path=Path(input_path),
            output_path=Path(output_path),
            extension=extension or Path(output_path).suffix.lstrip("."),
            output_options=list(output_options),
            timeout_ms=timeout_ms,
        )
        self._stats["total_jobs"] += 1
        started = time.monotonic()

        loop = asyncio.get_running_loop()
        result: asyncio.Future = loop.create_future()
        runner = _JobRunner(self, job, result, on_progress)

        try:
            await runner.verify_input()
        except InputUnavailableError as exc:
            runner.finish(ConversionState.FAILED, {ConversionState.PENDING}, error=exc)
            return await result

        runner.arm_timeout(loop)
        if not self._transition(job, {ConversionState.PENDING}, ConversionState.RUNNING_PRIMARY):
            return await result
        job.method = ConversionMethod.PRIMARY

        logger.bind(
            event="conversion_started",
            job_id=job.job_id,
            input=str(job.input_path),
            output=str(job.output_path),
            extension=job.extension,
            timeout_ms=timeout_ms,
        ).info(f"Starting conversion {job.job_id} to {job.extension}")

        self._spawn_task(runner.run_primary())

        try:
            outcome = await asyncio.shield(result)
        except asyncio.CancelledError:
            runner.abandon()
            raise
        finally:
            self._stats["total_processing_time"] += time.monotonic() - started

        return outcome

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _transition(
        job: ConversionJob,
        expected: Iterable[ConversionState],
        new_state: ConversionState,
    ) -> bool:
        """
        Move ``job`` to ``new_state`` if it is currently in ``expected``.

        Returns:
            True if this call performed the transition
        """
        if job.state not in expected:
            logger.bind(job_id=job.job_id, state=job.state.value, ignored=new_state.value).debug(
                "Ignoring late transition"
            )
            return False
        job.state = new_state
        if new_state.is_terminal:
            job.completed_at = datetime.utcnow()
        return True


class _JobRunner:
    """Per-job closure state: the timer, the active invocation and the result future."""

    def __init__(
        self,
        orchestrator: ConversionOrchestrator,
        job: ConversionJob,
        result: asyncio.Future,
        on_progress: ProgressCallback | None,
    ):
        self.orchestrator = orchestrator
        self.job = job
        self.result = result
        self.on_progress = on_progress
        self.timer: asyncio.TimerHandle | None = None
        self.active = None  # invocation or process currently running
        self.started = time.monotonic()
        self.produced: set[Path] = set()

    # Lifecycle

    async def verify_input(self) -> None:
        """Check that the input exists and its first bytes can be read."""
        path = self.job.input_path
        logger.bind(event="verifying_input_file", path=str(path)).debug("Verifying input file")
        try:
            stats = await aiofiles.os.stat(path)
            async with aiofiles.open(path, "rb") as handle:
                await handle.read(1024)
        except OSError as exc:
            logger.bind(event="file_check", path=str(path), exists=False).error(str(exc))
            raise InputUnavailableError(str(path), exc.strerror or str(exc))

        logger.bind(event="file_check", path=str(path), size=stats.st_size).info("Input file readable")

    def arm_timeout(self, loop: asyncio.AbstractEventLoop) -> None:
        self.timer = loop.call_later(self.job.timeout_ms / 1000, self.on_timeout)
        self.job.timeout_armed = True

    def disarm_timeout(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
        self.job.timeout_armed = False

    def on_timeout(self) -> None:
        job = self.job
        if not self.finish(
            ConversionState.TIMED_OUT,
            RUNNING_STATES | {ConversionState.PENDING},
            error=ConversionTimeoutError(job.timeout_ms),
        ):
            return
        self.kill_active()

    def abandon(self) -> None:
        """The caller went away: stop the engine and clean up."""
        if self.finish(
            ConversionState.FAILED,
            RUNNING_STATES | {ConversionState.PENDING},
            error=ConversionError("Conversion abandoned by caller", "CANCELLED"),
        ):
            self.kill_active()
        # Nobody awaits the result any more
        if self.result.done():
            self.result.exception()

    def kill_active(self) -> None:
        if self.active is not None:
            self.active.kill()

    def finish(
        self,
        state: ConversionState,
        expected: Iterable[ConversionState],
        error: ConversionError | None = None,
        outcome: ConversionOutcome | None = None,
    ) -> bool:
        """
        Perform the terminal transition and its side effects.

        Returns:
            False if the job had already reached a terminal state
        """
        job = self.job
        if not ConversionOrchestrator._transition(job, expected, state):
            return False

        self.disarm_timeout()
        stats = self.orchestrator._stats
        delete_file(job.input_path)

        if state is ConversionState.SUCCEEDED:
            stats["succeeded_jobs"] += 1
            logger.bind(
                event="conversion_succeeded",
                job_id=job.job_id,
                method=job.method.value,
                output=str(outcome.output_path),
                size=outcome.output_size,
            ).info(f"Conversion {job.job_id} succeeded via {job.method.value} path")
            if not self.result.done():
                self.result.set_result(outcome)
            return True

        for path in self.produced | {job.output_path}:
            delete_file(path)

        job.error_message = error.message if error else None
        if state is ConversionState.TIMED_OUT:
            stats["timed_out_jobs"] += 1
            logger.bind(event="conversion_timed_out", job_id=job.job_id, method=job.method.value).error(
                error.message
            )
        else:
            stats["failed_jobs"] += 1
            logger.bind(
                event="conversion_failed",
                job_id=job.job_id,
                method=job.method.value,
                error_type=error.error_type if error else None,
            ).error(job.error_message)

        if not self.result.done():
            self.result.set_exception(error)
        return True

    # Primary path

    async def run_primary(self) -> None:
        job = self.job
        try:
            invocation = await self.orchestrator.binding.start(
                job.input_path, job.output_options, job.output_path
            )
        except Exception as exc:
            logger.bind(event="ffmpeg_init_error", job_id=job.job_id).error(f"Primary path failed to start: {exc}")
            await self.switch_to_fallback(exc)
            return

        self.produced.add(job.output_path)
        if job.method is not ConversionMethod.PRIMARY or job.state is not ConversionState.RUNNING_PRIMARY:
            invocation.kill()
            delete_file(job.output_path)
            return
        self.active = invocation

        try:
            await invocation.run(on_progress=self.forward_progress)
        except Exception as exc:
            logger.bind(event="ffmpeg_error", job_id=job.job_id).error(f"Primary path failed: {exc}")
            await self.switch_to_fallback(exc)
            return

        if job.method is not ConversionMethod.PRIMARY or job.state is not ConversionState.RUNNING_PRIMARY:
            return
        await self.complete(job.output_path, {ConversionState.RUNNING_PRIMARY})

    def forward_progress(self, event: ProgressEvent) -> None:
        job = self.job
        if job.state not in RUNNING_STATES:
            return
        job.last_progress = event
        logger.bind(
            event="conversion_progress",
            job_id=job.job_id,
            percent=event.percent,
            frames=event.frames,
            fps=event.fps,
        ).info("Conversion progress")
        if self.on_progress is not None:
            try:
                self.on_progress(event)
            except Exception as exc:
                logger.warning(f"Progress observer error: {exc}")

    # Fallback path

    async def switch_to_fallback(self, reason: Exception) -> None:
        job = self.job
        if not ConversionOrchestrator._transition(
            job, {ConversionState.RUNNING_PRIMARY}, ConversionState.RUNNING_FALLBACK
        ):
            return
        job.method = ConversionMethod.FALLBACK
        self.active = None
        self.orchestrator._stats["fallback_used"] += 1

        # A failed primary run may have left partial output behind
        delete_file(job.output_path)
        job.output_path = Path(f"{allocate_temp_path(job.output_path.parent)}.{job.extension}")

        logger.bind(
            event="conversion_fallback",
            job_id=job.job_id,
            reason=str(reason)[:200],
            output=str(job.output_path),
        ).warning("Trying direct FFmpeg process")

        args = build_fallback_args(job.input_path, job.output_options, job.output_path)
        try:
            process = await self.orchestrator.spawner(self.orchestrator.config.ffmpeg_path, args)
        except Exception as exc:
            logger.bind(event="ffmpeg_spawn_error", job_id=job.job_id).error(str(exc))
            self.finish(
                ConversionState.FAILED,
                {ConversionState.RUNNING_FALLBACK},
                error=EngineFailedError(f"Failed to start FFmpeg: {exc}"),
            )
            return

        self.produced.add(job.output_path)
        if job.state is not ConversionState.RUNNING_FALLBACK:
            process.kill()
            delete_file(job.output_path)
            return
        self.active = process

        try:
            result = await process.wait()
        except Exception as exc:
            self.finish(
                ConversionState.FAILED,
                {ConversionState.RUNNING_FALLBACK},
                error=EngineFailedError(f"FFmpeg process error: {exc}"),
            )
            return

        if job.state is not ConversionState.RUNNING_FALLBACK:
            return
        if result.returncode != 0:
            self.finish(
                ConversionState.FAILED,
                {ConversionState.RUNNING_FALLBACK},
                error=EngineFailedError(
                    f"FFmpeg exited with code {result.returncode}",
                    exit_code=result.returncode,
                    stderr=result.stderr[-2000:],
                ),
            )
            return
        await self.complete(job.output_path, {ConversionState.RUNNING_FALLBACK})

    # Output verification

    async def complete(self, output_path: Path, expected: set[ConversionState]) -> None:
        """Verify the output of a successful run and report the outcome."""
        job = self.job
        try:
            stats = await aiofiles.os.stat(output_path)
        except FileNotFoundError:
            logger.bind(event="output_file_check", path=str(output_path), exists=False).error(
                "Output file was not created"
            )
            self.finish(ConversionState.FAILED, expected, error=OutputMissingError(str(output_path)))
            return

        logger.bind(event="output_file_check", path=str(output_path), size=stats.st_size).info(
            "Output file checked"
        )
        if stats.st_size == 0:
            self.finish(ConversionState.FAILED, expected, error=OutputEmptyError(str(output_path)))
            return

        outcome = ConversionOutcome(
            job_id=job.job_id,
            state=ConversionState.SUCCEEDED,
            method=job.method,
            output_path=output_path,
            output_size=stats.st_size,
            extension=job.extension,
            duration_seconds=time.monotonic() - self.started,
        )
        self.finish(ConversionState.SUCCEEDED, expected, outcome=outcome)


# Global orchestrator instance
_orchestrator: ConversionOrchestrator | None = None


def get_orchestrator() -> ConversionOrchestrator:
    """
    Get the global orchestrator instance.

    Returns:
        ConversionOrchestrator: Global orchestrator instance
    """
    global _orchestrator
    if _orchestrator is None:
        from app.config import settings

        _orchestrator = ConversionOrchestrator(EngineConfig.from_settings(settings))
    return _orchestrator
