"""
Test the conversion orchestrator.

The primary binding and the fallback spawner are replaced by the in-process
fakes from ``tests.fakes``, so these tests exercise the state machine, the
timeout race and cleanup without FFmpeg.
"""

import asyncio
from pathlib import Path

import pytest

from app.exceptions import (
    ConversionTimeoutError,
    EngineFailedError,
    InputUnavailableError,
    OutputEmptyError,
    OutputMissingError,
)
from app.models.conversion import ConversionJob, ConversionMethod, ConversionState
from app.services.orchestrator import ConversionOrchestrator
from tests.fakes import FakeBinding, FakeSpawner

MP3_OPTIONS = ["-codec:a libmp3lame"]
TIMEOUT_MS = 5_000


def make_orchestrator(engine_config, binding=None, spawner=None):
    return ConversionOrchestrator(engine_config, binding=binding or FakeBinding(), spawner=spawner or FakeSpawner())


class TestPrimaryPath:
    """Test conversions that succeed on the primary path."""

    @pytest.mark.asyncio
    async def test_success(self, engine_config, input_file):
        """Test a successful primary conversion."""
        binding = FakeBinding("ok")
        spawner = FakeSpawner()
        orchestrator = make_orchestrator(engine_config, binding, spawner)
        output = Path(f"{input_file}.mp3")

        outcome = await orchestrator.convert(input_file, output, MP3_OPTIONS, TIMEOUT_MS, extension="mp3")

        assert outcome.state == ConversionState.SUCCEEDED
        assert outcome.method == ConversionMethod.PRIMARY
        assert outcome.output_path == output
        assert outcome.output_size == len(b"converted")
        assert outcome.extension == "mp3"
        assert output.read_bytes() == b"converted"
        assert binding.calls == [(input_file, MP3_OPTIONS, output)]
        assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_input_deleted_on_success(self, engine_config, input_file):
        """Test that the input is removed once the job ends."""
        orchestrator = make_orchestrator(engine_config)

        await orchestrator.convert(input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS)

        assert not input_file.exists()

    @pytest.mark.asyncio
    async def test_extension_defaults_to_suffix(self, engine_config, input_file):
        """Test the extension derived from the output path."""
        orchestrator = make_orchestrator(engine_config)

        outcome = await orchestrator.convert(input_file, Path(f"{input_file}.webm"), [], TIMEOUT_MS)

        assert outcome.extension == "webm"

    @pytest.mark.asyncio
    async def test_progress_is_forwarded(self, engine_config, input_file):
        """Test that progress events reach the observer."""
        events = []
        orchestrator = make_orchestrator(engine_config)

        await orchestrator.convert(
            input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS, on_progress=events.append
        )

        assert len(events) == 1
        assert events[0].percent == 50.0

    @pytest.mark.asyncio
    async def test_failing_progress_observer(self, engine_config, input_file):
        """Test that a broken observer does not fail the job."""

        def observer(event):
            raise RuntimeError("observer broke")

        orchestrator = make_orchestrator(engine_config)
        outcome = await orchestrator.convert(
            input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS, on_progress=observer
        )

        assert outcome.state == ConversionState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_missing_output(self, engine_config, input_file):
        """Test an engine that succeeds without writing a file."""
        orchestrator = make_orchestrator(engine_config, FakeBinding("missing"))

        with pytest.raises(OutputMissingError) as exc_info:
            await orchestrator.convert(input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS)

        assert exc_info.value.message == "Output file was not created"
        assert not input_file.exists()

    @pytest.mark.asyncio
    async def test_empty_output(self, engine_config, input_file):
        """Test an engine that writes an empty file."""
        output = Path(f"{input_file}.mp3")
        orchestrator = make_orchestrator(engine_config, FakeBinding("empty"))

        with pytest.raises(OutputEmptyError):
            await orchestrator.convert(input_file, output, MP3_OPTIONS, TIMEOUT_MS)

        assert not output.exists()
        assert not input_file.exists()


class TestFallbackPath:
    """Test switching to the raw process."""

    @pytest.mark.asyncio
    async def test_fallback_after_failure(self, engine_config, input_file, work_dir):
        """Test that a failed primary run is retried as a raw process."""
        binding = FakeBinding("fail")
        spawner = FakeSpawner("ok")
        orchestrator = make_orchestrator(engine_config, binding, spawner)
        primary_output = Path(f"{input_file}.mp3")

        outcome = await orchestrator.convert(input_file, primary_output, MP3_OPTIONS, TIMEOUT_MS, extension="mp3")

        assert outcome.method == ConversionMethod.FALLBACK
        assert outcome.output_path != primary_output
        assert outcome.output_path.parent == work_dir
        assert outcome.output_path.suffix == ".mp3"
        assert outcome.output_path.read_bytes() == b"fallback output"
        assert not primary_output.exists()
        assert orchestrator.get_statistics()["fallback_used"] == 1

    @pytest.mark.asyncio
    async def test_fallback_arguments(self, engine_config, input_file):
        """Test the flattened argument list given to the raw process."""
        spawner = FakeSpawner("ok")
        orchestrator = make_orchestrator(engine_config, FakeBinding("fail"), spawner)

        outcome = await orchestrator.convert(
            input_file, Path(f"{input_file}.mp4"), ["-codec:v libx264", "-crf 23"], TIMEOUT_MS
        )

        binary, args = spawner.calls[0]
        assert binary == engine_config.ffmpeg_path
        assert args == ["-i", str(input_file), "-codec:v", "libx264", "-crf", "23", str(outcome.output_path)]

    @pytest.mark.asyncio
    async def test_fallback_after_start_error(self, engine_config, input_file):
        """Test that a binding that cannot start falls back."""
        binding = FakeBinding(start_error=EngineFailedError("FFmpeg is not installed"))
        orchestrator = make_orchestrator(engine_config, binding, FakeSpawner("ok"))

        outcome = await orchestrator.convert(input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS)

        assert outcome.method == ConversionMethod.FALLBACK

    @pytest.mark.asyncio
    async def test_both_paths_fail(self, engine_config, input_file, work_dir):
        """Test that a failing raw process fails the job and cleans up."""
        orchestrator = make_orchestrator(engine_config, FakeBinding("fail"), FakeSpawner("fail"))

        with pytest.raises(EngineFailedError) as exc_info:
            await orchestrator.convert(input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS)

        assert exc_info.value.exit_code == 1
        assert list(work_dir.iterdir()) == []
        stats = orchestrator.get_statistics()
        assert stats["failed_jobs"] == 1
        assert stats["succeeded_jobs"] == 0

    @pytest.mark.asyncio
    async def test_spawn_error(self, engine_config, input_file, work_dir):
        """Test a raw process that cannot be spawned."""
        spawner = FakeSpawner(spawn_error=FileNotFoundError("ffmpeg"))
        orchestrator = make_orchestrator(engine_config, FakeBinding("fail"), spawner)

        with pytest.raises(EngineFailedError) as exc_info:
            await orchestrator.convert(input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS)

        assert "Failed to start FFmpeg" in exc_info.value.message
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_fallback_empty_output(self, engine_config, input_file):
        """Test output verification on the fallback path."""
        orchestrator = make_orchestrator(engine_config, FakeBinding("fail"), FakeSpawner("missing"))

        with pytest.raises(OutputMissingError):
            await orchestrator.convert(input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, TIMEOUT_MS)


class TestInputVerification:
    """Test the input checks before the engine runs."""

    @pytest.mark.asyncio
    async def test_missing_input(self, engine_config, work_dir):
        """Test that a missing input never reaches the engine."""
        binding = FakeBinding()
        orchestrator = make_orchestrator(engine_config, binding)

        with pytest.raises(InputUnavailableError) as exc_info:
            await orchestrator.convert(work_dir / "gone", work_dir / "gone.mp3", MP3_OPTIONS, TIMEOUT_MS)

        assert exc_info.value.message.startswith("Could not access the uploaded file")
        assert binding.calls == []
        assert orchestrator.get_statistics()["failed_jobs"] == 1


class TestTimeout:
    """Test the timeout race."""

    @pytest.mark.asyncio
    async def test_primary_timeout(self, engine_config, input_file, work_dir):
        """Test that a hanging primary run times out and is killed."""
        binding = FakeBinding("hang")
        spawner = FakeSpawner()
        orchestrator = make_orchestrator(engine_config, binding, spawner)

        with pytest.raises(ConversionTimeoutError) as exc_info:
            await orchestrator.convert(input_file, Path(f"{input_file}.mp4"), [], 50)

        assert exc_info.value.status_code == 504
        assert exc_info.value.message == "Conversion timeout after 0.05 seconds"
        assert binding.invocations[0].kill_count == 1

        # The killed run fails afterwards; that late failure must be ignored
        await asyncio.sleep(0.05)
        assert spawner.calls == []
        stats = orchestrator.get_statistics()
        assert stats["timed_out_jobs"] == 1
        assert stats["failed_jobs"] == 0
        assert stats["fallback_used"] == 0
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_fallback_timeout(self, engine_config, input_file, work_dir):
        """Test that the timeout also covers the fallback path."""
        spawner = FakeSpawner("hang")
        orchestrator = make_orchestrator(engine_config, FakeBinding("fail"), spawner)

        with pytest.raises(ConversionTimeoutError):
            await orchestrator.convert(input_file, Path(f"{input_file}.mp4"), [], 50)

        await asyncio.sleep(0.05)
        assert spawner.processes[0].kill_count == 1
        assert orchestrator.get_statistics()["failed_jobs"] == 0
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_timer_disarmed_on_success(self, engine_config, input_file):
        """Test that a finished job does not time out later."""
        orchestrator = make_orchestrator(engine_config)

        await orchestrator.convert(input_file, Path(f"{input_file}.mp3"), MP3_OPTIONS, 30)
        await asyncio.sleep(0.06)

        stats = orchestrator.get_statistics()
        assert stats["succeeded_jobs"] == 1
        assert stats["timed_out_jobs"] == 0


class TestCancellation:
    """Test callers that go away."""

    @pytest.mark.asyncio
    async def test_cancelled_caller(self, engine_config, input_file, work_dir):
        """Test that cancelling the caller stops the engine and cleans up."""
        binding = FakeBinding("hang")
        orchestrator = make_orchestrator(engine_config, binding)

        task = asyncio.create_task(
            orchestrator.convert(input_file, Path(f"{input_file}.mp4"), [], TIMEOUT_MS)
        )
        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.02)
        assert binding.invocations[0].kill_count == 1
        assert list(work_dir.iterdir()) == []
        assert orchestrator.get_statistics()["fallback_used"] == 0


class TestTransition:
    """Test the compare-and-set state transition."""

    def make_job(self, tmp_path):
        return ConversionJob(
            job_id="job-1",
            input_path=tmp_path / "in",
            output_path=tmp_path / "out.mp3",
            extension="mp3",
            timeout_ms=1000,
        )

    def test_first_terminal_transition_wins(self, tmp_path):
        """Test that only one terminal state is ever reached."""
        job = self.make_job(tmp_path)
        running = {ConversionState.RUNNING_PRIMARY}

        assert ConversionOrchestrator._transition(job, {ConversionState.PENDING}, ConversionState.RUNNING_PRIMARY)
        assert ConversionOrchestrator._transition(job, running, ConversionState.TIMED_OUT)
        assert not ConversionOrchestrator._transition(job, running, ConversionState.SUCCEEDED)
        assert job.state == ConversionState.TIMED_OUT
        assert job.completed_at is not None

    def test_fallback_only_from_primary(self, tmp_path):
        """Test that the fallback cannot start twice."""
        job = self.make_job(tmp_path)
        job.state = ConversionState.RUNNING_PRIMARY
        primary = {ConversionState.RUNNING_PRIMARY}

        assert ConversionOrchestrator._transition(job, primary, ConversionState.RUNNING_FALLBACK)
        assert not ConversionOrchestrator._transition(job, primary, ConversionState.RUNNING_FALLBACK)
        assert job.completed_at is None
