"""
Shared fixtures for the Media Transcode Service tests.

The suite never needs a real FFmpeg: orchestrator and API tests use the
in-process fakes from ``tests.fakes``, engine tests run small shell scripts.
"""

import os
import stat
from pathlib import Path

import pytest

from app.services.engine import EngineConfig


@pytest.fixture
def engine_config():
    """Engine configuration that never touches a real binary."""
    return EngineConfig(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe", niceness=0)


@pytest.fixture
def work_dir(tmp_path):
    """Working directory for uploads and outputs."""
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def input_file(work_dir):
    """An uploaded input file."""
    path = work_dir / "a1b2c3d4"
    path.write_bytes(b"RIFF....WAVEfmt fake media payload")
    return path


@pytest.fixture
def make_script(tmp_path):
    """Factory writing an executable shell script and returning its path."""
    if os.name != "posix":
        pytest.skip("shell scripts require a POSIX system")

    def _make(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make
