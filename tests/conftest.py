"""
Pytest configuration for the remuxer tests.

Sample file paths for the optional integration test are loaded from
environment variables. Locally, add them to your .env file.
"""

import io
import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

from mp4flv.remuxer.media_source import FileSource
from mp4_builders import build_mp4, idr_sample, inter_sample

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


@pytest.fixture
def get_test_path():
    """
    Factory fixture that returns a function to get test file paths from environment.

    Usage:
        def test_something(get_test_path):
            path = get_test_path("mp4")
            if path is None:
                pytest.skip("TEST_MP4_PATH not set")
    """

    def _get_path(kind: str) -> str | None:
        return os.environ.get(f"TEST_{kind.upper()}_PATH")

    return _get_path


@pytest.fixture
def make_source():
    """Wrap raw bytes in a FileSource."""

    def _make(data: bytes) -> FileSource:
        return FileSource(io.BytesIO(data))

    return _make


@pytest.fixture
def two_sample_mp4() -> bytes:
    """One track, samples sized [100, 150] in a single chunk at offset 1000, stts [(2, 500)], no ctts."""
    return build_mp4(
        chunks=[[idr_sample(100), inter_sample(150)]],
        stsc_runs=[(1, 2, 1)],
        stts_runs=[(2, 500)],
        timescale=1000,
        data_offset=1000,
    )
