"""Test utilities."""

from __future__ import annotations

import asyncio
import sys
import warnings

from ffprobe import MediaFile, Stream
from segments import Interval


# Suppress unawaited coroutine warnings from AsyncMock in tests.
warnings.filterwarnings("ignore", message="coroutine.*was never awaited")


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


class FakeStream:
    """Async readline over canned stderr lines."""

    def __init__(self, lines: list[bytes] | None = None):
        self._lines = list(lines or [])

    async def readline(self) -> bytes:
        return self._lines.pop(0) if self._lines else b""


class FakeProcess:
    """Fake async process for testing."""

    def __init__(
        self,
        alive: bool = True,
        killed: bool = False,
        pid: int = 4242,
        stderr_lines: list[bytes] | None = None,
    ):
        self.returncode = None if alive else 0
        self.pid = pid
        self.stderr = FakeStream(stderr_lines)
        self._killed = killed
        self.signals: list[int] = []

    async def wait(self) -> int:
        return 0 if self.returncode is None else self.returncode

    def terminate(self) -> None:
        if self._killed:
            raise ProcessLookupError("No such process")
        self.signals.append(15)
        self.returncode = -15  # SIGTERM

    def kill(self) -> None:
        if self._killed:
            raise ProcessLookupError("No such process")
        self.signals.append(9)
        self.returncode = -9  # SIGKILL


class StubbornProcess(FakeProcess):
    """Ignores SIGTERM, only SIGKILL stops it."""

    def terminate(self) -> None:
        self.signals.append(15)

    async def wait(self) -> int:
        while self.returncode is None:
            await asyncio.sleep(0.01)
        return self.returncode


def make_video_stream(index: int = 0, seconds: int = 13, height: int = 720) -> Stream:
    return Stream(
        index=index,
        codec_type="video",
        codec_name="h264",
        codecs="avc1.64001f",
        bit_rate=4_000_000,
        time_base=90_000,
        interval=Interval(90_000, 0, seconds * 90_000),
        width=height * 16 // 9,
        height=height,
    )


def make_audio_stream(index: int = 1, seconds: int = 13, bit_rate: int = 192_000) -> Stream:
    return Stream(
        index=index,
        codec_type="audio",
        codec_name="aac",
        codecs="mp4a.40.2",
        bit_rate=bit_rate,
        time_base=48_000,
        interval=Interval(48_000, 0, seconds * 48_000),
        channels=6,
        channel_layout="5.1",
        language="eng",
    )


def make_media_file(path: str = "/media/movie.mkv", seconds: int = 13) -> MediaFile:
    return MediaFile(
        path=path,
        duration=float(seconds),
        streams=(make_video_stream(0, seconds), make_audio_stream(1, seconds)),
    )
