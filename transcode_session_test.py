"""Tests for transcoding sessions."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import asyncio
import pathlib
import time

import pytest

from errors import SegmentTimeoutError, SessionCreateError, SessionStartError
from representation import passthrough_representation, transcoded_representation
from testing import FakeProcess, StubbornProcess, make_audio_stream, make_video_stream
from transcode_session import (
    SESSION_DIR_PREFIX,
    TranscodingSession,
    _is_process_alive,
    _kill_process,
    build_transcode_cmd,
    init_filename,
    segment_filename,
    wait_for_exits,
)


def _session(tmp_path: pathlib.Path, start_index: int = 0) -> TranscodingSession:
    stream_rep = passthrough_representation(make_video_stream(0))
    start = 0.0 if start_index == 0 else 10.0
    return TranscodingSession.create(
        stream_rep, "/media/movie.mkv", tmp_path, start, start_index, 5.0
    )


def _running(session: TranscodingSession, proc: FakeProcess | None = None) -> FakeProcess:
    proc = proc or FakeProcess(alive=True)
    session._process = proc
    session.state = "running"
    return proc


def _write_playlist(session: TranscodingSession, *names: str) -> None:
    lines = ["#EXTM3U", '#EXT-X-MAP:URI="init0.mp4"']
    for name in names:
        lines += ["#EXTINF:5.000000,", name]
    (session.output_dir / "generated_by_ffmpeg.m3u8").write_text("\n".join(lines) + "\n")


# =============================================================================
# Command Building Tests
# =============================================================================


class TestBuildTranscodeCmd:
    """Tests for build_transcode_cmd."""

    def test_passthrough_from_start(self):
        rep = passthrough_representation(make_video_stream(0))
        cmd = build_transcode_cmd(rep, "/m.mkv", "/out", 0.0, 0, 5.0)
        assert cmd[0] == "ffmpeg"
        assert "-ss" not in cmd
        assert cmd[cmd.index("-i") + 1] == "/m.mkv"
        assert cmd[cmd.index("-map") + 1] == "0:0"
        assert cmd[cmd.index("-c:0") + 1] == "copy"
        assert cmd[cmd.index("-start_number") + 1] == "0"
        assert cmd[cmd.index("-hls_segment_type") + 1] == "fmp4"
        assert cmd[cmd.index("-hls_time") + 1] == "5.000"
        assert cmd[cmd.index("-hls_segment_options") + 1] == "movflags=+dash"
        assert cmd[cmd.index("-hls_fmp4_init_filename") + 1] == "init0.mp4"
        assert cmd[cmd.index("-hls_segment_filename") + 1] == "/out/stream0_%d.m4s"
        assert "-copyts" in cmd and "-start_at_zero" in cmd

    def test_seek_before_input(self):
        rep = passthrough_representation(make_audio_stream(1))
        cmd = build_transcode_cmd(rep, "/m.mkv", "/out", 300.0, 60, 5.0, end_timestamp=600.0)
        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-ss") + 1] == "300.000"
        assert cmd[cmd.index("-t") + 1] == "300.000"
        assert cmd[cmd.index("-start_number") + 1] == "60"
        assert cmd[cmd.index("-hls_segment_options") + 1] == "movflags=+dash+frag_discont"

    def test_transcoded_audio(self):
        rep = transcoded_representation(make_audio_stream(1), "64k-audio")
        cmd = build_transcode_cmd(rep, "/m.mkv", "/out", 0.0, 0, 5.0)
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "64000"
        assert cmd[cmd.index("-ac") + 1] == "2"
        assert "copy" not in cmd

    def test_transcoded_video_forces_planned_keyframes(self):
        rep = transcoded_representation(make_video_stream(0, height=1080), "720-5000k-video")
        cmd = build_transcode_cmd(
            rep, "/m.mkv", "/out", 0.0, 0, 5.0, keyframe_times=[0.0, 5.005, 10.01]
        )
        assert cmd[cmd.index("-vf") + 1] == "scale=-2:720,format=yuv420p"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-force_key_frames") + 1] == "0.000,5.005,10.010"

    def test_transcoded_video_default_keyframe_grid(self):
        rep = transcoded_representation(make_video_stream(0), "480-1000k-video")
        cmd = build_transcode_cmd(rep, "/m.mkv", "/out", 0.0, 0, 4.0)
        assert cmd[cmd.index("-force_key_frames") + 1] == "expr:gte(t,n_forced*4.000)"

    def test_filenames(self):
        assert segment_filename(2, 17) == "stream2_17.m4s"
        assert init_filename(2) == "init2.mp4"


# =============================================================================
# Process Lifecycle Tests
# =============================================================================


class TestProcessHelpers:
    def test_none_is_dead(self):
        assert _is_process_alive(None) is False

    def test_alive(self):
        assert _is_process_alive(FakeProcess(alive=True)) is True
        assert _is_process_alive(FakeProcess(alive=False)) is False

    def test_kill_graceful(self):
        proc = FakeProcess(alive=True)
        assert _kill_process(proc) is True
        assert proc.signals == [15]

    def test_kill_escalates(self):
        proc = StubbornProcess(alive=True)
        assert _kill_process(proc) is True
        assert proc.signals == [15, 9]

    def test_kill_already_gone(self):
        assert _kill_process(FakeProcess(alive=True, killed=True)) is False


class TestCreate:
    """Tests for TranscodingSession.create."""

    def test_allocates_private_dir(self, tmp_path):
        a = _session(tmp_path)
        b = _session(tmp_path)
        assert a.output_dir != b.output_dir
        assert a.output_dir.is_dir()
        assert a.output_dir.parent == tmp_path
        assert a.name.startswith(SESSION_DIR_PREFIX)
        assert a.state == "created"
        assert str(a.output_dir) in a.cmd[-1]

    def test_missing_base_dir(self, tmp_path):
        with pytest.raises(SessionCreateError):
            _session(tmp_path / "does" / "not" / "exist")


class TestStart:
    """Tests for starting the encoder."""

    def test_start_spawns_and_monitors(self, tmp_path):
        session = _session(tmp_path)
        proc = FakeProcess(alive=True, stderr_lines=[b"frame=1\n", b"Conversion failed! aborting\n"])

        async def run():
            with patch(
                "transcode_session.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)
            ) as spawn:
                await session.start()
            await asyncio.sleep(0.05)
            return spawn

        spawn = asyncio.run(run())
        assert spawn.call_args[0][0] == "ffmpeg"
        assert session.state == "running"
        assert session.is_running
        assert list(session.stderr_tail) == ["frame=1", "Conversion failed! aborting"]
        session.destroy()

    def test_spawn_failure_is_terminal(self, tmp_path):
        session = _session(tmp_path)

        async def run():
            with patch(
                "transcode_session.asyncio.create_subprocess_exec",
                AsyncMock(side_effect=FileNotFoundError("ffmpeg")),
            ):
                with pytest.raises(SessionStartError):
                    await session.start()
                assert session.state == "failed"
                with pytest.raises(SessionStartError):
                    await session.start()

        asyncio.run(run())
        session.destroy()

    def test_start_after_destroy(self, tmp_path):
        session = _session(tmp_path)
        session.destroy()
        with pytest.raises(SessionStartError):
            asyncio.run(session.start())


class TestDestroy:
    """Tests for destroy."""

    def test_double_destroy(self, tmp_path):
        session = _session(tmp_path)
        proc = _running(session)
        session.destroy()
        session.destroy()
        assert session.state == "destroyed"
        assert not session.output_dir.exists()
        assert proc.signals == [15]

    def test_destroy_before_start(self, tmp_path):
        session = _session(tmp_path)
        session.destroy()
        assert not session.output_dir.exists()

    def test_destroy_after_exit(self, tmp_path):
        session = _session(tmp_path)
        proc = _running(session, FakeProcess(alive=False))
        session.destroy()
        assert proc.signals == []
        assert not session.output_dir.exists()

    def test_destroy_in_loop_does_not_block(self, tmp_path):
        session = _session(tmp_path)
        proc = _running(session, StubbornProcess(alive=True))

        async def run():
            with patch("transcode_session._KILL_GRACE_SEC", 0.1):
                start = time.monotonic()
                session.destroy()
                elapsed = time.monotonic() - start
                assert proc.signals == [15]
                await wait_for_exits()
            return elapsed

        assert asyncio.run(run()) < 0.05
        assert proc.signals == [15, 9]
        assert not session.output_dir.exists()

    def test_destroy_in_loop_graceful_exit(self, tmp_path):
        session = _session(tmp_path)
        proc = _running(session)

        async def run():
            session.destroy()
            await wait_for_exits()

        asyncio.run(run())
        assert proc.signals == [15]


# =============================================================================
# Readiness Tests
# =============================================================================


class TestGetSegment:
    """Tests for segment readiness polling."""

    def test_listed_segment_ready(self, tmp_path):
        session = _session(tmp_path)
        _running(session)
        (session.output_dir / "stream0_0.m4s").write_bytes(b"moof")
        _write_playlist(session, "stream0_0.m4s")
        path = asyncio.run(session.get_segment(0, 0, timeout=1.0))
        assert path == session.output_dir / "stream0_0.m4s"

    def test_unlisted_segment_waits_for_writer(self, tmp_path):
        session = _session(tmp_path)
        _running(session)
        (session.output_dir / "stream0_1.m4s").write_bytes(b"partial")
        _write_playlist(session, "stream0_0.m4s")
        with pytest.raises(SegmentTimeoutError):
            asyncio.run(session.get_segment(0, 1, timeout=0.3))

    def test_prefix_does_not_match(self, tmp_path):
        session = _session(tmp_path)
        _running(session)
        (session.output_dir / "stream0_1.m4s").write_bytes(b"partial")
        _write_playlist(session, "stream0_10.m4s")
        with pytest.raises(SegmentTimeoutError):
            asyncio.run(session.get_segment(0, 1, timeout=0.3))

    def test_exited_process_serves_nonempty_file(self, tmp_path):
        session = _session(tmp_path)
        _running(session, FakeProcess(alive=False))
        (session.output_dir / "stream0_3.m4s").write_bytes(b"moof")
        path = asyncio.run(session.get_segment(0, 3, timeout=1.0))
        assert path.name == "stream0_3.m4s"

    def test_becomes_ready_while_waiting(self, tmp_path):
        session = _session(tmp_path)
        _running(session)

        async def run():
            async def produce():
                await asyncio.sleep(0.3)
                (session.output_dir / "stream0_0.m4s").write_bytes(b"moof")
                _write_playlist(session, "stream0_0.m4s")

            producer = asyncio.create_task(produce())
            path = await session.get_segment(0, 0, timeout=5.0)
            await producer
            return path

        start = time.monotonic()
        path = asyncio.run(run())
        assert path.name == "stream0_0.m4s"
        assert time.monotonic() - start < 2.0

    def test_timeout_not_early_not_forever(self, tmp_path):
        session = _session(tmp_path)
        _running(session)
        start = time.monotonic()
        with pytest.raises(SegmentTimeoutError):
            asyncio.run(session.get_segment(0, 5, timeout=0.5))
        elapsed = time.monotonic() - start
        assert 0.5 <= elapsed < 1.5

    def test_wrong_stream_times_out(self, tmp_path):
        session = _session(tmp_path)
        _running(session)
        (session.output_dir / "stream0_0.m4s").write_bytes(b"moof")
        _write_playlist(session, "stream0_0.m4s")
        start = time.monotonic()
        with pytest.raises(SegmentTimeoutError):
            asyncio.run(session.get_segment(1, 0, timeout=0.3))
        assert time.monotonic() - start >= 0.3

    def test_before_session_start_times_out(self, tmp_path):
        session = _session(tmp_path, start_index=2)
        _running(session)
        (session.output_dir / "stream0_1.m4s").write_bytes(b"moof")
        _write_playlist(session, "stream0_1.m4s")
        start = time.monotonic()
        with pytest.raises(SegmentTimeoutError):
            asyncio.run(session.get_segment(0, 1, timeout=0.3))
        assert time.monotonic() - start >= 0.3

    def test_touch_on_request(self, tmp_path):
        session = _session(tmp_path)
        _running(session, FakeProcess(alive=False))
        (session.output_dir / "stream0_0.m4s").write_bytes(b"moof")
        session.last_access = 0
        asyncio.run(session.get_segment(0, 0, timeout=1.0))
        assert session.last_access > 0


class TestInitialSegment:
    """Tests for init segment readiness."""

    def test_ready_once_playlist_exists(self, tmp_path):
        session = _session(tmp_path)
        _running(session)
        (session.output_dir / "init0.mp4").write_bytes(b"ftypmoov")
        _write_playlist(session)
        path = asyncio.run(session.initial_segment(0, timeout=1.0))
        assert path.name == "init0.mp4"

    def test_empty_init_not_ready(self, tmp_path):
        session = _session(tmp_path)
        _running(session)
        (session.output_dir / "init0.mp4").write_bytes(b"")
        _write_playlist(session)
        with pytest.raises(SegmentTimeoutError):
            asyncio.run(session.initial_segment(0, timeout=0.3))


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
