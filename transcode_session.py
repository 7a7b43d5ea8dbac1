"""Transcoding sessions: one ffmpeg process producing a run of segments."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Literal

import asyncio
import collections
import contextlib
import logging
import pathlib
import shutil
import tempfile
import threading
import time

from errors import SegmentTimeoutError, SessionCreateError, SessionStartError
from representation import StreamRepresentation, get_preset


log = logging.getLogger(__name__)

SessionState = Literal["created", "running", "failed", "destroyed"]

SESSION_DIR_PREFIX = "transcoding-session-"
_PLAYLIST_NAME = "generated_by_ffmpeg.m3u8"  # we serve our own manifests

# Timing constants
_POLL_INTERVAL_SEC = 0.2
_KILL_GRACE_SEC = 2.0
_STDERR_TAIL_LINES = 20


def segment_filename(stream_index: int, segment_id: int) -> str:
    return f"stream{stream_index}_{segment_id}.m4s"


def init_filename(stream_index: int) -> str:
    return f"init{stream_index}.mp4"


# ===========================================================================
# FFmpeg Command Building
# ===========================================================================


def _build_codec_args(
    stream_rep: StreamRepresentation,
    segment_duration: float,
    keyframe_times: Sequence[float] | None = None,
) -> list[str]:
    rep = stream_rep.representation
    if not rep.transcoded or rep.preset_name is None:
        return ["-c:0", "copy"]
    preset = get_preset(rep.preset_name)
    args = list(preset.encoder_args)
    if preset.kind == "video":
        # Keyframe on every planned boundary so each segment decodes standalone
        if keyframe_times:
            force = ",".join(f"{t:.3f}" for t in keyframe_times)
        else:
            force = f"expr:gte(t,n_forced*{segment_duration:.3f})"
        args = [
            "-vf",
            f"scale=-2:{rep.height},format=yuv420p",
            *args,
            "-force_key_frames",
            force,
        ]
    return args


def build_transcode_cmd(
    stream_rep: StreamRepresentation,
    source_path: str,
    output_dir: str,
    start_timestamp: float,
    start_segment_index: int,
    segment_duration: float,
    end_timestamp: float | None = None,
    keyframe_times: Sequence[float] | None = None,
) -> list[str]:
    """Build the ffmpeg command producing fMP4 segments for one representation."""
    stream = stream_rep.stream
    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error", "-nostdin"]
    if start_timestamp > 0:
        # -ss before -i seeks in the demuxer, which is fast and keyframe exact
        cmd.extend(["-ss", f"{start_timestamp:.3f}"])
    cmd.extend(["-i", source_path])
    if end_timestamp is not None and end_timestamp > start_timestamp:
        cmd.extend(["-t", f"{end_timestamp - start_timestamp:.3f}"])
    cmd.extend(["-copyts", "-start_at_zero", "-map", f"0:{stream.index}"])
    cmd.extend(_build_codec_args(stream_rep, segment_duration, keyframe_times))

    # Non-zero start: tell players the fragment timeline does not begin at zero
    movflags = "+dash+frag_discont" if start_segment_index != 0 else "+dash"
    out = pathlib.Path(output_dir)
    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_segment_type",
            "fmp4",
            "-hls_time",
            f"{segment_duration:.3f}",
            "-hls_list_size",
            "0",
            "-start_number",
            str(start_segment_index),
            "-hls_fmp4_init_filename",
            init_filename(stream.index),
            "-hls_segment_filename",
            str(out / f"stream{stream.index}_%d.m4s"),
            "-hls_segment_options",
            f"movflags={movflags}",
            str(out / _PLAYLIST_NAME),
        ]
    )
    return cmd


# ===========================================================================
# Process Helpers
# ===========================================================================


def _is_process_alive(proc: Any) -> bool:
    if proc is None:
        return False
    return getattr(proc, "returncode", 0) is None


def _kill_process(proc: Any) -> bool:
    """Kill process gracefully (SIGTERM then SIGKILL), return True if killed."""
    try:
        # Graceful first so ffmpeg can close the segment it is writing
        proc.terminate()
        for _ in range(10):  # 100ms total
            if proc.returncode is not None:
                return True
            time.sleep(0.01)
        proc.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


# Escalations still in flight, awaited on shutdown
_pending_kills: set[asyncio.Task[None]] = set()


async def _kill_after_grace(proc: Any, name: str, grace: float) -> None:
    """SIGKILL a process that is still running once the grace period is over."""
    try:
        await asyncio.wait_for(proc.wait(), grace)
    except asyncio.TimeoutError:
        log.warning("ffmpeg for session %s ignored SIGTERM, killing", name)
        with contextlib.suppress(ProcessLookupError, OSError):
            proc.kill()


def _stop_process(proc: Any, name: str) -> bool:
    """SIGTERM now, SIGKILL later. Never blocks a running event loop.

    An asyncio process only learns its exit status from the loop, so the
    wait for a graceful exit is scheduled on it. Without a running loop
    this falls back to the polling `_kill_process`.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return _kill_process(proc)
    try:
        proc.terminate()
    except (ProcessLookupError, OSError):
        return False
    task = loop.create_task(_kill_after_grace(proc, name, _KILL_GRACE_SEC))
    _pending_kills.add(task)
    task.add_done_callback(_pending_kills.discard)
    return True


async def wait_for_exits() -> None:
    """Wait until every process told to stop on this loop has exited."""
    loop = asyncio.get_running_loop()
    tasks = [t for t in _pending_kills if t.get_loop() is loop]
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


# ===========================================================================
# Session
# ===========================================================================


class TranscodingSession:
    """Owns one ffmpeg process and its private output directory.

    Lifecycle is created -> running -> destroyed (or created -> failed when
    the process cannot be spawned). Segment readiness is observed only
    through the filesystem, so waiting on segments takes no locks.
    """

    def __init__(
        self,
        stream_rep: StreamRepresentation,
        output_dir: str,
        cmd: list[str],
        start_timestamp: float,
        start_segment_index: int,
    ):
        self.stream_rep = stream_rep
        self.output_dir = pathlib.Path(output_dir)
        self.cmd = cmd
        self.start_timestamp = start_timestamp
        self.start_segment_index = start_segment_index
        self.state: SessionState = "created"
        self.created = time.time()
        self.last_access = self.created
        self.stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._process: Any = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._lock = threading.Lock()

    @classmethod
    def create(
        cls,
        stream_rep: StreamRepresentation,
        source_path: str,
        output_dir_base: str | pathlib.Path,
        start_timestamp: float,
        start_segment_index: int,
        segment_duration: float,
        end_timestamp: float | None = None,
        keyframe_times: Sequence[float] | None = None,
    ) -> TranscodingSession:
        """Allocate the output directory and build the encoder invocation."""
        try:
            output_dir = tempfile.mkdtemp(prefix=SESSION_DIR_PREFIX, dir=str(output_dir_base))
        except OSError as e:
            raise SessionCreateError(str(e)) from e
        cmd = build_transcode_cmd(
            stream_rep,
            source_path,
            output_dir,
            start_timestamp,
            start_segment_index,
            segment_duration,
            end_timestamp,
            keyframe_times,
        )
        return cls(stream_rep, output_dir, cmd, start_timestamp, start_segment_index)

    @property
    def name(self) -> str:
        return self.output_dir.name

    @property
    def stream_index(self) -> int:
        return self.stream_rep.stream.index

    @property
    def is_running(self) -> bool:
        return self.state == "running" and _is_process_alive(self._process)

    def touch(self) -> None:
        self.last_access = time.time()

    # -----------------------------------------------------------------------
    # Start / Destroy
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn ffmpeg. A session whose start failed cannot be restarted."""
        with self._lock:
            if self.state != "created":
                raise SessionStartError(self.name, f"session is {self.state}")
            self.state = "running"
        log.info(
            "Starting transcoding session %s (%s from %.3fs, segment %d): %s",
            self.name,
            self.stream_rep.representation_id,
            self.start_timestamp,
            self.start_segment_index,
            " ".join(self.cmd),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            with self._lock:
                if self.state == "running":
                    self.state = "failed"
            raise SessionStartError(self.name, str(e)) from e

        with self._lock:
            destroyed = self.state == "destroyed"
            self._process = process
        if destroyed:
            # destroy() raced with the spawn
            _stop_process(process, self.name)
            return
        self._monitor_task = asyncio.create_task(self._monitor_stderr(process))
        log.info("ffmpeg pid=%s started for session %s", process.pid, self.name)

    async def _monitor_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            self.stderr_tail.append(text)
            is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
            level = logging.WARNING if is_fatal else logging.DEBUG
            log.log(level, "ffmpeg:%s %s", self.name, text)
        returncode = await process.wait()
        if returncode != 0 and self.state != "destroyed":
            log.warning(
                "ffmpeg for session %s exited with code %s: %s",
                self.name,
                returncode,
                " | ".join(self.stderr_tail) or "no output",
            )
        else:
            log.info("ffmpeg for session %s exited with code %s", self.name, returncode)

    def destroy(self) -> None:
        """Kill the process and remove the output directory. Idempotent."""
        with self._lock:
            if self.state == "destroyed":
                return
            self.state = "destroyed"
            process = self._process
            monitor = self._monitor_task
        if _is_process_alive(process) and _stop_process(process, self.name):
            log.info("Stopped ffmpeg for session %s", self.name)
        if monitor is not None and not monitor.done():
            with contextlib.suppress(RuntimeError):
                monitor.cancel()
        shutil.rmtree(self.output_dir, ignore_errors=True)
        log.info("Destroyed transcoding session %s", self.name)

    # -----------------------------------------------------------------------
    # Readiness
    # -----------------------------------------------------------------------

    def _playlist_text(self) -> str:
        try:
            return (self.output_dir / _PLAYLIST_NAME).read_text()
        except OSError:
            return ""

    def process_exited(self) -> bool:
        return self._process is not None and not _is_process_alive(self._process)

    def _segment_complete(self, name: str) -> bool:
        """ffmpeg lists a segment in its playlist only after closing the file."""
        path = self.output_dir / name
        if not path.exists():
            return False
        for line in self._playlist_text().splitlines():
            line = line.strip()
            if line == name or line.endswith(f"/{name}"):
                return True
        return self.process_exited() and path.stat().st_size > 0

    def _init_complete(self, name: str) -> bool:
        path = self.output_dir / name
        try:
            size = path.stat().st_size
        except OSError:
            return False
        if size <= 0:
            return False
        return (self.output_dir / _PLAYLIST_NAME).exists() or self.process_exited()

    async def _wait_for(self, what: str, ready: Any, timeout: float) -> pathlib.Path:
        self.touch()
        deadline = time.monotonic() + timeout
        while True:
            path = ready()
            if path is not None:
                return path
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(_POLL_INTERVAL_SEC, remaining))
        log.warning(
            "Session %s: timed out after %.1fs waiting for %s (state=%s)",
            self.name,
            timeout,
            what,
            self.state,
        )
        raise SegmentTimeoutError(what, timeout)

    async def get_segment(
        self, stream_id: int | str, segment_id: int, timeout: float
    ) -> pathlib.Path:
        """Wait until the segment file is complete and return its path.

        A segment this session will never produce (other stream, out of
        range, crashed encoder) is reported as a timeout.
        """
        name = segment_filename(self.stream_index, segment_id)
        own_stream = str(stream_id) == str(self.stream_index)
        in_range = segment_id >= self.start_segment_index

        def ready() -> pathlib.Path | None:
            if own_stream and in_range and self._segment_complete(name):
                return self.output_dir / name
            return None

        return await self._wait_for(f"segment {stream_id}/{segment_id}", ready, timeout)

    async def initial_segment(self, stream_id: int | str, timeout: float) -> pathlib.Path:
        name = init_filename(self.stream_index)
        own_stream = str(stream_id) == str(self.stream_index)

        def ready() -> pathlib.Path | None:
            if own_stream and self._init_complete(name):
                return self.output_dir / name
            return None

        return await self._wait_for(f"init segment {stream_id}", ready, timeout)
