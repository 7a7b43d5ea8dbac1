"""Media probing with ffprobe."""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Literal

import json
import logging
import pathlib
import subprocess
import threading
import time

from errors import ProbeError
from segments import Interval


log = logging.getLogger(__name__)

StreamType = Literal["video", "audio", "subtitle", "data", "attachment"]

_PROBE_TIMEOUT_SEC = 30
_KEYFRAME_PROBE_TIMEOUT_SEC = 300  # reads every packet of the stream
_DEFAULT_PROBE_CACHE_TTL_SEC = 600

# Used when neither the stream nor the container reports a bitrate (common for MKV audio)
_FALLBACK_AUDIO_BITRATE = 128_000

# ffprobe profile name -> (profile_idc, constraint flags)
_H264_PROFILES: dict[str, tuple[int, int]] = {
    "constrained baseline": (0x42, 0xE0),
    "baseline": (0x42, 0x00),
    "main": (0x4D, 0x40),
    "extended": (0x58, 0x00),
    "high": (0x64, 0x00),
    "high 10": (0x6E, 0x00),
    "high 4:2:2": (0x7A, 0x00),
    "high 4:4:4 predictive": (0xF4, 0x00),
}

_AAC_PROFILES = {"lc": "mp4a.40.2", "he-aac": "mp4a.40.5", "he-aacv2": "mp4a.40.29"}

_SIMPLE_CODEC_TAGS = {
    "hevc": "hvc1",
    "av1": "av01",
    "vp9": "vp09",
    "mp3": "mp4a.40.34",
    "opus": "opus",
    "flac": "flac",
    "ac3": "ac-3",
    "eac3": "ec-3",
}


@dataclass(frozen=True, slots=True)
class Stream:
    index: int  # container-relative, as used by ffmpeg -map 0:N
    codec_type: StreamType
    codec_name: str
    codecs: str  # RFC 6381 codec tag
    bit_rate: int
    time_base: int  # ticks per second
    pts_scale: int = 1  # ticks per raw pts unit (time_base numerator)
    interval: Interval | None = None
    width: int = 0
    height: int = 0
    channels: int = 0
    channel_layout: str = ""
    language: str = "und"
    title: str = ""
    attached_pic: bool = False  # embedded cover art, a single still frame

    @property
    def is_video(self) -> bool:
        return self.codec_type == "video" and not self.attached_pic

    @property
    def is_audio(self) -> bool:
        return self.codec_type == "audio"


@dataclass(frozen=True, slots=True)
class MediaFile:
    path: str
    duration: float  # seconds, container level
    streams: tuple[Stream, ...] = field(default_factory=tuple)

    def stream(self, index: int) -> Stream | None:
        for s in self.streams:
            if s.index == index:
                return s
        return None

    @property
    def video_streams(self) -> list[Stream]:
        return [s for s in self.streams if s.is_video]

    @property
    def audio_streams(self) -> list[Stream]:
        return [s for s in self.streams if s.is_audio]


# ===========================================================================
# Codec Tags
# ===========================================================================


def codec_tag(stream: dict[str, Any]) -> str:
    """Build the RFC 6381 codecs string for a raw ffprobe stream dict."""
    codec = (stream.get("codec_name") or "").lower()
    profile = (stream.get("profile") or "").lower()
    if codec == "h264":
        profile_idc, constraints = _H264_PROFILES.get(profile, (0x64, 0x00))
        level = 0
        with suppress(ValueError, TypeError):
            level = int(stream.get("level", 0) or 0)
        if level <= 0:
            level = 40
        return f"avc1.{profile_idc:02x}{constraints:02x}{level:02x}"
    if codec == "aac":
        return _AAC_PROFILES.get(profile, "mp4a.40.2")
    return _SIMPLE_CODEC_TAGS.get(codec, codec)


# ===========================================================================
# Probe Output Parsing
# ===========================================================================


def _parse_time_base(raw: str | None) -> Fraction:
    """Parse ffprobe's "1/90000" into a Fraction of a second per pts unit."""
    try:
        tb = Fraction(raw or "")
    except (ValueError, ZeroDivisionError):
        return Fraction(0)
    return tb if tb > 0 else Fraction(0)


def _stream_interval(
    raw: dict[str, Any], tb: Fraction, container_duration: float
) -> Interval | None:
    """Playable interval of the stream in ticks of 1/tb.denominator."""
    ticks_per_sec = tb.denominator
    scale = tb.numerator
    start = 0
    with suppress(ValueError, TypeError, KeyError):
        start = int(raw["start_pts"]) * scale
    duration = 0
    with suppress(ValueError, TypeError, KeyError):
        duration = int(raw["duration_ts"]) * scale
    if duration <= 0:
        with suppress(ValueError, TypeError, KeyError):
            duration = round(float(raw["duration"]) * ticks_per_sec)
    if duration <= 0 and container_duration > 0:
        duration = round(container_duration * ticks_per_sec)
    if duration <= 0:
        return None
    return Interval(ticks_per_sec, start, start + duration)


def _parse_stream(raw: dict[str, Any], container_duration: float, format_bitrate: int) -> Stream:
    codec_type = raw.get("codec_type", "data")
    tb = _parse_time_base(raw.get("time_base"))
    interval = _stream_interval(raw, tb, container_duration) if tb else None

    bit_rate = 0
    with suppress(ValueError, TypeError):
        bit_rate = int(raw.get("bit_rate", 0) or 0)
    if not bit_rate:
        bit_rate = format_bitrate if codec_type == "video" else 0
    if not bit_rate and codec_type == "audio":
        bit_rate = _FALLBACK_AUDIO_BITRATE

    tags = raw.get("tags") or {}
    disposition = raw.get("disposition") or {}
    return Stream(
        index=int(raw["index"]),
        codec_type=codec_type,
        codec_name=(raw.get("codec_name") or "").lower(),
        codecs=codec_tag(raw),
        bit_rate=bit_rate,
        time_base=tb.denominator if tb else 0,
        pts_scale=tb.numerator if tb else 1,
        interval=interval,
        width=raw.get("width", 0) or 0,
        height=raw.get("height", 0) or 0,
        channels=raw.get("channels", 0) or 0,
        channel_layout=raw.get("channel_layout", "") or "",
        language=(tags.get("language") or "und").lower(),
        title=tags.get("title") or "",
        attached_pic=bool(disposition.get("attached_pic", 0)),
    )


def parse_probe_output(path: str, output: str) -> MediaFile:
    """Parse `ffprobe -show_format -show_streams -print_format json` output."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise ProbeError(path, f"malformed ffprobe output: {e}") from e
    if not isinstance(data, dict) or "format" not in data:
        raise ProbeError(path, "ffprobe output has no format section")

    fmt = data["format"]
    duration = 0.0
    with suppress(ValueError, TypeError, KeyError):
        duration = float(fmt["duration"])
    format_bitrate = 0
    with suppress(ValueError, TypeError, KeyError):
        format_bitrate = int(fmt["bit_rate"])

    try:
        streams = tuple(
            _parse_stream(s, duration, format_bitrate) for s in data.get("streams", [])
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ProbeError(path, f"malformed stream entry: {e}") from e
    return MediaFile(path=path, duration=duration, streams=streams)


def parse_keyframe_output(path: str, output: str, time_base_scale: int = 1) -> list[int]:
    """Parse `-show_entries packet=pts,flags -of csv` output into keyframe ticks.

    Each line looks like "packet,376832,K_" (some builds add a trailing field).
    """
    keyframes: set[int] = set()
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(",")
        if len(parts) < 3 or parts[0] != "packet":
            raise ProbeError(path, f"malformed keyframe line: {line!r}")
        pts, flags = parts[1], parts[2]
        if not flags.startswith("K"):
            continue
        if pts == "N/A":
            continue
        try:
            keyframes.add(int(pts) * time_base_scale)
        except ValueError as e:
            raise ProbeError(path, f"malformed keyframe pts: {pts!r}") from e
    return sorted(keyframes)


# ===========================================================================
# Probing
# ===========================================================================


def _run_ffprobe(path: str, cmd: list[str], timeout: int) -> str:
    if not pathlib.Path(path).is_file():
        raise ProbeError(path, "file does not exist or is not readable")
    log.debug("Probing: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ProbeError(path, f"ffprobe timed out after {timeout}s") from e
    except OSError as e:
        raise ProbeError(path, f"could not run ffprobe: {e}") from e
    if result.returncode != 0:
        stderr = (result.stderr or "").strip().splitlines()
        raise ProbeError(
            path,
            f"ffprobe exited with code {result.returncode}: {stderr[-1] if stderr else ''}",
        )
    return result.stdout


def probe(path: str) -> MediaFile:
    """Probe container and stream metadata."""
    output = _run_ffprobe(
        path,
        [
            "ffprobe",
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            path,
        ],
        _PROBE_TIMEOUT_SEC,
    )
    media_file = parse_probe_output(path, output)
    log.info(
        "Probed %s: duration=%.1fs streams=%s",
        path,
        media_file.duration,
        ",".join(f"{s.index}:{s.codec_type}/{s.codec_name}" for s in media_file.streams),
    )
    return media_file


def probe_keyframes(path: str, stream: Stream) -> list[int]:
    """Return sorted keyframe timestamps of one stream, in its time base ticks."""
    output = _run_ffprobe(
        path,
        [
            "ffprobe",
            "-v",
            "error",
            "-select_streams",
            str(stream.index),
            "-show_entries",
            "packet=pts,flags",
            "-of",
            "csv",
            path,
        ],
        _KEYFRAME_PROBE_TIMEOUT_SEC,
    )
    keyframes = parse_keyframe_output(path, output, stream.pts_scale)
    log.info("Found %d keyframes in %s stream %d", len(keyframes), path, stream.index)
    return keyframes


# ===========================================================================
# Probe Cache
# ===========================================================================


class ProbeCache:
    """TTL cache of probe results, invalidated when the file's mtime changes."""

    def __init__(self, ttl_sec: float = _DEFAULT_PROBE_CACHE_TTL_SEC):
        self.ttl_sec = ttl_sec
        self._lock = threading.Lock()
        self._media: dict[str, tuple[float, float, MediaFile]] = {}
        self._keyframes: dict[tuple[str, int], tuple[float, float, list[int]]] = {}

    @staticmethod
    def _mtime(path: str) -> float:
        try:
            return pathlib.Path(path).stat().st_mtime
        except OSError as e:
            raise ProbeError(path, f"cannot stat file: {e}") from e

    def _fresh(self, cached_at: float, cached_mtime: float, mtime: float) -> bool:
        return time.time() - cached_at < self.ttl_sec and cached_mtime == mtime

    def probe(self, path: str) -> MediaFile:
        mtime = self._mtime(path)
        with self._lock:
            cached = self._media.get(path)
            if cached and self._fresh(cached[0], cached[1], mtime):
                return cached[2]
        log.info("Probe cache miss for %s", path)
        media_file = probe(path)
        with self._lock:
            self._media[path] = (time.time(), mtime, media_file)
        return media_file

    def keyframes(self, path: str, stream: Stream) -> list[int]:
        mtime = self._mtime(path)
        key = (path, stream.index)
        with self._lock:
            cached = self._keyframes.get(key)
            if cached and self._fresh(cached[0], cached[1], mtime):
                return cached[2]
        keyframes = probe_keyframes(path, stream)
        with self._lock:
            self._keyframes[key] = (time.time(), mtime, keyframes)
        return keyframes

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"media": len(self._media), "keyframes": len(self._keyframes)}

    def invalidate(self, path: str) -> None:
        with self._lock:
            self._media.pop(path, None)
            for key in [k for k in self._keyframes if k[0] == path]:
                del self._keyframes[key]

    def clear(self) -> int:
        with self._lock:
            count = len(self._media) + len(self._keyframes)
            self._media.clear()
            self._keyframes.clear()
        return count
