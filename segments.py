"""Segment timeline planning.

Everything here works in integer ticks of a stream's time base so that
thousands of short segments add up to exactly the stream length.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import bisect

from errors import SegmentNotFoundError


DEFAULT_SEGMENT_DURATION_SEC = 5.0
# Bounds the output of a single ffmpeg invocation
DEFAULT_SEGMENTS_PER_SESSION = 60


@dataclass(frozen=True, slots=True)
class Interval:
    time_base: int  # ticks per second
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.time_base <= 0:
            raise ValueError(f"time_base must be positive, got {self.time_base}")
        if self.start >= self.end:
            raise ValueError(f"Empty interval [{self.start}, {self.end})")

    @property
    def duration(self) -> int:
        return self.end - self.start

    def start_seconds(self) -> float:
        return self.start / self.time_base

    def duration_seconds(self) -> float:
        return self.duration / self.time_base


@dataclass(frozen=True, slots=True)
class Segment:
    interval: Interval
    segment_id: int


def to_ticks(seconds: float, time_base: int) -> int:
    """Convert seconds to ticks, never returning less than one tick."""
    return max(1, round(seconds * time_base))


def _group(segments: list[Segment], segments_per_session: int) -> list[list[Segment]]:
    if segments_per_session <= 0:
        raise ValueError(f"segments_per_session must be positive, got {segments_per_session}")
    return [
        segments[i : i + segments_per_session]
        for i in range(0, len(segments), segments_per_session)
    ]


def build_fixed_segments(
    interval: Interval,
    segment_duration: float = DEFAULT_SEGMENT_DURATION_SEC,
    segments_per_session: int = DEFAULT_SEGMENTS_PER_SESSION,
) -> list[list[Segment]]:
    """Plan fixed-length segments (audio, or video with forced keyframes).

    The last segment is clipped to the interval end. Segment ids are
    monotonic across the whole interval; only the session grouping resets.
    """
    step = to_ticks(segment_duration, interval.time_base)
    segments: list[Segment] = []
    cursor = interval.start
    while cursor < interval.end:
        end = min(cursor + step, interval.end)
        segments.append(Segment(Interval(interval.time_base, cursor, end), len(segments)))
        cursor = end
    return _group(segments, segments_per_session)


def build_keyframe_segments(
    interval: Interval,
    keyframes: Sequence[int],
    segment_duration: float = DEFAULT_SEGMENT_DURATION_SEC,
    segments_per_session: int = DEFAULT_SEGMENTS_PER_SESSION,
) -> list[list[Segment]]:
    """Plan segments that each start on a keyframe.

    The boundary after segment n is the first keyframe at or after
    ``start + (n + 1) * segment_duration`` that lies past the current cursor,
    which is where ffmpeg's HLS muxer cuts a stream copy. When no keyframe is
    left before the end, the last segment absorbs the remainder.
    """
    step = to_ticks(segment_duration, interval.time_base)
    kfs = sorted(k for k in set(keyframes) if interval.start < k < interval.end)
    segments: list[Segment] = []
    cursor = interval.start
    while cursor < interval.end:
        nominal = interval.start + (len(segments) + 1) * step
        i = bisect.bisect_left(kfs, max(nominal, cursor + 1))
        end = kfs[i] if i < len(kfs) else interval.end
        segments.append(Segment(Interval(interval.time_base, cursor, end), len(segments)))
        cursor = end
    return _group(segments, segments_per_session)


def flatten(sessions: Sequence[Sequence[Segment]]) -> list[Segment]:
    return [seg for session in sessions for seg in session]


def find_session(sessions: Sequence[Sequence[Segment]], segment_id: int) -> Sequence[Segment]:
    """Return the session group containing segment_id."""
    for session in sessions:
        if session and session[0].segment_id <= segment_id <= session[-1].segment_id:
            return session
    raise SegmentNotFoundError(segment_id)


def total_duration_seconds(sessions: Sequence[Sequence[Segment]]) -> float:
    segs = flatten(sessions)
    if not segs:
        return 0.0
    tb = segs[0].interval.time_base
    return (segs[-1].interval.end - segs[0].interval.start) / tb
