"""DASH and HLS manifest rendering. Pure functions, no I/O."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import math
import xml.etree.ElementTree as ET

from representation import StreamRepresentation
from segments import Segment, flatten


DASH_NAMESPACE = "urn:mpeg:dash:schema:mpd:2011"
_DASH_PROFILE = "urn:mpeg:dash:profile:isoff-live:2011"
_AUDIO_CHANNEL_SCHEME = "urn:mpeg:dash:23003:3:audio_channel_configuration:2011"

INIT_SEGMENT_NAME = "init.mp4"
MEDIA_PLAYLIST_NAME = "media.m3u8"


@dataclass(frozen=True, slots=True)
class PlannedRepresentation:
    """A representation together with its planned session groups."""

    stream_rep: StreamRepresentation
    sessions: Sequence[Sequence[Segment]]

    @property
    def segments(self) -> list[Segment]:
        return flatten(self.sessions)


def media_segment_name(segment_id: int) -> str:
    return f"{segment_id}.m4s"


def format_duration(seconds: float) -> str:
    """ISO 8601 duration as used by MPD attributes, e.g. PT1H2M3.500S."""
    millis = round(max(seconds, 0.0) * 1000)
    hours, millis = divmod(millis, 3_600_000)
    minutes, millis = divmod(millis, 60_000)
    out = "PT"
    if hours:
        out += f"{hours}H"
    if hours or minutes:
        out += f"{minutes}M"
    return out + f"{millis / 1000:.3f}S"


# ===========================================================================
# DASH
# ===========================================================================


def _segment_timeline(parent: ET.Element, segments: Sequence[Segment]) -> None:
    """Run-length encode segment durations as <S t d r> entries."""
    timeline = ET.SubElement(parent, "SegmentTimeline")
    run_start: Segment | None = None
    run_duration = 0
    repeat = 0
    for seg in segments:
        d = seg.interval.duration
        if run_start is not None and d == run_duration:
            repeat += 1
            continue
        if run_start is not None:
            _append_s(timeline, run_start, run_duration, repeat)
        run_start, run_duration, repeat = seg, d, 0
    if run_start is not None:
        _append_s(timeline, run_start, run_duration, repeat)


def _append_s(timeline: ET.Element, start: Segment, duration: int, repeat: int) -> None:
    attrs = {"t": str(start.interval.start), "d": str(duration)}
    if repeat:
        attrs["r"] = str(repeat)
    ET.SubElement(timeline, "S", attrs)


def _dash_representation(adaptation: ET.Element, planned: PlannedRepresentation) -> None:
    rep = planned.stream_rep.representation
    stream = planned.stream_rep.stream
    attrs = {
        "id": rep.representation_id,
        "bandwidth": str(rep.bit_rate),
        "codecs": rep.codecs,
        "mimeType": rep.container,
    }
    if stream.is_video and rep.height:
        if rep.width:
            attrs["width"] = str(rep.width)
        attrs["height"] = str(rep.height)
    elem = ET.SubElement(adaptation, "Representation", attrs)
    if stream.is_audio:
        channels = 2 if rep.transcoded else (stream.channels or 2)
        ET.SubElement(
            elem,
            "AudioChannelConfiguration",
            {"schemeIdUri": _AUDIO_CHANNEL_SCHEME, "value": str(channels)},
        )
    segments = planned.segments
    template = ET.SubElement(
        elem,
        "SegmentTemplate",
        {
            "timescale": str(segments[0].interval.time_base if segments else stream.time_base),
            "initialization": f"$RepresentationID$/{INIT_SEGMENT_NAME}",
            "media": "$RepresentationID$/$Number$.m4s",
            "startNumber": "0",
        },
    )
    _segment_timeline(template, segments)


def build_dash_manifest(planned: Sequence[PlannedRepresentation], total_duration: float) -> str:
    """Render a static MPD with one adaptation set per source stream."""
    mpd = ET.Element(
        "MPD",
        {
            "xmlns": DASH_NAMESPACE,
            "profiles": _DASH_PROFILE,
            "type": "static",
            "minBufferTime": "PT2.000S",
            "mediaPresentationDuration": format_duration(total_duration),
        },
    )
    period = ET.SubElement(mpd, "Period", {"id": "0", "start": "PT0S"})

    by_stream: dict[int, list[PlannedRepresentation]] = {}
    for p in planned:
        by_stream.setdefault(p.stream_rep.stream.index, []).append(p)

    for set_id, (_, reps) in enumerate(sorted(by_stream.items())):
        stream = reps[0].stream_rep.stream
        attrs = {
            "id": str(set_id),
            "contentType": stream.codec_type,
            "segmentAlignment": "true",
            "startWithSAP": "1",
        }
        if stream.is_audio and stream.language != "und":
            attrs["lang"] = stream.language
        adaptation = ET.SubElement(period, "AdaptationSet", attrs)
        for p in reps:
            _dash_representation(adaptation, p)

    ET.indent(mpd)
    body = ET.tostring(mpd, encoding="unicode")
    return '<?xml version="1.0" encoding="utf-8"?>\n' + body + "\n"


# ===========================================================================
# HLS
# ===========================================================================


def _hls_codecs(*reps: StreamRepresentation) -> str:
    return ",".join(r.representation.codecs for r in reps if r.representation.codecs)


def build_hls_master_playlist(planned: Sequence[PlannedRepresentation]) -> str:
    """Master playlist: audio representations as one rendition group."""
    video = [p for p in planned if p.stream_rep.stream.is_video]
    audio = [p for p in planned if p.stream_rep.stream.is_audio]
    lines = ["#EXTM3U", "#EXT-X-VERSION:7", "#EXT-X-INDEPENDENT-SEGMENTS"]

    for i, p in enumerate(audio):
        rep = p.stream_rep.representation
        stream = p.stream_rep.stream
        name = stream.title or f"{stream.language} {rep.bit_rate // 1000}k"
        lines.append(
            f'#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="audio",NAME="{name} ({rep.representation_id})",'
            f'LANGUAGE="{stream.language}",DEFAULT={"YES" if i == 0 else "NO"},'
            f'AUTOSELECT=YES,URI="{rep.representation_id}/{MEDIA_PLAYLIST_NAME}"'
        )

    if video:
        best_audio = max(audio, key=lambda p: p.stream_rep.representation.bit_rate, default=None)
        audio_rate = best_audio.stream_rep.representation.bit_rate if best_audio else 0
        for p in video:
            rep = p.stream_rep.representation
            codecs = _hls_codecs(p.stream_rep, *([best_audio.stream_rep] if best_audio else []))
            attrs = [f"BANDWIDTH={rep.bit_rate + audio_rate}", f'CODECS="{codecs}"']
            if rep.width and rep.height:
                attrs.append(f"RESOLUTION={rep.width}x{rep.height}")
            if audio:
                attrs.append('AUDIO="audio"')
            lines.append(f"#EXT-X-STREAM-INF:{','.join(attrs)}")
            lines.append(f"{rep.representation_id}/{MEDIA_PLAYLIST_NAME}")
    else:
        for p in audio:
            rep = p.stream_rep.representation
            lines.append(f'#EXT-X-STREAM-INF:BANDWIDTH={rep.bit_rate},CODECS="{rep.codecs}"')
            lines.append(f"{rep.representation_id}/{MEDIA_PLAYLIST_NAME}")
    return "\n".join(lines) + "\n"


def build_hls_media_playlist(planned: PlannedRepresentation) -> str:
    """fMP4 media playlist with exact per-segment durations."""
    segments = planned.segments
    max_duration = max((s.interval.duration_seconds() for s in segments), default=0.0)
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:7",
        f"#EXT-X-TARGETDURATION:{math.ceil(max_duration)}",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-PLAYLIST-TYPE:VOD",
        "#EXT-X-INDEPENDENT-SEGMENTS",
        f'#EXT-X-MAP:URI="{INIT_SEGMENT_NAME}"',
    ]
    for seg in segments:
        lines.append(f"#EXTINF:{seg.interval.duration_seconds():.6f},")
        lines.append(media_segment_name(seg.segment_id))
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"
