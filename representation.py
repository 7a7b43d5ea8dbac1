"""Representations: the deliverable variants of each source stream."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import logging

from errors import InvalidRepresentationIdError, StreamNotFoundError, UnknownPresetError
from ffprobe import MediaFile, Stream


log = logging.getLogger(__name__)

REPRESENTATION_ID_SEPARATOR = "-"
PASSTHROUGH_BASE = "direct"

PresetKind = Literal["audio", "video"]


@dataclass(frozen=True, slots=True)
class EncoderPreset:
    name: str
    kind: PresetKind
    bit_rate: int
    codecs: str
    encoder_args: tuple[str, ...]
    height: int = 0  # video only, target output height


@dataclass(frozen=True, slots=True)
class Representation:
    representation_id: str
    bit_rate: int
    container: str  # MIME type
    codecs: str
    transcoded: bool
    preset_name: str | None = None
    width: int = 0
    height: int = 0


@dataclass(frozen=True, slots=True)
class StreamRepresentation:
    stream: Stream
    representation: Representation

    @property
    def representation_id(self) -> str:
        return self.representation.representation_id


def _audio_preset(name: str, bit_rate: int) -> EncoderPreset:
    return EncoderPreset(
        name=name,
        kind="audio",
        bit_rate=bit_rate,
        codecs="mp4a.40.2",
        encoder_args=("-c:a", "aac", "-ac", "2", "-b:a", str(bit_rate), "-profile:a", "aac_low"),
    )


def _video_preset(name: str, height: int, bit_rate: int, codecs: str) -> EncoderPreset:
    return EncoderPreset(
        name=name,
        kind="video",
        bit_rate=bit_rate,
        codecs=codecs,
        height=height,
        encoder_args=(
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-profile:v",
            "high",
            "-pix_fmt",
            "yuv420p",
            "-b:v",
            str(bit_rate),
            "-maxrate",
            str(bit_rate),
            "-bufsize",
            str(bit_rate * 2),
            "-sc_threshold",
            "0",
        ),
    )


ENCODER_PRESETS: dict[str, EncoderPreset] = {
    p.name: p
    for p in (
        _audio_preset("64k-audio", 64_000),
        _audio_preset("128k-audio", 128_000),
        _video_preset("480-1000k-video", 480, 1_000_000, "avc1.64001e"),
        _video_preset("720-5000k-video", 720, 5_000_000, "avc1.64001f"),
        _video_preset("1080-10000k-video", 1080, 10_000_000, "avc1.640028"),
    )
}


def get_preset(name: str) -> EncoderPreset:
    preset = ENCODER_PRESETS.get(name)
    if preset is None:
        raise UnknownPresetError(name)
    return preset


# ===========================================================================
# Representation IDs
# ===========================================================================


def join_representation_id(base: str, stream_id: int | str) -> str:
    return f"{base}{REPRESENTATION_ID_SEPARATOR}{stream_id}"


def split_representation_id(representation_id: str) -> tuple[str, str]:
    """Split "base-streamId" on the last separator (bases like "128k-audio" contain one)."""
    base, sep, stream_id = representation_id.rpartition(REPRESENTATION_ID_SEPARATOR)
    if not sep:
        raise InvalidRepresentationIdError(representation_id)
    return base, stream_id


def parse_representation_id(representation_id: str) -> tuple[str, int]:
    """Split and validate that the stream id is a non-negative integer."""
    base, stream_id = split_representation_id(representation_id)
    if not base or not stream_id.isdigit():
        raise InvalidRepresentationIdError(representation_id)
    return base, int(stream_id)


# ===========================================================================
# Catalog
# ===========================================================================


def _mime_type(stream: Stream) -> str:
    return "video/mp4" if stream.is_video else "audio/mp4"


def passthrough_representation(stream: Stream) -> StreamRepresentation:
    return StreamRepresentation(
        stream=stream,
        representation=Representation(
            representation_id=join_representation_id(PASSTHROUGH_BASE, stream.index),
            bit_rate=stream.bit_rate,
            container=_mime_type(stream),
            codecs=stream.codecs,
            transcoded=False,
            width=stream.width,
            height=stream.height,
        ),
    )


def _scaled_size(stream: Stream, target_height: int) -> tuple[int, int]:
    """Output size for a video preset: never upscale, keep width even."""
    height = min(target_height, stream.height) if stream.height else target_height
    if not stream.width or not stream.height:
        return 0, height
    width = round(stream.width * height / stream.height)
    return width - width % 2, height


def transcoded_representation(stream: Stream, preset_name: str) -> StreamRepresentation:
    preset = get_preset(preset_name)
    width = height = 0
    if preset.kind == "video":
        width, height = _scaled_size(stream, preset.height)
    return StreamRepresentation(
        stream=stream,
        representation=Representation(
            representation_id=join_representation_id(preset.name, stream.index),
            bit_rate=preset.bit_rate,
            container=_mime_type(stream),
            codecs=preset.codecs,
            transcoded=True,
            preset_name=preset.name,
            width=width,
            height=height,
        ),
    )


def representations_for(stream: Stream) -> list[StreamRepresentation]:
    """Passthrough plus every applicable preset, highest bitrate first."""
    if not (stream.is_video or stream.is_audio):
        return []
    reps = [passthrough_representation(stream)]
    presets = sorted(
        (p for p in ENCODER_PRESETS.values() if p.kind == stream.codec_type),
        key=lambda p: p.bit_rate,
        reverse=True,
    )
    for preset in presets:
        if preset.kind == "video" and stream.height and preset.height > stream.height:
            continue
        reps.append(transcoded_representation(stream, preset.name))
    return reps


def find_representation(media_file: MediaFile, representation_id: str) -> StreamRepresentation:
    base, stream_index = parse_representation_id(representation_id)
    stream = media_file.stream(stream_index)
    if stream is None or not (stream.is_video or stream.is_audio):
        raise StreamNotFoundError(media_file.path, stream_index)
    if base == PASSTHROUGH_BASE:
        return passthrough_representation(stream)
    preset = get_preset(base)
    if preset.kind != stream.codec_type:
        raise UnknownPresetError(f"{base} (not applicable to {stream.codec_type} streams)")
    return transcoded_representation(stream, base)
