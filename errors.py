"""Transcoder error types.

All errors inherit from TranscoderError. The HTTP layer maps them to status
codes; nothing below it knows about HTTP.
"""

from __future__ import annotations


class TranscoderError(Exception):
    """Base exception for all transcoding engine failures."""


class ProbeError(TranscoderError):
    """ffprobe failed, produced garbage, or the file is unreadable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to probe {path}: {reason}")


class UnknownPresetError(TranscoderError):
    def __init__(self, preset_name: str):
        self.preset_name = preset_name
        super().__init__(f"Unknown encoder preset: {preset_name}")


class InvalidRepresentationIdError(TranscoderError, ValueError):
    def __init__(self, representation_id: str):
        self.representation_id = representation_id
        super().__init__(
            f"Invalid representation id {representation_id!r}, "
            "should be representationIdBase-streamId"
        )


class StreamNotFoundError(TranscoderError):
    def __init__(self, path: str, stream_index: int):
        self.path = path
        self.stream_index = stream_index
        super().__init__(f"No stream {stream_index} in {path}")


class SegmentNotFoundError(TranscoderError):
    """Requested segment id lies outside the planned timeline."""

    def __init__(self, segment_id: int):
        self.segment_id = segment_id
        super().__init__(f"No such segment: {segment_id}")


class MediaNotFoundError(TranscoderError):
    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"Media file not found: {file_id}")


class SessionCreateError(TranscoderError):
    """Could not allocate resources (e.g. temp dir) for a session. Retriable."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to create transcoding session: {reason}")


class SessionStartError(TranscoderError):
    """Encoder process failed to launch. Terminal for that session."""

    def __init__(self, session_name: str, reason: str):
        self.session_name = session_name
        self.reason = reason
        super().__init__(f"Failed to start transcoding session {session_name}: {reason}")


class SegmentTimeoutError(TranscoderError):
    def __init__(self, what: str, timeout: float):
        self.what = what
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for {what}")
