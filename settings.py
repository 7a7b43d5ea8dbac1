"""Server settings: JSON file with environment overrides."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

import json
import logging
import os
import pathlib
import tempfile

from segments import DEFAULT_SEGMENT_DURATION_SEC, DEFAULT_SEGMENTS_PER_SESSION


log = logging.getLogger(__name__)

# Environment variable -> (settings key, converter)
_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "TRANSCODER_MEDIA_DIR": ("media_dir", str),
    "TRANSCODER_TRANSCODE_DIR": ("transcode_dir", str),
    "TRANSCODER_PORT": ("port", int),
    "TRANSCODER_LOG_LEVEL": ("log_level", str),
}


@dataclass(frozen=True, slots=True)
class SegmentTimeouts:
    """How long a segment request may wait on the encoder.

    A request that had to spawn the encoder pays its startup cost, so it gets
    the longer startup budget. Every other request uses the steady one.
    """

    startup_sec: float = 30.0
    steady_sec: float = 10.0

    def for_request(self, created_session: bool) -> float:
        return self.startup_sec if created_session else self.steady_sec


@dataclass(slots=True)
class Settings:
    media_dir: str = "."
    transcode_dir: str = ""  # empty: system temp dir
    segment_duration_sec: float = DEFAULT_SEGMENT_DURATION_SEC
    segments_per_session: int = DEFAULT_SEGMENTS_PER_SESSION
    startup_timeout_sec: float = 30.0
    segment_timeout_sec: float = 10.0
    warmup_sec: float = 0.0
    session_idle_sec: float = 300.0
    reap_interval_sec: float = 30.0
    probe_cache_ttl_sec: float = 600.0
    probe_workers: int = 4
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def timeouts(self) -> SegmentTimeouts:
        return SegmentTimeouts(self.startup_timeout_sec, self.segment_timeout_sec)

    def transcode_base_dir(self) -> pathlib.Path:
        """Directory that holds per-session output dirs."""
        base = pathlib.Path(self.transcode_dir or tempfile.gettempdir())
        base.mkdir(parents=True, exist_ok=True)
        return base

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("extra")
        return data


_DEFAULTS = Settings()


def settings_from_dict(data: dict[str, Any]) -> Settings:
    """Build Settings from a dict, keeping defaults for missing keys.

    Unknown keys are kept in `extra` so a shared settings file does not fail.
    """
    known = set(_DEFAULTS.to_dict())
    return Settings(
        media_dir=str(data.get("media_dir", _DEFAULTS.media_dir)),
        transcode_dir=str(data.get("transcode_dir", _DEFAULTS.transcode_dir) or ""),
        segment_duration_sec=float(
            data.get("segment_duration_sec", _DEFAULTS.segment_duration_sec)
        ),
        segments_per_session=int(
            data.get("segments_per_session", _DEFAULTS.segments_per_session)
        ),
        startup_timeout_sec=float(data.get("startup_timeout_sec", _DEFAULTS.startup_timeout_sec)),
        segment_timeout_sec=float(data.get("segment_timeout_sec", _DEFAULTS.segment_timeout_sec)),
        warmup_sec=float(data.get("warmup_sec", _DEFAULTS.warmup_sec)),
        session_idle_sec=float(data.get("session_idle_sec", _DEFAULTS.session_idle_sec)),
        reap_interval_sec=float(data.get("reap_interval_sec", _DEFAULTS.reap_interval_sec)),
        probe_cache_ttl_sec=float(data.get("probe_cache_ttl_sec", _DEFAULTS.probe_cache_ttl_sec)),
        probe_workers=int(data.get("probe_workers", _DEFAULTS.probe_workers)),
        host=str(data.get("host", _DEFAULTS.host)),
        port=int(data.get("port", _DEFAULTS.port)),
        log_level=str(data.get("log_level", _DEFAULTS.log_level)).upper(),
        extra={k: v for k, v in data.items() if k not in known},
    )


def _apply_env(data: dict[str, Any], environ: Mapping[str, str]) -> None:
    for var, (key, convert) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        try:
            data[key] = convert(value)
        except ValueError:
            log.warning("Ignoring invalid %s=%r", var, value)


def load_settings(
    path: str | pathlib.Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from a JSON file (if it exists) and the environment."""
    data: dict[str, Any] = {}
    if path is not None:
        settings_file = pathlib.Path(path)
        if settings_file.exists():
            try:
                loaded = json.loads(settings_file.read_text())
            except json.JSONDecodeError as e:
                raise ValueError(f"Malformed settings file {settings_file}: {e}") from e
            if not isinstance(loaded, dict):
                raise ValueError(f"Settings file {settings_file} must hold a JSON object")
            data.update(loaded)
        else:
            log.info("Settings file %s not found, using defaults", settings_file)
    _apply_env(data, os.environ if environ is None else environ)
    settings = settings_from_dict(data)
    if settings.segment_duration_sec <= 0:
        raise ValueError("segment_duration_sec must be positive")
    if settings.segments_per_session <= 0:
        raise ValueError("segments_per_session must be positive")
    return settings
