"""HTTP segment server: manifests and on-demand transcoded segments."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any

import argparse
import asyncio
import logging
import pathlib

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, Response

import uvicorn

from batch import map_bounded
from errors import (
    InvalidRepresentationIdError,
    MediaNotFoundError,
    ProbeError,
    SegmentNotFoundError,
    SegmentTimeoutError,
    SessionCreateError,
    SessionStartError,
    StreamNotFoundError,
    TranscoderError,
    UnknownPresetError,
)
from ffprobe import MediaFile, ProbeCache, Stream
from library import DirectoryLibrary
from manifest import (
    PlannedRepresentation,
    build_dash_manifest,
    build_hls_master_playlist,
    build_hls_media_playlist,
)
from representation import find_representation, parse_representation_id, representations_for
from segments import (
    Segment,
    build_fixed_segments,
    build_keyframe_segments,
    find_session,
    total_duration_seconds,
)
from session_registry import IdlePolicy, SessionKey, SessionRegistry
from settings import Settings, load_settings
from transcode_session import TranscodingSession, wait_for_exits


log = logging.getLogger(__name__)

_DASH_MEDIA_TYPE = "application/dash+xml"
_HLS_MEDIA_TYPE = "application/vnd.apple.mpegurl"


# ===========================================================================
# Planning
# ===========================================================================


@dataclass(slots=True)
class MediaPlan:
    media_file: MediaFile
    representations: dict[str, PlannedRepresentation]
    total_duration: float

    @property
    def planned(self) -> list[PlannedRepresentation]:
        return list(self.representations.values())


def _playable(stream: Stream) -> bool:
    return (stream.is_video or stream.is_audio) and stream.interval is not None


def build_plan(path: str, probe_cache: ProbeCache, settings: Settings) -> MediaPlan:
    """Probe a file and plan segments for every representation. Blocking."""
    media_file = probe_cache.probe(path)
    streams = [s for s in media_file.streams if _playable(s)]
    if not streams:
        raise ProbeError(path, "no playable audio or video streams")

    video = [s for s in streams if s.is_video]
    keyframes = dict(
        zip(
            (s.index for s in video),
            map_bounded(lambda s: probe_cache.keyframes(path, s), video, settings.probe_workers),
        )
    )

    representations: dict[str, PlannedRepresentation] = {}
    durations = []
    for stream in streams:
        assert stream.interval is not None
        if stream.is_video:
            sessions = build_keyframe_segments(
                stream.interval,
                keyframes[stream.index],
                settings.segment_duration_sec,
                settings.segments_per_session,
            )
        else:
            sessions = build_fixed_segments(
                stream.interval, settings.segment_duration_sec, settings.segments_per_session
            )
        durations.append(total_duration_seconds(sessions))
        # Every representation of one stream shares its boundaries
        for stream_rep in representations_for(stream):
            representations[stream_rep.representation_id] = PlannedRepresentation(
                stream_rep, sessions
            )

    total = media_file.duration if media_file.duration > 0 else max(durations)
    return MediaPlan(media_file, representations, total)


def _seconds_from_stream_start(segment: Segment, stream: Stream) -> float:
    """Offset of a segment from the stream's first pts, as ffmpeg -ss expects."""
    assert stream.interval is not None
    return (segment.interval.start - stream.interval.start) / segment.interval.time_base


def session_factory(
    planned: PlannedRepresentation,
    group: list[Segment],
    source_path: str,
    settings: Settings,
    is_last_group: bool,
) -> TranscodingSession:
    """Create (but do not start) the session producing one group of segments."""
    stream = planned.stream_rep.stream
    start = _seconds_from_stream_start(group[0], stream)
    end = None
    if not is_last_group:
        last = group[-1]
        end = start + (last.interval.end - group[0].interval.start) / last.interval.time_base
    keyframe_times = None
    if stream.is_video and planned.stream_rep.representation.transcoded:
        keyframe_times = [_seconds_from_stream_start(s, stream) for s in group]
    return TranscodingSession.create(
        planned.stream_rep,
        source_path,
        settings.transcode_base_dir(),
        start,
        group[0].segment_id,
        settings.segment_duration_sec,
        end_timestamp=end,
        keyframe_times=keyframe_times,
    )


# ===========================================================================
# Error Mapping
# ===========================================================================


def http_error(e: TranscoderError) -> HTTPException:
    """Translate an engine error into the HTTP status a client should see."""
    if isinstance(e, InvalidRepresentationIdError):
        return HTTPException(400, str(e))
    if isinstance(
        e, (MediaNotFoundError, SegmentNotFoundError, StreamNotFoundError, UnknownPresetError)
    ):
        return HTTPException(404, str(e))
    if isinstance(e, ProbeError):
        return HTTPException(502, "Failed to probe media file")
    if isinstance(e, SessionCreateError):
        return HTTPException(503, "Transcoder is busy, retry later", headers={"Retry-After": "1"})
    if isinstance(e, SegmentTimeoutError):
        return HTTPException(504, str(e))
    if isinstance(e, SessionStartError):
        return HTTPException(500, "Failed to start transcoder")
    return HTTPException(500, str(e))


# ===========================================================================
# Application
# ===========================================================================


async def _reap_loop(registry: SessionRegistry, policy: IdlePolicy, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            registry.reap(policy)
        except Exception:
            log.exception("Session reaper failed")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    registry = SessionRegistry()
    probe_cache = ProbeCache(settings.probe_cache_ttl_sec)
    library = DirectoryLibrary(settings.media_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        registry.sweep_orphans(settings.transcode_base_dir())
        reaper = asyncio.create_task(
            _reap_loop(registry, IdlePolicy(settings.session_idle_sec), settings.reap_interval_sec)
        )
        try:
            yield
        finally:
            reaper.cancel()
            with suppress(asyncio.CancelledError):
                await reaper
            registry.destroy_all()
            await wait_for_exits()

    app = FastAPI(title="transcoder", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.probe_cache = probe_cache
    app.state.library = library

    async def plan_for(file: str) -> tuple[pathlib.Path, MediaPlan]:
        try:
            path = library.find_media_file(file)
            plan = await asyncio.to_thread(build_plan, str(path), probe_cache, settings)
        except TranscoderError as e:
            log.warning("Planning %s failed: %s", file, e)
            raise http_error(e) from e
        return path, plan

    async def planned_for(file: str, representation_id: str):
        """Resolve (path, plan, planned representation) for a request."""
        try:
            parse_representation_id(representation_id)
        except InvalidRepresentationIdError as e:
            raise http_error(e) from e
        path, plan = await plan_for(file)
        planned = plan.representations.get(representation_id)
        if planned is None:
            try:
                # Distinguishes an unknown preset/stream from one not offered for this file
                find_representation(plan.media_file, representation_id)
            except TranscoderError as e:
                raise http_error(e) from e
            raise HTTPException(404, f"Representation {representation_id} not available")
        return path, plan, planned

    async def acquire_session(
        path: pathlib.Path, planned: PlannedRepresentation, segment_id: int
    ) -> tuple[SessionKey, TranscodingSession, bool]:
        try:
            group = list(find_session(planned.sessions, segment_id))
        except SegmentNotFoundError as e:
            raise http_error(e) from e
        is_last = planned.sessions[-1][0].segment_id == group[0].segment_id
        key = SessionKey(str(path), planned.stream_rep.representation_id, group[0].segment_id)
        try:
            session, created = registry.get_or_create(
                key, lambda: session_factory(planned, group, str(path), settings, is_last)
            )
        except SessionCreateError as e:
            log.error("Could not create session for %s: %s", key, e)
            raise http_error(e) from e
        if created:
            try:
                await session.start()
            except SessionStartError as e:
                log.error("%s", e)
                registry.remove(key)
                raise http_error(e) from e
            if settings.warmup_sec > 0:
                await asyncio.sleep(settings.warmup_sec)
        return key, session, created

    def existing_session(
        path: pathlib.Path, representation_id: str
    ) -> tuple[SessionKey, TranscodingSession] | None:
        for key in registry.keys():
            if key.media_path == str(path) and key.representation_id == representation_id:
                session = registry.get(key)
                if session is not None and session.state == "running":
                    return key, session
        return None

    def timed_out(
        key: SessionKey, session: TranscodingSession, e: SegmentTimeoutError
    ) -> HTTPException:
        """Evict a session whose encoder exited without producing the file."""
        if session.process_exited() and registry.remove(key, expected=session):
            log.warning("Evicted exited session %s for %s", session.name, key)
        return http_error(e)

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "sessions": len(registry)}

    @app.get("/probe-cache")
    async def get_probe_cache() -> dict[str, Any]:
        return probe_cache.stats()

    @app.post("/probe-cache/clear")
    async def clear_probe_cache() -> dict[str, Any]:
        return {"cleared": probe_cache.clear()}

    @app.post("/sessions/clear")
    async def clear_sessions() -> dict[str, Any]:
        return {"destroyed": registry.destroy_all()}

    @app.get("/{file:path}/{session_id}/manifest.mpd")
    async def dash_manifest(file: str, session_id: str) -> Response:
        _, plan = await plan_for(file)
        log.info("DASH manifest for %s (playback %s)", file, session_id)
        body = build_dash_manifest(plan.planned, plan.total_duration)
        return Response(body, media_type=_DASH_MEDIA_TYPE)

    @app.get("/{file:path}/{session_id}/master.m3u8")
    async def hls_master(file: str, session_id: str) -> Response:
        _, plan = await plan_for(file)
        log.info("HLS master playlist for %s (playback %s)", file, session_id)
        return Response(build_hls_master_playlist(plan.planned), media_type=_HLS_MEDIA_TYPE)

    @app.get("/{file:path}/{session_id}/{representation_id}/media.m3u8")
    async def hls_media(file: str, session_id: str, representation_id: str) -> Response:
        _, _, planned = await planned_for(file, representation_id)
        return Response(build_hls_media_playlist(planned), media_type=_HLS_MEDIA_TYPE)

    @app.get("/{file:path}/{session_id}/{representation_id}/init.mp4")
    async def init_segment(
        request: Request,
        file: str,
        session_id: str,
        representation_id: str,
        segment: int = Query(0, ge=0),
    ) -> FileResponse:
        path, _, planned = await planned_for(file, representation_id)
        stream_rep = planned.stream_rep
        created = False
        found = None
        if "segment" not in request.query_params:
            # Any running session of this representation has the same init segment
            found = existing_session(path, representation_id)
        if found is None:
            key, session, created = await acquire_session(path, planned, segment)
        else:
            key, session = found
        try:
            out = await session.initial_segment(
                stream_rep.stream.index, settings.timeouts.for_request(created)
            )
        except SegmentTimeoutError as e:
            raise timed_out(key, session, e) from e
        return FileResponse(out, media_type=stream_rep.representation.container)

    @app.get("/{file:path}/{session_id}/{representation_id}/{segment_id}.m4s")
    async def media_segment(
        file: str, session_id: str, representation_id: str, segment_id: int
    ) -> FileResponse:
        path, _, planned = await planned_for(file, representation_id)
        stream_rep = planned.stream_rep
        key, session, created = await acquire_session(path, planned, segment_id)
        log.debug(
            "Segment %d of %s for %s (playback %s, session %s)",
            segment_id,
            representation_id,
            file,
            session_id,
            session.name,
        )
        try:
            out = await session.get_segment(
                stream_rep.stream.index, segment_id, settings.timeouts.for_request(created)
            )
        except SegmentTimeoutError as e:
            raise timed_out(key, session, e) from e
        return FileResponse(out, media_type=stream_rep.representation.container)

    return app


# ===========================================================================
# Entry Point
# ===========================================================================


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="On-demand DASH/HLS transcoding server.")
    _ = parser.add_argument(
        "--settings",
        dest="settings",
        type=str,
        default="settings.json",
        help="Path to a JSON settings file.",
    )
    _ = parser.add_argument("--host", dest="host", type=str, default=None, help="Bind address.")
    _ = parser.add_argument("--port", dest="port", type=int, default=None, help="Bind port.")
    _ = parser.add_argument(
        "--media-dir",
        dest="media_dir",
        type=str,
        default=None,
        help="Directory holding the media library.",
    )
    _ = parser.add_argument(
        "--log-level",
        dest="log_level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = load_settings(args.settings)
    for name in ("host", "port", "media_dir", "log_level"):
        value = getattr(args, name)
        if value is not None:
            setattr(settings, name, value)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("Serving %s on %s:%d", settings.media_dir, settings.host, settings.port)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
