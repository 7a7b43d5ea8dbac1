"""Tests for DASH and HLS manifest rendering."""

from __future__ import annotations

import defusedxml.ElementTree as DET
import pytest

from manifest import (
    PlannedRepresentation,
    build_dash_manifest,
    build_hls_master_playlist,
    build_hls_media_playlist,
    format_duration,
)
from representation import representations_for
from segments import build_fixed_segments
from testing import make_audio_stream, make_video_stream


NS = {"mpd": "urn:mpeg:dash:schema:mpd:2011"}


def _planned(seconds: int = 13, per_session: int = 2) -> list[PlannedRepresentation]:
    planned = []
    for stream in (make_video_stream(0, seconds), make_audio_stream(1, seconds)):
        sessions = build_fixed_segments(stream.interval, 5.0, per_session)
        planned += [PlannedRepresentation(rep, sessions) for rep in representations_for(stream)]
    return planned


class TestFormatDuration:
    @pytest.mark.parametrize(
        "seconds,expected",
        [
            (13.0, "PT13.000S"),
            (0.0, "PT0.000S"),
            (61.25, "PT1M1.250S"),
            (3723.5, "PT1H2M3.500S"),
            (3600.0, "PT1H0M0.000S"),
        ],
    )
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestDashManifest:
    """Tests for build_dash_manifest."""

    def test_structure(self):
        root = DET.fromstring(build_dash_manifest(_planned(), 13.0))
        assert root.tag == "{urn:mpeg:dash:schema:mpd:2011}MPD"
        assert root.get("type") == "static"
        assert root.get("mediaPresentationDuration") == "PT13.000S"

        sets = root.findall("mpd:Period/mpd:AdaptationSet", NS)
        assert [s.get("contentType") for s in sets] == ["video", "audio"]
        assert sets[1].get("lang") == "eng"

        video_ids = [r.get("id") for r in sets[0].findall("mpd:Representation", NS)]
        assert video_ids == ["direct-0", "720-5000k-video-0", "480-1000k-video-0"]

    def test_representation_attributes(self):
        root = DET.fromstring(build_dash_manifest(_planned(), 13.0))
        reps = {r.get("id"): r for r in root.iter("{urn:mpeg:dash:schema:mpd:2011}Representation")}

        direct = reps["direct-0"]
        assert direct.get("bandwidth") == "4000000"
        assert direct.get("codecs") == "avc1.64001f"
        assert direct.get("mimeType") == "video/mp4"
        assert direct.get("height") == "720"

        audio = reps["128k-audio-1"]
        assert audio.get("bandwidth") == "128000"
        assert audio.get("mimeType") == "audio/mp4"
        channels = audio.find("mpd:AudioChannelConfiguration", NS)
        assert channels is not None
        assert channels.get("value") == "2"

        source_channels = reps["direct-1"].find("mpd:AudioChannelConfiguration", NS)
        assert source_channels.get("value") == "6"

    def test_segment_timeline(self):
        root = DET.fromstring(build_dash_manifest(_planned(), 13.0))
        rep = next(
            r
            for r in root.iter("{urn:mpeg:dash:schema:mpd:2011}Representation")
            if r.get("id") == "direct-0"
        )
        template = rep.find("mpd:SegmentTemplate", NS)
        assert template.get("timescale") == "90000"
        assert template.get("startNumber") == "0"
        assert template.get("initialization") == "$RepresentationID$/init.mp4"
        assert template.get("media") == "$RepresentationID$/$Number$.m4s"

        entries = [dict(s.attrib) for s in template.findall("mpd:SegmentTimeline/mpd:S", NS)]
        assert entries == [
            {"t": "0", "d": "450000", "r": "1"},
            {"t": "900000", "d": "270000"},
        ]

    def test_timeline_spans_sessions(self):
        # Grouping into sessions must not show up in the timeline
        one = build_dash_manifest(_planned(per_session=1), 13.0)
        many = build_dash_manifest(_planned(per_session=60), 13.0)
        assert one == many

    def test_deterministic(self):
        assert build_dash_manifest(_planned(), 13.0) == build_dash_manifest(_planned(), 13.0)


class TestHlsPlaylists:
    """Tests for HLS master and media playlists."""

    def test_master(self):
        text = build_hls_master_playlist(_planned())
        lines = text.splitlines()
        assert lines[0] == "#EXTM3U"
        media = [line for line in lines if line.startswith("#EXT-X-MEDIA:")]
        assert len(media) == 3
        assert 'URI="direct-1/media.m3u8"' in media[0]
        assert "DEFAULT=YES" in media[0]
        assert all("DEFAULT=NO" in m for m in media[1:])

        stream_infs = [i for i, line in enumerate(lines) if line.startswith("#EXT-X-STREAM-INF:")]
        assert len(stream_infs) == 3
        first = lines[stream_infs[0]]
        # Best audio (passthrough 192k) is added to the video bandwidth
        assert "BANDWIDTH=4192000" in first
        assert 'CODECS="avc1.64001f,mp4a.40.2"' in first
        assert 'AUDIO="audio"' in first
        assert lines[stream_infs[0] + 1] == "direct-0/media.m3u8"

    def test_audio_only_master(self):
        stream = make_audio_stream(0)
        sessions = build_fixed_segments(stream.interval, 5.0, 60)
        planned = [PlannedRepresentation(rep, sessions) for rep in representations_for(stream)]
        lines = build_hls_master_playlist(planned).splitlines()
        assert "direct-0/media.m3u8" in lines
        assert any(line.startswith("#EXT-X-STREAM-INF:BANDWIDTH=64000") for line in lines)

    def test_media(self):
        planned = _planned()[0]
        lines = build_hls_media_playlist(planned).splitlines()
        assert "#EXT-X-TARGETDURATION:5" in lines
        assert "#EXT-X-PLAYLIST-TYPE:VOD" in lines
        assert '#EXT-X-MAP:URI="init.mp4"' in lines
        assert [line for line in lines if line.startswith("#EXTINF")] == [
            "#EXTINF:5.000000,",
            "#EXTINF:5.000000,",
            "#EXTINF:3.000000,",
        ]
        assert [line for line in lines if line.endswith(".m4s")] == ["0.m4s", "1.m4s", "2.m4s"]
        assert lines[-1] == "#EXT-X-ENDLIST"


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
