"""
Tests for master manifest generation.
"""
import xml.etree.ElementTree as ET

import pytest

from vidstream.app.models import OutputFile, OutputFormat, TranscodingJob
from vidstream.app.services.ffmpeg_service import ThumbnailTrack
from vidstream.app.services.manifest_service import DASH_NAMESPACE, ManifestService
from vidstream.app.services.quality_profile_service import QUALITY_PROFILES

ROOT = "transcoded/video-1/job-1"
NS = {"mpd": DASH_NAMESPACE}


def _job(duration=125.5):
    return TranscodingJob(id="job-1", video_id="video-1", output_root=ROOT, source_duration=duration)


def _output(name, fmt, with_audio=True):
    profile = QUALITY_PROFILES[name]
    manifest = {"hls": "playlist.m3u8", "dash": "manifest.mpd"}.get(fmt)
    path = f"{ROOT}/{fmt}/{name}/{manifest or name + '.mp4'}"
    return OutputFile(
        job_id="job-1",
        profile=name,
        format=OutputFormat(fmt),
        storage_path=path,
        manifest_path=path if manifest else None,
        file_size=1000,
        bitrate=profile.bitrate,
        segment_count=3,
        width=profile.width,
        height=profile.height,
        codecs=profile.codecs if with_audio else profile.video_codec,
    )


class TestHLSMaster:

    def test_variants_highest_bandwidth_first(self):
        outputs = [_output(n, "hls") for n in ("240p", "1080p", "480p", "720p")]

        playlist = ManifestService().build_hls_master(_job(), outputs)
        lines = playlist.splitlines()

        assert lines[:3] == ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
        stream_infs = [l for l in lines if l.startswith("#EXT-X-STREAM-INF")]
        assert len(stream_infs) == 4
        assert stream_infs[0] == (
            '#EXT-X-STREAM-INF:BANDWIDTH=5192000,RESOLUTION=1920x1080,CODECS="avc1.640028,mp4a.40.2"'
        )
        assert "RESOLUTION=426x240" in stream_infs[-1]
        uris = [l for l in lines if l and not l.startswith("#")]
        assert uris == [
            "hls/1080p/playlist.m3u8", "hls/720p/playlist.m3u8",
            "hls/480p/playlist.m3u8", "hls/240p/playlist.m3u8",
        ]

    def test_each_variant_line_follows_its_uri(self):
        outputs = [_output(n, "hls") for n in ("360p", "720p")]

        lines = ManifestService().build_hls_master(_job(), outputs).splitlines()

        for i, line in enumerate(lines):
            if line.startswith("#EXT-X-STREAM-INF"):
                assert not lines[i + 1].startswith("#")

    def test_other_formats_are_ignored(self):
        outputs = [_output("720p", "hls"), _output("720p", "dash"), _output("720p", "mp4")]

        playlist = ManifestService().build_hls_master(_job(), outputs)

        assert playlist.count("#EXT-X-STREAM-INF") == 1

    def test_is_deterministic(self):
        outputs = [_output(n, "hls") for n in ("240p", "720p", "480p")]
        service = ManifestService()

        assert service.build_hls_master(_job(), outputs) == service.build_hls_master(_job(), list(reversed(outputs)))

    def test_duplicate_rendition_rejected(self):
        outputs = [_output("720p", "hls"), _output("720p", "hls")]

        with pytest.raises(ValueError, match="Duplicate"):
            ManifestService().build_hls_master(_job(), outputs)


class TestDashManifest:

    def _parse(self, body):
        assert body.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        return ET.fromstring(body.split("\n", 1)[1])

    def test_structure(self):
        outputs = [_output(n, "dash") for n in ("720p", "240p", "480p")]

        mpd = self._parse(ManifestService(dash_segment_duration=4).build_dash(_job(), outputs))

        assert mpd.get("type") == "static"
        assert mpd.get("mediaPresentationDuration") == "PT125.5S"
        assert mpd.get("minBufferTime") == "PT4S"
        adaptation_sets = mpd.findall("mpd:Period/mpd:AdaptationSet", NS)
        assert [a.get("contentType") for a in adaptation_sets] == ["video", "audio"]

        video = adaptation_sets[0].findall("mpd:Representation", NS)
        assert [r.get("id") for r in video] == ["240p", "480p", "720p"]
        assert video[0].get("bandwidth") == str(QUALITY_PROFILES["240p"].video_bitrate * 1000)
        assert video[2].get("width") == "1280"
        assert video[2].get("codecs") == "avc1.640028"

        audio = adaptation_sets[1].findall("mpd:Representation", NS)
        assert [r.get("id") for r in audio] == ["240p-audio", "480p-audio", "720p-audio"]
        assert audio[0].get("bandwidth") == "64000"
        assert {r.get("codecs") for r in audio} == {"mp4a.40.2"}
        assert adaptation_sets[1].get("audioSamplingRate") == "48000"
        channels = adaptation_sets[1].find("mpd:AudioChannelConfiguration", NS)
        assert channels.get("value") == "2"

    def test_audio_representation_addresses_stream_one(self):
        mpd = self._parse(ManifestService().build_dash(_job(), [_output("480p", "dash")]))

        audio_set = mpd.findall("mpd:Period/mpd:AdaptationSet", NS)[1]
        representation = audio_set.find("mpd:Representation", NS)
        assert representation.find("mpd:BaseURL", NS).text == "dash/480p/"
        template = representation.find("mpd:SegmentTemplate", NS)
        assert template.get("initialization") == "init_1.m4s"
        assert template.get("media") == "chunk_1_$Number$.m4s"

    def test_silent_source_has_no_audio_set(self):
        outputs = [_output(n, "dash", with_audio=False) for n in ("240p", "480p")]

        mpd = self._parse(ManifestService().build_dash(_job(), outputs))

        adaptation_sets = mpd.findall("mpd:Period/mpd:AdaptationSet", NS)
        assert len(adaptation_sets) == 1
        representations = adaptation_sets[0].findall("mpd:Representation", NS)
        assert representations[0].get("bandwidth") == str(QUALITY_PROFILES["240p"].bitrate * 1000)
        assert representations[0].get("codecs") == "avc1.42E01E"

    def test_representation_addresses_its_own_segments(self):
        mpd = self._parse(ManifestService().build_dash(_job(), [_output("480p", "dash")]))

        representation = mpd.find("mpd:Period/mpd:AdaptationSet/mpd:Representation", NS)
        assert representation.find("mpd:BaseURL", NS).text == "dash/480p/"
        template = representation.find("mpd:SegmentTemplate", NS)
        assert template.get("initialization") == "init_0.m4s"
        assert template.get("media") == "chunk_0_$Number$.m4s"
        assert template.get("duration") == "4000"
        assert template.get("timescale") == "1000"

    def test_hls_outputs_are_ignored(self):
        outputs = [_output("480p", "dash"), _output("480p", "hls")]

        mpd = self._parse(ManifestService().build_dash(_job(), outputs))

        assert len(mpd.findall(".//mpd:Representation", NS)) == 2
        assert len(mpd.findall("mpd:Period/mpd:AdaptationSet/mpd:Representation", NS)) == 2

    def test_whole_second_duration(self):
        mpd = self._parse(ManifestService().build_dash(_job(duration=60.0), [_output("480p", "dash")]))

        assert mpd.get("mediaPresentationDuration") == "PT60S"

    def test_is_deterministic(self):
        outputs = [_output(n, "dash") for n in ("240p", "720p")]
        service = ManifestService()

        assert service.build_dash(_job(), outputs) == service.build_dash(_job(), outputs[::-1])

    def test_duplicate_rendition_rejected(self):
        with pytest.raises(ValueError):
            ManifestService().build_dash(_job(), [_output("480p", "dash"), _output("480p", "dash")])


class TestThumbnailTrack:

    def _track(self, count, duration, columns=5):
        return ThumbnailTrack(
            output_dir="/tmp/thumbs",
            thumbnails=[f"/tmp/thumbs/thumb_{i:03d}.jpg" for i in range(count)],
            sprite_path="/tmp/thumbs/sprite.jpg",
            interval=10.0,
            duration=duration,
            columns=columns,
            width=160,
            height=90,
        )

    def test_cues_map_to_sprite_tiles(self):
        vtt = ManifestService().build_thumbnail_vtt(self._track(7, 65.5))

        assert vtt.splitlines()[:4] == [
            "WEBVTT",
            "",
            "00:00:00.000 --> 00:00:10.000",
            "sprite.jpg#xywh=0,0,160,90",
        ]
        assert "00:00:40.000 --> 00:00:50.000\nsprite.jpg#xywh=640,0,160,90" in vtt
        assert "00:00:50.000 --> 00:01:00.000\nsprite.jpg#xywh=0,90,160,90" in vtt
        # the last cue runs to the end of the source
        assert "00:01:00.000 --> 00:01:05.500\nsprite.jpg#xywh=160,90,160,90" in vtt

    def test_hour_long_timestamps(self):
        vtt = ManifestService().build_thumbnail_vtt(self._track(1, 0.0))

        assert "00:00:00.000 --> 00:00:10.000" in vtt
        track = self._track(2, 7300.0)
        track.interval = 3650.0
        assert "01:00:50.000 --> 02:01:40.000" in ManifestService().build_thumbnail_vtt(track)
