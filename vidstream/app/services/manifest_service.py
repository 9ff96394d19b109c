"""
HLS master playlist and DASH MPD generation.

Both builders are pure functions of a job and its output files, so manifests
can be regenerated at any time from the database.
"""
import logging
import posixpath
import xml.etree.ElementTree as ET
from typing import Iterable, List, Optional, Sequence

from vidstream.app.services.quality_profile_service import QualityProfileCatalog, get_quality_profile_catalog

logger = logging.getLogger(__name__)

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
DASH_CONTENT_TYPE = "application/dash+xml"
VTT_CONTENT_TYPE = "text/vtt"
DASH_NAMESPACE = "urn:mpeg:dash:schema:mpd:2011"
DASH_TIMESCALE = 1000
AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2
DEFAULT_AUDIO_BITRATE = 128


def _check_unique(output_files: Iterable) -> None:
    seen = set()
    for f in output_files:
        key = (f.profile, _format_name(f.format))
        if key in seen:
            raise ValueError(f"Duplicate output for {key[0]}/{key[1]}")
        seen.add(key)


def _format_name(fmt) -> str:
    return getattr(fmt, "value", fmt)


def _relative(root: str, path: str) -> str:
    root = root.rstrip("/")
    if root and path.startswith(root + "/"):
        return path[len(root) + 1:]
    return path


def _iso_duration(seconds: float) -> str:
    value = f"{seconds:.3f}".rstrip("0").rstrip(".")
    return f"PT{value or '0'}S"


def _vtt_timestamp(seconds: float) -> str:
    millis = int(round(seconds * 1000))
    hours, rem = divmod(millis, 3600 * 1000)
    minutes, rem = divmod(rem, 60 * 1000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


class ManifestService:
    """Builds master manifests from a job's OutputFiles."""

    def __init__(self, dash_segment_duration: int = 4, catalog: Optional[QualityProfileCatalog] = None):
        self.dash_segment_duration = dash_segment_duration
        self.catalog = catalog or get_quality_profile_catalog()

    def build_hls_master(self, job, output_files: Sequence) -> str:
        """One EXT-X-STREAM-INF entry per HLS rendition, highest bandwidth first."""
        renditions = [f for f in output_files if _format_name(f.format) == "hls"]
        _check_unique(renditions)
        renditions.sort(key=lambda f: (-f.bitrate, f.profile))

        lines: List[str] = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
        for f in renditions:
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={f.bitrate * 1000},"
                f"RESOLUTION={f.width}x{f.height},CODECS=\"{f.codecs}\""
            )
            lines.append(_relative(job.output_root, f.manifest_path or f.storage_path))
        return "\n".join(lines) + "\n"

    def _audio_bitrate(self, output_file) -> int:
        profile = self.catalog.get(output_file.profile)
        return profile.audio_bitrate if profile else DEFAULT_AUDIO_BITRATE

    def _add_representation(self, adaptation, job, output_file, attributes, stream_index: int):
        representation = ET.SubElement(adaptation, "Representation", attributes)
        manifest = _relative(job.output_root, output_file.manifest_path or output_file.storage_path)
        base_url = ET.SubElement(representation, "BaseURL")
        base_url.text = posixpath.dirname(manifest) + "/"
        ET.SubElement(representation, "SegmentTemplate", {
            "timescale": str(DASH_TIMESCALE),
            "duration": str(self.dash_segment_duration * DASH_TIMESCALE),
            "startNumber": "1",
            "initialization": f"init_{stream_index}.m4s",
            "media": f"chunk_{stream_index}_$Number$.m4s",
        })
        return representation

    def build_dash(self, job, output_files: Sequence) -> str:
        """
        Static MPD, lowest bandwidth first.

        Each rendition was packaged on its own: its video stream is
        representation 0 and, when the source has sound, its audio stream is
        representation 1. Video renditions share one AdaptationSet and audio
        renditions a second one.
        """
        renditions = [f for f in output_files if _format_name(f.format) == "dash"]
        _check_unique(renditions)
        renditions.sort(key=lambda f: (f.bitrate, f.profile))

        mpd = ET.Element("MPD", {
            "xmlns": DASH_NAMESPACE,
            "type": "static",
            "mediaPresentationDuration": _iso_duration(job.source_duration or 0.0),
            "minBufferTime": f"PT{self.dash_segment_duration}S",
            "profiles": "urn:mpeg:dash:profile:isoff-live:2011",
        })
        period = ET.SubElement(mpd, "Period", {"id": "0", "start": "PT0S"})
        video_set = ET.SubElement(period, "AdaptationSet", {
            "id": "0",
            "contentType": "video",
            "mimeType": "video/mp4",
            "segmentAlignment": "true",
            "startWithSAP": "1",
        })

        with_audio = []
        for f in renditions:
            codecs = [c for c in f.codecs.split(",") if c]
            video_codecs = [c for c in codecs if not c.startswith("mp4a")]
            audio_codecs = [c for c in codecs if c.startswith("mp4a")]
            bandwidth = f.bitrate
            if audio_codecs:
                bandwidth -= self._audio_bitrate(f)
                with_audio.append((f, audio_codecs[0]))
            self._add_representation(video_set, job, f, {
                "id": f.profile,
                "bandwidth": str(bandwidth * 1000),
                "width": str(f.width),
                "height": str(f.height),
                "codecs": ",".join(video_codecs),
            }, stream_index=0)

        if with_audio:
            audio_set = ET.SubElement(period, "AdaptationSet", {
                "id": "1",
                "contentType": "audio",
                "mimeType": "audio/mp4",
                "segmentAlignment": "true",
                "startWithSAP": "1",
                "audioSamplingRate": str(AUDIO_SAMPLE_RATE),
            })
            ET.SubElement(audio_set, "AudioChannelConfiguration", {
                "schemeIdUri": "urn:mpeg:dash:23003:3:audio_channel_configuration:2011",
                "value": str(AUDIO_CHANNELS),
            })
            for f, codec in with_audio:
                self._add_representation(audio_set, job, f, {
                    "id": f"{f.profile}-audio",
                    "bandwidth": str(self._audio_bitrate(f) * 1000),
                    "codecs": codec,
                }, stream_index=1)

        body = ET.tostring(mpd, encoding="unicode")
        return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"

    def build_thumbnail_vtt(self, track, sprite_name: str = "sprite.jpg") -> str:
        """WebVTT track mapping each interval to its tile in the sprite sheet."""
        lines: List[str] = ["WEBVTT", ""]
        count = len(track.thumbnails)
        for i in range(count):
            start = i * track.interval
            end = (i + 1) * track.interval
            if i == count - 1 and track.duration > start:
                end = track.duration
            x = (i % track.columns) * track.width
            y = (i // track.columns) * track.height
            lines.append(f"{_vtt_timestamp(start)} --> {_vtt_timestamp(end)}")
            lines.append(f"{sprite_name}#xywh={x},{y},{track.width},{track.height}")
            lines.append("")
        return "\n".join(lines)
