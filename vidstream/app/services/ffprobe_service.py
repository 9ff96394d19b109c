"""
Source video probing via ffprobe.
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from vidstream.app.errors import MetadataError
from vidstream.app.services.base_service import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubtitleTrack:
    index: int
    language: str
    codec: str
    title: str = ""


@dataclass(frozen=True)
class Chapter:
    id: str
    start: float
    end: float
    title: str = ""


@dataclass(frozen=True)
class VideoMetadata:
    """ffprobe results for a source file"""
    duration: float
    width: int
    height: int
    framerate: float
    bitrate: int
    video_codec: str
    audio_codec: str = ""
    audio_bitrate: int = 0
    file_size: int = 0
    subtitles: Tuple[SubtitleTrack, ...] = field(default_factory=tuple)
    chapters: Tuple[Chapter, ...] = field(default_factory=tuple)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_codec)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "width": self.width,
            "height": self.height,
            "framerate": self.framerate,
            "bitrate": self.bitrate,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "audio_bitrate": self.audio_bitrate,
            "file_size": self.file_size,
            "subtitles": [s.__dict__ for s in self.subtitles],
            "chapters": [c.__dict__ for c in self.chapters],
        }


def parse_frame_rate(value: Optional[str], default: float = 30.0) -> float:
    """Parse ffprobe's "num/den" frame rate notation."""
    if not value:
        return default
    if "/" in value:
        num, den = value.split("/", 1)
        try:
            den_f = float(den)
            return float(num) / den_f if den_f != 0 else default
        except ValueError:
            return default
    try:
        return float(value)
    except ValueError:
        return default


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_ffprobe_output(ffprobe_data: Dict[str, Any]) -> VideoMetadata:
    """Build VideoMetadata from ffprobe's JSON document."""
    streams = ffprobe_data.get("streams", [])
    fmt = ffprobe_data.get("format", {})

    video_stream = None
    audio_stream = None
    subtitle_streams: List[Dict[str, Any]] = []

    for stream in streams:
        codec_type = stream.get("codec_type")
        if codec_type == "video" and video_stream is None:
            # Cover art is reported as a video stream
            if stream.get("disposition", {}).get("attached_pic"):
                continue
            video_stream = stream
        elif codec_type == "audio" and audio_stream is None:
            audio_stream = stream
        elif codec_type == "subtitle":
            subtitle_streams.append(stream)

    if video_stream is None:
        raise MetadataError("No video stream found")

    duration = _to_float(fmt.get("duration")) or _to_float(video_stream.get("duration"))

    subtitles = tuple(
        SubtitleTrack(
            index=i,
            language=s.get("tags", {}).get("language", "und"),
            codec=s.get("codec_name", ""),
            title=s.get("tags", {}).get("title", ""),
        )
        for i, s in enumerate(subtitle_streams)
    )

    chapters = tuple(
        Chapter(
            id=f"chapter_{i}",
            start=_to_float(c.get("start_time")),
            end=_to_float(c.get("end_time")),
            title=c.get("tags", {}).get("title", f"Chapter {i + 1}"),
        )
        for i, c in enumerate(ffprobe_data.get("chapters", []))
    )

    return VideoMetadata(
        duration=duration,
        width=_to_int(video_stream.get("width")),
        height=_to_int(video_stream.get("height")),
        framerate=parse_frame_rate(video_stream.get("r_frame_rate")),
        bitrate=_to_int(fmt.get("bit_rate")),
        video_codec=video_stream.get("codec_name", ""),
        audio_codec=audio_stream.get("codec_name", "") if audio_stream else "",
        audio_bitrate=_to_int(audio_stream.get("bit_rate")) if audio_stream else 0,
        file_size=_to_int(fmt.get("size")),
        subtitles=subtitles,
        chapters=chapters,
    )


class FFprobeService(BaseService):
    """Extracts VideoMetadata from source files."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    def _build_ffprobe_command(self, input_path: str) -> List[str]:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            "-show_chapters",
            input_path,
        ]

    async def extract(self, input_path: str) -> VideoMetadata:
        """Read the metadata of ``input_path``. Raises MetadataError on any failure."""
        if "://" not in input_path and not os.path.exists(input_path):
            raise MetadataError(f"Source not found: {os.path.basename(input_path)}")

        process = await asyncio.create_subprocess_exec(
            *self._build_ffprobe_command(input_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            logger.error(f"ffprobe failed for {input_path}: {stderr.decode(errors='replace')}")
            raise MetadataError(f"ffprobe failed with exit code {process.returncode}")

        try:
            ffprobe_data = json.loads(stdout.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MetadataError(f"Unreadable ffprobe output: {e}")

        metadata = parse_ffprobe_output(ffprobe_data)
        logger.info(
            f"Read metadata of {input_path}: {metadata.width}x{metadata.height} "
            f"{metadata.duration:.1f}s {metadata.video_codec}"
        )
        return metadata
