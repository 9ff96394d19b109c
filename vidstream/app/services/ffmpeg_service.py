"""
FFmpeg integration for rendition encoding and HLS/DASH packaging.
"""
import asyncio
import enum
import inspect
import logging
import os
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import ffmpeg

from vidstream.app.errors import EncodeCancelled, EncodeError
from vidstream.app.services.base_service import BaseService
from vidstream.app.services.ffprobe_service import VideoMetadata
from vidstream.app.services.quality_profile_service import QualityProfile

logger = logging.getLogger(__name__)

PROGRESS_PATTERN = re.compile(r"time=(\d{2}):(\d{2}):(\d{2}\.\d{2})")
STDERR_TAIL_LINES = 40
THUMBNAIL_TARGET_COUNT = 20
THUMBNAIL_MIN_INTERVAL = 10.0
SPRITE_COLUMNS = 5

ProgressCallback = Callable[[float], Any]


class EncodePass(str, enum.Enum):
    SINGLE = "single"
    FIRST_PASS = "first_pass"
    SECOND_PASS = "second_pass"
    DONE = "done"


@dataclass
class EncodedOutput:
    """Local result of one (profile, format) encode"""
    profile: str
    format: str
    output_dir: str
    primary_path: str
    files: List[str]
    file_size: int
    bitrate: int
    segment_count: int
    width: int
    height: int
    codecs: str
    manifest_path: Optional[str] = None


@dataclass
class ThumbnailTrack:
    """Interval thumbnails of one source plus the sprite sheet tiling them"""
    output_dir: str
    thumbnails: List[str]
    sprite_path: str
    interval: float
    duration: float
    columns: int
    width: int
    height: int

    @property
    def files(self) -> List[str]:
        return self.thumbnails + [self.sprite_path]


@dataclass
class EncoderOptions:
    hls_segment_duration: int = 4
    dash_segment_duration: int = 4
    two_pass: bool = False
    gpu_acceleration: bool = False
    audio_normalization: bool = True
    kill_grace_seconds: float = 5.0
    extra_input_args: Dict[str, Any] = field(default_factory=dict)


def parse_progress_seconds(line: str) -> Optional[float]:
    match = PROGRESS_PATTERN.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FFmpegService(BaseService):
    """Encoder adapter: one subprocess invocation per rendition and format."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", options: Optional[EncoderOptions] = None):
        self.ffmpeg_path = ffmpeg_path
        self.options = options or EncoderOptions()
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._cancelled: Set[str] = set()

    # Command construction

    def _video_args(self, profile: QualityProfile, has_audio: bool) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "c:v": profile.codec,
            "preset": profile.preset,
            "profile:v": profile.profile,
            "pix_fmt": profile.pixel_format,
            "video_bitrate": f"{profile.video_bitrate}k",
            "maxrate": f"{int(profile.video_bitrate * 1.07)}k",
            "bufsize": f"{profile.video_bitrate * 2}k",
            "g": profile.gop_size,
            "keyint_min": profile.keyint_min,
            "sc_threshold": 0,
            "bf": profile.b_frames,
            "r": profile.fps,
            "vf": (
                f"scale={profile.width}:{profile.height}:force_original_aspect_ratio=decrease,"
                f"pad={profile.width}:{profile.height}:(ow-iw)/2:(oh-ih)/2"
            ),
        }
        if profile.codec == "libx264":
            args["level:v"] = profile.level
        else:
            args["x265-params"] = f"level-idc={profile.level}"
        if has_audio:
            args["c:a"] = "aac"
            args["audio_bitrate"] = f"{profile.audio_bitrate}k"
            args["ac"] = 2
            args["ar"] = 48000
            if self.options.audio_normalization:
                args["af"] = "loudnorm=I=-16:TP=-1.5:LRA=11"
        else:
            args["an"] = None
        return args

    def _input_stream(self, input_path: str):
        input_args = dict(self.options.extra_input_args)
        if self.options.gpu_acceleration:
            input_args["hwaccel"] = "auto"
        return ffmpeg.input(input_path, **input_args)

    def _compile(self, stream) -> List[str]:
        stream = stream.global_args("-hide_banner", "-nostats", "-progress", "pipe:1").overwrite_output()
        return stream.compile(cmd=self.ffmpeg_path)

    def build_hls_command(self, input_path: str, profile: QualityProfile,
                          output_dir: str, has_audio: bool = True) -> List[str]:
        args = self._video_args(profile, has_audio)
        args.update({
            "format": "hls",
            "hls_time": self.options.hls_segment_duration,
            "hls_list_size": 0,
            "hls_playlist_type": "vod",
            "hls_segment_type": "mpegts",
            "hls_segment_filename": os.path.join(output_dir, "segment_%03d.ts"),
            "hls_flags": "independent_segments",
        })
        out = self._input_stream(input_path).output(os.path.join(output_dir, "playlist.m3u8"), **args)
        return self._compile(out)

    def build_dash_command(self, input_path: str, profile: QualityProfile,
                           output_dir: str, has_audio: bool = True) -> List[str]:
        args = self._video_args(profile, has_audio)
        args.update({
            "format": "dash",
            "seg_duration": self.options.dash_segment_duration,
            "init_seg_name": "init_$RepresentationID$.m4s",
            "media_seg_name": "chunk_$RepresentationID$_$Number$.m4s",
            "single_file": 0,
            "dash_segment_type": "mp4",
            "use_template": 1,
            "use_timeline": 0,
        })
        if has_audio:
            # Video is representation 0 and audio representation 1 in every rendition
            args["adaptation_sets"] = "id=0,streams=v id=1,streams=a"
        out = self._input_stream(input_path).output(os.path.join(output_dir, "manifest.mpd"), **args)
        return self._compile(out)

    def build_mp4_command(self, input_path: str, profile: QualityProfile, output_path: str,
                          has_audio: bool = True, encode_pass: EncodePass = EncodePass.SINGLE,
                          passlog: Optional[str] = None) -> List[str]:
        args = self._video_args(profile, has_audio)
        if encode_pass == EncodePass.FIRST_PASS:
            args.pop("c:a", None)
            args.pop("audio_bitrate", None)
            args.pop("af", None)
            args.pop("ac", None)
            args.pop("ar", None)
            args["an"] = None
            args.update({"pass": 1, "passlogfile": passlog, "format": "null"})
            out = self._input_stream(input_path).output(os.devnull, **args)
            return self._compile(out)

        if encode_pass == EncodePass.SECOND_PASS:
            args.update({"pass": 2, "passlogfile": passlog})
        args.update({"format": "mp4", "movflags": "+faststart"})
        out = self._input_stream(input_path).output(output_path, **args)
        return self._compile(out)

    # Execution

    async def _run(self, cmd: List[str], duration: float, job_id: Optional[str],
                   on_progress: Optional[Callable[[float], Any]] = None) -> None:
        """Run one ffmpeg invocation, streaming progress. Raises EncodeError."""
        logger.info(f"Running encoder: {' '.join(cmd)}")
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        key = job_id or f"anon-{id(process)}"
        self._processes[key] = process

        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)

        async def drain_stderr():
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                stderr_tail.append(line.decode(errors="replace").rstrip())

        stderr_task = asyncio.create_task(drain_stderr())
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                seconds = parse_progress_seconds(line.decode(errors="replace"))
                if seconds is not None and duration > 0 and on_progress is not None:
                    await on_progress(min(1.0, seconds / duration))
            await process.wait()
            await stderr_task
        finally:
            if process.returncode is None:
                # Caller was cancelled; do not leave the encoder running
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()
            self._processes.pop(key, None)

        if job_id is not None and job_id in self._cancelled:
            raise EncodeCancelled(f"Encode cancelled for job {job_id}", process.returncode)

        if process.returncode != 0:
            diagnostic = "\n".join(stderr_tail)
            raise EncodeError(
                f"FFmpeg failed with code {process.returncode}: {diagnostic[-2000:]}",
                returncode=process.returncode,
                stderr=diagnostic,
            )

    async def encode(self, input_path: str, profile: QualityProfile, fmt: str, output_dir: str,
                     duration: float, progress_callback: Optional[ProgressCallback] = None,
                     job_id: Optional[str] = None, metadata: Optional[VideoMetadata] = None) -> List[EncodedOutput]:
        """
        Encode one rendition in one format.

        Progress is reported to ``progress_callback`` as a monotonic fraction
        in [0, 1]. The callback may be a plain function or a coroutine function.
        """
        if job_id is not None and job_id in self._cancelled:
            raise EncodeCancelled(f"Encode cancelled for job {job_id}")

        has_audio = metadata.has_audio if metadata is not None else True
        rendition_dir = os.path.join(output_dir, fmt, profile.name)
        os.makedirs(rendition_dir, exist_ok=True)

        last_reported = [0.0]

        async def report(fraction: float, offset: float = 0.0, scale: float = 1.0):
            value = offset + fraction * scale
            if value <= last_reported[0] or progress_callback is None:
                return
            last_reported[0] = value
            result = progress_callback(value)
            if inspect.isawaitable(result):
                await result

        if fmt == "mp4":
            output = await self._encode_mp4(input_path, profile, rendition_dir, duration,
                                            has_audio, job_id, report)
        elif fmt == "hls":
            cmd = self.build_hls_command(input_path, profile, rendition_dir, has_audio)
            await self._run(cmd, duration, job_id, report)
            output = self._collect(profile, fmt, rendition_dir, "playlist.m3u8", ".ts")
        elif fmt == "dash":
            cmd = self.build_dash_command(input_path, profile, rendition_dir, has_audio)
            await self._run(cmd, duration, job_id, report)
            output = self._collect(profile, fmt, rendition_dir, "manifest.mpd", ".m4s")
        else:
            raise ValueError(f"Unsupported output format: {fmt}")
        if not has_audio:
            output.codecs = profile.video_codec

        if last_reported[0] < 1.0 and progress_callback is not None:
            await report(1.0)

        logger.info(
            f"Encoded {profile.name}/{fmt}: {len(output.files)} files, "
            f"{output.file_size} bytes, {output.segment_count} segments"
        )
        return [output]

    async def _encode_mp4(self, input_path: str, profile: QualityProfile, rendition_dir: str,
                          duration: float, has_audio: bool, job_id: Optional[str], report) -> EncodedOutput:
        output_path = os.path.join(rendition_dir, f"{profile.name}.mp4")
        passlog = os.path.join(rendition_dir, "ffmpeg2pass")

        state = EncodePass.FIRST_PASS if self.options.two_pass else EncodePass.SINGLE
        while state != EncodePass.DONE:
            if state == EncodePass.FIRST_PASS:
                cmd = self.build_mp4_command(input_path, profile, output_path, has_audio, state, passlog)
                await self._run(cmd, duration, job_id, lambda f: report(f, 0.0, 0.5))
                state = EncodePass.SECOND_PASS
            elif state == EncodePass.SECOND_PASS:
                cmd = self.build_mp4_command(input_path, profile, output_path, has_audio, state, passlog)
                await self._run(cmd, duration, job_id, lambda f: report(f, 0.5, 0.5))
                state = EncodePass.DONE
            else:
                cmd = self.build_mp4_command(input_path, profile, output_path, has_audio)
                await self._run(cmd, duration, job_id, report)
                state = EncodePass.DONE

        for stale in Path(rendition_dir).glob("ffmpeg2pass*"):
            stale.unlink(missing_ok=True)

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise EncodeError("Output file was not created or is empty")

        return EncodedOutput(
            profile=profile.name,
            format="mp4",
            output_dir=rendition_dir,
            primary_path=output_path,
            files=[output_path],
            file_size=os.path.getsize(output_path),
            bitrate=profile.bitrate,
            segment_count=0,
            width=profile.width,
            height=profile.height,
            codecs=profile.codecs,
        )

    def _collect(self, profile: QualityProfile, fmt: str, rendition_dir: str,
                 manifest_name: str, segment_ext: str) -> EncodedOutput:
        manifest_path = os.path.join(rendition_dir, manifest_name)
        if not os.path.exists(manifest_path):
            raise EncodeError(f"{fmt.upper()} manifest was not created")

        files = sorted(
            os.path.join(rendition_dir, name)
            for name in os.listdir(rendition_dir)
            if name.endswith(segment_ext) or name == manifest_name
        )
        segments = [f for f in files if f.endswith(segment_ext)]
        if not segments:
            raise EncodeError(f"No {fmt.upper()} segments were created")

        return EncodedOutput(
            profile=profile.name,
            format=fmt,
            output_dir=rendition_dir,
            primary_path=manifest_path,
            files=files,
            file_size=sum(os.path.getsize(f) for f in files),
            bitrate=profile.bitrate,
            segment_count=len(segments),
            width=profile.width,
            height=profile.height,
            codecs=profile.codecs,
            manifest_path=manifest_path,
        )

    # Cancellation

    def is_running(self, job_id: str) -> bool:
        return job_id in self._processes

    async def cancel(self, job_id: str) -> bool:
        """
        Terminate the running encode for ``job_id``.

        Sends SIGTERM, waits up to the configured grace period, then SIGKILL.
        Returns False when no subprocess was running for the job.
        """
        self._cancelled.add(job_id)
        process = self._processes.get(job_id)
        if process is None or process.returncode is not None:
            return False

        logger.info(f"Terminating encoder for job {job_id}")
        try:
            process.terminate()
        except ProcessLookupError:
            return True

        try:
            await asyncio.wait_for(process.wait(), timeout=self.options.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Encoder for job {job_id} ignored SIGTERM, killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        return True

    def clear_cancellation(self, job_id: str) -> None:
        self._cancelled.discard(job_id)

    # Auxiliary outputs

    async def extract_subtitles(self, input_path: str, metadata: VideoMetadata,
                                output_dir: str) -> List[str]:
        """Convert every subtitle track to WebVTT. Failed tracks are skipped."""
        os.makedirs(output_dir, exist_ok=True)
        extracted = []
        for track in metadata.subtitles:
            output_path = os.path.join(output_dir, f"subtitle_{track.index}_{track.language}.vtt")
            out = self._input_stream(input_path).output(
                output_path, **{"map": f"0:s:{track.index}", "c:s": "webvtt"}
            )
            try:
                await self._run(self._compile(out), 0.0, None)
                extracted.append(output_path)
            except EncodeError as e:
                logger.warning(f"Subtitle track {track.index} extraction failed: {e}")
        return extracted

    async def generate_thumbnail(self, input_path: str, output_path: str, at_seconds: float,
                                 width: int = 320, height: int = 180, job_id: Optional[str] = None) -> str:
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        out = ffmpeg.input(input_path, ss=at_seconds).output(
            output_path,
            vframes=1,
            vf=f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
               f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            **{"q:v": 2},
        )
        await self._run(self._compile(out), 0.0, job_id)
        if not os.path.exists(output_path):
            raise EncodeError("Thumbnail was not created")
        return output_path

    async def generate_thumbnails(self, input_path: str, duration: float, output_dir: str,
                                  width: int = 160, height: int = 90,
                                  job_id: Optional[str] = None) -> ThumbnailTrack:
        """
        Grab about ``THUMBNAIL_TARGET_COUNT`` frames spread over the source and
        tile them into ``sprite.jpg``.

        Frames are at least ``THUMBNAIL_MIN_INTERVAL`` seconds apart, so short
        sources get fewer of them.
        """
        interval = max(THUMBNAIL_MIN_INTERVAL, (duration or 0.0) / THUMBNAIL_TARGET_COUNT)
        count = max(1, int((duration or 0.0) // interval))

        thumbnails = []
        for i in range(count):
            path = os.path.join(output_dir, f"thumb_{i:03d}.jpg")
            thumbnails.append(
                await self.generate_thumbnail(input_path, path, i * interval, width, height, job_id=job_id)
            )

        columns = min(SPRITE_COLUMNS, count)
        rows = -(-count // columns)
        sprite_path = os.path.join(output_dir, "sprite.jpg")
        out = (
            ffmpeg.input(os.path.join(output_dir, "thumb_%03d.jpg"), start_number=0, framerate=1)
            .filter("tile", f"{columns}x{rows}")
            .output(sprite_path, vframes=1, **{"q:v": 3})
        )
        await self._run(self._compile(out), 0.0, job_id)
        if not os.path.exists(sprite_path):
            raise EncodeError("Thumbnail sprite was not created")

        return ThumbnailTrack(
            output_dir=output_dir,
            thumbnails=thumbnails,
            sprite_path=sprite_path,
            interval=interval,
            duration=duration or 0.0,
            columns=columns,
            width=width,
            height=height,
        )
