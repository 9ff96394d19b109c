"""
Background worker for processing video transcoding jobs.
"""
import asyncio
import logging
import os
import shutil
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from vidstream.app.config import Settings
from vidstream.app.errors import EncodeCancelled, EncodeError
from vidstream.app.models import OutputFile, OutputFormat, TranscodingJob, TranscodingStatus
from vidstream.app.services import events
from vidstream.app.services.events import EventSink
from vidstream.app.services.ffmpeg_service import FFmpegService
from vidstream.app.services.job_repository import JobRepository
from vidstream.app.services.logging_service import get_transcoding_logger, job_id_var, worker_id_var
from vidstream.app.services.manifest_service import DASH_CONTENT_TYPE, HLS_CONTENT_TYPE, VTT_CONTENT_TYPE, ManifestService
from vidstream.app.services.redis_client import RedisClient
from vidstream.app.services.storage_service import StorageBackend, storage_key_for
from vidstream.app.services.transcoding_scheduler import TranscodingScheduler

logger = logging.getLogger(__name__)
worker_log = get_transcoding_logger(component="worker")


@dataclass
class WorkerMetrics:
    worker_id: str
    start_time: datetime
    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    last_heartbeat: Optional[datetime] = None
    cpu_usage: float = 0.0
    memory_usage: int = 0
    active_jobs: List[str] = field(default_factory=list)

    def to_record(self) -> Dict[str, Any]:
        """Heartbeat record stored in the worker registry."""
        return {
            "workerId": self.worker_id,
            "hostname": socket.gethostname(),
            "startTime": self.start_time.isoformat(),
            "lastHeartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "activeJobs": len(self.active_jobs),
            "activeJobIds": list(self.active_jobs),
            "jobsProcessed": self.jobs_processed,
            "jobsSucceeded": self.jobs_succeeded,
            "jobsFailed": self.jobs_failed,
            "cpuUsage": self.cpu_usage,
            "memoryUsage": self.memory_usage,
        }


class TranscodingWorker:
    """Pulls jobs from the scheduler and runs every (profile, format) pair through the encoder."""

    cancel_poll_interval = 1.0

    def __init__(self, scheduler: TranscodingScheduler, repository: JobRepository,
                 encoder: FFmpegService, storage: StorageBackend, manifests: ManifestService,
                 redis_client: RedisClient, settings: Settings,
                 event_sink: Optional[EventSink] = None, worker_id: Optional[str] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.scheduler = scheduler
        self.repository = repository
        self.encoder = encoder
        self.storage = storage
        self.manifests = manifests
        self.redis = redis_client
        self.settings = settings
        self.event_sink = event_sink or scheduler.event_sink
        self.worker_id = worker_id or f"worker-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.clock = clock

        self.temp_dir = Path(settings.TRANSCODING_TEMP_DIR)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

        self.registry_key = f"{scheduler.key_prefix}:workers"
        self.metrics = WorkerMetrics(worker_id=self.worker_id, start_time=clock())
        self.running = False
        self._stopping = asyncio.Event()
        self._active: Dict[str, asyncio.Task] = {}

        scheduler.add_cancel_listener(self._on_cancel)

    def heartbeat_key(self, worker_id: Optional[str] = None) -> str:
        return f"{self.registry_key}:{worker_id or self.worker_id}"

    @property
    def active_job_ids(self) -> List[str]:
        return list(self._active.keys())

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _emit(self, event: str, job: TranscodingJob, **payload: Any) -> None:
        await self.event_sink.emit(
            event, {"job_id": job.id, "video_id": job.video_id, "worker_id": self.worker_id, **payload}
        )

    # Lifecycle

    async def start(self):
        """Start the worker and block until stopped."""
        self.running = True
        self._stopping.clear()
        worker_id_var.set(self.worker_id)
        worker_log.log_worker_event(logging.INFO, self.worker_id, "started", f"Starting transcoding worker {self.worker_id}")

        await self.send_heartbeat()
        await self.scheduler.restore_lost_jobs()

        await asyncio.gather(
            self._job_processor_loop(),
            self._heartbeat_loop(),
            self._metrics_loop(),
            self._retry_scheduler_loop(),
            self._stale_worker_loop(),
            self._cleanup_loop(),
        )

    async def stop(self, timeout: Optional[float] = None):
        """Stop dequeuing, drain active jobs, then hand leftovers back to the queue."""
        timeout = self.settings.WORKER_SHUTDOWN_TIMEOUT if timeout is None else timeout
        self.running = False
        self._stopping.set()
        worker_log.log_worker_event(logging.INFO, self.worker_id, "stopping", f"Stopping transcoding worker {self.worker_id}")

        tasks = list(self._active.items())
        if tasks:
            done, pending = await asyncio.wait([t for _, t in tasks], timeout=timeout)
            leftover = [job_id for job_id, task in tasks if task in pending]
            for job_id, task in tasks:
                if task in pending:
                    task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for job_id in leftover:
                logger.warning(f"Job {job_id} interrupted by shutdown, returning it to the queue")
                await self.scheduler.requeue_orphaned(job_id, f"Worker {self.worker_id} shut down mid-job")

        client = await self.redis.ensure_connected()
        await client.delete(self.heartbeat_key())
        await client.srem(self.registry_key, self.worker_id)

    # Job processing

    async def _job_processor_loop(self):
        """Main job processing loop."""
        while self.running:
            try:
                # Per-process cap; the scheduler enforces the shared ceiling
                if len(self._active) >= self.scheduler.max_concurrent_jobs:
                    await asyncio.wait(
                        list(self._active.values()),
                        timeout=self.settings.WORKER_POLL_INTERVAL,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    continue

                job = await self.scheduler.dequeue_next(len(self._active))
                if job is None:
                    await self._sleep(self.settings.WORKER_POLL_INTERVAL)
                    continue

                task = asyncio.create_task(self.process_job(job))
                self._active[job.id] = task
                self.metrics.active_jobs = self.active_job_ids
                task.add_done_callback(lambda _t, job_id=job.id: self._active.pop(job_id, None))

            except Exception as e:
                logger.error(f"Error in job processor loop: {e}")
                await self._sleep(self.settings.WORKER_POLL_INTERVAL)

    async def run_once(self) -> Optional[str]:
        """Dequeue and fully process a single job inline. Returns its id."""
        job = await self.scheduler.dequeue_next(len(self._active))
        if job is None:
            return None
        await self.process_job(job)
        return job.id

    async def process_job(self, job: TranscodingJob) -> None:
        """
        Run one job end to end.

        Errors are translated into job status updates and never propagate.
        """
        job_id_var.set(job.id)
        if not await self.scheduler.claim(job, self.worker_id):
            logger.info(f"Job {job.id} not started: no longer queued or concurrency ceiling reached")
            return

        self.metrics.jobs_processed += 1
        logger.info(f"Processing transcoding job {job.id} for video {job.video_id}")
        await self._emit(events.JOB_STARTED, job, attempt=job.attempts + 1)

        work_dir = self.temp_dir / job.id
        watcher = asyncio.create_task(self._watch_for_cancel(job.id))
        try:
            outputs = await self._encode_all(job, work_dir)
            if await self._finalize(job, outputs):
                self.metrics.jobs_succeeded += 1

        except EncodeCancelled as e:
            if await self.scheduler.is_cancel_requested(job.id):
                logger.info(f"Job {job.id} cancelled mid-encode")
            else:
                await self._route_failure(job, e)

        except Exception as e:
            if await self.scheduler.is_cancel_requested(job.id):
                logger.info(f"Job {job.id} stopped after cancellation: {e}")
            else:
                await self._route_failure(job, e)

        finally:
            watcher.cancel()
            self.encoder.clear_cancellation(job.id)
            await asyncio.to_thread(shutil.rmtree, work_dir, True)

    async def _route_failure(self, job: TranscodingJob, error: Exception) -> None:
        logger.error(f"Transcoding job {job.id} attempt failed: {error}")
        status = await self.scheduler.handle_failure(job.id, error)
        if status == TranscodingStatus.failed:
            self.metrics.jobs_failed += 1

    async def _watch_for_cancel(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.cancel_poll_interval)
            try:
                if await self.scheduler.is_cancel_requested(job_id):
                    await self.encoder.cancel(job_id)
                    return
            except Exception as e:
                logger.warning(f"Cancel watch for job {job_id} failed: {e}")

    async def _on_cancel(self, job_id: str) -> None:
        if job_id in self._active or self.encoder.is_running(job_id):
            await self.encoder.cancel(job_id)

    async def _encode_all(self, job: TranscodingJob, work_dir: Path) -> List[OutputFile]:
        catalog = self.scheduler.catalog
        profiles = catalog.sort_by_bitrate(job.qualities)
        source = await self._fetch_input(job, work_dir)
        metadata = await self.scheduler.extractor.extract(source)

        pairs = [(profile, fmt) for profile in profiles for fmt in job.formats]
        total = len(pairs)
        outputs: List[OutputFile] = []
        last_progress = [0]

        async def report(percent: int, profile_name: str):
            if percent <= last_progress[0]:
                return
            last_progress[0] = percent
            await self.repository.update_progress(job.id, percent)
            await self._emit(events.JOB_PROGRESS, job, quality=profile_name, progress=percent)

        for index, (profile, fmt) in enumerate(pairs):
            if await self.scheduler.is_cancel_requested(job.id):
                raise EncodeCancelled(f"Job {job.id} cancelled")

            async def on_progress(fraction: float, index=index, name=profile.name):
                await report(int((index + fraction) / total * 100), name)

            encoded_outputs = await self.encoder.encode(
                source, profile, fmt, str(work_dir), job.source_duration,
                progress_callback=on_progress, job_id=job.id, metadata=metadata,
            )

            for encoded in encoded_outputs:
                prefix = f"{job.output_root}/{fmt}/{profile.name}"
                await self.storage.upload_files(encoded.files, encoded.output_dir, prefix)
                primary_key = f"{prefix}/{os.path.basename(encoded.primary_path)}"
                record = await self.repository.add_output(
                    job.id,
                    profile=encoded.profile,
                    format=OutputFormat(encoded.format),
                    storage_path=primary_key,
                    manifest_path=primary_key if encoded.manifest_path else None,
                    file_size=encoded.file_size,
                    bitrate=encoded.bitrate,
                    segment_count=encoded.segment_count,
                    width=encoded.width,
                    height=encoded.height,
                    codecs=encoded.codecs,
                )
                if record is None:
                    raise EncodeCancelled(f"Job {job.id} is no longer running")
                outputs.append(record)

            await report(int((index + 1) / total * 100), profile.name)

        if len(outputs) != total:
            raise EncodeError(f"Expected {total} outputs, produced {len(outputs)}")

        if self.settings.EXTRACT_SUBTITLES and metadata.subtitles:
            subtitle_dir = work_dir / "subtitles"
            vtt_files = await self.encoder.extract_subtitles(source, metadata, str(subtitle_dir))
            await self.storage.upload_files(vtt_files, str(subtitle_dir), f"{job.output_root}/subtitles")

        if self.settings.GENERATE_THUMBNAILS:
            await self._publish_thumbnails(job, source, metadata.duration or job.source_duration, work_dir)

        return outputs

    async def _fetch_input(self, job: TranscodingJob, work_dir: Path) -> str:
        """Local path of the source, downloading it first when it lives in storage."""
        key = storage_key_for(job.input_location)
        if key is None:
            return job.input_location
        local_path = work_dir / "input" / os.path.basename(key)
        logger.info(f"Downloading source {key} for job {job.id}")
        return await self.storage.download_file(key, str(local_path))

    async def _publish_thumbnails(self, job: TranscodingJob, source: str, duration: float,
                                  work_dir: Path) -> Optional[str]:
        """Upload the thumbnail track with its WebVTT index. Encoder failures are not fatal."""
        thumb_dir = work_dir / "thumbnails"
        try:
            track = await self.encoder.generate_thumbnails(
                source, duration, str(thumb_dir),
                width=self.settings.THUMBNAIL_WIDTH, height=self.settings.THUMBNAIL_HEIGHT, job_id=job.id,
            )
        except EncodeCancelled:
            raise
        except EncodeError as e:
            logger.warning(f"Thumbnail generation failed for job {job.id}: {e}")
            return None

        prefix = f"{job.output_root}/thumbnails"
        await self.storage.upload_files(track.files, track.output_dir, prefix)
        vtt_key = f"{prefix}/thumbnails.vtt"
        vtt = self.manifests.build_thumbnail_vtt(track, os.path.basename(track.sprite_path))
        await self.storage.upload_bytes(vtt.encode(), vtt_key, VTT_CONTENT_TYPE)
        return vtt_key

    async def _finalize(self, job: TranscodingJob, outputs: List[OutputFile]) -> bool:
        hls_key = None
        dash_key = None
        if "hls" in job.formats:
            hls_key = f"{job.output_root}/master.m3u8"
            playlist = self.manifests.build_hls_master(job, outputs)
            await self.storage.upload_bytes(playlist.encode(), hls_key, HLS_CONTENT_TYPE)
        if "dash" in job.formats:
            dash_key = f"{job.output_root}/manifest.mpd"
            mpd = self.manifests.build_dash(job, outputs)
            await self.storage.upload_bytes(mpd.encode(), dash_key, DASH_CONTENT_TYPE)

        if not await self.repository.complete_job(job.id, hls_key, dash_key, now=self.clock()):
            logger.info(f"Job {job.id} left running state before completion")
            return False

        logger.info(f"Completed transcoding job {job.id} with {len(outputs)} outputs")
        await self._emit(events.JOB_COMPLETED, job, outputs=len(outputs),
                         hls_manifest=hls_key, dash_manifest=dash_key)
        return True

    # Heartbeats and metrics

    async def send_heartbeat(self) -> Dict[str, Any]:
        self.metrics.last_heartbeat = self.clock()
        self.metrics.active_jobs = self.active_job_ids
        record = self.metrics.to_record()
        await self.redis.set_json(self.heartbeat_key(), record, expire=self.settings.WORKER_HEARTBEAT_TTL)
        client = await self.redis.ensure_connected()
        await client.sadd(self.registry_key, self.worker_id)
        return record

    def collect_metrics(self) -> None:
        self.metrics.cpu_usage = psutil.cpu_percent(interval=None)
        self.metrics.memory_usage = psutil.Process().memory_info().rss

    async def _heartbeat_loop(self):
        while self.running:
            await self._sleep(self.settings.WORKER_HEARTBEAT_INTERVAL)
            if not self.running:
                break
            try:
                await self.send_heartbeat()
            except Exception as e:
                logger.error(f"Heartbeat failed for worker {self.worker_id}: {e}")

    async def _metrics_loop(self):
        while self.running:
            try:
                self.collect_metrics()
            except psutil.Error as e:
                logger.warning(f"Metrics collection failed: {e}")
            await self._sleep(self.settings.WORKER_METRICS_INTERVAL)

    async def _retry_scheduler_loop(self):
        """Promote scheduled retries whose backoff has elapsed."""
        while self.running:
            try:
                await self.scheduler.process_scheduled_retries()
            except Exception as e:
                logger.error(f"Error in retry scheduler loop: {e}")
            await self._sleep(self.settings.RETRY_PROMOTION_INTERVAL)

    async def _stale_worker_loop(self):
        while self.running:
            await self._sleep(self.settings.WORKER_HEARTBEAT_INTERVAL)
            if not self.running:
                break
            try:
                await self.check_stale_workers()
            except Exception as e:
                logger.error(f"Error checking for stale workers: {e}")

    async def live_workers(self) -> List[str]:
        """Workers whose heartbeat record exists and is recent enough."""
        client = await self.redis.ensure_connected()
        cutoff = self.clock() - timedelta(seconds=self.settings.WORKER_STALE_AFTER)
        alive = []
        for worker_id in await client.smembers(self.registry_key):
            record = await self.redis.get_json(self.heartbeat_key(worker_id))
            if not record or not record.get("lastHeartbeat"):
                continue
            if datetime.fromisoformat(record["lastHeartbeat"]) >= cutoff:
                alive.append(worker_id)
        return alive

    async def check_stale_workers(self) -> int:
        """
        Requeue running jobs owned by workers that stopped heartbeating.

        Returns the number of jobs handed back to the retry policy.
        """
        alive = set(await self.live_workers())
        alive.add(self.worker_id)
        client = await self.redis.ensure_connected()

        requeued = 0
        dead_workers = set()
        for job in await self.repository.list_jobs(status=TranscodingStatus.running):
            if job.worker_id in alive:
                continue
            dead_workers.add(job.worker_id)
            status = await self.scheduler.requeue_orphaned(
                job.id, f"Worker {job.worker_id} stopped heartbeating"
            )
            if status in (TranscodingStatus.queued, TranscodingStatus.failed):
                requeued += 1

        for worker_id in set(await client.smembers(self.registry_key)) - alive:
            dead_workers.add(worker_id)
            await client.srem(self.registry_key, worker_id)

        for worker_id in dead_workers:
            worker_log.log_worker_event(logging.WARNING, worker_id, "lost", f"Worker {worker_id} presumed dead",
                                        detected_by=self.worker_id)
            await self.event_sink.emit(events.WORKER_LOST, {"worker_id": worker_id, "detected_by": self.worker_id})
        return requeued

    # Housekeeping

    async def _cleanup_loop(self):
        """Periodically remove abandoned work directories."""
        while self.running:
            try:
                await asyncio.to_thread(self.cleanup_temp_files)
            except OSError as e:
                logger.error(f"Error in cleanup loop: {e}")
            await self._sleep(3600)

    def cleanup_temp_files(self) -> int:
        cutoff = time.time() - self.settings.TEMP_FILE_MAX_AGE_HOURS * 3600
        removed = 0
        for entry in self.temp_dir.iterdir():
            if entry.name in self._active:
                continue
            if entry.stat().st_mtime < cutoff:
                if entry.is_dir():
                    shutil.rmtree(entry, ignore_errors=True)
                else:
                    entry.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} stale temp entries")
        return removed
