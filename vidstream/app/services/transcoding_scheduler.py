"""
Transcoding job scheduler with Redis priority lanes and retry scheduling.

Jobs live in the database; Redis only holds job ids:
- one list per priority (LPUSH on enqueue, RPOP on dequeue, so FIFO per lane)
- a sorted set of retries keyed by the time they become eligible
- short-lived cancel flags read by workers
"""
import enum
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from vidstream.app.errors import InputError, SchedulerFullError
from vidstream.app.models import JobPriority, OutputFormat, TranscodingJob, TranscodingStatus
from vidstream.app.services import events
from vidstream.app.services.base_service import BaseService
from vidstream.app.services.events import EventSink, LoggingEventSink
from vidstream.app.services.ffprobe_service import FFprobeService
from vidstream.app.services.job_repository import JobRepository
from vidstream.app.services.quality_profile_service import QualityProfileCatalog
from vidstream.app.services.redis_client import RedisClient
from vidstream.app.services.storage_service import StorageBackend, storage_key_for

logger = logging.getLogger(__name__)

LANE_ORDER = (JobPriority.high, JobPriority.medium, JobPriority.low)
EPOCH = datetime(1970, 1, 1)

CancelListener = Callable[[str], Awaitable[Any]]


class CancelResult(str, enum.Enum):
    ok = "ok"
    already_finished = "already_finished"
    not_found = "not_found"


def to_epoch(value: datetime) -> float:
    return (value - EPOCH).total_seconds()


class TranscodingScheduler(BaseService):
    """Job intake, priority dispatch, cancellation and retry policy."""

    def __init__(self, repository: JobRepository, redis_client: RedisClient,
                 extractor: FFprobeService, catalog: QualityProfileCatalog,
                 max_concurrent_jobs: int = 3, max_attempts: int = 3,
                 retry_base_delay: int = 60, retry_max_delay: int = 3600,
                 event_sink: Optional[EventSink] = None,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 key_prefix: str = "transcoding",
                 storage: Optional[StorageBackend] = None,
                 allowed_formats: Optional[Iterable[str]] = None):
        self.repository = repository
        self.redis = redis_client
        self.extractor = extractor
        self.catalog = catalog
        self.max_concurrent_jobs = max_concurrent_jobs
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.event_sink = event_sink or LoggingEventSink()
        self.clock = clock
        self.key_prefix = key_prefix
        self.storage = storage
        self.allowed_formats = list(allowed_formats) if allowed_formats else [f.value for f in OutputFormat]
        self.scheduled_retries_key = f"{key_prefix}:scheduled_retries"
        self.cancel_flag_ttl = 7 * 24 * 3600
        self._cancel_listeners: List[CancelListener] = []

    def lane_key(self, priority) -> str:
        return f"{self.key_prefix}:queue:{getattr(priority, 'value', priority)}"

    def cancel_flag_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:cancel:{job_id}"

    def add_cancel_listener(self, listener: CancelListener) -> None:
        """Register a callback invoked with the job id when a job is cancelled."""
        self._cancel_listeners.append(listener)

    def retry_delay(self, attempts: int) -> int:
        """Backoff for a job that has already used ``attempts`` retries: 60s, 120s, 240s..."""
        return min(self.retry_base_delay * (2 ** attempts), self.retry_max_delay)

    async def _emit(self, event: str, job: TranscodingJob, **payload: Any) -> None:
        await self.event_sink.emit(event, {"job_id": job.id, "video_id": job.video_id, **payload})

    # Intake

    def _validate_formats(self, formats: Optional[Iterable[str]]) -> List[str]:
        """Requested formats in order, or every enabled format when none are given."""
        if formats is None:
            formats = self.allowed_formats
        known = {f.value for f in OutputFormat}
        result: List[str] = []
        for fmt in formats:
            value = getattr(fmt, "value", fmt)
            if value not in known:
                raise InputError(f"Unsupported output format: {value}")
            if value not in self.allowed_formats:
                raise InputError(f"Output format {value} is disabled")
            if value not in result:
                result.append(value)
        if not result:
            raise InputError("At least one output format is required")
        return result

    async def _readable_location(self, input_location: str) -> str:
        key = storage_key_for(input_location)
        if key is None:
            return input_location
        if self.storage is None:
            raise InputError(f"No storage backend to read {input_location}")
        if not await self.storage.exists(key):
            raise InputError(f"Source object not found: {key}")
        return await self.storage.readable_url(key)

    async def submit(self, video_id: str, owner_id: str, input_location: str,
                     requested_qualities: Optional[Iterable[str]], formats: Optional[Iterable[str]] = None,
                     priority: str = "medium", max_attempts: Optional[int] = None) -> TranscodingJob:
        """
        Read the source metadata, resolve applicable profiles and enqueue a new job.

        Raises InputError for unknown formats, priorities or qualities, and for
        sources whose metadata cannot be read or are smaller than every profile.
        """
        fmt_list = self._validate_formats(formats)
        try:
            job_priority = JobPriority(getattr(priority, "value", priority))
        except ValueError:
            raise InputError(f"Unknown priority: {priority}")

        requested = list(requested_qualities) if requested_qualities else None
        if requested:
            unknown = [q for q in requested if self.catalog.get(q) is None]
            if unknown:
                raise InputError(f"Unknown quality profiles: {', '.join(unknown)}")

        metadata = await self.extractor.extract(await self._readable_location(input_location))
        profiles = self.catalog.applicable_profiles(metadata.width, metadata.height, requested)
        if not profiles:
            raise InputError(f"Source resolution {metadata.width}x{metadata.height} is below every profile")

        job_id = str(uuid.uuid4())
        job = await self.repository.create_job(
            id=job_id,
            video_id=video_id,
            owner_id=owner_id,
            input_location=input_location,
            output_root=f"transcoded/{video_id}/{job_id}",
            qualities=[p.name for p in profiles],
            formats=fmt_list,
            priority=job_priority,
            source_duration=metadata.duration,
            status=TranscodingStatus.queued,
            max_attempts=max_attempts if max_attempts is not None else self.max_attempts,
            created_at=self.clock(),
        )

        client = await self.redis.ensure_connected()
        await client.lpush(self.lane_key(job_priority), job.id)

        logger.info(
            f"Queued transcoding job {job.id} for video {video_id} "
            f"({', '.join(job.qualities)} x {', '.join(fmt_list)}, {job_priority.value})"
        )
        await self._emit(events.JOB_QUEUED, job, priority=job_priority.value)
        return job

    # Dispatch

    def _check_capacity(self, active_jobs: int) -> None:
        if active_jobs >= self.max_concurrent_jobs:
            raise SchedulerFullError(
                f"{active_jobs} active jobs, limit is {self.max_concurrent_jobs}"
            )

    async def dequeue_next(self, active_jobs: int = 0) -> Optional[TranscodingJob]:
        """
        Pop the next eligible job: high, then medium, then low, FIFO within a lane.

        Returns None when the concurrency ceiling is reached or all lanes are
        empty. ``active_jobs`` is the caller's own count; the ceiling is also
        checked against jobs running on every worker. Ids whose job is no
        longer queued are discarded.
        """
        try:
            self._check_capacity(max(active_jobs, await self.repository.count_running()))
        except SchedulerFullError as e:
            logger.debug(f"Dequeue deferred: {e}")
            return None

        client = await self.redis.ensure_connected()
        for priority in LANE_ORDER:
            while True:
                job_id = await client.rpop(self.lane_key(priority))
                if job_id is None:
                    break
                job = await self.repository.get_job(job_id)
                if job is None or job.status != TranscodingStatus.queued:
                    logger.debug(f"Skipping stale queue entry {job_id}")
                    continue
                return job
        return None

    async def claim(self, job: TranscodingJob, worker_id: str) -> bool:
        """
        Mark a dequeued job running for ``worker_id`` under the global ceiling.

        When the ceiling was reached by another worker in the meantime the job
        goes back to the front of its lane and False is returned.
        """
        if await self.repository.mark_running(job.id, worker_id, now=self.clock(),
                                              running_limit=self.max_concurrent_jobs):
            return True
        current = await self.repository.get_job(job.id)
        if current is not None and current.status == TranscodingStatus.queued:
            client = await self.redis.ensure_connected()
            await client.rpush(self.lane_key(current.priority), job.id)
            logger.debug(f"Concurrency ceiling reached, returned job {job.id} to its lane")
        return False

    async def get_status(self, job_id: str) -> Optional[TranscodingJob]:
        return await self.repository.get_job(job_id)

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = await self.repository.get_job(job_id)
        if job is None:
            return None
        return {
            "job_id": job.id,
            "status": job.status.value,
            "progress": job.progress_percent,
            "error": job.error_message,
            "attempts": job.attempts,
        }

    async def is_cancel_requested(self, job_id: str) -> bool:
        client = await self.redis.ensure_connected()
        return bool(await client.exists(self.cancel_flag_key(job_id)))

    async def cancel(self, job_id: str) -> CancelResult:
        """Cancel a queued or running job. Terminal jobs are left untouched."""
        job = await self.repository.get_job(job_id)
        if job is None:
            return CancelResult.not_found
        if job.is_terminal:
            return CancelResult.already_finished

        if not await self.repository.cancel_job(job_id, now=self.clock()):
            return CancelResult.already_finished

        client = await self.redis.ensure_connected()
        for priority in LANE_ORDER:
            await client.lrem(self.lane_key(priority), 0, job_id)
        await client.zrem(self.scheduled_retries_key, job_id)
        await client.set(self.cancel_flag_key(job_id), "1", ex=self.cancel_flag_ttl)

        for listener in self._cancel_listeners:
            await listener(job_id)

        logger.info(f"Cancelled transcoding job {job_id}")
        await self._emit(events.JOB_CANCELLED, job)
        return CancelResult.ok

    # Retry policy

    async def handle_failure(self, job_id: str, error: Exception) -> Optional[TranscodingStatus]:
        """
        Route a failed attempt through the retry policy.

        InputError fails the job immediately. Anything else consumes one
        attempt; while attempts <= max_attempts the job is re-queued with
        exponential backoff, otherwise it fails with the final error.
        Returns the resulting status, or the current one if the job was no
        longer running.
        """
        job = await self.repository.get_job(job_id)
        if job is None:
            return None
        if job.status != TranscodingStatus.running:
            return job.status

        message = str(error) or type(error).__name__
        if isinstance(error, InputError):
            await self.repository.fail_job(job_id, message, now=self.clock())
            logger.error(f"Transcoding job {job_id} failed on bad input: {message}")
            await self._emit(events.JOB_FAILED, job, error=message, attempts=job.attempts)
            return TranscodingStatus.failed

        attempts = job.attempts + 1
        if attempts <= job.max_attempts:
            delay = self.retry_delay(job.attempts)
            eligible_at = self.clock() + timedelta(seconds=delay)
            if not await self.repository.requeue_job(job_id, attempts, message, eligible_at):
                current = await self.repository.get_job(job_id)
                return current.status if current else None
            client = await self.redis.ensure_connected()
            await client.zadd(self.scheduled_retries_key, {job_id: to_epoch(eligible_at)})
            logger.warning(
                f"Scheduled retry {attempts}/{job.max_attempts} for job {job_id} in {delay}s: {message}"
            )
            await self._emit(events.JOB_RETRY_SCHEDULED, job, attempts=attempts, delay=delay, error=message)
            return TranscodingStatus.queued

        await self.repository.fail_job(job_id, message, attempts=attempts, now=self.clock())
        logger.error(f"Transcoding job {job_id} failed after {attempts - 1} retries: {message}")
        await self._emit(events.JOB_FAILED, job, error=message, attempts=attempts)
        return TranscodingStatus.failed

    async def process_scheduled_retries(self) -> int:
        """Move retries whose backoff has elapsed into their priority lane."""
        client = await self.redis.ensure_connected()
        now = to_epoch(self.clock())
        due = await client.zrangebyscore(self.scheduled_retries_key, 0, now)

        promoted = 0
        for job_id in due:
            # ZREM is the claim; only one promoter sees 1
            if not await client.zrem(self.scheduled_retries_key, job_id):
                continue
            job = await self.repository.get_job(job_id)
            if job is None or job.status != TranscodingStatus.queued:
                continue
            await client.lpush(self.lane_key(job.priority), job_id)
            promoted += 1
            logger.info(f"Promoted retry for job {job_id} (attempt {job.attempts})")
        return promoted

    async def requeue_orphaned(self, job_id: str, reason: str) -> Optional[TranscodingStatus]:
        """Recover a job whose worker stopped heartbeating."""
        return await self.handle_failure(job_id, RuntimeError(reason))

    async def restore_lost_jobs(self) -> int:
        """Re-push queued jobs that are in neither a lane nor the retry set."""
        client = await self.redis.ensure_connected()
        known = set(await client.zrange(self.scheduled_retries_key, 0, -1))
        for priority in LANE_ORDER:
            known.update(await client.lrange(self.lane_key(priority), 0, -1))

        restored = 0
        for job in await self.repository.list_jobs(status=TranscodingStatus.queued):
            if job.id in known:
                continue
            await client.lpush(self.lane_key(job.priority), job.id)
            restored += 1
        if restored:
            logger.warning(f"Restored {restored} queued jobs missing from the queue")
        return restored

    async def get_queue_stats(self) -> Dict[str, Any]:
        client = await self.redis.ensure_connected()
        lanes = {}
        for priority in LANE_ORDER:
            lanes[priority.value] = await client.llen(self.lane_key(priority))
        return {
            "queues": lanes,
            "scheduled_retries": await client.zcard(self.scheduled_retries_key),
            "jobs": await self.repository.count_by_status(),
            "max_concurrent_jobs": self.max_concurrent_jobs,
        }
