"""
Persistence for transcoding jobs and their output files.

Every status change is a compare-and-set ``UPDATE ... WHERE status IN (...)``
checked by rowcount, so concurrent workers and API processes never overwrite
each other's transitions.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased, sessionmaker

from vidstream.app.errors import JobStateError
from vidstream.app.models import OutputFile, TranscodingJob, TranscodingStatus
from vidstream.app.services.base_service import BaseService

logger = logging.getLogger(__name__)


class JobRepository(BaseService):
    """Job and OutputFile tables behind atomic update primitives."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def create_job(self, **fields: Any) -> TranscodingJob:
        async with self.session_factory() as db:
            job = TranscodingJob(**fields)
            db.add(job)
            await db.commit()
            job_id = job.id
        return await self.get_job(job_id)

    async def get_job(self, job_id: str) -> Optional[TranscodingJob]:
        async with self.session_factory() as db:
            return await db.get(TranscodingJob, job_id)

    async def list_outputs(self, job_id: str) -> List[OutputFile]:
        async with self.session_factory() as db:
            result = await db.execute(select(OutputFile).where(OutputFile.job_id == job_id))
            return list(result.scalars().all())

    async def list_jobs(self, status: Optional[TranscodingStatus] = None,
                        worker_id: Optional[str] = None) -> List[TranscodingJob]:
        async with self.session_factory() as db:
            query = select(TranscodingJob)
            if status is not None:
                query = query.where(TranscodingJob.status == status)
            if worker_id is not None:
                query = query.where(TranscodingJob.worker_id == worker_id)
            result = await db.execute(query.order_by(TranscodingJob.created_at))
            return list(result.scalars().all())

    async def latest_completed_job(self, video_id: str) -> Optional[TranscodingJob]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TranscodingJob)
                .where(TranscodingJob.video_id == video_id)
                .where(TranscodingJob.status == TranscodingStatus.completed)
                .order_by(TranscodingJob.completed_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def count_by_status(self) -> Dict[str, int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TranscodingJob.status, func.count()).group_by(TranscodingJob.status)
            )
            counts = {s.value: 0 for s in TranscodingStatus}
            for status, count in result.all():
                counts[getattr(status, "value", status)] = count
            return counts

    async def count_running(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(TranscodingJob)
                .where(TranscodingJob.status == TranscodingStatus.running)
            )
            return result.scalar_one()

    async def transition(self, job_id: str, from_statuses: Iterable[TranscodingStatus],
                         *conditions: Any, **values: Any) -> bool:
        """Apply ``values`` only if the job is currently in one of ``from_statuses``."""
        async with self.session_factory() as db:
            query = (
                update(TranscodingJob)
                .where(TranscodingJob.id == job_id)
                .where(TranscodingJob.status.in_(list(from_statuses)))
            )
            for condition in conditions:
                query = query.where(condition)
            result = await db.execute(query.values(**values))
            await db.commit()
            return result.rowcount > 0

    async def mark_running(self, job_id: str, worker_id: str, now: Optional[datetime] = None,
                           running_limit: Optional[int] = None) -> bool:
        """
        Claim a queued job for ``worker_id``.

        With ``running_limit`` the claim also fails while that many jobs are
        already running anywhere, checked in the same statement.
        """
        conditions = []
        if running_limit is not None:
            others = aliased(TranscodingJob)
            running = (
                select(func.count())
                .select_from(others)
                .where(others.status == TranscodingStatus.running)
                .scalar_subquery()
            )
            conditions.append(running < running_limit)
        return await self.transition(
            job_id,
            [TranscodingStatus.queued],
            *conditions,
            status=TranscodingStatus.running,
            started_at=now or datetime.utcnow(),
            progress_percent=0,
            worker_id=worker_id,
            next_attempt_at=None,
        )

    async def update_progress(self, job_id: str, progress_percent: int) -> bool:
        """Raise progress of a running job. Lower values are ignored."""
        progress_percent = min(100, max(0, int(progress_percent)))
        async with self.session_factory() as db:
            result = await db.execute(
                update(TranscodingJob)
                .where(TranscodingJob.id == job_id)
                .where(TranscodingJob.status == TranscodingStatus.running)
                .where(TranscodingJob.progress_percent <= progress_percent)
                .values(progress_percent=progress_percent)
            )
            await db.commit()
            return result.rowcount > 0

    async def add_output(self, job_id: str, **fields: Any) -> Optional[OutputFile]:
        """
        Record an output file for a running job.

        Returns None when the job is no longer running. A second entry for the
        same (profile, format) pair raises JobStateError.
        """
        async with self.session_factory() as db:
            # Touch the job row so a concurrent cancel serializes behind this insert
            locked = await db.execute(
                update(TranscodingJob)
                .where(TranscodingJob.id == job_id)
                .where(TranscodingJob.status == TranscodingStatus.running)
                .values(progress_percent=TranscodingJob.progress_percent)
            )
            if locked.rowcount == 0:
                await db.rollback()
                return None

            output = OutputFile(job_id=job_id, **fields)
            db.add(output)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise JobStateError(
                    f"Output {fields.get('profile')}/{fields.get('format')} already recorded for job {job_id}"
                )
            return output

    async def complete_job(self, job_id: str, hls_manifest_key: Optional[str] = None,
                           dash_manifest_key: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        return await self.transition(
            job_id,
            [TranscodingStatus.running],
            status=TranscodingStatus.completed,
            progress_percent=100,
            completed_at=now or datetime.utcnow(),
            hls_manifest_key=hls_manifest_key,
            dash_manifest_key=dash_manifest_key,
            error_message=None,
        )

    async def fail_job(self, job_id: str, error_message: str, attempts: Optional[int] = None,
                       from_statuses: Iterable[TranscodingStatus] = (TranscodingStatus.running,
                                                                      TranscodingStatus.queued),
                       now: Optional[datetime] = None) -> bool:
        values: Dict[str, Any] = {
            "status": TranscodingStatus.failed,
            "completed_at": now or datetime.utcnow(),
            "error_message": error_message,
        }
        if attempts is not None:
            values["attempts"] = attempts
        return await self.transition(job_id, from_statuses, **values)

    async def requeue_job(self, job_id: str, attempts: int, error_message: str,
                          next_attempt_at: Optional[datetime]) -> bool:
        """Send a running job back to the queue and drop the failed attempt's outputs."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(TranscodingJob)
                .where(TranscodingJob.id == job_id)
                .where(TranscodingJob.status == TranscodingStatus.running)
                .values(
                    status=TranscodingStatus.queued,
                    progress_percent=0,
                    attempts=attempts,
                    error_message=error_message,
                    next_attempt_at=next_attempt_at,
                    worker_id=None,
                    started_at=None,
                )
            )
            if result.rowcount == 0:
                await db.rollback()
                return False
            await db.execute(delete(OutputFile).where(OutputFile.job_id == job_id))
            await db.commit()
            return True

    async def cancel_job(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """Cancel a queued or running job, discarding any partial outputs."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(TranscodingJob)
                .where(TranscodingJob.id == job_id)
                .where(TranscodingJob.status.in_([TranscodingStatus.queued, TranscodingStatus.running]))
                .values(
                    status=TranscodingStatus.cancelled,
                    completed_at=now or datetime.utcnow(),
                    error_message="Cancelled",
                )
            )
            if result.rowcount == 0:
                await db.rollback()
                return False
            await db.execute(delete(OutputFile).where(OutputFile.job_id == job_id))
            await db.commit()
            return True
