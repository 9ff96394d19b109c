"""
Tests for job intake, dispatch order, cancellation and the retry policy.
"""
import pytest

from vidstream.app.errors import EncodeError, InputError, MetadataError
from vidstream.app.models import TranscodingStatus
from vidstream.app.services import events
from vidstream.app.services.ffprobe_service import VideoMetadata
from vidstream.app.services.transcoding_scheduler import CancelResult, TranscodingScheduler, to_epoch
from tests.fixtures.video_test_fixtures import metadata_360p
from tests.mocks import create_mock_extractor


async def _submit(scheduler, priority="medium", qualities=("240p", "720p"), formats=("hls",), video_id="video-1",
                  input_location="/media/in.mp4"):
    return await scheduler.submit(
        video_id=video_id,
        owner_id="user-1",
        input_location=input_location,
        requested_qualities=list(qualities) if qualities is not None else None,
        formats=list(formats) if formats is not None else None,
        priority=priority,
    )


async def _start(scheduler, repository, worker_id="worker-a"):
    job = await scheduler.dequeue_next()
    await repository.mark_running(job.id, worker_id)
    return job


class TestSubmit:

    async def test_creates_queued_job(self, scheduler, mock_redis, event_sink):
        job = await _submit(scheduler, qualities=["1080p", "720p", "480p", "240p"], formats=["hls", "dash"])

        assert job.status == TranscodingStatus.queued
        assert job.qualities == ["240p", "480p", "720p", "1080p"]
        assert job.formats == ["hls", "dash"]
        assert job.output_root == f"transcoded/video-1/{job.id}"
        assert job.source_duration == 120.0
        assert job.max_attempts == 3
        assert await mock_redis.lrange("transcoding:queue:medium", 0, -1) == [job.id]
        assert event_sink.names() == [events.JOB_QUEUED]

    async def test_small_source_falls_back_to_fitting_profile(self, repository, redis_client, catalog):
        scheduler = TranscodingScheduler(repository, redis_client, create_mock_extractor(metadata_360p()), catalog)

        job = await _submit(scheduler, qualities=["1080p", "720p"])

        assert job.qualities == ["360p"]

    async def test_all_fitting_profiles_when_none_requested(self, scheduler):
        job = await _submit(scheduler, qualities=None)

        assert job.qualities == ["240p", "360p", "480p", "720p", "1080p"]

    async def test_unknown_quality(self, scheduler):
        with pytest.raises(InputError, match="8K"):
            await _submit(scheduler, qualities=["720p", "8K"])

    async def test_unknown_format(self, scheduler):
        with pytest.raises(InputError):
            await _submit(scheduler, formats=["webm"])

    async def test_empty_formats(self, scheduler):
        with pytest.raises(InputError):
            await _submit(scheduler, formats=[])

    async def test_unknown_priority(self, scheduler):
        with pytest.raises(InputError):
            await _submit(scheduler, priority="urgent")

    async def test_duplicate_formats_collapse(self, scheduler):
        job = await _submit(scheduler, formats=["hls", "hls", "mp4"])

        assert job.formats == ["hls", "mp4"]

    async def test_formats_default_to_enabled_set(self, repository, redis_client, extractor, catalog):
        scheduler = TranscodingScheduler(repository, redis_client, extractor, catalog, allowed_formats=["hls", "dash"])

        job = await _submit(scheduler, formats=None)

        assert job.formats == ["hls", "dash"]

    async def test_disabled_format_is_rejected(self, repository, redis_client, extractor, catalog):
        scheduler = TranscodingScheduler(repository, redis_client, extractor, catalog, allowed_formats=["hls"])

        with pytest.raises(InputError, match="mp4 is disabled"):
            await _submit(scheduler, formats=["hls", "mp4"])
        assert await repository.list_jobs() == []

    async def test_every_format_allowed_by_default(self, repository, redis_client, extractor, catalog):
        scheduler = TranscodingScheduler(repository, redis_client, extractor, catalog)

        job = await _submit(scheduler, formats=None)

        assert job.formats == ["hls", "dash", "mp4"]

    async def test_storage_source_is_read_through_storage(self, scheduler, storage):
        storage.objects["uploads/in.mp4"] = b"source"

        job = await _submit(scheduler, input_location="storage://uploads/in.mp4")

        scheduler.extractor.extract.assert_awaited_once_with("memory://uploads/in.mp4")
        assert job.input_location == "storage://uploads/in.mp4"

    async def test_missing_storage_source(self, scheduler, repository):
        with pytest.raises(InputError, match="not found"):
            await _submit(scheduler, input_location="storage://uploads/missing.mp4")
        assert await repository.list_jobs() == []
        scheduler.extractor.extract.assert_not_awaited()

    async def test_unreadable_source(self, scheduler, repository):
        scheduler.extractor.extract.side_effect = MetadataError("No video stream found")

        with pytest.raises(InputError):
            await _submit(scheduler)
        assert await repository.list_jobs() == []

    async def test_source_below_every_profile(self, scheduler):
        scheduler.extractor.extract.return_value = VideoMetadata(
            duration=10.0, width=320, height=180, framerate=25.0, bitrate=100000, video_codec="h264"
        )

        with pytest.raises(InputError, match="below every profile"):
            await _submit(scheduler)


class TestDispatch:

    async def test_priority_then_fifo(self, scheduler):
        low = await _submit(scheduler, priority="low")
        medium_1 = await _submit(scheduler, priority="medium")
        high = await _submit(scheduler, priority="high")
        medium_2 = await _submit(scheduler, priority="medium")

        order = []
        for _ in range(4):
            job = await scheduler.dequeue_next()
            order.append(job.id)

        assert order == [high.id, medium_1.id, medium_2.id, low.id]
        assert await scheduler.dequeue_next() is None

    async def test_concurrency_ceiling(self, scheduler, mock_redis):
        job = await _submit(scheduler)

        assert await scheduler.dequeue_next(active_jobs=2) is None
        assert await mock_redis.llen("transcoding:queue:medium") == 1
        assert (await scheduler.dequeue_next(active_jobs=1)).id == job.id

    async def test_ceiling_counts_jobs_running_on_other_workers(self, scheduler, repository, mock_redis):
        await _submit(scheduler)
        await _submit(scheduler)
        waiting = await _submit(scheduler)
        await _start(scheduler, repository, "worker-a")
        await _start(scheduler, repository, "worker-b")

        # this process runs nothing itself, the shared ceiling still applies
        assert await scheduler.dequeue_next(active_jobs=0) is None
        assert await mock_redis.lrange("transcoding:queue:medium", 0, -1) == [waiting.id]

    async def test_claim_enforces_shared_ceiling(self, scheduler, repository, mock_redis):
        first = await _submit(scheduler)
        second = await _submit(scheduler)
        third = await _submit(scheduler)
        dequeued = [await scheduler.dequeue_next() for _ in range(3)]
        assert [j.id for j in dequeued] == [first.id, second.id, third.id]

        assert await scheduler.claim(dequeued[0], "worker-a")
        assert await scheduler.claim(dequeued[1], "worker-b")
        assert not await scheduler.claim(dequeued[2], "worker-c")

        assert (await repository.get_job(third.id)).status == TranscodingStatus.queued
        assert await repository.count_running() == 2

        later = await _submit(scheduler)
        await repository.complete_job(first.id)
        # the refused job goes back to the front of its lane
        assert (await scheduler.dequeue_next()).id == third.id
        assert await mock_redis.lrange("transcoding:queue:medium", 0, -1) == [later.id]

    async def test_claim_of_cancelled_job_is_not_requeued(self, scheduler, repository, mock_redis):
        job = await _submit(scheduler)
        dequeued = await scheduler.dequeue_next()
        await scheduler.cancel(job.id)

        assert not await scheduler.claim(dequeued, "worker-a")
        assert await mock_redis.llen("transcoding:queue:medium") == 0

    async def test_skips_jobs_no_longer_queued(self, scheduler, repository):
        cancelled = await _submit(scheduler)
        live = await _submit(scheduler)
        await repository.cancel_job(cancelled.id)

        assert (await scheduler.dequeue_next()).id == live.id

    async def test_job_status_view(self, scheduler):
        job = await _submit(scheduler)

        assert await scheduler.get_job_status(job.id) == {
            "job_id": job.id,
            "status": "queued",
            "progress": 0,
            "error": None,
            "attempts": 0,
        }
        assert await scheduler.get_job_status("missing") is None


class TestCancel:

    async def test_cancel_queued_job(self, scheduler, mock_redis, event_sink):
        job = await _submit(scheduler)

        assert await scheduler.cancel(job.id) == CancelResult.ok

        assert (await scheduler.get_status(job.id)).status == TranscodingStatus.cancelled
        assert await mock_redis.llen("transcoding:queue:medium") == 0
        assert await scheduler.is_cancel_requested(job.id)
        assert mock_redis.ttl_of(f"transcoding:cancel:{job.id}") > 6 * 24 * 3600
        assert events.JOB_CANCELLED in event_sink.names()

    async def test_cancel_running_job_notifies_listeners(self, scheduler, repository):
        job = await _submit(scheduler)
        await _start(scheduler, repository)
        notified = []

        async def listener(job_id):
            notified.append(job_id)

        scheduler.add_cancel_listener(listener)

        assert await scheduler.cancel(job.id) == CancelResult.ok
        assert notified == [job.id]

    async def test_cancel_finished_job(self, scheduler, repository):
        job = await _submit(scheduler)
        await _start(scheduler, repository)
        await repository.complete_job(job.id)

        assert await scheduler.cancel(job.id) == CancelResult.already_finished
        assert (await scheduler.get_status(job.id)).status == TranscodingStatus.completed
        assert not await scheduler.is_cancel_requested(job.id)

    async def test_cancel_unknown_job(self, scheduler):
        assert await scheduler.cancel("missing") == CancelResult.not_found

    async def test_cancel_removes_scheduled_retry(self, scheduler, repository, mock_redis):
        job = await _submit(scheduler)
        await _start(scheduler, repository)
        await scheduler.handle_failure(job.id, EncodeError("boom"))

        await scheduler.cancel(job.id)

        assert await mock_redis.zcard("transcoding:scheduled_retries") == 0


class TestRetryPolicy:

    async def test_backoff_is_exponential_and_capped(self, scheduler):
        assert [scheduler.retry_delay(n) for n in (0, 1, 2)] == [60, 120, 240]
        assert scheduler.retry_delay(10) == 3600

    async def test_transient_failure_schedules_retry(self, scheduler, repository, mock_redis, clock, event_sink):
        job = await _submit(scheduler)
        await _start(scheduler, repository)

        status = await scheduler.handle_failure(job.id, EncodeError("encoder crashed"))

        assert status == TranscodingStatus.queued
        stored = await repository.get_job(job.id)
        assert stored.attempts == 1
        assert stored.error_message == "encoder crashed"
        score = await mock_redis.zscore("transcoding:scheduled_retries", job.id)
        assert score == to_epoch(clock()) + 60
        assert await mock_redis.llen("transcoding:queue:medium") == 0
        assert events.JOB_RETRY_SCHEDULED in event_sink.names()

    async def test_retry_promoted_only_after_backoff(self, scheduler, repository, clock):
        job = await _submit(scheduler)
        await _start(scheduler, repository)
        await scheduler.handle_failure(job.id, EncodeError("encoder crashed"))

        clock.advance(seconds=59)
        assert await scheduler.process_scheduled_retries() == 0
        assert await scheduler.dequeue_next() is None

        clock.advance(seconds=1)
        assert await scheduler.process_scheduled_retries() == 1
        assert (await scheduler.dequeue_next()).id == job.id

    async def test_fails_after_max_attempts(self, scheduler, repository, clock, event_sink):
        job = await _submit(scheduler)
        executions = 0

        while True:
            await scheduler.process_scheduled_retries()
            next_job = await scheduler.dequeue_next()
            if next_job is None:
                break
            await repository.mark_running(next_job.id, "worker-a")
            executions += 1
            await scheduler.handle_failure(next_job.id, EncodeError(f"crash {executions}"))
            clock.advance(hours=2)

        stored = await repository.get_job(job.id)
        assert stored.status == TranscodingStatus.failed
        assert stored.error_message == "crash 4"
        assert executions == 1 + job.max_attempts
        assert event_sink.names().count(events.JOB_FAILED) == 1

    async def test_input_error_is_not_retried(self, scheduler, repository, mock_redis):
        job = await _submit(scheduler)
        await _start(scheduler, repository)

        status = await scheduler.handle_failure(job.id, InputError("corrupt source"))

        assert status == TranscodingStatus.failed
        assert (await repository.get_job(job.id)).attempts == 0
        assert await mock_redis.zcard("transcoding:scheduled_retries") == 0

    async def test_failure_after_cancel_is_ignored(self, scheduler, repository):
        job = await _submit(scheduler)
        await _start(scheduler, repository)
        await scheduler.cancel(job.id)

        status = await scheduler.handle_failure(job.id, EncodeError("terminated"))

        assert status == TranscodingStatus.cancelled

    async def test_promotion_skips_cancelled_jobs(self, scheduler, repository, clock, mock_redis):
        job = await _submit(scheduler)
        await _start(scheduler, repository)
        await scheduler.handle_failure(job.id, EncodeError("boom"))
        await repository.cancel_job(job.id)

        clock.advance(hours=1)

        assert await scheduler.process_scheduled_retries() == 0
        assert await mock_redis.llen("transcoding:queue:medium") == 0

    async def test_requeue_orphaned_consumes_an_attempt(self, scheduler, repository):
        job = await _submit(scheduler)
        await _start(scheduler, repository)

        status = await scheduler.requeue_orphaned(job.id, "Worker worker-a stopped heartbeating")

        assert status == TranscodingStatus.queued
        stored = await repository.get_job(job.id)
        assert stored.attempts == 1
        assert "stopped heartbeating" in stored.error_message


class TestRecovery:

    async def test_restore_lost_jobs(self, scheduler, mock_redis):
        job = await _submit(scheduler, priority="high")
        kept = await _submit(scheduler, priority="low")
        await mock_redis.delete("transcoding:queue:high")

        assert await scheduler.restore_lost_jobs() == 1
        assert await mock_redis.lrange("transcoding:queue:high", 0, -1) == [job.id]
        assert await mock_redis.lrange("transcoding:queue:low", 0, -1) == [kept.id]
        assert await scheduler.restore_lost_jobs() == 0

    async def test_restore_ignores_scheduled_retries(self, scheduler, repository):
        job = await _submit(scheduler)
        await _start(scheduler, repository)
        await scheduler.handle_failure(job.id, EncodeError("boom"))

        assert await scheduler.restore_lost_jobs() == 0

    async def test_queue_stats(self, scheduler, repository):
        await _submit(scheduler, priority="high")
        await _submit(scheduler, priority="low")
        await _submit(scheduler, priority="low")
        running = await _start(scheduler, repository)

        stats = await scheduler.get_queue_stats()

        assert stats["queues"] == {"high": 0, "medium": 0, "low": 2}
        assert stats["scheduled_retries"] == 0
        assert stats["jobs"]["queued"] == 2
        assert stats["jobs"]["running"] == 1
        assert stats["max_concurrent_jobs"] == 2
        assert running.priority.value == "high"
