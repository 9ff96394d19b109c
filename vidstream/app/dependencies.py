"""
Service wiring shared by the API and the worker process.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from vidstream.app.config import Settings
from vidstream.app.db import create_session_factory
from vidstream.app.services.events import EventSink
from vidstream.app.services.ffmpeg_service import EncoderOptions, FFmpegService
from vidstream.app.services.ffprobe_service import FFprobeService
from vidstream.app.services.job_repository import JobRepository
from vidstream.app.services.manifest_service import ManifestService
from vidstream.app.services.playback_token_service import PlaybackTokenService
from vidstream.app.services.quality_profile_service import QualityProfileCatalog, get_quality_profile_catalog
from vidstream.app.services.redis_client import RedisClient
from vidstream.app.services.storage_service import StorageBackend, create_storage_backend
from vidstream.app.services.streaming_session_service import StreamingSessionService
from vidstream.app.services.transcoding_scheduler import TranscodingScheduler


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: sessionmaker
    redis: RedisClient
    repository: JobRepository
    catalog: QualityProfileCatalog
    extractor: FFprobeService
    scheduler: TranscodingScheduler
    manifests: ManifestService
    storage: StorageBackend
    tokens: PlaybackTokenService
    sessions: StreamingSessionService

    def create_encoder(self) -> FFmpegService:
        s = self.settings
        return FFmpegService(
            s.FFMPEG_PATH,
            EncoderOptions(
                hls_segment_duration=s.HLS_SEGMENT_DURATION,
                dash_segment_duration=s.DASH_SEGMENT_DURATION,
                two_pass=s.TWO_PASS_ENCODING,
                gpu_acceleration=s.GPU_ACCELERATION,
                audio_normalization=s.AUDIO_NORMALIZATION,
                kill_grace_seconds=s.ENCODER_KILL_GRACE_SECONDS,
            ),
        )

    async def close(self) -> None:
        await self.redis.disconnect()
        await self.session_factory.kw["bind"].dispose()


def build_services(settings: Settings, session_factory: Optional[sessionmaker] = None,
                   redis_client: Optional[RedisClient] = None,
                   storage: Optional[StorageBackend] = None,
                   event_sink: Optional[EventSink] = None) -> ServiceContainer:
    session_factory = session_factory or create_session_factory(settings.DATABASE_URL)
    redis_client = redis_client or RedisClient(settings.REDIS_URL)
    repository = JobRepository(session_factory)
    catalog = get_quality_profile_catalog()
    extractor = FFprobeService(settings.FFPROBE_PATH)
    storage = storage or create_storage_backend(settings)
    scheduler = TranscodingScheduler(
        repository,
        redis_client,
        extractor,
        catalog,
        max_concurrent_jobs=settings.MAX_CONCURRENT_JOBS,
        max_attempts=settings.MAX_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        event_sink=event_sink,
        storage=storage,
        allowed_formats=settings.output_formats,
    )
    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        redis=redis_client,
        repository=repository,
        catalog=catalog,
        extractor=extractor,
        scheduler=scheduler,
        manifests=ManifestService(settings.DASH_SEGMENT_DURATION, catalog),
        storage=storage,
        tokens=PlaybackTokenService(
            settings.JWT_SECRET_KEY,
            default_ttl=settings.PLAYBACK_TOKEN_TTL,
            default_max_sessions=settings.DEFAULT_MAX_SESSIONS,
            audience=settings.PLAYBACK_TOKEN_AUDIENCE or None,
        ),
        sessions=StreamingSessionService(
            redis_client,
            catalog,
            inactivity_timeout=settings.SESSION_INACTIVITY_TIMEOUT,
            default_max_sessions=settings.DEFAULT_MAX_SESSIONS,
        ),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
