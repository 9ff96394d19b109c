# vidstream/app/main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from vidstream.app.api import streaming, transcoding
from vidstream.app.config import get_settings
from vidstream.app.db import init_models
from vidstream.app.dependencies import ServiceContainer, build_services
from vidstream.app.services.logging_service import setup_logging

logger = logging.getLogger(__name__)


async def _session_reaper(services: ServiceContainer):
    interval = services.settings.SESSION_REAP_INTERVAL
    while True:
        await asyncio.sleep(interval)
        try:
            await services.sessions.reap_expired()
        except Exception as e:
            logger.error(f"Session reaper failed: {e}")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    settings = services.settings if services is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "services", None) is None
        if owned:
            setup_logging(settings.LOG_LEVEL, settings.LOG_DIR or None)
            app.state.services = build_services(settings)
            await init_models(app.state.services.session_factory)
        await app.state.services.redis.ensure_connected()
        reaper = asyncio.create_task(_session_reaper(app.state.services))
        try:
            yield
        finally:
            reaper.cancel()
            if owned:
                await app.state.services.close()

    app = FastAPI(
        title="vidstream",
        description="Video transcoding and adaptive streaming pipeline.",
        version=settings.VERSION,
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url="/api/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.include_router(transcoding.router)
    app.include_router(streaming.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
