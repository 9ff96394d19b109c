#!/usr/bin/env python3
"""
Script to run the transcoding worker.
"""
import asyncio
import logging
import signal

from dotenv import load_dotenv

from vidstream.app.config import get_settings
from vidstream.app.db import init_models
from vidstream.app.dependencies import build_services
from vidstream.app.services.logging_service import setup_logging
from vidstream.app.services.transcoding_worker import TranscodingWorker


async def main():
    """Main entry point for the transcoding worker."""
    load_dotenv()
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR or None)

    logger = logging.getLogger(__name__)
    logger.info("Starting transcoding worker")
    logger.info(f"  Redis URL: {settings.REDIS_URL}")
    logger.info(f"  Storage backend: {settings.STORAGE_BACKEND}")
    logger.info(f"  Temp Directory: {settings.TRANSCODING_TEMP_DIR}")
    logger.info(f"  Max concurrent jobs: {settings.MAX_CONCURRENT_JOBS}")

    services = build_services(settings)
    await init_models(services.session_factory)
    worker = TranscodingWorker(
        scheduler=services.scheduler,
        repository=services.repository,
        encoder=services.create_encoder(),
        storage=services.storage,
        manifests=services.manifests,
        redis_client=services.redis,
        settings=settings,
    )

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    worker_task = asyncio.create_task(worker.start())
    stop_task = asyncio.create_task(stop_requested.wait())
    try:
        done, _ = await asyncio.wait([worker_task, stop_task], return_when=asyncio.FIRST_COMPLETED)
        if worker_task in done:
            # Surface the failure
            worker_task.result()
        logger.info("Received shutdown signal, shutting down...")
    finally:
        await worker.stop()
        await asyncio.gather(worker_task, return_exceptions=True)
        stop_task.cancel()
        await services.close()
        logger.info("Transcoding worker stopped")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
