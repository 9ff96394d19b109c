"""
Job lifecycle events.

Components receive a sink at construction time and push events into it; the
caller decides where they go.
"""
import logging
from typing import Any, Dict, List, Tuple

from vidstream.app.services.logging_service import get_transcoding_logger

JOB_QUEUED = "job_queued"
JOB_STARTED = "job_started"
JOB_PROGRESS = "job_progress"
JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"
JOB_RETRY_SCHEDULED = "job_retry_scheduled"
JOB_CANCELLED = "job_cancelled"
WORKER_LOST = "worker_lost"


class EventSink:
    """Receives lifecycle events. Subclasses override ``emit``."""

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    """Default sink: structured transcoding log lines"""

    def __init__(self):
        self.logger = get_transcoding_logger()

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        level = logging.DEBUG if event == JOB_PROGRESS else logging.INFO
        if event == JOB_FAILED:
            level = logging.ERROR
        self.logger.log_transcoding_event(
            level,
            job_id=payload.get("job_id", ""),
            video_id=payload.get("video_id", ""),
            quality=payload.get("quality", ""),
            status=event,
            message=f"{event} {payload.get('job_id', '')}",
            payload={k: v for k, v in payload.items() if k not in ("job_id", "video_id", "quality")},
        )


class RecordingEventSink(EventSink):
    """Keeps events in memory, for tests and local tooling."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]
