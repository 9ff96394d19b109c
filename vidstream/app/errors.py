"""
Error taxonomy for the transcoding and streaming pipeline.
"""
from typing import Optional


class VidstreamError(Exception):
    """Base class for pipeline errors."""
    pass


class ConfigurationError(VidstreamError):
    """Raised when configuration validation fails."""
    pass


class InputError(VidstreamError):
    """Missing or corrupt source. Never retried."""
    pass


class MetadataError(InputError):
    """Raised when a source cannot be read by ffprobe or has no video stream."""
    pass


class EncodeError(VidstreamError):
    """Encoder subprocess exited with a failure."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class EncodeCancelled(EncodeError):
    """Encoder subprocess was terminated on request."""
    pass


class StorageError(VidstreamError):
    """Upload or download failed after all retries."""
    pass


class TokenError(VidstreamError):
    """Playback token rejected."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


class SessionLimitError(VidstreamError):
    """Too many concurrent playback sessions for a token."""
    pass


class SessionNotFoundError(VidstreamError):
    """Streaming session expired or never existed."""
    pass


class SchedulerFullError(VidstreamError):
    """Concurrency ceiling reached; the job stays queued."""
    pass


class JobStateError(VidstreamError):
    """A job transition was attempted from an incompatible state."""
    pass
