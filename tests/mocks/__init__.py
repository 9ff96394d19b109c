"""
Mock implementations for external dependencies in pipeline testing.
"""

from .mock_redis import MockRedis

from .mock_storage import MockStorageBackend

from .mock_ffmpeg_service import (
    MockFFmpegProcess,
    MockStreamReader,
    MockSubprocessFactory,
    create_mock_extractor,
    progress_lines,
    write_fake_outputs
)

__all__ = [
    'MockRedis',
    'MockStorageBackend',
    'MockFFmpegProcess',
    'MockStreamReader',
    'MockSubprocessFactory',
    'create_mock_extractor',
    'progress_lines',
    'write_fake_outputs',
]
