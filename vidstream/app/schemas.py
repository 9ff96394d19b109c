"""
Pydantic models for the HTTP API.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vidstream.app.models import JobPriority, OutputFormat


class TranscodingJobRequest(BaseModel):
    video_id: str = Field(..., min_length=1, max_length=64)
    owner_id: str = Field(..., min_length=1, max_length=64)
    input_location: str = Field(..., min_length=1)
    qualities: List[str] = Field(default_factory=list, description="Requested profile names; empty means all that fit")
    formats: Optional[List[OutputFormat]] = Field(None, description="Output formats; omitted means every enabled format")
    priority: JobPriority = JobPriority.medium
    max_attempts: Optional[int] = Field(None, ge=0, le=10)

    @field_validator("formats")
    @classmethod
    def validate_formats(cls, v: Optional[List[OutputFormat]]) -> Optional[List[OutputFormat]]:
        if v is not None and not v:
            raise ValueError("at least one output format is required")
        return v


class TranscodingJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    video_id: str
    status: str
    progress: int
    qualities: List[str]
    formats: List[str]
    priority: str
    attempts: int
    max_attempts: int
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "TranscodingJobResponse":
        return cls(
            job_id=job.id,
            video_id=job.video_id,
            status=job.status.value,
            progress=job.progress_percent,
            qualities=job.qualities,
            formats=job.formats,
            priority=job.priority.value,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            error=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    progress: int
    error: Optional[str] = None
    attempts: int = 0


class CancelResponse(BaseModel):
    job_id: str
    result: str


class OutputFileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    profile: str
    format: str
    storage_path: str
    file_size: int
    bitrate: int
    segment_count: int
    width: int
    height: int
    codecs: str

    @field_validator("format", mode="before")
    @classmethod
    def format_value(cls, v):
        return getattr(v, "value", v)


class PlaybackTokenRequest(BaseModel):
    video_id: str
    user_id: str
    expires_in: Optional[int] = Field(None, gt=0, le=24 * 3600)
    allowed_ips: Optional[List[str]] = None
    max_sessions: Optional[int] = Field(None, ge=1, le=20)
    quality_restriction: Optional[str] = None


class PlaybackTokenResponse(BaseModel):
    token: str
    expires_in: int


class SessionStartRequest(BaseModel):
    video_id: str
    client_bandwidth: float = Field(..., gt=0, description="Observed bandwidth in kbps")
    device_class: Optional[str] = None
    screen_size: Optional[str] = None


class SessionStartResponse(BaseModel):
    session_id: str
    initial_quality: str
    manifest_location: Optional[str] = None
    available_qualities: List[str]


class HeartbeatRequest(BaseModel):
    watch_time: float = Field(..., ge=0)
    current_bandwidth: float = Field(..., ge=0, description="kbps")
    buffer_level: float = Field(..., ge=0, description="Seconds of buffered media")


class QualitySwitchResponse(BaseModel):
    from_quality: str
    to_quality: str
    reason: str


class HeartbeatResponse(BaseModel):
    switch: Optional[QualitySwitchResponse] = None
