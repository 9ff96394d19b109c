"""
SQLAlchemy 2.0 database models.
"""
import uuid
import enum
from datetime import datetime

from sqlalchemy import (
    Column, String, BigInteger, DateTime, Enum as SAEnum, ForeignKey, Text,
    Integer, JSON, UniqueConstraint, Float
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


def _uuid_str() -> str:
    return str(uuid.uuid4())


class TranscodingStatus(str, enum.Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = (TranscodingStatus.completed, TranscodingStatus.failed, TranscodingStatus.cancelled)


class JobPriority(str, enum.Enum):
    high = "high"
    medium = "medium"
    low = "low"


class OutputFormat(str, enum.Enum):
    hls = "hls"
    dash = "dash"
    mp4 = "mp4"


class TranscodingJob(Base):
    __tablename__ = "transcoding_jobs"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    video_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)

    # Job configuration
    input_location = Column(String(1000), nullable=False)
    output_root = Column(String(1000), nullable=False)
    qualities = Column(JSON, nullable=False)  # profile names, ascending bitrate
    formats = Column(JSON, nullable=False)
    priority = Column(SAEnum(JobPriority), default=JobPriority.medium, nullable=False)
    source_duration = Column(Float, default=0.0, nullable=False)

    # Job status
    status = Column(SAEnum(TranscodingStatus), default=TranscodingStatus.queued, nullable=False, index=True)
    progress_percent = Column(Integer, default=0, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    error_message = Column(Text)
    worker_id = Column(String(100), index=True)
    next_attempt_at = Column(DateTime)

    # Output information
    hls_manifest_key = Column(String(1000))
    dash_manifest_key = Column(String(1000))

    # Timing
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    output_files = relationship(
        "OutputFile", back_populates="job", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class OutputFile(Base):
    __tablename__ = "transcoding_output_files"
    __table_args__ = (
        UniqueConstraint("job_id", "profile", "format", name="uq_output_job_profile_format"),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    job_id = Column(String(36), ForeignKey("transcoding_jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    profile = Column(String(20), nullable=False)
    format = Column(SAEnum(OutputFormat), nullable=False)
    storage_path = Column(String(1000), nullable=False)
    manifest_path = Column(String(1000))
    file_size = Column(BigInteger, default=0, nullable=False)
    bitrate = Column(Integer, nullable=False)  # kbps, video + audio
    segment_count = Column(Integer, default=0, nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    codecs = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("TranscodingJob", back_populates="output_files")
