"""Database models for the transcode pipeline.

Segment rows are write-once outputs of a pipeline run; PipelineRun rows
supervise the background execution of one run for one video.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID

from app.core.database import Base


class Resolution(str, Enum):
    """Supported rendition quality levels."""
    RES_720P = "720p"
    RES_1080P = "1080p"
    RES_2K = "2k"
    RES_4K = "4k"


# Resolution dimensions mapping
RESOLUTION_DIMENSIONS = {
    Resolution.RES_720P: (1280, 720),
    Resolution.RES_1080P: (1920, 1080),
    Resolution.RES_2K: (2560, 1440),
    Resolution.RES_4K: (3840, 2160),
}


class PipelineRunStatus(str, Enum):
    """Status of a pipeline run."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_RUN_STATUSES = (PipelineRunStatus.QUEUED.value, PipelineRunStatus.RUNNING.value)


class Segment(Base):
    """One playable chunk of one rendition of a video."""
    __tablename__ = "segments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    video_id = Column(
        UUID(as_uuid=True),
        ForeignKey("videos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    file_name = Column(String(255), nullable=False)
    storage_key = Column(String(1024), nullable=False)
    url = Column(String(2048), nullable=False)
    resolution = Column(String(20), nullable=False)

    start_time = Column(Float, nullable=False)  # seconds from rendition start
    duration = Column(Float, nullable=False)  # seconds
    segment_index = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Segment {self.video_id} {self.resolution}#{self.segment_index}>"


class PipelineRun(Base):
    """Persisted record of one background pipeline run."""
    __tablename__ = "pipeline_runs"
    __table_args__ = (
        # At most one queued or running run per video
        Index(
            "ix_pipeline_runs_active_video",
            "video_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'running')"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    video_id = Column(
        UUID(as_uuid=True),
        ForeignKey("videos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_key = Column(String(1024), nullable=False)

    status = Column(String(20), default=PipelineRunStatus.QUEUED.value, index=True)
    attempt = Column(Integer, default=0)
    cancel_requested = Column(Boolean, default=False)
    error_message = Column(Text, nullable=True)
    events = Column(JSON, default=list)

    # Celery task id of the last launch
    task_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    def is_active(self) -> bool:
        """Check if the run is queued or running."""
        return self.status in ACTIVE_RUN_STATUSES

    def __repr__(self) -> str:
        return f"<PipelineRun {self.id} video={self.video_id} - {self.status}>"
