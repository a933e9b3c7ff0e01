"""Video models for uploaded media assets.

A Video is created by the upload flow in status ``uploaded`` and is mutated
only by the transcode pipeline afterwards.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Float, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class VideoStatus(str, Enum):
    """Lifecycle status of a video.

    Transitions only move forward: uploaded -> processing -> transcoded ->
    complete, with failed reachable from any non-terminal state.
    ``pending`` and ``segmented`` are declared but never assigned by the
    pipeline.
    """

    PENDING = "pending"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    TRANSCODED = "transcoded"
    SEGMENTED = "segmented"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.COMPLETE, VideoStatus.FAILED)


TERMINAL_VIDEO_STATUSES = (VideoStatus.COMPLETE.value, VideoStatus.FAILED.value)


class Video(Base):
    """One media asset owned by one user."""

    __tablename__ = "videos"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Probe results, written once per pipeline run
    duration: Mapped[float] = mapped_column(Float, default=0.0)
    resolution_info: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Artifacts
    original_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), default=VideoStatus.UPLOADED.value, index=True
    )
    file_size: Mapped[int] = mapped_column(BigInteger, default=0)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def is_finished(self) -> bool:
        """Check if the video reached a terminal status."""
        return VideoStatus(self.status).is_terminal

    def __repr__(self) -> str:
        return f"<Video(id={self.id}, title={self.title}, status={self.status})>"
