"""Pydantic schemas and timing arithmetic for the transcode pipeline."""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.core.config import settings
from app.modules.transcoding.models import Resolution, RESOLUTION_DIMENSIONS


DEFAULT_LADDER = [Resolution.RES_1080P, Resolution.RES_720P]


def get_resolution_dimensions(resolution: Union[Resolution, str]) -> tuple[int, int]:
    """Get (width, height) for a resolution tag.

    Unrecognized tags fall back to 720p dimensions.
    """
    try:
        return RESOLUTION_DIMENSIONS[Resolution(resolution)]
    except ValueError:
        return RESOLUTION_DIMENSIONS[Resolution.RES_720P]


class TranscodeProfile(BaseModel):
    """Encoding parameters snapshotted at pipeline start."""
    resolutions: list[Resolution] = Field(default_factory=lambda: list(DEFAULT_LADDER), min_length=1)
    segment_duration: int = Field(default=10, gt=0, description="Nominal chunk length in seconds")
    fps: int = Field(default=24, gt=0)
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    replace_existing_segments: bool = False
    thumbnail_at_seconds: Optional[float] = Field(default=None, ge=0)

    @field_validator("resolutions")
    @classmethod
    def dedupe_resolutions(cls, v: list[Resolution]) -> list[Resolution]:
        # Keep configured order, drop repeats
        return list(dict.fromkeys(v))

    @classmethod
    def from_settings(cls) -> "TranscodeProfile":
        """Build the profile from the current application settings."""
        return cls(
            resolutions=settings.TRANSCODE_RESOLUTIONS,
            segment_duration=settings.SEGMENT_DURATION,
            fps=settings.TRANSCODE_FPS,
            video_codec=settings.TRANSCODE_VIDEO_CODEC,
            audio_codec=settings.TRANSCODE_AUDIO_CODEC,
            audio_bitrate=settings.TRANSCODE_AUDIO_BITRATE,
            replace_existing_segments=settings.TRANSCODE_REPLACE_EXISTING_SEGMENTS,
            thumbnail_at_seconds=settings.TRANSCODE_THUMBNAIL_AT_SECONDS,
        )


class MediaInfo(BaseModel):
    """Probe result for a media file."""
    duration: float = Field(..., ge=0)
    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)

    @property
    def resolution_info(self) -> str:
        return f"{self.width}x{self.height}"


class SegmentTiming(BaseModel):
    """Start time and duration of one chunk within its rendition."""
    index: int
    start_time: float
    duration: float


def expected_segment_count(total_duration: float, chunk_seconds: float) -> int:
    """Number of chunks a rendition of ``total_duration`` splits into."""
    if total_duration <= 0:
        return 0
    return math.ceil(total_duration / chunk_seconds)


def compute_segment_timing(
    index: int,
    chunk_count: int,
    total_duration: float,
    chunk_seconds: float,
) -> SegmentTiming:
    """Compute the timing of chunk ``index`` out of ``chunk_count``.

    Every chunk is nominal length except the last one, which is shortened to
    the remainder of ``total_duration`` when that remainder is positive and
    below the nominal length.
    """
    chunk_seconds = float(chunk_seconds)
    start_time = index * chunk_seconds
    duration = chunk_seconds

    if index == chunk_count - 1:
        remainder = total_duration - start_time
        if 0 < remainder < chunk_seconds:
            duration = remainder

    return SegmentTiming(index=index, start_time=start_time, duration=duration)


def compute_segment_timings(
    chunk_count: int,
    total_duration: float,
    chunk_seconds: float,
) -> list[SegmentTiming]:
    """Compute timings for every chunk of a rendition, in index order."""
    return [
        compute_segment_timing(i, chunk_count, total_duration, chunk_seconds)
        for i in range(chunk_count)
    ]


class EventLevel(str, Enum):
    """Severity of a pipeline diagnostic event."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class PipelineEvent(BaseModel):
    """Diagnostic event attached to a pipeline run."""
    level: EventLevel
    step: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PipelineResult(BaseModel):
    """Outcome of one pipeline run."""
    video_id: UUID
    success: bool
    cancelled: bool = False
    final_status: Optional[str] = None
    error: Optional[str] = None
    segments_created: dict[str, int] = Field(default_factory=dict)
    events: list[PipelineEvent] = Field(default_factory=list)

    def warnings(self) -> list[PipelineEvent]:
        return [e for e in self.events if e.level == EventLevel.WARNING]
