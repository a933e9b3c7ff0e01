"""Pydantic schemas for video module.

Defines the upload input and the read schemas for videos and segments.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


MAX_TITLE_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 5000


class VideoUploadInput(BaseModel):
    """Input schema for a video upload.

    The raw bytes travel next to this schema, not inside it.
    """

    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    file_name: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=0)
    mime_type: Optional[str] = None
    user_id: str = Field(..., min_length=1)

    @field_validator("title", "user_id")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class VideoResponse(BaseModel):
    """Response schema for video."""

    id: uuid.UUID
    user_id: str
    title: str
    description: Optional[str]
    duration: float
    resolution_info: Optional[str]
    original_url: Optional[str]
    thumbnail_url: Optional[str]
    status: str
    file_size: int
    mime_type: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class SegmentResponse(BaseModel):
    """Response schema for segment."""

    id: uuid.UUID
    video_id: uuid.UUID
    file_name: str
    url: str
    resolution: str
    start_time: float
    duration: float
    segment_index: int
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class VideoDetailResponse(VideoResponse):
    """Video with all of its segments."""

    segments: list[SegmentResponse] = Field(default_factory=list)
