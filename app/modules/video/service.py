"""Video service for business logic.

Implements the upload flow (store original, create record, queue the
transcode pipeline) and read access to videos and their segments.
"""

import logging
import re
import uuid
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import log_error, log_info
from app.core.storage import get_storage
from app.modules.transcoding.dispatcher import TranscodeDispatcher
from app.modules.transcoding.interfaces import ArtifactStore, MetadataStore, MetadataStoreError
from app.modules.transcoding.models import PipelineRun, Segment
from app.modules.video.models import Video, VideoStatus
from app.modules.video.repository import SQLMetadataStore
from app.modules.video.schemas import (
    SegmentResponse,
    VideoDetailResponse,
    VideoUploadInput,
)

logger = logging.getLogger(__name__)

DEFAULT_ORIGINAL_NAME = "original"


class VideoServiceError(Exception):
    """Base exception for video service errors."""

    pass


class InvalidUploadError(VideoServiceError):
    """Raised when an upload has no content or no owner."""

    pass


class VideoUploadError(VideoServiceError):
    """Raised when the original or its record cannot be stored."""

    pass


class VideoNotFoundError(VideoServiceError):
    """Raised when video is not found."""

    pass


class PipelineSubmitter(Protocol):
    async def submit(self, video_id: uuid.UUID, original_key: str) -> PipelineRun: ...


def sanitize_file_name(file_name: str) -> str:
    """Reduce a client-supplied file name to a safe storage key component.

    Directory parts are dropped and every character outside
    ``[A-Za-z0-9._-]`` becomes ``_``.
    """
    base = re.split(r"[\\/]", file_name or "")[-1]
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", base)
    if not cleaned.strip("."):
        return DEFAULT_ORIGINAL_NAME
    return cleaned


def original_key_for(video_id: uuid.UUID, file_name: str) -> str:
    """Storage key of an uploaded original."""
    return f"uploads/{video_id}/original/{sanitize_file_name(file_name)}"


class VideoService:
    """Service for video upload and read operations."""

    def __init__(
        self,
        session: Optional[AsyncSession] = None,
        store: Optional[MetadataStore] = None,
        storage: Optional[ArtifactStore] = None,
        dispatcher: Optional[PipelineSubmitter] = None,
    ):
        """Initialize service.

        Collaborators default to the SQL store, the configured storage
        backend and a dispatcher, all bound to ``session``.
        """
        self.session = session
        self.store = store if store is not None else SQLMetadataStore(session)
        self.storage = storage if storage is not None else get_storage()
        self.dispatcher = dispatcher if dispatcher is not None else TranscodeDispatcher(session)

    async def upload_video(self, request: VideoUploadInput, content: bytes) -> Video:
        """Store an uploaded original and queue its transcode pipeline.

        Returns as soon as the pipeline run is queued; transcoding happens
        in the background and its failures never reach the caller.

        Args:
            request: Upload metadata
            content: Raw file bytes

        Returns:
            Video: Created video in status ``uploaded``

        Raises:
            InvalidUploadError: If content or owner is empty
            VideoUploadError: If the original, its record or the run cannot be stored
        """
        if not content:
            raise InvalidUploadError("Upload content is empty")
        if not request.user_id:
            raise InvalidUploadError("Upload has no owner")

        video_id = uuid.uuid4()
        key = original_key_for(video_id, request.file_name)

        result = self.storage.put(key, content, request.mime_type or "application/octet-stream")
        if not result.success:
            log_error(logger, "Failed to store original", video_id=str(video_id), error=result.error_message)
            raise VideoUploadError(f"Failed to store original: {result.error_message}")

        video = Video(
            id=video_id,
            user_id=request.user_id,
            title=request.title,
            description=request.description,
            duration=0.0,
            original_key=key,
            original_url=result.url,
            status=VideoStatus.UPLOADED.value,
            file_size=request.file_size,
            mime_type=request.mime_type,
        )

        try:
            await self.store.create_video(video)
        except MetadataStoreError as e:
            log_error(logger, "Failed to create video record", video_id=str(video_id), error=str(e))
            raise VideoUploadError(f"Failed to create video record: {e}") from e

        try:
            run = await self.dispatcher.submit(video_id, key)
        except MetadataStoreError as e:
            log_error(logger, "Failed to queue transcode pipeline", video_id=str(video_id), error=str(e))
            raise VideoUploadError(f"Failed to queue transcode pipeline: {e}") from e

        log_info(
            logger,
            "Video uploaded",
            video_id=str(video_id),
            user_id=request.user_id,
            run_id=str(run.id),
            file_size=request.file_size,
        )
        return video

    async def get_video(self, video_id: uuid.UUID) -> Video:
        """Get video by ID.

        Raises:
            VideoNotFoundError: If video not found
        """
        video = await self.store.get_video(video_id)
        if not video:
            raise VideoNotFoundError(f"Video {video_id} not found")
        return video

    async def get_video_detail(self, video_id: uuid.UUID) -> VideoDetailResponse:
        """Get a video together with all of its segments."""
        video = await self.get_video(video_id)
        segments = await self.store.list_segments(video_id)

        detail = VideoDetailResponse.model_validate(video)
        detail.segments = [SegmentResponse.model_validate(s) for s in segments]
        return detail

    async def list_segments(
        self,
        video_id: uuid.UUID,
        resolution: Optional[str] = None,
    ) -> list[Segment]:
        """Get segments of a video, optionally for one resolution.

        Raises:
            VideoNotFoundError: If video not found
        """
        await self.get_video(video_id)
        return await self.store.list_segments(video_id, resolution)

    async def list_videos(self, user_id: str, limit: int = 10, offset: int = 0) -> list[Video]:
        """Get videos owned by a user, newest first."""
        return await self.store.list_videos(user_id, limit, offset)

    def get_segment_url(self, segment: Segment, expires_in: Optional[int] = None) -> str:
        """Get a time-limited playback URL for a segment."""
        return self.storage.presign(
            segment.storage_key,
            expires_in or settings.PRESIGNED_URL_TTL_SECONDS,
        )
