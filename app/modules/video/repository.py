"""Video and segment repositories.

``VideoRepository`` and ``SegmentRepository`` flush without committing.
``SQLMetadataStore`` builds the pipeline's metadata store on top of them and
commits every write on its own.
"""

import uuid
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.transcoding.interfaces import MetadataStoreError
from app.modules.transcoding.models import Segment
from app.modules.video.models import TERMINAL_VIDEO_STATUSES, Video


class VideoRepository:
    """Repository for Video operations."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session."""
        self.session = session

    async def create(self, video: Video) -> Video:
        """Add a new video.

        Args:
            video: Unsaved Video instance

        Returns:
            Video: The same instance, flushed
        """
        self.session.add(video)
        await self.session.flush()
        return video

    async def get_by_id(self, video_id: uuid.UUID) -> Optional[Video]:
        """Get video by ID."""
        result = await self.session.execute(select(Video).where(Video.id == video_id))
        return result.scalar_one_or_none()

    async def get_by_user_id(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
    ) -> list[Video]:
        """Get videos owned by a user, newest first.

        Args:
            user_id: Owning user ID
            limit: Maximum results
            offset: Results to skip

        Returns:
            list[Video]: List of videos
        """
        result = await self.session.execute(
            select(Video)
            .where(Video.user_id == user_id)
            .order_by(Video.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def update(self, video: Video) -> Video:
        """Flush pending changes of a video."""
        self.session.add(video)
        await self.session.flush()
        return video

    async def update_if_active(self, video_id: uuid.UUID, **values) -> bool:
        """Update columns of a video unless it already reached a terminal status.

        The status check is part of the UPDATE itself, so a concurrent
        transition to complete or failed cannot be overwritten.

        Args:
            video_id: Video UUID
            **values: Column values to write

        Returns:
            bool: True if the row was updated
        """
        result = await self.session.execute(
            update(Video)
            .where(Video.id == video_id)
            .where(Video.status.notin_(TERMINAL_VIDEO_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1


class SegmentRepository:
    """Repository for Segment operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, segment: Segment) -> Segment:
        self.session.add(segment)
        await self.session.flush()
        return segment

    async def get_by_video_id(
        self,
        video_id: uuid.UUID,
        resolution: Optional[str] = None,
    ) -> list[Segment]:
        """Get segments of a video ordered by resolution then index.

        Args:
            video_id: Video UUID
            resolution: Optional resolution tag filter

        Returns:
            list[Segment]: List of segments
        """
        query = select(Segment).where(Segment.video_id == video_id)
        if resolution is not None:
            query = query.where(Segment.resolution == resolution)
        query = query.order_by(Segment.resolution, Segment.segment_index, Segment.created_at)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def delete_by_video_and_resolution(self, video_id: uuid.UUID, resolution: str) -> int:
        """Delete all segments of one (video, resolution) pair.

        Returns:
            int: Number of deleted rows
        """
        result = await self.session.execute(
            delete(Segment)
            .where(Segment.video_id == video_id)
            .where(Segment.resolution == resolution)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount or 0


class SQLMetadataStore:
    """Metadata store backed by an AsyncSession.

    Each write commits immediately. SQLAlchemy errors roll the session back
    and surface as MetadataStoreError.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.videos = VideoRepository(session)
        self.segments = SegmentRepository(session)

    async def create_video(self, video: Video) -> Video:
        try:
            await self.videos.create(video)
            await self.session.commit()
            # Load server-side defaults (created_at, updated_at)
            await self.session.refresh(video)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to create video: {e}") from e
        return video

    async def get_video(self, video_id: uuid.UUID) -> Optional[Video]:
        try:
            return await self.videos.get_by_id(video_id)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to load video {video_id}: {e}") from e

    async def update_video(self, video: Video) -> Video:
        try:
            await self.videos.update(video)
            await self.session.commit()
            await self.session.refresh(video)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to update video: {e}") from e
        return video

    async def update_video_if_active(self, video_id: uuid.UUID, **values) -> bool:
        try:
            updated = await self.videos.update_if_active(video_id, **values)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to update video {video_id}: {e}") from e
        return updated

    async def list_videos(self, user_id: str, limit: int = 10, offset: int = 0) -> list[Video]:
        try:
            return await self.videos.get_by_user_id(user_id, limit, offset)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to list videos: {e}") from e

    async def create_segment(self, segment: Segment) -> Segment:
        try:
            await self.segments.create(segment)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to create segment: {e}") from e
        return segment

    async def list_segments(
        self, video_id: uuid.UUID, resolution: Optional[str] = None
    ) -> list[Segment]:
        try:
            return await self.segments.get_by_video_id(video_id, resolution)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to list segments: {e}") from e

    async def delete_segments(self, video_id: uuid.UUID, resolution: str) -> int:
        try:
            removed = await self.segments.delete_by_video_and_resolution(video_id, resolution)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to delete segments: {e}") from e
        return removed
