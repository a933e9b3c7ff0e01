"""Collaborator contracts consumed by the transcode pipeline.

The pipeline only talks to these protocols; the SQLAlchemy store, the
storage backends and the ffmpeg tools are the production implementations.
"""

import uuid
from typing import Optional, Protocol

from app.core.storage import StorageResult
from app.modules.transcoding.models import Segment
from app.modules.transcoding.schemas import MediaInfo
from app.modules.video.models import Video


class MetadataStoreError(Exception):
    """Raised when the metadata store cannot complete an operation."""
    pass


class MetadataStore(Protocol):
    """Persistence for Video and Segment records.

    Every write is committed on its own; there is no transaction spanning
    several calls.
    """

    async def create_video(self, video: Video) -> Video: ...

    async def get_video(self, video_id: uuid.UUID) -> Optional[Video]: ...

    async def update_video(self, video: Video) -> Video: ...

    async def update_video_if_active(self, video_id: uuid.UUID, **values) -> bool:
        """Write ``values`` unless the stored status is already terminal.

        The check and the write are one atomic step. Returns False, writing
        nothing, when the stored video is complete or failed (or missing).
        """
        ...

    async def list_videos(self, user_id: str, limit: int = 10, offset: int = 0) -> list[Video]: ...

    async def create_segment(self, segment: Segment) -> Segment: ...

    async def list_segments(
        self, video_id: uuid.UUID, resolution: Optional[str] = None
    ) -> list[Segment]: ...

    async def delete_segments(self, video_id: uuid.UUID, resolution: str) -> int: ...


class ArtifactStore(Protocol):
    """Blob storage addressed by key."""

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult: ...

    def get(self, key: str) -> bytes: ...

    def presign(self, key: str, expires_in: int = 3600) -> str: ...


class MediaProbe(Protocol):
    def inspect(self, path: str) -> MediaInfo: ...


class Encoder(Protocol):
    def encode(self, source_path: str, dest_path: str, resolution: str, fps: int) -> None: ...


class Segmenter(Protocol):
    def segment(self, source_path: str, chunk_seconds: int, dest_pattern: str) -> list[str]: ...


class ThumbnailGenerator(Protocol):
    def generate(self, source_path: str, dest_path: str) -> None: ...
