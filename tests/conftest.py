"""Shared fixtures: in-memory collaborators for the transcode pipeline."""

import math
import os
import uuid
from collections import defaultdict
from typing import Optional

import pytest

from app.core.storage import StorageError, StorageResult
from app.modules.transcoding.ffmpeg import EncodeError, MediaProbeError, SegmentError
from app.modules.transcoding.interfaces import MetadataStoreError
from app.modules.transcoding.models import Segment
from app.modules.transcoding.pipeline import TranscodePipeline
from app.modules.transcoding.schemas import MediaInfo, TranscodeProfile
from app.modules.video.models import TERMINAL_VIDEO_STATUSES, Video, VideoStatus


class InMemoryMetadataStore:
    """Metadata store keeping records in dicts.

    ``status_history`` holds every status value that was successfully
    written per video. Operation names in ``fail_on`` raise
    MetadataStoreError; so does writing a status listed in
    ``fail_on_status``.
    """

    def __init__(self):
        self.videos: dict[uuid.UUID, Video] = {}
        self.segments: list[Segment] = []
        self.status_history: dict[uuid.UUID, list[str]] = defaultdict(list)
        self.fail_on: set[str] = set()
        self.fail_on_status: set[str] = set()
        self._order: list[uuid.UUID] = []

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise MetadataStoreError(f"{op} unavailable")

    def add(self, video: Video) -> Video:
        self.videos[video.id] = video
        self._order.append(video.id)
        return video

    def persisted_status(self, video_id: uuid.UUID) -> Optional[str]:
        history = self.status_history.get(video_id)
        return history[-1] if history else None

    async def create_video(self, video: Video) -> Video:
        self._check("create_video")
        return self.add(video)

    async def get_video(self, video_id: uuid.UUID) -> Optional[Video]:
        self._check("get_video")
        return self.videos.get(video_id)

    async def update_video(self, video: Video) -> Video:
        self._check("update_video")
        if video.status in self.fail_on_status:
            raise MetadataStoreError(f"cannot write status {video.status}")
        self.videos[video.id] = video
        self.status_history[video.id].append(video.status)
        return video

    async def update_video_if_active(self, video_id: uuid.UUID, **values) -> bool:
        self._check("update_video")
        video = self.videos.get(video_id)
        if video is None:
            return False
        current = self.persisted_status(video_id) or video.status
        if current in TERMINAL_VIDEO_STATUSES:
            return False
        status = values.get("status")
        if status in self.fail_on_status:
            raise MetadataStoreError(f"cannot write status {status}")
        for name, value in values.items():
            setattr(video, name, value)
        if status is not None:
            self.status_history[video_id].append(status)
        return True

    async def list_videos(self, user_id: str, limit: int = 10, offset: int = 0) -> list[Video]:
        self._check("list_videos")
        owned = [self.videos[vid] for vid in reversed(self._order) if self.videos[vid].user_id == user_id]
        return owned[offset:offset + limit]

    async def create_segment(self, segment: Segment) -> Segment:
        self._check("create_segment")
        self.segments.append(segment)
        return segment

    async def list_segments(self, video_id: uuid.UUID, resolution: Optional[str] = None) -> list[Segment]:
        self._check("list_segments")
        rows = [
            s for s in self.segments
            if s.video_id == video_id and (resolution is None or s.resolution == resolution)
        ]
        return sorted(rows, key=lambda s: (s.resolution, s.segment_index))

    async def delete_segments(self, video_id: uuid.UUID, resolution: str) -> int:
        self._check("delete_segments")
        keep = [s for s in self.segments if not (s.video_id == video_id and s.resolution == resolution)]
        removed = len(self.segments) - len(keep)
        self.segments = keep
        return removed


class InMemoryArtifactStore:
    """Artifact store keeping objects in a dict.

    Puts whose key starts with one of ``fail_put_prefixes`` are rejected.
    """

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail_put_prefixes: set[str] = set()

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        if any(key.startswith(prefix) for prefix in self.fail_put_prefixes):
            return StorageResult(success=False, key=key, url="", error_message="write rejected")
        self.objects[key] = data
        self.content_types[key] = content_type
        return StorageResult(success=True, key=key, url=f"memory://{key}", file_size=len(data))

    def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise StorageError(f"No object under '{key}'")

    def presign(self, key: str, expires_in: int = 3600) -> str:
        return f"memory://{key}?expires={expires_in}"


class FakeProbe:
    def __init__(self, duration: float = 25.0, width: int = 1920, height: int = 1080):
        self.duration = duration
        self.width = width
        self.height = height
        self.fail = False
        self.calls: list[str] = []

    def inspect(self, path: str) -> MediaInfo:
        self.calls.append(path)
        if self.fail:
            raise MediaProbeError("ffprobe exited with code 1: invalid data")
        return MediaInfo(duration=self.duration, width=self.width, height=self.height)


class FakeEncoder:
    def __init__(self):
        self.calls: list[tuple[str, int]] = []
        self.fail_on: set[str] = set()

    def encode(self, source_path: str, dest_path: str, resolution: str, fps: int) -> None:
        self.calls.append((resolution, fps))
        if resolution in self.fail_on:
            raise EncodeError(f"ffmpeg exited with code 1 while encoding {resolution}")
        with open(dest_path, "wb") as f:
            f.write(f"rendition {resolution}".encode())


class FakeSegmenter:
    """Writes one chunk file per nominal chunk of ``duration``.

    ``chunk_count`` overrides the number of chunks produced.
    """

    def __init__(self, duration: float = 25.0, chunk_count: Optional[int] = None):
        self.duration = duration
        self.chunk_count = chunk_count
        self.fail = False
        self.calls: list[tuple[str, int]] = []

    def segment(self, source_path: str, chunk_seconds: int, dest_pattern: str) -> list[str]:
        self.calls.append((source_path, chunk_seconds))
        if self.fail:
            raise SegmentError("ffmpeg exited with code 1 while segmenting")

        count = self.chunk_count
        if count is None:
            count = math.ceil(self.duration / chunk_seconds) if self.duration > 0 else 0

        os.makedirs(os.path.dirname(dest_pattern), exist_ok=True)
        paths = []
        for i in range(count):
            path = dest_pattern % i
            with open(path, "wb") as f:
                f.write(f"chunk {i}".encode())
            paths.append(path)
        return paths


class FakeThumbnailer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    def generate(self, source_path: str, dest_path: str) -> None:
        self.calls += 1
        if self.fail:
            raise MediaProbeError("frame grab failed")
        with open(dest_path, "wb") as f:
            f.write(b"\xff\xd8jpeg")


class CancelSwitch:
    """Cancellation check that trips after ``after`` calls."""

    def __init__(self, after: Optional[int] = None):
        self.after = after
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        return self.after is not None and self.calls > self.after


@pytest.fixture
def store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def artifacts() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def segmenter() -> FakeSegmenter:
    return FakeSegmenter()


@pytest.fixture
def workspace_root(tmp_path) -> str:
    root = tmp_path / "scratch"
    root.mkdir()
    return str(root)


@pytest.fixture
def make_video(store, artifacts):
    """Create an uploaded video with its original in the artifact store."""

    def _make(user_id: str = "user-1", content: bytes = b"original-bytes") -> Video:
        video_id = uuid.uuid4()
        key = f"uploads/{video_id}/original/clip.mp4"
        artifacts.put(key, content, "video/mp4")
        video = Video(
            id=video_id,
            user_id=user_id,
            title="Clip",
            description=None,
            duration=0.0,
            original_key=key,
            status=VideoStatus.UPLOADED.value,
            file_size=len(content),
            mime_type="video/mp4",
        )
        return store.add(video)

    return _make


@pytest.fixture
def make_pipeline(store, artifacts, probe, encoder, segmenter, workspace_root):
    """Build a pipeline wired to the in-memory collaborators."""

    def _make(**overrides) -> TranscodePipeline:
        kwargs = dict(
            store=store,
            storage=artifacts,
            probe=probe,
            encoder=encoder,
            segmenter=segmenter,
            profile=TranscodeProfile(),
            workspace_root=workspace_root,
        )
        kwargs.update(overrides)
        return TranscodePipeline(**kwargs)

    return _make


@pytest.fixture
def make_thumbnailer():
    return FakeThumbnailer


@pytest.fixture
def make_cancel_switch():
    return CancelSwitch
