"""Transcode pipeline for one uploaded video.

Drives probe -> per-resolution (encode -> segment -> upload chunks) ->
thumbnail -> finalize, evolving the video's status along the way:

    uploaded -> processing -> transcoded -> complete
                         \\-> failed (any fatal error after processing)

Fatal errors never propagate out of ``TranscodePipeline.run``; they end the
run with the video in ``failed``. Non-fatal problems are recorded as
diagnostic events on the run.
"""

import logging
import os
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional

from app.core.logging import log_error, log_info, log_warning
from app.core.metrics import (
    PIPELINE_DIAGNOSTICS_TOTAL,
    PIPELINE_RUNS_TOTAL,
    PIPELINE_STEP_DURATION_SECONDS,
    PIPELINES_IN_PROGRESS,
    SEGMENTS_CREATED_TOTAL,
)
from app.core.storage import StorageError
from app.modules.transcoding.ffmpeg import MediaToolError
from app.modules.transcoding.interfaces import (
    ArtifactStore,
    Encoder,
    MediaProbe,
    MetadataStore,
    MetadataStoreError,
    Segmenter,
    ThumbnailGenerator,
)
from app.modules.transcoding.models import Resolution, Segment
from app.modules.transcoding.schemas import (
    EventLevel,
    PipelineEvent,
    PipelineResult,
    SegmentTiming,
    TranscodeProfile,
    compute_segment_timings,
    expected_segment_count,
)
from app.modules.video.models import Video, VideoStatus

logger = logging.getLogger(__name__)

SEGMENT_CONTENT_TYPE = "video/mp2t"
THUMBNAIL_CONTENT_TYPE = "image/jpeg"
THUMBNAIL_FILE_NAME = "thumbnail.jpg"
SEGMENT_FILE_PATTERN = "segment_%03d.ts"

CancelCheck = Callable[[], Awaitable[bool]]


class PipelineError(Exception):
    """Base exception for fatal pipeline errors."""
    pass


class VideoNotFoundError(PipelineError):
    """Raised when the video record does not exist."""
    pass


class ArtifactTransferError(PipelineError):
    """Raised when an artifact cannot be downloaded, written, read or uploaded."""
    pass


class PersistenceError(PipelineError):
    """Raised when a metadata write on the critical path fails."""
    pass


class VideoFinishedError(PersistenceError):
    """Raised when the stored video already reached complete or failed."""
    pass


class PipelineCancelledError(PipelineError):
    """Raised at a checkpoint when cancellation was requested."""
    pass


def segment_key(video_id: uuid.UUID, resolution: str, file_name: str) -> str:
    """Storage key of one chunk."""
    return f"videos/{video_id}/{resolution}/{file_name}"


def thumbnail_key(video_id: uuid.UUID) -> str:
    return f"videos/{video_id}/{THUMBNAIL_FILE_NAME}"


class TranscodePipeline:
    """Transforms one stored original into chunked renditions.

    Resolutions are processed strictly one after another and every external
    tool call blocks until it finishes. The scratch workspace is private to
    the run and removed on every exit path.
    """

    def __init__(
        self,
        store: MetadataStore,
        storage: ArtifactStore,
        probe: MediaProbe,
        encoder: Encoder,
        segmenter: Segmenter,
        profile: Optional[TranscodeProfile] = None,
        thumbnailer: Optional[ThumbnailGenerator] = None,
        cancel_check: Optional[CancelCheck] = None,
        workspace_root: Optional[str] = None,
    ):
        """Initialize the pipeline.

        Args:
            store: Metadata store for Video and Segment records
            storage: Artifact store for originals, chunks and thumbnails
            probe: Media probe for duration and dimensions
            encoder: Rendition encoder
            segmenter: Rendition segmenter
            profile: Ladder, chunk length and codec parameters
            thumbnailer: Optional thumbnail generator
            cancel_check: Coroutine returning True when the run should stop
            workspace_root: Parent directory for the scratch workspace
        """
        self.store = store
        self.storage = storage
        self.probe = probe
        self.encoder = encoder
        self.segmenter = segmenter
        self.profile = profile or TranscodeProfile()
        self.thumbnailer = thumbnailer
        self.cancel_check = cancel_check
        self.workspace_root = workspace_root

        self.events: list[PipelineEvent] = []
        self._segments_created: dict[str, int] = {}
        self._step = "init"
        self._video_id: Optional[uuid.UUID] = None
        self._status: Optional[str] = None
        self._thumbnail_url: Optional[str] = None

    async def run(self, video_id: uuid.UUID, original_key: str) -> PipelineResult:
        """Run the pipeline for one video.

        Args:
            video_id: ID of the video to process
            original_key: Storage key of the uploaded original

        Returns:
            PipelineResult describing the outcome and diagnostics
        """
        self.events = []
        self._segments_created = {}
        self._step = "load"
        self._video_id = video_id
        self._status = None
        self._thumbnail_url = None

        PIPELINES_IN_PROGRESS.inc()
        try:
            return await self._run(video_id, original_key)
        finally:
            PIPELINES_IN_PROGRESS.dec()

    async def _run(self, video_id: uuid.UUID, original_key: str) -> PipelineResult:
        try:
            video = await self._load_video(video_id)
        except PipelineError as e:
            self._record(EventLevel.ERROR, str(e), video_id=str(video_id))
            PIPELINE_RUNS_TOTAL.labels(outcome="not_found").inc()
            return self._result(video_id, success=False, error=str(e))

        self._status = video.status

        log_info(
            logger,
            "Transcode pipeline started",
            video_id=str(self._video_id),
            resolutions=[r.value for r in self.profile.resolutions],
        )

        self._step = "start"
        await self._set_status_best_effort(video, VideoStatus.PROCESSING)

        try:
            with tempfile.TemporaryDirectory(
                prefix=f"video-processing-{self._video_id}-",
                dir=self.workspace_root,
                ignore_cleanup_errors=True,
            ) as workspace:
                await self._process(original_key, workspace)

            self._step = "complete"
            final_values = {}
            if self._thumbnail_url:
                final_values["thumbnail_url"] = self._thumbnail_url
            await self._persist_status(VideoStatus.COMPLETE, **final_values)

        except PipelineCancelledError as e:
            self._record(EventLevel.WARNING, str(e), video_id=str(self._video_id))
            await self._mark_failed()
            PIPELINE_RUNS_TOTAL.labels(outcome="cancelled").inc()
            return self._result(self._video_id, success=False, error=str(e), cancelled=True)

        except (PipelineError, MediaToolError) as e:
            self._record(EventLevel.ERROR, str(e), video_id=str(self._video_id), error_type=type(e).__name__)
            await self._mark_failed()
            PIPELINE_RUNS_TOTAL.labels(outcome="failed").inc()
            return self._result(self._video_id, success=False, error=str(e))

        except Exception as e:
            log_error(logger, "Unexpected transcode pipeline error", exception=e, video_id=str(self._video_id))
            self._record(
                EventLevel.ERROR,
                f"Unexpected error: {e}",
                video_id=str(self._video_id),
                error_type=type(e).__name__,
            )
            await self._mark_failed()
            PIPELINE_RUNS_TOTAL.labels(outcome="failed").inc()
            return self._result(self._video_id, success=False, error=str(e))

        log_info(
            logger,
            "Transcode pipeline complete",
            video_id=str(self._video_id),
            segments_created=self._segments_created,
        )
        PIPELINE_RUNS_TOTAL.labels(outcome="complete").inc()
        return self._result(self._video_id, success=True)

    async def _process(self, original_key: str, workspace: str) -> None:
        await self._checkpoint()

        self._step = "download"
        with self._timed("download"):
            source_path = self._download_original(original_key, workspace)

        self._step = "probe"
        with self._timed("probe"):
            info = self.probe.inspect(source_path)

        self._step = "record_probe"
        await self._persist_status(
            VideoStatus.TRANSCODED,
            duration=info.duration,
            resolution_info=info.resolution_info,
        )

        for resolution in self.profile.resolutions:
            await self._checkpoint()
            await self._process_resolution(resolution, source_path, workspace, info.duration)

        self._step = "thumbnail"
        self._thumbnail_url = await self._attach_thumbnail(source_path, workspace)

    async def _process_resolution(
        self,
        resolution: Resolution,
        source_path: str,
        workspace: str,
        total_duration: float,
    ) -> None:
        tag = resolution.value
        chunk_seconds = self.profile.segment_duration

        self._step = f"encode:{tag}"
        output_path = os.path.join(workspace, f"{tag}.mp4")
        with self._timed("encode"):
            self.encoder.encode(source_path, output_path, tag, self.profile.fps)

        self._step = f"segment:{tag}"
        segments_dir = os.path.join(workspace, tag)
        try:
            os.makedirs(segments_dir, exist_ok=True)
        except OSError as e:
            raise ArtifactTransferError(f"Failed to create segments directory: {e}") from e

        with self._timed("segment"):
            chunks = self.segmenter.segment(
                output_path,
                chunk_seconds,
                os.path.join(segments_dir, SEGMENT_FILE_PATTERN),
            )

        self._segments_created[tag] = 0

        if self.profile.replace_existing_segments:
            try:
                removed = await self.store.delete_segments(self._video_id, tag)
            except MetadataStoreError as e:
                raise PersistenceError(f"Failed to delete existing {tag} segments: {e}") from e
            if removed:
                self._record(
                    EventLevel.INFO,
                    f"Removed {removed} existing {tag} segments",
                    resolution=tag,
                    removed=removed,
                )

        if not chunks:
            self._record(EventLevel.INFO, f"Segmenter produced no chunks for {tag}", resolution=tag)
            return

        expected = expected_segment_count(total_duration, chunk_seconds)
        if len(chunks) != expected:
            self._record(
                EventLevel.WARNING,
                f"Segmenter produced {len(chunks)} chunks for {tag}, expected {expected}",
                resolution=tag,
                chunk_count=len(chunks),
                expected=expected,
            )

        self._step = f"upload:{tag}"
        timings = compute_segment_timings(len(chunks), total_duration, chunk_seconds)
        with self._timed("upload"):
            for chunk_path, timing in zip(chunks, timings):
                await self._checkpoint()
                await self._store_chunk(tag, chunk_path, timing)

        log_info(
            logger,
            "Resolution segmented",
            video_id=str(self._video_id),
            resolution=tag,
            segments=len(chunks),
        )

    async def _store_chunk(
        self,
        resolution: str,
        chunk_path: str,
        timing: SegmentTiming,
    ) -> None:
        file_name = os.path.basename(chunk_path)

        try:
            data = Path(chunk_path).read_bytes()
        except OSError as e:
            raise ArtifactTransferError(f"Failed to read segment file {file_name}: {e}") from e

        key = segment_key(self._video_id, resolution, file_name)
        result = self.storage.put(key, data, SEGMENT_CONTENT_TYPE)
        if not result.success:
            raise ArtifactTransferError(f"Failed to upload segment {key}: {result.error_message}")

        segment = Segment(
            id=uuid.uuid4(),
            video_id=self._video_id,
            file_name=file_name,
            storage_key=key,
            url=result.url,
            resolution=resolution,
            start_time=timing.start_time,
            duration=timing.duration,
            segment_index=timing.index,
            created_at=datetime.utcnow(),
        )
        try:
            await self.store.create_segment(segment)
        except MetadataStoreError as e:
            raise PersistenceError(f"Failed to create segment record: {e}") from e

        self._segments_created[resolution] += 1
        SEGMENTS_CREATED_TOTAL.labels(resolution=resolution).inc()

    async def _attach_thumbnail(self, source_path: str, workspace: str) -> Optional[str]:
        """Upload a workspace thumbnail if one exists. Never fatal.

        Returns:
            The thumbnail URL, or None if no thumbnail was stored
        """
        thumbnail_path = os.path.join(workspace, THUMBNAIL_FILE_NAME)

        if self.thumbnailer is not None:
            try:
                self.thumbnailer.generate(source_path, thumbnail_path)
            except MediaToolError as e:
                self._record(EventLevel.WARNING, f"Thumbnail generation failed: {e}")
                return None

        try:
            data = Path(thumbnail_path).read_bytes()
        except FileNotFoundError:
            logger.debug("No thumbnail in workspace for video %s", self._video_id)
            return None
        except OSError as e:
            self._record(EventLevel.WARNING, f"Failed to read thumbnail: {e}")
            return None

        result = self.storage.put(thumbnail_key(self._video_id), data, THUMBNAIL_CONTENT_TYPE)
        if not result.success:
            self._record(EventLevel.WARNING, f"Thumbnail upload failed: {result.error_message}")
            return None

        return result.url

    def _download_original(self, original_key: str, workspace: str) -> str:
        try:
            data = self.storage.get(original_key)
        except StorageError as e:
            raise ArtifactTransferError(f"Failed to download original: {e}") from e

        ext = os.path.splitext(original_key)[1] or ".mp4"
        source_path = os.path.join(workspace, f"original{ext}")
        try:
            Path(source_path).write_bytes(data)
        except OSError as e:
            raise ArtifactTransferError(f"Failed to save original to workspace: {e}") from e
        return source_path

    async def _load_video(self, video_id: uuid.UUID) -> Video:
        try:
            video = await self.store.get_video(video_id)
        except MetadataStoreError as e:
            raise PersistenceError(f"Failed to load video {video_id}: {e}") from e
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")
        return video

    async def _persist_status(self, status: VideoStatus, **values) -> None:
        """Write a status on the critical path.

        Refused once the stored video is complete or failed, which ends the
        run as failed.
        """
        try:
            written = await self.store.update_video_if_active(
                self._video_id, status=status.value, **values
            )
        except MetadataStoreError as e:
            raise PersistenceError(f"Failed to persist status '{status.value}': {e}") from e
        if not written:
            raise VideoFinishedError(
                f"Video {self._video_id} already finished, not writing status '{status.value}'"
            )
        self._status = status.value

    async def _set_status_best_effort(self, video: Video, status: VideoStatus) -> None:
        video.status = status.value
        try:
            await self.store.update_video(video)
        except MetadataStoreError as e:
            self._record(
                EventLevel.WARNING,
                f"Failed to persist status '{status.value}': {e}",
                video_id=str(self._video_id),
            )
        else:
            self._status = status.value

    async def _mark_failed(self) -> None:
        self._step = "fail"
        try:
            written = await self.store.update_video_if_active(
                self._video_id, status=VideoStatus.FAILED.value
            )
        except MetadataStoreError as e:
            self._record(
                EventLevel.WARNING,
                f"Failed to persist status '{VideoStatus.FAILED.value}': {e}",
                video_id=str(self._video_id),
            )
            return
        if written:
            self._status = VideoStatus.FAILED.value
        else:
            self._record(
                EventLevel.INFO,
                "Video already finished, status left unchanged",
                video_id=str(self._video_id),
            )

    async def _checkpoint(self) -> None:
        if self.cancel_check is None:
            return
        try:
            cancelled = await self.cancel_check()
        except MetadataStoreError as e:
            self._record(EventLevel.WARNING, f"Cancellation check failed: {e}")
            return
        if cancelled:
            raise PipelineCancelledError(f"Pipeline cancelled during {self._step}")

    @contextmanager
    def _timed(self, step: str) -> Iterator[None]:
        started = time.monotonic()
        try:
            yield
        finally:
            PIPELINE_STEP_DURATION_SECONDS.labels(step=step).observe(time.monotonic() - started)

    def _record(self, level: EventLevel, message: str, **details) -> None:
        step = self._step.split(":", 1)[0]
        event = PipelineEvent(level=level, step=self._step, message=message, details=details)
        self.events.append(event)
        PIPELINE_DIAGNOSTICS_TOTAL.labels(level=level.value, step=step).inc()

        if level == EventLevel.ERROR:
            log_error(logger, message, step=self._step, **details)
        elif level == EventLevel.WARNING:
            log_warning(logger, message, step=self._step, **details)
        else:
            log_info(logger, message, step=self._step, **details)

    def _result(
        self,
        video_id: uuid.UUID,
        success: bool,
        error: Optional[str] = None,
        cancelled: bool = False,
    ) -> PipelineResult:
        return PipelineResult(
            video_id=video_id,
            success=success,
            cancelled=cancelled,
            final_status=self._status,
            error=error,
            segments_created=dict(self._segments_created),
            events=list(self.events),
        )
