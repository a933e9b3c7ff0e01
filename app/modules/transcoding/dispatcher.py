"""Supervision of background transcode pipeline runs.

Every pipeline execution is tracked by a PipelineRun row. The dispatcher
creates runs, hands them to the Celery worker, enforces one active run per
video and a global cap on running pipelines, relays cancellation requests and
recovers runs lost to worker crashes.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import log_info, log_warning
from app.modules.transcoding.interfaces import MetadataStoreError
from app.modules.transcoding.models import PipelineRun, PipelineRunStatus
from app.modules.transcoding.repository import PipelineRunRepository
from app.modules.transcoding.schemas import EventLevel, PipelineEvent, PipelineResult
from app.modules.video.models import VideoStatus
from app.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)

Launcher = Callable[[PipelineRun], Optional[str]]


def launch_pipeline_task(run: PipelineRun) -> str:
    """Enqueue the Celery task for a run.

    Returns:
        str: Celery task ID
    """
    from app.core.celery_app import TRANSCODING_QUEUE
    from app.modules.transcoding.tasks import run_transcode_pipeline_task

    result = run_transcode_pipeline_task.apply_async(
        args=[str(run.id)],
        queue=TRANSCODING_QUEUE,
    )
    return result.id


class TranscodeDispatcher:
    """Creates, starts, cancels and recovers pipeline runs."""

    def __init__(
        self,
        session: AsyncSession,
        launcher: Optional[Launcher] = None,
        max_concurrent: Optional[int] = None,
        stale_after_seconds: Optional[int] = None,
    ):
        """Initialize dispatcher.

        Args:
            session: Database session, committed by the dispatcher
            launcher: Callable enqueuing a run for execution
            max_concurrent: Maximum number of running pipelines
            stale_after_seconds: Heartbeat age after which a running run is lost
        """
        self.session = session
        self.runs = PipelineRunRepository(session)
        self.videos = VideoRepository(session)
        self.launcher = launcher or launch_pipeline_task
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_TRANSCODES
        self.stale_after_seconds = stale_after_seconds or settings.TRANSCODE_STALE_RUN_SECONDS

    async def submit(self, video_id: uuid.UUID, original_key: str) -> PipelineRun:
        """Queue a pipeline run for a video and launch it.

        Returns the existing run if the video already has an active one.
        Launch failures leave the run queued for recovery.

        Args:
            video_id: Video to process
            original_key: Storage key of the uploaded original

        Returns:
            PipelineRun: The new or already active run

        Raises:
            MetadataStoreError: If the run cannot be persisted
        """
        try:
            existing = await self.runs.get_active_for_video(video_id)
            if existing is None:
                run = await self.runs.create(video_id, original_key)
                await self.session.commit()
        except IntegrityError as e:
            # A concurrent submit queued the active run first
            await self.session.rollback()
            try:
                existing = await self.runs.get_active_for_video(video_id)
            except SQLAlchemyError as lookup_error:
                await self.session.rollback()
                raise MetadataStoreError(f"Failed to queue pipeline run: {lookup_error}") from lookup_error
            if existing is None:
                raise MetadataStoreError(f"Failed to queue pipeline run: {e}") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to queue pipeline run: {e}") from e

        if existing:
            log_info(
                logger,
                "Pipeline run already active for video",
                video_id=str(video_id),
                run_id=str(existing.id),
                run_status=existing.status,
            )
            return existing

        log_info(logger, "Pipeline run queued", video_id=str(video_id), run_id=str(run.id))

        if self._launch(run):
            await self.session.commit()
        return run

    def _launch(self, run: PipelineRun) -> bool:
        try:
            task_id = self.launcher(run)
        except Exception as e:
            # Broker errors vary by transport; the run stays queued either way
            log_warning(
                logger,
                "Failed to launch pipeline run, leaving it queued",
                run_id=str(run.id),
                error=str(e),
            )
            return False

        run.task_id = task_id
        return True

    async def try_acquire_slot(self, run: PipelineRun) -> bool:
        """Start a queued run if a concurrency slot is free.

        Slot accounting holds a database lock until the commit, so
        concurrent workers cannot both take the last slot.

        Returns:
            bool: True if the run is now running
        """
        await self.runs.lock_slots()
        running = await self.runs.count_running()
        if running >= self.max_concurrent:
            await self.session.commit()
            log_info(
                logger,
                "No free transcode slot, run stays queued",
                run_id=str(run.id),
                running=running,
                max_concurrent=self.max_concurrent,
            )
            return False

        started = await self.runs.start_run(run)
        await self.session.commit()
        if started:
            await self.session.refresh(run)
        return started

    async def checkpoint(self, run_id: uuid.UUID) -> bool:
        """Refresh a run's heartbeat and report whether it must stop.

        A run must stop when cancellation was requested or when it is no
        longer running, e.g. after recovery failed it.

        Raises:
            MetadataStoreError: If the heartbeat cannot be written
        """
        try:
            state = await self.runs.touch(run_id)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise MetadataStoreError(f"Failed to refresh heartbeat: {e}") from e

        if state is None or state.status != PipelineRunStatus.RUNNING.value:
            log_warning(
                logger,
                "Pipeline run is no longer running, stopping",
                run_id=str(run_id),
                run_status=state.status if state else None,
            )
            return True
        return bool(state.cancel_requested)

    async def request_cancel(self, video_id: uuid.UUID) -> Optional[PipelineRun]:
        """Request cancellation of the active run of a video.

        Queued runs are cancelled immediately; running runs stop at their
        next checkpoint.

        Returns:
            The flagged run, or None if the video has no active run
        """
        run = await self.runs.get_active_for_video(video_id)
        if not run:
            return None

        await self.runs.request_cancel(run)
        await self.session.commit()

        log_info(
            logger,
            "Pipeline cancellation requested",
            video_id=str(video_id),
            run_id=str(run.id),
            run_status=run.status,
        )
        return run

    async def finish(self, run_id: uuid.UUID, result: PipelineResult) -> Optional[PipelineRun]:
        """Record the outcome of a pipeline execution on its run.

        Runs that already finished, e.g. failed by recovery, keep their
        recorded outcome.
        """
        run = await self.runs.get_by_id(run_id, for_update=True)
        if not run:
            return None
        if not run.is_active():
            await self.session.commit()
            log_warning(
                logger,
                "Pipeline run already finished, outcome not recorded",
                run_id=str(run_id),
                run_status=run.status,
                success=result.success,
            )
            return run

        if result.success:
            status = PipelineRunStatus.SUCCEEDED
        elif result.cancelled:
            status = PipelineRunStatus.CANCELLED
        else:
            status = PipelineRunStatus.FAILED

        await self.runs.finish(
            run,
            status,
            error_message=result.error,
            events=[event.model_dump(mode="json") for event in result.events],
        )
        await self.session.commit()
        return run

    async def mark_failed(self, run_id: uuid.UUID, error: str) -> Optional[PipelineRun]:
        """Fail a run whose task crashed outside the pipeline."""
        run = await self.runs.get_by_id(run_id, for_update=True)
        if not run or not run.is_active():
            await self.session.commit()
            return run

        await self.runs.finish(
            run,
            PipelineRunStatus.FAILED,
            error_message=error,
            events=[
                PipelineEvent(level=EventLevel.ERROR, step="task", message=error).model_dump(mode="json")
            ],
        )
        await self.session.commit()
        return run

    async def recover(self) -> dict:
        """Fail lost running runs and relaunch queued ones.

        Running runs whose heartbeat is older than ``stale_after_seconds``
        are failed along with their video. Queued runs are then relaunched
        oldest first, up to the number of free slots.

        Returns:
            dict: Counts of failed and relaunched runs
        """
        cutoff = datetime.utcnow() - timedelta(seconds=self.stale_after_seconds)
        stale_runs = await self.runs.get_stale_running_runs(cutoff)

        for run in stale_runs:
            await self.runs.finish(
                run,
                PipelineRunStatus.FAILED,
                error_message="Pipeline run lost: heartbeat expired",
            )
            await self.videos.update_if_active(run.video_id, status=VideoStatus.FAILED.value)
            log_warning(
                logger,
                "Marked stale pipeline run as failed",
                run_id=str(run.id),
                video_id=str(run.video_id),
            )
        await self.session.commit()

        free_slots = self.max_concurrent - await self.runs.count_running()
        relaunched = 0
        if free_slots > 0:
            for run in await self.runs.get_queued_runs(limit=free_slots):
                if self._launch(run):
                    relaunched += 1
            await self.session.commit()

        if stale_runs or relaunched:
            log_info(
                logger,
                "Pipeline recovery pass",
                failed_stale=len(stale_runs),
                relaunched=relaunched,
            )

        return {"failed_stale": len(stale_runs), "relaunched": relaunched}
