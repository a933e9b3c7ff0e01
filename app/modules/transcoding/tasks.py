"""Celery tasks for the transcode pipeline.

``run_transcode_pipeline_task`` executes one PipelineRun in a worker of the
``transcoding`` queue. ``resume_pending_pipelines_task`` is scheduled by beat
and recovers queued and lost runs.
"""

import asyncio
import logging
import uuid

from celery import Task

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.database import async_session_maker, engine
from app.core.logging import clear_correlation_id, log_error, log_info, set_correlation_id
from app.core.storage import get_storage
from app.modules.transcoding.dispatcher import TranscodeDispatcher
from app.modules.transcoding.ffmpeg import (
    get_default_encoder,
    get_default_probe,
    get_default_segmenter,
    get_default_thumbnailer,
)
from app.modules.transcoding.models import PipelineRunStatus
from app.modules.transcoding.pipeline import TranscodePipeline
from app.modules.transcoding.schemas import TranscodeProfile
from app.modules.video.repository import SQLMetadataStore

logger = logging.getLogger(__name__)


class TranscodePipelineTask(Task):
    """Base task for pipeline runs.

    Marks the run failed if the task body raises; the pipeline itself never
    raises for media, storage or persistence errors.
    """
    abstract = True
    max_retries = 0

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Handle task failure."""
        run_id = args[0] if args else kwargs.get("run_id")
        if run_id:
            asyncio.run(_mark_run_failed(run_id, str(exc)))


async def _mark_run_failed(run_id: str, error: str) -> None:
    try:
        async with async_session_maker() as session:
            await TranscodeDispatcher(session).mark_failed(uuid.UUID(run_id), error)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, base=TranscodePipelineTask)
def run_transcode_pipeline_task(self: TranscodePipelineTask, run_id: str) -> dict:
    """Execute one pipeline run.

    Args:
        run_id: UUID of the PipelineRun

    Returns:
        dict: Run outcome
    """
    set_correlation_id(run_id)
    try:
        return asyncio.run(_run_pipeline_async(run_id))
    finally:
        clear_correlation_id()


async def _run_pipeline_async(run_id: str) -> dict:
    """Async implementation of a pipeline run."""
    # Pooled connections are bound to the event loop of this asyncio.run call
    try:
        return await _execute_run(run_id)
    finally:
        await engine.dispose()


async def _execute_run(run_id: str) -> dict:
    async with async_session_maker() as session:
        dispatcher = TranscodeDispatcher(session)

        run = await dispatcher.runs.get_by_id(uuid.UUID(run_id))
        if not run:
            return {"success": False, "error": "Pipeline run not found"}

        if run.status != PipelineRunStatus.QUEUED.value:
            # Duplicate delivery or already cancelled
            return {"success": False, "skipped": True, "status": run.status}

        if not await dispatcher.try_acquire_slot(run):
            # Relaunched by the recovery task once a slot frees up
            return {"success": False, "deferred": True, "run_id": run_id}

        run_uuid = run.id
        video_id = run.video_id
        original_key = run.original_key

        log_info(logger, "Pipeline run started", run_id=run_id, video_id=str(video_id), attempt=run.attempt)

        profile = TranscodeProfile.from_settings()
        pipeline = TranscodePipeline(
            store=SQLMetadataStore(session),
            storage=get_storage(),
            probe=get_default_probe(),
            encoder=get_default_encoder(profile),
            segmenter=get_default_segmenter(),
            profile=profile,
            thumbnailer=get_default_thumbnailer(profile),
            cancel_check=lambda: dispatcher.checkpoint(run_uuid),
            workspace_root=settings.TRANSCODE_TEMP_DIR,
        )

        result = await pipeline.run(video_id, original_key)
        await dispatcher.finish(run_uuid, result)

        if not result.success:
            log_error(
                logger,
                "Pipeline run did not complete",
                run_id=run_id,
                video_id=str(video_id),
                error=result.error,
                cancelled=result.cancelled,
            )

        return {
            "success": result.success,
            "run_id": run_id,
            "video_id": str(video_id),
            "cancelled": result.cancelled,
            "final_status": result.final_status,
            "error": result.error,
            "segments_created": result.segments_created,
            "warnings": len(result.warnings()),
        }


@celery_app.task
def resume_pending_pipelines_task() -> dict:
    """Relaunch queued runs and fail runs lost to crashed workers.

    Returns:
        dict: Recovery counts
    """
    return asyncio.run(_resume_pending_async())


async def _resume_pending_async() -> dict:
    try:
        async with async_session_maker() as session:
            return await TranscodeDispatcher(session).recover()
    finally:
        await engine.dispose()
