"""Repository for pipeline run database operations."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Row, and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.transcoding.models import (
    ACTIVE_RUN_STATUSES,
    PipelineRun,
    PipelineRunStatus,
)

# Key of the transaction-level advisory lock guarding slot accounting
SLOT_LOCK_KEY = 0x7472616E73


class PipelineRunRepository:
    """Repository for PipelineRun operations.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, video_id: uuid.UUID, original_key: str) -> PipelineRun:
        """Create a queued pipeline run.

        Args:
            video_id: Video to process
            original_key: Storage key of the uploaded original

        Returns:
            Created PipelineRun
        """
        run = PipelineRun(
            id=uuid.uuid4(),
            video_id=video_id,
            original_key=original_key,
            status=PipelineRunStatus.QUEUED.value,
            attempt=0,
            cancel_requested=False,
            events=[],
            created_at=datetime.utcnow(),
        )
        self.session.add(run)
        await self.session.flush()
        return run

    async def get_by_id(self, run_id: uuid.UUID, for_update: bool = False) -> Optional[PipelineRun]:
        """Get a pipeline run by ID.

        With ``for_update`` the row is locked until the transaction ends and
        the instance is reloaded from it.
        """
        query = select(PipelineRun).where(PipelineRun.id == run_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_active_for_video(self, video_id: uuid.UUID) -> Optional[PipelineRun]:
        """Get the queued or running run of a video, if any."""
        result = await self.session.execute(
            select(PipelineRun)
            .where(
                and_(
                    PipelineRun.video_id == video_id,
                    PipelineRun.status.in_(ACTIVE_RUN_STATUSES),
                )
            )
            .order_by(PipelineRun.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_video(self, video_id: uuid.UUID) -> list[PipelineRun]:
        """Get every run of a video, newest first."""
        result = await self.session.execute(
            select(PipelineRun)
            .where(PipelineRun.video_id == video_id)
            .order_by(PipelineRun.created_at.desc())
        )
        return list(result.scalars().all())

    async def lock_slots(self) -> None:
        """Serialize concurrency slot accounting until the transaction ends."""
        await self.session.execute(select(func.pg_advisory_xact_lock(SLOT_LOCK_KEY)))

    async def count_running(self) -> int:
        """Count runs currently holding a concurrency slot."""
        result = await self.session.execute(
            select(func.count())
            .select_from(PipelineRun)
            .where(PipelineRun.status == PipelineRunStatus.RUNNING.value)
        )
        return result.scalar_one()

    async def get_queued_runs(self, limit: int = 10) -> list[PipelineRun]:
        """Get queued runs, oldest first."""
        result = await self.session.execute(
            select(PipelineRun)
            .where(
                and_(
                    PipelineRun.status == PipelineRunStatus.QUEUED.value,
                    PipelineRun.cancel_requested.is_(False),
                )
            )
            .order_by(PipelineRun.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_stale_running_runs(self, cutoff: datetime) -> list[PipelineRun]:
        """Get running runs whose last heartbeat is older than ``cutoff``."""
        last_seen = func.coalesce(PipelineRun.heartbeat_at, PipelineRun.started_at)
        result = await self.session.execute(
            select(PipelineRun)
            .where(
                and_(
                    PipelineRun.status == PipelineRunStatus.RUNNING.value,
                    last_seen < cutoff,
                )
            )
            .order_by(PipelineRun.created_at)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def start_run(self, run: PipelineRun) -> bool:
        """Move a queued run to running.

        The update is conditional on the run still being queued and not
        cancelled, so two launches of the same run cannot both start it.

        Returns:
            True if this call started the run
        """
        now = datetime.utcnow()
        result = await self.session.execute(
            update(PipelineRun)
            .where(
                and_(
                    PipelineRun.id == run.id,
                    PipelineRun.status == PipelineRunStatus.QUEUED.value,
                    PipelineRun.cancel_requested.is_(False),
                )
            )
            .values(
                status=PipelineRunStatus.RUNNING.value,
                attempt=PipelineRun.attempt + 1,
                started_at=now,
                heartbeat_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1

    async def touch(self, run_id: uuid.UUID) -> Optional[Row]:
        """Refresh the heartbeat of a run.

        Returns:
            Row with the run's ``status`` and ``cancel_requested``, or None
            if the run does not exist
        """
        result = await self.session.execute(
            update(PipelineRun)
            .where(PipelineRun.id == run_id)
            .values(heartbeat_at=datetime.utcnow())
            .returning(PipelineRun.status, PipelineRun.cancel_requested)
            .execution_options(synchronize_session=False)
        )
        return result.one_or_none()

    async def request_cancel(self, run: PipelineRun) -> None:
        """Flag a run for cancellation; queued runs are cancelled outright."""
        run.cancel_requested = True
        if run.status == PipelineRunStatus.QUEUED.value:
            run.status = PipelineRunStatus.CANCELLED.value
            run.finished_at = datetime.utcnow()
        await self.session.flush()

    async def finish(
        self,
        run: PipelineRun,
        status: PipelineRunStatus,
        error_message: Optional[str] = None,
        events: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        """Mark a run as finished.

        Args:
            run: The run to finish
            status: Terminal status
            error_message: Error description for failed runs
            events: Diagnostic events to append
        """
        run.status = status.value
        run.error_message = error_message
        run.finished_at = datetime.utcnow()
        if events:
            # Reassign so the JSON column is flagged dirty
            run.events = list(run.events or []) + events
        await self.session.flush()
