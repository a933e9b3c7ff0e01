"""Repository, metadata store and dispatcher tests against PostgreSQL.

Set TEST_DATABASE_URL (postgresql+asyncpg://...) to run them. Every test
creates the schema from the models and drops it afterwards.
"""

import asyncio
import os
import uuid
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.database import Base
from app.modules.transcoding.dispatcher import TranscodeDispatcher
from app.modules.transcoding.interfaces import MetadataStoreError
from app.modules.transcoding.models import PipelineRun, PipelineRunStatus, Segment
from app.modules.transcoding.repository import PipelineRunRepository
from app.modules.transcoding.schemas import PipelineResult
from app.modules.video.models import Video, VideoStatus
from app.modules.video.repository import SQLMetadataStore

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL is not set")


@pytest_asyncio.fixture
async def session_maker():
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


async def _add_video(session_maker, status: str = VideoStatus.UPLOADED.value) -> Video:
    async with session_maker() as session:
        video = Video(
            id=uuid.uuid4(),
            user_id="user-1",
            title="Clip",
            original_key="uploads/clip.mp4",
            status=status,
        )
        return await SQLMetadataStore(session).create_video(video)


async def _load_video(session_maker, video_id: uuid.UUID) -> Video:
    async with session_maker() as session:
        return await SQLMetadataStore(session).get_video(video_id)


async def _load_run(session_maker, run_id: uuid.UUID) -> PipelineRun:
    async with session_maker() as session:
        return await PipelineRunRepository(session).get_by_id(run_id)


def _dispatcher(session, max_concurrent: int = 2) -> TranscodeDispatcher:
    return TranscodeDispatcher(
        session,
        launcher=MagicMock(return_value="task-1"),
        max_concurrent=max_concurrent,
        stale_after_seconds=600,
    )


def _segment(video_id: uuid.UUID, resolution: str, index: int) -> Segment:
    return Segment(
        id=uuid.uuid4(),
        video_id=video_id,
        file_name=f"chunk_{index:03d}.mp4",
        storage_key=f"segments/{video_id}/{resolution}/chunk_{index:03d}.mp4",
        url=f"memory://{resolution}/{index}",
        resolution=resolution,
        start_time=index * 10.0,
        duration=10.0,
        segment_index=index,
    )


class TestConditionalVideoWrites:
    @pytest.mark.asyncio
    async def test_active_video_is_updated(self, session_maker) -> None:
        video = await _add_video(session_maker, VideoStatus.PROCESSING.value)

        async with session_maker() as session:
            written = await SQLMetadataStore(session).update_video_if_active(
                video.id, status=VideoStatus.TRANSCODED.value, duration=25.0
            )

        assert written is True
        stored = await _load_video(session_maker, video.id)
        assert stored.status == "transcoded"
        assert stored.duration == 25.0

    @pytest.mark.asyncio
    async def test_failed_video_is_not_overwritten(self, session_maker) -> None:
        video = await _add_video(session_maker, VideoStatus.FAILED.value)

        async with session_maker() as session:
            written = await SQLMetadataStore(session).update_video_if_active(
                video.id, status=VideoStatus.COMPLETE.value
            )

        assert written is False
        assert (await _load_video(session_maker, video.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_missing_video_is_not_written(self, session_maker) -> None:
        async with session_maker() as session:
            written = await SQLMetadataStore(session).update_video_if_active(
                uuid.uuid4(), status=VideoStatus.COMPLETE.value
            )

        assert written is False


class TestSegmentStore:
    @pytest.mark.asyncio
    async def test_delete_reports_removed_rows(self, session_maker) -> None:
        video = await _add_video(session_maker)
        async with session_maker() as session:
            store = SQLMetadataStore(session)
            for index in range(3):
                await store.create_segment(_segment(video.id, "720p", index))
            await store.create_segment(_segment(video.id, "1080p", 0))

            removed = await store.delete_segments(video.id, "720p")
            remaining = await store.list_segments(video.id)

        assert removed == 3
        assert [(s.resolution, s.segment_index) for s in remaining] == [("1080p", 0)]

    @pytest.mark.asyncio
    async def test_segment_of_unknown_video_is_rejected(self, session_maker) -> None:
        async with session_maker() as session:
            store = SQLMetadataStore(session)
            with pytest.raises(MetadataStoreError):
                await store.create_segment(_segment(uuid.uuid4(), "720p", 0))

            # The session is usable again after the rollback
            assert await store.list_segments(uuid.uuid4()) == []


class TestRunRepository:
    @pytest.mark.asyncio
    async def test_second_active_run_violates_unique_index(self, session_maker) -> None:
        video = await _add_video(session_maker)
        async with session_maker() as session:
            await PipelineRunRepository(session).create(video.id, video.original_key)
            await session.commit()

        async with session_maker() as session:
            with pytest.raises(IntegrityError):
                await PipelineRunRepository(session).create(video.id, video.original_key)

    @pytest.mark.asyncio
    async def test_finished_run_does_not_block_new_one(self, session_maker) -> None:
        video = await _add_video(session_maker)
        async with session_maker() as session:
            runs = PipelineRunRepository(session)
            first = await runs.create(video.id, video.original_key)
            await runs.finish(first, PipelineRunStatus.FAILED, error_message="boom")
            second = await runs.create(video.id, video.original_key)
            await session.commit()

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_run_starts_once(self, session_maker) -> None:
        video = await _add_video(session_maker)
        async with session_maker() as session:
            runs = PipelineRunRepository(session)
            run = await runs.create(video.id, video.original_key)

            assert await runs.start_run(run) is True
            assert await runs.start_run(run) is False
            await session.commit()

        stored = await _load_run(session_maker, run.id)
        assert stored.status == "running"
        assert stored.attempt == 1

    @pytest.mark.asyncio
    async def test_touch_returns_status_and_cancel_flag(self, session_maker) -> None:
        video = await _add_video(session_maker)
        async with session_maker() as session:
            runs = PipelineRunRepository(session)
            run = await runs.create(video.id, video.original_key)
            await runs.start_run(run)

            state = await runs.touch(run.id)
            missing = await runs.touch(uuid.uuid4())

        assert state.status == "running"
        assert state.cancel_requested is False
        assert missing is None


class TestDispatcherOnPostgres:
    @pytest.mark.asyncio
    async def test_concurrent_submits_queue_one_run(self, session_maker) -> None:
        video = await _add_video(session_maker)

        async def submit():
            async with session_maker() as session:
                run = await _dispatcher(session).submit(video.id, video.original_key)
                return run.id

        first, second = await asyncio.gather(submit(), submit())

        assert first == second
        async with session_maker() as session:
            count = await session.scalar(
                select(func.count()).select_from(PipelineRun).where(PipelineRun.video_id == video.id)
            )
        assert count == 1

    @pytest.mark.asyncio
    async def test_concurrent_slot_requests_respect_cap(self, session_maker) -> None:
        run_ids = []
        for _ in range(2):
            video = await _add_video(session_maker)
            async with session_maker() as session:
                run = await PipelineRunRepository(session).create(video.id, video.original_key)
                await session.commit()
                run_ids.append(run.id)

        async def acquire(run_id):
            async with session_maker() as session:
                dispatcher = _dispatcher(session, max_concurrent=1)
                run = await dispatcher.runs.get_by_id(run_id)
                return await dispatcher.try_acquire_slot(run)

        started = await asyncio.gather(*(acquire(run_id) for run_id in run_ids))

        assert sorted(started) == [False, True]
        async with session_maker() as session:
            assert await PipelineRunRepository(session).count_running() == 1

    @pytest.mark.asyncio
    async def test_run_failed_by_recovery_stays_failed(self, session_maker) -> None:
        video = await _add_video(session_maker, VideoStatus.TRANSCODED.value)
        async with session_maker() as session:
            dispatcher = _dispatcher(session)
            run = await dispatcher.submit(video.id, video.original_key)
            assert await dispatcher.try_acquire_slot(run) is True
            await session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == run.id)
                .values(heartbeat_at=datetime.utcnow() - timedelta(hours=1))
            )
            await session.commit()

        async with session_maker() as session:
            counts = await _dispatcher(session).recover()
        assert counts["failed_stale"] == 1

        async with session_maker() as session:
            dispatcher = _dispatcher(session)
            assert await dispatcher.checkpoint(run.id) is True
            await dispatcher.finish(run.id, PipelineResult(video_id=video.id, success=True))

        stored_run = await _load_run(session_maker, run.id)
        assert stored_run.status == "failed"
        assert stored_run.error_message == "Pipeline run lost: heartbeat expired"
        assert (await _load_video(session_maker, video.id)).status == "failed"
