"""Transcode pipeline: probe, encode and segment uploaded videos into
per-resolution chunks, supervised as background pipeline runs.

Celery tasks live in ``app.modules.transcoding.tasks`` and are not imported
here.
"""

from app.modules.transcoding.models import (
    Resolution,
    RESOLUTION_DIMENSIONS,
    Segment,
    PipelineRun,
    PipelineRunStatus,
)
from app.modules.transcoding.schemas import (
    TranscodeProfile,
    MediaInfo,
    SegmentTiming,
    PipelineEvent,
    PipelineResult,
    compute_segment_timing,
    compute_segment_timings,
    expected_segment_count,
    get_resolution_dimensions,
)
from app.modules.transcoding.interfaces import MetadataStore, MetadataStoreError
from app.modules.transcoding.pipeline import (
    TranscodePipeline,
    PipelineError,
    PipelineCancelledError,
)

__all__ = [
    "Resolution",
    "RESOLUTION_DIMENSIONS",
    "Segment",
    "PipelineRun",
    "PipelineRunStatus",
    "TranscodeProfile",
    "MediaInfo",
    "SegmentTiming",
    "PipelineEvent",
    "PipelineResult",
    "compute_segment_timing",
    "compute_segment_timings",
    "expected_segment_count",
    "get_resolution_dimensions",
    "MetadataStore",
    "MetadataStoreError",
    "TranscodePipeline",
    "PipelineError",
    "PipelineCancelledError",
]
