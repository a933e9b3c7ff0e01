"""Prometheus metrics for the transcode pipeline."""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()


# ============================================
# Pipeline Run Metrics
# ============================================
PIPELINE_RUNS_TOTAL = Counter(
    "transcode_pipeline_runs_total",
    "Total transcode pipeline runs by outcome",
    ["outcome"],
    registry=REGISTRY,
)

PIPELINE_STEP_DURATION_SECONDS = Histogram(
    "transcode_pipeline_step_duration_seconds",
    "Duration of individual pipeline steps in seconds",
    ["step"],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 3600.0],
    registry=REGISTRY,
)

PIPELINES_IN_PROGRESS = Gauge(
    "transcode_pipelines_in_progress",
    "Number of pipeline runs currently executing",
    registry=REGISTRY,
    # Summed over live worker processes in multiprocess mode
    multiprocess_mode="livesum",
)

SEGMENTS_CREATED_TOTAL = Counter(
    "transcode_segments_created_total",
    "Total segment records created",
    ["resolution"],
    registry=REGISTRY,
)

PIPELINE_DIAGNOSTICS_TOTAL = Counter(
    "transcode_pipeline_diagnostics_total",
    "Diagnostic events recorded by pipeline runs",
    ["level", "step"],
    registry=REGISTRY,
)


def is_multiprocess() -> bool:
    """Check if Celery prefork workers share metrics through a directory."""
    return "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format.

    In multiprocess mode the values of every worker are read from the shared
    directory into a fresh registry; the process-local registry is not
    exported alongside them.
    """
    if is_multiprocess():
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return generate_latest(registry)
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
