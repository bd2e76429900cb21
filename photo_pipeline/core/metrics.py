"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, job outcomes, provider calls and cleanup.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "upload_pipeline_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "upload_pipeline_total_duration_seconds",
    "Total time for one job from Validating to a terminal stage",
    labelnames=["status"],
    buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Jobs Counter
jobs_total = Counter(
    "upload_jobs_total",
    "Total number of upload jobs that reached a terminal stage",
    labelnames=["status", "failure_kind"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "upload_active_jobs",
    "Number of jobs currently inside the pipeline"
)

# External provider calls
external_api_calls_total = Counter(
    "upload_external_api_calls_total",
    "Calls to external enrichment providers",
    labelnames=["service", "status", "http_status"]
)

# Best-effort degradations
degradations_total = Counter(
    "upload_degradations_total",
    "Best-effort stages that completed without their output",
    labelnames=["stage", "kind"]
)

thumbnail_failures_total = Counter(
    "upload_thumbnail_failures_total",
    "Thumbnail size classes that could not be produced",
    labelnames=["size_class"]
)

# Cleanup
cleanups_total = Counter(
    "upload_cleanups_total",
    "Storage cleanups run for failed jobs",
    labelnames=["status"]
)

# Quota
quota_rejections_total = Counter(
    "upload_quota_rejections_total",
    "Files rejected before processing because of quota"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Application Info
app_info = Info(
    "upload_pipeline_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("deriving"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(time.time() - start)


def record_external_call(service: str, status: str, http_status: int = 0):
    """Record a call to an external provider."""
    external_api_calls_total.labels(
        service=service,
        status=status,
        http_status=str(http_status)
    ).inc()


def record_job_completion(status: str, failure_kind: str = "none", duration_seconds: float = 0.0):
    """Record a job reaching a terminal stage."""
    jobs_total.labels(status=status, failure_kind=failure_kind).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)


def record_degradation(stage: str, kind: str):
    degradations_total.labels(stage=stage, kind=kind).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
