"""Prometheus metrics for the delivery pipeline.

Tracks uploads, transcode job lifecycle and playback resolution outcomes.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "media_pipeline_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# ============================================
# Storage Metrics
# ============================================
STORAGE_OPERATIONS_TOTAL = Counter(
    "storage_operations_total",
    "Object storage operations by outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)


# ============================================
# Transcoding Metrics
# ============================================
TRANSCODE_JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Transcode job status transitions by target status",
    ["status"],
    registry=REGISTRY,
)

TRANSCODE_SUBMIT_ATTEMPTS_TOTAL = Counter(
    "transcode_submit_attempts_total",
    "External transcode submission attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

RENDITIONS_REGISTERED_TOTAL = Counter(
    "renditions_registered_total",
    "Renditions marked ready by quality",
    ["quality"],
    registry=REGISTRY,
)


# ============================================
# Delivery Metrics
# ============================================
DELIVERY_RESOLUTIONS_TOTAL = Counter(
    "delivery_resolutions_total",
    "Playback resolutions by manifest format and outcome",
    ["format", "outcome"],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    """Publish application version information."""
    APP_INFO.info({"version": version, "environment": environment})


def get_metrics() -> bytes:
    """Render all metrics in Prometheus text format."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Content type of :func:`get_metrics` output."""
    return CONTENT_TYPE_LATEST
