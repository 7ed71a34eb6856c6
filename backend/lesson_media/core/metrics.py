"""Prometheus metrics for the media processing workers.

Tracks rendition encodes, asset outcomes and retention sweeps.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    start_http_server,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., prefork Celery workers)
if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "lesson_media_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Asset Processing Metrics
# ============================================
ASSETS_PROCESSED_TOTAL = Counter(
    "media_assets_processed_total",
    "Total processed media assets by final status",
    ["status"],
    registry=REGISTRY,
)

ASSETS_IN_PROGRESS = Gauge(
    "media_assets_in_progress",
    "Number of media assets currently being processed by this worker",
    registry=REGISTRY,
)

ASSET_PROCESSING_DURATION_SECONDS = Histogram(
    "media_asset_processing_duration_seconds",
    "Wall-clock time from claim to final status",
    buckets=[10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0],
    registry=REGISTRY,
)


# ============================================
# Rendition Metrics
# ============================================
RENDITIONS_TOTAL = Counter(
    "media_renditions_total",
    "Total rendition encodes by tier and result",
    ["tier", "result"],
    registry=REGISTRY,
)

RENDITION_ENCODE_DURATION_SECONDS = Histogram(
    "media_rendition_encode_duration_seconds",
    "Rendition encode duration in seconds",
    ["tier"],
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

DERIVATIVE_FAILURES_TOTAL = Counter(
    "media_derivative_failures_total",
    "Non-fatal thumbnail and preview failures",
    ["kind"],
    registry=REGISTRY,
)


# ============================================
# Retention Metrics
# ============================================
RETENTION_PURGED_TOTAL = Counter(
    "media_retention_purged_total",
    "Assets purged by the retention sweeper",
    registry=REGISTRY,
)

RETENTION_FILE_ERRORS_TOTAL = Counter(
    "media_retention_file_errors_total",
    "Individual file deletion errors during purge",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format.

    Returns:
        bytes: Prometheus-formatted metrics
    """
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics.

    Returns:
        str: Content type string
    """
    return CONTENT_TYPE_LATEST


def start_metrics_server(port: int) -> None:
    """Expose the registry over HTTP for scraping."""
    start_http_server(port, registry=REGISTRY)


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
