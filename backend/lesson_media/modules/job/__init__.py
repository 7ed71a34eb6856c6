"""Job module providing Celery retry/backoff behaviour."""

from lesson_media.modules.job.tasks import RetryConfig, RETRY_CONFIGS, BaseTaskWithRetry

__all__ = [
    "RetryConfig",
    "RETRY_CONFIGS",
    "BaseTaskWithRetry",
]
