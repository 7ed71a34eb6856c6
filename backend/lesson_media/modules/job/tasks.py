"""Celery base task with exponential backoff.

Retries only cover infrastructure failures (database unreachable, broker
hiccups). Media failures are recorded on the asset and are final.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any

from celery import Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy: initial_delay * backoff_multiplier^(attempt-1), capped."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait before the given (1-indexed) retry attempt."""
        if attempt < 1:
            return self.initial_delay
        return min(
            self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1),
            self.max_delay,
        )


RETRY_CONFIGS: dict[str, RetryConfig] = {
    "transcode": RetryConfig(max_attempts=3, initial_delay=10.0, max_delay=120.0),
    "retention": RetryConfig(max_attempts=5, initial_delay=30.0, max_delay=600.0),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0),
}


class BaseTaskWithRetry(Task):
    """Task base resolving its backoff policy by name from RETRY_CONFIGS."""

    abstract = True
    retry_config_name: str = "default"

    @property
    def retry_config(self) -> RetryConfig:
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    def retry_with_backoff(self, exc: Exception, attempt: int) -> None:
        """Schedule a retry after the policy's delay.

        Args:
            exc: Infrastructure failure that interrupted the task
            attempt: Retry number about to be scheduled (1-indexed)

        Raises:
            Retry: Always, when attempts remain
            MaxRetriesExceededError: When the policy is exhausted
        """
        policy = self.retry_config
        if attempt >= policy.max_attempts:
            raise self.MaxRetriesExceededError(
                f"{self.name}: gave up after {policy.max_attempts} attempts ({exc})"
            )
        raise self.retry(exc=exc, countdown=policy.calculate_delay(attempt))

    def on_retry(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.warning(
            "Retrying task %s after %s: %s", self.name, type(exc).__name__, exc
        )
