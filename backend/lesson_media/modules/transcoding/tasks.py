"""Celery tasks for lesson video processing.

The queue owns redelivery and backoff. Tasks retry only on database
connectivity failures; media failures are recorded on the asset and are
final until an operator re-queues it.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import OperationalError

from lesson_media.core.celery_app import celery_app
from lesson_media.core.config import settings
from lesson_media.core.database import worker_session_maker
from lesson_media.core.logging import log_error
from lesson_media.modules.asset.models import ProcessingStatus
from lesson_media.modules.asset.repository import MediaAssetRepository
from lesson_media.modules.asset.retention import RetentionSweeper
from lesson_media.modules.job.tasks import BaseTaskWithRetry
from lesson_media.modules.transcoding.pipeline import VideoProcessingPipeline
from lesson_media.modules.transcoding.schemas import ProcessingOutcome, VideoProcessingJob

logger = logging.getLogger(__name__)


class TranscodeTask(BaseTaskWithRetry):
    """Base task for asset processing.

    If the task dies for a reason the pipeline could not record (worker
    crash inside the task body, retries exhausted), an asset this task
    claimed and left in PROCESSING is marked FAILED so it can be re-queued.
    """
    abstract = True
    retry_config_name = "transcode"

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Handle task failure."""
        payload = args[0] if args else kwargs.get("job_payload")
        asset_id = payload.get("asset_id") if isinstance(payload, dict) else None
        if not asset_id:
            return
        try:
            asyncio.run(_mark_asset_failed(uuid.UUID(str(asset_id)), task_id, f"task failed: {exc}"))
        except Exception as e:
            log_error(logger, "Could not record task failure", exception=e, asset_id=str(asset_id))


class RetentionTask(BaseTaskWithRetry):
    """Base task for retention sweeps."""
    abstract = True
    retry_config_name = "retention"


async def _mark_asset_failed(asset_id: uuid.UUID, claimed_by: Optional[str], error: str) -> bool:
    """Mark an asset FAILED if it is PROCESSING under this task's claim."""
    if not claimed_by:
        return False
    async with worker_session_maker() as session_maker:
        async with session_maker() as session:
            failed = await MediaAssetRepository(session).fail_claimed(asset_id, claimed_by, error)
            await session.commit()
    return failed


@celery_app.task(bind=True, base=TranscodeTask, name="lesson_media.transcoding.process_video")
def process_video_task(self: TranscodeTask, job_payload: dict) -> dict:
    """Process one uploaded lesson video.

    Args:
        job_payload: Serialized VideoProcessingJob

    Returns:
        dict: Serialized ProcessingOutcome
    """
    job = VideoProcessingJob.model_validate(job_payload)
    task_id = self.request.id
    try:
        outcome = asyncio.run(_process_video_async(job, task_id))
    except OperationalError as exc:
        log_error(logger, "Database unavailable, retrying", exception=exc, asset_id=str(job.asset_id))
        self.retry_with_backoff(exc, self.request.retries + 1)

    # Retries share the task id, so a claim under it was left by an earlier
    # attempt of this task that died mid-job.
    if outcome.skipped and outcome.status == ProcessingStatus.PROCESSING and self.request.retries > 0:
        if asyncio.run(_mark_asset_failed(
            job.asset_id, task_id, "processing interrupted by a database outage"
        )):
            outcome.status = ProcessingStatus.FAILED
    return outcome.model_dump(mode="json")


async def _process_video_async(job: VideoProcessingJob, claimed_by: Optional[str] = None) -> ProcessingOutcome:
    """Async implementation of asset processing."""
    async with worker_session_maker() as session_maker:
        pipeline = VideoProcessingPipeline(session_maker)
        return await pipeline.process(job, claimed_by=claimed_by)


@celery_app.task(bind=True, base=RetentionTask, name="lesson_media.transcoding.sweep_retention")
def sweep_retention_task(self: RetentionTask) -> dict:
    """Periodic task purging aged, completed assets.

    Returns:
        dict: Sweep report
    """
    try:
        report = asyncio.run(_sweep_retention_async())
    except OperationalError as exc:
        self.retry_with_backoff(exc, self.request.retries + 1)
    return {
        "swept_at": datetime.utcnow().isoformat(),
        **report,
    }


async def _sweep_retention_async() -> dict:
    """Async implementation of the retention sweep."""
    async with worker_session_maker() as session_maker:
        sweeper = RetentionSweeper(session_maker, retention_days=settings.RETENTION_DAYS)
        report = await sweeper.sweep()
    return report.to_dict()
