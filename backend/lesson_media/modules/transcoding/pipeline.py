"""Video processing pipeline orchestration.

Runs one asset end to end:

    claim -> cancellation check -> probe -> plan -> encode -> thumbnails
          -> preview -> manifest -> complete

Any fatal error ends the asset in FAILED with a human-readable message.
Thumbnail and preview failures are logged and absorbed. Every database
mutation uses its own short-lived session so a long encode never holds a
connection or transaction open.
"""

import asyncio
import logging
import os
import time
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lesson_media.core.config import settings
from lesson_media.core.logging import asset_context, log_error, log_info, log_warning
from lesson_media.core.metrics import (
    ASSET_PROCESSING_DURATION_SECONDS,
    ASSETS_IN_PROGRESS,
    ASSETS_PROCESSED_TOTAL,
    DERIVATIVE_FAILURES_TOTAL,
)
from lesson_media.modules.asset.errors import InvalidStatusTransitionError
from lesson_media.modules.asset.models import ProcessingStatus
from lesson_media.modules.asset.repository import MediaAssetRepository
from lesson_media.modules.transcoding.abr import catalog_for
from lesson_media.modules.transcoding.errors import (
    EncodeCancelledError,
    InvalidQualityProfileError,
    MediaPipelineError,
    PreviewGenerationError,
    StorageIOError,
    ThumbnailGenerationError,
)
from lesson_media.modules.transcoding.ffmpeg import (
    CancellationToken,
    FFmpegRunner,
    RenditionTranscoder,
)
from lesson_media.modules.transcoding.manifest import write_master_playlist
from lesson_media.modules.transcoding.planner import RenditionJob, plan_renditions
from lesson_media.modules.transcoding.probe import MediaProber, SourceMetadata
from lesson_media.modules.transcoding.schemas import (
    ProcessingOptions,
    ProcessingOutcome,
    RenditionDescriptor,
    VideoProcessingJob,
)
from lesson_media.modules.transcoding.thumbnails import (
    ThumbnailGenerator,
    select_preview_profile,
)

logger = logging.getLogger(__name__)

# Share of overall progress attributed to rendition encodes
ENCODE_PROGRESS_SHARE = 90.0


class ProgressTracker:
    """Rate-limits progress writes during encoding.

    Overall progress is the mean of per-rendition progress scaled to
    ENCODE_PROGRESS_SHARE. Writes are best-effort; a failed write is
    logged and never affects the job.
    """

    def __init__(
        self,
        asset_id: uuid.UUID,
        session_maker: async_sessionmaker[AsyncSession],
        tiers: list[str],
        min_interval: float = 5.0,
    ):
        self.asset_id = asset_id
        self.session_maker = session_maker
        self.min_interval = min_interval
        self.tier_progress: dict[str, float] = {tier: 0.0 for tier in tiers}
        self.last_update_time: float = 0.0
        self.last_written: float = -1.0

    @property
    def overall(self) -> float:
        if not self.tier_progress:
            return 0.0
        mean = sum(self.tier_progress.values()) / len(self.tier_progress)
        return round(mean * ENCODE_PROGRESS_SHARE / 100.0, 1)

    async def update(self, tier: str, percent: float) -> bool:
        """Record tier progress; returns True if a write happened."""
        self.tier_progress[tier] = max(self.tier_progress.get(tier, 0.0), percent)
        now = time.monotonic()
        if now - self.last_update_time < self.min_interval:
            return False
        return await self.flush(now)

    async def flush(self, now: Optional[float] = None) -> bool:
        progress = self.overall
        if progress == self.last_written:
            return False
        try:
            async with self.session_maker() as session:
                await MediaAssetRepository(session).update_progress(self.asset_id, progress)
                await session.commit()
        except SQLAlchemyError as e:
            log_warning(logger, "Progress update failed", asset_id=str(self.asset_id), error=str(e))
            return False
        self.last_update_time = now if now is not None else time.monotonic()
        self.last_written = progress
        return True


class VideoProcessingPipeline:
    """Processes one media asset per call to ``process``."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        prober: Optional[MediaProber] = None,
        transcoder: Optional[RenditionTranscoder] = None,
        thumbnailer: Optional[ThumbnailGenerator] = None,
        max_parallel_renditions: Optional[int] = None,
        thumbnail_count: Optional[int] = None,
        cancel_poll_interval: Optional[float] = None,
        progress_interval: Optional[float] = None,
    ):
        self.session_maker = session_maker
        self.prober = prober or MediaProber(settings.FFPROBE_PATH, settings.PROBE_TIMEOUT_SECONDS)
        self.transcoder = transcoder or RenditionTranscoder(
            ffmpeg_path=settings.FFMPEG_PATH,
            preset=settings.X264_PRESET,
            crf=settings.X264_CRF,
            timeout=settings.RENDITION_TIMEOUT_SECONDS,
        )
        self.thumbnailer = thumbnailer or ThumbnailGenerator(
            ffmpeg_path=settings.FFMPEG_PATH,
            width=settings.THUMBNAIL_WIDTH,
            height=settings.THUMBNAIL_HEIGHT,
            preview_max_seconds=settings.PREVIEW_MAX_SECONDS,
            timeout=settings.RENDITION_TIMEOUT_SECONDS,
        )
        self.max_parallel_renditions = max_parallel_renditions or settings.MAX_PARALLEL_RENDITIONS
        self.thumbnail_count = thumbnail_count or settings.THUMBNAIL_COUNT
        self.cancel_poll_interval = cancel_poll_interval or settings.CANCEL_POLL_INTERVAL_SECONDS
        self.progress_interval = (
            progress_interval if progress_interval is not None
            else settings.PROGRESS_UPDATE_INTERVAL_SECONDS
        )

    @classmethod
    def with_runner(
        cls,
        session_maker: async_sessionmaker[AsyncSession],
        runner: FFmpegRunner,
        **kwargs,
    ) -> "VideoProcessingPipeline":
        """Build a pipeline whose encodes all go through ``runner``."""
        return cls(
            session_maker,
            transcoder=RenditionTranscoder(
                ffmpeg_path=settings.FFMPEG_PATH,
                preset=settings.X264_PRESET,
                crf=settings.X264_CRF,
                timeout=settings.RENDITION_TIMEOUT_SECONDS,
                runner=runner,
            ),
            thumbnailer=ThumbnailGenerator(
                ffmpeg_path=settings.FFMPEG_PATH,
                width=settings.THUMBNAIL_WIDTH,
                height=settings.THUMBNAIL_HEIGHT,
                preview_max_seconds=settings.PREVIEW_MAX_SECONDS,
                timeout=settings.RENDITION_TIMEOUT_SECONDS,
                runner=runner,
            ),
            **kwargs,
        )

    async def process(self, job: VideoProcessingJob, claimed_by: Optional[str] = None) -> ProcessingOutcome:
        """Process one asset.

        Args:
            job: The processing job
            claimed_by: Worker task id recorded on the claim

        Returns:
            ProcessingOutcome; ``skipped`` is set when the asset could not
            be claimed (not PENDING or unknown)
        """
        with asset_context(job.asset_id):
            if not await self._claim(job.asset_id, claimed_by):
                return await self._skipped_outcome(job.asset_id)

            log_info(logger, "Processing started", asset_id=str(job.asset_id), source=job.source_path)
            ASSETS_IN_PROGRESS.inc()
            started = time.monotonic()
            token = CancellationToken()
            watcher = asyncio.create_task(self._watch_cancellation(job.asset_id, token))

            try:
                await self._run(job, token)
            except EncodeCancelledError as e:
                return await self._finish_failed(job.asset_id, e.message, "cancelled")
            except MediaPipelineError as e:
                return await self._finish_failed(job.asset_id, e.message, "failed", e)
            except InvalidStatusTransitionError as e:
                log_error(logger, "Asset left PROCESSING during the job", exception=e)
                ASSETS_PROCESSED_TOTAL.labels(status="conflict").inc()
                return ProcessingOutcome(asset_id=job.asset_id, success=False, error_message=str(e))
            except Exception as e:
                return await self._finish_failed(
                    job.asset_id, f"internal error: {type(e).__name__}: {e}", "failed", e
                )
            finally:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)
                ASSETS_IN_PROGRESS.dec()
                ASSET_PROCESSING_DURATION_SECONDS.observe(time.monotonic() - started)

            ASSETS_PROCESSED_TOTAL.labels(status="completed").inc()
            log_info(logger, "Processing completed", asset_id=str(job.asset_id))
            return ProcessingOutcome(
                asset_id=job.asset_id,
                success=True,
                status=ProcessingStatus.COMPLETED,
            )

    async def _run(self, job: VideoProcessingJob, token: CancellationToken) -> None:
        asset_id = job.asset_id
        options = job.options or ProcessingOptions()

        if await self._is_cancel_requested(asset_id):
            token.cancel()
        self._raise_if_cancelled(token)

        output_dir = job.output_dir
        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create output directory {output_dir}: {e}")

        metadata = await self.prober.probe(job.source_path)
        await self._record_metadata(asset_id, metadata, output_dir)

        watermark = options.watermark if options.watermark and options.watermark.is_active else None

        planned: list[RenditionJob] = []
        renditions: list[RenditionDescriptor] = []
        if options.adaptive_bitrate:
            profiles = (
                [p.model_dump() for p in options.quality_profiles]
                if options.quality_profiles else None
            )
            try:
                catalog = catalog_for(profiles)
            except ValueError as e:
                raise InvalidQualityProfileError(f"Invalid quality profiles: {e}")
            planned = plan_renditions(metadata, catalog, output_dir)
            log_info(
                logger,
                "Planned renditions",
                tiers=[p.tier_name for p in planned],
                source_resolution=f"{metadata.width}x{metadata.height}",
            )
            tracker = ProgressTracker(
                asset_id, self.session_maker, [p.tier_name for p in planned], self.progress_interval
            )
            renditions = await self.transcoder.encode_all(
                job.source_path,
                planned,
                duration=metadata.duration_seconds,
                watermark=watermark,
                cancel_token=token,
                progress_callback=tracker.update,
                max_parallel=self.max_parallel_renditions,
            )
            await tracker.flush()
        self._raise_if_cancelled(token)

        thumbnail_paths: list[str] = []
        if options.generate_thumbnails:
            try:
                thumbnail_paths = await self.thumbnailer.generate_thumbnails(
                    job.source_path,
                    output_dir,
                    metadata.duration_seconds,
                    count=options.thumbnail_count or self.thumbnail_count,
                    cancel_token=token,
                )
            except ThumbnailGenerationError as e:
                DERIVATIVE_FAILURES_TOTAL.labels(kind="thumbnail").inc()
                log_warning(logger, "Thumbnail generation failed", error=e.message)
            self._raise_if_cancelled(token)

        preview_path: Optional[str] = None
        if options.create_preview:
            try:
                preview_path = await self.thumbnailer.generate_preview(
                    job.source_path,
                    output_dir,
                    metadata.duration_seconds,
                    select_preview_profile(planned, metadata),
                    cancel_token=token,
                )
            except PreviewGenerationError as e:
                DERIVATIVE_FAILURES_TOTAL.labels(kind="preview").inc()
                log_warning(logger, "Preview generation failed", error=e.message)
            self._raise_if_cancelled(token)

        manifest_path: Optional[str] = None
        if options.adaptive_bitrate:
            manifest_path = write_master_playlist(output_dir, renditions)

        await self._complete(
            asset_id,
            [r.model_dump() for r in renditions],
            thumbnail_paths,
            preview_path,
            manifest_path,
        )

    @staticmethod
    def _raise_if_cancelled(token: CancellationToken) -> None:
        if token.is_cancelled:
            raise EncodeCancelledError()

    async def _watch_cancellation(self, asset_id: uuid.UUID, token: CancellationToken) -> None:
        """Poll the cancel flag and trip the token when it is set."""
        while not token.is_cancelled:
            await asyncio.sleep(self.cancel_poll_interval)
            try:
                if await self._is_cancel_requested(asset_id):
                    log_info(logger, "Cancellation requested", asset_id=str(asset_id))
                    token.cancel()
            except SQLAlchemyError as e:
                log_warning(logger, "Cancellation poll failed", error=str(e))

    async def _finish_failed(
        self,
        asset_id: uuid.UUID,
        message: str,
        metric_status: str,
        exception: Optional[BaseException] = None,
    ) -> ProcessingOutcome:
        log_error(logger, "Processing failed", exception=exception, asset_id=str(asset_id), error=message)
        try:
            await self._fail(asset_id, message)
        except InvalidStatusTransitionError as e:
            log_error(logger, "Could not mark asset FAILED", exception=e)
        ASSETS_PROCESSED_TOTAL.labels(status=metric_status).inc()
        return ProcessingOutcome(
            asset_id=asset_id,
            success=False,
            status=ProcessingStatus.FAILED,
            error_message=message,
        )

    async def _skipped_outcome(self, asset_id: uuid.UUID) -> ProcessingOutcome:
        async with self.session_maker() as session:
            asset = await MediaAssetRepository(session).get_by_id(asset_id)
        if asset is None:
            log_warning(logger, "Job references unknown asset", asset_id=str(asset_id))
            return ProcessingOutcome(
                asset_id=asset_id, success=False, skipped=True, error_message="asset not found"
            )
        return ProcessingOutcome(
            asset_id=asset_id,
            success=False,
            skipped=True,
            status=asset.processing_status,
            error_message=f"asset is {asset.processing_status.value}, not PENDING",
        )

    # Short-lived session helpers

    async def _claim(self, asset_id: uuid.UUID, claimed_by: Optional[str] = None) -> bool:
        async with self.session_maker() as session:
            claimed = await MediaAssetRepository(session).claim(asset_id, claimed_by)
            await session.commit()
        return claimed

    async def _is_cancel_requested(self, asset_id: uuid.UUID) -> bool:
        async with self.session_maker() as session:
            return await MediaAssetRepository(session).is_cancel_requested(asset_id)

    async def _record_metadata(
        self,
        asset_id: uuid.UUID,
        metadata: SourceMetadata,
        output_dir: str,
    ) -> None:
        async with self.session_maker() as session:
            await MediaAssetRepository(session).record_source_metadata(
                asset_id,
                duration_seconds=metadata.duration_seconds,
                width=metadata.width,
                height=metadata.height,
                bitrate=metadata.bitrate,
                output_dir=output_dir,
            )
            await session.commit()

    async def _complete(
        self,
        asset_id: uuid.UUID,
        processed_versions: list[dict],
        thumbnail_paths: list[str],
        preview_path: Optional[str],
        manifest_path: Optional[str],
    ) -> None:
        async with self.session_maker() as session:
            await MediaAssetRepository(session).complete(
                asset_id,
                processed_versions=processed_versions,
                thumbnail_paths=thumbnail_paths,
                preview_path=preview_path,
                manifest_path=manifest_path,
            )
            await session.commit()

    async def _fail(self, asset_id: uuid.UUID, message: str) -> None:
        async with self.session_maker() as session:
            await MediaAssetRepository(session).fail(asset_id, message)
            await session.commit()
