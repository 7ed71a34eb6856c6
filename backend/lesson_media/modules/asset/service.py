"""Media asset service.

Entry points used by the upload and streaming collaborators: register an
upload, queue/re-queue processing, query status, cancel, and resolve the
path to stream. Signing and URL minting stay with the caller.
"""

import asyncio
import hashlib
import logging
import mimetypes
import os
import uuid
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from lesson_media.core.config import settings
from lesson_media.core.logging import log_info
from lesson_media.modules.asset.errors import (
    InvalidStatusTransitionError,
    MediaAssetNotFoundError,
)
from lesson_media.modules.asset.models import MediaAsset, ProcessingStatus
from lesson_media.modules.asset.repository import MediaAssetRepository
from lesson_media.modules.asset.status import StatusAction
from lesson_media.modules.transcoding.errors import StorageIOError
from lesson_media.modules.transcoding.schemas import (
    ProcessingOptions,
    ProcessingStatusResponse,
    VideoProcessingJob,
)

logger = logging.getLogger(__name__)

CHECKSUM_CHUNK_SIZE = 1024 * 1024

JobDispatcher = Callable[[dict], str]


def dispatch_processing_job(payload: dict) -> str:
    """Queue a processing job on Celery; returns the task id."""
    from lesson_media.modules.transcoding.tasks import process_video_task

    return process_video_task.delay(payload).id


def compute_file_checksum(path: str) -> tuple[str, int]:
    """Compute the sha256 hex digest and size of a file.

    Raises:
        StorageIOError: If the file cannot be read
    """
    digest = hashlib.sha256()
    size = 0
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHECKSUM_CHUNK_SIZE), b""):
                digest.update(chunk)
                size += len(chunk)
    except OSError as e:
        raise StorageIOError(f"Cannot read source file {path}: {e}")
    return digest.hexdigest(), size


def default_output_dir(asset_id: uuid.UUID) -> str:
    """Private, per-asset directory for derived files."""
    return os.path.join(settings.MEDIA_ROOT, settings.PROCESSED_SUBDIR, str(asset_id))


def merge_options(options: Union[ProcessingOptions, Mapping[str, Any], None]) -> ProcessingOptions:
    """Overlay caller-supplied options on the defaults."""
    if options is None:
        return ProcessingOptions()
    if isinstance(options, ProcessingOptions):
        return options
    defaults = ProcessingOptions().model_dump()
    defaults.update({k: v for k, v in options.items() if v is not None})
    return ProcessingOptions.model_validate(defaults)


class MediaAssetService:
    """Service for media asset operations.

    Methods that dispatch work commit first so the worker sees the new
    state; the rest only flush.
    """

    def __init__(self, session: AsyncSession, dispatcher: Optional[JobDispatcher] = None):
        self.session = session
        self.asset_repo = MediaAssetRepository(session)
        self.dispatcher = dispatcher or dispatch_processing_job

    async def get_asset(self, asset_id: uuid.UUID) -> MediaAsset:
        """Get an asset by ID.

        Raises:
            MediaAssetNotFoundError: If the asset does not exist
        """
        asset = await self.asset_repo.get_by_id(asset_id)
        if asset is None:
            raise MediaAssetNotFoundError(asset_id)
        return asset

    async def register_upload(
        self,
        source_path: str,
        mime_type: Optional[str] = None,
        output_dir: Optional[str] = None,
    ) -> MediaAsset:
        """Register a completed upload as a PENDING asset.

        Args:
            source_path: Path of the uploaded file
            mime_type: MIME type, guessed from the extension when omitted
            output_dir: Override for the derived-files directory

        Returns:
            MediaAsset: Created asset

        Raises:
            StorageIOError: If the source cannot be read
        """
        if not os.path.isfile(source_path):
            raise StorageIOError(f"Source file not found: {source_path}")

        checksum, size = await asyncio.to_thread(compute_file_checksum, source_path)
        asset_id = uuid.uuid4()
        asset = await self.asset_repo.create(
            asset_id=asset_id,
            source_path=source_path,
            checksum=checksum,
            mime_type=mime_type or mimetypes.guess_type(source_path)[0],
            file_size=size,
            output_dir=output_dir or default_output_dir(asset_id),
        )
        log_info(logger, "Registered upload", asset_id=str(asset.id), size_bytes=size)
        return asset

    async def queue_processing(
        self,
        asset_id: uuid.UUID,
        options: Union[ProcessingOptions, Mapping[str, Any], None] = None,
    ) -> str:
        """Dispatch a processing job for a PENDING asset.

        Returns:
            str: Task id from the dispatcher

        Raises:
            MediaAssetNotFoundError: If the asset does not exist
            InvalidStatusTransitionError: If the asset is not PENDING
        """
        asset = await self.get_asset(asset_id)
        if asset.processing_status != ProcessingStatus.PENDING:
            raise InvalidStatusTransitionError(asset.processing_status, StatusAction.CLAIM, asset_id)

        job = VideoProcessingJob(
            asset_id=asset.id,
            source_path=asset.source_path,
            output_dir=asset.output_dir or default_output_dir(asset.id),
            options=merge_options(options),
        )
        await self.session.commit()
        task_id = self.dispatcher(job.model_dump(mode="json"))
        log_info(logger, "Queued processing", asset_id=str(asset_id), task_id=task_id)
        return task_id

    async def get_processing_status(self, asset_id: uuid.UUID) -> ProcessingStatusResponse:
        """Current status, best-effort progress and error for an asset."""
        asset = await self.get_asset(asset_id)
        status = asset.processing_status
        if status == ProcessingStatus.COMPLETED:
            progress = 100.0
        elif status == ProcessingStatus.PROCESSING:
            progress = min(100.0, max(0.0, asset.progress or 0.0))
        else:
            progress = 0.0

        return ProcessingStatusResponse(
            asset_id=asset.id,
            status=status,
            progress_percent=progress,
            error_message=asset.processing_error if status == ProcessingStatus.FAILED else None,
        )

    async def cancel_processing(self, asset_id: uuid.UUID) -> bool:
        """Request cancellation of a PENDING or PROCESSING asset.

        The worker notices the flag on its next poll, kills the in-flight
        encode and fails the asset with "cancelled by operator".

        Returns:
            bool: True if the request was recorded
        """
        await self.get_asset(asset_id)
        requested = await self.asset_repo.request_cancel(asset_id)
        await self.session.commit()
        if requested:
            log_info(logger, "Cancellation requested", asset_id=str(asset_id))
        return requested

    async def requeue(
        self,
        asset_id: uuid.UUID,
        options: Union[ProcessingOptions, Mapping[str, Any], None] = None,
    ) -> str:
        """Operator re-queue: FAILED -> PENDING, then dispatch.

        Raises:
            InvalidStatusTransitionError: If the asset is not FAILED
        """
        await self.asset_repo.requeue(asset_id)
        await self.session.commit()
        return await self.queue_processing(asset_id, options)

    async def get_stream_path(self, asset_id: uuid.UUID, quality: Optional[str] = None) -> str:
        """Resolve the file a player should stream.

        The source file until processing completes; afterwards the named
        rendition if it was produced, otherwise the master playlist.
        """
        asset = await self.get_asset(asset_id)
        if asset.processing_status != ProcessingStatus.COMPLETED:
            return asset.source_path

        if quality:
            for version in asset.processed_versions or []:
                if version.get("tier_name") == quality:
                    return version["output_path"]

        return asset.manifest_path or asset.source_path
