"""Repository for media asset database operations.

Every status change goes through the state machine in
``lesson_media.modules.asset.status``. Methods flush but never commit;
callers own the transaction.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_media.modules.asset.errors import MediaAssetNotFoundError
from lesson_media.modules.asset.models import MediaAsset, ProcessingStatus
from lesson_media.modules.asset.status import StatusAction, next_status

logger = logging.getLogger(__name__)


class MediaAssetRepository:
    """Repository for MediaAsset operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        source_path: str,
        checksum: Optional[str] = None,
        mime_type: Optional[str] = None,
        file_size: Optional[int] = None,
        output_dir: Optional[str] = None,
        asset_id: Optional[uuid.UUID] = None,
    ) -> MediaAsset:
        """Register a new asset in PENDING.

        Args:
            source_path: Path of the uploaded source file
            checksum: sha256 hex digest of the source
            mime_type: Source MIME type
            file_size: Source size in bytes
            output_dir: Private output directory for derived files
            asset_id: Explicit ID, generated when omitted

        Returns:
            Created MediaAsset
        """
        asset = MediaAsset(
            id=asset_id or uuid.uuid4(),
            source_path=source_path,
            checksum=checksum,
            mime_type=mime_type,
            file_size=file_size,
            output_dir=output_dir,
            processing_status=ProcessingStatus.PENDING,
            processed_versions=[],
            thumbnail_paths=[],
        )
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def get_by_id(self, asset_id: uuid.UUID) -> Optional[MediaAsset]:
        """Get an asset by ID."""
        result = await self.session.execute(
            select(MediaAsset).where(MediaAsset.id == asset_id)
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, asset_id: uuid.UUID, for_update: bool = False) -> MediaAsset:
        """Get an asset by ID, locking the row when requested.

        Raises:
            MediaAssetNotFoundError: If no asset has this ID
        """
        query = select(MediaAsset).where(MediaAsset.id == asset_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query.execution_options(populate_existing=True))
        asset = result.scalar_one_or_none()
        if asset is None:
            raise MediaAssetNotFoundError(asset_id)
        return asset

    async def claim(self, asset_id: uuid.UUID, claimed_by: Optional[str] = None) -> bool:
        """Atomically move an asset from PENDING to PROCESSING.

        A claim on an asset that is not PENDING (duplicate delivery, already
        processed) changes nothing.

        Args:
            asset_id: Asset to claim
            claimed_by: Worker task id recorded as the claim owner

        Returns:
            True if this caller now owns the asset
        """
        target = next_status(ProcessingStatus.PENDING, StatusAction.CLAIM, asset_id)
        result = await self.session.execute(
            update(MediaAsset)
            .where(
                MediaAsset.id == asset_id,
                MediaAsset.processing_status == ProcessingStatus.PENDING,
            )
            .values(
                processing_status=target,
                processing_started_at=datetime.utcnow(),
                processing_completed_at=None,
                processing_error=None,
                progress=0.0,
                claimed_by=claimed_by,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if not claimed:
            logger.info("Claim ignored for asset %s: not PENDING", asset_id)
        return claimed

    async def record_source_metadata(
        self,
        asset_id: uuid.UUID,
        duration_seconds: float,
        width: int,
        height: int,
        bitrate: Optional[int],
        output_dir: Optional[str] = None,
    ) -> None:
        """Store probed source metadata on a PROCESSING asset."""
        values = {
            "duration_seconds": duration_seconds,
            "source_width": width,
            "source_height": height,
            "source_bitrate": bitrate,
            "updated_at": datetime.utcnow(),
        }
        if output_dir is not None:
            values["output_dir"] = output_dir
        await self.session.execute(
            update(MediaAsset)
            .where(
                MediaAsset.id == asset_id,
                MediaAsset.processing_status == ProcessingStatus.PROCESSING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def update_progress(self, asset_id: uuid.UUID, progress: float) -> None:
        """Store best-effort progress (0-100) while PROCESSING."""
        await self.session.execute(
            update(MediaAsset)
            .where(
                MediaAsset.id == asset_id,
                MediaAsset.processing_status == ProcessingStatus.PROCESSING,
            )
            .values(progress=min(100.0, max(0.0, progress)))
            .execution_options(synchronize_session=False)
        )

    async def is_cancel_requested(self, asset_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            select(MediaAsset.cancel_requested).where(MediaAsset.id == asset_id)
        )
        return bool(result.scalar_one_or_none())

    async def request_cancel(self, asset_id: uuid.UUID) -> bool:
        """Flag an asset for cancellation.

        Returns:
            True if the asset is PENDING or PROCESSING and was flagged
        """
        result = await self.session.execute(
            update(MediaAsset)
            .where(
                MediaAsset.id == asset_id,
                MediaAsset.processing_status.in_(
                    [ProcessingStatus.PENDING, ProcessingStatus.PROCESSING]
                ),
            )
            .values(cancel_requested=True, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def complete(
        self,
        asset_id: uuid.UUID,
        processed_versions: Sequence[dict],
        thumbnail_paths: Sequence[str],
        preview_path: Optional[str],
        manifest_path: Optional[str],
    ) -> MediaAsset:
        """Transition PROCESSING -> COMPLETED and publish all outputs at once."""
        asset = await self.get_or_raise(asset_id, for_update=True)
        asset.processing_status = next_status(
            asset.processing_status, StatusAction.COMPLETE, asset_id
        )
        asset.processing_completed_at = datetime.utcnow()
        asset.processing_error = None
        asset.processed_versions = list(processed_versions)
        asset.thumbnail_paths = list(thumbnail_paths)
        asset.preview_path = preview_path
        asset.manifest_path = manifest_path
        asset.progress = 100.0
        await self.session.flush()
        return asset

    async def fail(self, asset_id: uuid.UUID, error_message: str) -> MediaAsset:
        """Transition PROCESSING -> FAILED with a human-readable cause."""
        asset = await self.get_or_raise(asset_id, for_update=True)
        asset.processing_status = next_status(
            asset.processing_status, StatusAction.FAIL, asset_id
        )
        asset.processing_completed_at = datetime.utcnow()
        asset.processing_error = error_message or "unknown error"
        asset.processed_versions = []
        asset.thumbnail_paths = []
        asset.preview_path = None
        asset.manifest_path = None
        await self.session.flush()
        return asset

    async def fail_claimed(self, asset_id: uuid.UUID, claimed_by: str, error_message: str) -> bool:
        """Fail a PROCESSING asset only if the given task still owns its claim.

        Used by worker tasks cleaning up after themselves; a claim held by
        another delivery of the job is left untouched.

        Returns:
            True if the asset was moved to FAILED
        """
        target = next_status(ProcessingStatus.PROCESSING, StatusAction.FAIL, asset_id)
        result = await self.session.execute(
            update(MediaAsset)
            .where(
                MediaAsset.id == asset_id,
                MediaAsset.processing_status == ProcessingStatus.PROCESSING,
                MediaAsset.claimed_by == claimed_by,
            )
            .values(
                processing_status=target,
                processing_completed_at=datetime.utcnow(),
                processing_error=error_message or "unknown error",
                processed_versions=[],
                thumbnail_paths=[],
                preview_path=None,
                manifest_path=None,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        failed = result.rowcount == 1
        if not failed:
            logger.info("Failure not recorded for asset %s: claim held elsewhere", asset_id)
        return failed

    async def requeue(self, asset_id: uuid.UUID) -> MediaAsset:
        """Transition FAILED -> PENDING (operator re-queue)."""
        asset = await self.get_or_raise(asset_id, for_update=True)
        asset.processing_status = next_status(
            asset.processing_status, StatusAction.REQUEUE, asset_id
        )
        self._reset_processing_fields(asset)
        await self.session.flush()
        return asset

    async def purge_reset(self, asset_id: uuid.UUID) -> MediaAsset:
        """Transition COMPLETED -> PENDING after its files were removed."""
        asset = await self.get_or_raise(asset_id, for_update=True)
        asset.processing_status = next_status(
            asset.processing_status, StatusAction.PURGE, asset_id
        )
        self._reset_processing_fields(asset)
        await self.session.flush()
        return asset

    async def list_completed_before(
        self,
        cutoff: datetime,
        limit: Optional[int] = None,
    ) -> list[MediaAsset]:
        """COMPLETED assets whose processing finished before cutoff."""
        query = (
            select(MediaAsset)
            .where(
                MediaAsset.processing_status == ProcessingStatus.COMPLETED,
                MediaAsset.processing_completed_at < cutoff,
            )
            .order_by(MediaAsset.processing_completed_at)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    def _reset_processing_fields(asset: MediaAsset) -> None:
        asset.processing_error = None
        asset.processing_started_at = None
        asset.processing_completed_at = None
        asset.processed_versions = []
        asset.thumbnail_paths = []
        asset.preview_path = None
        asset.manifest_path = None
        asset.progress = 0.0
        asset.cancel_requested = False
        asset.claimed_by = None
