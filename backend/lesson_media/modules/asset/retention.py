"""Retention sweeper for aged, completed assets.

Purging removes derived files, including pipeline leftovers the record
never captured, and resets the asset to PENDING; the asset record and its
source file are never deleted. Individual file deletion errors are
logged and counted without aborting the sweep.
"""

import fnmatch
import inspect
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lesson_media.core.logging import asset_context, log_error, log_info, log_warning
from lesson_media.core.metrics import RETENTION_FILE_ERRORS_TOTAL, RETENTION_PURGED_TOTAL
from lesson_media.modules.asset.models import MediaAsset
from lesson_media.modules.asset.repository import MediaAssetRepository
from lesson_media.modules.asset.status import StatusAction, next_status

logger = logging.getLogger(__name__)

EligibilityCheck = Callable[[MediaAsset], Union[bool, Awaitable[bool]]]

# Files the pipeline writes into an asset's private output directory
OWNED_FILE_PATTERNS = ("*.mp4", "thumb-*.jpg", "playlist.m3u8", "playlist.m3u8.tmp")


async def always_eligible(asset: MediaAsset) -> bool:
    return True


@dataclass
class PurgeResult:
    """Outcome of purging one asset."""
    asset_id: uuid.UUID
    deleted_files: list[str] = field(default_factory=list)
    file_errors: list[str] = field(default_factory=list)


@dataclass
class SweepReport:
    """Summary of one sweep."""
    scanned: int = 0
    purged: int = 0
    skipped: int = 0
    file_errors: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "purged": self.purged,
            "skipped": self.skipped,
            "file_errors": self.file_errors,
            "errors": self.errors,
        }


def remove_files(paths: list[str]) -> tuple[list[str], list[str]]:
    """Delete files, continuing past failures.

    Missing files count as already deleted.

    Returns:
        (deleted paths, error descriptions)
    """
    deleted, errors = [], []
    for path in paths:
        try:
            os.remove(path)
            deleted.append(path)
        except FileNotFoundError:
            deleted.append(path)
        except OSError as e:
            errors.append(f"{path}: {e}")
            RETENTION_FILE_ERRORS_TOTAL.inc()
            log_warning(logger, "Could not delete file during purge", path=path, error=str(e))
    return deleted, errors


def pipeline_leftovers(output_dir: Optional[str], keep: tuple[str, ...] = ()) -> list[str]:
    """Pipeline-owned files in an asset directory, recorded or not.

    Picks up thumbnails from a failed batch, renditions from an earlier
    failed attempt and interrupted playlist writes. Paths in keep (the
    source, when it lives there) are never returned.

    Returns:
        Sorted file paths matching OWNED_FILE_PATTERNS
    """
    if not output_dir or not os.path.isdir(output_dir):
        return []
    kept = {os.path.abspath(p) for p in keep if p}
    found = []
    with os.scandir(output_dir) as entries:
        for entry in entries:
            if not entry.is_file(follow_symlinks=False):
                continue
            if not any(fnmatch.fnmatchcase(entry.name, pattern) for pattern in OWNED_FILE_PATTERNS):
                continue
            if os.path.abspath(entry.path) in kept:
                continue
            found.append(entry.path)
    return sorted(found)


def remove_dir_if_empty(path: Optional[str]) -> bool:
    if not path or not os.path.isdir(path):
        return False
    try:
        os.rmdir(path)
    except OSError:
        return False
    return True


class RetentionSweeper:
    """Reclaims disk space for COMPLETED assets older than the threshold."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        retention_days: int = 30,
        eligibility_check: Optional[EligibilityCheck] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_maker = session_maker
        self.retention_days = retention_days
        self.eligibility_check = eligibility_check or always_eligible
        self.batch_size = batch_size

    async def _is_eligible(self, asset: MediaAsset) -> bool:
        verdict = self.eligibility_check(asset)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        return bool(verdict)

    async def purge(self, asset_id: uuid.UUID) -> PurgeResult:
        """Delete an asset's derived files and reset it to PENDING.

        Raises:
            MediaAssetNotFoundError: If the asset does not exist
            InvalidStatusTransitionError: If the asset is not COMPLETED
        """
        with asset_context(asset_id):
            async with self.session_maker() as session:
                repo = MediaAssetRepository(session)
                asset = await repo.get_or_raise(asset_id, for_update=True)
                next_status(asset.processing_status, StatusAction.PURGE, asset_id)
                paths = asset.artifact_paths()
                output_dir = asset.output_dir

                scan_errors = []
                try:
                    leftovers = pipeline_leftovers(output_dir, keep=(asset.source_path,))
                except OSError as e:
                    leftovers = []
                    scan_errors.append(f"{output_dir}: {e}")
                    RETENTION_FILE_ERRORS_TOTAL.inc()
                    log_warning(logger, "Could not scan output directory", path=output_dir, error=str(e))
                recorded = {os.path.abspath(p) for p in paths}
                paths.extend(p for p in leftovers if os.path.abspath(p) not in recorded)

                deleted, errors = remove_files(paths)
                errors = scan_errors + errors
                remove_dir_if_empty(output_dir)

                await repo.purge_reset(asset_id)
                await session.commit()

            RETENTION_PURGED_TOTAL.inc()
            log_info(
                logger,
                "Purged media asset",
                asset_id=str(asset_id),
                deleted_files=len(deleted),
                file_errors=len(errors),
            )
            return PurgeResult(asset_id=asset_id, deleted_files=deleted, file_errors=errors)

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Purge every eligible COMPLETED asset past the retention threshold."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=self.retention_days)
        report = SweepReport()

        async with self.session_maker() as session:
            repo = MediaAssetRepository(session)
            candidates = await repo.list_completed_before(cutoff, limit=self.batch_size)
            candidate_assets = [(asset.id, asset) for asset in candidates]

        report.scanned = len(candidate_assets)
        for asset_id, asset in candidate_assets:
            try:
                eligible = await self._is_eligible(asset)
            except Exception as e:
                report.skipped += 1
                report.errors.append(f"{asset_id}: eligibility check failed: {e}")
                log_error(logger, "Eligibility check failed", exception=e, asset_id=str(asset_id))
                continue

            if not eligible:
                report.skipped += 1
                continue

            try:
                result = await self.purge(asset_id)
            except Exception as e:
                report.skipped += 1
                report.errors.append(f"{asset_id}: {e}")
                log_error(logger, "Purge failed", exception=e, asset_id=str(asset_id))
                continue

            report.purged += 1
            report.file_errors += len(result.file_errors)

        log_info(
            logger,
            "Retention sweep finished",
            cutoff=cutoff.isoformat(),
            **report.to_dict(),
        )
        return report
