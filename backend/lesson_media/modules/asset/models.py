"""Media asset database model."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    Integer,
    BigInteger,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from lesson_media.core.database import Base


class ProcessingStatus(str, Enum):
    """Processing status of a media asset."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class MediaAsset(Base):
    """An uploaded lesson video and everything derived from it.

    Rendition descriptors, thumbnail paths and the preview path are only
    populated on the transition to COMPLETED.
    """

    __tablename__ = "media_assets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Source file
    source_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    checksum: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # bytes

    # Probed source metadata
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    source_width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_bitrate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # bps

    # Processing state
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        SQLEnum(ProcessingStatus, name="processing_status"),
        default=ProcessingStatus.PENDING,
        nullable=False,
        index=True,
    )
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, index=True
    )
    progress: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)  # 0-100
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Id of the worker task holding the current claim
    claimed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Outputs
    output_dir: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    processed_versions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    thumbnail_paths: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    preview_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    manifest_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def is_completed(self) -> bool:
        """Check if the asset has finished processing successfully."""
        return self.processing_status == ProcessingStatus.COMPLETED

    def artifact_paths(self) -> list[str]:
        """All on-disk files derived from the source."""
        paths = [
            version["output_path"]
            for version in (self.processed_versions or [])
            if version.get("output_path")
        ]
        paths.extend(self.thumbnail_paths or [])
        if self.preview_path:
            paths.append(self.preview_path)
        if self.manifest_path:
            paths.append(self.manifest_path)
        return paths

    def __repr__(self) -> str:
        return f"<MediaAsset(id={self.id}, status={self.processing_status})>"
