"""Pydantic schemas for the processing job contract."""

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lesson_media.modules.asset.models import ProcessingStatus
from lesson_media.modules.transcoding.abr import validate_tier_name


class WatermarkPosition(str, Enum):
    """Where an image or text watermark is anchored."""
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"


class WatermarkOptions(BaseModel):
    """Watermark applied identically to every rendition of an asset."""
    enabled: bool = False
    image_path: Optional[str] = Field(None, description="Overlay image; takes precedence over text")
    text: Optional[str] = Field(None, description="Semi-transparent drawtext overlay")
    position: WatermarkPosition = WatermarkPosition.BOTTOM_RIGHT
    opacity: float = Field(default=0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_source(self) -> "WatermarkOptions":
        if self.enabled and not (self.image_path or self.text):
            raise ValueError("An enabled watermark needs image_path or text")
        return self

    @property
    def is_active(self) -> bool:
        return self.enabled and bool(self.image_path or self.text)


class QualityProfileSchema(BaseModel):
    """A custom quality tier supplied with a job."""
    tier_name: str = Field(..., min_length=1, max_length=32)
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    video_bitrate_kbps: int = Field(..., gt=0)
    audio_bitrate_kbps: int = Field(..., gt=0)
    fps: int = Field(..., gt=0, le=120)

    @field_validator("tier_name")
    @classmethod
    def validate_tier_name_is_safe(cls, v: str) -> str:
        return validate_tier_name(v)


class ProcessingOptions(BaseModel):
    """Per-job processing switches."""
    generate_thumbnails: bool = True
    create_preview: bool = True
    adaptive_bitrate: bool = True
    quality_profiles: Optional[list[QualityProfileSchema]] = None
    watermark: Optional[WatermarkOptions] = None
    thumbnail_count: Optional[int] = Field(None, ge=1, le=50)

    @field_validator("quality_profiles")
    @classmethod
    def validate_unique_tiers(cls, v: Optional[list[QualityProfileSchema]]) -> Optional[list[QualityProfileSchema]]:
        if v:
            names = [p.tier_name for p in v]
            if len(set(names)) != len(names):
                raise ValueError("quality_profiles tier names must be unique")
        return v


class VideoProcessingJob(BaseModel):
    """Job payload handed from the upload collaborator to the worker."""
    asset_id: uuid.UUID
    source_path: str = Field(..., min_length=1)
    output_dir: str = Field(..., min_length=1)
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)


class RenditionDescriptor(BaseModel):
    """One produced rendition, as stored in processed_versions."""
    tier_name: str
    width: int
    height: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int
    fps: int
    output_path: str

    model_config = ConfigDict(from_attributes=True)


class ProcessingStatusResponse(BaseModel):
    """Status query result for one asset."""
    asset_id: uuid.UUID
    status: ProcessingStatus
    progress_percent: float = Field(..., ge=0, le=100)
    error_message: Optional[str] = None


class ProcessingOutcome(BaseModel):
    """Success/failure signal returned to the queue."""
    asset_id: uuid.UUID
    success: bool
    status: Optional[ProcessingStatus] = None
    error_message: Optional[str] = None
    skipped: bool = False
