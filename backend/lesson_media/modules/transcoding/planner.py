"""Rendition planning.

Decides which quality tiers to produce for a source. A tier is selected
only if it would not upscale the source; selected tiers are scheduled best
first so an interrupted job leaves its most useful renditions behind.
"""

import os
from dataclasses import dataclass

from lesson_media.modules.transcoding.abr import QualityCatalog, QualityProfile
from lesson_media.modules.transcoding.errors import InvalidQualityProfileError, UnreadableMediaError
from lesson_media.modules.transcoding.probe import SourceMetadata
from lesson_media.modules.transcoding.schemas import RenditionDescriptor

NATIVE_TIER_NAME = "native"
MIN_NATIVE_BITRATE_KBPS = 200


@dataclass
class RenditionJob:
    """One planned encode."""
    profile: QualityProfile
    output_path: str

    @property
    def tier_name(self) -> str:
        return self.profile.tier_name

    @property
    def filename(self) -> str:
        return os.path.basename(self.output_path)

    def to_descriptor(self) -> RenditionDescriptor:
        return RenditionDescriptor(
            tier_name=self.profile.tier_name,
            width=self.profile.width,
            height=self.profile.height,
            video_bitrate_kbps=self.profile.video_bitrate_kbps,
            audio_bitrate_kbps=self.profile.audio_bitrate_kbps,
            fps=self.profile.fps,
            output_path=self.output_path,
        )


def _round_down_even(value: int) -> int:
    return value - (value % 2)


def synthesize_native_profile(metadata: SourceMetadata, catalog: QualityCatalog) -> QualityProfile:
    """Build a tier at the source's own resolution.

    Used when the source is smaller than every catalog tier. The video
    bitrate is the lowest tier's scaled by pixel ratio, capped by the
    source bitrate when known and floored at MIN_NATIVE_BITRATE_KBPS.

    Args:
        metadata: Probed source metadata
        catalog: Catalog whose lowest tier anchors bitrate and fps

    Returns:
        QualityProfile named "native"

    Raises:
        UnreadableMediaError: If the source is under 2 pixels in either dimension
    """
    lowest = catalog.lowest
    width = _round_down_even(metadata.width)
    height = _round_down_even(metadata.height)
    if width < 2 or height < 2:
        raise UnreadableMediaError(
            f"Source {metadata.width}x{metadata.height} is too small to encode"
        )

    scaled = round(lowest.video_bitrate_kbps * (width * height) / lowest.pixels)
    source_kbps = metadata.bitrate_kbps
    if source_kbps:
        scaled = min(scaled, source_kbps)
    video_kbps = max(MIN_NATIVE_BITRATE_KBPS, scaled)

    source_fps = round(metadata.fps) if metadata.fps > 0 else 0
    fps = min(source_fps, lowest.fps) if source_fps > 0 else lowest.fps

    return QualityProfile(
        tier_name=NATIVE_TIER_NAME,
        width=width,
        height=height,
        video_bitrate_kbps=video_kbps,
        audio_bitrate_kbps=lowest.audio_bitrate_kbps,
        fps=fps,
    )


def rendition_output_path(output_dir: str, profile: QualityProfile) -> str:
    """Rendition file for a tier, always a direct child of output_dir.

    Raises:
        InvalidQualityProfileError: If the tier name would resolve elsewhere
    """
    path = os.path.join(output_dir, f"{profile.tier_name}.mp4")
    if os.path.dirname(os.path.abspath(path)) != os.path.abspath(output_dir):
        raise InvalidQualityProfileError(
            f"Tier {profile.tier_name!r} resolves outside {output_dir}"
        )
    return path


def plan_renditions(
    metadata: SourceMetadata,
    catalog: QualityCatalog,
    output_dir: str,
) -> list[RenditionJob]:
    """Plan the renditions for a source.

    Args:
        metadata: Probed source metadata
        catalog: Quality tiers, highest first
        output_dir: The asset's private output directory

    Returns:
        Ordered list of RenditionJob, highest quality first; never empty
    """
    selected = [
        profile for profile in catalog
        if profile.fits_within(metadata.width, metadata.height)
    ]
    if not selected:
        selected = [synthesize_native_profile(metadata, catalog)]

    return [
        RenditionJob(profile=profile, output_path=rendition_output_path(output_dir, profile))
        for profile in selected
    ]
