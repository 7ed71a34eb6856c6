"""Adaptive Bitrate (ABR) quality catalog.

One immutable, ordered table of quality tiers is shared by the rendition
planner and the preview profile selection. The manifest never consults it;
playlists are built from renditions actually produced.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Optional, Union

# Tier names become rendition filenames inside the asset directory
TIER_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,31}")
RESERVED_TIER_NAMES = frozenset(("preview", "playlist"))
RESERVED_TIER_PREFIX = "thumb-"


def validate_tier_name(tier_name: str) -> str:
    """Reject tier names that are not safe, unique rendition filenames.

    Raises:
        ValueError: If the name has path characters or collides with a
            thumbnail, preview or playlist filename
    """
    if not TIER_NAME_PATTERN.fullmatch(tier_name or ""):
        raise ValueError(
            f"Invalid tier name {tier_name!r}: use 1-32 letters, digits, '-' or '_'"
        )
    lowered = tier_name.lower()
    if lowered in RESERVED_TIER_NAMES or lowered.startswith(RESERVED_TIER_PREFIX):
        raise ValueError(f"Tier name {tier_name!r} is reserved for another artifact")
    return tier_name


@dataclass(frozen=True)
class QualityProfile:
    """A named resolution + bitrate + fps target."""
    tier_name: str
    width: int
    height: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int
    fps: int

    def __post_init__(self) -> None:
        validate_tier_name(self.tier_name)
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid dimensions for {self.tier_name}: {self.width}x{self.height}")
        if self.video_bitrate_kbps <= 0 or self.audio_bitrate_kbps <= 0:
            raise ValueError(f"Bitrates must be positive for {self.tier_name}")
        if self.fps <= 0:
            raise ValueError(f"fps must be positive for {self.tier_name}")

    @property
    def pixels(self) -> int:
        return self.width * self.height

    @property
    def resolution(self) -> str:
        """Resolution string, e.g. "1280x720"."""
        return f"{self.width}x{self.height}"

    @property
    def bandwidth_bps(self) -> int:
        """Combined video and audio bandwidth in bits per second."""
        return (self.video_bitrate_kbps + self.audio_bitrate_kbps) * 1000

    def fits_within(self, width: int, height: int) -> bool:
        """Check the tier would not upscale a source of the given size."""
        return width >= self.width and height >= self.height


ProfileLike = Union[QualityProfile, Mapping]


def _coerce_profile(value: ProfileLike) -> QualityProfile:
    if isinstance(value, QualityProfile):
        return value
    return QualityProfile(
        tier_name=str(value.get("tier_name") or value.get("name") or ""),
        width=int(value["width"]),
        height=int(value["height"]),
        video_bitrate_kbps=int(value["video_bitrate_kbps"]),
        audio_bitrate_kbps=int(value["audio_bitrate_kbps"]),
        fps=int(value["fps"]),
    )


class QualityCatalog:
    """Immutable catalog of quality tiers ordered highest to lowest.

    Ordering is by pixel count, then video bitrate, both descending, so
    the planner can schedule tiers best-first regardless of input order.
    """

    def __init__(self, profiles: Iterable[ProfileLike]):
        coerced = [_coerce_profile(p) for p in profiles]
        if not coerced:
            raise ValueError("A quality catalog needs at least one tier")

        names = [p.tier_name for p in coerced]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate tier names in catalog: {names}")

        self._profiles: tuple[QualityProfile, ...] = tuple(
            sorted(coerced, key=lambda p: (p.pixels, p.video_bitrate_kbps), reverse=True)
        )

    @property
    def profiles(self) -> tuple[QualityProfile, ...]:
        return self._profiles

    @property
    def highest(self) -> QualityProfile:
        return self._profiles[0]

    @property
    def lowest(self) -> QualityProfile:
        return self._profiles[-1]

    def get(self, tier_name: str) -> Optional[QualityProfile]:
        """Look up a tier by name."""
        for profile in self._profiles:
            if profile.tier_name == tier_name:
                return profile
        return None

    def __iter__(self) -> Iterator[QualityProfile]:
        return iter(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)

    def __repr__(self) -> str:
        return f"<QualityCatalog({', '.join(p.tier_name for p in self._profiles)})>"


DEFAULT_CATALOG = QualityCatalog([
    QualityProfile("1080p", 1920, 1080, video_bitrate_kbps=4000, audio_bitrate_kbps=192, fps=30),
    QualityProfile("720p", 1280, 720, video_bitrate_kbps=2500, audio_bitrate_kbps=128, fps=30),
    QualityProfile("480p", 854, 480, video_bitrate_kbps=1000, audio_bitrate_kbps=96, fps=30),
    QualityProfile("360p", 640, 360, video_bitrate_kbps=600, audio_bitrate_kbps=64, fps=24),
])


def catalog_for(quality_profiles: Optional[Iterable[ProfileLike]]) -> QualityCatalog:
    """Resolve a job's custom profiles into a catalog, or the default one.

    Args:
        quality_profiles: Custom profiles from the job options, if any

    Returns:
        QualityCatalog to plan against
    """
    if not quality_profiles:
        return DEFAULT_CATALOG
    return QualityCatalog(quality_profiles)
