"""Thumbnail and preview clip generation.

Both steps are non-critical: failures raise ThumbnailGenerationError or
PreviewGenerationError for the pipeline to log and absorb, and both are
skipped when the source duration is zero or unknown.
"""

import logging
import os
from typing import Optional

from lesson_media.modules.transcoding.abr import QualityProfile
from lesson_media.modules.transcoding.errors import (
    PreviewGenerationError,
    ThumbnailGenerationError,
)
from lesson_media.modules.transcoding.ffmpeg import (
    CancellationToken,
    FFmpegRunner,
    run_ffmpeg,
    scale_pad_filter,
)
from lesson_media.modules.transcoding.planner import RenditionJob
from lesson_media.modules.transcoding.probe import SourceMetadata

logger = logging.getLogger(__name__)

PREVIEW_FILENAME = "preview.mp4"
PREVIEW_FALLBACK_PROFILE = QualityProfile(
    tier_name="preview",
    width=854,
    height=480,
    video_bitrate_kbps=1000,
    audio_bitrate_kbps=128,
    fps=30,
)


def thumbnail_filename(ordinal: int) -> str:
    """Deterministic name for the n-th thumbnail (1-based)."""
    return f"thumb-{ordinal:03d}.jpg"


def thumbnail_timestamps(duration: float, count: int) -> list[float]:
    """Evenly spaced capture times strictly inside the source.

    The i-th of N thumbnails is taken at duration * i / (N + 1).
    """
    if duration <= 0 or count <= 0:
        return []
    return [duration * i / (count + 1) for i in range(1, count + 1)]


def preview_duration(duration: float, max_seconds: float = 30.0) -> float:
    """Preview length: the first max_seconds of the source, or all of it."""
    if duration <= 0:
        return 0.0
    return min(max_seconds, duration)


def _even(value: int) -> int:
    return max(2, value - (value % 2))


def select_preview_profile(
    planned: list[RenditionJob],
    metadata: Optional[SourceMetadata] = None,
) -> QualityProfile:
    """Pick the preview encode profile.

    The lowest planned tier when renditions were planned; otherwise the
    fixed fallback profile, clamped so it never upscales the source.
    """
    if planned:
        return planned[-1].profile

    fallback = PREVIEW_FALLBACK_PROFILE
    if metadata is None or metadata.width <= 0 or metadata.height <= 0:
        return fallback
    if fallback.fits_within(metadata.width, metadata.height):
        return fallback

    scale = min(metadata.width / fallback.width, metadata.height / fallback.height)
    return QualityProfile(
        tier_name=fallback.tier_name,
        width=_even(int(fallback.width * scale)),
        height=_even(int(fallback.height * scale)),
        video_bitrate_kbps=fallback.video_bitrate_kbps,
        audio_bitrate_kbps=fallback.audio_bitrate_kbps,
        fps=fallback.fps,
    )


class ThumbnailGenerator:
    """Extracts still frames and encodes the preview clip."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        width: int = 320,
        height: int = 180,
        preview_max_seconds: float = 30.0,
        timeout: float = 600.0,
        runner: Optional[FFmpegRunner] = None,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.width = width
        self.height = height
        self.preview_max_seconds = preview_max_seconds
        self.timeout = timeout
        self.runner = runner or run_ffmpeg

    def build_thumbnail_command(self, source_path: str, timestamp: float, output_path: str) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-ss", f"{timestamp:.3f}",
            "-i", source_path,
            "-frames:v", "1",
            "-vf", scale_pad_filter(self.width, self.height),
            "-q:v", "2",
            output_path,
        ]

    def build_preview_command(
        self,
        source_path: str,
        output_path: str,
        profile: QualityProfile,
        seconds: float,
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-ss", "0",
            "-i", source_path,
            "-t", f"{seconds:.3f}",
            "-vf", scale_pad_filter(profile.width, profile.height),
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", "28",
            "-maxrate", f"{profile.video_bitrate_kbps}k",
            "-bufsize", f"{profile.video_bitrate_kbps * 2}k",
            "-pix_fmt", "yuv420p",
            "-r", str(profile.fps),
            "-c:a", "aac",
            "-b:a", f"{profile.audio_bitrate_kbps}k",
            "-movflags", "+faststart",
            "-progress", "pipe:1",
            "-nostats",
            "-f", "mp4",
            output_path,
        ]

    async def generate_thumbnails(
        self,
        source_path: str,
        output_dir: str,
        duration: float,
        count: int = 5,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[str]:
        """Generate ``count`` thumbnails spanning the source.

        Returns:
            Thumbnail paths in ordinal order; empty when the step is skipped

        Raises:
            ThumbnailGenerationError: If any frame could not be extracted
        """
        timestamps = thumbnail_timestamps(duration, count)
        if not timestamps:
            logger.info("Skipping thumbnails for %s: duration %.2fs", source_path, duration)
            return []

        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise ThumbnailGenerationError(f"Cannot create thumbnail directory: {e}")

        paths = []
        for ordinal, timestamp in enumerate(timestamps, start=1):
            output_path = os.path.join(output_dir, thumbnail_filename(ordinal))
            cmd = self.build_thumbnail_command(source_path, timestamp, output_path)
            result = await self.runner(cmd, duration=0.0, timeout=self.timeout, cancel_token=cancel_token)
            if not result.success:
                raise ThumbnailGenerationError(
                    f"Thumbnail {ordinal} at {timestamp:.2f}s failed: {result.error_message}"
                )
            if not os.path.isfile(output_path):
                raise ThumbnailGenerationError(f"Thumbnail {ordinal} was not written")
            paths.append(output_path)

        return paths

    async def generate_preview(
        self,
        source_path: str,
        output_dir: str,
        duration: float,
        profile: QualityProfile,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """Encode the preview clip from t=0.

        Returns:
            Preview path, or None when the step is skipped

        Raises:
            PreviewGenerationError: If the encode failed
        """
        seconds = preview_duration(duration, self.preview_max_seconds)
        if seconds <= 0:
            logger.info("Skipping preview for %s: duration %.2fs", source_path, duration)
            return None

        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise PreviewGenerationError(f"Cannot create preview directory: {e}")

        output_path = os.path.join(output_dir, PREVIEW_FILENAME)
        cmd = self.build_preview_command(source_path, output_path, profile, seconds)
        result = await self.runner(cmd, duration=seconds, timeout=self.timeout, cancel_token=cancel_token)
        if not result.success:
            raise PreviewGenerationError(f"Preview encode failed: {result.error_message}")
        if not os.path.isfile(output_path):
            raise PreviewGenerationError("Preview encode produced no output")
        return output_path
