"""Source media probing via ffprobe."""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional, Union

from lesson_media.modules.transcoding.errors import StorageIOError, UnreadableMediaError

logger = logging.getLogger(__name__)

# Smallest frame that still encodes to even yuv420p dimensions
MIN_SOURCE_DIMENSION = 2


@dataclass
class SourceMetadata:
    """Structural metadata of a source video."""
    duration_seconds: float
    width: int
    height: int
    bitrate: Optional[int]  # bps, None when the container does not report it
    fps: float
    codec: str

    @property
    def bitrate_kbps(self) -> Optional[int]:
        if not self.bitrate:
            return None
        return self.bitrate // 1000


def parse_frame_rate(value: Optional[str]) -> float:
    """Parse an ffprobe rate such as "30000/1001" or "25".

    Returns 0.0 when the rate is missing or malformed.
    """
    if not value:
        return 0.0
    try:
        rate = Fraction(value)
    except (ValueError, ZeroDivisionError):
        return 0.0
    return float(rate) if rate > 0 else 0.0


def _parse_float(value) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result >= 0 else None


def _parse_int(value) -> Optional[int]:
    parsed = _parse_float(value)
    return int(parsed) if parsed else None


def parse_probe_output(raw: Union[str, bytes], source_path: str = "") -> SourceMetadata:
    """Build SourceMetadata from ffprobe JSON output.

    Args:
        raw: ffprobe stdout (-show_format -show_streams -print_format json)
        source_path: Path used in error messages

    Returns:
        Parsed SourceMetadata

    Raises:
        UnreadableMediaError: If the output is not JSON or has no usable video stream
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise UnreadableMediaError(f"Could not parse probe output for {source_path}: {e}")

    if not isinstance(data, dict):
        raise UnreadableMediaError(f"Unexpected probe output for {source_path}")

    streams = data.get("streams") or []
    video = next(
        (
            s for s in streams
            if s.get("codec_type") == "video"
            and not (s.get("disposition") or {}).get("attached_pic")
        ),
        None,
    )
    if video is None:
        raise UnreadableMediaError(f"No decodable video stream in {source_path}")

    width = _parse_int(video.get("width")) or 0
    height = _parse_int(video.get("height")) or 0
    if width < MIN_SOURCE_DIMENSION or height < MIN_SOURCE_DIMENSION:
        raise UnreadableMediaError(
            f"Video stream in {source_path} has no usable dimensions ({width}x{height})"
        )

    fmt = data.get("format") or {}
    duration = _parse_float(fmt.get("duration"))
    if duration is None:
        duration = _parse_float(video.get("duration")) or 0.0

    bitrate = _parse_int(fmt.get("bit_rate")) or _parse_int(video.get("bit_rate"))

    fps = parse_frame_rate(video.get("r_frame_rate"))
    if fps <= 0:
        fps = parse_frame_rate(video.get("avg_frame_rate"))

    return SourceMetadata(
        duration_seconds=duration,
        width=width,
        height=height,
        bitrate=bitrate,
        fps=fps,
        codec=str(video.get("codec_name") or "unknown"),
    )


class MediaProber:
    """Runs ffprobe against a source file with a wall-clock timeout."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def build_command(self, source_path: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            source_path,
        ]

    async def probe(self, source_path: str) -> SourceMetadata:
        """Probe a source file.

        Raises:
            StorageIOError: If the source file does not exist
            UnreadableMediaError: If ffprobe fails or finds no video stream
        """
        if not os.path.isfile(source_path):
            raise StorageIOError(f"Source file not found: {source_path}")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(source_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise UnreadableMediaError(f"Could not start ffprobe: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise UnreadableMediaError(
                f"ffprobe timed out after {self.timeout}s for {source_path}"
            )

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise UnreadableMediaError(
                f"ffprobe exited with code {process.returncode} for {source_path}: {detail}"
            )

        metadata = parse_probe_output(stdout, source_path)
        logger.debug(
            "Probed %s: %sx%s %.2fs %s",
            source_path, metadata.width, metadata.height,
            metadata.duration_seconds, metadata.codec,
        )
        return metadata
