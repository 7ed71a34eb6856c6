"""HLS master playlist generation.

The playlist is derived solely from the renditions actually produced, in
processed_versions order. Output is byte-stable for a given rendition set.
"""

import os
from dataclasses import dataclass
from typing import Iterable, Mapping, Union

from lesson_media.modules.transcoding.errors import ManifestWriteError
from lesson_media.modules.transcoding.schemas import RenditionDescriptor

MANIFEST_FILENAME = "playlist.m3u8"
HEADER_LINES = ("#EXTM3U", "#EXT-X-VERSION:3")

RenditionLike = Union[RenditionDescriptor, Mapping]


@dataclass(frozen=True)
class ManifestEntry:
    """One stream-info/filename pair."""
    bandwidth_bps: int
    resolution: str
    filename: str

    def lines(self) -> tuple[str, str]:
        return (
            f"#EXT-X-STREAM-INF:BANDWIDTH={self.bandwidth_bps},RESOLUTION={self.resolution}",
            self.filename,
        )


def _as_descriptor(rendition: RenditionLike) -> RenditionDescriptor:
    if isinstance(rendition, RenditionDescriptor):
        return rendition
    return RenditionDescriptor.model_validate(rendition)


def manifest_entries(renditions: Iterable[RenditionLike]) -> list[ManifestEntry]:
    """Derive manifest entries, preserving input order."""
    entries = []
    for rendition in renditions:
        descriptor = _as_descriptor(rendition)
        entries.append(ManifestEntry(
            bandwidth_bps=(descriptor.video_bitrate_kbps + descriptor.audio_bitrate_kbps) * 1000,
            resolution=f"{descriptor.width}x{descriptor.height}",
            filename=os.path.basename(descriptor.output_path),
        ))
    return entries


def build_master_playlist(renditions: Iterable[RenditionLike]) -> str:
    """Render the master playlist text.

    Raises:
        ManifestWriteError: If there are no renditions
    """
    entries = manifest_entries(renditions)
    if not entries:
        raise ManifestWriteError("Cannot build a playlist without renditions")

    lines = list(HEADER_LINES)
    for entry in entries:
        lines.extend(entry.lines())
    return "\n".join(lines) + "\n"


def write_master_playlist(output_dir: str, renditions: Iterable[RenditionLike]) -> str:
    """Build and persist the master playlist into ``output_dir``.

    Writes to a temporary file and renames it so readers never see a
    truncated playlist.

    Returns:
        Path of the written playlist

    Raises:
        ManifestWriteError: If there are no renditions or the write fails
    """
    content = build_master_playlist(renditions)
    path = os.path.join(output_dir, MANIFEST_FILENAME)
    tmp_path = f"{path}.tmp"
    try:
        os.makedirs(output_dir, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except OSError as e:
        raise ManifestWriteError(f"Cannot write playlist to {path}: {e}")
    return path
