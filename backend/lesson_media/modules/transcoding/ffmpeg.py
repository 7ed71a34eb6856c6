"""FFmpeg transcoding utilities.

Builds rendition commands (scale/pad to the tier, fixed fps, quality
target capped by the tier bitrate, optional watermark) and runs FFmpeg
with progress parsing, a wall-clock timeout and cooperative cancellation.
"""

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from lesson_media.core.metrics import RENDITION_ENCODE_DURATION_SECONDS, RENDITIONS_TOTAL
from lesson_media.modules.transcoding.errors import (
    EncodeCancelledError,
    RenditionEncodeError,
    StorageIOError,
)
from lesson_media.modules.transcoding.planner import RenditionJob
from lesson_media.modules.transcoding.schemas import (
    RenditionDescriptor,
    WatermarkOptions,
    WatermarkPosition,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], Awaitable[None]]
TierProgressCallback = Callable[[str, float], Awaitable[None]]

# Overlay coordinates for image watermarks (main W/H, overlay w/h)
OVERLAY_POSITIONS = {
    WatermarkPosition.TOP_LEFT: "10:10",
    WatermarkPosition.TOP_RIGHT: "W-w-10:10",
    WatermarkPosition.BOTTOM_LEFT: "10:H-h-10",
    WatermarkPosition.BOTTOM_RIGHT: "W-w-10:H-h-10",
    WatermarkPosition.CENTER: "(W-w)/2:(H-h)/2",
}

# drawtext coordinates (frame w/h, text tw/th)
DRAWTEXT_POSITIONS = {
    WatermarkPosition.TOP_LEFT: "x=10:y=10",
    WatermarkPosition.TOP_RIGHT: "x=w-tw-10:y=10",
    WatermarkPosition.BOTTOM_LEFT: "x=10:y=h-th-10",
    WatermarkPosition.BOTTOM_RIGHT: "x=w-tw-10:y=h-th-10",
    WatermarkPosition.CENTER: "x=(w-tw)/2:y=(h-th)/2",
}

WATERMARK_FONT_SIZE = 24
STDERR_TAIL_LINES = 20


class CancellationToken:
    """Cooperative cancellation flag shared by all encodes of one asset."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class FFmpegResult:
    """Outcome of one FFmpeg invocation."""
    returncode: Optional[int]
    timed_out: bool = False
    cancelled: bool = False
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


FFmpegRunner = Callable[..., Awaitable[FFmpegResult]]


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process) -> None:
    """Kill an FFmpeg subprocess if it is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Exited between the returncode check and kill()
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("FFmpeg process %s did not terminate after kill", process.pid)


def parse_progress_line(line: str, duration: float) -> Optional[float]:
    """Parse an ``out_time_ms=`` line from ``-progress`` output.

    FFmpeg reports out_time_ms in microseconds.

    Returns:
        Percentage 0-100, or None if the line carries no usable progress
    """
    if duration <= 0 or not line.startswith("out_time_ms="):
        return None
    try:
        micros = int(line.split("=", 1)[1])
    except (ValueError, IndexError):
        return None
    if micros < 0:
        return None
    return min(100.0, micros / 1_000_000.0 / duration * 100.0)


async def run_ffmpeg(
    cmd: list[str],
    *,
    duration: float = 0.0,
    timeout: float = 3600.0,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> FFmpegResult:
    """Run an FFmpeg command with timeout, cancellation and progress tracking.

    Progress is read from stdout (``-progress pipe:1``); the tail of stderr
    is kept for error messages. The process is killed on timeout, on
    cancellation and on any early exit.

    Args:
        cmd: FFmpeg command as list of arguments
        duration: Expected output duration in seconds, for progress
        timeout: Wall-clock limit in seconds
        progress_callback: Optional async callback receiving 0-100
        cancel_token: Optional token that terminates the process when tripped

    Returns:
        FFmpegResult
    """
    if cancel_token is not None and cancel_token.is_cancelled:
        return FFmpegResult(returncode=None, cancelled=True, error_message="cancelled before start")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return FFmpegResult(returncode=None, error_message=f"could not start ffmpeg: {e}")

    stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
    timed_out = False
    cancelled = False
    last_progress = -1.0

    async def read_progress():
        nonlocal last_progress
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            progress = parse_progress_line(line.decode("utf-8", errors="ignore").strip(), duration)
            if progress is not None and progress > last_progress:
                last_progress = progress
                if progress_callback:
                    await progress_callback(progress)

    async def read_stderr():
        # Drained continuously so a full pipe never blocks ffmpeg
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        logger.warning("FFmpeg exceeded %.0fs limit, killing pid %s", timeout, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def cancel_watcher():
        nonlocal cancelled
        await cancel_token.wait()
        cancelled = True
        try:
            process.kill()
        except ProcessLookupError:
            pass

    watchers = [asyncio.create_task(timeout_killer())]
    if cancel_token is not None:
        watchers.append(asyncio.create_task(cancel_watcher()))

    try:
        await asyncio.gather(read_progress(), read_stderr())
        await process.wait()
    finally:
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
        await cleanup_ffmpeg_process(process)

    if cancelled:
        return FFmpegResult(returncode=process.returncode, cancelled=True, error_message="cancelled")
    if timed_out:
        return FFmpegResult(
            returncode=process.returncode,
            timed_out=True,
            error_message=f"timed out after {timeout:.0f}s",
        )
    if process.returncode != 0:
        detail = " | ".join(stderr_tail) or "no stderr output"
        return FFmpegResult(
            returncode=process.returncode,
            error_message=f"exited with code {process.returncode}: {detail}",
        )
    return FFmpegResult(returncode=0)


def scale_pad_filter(width: int, height: int) -> str:
    """Scale into WxH preserving aspect ratio, then letterbox to exactly WxH."""
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1"
    )


# ffmpeg unescapes a filter twice: once for the graph, once for its options
_OPTION_SPECIAL = "\\':"
_GRAPH_SPECIAL = "\\'[],;"


def _backslash_escape(text: str, special: str) -> str:
    return "".join("\\" + ch if ch in special else ch for ch in text)


def escape_drawtext(text: str) -> str:
    """Escape text for a drawtext value inside a -vf filter chain.

    Args:
        text: Literal watermark text

    Returns:
        Text escaped at option level, then at filtergraph level
    """
    flat = " ".join(text.split())
    return _backslash_escape(_backslash_escape(flat, _OPTION_SPECIAL), _GRAPH_SPECIAL)


def drawtext_filter(watermark: WatermarkOptions) -> str:
    position = DRAWTEXT_POSITIONS[watermark.position]
    return (
        f"drawtext=text={escape_drawtext(watermark.text or '')}:expansion=none:"
        f"fontcolor=white:fontsize={WATERMARK_FONT_SIZE}:"
        f"alpha={watermark.opacity:g}:{position}"
    )


def build_video_filter_args(
    width: int,
    height: int,
    watermark: Optional[WatermarkOptions] = None,
) -> tuple[list[str], list[str]]:
    """Build extra inputs and filter arguments for a rendition.

    Args:
        width: Target width
        height: Target height
        watermark: Optional watermark options

    Returns:
        (extra input args, filter/map args)
    """
    base = scale_pad_filter(width, height)

    if watermark is None or not watermark.is_active:
        return [], ["-vf", base]

    if watermark.image_path:
        position = OVERLAY_POSITIONS[watermark.position]
        graph = (
            f"[0:v]{base}[base];"
            f"[1:v]format=rgba,colorchannelmixer=aa={watermark.opacity:g}[wm];"
            f"[base][wm]overlay={position}[v]"
        )
        return (
            ["-i", watermark.image_path],
            ["-filter_complex", graph, "-map", "[v]", "-map", "0:a?"],
        )

    return [], ["-vf", f"{base},{drawtext_filter(watermark)}"]


def build_rendition_command(
    ffmpeg_path: str,
    source_path: str,
    job: RenditionJob,
    watermark: Optional[WatermarkOptions] = None,
    preset: str = "medium",
    crf: int = 23,
) -> list[str]:
    """Build the FFmpeg command for one rendition.

    The output path is always the last argument.
    """
    profile = job.profile
    extra_inputs, filter_args = build_video_filter_args(profile.width, profile.height, watermark)

    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",  # Overwrite stale output from a previous attempt
        "-i", source_path,
        *extra_inputs,
        *filter_args,
        # Video: quality target capped by the tier bitrate
        "-c:v", "libx264",
        "-preset", preset,
        "-crf", str(crf),
        "-maxrate", f"{profile.video_bitrate_kbps}k",
        "-bufsize", f"{profile.video_bitrate_kbps * 2}k",
        "-profile:v", "high",
        "-level", "4.0",
        "-pix_fmt", "yuv420p",
        "-r", str(profile.fps),
        # Audio
        "-c:a", "aac",
        "-b:a", f"{profile.audio_bitrate_kbps}k",
        # Output
        "-movflags", "+faststart",
        "-progress", "pipe:1",
        "-nostats",
        "-f", "mp4",
        job.output_path,
    ]
    return cmd


def remove_partial_output(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove partial output %s: %s", path, e)


class RenditionTranscoder:
    """Encodes planned renditions, fail-fast.

    The first failing rendition fails the whole set and cancels any encode
    still running. Results always follow the planner's order.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        preset: str = "medium",
        crf: int = 23,
        timeout: float = 3600.0,
        runner: Optional[FFmpegRunner] = None,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.preset = preset
        self.crf = crf
        self.timeout = timeout
        self.runner = runner or run_ffmpeg

    def build_command(
        self,
        source_path: str,
        job: RenditionJob,
        watermark: Optional[WatermarkOptions] = None,
    ) -> list[str]:
        return build_rendition_command(
            self.ffmpeg_path, source_path, job, watermark, self.preset, self.crf
        )

    async def encode(
        self,
        source_path: str,
        job: RenditionJob,
        duration: float = 0.0,
        watermark: Optional[WatermarkOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[TierProgressCallback] = None,
    ) -> RenditionDescriptor:
        """Encode one rendition.

        Raises:
            EncodeCancelledError: If the cancellation token was tripped
            RenditionEncodeError: If FFmpeg failed, timed out or wrote nothing
            StorageIOError: If the output directory cannot be created
        """
        tier = job.tier_name
        try:
            os.makedirs(os.path.dirname(job.output_path) or ".", exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create output directory for {tier}: {e}")

        async def on_progress(percent: float) -> None:
            if progress_callback:
                await progress_callback(tier, percent)

        cmd = self.build_command(source_path, job, watermark)
        logger.info("Encoding %s rendition %s", tier, job.profile.resolution)
        started = time.monotonic()

        result = await self.runner(
            cmd,
            duration=duration,
            timeout=self.timeout,
            progress_callback=on_progress,
            cancel_token=cancel_token,
        )

        if result.cancelled:
            remove_partial_output(job.output_path)
            RENDITIONS_TOTAL.labels(tier=tier, result="cancelled").inc()
            raise EncodeCancelledError(tier)

        if result.timed_out:
            RENDITIONS_TOTAL.labels(tier=tier, result="timeout").inc()
            raise RenditionEncodeError(
                f"{tier} encode timed out after {self.timeout:.0f}s", tier_name=tier
            )

        if not result.success:
            RENDITIONS_TOTAL.labels(tier=tier, result="failed").inc()
            raise RenditionEncodeError(
                f"{tier} encode failed: {result.error_message}", tier_name=tier
            )

        if not os.path.isfile(job.output_path) or os.path.getsize(job.output_path) == 0:
            RENDITIONS_TOTAL.labels(tier=tier, result="failed").inc()
            raise RenditionEncodeError(f"{tier} encode produced no output", tier_name=tier)

        RENDITIONS_TOTAL.labels(tier=tier, result="success").inc()
        RENDITION_ENCODE_DURATION_SECONDS.labels(tier=tier).observe(time.monotonic() - started)
        await on_progress(100.0)
        return job.to_descriptor()

    async def encode_all(
        self,
        source_path: str,
        jobs: list[RenditionJob],
        duration: float = 0.0,
        watermark: Optional[WatermarkOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[TierProgressCallback] = None,
        max_parallel: int = 1,
    ) -> list[RenditionDescriptor]:
        """Encode every planned rendition.

        Args:
            source_path: Source video path
            jobs: Planned renditions, highest quality first
            duration: Source duration for progress
            watermark: Watermark applied identically to every rendition
            cancel_token: Shared cancellation token
            progress_callback: Async callback receiving (tier, percent)
            max_parallel: Upper bound on concurrent encodes

        Returns:
            Descriptors in planner order

        Raises:
            RenditionEncodeError: From the first failed rendition in planner order
        """
        if not jobs:
            return []

        semaphore = asyncio.Semaphore(max(1, max_parallel))

        async def run_one(job: RenditionJob) -> RenditionDescriptor:
            async with semaphore:
                if cancel_token is not None and cancel_token.is_cancelled:
                    raise EncodeCancelledError(job.tier_name)
                return await self.encode(
                    source_path, job, duration, watermark, cancel_token, progress_callback
                )

        tasks = [asyncio.create_task(run_one(job)) for job in jobs]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return [task.result() for task in tasks]
