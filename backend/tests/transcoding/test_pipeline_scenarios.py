"""End-to-end pipeline scenarios against SQLite and a fake FFmpeg.

**Property: Atomic Completion**
An asset either ends COMPLETED with every output published or FAILED
with none; thumbnail and preview failures never fail the asset.
"""

import asyncio
import hashlib
import os
import uuid

import pytest
from pydantic import ValidationError

from lesson_media.modules.asset.models import ProcessingStatus
from lesson_media.modules.asset.repository import MediaAssetRepository
from lesson_media.modules.transcoding.ffmpeg import FFmpegResult
from lesson_media.modules.transcoding.manifest import MANIFEST_FILENAME
from lesson_media.modules.transcoding.pipeline import (
    ENCODE_PROGRESS_SHARE,
    ProgressTracker,
    VideoProcessingPipeline,
)
from lesson_media.modules.transcoding.probe import MediaProber
from lesson_media.modules.transcoding.schemas import (
    ProcessingOptions,
    QualityProfileSchema,
    VideoProcessingJob,
    WatermarkOptions,
)
from lesson_media.modules.transcoding.thumbnails import PREVIEW_FILENAME, thumbnail_filename


def _pipeline(session_maker, runner, prober, **kwargs) -> VideoProcessingPipeline:
    kwargs.setdefault("cancel_poll_interval", 0.01)
    kwargs.setdefault("progress_interval", 0.0)
    return VideoProcessingPipeline.with_runner(session_maker, runner, prober=prober, **kwargs)


def _job(asset, options=None) -> VideoProcessingJob:
    return VideoProcessingJob(
        asset_id=asset.id,
        source_path=asset.source_path,
        output_dir=asset.output_dir,
        options=options or ProcessingOptions(),
    )


def _sha256(path: str) -> str:
    with open(path, "rb") as f:
        return hashlib.sha256(f.read()).hexdigest()


class TestSuccessfulProcessing:
    """Happy-path processing of a 1280x720, 60 second lesson."""

    @pytest.mark.asyncio
    async def test_720p_source_completes_with_all_outputs(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata(1280, 720, 60.0)))

        outcome = await pipeline.process(_job(asset))

        assert outcome.success
        assert outcome.status == ProcessingStatus.COMPLETED

        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert stored.progress == 100.0
        assert stored.processing_completed_at is not None
        assert stored.processing_error is None
        assert (stored.source_width, stored.source_height) == (1280, 720)
        assert stored.duration_seconds == 60.0

        assert [v["tier_name"] for v in stored.processed_versions] == ["720p", "480p", "360p"]
        for version in stored.processed_versions:
            assert os.path.isfile(version["output_path"])

        assert [os.path.basename(p) for p in stored.thumbnail_paths] == [
            thumbnail_filename(i) for i in range(1, 6)
        ]
        assert stored.preview_path == os.path.join(asset.output_dir, PREVIEW_FILENAME)
        preview_cmd = fake_runner.commands_for(PREVIEW_FILENAME)[0]
        assert preview_cmd[preview_cmd.index("-t") + 1] == "30.000"

        assert stored.manifest_path == os.path.join(asset.output_dir, MANIFEST_FILENAME)
        with open(stored.manifest_path, encoding="utf-8") as f:
            manifest = f.read()
        assert manifest.count("#EXT-X-STREAM-INF") == 3
        assert "1080p" not in manifest

    @pytest.mark.asyncio
    async def test_1080p_source_produces_four_renditions(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata(1920, 1080)))

        await pipeline.process(_job(asset))

        stored = await load_asset(asset.id)
        assert [v["tier_name"] for v in stored.processed_versions] == [
            "1080p", "720p", "480p", "360p",
        ]

    @pytest.mark.asyncio
    async def test_small_source_gets_native_rendition(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        metadata = make_metadata(426, 240, bitrate=500_000)
        pipeline = _pipeline(session_maker, fake_runner, make_prober(metadata))

        await pipeline.process(_job(asset))

        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert len(stored.processed_versions) == 1
        native = stored.processed_versions[0]
        assert (native["width"], native["height"]) == (426, 240)

    @pytest.mark.asyncio
    async def test_custom_quality_profiles(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        options = ProcessingOptions(quality_profiles=[
            QualityProfileSchema(
                tier_name="sd", width=640, height=360,
                video_bitrate_kbps=700, audio_bitrate_kbps=96, fps=25,
            ),
            QualityProfileSchema(
                tier_name="hd", width=1280, height=720,
                video_bitrate_kbps=3000, audio_bitrate_kbps=128, fps=30,
            ),
        ])
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata(1280, 720)))

        await pipeline.process(_job(asset, options))

        stored = await load_asset(asset.id)
        assert [v["tier_name"] for v in stored.processed_versions] == ["hd", "sd"]

    @pytest.mark.asyncio
    async def test_adaptive_bitrate_disabled(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        options = ProcessingOptions(adaptive_bitrate=False)
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        await pipeline.process(_job(asset, options))

        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert stored.processed_versions == []
        assert stored.manifest_path is None
        assert stored.preview_path is not None

    @pytest.mark.asyncio
    async def test_zero_duration_skips_thumbnails_and_preview(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata(duration=0.0)))

        await pipeline.process(_job(asset))

        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert stored.thumbnail_paths == []
        assert stored.preview_path is None
        assert len(stored.processed_versions) == 3

    @pytest.mark.asyncio
    async def test_watermark_changes_rendition_output(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober, tmp_path
    ) -> None:
        plain = await create_asset(output_dir=str(tmp_path / "plain"))
        marked = await create_asset(output_dir=str(tmp_path / "marked"))
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))
        watermark = WatermarkOptions(enabled=True, text="Academy")

        await pipeline.process(_job(plain))
        await pipeline.process(_job(marked, ProcessingOptions(watermark=watermark)))

        plain_stored = await load_asset(plain.id)
        marked_stored = await load_asset(marked.id)
        plain_720 = plain_stored.processed_versions[0]["output_path"]
        marked_720 = marked_stored.processed_versions[0]["output_path"]
        assert _sha256(plain_720) != _sha256(marked_720)

        # Preview carries no watermark
        assert _sha256(plain_stored.preview_path) == _sha256(marked_stored.preview_path)


class TestFailureHandling:
    """Failures leave the asset FAILED with nothing published."""

    @pytest.mark.asyncio
    async def test_second_rendition_failure_fails_asset(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        """**Property: Atomic Completion**"""
        asset = await create_asset()
        fake_runner.fail_on("480p.mp4")
        pipeline = _pipeline(
            session_maker, fake_runner, make_prober(make_metadata()), max_parallel_renditions=1
        )

        outcome = await pipeline.process(_job(asset))

        assert not outcome.success
        assert outcome.status == ProcessingStatus.FAILED
        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert "480p" in stored.processing_error
        assert stored.processed_versions == []
        assert stored.thumbnail_paths == []
        assert stored.preview_path is None
        assert stored.manifest_path is None
        assert not os.path.exists(os.path.join(asset.output_dir, MANIFEST_FILENAME))

    @pytest.mark.asyncio
    async def test_unreadable_source_fails_asset(
        self, session_maker, create_asset, load_asset, fake_runner
    ) -> None:
        asset = await create_asset()
        pipeline = _pipeline(session_maker, fake_runner, MediaProber("/nonexistent/ffprobe"))

        outcome = await pipeline.process(_job(asset))

        assert outcome.status == ProcessingStatus.FAILED
        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert stored.processing_error
        assert fake_runner.commands == []

    @pytest.mark.asyncio
    async def test_missing_source_fails_asset(
        self, session_maker, create_asset, load_asset, fake_runner, tmp_path
    ) -> None:
        asset = await create_asset(source_path=str(tmp_path / "gone.mp4"))
        pipeline = _pipeline(session_maker, fake_runner, MediaProber("ffprobe"))

        await pipeline.process(_job(asset))

        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert "not found" in stored.processing_error

    @pytest.mark.asyncio
    async def test_thumbnail_failure_is_absorbed(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        fake_runner.fail_on(thumbnail_filename(3))
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        outcome = await pipeline.process(_job(asset))

        assert outcome.success
        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert stored.thumbnail_paths == []
        assert stored.preview_path is not None

    @pytest.mark.asyncio
    async def test_preview_failure_is_absorbed(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        fake_runner.fail_on(PREVIEW_FILENAME)
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        await pipeline.process(_job(asset))

        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert stored.preview_path is None
        assert len(stored.thumbnail_paths) == 5

    @pytest.mark.parametrize("tier_name", ["../../escaped", "preview", "thumb-001"])
    def test_job_with_unsafe_tier_name_is_rejected(self, tier_name: str) -> None:
        payload = {
            "asset_id": str(uuid.uuid4()),
            "source_path": "/uploads/lesson.mp4",
            "output_dir": "/processed/lesson",
            "options": {"quality_profiles": [{
                "tier_name": tier_name, "width": 640, "height": 360,
                "video_bitrate_kbps": 700, "audio_bitrate_kbps": 96, "fps": 25,
            }]},
        }
        with pytest.raises(ValidationError, match="(?i)tier name"):
            VideoProcessingJob.model_validate(payload)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tier_name", ["../../escaped", "preview"])
    async def test_unvalidated_unsafe_tier_fails_without_writing(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober,
        tier_name,
    ) -> None:
        asset = await create_asset()
        options = ProcessingOptions.model_construct(quality_profiles=[
            QualityProfileSchema.model_construct(
                tier_name=tier_name, width=640, height=360,
                video_bitrate_kbps=700, audio_bitrate_kbps=96, fps=25,
            ),
        ])
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        outcome = await pipeline.process(_job(asset, options))

        assert outcome.status == ProcessingStatus.FAILED
        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert "Invalid quality profiles" in stored.processing_error
        assert fake_runner.commands == []
        escaped = os.path.normpath(os.path.join(asset.output_dir, "../../escaped.mp4"))
        assert not os.path.exists(escaped)
        assert not os.path.exists(os.path.join(asset.output_dir, PREVIEW_FILENAME))


class TestClaimAndCancellation:
    """Duplicate delivery and operator cancellation."""

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_a_noop(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        await pipeline.process(_job(asset), claimed_by="delivery-1")
        commands_after_first = len(fake_runner.commands)
        second = await pipeline.process(_job(asset), claimed_by="delivery-2")

        assert second.skipped
        assert second.status == ProcessingStatus.COMPLETED
        assert len(fake_runner.commands) == commands_after_first
        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert stored.claimed_by == "delivery-1"

    @pytest.mark.asyncio
    async def test_concurrent_claims_process_once(
        self, session_maker, create_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        outcomes = await asyncio.gather(
            pipeline.process(_job(asset)), pipeline.process(_job(asset))
        )

        assert sorted(o.skipped for o in outcomes) == [False, True]
        assert len(fake_runner.commands_for("720p.mp4")) == 1

    @pytest.mark.asyncio
    async def test_unknown_asset_is_skipped(
        self, session_maker, fake_runner, make_metadata, make_prober, source_file, output_dir
    ) -> None:
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))
        job = VideoProcessingJob(asset_id=uuid.uuid4(), source_path=source_file, output_dir=output_dir)

        outcome = await pipeline.process(job)

        assert outcome.skipped
        assert outcome.error_message == "asset not found"

    @pytest.mark.asyncio
    async def test_cancel_during_encode(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()

        async def cancel_mid_encode(cmd, token):
            if not cmd[-1].endswith("720p.mp4"):
                return None
            async with session_maker() as session:
                await MediaAssetRepository(session).request_cancel(asset.id)
                await session.commit()
            await asyncio.wait_for(token.wait(), timeout=5)
            return FFmpegResult(returncode=-9, cancelled=True, error_message="cancelled")

        fake_runner.on_call = cancel_mid_encode
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        outcome = await pipeline.process(_job(asset))

        assert outcome.status == ProcessingStatus.FAILED
        assert outcome.error_message == "cancelled by operator"
        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert stored.processing_error == "cancelled by operator"
        assert stored.processed_versions == []
        assert fake_runner.commands_for("480p.mp4") == []

    @pytest.mark.asyncio
    async def test_cancel_before_claim(
        self, session_maker, create_asset, load_asset, fake_runner, make_metadata, make_prober
    ) -> None:
        asset = await create_asset()
        async with session_maker() as session:
            assert await MediaAssetRepository(session).request_cancel(asset.id)
            await session.commit()
        pipeline = _pipeline(session_maker, fake_runner, make_prober(make_metadata()))

        outcome = await pipeline.process(_job(asset))

        assert outcome.error_message == "cancelled by operator"
        assert fake_runner.commands == []
        stored = await load_asset(asset.id)
        assert stored.processing_status == ProcessingStatus.FAILED


class TestProgressTracker:
    """Best-effort, throttled progress updates."""

    @pytest.mark.asyncio
    async def test_progress_is_scaled_mean(self, session_maker, create_asset, load_asset) -> None:
        asset = await create_asset(processing_status=ProcessingStatus.PROCESSING)
        tracker = ProgressTracker(asset.id, session_maker, ["720p", "480p"], min_interval=0.0)

        assert await tracker.update("720p", 100.0)

        stored = await load_asset(asset.id)
        assert stored.progress == pytest.approx(ENCODE_PROGRESS_SHARE / 2)

    @pytest.mark.asyncio
    async def test_updates_are_throttled(self, session_maker, create_asset) -> None:
        asset = await create_asset(processing_status=ProcessingStatus.PROCESSING)
        tracker = ProgressTracker(asset.id, session_maker, ["720p"], min_interval=3600.0)

        assert await tracker.flush()
        assert not await tracker.update("720p", 50.0)
        assert tracker.overall == pytest.approx(ENCODE_PROGRESS_SHARE / 2)

    @pytest.mark.asyncio
    async def test_progress_never_goes_backwards(self, session_maker, create_asset) -> None:
        asset = await create_asset(processing_status=ProcessingStatus.PROCESSING)
        tracker = ProgressTracker(asset.id, session_maker, ["720p"], min_interval=0.0)

        await tracker.update("720p", 80.0)
        await tracker.update("720p", 40.0)

        assert tracker.tier_progress["720p"] == 80.0
