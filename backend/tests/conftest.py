"""Shared fixtures: a throwaway SQLite database and fake FFmpeg tooling."""

import os
from typing import Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lesson_media.core.database import Base
from lesson_media.modules.asset.models import MediaAsset
from lesson_media.modules.asset.repository import MediaAssetRepository
from lesson_media.modules.transcoding.ffmpeg import CancellationToken, FFmpegResult
from lesson_media.modules.transcoding.probe import SourceMetadata


class FakeFFmpegRunner:
    """Stands in for run_ffmpeg.

    Writes the command line, minus the output path, into the output file
    (always the last argument), so two outputs differ exactly when their
    instruction sets differ.
    """

    def __init__(self):
        self.commands: list[list[str]] = []
        self.fail_outputs: set[str] = set()
        self.on_call: Optional[Callable] = None

    def fail_on(self, filename: str) -> "FakeFFmpegRunner":
        self.fail_outputs.add(filename)
        return self

    def commands_for(self, filename: str) -> list[list[str]]:
        return [cmd for cmd in self.commands if os.path.basename(cmd[-1]) == filename]

    async def __call__(
        self,
        cmd: list[str],
        *,
        duration: float = 0.0,
        timeout: float = 0.0,
        progress_callback=None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FFmpegResult:
        self.commands.append(list(cmd))
        output_path = cmd[-1]

        if self.on_call is not None:
            result = await self.on_call(cmd, cancel_token)
            if result is not None:
                return result

        if cancel_token is not None and cancel_token.is_cancelled:
            return FFmpegResult(returncode=None, cancelled=True, error_message="cancelled")

        if os.path.basename(output_path) in self.fail_outputs:
            return FFmpegResult(returncode=1, error_message="exited with code 1: simulated failure")

        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(" ".join(cmd[:-1]))

        if progress_callback is not None:
            await progress_callback(50.0)
            await progress_callback(100.0)
        return FFmpegResult(returncode=0)


class FakeProber:
    """Returns fixed metadata for any existing source."""

    def __init__(self, metadata: SourceMetadata):
        self.metadata = metadata
        self.calls: list[str] = []

    async def probe(self, source_path: str) -> SourceMetadata:
        self.calls.append(source_path)
        return self.metadata


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "media.sqlite3"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


@pytest.fixture
def source_file(tmp_path) -> str:
    path = tmp_path / "uploads" / "lesson.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42 fake lesson video bytes")
    return str(path)


@pytest.fixture
def output_dir(tmp_path) -> str:
    return str(tmp_path / "processed" / "asset")


@pytest.fixture
def fake_runner() -> FakeFFmpegRunner:
    return FakeFFmpegRunner()


@pytest.fixture
def make_metadata() -> Callable[..., SourceMetadata]:
    def _make(
        width: int = 1280,
        height: int = 720,
        duration: float = 60.0,
        bitrate: Optional[int] = 3_000_000,
        fps: float = 30.0,
        codec: str = "h264",
    ) -> SourceMetadata:
        return SourceMetadata(
            duration_seconds=duration,
            width=width,
            height=height,
            bitrate=bitrate,
            fps=fps,
            codec=codec,
        )

    return _make


@pytest.fixture
def make_prober() -> Callable[[SourceMetadata], FakeProber]:
    return FakeProber


@pytest.fixture
def create_asset(session_maker, source_file, output_dir):
    async def _create(**overrides) -> MediaAsset:
        async with session_maker() as session:
            repo = MediaAssetRepository(session)
            asset = await repo.create(
                source_path=overrides.pop("source_path", source_file),
                output_dir=overrides.pop("output_dir", output_dir),
                mime_type="video/mp4",
            )
            for key, value in overrides.items():
                setattr(asset, key, value)
            await session.commit()
            return asset

    return _create


@pytest.fixture
def load_asset(session_maker):
    async def _load(asset_id) -> MediaAsset:
        async with session_maker() as session:
            return await MediaAssetRepository(session).get_or_raise(asset_id)

    return _load
