"""テスト共通のフェイク.

FFmpeg / Pillow を実際に動かさずに StreamSession を駆動する。
"""

import asyncio

import pytest

from camera_mjpeg_stream.config import CameraConfig
from camera_mjpeg_stream.errors import ProcessSpawnFailure
from camera_mjpeg_stream.jpeg_extractor import EOI, SOI, JpegFrameExtractor


def make_frame(size: int = 200, fill: int = 0x11) -> bytes:
    """テスト用 JPEG フレーム (SOI + payload + EOI, 合計 size バイト)."""
    return SOI + bytes([fill]) * (size - 4) + EOI


class FakeCapture:
    """CaptureProcess の代わり. テストが events に直接イベントを積む."""

    def __init__(self, factory: "FakeCaptureFactory", config: CameraConfig):
        self._factory = factory
        self.config = config
        self.events: asyncio.Queue = asyncio.Queue()
        self.extractor = JpegFrameExtractor()
        self.started = False
        self.stop_calls = 0
        self.kills = 0
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    async def start(self) -> None:
        self.started = True
        if self._factory.spawn_fail:
            raise ProcessSpawnFailure("Cannot launch ffmpeg")
        self._factory.max_active = max(
            self._factory.max_active, self._factory.active_count() + 1
        )
        self._active = True

    async def stop(self) -> None:
        self.stop_calls += 1
        if self._active:
            self.kills += 1
            self._active = False


class FakeCaptureFactory:
    def __init__(self, *, spawn_fail: bool = False):
        self.spawn_fail = spawn_fail
        self.captures: list[FakeCapture] = []
        self.max_active = 0

    def __call__(self, config: CameraConfig) -> FakeCapture:
        capture = FakeCapture(self, config)
        self.captures.append(capture)
        return capture

    def active_count(self) -> int:
        return sum(1 for c in self.captures if c.is_active)

    @property
    def last(self) -> FakeCapture:
        return self.captures[-1]


PLACEHOLDER_FRAME = make_frame(300, fill=0x22)


class FakePlaceholder:
    """PlaceholderSource の代わり. 1 フレームだけ publish して待ち続ける."""

    instances: list["FakePlaceholder"] = []

    def __init__(self, config: CameraConfig):
        self.config = config
        self.cancelled = False
        FakePlaceholder.instances.append(self)

    async def run(self, publish) -> None:
        publish(PLACEHOLDER_FRAME)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


@pytest.fixture
def capture_factory() -> FakeCaptureFactory:
    return FakeCaptureFactory()


@pytest.fixture
def fake_placeholder():
    FakePlaceholder.instances.clear()
    yield FakePlaceholder
    FakePlaceholder.instances.clear()


async def settle(seconds: float = 0.01) -> None:
    """スーパーバイザタスクにイベントを処理させる."""
    await asyncio.sleep(seconds)
