"""カメラが使えないときの代替フレーム生成.

全フォールバック解像度が失敗した後も、クライアントには
正しい MJPEG ストリームを送り続ける。
"""

import asyncio
import io
import logging
import time
from collections.abc import Callable

from PIL import Image, ImageDraw

from camera_mjpeg_stream.config import CameraConfig
from camera_mjpeg_stream.jpeg_extractor import JpegFrameExtractor

logger = logging.getLogger(__name__)

# 代替ストリームの上限フレームレート
MAX_PLACEHOLDER_FPS = 10

BACKGROUND = (40, 40, 40)
FOREGROUND = (230, 230, 230)


def render_placeholder(width: int, height: int, message: str) -> bytes:
    """単色背景にメッセージを描いた JPEG を返す."""
    image = Image.new("RGB", (width, height), BACKGROUND)
    draw = ImageDraw.Draw(image)
    left, top, right, bottom = draw.multiline_textbbox((0, 0), message)
    x = max((width - (right - left)) // 2, 0)
    y = max((height - (bottom - top)) // 2, 0)
    draw.multiline_text((x, y), message, fill=FOREGROUND, align="center")

    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=70)
    return buf.getvalue()


class PlaceholderSource:
    """代替フレームを一定間隔で publish する.

    Usage:
        source = PlaceholderSource(config)
        task = asyncio.create_task(source.run(broadcaster.publish))
        ...
        task.cancel()
    """

    def __init__(self, config: CameraConfig):
        self._config = config
        self._interval = 1.0 / min(config.fps, MAX_PLACEHOLDER_FPS)
        # (時刻文字列, JPEG) 表示内容が変わる 1 秒ごとにだけ描き直す
        self._cached: tuple[str, bytes] | None = None
        self.frames_sent = 0
        self.renders = 0

    @property
    def interval(self) -> float:
        return self._interval

    def make_frame(self, timestamp: str | None = None) -> bytes:
        timestamp = timestamp or time.strftime("%H:%M:%S")
        cached = self._cached
        if cached is not None and cached[0] == timestamp:
            return cached[1]
        frame = render_placeholder(
            self._config.width,
            self._config.height,
            f"Camera not available\n{timestamp}",
        )
        self.renders += 1
        self._cached = (timestamp, frame)
        return frame

    async def run(self, publish: Callable[[bytes], object]) -> None:
        """キャンセルされるまでフレームを publish し続ける.

        描画はスレッドで行い、イベントループを止めない。
        """
        logger.info(
            "Starting placeholder stream (camera not available, %.1ffps)",
            1.0 / self._interval,
        )
        try:
            while True:
                frame = await asyncio.to_thread(self.make_frame)
                if JpegFrameExtractor.is_valid_frame(frame):
                    publish(frame)
                    self.frames_sent += 1
                else:
                    logger.warning("Placeholder frame failed validation (%d bytes)", len(frame))
                await asyncio.sleep(self._interval)
        finally:
            logger.info("Placeholder stream ended (%d frames)", self.frames_sent)
