"""キャプチャ失敗時の再接続ポリシー.

一度もフレームを出せなかった試行は「解像度が合わない」とみなし、
フォールバック解像度を上から順に試す。フレームを出した後に落ちた場合は
一時的な障害 (カメラ使用中・抜線) とみなし、元の設定で再試行する。
"""

import logging
from dataclasses import dataclass

from camera_mjpeg_stream.config import CameraConfig
from camera_mjpeg_stream.errors import FailureKind

logger = logging.getLogger(__name__)

# フォールバック解像度 (解像度の降順)
FALLBACK_RESOLUTIONS: tuple[tuple[int, int], ...] = (
    (1280, 720),
    (640, 480),
    (320, 240),
)

# フォールバックの fps 上限
MAX_FALLBACK_FPS = 30

# 次のフォールバック解像度を試すまでの待ち時間 (秒)
FALLBACK_DELAY = 1.0

# 成立済みストリームが落ちた後、元の設定で再試行するまでの待ち時間 (秒)
TRANSIENT_RETRY_DELAY = 3.0


@dataclass(frozen=True)
class AttemptFailure:
    """終了した試行の情報."""

    config: CameraConfig
    kind: FailureKind


@dataclass(frozen=True)
class Attempt:
    """次に試す設定と、それまでの待ち時間."""

    config: CameraConfig
    delay: float


class _Exhausted:
    def __repr__(self) -> str:
        return "EXHAUSTED"


# フォールバックを使い切った
EXHAUSTED = _Exhausted()


def default_ladder(original: CameraConfig) -> list[CameraConfig]:
    """元の設定より小さいフォールバック解像度のリストを返す."""
    fps = min(original.fps, MAX_FALLBACK_FPS)
    return [
        original.with_resolution(w, h, fps)
        for w, h in FALLBACK_RESOLUTIONS
        if w * h < original.area
    ]


class ReconnectionPolicy:
    """次の試行設定を決める.

    Args:
        original: start() / restart() で渡された設定
        ladder: フォールバック設定のリスト (省略時は default_ladder)
    """

    def __init__(
        self,
        original: CameraConfig,
        ladder: list[CameraConfig] | None = None,
        *,
        fallback_delay: float = FALLBACK_DELAY,
        transient_delay: float = TRANSIENT_RETRY_DELAY,
    ):
        self._original = original
        self._ladder = list(ladder) if ladder is not None else default_ladder(original)
        self._fallback_delay = fallback_delay
        self._transient_delay = transient_delay
        self._cursor = 0
        self._failed: set[tuple[int, int]] = set()

    @property
    def remaining(self) -> int:
        """まだ試していないフォールバック数."""
        return len(self._ladder) - self._cursor

    def reset(self) -> None:
        self._cursor = 0
        self._failed.clear()

    def next_attempt(self, failure: AttemptFailure) -> Attempt | _Exhausted:
        """失敗した試行から次の試行を決める."""
        if failure.kind is FailureKind.SPAWN_FAILURE:
            # FFmpeg 自体がない: 解像度を変えても無駄
            logger.error("FFmpeg is not available, giving up on camera capture")
            return EXHAUSTED

        if failure.kind is FailureKind.TRANSIENT_EXIT:
            logger.info(
                "Stream dropped, reconnecting at %s in %.0fs",
                self._original.resolution,
                self._transient_delay,
            )
            self.reset()
            return Attempt(self._original, self._transient_delay)

        self._failed.add((failure.config.width, failure.config.height))
        while self._cursor < len(self._ladder):
            candidate = self._ladder[self._cursor]
            self._cursor += 1
            if (candidate.width, candidate.height) in self._failed:
                continue
            logger.info(
                "Resolution %s failed (%s), trying fallback %s@%sfps",
                failure.config.resolution,
                failure.kind.value,
                candidate.resolution,
                candidate.fps,
            )
            return Attempt(candidate, self._fallback_delay)

        logger.warning("All fallback resolutions failed")
        return EXHAUSTED
