"""ReconnectionPolicy のテスト."""

from camera_mjpeg_stream.config import CameraConfig
from camera_mjpeg_stream.errors import FailureKind
from camera_mjpeg_stream.reconnect import (
    EXHAUSTED,
    FALLBACK_DELAY,
    TRANSIENT_RETRY_DELAY,
    Attempt,
    AttemptFailure,
    ReconnectionPolicy,
    default_ladder,
)

HD = CameraConfig(device="cam", width=1280, height=720, fps=30)
VGA = CameraConfig(device="cam", width=640, height=480, fps=30)
QVGA = CameraConfig(device="cam", width=320, height=240, fps=30)
FULL_HD = CameraConfig(device="cam", width=1920, height=1080, fps=60)


def _fail(config: CameraConfig, kind: FailureKind = FailureKind.DEVICE_UNAVAILABLE):
    return AttemptFailure(config, kind)


class TestDefaultLadder:
    def test_full_hd_uses_all_fallbacks(self):
        ladder = default_ladder(FULL_HD)
        assert [c.resolution for c in ladder] == ["1280x720", "640x480", "320x240"]

    def test_fps_capped_at_30(self):
        assert all(c.fps == 30 for c in default_ladder(FULL_HD))

    def test_fps_keeps_lower_target(self):
        original = CameraConfig(width=1920, height=1080, fps=15)
        assert all(c.fps == 15 for c in default_ladder(original))

    def test_only_smaller_resolutions(self):
        """元の設定以上の解像度はフォールバックに含めない."""
        assert [c.resolution for c in default_ladder(VGA)] == ["320x240"]
        assert default_ladder(QVGA) == []

    def test_keeps_device(self):
        assert all(c.device == "cam" for c in default_ladder(FULL_HD))


class TestNextAttempt:
    def test_720p_failure_proposes_480p(self):
        """720p が出力前に失敗 → 次は 480p."""
        policy = ReconnectionPolicy(HD, ladder=[HD, VGA, QVGA])
        assert policy.next_attempt(_fail(HD)) == Attempt(VGA, FALLBACK_DELAY)

    def test_ladder_in_order_then_exhausted(self):
        """フォールバックは宣言順に提案され、最後が失敗してから EXHAUSTED."""
        policy = ReconnectionPolicy(FULL_HD)
        proposed = []
        failed = FULL_HD
        while True:
            decision = policy.next_attempt(_fail(failed, FailureKind.NO_OUTPUT))
            if decision is EXHAUSTED:
                break
            proposed.append(decision.config.resolution)
            failed = decision.config

        assert proposed == ["1280x720", "640x480", "320x240"]
        assert policy.remaining == 0

    def test_spawn_failure_exhausts_immediately(self):
        policy = ReconnectionPolicy(FULL_HD)
        assert policy.next_attempt(_fail(FULL_HD, FailureKind.SPAWN_FAILURE)) is EXHAUSTED

    def test_transient_exit_retries_original(self):
        """成立後に落ちた場合はフォールバックではなく元の設定で再試行."""
        policy = ReconnectionPolicy(FULL_HD)
        policy.next_attempt(_fail(FULL_HD))
        fallback = policy.next_attempt(_fail(HD))
        assert fallback.config.resolution == "640x480"

        decision = policy.next_attempt(_fail(VGA, FailureKind.TRANSIENT_EXIT))
        assert decision == Attempt(FULL_HD, TRANSIENT_RETRY_DELAY)

        # カーソルはリセットされる
        assert policy.remaining == 3
        assert policy.next_attempt(_fail(FULL_HD)).config.resolution == "1280x720"

    def test_original_without_fallbacks_exhausts(self):
        policy = ReconnectionPolicy(QVGA)
        assert policy.next_attempt(_fail(QVGA)) is EXHAUSTED

    def test_custom_delays(self):
        policy = ReconnectionPolicy(HD, fallback_delay=0, transient_delay=0.5)
        assert policy.next_attempt(_fail(HD)).delay == 0
        assert policy.next_attempt(_fail(VGA, FailureKind.TRANSIENT_EXIT)).delay == 0.5
