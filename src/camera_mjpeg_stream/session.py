"""カメラストリーミングセッション管理.

CaptureProcess からの JPEG フレームを Broadcaster 経由で複数の HTTP クライアントに
マルチキャスト配信する。キャプチャ失敗時は ReconnectionPolicy に従って再試行し、
フォールバックを使い切ったら代替フレームの配信に切り替える。

start() / stop() / restart() は状態遷移を発行するだけで待たない。
プロセスの起動・停止と再接続はスーパーバイザタスクの中で非同期に行う。
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from dataclasses import asdict
from enum import Enum
from typing import Any

from camera_mjpeg_stream.broadcaster import Broadcaster, Client, ClientSink
from camera_mjpeg_stream.capture_process import (
    AttemptProven,
    CaptureProcess,
    FrameReady,
    ProcessExited,
    ReadError,
)
from camera_mjpeg_stream.config import CameraConfig
from camera_mjpeg_stream.errors import FailureKind, ProcessSpawnFailure
from camera_mjpeg_stream.placeholder import PlaceholderSource
from camera_mjpeg_stream.reconnect import (
    EXHAUSTED,
    Attempt,
    AttemptFailure,
    ReconnectionPolicy,
)

logger = logging.getLogger(__name__)

# restart() で stop してから start するまでの待ち時間 (秒)
RESTART_DELAY = 1.0


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


ACTIVE_STATES = frozenset(
    {SessionState.STARTING, SessionState.STREAMING, SessionState.RECONNECTING}
)


class StreamSession:
    """1 台のカメラのストリーミングセッション.

    CaptureProcess → JpegFrameExtractor → Broadcaster → クライアント。
    同時に動く CaptureProcess は常に 1 つまで。

    Usage:
        session = StreamSession(config)
        session.start()
        client = session.connect(QueueSink())
        ...
        session.disconnect(client)
        await session.aclose()
    """

    def __init__(
        self,
        config: CameraConfig,
        *,
        broadcaster: Broadcaster | None = None,
        ffmpeg_path: str = "ffmpeg",
        capture_factory: Callable[[CameraConfig], CaptureProcess] | None = None,
        policy_factory: Callable[[CameraConfig], ReconnectionPolicy] = ReconnectionPolicy,
        placeholder_factory: Callable[[CameraConfig], PlaceholderSource] = PlaceholderSource,
        restart_delay: float = RESTART_DELAY,
    ):
        self._config = config
        self._broadcaster = broadcaster or Broadcaster()
        self._capture_factory = capture_factory or functools.partial(
            CaptureProcess, ffmpeg_path=ffmpeg_path
        )
        self._policy_factory = policy_factory
        self._placeholder_factory = placeholder_factory
        self._restart_delay = restart_delay
        self._created_at = time.monotonic()

        self._state = SessionState.IDLE
        self._supervisor: asyncio.Task | None = None
        self._restart_handle: asyncio.TimerHandle | None = None

        # 現在の試行 (どちらか一方だけが設定される)
        self._capture: CaptureProcess | None = None
        self._placeholder: PlaceholderSource | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> CameraConfig:
        return self._config

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def degraded(self) -> bool:
        """カメラの代わりに代替フレームを配信しているか."""
        return self._placeholder is not None

    @property
    def process_active(self) -> bool:
        return self._capture is not None and self._capture.is_active

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.info("Stream state: %s -> %s", self._state.value, state.value)
            self._state = state

    # ============================================================
    # 制御操作
    # ============================================================

    def start(self) -> SessionState:
        """ストリーミングを開始する.

        既に開始済み (starting/streaming/reconnecting) なら何もしない。

        Returns:
            呼び出し後の状態
        """
        if self._state in ACTIVE_STATES:
            logger.info("Stream is already %s", self._state.value)
            return self._state

        self._cancel_restart()
        logger.info(
            "Starting camera stream: device=%s %s@%sfps",
            self._config.device,
            self._config.resolution,
            self._config.fps,
        )
        # 停止処理中の前回タスクがあれば、新しいタスクはその終了を待ってから起動する
        previous = self._supervisor
        self._set_state(SessionState.STARTING)
        self._supervisor = asyncio.create_task(
            self._supervise(self._config, previous), name="stream-supervisor"
        )
        return self._state

    def stop(self) -> SessionState:
        """ストリーミングを停止する. 停止済みなら何もしない.

        FFmpeg の強制終了、再接続・再起動タイマーの取り消し、
        最新フレームの破棄を行う。プロセス終了は待たない。
        """
        self._cancel_restart()
        if self._state is SessionState.STOPPED:
            return self._state

        logger.info("Stopping camera stream")
        if self._supervisor is not None and not self._supervisor.done():
            self._supervisor.cancel()
        self._broadcaster.clear_last_frame()
        self._set_state(SessionState.STOPPED)
        return self._state

    def restart(self, config: CameraConfig | None = None) -> SessionState:
        """stop() の後、restart_delay 秒後に start() する.

        Args:
            config: 新しい設定 (省略時は現在の設定のまま)
        """
        logger.info("Restarting camera stream")
        self.stop()
        if config is not None:
            self._config = config
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self._restart_delay, self._restart_now)
        return self._state

    def _restart_now(self) -> None:
        self._restart_handle = None
        self.start()

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    async def aclose(self) -> None:
        """停止し、後始末の完了を待ち、全クライアントを切断する."""
        self.stop()
        task = self._supervisor
        if task is not None and not task.done():
            await asyncio.wait({task})
        self._broadcaster.close_all()

    # ============================================================
    # クライアント
    # ============================================================

    def connect(self, sink: ClientSink) -> Client:
        """クライアントを登録する.

        停止中なら配信を開始する (ビューアが来たらカメラを起こす)。
        """
        client = self._broadcaster.attach(sink)
        if self._state in (SessionState.IDLE, SessionState.STOPPED) and (
            self._restart_handle is None
        ):
            self.start()
        return client

    def disconnect(self, client: Client) -> None:
        self._broadcaster.detach(client)

    def status(self) -> dict[str, Any]:
        """状態の問い合わせ."""
        capture = self._capture
        extractor = capture.extractor if capture is not None else None
        return {
            "state": self._state.value,
            "streaming": self._state in ACTIVE_STATES,
            "degraded": self.degraded,
            "connected_clients": self._broadcaster.client_count,
            "total_clients_served": self._broadcaster.total_clients,
            "process_active": self.process_active,
            "has_last_frame": self._broadcaster.has_last_frame,
            "config": asdict(self._config),
            "current_resolution": capture.config.resolution if capture else None,
            "frames_emitted": extractor.frames_emitted if extractor else 0,
            "corrupt_frames": extractor.corrupt_frames if extractor else 0,
            "buffer_overflows": extractor.overflows if extractor else 0,
            "uptime": time.monotonic() - self._created_at,
        }

    # ============================================================
    # スーパーバイザ
    # ============================================================

    async def _supervise(
        self, config: CameraConfig, previous: asyncio.Task | None
    ) -> None:
        """試行 → 失敗 → ポリシーに従い再試行、のループ."""
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        policy = self._policy_factory(config)
        attempt = Attempt(config, 0.0)
        try:
            while True:
                if attempt.delay:
                    await asyncio.sleep(attempt.delay)
                failure = await self._run_attempt(attempt.config)
                decision = policy.next_attempt(failure)
                if decision is EXHAUSTED:
                    break
                self._set_state(SessionState.RECONNECTING)
                attempt = decision
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stream supervisor failed")

        logger.warning("All capture attempts failed, switching to placeholder stream")
        await self._run_placeholder(config)

    async def _run_attempt(self, config: CameraConfig) -> AttemptFailure:
        """CaptureProcess を 1 回起動し、終了するまでイベントを処理する."""
        capture = self._capture_factory(config)
        self._capture = capture
        try:
            try:
                await capture.start()
            except ProcessSpawnFailure as e:
                logger.error("Capture attempt failed: %s", e)
                return AttemptFailure(config, FailureKind.SPAWN_FAILURE)

            while True:
                event = await capture.events.get()
                if isinstance(event, FrameReady):
                    self._broadcaster.publish(event.frame)
                elif isinstance(event, AttemptProven):
                    self._set_state(SessionState.STREAMING)
                elif isinstance(event, ReadError):
                    logger.warning("Capture read error: %s", event.error)
                elif isinstance(event, ProcessExited):
                    return AttemptFailure(config, event.failure)
        finally:
            await capture.stop()
            self._capture = None

    async def _run_placeholder(self, config: CameraConfig) -> None:
        placeholder = self._placeholder_factory(config)
        self._placeholder = placeholder
        self._set_state(SessionState.STREAMING)
        try:
            await placeholder.run(self._broadcaster.publish)
        finally:
            self._placeholder = None
