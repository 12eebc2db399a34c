"""FFmpeg カメラキャプチャ → MJPEG パイプラインソース.

カメラデバイスを FFmpeg でキャプチャし、
MJPEG (JPEG の連結) ストリームを stdout パイプで読み取る。
プロセスの状態はイベントとして events キューに流す。
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from enum import Enum

from camera_mjpeg_stream.config import CameraConfig
from camera_mjpeg_stream.errors import FailureKind, ProcessSpawnFailure
from camera_mjpeg_stream.jpeg_extractor import JpegFrameExtractor

logger = logging.getLogger(__name__)

# FFmpeg stdout 読み取りチャンクサイズ
READ_CHUNK_SIZE = 32 * 1024  # 32KB
STDERR_CHUNK_SIZE = 4 * 1024

# イベントキューが満杯なら stdout の読み取りを止める
EVENT_QUEUE_SIZE = 64

# 最初の出力が届くまでの待ち時間
DEFAULT_PROOF_TIMEOUT = 10.0

# kill 後にプロセス回収を待つ上限
KILL_TIMEOUT = 2.0

# stdout 終了後、stderr の残りを読み切るまで待つ上限
STDERR_DRAIN_TIMEOUT = 1.0


# ============================================================
# stderr 診断メッセージの分類
# ============================================================


class Diagnostic(str, Enum):
    """FFmpeg stderr 行の分類."""

    FATAL = "fatal"  # デバイスが開けない → 即フォールバック
    BENIGN = "benign"  # エンコード進捗・MJPEG デコードノイズ → 無視
    INFO = "info"  # その他 → ログのみ


# 上から順に照合し、最初に一致した分類を採用する
DIAGNOSTIC_PATTERNS: tuple[tuple[Diagnostic, tuple[str, ...]], ...] = (
    (
        Diagnostic.FATAL,
        (
            "Could not open input",
            "No such file or directory",
            "Cannot find a device",
            "Device or resource busy",
            "Input/output error",
        ),
    ),
    (
        Diagnostic.BENIGN,
        (
            "mjpeg_decode_dc",
            "error y=",
            "error x=",
            "EOI missing",
            "error count:",
            "error dc",
            "bad vlc",
            "overread",
            "Found EOI before any SOF",
            "No JPEG data found",
            "Error submitting packet",
            "More than 1000 frames duplicated",
            "frame=",
            "fps=",
            "bitrate=",
            "Metadata:",
            "encoder",
            "Side data:",
            "cpb:",
        ),
    ),
)


def classify_diagnostic(line: str) -> Diagnostic:
    """stderr の 1 行を分類する."""
    for kind, patterns in DIAGNOSTIC_PATTERNS:
        if any(p in line for p in patterns):
            return kind
    return Diagnostic.INFO


# ============================================================
# コマンド構築
# ============================================================


class ResolutionTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class TierTuning:
    """解像度帯ごとの FFmpeg チューニング."""

    quality: int  # -q:v (小さいほど高画質)
    thread_queue_size: int
    rtbufsize: str  # dshow のみ
    tolerate_errors: bool


TIER_TUNING: dict[ResolutionTier, TierTuning] = {
    ResolutionTier.LOW: TierTuning(3, 512, "10M", False),
    ResolutionTier.MEDIUM: TierTuning(4, 1024, "50M", True),
    ResolutionTier.HIGH: TierTuning(6, 1024, "100M", True),
}


def resolution_tier(config: CameraConfig) -> ResolutionTier:
    if config.width >= 1920 or config.height >= 1080:
        return ResolutionTier.HIGH
    if config.width >= 1280 or config.height >= 720:
        return ResolutionTier.MEDIUM
    return ResolutionTier.LOW


def _format_fps(fps: float) -> str:
    return str(int(fps)) if float(fps).is_integer() else str(fps)


def input_format(platform: str = sys.platform) -> str:
    """プラットフォームごとの FFmpeg 入力フォーマット."""
    if platform == "win32":
        return "dshow"
    if platform == "darwin":
        return "avfoundation"
    return "v4l2"


def device_spec(device: str | int, platform: str = sys.platform) -> str:
    """FFmpeg の -i に渡すデバイス指定.

    dshow はデバイス名 ("video=Iriun Webcam")、
    v4l2 はデバイス番号なら /dev/videoN に変換する。
    """
    if platform == "win32":
        return f"video={device}"
    if platform != "darwin" and isinstance(device, int):
        return f"/dev/video{device}"
    return str(device)


def build_command(
    config: CameraConfig,
    *,
    ffmpeg_path: str = "ffmpeg",
    platform: str = sys.platform,
) -> list[str]:
    """FFmpeg コマンドを構築する.

    低解像度帯は高画質・小バッファ、高解像度帯は大きなリングバッファと
    緩いエラー検出を使う。
    """
    tuning = TIER_TUNING[resolution_tier(config)]

    cmd = [ffmpeg_path, "-nostdin", "-f", input_format(platform)]
    cmd += [
        "-video_size", config.resolution,
        "-framerate", _format_fps(config.fps),
        "-thread_queue_size", str(tuning.thread_queue_size),
    ]
    if platform == "win32":
        cmd += ["-rtbufsize", tuning.rtbufsize]
    if tuning.tolerate_errors:
        cmd += ["-err_detect", "ignore_err", "-fflags", "+genpts"]
    cmd += ["-i", device_spec(config.device, platform)]
    cmd += [
        "-f", "mjpeg",
        "-q:v", str(tuning.quality),
        "-huffman", "0",
        "-pix_fmt", "yuvj420p",
        "pipe:1",
    ]
    return cmd


# ============================================================
# イベント
# ============================================================


@dataclass(frozen=True)
class AttemptProven:
    """最初のチャンクが届いた (試行が成立した)."""


@dataclass(frozen=True)
class FrameReady:
    frame: bytes


@dataclass(frozen=True)
class ReadError:
    error: str


@dataclass(frozen=True)
class ProcessExited:
    """プロセス終了. 常に最後のイベント."""

    returncode: int | None
    proven: bool
    failure: FailureKind


CaptureEvent = AttemptProven | FrameReady | ReadError | ProcessExited


# ============================================================
# CaptureProcess
# ============================================================


class CaptureProcess:
    """FFmpeg キャプチャプロセス 1 回分の試行を管理する.

    Usage:
        capture = CaptureProcess(config)
        await capture.start()
        while True:
            event = await capture.events.get()
            if isinstance(event, ProcessExited):
                break
            ...
        await capture.stop()
    """

    def __init__(
        self,
        config: CameraConfig,
        *,
        ffmpeg_path: str = "ffmpeg",
        proof_timeout: float = DEFAULT_PROOF_TIMEOUT,
        queue_size: int = EVENT_QUEUE_SIZE,
    ):
        self._config = config
        self._ffmpeg_path = ffmpeg_path
        self._proof_timeout = proof_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._extractor = JpegFrameExtractor()
        self._pump_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._proven = False
        self._failure: FailureKind | None = None
        self.events: asyncio.Queue[CaptureEvent] = asyncio.Queue(maxsize=queue_size)

    @property
    def config(self) -> CameraConfig:
        return self._config

    @property
    def proven(self) -> bool:
        return self._proven

    @property
    def is_active(self) -> bool:
        """プロセスが生存しているか."""
        return self._process is not None and self._process.returncode is None

    @property
    def extractor(self) -> JpegFrameExtractor:
        return self._extractor

    async def start(self) -> None:
        """FFmpeg プロセスを起動する.

        Raises:
            RuntimeError: 既に起動済みの場合
            ProcessSpawnFailure: FFmpeg を起動できない場合
        """
        if self._process is not None:
            raise RuntimeError("CaptureProcess is already started")

        cmd = build_command(self._config, ffmpeg_path=self._ffmpeg_path)
        logger.info("Starting FFmpeg: %s", " ".join(cmd))

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(
                "FFmpeg could not be launched (%s). Install FFmpeg and add it to PATH.",
                e,
            )
            raise ProcessSpawnFailure(f"Cannot launch {self._ffmpeg_path}: {e}") from e

        logger.info(
            "FFmpeg started (PID=%d, %s@%sfps)",
            self._process.pid,
            self._config.resolution,
            _format_fps(self._config.fps),
        )
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._pump_task = asyncio.create_task(self._pump())

    def _kill(self) -> None:
        if not self.is_active:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            logger.debug("FFmpeg already exited (PID=%d)", self._process.pid)

    def _handle_diagnostic(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        kind = classify_diagnostic(text)
        if kind is Diagnostic.BENIGN:
            return
        if kind is Diagnostic.INFO:
            logger.info("FFmpeg: %s", text)
            return

        logger.error("Camera connection failed: %s", text)
        if not self._proven and self._failure is None:
            self._failure = FailureKind.DEVICE_UNAVAILABLE
            self._kill()

    async def _read_stderr(self) -> None:
        """FFmpeg stderr を分類してログに出力する.

        進捗行は \\r 区切りなので readline() ではなく \\r / \\n の両方で分割する。
        読み取りを止めるとパイプが詰まり FFmpeg が停止するため、最後まで読み切る。
        """
        process = self._process
        if not process or not process.stderr:
            return
        pending = b""
        try:
            while True:
                chunk = await process.stderr.read(STDERR_CHUNK_SIZE)
                if not chunk:
                    break
                *lines, pending = (pending + chunk).replace(b"\r", b"\n").split(b"\n")
                for line in lines:
                    self._handle_diagnostic(line)
                if len(pending) > STDERR_CHUNK_SIZE:
                    self._handle_diagnostic(pending)
                    pending = b""
        except OSError as e:
            logger.warning("FFmpeg stderr reader stopped: %s", e)
        self._handle_diagnostic(pending)

    async def _read_chunk(self) -> bytes:
        read = self._process.stdout.read(READ_CHUNK_SIZE)
        if self._proven:
            return await read
        return await asyncio.wait_for(read, timeout=self._proof_timeout)

    async def _pump(self) -> None:
        """stdout → JPEG 抽出 → events キューへ流し、最後に終了イベントを送る."""
        process = self._process
        try:
            await self._read_loop(process)
        except Exception:
            logger.exception("Capture reader failed (PID=%d)", process.pid)
            self._kill()

        returncode = await process.wait()
        if self._stderr_task is not None:
            await asyncio.wait({self._stderr_task}, timeout=STDERR_DRAIN_TIMEOUT)

        if self._proven:
            failure = FailureKind.TRANSIENT_EXIT
        else:
            failure = self._failure or FailureKind.NO_OUTPUT
        logger.info(
            "FFmpeg process exited with code %s (proven=%s)", returncode, self._proven
        )
        await self.events.put(ProcessExited(returncode, self._proven, failure))

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                chunk = await self._read_chunk()
            except asyncio.TimeoutError:
                logger.warning(
                    "No output from FFmpeg within %.1fs (PID=%d)",
                    self._proof_timeout,
                    process.pid,
                )
                if self._failure is None:
                    self._failure = FailureKind.NO_OUTPUT
                self._kill()
                break
            except OSError as e:
                logger.error("FFmpeg stdout read error: %s", e)
                await self.events.put(ReadError(str(e)))
                self._kill()
                break

            if not chunk:
                logger.info("FFmpeg stdout closed (PID=%d)", process.pid)
                break

            if not self._proven:
                self._proven = True
                logger.info(
                    "Camera stream started successfully at %s", self._config.resolution
                )
                await self.events.put(AttemptProven())

            for frame in self._extractor.feed(chunk):
                await self.events.put(FrameReady(frame))

    async def stop(self) -> None:
        """FFmpeg プロセスを強制終了する. 何度呼んでもよい."""
        process = self._process
        if process is None:
            return

        if self.is_active:
            logger.info("Killing FFmpeg (PID=%d)", process.pid)
        self._kill()

        for task in (self._pump_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("FFmpeg did not exit in %.1fs (PID=%d)", KILL_TIMEOUT, process.pid)

        self._extractor.reset()
        self._pump_task = None
        self._stderr_task = None
