"""カメラストリーミング設定.

CameraConfig はキャプチャ試行 1 回分の不変スナップショット。
AppSettings は config.json の読み書きと REST API の入力検証に使う。
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"
CONFIG_PATH_ENV = "MJPEG_CONFIG"


@dataclass(frozen=True)
class CameraConfig:
    """キャプチャ設定スナップショット.

    Attributes:
        device: デバイス指定 (dshow のデバイス名、または v4l2 のデバイス番号)
        width: 画面幅 (px)
        height: 画面高さ (px)
        fps: キャプチャフレームレート
    """

    device: str | int = 0
    width: int = 640
    height: int = 480
    fps: float = 30

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid resolution {self.width}x{self.height}")
        if self.fps <= 0:
            raise ValueError(f"Invalid fps {self.fps}")

    @property
    def resolution(self) -> str:
        """解像度 (例: '1280x720')."""
        return f"{self.width}x{self.height}"

    @property
    def area(self) -> int:
        return self.width * self.height

    def with_resolution(self, width: int, height: int, fps: float) -> "CameraConfig":
        """同じデバイスで解像度とフレームレートだけ差し替えた設定を返す."""
        return CameraConfig(device=self.device, width=width, height=height, fps=fps)


class CameraSettings(BaseModel):
    """config.json の camera セクション."""

    device: str | int = "0"
    width: int = Field(default=640, gt=0)
    height: int = Field(default=480, gt=0)
    fps: float = Field(default=30, gt=0)

    def to_config(self) -> CameraConfig:
        device = self.device
        # "0" のような数字文字列はデバイス番号として扱う
        if isinstance(device, str) and device.isdigit():
            device = int(device)
        return CameraConfig(
            device=device, width=self.width, height=self.height, fps=self.fps
        )


class CameraSettingsUpdate(BaseModel):
    """POST /config の部分更新リクエスト."""

    device: str | int | None = None
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    fps: float | None = Field(default=None, gt=0)


class AppSettings(BaseModel):
    """サーバ全体の設定 (config.json)."""

    host: str = "0.0.0.0"
    port: int = 8080
    ffmpeg_path: str = "ffmpeg"
    autostart: bool = True
    camera: CameraSettings = Field(default_factory=CameraSettings)

    def with_camera_update(self, update: CameraSettingsUpdate) -> "AppSettings":
        """camera セクションに部分更新を適用した新しい設定を返す."""
        changes = update.model_dump(exclude_none=True)
        camera = self.camera.model_copy(update=changes)
        # model_copy は検証しないため、ここで再検証する
        camera = CameraSettings.model_validate(camera.model_dump())
        return self.model_copy(update={"camera": camera})


def config_path_from_env() -> Path:
    """環境変数 MJPEG_CONFIG から設定ファイルのパスを決定する."""
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))


def load_settings(path: Path) -> AppSettings:
    """設定ファイルを読み込む.

    ファイルが存在しない場合はデフォルト設定を書き出して返す。
    壊れている場合はエラーをログに出し、デフォルト設定を使う。
    """
    if not path.exists():
        logger.warning("Config file %s not found, creating default config", path)
        settings = AppSettings()
        save_settings(path, settings)
        return settings

    try:
        settings = AppSettings.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.error("Error loading config %s: %s", path, e)
        logger.info("Using default settings")
        return AppSettings()

    logger.info("Configuration loaded from %s", path)
    return settings


def save_settings(path: Path, settings: AppSettings) -> None:
    """設定ファイルを書き出す.

    Raises:
        OSError: 書き込みに失敗した場合
    """
    path.write_text(
        json.dumps(settings.model_dump(), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    logger.info("Configuration saved to %s", path)
