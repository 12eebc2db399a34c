"""ストリーミングエンジンのエラー分類."""

from enum import Enum


class StreamError(Exception):
    """ストリーミングエンジンの基底例外."""


class ProcessSpawnFailure(StreamError):
    """FFmpeg 実行ファイルが見つからない、または起動できない.

    デバイスが見つからない場合 (FailureKind.DEVICE_UNAVAILABLE) とは区別する。
    ツール自体が無いので解像度を下げても意味がない。
    """


class ClientWriteFailure(StreamError):
    """クライアントへの書き込みに失敗した (切断済み、または遅すぎる)."""


class FailureKind(str, Enum):
    """終了したキャプチャ試行の失敗種別."""

    # FFmpeg が入力デバイスを開けなかった
    DEVICE_UNAVAILABLE = "device_unavailable"
    # エラー出力なしで終了した、または proof_timeout 内に出力がなかった
    NO_OUTPUT = "no_output"
    # FFmpeg を起動できなかった
    SPAWN_FAILURE = "spawn_failure"
    # フレームを配信した後にプロセスが終了した
    TRANSIENT_EXIT = "transient_exit"
