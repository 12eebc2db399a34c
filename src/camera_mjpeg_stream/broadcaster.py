"""MJPEG フレームのマルチキャスト配信.

接続中クライアントの集合と最新フレームを保持し、
フレームを multipart パートに包んで全クライアントへ書き込む。
"""

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

from camera_mjpeg_stream.errors import ClientWriteFailure

logger = logging.getLogger(__name__)

BOUNDARY = "mjpegstream"
CONTENT_TYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"
BOUNDARY_DELIMITER = f"\r\n--{BOUNDARY}\r\n".encode()

# レスポンス先頭に一度だけ送る区切り
STREAM_PREAMBLE = BOUNDARY_DELIMITER

# クライアントごとのキュー上限 (超えたら遅いクライアントとして切断)
DEFAULT_QUEUE_SIZE = 30

# sentinel: ストリーム終了を通知
_SENTINEL = b""


def frame_part(frame: bytes) -> bytes:
    """1 フレーム分の multipart パートを返す."""
    header = (
        "Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(frame)}\r\n\r\n"
    ).encode()
    return header + frame + BOUNDARY_DELIMITER


class ClientSink(Protocol):
    """書き込み先. 失敗時は ClientWriteFailure (または OSError) を送出する."""

    def write(self, data: bytes) -> None: ...


class QueueSink:
    """asyncio.Queue で HTTP レスポンスへ渡す書き込み先.

    write() はブロックしない。キューが満杯のクライアントは
    追いつけないとみなして ClientWriteFailure を送出する。
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ClientWriteFailure("sink is closed")
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            self.close()
            raise ClientWriteFailure("client is too slow") from None

    def close(self) -> None:
        """イテレータを終了させる. 何度呼んでもよい."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            # 終了通知の場所を空ける (最も古いパートを捨てる)
            self._queue.get_nowait()
        self._queue.put_nowait(_SENTINEL)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            data = await self._queue.get()
            if data is _SENTINEL:
                return
            yield data


@dataclass(eq=False)
class Client:
    """接続中のクライアント."""

    client_id: int
    sink: ClientSink = field(repr=False)


class Broadcaster:
    """接続中クライアントへのフレーム配信.

    publish() は同期処理で、各クライアントへの書き込みは sink に任せる。
    書き込みに失敗したクライアントは同じ呼び出しの中で取り除く。
    """

    def __init__(self):
        self._clients: dict[int, Client] = {}
        self._ids = itertools.count(1)
        self._last_frame: bytes | None = None
        self._total_clients = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def total_clients(self) -> int:
        """これまでに接続したクライアント数."""
        return self._total_clients

    @property
    def last_frame(self) -> bytes | None:
        return self._last_frame

    @property
    def has_last_frame(self) -> bool:
        return self._last_frame is not None

    def attach(self, sink: ClientSink) -> Client:
        """クライアントを登録する.

        最新フレームがあれば即座に 1 回だけ書き込む
        (次のキャプチャを待たずに画像を表示できる)。
        """
        client = Client(next(self._ids), sink)
        self._clients[client.client_id] = client
        self._total_clients += 1
        logger.info(
            "Client %d connected (total=%d)", client.client_id, len(self._clients)
        )

        if self._last_frame is not None:
            self._write(client, frame_part(self._last_frame))
        return client

    def detach(self, client: Client) -> None:
        """クライアントを取り除く. 登録済みでなければ何もしない."""
        if self._clients.pop(client.client_id, None) is not None:
            logger.info(
                "Client %d disconnected (remaining=%d)",
                client.client_id,
                len(self._clients),
            )

    def _write(self, client: Client, part: bytes) -> bool:
        try:
            client.sink.write(part)
            return True
        except (ClientWriteFailure, OSError) as e:
            logger.info("Client %d write failed: %s", client.client_id, e)
            self._clients.pop(client.client_id, None)
            return False

    def publish(self, frame: bytes) -> int:
        """フレームを全クライアントへ配信する.

        Returns:
            書き込みに成功したクライアント数
        """
        self._last_frame = frame
        if not self._clients:
            return 0

        part = frame_part(frame)
        # スナップショットに対して反復 (配信中の attach/detach に影響されない)
        clients = list(self._clients.values())
        delivered = sum(1 for client in clients if self._write(client, part))

        dropped = len(clients) - delivered
        if dropped:
            logger.info("Cleaned up %d disconnected clients", dropped)
        return delivered

    def clear_last_frame(self) -> None:
        self._last_frame = None

    def close_all(self) -> None:
        """全クライアントに終了を通知して取り除く."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client.sink, "close", None)
            if close is not None:
                close()
        if clients:
            logger.info("Closed %d clients", len(clients))
