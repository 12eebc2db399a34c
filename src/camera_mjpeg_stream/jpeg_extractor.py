"""JPEG frame extractor.

FFmpeg の `-f mjpeg` 出力 (JPEG の単純な連結) から
SOI (FF D8) / EOI (FF D9) マーカーでフレームを切り出す。
"""

import logging

logger = logging.getLogger(__name__)

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"

MIN_FRAME_BYTES = 100
MAX_FRAME_BYTES = 5 * 1024 * 1024  # 5MB
MAX_BUFFER_BYTES = 10 * 1024 * 1024  # 10MB


class JpegFrameExtractor:
    """MJPEG バイトストリームから JPEG フレームを抽出する.

    チャンク境界はフレーム境界と一致しない前提。
    未完成のフレーム (SOI のみ到着) は内部バッファに保持され、次回 feed() で確定する。
    同じバイト列はどのように分割して feed() しても同じフレーム列になる。

    SOI の後に EOI より先に別の SOI が現れた場合も、最初の SOI と
    その後最初の EOI の組を候補とする。壊れたデータの一部を読み飛ばすことがあるが、
    検証を通らない候補は破棄されるだけなので問題ない。
    """

    def __init__(
        self,
        *,
        max_buffer_bytes: int = MAX_BUFFER_BYTES,
        min_frame_bytes: int = MIN_FRAME_BYTES,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ):
        self._buf = bytearray()
        self._max = max_buffer_bytes
        self._min_frame = min_frame_bytes
        self._max_frame = max_frame_bytes

        self.frames_emitted = 0
        self.corrupt_frames = 0
        self.overflows = 0

    @property
    def buffered_bytes(self) -> int:
        """バッファに保持しているバイト数."""
        return len(self._buf)

    @staticmethod
    def is_valid_frame(
        frame: bytes,
        *,
        min_bytes: int = MIN_FRAME_BYTES,
        max_bytes: int = MAX_FRAME_BYTES,
    ) -> bool:
        """JPEG フレームとして配信可能かどうか.

        先頭が SOI、末尾が EOI で、サイズが [min_bytes, max_bytes] に収まること。
        """
        if not min_bytes <= len(frame) <= max_bytes:
            return False
        return frame[:2] == SOI and frame[-2:] == EOI

    def feed(self, data: bytes) -> list[bytes]:
        """データを入力し、完成した JPEG フレームのリストを返す.

        Args:
            data: FFmpeg stdout からの raw バイトチャンク

        Returns:
            検証済みフレームのリスト (到着順)
        """
        if data:
            self._buf.extend(data)

        if len(self._buf) > self._max:
            # 終端が来ないまま上限を超えた → 全破棄して同期し直す
            logger.warning(
                "Frame buffer exceeded %d bytes, resetting", self._max
            )
            self._buf.clear()
            self.overflows += 1
            return []

        buf = self._buf
        out: list[bytes] = []
        pos = 0

        while True:
            start = buf.find(SOI, pos)
            if start == -1:
                # SOI が見つからない: 末尾の 0xFF だけは次チャンクの 0xD8 と
                # 組になる可能性があるので残す
                if len(buf) > pos and buf[-1] == 0xFF:
                    del buf[:-1]
                else:
                    buf.clear()
                break

            end = buf.find(EOI, start + 2)
            if end == -1:
                # 未完成フレーム: SOI から先を保持
                del buf[:start]
                break

            frame = bytes(buf[start : end + 2])
            if self.is_valid_frame(
                frame, min_bytes=self._min_frame, max_bytes=self._max_frame
            ):
                out.append(frame)
            else:
                self.corrupt_frames += 1
                logger.debug("Skipping corrupted frame (%d bytes)", len(frame))
            pos = end + 2

        self.frames_emitted += len(out)
        return out

    def reset(self) -> None:
        """バッファを破棄する."""
        self._buf.clear()
