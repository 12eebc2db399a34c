"""JpegFrameExtractor のテスト."""

import random

from conftest import make_frame

from camera_mjpeg_stream.jpeg_extractor import EOI, SOI, JpegFrameExtractor


def _feed_in_chunks(data: bytes, sizes: list[int]) -> list[bytes]:
    ext = JpegFrameExtractor()
    frames = []
    pos = 0
    for size in sizes:
        frames.extend(ext.feed(data[pos : pos + size]))
        pos += size
    frames.extend(ext.feed(data[pos:]))
    return frames


def _sample_stream() -> bytes:
    """ゴミ・壊れたフレーム・分割しにくい 0xFF を含むストリーム."""
    return (
        b"\x00\xff\x01\xff"
        + make_frame(120)
        + b"\xff"
        + make_frame(500, fill=0x33)
        + SOI + b"\x44" * 10 + EOI  # 小さすぎる → 破棄
        + b"\x12\x34\xff"
        + make_frame(150, fill=0x55)
        + make_frame(100, fill=0x66)
        + SOI + b"\x77" * 40  # 未完成
    )


def test_single_frame():
    """完全なフレーム 1 つを push すると 1 つ取り出せる."""
    ext = JpegFrameExtractor()
    frame = make_frame(200)
    assert ext.feed(frame) == [frame]
    assert ext.buffered_bytes == 0
    assert ext.frames_emitted == 1


def test_frame_split_mid_sequence():
    """120 バイトのフレームを 2 つに分割しても、揃った時点で 1 つ出る."""
    ext = JpegFrameExtractor()
    frame = make_frame(120)

    assert ext.feed(frame[:61]) == []
    assert ext.buffered_bytes == 61
    assert ext.feed(frame[61:]) == [frame]


def test_split_inside_markers():
    """SOI / EOI の 2 バイトの間で分割されても抽出できる."""
    frame = make_frame(150)
    assert _feed_in_chunks(frame, [1]) == [frame]
    assert _feed_in_chunks(frame, [len(frame) - 1]) == [frame]


def test_chunk_boundary_independence():
    """どのように分割しても、一括投入と同じフレーム列になる."""
    data = _sample_stream()
    expected = JpegFrameExtractor().feed(data)
    assert len(expected) == 4

    for size in range(1, 64):
        sizes = [size] * (len(data) // size)
        assert _feed_in_chunks(data, sizes) == expected, f"chunk size {size}"

    rng = random.Random(1234)
    for _ in range(50):
        sizes = [rng.randint(1, 200) for _ in range(20)]
        assert _feed_in_chunks(data, sizes) == expected


def test_emitted_frames_satisfy_predicate():
    """出力されるフレームは常に SOI で始まり EOI で終わり、サイズ範囲内."""
    rng = random.Random(99)
    alphabet = [0x00, 0x11, 0xFF, 0xD8, 0xD9]
    data = bytes(rng.choice(alphabet) for _ in range(50_000))

    ext = JpegFrameExtractor(min_frame_bytes=10, max_frame_bytes=400)
    frames = []
    for i in range(0, len(data), 333):
        frames.extend(ext.feed(data[i : i + 333]))

    assert frames
    for frame in frames:
        assert frame[:2] == SOI
        assert frame[-2:] == EOI
        assert 10 <= len(frame) <= 400


def test_too_small_frame_dropped():
    """最小サイズ未満の候補は破棄され、後続のフレームは出る."""
    ext = JpegFrameExtractor()
    small = SOI + b"\x01" * 20 + EOI
    frame = make_frame(300)

    assert ext.feed(small + frame) == [frame]
    assert ext.corrupt_frames == 1


def test_too_large_frame_dropped():
    ext = JpegFrameExtractor(max_frame_bytes=1000)
    assert ext.feed(make_frame(1001)) == []
    assert ext.corrupt_frames == 1


def test_two_start_markers_before_end():
    """EOI の前に SOI が 2 つある場合、最初の SOI から最初の EOI までが候補."""
    ext = JpegFrameExtractor()
    data = SOI + b"\x01" * 50 + SOI + b"\x02" * 100 + EOI

    assert ext.feed(data) == [data]


def test_no_start_marker_clears_buffer():
    """SOI が見つからなければバッファは空になる."""
    ext = JpegFrameExtractor()
    assert ext.feed(b"\x00\x01\x02" * 100) == []
    assert ext.buffered_bytes == 0


def test_trailing_ff_kept():
    """末尾の 0xFF は次チャンクの 0xD8 と組になるので残す."""
    ext = JpegFrameExtractor()
    frame = make_frame(200)

    assert ext.feed(b"\x00\x01" + frame[:1]) == []
    assert ext.buffered_bytes == 1
    assert ext.feed(frame[1:]) == [frame]


def test_partial_frame_retained_from_start():
    """未完成フレームは SOI の位置から保持される."""
    ext = JpegFrameExtractor()
    frame = make_frame(200)

    ext.feed(b"\x00" * 30 + frame[:100])
    assert ext.buffered_bytes == 100


def test_overflow_resets_buffer():
    """SOI の後に 11MB 終端なし → オーバーフロー、バッファは空、フレームなし."""
    ext = JpegFrameExtractor()
    data = SOI + b"\x00" * (11 * 1024 * 1024)

    assert ext.feed(data) == []
    assert ext.buffered_bytes == 0
    assert ext.overflows == 1


def test_buffer_never_exceeds_cap():
    """チャンクごとに投入してもバッファは上限を超えない."""
    cap = 1000
    ext = JpegFrameExtractor(max_buffer_bytes=cap)
    ext.feed(SOI)
    for _ in range(20):
        ext.feed(b"\x00" * 150)
        assert ext.buffered_bytes <= cap

    assert ext.overflows >= 1

    # オーバーフロー後も通常どおり抽出できる
    frame = make_frame(200)
    assert ext.feed(frame) == [frame]


def test_is_valid_frame():
    assert JpegFrameExtractor.is_valid_frame(make_frame(100))
    assert not JpegFrameExtractor.is_valid_frame(make_frame(99))
    assert not JpegFrameExtractor.is_valid_frame(b"\x00" + make_frame(200)[1:])
    assert not JpegFrameExtractor.is_valid_frame(make_frame(200)[:-1] + b"\x00")
    assert JpegFrameExtractor.is_valid_frame(make_frame(50), min_bytes=10)


def test_empty_feed():
    """空データの feed は空リストを返す."""
    assert JpegFrameExtractor().feed(b"") == []


def test_reset():
    ext = JpegFrameExtractor()
    ext.feed(make_frame(200)[:50])
    ext.reset()
    assert ext.buffered_bytes == 0
