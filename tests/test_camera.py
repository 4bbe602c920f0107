"""Tests for camera frame reassembly and single-frame capture."""

from __future__ import annotations

import socket
import struct
from typing import Iterator, List
from unittest import mock

import pytest

from bambu_lan.camera import (
    HEADER_SIZE,
    FrameAssembler,
    build_auth_packet,
    capture_frame,
    save_frame,
)
from bambu_lan.errors import CaptureTimeoutError, StreamError

JPEG_A = b"\xff\xd8" + b"A" * 100 + b"\xff\xd9"
JPEG_B = b"\xff\xd8" + b"B" * 37 + b"\xff\xd9"
NOT_JPEG = b"\x00\x01" + b"C" * 20 + b"\x00\x02"


def _framed(payload: bytes) -> bytes:
    header = len(payload).to_bytes(3, "little") + b"\x00" * (HEADER_SIZE - 3)
    return header + payload


# ---------------------------------------------------------------------------
# Auth packet
# ---------------------------------------------------------------------------


class TestAuthPacket:
    def test_layout(self) -> None:
        packet = build_auth_packet("bblp", "12345678")
        assert len(packet) == 80
        magic, flags, zero1, zero2 = struct.unpack("<IIII", packet[:16])
        assert (magic, flags, zero1, zero2) == (0x40, 0x3000, 0, 0)
        assert packet[16:48].rstrip(b"\x00") == b"bblp"
        assert packet[48:80].rstrip(b"\x00") == b"12345678"


# ---------------------------------------------------------------------------
# Reassembly
# ---------------------------------------------------------------------------


class TestFrameAssembler:
    def test_single_chunk(self) -> None:
        frames = FrameAssembler().feed(_framed(JPEG_A))
        assert [f.payload for f in frames] == [JPEG_A]

    def test_byte_by_byte_gives_same_result(self) -> None:
        stream = _framed(JPEG_A) + _framed(JPEG_B)
        assembler = FrameAssembler()
        frames = []
        for i in range(len(stream)):
            frames.extend(assembler.feed(stream[i:i + 1]))
        assert [f.payload for f in frames] == [JPEG_A, JPEG_B]

    def test_split_inside_header(self) -> None:
        stream = _framed(JPEG_A)
        assembler = FrameAssembler()
        assert assembler.feed(stream[:5]) == []
        assert [f.payload for f in assembler.feed(stream[5:])] == [JPEG_A]

    def test_several_frames_in_one_chunk(self) -> None:
        stream = _framed(JPEG_A) + _framed(JPEG_B) + _framed(JPEG_A)
        frames = FrameAssembler().feed(stream)
        assert [f.payload for f in frames] == [JPEG_A, JPEG_B, JPEG_A]

    def test_invalid_frame_skipped(self) -> None:
        assembler = FrameAssembler()
        frames = assembler.feed(_framed(NOT_JPEG) + _framed(JPEG_B))
        assert [f.payload for f in frames] == [JPEG_B]
        assert assembler.discarded == 1

    def test_too_short_frame_rejected(self) -> None:
        assembler = FrameAssembler()
        assert assembler.feed(_framed(b"\xff\xd8\xff")) == []
        assert assembler.discarded == 1

    def test_truncated_payload_waits(self) -> None:
        stream = _framed(JPEG_A)
        assembler = FrameAssembler()
        assert assembler.feed(stream[:-1]) == []
        assert assembler.discarded == 0


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


@pytest.fixture
def tls_sock() -> Iterator[mock.MagicMock]:
    """Patch the socket and TLS layers; yields the wrapped socket mock."""
    sock = mock.MagicMock()
    ctx = mock.MagicMock()
    ctx.wrap_socket.return_value.__enter__.return_value = sock
    with mock.patch("bambu_lan.camera.socket.create_connection") as create, mock.patch(
        "bambu_lan.camera.ssl.create_default_context", return_value=ctx
    ):
        create.return_value = mock.MagicMock()
        yield sock


def _chunks(data: bytes, size: int) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


class TestCaptureFrame:
    def test_returns_first_valid_frame(self, tls_sock: mock.MagicMock) -> None:
        stream = _framed(NOT_JPEG) + _framed(JPEG_A) + _framed(JPEG_B)
        tls_sock.recv.side_effect = _chunks(stream, 7)

        assert capture_frame("10.0.0.2", "code") == JPEG_A
        tls_sock.sendall.assert_called_once_with(build_auth_packet("bblp", "code"))

    def test_early_close(self, tls_sock: mock.MagicMock) -> None:
        tls_sock.recv.side_effect = [_framed(JPEG_A)[:10], b""]
        with pytest.raises(StreamError, match="closed the stream"):
            capture_frame("10.0.0.2", "code")

    def test_recv_timeout(self, tls_sock: mock.MagicMock) -> None:
        tls_sock.recv.side_effect = socket.timeout("timed out")
        with pytest.raises(CaptureTimeoutError):
            capture_frame("10.0.0.2", "code", timeout=1)

    def test_tls_error(self, tls_sock: mock.MagicMock) -> None:
        tls_sock.sendall.side_effect = ConnectionResetError("reset by peer")
        with pytest.raises(StreamError, match="reset by peer"):
            capture_frame("10.0.0.2", "code")

    def test_connection_refused(self) -> None:
        with mock.patch(
            "bambu_lan.camera.socket.create_connection",
            side_effect=ConnectionRefusedError("refused"),
        ):
            with pytest.raises(StreamError, match="Could not connect"):
                capture_frame("10.0.0.2", "code")


class TestSaveFrame:
    def test_explicit_path(self, tmp_path) -> None:
        target = tmp_path / "sub" / "shot.jpg"
        path = save_frame(JPEG_A, str(target))
        assert path == str(target)
        assert target.read_bytes() == JPEG_A
