"""Single-frame capture from the printer's camera stream.

P1 and A1 series printers serve their chamber camera as a stream of JPEG
frames on TLS port 6000 (self-signed certificate).  The client sends one
80-byte authentication block, then the printer streams frames, each
prefixed by a 16-byte header::

    offset 0-2   payload length (little-endian)
    offset 3-15  reserved

Frames are only accepted when the payload starts with the JPEG SOI marker
and ends with the EOI marker; anything else is dropped and the next
header is read.
"""

from __future__ import annotations

import functools
import logging
import os
import socket
import ssl
import struct
import tempfile
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from bambu_lan.config import PrinterConfig
from bambu_lan.errors import CaptureTimeoutError, StreamError

logger = logging.getLogger(__name__)

CAMERA_PORT = 6000
HEADER_SIZE = 16
JPEG_SOI = b"\xff\xd8"
JPEG_EOI = b"\xff\xd9"

# 16-byte header followed by 32-byte username and 32-byte access code.
_AUTH_FORMAT = "<IIII32s32s"
_AUTH_MAGIC = 0x40
_AUTH_FLAGS = 0x3000

_RECV_SIZE = 64 * 1024

FrameSource = Callable[[], bytes]


def build_auth_packet(username: str, access_code: str) -> bytes:
    """Return the 80-byte block that opens a camera session.

    Fields longer than 32 bytes are truncated; shorter ones are
    zero-padded.
    """
    return struct.pack(
        _AUTH_FORMAT,
        _AUTH_MAGIC,
        _AUTH_FLAGS,
        0,
        0,
        username.encode("ascii"),
        access_code.encode("ascii"),
    )


# ---------------------------------------------------------------------------
# Frame reassembly
# ---------------------------------------------------------------------------


@dataclass
class Frame:
    """One complete payload read from the stream."""

    payload: bytes
    declared_length: int

    @property
    def valid(self) -> bool:
        return (
            len(self.payload) >= 4
            and self.payload[:2] == JPEG_SOI
            and self.payload[-2:] == JPEG_EOI
        )


class FrameAssembler:
    """Rebuild frames from arbitrarily chunked stream data.

    :meth:`feed` may be given a partial header, part of a payload,
    several frames at once, or anything in between.  Invalid frames are
    counted in :attr:`discarded` and never returned.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._expected: Optional[int] = None
        self.discarded = 0

    def feed(self, chunk: bytes) -> List[Frame]:
        """Append *chunk* and return every valid frame it completed."""
        self._buffer.extend(chunk)
        frames: List[Frame] = []
        while True:
            if self._expected is None:
                if len(self._buffer) < HEADER_SIZE:
                    break
                self._expected = int.from_bytes(self._buffer[:3], "little")
                del self._buffer[:HEADER_SIZE]
                continue

            if len(self._buffer) < self._expected:
                break
            frame = Frame(bytes(self._buffer[:self._expected]), self._expected)
            del self._buffer[:self._expected]
            self._expected = None

            if frame.valid:
                frames.append(frame)
            else:
                self.discarded += 1
                logger.debug(
                    "Discarding invalid camera frame (%d bytes, no JPEG markers)",
                    frame.declared_length,
                )
        return frames


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


def capture_frame(
    host: str,
    access_code: str,
    *,
    port: int = CAMERA_PORT,
    timeout: float = 10.0,
    username: str = "bblp",
) -> bytes:
    """Connect to the camera, return the first valid JPEG and disconnect.

    Raises:
        CaptureTimeoutError: If no valid frame arrives within *timeout*
            seconds.
        StreamError: On TLS or socket failure, or if the printer closes
            the stream first.
    """
    deadline = time.monotonic() + timeout

    tls_context = ssl.create_default_context()
    tls_context.check_hostname = False
    tls_context.verify_mode = ssl.CERT_NONE

    try:
        raw = socket.create_connection((host, port), timeout=timeout)
    except socket.timeout as exc:
        raise CaptureTimeoutError(
            f"Timed out connecting to camera at {host}:{port}", cause=exc
        ) from exc
    except OSError as exc:
        raise StreamError(f"Could not connect to camera at {host}:{port}: {exc}", cause=exc) from exc

    try:
        with tls_context.wrap_socket(raw, server_hostname=host) as sock:
            sock.sendall(build_auth_packet(username, access_code))
            assembler = FrameAssembler()
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sock.settimeout(remaining)
                chunk = sock.recv(_RECV_SIZE)
                if not chunk:
                    raise StreamError(
                        f"Camera at {host}:{port} closed the stream before a complete frame"
                    )
                frames = assembler.feed(chunk)
                if frames:
                    return frames[0].payload
    except socket.timeout as exc:
        raise CaptureTimeoutError(
            f"No camera frame from {host}:{port} within {timeout:g}s", cause=exc
        ) from exc
    except OSError as exc:
        raise StreamError(f"Camera stream error from {host}:{port}: {exc}", cause=exc) from exc
    finally:
        raw.close()

    raise CaptureTimeoutError(f"No camera frame from {host}:{port} within {timeout:g}s")


def make_frame_source(config: PrinterConfig) -> FrameSource:
    """Bind :func:`capture_frame` to a printer's connection settings."""
    return functools.partial(
        capture_frame,
        config.host,
        config.access_code,
        port=config.camera_port,
        timeout=config.camera_timeout,
        username=config.username,
    )


def save_frame(payload: bytes, output_path: Optional[str] = None) -> str:
    """Write a captured JPEG to *output_path* and return the absolute path.

    Without a path the frame goes to ``<tmp>/bambu_lan/snapshot_<time>.jpg``.
    """
    if output_path is None:
        stamp = time.strftime("%Y%m%d-%H%M%S")
        output_path = os.path.join(tempfile.gettempdir(), "bambu_lan", f"snapshot_{stamp}.jpg")
    output_path = os.path.abspath(os.path.expanduser(output_path))
    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    with open(output_path, "wb") as fh:
        fh.write(payload)
    return output_path
