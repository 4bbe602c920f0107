"""File upload to the printer's SD card over implicit FTPS (port 990).

The printer only speaks implicit TLS and insists that data connections
reuse the control connection's TLS session.  Uploads go to
``/sdcard/<remote_name>``; the returned :class:`UploadResult` carries the
remote name that ``start_print_file`` expects.

If the Python transfer fails, ``curl --ftp-ssl-reqd`` is tried once when
it is installed.
"""

from __future__ import annotations

import ftplib
import logging
import os
import shutil
import socket
import ssl
import subprocess
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from bambu_lan.config import PrinterConfig
from bambu_lan.errors import UploadError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS: tuple[str, ...] = (".gcode", ".3mf", ".stl")
_CURL_TIMEOUT = 120


@dataclass
class UploadResult:
    """Outcome of a successful upload."""

    success: bool
    remote_name: str
    message: str
    method: str = "ftps"
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _ImplicitFTPTLS(ftplib.FTP_TLS):
    """FTP_TLS that wraps the control socket in TLS as soon as it connects."""

    def connect(
        self,
        host: str = "",
        port: int = 0,
        timeout: float = -999,
        source_address: Any = None,
    ) -> str:
        if host:
            self.host = host
        if port:
            self.port = port
        if timeout != -999:
            self.timeout = timeout
        if source_address is not None:
            self.source_address = source_address

        self.sock = socket.create_connection(
            (self.host, self.port),
            self.timeout,
            source_address=self.source_address,
        )
        self.af = self.sock.family
        self.sock = self.context.wrap_socket(self.sock, server_hostname=self.host)
        self.file = self.sock.makefile("r", encoding=self.encoding)
        self.welcome = self.getresp()
        return self.welcome

    def ntransfercmd(self, cmd: str, rest: Any = None) -> Any:
        conn, size = ftplib.FTP.ntransfercmd(self, cmd, rest)
        if self._prot_p:  # type: ignore[attr-defined]
            conn = self.context.wrap_socket(
                conn,
                server_hostname=self.host,
                session=self.sock.session,  # type: ignore[union-attr]
            )
        return conn, size


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_local_path(local_path: str) -> str:
    """Return the absolute path, or raise :class:`UploadError`."""
    abs_path = os.path.abspath(os.path.expanduser(local_path))
    ext = os.path.splitext(abs_path)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise UploadError(
            f"File extension {ext!r} not allowed. Allowed: {', '.join(ALLOWED_EXTENSIONS)}"
        )
    if not os.path.isfile(abs_path):
        raise UploadError(f"File not found: {abs_path}")
    return abs_path


def validate_remote_name(remote_name: str) -> str:
    if not remote_name or ".." in remote_name or remote_name.startswith("/"):
        raise UploadError(
            f"Invalid remote path {remote_name!r}: must be a relative name without '..'"
        )
    return remote_name


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


def _ftp_connect(config: PrinterConfig, timeout: float) -> ftplib.FTP_TLS:
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE

    ftp = _ImplicitFTPTLS(context=ctx)
    ftp.connect(config.host, config.ftps_port, timeout=timeout)
    ftp.login(config.username, config.access_code)
    ftp.prot_p()
    return ftp


def _upload_ftplib(config: PrinterConfig, abs_path: str, remote_name: str, timeout: float) -> None:
    ftp = _ftp_connect(config, timeout)
    try:
        with open(abs_path, "rb") as fh:
            ftp.storbinary(f"STOR /sdcard/{remote_name}", fh)
    finally:
        try:
            ftp.quit()
        except (ftplib.Error, OSError, EOFError):
            ftp.close()


def _curl_config(config: PrinterConfig) -> str:
    """Return a ``curl --config`` body carrying the login, kept off argv."""
    credential = f"{config.username}:{config.access_code}"
    credential = credential.replace("\\", "\\\\").replace('"', '\\"')
    return f'user = "{credential}"\n'


def _upload_curl(config: PrinterConfig, abs_path: str, remote_name: str) -> None:
    curl = shutil.which("curl")
    if curl is None:
        raise UploadError("curl is not installed")
    url = f"ftps://{config.host}:{config.ftps_port}/sdcard/{remote_name}"
    try:
        proc = subprocess.run(
            [
                curl,
                "--silent",
                "--show-error",
                "--ftp-ssl-reqd",
                "--insecure",
                "--config",
                "-",
                "-T",
                abs_path,
                url,
            ],
            input=_curl_config(config),
            capture_output=True,
            text=True,
            timeout=_CURL_TIMEOUT,
        )
    except OSError as exc:
        raise UploadError(f"Could not run curl: {exc}", cause=exc) from exc
    if proc.returncode != 0:
        raise UploadError(f"curl FTPS upload failed: {proc.stderr.strip() or proc.returncode}")


def upload_file(
    config: PrinterConfig,
    local_path: str,
    remote_name: Optional[str] = None,
    *,
    timeout: float = 60.0,
) -> UploadResult:
    """Upload *local_path* to the printer's SD card.

    Args:
        config: Printer connection settings (host, access code, FTPS port).
        local_path: File to upload (``.gcode``, ``.3mf`` or ``.stl``).
        remote_name: Name on the SD card; defaults to the local file name.

    Raises:
        UploadError: If validation fails or both transfer methods fail.
    """
    abs_path = validate_local_path(local_path)
    remote_name = validate_remote_name(remote_name or os.path.basename(abs_path))
    size = os.path.getsize(abs_path)

    try:
        _upload_ftplib(config, abs_path, remote_name, timeout)
        method = "ftps"
    except (ftplib.Error, OSError, EOFError) as exc:
        logger.warning("FTPS upload of %s failed (%s); trying curl", remote_name, exc)
        try:
            _upload_curl(config, abs_path, remote_name)
        except subprocess.TimeoutExpired as curl_exc:
            raise UploadError(
                f"FTPS upload failed ({exc}) and curl timed out", cause=curl_exc
            ) from curl_exc
        except UploadError as curl_exc:
            raise UploadError(
                f"FTPS upload failed ({exc}); fallback also failed: {curl_exc}",
                cause=exc,
            ) from exc
        method = "curl"

    logger.info("Uploaded %s (%d bytes) via %s", remote_name, size, method)
    return UploadResult(
        success=True,
        remote_name=remote_name,
        message=f"Uploaded {remote_name} to the printer via {method}.",
        method=method,
        size_bytes=size,
    )
