"""Log rotation and credential scrubbing for bambu-lan.

The printer access code doubles as the MQTT password, the FTPS password
and the camera credential, and cloud requests carry session cookies, so
every handler installed here gets a filter that redacts them.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".bambu_lan", "logs")

_KEY_VALUE = r'(%s["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)'

_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(_KEY_VALUE % name, re.IGNORECASE), r"\1***REDACTED***")
    for name in ("api_key", "api-key", "x-api-key", "token", "password", "access_code", "secret")
] + [
    (re.compile(r"(Authorization:\s*Bearer\s+)(\S+)", re.IGNORECASE), r"\1***REDACTED***"),
    (re.compile(r"(Cookie:\s*)([^\n]+)", re.IGNORECASE), r"\1***REDACTED***"),
    (re.compile(r"(token=)([^;\s]+)", re.IGNORECASE), r"\1***REDACTED***"),
]


class ScrubFilter(logging.Filter):
    """Logging filter that redacts credentials from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = scrub(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: scrub(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    scrub(a) if isinstance(a, str) else a
                    for a in record.args
                )
        return True


def scrub(text: str) -> str:
    """Apply all scrub patterns to *text*."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
    level: Optional[str] = None,
) -> None:
    """Configure a rotating log file with credential scrubbing.

    :param log_dir: Directory for log files.  Reads ``BAMBU_LAN_LOG_DIR``,
        then falls back to ``~/.bambu_lan/logs/``.
    :param max_bytes: Maximum log file size before rotation.
    :param backup_count: Number of rotated files to keep.
    :param level: Log level name.  Reads ``BAMBU_LAN_LOG_LEVEL``, then
        falls back to ``"INFO"``.
    """
    log_dir = log_dir or os.environ.get("BAMBU_LAN_LOG_DIR", _DEFAULT_LOG_DIR)
    level = level or os.environ.get("BAMBU_LAN_LOG_LEVEL", "INFO")

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "bambu_lan.log")
    log_level = getattr(logging, level.upper(), logging.INFO)

    scrub_filter = ScrubFilter()
    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(name)s %(levelname)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(file_handler)

    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(scrub_filter)
