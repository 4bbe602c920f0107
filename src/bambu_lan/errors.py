"""Exception hierarchy for bambu-lan.

Every failure the library raises derives from :class:`PrinterError` so
callers at the dispatch boundary (CLI commands, MCP tools) can catch one
type and translate it into a structured error result.
"""

from __future__ import annotations


class PrinterError(Exception):
    """Base exception for all printer-related errors.

    Carries an optional *cause* so the original transport or library
    exception is still available after translation.
    """

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ConfigError(PrinterError):
    """Raised when configuration is missing or fails type/range validation."""


# ---------------------------------------------------------------------------
# MQTT control channel
# ---------------------------------------------------------------------------


class PrinterConnectionError(PrinterError):
    """Transport or authentication failure on the MQTT session.

    Raised by :meth:`BambuMQTTClient.connect` and used to reject pending
    commands when an established session drops.
    """


class CommandTimeoutError(PrinterError):
    """No correlated response arrived within the command timeout."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(
            f"Command {command!r} timed out after {timeout:g}s waiting for a response"
        )
        self.command = command
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Camera channel
# ---------------------------------------------------------------------------


class CaptureTimeoutError(PrinterError):
    """No valid frame was produced before the capture deadline."""


class StreamError(PrinterError):
    """The camera stream failed (TLS/socket error or early close)."""


# ---------------------------------------------------------------------------
# Vision classification
# ---------------------------------------------------------------------------


class ClassificationError(PrinterError):
    """The failure-classification backend could not produce a verdict."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.code = code


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class UploadError(PrinterError):
    """File upload to the printer's storage failed or was refused."""


class CloudAPIError(PrinterError):
    """Bambu cloud account API request failed."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.code = code
        self.status_code = status_code


class SlicerError(PrinterError):
    """External slicer executable failed or was not found."""


class MakerWorldError(PrinterError):
    """MakerWorld URL parsing or model download failed.

    ``blocked`` is set when the site answered with a Cloudflare challenge
    rather than an HTTP error.
    """

    def __init__(
        self, message: str, *, blocked: bool = False, cause: Exception | None = None
    ) -> None:
        super().__init__(message, cause=cause)
        self.blocked = blocked


class GcodeSafetyError(PrinterError):
    """G-code was refused by the safety validator."""

    def __init__(self, message: str, *, violations: list[str] | None = None) -> None:
        super().__init__(message)
        self.violations = violations or []


class MonitorError(PrinterError):
    """Invalid monitor lifecycle request, e.g. starting one that is running."""
