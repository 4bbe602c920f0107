"""Abstract base for print-failure vision backends.

A backend receives one JPEG frame plus a text description of what the
print should look like at its current stage, and returns a
:class:`VisionVerdict`.  The monitor only depends on
:class:`VisionProvider`; which backend is used is decided once, when the
provider is built from :class:`~bambu_lan.config.VisionSettings`.

Backends are asked to answer with exactly one line::

    VERDICT: OK
    VERDICT: FAIL | <brief reason>
"""

from __future__ import annotations

import base64
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import requests

from bambu_lan.errors import ClassificationError

_FAIL_PREFIX = "VERDICT: FAIL"
_OK_PREFIX = "VERDICT: OK"
DEFAULT_FAIL_REASON = "visual failure detected"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class VisionVerdict:
    """Result of classifying one frame."""

    failed: bool
    reason: str
    provider: str = ""
    model: str = ""
    elapsed_ms: int = 0
    raw: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)


def parse_verdict(reply: str) -> tuple[bool, str]:
    """Parse a backend reply into ``(failed, reason)``.

    Only a reply that starts with ``VERDICT: FAIL`` counts as a failure;
    anything else, including an unparseable reply, is treated as OK so a
    confused model cannot stop a print.
    """
    text = reply.strip()
    if text.upper().startswith(_FAIL_PREFIX):
        reason = text[len(_FAIL_PREFIX):].strip().lstrip("|").strip()
        return True, reason or DEFAULT_FAIL_REASON
    if text.upper().startswith(_OK_PREFIX):
        return False, text[len(_OK_PREFIX):].strip().lstrip("|").strip() or "ok"
    return False, text


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class VisionProvider(ABC):
    """Abstract base for frame classification backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Machine-readable backend name, e.g. ``"openai"``."""

    @property
    @abstractmethod
    def model(self) -> str:
        """Model or deployment used for classification."""

    @abstractmethod
    def analyze(self, image: bytes, context: str) -> VisionVerdict:
        """Classify *image* given the stage description in *context*.

        Raises:
            ClassificationError: If the backend cannot produce a verdict.
        """


class HTTPVisionProvider(VisionProvider):
    """Shared plumbing for backends reached over a JSON HTTP API.

    Subclasses build the request body and pull the reply text out of the
    response; this class times the call and maps transport and HTTP
    failures to :class:`ClassificationError`.
    """

    display_name = "Vision API"

    def __init__(self, *, timeout: float = 60.0) -> None:
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    @staticmethod
    def encode_image(image: bytes) -> str:
        return base64.b64encode(image).decode("ascii")

    @abstractmethod
    def _request(self, image_b64: str, context: str) -> tuple[str, Dict[str, Any], Dict[str, str]]:
        """Return ``(url, json_body, extra_headers)`` for one call."""

    @abstractmethod
    def _extract_reply(self, data: Dict[str, Any]) -> str:
        """Return the reply text from a successful response body."""

    def analyze(self, image: bytes, context: str) -> VisionVerdict:
        if not image:
            raise ClassificationError("No image data to analyze", code="EMPTY_IMAGE")
        url, body, headers = self._request(self.encode_image(image), context)

        start = time.monotonic()
        try:
            resp = self._session.post(url, json=body, headers=headers, timeout=self._timeout)
        except requests.Timeout as exc:
            raise ClassificationError(
                f"{self.display_name} request timed out.", code="TIMEOUT", cause=exc
            ) from exc
        except requests.RequestException as exc:
            raise ClassificationError(
                f"Could not connect to {self.display_name}: {exc}",
                code="CONNECTION_ERROR",
                cause=exc,
            ) from exc
        elapsed_ms = int((time.monotonic() - start) * 1000)

        self._handle_http_error(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ClassificationError(
                f"{self.display_name} returned invalid JSON.", code="INVALID_RESPONSE", cause=exc
            ) from exc

        reply = self._extract_reply(data if isinstance(data, dict) else {})
        failed, reason = parse_verdict(reply)
        return VisionVerdict(
            failed=failed,
            reason=reason,
            provider=self.name,
            model=self.model,
            elapsed_ms=elapsed_ms,
            raw=reply,
        )

    def _handle_http_error(self, resp: requests.Response) -> None:
        """Raise a typed exception for non-2xx responses."""
        if resp.ok:
            return
        if resp.status_code in (401, 403):
            raise ClassificationError(
                f"{self.display_name} rejected the API key (HTTP {resp.status_code}).",
                code="AUTH_INVALID",
            )
        if resp.status_code == 429:
            raise ClassificationError(
                f"{self.display_name} rate limit exceeded.  Try again later.",
                code="RATE_LIMITED",
            )
        raise ClassificationError(
            f"{self.display_name} error (HTTP {resp.status_code}): {resp.text[:200]}",
            code="API_ERROR",
        )


def first_text(value: Optional[Any]) -> str:
    """Return *value* stripped if it is a string, else an empty string."""
    return value.strip() if isinstance(value, str) else ""
