"""Read-only access to the Bambu Lab account API.

Requests are authenticated with browser session cookies
(``BAMBU_LAB_COOKIES``).  The endpoints are undocumented and frequently
unavailable, so nothing here retries; callers get either data or a
:class:`CloudAPIError`, and :meth:`BambuCloudClient.list_devices` /
:meth:`BambuCloudClient.get_device_status` return a fallback message
pointing at the LAN connection instead.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from bambu_lan.config import CloudConfig
from bambu_lan.errors import CloudAPIError

logger = logging.getLogger(__name__)

_CLIENT_HEADERS = {
    "Content-Type": "application/json",
    "x-bbl-client-type": "web",
    "x-bbl-client-name": "Portal",
    "x-bbl-client-version": "00.00.00.01",
}

DEVICE_LIST_FALLBACK: Dict[str, Any] = {
    "available": False,
    "message": "Cloud device list unavailable",
    "suggestion": "Use the LAN connection (MQTT) for local printer access",
}

DEVICE_STATUS_FALLBACK: Dict[str, Any] = {
    "available": False,
    "message": "Cloud status unavailable",
    "suggestion": "Use the LAN connection and request a status push for real-time status",
}


class BambuCloudClient:
    """Cookie-authenticated client for ``bambulab.com/api/v1``.

    Args:
        config: Base URL, cookies and timeout.

    Raises:
        CloudAPIError: If no cookies are configured.
    """

    def __init__(self, config: CloudConfig) -> None:
        if not config.cookies:
            raise CloudAPIError(
                "Cloud API requires the BAMBU_LAB_COOKIES environment variable.",
                code="AUTH_REQUIRED",
            )
        self._config = config
        self._session = requests.Session()
        self._session.headers.update(_CLIENT_HEADERS)
        self._session.headers["Cookie"] = config.cookies

    def _get(self, endpoint: str) -> Dict[str, Any]:
        url = f"{self._config.base_url}{endpoint}"
        try:
            resp = self._session.get(url, timeout=self._config.timeout)
        except requests.Timeout as exc:
            raise CloudAPIError("Cloud API request timed out.", code="TIMEOUT", cause=exc) from exc
        except requests.RequestException as exc:
            raise CloudAPIError(
                f"Could not connect to the cloud API: {exc}", code="CONNECTION_ERROR", cause=exc
            ) from exc

        self._handle_http_error(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise CloudAPIError(
                "Cloud API returned invalid JSON.", code="INVALID_RESPONSE", cause=exc
            ) from exc
        return data if isinstance(data, dict) else {"data": data}

    @staticmethod
    def _handle_http_error(resp: requests.Response) -> None:
        if resp.ok:
            return
        if resp.status_code in (401, 403):
            raise CloudAPIError(
                "Cloud API rejected the session cookies; log in again and refresh BAMBU_LAB_COOKIES.",
                code="AUTH_INVALID",
                status_code=resp.status_code,
            )
        if resp.status_code == 429:
            raise CloudAPIError(
                "Cloud API rate limit exceeded.", code="RATE_LIMITED", status_code=resp.status_code
            )
        raise CloudAPIError(
            f"Cloud API HTTP {resp.status_code}",
            code="API_ERROR",
            status_code=resp.status_code,
        )

    def get_profile(self) -> Dict[str, Any]:
        """Return the logged-in user's profile."""
        return self._get("/user-service/my/profile")

    def list_devices(self) -> Dict[str, Any]:
        """Return bound printers, or :data:`DEVICE_LIST_FALLBACK` when unavailable."""
        try:
            return self._get("/user-service/my/devices")
        except CloudAPIError as exc:
            if exc.code == "AUTH_INVALID":
                raise
            logger.info("Cloud device list unavailable: %s", exc)
            return dict(DEVICE_LIST_FALLBACK)

    def get_device_status(self, device_id: Optional[str] = None) -> Dict[str, Any]:
        """Return cloud-side status for *device_id* or a fallback message."""
        device_id = device_id or self._config.device_id
        if not device_id:
            raise CloudAPIError("device_id is required", code="INVALID_ARGS")
        try:
            return self._get(f"/device-service/devices/{device_id}/status")
        except CloudAPIError as exc:
            if exc.code == "AUTH_INVALID":
                raise
            logger.info("Cloud status for %s unavailable: %s", device_id, exc)
            return dict(DEVICE_STATUS_FALLBACK, device_id=device_id)
