"""Tests for the Bambu cloud account client."""

from __future__ import annotations

import pytest
import requests
import responses

from bambu_lan.cloud import DEVICE_LIST_FALLBACK, BambuCloudClient
from bambu_lan.config import CloudConfig
from bambu_lan.errors import CloudAPIError

BASE = "https://bambulab.com/api/v1"


@pytest.fixture
def cloud() -> BambuCloudClient:
    return BambuCloudClient(CloudConfig(cookies="token=abc; region=eu", device_id="DEV1"))


class TestCloudClient:
    def test_requires_cookies(self) -> None:
        with pytest.raises(CloudAPIError) as exc_info:
            BambuCloudClient(CloudConfig())
        assert exc_info.value.code == "AUTH_REQUIRED"

    @responses.activate
    def test_profile_sends_cookie_and_client_headers(self, cloud: BambuCloudClient) -> None:
        responses.add(responses.GET, f"{BASE}/user-service/my/profile", json={"uid": 42})

        assert cloud.get_profile() == {"uid": 42}

        headers = responses.calls[0].request.headers
        assert headers["Cookie"] == "token=abc; region=eu"
        assert headers["x-bbl-client-type"] == "web"
        assert headers["x-bbl-client-name"] == "Portal"

    @responses.activate
    def test_list_body_wrapped(self, cloud: BambuCloudClient) -> None:
        responses.add(responses.GET, f"{BASE}/user-service/my/devices", json=[{"dev_id": "X"}])
        assert cloud.list_devices() == {"data": [{"dev_id": "X"}]}

    @responses.activate
    def test_devices_fallback(self, cloud: BambuCloudClient) -> None:
        responses.add(responses.GET, f"{BASE}/user-service/my/devices", status=404)
        assert cloud.list_devices() == DEVICE_LIST_FALLBACK

    @responses.activate
    def test_devices_auth_invalid_propagates(self, cloud: BambuCloudClient) -> None:
        responses.add(responses.GET, f"{BASE}/user-service/my/devices", status=401)
        with pytest.raises(CloudAPIError) as exc_info:
            cloud.list_devices()
        assert exc_info.value.code == "AUTH_INVALID"
        assert exc_info.value.status_code == 401

    @responses.activate
    def test_status_uses_configured_device(self, cloud: BambuCloudClient) -> None:
        responses.add(
            responses.GET, f"{BASE}/device-service/devices/DEV1/status", json={"online": True}
        )
        assert cloud.get_device_status() == {"online": True}

    @responses.activate
    def test_status_fallback_names_device(self, cloud: BambuCloudClient) -> None:
        responses.add(
            responses.GET,
            f"{BASE}/device-service/devices/OTHER/status",
            body=requests.ConnectionError("down"),
        )
        result = cloud.get_device_status("OTHER")
        assert result["available"] is False
        assert result["device_id"] == "OTHER"

    def test_status_needs_device_id(self) -> None:
        client = BambuCloudClient(CloudConfig(cookies="c=1"))
        with pytest.raises(CloudAPIError) as exc_info:
            client.get_device_status()
        assert exc_info.value.code == "INVALID_ARGS"

    @pytest.mark.parametrize("status,code", [(429, "RATE_LIMITED"), (502, "API_ERROR")])
    @responses.activate
    def test_profile_http_errors(self, cloud: BambuCloudClient, status: int, code: str) -> None:
        responses.add(responses.GET, f"{BASE}/user-service/my/profile", status=status)
        with pytest.raises(CloudAPIError) as exc_info:
            cloud.get_profile()
        assert exc_info.value.code == code

    @responses.activate
    def test_profile_timeout(self, cloud: BambuCloudClient) -> None:
        responses.add(
            responses.GET, f"{BASE}/user-service/my/profile", body=requests.Timeout("slow")
        )
        with pytest.raises(CloudAPIError) as exc_info:
            cloud.get_profile()
        assert exc_info.value.code == "TIMEOUT"

    @responses.activate
    def test_profile_invalid_json(self, cloud: BambuCloudClient) -> None:
        responses.add(responses.GET, f"{BASE}/user-service/my/profile", body="<html>")
        with pytest.raises(CloudAPIError) as exc_info:
            cloud.get_profile()
        assert exc_info.value.code == "INVALID_RESPONSE"
