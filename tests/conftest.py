"""Shared fixtures for the bambu-lan test suite.

Every test runs with the configuration environment cleared and the
config file pointed at a path that does not exist, so a developer's
real printer settings never leak into a test.
"""

from __future__ import annotations

import json
import os
from typing import Any, Iterator
from unittest import mock

import pytest

from bambu_lan.config import PrinterConfig
from bambu_lan.protocol.client import BambuMQTTClient

HOST = "192.168.1.100"
ACCESS_CODE = "12345678"
SERIAL = "01P00A000000001"

_ENV_PREFIXES = (
    "BAMBU_LAB_",
    "BAMBU_LAN_",
    "BAMBU_APP_",
    "VISION_",
    "AZURE_OPENAI_",
    "OPENAI_",
    "ANTHROPIC_",
    "MAKERWORLD_",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("BAMBU_LAN_CONFIG", str(tmp_path / "missing-config.yaml"))


@pytest.fixture
def printer_config() -> PrinterConfig:
    return PrinterConfig(
        host=HOST,
        access_code=ACCESS_CODE,
        serial=SERIAL,
        command_timeout=2.0,
        settle_seconds=0,
    )


def _ok_publish() -> mock.MagicMock:
    """A paho ``MQTTMessageInfo`` stand-in for an acknowledged publish."""
    info = mock.MagicMock()
    info.is_published.return_value = True
    return info


@pytest.fixture
def connected_client(printer_config: PrinterConfig) -> Iterator[BambuMQTTClient]:
    """A client whose paho session is a mock and marked connected.

    Payloads are fed to ``_handle_payload`` directly; no consumer thread
    is running.
    """
    client = BambuMQTTClient(printer_config)
    client._client = mock.MagicMock()
    client._client.publish.return_value = _ok_publish()
    client._connected.set()
    yield client
    client._client = None


@pytest.fixture
def responding_client(connected_client: BambuMQTTClient) -> BambuMQTTClient:
    """Like ``connected_client`` but every command is answered with success."""

    def _publish(topic: str, payload: str, qos: int = 0) -> mock.MagicMock:
        body = json.loads(payload)
        family = next(k for k in body if k != "header")
        reply = {family: {**body[family], "result": "success"}}
        connected_client._handle_payload(json.dumps(reply))
        return _ok_publish()

    assert connected_client._client is not None
    connected_client._client.publish.side_effect = _publish
    return connected_client
