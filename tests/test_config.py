"""Tests for config file loading, env overrides and validation."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from bambu_lan.config import (
    DEFAULT_CLOUD_BASE_URL,
    MonitorConfig,
    PrinterConfig,
    get_config_path,
    load_config,
)
from bambu_lan.errors import ConfigError


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_defaults_without_file(self) -> None:
        cfg = load_config()
        assert cfg.printer.host == ""
        assert cfg.printer.port == 8883
        assert cfg.printer.username == "bblp"
        assert cfg.monitor.interval_seconds == 60
        assert cfg.monitor.fail_strikes == 3
        assert cfg.vision.provider == ""
        assert cfg.cloud.base_url == DEFAULT_CLOUD_BASE_URL

    def test_yaml_file(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.yaml", (
            "printer:\n"
            "  host: 10.0.0.9\n"
            "  access_code: '0042'\n"
            "  serial: ABC\n"
            "monitor:\n"
            "  interval_seconds: 90\n"
            "  snapshot_dir: null\n"
            "vision:\n"
            "  provider: Anthropic\n"
        ))
        cfg = load_config(path)
        assert cfg.printer.host == "10.0.0.9"
        assert cfg.printer.access_code == "0042"
        assert cfg.monitor.interval_seconds == 90.0
        assert cfg.monitor.snapshot_dir is None
        assert cfg.vision.provider == "anthropic"

    def test_env_beats_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path / "c.yaml", "printer:\n  host: 10.0.0.9\n  port: 8883\n")
        monkeypatch.setenv("BAMBU_LAB_MQTT_HOST", "10.0.0.10")
        monkeypatch.setenv("BAMBU_LAB_MQTT_PORT", "1883")
        monkeypatch.setenv("BAMBU_LAN_MONITOR_STRIKES", "5")
        cfg = load_config(path)
        assert cfg.printer.host == "10.0.0.10"
        assert cfg.printer.port == 1883
        assert cfg.monitor.fail_strikes == 5

    def test_env_config_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path / "other.yaml", "printer:\n  serial: XYZ\n")
        monkeypatch.setenv("BAMBU_LAN_CONFIG", str(path))
        assert get_config_path() == path
        assert load_config().printer.serial == "XYZ"

    def test_empty_env_value_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BAMBU_LAB_MQTT_HOST", "")
        assert load_config().printer.host == ""

    def test_unknown_keys_ignored(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.yaml", "printer:\n  host: h\n  colour: red\nextras: 1\n")
        assert load_config(path).printer.host == "h"

    def test_unread_section_warns(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        path = _write(tmp_path / "c.yaml", "printer:\n  host: h\nlogging:\n  level: debug\n")
        with caplog.at_level(logging.WARNING, logger="bambu_lan.config"):
            load_config(path)
        assert "unknown section 'logging'" in caplog.text

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.yaml", "printer: [unclosed\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(path)

    def test_section_must_be_mapping(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.yaml", "printer: 12\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(path)

    def test_bad_port_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BAMBU_LAB_MQTT_PORT", "eighty")
        with pytest.raises(ConfigError, match="port must be an integer"):
            load_config()


class TestPrinterConfig:
    def test_port_range(self) -> None:
        with pytest.raises(ConfigError, match="between 1 and 65535"):
            PrinterConfig(port=70000)

    def test_timeouts_positive(self) -> None:
        with pytest.raises(ConfigError):
            PrinterConfig(command_timeout=0)

    def test_use_tls_from_string(self) -> None:
        assert PrinterConfig(use_tls="off").use_tls is False  # type: ignore[arg-type]

    def test_require_connection_lists_missing(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            PrinterConfig(host="h").require_connection()
        message = str(exc_info.value)
        assert "BAMBU_LAB_MQTT_PASSWORD" in message
        assert "BAMBU_LAB_DEVICE_ID" in message
        assert "BAMBU_LAB_MQTT_HOST" not in message

    def test_to_dict_masks_secrets(self) -> None:
        data = PrinterConfig(host="h", access_code="1234", signing_key="pem").to_dict()
        assert data["access_code"] == "***"
        assert data["signing_key"] == "***"
        assert data["host"] == "h"

    def test_repr_hides_signing_key(self) -> None:
        assert "pem-secret" not in repr(PrinterConfig(signing_key="pem-secret"))


class TestMonitorConfig:
    def test_interval_clamped(self) -> None:
        assert MonitorConfig(interval_seconds=2).interval_seconds == 10.0

    def test_strikes_clamped(self) -> None:
        assert MonitorConfig(fail_strikes=0).fail_strikes == 1

    def test_negative_min_layer(self) -> None:
        with pytest.raises(ConfigError):
            MonitorConfig(min_layer_for_vision=-1)

    def test_round_trip_dict(self) -> None:
        cfg = MonitorConfig(interval_seconds=30, fail_strikes=2, snapshot_dir="/tmp/x")
        assert MonitorConfig.from_dict(cfg.to_dict()) == cfg

    def test_strings_coerced(self) -> None:
        cfg = MonitorConfig.from_dict({"interval_seconds": "45", "fail_strikes": "4"})
        assert cfg.interval_seconds == 45.0
        assert cfg.fail_strikes == 4
