"""Configuration loading for bambu-lan.

Settings live in ``~/.bambu_lan/config.yaml`` and can be overridden by
environment variables.  The loaded values are turned into small
dataclasses which are passed explicitly to the MQTT client, camera
capture, monitor and vision providers; none of those read the
environment themselves.

Precedence (highest first):
    1. Explicit arguments (CLI flags, MCP tool arguments)
    2. Environment variables (``BAMBU_LAB_MQTT_HOST``, etc.)
    3. Config file (``~/.bambu_lan/config.yaml``)
    4. Built-in defaults

Example config file::

    printer:
      host: 192.168.1.50
      access_code: "12345678"
      serial: 01P00A000000001
    monitor:
      interval_seconds: 90
      fail_strikes: 3
    vision:
      provider: anthropic
      anthropic_api_key: sk-ant-...
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from bambu_lan.errors import ConfigError

logger = logging.getLogger(__name__)

_KNOWN_SECTIONS: set[str] = {"printer", "monitor", "vision", "cloud"}

MIN_MONITOR_INTERVAL = 10
DEFAULT_CLOUD_BASE_URL = "https://bambulab.com/api/v1"


def get_config_path() -> Path:
    """Return the config file path (``BAMBU_LAN_CONFIG`` or ``~/.bambu_lan/config.yaml``)."""
    override = os.environ.get("BAMBU_LAN_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".bambu_lan" / "config.yaml"


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` when absent or unreadable."""
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} has invalid YAML: {exc}", cause=exc) from exc
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    for key in sorted(set(data) - _KNOWN_SECTIONS):
        logger.warning(
            "Config file %s contains unknown section %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_KNOWN_SECTIONS)),
        )
    return data


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}", cause=exc) from exc


def _as_float(key: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}", cause=exc) from exc


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off"):
        return False
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section {name!r} must be a mapping")
    return value


def _known(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys that are not fields of *cls* so newer config files still load."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names and v is not None}


def _env_overrides(mapping: List[tuple[str, str]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for env_name, attr_name in mapping:
        env_val = os.environ.get(env_name)
        if env_val not in (None, ""):
            out[attr_name] = env_val
    return out


# ---------------------------------------------------------------------------
# Printer
# ---------------------------------------------------------------------------

_PRINTER_ENV: List[tuple[str, str]] = [
    ("BAMBU_LAB_MQTT_HOST", "host"),
    ("BAMBU_LAB_MQTT_PORT", "port"),
    ("BAMBU_LAB_MQTT_USERNAME", "username"),
    ("BAMBU_LAB_MQTT_PASSWORD", "access_code"),
    ("BAMBU_LAB_DEVICE_ID", "serial"),
    ("BAMBU_APP_PRIVATE_KEY", "signing_key"),
    ("BAMBU_LAB_APP_CERT_ID", "signing_cert_id"),
]


@dataclass
class PrinterConfig:
    """Connection settings for one printer on the LAN.

    :param host: IP address or hostname of the printer.
    :param access_code: LAN access code shown on the printer's screen.
        Used as the MQTT password, FTPS password and camera credential.
    :param serial: Device serial number, used in the MQTT topic names.
    :param port: MQTT broker port on the printer.
    :param connect_timeout: Seconds to wait for the broker to accept the
        login and confirm the report subscription.
    :param command_timeout: Seconds to wait for a correlated response.
    :param settle_seconds: Delay after a ``pushall`` request before the
        cache is read back.
    :param signing_key: Optional PEM private key used to sign commands
        for firmware that requires authorised control.
    """

    host: str = ""
    access_code: str = ""
    serial: str = ""
    port: int = 8883
    username: str = "bblp"
    use_tls: bool = True
    connect_timeout: float = 10.0
    command_timeout: float = 10.0
    settle_seconds: float = 2.0
    camera_port: int = 6000
    camera_timeout: float = 10.0
    ftps_port: int = 990
    signing_key: Optional[str] = field(default=None, repr=False)
    signing_cert_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.port = _as_int("port", self.port)
        self.camera_port = _as_int("camera_port", self.camera_port)
        self.ftps_port = _as_int("ftps_port", self.ftps_port)
        self.use_tls = _as_bool("use_tls", self.use_tls)
        for name in ("connect_timeout", "command_timeout", "settle_seconds", "camera_timeout"):
            setattr(self, name, _as_float(name, getattr(self, name)))

        for name in ("port", "camera_port", "ftps_port"):
            value = getattr(self, name)
            if not 1 <= value <= 65535:
                raise ConfigError(f"{name} must be between 1 and 65535, got {value}")
        for name in ("connect_timeout", "command_timeout", "camera_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.settle_seconds < 0:
            raise ConfigError("settle_seconds must not be negative")

    def require_connection(self) -> None:
        """Raise :class:`ConfigError` unless host, access code and serial are set."""
        missing = [
            env for env, attr in (
                ("BAMBU_LAB_MQTT_HOST", "host"),
                ("BAMBU_LAB_MQTT_PASSWORD", "access_code"),
                ("BAMBU_LAB_DEVICE_ID", "serial"),
            )
            if not getattr(self, attr)
        ]
        if missing:
            raise ConfigError(
                "Printer connection is not configured. Set "
                + ", ".join(missing)
                + " or add them to the 'printer' section of "
                + str(get_config_path())
            )

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable dictionary with secrets masked."""
        data = asdict(self)
        data["access_code"] = "***" if self.access_code else ""
        data["signing_key"] = "***" if self.signing_key else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PrinterConfig:
        return cls(**_known(cls, data))

    @classmethod
    def from_env(cls, base: Optional[Dict[str, Any]] = None) -> PrinterConfig:
        """Build from *base* (usually the config file section) plus env overrides."""
        merged = dict(base or {})
        merged.update(_env_overrides(_PRINTER_ENV))
        return cls.from_dict(merged)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

_MONITOR_ENV: List[tuple[str, str]] = [
    ("BAMBU_LAN_MONITOR_INTERVAL", "interval_seconds"),
    ("BAMBU_LAN_MONITOR_STRIKES", "fail_strikes"),
    ("BAMBU_LAN_MONITOR_MIN_LAYER", "min_layer_for_vision"),
    ("BAMBU_LAN_SNAPSHOT_DIR", "snapshot_dir"),
]


@dataclass
class MonitorConfig:
    """Policy for the autonomous print monitor.

    :param interval_seconds: Seconds between cycles.  Values below
        ``MIN_MONITOR_INTERVAL`` are raised to it.
    :param min_layer_for_vision: First layer at which frames are sent to
        the vision backend.
    :param fail_strikes: Consecutive vision failure verdicts required
        before the print is stopped.  At least 1.
    :param snapshot_dir: Directory where captured frames are kept.  When
        unset, frames are only held in memory.
    """

    interval_seconds: float = 60
    min_layer_for_vision: int = 2
    fail_strikes: int = 3
    snapshot_dir: Optional[str] = None

    def __post_init__(self) -> None:
        self.interval_seconds = _as_float("interval_seconds", self.interval_seconds)
        self.min_layer_for_vision = _as_int("min_layer_for_vision", self.min_layer_for_vision)
        self.fail_strikes = _as_int("fail_strikes", self.fail_strikes)

        if self.interval_seconds < MIN_MONITOR_INTERVAL:
            logger.warning(
                "interval_seconds=%s is below the minimum; using %ss",
                self.interval_seconds,
                MIN_MONITOR_INTERVAL,
            )
            self.interval_seconds = float(MIN_MONITOR_INTERVAL)
        if self.fail_strikes < 1:
            logger.warning("fail_strikes=%s is below 1; using 1", self.fail_strikes)
            self.fail_strikes = 1
        if self.min_layer_for_vision < 0:
            raise ConfigError("min_layer_for_vision must not be negative")

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MonitorConfig:
        return cls(**_known(cls, data))

    @classmethod
    def from_env(cls, base: Optional[Dict[str, Any]] = None) -> MonitorConfig:
        merged = dict(base or {})
        merged.update(_env_overrides(_MONITOR_ENV))
        return cls.from_dict(merged)


# ---------------------------------------------------------------------------
# Vision
# ---------------------------------------------------------------------------

_VISION_ENV: List[tuple[str, str]] = [
    ("VISION_PROVIDER", "provider"),
    ("AZURE_OPENAI_ENDPOINT", "azure_endpoint"),
    ("AZURE_OPENAI_API_KEY", "azure_api_key"),
    ("AZURE_OPENAI_DEPLOYMENT", "azure_deployment"),
    ("AZURE_OPENAI_API_VERSION", "azure_api_version"),
    ("OPENAI_API_KEY", "openai_api_key"),
    ("OPENAI_MODEL", "openai_model"),
    ("ANTHROPIC_API_KEY", "anthropic_api_key"),
    ("ANTHROPIC_MODEL", "anthropic_model"),
]


@dataclass
class VisionSettings:
    """Credentials and model choices for the vision backends.

    ``provider`` selects a backend explicitly; when empty the registry
    picks the first backend whose credentials are present.
    """

    provider: str = ""
    azure_endpoint: str = ""
    azure_api_key: str = field(default="", repr=False)
    azure_deployment: str = "gpt-4.1-mini"
    azure_api_version: str = "2025-01-01-preview"
    openai_api_key: str = field(default="", repr=False)
    openai_model: str = "gpt-4o"
    anthropic_api_key: str = field(default="", repr=False)
    anthropic_model: str = "claude-sonnet-4-20250514"
    timeout: float = 60.0

    def __post_init__(self) -> None:
        self.provider = str(self.provider or "").strip().lower()
        self.timeout = _as_float("timeout", self.timeout)
        if self.timeout <= 0:
            raise ConfigError("vision timeout must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> VisionSettings:
        return cls(**_known(cls, data))

    @classmethod
    def from_env(cls, base: Optional[Dict[str, Any]] = None) -> VisionSettings:
        merged = dict(base or {})
        merged.update(_env_overrides(_VISION_ENV))
        return cls.from_dict(merged)


# ---------------------------------------------------------------------------
# Cloud
# ---------------------------------------------------------------------------

_CLOUD_ENV: List[tuple[str, str]] = [
    ("BAMBU_LAB_COOKIES", "cookies"),
    ("BAMBU_LAB_BASE_URL", "base_url"),
    ("BAMBU_LAB_APP_CERT_ID", "app_cert_id"),
    ("BAMBU_APP_CERTIFICATE", "app_certificate"),
    ("BAMBU_LAB_DEVICE_ID", "device_id"),
]


@dataclass
class CloudConfig:
    """Session cookies and endpoint for the Bambu account API."""

    cookies: str = field(default="", repr=False)
    base_url: str = DEFAULT_CLOUD_BASE_URL
    app_cert_id: str = ""
    app_certificate: str = field(default="", repr=False)
    device_id: str = ""
    timeout: float = 30.0

    def __post_init__(self) -> None:
        self.base_url = str(self.base_url).rstrip("/")
        self.timeout = _as_float("timeout", self.timeout)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CloudConfig:
        return cls(**_known(cls, data))

    @classmethod
    def from_env(cls, base: Optional[Dict[str, Any]] = None) -> CloudConfig:
        merged = dict(base or {})
        merged.update(_env_overrides(_CLOUD_ENV))
        return cls.from_dict(merged)


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


@dataclass
class AppConfig:
    """Everything loaded from file and environment in one place."""

    printer: PrinterConfig
    monitor: MonitorConfig
    vision: VisionSettings
    cloud: CloudConfig


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load the config file and apply environment overrides.

    Raises :class:`ConfigError` if any value fails type or range checks.
    """
    raw = _read_config_file(config_path or get_config_path())
    return AppConfig(
        printer=PrinterConfig.from_env(_section(raw, "printer")),
        monitor=MonitorConfig.from_env(_section(raw, "monitor")),
        vision=VisionSettings.from_env(_section(raw, "vision")),
        cloud=CloudConfig.from_env(_section(raw, "cloud")),
    )
