"""MCP server exposing LAN printer control and the print monitor as tools.

Configuration comes from ``~/.bambu_lan/config.yaml`` and environment
variables (see :mod:`bambu_lan.config`).  The MQTT session is opened on
the first tool that needs it and shared by every later call, including
the print monitor.

Every tool returns a dict with ``success``; failures carry
``error.code`` and ``error.message`` instead of raising.
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from bambu_lan import camera, ftps, makerworld, slicer
from bambu_lan.cloud import BambuCloudClient
from bambu_lan.config import AppConfig, MonitorConfig, load_config
from bambu_lan.errors import (
    CommandTimeoutError,
    ConfigError,
    GcodeSafetyError,
    MonitorError,
    PrinterConnectionError,
    PrinterError,
)
from bambu_lan.log_config import configure_logging
from bambu_lan.monitor import PrintMonitor
from bambu_lan.protocol.client import BambuMQTTClient
from bambu_lan.vision.registry import create_vision_provider

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "bambu-lan",
    instructions=(
        "Local-network control of a Bambu Lab printer over MQTT, with camera "
        "snapshots and an autonomous failure monitor.\n\n"
        "Start with `printer_status` to see what the printer is doing; call "
        "`request_full_status` sparingly (at most every few minutes) when the "
        "cached status is stale.  To print: `upload_file`, then `print_file`. "
        "MakerWorld projects must be sliced with `slice_3mf` first.  Use "
        "`monitor_start` once a print is running to have it stopped "
        "automatically when the camera shows a failure."
    ),
)

# ---------------------------------------------------------------------------
# Lazily-initialised session state
# ---------------------------------------------------------------------------

_state_lock = threading.Lock()
_config: Optional[AppConfig] = None
_client: Optional[BambuMQTTClient] = None
_monitor: Optional[PrintMonitor] = None

_ERROR_CODES = (
    (ConfigError, "CONFIG_ERROR"),
    (PrinterConnectionError, "CONNECTION_ERROR"),
    (CommandTimeoutError, "TIMEOUT"),
    (GcodeSafetyError, "GCODE_BLOCKED"),
    (MonitorError, "MONITOR_ERROR"),
)


def _get_config() -> AppConfig:
    global _config  # noqa: PLW0603
    with _state_lock:
        if _config is None:
            _config = load_config()
        return _config


def _get_client() -> BambuMQTTClient:
    """Return the shared MQTT client, connecting on first use.

    Raises:
        ConfigError: If host, access code or serial are missing.
        PrinterConnectionError: If the broker cannot be reached.
    """
    global _client  # noqa: PLW0603
    config = _get_config()
    with _state_lock:
        if _client is None:
            config.printer.require_connection()
            _client = BambuMQTTClient(config.printer)
        client = _client
    if not client.is_connected():
        client.connect()
    return client


def _get_monitor() -> PrintMonitor:
    global _monitor  # noqa: PLW0603
    client = _get_client()
    config = _get_config()
    with _state_lock:
        if _monitor is None:
            _monitor = PrintMonitor(
                client,
                camera.make_frame_source(config.printer),
                create_vision_provider(config.vision),
                config.monitor,
            )
        return _monitor


def _shutdown() -> None:
    with _state_lock:
        monitor, client = _monitor, _client
    if monitor is not None and monitor.is_active:
        monitor.stop()
    if client is not None:
        client.disconnect()


def _error_dict(message: str, code: str = "ERROR") -> Dict[str, Any]:
    """Build a standardised error response dict."""
    return {"success": False, "error": {"code": code, "message": message}}


def _printer_error(exc: PrinterError) -> Dict[str, Any]:
    code = getattr(exc, "code", None)
    if not code:
        code = next((c for cls, c in _ERROR_CODES if isinstance(exc, cls)), "ERROR")
    return _error_dict(str(exc), code=code)


def _unexpected(tool: str, exc: Exception) -> Dict[str, Any]:
    logger.exception("Unexpected error in %s", tool)
    return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@mcp.tool()
def printer_status() -> dict:
    """Get the printer's cached status: state, progress, temperatures, fans and AMS.

    The printer pushes partial updates on its own; ``cached_at`` and
    ``age_seconds`` tell you how fresh the data is.  If the cache is
    empty or stale, call ``request_full_status``.
    """
    try:
        client = _get_client()
        raw = client.get_cached_status()
        return {
            "success": True,
            "status": client.get_status_snapshot().to_dict(),
            "cached_at": raw.get("_cached_at"),
            "age_seconds": raw.get("_age_seconds"),
        }
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("printer_status", exc)


@mcp.tool()
def request_full_status() -> dict:
    """Ask the printer to push its complete status, then return it.

    Expensive for the printer; do not call more than about once every
    five minutes.
    """
    try:
        client = _get_client()
        client.request_status()
        return {"success": True, "status": client.get_status_snapshot().to_dict()}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("request_full_status", exc)


# ---------------------------------------------------------------------------
# Print control
# ---------------------------------------------------------------------------


@mcp.tool()
def stop_print() -> dict:
    """Stop the current print.  It cannot be resumed."""
    try:
        response = _get_client().stop_print()
        return {"success": True, "message": "Stop command acknowledged.", "response": response}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("stop_print", exc)


@mcp.tool()
def pause_print() -> dict:
    """Pause the current print."""
    try:
        response = _get_client().pause_print()
        return {"success": True, "message": "Print paused.", "response": response}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("pause_print", exc)


@mcp.tool()
def resume_print() -> dict:
    """Resume a paused print."""
    try:
        response = _get_client().resume_print()
        return {"success": True, "message": "Print resumed.", "response": response}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("resume_print", exc)


@mcp.tool()
def set_speed(speed: str) -> dict:
    """Set print speed.

    Args:
        speed: A profile name (``silent``, ``standard``, ``sport``,
            ``ludicrous``) or a percentage from 1 to 166.
    """
    try:
        value: Any = int(speed) if speed.strip().isdigit() else speed
        response = _get_client().set_print_speed(value)
        return {"success": True, "speed": speed, "response": response}
    except ValueError as exc:
        return _error_dict(str(exc), code="INVALID_ARGS")
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("set_speed", exc)


@mcp.tool()
def send_gcode(commands: str) -> dict:
    """Send raw G-code lines to the printer.

    Commands are checked first: emergency stop, firmware and EEPROM
    commands are refused, and temperatures above the printer's limits
    are rejected.  Warnings (e.g. homing) are returned but do not block.
    """
    try:
        response = _get_client().send_gcode(commands)
        return {"success": True, "response": response}
    except GcodeSafetyError as exc:
        result = _printer_error(exc)
        result["error"]["violations"] = exc.violations
        return result
    except ValueError as exc:
        return _error_dict(str(exc), code="INVALID_ARGS")
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("send_gcode", exc)


@mcp.tool()
def set_light(on: bool, node: str = "chamber_light") -> dict:
    """Turn the chamber (or work) light on or off."""
    try:
        response = _get_client().set_light(on, node=node)
        return {"success": True, "light": node, "on": on, "response": response}
    except ValueError as exc:
        return _error_dict(str(exc), code="INVALID_ARGS")
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("set_light", exc)


@mcp.tool()
def change_filament(tray: int, target_temp: Optional[int] = None) -> dict:
    """Load filament from an AMS tray.

    Args:
        tray: Global AMS slot (unit * 4 + slot), or 254 for the external spool.
        target_temp: Nozzle temperature to use for the swap.
    """
    try:
        response = _get_client().change_filament_tray(tray, target_temp=target_temp)
        return {"success": True, "tray": tray, "response": response}
    except ValueError as exc:
        return _error_dict(str(exc), code="INVALID_ARGS")
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("change_filament", exc)


@mcp.tool()
def unload_filament() -> dict:
    """Unload the filament currently in the toolhead."""
    try:
        response = _get_client().unload_filament()
        return {"success": True, "response": response}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("unload_filament", exc)


@mcp.tool()
def skip_objects(object_ids: List[int]) -> dict:
    """Skip objects in the running print by their object ids."""
    try:
        response = _get_client().skip_objects(object_ids)
        return {"success": True, "skipped": object_ids, "response": response}
    except ValueError as exc:
        return _error_dict(str(exc), code="INVALID_ARGS")
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("skip_objects", exc)


# ---------------------------------------------------------------------------
# Camera and files
# ---------------------------------------------------------------------------


@mcp.tool()
def camera_snapshot(output_path: Optional[str] = None) -> dict:
    """Capture one JPEG frame from the printer camera and save it.

    Args:
        output_path: Where to write the image.  Defaults to a file in the
            system temp directory.
    """
    try:
        config = _get_config().printer
        config.require_connection()
        frame = camera.make_frame_source(config)()
        path = camera.save_frame(frame, output_path)
        return {"success": True, "path": path, "size_bytes": len(frame)}
    except PrinterError as exc:
        return _printer_error(exc)
    except OSError as exc:
        return _error_dict(f"Could not save snapshot: {exc}", code="FILE_ERROR")
    except Exception as exc:
        return _unexpected("camera_snapshot", exc)


@mcp.tool()
def upload_file(file_path: str, remote_name: Optional[str] = None) -> dict:
    """Upload a local .gcode, .3mf or .stl file to the printer's SD card.

    Use the returned ``remote_name`` with ``print_file``.
    """
    try:
        config = _get_config().printer
        config.require_connection()
        result = ftps.upload_file(config, file_path, remote_name)
        return {"success": True, **result.to_dict()}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("upload_file", exc)


@mcp.tool()
def print_file(
    file_name: str,
    plate: int = 1,
    use_ams: bool = True,
    ams_mapping: Optional[List[int]] = None,
    bed_leveling: bool = True,
    timelapse: bool = False,
) -> dict:
    """Start printing a file already on the SD card.

    Args:
        file_name: Name as uploaded (e.g. ``model.3mf``).
        plate: Plate number inside a 3MF project.
        use_ams: Feed filament from the AMS.
        ams_mapping: For each colour in the file, the global AMS slot to
            use (``-1`` for the external spool).
    """
    try:
        response = _get_client().start_print_file(
            file_name,
            plate=plate,
            use_ams=use_ams,
            ams_mapping=ams_mapping,
            bed_leveling=bed_leveling,
            timelapse=timelapse,
        )
        return {"success": True, "file_name": file_name, "response": response}
    except ValueError as exc:
        return _error_dict(str(exc), code="INVALID_ARGS")
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("print_file", exc)


@mcp.tool()
def slice_3mf(input_path: str, output_dir: Optional[str] = None) -> dict:
    """Slice a project 3MF (e.g. from MakerWorld) so the printer can run it.

    Already-sliced files are returned unchanged with ``sliced`` false.
    """
    try:
        result = slicer.slice_3mf(input_path, output_dir)
        return {"success": True, **result.to_dict()}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("slice_3mf", exc)


# ---------------------------------------------------------------------------
# Cloud and MakerWorld
# ---------------------------------------------------------------------------


@mcp.tool()
def cloud_profile() -> dict:
    """Get the Bambu account profile (needs ``BAMBU_LAB_COOKIES``)."""
    try:
        profile = BambuCloudClient(_get_config().cloud).get_profile()
        return {"success": True, "profile": profile}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("cloud_profile", exc)


@mcp.tool()
def cloud_devices() -> dict:
    """List printers bound to the Bambu account (needs ``BAMBU_LAB_COOKIES``)."""
    try:
        devices = BambuCloudClient(_get_config().cloud).list_devices()
        return {"success": True, "devices": devices}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("cloud_devices", exc)


@mcp.tool()
def makerworld_download(
    url: Optional[str] = None,
    instance_id: Optional[str] = None,
    output_dir: Optional[str] = None,
    download_path: Optional[str] = None,
) -> dict:
    """Download a 3MF from MakerWorld.

    MakerWorld is behind Cloudflare; if the download is blocked, fetch the
    file in a browser and call again with ``download_path`` pointing at it.

    Args:
        url: Model page, e.g. ``https://makerworld.com/en/models/12345-name``.
        instance_id: Print profile id for a direct download.
        output_dir: Destination directory (default ``~/Downloads``).
        download_path: An already-downloaded file to hand on to ``slice_3mf``
            or ``upload_file``.
    """
    if download_path:
        path = os.path.abspath(os.path.expanduser(download_path))
        if not os.path.isfile(path):
            return _error_dict(f"File not found: {path}", code="FILE_NOT_FOUND")
        return {
            "success": True,
            "message": "File ready for upload",
            "path": path,
            "filename": os.path.basename(path),
            "size_bytes": os.path.getsize(path),
        }
    try:
        result = makerworld.download_model(url, output_dir, instance_id=instance_id)
        return {"success": True, "message": "Downloaded successfully", **result.to_dict()}
    except PrinterError as exc:
        result = _printer_error(exc)
        if getattr(exc, "blocked", False):
            result["error"]["code"] = "CLOUDFLARE_BLOCKED"
        return result
    except Exception as exc:
        return _unexpected("makerworld_download", exc)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


@mcp.tool()
def monitor_start(
    interval_seconds: Optional[float] = None,
    fail_strikes: Optional[int] = None,
    min_layer_for_vision: Optional[int] = None,
    snapshot_dir: Optional[str] = None,
) -> dict:
    """Start watching the running print and stop it on a detected failure.

    Every cycle reads the printer status and grabs a camera frame.  A
    printer-reported error stops the print at once; the vision model has
    to see a failure on ``fail_strikes`` consecutive cycles first.
    """
    try:
        monitor = _get_monitor()
        overrides = {
            "interval_seconds": interval_seconds,
            "fail_strikes": fail_strikes,
            "min_layer_for_vision": min_layer_for_vision,
            "snapshot_dir": snapshot_dir,
        }
        given = {k: v for k, v in overrides.items() if v is not None}
        config = MonitorConfig.from_dict({**_get_config().monitor.to_dict(), **given})
        state = monitor.start(config)
        return {
            "success": True,
            "config": config.to_dict(),
            "vision": {"provider": monitor.vision.name, "model": monitor.vision.model},
            "state": state.to_dict(),
        }
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        return _unexpected("monitor_start", exc)


@mcp.tool()
def monitor_status() -> dict:
    """Report the monitor's progress, strike count and last verdict."""
    with _state_lock:
        monitor = _monitor
    if monitor is None:
        return {"success": True, "active": False, "message": "Monitor has not been started."}
    state = monitor.get_state()
    return {"success": True, "active": state.active, "state": state.to_dict()}


@mcp.tool()
def monitor_stop() -> dict:
    """Stop the monitor and return its summary.  The print keeps running."""
    with _state_lock:
        monitor = _monitor
    if monitor is None:
        return _error_dict("Monitor has not been started.", code="MONITOR_ERROR")
    try:
        return {"success": True, "summary": monitor.stop().to_dict()}
    except Exception as exc:
        return _unexpected("monitor_stop", exc)


def main() -> None:
    """Run the bambu-lan MCP server over stdio."""
    configure_logging()
    atexit.register(_shutdown)
    logger.info("bambu-lan MCP server starting")
    mcp.run()


if __name__ == "__main__":
    main()
