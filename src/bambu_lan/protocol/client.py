"""MQTT session with a Bambu Lab printer over the local network.

The printer runs an MQTT broker on port 8883 (TLS, self-signed).  The
client publishes JSON commands on ``device/<serial>/request`` and
receives both command responses and unsolicited status pushes on
``device/<serial>/report``.

Threading model
---------------
paho's network loop thread only enqueues raw payloads.  A single
consumer thread drains that queue and is the only code that replaces the
status cache or resolves pending commands, so the cache always has one
writer.  Callers block in :meth:`BambuMQTTClient.send_command` on a
per-command event until the consumer routes the matching response to it
by ``sequence_id``, or the command timeout expires.

Example::

    client = BambuMQTTClient(PrinterConfig(
        host="192.168.1.50", access_code="12345678", serial="01P00A000000001",
    ))
    client.connect()
    client.pause_print()
    print(client.get_cached_status().get("gcode_state"))
    client.disconnect()
"""

from __future__ import annotations

import json
import logging
import queue
import ssl
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import paho.mqtt.client as mqtt

from bambu_lan.config import PrinterConfig
from bambu_lan.errors import (
    CommandTimeoutError,
    GcodeSafetyError,
    PrinterConnectionError,
    PrinterError,
)
from bambu_lan.gcode import validate_gcode
from bambu_lan.protocol.commands import CommandKind, build_command
from bambu_lan.protocol.status import StatusSnapshot
from bambu_lan.signing import load_private_key, sign_command

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SPEED_PROFILES: Dict[str, int] = {
    "silent": 50,
    "standard": 100,
    "sport": 125,
    "ludicrous": 166,
}
MIN_SPEED = 1
MAX_SPEED = 166

# Families whose top-level object carries printer status.
_STATUS_KEYS = ("print", "mc_print")

# Queue markers for the consumer thread.
_STOP = object()
_RESET = object()


def _check_remote_name(file_name: str) -> None:
    if not file_name or file_name.startswith("/") or ".." in file_name:
        raise ValueError(f"Invalid remote file name: {file_name!r}")


# ---------------------------------------------------------------------------
# Pending command
# ---------------------------------------------------------------------------


@dataclass
class PendingCommand:
    """A published command waiting for its correlated response."""

    sequence_id: str
    kind: CommandKind
    submitted_at: float
    done: threading.Event = field(default_factory=threading.Event)
    response: Optional[Dict[str, Any]] = None
    error: Optional[PrinterError] = None

    def resolve(self, response: Dict[str, Any]) -> None:
        self.response = response
        self.done.set()

    def reject(self, error: PrinterError) -> None:
        self.error = error
        self.done.set()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class BambuMQTTClient:
    """One authenticated MQTT session to a single printer.

    Args:
        config: Connection settings.  Only *host*, *access_code* and
            *serial* are required; see :class:`PrinterConfig`.
    """

    def __init__(self, config: PrinterConfig) -> None:
        self._config = config
        self._topic_report = f"device/{config.serial}/report"
        self._topic_request = f"device/{config.serial}/request"

        self._client: Optional[mqtt.Client] = None
        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._ready = threading.Event()
        self._connect_error: Optional[str] = None
        self._established = False
        self._closing = False

        self._sequence_id = 0
        self._pending: Dict[str, PendingCommand] = {}

        # Replaced wholesale by the consumer thread; readers take a copy.
        self._status: Dict[str, Any] = {}
        self._status_updated_at: Optional[float] = None

        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._consumer: Optional[threading.Thread] = None

        self._signing_key = (
            load_private_key(config.signing_key) if config.signing_key else None
        )

    @property
    def config(self) -> PrinterConfig:
        return self._config

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the session and wait until the report topic is subscribed.

        Raises:
            PrinterConnectionError: If the broker is unreachable, rejects
                the credentials or subscription, or does not confirm the
                subscription within ``connect_timeout``.
        """
        if self.is_connected():
            return
        self._config.require_connection()

        stale = self._client
        if stale is not None:
            # The dropped session is still retrying in paho's loop thread.
            self._client = None
            logger.info("Closing dropped MQTT session to %s before reconnecting", self._config.host)
            self._teardown(stale)

        host, port = self._config.host, self._config.port
        self._closing = False
        self._established = False
        self._connect_error = None
        self._ready.clear()
        self._connected.clear()
        with self._lock:
            self._sequence_id = 0
        self._status = {}
        self._status_updated_at = None

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"bambu-lan-{self._config.serial[-8:]}-{uuid.uuid4().hex[:6]}",
            protocol=mqtt.MQTTv311,
        )
        client.username_pw_set(self._config.username, self._config.access_code)
        if self._config.use_tls:
            # Printers use self-signed certificates.
            tls_context = ssl.create_default_context()
            tls_context.check_hostname = False
            tls_context.verify_mode = ssl.CERT_NONE
            client.tls_set_context(tls_context)
        client.reconnect_delay_set(min_delay=1, max_delay=30)

        client.on_connect = self._on_connect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        self._start_consumer()
        try:
            client.connect(host, port, keepalive=60)
        except Exception as exc:
            self._teardown(client)
            raise PrinterConnectionError(
                f"Could not reach MQTT broker at {host}:{port}: {exc}",
                cause=exc,
            ) from exc
        client.loop_start()

        if not self._ready.wait(timeout=self._config.connect_timeout):
            self._teardown(client)
            raise PrinterConnectionError(
                f"MQTT connection to {host}:{port} timed out after "
                f"{self._config.connect_timeout:g}s.\n"
                "  Check:\n"
                "  1) Printer is powered on and on the same network\n"
                "  2) LAN access code is correct (printer > Settings > Network)\n"
                "  3) LAN mode is enabled on the printer\n"
                "  4) Port 8883 is not blocked by a firewall"
            )
        if self._connect_error is not None:
            error = self._connect_error
            self._teardown(client)
            raise PrinterConnectionError(error)

        self._client = client
        self._established = True
        logger.info("Connected to printer %s at %s:%s", self._config.serial, host, port)

    def disconnect(self) -> None:
        """Close the session, reject pending commands and clear the cache.

        Safe to call repeatedly or without a prior :meth:`connect`.
        """
        client = self._client
        self._client = None
        if client is not None:
            self._teardown(client)
            logger.info("Disconnected from printer %s", self._config.serial)
        else:
            self._stop_consumer()
        self._connected.clear()
        self._established = False
        self._reject_pending(
            PrinterConnectionError("Disconnected before a response arrived")
        )
        self._status = {}
        self._status_updated_at = None

    def is_connected(self) -> bool:
        """Return ``True`` while the session is up.  Never blocks."""
        return self._client is not None and self._connected.is_set()

    def _teardown(self, client: mqtt.Client) -> None:
        self._closing = True
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as exc:
            logger.debug("Error while closing MQTT client: %s", exc)
        self._connected.clear()
        self._stop_consumer()

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT broker refused connection: %s", reason_code)
            if not self._established:
                self._connect_error = (
                    f"MQTT broker at {self._config.host} refused the connection "
                    f"({reason_code}); check the LAN access code"
                )
                self._ready.set()
            return
        if self._established:
            logger.info("MQTT reconnected to %s; status cache cleared", self._config.host)
            self._inbox.put(_RESET)
        client.subscribe(self._topic_report, qos=0)

    def _on_subscribe(
        self,
        client: mqtt.Client,
        userdata: Any,
        mid: int,
        reason_code_list: List[Any],
        properties: Any = None,
    ) -> None:
        failures = [rc for rc in reason_code_list if rc.is_failure]
        if failures:
            logger.warning("Subscription to %s rejected: %s", self._topic_report, failures[0])
            if not self._established:
                self._connect_error = (
                    f"Subscription to {self._topic_report} was rejected ({failures[0]}); "
                    "check the device serial number"
                )
                self._ready.set()
            return
        self._connected.set()
        self._ready.set()

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any = None,
        reason_code: Any = None,
        properties: Any = None,
    ) -> None:
        self._connected.clear()
        if self._closing:
            return
        logger.warning(
            "MQTT connection to %s lost (%s); reconnecting in the background",
            self._config.host,
            reason_code,
        )
        self._reject_pending(
            PrinterConnectionError(
                f"Connection to {self._config.host} lost before a response arrived"
            )
        )

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        self._inbox.put(msg.payload)

    # ------------------------------------------------------------------
    # Consumer thread: the only writer of the status cache
    # ------------------------------------------------------------------

    def _start_consumer(self) -> None:
        if self._consumer is not None and self._consumer.is_alive():
            return
        self._inbox = queue.Queue()
        self._consumer = threading.Thread(
            target=self._consume_loop,
            args=(self._inbox,),
            name=f"bambu-mqtt-{self._config.serial[-8:]}",
            daemon=True,
        )
        self._consumer.start()

    def _stop_consumer(self) -> None:
        consumer = self._consumer
        if consumer is None:
            return
        self._inbox.put(_STOP)
        if consumer is not threading.current_thread():
            consumer.join(timeout=5.0)
        self._consumer = None

    def _consume_loop(self, inbox: "queue.Queue[Any]") -> None:
        while True:
            item = inbox.get()
            if item is _STOP:
                return
            if item is _RESET:
                self._status = {}
                self._status_updated_at = None
                continue
            try:
                self._handle_payload(item)
            except Exception:
                logger.exception("Unhandled error processing MQTT message")

    def _handle_payload(self, payload: Union[bytes, str]) -> None:
        """Route a correlated response and merge any status object."""
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
            return
        if not isinstance(data, dict):
            return

        for family, body in data.items():
            if not isinstance(body, dict) or "sequence_id" not in body:
                continue
            # Status pushes carry the printer's own sequence counter.
            if str(body.get("command", "")).lower() == "push_status":
                continue
            sequence_id = str(body["sequence_id"])
            with self._lock:
                pending = self._pending.get(sequence_id)
                if pending is None or pending.kind.family != family:
                    continue
                del self._pending[sequence_id]
            pending.resolve(body)

        for key in _STATUS_KEYS:
            status = data.get(key)
            if isinstance(status, dict) and status:
                self._status = {**self._status, **status}
                self._status_updated_at = time.time()
                break

    def _reject_pending(self, error: PrinterError) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for item in pending:
            item.reject(error)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send_command(
        self,
        kind: CommandKind,
        params: Optional[Dict[str, Any]] = None,
        *,
        expect_response: bool = True,
    ) -> Dict[str, Any]:
        """Publish *kind* and optionally wait for its correlated response.

        Returns:
            The response object for *kind*'s family when
            *expect_response* is true, otherwise a small receipt once the
            broker has acknowledged the publish.

        Raises:
            PrinterConnectionError: If the session is down, or drops
                before the response arrives.
            CommandTimeoutError: If no response arrives within
                ``command_timeout``.
            PrinterError: If the publish itself fails.
            ValueError: If *params* do not fit *kind*.
        """
        client = self._client
        if client is None or not self._connected.is_set():
            raise PrinterConnectionError("MQTT client not connected")

        with self._lock:
            message = build_command(kind, self._sequence_id, params)
            sequence_id = str(self._sequence_id)
            self._sequence_id += 1
            pending: Optional[PendingCommand] = None
            if expect_response:
                pending = PendingCommand(sequence_id, kind, time.time())
                self._pending[sequence_id] = pending

        logger.debug("Sending %s (sequence_id=%s)", kind.label, sequence_id)
        try:
            self._publish(client, message, kind)
        except PrinterError:
            if pending is not None:
                with self._lock:
                    self._pending.pop(sequence_id, None)
            raise

        if pending is None:
            return {"sent": True, "command": kind.label, "sequence_id": sequence_id}

        timeout = self._config.command_timeout
        if not pending.done.wait(timeout=timeout):
            with self._lock:
                self._pending.pop(sequence_id, None)
            # The response may have landed between the wait and the pop.
            if not pending.done.is_set():
                raise CommandTimeoutError(kind.label, timeout)
        if pending.error is not None:
            raise pending.error
        return pending.response or {}

    def _publish(
        self,
        client: mqtt.Client,
        message: Dict[str, Any],
        kind: CommandKind,
    ) -> None:
        if self._signing_key is not None and self._config.signing_cert_id:
            message = sign_command(message, self._signing_key, self._config.signing_cert_id)
        try:
            result = client.publish(
                self._topic_request,
                json.dumps(message, separators=(",", ":")),
                qos=1,
            )
            result.wait_for_publish(timeout=self._config.command_timeout)
        except Exception as exc:
            raise PrinterError(
                f"Failed to publish {kind.label}: {exc}",
                cause=exc,
            ) from exc
        if not result.is_published():
            raise PrinterError(f"Broker did not acknowledge {kind.label}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def request_status(self) -> Dict[str, Any]:
        """Ask the printer for a full status push and return the cache.

        Do not call this more than about once every five minutes per
        printer; ``pushall`` is expensive for the printer's own control
        loop, especially on P1 series machines.
        """
        self.send_command(CommandKind.PUSH_ALL, expect_response=False)
        time.sleep(self._config.settle_seconds)
        return self.get_cached_status()

    def get_cached_status(self) -> Dict[str, Any]:
        """Return a copy of the merged status plus ``_cached_at``/``_age_seconds``."""
        status = dict(self._status)
        updated = self._status_updated_at
        if updated is None:
            status["_cached_at"] = None
            status["_age_seconds"] = None
        else:
            status["_cached_at"] = datetime.fromtimestamp(updated, tz=timezone.utc).isoformat()
            status["_age_seconds"] = round(time.time() - updated)
        return status

    def get_status_snapshot(self) -> StatusSnapshot:
        return StatusSnapshot.from_report(self.get_cached_status())

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def stop_print(self) -> Dict[str, Any]:
        return self.send_command(CommandKind.STOP)

    def pause_print(self) -> Dict[str, Any]:
        return self.send_command(CommandKind.PAUSE)

    def resume_print(self) -> Dict[str, Any]:
        return self.send_command(CommandKind.RESUME)

    def set_print_speed(self, speed: Union[int, str]) -> Dict[str, Any]:
        """Set print speed as a percentage (1-166) or a profile name.

        Profiles: ``silent`` (50), ``standard`` (100), ``sport`` (125),
        ``ludicrous`` (166).
        """
        if isinstance(speed, str) and not speed.strip().isdigit():
            try:
                speed = SPEED_PROFILES[speed.strip().lower()]
            except KeyError:
                raise ValueError(
                    f"Unknown speed profile {speed!r}. "
                    f"Choose one of: {', '.join(SPEED_PROFILES)}"
                ) from None
        value = int(speed)
        if not MIN_SPEED <= value <= MAX_SPEED:
            raise ValueError(f"Speed must be between {MIN_SPEED} and {MAX_SPEED}, got {value}")
        return self.send_command(CommandKind.PRINT_SPEED, {"param": str(value)})

    def send_gcode(self, gcode: str) -> Dict[str, Any]:
        """Validate and send raw G-code lines.

        Raises:
            GcodeSafetyError: If any line is blocked by the validator.
        """
        result = validate_gcode(gcode)
        if not result.valid:
            raise GcodeSafetyError(
                "G-code blocked: " + "; ".join(result.errors),
                violations=result.errors,
            )
        if not result.commands:
            raise ValueError("No G-code commands to send")
        for warning in result.warnings:
            logger.warning("G-code warning: %s", warning)
        return self.send_command(
            CommandKind.GCODE_LINE,
            {"param": "\n".join(result.commands) + "\n"},
        )

    def start_print_file(
        self,
        file_name: str,
        *,
        plate: int = 1,
        ams_mapping: Optional[List[int]] = None,
        use_ams: bool = True,
        bed_type: str = "auto",
        bed_leveling: bool = True,
        flow_cali: bool = True,
        vibration_cali: bool = True,
        layer_inspect: bool = False,
        timelapse: bool = False,
        subtask_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start printing a file already on the printer's SD card.

        ``.3mf`` projects go through :meth:`start_project_file`; anything
        else is started with ``gcode_file``.
        """
        _check_remote_name(file_name)
        if file_name.lower().endswith(".3mf"):
            return self.start_project_file(
                file_name,
                plate=plate,
                ams_mapping=ams_mapping,
                use_ams=use_ams,
                bed_type=bed_type,
                bed_leveling=bed_leveling,
                flow_cali=flow_cali,
                vibration_cali=vibration_cali,
                layer_inspect=layer_inspect,
                timelapse=timelapse,
                subtask_name=subtask_name,
            )

        return self.send_command(CommandKind.GCODE_FILE, {
            "param": file_name,
            "subtask_name": subtask_name or file_name,
            "bed_type": bed_type,
            "bed_levelling": bed_leveling,
            "flow_cali": flow_cali,
            "vibration_cali": vibration_cali,
            "layer_inspect": layer_inspect,
            "timelapse": timelapse,
            "use_ams": use_ams,
        })

    def start_project_file(
        self,
        file_name: str,
        *,
        plate: int = 1,
        ams_mapping: Optional[List[int]] = None,
        use_ams: bool = True,
        bed_type: str = "auto",
        bed_leveling: bool = True,
        flow_cali: bool = True,
        vibration_cali: bool = True,
        layer_inspect: bool = False,
        timelapse: bool = False,
        subtask_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Print *plate* of a sliced ``.3mf`` project on the SD card.

        *ams_mapping* maps each colour in the file (by index) to a global
        AMS slot, or ``-1`` for the external spool.
        """
        _check_remote_name(file_name)
        if not file_name.lower().endswith(".3mf"):
            raise ValueError(f"Project files must be .3mf, got {file_name!r}")
        if plate < 1:
            raise ValueError("plate must be 1 or greater")
        return self.send_command(CommandKind.PROJECT_FILE, {
            "param": f"Metadata/plate_{plate}.gcode",
            "file": file_name,
            "url": f"file:///sdcard/{file_name}",
            "subtask_name": subtask_name or file_name[:-4],
            "project_id": "0",
            "profile_id": "0",
            "task_id": "0",
            "subtask_id": "0",
            "bed_type": bed_type,
            "bed_leveling": bed_leveling,
            "flow_cali": flow_cali,
            "vibration_cali": vibration_cali,
            "layer_inspect": layer_inspect,
            "timelapse": timelapse,
            "use_ams": use_ams,
            "ams_mapping": list(ams_mapping) if ams_mapping else [0],
        })

    def skip_objects(self, object_ids: List[int]) -> Dict[str, Any]:
        if not object_ids:
            raise ValueError("object_ids must not be empty")
        return self.send_command(
            CommandKind.SKIP_OBJECTS, {"obj_list": [int(i) for i in object_ids]}
        )

    # ------------------------------------------------------------------
    # Filament
    # ------------------------------------------------------------------

    def change_filament_tray(
        self, tray: int, target_temp: Optional[int] = None
    ) -> Dict[str, Any]:
        """Switch to AMS *tray* (global slot, 0-based)."""
        if tray < 0:
            raise ValueError("tray must not be negative")
        params: Dict[str, Any] = {"target": tray}
        if target_temp is not None:
            params["curr_temp"] = target_temp
        return self.send_command(CommandKind.AMS_CHANGE_FILAMENT, params)

    def unload_filament(self) -> Dict[str, Any]:
        return self.send_command(CommandKind.UNLOAD_FILAMENT)

    # ------------------------------------------------------------------
    # Accessories
    # ------------------------------------------------------------------

    def set_light(self, on: bool, node: str = "chamber_light") -> Dict[str, Any]:
        return self.send_command(CommandKind.LED_CONTROL, {
            "led_node": node,
            "led_mode": "on" if on else "off",
        })

    def set_camera_recording(self, enabled: bool) -> Dict[str, Any]:
        return self.send_command(
            CommandKind.CAMERA_RECORD, {"control": "enable" if enabled else "disable"}
        )

    def set_timelapse(self, enabled: bool) -> Dict[str, Any]:
        return self.send_command(
            CommandKind.CAMERA_TIMELAPSE, {"control": "enable" if enabled else "disable"}
        )

    def set_nozzle(self, diameter: float) -> Dict[str, Any]:
        return self.send_command(CommandKind.SET_ACCESSORIES, {
            "accessory_type": "nozzle",
            "nozzle_diameter": str(diameter),
        })

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------

    def get_version(self) -> Dict[str, Any]:
        return self.send_command(CommandKind.GET_VERSION)

    def start_firmware_upgrade(self, module: str, version: str, url: str) -> Dict[str, Any]:
        return self.send_command(
            CommandKind.UPGRADE_START, {"module": module, "version": version, "url": url}
        )

    # ------------------------------------------------------------------
    # Dunder helpers
    # ------------------------------------------------------------------

    def __repr__(self) -> str:
        return f"<BambuMQTTClient host={self._config.host!r} serial={self._config.serial!r}>"
