"""Tests for the MQTT session client.

The paho client is replaced by a mock; responses and status pushes are
fed in through the same entry points paho would use, so correlation,
cache merging and the connection lifecycle run for real.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, List
from unittest import mock

import pytest

from bambu_lan.config import PrinterConfig
from bambu_lan.errors import (
    CommandTimeoutError,
    ConfigError,
    GcodeSafetyError,
    PrinterConnectionError,
    PrinterError,
)
from bambu_lan.protocol.client import BambuMQTTClient
from bambu_lan.protocol.commands import CommandKind
from bambu_lan.protocol.status import GcodeState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _published(client: BambuMQTTClient) -> List[Dict[str, Any]]:
    assert client._client is not None
    return [json.loads(c.args[1]) for c in client._client.publish.call_args_list]


def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def _send_in_thread(
    client: BambuMQTTClient, kind: CommandKind, results: Dict[str, Any]
) -> threading.Thread:
    def run() -> None:
        try:
            results[kind.name] = client.send_command(kind)
        except PrinterError as exc:
            results[kind.name] = exc

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def _reply(family: str, sequence_id: str, **fields: Any) -> str:
    return json.dumps({family: {"sequence_id": sequence_id, **fields}})


def _rc(failure: bool = False) -> mock.MagicMock:
    rc = mock.MagicMock()
    rc.is_failure = failure
    return rc


# ---------------------------------------------------------------------------
# Command correlation
# ---------------------------------------------------------------------------


class TestSendCommand:
    def test_requires_connection(self, printer_config: PrinterConfig) -> None:
        client = BambuMQTTClient(printer_config)
        with pytest.raises(PrinterConnectionError, match="not connected"):
            client.send_command(CommandKind.PAUSE)

    def test_publishes_to_request_topic(self, responding_client: BambuMQTTClient) -> None:
        responding_client.pause_print()
        paho = responding_client._client
        assert paho is not None
        topic = paho.publish.call_args.args[0]
        assert topic == "device/01P00A000000001/request"
        assert paho.publish.call_args.kwargs["qos"] == 1

    def test_sequence_ids_increase(self, responding_client: BambuMQTTClient) -> None:
        responding_client.pause_print()
        responding_client.resume_print()
        ids = [m["print"]["sequence_id"] for m in _published(responding_client)]
        assert ids == ["0", "1"]

    def test_returns_correlated_response(self, responding_client: BambuMQTTClient) -> None:
        response = responding_client.stop_print()
        assert response["command"] == "stop"
        assert response["result"] == "success"

    def test_out_of_order_responses(self, connected_client: BambuMQTTClient) -> None:
        results: Dict[str, Any] = {}
        t1 = _send_in_thread(connected_client, CommandKind.PAUSE, results)
        _wait_until(lambda: "0" in connected_client._pending)
        t2 = _send_in_thread(connected_client, CommandKind.GET_VERSION, results)
        _wait_until(lambda: "1" in connected_client._pending)

        connected_client._handle_payload(_reply("info", "1", command="get_version", module=[]))
        connected_client._handle_payload(_reply("print", "0", command="pause", result="success"))
        t1.join(2)
        t2.join(2)

        assert results["PAUSE"]["command"] == "pause"
        assert results["GET_VERSION"]["command"] == "get_version"
        assert connected_client._pending == {}

    def test_response_in_other_family_ignored(self, connected_client: BambuMQTTClient) -> None:
        connected_client._config.command_timeout = 0.3
        results: Dict[str, Any] = {}
        thread = _send_in_thread(connected_client, CommandKind.PAUSE, results)
        _wait_until(lambda: "0" in connected_client._pending)

        connected_client._handle_payload(_reply("system", "0", command="ledctrl"))
        thread.join(2)

        assert isinstance(results["PAUSE"], CommandTimeoutError)

    def test_push_status_does_not_resolve(self, connected_client: BambuMQTTClient) -> None:
        connected_client._config.command_timeout = 0.3
        results: Dict[str, Any] = {}
        thread = _send_in_thread(connected_client, CommandKind.STOP, results)
        _wait_until(lambda: "0" in connected_client._pending)

        connected_client._handle_payload(
            _reply("print", "0", command="push_status", gcode_state="RUNNING")
        )
        thread.join(2)

        assert isinstance(results["STOP"], CommandTimeoutError)
        assert connected_client.get_cached_status()["gcode_state"] == "RUNNING"

    def test_timeout_removes_pending(self, connected_client: BambuMQTTClient) -> None:
        connected_client._config.command_timeout = 0.1
        with pytest.raises(CommandTimeoutError) as exc_info:
            connected_client.send_command(CommandKind.PAUSE)
        assert exc_info.value.command == "print.pause"
        assert exc_info.value.timeout == 0.1
        assert connected_client._pending == {}

    def test_late_response_after_timeout_is_dropped(self, connected_client: BambuMQTTClient) -> None:
        connected_client._config.command_timeout = 0.1
        with pytest.raises(CommandTimeoutError):
            connected_client.send_command(CommandKind.PAUSE)
        connected_client._handle_payload(_reply("print", "0", command="pause"))
        assert connected_client._pending == {}

    def test_fire_and_forget(self, connected_client: BambuMQTTClient) -> None:
        receipt = connected_client.send_command(CommandKind.PUSH_ALL, expect_response=False)
        assert receipt == {"sent": True, "command": "pushing.pushall", "sequence_id": "0"}
        assert connected_client._pending == {}

    def test_unacknowledged_publish_raises(self, connected_client: BambuMQTTClient) -> None:
        assert connected_client._client is not None
        connected_client._client.publish.return_value.is_published.return_value = False
        with pytest.raises(PrinterError, match="did not acknowledge"):
            connected_client.pause_print()
        assert connected_client._pending == {}

    def test_connection_loss_rejects_pending(self, connected_client: BambuMQTTClient) -> None:
        results: Dict[str, Any] = {}
        thread = _send_in_thread(connected_client, CommandKind.PAUSE, results)
        _wait_until(lambda: "0" in connected_client._pending)

        connected_client._on_disconnect(mock.MagicMock(), None, None, _rc(True))
        thread.join(2)

        assert isinstance(results["PAUSE"], PrinterConnectionError)
        assert not connected_client.is_connected()


# ---------------------------------------------------------------------------
# Status cache
# ---------------------------------------------------------------------------


class TestStatusCache:
    def test_empty_cache(self, printer_config: PrinterConfig) -> None:
        status = BambuMQTTClient(printer_config).get_cached_status()
        assert status == {"_cached_at": None, "_age_seconds": None}

    def test_partial_updates_merge(self, connected_client: BambuMQTTClient) -> None:
        connected_client._handle_payload(json.dumps({"print": {"gcode_state": "RUNNING", "mc_percent": 10}}))
        connected_client._handle_payload(json.dumps({"print": {"mc_percent": 42}}))

        status = connected_client.get_cached_status()
        assert status["gcode_state"] == "RUNNING"
        assert status["mc_percent"] == 42
        assert status["_cached_at"] is not None
        assert status["_age_seconds"] == 0

    def test_returns_copy(self, connected_client: BambuMQTTClient) -> None:
        connected_client._handle_payload(json.dumps({"print": {"mc_percent": 5}}))
        status = connected_client.get_cached_status()
        status["mc_percent"] = 99
        assert connected_client.get_cached_status()["mc_percent"] == 5

    def test_invalid_payload_ignored(self, connected_client: BambuMQTTClient) -> None:
        connected_client._handle_payload(b"not json")
        connected_client._handle_payload(b"[1, 2]")
        assert connected_client.get_cached_status()["_cached_at"] is None

    def test_snapshot(self, connected_client: BambuMQTTClient) -> None:
        connected_client._handle_payload(
            json.dumps({"print": {"gcode_state": "PAUSE", "layer_num": 12, "total_layer_num": 80}})
        )
        snap = connected_client.get_status_snapshot()
        assert snap.state is GcodeState.PAUSE
        assert snap.layer == 12
        assert snap.total_layers == 80

    def test_request_status(self, connected_client: BambuMQTTClient) -> None:
        connected_client._handle_payload(json.dumps({"print": {"gcode_state": "IDLE"}}))
        status = connected_client.request_status()
        assert _published(connected_client)[0]["pushing"]["command"] == "pushall"
        assert status["gcode_state"] == "IDLE"


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@pytest.fixture
def paho_mock() -> Any:
    with mock.patch("bambu_lan.protocol.client.mqtt.Client") as cls:
        yield cls.return_value


class TestConnect:
    def test_missing_config(self) -> None:
        client = BambuMQTTClient(PrinterConfig())
        with pytest.raises(ConfigError, match="BAMBU_LAB_MQTT_HOST"):
            client.connect()

    def test_connect_and_disconnect(self, printer_config: PrinterConfig, paho_mock: Any) -> None:
        client = BambuMQTTClient(printer_config)

        def loop_start() -> None:
            client._on_connect(paho_mock, None, {}, _rc())
            client._on_subscribe(paho_mock, None, 1, [_rc()])

        paho_mock.loop_start.side_effect = loop_start
        client.connect()
        try:
            assert client.is_connected()
            paho_mock.username_pw_set.assert_called_once_with("bblp", "12345678")
            paho_mock.connect.assert_called_once_with("192.168.1.100", 8883, keepalive=60)
            paho_mock.subscribe.assert_called_once_with("device/01P00A000000001/report", qos=0)
        finally:
            client.disconnect()

        assert not client.is_connected()
        paho_mock.disconnect.assert_called()
        paho_mock.loop_stop.assert_called()

    def test_messages_flow_through_consumer(self, printer_config: PrinterConfig, paho_mock: Any) -> None:
        client = BambuMQTTClient(printer_config)

        def loop_start() -> None:
            client._on_connect(paho_mock, None, {}, _rc())
            client._on_subscribe(paho_mock, None, 1, [_rc()])

        paho_mock.loop_start.side_effect = loop_start
        client.connect()
        try:
            msg = mock.MagicMock(payload=b'{"print": {"gcode_state": "RUNNING"}}')
            client._on_message(paho_mock, None, msg)
            _wait_until(lambda: client.get_cached_status().get("gcode_state") == "RUNNING")

            # A reconnect clears the cache.
            client._on_connect(paho_mock, None, {}, _rc())
            _wait_until(lambda: "gcode_state" not in client.get_cached_status())
        finally:
            client.disconnect()

    def test_reconnect_after_drop_closes_old_session(self, printer_config: PrinterConfig) -> None:
        sessions: List[mock.MagicMock] = []
        client = BambuMQTTClient(printer_config)

        def make_session(*args: Any, **kwargs: Any) -> mock.MagicMock:
            session = mock.MagicMock()

            def loop_start() -> None:
                client._on_connect(session, None, {}, _rc())
                client._on_subscribe(session, None, 1, [_rc()])

            session.loop_start.side_effect = loop_start
            sessions.append(session)
            return session

        with mock.patch("bambu_lan.protocol.client.mqtt.Client", side_effect=make_session):
            client.connect()
            first = sessions[0]
            client._on_disconnect(first, None, None, _rc(True))
            assert not client.is_connected()

            client.connect()
            try:
                assert len(sessions) == 2
                first.disconnect.assert_called_once()
                first.loop_stop.assert_called_once()
                assert client._client is sessions[1]
                assert client.is_connected()
                assert client._consumer is not None and client._consumer.is_alive()
            finally:
                client.disconnect()

    def test_refused_connection(self, printer_config: PrinterConfig, paho_mock: Any) -> None:
        client = BambuMQTTClient(printer_config)
        paho_mock.loop_start.side_effect = lambda: client._on_connect(
            paho_mock, None, {}, _rc(True)
        )
        with pytest.raises(PrinterConnectionError, match="refused"):
            client.connect()
        assert not client.is_connected()

    def test_rejected_subscription(self, printer_config: PrinterConfig, paho_mock: Any) -> None:
        client = BambuMQTTClient(printer_config)

        def loop_start() -> None:
            client._on_connect(paho_mock, None, {}, _rc())
            client._on_subscribe(paho_mock, None, 1, [_rc(True)])

        paho_mock.loop_start.side_effect = loop_start
        with pytest.raises(PrinterConnectionError, match="serial"):
            client.connect()

    def test_connect_timeout(self, printer_config: PrinterConfig, paho_mock: Any) -> None:
        printer_config.connect_timeout = 0.1
        client = BambuMQTTClient(printer_config)
        with pytest.raises(PrinterConnectionError, match="timed out"):
            client.connect()

    def test_unreachable_broker(self, printer_config: PrinterConfig, paho_mock: Any) -> None:
        paho_mock.connect.side_effect = OSError("No route to host")
        client = BambuMQTTClient(printer_config)
        with pytest.raises(PrinterConnectionError, match="No route to host"):
            client.connect()

    def test_disconnect_is_idempotent(self, printer_config: PrinterConfig) -> None:
        client = BambuMQTTClient(printer_config)
        client.disconnect()
        client.disconnect()
        assert not client.is_connected()

    def test_disconnect_clears_cache(self, connected_client: BambuMQTTClient) -> None:
        connected_client._handle_payload(json.dumps({"print": {"mc_percent": 5}}))
        connected_client.disconnect()
        assert "mc_percent" not in connected_client.get_cached_status()


# ---------------------------------------------------------------------------
# Domain commands
# ---------------------------------------------------------------------------


class TestDomainCommands:
    def test_speed_profile(self, responding_client: BambuMQTTClient) -> None:
        responding_client.set_print_speed("sport")
        assert _published(responding_client)[0]["print"]["param"] == "125"

    def test_speed_percentage(self, responding_client: BambuMQTTClient) -> None:
        responding_client.set_print_speed(80)
        assert _published(responding_client)[0]["print"]["param"] == "80"

    @pytest.mark.parametrize("speed", [0, 167, "warp"])
    def test_speed_invalid(self, connected_client: BambuMQTTClient, speed: Any) -> None:
        with pytest.raises(ValueError):
            connected_client.set_print_speed(speed)

    def test_gcode_is_newline_joined(self, responding_client: BambuMQTTClient) -> None:
        responding_client.send_gcode("G90\nG1 X10 Y10")
        assert _published(responding_client)[0]["print"]["param"] == "G90\nG1 X10 Y10\n"

    def test_gcode_blocked(self, connected_client: BambuMQTTClient) -> None:
        with pytest.raises(GcodeSafetyError) as exc_info:
            connected_client.send_gcode("M112")
        assert exc_info.value.violations
        assert connected_client._client is not None
        connected_client._client.publish.assert_not_called()

    def test_print_3mf_uses_project_file(self, responding_client: BambuMQTTClient) -> None:
        responding_client.start_print_file("cube.3mf", plate=2, ams_mapping=[1, -1])
        body = _published(responding_client)[0]["print"]
        assert body["command"] == "project_file"
        assert body["param"] == "Metadata/plate_2.gcode"
        assert body["url"] == "file:///sdcard/cube.3mf"
        assert body["ams_mapping"] == [1, -1]

    def test_print_gcode_file(self, responding_client: BambuMQTTClient) -> None:
        responding_client.start_print_file("cube.gcode")
        body = _published(responding_client)[0]["print"]
        assert body["command"] == "gcode_file"
        assert body["param"] == "cube.gcode"

    @pytest.mark.parametrize("name", ["/sdcard/x.3mf", "../x.3mf"])
    def test_print_rejects_paths(self, connected_client: BambuMQTTClient, name: str) -> None:
        with pytest.raises(ValueError):
            connected_client.start_print_file(name)

    def test_project_file_requires_3mf(self, connected_client: BambuMQTTClient) -> None:
        with pytest.raises(ValueError, match=".3mf"):
            connected_client.start_project_file("cube.gcode")

    def test_project_file_default_mapping(self, responding_client: BambuMQTTClient) -> None:
        responding_client.start_project_file("cube.3mf", plate=1)
        body = _published(responding_client)[0]["print"]
        assert body["ams_mapping"] == [0]
        assert body["subtask_name"] == "cube"

    def test_light(self, responding_client: BambuMQTTClient) -> None:
        responding_client.set_light(False)
        body = _published(responding_client)[0]["system"]
        assert body["led_node"] == "chamber_light"
        assert body["led_mode"] == "off"

    def test_change_filament(self, responding_client: BambuMQTTClient) -> None:
        responding_client.change_filament_tray(3, target_temp=220)
        body = _published(responding_client)[0]["print"]
        assert body["target"] == 3
        assert body["curr_temp"] == 220

    def test_skip_objects(self, responding_client: BambuMQTTClient) -> None:
        responding_client.skip_objects([4, 7])
        assert _published(responding_client)[0]["print"]["obj_list"] == [4, 7]

    def test_skip_objects_empty(self, connected_client: BambuMQTTClient) -> None:
        with pytest.raises(ValueError):
            connected_client.skip_objects([])
