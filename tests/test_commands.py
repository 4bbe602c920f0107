"""Tests for bambu_lan.protocol.commands."""

from __future__ import annotations

import pytest

from bambu_lan.protocol.commands import PARAM_SHAPES, CommandKind, build_command


class TestCommandKind:
    def test_family_and_command(self) -> None:
        assert CommandKind.STOP.family == "print"
        assert CommandKind.STOP.command == "stop"
        assert CommandKind.PUSH_ALL.family == "pushing"
        assert CommandKind.LED_CONTROL.family == "system"

    def test_label(self) -> None:
        assert CommandKind.GET_VERSION.label == "info.get_version"

    def test_every_kind_has_a_shape(self) -> None:
        assert set(PARAM_SHAPES) == set(CommandKind)


class TestBuildCommand:
    def test_envelope_shape(self) -> None:
        msg = build_command(CommandKind.PAUSE, 7)
        assert msg == {"print": {"sequence_id": "7", "command": "pause"}}

    def test_sequence_id_is_string(self) -> None:
        msg = build_command(CommandKind.PUSH_ALL, 0)
        assert msg["pushing"]["sequence_id"] == "0"

    def test_params_are_merged_into_body(self) -> None:
        msg = build_command(CommandKind.PRINT_SPEED, 3, {"param": "2"})
        assert msg["print"]["param"] == "2"
        assert msg["print"]["command"] == "print_speed"

    def test_led_control(self) -> None:
        msg = build_command(
            CommandKind.LED_CONTROL, 1, {"led_node": "chamber_light", "led_mode": "on"}
        )
        assert msg == {
            "system": {
                "sequence_id": "1",
                "command": "ledctrl",
                "led_node": "chamber_light",
                "led_mode": "on",
            }
        }

    def test_unknown_param_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown parameter"):
            build_command(CommandKind.STOP, 1, {"param": "x"})

    def test_missing_required_param_rejected(self) -> None:
        with pytest.raises(ValueError, match="Missing parameter.*param"):
            build_command(CommandKind.GCODE_LINE, 1, {})

    def test_optional_params_accepted(self) -> None:
        msg = build_command(
            CommandKind.AMS_CHANGE_FILAMENT, 2, {"target": 5, "curr_temp": 220}
        )
        assert msg["print"]["target"] == 5
        assert msg["print"]["curr_temp"] == 220

    def test_does_not_mutate_params(self) -> None:
        params = {"param": "G28\n"}
        build_command(CommandKind.GCODE_LINE, 1, params)
        assert params == {"param": "G28\n"}
