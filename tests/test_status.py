"""Tests for the typed status views."""

from __future__ import annotations

import pytest

from bambu_lan.protocol.status import GcodeState, StatusSnapshot, parse_ams_trays


class TestGcodeState:
    @pytest.mark.parametrize("raw", ["RUNNING", "running", "Running"])
    def test_case_insensitive(self, raw: str) -> None:
        assert GcodeState.parse(raw) is GcodeState.RUNNING

    @pytest.mark.parametrize("raw", [None, "", "WARMING_UP", 7])
    def test_unknown(self, raw: object) -> None:
        assert GcodeState.parse(raw) is GcodeState.UNKNOWN


class TestStatusSnapshot:
    def test_empty_report(self) -> None:
        snap = StatusSnapshot.from_report({})
        assert snap.state is GcodeState.UNKNOWN
        assert snap.percent == 0
        assert snap.layer == 0
        assert snap.remaining_minutes is None
        assert snap.nozzle_temp is None
        assert not snap.has_hardware_error

    def test_typical_report(self) -> None:
        snap = StatusSnapshot.from_report({
            "gcode_state": "RUNNING",
            "mc_percent": "42",
            "layer_num": 12,
            "total_layer_num": 80,
            "mc_remaining_time": 33,
            "nozzle_temper": 219.6,
            "nozzle_target_temper": 220,
            "bed_temper": "54.9",
            "cooling_fan_speed": "15",
            "big_fan1_speed": "0",
            "spd_lvl": 2,
            "subtask_name": "benchy",
            "lights_report": [{"node": "chamber_light", "mode": "on"}],
        })
        assert snap.state is GcodeState.RUNNING
        assert snap.percent == 42
        assert (snap.layer, snap.total_layers) == (12, 80)
        assert snap.remaining_minutes == 33
        assert snap.nozzle_target == 220.0
        assert snap.bed_temp == 54.9
        assert snap.part_fan == 100
        assert snap.aux_fan == 0
        assert snap.chamber_fan is None
        assert snap.speed_level == 2
        assert snap.file_name == "benchy"
        assert snap.lights == {"chamber_light": "on"}

    def test_fan_steps_to_percent(self) -> None:
        assert StatusSnapshot.from_report({"cooling_fan_speed": "10"}).part_fan == 67

    def test_hardware_error(self) -> None:
        snap = StatusSnapshot.from_report({"print_error": 50348044})
        assert snap.has_hardware_error
        assert snap.print_error == 50348044

    def test_garbage_numbers_default(self) -> None:
        snap = StatusSnapshot.from_report({"mc_percent": "n/a", "bed_temper": "hot"})
        assert snap.percent == 0
        assert snap.bed_temp is None

    def test_to_dict_serialisable(self) -> None:
        data = StatusSnapshot.from_report({"gcode_state": "PAUSE"}).to_dict()
        assert data["state"] == "PAUSE"
        assert data["ams_trays"] == []


class TestAmsTrays:
    def test_global_slot_numbering(self) -> None:
        report = {
            "ams": {
                "ams": [
                    {"id": "0", "tray": [
                        {"id": "0", "tray_type": "PLA", "tray_color": "FF0000FF", "remain": 80},
                        {"id": "1"},
                    ]},
                    {"id": "1", "tray": [
                        {"id": "2", "tray_type": "PETG", "tray_color": "00FF00FF"},
                    ]},
                ]
            }
        }
        trays = parse_ams_trays(report)
        assert [t.global_slot for t in trays] == [0, 1, 6]
        assert trays[0].filament_type == "PLA"
        assert trays[0].color == "#FF0000FF"
        assert trays[0].remaining_percent == 80
        assert trays[1].filament_type == "empty"
        assert trays[1].color == "unknown"
        assert trays[2].to_dict()["color"] == "#00FF00FF"

    def test_missing_or_malformed(self) -> None:
        assert parse_ams_trays({}) == []
        assert parse_ams_trays({"ams": "broken"}) == []
        assert parse_ams_trays({"ams": {"ams": ["x", {"id": 0, "tray": ["y"]}]}}) == []
