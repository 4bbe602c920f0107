"""Typed views over the cached ``print`` report.

The cache itself stays a plain dict because the firmware adds fields
between releases; these helpers only pull out what callers commonly
need and tolerate any field being absent.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


class GcodeState(str, enum.Enum):
    """Values of the ``gcode_state`` field."""

    IDLE = "IDLE"
    PREPARE = "PREPARE"
    SLICING = "SLICING"
    RUNNING = "RUNNING"
    PAUSE = "PAUSE"
    FINISH = "FINISH"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> GcodeState:
        if not value:
            return cls.UNKNOWN
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class AmsTray:
    """One filament slot of an AMS unit."""

    unit: int
    slot: int
    global_slot: int
    filament_type: str
    color_hex: Optional[str] = None
    remaining_percent: Optional[int] = None

    @property
    def color(self) -> str:
        return f"#{self.color_hex}" if self.color_hex else "unknown"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["color"] = self.color
        return data


def parse_ams_trays(status: Dict[str, Any]) -> List[AmsTray]:
    """Flatten ``ams.ams[].tray[]`` into :class:`AmsTray` rows.

    The global slot is ``unit * 4 + slot``, the index used by
    ``ams_mapping`` and ``ams_change_filament``.
    """
    ams = status.get("ams")
    if not isinstance(ams, dict):
        return []
    trays: List[AmsTray] = []
    for unit in ams.get("ams") or []:
        if not isinstance(unit, dict):
            continue
        unit_id = _int(unit.get("id"))
        for tray in unit.get("tray") or []:
            if not isinstance(tray, dict):
                continue
            slot = _int(tray.get("id"))
            remain = tray.get("remain")
            trays.append(AmsTray(
                unit=unit_id,
                slot=slot,
                global_slot=unit_id * 4 + slot,
                filament_type=tray.get("tray_type") or "empty",
                color_hex=tray.get("tray_color") or None,
                remaining_percent=_int(remain) if remain is not None else None,
            ))
    return trays


@dataclass
class StatusSnapshot:
    """The subset of the cached report the monitor and CLI act on."""

    state: GcodeState = GcodeState.UNKNOWN
    percent: int = 0
    layer: int = 0
    total_layers: int = 0
    remaining_minutes: Optional[int] = None
    print_error: int = 0
    nozzle_temp: Optional[float] = None
    nozzle_target: Optional[float] = None
    bed_temp: Optional[float] = None
    bed_target: Optional[float] = None
    chamber_temp: Optional[float] = None
    part_fan: Optional[int] = None
    aux_fan: Optional[int] = None
    chamber_fan: Optional[int] = None
    speed_level: Optional[int] = None
    file_name: Optional[str] = None
    lights: Dict[str, str] = field(default_factory=dict)
    ams_trays: List[AmsTray] = field(default_factory=list)

    @property
    def has_hardware_error(self) -> bool:
        return self.print_error != 0

    @classmethod
    def from_report(cls, status: Dict[str, Any]) -> StatusSnapshot:
        lights = {
            str(item.get("node")): str(item.get("mode"))
            for item in status.get("lights_report") or []
            if isinstance(item, dict) and item.get("node")
        }
        remaining = status.get("mc_remaining_time")
        speed = status.get("spd_lvl")
        return cls(
            state=GcodeState.parse(status.get("gcode_state")),
            percent=_int(status.get("mc_percent")),
            layer=_int(status.get("layer_num")),
            total_layers=_int(status.get("total_layer_num")),
            remaining_minutes=_int(remaining) if remaining is not None else None,
            print_error=_int(status.get("print_error")),
            nozzle_temp=_float(status.get("nozzle_temper")),
            nozzle_target=_float(status.get("nozzle_target_temper")),
            bed_temp=_float(status.get("bed_temper")),
            bed_target=_float(status.get("bed_target_temper")),
            chamber_temp=_float(status.get("chamber_temper")),
            part_fan=_fan(status.get("cooling_fan_speed")),
            aux_fan=_fan(status.get("big_fan1_speed")),
            chamber_fan=_fan(status.get("big_fan2_speed")),
            speed_level=_int(speed) if speed is not None else None,
            file_name=status.get("subtask_name") or status.get("gcode_file") or None,
            lights=lights,
            ams_trays=parse_ams_trays(status),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["ams_trays"] = [t.to_dict() for t in self.ams_trays]
        return data


def _fan(value: Any) -> Optional[int]:
    """Fan speeds are reported as a 0-15 step; convert to percent."""
    if value is None:
        return None
    return round(_int(value) / 15 * 100)
