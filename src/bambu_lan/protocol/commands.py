"""Command catalogue for the Bambu LAN MQTT request channel.

Every command the client can send is a :class:`CommandKind` member whose
value is the ``(family, command)`` pair used in the JSON envelope::

    {"print": {"sequence_id": "3", "command": "pause"}}

:data:`PARAM_SHAPES` maps each kind to the parameter names it accepts, so
an unknown or misspelled parameter is rejected when the envelope is
built instead of being silently ignored by the printer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional


class CommandKind(enum.Enum):
    """Known request-channel commands as ``(family, command)`` pairs."""

    PUSH_ALL = ("pushing", "pushall")
    STOP = ("print", "stop")
    PAUSE = ("print", "pause")
    RESUME = ("print", "resume")
    PRINT_SPEED = ("print", "print_speed")
    GCODE_LINE = ("print", "gcode_line")
    GCODE_FILE = ("print", "gcode_file")
    PROJECT_FILE = ("print", "project_file")
    AMS_CHANGE_FILAMENT = ("print", "ams_change_filament")
    UNLOAD_FILAMENT = ("print", "unload_filament")
    SET_ACCESSORIES = ("print", "set_accessories")
    SKIP_OBJECTS = ("print", "skip_objects")
    LED_CONTROL = ("system", "ledctrl")
    CAMERA_RECORD = ("camera", "ipcam_record_set")
    CAMERA_TIMELAPSE = ("camera", "ipcam_timelapse")
    GET_VERSION = ("info", "get_version")
    UPGRADE_START = ("upgrade", "start")

    @property
    def family(self) -> str:
        """Top-level namespace of the envelope, also used for response matching."""
        return self.value[0]

    @property
    def command(self) -> str:
        return self.value[1]

    @property
    def label(self) -> str:
        """Dotted name used in log and error messages, e.g. ``print.stop``."""
        return f"{self.family}.{self.command}"


@dataclass(frozen=True)
class ParamShape:
    """Accepted parameter names for one command kind."""

    required: FrozenSet[str] = frozenset()
    optional: FrozenSet[str] = frozenset()

    @property
    def allowed(self) -> FrozenSet[str]:
        return self.required | self.optional


def _shape(required: tuple = (), optional: tuple = ()) -> ParamShape:
    return ParamShape(frozenset(required), frozenset(optional))


_PRINT_OPTIONS = (
    "bed_type",
    "bed_levelling",
    "bed_leveling",
    "flow_cali",
    "vibration_cali",
    "layer_inspect",
    "timelapse",
    "use_ams",
)

PARAM_SHAPES: Dict[CommandKind, ParamShape] = {
    CommandKind.PUSH_ALL: _shape(),
    CommandKind.STOP: _shape(),
    CommandKind.PAUSE: _shape(),
    CommandKind.RESUME: _shape(),
    CommandKind.PRINT_SPEED: _shape(("param",)),
    CommandKind.GCODE_LINE: _shape(("param",)),
    CommandKind.GCODE_FILE: _shape(("param",), ("subtask_name",) + _PRINT_OPTIONS),
    CommandKind.PROJECT_FILE: _shape(
        ("param", "file", "url"),
        (
            "subtask_name",
            "project_id",
            "profile_id",
            "task_id",
            "subtask_id",
            "md5",
            "ams_mapping",
        ) + _PRINT_OPTIONS,
    ),
    CommandKind.AMS_CHANGE_FILAMENT: _shape(("target",), ("curr_temp", "tar_temp")),
    CommandKind.UNLOAD_FILAMENT: _shape(),
    CommandKind.SET_ACCESSORIES: _shape(("accessory_type", "nozzle_diameter")),
    CommandKind.SKIP_OBJECTS: _shape(("obj_list",)),
    CommandKind.LED_CONTROL: _shape(
        ("led_node", "led_mode"),
        ("led_on_time", "led_off_time", "loop_times", "interval_time"),
    ),
    CommandKind.CAMERA_RECORD: _shape(("control",)),
    CommandKind.CAMERA_TIMELAPSE: _shape(("control",)),
    CommandKind.GET_VERSION: _shape(),
    CommandKind.UPGRADE_START: _shape(("module", "version", "url")),
}

# Every kind must have a shape; checked at import so a new member cannot
# be added without one.
_missing = set(CommandKind) - set(PARAM_SHAPES)
if _missing:
    raise RuntimeError(f"No parameter shape for: {sorted(k.name for k in _missing)}")


def build_command(
    kind: CommandKind,
    sequence_id: int,
    params: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the JSON envelope for *kind*.

    Raises:
        ValueError: If *params* contains a name the command does not
            accept, or omits a required one.
    """
    params = dict(params or {})
    shape = PARAM_SHAPES[kind]

    unknown = set(params) - shape.allowed
    if unknown:
        raise ValueError(
            f"Unknown parameter(s) for {kind.label}: {', '.join(sorted(unknown))}"
        )
    missing = shape.required - set(params)
    if missing:
        raise ValueError(
            f"Missing parameter(s) for {kind.label}: {', '.join(sorted(missing))}"
        )

    body: Dict[str, Any] = {
        "sequence_id": str(sequence_id),
        "command": kind.command,
    }
    body.update(params)
    return {kind.family: body}
