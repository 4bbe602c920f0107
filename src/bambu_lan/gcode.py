"""G-code safety validator for raw commands sent over MQTT.

Raw G-code goes to the printer through ``print.gcode_line`` with no
firmware-side confirmation, so every line passes through this validator
first.

**Blocked** (the command is refused):
    - Emergency stop, EEPROM and firmware commands, which have dedicated
      tools or must never be issued remotely
    - Hotend temperatures above 300C, bed temperatures above 120C

**Warned** (sent, but reported back to the caller):
    - Homing, stepper disable, movement below the bed plane

Usage::

    result = validate_gcode("G28\\nM104 S220")
    if not result.valid:
        print("Blocked:", result.errors)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class GCodeValidationResult:
    """Outcome of validating one or more G-code lines.

    Attributes:
        valid: ``True`` when nothing was blocked.
        commands: Cleaned lines that are safe to send.
        warnings: Non-blocking issues.
        errors: Reasons lines were blocked.
        blocked_commands: The raw lines that were refused.
    """

    valid: bool = True
    commands: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    blocked_commands: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Safety limits
# ---------------------------------------------------------------------------

MAX_NOZZLE_TEMP: float = 300.0
MAX_BED_TEMP: float = 120.0

_HOTEND_TEMP_COMMANDS: set[str] = {"M104", "M109"}
_BED_TEMP_COMMANDS: set[str] = {"M140", "M190"}

_BLOCKED_COMMANDS: dict[str, str] = {
    "M112": "Emergency stop (M112) is blocked -- use the stop command instead",
    "M502": "Factory reset (M502) is blocked -- this overwrites calibration",
    "M500": "Save settings to EEPROM (M500) is blocked",
    "M501": "Restore settings from EEPROM (M501) is blocked",
    "M997": "Firmware update (M997) is blocked",
    "M999": "Restart after emergency stop (M999) is blocked",
}

_WARN_COMMANDS: dict[str, str] = {
    "G28": "G28 will home all axes -- ensure the bed is clear",
    "M18": "M18 will disable stepper motors -- the part may shift",
    "M84": "M84 will disable stepper motors -- the part may shift",
}

_MOVE_COMMANDS: set[str] = {"G0", "G1", "G2", "G3"}

# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

_PARAM_RE = re.compile(r"([A-Za-z])\s*([+-]?\d*\.?\d+)")
_CMD_RE = re.compile(r"^([A-Za-z])\s*(\d+(?:\.\d+)?)")
_LINE_NUMBER_RE = re.compile(r"^[Nn]\d+\s*")


def _strip_comment(line: str) -> str:
    idx = line.find(";")
    if idx != -1:
        line = line[:idx]
    return line.strip()


def _parse_command_word(line: str) -> str | None:
    """Return the upper-case command word (``"M104"``) or ``None``."""
    m = _CMD_RE.match(line)
    if m is None:
        return None
    number = m.group(2)
    num_val = float(number)
    number = str(int(num_val)) if num_val == int(num_val) else str(num_val)
    return f"{m.group(1).upper()}{number}"


def _extract_param(line: str, letter: str) -> float | None:
    upper = letter.upper()
    for m in _PARAM_RE.finditer(line[1:]):
        if m.group(1).upper() == upper:
            return float(m.group(2))
    return None


def _validate_single(raw_line: str, result: GCodeValidationResult) -> None:
    cleaned = _strip_comment(raw_line)
    if not cleaned:
        return
    cleaned = _LINE_NUMBER_RE.sub("", cleaned)

    cmd = _parse_command_word(cleaned)
    if cmd is None:
        result.errors.append(f"Unrecognised command format blocked: {cleaned!r}")
        result.blocked_commands.append(cleaned)
        return

    if cmd in _BLOCKED_COMMANDS:
        result.errors.append(_BLOCKED_COMMANDS[cmd])
        result.blocked_commands.append(cleaned)
        return

    if cmd in _WARN_COMMANDS:
        result.warnings.append(_WARN_COMMANDS[cmd])

    limit = None
    label = ""
    if cmd in _HOTEND_TEMP_COMMANDS:
        limit, label = MAX_NOZZLE_TEMP, "nozzle"
    elif cmd in _BED_TEMP_COMMANDS:
        limit, label = MAX_BED_TEMP, "bed"
    if limit is not None:
        temp = _extract_param(cleaned, "S")
        if temp is not None and temp < 0:
            result.errors.append(f"{cmd} S{temp:g} has a negative temperature")
            result.blocked_commands.append(cleaned)
            return
        if temp is not None and temp > limit:
            result.errors.append(
                f"{cmd} S{temp:g} exceeds the safe {label} limit of {limit:g}C"
            )
            result.blocked_commands.append(cleaned)
            return

    if cmd in _MOVE_COMMANDS:
        z_val = _extract_param(cleaned, "Z")
        if z_val is not None and z_val < 0:
            result.warnings.append(f"{cmd} moves Z to {z_val:g}, below the bed plane")

    result.commands.append(cleaned)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_gcode(commands: str | list[str]) -> GCodeValidationResult:
    """Parse and validate G-code for safety.

    Args:
        commands: A newline-separated string or a list of lines.

    Examples:
        >>> validate_gcode("G28").valid
        True
        >>> validate_gcode("M104 S999").valid
        False
    """
    if isinstance(commands, str):
        lines = commands.splitlines()
    else:
        lines = [line for item in commands for line in item.splitlines()]

    result = GCodeValidationResult()
    for raw_line in lines:
        _validate_single(raw_line, result)
    result.valid = not result.errors
    return result
