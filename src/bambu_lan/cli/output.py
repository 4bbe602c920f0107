"""Output formatting for the bambu-lan CLI.

Every formatter accepts a ``json_mode`` flag:
    - ``True``  → JSON envelope ``{status, data, error}`` for scripts and agents
    - ``False`` → Rich-formatted text for humans
"""

from __future__ import annotations

import json
import math
from io import StringIO
from typing import Any, Dict, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------


def format_minutes(minutes: Optional[int]) -> str:
    """Convert minutes to ``Xh Ym``."""
    if minutes is None or minutes < 0:
        return "N/A"
    hours, mins = divmod(int(minutes), 60)
    return f"{hours}h {mins}m" if hours else f"{mins}m"


def format_bytes(size_bytes: Optional[Union[int, float]]) -> str:
    """Convert bytes to ``1.2 MB``."""
    if size_bytes is None or size_bytes < 0:
        return "N/A"
    if size_bytes == 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB")
    exponent = min(int(math.log(size_bytes, 1024)), len(units) - 1)
    value = size_bytes / (1024 ** exponent)
    if exponent == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {units[exponent]}"


def format_temp(actual: Optional[float], target: Optional[float]) -> str:
    """Format temperatures like ``214.8°C → 220.0°C``."""
    actual_str = f"{actual:.1f}°C" if actual is not None else "N/A"
    target_str = f"{target:.1f}°C" if target else "off"
    return f"{actual_str} → {target_str}"


def progress_bar(completion: Optional[float], width: int = 20) -> str:
    """ASCII progress bar: ``[████████░░░░] 42%``."""
    completion = max(0.0, min(100.0, completion or 0.0))
    filled = int(round(width * completion / 100))
    bar = "█" * filled + "░" * (width - filled)
    return f"[{bar}] {completion:.0f}%"


def _render(renderable: Any) -> str:
    buf = StringIO()
    console = Console(file=buf, force_terminal=True, width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: Dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return json.dumps(envelope, indent=2, default=str)

    if status == "error" and error:
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{error.get('code', 'UNKNOWN')}]: ", style="red")
        t.append(error.get("message", "An unknown error occurred."))
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        lines = [f"[bold]{k}:[/bold] {v}" for k, v in data.items()]
        return _render(Panel("\n".join(lines), border_style="green"))

    return f"Status: {status}"


def format_error(message: str, code: str = "ERROR", *, json_mode: bool = False) -> str:
    """Shortcut for a standard error response."""
    return format_response("error", error={"code": code, "message": message}, json_mode=json_mode)


# ---------------------------------------------------------------------------
# Printer status
# ---------------------------------------------------------------------------

_STATE_COLORS = {
    "IDLE": "green",
    "RUNNING": "yellow",
    "PREPARE": "yellow",
    "PAUSE": "yellow",
    "FINISH": "green",
    "FAILED": "red",
}


def format_status(
    status: Dict[str, Any],
    *,
    age_seconds: Optional[int] = None,
    json_mode: bool = False,
) -> str:
    """Format a ``StatusSnapshot.to_dict()``."""
    if json_mode:
        return format_response(
            "success", data={"status": status, "age_seconds": age_seconds}, json_mode=True
        )

    state = status.get("state", "UNKNOWN")
    color = _STATE_COLORS.get(state, "white")

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("State", f"[{color}]{state}[/{color}]")
    if status.get("print_error"):
        table.add_row("Error", f"[red]{status['print_error']}[/red]")
    if status.get("file_name"):
        table.add_row("File", str(status["file_name"]))
    table.add_row("Progress", progress_bar(status.get("percent")))
    if status.get("total_layers"):
        table.add_row("Layer", f"{status.get('layer', 0)} / {status['total_layers']}")
    if status.get("remaining_minutes") is not None:
        table.add_row("Remaining", format_minutes(status["remaining_minutes"]))
    table.add_row("Nozzle", format_temp(status.get("nozzle_temp"), status.get("nozzle_target")))
    table.add_row("Bed", format_temp(status.get("bed_temp"), status.get("bed_target")))
    if status.get("part_fan") is not None:
        table.add_row("Part fan", f"{status['part_fan']}%")
    for tray in status.get("ams_trays") or []:
        label = f"AMS {tray['unit'] + 1}.{tray['slot'] + 1}"
        value = f"{tray.get('filament_type') or 'empty'}"
        if tray.get("remaining_percent") is not None:
            value += f" ({tray['remaining_percent']}%)"
        table.add_row(label, value)
    if age_seconds is not None:
        table.add_row("Updated", f"{age_seconds}s ago")

    return _render(Panel(table, title="Printer Status", border_style="blue"))


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def format_action(action: str, result: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format the result of a control command, upload or snapshot."""
    if json_mode:
        return format_response("success", data={"action": action, **result}, json_mode=True)

    message = result.get("message") or f"{action.capitalize()} sent."
    style_map = {
        "stop": ("red", "bold red"),
        "pause": ("yellow", "bold yellow"),
        "resume": ("green", "bold green"),
        "print": ("green", "bold green"),
        "upload": ("green", "bold green"),
    }
    border, text_style = style_map.get(action, ("blue", "bold blue"))
    return _render(Panel(Text(message, style=text_style), title=action.capitalize(), border_style=border))


def format_monitor_summary(summary: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format ``MonitorSummary.to_dict()``."""
    if json_mode:
        return format_response("success", data={"summary": summary}, json_mode=True)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Cycles", str(summary.get("cycles_completed", 0)))
    table.add_row("Ended", str(summary.get("stop_reason") or "-"))
    table.add_row("Last state", str(summary.get("last_print_state") or "-"))
    if summary.get("failure_detected"):
        table.add_row("Failure", f"[red]{summary.get('failure_reason')}[/red]")
        sent = "[green]yes[/green]" if summary.get("abort_sent") else "[red]NO - check the printer[/red]"
        table.add_row("Stop sent", sent)
    errors = summary.get("errors") or []
    if errors:
        table.add_row("Errors", f"{len(errors)} (last: {errors[-1]})")

    border = "red" if summary.get("failure_detected") else "green"
    return _render(Panel(table, title="Monitor Summary", border_style=border))
