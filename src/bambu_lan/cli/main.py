"""bambu-lan CLI: control a Bambu Lab printer on the local network.

Every printer command supports ``--json`` for machine-parseable output.
Connection settings come from ``~/.bambu_lan/config.yaml`` (or
``--config``) and the ``BAMBU_LAB_*`` environment variables.

``bambu-lan serve`` starts the MCP server.
"""

from __future__ import annotations

import contextlib
import logging
import sys
import time
from pathlib import Path
from typing import Any, Iterator, Optional

import click

from bambu_lan import camera, ftps
from bambu_lan.cli.output import (
    format_action,
    format_error,
    format_monitor_summary,
    format_response,
    format_status,
    progress_bar,
)
from bambu_lan.config import AppConfig, MonitorConfig, load_config
from bambu_lan.errors import GcodeSafetyError, PrinterError
from bambu_lan.log_config import configure_logging
from bambu_lan.monitor import PrintMonitor
from bambu_lan.protocol.client import BambuMQTTClient
from bambu_lan.vision.registry import create_vision_provider

logger = logging.getLogger(__name__)


def _load(ctx: click.Context) -> AppConfig:
    if "config" not in ctx.obj:
        path = ctx.obj.get("config_path")
        ctx.obj["config"] = load_config(Path(path) if path else None)
    return ctx.obj["config"]


@contextlib.contextmanager
def _printer_session(ctx: click.Context) -> Iterator[BambuMQTTClient]:
    """Connect for the duration of one command."""
    config = _load(ctx).printer
    config.require_connection()
    client = BambuMQTTClient(config)
    client.connect()
    try:
        yield client
    finally:
        client.disconnect()


def _fail(message: str, json_mode: bool, code: str = "ERROR") -> None:
    click.echo(format_error(message, code, json_mode=json_mode))
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="BAMBU_LAN_CONFIG",
    type=click.Path(dir_okay=False),
    help="Config file (default ~/.bambu_lan/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr.")
@click.version_option(package_name="bambu-lan")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """bambu-lan: LAN control and failure monitoring for Bambu Lab printers."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    configure_logging()


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--refresh", is_flag=True, help="Request a full status push first (slow; use sparingly).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, refresh: bool, json_mode: bool) -> None:
    """Show printer state, progress, temperatures and AMS trays."""
    try:
        with _printer_session(ctx) as client:
            if refresh:
                client.request_status()
            else:
                # Let the first unsolicited report arrive.
                time.sleep(client.config.settle_seconds)
            raw = client.get_cached_status()
            snapshot = client.get_status_snapshot()
        click.echo(format_status(snapshot.to_dict(), age_seconds=raw.get("_age_seconds"), json_mode=json_mode))
    except PrinterError as exc:
        _fail(f"Failed to get printer status: {exc}", json_mode)


# ---------------------------------------------------------------------------
# Print control
# ---------------------------------------------------------------------------


def _simple_command(ctx: click.Context, action: str, json_mode: bool) -> None:
    try:
        with _printer_session(ctx) as client:
            response = getattr(client, f"{action}_print")()
        click.echo(format_action(action, {"message": f"{action.capitalize()} acknowledged.", "response": response}, json_mode=json_mode))
    except PrinterError as exc:
        _fail(f"{action.capitalize()} failed: {exc}", json_mode)


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def stop(ctx: click.Context, yes: bool, json_mode: bool) -> None:
    """Stop the current print (cannot be resumed)."""
    if not yes and not json_mode:
        click.confirm("Stop the current print?", abort=True)
    _simple_command(ctx, "stop", json_mode)


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def pause(ctx: click.Context, json_mode: bool) -> None:
    """Pause the current print."""
    _simple_command(ctx, "pause", json_mode)


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def resume(ctx: click.Context, json_mode: bool) -> None:
    """Resume a paused print."""
    _simple_command(ctx, "resume", json_mode)


@cli.command()
@click.argument("level")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def speed(ctx: click.Context, level: str, json_mode: bool) -> None:
    """Set print speed: silent, standard, sport, ludicrous, or 1-166 (%)."""
    try:
        with _printer_session(ctx) as client:
            response = client.set_print_speed(level)
        click.echo(format_action("speed", {"message": f"Speed set to {level}.", "response": response}, json_mode=json_mode))
    except ValueError as exc:
        _fail(str(exc), json_mode, code="INVALID_ARGS")
    except PrinterError as exc:
        _fail(f"Failed to set speed: {exc}", json_mode)


@cli.command()
@click.argument("commands", nargs=-1, required=True)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def gcode(ctx: click.Context, commands: tuple, json_mode: bool) -> None:
    """Send G-code commands (each argument is one line).

    Dangerous commands (M112, M500-M502, M997, M999) and out-of-range
    temperatures are refused.
    """
    try:
        with _printer_session(ctx) as client:
            response = client.send_gcode("\n".join(commands))
        click.echo(format_action("gcode", {"message": f"Sent {len(commands)} line(s).", "response": response}, json_mode=json_mode))
    except GcodeSafetyError as exc:
        _fail(str(exc), json_mode, code="GCODE_BLOCKED")
    except ValueError as exc:
        _fail(str(exc), json_mode, code="INVALID_ARGS")
    except PrinterError as exc:
        _fail(f"Failed to send G-code: {exc}", json_mode)


@cli.command()
@click.argument("state", type=click.Choice(["on", "off"]))
@click.option("--node", default="chamber_light", help="Light node (chamber_light, work_light).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def light(ctx: click.Context, state: str, node: str, json_mode: bool) -> None:
    """Turn a printer light on or off."""
    try:
        with _printer_session(ctx) as client:
            response = client.set_light(state == "on", node=node)
        click.echo(format_action("light", {"message": f"{node} {state}.", "response": response}, json_mode=json_mode))
    except PrinterError as exc:
        _fail(f"Failed to set light: {exc}", json_mode)


# ---------------------------------------------------------------------------
# Camera and files
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--output", "-o", "output_path", default=None, type=click.Path(dir_okay=False), help="Where to save the JPEG.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def snapshot(ctx: click.Context, output_path: Optional[str], json_mode: bool) -> None:
    """Capture one frame from the printer camera."""
    try:
        config = _load(ctx).printer
        config.require_connection()
        frame = camera.make_frame_source(config)()
        path = camera.save_frame(frame, output_path)
        click.echo(format_action("snapshot", {"message": f"Saved {len(frame)} bytes to {path}", "path": path, "size_bytes": len(frame)}, json_mode=json_mode))
    except PrinterError as exc:
        _fail(f"Snapshot failed: {exc}", json_mode)
    except OSError as exc:
        _fail(f"Could not save snapshot: {exc}", json_mode, code="FILE_ERROR")


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "remote_name", default=None, help="Name on the SD card.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def upload(ctx: click.Context, file_path: str, remote_name: Optional[str], json_mode: bool) -> None:
    """Upload a .gcode, .3mf or .stl file to the printer."""
    try:
        config = _load(ctx).printer
        config.require_connection()
        result = ftps.upload_file(config, file_path, remote_name)
        click.echo(format_action("upload", result.to_dict(), json_mode=json_mode))
    except PrinterError as exc:
        _fail(f"Failed to upload file '{file_path}': {exc}", json_mode)


@cli.command("print")
@click.argument("file_name")
@click.option("--plate", default=1, type=int, help="Plate number inside a 3MF project.")
@click.option("--no-ams", is_flag=True, help="Print from the external spool.")
@click.option("--ams-mapping", default=None, help="Comma-separated AMS slots per file colour, e.g. 0,2,-1.")
@click.option("--timelapse", is_flag=True, help="Record a timelapse.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def print_cmd(
    ctx: click.Context,
    file_name: str,
    plate: int,
    no_ams: bool,
    ams_mapping: Optional[str],
    timelapse: bool,
    json_mode: bool,
) -> None:
    """Start printing FILE_NAME from the printer's SD card."""
    try:
        mapping = [int(v) for v in ams_mapping.split(",")] if ams_mapping else None
        with _printer_session(ctx) as client:
            response = client.start_print_file(
                file_name,
                plate=plate,
                use_ams=not no_ams,
                ams_mapping=mapping,
                timelapse=timelapse,
            )
        click.echo(format_action("print", {"message": f"Started {file_name}.", "response": response}, json_mode=json_mode))
    except ValueError as exc:
        _fail(str(exc), json_mode, code="INVALID_ARGS")
    except PrinterError as exc:
        _fail(f"Failed to start print: {exc}", json_mode)


# ---------------------------------------------------------------------------
# monitor
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--interval", "-i", default=None, type=float, help="Seconds between checks (minimum 10).")
@click.option("--strikes", default=None, type=int, help="Consecutive failure verdicts before stopping the print.")
@click.option("--min-layer", default=None, type=int, help="First layer checked by the vision model.")
@click.option("--snapshot-dir", default=None, type=click.Path(file_okay=False), help="Keep captured frames here.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON on completion.")
@click.pass_context
def monitor(
    ctx: click.Context,
    interval: Optional[float],
    strikes: Optional[int],
    min_layer: Optional[int],
    snapshot_dir: Optional[str],
    json_mode: bool,
) -> None:
    """Watch the running print and stop it when a failure is detected.

    Runs until the print finishes, a failure stops it, or Ctrl-C.  Exits
    with code 1 if a failure was detected.
    """
    try:
        app = _load(ctx)
        overrides: dict[str, Any] = {
            "interval_seconds": interval,
            "fail_strikes": strikes,
            "min_layer_for_vision": min_layer,
            "snapshot_dir": snapshot_dir,
        }
        given = {k: v for k, v in overrides.items() if v is not None}
        policy = MonitorConfig.from_dict({**app.monitor.to_dict(), **given})
        vision = create_vision_provider(app.vision)

        with _printer_session(ctx) as client:
            watcher = PrintMonitor(client, camera.make_frame_source(app.printer), vision, policy)
            watcher.start()
            if not json_mode:
                click.echo(
                    f"Monitoring every {policy.interval_seconds:g}s with {vision.name}/{vision.model}; "
                    f"stopping after {policy.fail_strikes} consecutive failure verdicts. Ctrl-C to quit."
                )
            last_cycle = 0
            try:
                while watcher.is_active:
                    time.sleep(1)
                    state = watcher.get_state()
                    if not json_mode and state.cycle_count != last_cycle:
                        last_cycle = state.cycle_count
                        verdict = state.last_verdict.reason if state.last_verdict else "-"
                        click.echo(
                            f"#{state.cycle_count} {state.print_state} "
                            f"{progress_bar(state.print_percent, width=10)} "
                            f"layer {state.layer}/{state.total_layers} "
                            f"strikes {state.fail_strikes}/{policy.fail_strikes}: {verdict}"
                        )
            except KeyboardInterrupt:
                pass
            summary = watcher.stop()

        click.echo(format_monitor_summary(summary.to_dict(), json_mode=json_mode))
        if summary.failure_detected:
            sys.exit(1)
    except PrinterError as exc:
        _fail(f"Monitor failed: {exc}", json_mode)


# ---------------------------------------------------------------------------
# config / serve
# ---------------------------------------------------------------------------


@cli.command("config")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def show_config(ctx: click.Context, json_mode: bool) -> None:
    """Show the effective printer and monitor settings (secrets masked)."""
    try:
        app = _load(ctx)
    except PrinterError as exc:
        _fail(str(exc), json_mode, code="CONFIG_ERROR")
        return
    data = {
        "printer": app.printer.to_dict(),
        "monitor": app.monitor.to_dict(),
        "vision_provider": app.vision.provider or "auto",
    }
    click.echo(format_response("success", data=data, json_mode=json_mode))


@cli.command()
def serve() -> None:
    """Start the bambu-lan MCP server on stdio."""
    from bambu_lan.server import main as _server_main

    _server_main()


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
