"""Autonomous print monitor with vision-based failure detection.

Every cycle the monitor reads the cached MQTT status, grabs a camera
frame and, once the print is past the first few layers, asks a
:class:`~bambu_lan.vision.base.VisionProvider` whether the print has
failed.  Two signals can stop a print:

* A printer-reported error (non-zero ``print_error`` or a ``FAILED``
  state).  This stops the print on the first cycle it is seen.
* Vision failure verdicts.  Single frames are noisy, so the print is only
  stopped after ``fail_strikes`` consecutive failure verdicts; one OK
  verdict resets the count.

Camera and vision errors are recorded and logged but never stop the
print or the monitor.

The monitor depends only on :class:`PrinterLink`, a frame source callable
and a vision provider, so tests can drive it with fakes::

    monitor = PrintMonitor(client, make_frame_source(cfg), provider)
    monitor.start(MonitorConfig(interval_seconds=60))
    ...
    summary = monitor.stop()
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from bambu_lan.config import MonitorConfig
from bambu_lan.errors import ClassificationError, MonitorError, PrinterError
from bambu_lan.protocol.status import GcodeState, StatusSnapshot
from bambu_lan.vision.base import VisionProvider, VisionVerdict
from bambu_lan.vision.prompts import build_vision_prompt

logger = logging.getLogger(__name__)

# Upper bound on how long stop() waits for an in-flight cycle.
_STOP_JOIN_TIMEOUT = 180.0


class PrinterLink(Protocol):
    """The part of the MQTT client the monitor needs."""

    def is_connected(self) -> bool: ...

    def get_cached_status(self) -> Dict[str, Any]: ...

    def stop_print(self) -> Dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class MonitorState:
    """Snapshot of one monitoring run.

    ``stop_reason`` is ``"requested"``, ``"completed"`` or ``"aborted"``
    once the run has ended.
    """

    active: bool = False
    cycle_count: int = 0
    fail_strikes: int = 0
    last_verdict: Optional[VisionVerdict] = None
    last_frame_path: Optional[str] = None
    last_frame_size: Optional[int] = None
    last_frame_at: Optional[float] = None
    failure_detected: bool = False
    failure_reason: Optional[str] = None
    abort_sent: bool = False
    print_state: Optional[str] = None
    print_percent: Optional[int] = None
    layer: Optional[int] = None
    total_layers: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    stop_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)


@dataclass
class MonitorSummary:
    """Terminal report returned by :meth:`PrintMonitor.stop`.

    ``abort_sent`` is only true if the stop command was actually
    delivered.  ``failure_detected`` with ``abort_sent`` false means the
    print may still be running and needs manual attention.
    """

    cycles_completed: int
    failure_detected: bool
    failure_reason: Optional[str]
    abort_sent: bool
    last_print_state: Optional[str]
    last_print_percent: Optional[int]
    errors: List[str]
    stop_reason: Optional[str] = None

    @classmethod
    def from_state(cls, state: MonitorState) -> MonitorSummary:
        return cls(
            cycles_completed=state.cycle_count,
            failure_detected=state.failure_detected,
            failure_reason=state.failure_reason,
            abort_sent=state.abort_sent,
            last_print_state=state.print_state,
            last_print_percent=state.print_percent,
            errors=list(state.errors),
            stop_reason=state.stop_reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class PrintMonitor:
    """Periodic status + vision supervisor for one printer.

    Args:
        printer: Connected MQTT client (or anything matching
            :class:`PrinterLink`).
        frame_source: Zero-argument callable returning one JPEG frame.
            Expected to raise :class:`~bambu_lan.errors.PrinterError`
            subclasses on failure.
        vision: Backend that classifies frames.
        config: Default policy used when :meth:`start` is not given one.
    """

    def __init__(
        self,
        printer: PrinterLink,
        frame_source: Callable[[], bytes],
        vision: VisionProvider,
        config: Optional[MonitorConfig] = None,
    ) -> None:
        self._printer = printer
        self._frame_source = frame_source
        self._vision = vision
        self._config = config or MonitorConfig()

        self._state = MonitorState()
        self._lock = threading.Lock()
        # Held for the whole of a cycle; cycles never overlap.
        self._cycle_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def vision(self) -> VisionProvider:
        return self._vision

    # -- public API ----------------------------------------------------------

    def start(
        self,
        config: Optional[MonitorConfig] = None,
        *,
        background: bool = True,
    ) -> MonitorState:
        """Begin a new monitoring run.

        The first cycle runs immediately on the background thread, then
        every ``interval_seconds``.  With ``background=False`` no thread
        is started and the caller drives cycles with :meth:`run_cycle`.

        :raises MonitorError: If a run is already active.
        """
        with self._lock:
            if self._state.active:
                raise MonitorError(
                    "Monitor is already running. Stop it first or check its status."
                )
            if config is not None:
                self._config = config
            if self._config.snapshot_dir:
                os.makedirs(self._config.snapshot_dir, exist_ok=True)

            self._state = MonitorState(active=True, started_at=time.time())
            self._stop_event = threading.Event()
            self._thread = None
            if background:
                self._thread = threading.Thread(
                    target=self._run,
                    args=(self._stop_event,),
                    daemon=True,
                    name="bambu-print-monitor",
                )

        logger.info(
            "Monitor started: %ss interval, vision from layer %s, stop after %s strikes, provider %s/%s",
            self._config.interval_seconds,
            self._config.min_layer_for_vision,
            self._config.fail_strikes,
            self._vision.name,
            self._vision.model,
        )
        if self._thread is not None:
            self._thread.start()
        return self.get_state()

    def stop(self) -> MonitorSummary:
        """End the run and return its summary.

        An in-flight cycle is allowed to finish first.  Calling this on
        a monitor that already stopped itself returns that run's summary.
        """
        with self._lock:
            thread = self._thread
            self._stop_event.set()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=_STOP_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Monitor cycle still running after %ss", _STOP_JOIN_TIMEOUT)

        with self._cycle_lock:
            with self._lock:
                if self._state.active:
                    self._mark_ended("requested")
                self._thread = None
                summary = MonitorSummary.from_state(self._state)

        logger.info(
            "Monitor stopped after %d cycles (failure_detected=%s)",
            summary.cycles_completed,
            summary.failure_detected,
        )
        return summary

    def get_state(self) -> MonitorState:
        """Return a copy of the current run's state.  Never blocks on a cycle."""
        with self._lock:
            return dataclasses.replace(
                self._state,
                errors=list(self._state.errors),
                last_verdict=(
                    dataclasses.replace(self._state.last_verdict)
                    if self._state.last_verdict is not None
                    else None
                ),
            )

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._state.active

    def run_cycle(self) -> None:
        """Run one monitoring cycle now.  No-op when the monitor is idle."""
        with self._cycle_lock:
            with self._lock:
                if not self._state.active:
                    return
                self._state.cycle_count += 1
                cycle = self._state.cycle_count
            try:
                self._cycle(cycle)
            except Exception as exc:
                logger.exception("Monitor cycle %d failed unexpectedly", cycle)
                self._record_error(f"Cycle {cycle}: unexpected error: {exc}")

    # -- internals -----------------------------------------------------------

    def _run(self, stop_event: threading.Event) -> None:
        interval = self._config.interval_seconds
        next_due = time.monotonic()
        while not stop_event.is_set():
            self.run_cycle()
            if not self.is_active:
                return
            next_due += interval
            now = time.monotonic()
            # A cycle that overran its slot collapses the missed ticks into one.
            if next_due < now:
                next_due = now
            if stop_event.wait(timeout=next_due - now):
                return

    def _cycle(self, cycle: int) -> None:
        if not self._printer.is_connected():
            self._record_error(f"Cycle {cycle}: printer not connected, skipping")
            return

        snapshot = StatusSnapshot.from_report(self._printer.get_cached_status())
        with self._lock:
            self._state.print_state = snapshot.state.value
            self._state.print_percent = snapshot.percent
            self._state.layer = snapshot.layer
            self._state.total_layers = snapshot.total_layers

        frame: Optional[bytes] = None
        try:
            frame = self._frame_source()
        except PrinterError as exc:
            self._record_error(f"Cycle {cycle}: camera capture failed: {exc}")
        else:
            self._keep_frame(frame, cycle)

        if snapshot.has_hardware_error:
            self._abort(f"Printer reported error code {snapshot.print_error}")
            return
        if snapshot.state is GcodeState.FAILED:
            self._abort("Printer reported FAILED state")
            return
        if snapshot.state is GcodeState.FINISH:
            logger.info("Cycle %d: print finished, stopping monitor", cycle)
            with self._lock:
                self._mark_ended("completed")
            return

        if frame is None:
            return
        if snapshot.layer < self._config.min_layer_for_vision:
            logger.info(
                "Cycle %d: skipping vision (layer %d < %d)",
                cycle,
                snapshot.layer,
                self._config.min_layer_for_vision,
            )
            return

        prompt = build_vision_prompt(snapshot.layer, snapshot.total_layers, snapshot.percent)
        try:
            verdict = self._vision.analyze(frame, prompt)
        except ClassificationError as exc:
            self._record_error(f"Cycle {cycle}: vision analysis failed: {exc}")
            return

        threshold = self._config.fail_strikes
        with self._lock:
            self._state.last_verdict = verdict
            if verdict.failed:
                self._state.fail_strikes += 1
            else:
                self._state.fail_strikes = 0
            strikes = self._state.fail_strikes

        if not verdict.failed:
            logger.info("Cycle %d: vision OK (%dms)", cycle, verdict.elapsed_ms)
            return
        if strikes >= threshold:
            self._abort(f"Vision: {verdict.reason} ({strikes} consecutive failure verdicts)")
            return
        logger.warning(
            "Cycle %d: vision flagged a failure, strike %d/%d: %s",
            cycle,
            strikes,
            threshold,
            verdict.reason,
        )

    def _keep_frame(self, frame: bytes, cycle: int) -> None:
        path: Optional[str] = None
        snapshot_dir = self._config.snapshot_dir
        if snapshot_dir:
            stamp = time.strftime("%Y%m%d-%H%M%S")
            path = os.path.join(snapshot_dir, f"monitor_{stamp}_{cycle}.jpg")
            try:
                with open(path, "wb") as fh:
                    fh.write(frame)
            except OSError as exc:
                self._record_error(f"Cycle {cycle}: could not save frame: {exc}")
                path = None
        with self._lock:
            self._state.last_frame_path = path
            self._state.last_frame_size = len(frame)
            self._state.last_frame_at = time.time()

    def _abort(self, reason: str) -> None:
        logger.error("Failure detected, stopping print: %s", reason)
        with self._lock:
            self._state.failure_detected = True
            self._state.failure_reason = reason
        try:
            self._printer.stop_print()
        except PrinterError as exc:
            logger.error("Stop command was not delivered: %s", exc)
            self._record_error(f"Failed to send stop command: {exc}")
        else:
            with self._lock:
                self._state.abort_sent = True
        with self._lock:
            self._mark_ended("aborted")

    def _record_error(self, message: str) -> None:
        logger.warning(message)
        with self._lock:
            self._state.errors.append(message)

    def _mark_ended(self, reason: str) -> None:
        """Caller must hold ``self._lock``."""
        self._state.active = False
        self._state.ended_at = time.time()
        self._state.stop_reason = reason
        self._stop_event.set()
