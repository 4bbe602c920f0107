"""Headless slicing of project 3MF files via the OrcaSlicer / BambuStudio CLI.

Models downloaded from MakerWorld are unsliced project files; the printer
only accepts a 3MF that already contains ``Metadata/plate_N.gcode``.
:func:`slice_3mf` patches a few project settings that newer BambuStudio
writes but OrcaSlicer rejects, then asks the slicer to export a sliced 3MF.

Example::

    from bambu_lan.slicer import slice_3mf

    result = slice_3mf("keyring.3mf")
    print(result.output_path)        # keyring_sliced.3mf
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path

from bambu_lan.errors import SlicerError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Names to look up on PATH, in preference order.
_SLICER_NAMES: list[str] = [
    "orca-slicer",
    "OrcaSlicer",
    "orcaslicer",
    "bambu-studio",
    "BambuStudio",
]

_MACOS_PATHS: list[str] = (
    [
        "/Applications/OrcaSlicer.app/Contents/MacOS/OrcaSlicer",
        "/Applications/BambuStudio.app/Contents/MacOS/BambuStudio",
    ]
    if sys.platform == "darwin"
    else []
)

_MACHINE_PROFILE = "Bambu Lab P1S 0.4 nozzle.json"
_PROCESS_PROFILE = "0.20mm Standard @BBL P1P.json"
_FILAMENT_PROFILE = "Generic PLA @BBL P1P.json"

_PLATE_GCODE_RE = re.compile(r"(^|/)plate_\d+\.gcode$")

# Values newer BambuStudio writes that OrcaSlicer refuses to load.
_CONFIG_PATCHES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'"raft_first_layer_expansion":\s*"-1"'), '"raft_first_layer_expansion": "0"'),
    (re.compile(r'"solid_infill_filament":\s*"0"'), '"solid_infill_filament": "1"'),
    (re.compile(r'"sparse_infill_filament":\s*"0"'), '"sparse_infill_filament": "1"'),
    (re.compile(r'"tree_support_wall_count":\s*"-1"'), '"tree_support_wall_count": "0"'),
    (re.compile(r'"wall_filament":\s*"0"'), '"wall_filament": "1"'),
]
_PROJECT_SETTINGS = "Metadata/project_settings.config"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class SlicerProfiles:
    machine: str
    process: str
    filament: str


@dataclass
class SliceResult:
    """Outcome of a slicing operation."""

    output_path: str
    sliced: bool
    slicer: str | None = None
    message: str = ""
    stderr: str = ""

    def to_dict(self) -> dict:
        d = {
            "output_path": self.output_path,
            "sliced": self.sliced,
            "slicer": self.slicer,
            "message": self.message,
        }
        if self.stderr:
            d["stderr"] = self.stderr[:500]
        return d


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def find_slicer(slicer_path: str | None = None) -> str:
    """Locate an OrcaSlicer or BambuStudio binary.

    Checks, in order: *slicer_path*, ``BAMBU_LAN_SLICER_PATH``, ``PATH``
    and the macOS application bundles.

    Raises:
        SlicerError: If no executable slicer is found.
    """
    if slicer_path:
        if _executable(slicer_path):
            return slicer_path
        raise SlicerError(f"Slicer binary not found or not executable: {slicer_path}")

    env_path = os.environ.get("BAMBU_LAN_SLICER_PATH")
    if env_path and _executable(env_path):
        return env_path

    for name in _SLICER_NAMES:
        found = shutil.which(name)
        if found:
            return found

    for path in _MACOS_PATHS:
        if _executable(path):
            return path

    raise SlicerError(
        "No slicer found. Install OrcaSlicer or BambuStudio "
        "(macOS: brew install --cask orcaslicer), or set BAMBU_LAN_SLICER_PATH."
    )


def find_profiles(slicer_bin: str) -> SlicerProfiles:
    """Find the bundled P1-series profiles next to the slicer binary."""
    bin_dir = Path(slicer_bin).resolve().parent
    roots = [
        bin_dir.parent / "Resources" / "profiles" / "BBL",
        bin_dir / "resources" / "profiles" / "BBL",
        bin_dir.parent / "share" / bin_dir.name / "profiles" / "BBL",
    ]
    for root in roots:
        machine = root / "machine" / _MACHINE_PROFILE
        process = root / "process" / _PROCESS_PROFILE
        filament = root / "filament" / "P1P" / _FILAMENT_PROFILE
        if not filament.is_file():
            filament = root / "filament" / _FILAMENT_PROFILE
        if machine.is_file() and process.is_file() and filament.is_file():
            return SlicerProfiles(str(machine), str(process), str(filament))
    raise SlicerError(f"Could not find P1S printer profiles in the installation of {slicer_bin}")


def is_3mf_sliced(path: str) -> bool:
    """True if the archive already contains plate G-code."""
    try:
        with zipfile.ZipFile(path) as zf:
            return any(_PLATE_GCODE_RE.search(name) for name in zf.namelist())
    except (zipfile.BadZipFile, OSError):
        return False


# ---------------------------------------------------------------------------
# Slicing
# ---------------------------------------------------------------------------


def _patch_settings(text: str) -> str:
    for pattern, replacement in _CONFIG_PATCHES:
        text = pattern.sub(replacement, text)
    return text


def _write_patched(src: str, dest: str) -> None:
    """Copy the 3MF at *src* to *dest*, patching the project settings."""
    with zipfile.ZipFile(src) as zin, zipfile.ZipFile(dest, "w", zipfile.ZIP_DEFLATED) as zout:
        for item in zin.infolist():
            data = zin.read(item.filename)
            if item.filename == _PROJECT_SETTINGS:
                data = _patch_settings(data.decode("utf-8")).encode("utf-8")
            zout.writestr(item, data)


def slice_3mf(
    input_path: str,
    output_dir: str | None = None,
    *,
    slicer_path: str | None = None,
    timeout: int = 600,
) -> SliceResult:
    """Slice a project 3MF into a printable 3MF.

    An input that already contains plate G-code is returned unchanged with
    ``sliced=False``.

    Args:
        input_path: Project ``.3mf`` file.
        output_dir: Where to write ``<stem>_sliced.3mf``.  Defaults to the
            input file's directory.
        slicer_path: Explicit slicer binary.  Auto-detected if omitted.
        timeout: Maximum slicing time in seconds.

    Raises:
        SlicerError: On a missing input, slicer, or profile, or if the
            slicer fails or produces no output.
    """
    input_abs = os.path.abspath(os.path.expanduser(input_path))
    if not os.path.isfile(input_abs):
        raise SlicerError(f"Input file not found: {input_abs}")
    if Path(input_abs).suffix.lower() != ".3mf":
        raise SlicerError(f"Only .3mf project files can be sliced, got {input_abs!r}")

    if is_3mf_sliced(input_abs):
        return SliceResult(
            output_path=input_abs,
            sliced=False,
            message="File is already sliced (contains G-code).",
        )

    slicer = find_slicer(slicer_path)
    profiles = find_profiles(slicer)

    out_dir = os.path.abspath(output_dir or os.path.dirname(input_abs))
    os.makedirs(out_dir, exist_ok=True)
    out_file = os.path.join(out_dir, f"{Path(input_abs).stem}_sliced.3mf")

    with tempfile.TemporaryDirectory(prefix="bambu-slice-") as tmp:
        try:
            _write_patched(input_abs, os.path.join(tmp, "patched.3mf"))
        except zipfile.BadZipFile as exc:
            raise SlicerError(f"Not a valid 3MF archive: {input_abs}", cause=exc) from exc

        # Profiles are copied so no CLI argument contains spaces.
        shutil.copyfile(profiles.machine, os.path.join(tmp, "machine.json"))
        shutil.copyfile(profiles.process, os.path.join(tmp, "process.json"))
        shutil.copyfile(profiles.filament, os.path.join(tmp, "filament.json"))

        cmd = [
            slicer,
            "--allow-newer-file",
            "--no-check",
            "--load-settings",
            "machine.json;process.json",
            "--load-filaments",
            "filament.json",
            "--slice",
            "0",
            "--export-3mf",
            out_file,
            "patched.3mf",
        ]
        logger.info("Slicing %s with %s", input_abs, slicer)
        try:
            proc = subprocess.run(cmd, cwd=tmp, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise SlicerError(f"Slicer timed out after {timeout}s", cause=exc) from exc
        except OSError as exc:
            raise SlicerError(f"Could not run slicer {slicer}: {exc}", cause=exc) from exc

    if proc.returncode != 0:
        detail = (proc.stderr or proc.stdout or "").strip()
        raise SlicerError(f"Slicer failed (exit {proc.returncode}): {detail[:500]}")
    if not os.path.isfile(out_file):
        raise SlicerError("Slicer produced no output file")

    return SliceResult(
        output_path=out_file,
        sliced=True,
        slicer=Path(slicer).stem,
        message="File sliced successfully.",
        stderr=proc.stderr or "",
    )
