"""Stage-aware instructions sent with each camera frame."""

from __future__ import annotations

import enum

EARLY_LAYER_LIMIT = 5
LATE_PERCENT = 80


class PrintStage(enum.Enum):
    EARLY = "early"
    MID = "mid"
    LATE = "late"


def detect_stage(layer: int, percent: int) -> PrintStage:
    """Early through layer 5, late from 80%, otherwise mid."""
    if layer <= EARLY_LAYER_LIMIT:
        return PrintStage.EARLY
    if percent >= LATE_PERCENT:
        return PrintStage.LATE
    return PrintStage.MID


_STAGE_TEXT = {
    PrintStage.EARLY: (
        "STAGE: Early print (layer {layer}/{total}, {percent}%). Only thin outlines, "
        "skirts and first layers are on the bed. Very little material is visible and "
        "that is NORMAL. Do NOT flag thin or sparse prints at this stage."
    ),
    PrintStage.MID: (
        "STAGE: Mid print (layer {layer}/{total}, {percent}%). Objects should be "
        "visibly forming with stacked layers. Some height is expected."
    ),
    PrintStage.LATE: (
        "STAGE: Late print (layer {layer}/{total}, {percent}%). Objects should be "
        "nearly complete with full height and defined shapes."
    ),
}

_TEMPLATE = """You are a 3D print failure detector looking at a single camera frame from inside a Bambu Lab printer.

PRINTER CONTEXT:
- Camera: fixed wide-angle lens mounted low at the front of the chamber
- Build plate: textured PEI sheet that often carries white or cloudy glue residue, which is NORMAL
- The toolhead moves fast and may appear blurred, which is NORMAL

{stage}

NORMAL, do NOT flag:
- Glue residue on the build plate
- Purge lines, purge blobs or wipe towers ANYWHERE on the bed (AMS colour changes drop purge blobs mid-print and they can look like messy clumps of filament)
- Skirt or brim outlines around objects
- Motion blur on the toolhead or gantry
- Small wisps of stringing between nearby parts
- Objects that look short because the print is still early
- Leftover objects, scraps or debris from previous prints that are NOT connected to the nozzle

FAILURE, only flag when CLEARLY and ACTIVELY happening:
- Spaghetti: filament extruded by the nozzle into a tangled mess instead of structured layers, connected to the nozzle or active print area
- Detachment: a printed object has fallen over, shifted or peeled off the bed during this print
- Printing into air: the nozzle is extruding high above the bed with nothing underneath

RULES:
1. Be conservative. A false positive stops the print and wastes material.
2. If you are less than 95% confident it is an ACTIVE failure, say OK.
3. When in doubt, say OK.

Respond with EXACTLY one line:
VERDICT: OK
or
VERDICT: FAIL | <brief reason>"""


def build_vision_prompt(layer: int, total_layers: int, percent: int) -> str:
    """Return the classification instructions for the current print stage."""
    stage = detect_stage(layer, percent)
    stage_text = _STAGE_TEXT[stage].format(
        layer=layer,
        total=total_layers or "?",
        percent=percent,
    )
    return _TEMPLATE.format(stage=stage_text)
