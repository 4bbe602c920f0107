"""Frame classification backends for print-failure detection."""

from bambu_lan.vision.base import VisionProvider, VisionVerdict, parse_verdict
from bambu_lan.vision.prompts import PrintStage, build_vision_prompt, detect_stage
from bambu_lan.vision.registry import create_vision_provider

__all__ = [
    "PrintStage",
    "VisionProvider",
    "VisionVerdict",
    "build_vision_prompt",
    "create_vision_provider",
    "detect_stage",
    "parse_verdict",
]
