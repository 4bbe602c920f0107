"""MQTT control channel: command catalogue, session client and status views."""

from bambu_lan.protocol.client import BambuMQTTClient, PendingCommand
from bambu_lan.protocol.commands import CommandKind, build_command
from bambu_lan.protocol.status import AmsTray, GcodeState, StatusSnapshot

__all__ = [
    "AmsTray",
    "BambuMQTTClient",
    "CommandKind",
    "GcodeState",
    "PendingCommand",
    "StatusSnapshot",
    "build_command",
]
