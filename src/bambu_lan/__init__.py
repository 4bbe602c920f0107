"""bambu-lan - local-network control and failure monitoring for Bambu Lab printers."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("bambu-lan")
except PackageNotFoundError:
    __version__ = "0.0.0+local"
