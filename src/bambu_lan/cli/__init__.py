"""Command-line interface for bambu-lan."""
