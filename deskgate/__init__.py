"""DeskGate: request admission and upload integrity gateway."""

__version__ = "1.0.0"
