"""Exit engine: monitors open token positions and sells them on exit triggers."""

__version__ = "1.0.0"
