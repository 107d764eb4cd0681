"""Chat message to financial operation pipeline."""

__version__ = "0.1.0"
