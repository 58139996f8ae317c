"""Route group exports."""

from . import address, health, matching

__all__ = ["address", "health", "matching"]
