"""Gantry CI orchestrator package."""
from __future__ import annotations

from .errors import GantryError

__all__ = ("__version__", "GantryError")

__version__ = "0.1.0"
