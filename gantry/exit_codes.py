"""Shared exit code definitions for Gantry CLI operations."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Deterministic exit codes reported to the invoking scheduler."""

    SUCCESS = 0
    UNEXPECTED_ERROR = 1
    INVALID_INPUT = 2
    CONFIG_ERROR = 3
    TASK_FAILED = 4
    TIMEOUT = 5
    RUNNER_UNAVAILABLE = 6
    DELIVERY_UNREACHABLE = 7


__all__ = ["ExitCode"]
