"""Domain-specific exception hierarchy for Gantry."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass
class GantryError(Exception):
    """Base exception for Gantry-specific errors with optional remediation text."""

    message: str
    remediation: str | None = None

    def __post_init__(self) -> None:  # pragma: no cover - dataclass validation hook
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class InputValidationError(GantryError):
    """Raised when the CLI receives invalid or missing input."""


class ConfigNotFound(GantryError):
    """Raised when the pipeline config path cannot be read."""


class ConfigInvalid(GantryError):
    """Raised when the pipeline config violates the schema."""


class RunnerUnhealthy(GantryError):
    """Raised when every runner able to serve an entry failed its probe."""


class RunnerPoolExhausted(GantryError):
    """Raised when no runner in the pool carries the labels an entry requires."""


class StepTimeout(GantryError):
    """Raised when a single step exceeds its allotted time."""


class UploadFailure(GantryError):
    """Raised when an artifact bundle cannot be stored."""


class DeliveryUnreachable(GantryError):
    """Raised when the downstream dispatch endpoint cannot be reached."""


class DeliveryRejected(GantryError):
    """Raised when the downstream dispatch endpoint refuses the request."""


class NotificationFailure(GantryError):
    """Raised when a chat notification cannot be posted."""


__all__ = [
    "GantryError",
    "InputValidationError",
    "ConfigNotFound",
    "ConfigInvalid",
    "RunnerUnhealthy",
    "RunnerPoolExhausted",
    "StepTimeout",
    "UploadFailure",
    "DeliveryUnreachable",
    "DeliveryRejected",
    "NotificationFailure",
]
