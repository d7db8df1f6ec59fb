"""Dataclasses describing dispatch outcomes."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Literal, Mapping, Tuple

TaskStatus = Literal["succeeded", "failed", "timed-out", "skipped"]

STATUS_SEVERITY: Mapping[str, int] = {
    "succeeded": 0,
    "skipped": 1,
    "timed-out": 2,
    "failed": 3,
}


@dataclass(frozen=True)
class StepRecord:
    """Outcome of one step inside an entry's step sequence."""

    name: str
    status: TaskStatus
    duration_seconds: float = 0.0
    detail: str = ""


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one dispatched matrix entry."""

    job: str
    status: TaskStatus
    duration_seconds: float
    artifacts: Tuple[Path, ...] = ()
    steps: Tuple[StepRecord, ...] = ()
    runner: str | None = None
    detail: str = ""

    def __post_init__(self) -> None:  # pragma: no cover - simple normalization
        object.__setattr__(self, "artifacts", tuple(self.artifacts))
        object.__setattr__(self, "steps", tuple(self.steps))

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


def worst_status(statuses: Iterable[str]) -> TaskStatus:
    """Return the most severe status, treating an empty run as succeeded."""

    worst: TaskStatus = "succeeded"
    for status in statuses:
        if STATUS_SEVERITY[status] > STATUS_SEVERITY[worst]:
            worst = status  # type: ignore[assignment]
    return worst


__all__ = ["STATUS_SEVERITY", "StepRecord", "TaskResult", "TaskStatus", "worst_status"]
