"""Orchestration layer for Gantry."""
from __future__ import annotations

from .context import RunContext
from .dispatcher import STEP_SEQUENCE, TaskDispatcher
from .health import Admission, HealthCheck, HealthGate, HealthReport
from .manifest import DeliveryManifest, ManifestEntry, ManifestTracker
from .models import StepRecord, TaskResult, worst_status
from .runner import (
    EntryReport,
    ExecutionOutcome,
    RunReport,
    collect_health_report,
    handle_domain_error,
    run_pipeline,
)

__all__ = [
    "Admission",
    "DeliveryManifest",
    "EntryReport",
    "ExecutionOutcome",
    "HealthCheck",
    "HealthGate",
    "HealthReport",
    "ManifestEntry",
    "ManifestTracker",
    "RunContext",
    "RunReport",
    "STEP_SEQUENCE",
    "StepRecord",
    "TaskDispatcher",
    "TaskResult",
    "collect_health_report",
    "handle_domain_error",
    "run_pipeline",
    "worst_status",
]
