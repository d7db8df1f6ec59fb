"""Reporting helpers for Gantry CLI output."""
from __future__ import annotations

from .renderer import ReportRenderOptions, render_health_report, render_run_report

__all__ = [
    "ReportRenderOptions",
    "render_health_report",
    "render_run_report",
]
