"""Rendering utilities for run reports."""
from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Sequence

from gantry.orchestration.health import HealthReport
from gantry.orchestration.runner import EntryReport, RunReport

_JOB_WIDTH = 28
_STATUS_WIDTH = 10
_DURATION_WIDTH = 9
_RUNNER_WIDTH = 12
_UPLOAD_WIDTH = 9
_DETAIL_WIDTH = 40
_WIDE_DETAIL_WIDTH = 60
_STEPS_WIDTH = 70
_TITLE = "Pipeline Run Report"
_PLACEHOLDER = "-- no matrix entries --"


@dataclass(frozen=True)
class ReportRenderOptions:
    """Render-time switches influencing CLI layout."""

    quiet: bool = False
    wide: bool = False


def render_run_report(report: RunReport, options: ReportRenderOptions | None = None) -> str:
    """Render one row per matrix entry followed by manifest and delivery lines."""

    options = options or ReportRenderOptions()
    columns = _table_columns(wide=options.wide)

    lines: list[str] = [_TITLE, ""]
    lines.append(_format_header(columns))
    lines.append(_format_separator(columns))
    rows = [_format_row(entry, columns) for entry in report.entries]
    lines.extend(rows or [_placeholder_row(columns)])

    lines.append("")
    lines.append(f"Run status : {report.status}")
    lines.append(f"Manifest   : {_describe_manifest(report)}")
    lines.append(f"Delivery   : {_describe_delivery(report)}")

    if not options.wide and not options.quiet:
        lines.append("")
        lines.append("Tip: re-run with --wide to include per-step results.")

    return "\n".join(lines)


def render_health_report(report: HealthReport) -> str:
    """List runner probes and the entries the gate excluded."""

    lines = ["Runner health"]
    for check in report.checks:
        lines.append(f"[{check.status}] {check.name} - {check.detail}")
        if check.remediation:
            lines.append(f"    Remediation: {check.remediation}")
    if not report.checks:
        lines.append("-- no runners registered --")

    lines.append("")
    lines.append("Admissions")
    for admission in report.admissions.values():
        if admission.admitted:
            lines.append(f"[ADMIT] {admission.job} via {', '.join(admission.runners)}")
        else:
            lines.append(f"[SKIP] {admission.job} - {admission.error}")

    lines.append("")
    lines.append(f"Overall status: {report.overall_status}")
    return "\n".join(lines)


def _table_columns(*, wide: bool) -> Sequence[tuple[str, int, str]]:
    columns: list[tuple[str, int, str]] = [
        ("Job", _JOB_WIDTH, "left"),
        ("Status", _STATUS_WIDTH, "left"),
        ("Duration", _DURATION_WIDTH, "right"),
        ("Runner", _RUNNER_WIDTH, "left"),
        ("Upload", _UPLOAD_WIDTH, "left"),
        ("Detail", _WIDE_DETAIL_WIDTH if wide else _DETAIL_WIDTH, "left"),
    ]
    if wide:
        columns.append(("Steps", _STEPS_WIDTH, "left"))
    return columns


def _format_header(columns: Sequence[tuple[str, int, str]]) -> str:
    return " | ".join(_pad_text(title.upper(), width) for title, width, _ in columns)


def _format_separator(columns: Sequence[tuple[str, int, str]]) -> str:
    return "-+-".join("-" * width for _, width, _ in columns)


def _format_row(entry: EntryReport, columns: Sequence[tuple[str, int, str]]) -> str:
    result = entry.result
    column_map = {
        "Job": result.job,
        "Status": result.status,
        "Duration": f"{result.duration_seconds:.1f}s",
        "Runner": result.runner or "--",
        "Upload": entry.upload.status,
        "Detail": result.detail or "--",
        "Steps": ", ".join(f"{step.name}={step.status}" for step in result.steps) or "--",
    }
    return " | ".join(
        _pad_text(column_map.get(title, ""), width, align=alignment)
        for title, width, alignment in columns
    )


def _placeholder_row(columns: Sequence[tuple[str, int, str]]) -> str:
    padded_first = _pad_text(_PLACEHOLDER, columns[0][1], align=columns[0][2])
    remainder = [_pad_text("", width, align=align) for _, width, align in columns[1:]]
    return " | ".join([padded_first, *remainder])


def _describe_manifest(report: RunReport) -> str:
    manifest = report.manifest
    if manifest is None:
        return "not finalized"
    if manifest.failed_jobs:
        return "empty (failed: " + ", ".join(manifest.failed_jobs) + ")"
    if manifest.is_empty:
        return "empty (no manifest entries)"
    return f"{len(manifest.entries)} entries"


def _describe_delivery(report: RunReport) -> str:
    if report.delivery_error is not None:
        return f"error - {report.delivery_error}"
    if report.delivery is not None:
        return f"triggered {report.delivery.workflow} on {report.delivery.branch}"
    return "not triggered"


def _pad_text(value: str, width: int, *, align: str = "left") -> str:
    text = _truncate(_normalize_text(value), width)
    if align == "right":
        return text.rjust(width)
    return text.ljust(width)


def _truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    if width <= 3:
        return value[:width]
    return value[: width - 3] + "..."


def _normalize_text(value: str) -> str:
    collapsed = " ".join(str(value).split())
    normalized = unicodedata.normalize("NFKD", collapsed)
    return normalized.encode("ascii", "ignore").decode("ascii")


__all__ = ["ReportRenderOptions", "render_health_report", "render_run_report"]
