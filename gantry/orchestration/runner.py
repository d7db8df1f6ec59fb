"""Execution orchestrator for Gantry pipeline runs."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple

import httpx

from gantry.configuration import MatrixEntry, PipelineConfig, load_pipeline_config
from gantry.delivery import (
    ArtifactRelay,
    DeliveryTrigger,
    DispatchAck,
    FailureContext,
    FilesystemArtifactStore,
    NotificationSink,
    UploadReport,
)
from gantry.delivery.trigger import DEFAULT_API_URL
from gantry.errors import (
    ConfigInvalid,
    ConfigNotFound,
    DeliveryRejected,
    DeliveryUnreachable,
    GantryError,
    InputValidationError,
)
from gantry.exit_codes import ExitCode
from gantry.orchestration.context import RunContext
from gantry.orchestration.dispatcher import TaskDispatcher
from gantry.orchestration.health import HealthGate, HealthReport
from gantry.orchestration.manifest import DeliveryManifest, ManifestTracker
from gantry.orchestration.models import TaskResult, worst_status
from gantry.runners import LocalRunner, Runner, RunnerPool
from gantry.utils import EnvironmentSecretStore, SecretStore, filter_secrets

logger = logging.getLogger("gantry.orchestration.runner")

MANIFEST_FILENAME = "delivery_manifest.json"
_TOKEN_SECRET = "GITHUB_TOKEN"


@dataclass(frozen=True)
class EntryReport:
    """Dispatch result and upload outcome of one matrix entry."""

    entry: MatrixEntry
    result: TaskResult
    upload: UploadReport


@dataclass(frozen=True)
class RunReport:
    """Everything observable about a finished run."""

    entries: Tuple[EntryReport, ...]
    health: HealthReport
    manifest: DeliveryManifest | None = None
    delivery: DispatchAck | None = None
    delivery_error: GantryError | None = None

    @property
    def status(self) -> str:
        return worst_status(report.result.status for report in self.entries)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of invoking the orchestration pipeline."""

    exit_code: ExitCode
    status: str
    message: str | None = None
    remediation: str | None = None
    report: RunReport | None = None


_ERROR_MAPPINGS: tuple[
    tuple[type[GantryError], ExitCode, str, str | None],
    ...,
] = (
    (
        InputValidationError,
        ExitCode.INVALID_INPUT,
        "Input validation failed.",
        "Double-check the CLI options and the secret allow-list.",
    ),
    (
        ConfigNotFound,
        ExitCode.CONFIG_ERROR,
        "Pipeline config could not be read.",
        "Pass the path to the pipeline config YAML via --config.",
    ),
    (
        ConfigInvalid,
        ExitCode.CONFIG_ERROR,
        "Pipeline config is invalid.",
        "Fix the reported key and re-run `gantry generate` to validate the config.",
    ),
)

_STATUS_EXIT_CODES = {
    "succeeded": ExitCode.SUCCESS,
    "skipped": ExitCode.RUNNER_UNAVAILABLE,
    "timed-out": ExitCode.TIMEOUT,
    "failed": ExitCode.TASK_FAILED,
}


def run_pipeline(
    config_path: Path,
    *,
    context: RunContext,
    delivery_workflow: str,
    workspace_root: Path,
    artifact_dir: Path,
    queue: str | None = None,
    notification_target: str | None = None,
    inherited_secrets: str | None = None,
    runners: Sequence[Runner] | None = None,
    runner_labels: Sequence[str] = (),
    parallelism: int = 1,
    secret_store: SecretStore | None = None,
    api_url: str = DEFAULT_API_URL,
    transport: httpx.BaseTransport | None = None,
) -> ExecutionOutcome:
    """Resolve the matrix, dispatch every entry and trigger delivery when eligible."""

    store = secret_store or EnvironmentSecretStore()
    try:
        config = load_pipeline_config(config_path, queue=queue)
        entries = config.matrix()
        secrets = filter_secrets(inherited_secrets, store)
    except GantryError as error:
        return handle_domain_error(error)

    logger.info(
        "Resolved pipeline matrix",
        extra={
            "config": str(config.source),
            "jobs": [entry.job for entry in entries],
            "secrets_exposed": sorted(secrets),
            "branch": context.branch,
        },
    )

    pool = RunnerPool(
        runners
        if runners is not None
        else _local_runners(config, workspace_root, runner_labels, parallelism)
    )
    sink = NotificationSink(
        _resolve_notification_target(notification_target, store), transport=transport
    )
    trigger = DeliveryTrigger(
        repository=context.repository,
        workflow=delivery_workflow,
        token=store.get(_TOKEN_SECRET),
        delivery_branches=config.branches,
        api_url=api_url,
        transport=transport,
    )

    try:
        report = _execute(
            entries,
            pool=pool,
            secrets=secrets,
            context=context,
            relay=ArtifactRelay(FilesystemArtifactStore(artifact_dir), root=workspace_root),
            sink=sink,
            trigger=trigger,
        )
    finally:
        sink.close()

    if report.manifest is not None and any(entry.generates_manifest for entry in entries):
        path = report.manifest.write(Path(artifact_dir) / MANIFEST_FILENAME)
        logger.info("Wrote delivery manifest", extra={"path": str(path)})

    return _build_outcome(report)


def collect_health_report(
    config_path: Path,
    *,
    workspace_root: Path,
    queue: str | None = None,
    runners: Sequence[Runner] | None = None,
    runner_labels: Sequence[str] = (),
    parallelism: int = 1,
) -> HealthReport:
    """Probe the runner pool and report which matrix entries would be admitted."""

    config = load_pipeline_config(config_path, queue=queue)
    pool = RunnerPool(
        runners
        if runners is not None
        else _local_runners(config, workspace_root, runner_labels, parallelism)
    )
    return HealthGate().check_health(pool, config.matrix())


def _execute(
    entries: Sequence[MatrixEntry],
    *,
    pool: RunnerPool,
    secrets: dict[str, str],
    context: RunContext,
    relay: ArtifactRelay,
    sink: NotificationSink,
    trigger: DeliveryTrigger,
) -> RunReport:
    health = HealthGate().check_health(pool, entries)
    tracker = ManifestTracker(entries, branch=context.branch, commit=context.commit)
    dispatcher = TaskDispatcher(pool, secrets=secrets, health=health)

    delivery: DispatchAck | None = None
    delivery_error: GantryError | None = None
    with ThreadPoolExecutor(
        max_workers=max(1, len(entries)), thread_name_prefix="gantry-entry"
    ) as executor:
        futures = [
            executor.submit(_run_entry, entry, dispatcher, tracker, relay, sink, context)
            for entry in entries
        ]

        tracker.wait()
        manifest = tracker.finalize()
        try:
            delivery = trigger.trigger(manifest, context.branch, context.commit)
        except (DeliveryUnreachable, DeliveryRejected) as error:
            logger.error(str(error), extra={"branch": context.branch, "commit": context.commit})
            delivery_error = error

        reports = tuple(future.result() for future in futures)

    return RunReport(
        entries=reports,
        health=health,
        manifest=manifest,
        delivery=delivery,
        delivery_error=delivery_error,
    )


def _run_entry(
    entry: MatrixEntry,
    dispatcher: TaskDispatcher,
    tracker: ManifestTracker,
    relay: ArtifactRelay,
    sink: NotificationSink,
    context: RunContext,
) -> EntryReport:
    uploads: list[UploadReport] = []
    try:
        result = dispatcher.dispatch(
            entry, before_release=lambda finished: uploads.append(relay.upload(entry, finished))
        )
    except Exception as error:  # pragma: no cover
        logger.exception("Unexpected error while dispatching entry", extra={"job": entry.job})
        result = TaskResult(job=entry.job, status="failed", duration_seconds=0.0, detail=str(error))

    tracker.record(result)

    if entry.generates_manifest and result.status in ("failed", "timed-out"):
        sink.notify(
            FailureContext(
                run_url=context.run_url,
                job=entry.job,
                task=entry.task,
                status=result.status,
                branch=context.branch,
                detail=result.detail,
            )
        )

    upload = uploads[0] if uploads else relay.upload(entry, result)
    return EntryReport(entry=entry, result=result, upload=upload)


def _local_runners(
    config: PipelineConfig,
    root: Path,
    extra_labels: Sequence[str],
    parallelism: int,
) -> list[Runner]:
    labels = {config.queue, *extra_labels}
    return [
        LocalRunner(f"local-{index}", labels, root=root)
        for index in range(1, max(1, parallelism) + 1)
    ]


def _resolve_notification_target(target: str | None, store: SecretStore) -> str | None:
    if not target:
        return None
    if target.startswith(("http://", "https://")):
        return target

    resolved = store.get(target)
    if not resolved:
        logger.warning(
            "Notification secret is not set; failure notifications are disabled",
            extra={"secret": target},
        )
        return None
    return resolved


def _build_outcome(report: RunReport) -> ExecutionOutcome:
    status = report.status
    counts: dict[str, int] = {}
    for entry_report in report.entries:
        counts[entry_report.result.status] = counts.get(entry_report.result.status, 0) + 1

    summary = [
        "Run finished with status {status} ({breakdown}).".format(
            status=status,
            breakdown=", ".join(f"{count} {name}" for name, count in sorted(counts.items()))
            or "no entries",
        )
    ]
    if report.manifest is not None and report.manifest.failed_jobs:
        summary.append(
            "Delivery manifest suppressed by: " + ", ".join(report.manifest.failed_jobs) + "."
        )
    if report.delivery is not None:
        summary.append(
            f"Triggered {report.delivery.workflow} for {report.delivery.branch} "
            f"at {report.delivery.commit}."
        )

    exit_code = _STATUS_EXIT_CODES[status]
    remediation = None
    if report.delivery_error is not None:
        summary.append(report.delivery_error.message)
        remediation = report.delivery_error.remediation
        if exit_code == ExitCode.SUCCESS:
            exit_code = ExitCode.DELIVERY_UNREACHABLE

    return ExecutionOutcome(
        exit_code=exit_code,
        status=status,
        message="\n".join(summary),
        remediation=remediation,
        report=report,
    )


def handle_domain_error(error: GantryError) -> ExecutionOutcome:
    """Translate a domain error into an execution outcome and log remediation hints."""

    exit_code, default_message, default_remediation = _map_error(error)
    message = error.message or default_message
    remediation = error.remediation or default_remediation

    logger.error(message, extra={"exit_code": int(exit_code)})
    if remediation:
        logger.error("Remediation: %s", remediation)

    return ExecutionOutcome(
        exit_code=exit_code,
        status="failure",
        message=message,
        remediation=remediation,
    )


def _map_error(error: GantryError) -> tuple[ExitCode, str, str | None]:
    """Match an error instance to its configured exit code and remediation."""

    for error_type, exit_code, message, remediation in _ERROR_MAPPINGS:
        if isinstance(error, error_type):
            return exit_code, message, remediation

    return (
        ExitCode.UNEXPECTED_ERROR,
        "An unexpected error occurred during the pipeline run.",
        "Enable debug logging and retry. If the issue persists, open a bug ticket with the logs.",
    )


__all__ = [
    "EntryReport",
    "ExecutionOutcome",
    "RunReport",
    "collect_health_report",
    "handle_domain_error",
    "run_pipeline",
]
