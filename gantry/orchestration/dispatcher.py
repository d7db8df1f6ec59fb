"""Per-entry step sequencing on leased runners."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Mapping

from gantry.configuration import MatrixEntry
from gantry.errors import RunnerPoolExhausted, StepTimeout
from gantry.orchestration.health import HealthReport
from gantry.orchestration.models import StepRecord, TaskResult
from gantry.runners import Runner, RunnerPool, StepOutcome, StepRequest

logger = logging.getLogger("gantry.orchestration.dispatcher")

STEP_SEQUENCE: tuple[str, ...] = (
    "health_probe",
    "branch_freshness",
    "prepare_artifacts",
    "execute",
    "delivery_manifest",
)


class TaskDispatcher:
    """Run an entry's steps in order on one leased runner.

    Steps stop at the first failure or timeout; the remaining steps are
    recorded as skipped. Secrets reach the execute step only. Entries whose
    workspace resolves to the same directory never run at the same time, and
    ``before_release`` runs while the runner and workspace are still held.
    """

    def __init__(
        self,
        pool: RunnerPool,
        *,
        secrets: Mapping[str, str] | None = None,
        health: HealthReport | None = None,
        lease_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._pool = pool
        self._secrets = dict(secrets or {})
        self._health = health
        self._lease_timeout_seconds = lease_timeout_seconds
        self._clock = clock
        self._workspace_locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def dispatch(
        self,
        entry: MatrixEntry,
        *,
        before_release: Callable[[TaskResult], None] | None = None,
    ) -> TaskResult:
        start = self._clock()

        if self._health is not None:
            admission = self._health.admissions.get(entry.job)
            if admission is not None and not admission.admitted:
                logger.warning(
                    "Skipping entry excluded by health gate",
                    extra={"job": entry.job, "reason": str(admission.error)},
                )
                return _finish(_skipped(entry, str(admission.error)), before_release)

        try:
            with self._pool.lease(entry.labels, timeout=self._lease_timeout_seconds) as runner:
                with self._workspace_lock(runner, entry.workspace):
                    logger.info("Dispatching entry", extra={"job": entry.job, "runner": runner.name})
                    steps = self._run_steps(entry, runner)
                    status = _entry_status(steps)
                    result = TaskResult(
                        job=entry.job,
                        status=status,
                        duration_seconds=self._clock() - start,
                        artifacts=self._collect(entry, runner),
                        steps=steps,
                        runner=runner.name,
                        detail=next(
                            (step.detail for step in steps if step.status in ("failed", "timed-out")),
                            "",
                        ),
                    )
                    logger.info(
                        "Entry finished",
                        extra={"job": entry.job, "status": status, "duration": result.duration_seconds},
                    )
                    return _finish(result, before_release)
        except RunnerPoolExhausted as error:
            logger.warning("Unable to lease a runner", extra={"job": entry.job, "reason": str(error)})
            return _finish(_skipped(entry, str(error)), before_release)

    def _workspace_lock(self, runner: Runner, workspace: str) -> threading.Lock:
        key = Path(runner.workspace_dir(workspace)).resolve()
        with self._locks_guard:
            return self._workspace_locks.setdefault(key, threading.Lock())

    def _run_steps(self, entry: MatrixEntry, runner: Runner) -> tuple[StepRecord, ...]:
        records: list[StepRecord] = []
        halted = False
        for step in STEP_SEQUENCE:
            if step == "delivery_manifest" and not entry.generates_manifest:
                continue
            if halted:
                records.append(StepRecord(name=step, status="skipped", detail="Earlier step did not pass."))
                continue

            record = self._run_step(entry, runner, step)
            records.append(record)
            if record.status != "succeeded":
                halted = True
        return tuple(records)

    def _run_step(self, entry: MatrixEntry, runner: Runner, step: str) -> StepRecord:
        started = self._clock()
        timeout = entry.step_timeout(step)
        try:
            outcome = _within(timeout, step, self._invoke, entry, runner, step, timeout)
        except StepTimeout as error:
            outcome = StepOutcome(status="timed-out", detail=str(error))
        except Exception as error:
            logger.exception("Runner raised during step", extra={"job": entry.job, "step": step})
            outcome = StepOutcome(status="failed", detail=f"{type(error).__name__}: {error}")

        elapsed = self._clock() - started
        if outcome.status == "passed" and elapsed > timeout:
            outcome = StepOutcome(
                status="timed-out",
                detail=f"Finished after {elapsed:.1f}s, beyond the {timeout:.0f}s timeout.",
            )

        status = "succeeded" if outcome.status == "passed" else outcome.status
        if status != "succeeded":
            logger.warning(
                "Step did not pass",
                extra={"job": entry.job, "step": step, "status": status, "detail": outcome.detail},
            )
        return StepRecord(name=step, status=status, duration_seconds=elapsed, detail=outcome.detail)

    def _invoke(self, entry: MatrixEntry, runner: Runner, step: str, timeout: float) -> StepOutcome:
        if step == "health_probe":
            if runner.probe(timeout_seconds=timeout):
                return StepOutcome(status="passed")
            return StepOutcome(status="failed", detail=f"Runner {runner.name} failed its health probe.")

        if step == "prepare_artifacts":
            runner.reset_paths(entry.workspace, entry.artifact_paths)
            return StepOutcome(status="passed")

        if step == "execute":
            command = entry.command
            env = self._secrets
        else:
            command = entry.step_commands.get(step)
            env = {}

        return runner.run_step(
            StepRequest(
                workspace=entry.workspace,
                task=entry.task,
                step=step,
                command=command,
                timeout_seconds=timeout,
                env=env,
            )
        )

    def _collect(self, entry: MatrixEntry, runner: Runner):
        try:
            return runner.collect_artifacts(entry.workspace, entry.artifact_paths)
        except Exception:
            logger.exception("Unable to list produced artifacts", extra={"job": entry.job})
            return ()


def _within(timeout: float, step: str, call: Callable[..., StepOutcome], *args) -> StepOutcome:
    """Run *call* on a helper thread and give up on it after *timeout* seconds."""

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gantry-step")
    try:
        future = executor.submit(call, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            raise StepTimeout(
                message=f"Step {step} did not finish within its {timeout:g}s timeout.",
                remediation="Increase timeout_in_minutes for the step or check the runner.",
            ) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _finish(result: TaskResult, before_release: Callable[[TaskResult], None] | None) -> TaskResult:
    if before_release is not None:
        before_release(result)
    return result


def _entry_status(steps: tuple[StepRecord, ...]) -> str:
    for step in steps:
        if step.status in ("failed", "timed-out"):
            return step.status
    return "succeeded"


def _skipped(entry: MatrixEntry, detail: str) -> TaskResult:
    return TaskResult(job=entry.job, status="skipped", duration_seconds=0.0, detail=detail)


__all__ = ["STEP_SEQUENCE", "TaskDispatcher"]
