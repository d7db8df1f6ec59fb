"""Runner fleet admission checks run before any entry is dispatched."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Mapping, Sequence, Tuple

from gantry.configuration import MatrixEntry
from gantry.errors import GantryError, RunnerPoolExhausted, RunnerUnhealthy
from gantry.runners import Runner, RunnerPool

logger = logging.getLogger("gantry.orchestration.health")

_DEFAULT_PROBE_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class HealthCheck:
    """Represents the outcome of probing a single runner."""

    name: str
    status: str
    detail: str
    remediation: str | None = None


@dataclass(frozen=True)
class Admission:
    """Whether an entry may be dispatched, and why not when it may not."""

    job: str
    runners: Tuple[str, ...] = ()
    error: GantryError | None = None

    @property
    def admitted(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class HealthReport:
    """Aggregated runner probes and per-entry admission decisions."""

    checks: Tuple[HealthCheck, ...]
    admissions: Mapping[str, Admission]

    @property
    def overall_status(self) -> str:
        """Summarise overall readiness based on individual checks."""

        return "PASS" if all(check.status == "PASS" for check in self.checks) else "FAIL"

    @property
    def healthy_runners(self) -> Tuple[str, ...]:
        return tuple(check.name for check in self.checks if check.status == "PASS")

    @property
    def excluded(self) -> Tuple[Admission, ...]:
        return tuple(admission for admission in self.admissions.values() if not admission.admitted)

    def admission(self, job: str) -> Admission:
        return self.admissions[job]


class HealthGate:
    """Probe every runner once and decide admission for each matrix entry.

    Unhealthy runners are withdrawn from the pool and only exclude the entries
    that have no other healthy runner; the rest of the run is unaffected.
    """

    def __init__(self, *, probe_timeout_seconds: float | None = None) -> None:
        self._probe_timeout_seconds = probe_timeout_seconds

    def check_health(self, pool: RunnerPool, entries: Sequence[MatrixEntry]) -> HealthReport:
        timeout = self._resolve_timeout(entries)
        checks = self._probe_all(pool.runners, timeout)

        healthy = {check.name for check in checks if check.status == "PASS"}
        for runner in pool.runners:
            if runner.name not in healthy:
                pool.withdraw(runner.name)

        admissions: dict[str, Admission] = {}
        for entry in entries:
            admissions[entry.job] = self._admit(entry, pool, healthy)

        report = HealthReport(checks=checks, admissions=admissions)
        logger.info(
            "Runner health evaluated",
            extra={
                "healthy_runners": list(report.healthy_runners),
                "excluded_jobs": [admission.job for admission in report.excluded],
            },
        )
        return report

    def _resolve_timeout(self, entries: Sequence[MatrixEntry]) -> float:
        if self._probe_timeout_seconds is not None:
            return self._probe_timeout_seconds
        timeouts = [entry.step_timeout("health_probe") for entry in entries]
        return max(timeouts, default=_DEFAULT_PROBE_TIMEOUT_SECONDS)

    def _probe_all(self, runners: Sequence[Runner], timeout: float) -> Tuple[HealthCheck, ...]:
        if not runners:
            return ()

        executor = ThreadPoolExecutor(max_workers=len(runners), thread_name_prefix="gantry-probe")
        try:
            futures = {
                runner.name: executor.submit(runner.probe, timeout_seconds=timeout)
                for runner in runners
            }
            wait(futures.values(), timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        checks: list[HealthCheck] = []
        for runner in runners:
            future = futures[runner.name]
            checks.append(_probe_check(runner.name, future, timeout))
        return tuple(checks)

    @staticmethod
    def _admit(entry: MatrixEntry, pool: RunnerPool, healthy: set[str]) -> Admission:
        candidates = pool.candidates(entry.labels)
        if not candidates:
            return Admission(
                job=entry.job,
                error=RunnerPoolExhausted(
                    message=f"No runner in the pool carries labels {list(entry.labels)} for {entry.job}.",
                    remediation="Register a runner with these labels or change the workspace labels.",
                ),
            )

        admitted = tuple(runner.name for runner in candidates if runner.name in healthy)
        if not admitted:
            names = ", ".join(runner.name for runner in candidates)
            return Admission(
                job=entry.job,
                error=RunnerUnhealthy(
                    message=f"All runners able to serve {entry.job} failed health checks ({names}).",
                    remediation="Inspect the runner hosts and re-run once they report healthy.",
                ),
            )
        return Admission(job=entry.job, runners=admitted)


def _probe_check(name: str, future, timeout: float) -> HealthCheck:
    if future.cancelled() or not future.done():
        return HealthCheck(
            name=name,
            status="FAIL",
            detail=f"Probe did not answer within {timeout:.0f} seconds.",
            remediation="Check the runner is online and not saturated.",
        )

    error = future.exception()
    if error is not None:
        logger.warning("Runner probe raised", extra={"runner": name, "error": str(error)})
        return HealthCheck(
            name=name,
            status="FAIL",
            detail=f"Probe raised {type(error).__name__}: {error}",
            remediation="Check the runner agent logs.",
        )

    if future.result():
        return HealthCheck(name=name, status="PASS", detail="Runner answered its liveness probe.")
    return HealthCheck(
        name=name,
        status="FAIL",
        detail="Runner reported insufficient capacity or an unusable workspace.",
        remediation="Free disk space on the runner or fix its workspace permissions.",
    )


__all__ = ["Admission", "HealthCheck", "HealthGate", "HealthReport"]
