"""Runner fleet primitives: the runner protocol, a local runner and the leasing pool."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Literal, Mapping, Protocol, Sequence

from gantry.configuration.pipeline import workspace_path
from gantry.errors import RunnerPoolExhausted

logger = logging.getLogger("gantry.runners")

StepOutcomeStatus = Literal["passed", "failed", "timed-out"]

_BASE_ENV_KEYS: tuple[str, ...] = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "SHELL", "USER")
_OUTPUT_TAIL_CHARS = 2000


@dataclass(frozen=True)
class StepRequest:
    """A named step to run on a runner for one workspace."""

    workspace: str
    task: str
    step: str
    command: str | None
    timeout_seconds: float
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StepOutcome:
    """Pass, fail or timeout signal returned by a runner."""

    status: StepOutcomeStatus
    detail: str = ""
    exit_code: int | None = None


class Runner(Protocol):
    """An execution host able to run one step at a time."""

    name: str
    labels: frozenset[str]

    def probe(self, *, timeout_seconds: float) -> bool: ...

    def run_step(self, request: StepRequest) -> StepOutcome: ...

    def reset_paths(self, workspace: str, paths: Sequence[str]) -> None: ...

    def collect_artifacts(self, workspace: str, paths: Sequence[str]) -> tuple[Path, ...]: ...

    def workspace_dir(self, workspace: str) -> Path: ...


class LocalRunner:
    """Run step commands through the local shell inside a workspace directory."""

    def __init__(
        self,
        name: str,
        labels: Iterable[str],
        *,
        root: Path,
        min_free_bytes: int = 0,
    ) -> None:
        self.name = name
        self.labels = frozenset(labels)
        self.root = Path(root)
        self.min_free_bytes = min_free_bytes

    def __repr__(self) -> str:
        return f"LocalRunner(name={self.name!r}, labels={sorted(self.labels)!r})"

    def workspace_dir(self, workspace: str) -> Path:
        return workspace_path(self.root, workspace)

    def probe(self, *, timeout_seconds: float) -> bool:
        """Check the root is writable and has the configured free space."""

        if not self.root.is_dir() or not os.access(self.root, os.W_OK):
            logger.warning("Runner root is not a writable directory", extra={"runner": self.name})
            return False
        if self.min_free_bytes:
            free = shutil.disk_usage(self.root).free
            if free < self.min_free_bytes:
                logger.warning(
                    "Runner is below its free space threshold",
                    extra={"runner": self.name, "free_bytes": free},
                )
                return False
        return True

    def run_step(self, request: StepRequest) -> StepOutcome:
        if not request.command:
            return StepOutcome(status="passed", detail="No command configured; step skipped.")

        cwd = self.workspace_dir(request.workspace)
        env = {key: os.environ[key] for key in _BASE_ENV_KEYS if key in os.environ}
        env.update(
            {
                "GANTRY_WORKSPACE": request.workspace,
                "GANTRY_TASK": request.task,
                "GANTRY_STEP": request.step,
            }
        )
        env.update(request.env)

        logger.debug(
            "Running step command",
            extra={"runner": self.name, "step": request.step, "cwd": str(cwd)},
        )
        try:
            completed = subprocess.run(
                request.command,
                shell=True,
                cwd=cwd,
                env=env,
                timeout=request.timeout_seconds,
                capture_output=True,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return StepOutcome(
                status="timed-out",
                detail=f"Exceeded {request.timeout_seconds:.0f}s timeout.",
            )
        except OSError as exc:
            return StepOutcome(status="failed", detail=f"Unable to start command: {exc}")

        if completed.returncode == 0:
            return StepOutcome(status="passed", exit_code=0)

        tail = (completed.stderr or completed.stdout or "")[-_OUTPUT_TAIL_CHARS:].strip()
        return StepOutcome(
            status="failed",
            detail=f"Command exited with status {completed.returncode}. {tail}".strip(),
            exit_code=completed.returncode,
        )

    def reset_paths(self, workspace: str, paths: Sequence[str]) -> None:
        base = self.workspace_dir(workspace).resolve()
        for relative in paths:
            target = (base / relative).resolve()
            if target == base or base not in target.parents:
                logger.warning(
                    "Refusing to clear artifact path outside the workspace",
                    extra={"runner": self.name, "path": relative},
                )
                continue
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()

    def collect_artifacts(self, workspace: str, paths: Sequence[str]) -> tuple[Path, ...]:
        base = self.workspace_dir(workspace)
        return tuple(base / relative for relative in paths if (base / relative).exists())


class RunnerPool:
    """Leases admitted runners to entries, one entry per runner at a time."""

    def __init__(self, runners: Iterable[Runner]) -> None:
        self._runners: tuple[Runner, ...] = tuple(runners)
        self._withdrawn: set[str] = set()
        self._busy: set[str] = set()
        self._condition = threading.Condition()

    @property
    def runners(self) -> tuple[Runner, ...]:
        return self._runners

    def candidates(self, labels: Iterable[str]) -> tuple[Runner, ...]:
        """Return every runner carrying *labels*, admitted or not."""

        required = frozenset(labels)
        return tuple(runner for runner in self._runners if required <= runner.labels)

    def withdraw(self, name: str) -> None:
        """Remove a runner from future leases."""

        with self._condition:
            self._withdrawn.add(name)
            self._condition.notify_all()

    @contextmanager
    def lease(self, labels: Iterable[str], *, timeout: float | None = None) -> Iterator[Runner]:
        """Hold an admitted runner matching *labels* for the duration of the block."""

        required = frozenset(labels)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                eligible = [
                    runner
                    for runner in self._runners
                    if required <= runner.labels and runner.name not in self._withdrawn
                ]
                if not eligible:
                    raise RunnerPoolExhausted(
                        message=f"No admitted runner carries labels {sorted(required)}.",
                        remediation="Register a runner with these labels or adjust the workspace labels.",
                    )
                free = next((runner for runner in eligible if runner.name not in self._busy), None)
                if free is not None:
                    self._busy.add(free.name)
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise RunnerPoolExhausted(
                        message=f"Timed out waiting for a runner with labels {sorted(required)}.",
                        remediation="Add runners to the pool or raise the lease timeout.",
                    )
                self._condition.wait(remaining)

        try:
            yield free
        finally:
            with self._condition:
                self._busy.discard(free.name)
                self._condition.notify_all()


__all__ = [
    "LocalRunner",
    "Runner",
    "RunnerPool",
    "StepOutcome",
    "StepRequest",
]
