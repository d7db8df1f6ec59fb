"""Delivery manifest aggregation for manifest-generating entries."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple

from gantry.configuration import MatrixEntry
from gantry.orchestration.models import TaskResult

logger = logging.getLogger("gantry.orchestration.manifest")


@dataclass(frozen=True)
class ManifestEntry:
    """A successful manifest-generating entry."""

    job: str
    workspace: str
    task: str
    artifacts: Tuple[str, ...]
    triggers_delivery: bool


@dataclass(frozen=True)
class DeliveryManifest:
    """Aggregate record asserting which flagged entries completed successfully.

    The manifest is empty whenever a flagged entry did not succeed; the jobs
    responsible are kept in ``failed_jobs``.
    """

    branch: str | None
    commit: str | None
    entries: Tuple[ManifestEntry, ...]
    failed_jobs: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def triggers_delivery(self) -> bool:
        return any(entry.triggers_delivery for entry in self.entries)

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "commit": self.commit,
            "entries": [
                {
                    "job": entry.job,
                    "workspace": entry.workspace,
                    "task": entry.task,
                    "artifacts": list(entry.artifacts),
                    "delivery": entry.triggers_delivery,
                }
                for entry in self.entries
            ],
            "failed_jobs": list(self.failed_jobs),
        }

    def write(self, path: Path) -> Path:
        """Serialise the manifest as JSON to *path*."""

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        return path


class ManifestTracker:
    """Countable completion state for the entries flagged ``generates_manifest``."""

    def __init__(
        self,
        entries: Sequence[MatrixEntry],
        *,
        branch: str | None = None,
        commit: str | None = None,
    ) -> None:
        self._known = {entry.job for entry in entries}
        self._flagged = {entry.job: entry for entry in entries if entry.generates_manifest}
        self._order = [entry.job for entry in entries if entry.generates_manifest]
        self._results: dict[str, TaskResult] = {}
        self._branch = branch
        self._commit = commit
        self._manifest: DeliveryManifest | None = None
        self._condition = threading.Condition()

    @property
    def expected(self) -> Tuple[str, ...]:
        return tuple(self._order)

    @property
    def pending(self) -> Tuple[str, ...]:
        with self._condition:
            return tuple(job for job in self._order if job not in self._results)

    def record(self, result: TaskResult) -> None:
        if result.job not in self._known:
            raise ValueError(f"Result for unknown job '{result.job}' cannot be recorded.")
        if result.job not in self._flagged:
            return

        with self._condition:
            if result.job in self._results:
                raise ValueError(f"Result for job '{result.job}' was already recorded.")
            self._results[result.job] = result
            logger.info(
                "Recorded manifest result",
                extra={"job": result.job, "status": result.status, "pending": len(self._order) - len(self._results)},
            )
            self._condition.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every flagged entry has reported; return False on timeout."""

        with self._condition:
            return self._condition.wait_for(
                lambda: len(self._results) == len(self._order), timeout=timeout
            )

    def finalize(self) -> DeliveryManifest | None:
        """Build the manifest once all flagged entries reported, else return None."""

        with self._condition:
            if self._manifest is not None:
                return self._manifest
            if len(self._results) < len(self._order):
                return None

            failed = tuple(job for job in self._order if not self._results[job].succeeded)
            entries: Tuple[ManifestEntry, ...] = ()
            if not failed:
                entries = tuple(self._manifest_entry(job) for job in self._order)

            self._manifest = DeliveryManifest(
                branch=self._branch,
                commit=self._commit,
                entries=entries,
                failed_jobs=failed,
            )
            logger.info(
                "Finalized delivery manifest",
                extra={"entries": len(entries), "failed_jobs": list(failed)},
            )
            return self._manifest

    def _manifest_entry(self, job: str) -> ManifestEntry:
        entry = self._flagged[job]
        result = self._results[job]
        return ManifestEntry(
            job=job,
            workspace=entry.workspace,
            task=entry.task,
            artifacts=tuple(str(path) for path in result.artifacts),
            triggers_delivery=entry.triggers_delivery,
        )


__all__ = ["DeliveryManifest", "ManifestEntry", "ManifestTracker"]
