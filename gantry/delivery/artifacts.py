"""Artifact bundling and upload for every dispatched entry."""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Sequence, Tuple

from gantry.configuration import MatrixEntry
from gantry.configuration.pipeline import workspace_path
from gantry.errors import UploadFailure

if TYPE_CHECKING:
    from gantry.orchestration.models import TaskResult

logger = logging.getLogger("gantry.delivery.artifacts")


class ArtifactStore(Protocol):
    """Destination for named artifact bundles."""

    def put(self, bundle: str, files: Sequence[Path], root: Path) -> str: ...


class FilesystemArtifactStore:
    """Copy bundles into ``<destination>/<bundle>/`` keeping relative layout."""

    def __init__(self, destination: Path) -> None:
        self.destination = Path(destination)

    def put(self, bundle: str, files: Sequence[Path], root: Path) -> str:
        target_root = self.destination / bundle
        try:
            for source in files:
                target = target_root / source.relative_to(root)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
        except (OSError, ValueError) as exc:
            raise UploadFailure(
                message=f"Unable to store bundle {bundle} under {self.destination}: {exc}",
                remediation="Check the artifact directory is writable and has free space.",
            ) from exc
        return str(target_root)


@dataclass(frozen=True)
class UploadReport:
    """Outcome of uploading one entry's artifact bundle."""

    job: str
    bundle: str
    status: str
    files: Tuple[Path, ...] = ()
    location: str | None = None
    detail: str = ""

    @property
    def uploaded(self) -> bool:
        return self.status == "uploaded"


class ArtifactRelay:
    """Stage and upload entry outputs whatever the task outcome."""

    def __init__(self, store: ArtifactStore, *, root: Path) -> None:
        self._store = store
        self._root = Path(root)

    def upload(self, entry: MatrixEntry, result: TaskResult) -> UploadReport:
        bundle = entry.bundle_name
        base = workspace_path(self._root, entry.workspace)

        try:
            files = match_upload_pattern(base, entry.artifact_upload_pattern)
        except (OSError, ValueError, NotImplementedError) as exc:
            return self._failed(entry, bundle, f"Invalid upload pattern: {exc}")

        if not files:
            logger.warning(
                "No files matched the upload pattern",
                extra={"job": entry.job, "bundle": bundle, "task_status": result.status},
            )
            return UploadReport(
                job=entry.job,
                bundle=bundle,
                status="empty",
                detail="No files matched the upload pattern.",
            )

        try:
            location = self._store.put(bundle, files, base)
        except (UploadFailure, OSError) as error:
            return self._failed(entry, bundle, str(error))

        logger.info(
            "Uploaded artifact bundle",
            extra={"job": entry.job, "bundle": bundle, "files": len(files), "task_status": result.status},
        )
        return UploadReport(
            job=entry.job,
            bundle=bundle,
            status="uploaded",
            files=files,
            location=location,
        )

    @staticmethod
    def _failed(entry: MatrixEntry, bundle: str, detail: str) -> UploadReport:
        logger.error("Artifact upload failed", extra={"job": entry.job, "bundle": bundle, "detail": detail})
        return UploadReport(job=entry.job, bundle=bundle, status="failed", detail=detail)


def match_upload_pattern(base: Path, pattern: str) -> Tuple[Path, ...]:
    """Resolve newline separated globs below *base*; ``!`` lines exclude matches.

    Directories that match contribute every file beneath them.
    """

    included: dict[Path, None] = {}
    excluded: set[Path] = set()
    if not base.is_dir():
        return ()

    for raw in pattern.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        negate = line.startswith("!")
        glob = line[1:].strip() if negate else line
        if glob.startswith("./"):
            glob = glob[2:]
        if Path(glob).is_absolute():
            raise ValueError(f"upload pattern '{glob}' must be relative to the workspace")

        for match in sorted(base.glob(glob)):
            files = sorted(path for path in match.rglob("*") if path.is_file()) if match.is_dir() else [match]
            for path in files:
                if negate:
                    excluded.add(path)
                elif path.is_file():
                    included.setdefault(path, None)

    return tuple(path for path in included if path not in excluded)


__all__ = [
    "ArtifactRelay",
    "ArtifactStore",
    "FilesystemArtifactStore",
    "UploadReport",
    "match_upload_pattern",
]
