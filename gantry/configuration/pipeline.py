"""Pipeline config loading and job matrix expansion."""
from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

import yaml

from gantry.errors import ConfigInvalid, ConfigNotFound

ROOT_WORKSPACE = "."
DEFAULT_QUEUE = "gantry-default"
DEFAULT_TASK_TIMEOUT_MINUTES = 60.0
DEFAULT_STEP_TIMEOUT_MINUTES: Mapping[str, float] = MappingProxyType(
    {
        "health_probe": 1.0,
        "branch_freshness": 1.0,
        "delivery_manifest": 5.0,
    }
)
STEP_NAMES: tuple[str, ...] = tuple(DEFAULT_STEP_TIMEOUT_MINUTES)

_SLUG_PATTERN = re.compile(r"[^A-Za-z0-9_.]+")
_GLOBAL_KEYS = frozenset(
    {
        "queue",
        "branch",
        "generate_manifest",
        "delivery",
        "artifact_paths",
        "artifact_upload_pattern",
        "workspaces",
    }
)
_TASK_KEYS = frozenset(
    {
        "command",
        "timeout_in_minutes",
        "generate_manifest",
        "delivery",
        "artifact_paths",
        "artifact_upload_pattern",
    }
)


@dataclass(frozen=True)
class StepConfig:
    """Timeout and optional command for one built-in step of a workspace."""

    timeout_in_minutes: float
    command: str | None = None


@dataclass(frozen=True)
class TaskConfig:
    """A user task declared under a workspace."""

    name: str
    command: str | None
    timeout_in_minutes: float
    generate_manifest: bool | None = None
    delivery: bool | None = None
    artifact_paths: tuple[str, ...] | None = None
    artifact_upload_pattern: str | None = None


@dataclass(frozen=True)
class WorkspaceConfig:
    """A workspace with its runner labels, step settings and tasks."""

    name: str
    labels: tuple[str, ...]
    steps: Mapping[str, StepConfig]
    tasks: tuple[TaskConfig, ...]


@dataclass(frozen=True)
class MatrixEntry:
    """One dispatchable (workspace, task) unit of work."""

    job: str
    workspace: str
    task: str
    labels: tuple[str, ...]
    command: str | None
    timeout_seconds: float
    step_timeouts: Mapping[str, float]
    step_commands: Mapping[str, str | None]
    artifact_paths: tuple[str, ...]
    artifact_upload_pattern: str
    artifact_prefix: str
    delivery_branches: tuple[str, ...]
    generates_manifest: bool = False
    triggers_delivery: bool = False

    @property
    def bundle_name(self) -> str:
        """Name of the artifact bundle uploaded for this entry."""

        return f"{self.artifact_prefix}{self.task}.artifacts"

    def step_timeout(self, step: str) -> float:
        """Return the timeout in seconds for *step*, using the task timeout for execute."""

        if step == "execute":
            return self.timeout_seconds
        return self.step_timeouts.get(step, DEFAULT_STEP_TIMEOUT_MINUTES.get(step, 1.0) * 60)


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable pipeline definition loaded once per run."""

    source: Path
    queue: str
    branches: tuple[str, ...]
    generate_manifest: bool
    delivery: bool
    artifact_paths: tuple[str, ...]
    artifact_upload_pattern: str
    workspaces: tuple[WorkspaceConfig, ...]

    def is_delivery_branch(self, branch: str | None) -> bool:
        """Return True when *branch* is eligible for delivery."""

        return bool(branch) and branch in self.branches

    def matrix(self) -> tuple[MatrixEntry, ...]:
        """Expand the workspaces into matrix entries in declaration order."""

        entries: list[MatrixEntry] = []
        seen: dict[str, str] = {}
        for workspace in self.workspaces:
            prefix = _artifact_prefix(workspace.name)
            step_timeouts = MappingProxyType(
                {name: step.timeout_in_minutes * 60 for name, step in workspace.steps.items()}
            )
            step_commands = MappingProxyType(
                {name: step.command for name, step in workspace.steps.items()}
            )
            for task in workspace.tasks:
                job = f"{prefix}{task.name}"
                if job in seen:
                    raise ConfigInvalid(
                        message=(
                            f"Job '{job}' from workspace '{workspace.name}' collides with "
                            f"workspace '{seen[job]}' in {self.source}."
                        ),
                        remediation="Rename the task or workspace so job identifiers are unique.",
                    )
                seen[job] = workspace.name

                generates_manifest = _pick(task.generate_manifest, self.generate_manifest)
                entries.append(
                    MatrixEntry(
                        job=job,
                        workspace=workspace.name,
                        task=task.name,
                        labels=workspace.labels,
                        command=task.command,
                        timeout_seconds=task.timeout_in_minutes * 60,
                        step_timeouts=step_timeouts,
                        step_commands=step_commands,
                        artifact_paths=_pick(task.artifact_paths, self.artifact_paths),
                        artifact_upload_pattern=_pick(
                            task.artifact_upload_pattern, self.artifact_upload_pattern
                        ),
                        artifact_prefix=prefix,
                        delivery_branches=self.branches,
                        generates_manifest=generates_manifest,
                        triggers_delivery=_pick(task.delivery, self.delivery),
                    )
                )
        return tuple(entries)


def workspace_path(root: Path, workspace: str) -> Path:
    """Return the directory of *workspace* below *root*."""

    if workspace == ROOT_WORKSPACE:
        return root
    return root / workspace


def resolve(config_path: Path, *, queue: str | None = None) -> tuple[MatrixEntry, ...]:
    """Load *config_path* and return its matrix entries."""

    return load_pipeline_config(config_path, queue=queue).matrix()


def load_pipeline_config(config_path: Path, *, queue: str | None = None) -> PipelineConfig:
    """Read and validate a pipeline config file.

    *queue* replaces the config's default runner label when given; workspaces
    that declare their own labels are unaffected.
    """

    path = _resolve_path(config_path)
    payload = _load_yaml(path)

    unknown = sorted(set(payload) - _GLOBAL_KEYS)
    if unknown:
        raise ConfigInvalid(
            message=f"Config {path} has unknown keys: {', '.join(unknown)}.",
            remediation=f"Supported keys are: {', '.join(sorted(_GLOBAL_KEYS))}.",
        )

    default_queue = queue or _optional_string(payload.get("queue"), "queue", path) or DEFAULT_QUEUE
    workspaces = _parse_workspaces(payload.get("workspaces"), default_queue, path)

    return PipelineConfig(
        source=path,
        queue=default_queue,
        branches=_parse_branches(payload.get("branch"), path),
        generate_manifest=_optional_bool(
            payload.get("generate_manifest"), "generate_manifest", path
        )
        or False,
        delivery=_optional_bool(payload.get("delivery"), "delivery", path) or False,
        artifact_paths=_optional_string_list(payload.get("artifact_paths"), "artifact_paths", path)
        or (),
        artifact_upload_pattern=_optional_string(
            payload.get("artifact_upload_pattern"), "artifact_upload_pattern", path
        )
        or "",
        workspaces=workspaces,
    )


def render_generate_payload(config: PipelineConfig) -> dict:
    """Describe the resolved matrix in the shape consumed by CI front-ends."""

    entries = config.matrix()
    workflows_config = {}
    for entry in entries:
        workflows_config[entry.job] = {
            "workspace": entry.workspace,
            "task": entry.task,
            "labels": list(entry.labels),
            "timeout_in_minutes": entry.timeout_seconds / 60,
            "artifact_paths": list(entry.artifact_paths),
            "artifact_prefix": entry.artifact_prefix,
            "artifact_upload_pattern": entry.artifact_upload_pattern,
            "generate_manifest": entry.generates_manifest,
            "delivery": entry.triggers_delivery,
            "branch": entry.delivery_branches[0] if entry.delivery_branches else None,
        }

    task_config = {
        workspace.name: {
            "tasks": {
                name: {"timeout_in_minutes": step.timeout_in_minutes}
                for name, step in workspace.steps.items()
            }
        }
        for workspace in config.workspaces
    }

    return {
        "matrix_config": {"job": [entry.job for entry in entries]},
        "workflows_config": workflows_config,
        "task_config": task_config,
    }


def _resolve_path(path: Path) -> Path:
    candidate = Path(path).expanduser()
    try:
        resolved = candidate.resolve()
    except OSError:
        resolved = candidate

    if not resolved.exists() or not resolved.is_file():
        raise ConfigNotFound(
            message=f"Pipeline config {resolved} does not exist or is not a file.",
            remediation="Pass the path to the pipeline config YAML via --config.",
        )
    return resolved


def _load_yaml(path: Path) -> dict:
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigNotFound(
            message=f"Unable to read pipeline config {path}.",
            remediation="Check file permissions and retry.",
        ) from exc

    try:
        loaded = yaml.safe_load(raw_text) or {}
    except yaml.YAMLError as exc:
        raise ConfigInvalid(
            message=f"Pipeline config {path} contains invalid YAML.",
            remediation="Ensure the file follows the documented schema.",
        ) from exc

    if not isinstance(loaded, dict):
        raise ConfigInvalid(
            message=f"Pipeline config {path} must define a mapping at the root level.",
            remediation="Provide a 'workspaces' mapping and optional global flags.",
        )
    return loaded


def _parse_workspaces(data: object, queue: str, source: Path) -> tuple[WorkspaceConfig, ...]:
    if not isinstance(data, Mapping) or not data:
        raise ConfigInvalid(
            message=f"Pipeline config {source} must declare at least one workspace.",
            remediation="Add 'workspaces: {.: {tasks: {test: {command: ...}}}}'.",
        )

    workspaces: list[WorkspaceConfig] = []
    for name_raw, body in data.items():
        name = _normalize_name(name_raw, "Workspace", source)
        if body is None:
            body = {}
        if not isinstance(body, Mapping):
            raise ConfigInvalid(
                message=f"Workspace '{name}' in {source} must be a mapping.",
                remediation="Provide 'labels', 'steps' and 'tasks' under each workspace.",
            )

        labels = _optional_string_list(body.get("labels"), f"{name}.labels", source)
        workspaces.append(
            WorkspaceConfig(
                name=name,
                labels=tuple(sorted(set(labels))) if labels else (queue,),
                steps=_parse_steps(body.get("steps"), name, source),
                tasks=_parse_tasks(body.get("tasks"), name, source),
            )
        )
    return tuple(workspaces)


def _parse_steps(data: object, workspace: str, source: Path) -> Mapping[str, StepConfig]:
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigInvalid(
            message=f"Steps for workspace '{workspace}' in {source} must be a mapping.",
            remediation=f"Use step names as keys: {', '.join(STEP_NAMES)}.",
        )

    unknown = sorted(str(key) for key in data if key not in STEP_NAMES)
    if unknown:
        raise ConfigInvalid(
            message=f"Workspace '{workspace}' in {source} declares unknown steps: {', '.join(unknown)}.",
            remediation=f"Supported steps are: {', '.join(STEP_NAMES)}.",
        )

    steps: dict[str, StepConfig] = {}
    for name in STEP_NAMES:
        body = data.get(name) or {}
        if not isinstance(body, Mapping):
            raise ConfigInvalid(
                message=f"Step '{name}' of workspace '{workspace}' in {source} must be a mapping.",
                remediation="Provide 'timeout_in_minutes' and optional 'command'.",
            )
        label = f"{workspace}.steps.{name}"
        steps[name] = StepConfig(
            timeout_in_minutes=_timeout(
                body.get("timeout_in_minutes"), DEFAULT_STEP_TIMEOUT_MINUTES[name], label, source
            ),
            command=_optional_string(body.get("command"), f"{label}.command", source),
        )
    return MappingProxyType(steps)


def _parse_tasks(data: object, workspace: str, source: Path) -> tuple[TaskConfig, ...]:
    if not isinstance(data, Mapping) or not data:
        raise ConfigInvalid(
            message=f"Workspace '{workspace}' in {source} must declare at least one task.",
            remediation="Add a 'tasks' mapping of task names to task settings.",
        )

    tasks: list[TaskConfig] = []
    for name_raw, body in data.items():
        name = _normalize_name(name_raw, "Task", source)
        if body is None:
            body = {}
        if not isinstance(body, Mapping):
            raise ConfigInvalid(
                message=f"Task '{name}' of workspace '{workspace}' in {source} must be a mapping.",
                remediation="Provide 'command', 'timeout_in_minutes' and optional flags.",
            )
        unknown = sorted(str(key) for key in body if key not in _TASK_KEYS)
        if unknown:
            raise ConfigInvalid(
                message=f"Task '{name}' in {source} has unknown keys: {', '.join(unknown)}.",
                remediation=f"Supported task keys are: {', '.join(sorted(_TASK_KEYS))}.",
            )

        label = f"{workspace}.tasks.{name}"
        tasks.append(
            TaskConfig(
                name=name,
                command=_optional_string(body.get("command"), f"{label}.command", source),
                timeout_in_minutes=_timeout(
                    body.get("timeout_in_minutes"), DEFAULT_TASK_TIMEOUT_MINUTES, label, source
                ),
                generate_manifest=_optional_bool(
                    body.get("generate_manifest"), f"{label}.generate_manifest", source
                ),
                delivery=_optional_bool(body.get("delivery"), f"{label}.delivery", source),
                artifact_paths=_optional_string_list(
                    body.get("artifact_paths"), f"{label}.artifact_paths", source
                ),
                artifact_upload_pattern=_optional_string(
                    body.get("artifact_upload_pattern"), f"{label}.artifact_upload_pattern", source
                ),
            )
        )
    return tuple(tasks)


def _parse_branches(value: object, source: Path) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value.strip(),) if value.strip() else ()
    return _optional_string_list(value, "branch", source) or ()


def _timeout(value: object, default: float, label: str, source: Path) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigInvalid(
            message=f"'{label}.timeout_in_minutes' in {source} must be a positive number.",
            remediation="Use a value such as 'timeout_in_minutes: 30'.",
        )
    return float(value)


def _optional_bool(value: object, label: str, source: Path) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    raise ConfigInvalid(
        message=f"'{label}' in {source} must be true or false.",
        remediation="Use a YAML boolean for capability flags.",
    )


def _optional_string(value: object, label: str, source: Path) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigInvalid(
            message=f"'{label}' in {source} must be a string.",
            remediation="Quote the value if YAML interprets it as another type.",
        )
    return value.strip() or None


def _optional_string_list(value: object, label: str, source: Path) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Sequence) or not all(isinstance(item, str) for item in value):
        raise ConfigInvalid(
            message=f"'{label}' in {source} must be a list of strings.",
            remediation="Use a YAML list, e.g. ['bazel-testlogs', 'bazel-out/logs'].",
        )
    return tuple(item.strip() for item in value if item.strip())


def _normalize_name(value: object, kind: str, source: Path) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigInvalid(
            message=f"{kind} names in {source} must be non-empty strings.",
            remediation=f"Rename the offending {kind.lower()} key.",
        )
    return value.strip()


def _artifact_prefix(workspace: str) -> str:
    if workspace == ROOT_WORKSPACE:
        return ""
    slug = _SLUG_PATTERN.sub("-", workspace).strip("-.")
    return f"{slug}-" if slug else ""


def _pick(value, default):
    return default if value is None else value


__all__ = [
    "DEFAULT_QUEUE",
    "MatrixEntry",
    "PipelineConfig",
    "ROOT_WORKSPACE",
    "STEP_NAMES",
    "StepConfig",
    "TaskConfig",
    "WorkspaceConfig",
    "load_pipeline_config",
    "render_generate_payload",
    "resolve",
    "workspace_path",
]
