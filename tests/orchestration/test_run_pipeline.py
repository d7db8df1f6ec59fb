from __future__ import annotations

import json
import time
from pathlib import Path

import httpx
import pytest

from gantry.delivery import FilesystemArtifactStore
from gantry.errors import ConfigInvalid, GantryError, InputValidationError, RunnerUnhealthy
from gantry.exit_codes import ExitCode
from gantry.orchestration import RunContext, collect_health_report, handle_domain_error, run_pipeline
from gantry.runners import StepOutcome
from gantry.utils import MappingSecretStore
from tests.fakes import FakeRunner, sleeping, write_config

WEBHOOK_URL = "https://hooks.example.com/services/T000"
CONTEXT = RunContext(
    branch="main",
    commit="abc123",
    repository="acme/widgets",
    run_url="https://github.com/acme/widgets/actions/runs/42",
)


class RecordingTransport:
    """Collects outgoing requests and answers with configurable statuses."""

    def __init__(self, dispatch_status: int = 204) -> None:
        self.dispatch_status = dispatch_status
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "hooks.example.com":
            return httpx.Response(200)
        return httpx.Response(self.dispatch_status)

    @property
    def dispatches(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith("/dispatches")]

    @property
    def notifications(self) -> list[dict]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.host == "hooks.example.com"
        ]


def _config(tmp_path: Path, tasks: dict, **extra) -> Path:
    payload = {"branch": "main", "workspaces": {".": {"tasks": tasks}}}
    payload.update(extra)
    return write_config(tmp_path, payload, name="pipeline.yaml")


def _run(tmp_path: Path, config: Path, runners, http: RecordingTransport, **overrides):
    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    options = {
        "context": CONTEXT,
        "delivery_workflow": "deliver.yaml",
        "workspace_root": workspace,
        "artifact_dir": tmp_path / "artifacts",
        "notification_target": WEBHOOK_URL,
        "runners": runners,
        "secret_store": MappingSecretStore({"GITHUB_TOKEN": "ghs_token"}),
        "transport": http.transport,
    }
    options.update(overrides)
    return run_pipeline(config, **options)


def test_failed_manifest_entry_blocks_delivery_and_notifies(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        {
            "build": {"command": "make build", "generate_manifest": True, "delivery": True},
            "test": {"command": "make test", "generate_manifest": True},
            "lint": {"command": "make lint"},
        },
    )
    runner = FakeRunner(
        outcomes={("test", "execute"): StepOutcome(status="failed", detail="2 tests failed")}
    )
    http = RecordingTransport()

    outcome = _run(tmp_path, config, [runner], http)

    assert outcome.exit_code == ExitCode.TASK_FAILED
    assert outcome.status == "failed"
    statuses = {report.result.job: report.result.status for report in outcome.report.entries}
    assert statuses == {"build": "succeeded", "test": "failed", "lint": "succeeded"}
    assert outcome.report.manifest.is_empty
    assert outcome.report.manifest.failed_jobs == ("test",)
    assert http.dispatches == []
    assert len(http.notifications) == 1
    assert http.notifications[0]["job"] == "test"
    assert http.notifications[0]["run_url"] == CONTEXT.run_url
    assert "Delivery manifest suppressed by: test." in outcome.message


def test_successful_manifest_entries_trigger_delivery_once(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        {
            "build": {"command": "make build", "generate_manifest": True, "delivery": True},
            "package": {"command": "make package", "generate_manifest": True, "delivery": True},
        },
    )
    http = RecordingTransport()

    outcome = _run(tmp_path, config, [FakeRunner("a"), FakeRunner("b")], http)

    assert outcome.exit_code == ExitCode.SUCCESS
    assert len(http.dispatches) == 1
    body = json.loads(http.dispatches[0].content)
    assert body == {"ref": "main", "inputs": {"delivery_commit": "abc123"}}
    assert http.dispatches[0].headers["Authorization"] == "token ghs_token"
    assert http.notifications == []
    assert outcome.report.delivery.branch == "main"

    manifest = json.loads((tmp_path / "artifacts" / "delivery_manifest.json").read_text())
    assert [entry["job"] for entry in manifest["entries"]] == ["build", "package"]


def test_non_delivery_branch_does_not_trigger(tmp_path: Path) -> None:
    config = _config(
        tmp_path, {"build": {"command": "make", "generate_manifest": True, "delivery": True}}
    )
    http = RecordingTransport()
    context = RunContext(branch="feature/x", commit="abc123", repository="acme/widgets", run_url=None)

    outcome = _run(tmp_path, config, [FakeRunner()], http, context=context)

    assert outcome.exit_code == ExitCode.SUCCESS
    assert http.dispatches == []
    assert outcome.report.delivery is None


def test_timed_out_entry_does_not_affect_others(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        {
            "slow": {"command": "sleep", "timeout_in_minutes": 0.001},
            "fast": {"command": "true"},
        },
    )
    runner = FakeRunner(outcomes={("slow", "execute"): sleeping(0.3)})
    http = RecordingTransport()

    outcome = _run(tmp_path, config, [runner], http)

    statuses = {report.result.job: report.result.status for report in outcome.report.entries}
    assert statuses == {"slow": "timed-out", "fast": "succeeded"}
    assert outcome.exit_code == ExitCode.TIMEOUT
    assert "execute" in runner.steps_for("fast")


def test_upload_failure_does_not_change_task_status(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        {"build": {"command": "make", "artifact_upload_pattern": "dist/*"}},
    )
    workspace = tmp_path / "workspace"
    (workspace / "dist").mkdir(parents=True)
    (workspace / "dist" / "app.whl").write_text("wheel")
    blocked = tmp_path / "artifacts"
    blocked.write_text("not a directory")
    http = RecordingTransport()

    outcome = _run(tmp_path, config, [FakeRunner(root=workspace)], http, artifact_dir=blocked)

    (report,) = outcome.report.entries
    assert report.result.status == "succeeded"
    assert report.upload.status == "failed"
    assert outcome.exit_code == ExitCode.SUCCESS


def test_artifacts_upload_for_failed_entries(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        {"test": {"command": "make test", "artifact_upload_pattern": "logs/*.log"}},
    )
    workspace = tmp_path / "workspace"
    (workspace / "logs").mkdir(parents=True)
    (workspace / "logs" / "test.log").write_text("FAILED")
    runner = FakeRunner(root=workspace, outcomes={"execute": StepOutcome(status="failed")})

    outcome = _run(tmp_path, config, [runner], RecordingTransport())

    (report,) = outcome.report.entries
    assert report.upload.status == "uploaded"
    assert (tmp_path / "artifacts" / "test.artifacts" / "logs" / "test.log").exists()


def test_unreachable_delivery_keeps_run_status_but_sets_exit_code(tmp_path: Path) -> None:
    config = _config(
        tmp_path, {"build": {"command": "make", "generate_manifest": True, "delivery": True}}
    )
    http = RecordingTransport(dispatch_status=503)

    outcome = _run(tmp_path, config, [FakeRunner()], http)

    assert outcome.status == "succeeded"
    assert outcome.exit_code == ExitCode.DELIVERY_UNREACHABLE
    assert outcome.report.delivery is None
    assert outcome.report.delivery_error is not None
    assert outcome.remediation


def test_inherited_secrets_reach_only_execute(tmp_path: Path) -> None:
    config = _config(tmp_path, {"deploy": {"command": "make deploy"}})
    runner = FakeRunner()
    store = MappingSecretStore({"DEPLOY_KEY": "k1", "DEPLOY_TOKEN": "t1", "SLACK_URL": "s1"})

    _run(
        tmp_path,
        config,
        [runner],
        RecordingTransport(),
        secret_store=store,
        inherited_secrets="DEPLOY_.*",
    )

    envs = {request.step: dict(request.env) for request in runner.requests}
    assert envs["execute"] == {"DEPLOY_KEY": "k1", "DEPLOY_TOKEN": "t1"}
    assert envs["branch_freshness"] == {}


def test_notification_target_may_name_a_secret(tmp_path: Path) -> None:
    config = _config(tmp_path, {"build": {"command": "make", "generate_manifest": True}})
    http = RecordingTransport()
    store = MappingSecretStore({"SLACK_WEBHOOK_URL": WEBHOOK_URL})
    runner = FakeRunner(outcomes={"execute": StepOutcome(status="failed")})

    _run(
        tmp_path,
        config,
        [runner],
        http,
        secret_store=store,
        notification_target="SLACK_WEBHOOK_URL",
    )

    assert [payload["job"] for payload in http.notifications] == ["build"]


def test_unhealthy_fleet_skips_entries(tmp_path: Path) -> None:
    config = _config(tmp_path, {"build": {"command": "make"}})

    outcome = _run(tmp_path, config, [FakeRunner(healthy=False)], RecordingTransport())

    (report,) = outcome.report.entries
    assert report.result.status == "skipped"
    assert outcome.exit_code == ExitCode.RUNNER_UNAVAILABLE


def test_missing_config_maps_to_config_error(tmp_path: Path) -> None:
    outcome = _run(tmp_path, tmp_path / "absent.yaml", [FakeRunner()], RecordingTransport())

    assert outcome.exit_code == ExitCode.CONFIG_ERROR
    assert outcome.report is None
    assert outcome.remediation


def test_invalid_secret_pattern_maps_to_invalid_input(tmp_path: Path) -> None:
    config = _config(tmp_path, {"build": {"command": "make"}})

    outcome = _run(tmp_path, config, [FakeRunner()], RecordingTransport(), inherited_secrets="(")

    assert outcome.exit_code == ExitCode.INVALID_INPUT


def test_local_runners_execute_real_commands(tmp_path: Path) -> None:
    config = _config(tmp_path, {"build": {"command": "echo built > out.txt"}})

    outcome = _run(tmp_path, config, None, RecordingTransport(), parallelism=2)

    assert outcome.exit_code == ExitCode.SUCCESS
    assert (tmp_path / "workspace" / "out.txt").read_text().strip() == "built"
    assert outcome.report.entries[0].result.runner in {"local-1", "local-2"}


def test_collect_health_report_uses_local_runners(tmp_path: Path) -> None:
    config = _config(tmp_path, {"build": {"command": "make"}}, queue="ci")

    report = collect_health_report(config, workspace_root=tmp_path, runner_labels=["large"])

    assert report.healthy_runners == ("local-1",)
    assert report.admission("build").admitted


@pytest.mark.parametrize("branch", ["main", None])
def test_run_context_reads_github_environment(monkeypatch: pytest.MonkeyPatch, branch) -> None:
    monkeypatch.setenv("GITHUB_REF_NAME", "release")
    monkeypatch.setenv("GITHUB_SHA", "def456")
    monkeypatch.setenv("GITHUB_REPOSITORY", "acme/widgets")
    monkeypatch.setenv("GITHUB_RUN_ID", "7")
    monkeypatch.delenv("GITHUB_SERVER_URL", raising=False)

    context = RunContext.from_environment(branch=branch)

    assert context.branch == (branch or "release")
    assert context.commit == "def456"
    assert context.run_url == "https://github.com/acme/widgets/actions/runs/7"


@pytest.mark.parametrize("parallelism", [1, 2])
def test_entries_sharing_artifact_paths_upload_their_own_files(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, parallelism: int
) -> None:
    shared = {"artifact_paths": ["out"], "artifact_upload_pattern": "out"}
    config = _config(
        tmp_path,
        {
            "build": {"command": "mkdir -p out && echo build > out/build.txt", **shared},
            "test": {"command": "sleep 0.3 && mkdir -p out && echo test > out/test.txt", **shared},
        },
    )
    original_put = FilesystemArtifactStore.put

    def slow_put(self, bundle, files, root):
        time.sleep(0.3)
        return original_put(self, bundle, files, root)

    monkeypatch.setattr(FilesystemArtifactStore, "put", slow_put)

    outcome = _run(tmp_path, config, None, RecordingTransport(), parallelism=parallelism)

    uploads = {report.entry.job: report.upload for report in outcome.report.entries}
    assert outcome.exit_code == ExitCode.SUCCESS
    for job in ("build", "test"):
        assert uploads[job].status == "uploaded"
        assert [path.name for path in uploads[job].files] == [f"{job}.txt"]
        assert (tmp_path / "artifacts" / f"{job}.artifacts" / "out" / f"{job}.txt").exists()
    assert not (tmp_path / "artifacts" / "test.artifacts" / "out" / "build.txt").exists()
    assert not (tmp_path / "artifacts" / "build.artifacts" / "out" / "test.txt").exists()


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ConfigInvalid(message="bad"), ExitCode.CONFIG_ERROR),
        (InputValidationError(message="bad"), ExitCode.INVALID_INPUT),
        (RunnerUnhealthy(message="down"), ExitCode.UNEXPECTED_ERROR),
        (GantryError(message="boom"), ExitCode.UNEXPECTED_ERROR),
    ],
)
def test_handle_domain_error_maps_known_errors(error: GantryError, expected: ExitCode) -> None:
    outcome = handle_domain_error(error)

    assert outcome.exit_code == expected
    assert outcome.message == error.message
