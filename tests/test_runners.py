from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from gantry.errors import RunnerPoolExhausted
from gantry.runners import LocalRunner, RunnerPool, StepRequest
from tests.fakes import FakeRunner


def _request(command: str | None, *, timeout: float = 10.0, env: dict | None = None) -> StepRequest:
    return StepRequest(
        workspace=".",
        task="test",
        step="execute",
        command=command,
        timeout_seconds=timeout,
        env=env or {},
    )


def test_local_runner_reports_passing_command(tmp_path: Path) -> None:
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path)

    outcome = runner.run_step(_request("echo ok > marker.txt"))

    assert outcome.status == "passed"
    assert outcome.exit_code == 0
    assert (tmp_path / "marker.txt").read_text().strip() == "ok"


def test_local_runner_reports_failing_command(tmp_path: Path) -> None:
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path)

    outcome = runner.run_step(_request("echo broken >&2; exit 3"))

    assert outcome.status == "failed"
    assert outcome.exit_code == 3
    assert "broken" in outcome.detail


def test_local_runner_times_out(tmp_path: Path) -> None:
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path)

    outcome = runner.run_step(_request("sleep 5", timeout=0.2))

    assert outcome.status == "timed-out"


def test_local_runner_passes_without_command(tmp_path: Path) -> None:
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path)

    assert runner.run_step(_request(None)).status == "passed"


def test_local_runner_only_exposes_requested_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UNRELATED_SECRET", "leak")
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path)

    runner.run_step(
        _request(
            'printf "%s|%s|%s" "$DEPLOY_KEY" "$UNRELATED_SECRET" "$GANTRY_TASK" > env.txt',
            env={"DEPLOY_KEY": "k1"},
        )
    )

    assert (tmp_path / "env.txt").read_text() == "k1||test"


def test_local_runner_runs_in_workspace_directory(tmp_path: Path) -> None:
    (tmp_path / "services" / "api").mkdir(parents=True)
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path)
    request = StepRequest(
        workspace="services/api",
        task="build",
        step="execute",
        command="touch built",
        timeout_seconds=10,
    )

    runner.run_step(request)

    assert (tmp_path / "services" / "api" / "built").exists()


def test_reset_paths_clears_only_workspace_paths(tmp_path: Path) -> None:
    logs = tmp_path / "bazel-testlogs"
    logs.mkdir()
    (logs / "old.log").write_text("stale")
    (tmp_path / "report.xml").write_text("stale")
    outside = tmp_path.parent / f"{tmp_path.name}-outside"
    outside.mkdir()
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path)

    runner.reset_paths(".", ["bazel-testlogs", "report.xml", "missing", f"../{outside.name}"])

    assert not logs.exists()
    assert not (tmp_path / "report.xml").exists()
    assert outside.exists()


def test_probe_fails_for_missing_root(tmp_path: Path) -> None:
    runner = LocalRunner("local-1", ["gantry-default"], root=tmp_path / "absent")

    assert runner.probe(timeout_seconds=1) is False
    assert LocalRunner("local-2", [], root=tmp_path).probe(timeout_seconds=1) is True


def test_probe_fails_below_free_space_threshold(tmp_path: Path) -> None:
    runner = LocalRunner("local-1", [], root=tmp_path, min_free_bytes=1 << 62)

    assert runner.probe(timeout_seconds=1) is False


def test_pool_lease_matches_label_superset() -> None:
    small = FakeRunner("small", ["linux"])
    large = FakeRunner("large", ["linux", "large"])
    pool = RunnerPool([small, large])

    with pool.lease(["large"]) as runner:
        assert runner is large

    assert pool.candidates(["linux"]) == (small, large)


def test_pool_lease_raises_without_eligible_runner() -> None:
    pool = RunnerPool([FakeRunner("small", ["linux"])])

    with pytest.raises(RunnerPoolExhausted):
        with pool.lease(["gpu"]):
            pass


def test_pool_lease_skips_withdrawn_runners() -> None:
    pool = RunnerPool([FakeRunner("a", ["linux"]), FakeRunner("b", ["linux"])])
    pool.withdraw("a")

    with pool.lease(["linux"]) as runner:
        assert runner.name == "b"

    pool.withdraw("b")
    with pytest.raises(RunnerPoolExhausted):
        with pool.lease(["linux"]):
            pass


def test_pool_lease_times_out_while_runner_busy() -> None:
    pool = RunnerPool([FakeRunner("only", ["linux"])])

    with pool.lease(["linux"]):
        with pytest.raises(RunnerPoolExhausted) as exc:
            with pool.lease(["linux"], timeout=0.05):
                pass

    assert "Timed out" in exc.value.message


def test_pool_never_hands_one_runner_to_two_holders() -> None:
    pool = RunnerPool([FakeRunner("only", ["linux"])])
    active = []
    overlaps = []
    lock = threading.Lock()

    def worker() -> None:
        with pool.lease(["linux"]) as runner:
            with lock:
                if runner.name in active:
                    overlaps.append(runner.name)
                active.append(runner.name)
            time.sleep(0.01)
            with lock:
                active.remove(runner.name)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
