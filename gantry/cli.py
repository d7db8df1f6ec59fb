from __future__ import annotations

import json
import logging
from pathlib import Path

import typer
from rich.logging import RichHandler

from . import GantryError, __version__
from .configuration import load_pipeline_config, render_generate_payload
from .errors import InputValidationError
from .exit_codes import ExitCode
from .orchestration import (
    RunContext,
    collect_health_report,
    handle_domain_error,
    run_pipeline,
)
from .reporting import ReportRenderOptions, render_health_report, render_run_report

APP_NAME = "gantry"
DEFAULT_CONFIG_PATH = Path(".gantry/config.yaml")
DEFAULT_DELIVERY_WORKFLOW = "gantry-delivery.yaml"
DEFAULT_ARTIFACT_DIR = Path(".gantry/artifacts")
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

app = typer.Typer(
    name=APP_NAME,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def configure_logging(*, quiet: bool = False) -> None:
    """Initialise application-wide logging."""

    level = logging.WARNING if quiet else logging.INFO
    root = logging.getLogger()

    if getattr(configure_logging, "_configured", False):
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)
        configure_logging._level = level
        return

    handler = RichHandler(
        rich_tracebacks=True,
        show_path=False,
        markup=False,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    configure_logging._configured = True
    configure_logging._level = level


def _validate_directory(path: Path, description: str, *, create: bool = False) -> Path:
    """Ensure the provided directory exists, creating it when requested."""

    candidate = path.expanduser()
    if create:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InputValidationError(
                message=f"Unable to create the {description} {candidate}.",
                remediation=f"Choose a writable location for the {description}.",
            ) from exc

    try:
        resolved = candidate.resolve()
    except OSError:
        resolved = candidate

    if not resolved.is_dir():
        raise InputValidationError(
            message=f"{description.capitalize()} {_quote_path(resolved)} is not a directory.",
            remediation=f"Verify the {description} path and retry.",
        )
    return resolved


def _validate_parallelism(value: int) -> int:
    if value < 1:
        raise InputValidationError(
            message="--parallelism must be at least 1.",
            remediation="Pass the number of local runners to start, e.g. --parallelism 4.",
        )
    return value


def _is_quiet_mode() -> bool:
    """Determine if the CLI is currently running in quiet mode."""

    return getattr(configure_logging, "_level", logging.INFO) == logging.WARNING


def _quote_path(path: Path) -> str:
    """Return a quoted string representation when spaces are present."""

    value = str(path)
    if " " in value:
        return f'"{value}"'
    return value


def _exit_with_error(exc: GantryError) -> None:
    outcome = handle_domain_error(exc)
    raise typer.Exit(code=int(outcome.exit_code)) from exc


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    quiet: bool = typer.Option(
        False,
        "--quiet",
        help="Reduce log output to warnings and errors.",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the Gantry version and exit.",
    ),
) -> None:
    """Configure logging and handle global options."""

    configure_logging(quiet=quiet)

    if version:
        typer.echo(__version__)
        raise typer.Exit(code=int(ExitCode.SUCCESS))

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=int(ExitCode.SUCCESS))


@app.command("run")
def run(
    config: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        "-c",
        help="Path to the pipeline config YAML.",
        show_default=True,
    ),
    delivery_workflow: str = typer.Option(
        DEFAULT_DELIVERY_WORKFLOW,
        "--delivery-workflow",
        help="File name of the workflow dispatched for delivery.",
        show_default=True,
    ),
    queue: str = typer.Option(
        None,
        "--queue",
        "-q",
        help="Runner label used by workspaces that do not declare their own labels.",
    ),
    slack_webhook_url: str = typer.Option(
        None,
        "--slack-webhook-url",
        help="Webhook URL, or the name of a secret holding it, for failure notifications.",
    ),
    inherited_secrets: str = typer.Option(
        None,
        "--inherited-secrets",
        help="Comma separated secret names or regular expressions exposed to the execute step.",
    ),
    branch: str = typer.Option(None, "--branch", help="Branch of the run (default: GITHUB_REF_NAME)."),
    commit: str = typer.Option(None, "--commit", help="Commit SHA of the run (default: GITHUB_SHA)."),
    repository: str = typer.Option(
        None, "--repository", help="owner/name of the repository (default: GITHUB_REPOSITORY)."
    ),
    run_url: str = typer.Option(None, "--run-url", help="Link included in failure notifications."),
    workspace_root: Path = typer.Option(
        Path("."),
        "--workspace-root",
        help="Directory containing the workspaces.",
    ),
    artifact_dir: Path = typer.Option(
        DEFAULT_ARTIFACT_DIR,
        "--artifact-dir",
        help="Directory receiving uploaded artifact bundles and the delivery manifest.",
        show_default=True,
    ),
    parallelism: int = typer.Option(
        1,
        "--parallelism",
        "-p",
        help="Number of local runners to start.",
        show_default=True,
    ),
    label: list[str] = typer.Option(
        [],
        "--label",
        "-l",
        help="Extra label carried by the local runners (pass multiple times).",
    ),
    wide: bool = typer.Option(
        False,
        "--wide",
        help="Render the run report with per-step results.",
    ),
) -> None:
    """Dispatch every matrix entry and trigger delivery when the run qualifies."""

    logger = logging.getLogger("gantry.cli")
    quiet_mode = _is_quiet_mode()

    try:
        root = _validate_directory(workspace_root, "workspace root")
        artifacts = _validate_directory(artifact_dir, "artifact directory", create=True)
        runners = _validate_parallelism(parallelism)
    except InputValidationError as exc:
        logger.error(str(exc))
        if exc.remediation:
            logger.error("Remediation: %s", exc.remediation)
        raise typer.Exit(code=int(ExitCode.INVALID_INPUT)) from exc

    context = RunContext.from_environment(
        branch=branch,
        commit=commit,
        repository=repository,
        run_url=run_url,
    )
    outcome = run_pipeline(
        config,
        context=context,
        delivery_workflow=delivery_workflow,
        workspace_root=root,
        artifact_dir=artifacts,
        queue=queue,
        notification_target=slack_webhook_url,
        inherited_secrets=inherited_secrets,
        runner_labels=tuple(label),
        parallelism=runners,
    )

    printed_message = False
    if outcome.message and not quiet_mode:
        typer.echo(outcome.message)
        printed_message = True

    if outcome.report is not None:
        if printed_message:
            typer.echo("")
        options = ReportRenderOptions(quiet=quiet_mode, wide=wide)
        typer.echo(render_run_report(outcome.report, options))

    raise typer.Exit(code=int(outcome.exit_code))


@app.command("generate")
def generate(
    config: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        "-c",
        help="Path to the pipeline config YAML.",
        show_default=True,
    ),
    queue: str = typer.Option(
        None,
        "--queue",
        "-q",
        help="Runner label used by workspaces that do not declare their own labels.",
    ),
    pretty: bool = typer.Option(
        True,
        "--pretty/--compact",
        help="Indent the JSON output.",
    ),
) -> None:
    """Print the resolved job matrix as JSON."""

    try:
        payload = render_generate_payload(load_pipeline_config(config, queue=queue))
    except GantryError as exc:
        _exit_with_error(exc)

    if pretty:
        typer.echo(json.dumps(payload, indent=2))
    else:
        typer.echo(json.dumps(payload, separators=(",", ":")))
    raise typer.Exit(code=int(ExitCode.SUCCESS))


@app.command("health")
def health(
    config: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        "-c",
        help="Path to the pipeline config YAML.",
        show_default=True,
    ),
    queue: str = typer.Option(
        None,
        "--queue",
        "-q",
        help="Runner label used by workspaces that do not declare their own labels.",
    ),
    workspace_root: Path = typer.Option(
        Path("."),
        "--workspace-root",
        help="Directory containing the workspaces.",
    ),
    parallelism: int = typer.Option(
        1,
        "--parallelism",
        "-p",
        help="Number of local runners to probe.",
        show_default=True,
    ),
    label: list[str] = typer.Option(
        [],
        "--label",
        "-l",
        help="Extra label carried by the local runners (pass multiple times).",
    ),
) -> None:
    """Probe the runner pool and show which entries would be admitted."""

    logger = logging.getLogger("gantry.cli")

    try:
        root = _validate_directory(workspace_root, "workspace root")
        report = collect_health_report(
            config,
            workspace_root=root,
            queue=queue,
            runner_labels=tuple(label),
            parallelism=_validate_parallelism(parallelism),
        )
    except GantryError as exc:
        _exit_with_error(exc)
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error during runner health checks.")
        raise typer.Exit(code=int(ExitCode.UNEXPECTED_ERROR)) from exc

    typer.echo(render_health_report(report))
    if report.excluded:
        raise typer.Exit(code=int(ExitCode.RUNNER_UNAVAILABLE))
    raise typer.Exit(code=int(ExitCode.SUCCESS))


def entrypoint() -> None:
    """Execute the Typer application."""

    app()


__all__ = ["app", "entrypoint", "configure_logging", "ExitCode"]
