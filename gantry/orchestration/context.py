"""Run context resolution from CLI options and the CI environment."""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class RunContext:
    """Identity of the run: where it came from and where to report it."""

    branch: str | None
    commit: str | None
    repository: str | None
    run_url: str | None

    @classmethod
    def from_environment(
        cls,
        *,
        branch: str | None = None,
        commit: str | None = None,
        repository: str | None = None,
        run_url: str | None = None,
    ) -> "RunContext":
        """Fill any value not given explicitly from ``GITHUB_*`` variables."""

        repository = repository or os.getenv("GITHUB_REPOSITORY") or None
        return cls(
            branch=branch or os.getenv("GITHUB_REF_NAME") or None,
            commit=commit or os.getenv("GITHUB_SHA") or None,
            repository=repository,
            run_url=run_url or _default_run_url(repository),
        )


def _default_run_url(repository: str | None) -> str | None:
    run_id = os.getenv("GITHUB_RUN_ID")
    if not repository or not run_id:
        return None
    server = os.getenv("GITHUB_SERVER_URL", "https://github.com").rstrip("/")
    return f"{server}/{repository}/actions/runs/{run_id}"


__all__ = ["RunContext"]
