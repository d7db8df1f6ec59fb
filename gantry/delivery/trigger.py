"""Downstream delivery dispatch through the pipeline dispatch API."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

import httpx

from gantry.errors import DeliveryRejected, DeliveryUnreachable

if TYPE_CHECKING:
    from gantry.orchestration.manifest import DeliveryManifest

logger = logging.getLogger("gantry.delivery.trigger")

DEFAULT_API_URL = "https://api.github.com"
_DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class DispatchAck:
    """Acknowledgement returned by the dispatch endpoint."""

    workflow: str
    branch: str
    commit: str
    status_code: int
    latency_seconds: float


class DeliveryTrigger:
    """Fire the delivery workflow at most once per branch for a run."""

    def __init__(
        self,
        *,
        repository: str | None,
        workflow: str,
        token: str | None,
        delivery_branches: Iterable[str],
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._repository = repository
        self._workflow = workflow
        self._token = token
        self._delivery_branches = frozenset(delivery_branches)
        self._api_url = api_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._fired: set[str] = set()
        self._lock = threading.Lock()

    @property
    def endpoint(self) -> str:
        return (
            f"{self._api_url}/repos/{self._repository}/actions/workflows/"
            f"{self._workflow}/dispatches"
        )

    def is_eligible(self, manifest: DeliveryManifest | None, branch: str | None) -> bool:
        """Return True when *manifest* and *branch* qualify for delivery."""

        if manifest is None or manifest.is_empty or not manifest.triggers_delivery:
            return False
        return bool(branch) and branch in self._delivery_branches

    def trigger(
        self,
        manifest: DeliveryManifest | None,
        branch: str | None,
        commit: str | None,
    ) -> DispatchAck | None:
        """Dispatch the delivery workflow, or return None when not eligible or already fired."""

        if not self.is_eligible(manifest, branch):
            logger.info(
                "Delivery not triggered",
                extra={
                    "branch": branch,
                    "manifest_empty": manifest is None or manifest.is_empty,
                },
            )
            return None
        if not commit:
            raise DeliveryRejected(
                message="Delivery requires the commit SHA of the run.",
                remediation="Pass --commit or set GITHUB_SHA before running the pipeline.",
            )
        if not self._repository:
            raise DeliveryRejected(
                message="Delivery requires the repository that owns the delivery workflow.",
                remediation="Pass --repository or set GITHUB_REPOSITORY before running the pipeline.",
            )

        with self._lock:
            if branch in self._fired:
                logger.info("Delivery already triggered for branch", extra={"branch": branch})
                return None
            self._fired.add(branch)

        try:
            return self._dispatch(branch, commit)
        except DeliveryUnreachable:
            with self._lock:
                self._fired.discard(branch)
            raise

    def _dispatch(self, branch: str, commit: str) -> DispatchAck:
        payload = {"ref": branch, "inputs": {"delivery_commit": commit}}
        headers = {"Accept": "application/vnd.github.v3+json"}
        if self._token:
            headers["Authorization"] = f"token {self._token}"

        try:
            start = time.perf_counter()
            with httpx.Client(
                timeout=self._timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
                headers=headers,
                trust_env=True,
            ) as client:
                response = client.post(self.endpoint, json=payload)
            latency = time.perf_counter() - start
        except httpx.HTTPError as exc:
            raise DeliveryUnreachable(
                message=f"Unable to reach the delivery dispatch endpoint for {self._workflow}.",
                remediation="Re-run the delivery once the dispatch API is reachable.",
            ) from exc

        if response.status_code >= 500:
            raise DeliveryUnreachable(
                message=f"Delivery dispatch endpoint responded with status {response.status_code}.",
                remediation="Re-run the delivery once the dispatch API recovers.",
            )
        if response.status_code >= 400:
            raise DeliveryRejected(
                message=f"Delivery dispatch was rejected with status {response.status_code}.",
                remediation="Verify the token permissions and that the delivery workflow exists on the branch.",
            )

        logger.info(
            "Delivery triggered",
            extra={"workflow": self._workflow, "branch": branch, "commit": commit},
        )
        return DispatchAck(
            workflow=self._workflow,
            branch=branch,
            commit=commit,
            status_code=response.status_code,
            latency_seconds=latency,
        )


__all__ = ["DEFAULT_API_URL", "DeliveryTrigger", "DispatchAck"]
