"""Best-effort chat notifications for failed manifest entries."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass

import httpx

from gantry.errors import NotificationFailure

logger = logging.getLogger("gantry.delivery.notify")

_DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class FailureContext:
    """What went wrong, posted to the chat webhook."""

    run_url: str | None
    job: str
    task: str
    status: str
    branch: str | None = None
    detail: str = ""


class NotificationSink:
    """Post failure notifications on a background thread.

    ``notify`` returns immediately; failures are logged and never raised.
    """

    def __init__(
        self,
        webhook_url: str | None,
        *,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url or None
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._executor: ThreadPoolExecutor | None = None
        if self._webhook_url is not None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gantry-notify")

    @property
    def enabled(self) -> bool:
        return self._webhook_url is not None

    def notify(self, context: FailureContext) -> None:
        if self._executor is None:
            return
        try:
            self._executor.submit(self._deliver, context)
        except RuntimeError:
            logger.warning("Notification sink already closed", extra={"job": context.job})

    def close(self) -> None:
        """Wait for queued notifications to finish."""

        if self._executor is not None:
            self._executor.shutdown(wait=True)

    def _deliver(self, context: FailureContext) -> None:
        try:
            self._post(context)
        except NotificationFailure as error:
            logger.warning(str(error), extra={"job": context.job})

    def _post(self, context: FailureContext) -> None:
        try:
            with httpx.Client(
                timeout=self._timeout_seconds,
                transport=self._transport,
                trust_env=True,
            ) as client:
                response = client.post(self._webhook_url, json=asdict(context))
        except httpx.HTTPError as exc:
            raise NotificationFailure(
                message=f"Unable to post failure notification for {context.job}: {exc}",
            ) from exc

        if response.status_code >= 400:
            raise NotificationFailure(
                message=(
                    f"Chat webhook responded with status {response.status_code} "
                    f"for {context.job}."
                ),
            )
        logger.info("Posted failure notification", extra={"job": context.job})


__all__ = ["FailureContext", "NotificationSink"]
