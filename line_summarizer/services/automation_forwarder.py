"""
AutomationForwarder - fire-and-forget copy of verified webhook bodies.

The body is POSTed unchanged, with the original X-Line-Signature header, to
AUTOMATION_WEBHOOK_URL. Each forward runs as its own asyncio task; the
webhook response never waits for it and its outcome is only logged and
counted. Pending tasks are drained on shutdown.
"""

import asyncio
from typing import Optional, Set

import httpx

from line_summarizer.config import settings
from line_summarizer.core import metrics
from line_summarizer.core.logging_config import get_logger

logger = get_logger(__name__)


class AutomationForwarder:

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = settings.AUTOMATION_WEBHOOK_URL if url is None else url
        self.timeout = timeout or settings.AUTOMATION_WEBHOOK_TIMEOUT
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def forward(self, body: bytes, signature: Optional[str]) -> Optional[asyncio.Task]:
        """Schedule a forward and return immediately. None when forwarding is disabled."""
        if not self.enabled:
            return None
        task = asyncio.create_task(self._send(body, signature))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, body: bytes, signature: Optional[str]) -> None:
        headers = {"Content-Type": "application/json"}
        if signature:
            headers["X-Line-Signature"] = signature

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            metrics.automation_forwards_total.labels(status="rejected").inc()
            logger.warning(
                "automation_forward_rejected",
                url=self.url,
                status_code=e.response.status_code,
            )
            return
        except httpx.HTTPError as e:
            metrics.automation_forwards_total.labels(status="error").inc()
            logger.warning(
                "automation_forward_failed",
                url=self.url,
                error_type=type(e).__name__,
                error=str(e),
            )
            return

        metrics.automation_forwards_total.labels(status="success").inc()
        logger.debug("automation_forwarded", url=self.url, status_code=response.status_code, bytes=len(body))

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight forwards, cancelling whatever is left after timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        logger.info("automation_forwarder_drained", completed=len(done), cancelled=len(pending))


_forwarder: Optional[AutomationForwarder] = None


def get_automation_forwarder() -> AutomationForwarder:
    global _forwarder
    if _forwarder is None:
        _forwarder = AutomationForwarder()
    return _forwarder
