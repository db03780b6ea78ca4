"""
Outbound notifications for approval outcomes.

- ``Notifier``: collaborator that tells an actor something (chat DM, email...)
- ``LogNotifier``: writes notices to the log, the default in development
- ``WebhookNotifier``: POSTs notices as JSON to a fixed relay endpoint
- ``OutcomeDispatcher``: fire-and-forget delivery of a resolved request's
  outcome to its requester and to the request's callback URL

Delivery is best-effort. Failures are logged, never retried and never
propagated to the decision that triggered them.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiohttp
import orjson

from .models import ApprovalRequest

logger = logging.getLogger("guardian_vault.notify")

DEFAULT_TIMEOUT = 10.0


async def post_json(
    url: str,
    payload: dict[str, Any],
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[aiohttp.ClientSession] = None,
) -> int:
    """POST an orjson-encoded payload and return the HTTP status.

    Raises:
        aiohttp.ClientError: On transport failure or a non-2xx response.
    """
    body = orjson.dumps(payload)
    headers = {"Content-Type": "application/json"}
    if session is not None:
        async with session.post(url, data=body, headers=headers) as response:
            response.raise_for_status()
            return response.status
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as client:
        async with client.post(url, data=body, headers=headers) as response:
            response.raise_for_status()
            return response.status


class Notifier(ABC):

    @abstractmethod
    async def notify(self, actor_id: str, message: str) -> None:
        """Deliver ``message`` to ``actor_id``. May raise; callers log it."""
        ...


class LogNotifier(Notifier):

    async def notify(self, actor_id: str, message: str) -> None:
        logger.info("Notice for %s: %s", actor_id, message)


class WebhookNotifier(Notifier):
    """Relays notices to an HTTP endpoint as ``{"actor": ..., "message": ...}``."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.url = url
        self.timeout = timeout

    async def notify(self, actor_id: str, message: str) -> None:
        await post_json(
            self.url, {"actor": actor_id, "message": message}, timeout=self.timeout,
        )


def outcome_payload(request: ApprovalRequest) -> dict[str, Any]:
    """Body POSTed to a request's callback URL once it is resolved."""
    return {
        "type": "APPROVAL_OUTCOME",
        "request_id": request.id,
        "resource_id": request.resource_id,
        "status": request.status.value,
        "requester_id": request.requester_id,
        "resolved_by": request.resolved_by,
        "resolved_at": request.resolved_at.isoformat() if request.resolved_at else None,
        "context": request.context.model_dump(mode="json"),
    }


def outcome_message(request: ApprovalRequest) -> str:
    return (
        f"Your access request {request.id} ({request.context.describe()}) "
        f"is now {request.status.value}."
    )


class OutcomeDispatcher:
    """Schedules outcome notifications without awaiting them.

    Tasks are kept referenced until they finish. ``drain`` waits for all
    in-flight deliveries, for shutdown and tests.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.notifier = notifier or LogNotifier()
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, request: ApprovalRequest) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, request: ApprovalRequest) -> None:
        try:
            await self.notifier.notify(request.requester_id, outcome_message(request))
        except Exception as err:
            logger.warning(
                "Failed to notify %s about request %s: %s",
                request.requester_id, request.id, err,
            )
        if not request.callback_url:
            return
        try:
            status = await post_json(
                request.callback_url, outcome_payload(request), timeout=self.timeout,
            )
            logger.info(
                "Callback for request %s delivered (HTTP %d)", request.id, status,
            )
        except Exception as err:
            logger.warning(
                "Callback for request %s to %s failed: %s",
                request.id, request.callback_url, err,
            )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
