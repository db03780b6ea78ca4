"""
ApprovalWorkflow: The access request / decision state machine.

    PENDING --approve--> APPROVED
    PENDING --deny-----> DENIED
    PENDING --expiry---> EXPIRED   (lazy: noticed by a decision or a sweep)

All three targets are terminal. A decision on a terminal request is rejected
with the current status left unchanged. Every transition goes through the
repository's conditional ``resolve``, so a request changes state only once.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from .audit import AuditLog
from .exceptions import (
    DomainError,
    NoGuardiansError,
    PermissionDeniedError,
    RequestExpiredError,
    RequestNotFoundError,
    RequestNotPendingError,
    ResourceNotFoundError,
)
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    AuditAction,
    Outcome,
    RequestContext,
    utc_now,
)
from .notifications import OutcomeDispatcher
from .repositories import Repositories

logger = logging.getLogger("guardian_vault.auth")

TTL = Union[float, timedelta]


def _as_timedelta(ttl: Optional[TTL]) -> Optional[timedelta]:
    if ttl is None or isinstance(ttl, timedelta):
        return ttl
    return timedelta(seconds=ttl)


class ApprovalWorkflow:
    """Creates and resolves approval requests.

    Args:
        repositories: Persistence collaborators.
        dispatcher: Fire-and-forget outcome delivery; None disables it.
        audit: Best-effort audit sink.
        now: Clock, replaceable in tests.
        default_ttl: Applied when ``create_request`` gets no ttl.
    """

    def __init__(
        self,
        repositories: Repositories,
        dispatcher: Optional[OutcomeDispatcher] = None,
        audit: Optional[AuditLog] = None,
        now: Callable[[], datetime] = utc_now,
        default_ttl: Optional[TTL] = None,
    ) -> None:
        self._repos = repositories
        self._dispatcher = dispatcher
        self._audit = audit
        self._now = now
        self._default_ttl = _as_timedelta(default_ttl)

    async def _expire(self, request: ApprovalRequest) -> ApprovalRequest:
        """Mark a PENDING request EXPIRED and return its stored state."""
        if await self._repos.approvals.resolve(
            request.id, ApprovalStatus.EXPIRED, None, self._now(),
        ):
            logger.info("Request %s expired", request.id)
        return await self._repos.approvals.get(request.id) or request

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_request(
        self,
        resource_id: str,
        context: RequestContext,
        ttl: Optional[TTL] = None,
        callback_url: Optional[str] = None,
    ) -> Outcome[ApprovalRequest]:
        """Open a PENDING request.

        Fails when the resource is unknown, when it has no guardian who could
        resolve the request, or when the requester already has a live
        PENDING request for it.
        """
        now = self._now()
        expires_in = _as_timedelta(ttl) or self._default_ttl
        try:
            if await self._repos.resources.get(resource_id) is None:
                raise ResourceNotFoundError(resource_id)
            if not await self._repos.guardians.list_by_resource(resource_id):
                raise NoGuardiansError(resource_id)

            stale = await self._repos.approvals.list_by_requester(
                resource_id, context.requester_id, ApprovalStatus.PENDING,
            )
            for request in stale:
                if request.is_expired(now):
                    await self._expire(request)

            request = await self._repos.approvals.create(ApprovalRequest(
                resource_id=resource_id,
                context=context,
                callback_url=callback_url,
                created_at=now,
                expires_at=now + expires_in if expires_in is not None else None,
            ))
        except DomainError as err:
            logger.warning(
                "Access request by %s on resource %s rejected: %s",
                context.requester_id, resource_id, err,
            )
            return Outcome.fail(err)

        logger.info(
            "Created request %s on resource %s for %s (%s)",
            request.id, resource_id, context.requester_id, context.kind,
        )
        if self._audit is not None:
            await self._audit.log(
                AuditAction.ACCESS_REQUESTED, request.status.value,
                resource_id=resource_id,
                actor_id=context.requester_id,
                request_id=request.id,
                request=context.model_dump(mode="json"),
            )
        return Outcome.ok(request)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def record_decision(
        self,
        request_id: str,
        decision: ApprovalDecision,
        actor_id: str,
    ) -> Outcome[ApprovalRequest]:
        """Approve or deny a PENDING request.

        Checked in order: the request exists, it is still PENDING, it has not
        expired (an expired request is moved to EXPIRED), and ``actor_id`` is
        a guardian of the resource. On success the outcome is dispatched
        without being awaited.
        """
        try:
            request = await self._repos.approvals.get(request_id)
            if request is None:
                raise RequestNotFoundError(request_id)
        except DomainError as err:
            return Outcome.fail(err)

        if request.status.is_terminal:
            return Outcome.fail(
                RequestNotPendingError(request_id, request.status.value), request,
            )

        now = self._now()
        if request.is_expired(now):
            expired = await self._expire(request)
            if expired.status is not ApprovalStatus.EXPIRED:
                return Outcome.fail(
                    RequestNotPendingError(request_id, expired.status.value), expired,
                )
            return Outcome.fail(RequestExpiredError(request_id), expired)

        if await self._repos.guardians.get(request.resource_id, actor_id) is None:
            err = PermissionDeniedError(
                f"User {actor_id} is not a guardian of resource "
                f"{request.resource_id} and cannot decide on its requests."
            )
            logger.warning("Decision on %s rejected: %s", request_id, err)
            return Outcome.fail(err, request)

        status = decision.outcome
        if not await self._repos.approvals.resolve(request_id, status, actor_id, now):
            current = await self._repos.approvals.get(request_id) or request
            return Outcome.fail(
                RequestNotPendingError(request_id, current.status.value), current,
            )

        resolved = request.model_copy(update={
            "status": status, "resolved_by": actor_id, "resolved_at": now,
        })
        logger.info(
            "Recorded decision %s on request %s by %s",
            decision.value, request_id, actor_id,
        )
        if self._audit is not None:
            await self._audit.log(
                AuditAction.DECISION_MADE, status.value,
                resource_id=request.resource_id,
                actor_id=request.requester_id,
                resolver_id=actor_id,
                request_id=request_id,
            )
        if self._dispatcher is not None:
            self._dispatcher.dispatch(resolved)
        return Outcome.ok(resolved)

    async def approve(self, request_id: str, actor_id: str) -> Outcome[ApprovalRequest]:
        return await self.record_decision(request_id, ApprovalDecision.APPROVE, actor_id)

    async def deny(self, request_id: str, actor_id: str) -> Outcome[ApprovalRequest]:
        return await self.record_decision(request_id, ApprovalDecision.DENY, actor_id)

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        return await self._repos.approvals.get(request_id)

    async def list_pending(self, resource_id: Optional[str] = None) -> list[ApprovalRequest]:
        if resource_id is None:
            return await self._repos.approvals.list_pending()
        return await self._repos.approvals.list_by_resource(
            resource_id, ApprovalStatus.PENDING,
        )

    async def expire_overdue(self) -> int:
        """Move every PENDING request past its expiry to EXPIRED.

        Returns:
            Number of requests expired by this call.
        """
        now = self._now()
        expired = 0
        for request in await self._repos.approvals.list_pending():
            if request.is_expired(now) and await self._repos.approvals.resolve(
                request.id, ApprovalStatus.EXPIRED, None, now,
            ):
                expired += 1
        if expired:
            logger.info("Expired %d overdue requests", expired)
        return expired
