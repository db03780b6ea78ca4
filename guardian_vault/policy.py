"""
AccessPolicyEvaluator: Can this actor read this resource's secret now?

Rule order:
1. guardian or owner of the resource: allowed
2. newest APPROVED request by the actor that has not expired: allowed
3. APPROVED requests exist but all have expired: approval required again
4. a live PENDING request exists: approval required, request id reported
5. otherwise: approval required

Evaluation never mutates state. Callers combine it with ApprovalWorkflow to
raise a request when approval is required.
"""
import logging
from datetime import datetime
from typing import Callable

from .models import AccessDecision, ApprovalStatus, Guardian, utc_now
from .repositories import ApprovalRequestRepository

logger = logging.getLogger("guardian_vault.auth")

REASON_GUARDIAN = "User is a guardian/owner"
REASON_APPROVED = "active approval granted"
REASON_EXPIRED = "previous approval has expired"
REASON_PENDING = "approval request pending"
REASON_NOT_GUARDIAN = "User is not a guardian"


class AccessPolicyEvaluator:

    def __init__(
        self,
        approvals: ApprovalRequestRepository,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._approvals = approvals
        self._now = now

    async def evaluate(
        self,
        resource_id: str,
        guardians: list[Guardian],
        actor_id: str,
    ) -> AccessDecision:
        if any(g.actor_id == actor_id and g.resource_id == resource_id for g in guardians):
            return AccessDecision(
                allowed=True, requires_approval=False, reason=REASON_GUARDIAN,
            )

        now = self._now()
        approved = await self._approvals.list_by_requester(
            resource_id, actor_id, ApprovalStatus.APPROVED,
        )
        for request in approved:
            if not request.is_expired(now):
                return AccessDecision(
                    allowed=True,
                    requires_approval=False,
                    reason=REASON_APPROVED,
                    approval_request_id=request.id,
                )
        if approved:
            logger.debug(
                "Approval for %s on resource %s has expired", actor_id, resource_id,
            )
            return AccessDecision(
                allowed=False,
                requires_approval=True,
                reason=REASON_EXPIRED,
                approval_request_id=approved[0].id,
            )

        pending = await self._approvals.list_by_requester(
            resource_id, actor_id, ApprovalStatus.PENDING,
        )
        live = [r for r in pending if not r.is_expired(now)]
        if live:
            return AccessDecision(
                allowed=False,
                requires_approval=True,
                reason=REASON_PENDING,
                approval_request_id=live[0].id,
            )
        return AccessDecision(
            allowed=False, requires_approval=True, reason=REASON_NOT_GUARDIAN,
        )
