"""
SecretAccessService: The live read path.

    rate limit -> evaluate -> (read + decrypt | ask for approval) -> audit

Secrets are only decrypted after the evaluator allowed the read. Throttled
attempts are audited. Decryption failures propagate: a read never returns a
placeholder in place of a secret.
"""
import logging
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from .approval import TTL, ApprovalWorkflow
from .audit import AuditLog
from .exceptions import DomainError, ResourceNotFoundError, TOTPAccountNotFoundError
from .guardians import GuardianRegistry
from .models import (
    AccessDecision,
    ApprovalRequest,
    AuditAction,
    RequestContext,
    Resource,
    ResourceField,
    TOTPAccount,
)
from .policy import AccessPolicyEvaluator
from .ratelimit import RateLimiter, rate_limit_key
from .repositories import ResourceRepository
from .vault.secret_store import SecretStore

logger = logging.getLogger("guardian_vault.auth")

T = TypeVar("T")

REASON_THROTTLED = "rate limit exceeded, try again later"


@dataclass
class AccessResult(Generic[T]):
    """What a caller gets back from a gated operation."""

    decision: AccessDecision
    value: Optional[T] = None
    request: Optional[ApprovalRequest] = None
    error: Optional[DomainError] = None
    throttled: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision.allowed and self.error is None


def _denied(reason: str) -> AccessDecision:
    return AccessDecision(allowed=False, requires_approval=False, reason=reason)


class SecretAccessService:

    def __init__(
        self,
        resources: ResourceRepository,
        registry: GuardianRegistry,
        evaluator: AccessPolicyEvaluator,
        workflow: ApprovalWorkflow,
        store: SecretStore,
        rate_limiter: RateLimiter,
        audit: AuditLog,
    ) -> None:
        self._resources = resources
        self._registry = registry
        self._evaluator = evaluator
        self._workflow = workflow
        self._store = store
        self._limiter = rate_limiter
        self._audit = audit

    async def _gate(
        self, resource_id: str, actor_id: str, action: str,
    ) -> tuple[Optional[Resource], AccessResult]:
        """Common prefix of every read: resource lookup, throttle, evaluate."""
        resource = await self._resources.get(resource_id)
        if resource is None:
            err = ResourceNotFoundError(resource_id)
            return None, AccessResult(decision=_denied(str(err)), error=err)

        if not self._limiter.check(rate_limit_key(actor_id, resource_id, action)):
            await self._audit.log(
                AuditAction.ACCESS_THROTTLED, "THROTTLED",
                resource_id=resource_id, actor_id=actor_id, operation=action,
            )
            return resource, AccessResult(
                decision=_denied(REASON_THROTTLED), throttled=True,
            )

        guardians = await self._registry.list_by_resource(resource_id)
        decision = await self._evaluator.evaluate(resource_id, guardians, actor_id)
        if not decision.allowed:
            logger.info(
                "%s on resource %s by %s not allowed: %s",
                action, resource_id, actor_id, decision.reason,
            )
        return resource, AccessResult(decision=decision)

    async def read_field(
        self, resource_id: str, actor_id: str, name: str,
    ) -> AccessResult[ResourceField]:
        """Read one named secret of a resource.

        Raises:
            DecryptionError: If the stored value cannot be decrypted.
        """
        _, result = await self._gate(resource_id, actor_id, "get-field")
        if not result.allowed:
            return result

        field = await self._store.get_field(resource_id, name)
        await self._audit.log(
            AuditAction.FIELD_READ,
            "SUCCESS" if field is not None else "NOT_FOUND",
            resource_id=resource_id,
            actor_id=actor_id,
            field_name=name,
            reason=result.decision.reason,
        )
        result.value = field
        return result

    async def read_totp(
        self, resource_id: str, actor_id: str,
    ) -> AccessResult[TOTPAccount]:
        """Read the 2FA account linked to a resource.

        Raises:
            DecryptionError: If the stored seed cannot be decrypted.
        """
        resource, result = await self._gate(resource_id, actor_id, "get-2fa")
        if not result.allowed:
            return result

        account = None
        if resource.totp_account_id is not None:
            account = await self._store.get_totp_account(resource.totp_account_id)
        if account is None:
            result.error = TOTPAccountNotFoundError(resource.totp_account_id or "<unlinked>")
        await self._audit.log(
            AuditAction.TOTP_READ,
            "SUCCESS" if account is not None else "NOT_FOUND",
            resource_id=resource_id,
            actor_id=actor_id,
            account_id=resource.totp_account_id,
            reason=result.decision.reason,
        )
        result.value = account
        return result

    async def request_access(
        self,
        resource_id: str,
        context: RequestContext,
        ttl: Optional[TTL] = None,
        callback_url: Optional[str] = None,
    ) -> AccessResult[ApprovalRequest]:
        """Evaluate, and raise an approval request if one is needed."""
        guardians = await self._registry.list_by_resource(resource_id)
        decision = await self._evaluator.evaluate(
            resource_id, guardians, context.requester_id,
        )
        if decision.allowed:
            return AccessResult(decision=decision)

        outcome = await self._workflow.create_request(
            resource_id, context, ttl=ttl, callback_url=callback_url,
        )
        if not outcome.success:
            return AccessResult(decision=decision, error=outcome.error)
        request = outcome.value
        return AccessResult(
            decision=decision.model_copy(update={"approval_request_id": request.id}),
            request=request,
        )
