"""
Best-effort audit trail for sensitive actions.

``AuditLog.record`` never raises. A failed write is wrapped in
``AuditWriteError``, logged, and handed back in the returned
``AuditOutcome``; callers are free to ignore it. The business operation that
triggered the event is never failed or rolled back because of the audit sink.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .exceptions import AuditWriteError
from .models import AuditAction, AuditEvent, utc_now
from .repositories import AuditRepository

logger = logging.getLogger("guardian_vault.audit")


@dataclass
class AuditOutcome:
    recorded: bool
    error: Optional[AuditWriteError] = None


class AuditLog:

    def __init__(
        self,
        repository: AuditRepository,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._now = now

    async def record(self, event: AuditEvent) -> AuditOutcome:
        """Persist an event. Failures are logged and returned, not raised."""
        try:
            await self._repository.append(event)
        except Exception as err:
            failure = AuditWriteError(
                f"Failed to write audit event {event.action.value} "
                f"for resource {event.resource_id}: {err}"
            )
            failure.__cause__ = err
            logger.error("%s", failure)
            return AuditOutcome(recorded=False, error=failure)
        logger.info(
            "audit %s status=%s resource=%s actor=%s",
            event.action.value, event.status, event.resource_id, event.actor_id,
        )
        return AuditOutcome(recorded=True)

    async def log(
        self,
        action: AuditAction,
        status: str,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        resolver_id: Optional[str] = None,
        **context: Any,
    ) -> AuditOutcome:
        """Build and record an event in one call."""
        return await self.record(AuditEvent(
            action=action,
            status=status,
            resource_id=resource_id,
            actor_id=actor_id,
            resolver_id=resolver_id,
            context=context,
            created_at=self._now(),
        ))

    async def list_for_resource(self, resource_id: str) -> list[AuditEvent]:
        return await self._repository.list_by_resource(resource_id)
