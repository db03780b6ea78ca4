"""
GuardianRegistry: Who may administer and approve access to a resource.

Membership is a set of (resource, actor) pairs, each OWNER or GUARDIAN,
mutated only by ``grant`` and ``revoke``. ``revoke`` refuses to remove an
OWNER so a resource can never lose its administrator.

Public mutations return ``Outcome``; domain errors never escape.
"""
import logging
from typing import Optional

from .audit import AuditLog
from .exceptions import (
    DomainError,
    DuplicateError,
    GuardianNotFoundError,
    OwnerRemovalError,
    PermissionDeniedError,
    ResourceNotFoundError,
)
from .models import AuditAction, Guardian, GuardianRole, Outcome, Resource
from .repositories import GuardianRepository, ResourceRepository

logger = logging.getLogger("guardian_vault.auth")


class GuardianRegistry:

    def __init__(
        self,
        resources: ResourceRepository,
        guardians: GuardianRepository,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self._resources = resources
        self._guardians = guardians
        self._audit = audit

    async def _require_resource(self, resource_id: str) -> Resource:
        resource = await self._resources.get(resource_id)
        if resource is None:
            raise ResourceNotFoundError(resource_id)
        return resource

    async def _require_owner(self, resource_id: str, actor_id: str, action: str) -> None:
        acting = await self._guardians.get(resource_id, actor_id)
        if acting is None or acting.role is not GuardianRole.OWNER:
            raise PermissionDeniedError(f"Only the owner can {action} guardians.")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def grant(
        self,
        resource_id: str,
        actor_id: str,
        role: GuardianRole = GuardianRole.GUARDIAN,
        acting_actor_id: Optional[str] = None,
    ) -> Outcome[Guardian]:
        """Add ``actor_id`` as a guardian of the resource.

        When ``acting_actor_id`` is given, that actor must be an OWNER.
        Fails with DuplicateError if the actor is already a guardian.
        """
        try:
            await self._require_resource(resource_id)
            if acting_actor_id is not None:
                await self._require_owner(resource_id, acting_actor_id, "add")
            if await self._guardians.get(resource_id, actor_id) is not None:
                raise DuplicateError(
                    f"User {actor_id} is already a guardian of resource {resource_id}"
                )
            guardian = await self._guardians.add(Guardian(
                resource_id=resource_id, actor_id=actor_id, role=role,
            ))
        except DomainError as err:
            logger.warning(
                "Grant on resource %s for %s rejected: %s", resource_id, actor_id, err,
            )
            return Outcome.fail(err)

        logger.info(
            "Granted %s on resource %s to %s", role.value, resource_id, actor_id,
        )
        if self._audit is not None:
            await self._audit.log(
                AuditAction.GUARDIAN_GRANTED, "SUCCESS",
                resource_id=resource_id,
                actor_id=acting_actor_id or actor_id,
                target_id=actor_id,
                role=role.value,
            )
        return Outcome.ok(guardian)

    async def revoke(
        self,
        resource_id: str,
        acting_actor_id: str,
        target_actor_id: str,
    ) -> Outcome[Guardian]:
        """Remove ``target_actor_id`` from the resource's guardians.

        Checked in order: the resource exists, the acting actor is an OWNER,
        the target is a guardian, and the target is not an OWNER.
        """
        try:
            await self._require_resource(resource_id)
            await self._require_owner(resource_id, acting_actor_id, "remove")
            target = await self._guardians.get(resource_id, target_actor_id)
            if target is None:
                raise GuardianNotFoundError(resource_id, target_actor_id)
            if target.role is GuardianRole.OWNER:
                raise OwnerRemovalError(resource_id)
            if not await self._guardians.remove(resource_id, target_actor_id):
                raise GuardianNotFoundError(resource_id, target_actor_id)
        except DomainError as err:
            logger.warning(
                "Revoke of %s on resource %s by %s rejected: %s",
                target_actor_id, resource_id, acting_actor_id, err,
            )
            return Outcome.fail(err)

        logger.info(
            "Revoked %s on resource %s (by %s)",
            target_actor_id, resource_id, acting_actor_id,
        )
        if self._audit is not None:
            await self._audit.log(
                AuditAction.GUARDIAN_REVOKED, "SUCCESS",
                resource_id=resource_id,
                actor_id=acting_actor_id,
                target_id=target_actor_id,
            )
        return Outcome.ok(target)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def list_by_resource(self, resource_id: str) -> list[Guardian]:
        return await self._guardians.list_by_resource(resource_id)

    async def list_by_actor(self, actor_id: str) -> list[Guardian]:
        return await self._guardians.list_by_actor(actor_id)

    async def get_role(self, resource_id: str, actor_id: str) -> Optional[GuardianRole]:
        guardian = await self._guardians.get(resource_id, actor_id)
        return guardian.role if guardian is not None else None

    async def is_guardian(self, resource_id: str, actor_id: str) -> bool:
        return await self._guardians.get(resource_id, actor_id) is not None
