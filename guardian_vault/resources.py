"""
ResourceService: Resource lifecycle and credentials.

- ``create_resource``: the creator becomes OWNER; an API key is generated
  for non-human callers
- ``verify_api_key`` / ``authenticate``: constant-time credential checks
- ``link_totp_account`` / ``unlink_totp_account``: one 2FA account per
  resource, and an account is never linked to two resources
"""
import hmac
import logging
import secrets
from typing import Optional

from .exceptions import (
    DomainError,
    ResourceNotFoundError,
    TOTPAccountNotFoundError,
    TOTPAlreadyLinkedError,
)
from .models import ApprovalMode, Guardian, GuardianRole, Outcome, Resource
from .repositories import Repositories

logger = logging.getLogger("guardian_vault.auth")

API_KEY_BYTES = 32


def generate_api_key() -> str:
    return secrets.token_hex(API_KEY_BYTES)


class ResourceService:

    def __init__(self, repositories: Repositories) -> None:
        self._repos = repositories

    async def create_resource(
        self,
        name: str,
        owner_id: str,
        mode: ApprovalMode = ApprovalMode.ONE_OF_N,
    ) -> Outcome[Resource]:
        """Create a resource and register ``owner_id`` as its OWNER."""
        try:
            resource = await self._repos.resources.create(Resource(
                name=name, mode=mode, api_key=generate_api_key(),
            ))
            await self._repos.guardians.add(Guardian(
                resource_id=resource.id,
                actor_id=owner_id,
                role=GuardianRole.OWNER,
            ))
        except DomainError as err:
            logger.warning("Failed to create resource '%s': %s", name, err)
            return Outcome.fail(err)
        logger.info("Created resource %s ('%s') owned by %s", resource.id, name, owner_id)
        return Outcome.ok(resource)

    async def get_resource(self, resource_id: str) -> Optional[Resource]:
        return await self._repos.resources.get(resource_id)

    async def verify_api_key(self, resource_id: str, api_key: str) -> bool:
        resource = await self._repos.resources.get(resource_id)
        if resource is None or not api_key:
            return False
        return hmac.compare_digest(resource.api_key.encode(), api_key.encode())

    async def authenticate(self, api_key: str) -> Optional[Resource]:
        """Resolve the resource a non-human caller's API key belongs to.

        Returns None for an empty or unknown key.
        """
        if not api_key:
            return None
        resource = await self._repos.resources.get_by_api_key(api_key)
        if resource is None or not hmac.compare_digest(
            resource.api_key.encode(), api_key.encode(),
        ):
            logger.warning("Rejected API key authentication attempt")
            return None
        logger.debug("API key authenticated for resource %s", resource.id)
        return resource

    async def link_totp_account(
        self, resource_id: str, account_id: str,
    ) -> Outcome[Resource]:
        try:
            resource = await self._repos.resources.get(resource_id)
            if resource is None:
                raise ResourceNotFoundError(resource_id)
            if resource.totp_account_id is not None:
                raise TOTPAlreadyLinkedError(resource_id)
            if await self._repos.totp.get(account_id) is None:
                raise TOTPAccountNotFoundError(account_id)
            await self._repos.resources.set_totp_account(resource_id, account_id)
        except DomainError as err:
            logger.warning(
                "Linking TOTP account %s to resource %s rejected: %s",
                account_id, resource_id, err,
            )
            return Outcome.fail(err)
        logger.info("Linked TOTP account %s to resource %s", account_id, resource_id)
        return Outcome.ok(resource.model_copy(update={"totp_account_id": account_id}))

    async def unlink_totp_account(self, resource_id: str) -> Outcome[Resource]:
        resource = await self._repos.resources.get(resource_id)
        if resource is None:
            return Outcome.fail(ResourceNotFoundError(resource_id))
        await self._repos.resources.set_totp_account(resource_id, None)
        logger.info("Unlinked TOTP account from resource %s", resource_id)
        return Outcome.ok(resource.model_copy(update={"totp_account_id": None}))
