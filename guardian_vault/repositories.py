"""
Persistence collaborator interfaces.

The core never talks to a database directly; it goes through these
repositories. Two implementations ship with the package:

- ``guardian_vault.memory``: in-memory, for tests and development
- ``guardian_vault.postgres``: asyncpg-backed

All methods are async to support both in-memory and database backends.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import (
    ApprovalRequest,
    ApprovalStatus,
    AuditEvent,
    EncryptedField,
    Guardian,
    Resource,
    TOTPSecretRecord,
)


class ResourceRepository(ABC):

    @abstractmethod
    async def create(self, resource: Resource) -> Resource:
        ...

    @abstractmethod
    async def get(self, resource_id: str) -> Optional[Resource]:
        ...

    @abstractmethod
    async def get_by_api_key(self, api_key: str) -> Optional[Resource]:
        ...

    @abstractmethod
    async def set_totp_account(
        self, resource_id: str, totp_account_id: Optional[str],
    ) -> None:
        """Link (or unlink with None) a TOTP account.

        Raises:
            DuplicateError: If the account is already linked to another resource.
        """
        ...


class GuardianRepository(ABC):

    @abstractmethod
    async def add(self, guardian: Guardian) -> Guardian:
        """Insert a membership.

        Raises:
            DuplicateError: If the actor is already a guardian of the resource.
        """
        ...

    @abstractmethod
    async def remove(self, resource_id: str, actor_id: str) -> bool:
        """Delete a membership. Returns False if it did not exist."""
        ...

    @abstractmethod
    async def get(self, resource_id: str, actor_id: str) -> Optional[Guardian]:
        ...

    @abstractmethod
    async def list_by_resource(self, resource_id: str) -> list[Guardian]:
        ...

    @abstractmethod
    async def list_by_actor(self, actor_id: str) -> list[Guardian]:
        ...


class ApprovalRequestRepository(ABC):

    @abstractmethod
    async def create(self, request: ApprovalRequest) -> ApprovalRequest:
        """Insert a request.

        Raises:
            DuplicateError: If a PENDING request already exists for the same
                (resource, requester).
        """
        ...

    @abstractmethod
    async def get(self, request_id: str) -> Optional[ApprovalRequest]:
        ...

    @abstractmethod
    async def resolve(
        self,
        request_id: str,
        status: ApprovalStatus,
        resolved_by: Optional[str],
        resolved_at: datetime,
    ) -> bool:
        """Move a PENDING request to a terminal status.

        The update only applies while the stored status is still PENDING.

        Returns:
            True if this call performed the transition, False otherwise.
        """
        ...

    @abstractmethod
    async def list_by_resource(
        self, resource_id: str, status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        ...

    @abstractmethod
    async def list_by_requester(
        self,
        resource_id: str,
        requester_id: str,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        """Requests raised by ``requester_id`` on a resource, newest first."""
        ...

    @abstractmethod
    async def list_pending(self) -> list[ApprovalRequest]:
        ...


class FieldRepository(ABC):

    @abstractmethod
    async def upsert(self, record: EncryptedField) -> EncryptedField:
        """Create the (resource, name) field or replace its ciphertext."""
        ...

    @abstractmethod
    async def get(self, resource_id: str, name: str) -> Optional[EncryptedField]:
        ...

    @abstractmethod
    async def list_by_resource(self, resource_id: str) -> list[EncryptedField]:
        ...

    @abstractmethod
    async def delete(self, resource_id: str, name: str) -> bool:
        ...


class TOTPRepository(ABC):

    @abstractmethod
    async def create(self, record: TOTPSecretRecord) -> TOTPSecretRecord:
        """Raises DuplicateError if (owner, account_name) exists."""
        ...

    @abstractmethod
    async def update(self, record: TOTPSecretRecord) -> TOTPSecretRecord:
        ...

    @abstractmethod
    async def get(self, account_id: str) -> Optional[TOTPSecretRecord]:
        ...

    @abstractmethod
    async def get_by_owner_and_name(
        self, owner_id: str, account_name: str,
    ) -> Optional[TOTPSecretRecord]:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> list[TOTPSecretRecord]:
        ...

    @abstractmethod
    async def delete(self, account_id: str) -> bool:
        ...


class AuditRepository(ABC):

    @abstractmethod
    async def append(self, event: AuditEvent) -> None:
        ...

    @abstractmethod
    async def list_by_resource(self, resource_id: str) -> list[AuditEvent]:
        ...


# ---------------------------------------------------------------------------
# Rotation access
# ---------------------------------------------------------------------------

@dataclass
class StoredCiphertext:
    """One encrypted column value as seen by the rotation job."""

    record_id: str
    label: str
    value: Optional[str]


class EncryptedColumn(ABC):
    """Raw access to one encrypted column, used only by key rotation.

    Rows are addressed in a stable order (by id) so that ``offset`` paging
    is deterministic for a single-writer run.
    """

    name: str

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def fetch_batch(self, offset: int, limit: int) -> list[StoredCiphertext]:
        ...

    @abstractmethod
    async def read(self, record_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def write(self, record_id: str, value: str) -> None:
        ...


@dataclass
class Repositories:
    """Container for all repositories, used for dependency injection."""

    resources: ResourceRepository
    guardians: GuardianRepository
    approvals: ApprovalRequestRepository
    fields: FieldRepository
    totp: TOTPRepository
    audit: AuditRepository
    encrypted_columns: list[EncryptedColumn]
