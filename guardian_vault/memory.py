"""
In-memory persistence for tests and development.

Uses asyncio.Lock for safe concurrent access. Every read returns a copy so
callers can never mutate stored state behind the repository's back.
Uniqueness rules mirror the PostgreSQL schema:

- one guardian row per (resource, actor)
- one PENDING request per (resource, requester)
- one field per (resource, name)
- one TOTP account per (owner, account_name)
- a TOTP account is linked to at most one resource
"""
import asyncio
from datetime import datetime
from typing import Any, Optional

from .exceptions import DuplicateError
from .models import (
    ApprovalRequest,
    ApprovalStatus,
    AuditEvent,
    EncryptedField,
    Guardian,
    Resource,
    TOTPSecretRecord,
    utc_now,
)
from .repositories import (
    ApprovalRequestRepository,
    AuditRepository,
    EncryptedColumn,
    FieldRepository,
    GuardianRepository,
    Repositories,
    ResourceRepository,
    StoredCiphertext,
    TOTPRepository,
)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryResourceRepository(ResourceRepository):

    def __init__(self) -> None:
        self._resources: dict[str, Resource] = {}
        self._lock = asyncio.Lock()

    async def create(self, resource: Resource) -> Resource:
        async with self._lock:
            if resource.id in self._resources:
                raise DuplicateError(f"Resource {resource.id} already exists")
            self._resources[resource.id] = _copy(resource)
            return _copy(resource)

    async def get(self, resource_id: str) -> Optional[Resource]:
        async with self._lock:
            return _copy(self._resources.get(resource_id))

    async def get_by_api_key(self, api_key: str) -> Optional[Resource]:
        async with self._lock:
            for resource in self._resources.values():
                if resource.api_key == api_key:
                    return _copy(resource)
            return None

    async def set_totp_account(
        self, resource_id: str, totp_account_id: Optional[str],
    ) -> None:
        async with self._lock:
            if totp_account_id is not None:
                for other in self._resources.values():
                    if other.id != resource_id and other.totp_account_id == totp_account_id:
                        raise DuplicateError(
                            f"TOTP account {totp_account_id} is already linked "
                            f"to resource {other.id}"
                        )
            resource = self._resources.get(resource_id)
            if resource is not None:
                resource.totp_account_id = totp_account_id


class InMemoryGuardianRepository(GuardianRepository):

    def __init__(self) -> None:
        self._guardians: dict[tuple[str, str], Guardian] = {}
        self._lock = asyncio.Lock()

    async def add(self, guardian: Guardian) -> Guardian:
        key = (guardian.resource_id, guardian.actor_id)
        async with self._lock:
            if key in self._guardians:
                raise DuplicateError(
                    f"User {guardian.actor_id} is already a guardian "
                    f"of resource {guardian.resource_id}"
                )
            self._guardians[key] = _copy(guardian)
            return _copy(guardian)

    async def remove(self, resource_id: str, actor_id: str) -> bool:
        async with self._lock:
            return self._guardians.pop((resource_id, actor_id), None) is not None

    async def get(self, resource_id: str, actor_id: str) -> Optional[Guardian]:
        async with self._lock:
            return _copy(self._guardians.get((resource_id, actor_id)))

    async def list_by_resource(self, resource_id: str) -> list[Guardian]:
        async with self._lock:
            found = [g for g in self._guardians.values() if g.resource_id == resource_id]
            return [_copy(g) for g in sorted(found, key=lambda g: g.created_at)]

    async def list_by_actor(self, actor_id: str) -> list[Guardian]:
        async with self._lock:
            found = [g for g in self._guardians.values() if g.actor_id == actor_id]
            return [_copy(g) for g in sorted(found, key=lambda g: g.created_at)]


class InMemoryApprovalRequestRepository(ApprovalRequestRepository):

    def __init__(self) -> None:
        self._requests: dict[str, ApprovalRequest] = {}
        self._lock = asyncio.Lock()

    async def create(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            if request.status is ApprovalStatus.PENDING:
                for existing in self._requests.values():
                    if (
                        existing.status is ApprovalStatus.PENDING
                        and existing.resource_id == request.resource_id
                        and existing.requester_id == request.requester_id
                    ):
                        raise DuplicateError(
                            f"User {request.requester_id} already has a pending "
                            f"request ({existing.id}) for resource {request.resource_id}"
                        )
            self._requests[request.id] = _copy(request)
            return _copy(request)

    async def get(self, request_id: str) -> Optional[ApprovalRequest]:
        async with self._lock:
            return _copy(self._requests.get(request_id))

    async def resolve(
        self,
        request_id: str,
        status: ApprovalStatus,
        resolved_by: Optional[str],
        resolved_at: datetime,
    ) -> bool:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status is not ApprovalStatus.PENDING:
                return False
            request.status = status
            request.resolved_by = resolved_by
            request.resolved_at = resolved_at
            return True

    async def list_by_resource(
        self, resource_id: str, status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        async with self._lock:
            found = [
                r for r in self._requests.values()
                if r.resource_id == resource_id and (status is None or r.status is status)
            ]
            return [_copy(r) for r in sorted(found, key=lambda r: r.created_at)]

    async def list_by_requester(
        self,
        resource_id: str,
        requester_id: str,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        async with self._lock:
            found = [
                r for r in self._requests.values()
                if r.resource_id == resource_id
                and r.requester_id == requester_id
                and (status is None or r.status is status)
            ]
            found.sort(key=lambda r: r.created_at, reverse=True)
            return [_copy(r) for r in found]

    async def list_pending(self) -> list[ApprovalRequest]:
        async with self._lock:
            found = [r for r in self._requests.values() if r.status is ApprovalStatus.PENDING]
            return [_copy(r) for r in sorted(found, key=lambda r: r.created_at)]


class InMemoryFieldRepository(FieldRepository):

    def __init__(self) -> None:
        self.records: dict[str, EncryptedField] = {}
        self._lock = asyncio.Lock()

    def _find(self, resource_id: str, name: str) -> Optional[EncryptedField]:
        for record in self.records.values():
            if record.resource_id == resource_id and record.name == name:
                return record
        return None

    async def upsert(self, record: EncryptedField) -> EncryptedField:
        async with self._lock:
            existing = self._find(record.resource_id, record.name)
            if existing is not None:
                existing.ciphertext = record.ciphertext
                existing.updated_at = utc_now()
                return _copy(existing)
            self.records[record.id] = _copy(record)
            return _copy(record)

    async def get(self, resource_id: str, name: str) -> Optional[EncryptedField]:
        async with self._lock:
            return _copy(self._find(resource_id, name))

    async def list_by_resource(self, resource_id: str) -> list[EncryptedField]:
        async with self._lock:
            found = [r for r in self.records.values() if r.resource_id == resource_id]
            return [_copy(r) for r in sorted(found, key=lambda r: r.name)]

    async def delete(self, resource_id: str, name: str) -> bool:
        async with self._lock:
            existing = self._find(resource_id, name)
            if existing is None:
                return False
            del self.records[existing.id]
            return True


class InMemoryTOTPRepository(TOTPRepository):

    def __init__(self) -> None:
        self.records: dict[str, TOTPSecretRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: TOTPSecretRecord) -> TOTPSecretRecord:
        async with self._lock:
            for existing in self.records.values():
                if (
                    existing.owner_id == record.owner_id
                    and existing.account_name == record.account_name
                ):
                    raise DuplicateError(
                        f"TOTP account '{record.account_name}' already exists "
                        f"for owner {record.owner_id}"
                    )
            self.records[record.id] = _copy(record)
            return _copy(record)

    async def update(self, record: TOTPSecretRecord) -> TOTPSecretRecord:
        async with self._lock:
            if record.id not in self.records:
                raise KeyError(f"TOTP account {record.id} not found")
            updated = record.model_copy(update={"updated_at": utc_now()}, deep=True)
            self.records[record.id] = updated
            return _copy(updated)

    async def get(self, account_id: str) -> Optional[TOTPSecretRecord]:
        async with self._lock:
            return _copy(self.records.get(account_id))

    async def get_by_owner_and_name(
        self, owner_id: str, account_name: str,
    ) -> Optional[TOTPSecretRecord]:
        async with self._lock:
            for record in self.records.values():
                if record.owner_id == owner_id and record.account_name == account_name:
                    return _copy(record)
            return None

    async def list_by_owner(self, owner_id: str) -> list[TOTPSecretRecord]:
        async with self._lock:
            found = [r for r in self.records.values() if r.owner_id == owner_id]
            return [_copy(r) for r in sorted(found, key=lambda r: r.account_name)]

    async def delete(self, account_id: str) -> bool:
        async with self._lock:
            return self.records.pop(account_id, None) is not None


class InMemoryAuditRepository(AuditRepository):

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def append(self, event: AuditEvent) -> None:
        self.events.append(_copy(event))

    async def list_by_resource(self, resource_id: str) -> list[AuditEvent]:
        return [_copy(e) for e in self.events if e.resource_id == resource_id]


class InMemoryEncryptedColumn(EncryptedColumn):
    """Rotation view over one attribute of an in-memory record table."""

    def __init__(
        self,
        name: str,
        records: dict[str, Any],
        attribute: str,
        label_attribute: str,
    ) -> None:
        self.name = name
        self._records = records
        self._attribute = attribute
        self._label_attribute = label_attribute

    def _ordered_ids(self) -> list[str]:
        return sorted(self._records)

    async def count(self) -> int:
        return len(self._records)

    async def fetch_batch(self, offset: int, limit: int) -> list[StoredCiphertext]:
        batch = []
        for record_id in self._ordered_ids()[offset:offset + limit]:
            record = self._records[record_id]
            batch.append(StoredCiphertext(
                record_id=record_id,
                label=str(getattr(record, self._label_attribute)),
                value=getattr(record, self._attribute),
            ))
        return batch

    async def read(self, record_id: str) -> Optional[str]:
        record = self._records.get(record_id)
        return getattr(record, self._attribute) if record is not None else None

    async def write(self, record_id: str, value: str) -> None:
        record = self._records[record_id]
        setattr(record, self._attribute, value)
        record.updated_at = utc_now()


def create_memory_repositories() -> Repositories:
    """Create a fresh, empty set of in-memory repositories."""
    fields = InMemoryFieldRepository()
    totp = InMemoryTOTPRepository()
    return Repositories(
        resources=InMemoryResourceRepository(),
        guardians=InMemoryGuardianRepository(),
        approvals=InMemoryApprovalRequestRepository(),
        fields=fields,
        totp=totp,
        audit=InMemoryAuditRepository(),
        encrypted_columns=[
            InMemoryEncryptedColumn("TOTPAccount.secret", totp.records, "secret_ciphertext", "account_name"),
            InMemoryEncryptedColumn("TOTPAccount.backup_key", totp.records, "backup_key_ciphertext", "account_name"),
            InMemoryEncryptedColumn("ResourceField.value", fields.records, "ciphertext", "name"),
        ],
    )
