"""
PostgreSQL persistence (asyncpg).

Provides the repository implementations used in production, the schema DDL,
and the raw column access used by key rotation.

- ``init_schema(pool)`` creates the tables if they do not exist
- ``create_postgres_repositories(pool)`` wires every repository to one pool

Uniqueness rules are enforced by the schema; ``UniqueViolationError`` is
translated to ``DuplicateError``. In particular the partial unique index on
``approval_requests (resource_id, requester_id) WHERE status = 'PENDING'``
closes the duplicate pending request race.

Security Note:
    Ciphertext columns are written and read as opaque strings. Never log them.
"""
import logging
from datetime import datetime
from typing import Any, Optional

import asyncpg
import orjson

from .exceptions import DuplicateError
from .models import (
    ApprovalMode,
    ApprovalRequest,
    ApprovalStatus,
    AuditAction,
    AuditEvent,
    EncryptedField,
    Guardian,
    GuardianRole,
    Resource,
    TOTPSecretRecord,
    request_context_adapter,
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

logger = logging.getLogger("guardian_vault.vault")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS totp_accounts (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    account_name TEXT NOT NULL,
    secret_ciphertext TEXT NOT NULL,
    issuer TEXT,
    shared BOOLEAN NOT NULL DEFAULT FALSE,
    backup_key_ciphertext TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (owner_id, account_name)
);

CREATE TABLE IF NOT EXISTS resources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'ONE_OF_N',
    api_key TEXT NOT NULL UNIQUE,
    totp_account_id TEXT UNIQUE REFERENCES totp_accounts (id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS guardians (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL REFERENCES resources (id) ON DELETE CASCADE,
    actor_id TEXT NOT NULL,
    role TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (resource_id, actor_id)
);

CREATE TABLE IF NOT EXISTS approval_requests (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL REFERENCES resources (id) ON DELETE CASCADE,
    requester_id TEXT NOT NULL,
    status TEXT NOT NULL,
    context JSONB NOT NULL,
    callback_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ,
    resolved_by TEXT,
    resolved_at TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS approval_requests_one_pending
    ON approval_requests (resource_id, requester_id)
    WHERE status = 'PENDING';

CREATE TABLE IF NOT EXISTS resource_fields (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL REFERENCES resources (id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    value TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (resource_id, name)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    resource_id TEXT,
    actor_id TEXT,
    resolver_id TEXT,
    context JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


async def init_schema(pool: Any) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)
    logger.info("Database schema initialized")


def _json(value: Any) -> str:
    return orjson.dumps(value).decode("utf-8")


def _load(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return orjson.loads(value)
    return value


# ---------------------------------------------------------------------------
# Resources and guardians
# ---------------------------------------------------------------------------

_INSERT_RESOURCE = """
INSERT INTO resources (id, name, mode, api_key, totp_account_id, created_at)
VALUES ($1, $2, $3, $4, $5, $6)
"""

_SELECT_RESOURCE = """
SELECT id, name, mode, api_key, totp_account_id, created_at
FROM resources WHERE id = $1
"""

_SELECT_RESOURCE_BY_KEY = """
SELECT id, name, mode, api_key, totp_account_id, created_at
FROM resources WHERE api_key = $1
"""

_UPDATE_RESOURCE_TOTP = """
UPDATE resources SET totp_account_id = $2 WHERE id = $1
"""


def _resource(row) -> Resource:
    return Resource(
        id=row["id"],
        name=row["name"],
        mode=ApprovalMode(row["mode"]),
        api_key=row["api_key"],
        totp_account_id=row["totp_account_id"],
        created_at=row["created_at"],
    )


class PostgresResourceRepository(ResourceRepository):

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def create(self, resource: Resource) -> Resource:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    _INSERT_RESOURCE,
                    resource.id, resource.name, resource.mode.value,
                    resource.api_key, resource.totp_account_id, resource.created_at,
                )
        except asyncpg.UniqueViolationError as err:
            raise DuplicateError(f"Resource {resource.id} already exists") from err
        return resource

    async def get(self, resource_id: str) -> Optional[Resource]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_RESOURCE, resource_id)
        return _resource(row) if row else None

    async def get_by_api_key(self, api_key: str) -> Optional[Resource]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_RESOURCE_BY_KEY, api_key)
        return _resource(row) if row else None

    async def set_totp_account(
        self, resource_id: str, totp_account_id: Optional[str],
    ) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(_UPDATE_RESOURCE_TOTP, resource_id, totp_account_id)
        except asyncpg.UniqueViolationError as err:
            raise DuplicateError(
                f"TOTP account {totp_account_id} is already linked to another resource"
            ) from err


_INSERT_GUARDIAN = """
INSERT INTO guardians (id, resource_id, actor_id, role, created_at)
VALUES ($1, $2, $3, $4, $5)
"""

_DELETE_GUARDIAN = """
DELETE FROM guardians WHERE resource_id = $1 AND actor_id = $2
"""

_SELECT_GUARDIAN = """
SELECT id, resource_id, actor_id, role, created_at
FROM guardians WHERE resource_id = $1 AND actor_id = $2
"""

_SELECT_GUARDIANS_BY_RESOURCE = """
SELECT id, resource_id, actor_id, role, created_at
FROM guardians WHERE resource_id = $1 ORDER BY created_at
"""

_SELECT_GUARDIANS_BY_ACTOR = """
SELECT id, resource_id, actor_id, role, created_at
FROM guardians WHERE actor_id = $1 ORDER BY created_at
"""


def _guardian(row) -> Guardian:
    return Guardian(
        id=row["id"],
        resource_id=row["resource_id"],
        actor_id=row["actor_id"],
        role=GuardianRole(row["role"]),
        created_at=row["created_at"],
    )


class PostgresGuardianRepository(GuardianRepository):

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def add(self, guardian: Guardian) -> Guardian:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    _INSERT_GUARDIAN,
                    guardian.id, guardian.resource_id, guardian.actor_id,
                    guardian.role.value, guardian.created_at,
                )
        except asyncpg.UniqueViolationError as err:
            raise DuplicateError(
                f"User {guardian.actor_id} is already a guardian "
                f"of resource {guardian.resource_id}"
            ) from err
        return guardian

    async def remove(self, resource_id: str, actor_id: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(_DELETE_GUARDIAN, resource_id, actor_id)
        return result.endswith(" 1")

    async def get(self, resource_id: str, actor_id: str) -> Optional[Guardian]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_GUARDIAN, resource_id, actor_id)
        return _guardian(row) if row else None

    async def list_by_resource(self, resource_id: str) -> list[Guardian]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_GUARDIANS_BY_RESOURCE, resource_id)
        return [_guardian(r) for r in rows]

    async def list_by_actor(self, actor_id: str) -> list[Guardian]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_GUARDIANS_BY_ACTOR, actor_id)
        return [_guardian(r) for r in rows]


# ---------------------------------------------------------------------------
# Approval requests
# ---------------------------------------------------------------------------

_REQUEST_COLUMNS = """
id, resource_id, status, context, callback_url,
created_at, expires_at, resolved_by, resolved_at
"""

_INSERT_REQUEST = """
INSERT INTO approval_requests (
    id, resource_id, requester_id, status, context, callback_url,
    created_at, expires_at, resolved_by, resolved_at
)
VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10)
"""

_RESOLVE_REQUEST = """
UPDATE approval_requests
SET status = $2, resolved_by = $3, resolved_at = $4
WHERE id = $1 AND status = 'PENDING'
"""


def _request(row) -> ApprovalRequest:
    return ApprovalRequest(
        id=row["id"],
        resource_id=row["resource_id"],
        status=ApprovalStatus(row["status"]),
        context=request_context_adapter.validate_python(_load(row["context"])),
        callback_url=row["callback_url"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        resolved_by=row["resolved_by"],
        resolved_at=row["resolved_at"],
    )


class PostgresApprovalRequestRepository(ApprovalRequestRepository):

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def create(self, request: ApprovalRequest) -> ApprovalRequest:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    _INSERT_REQUEST,
                    request.id, request.resource_id, request.requester_id,
                    request.status.value,
                    _json(request.context.model_dump(mode="json")),
                    request.callback_url, request.created_at, request.expires_at,
                    request.resolved_by, request.resolved_at,
                )
        except asyncpg.UniqueViolationError as err:
            raise DuplicateError(
                f"User {request.requester_id} already has a pending request "
                f"for resource {request.resource_id}"
            ) from err
        return request

    async def get(self, request_id: str) -> Optional[ApprovalRequest]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_REQUEST_COLUMNS} FROM approval_requests WHERE id = $1",
                request_id,
            )
        return _request(row) if row else None

    async def resolve(
        self,
        request_id: str,
        status: ApprovalStatus,
        resolved_by: Optional[str],
        resolved_at: datetime,
    ) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                _RESOLVE_REQUEST, request_id, status.value, resolved_by, resolved_at,
            )
        return result.endswith(" 1")

    async def list_by_resource(
        self, resource_id: str, status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_REQUEST_COLUMNS} FROM approval_requests "
                "WHERE resource_id = $1 AND ($2::text IS NULL OR status = $2) "
                "ORDER BY created_at",
                resource_id, status.value if status else None,
            )
        return [_request(r) for r in rows]

    async def list_by_requester(
        self,
        resource_id: str,
        requester_id: str,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_REQUEST_COLUMNS} FROM approval_requests "
                "WHERE resource_id = $1 AND requester_id = $2 "
                "AND ($3::text IS NULL OR status = $3) "
                "ORDER BY created_at DESC",
                resource_id, requester_id, status.value if status else None,
            )
        return [_request(r) for r in rows]

    async def list_pending(self) -> list[ApprovalRequest]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_REQUEST_COLUMNS} FROM approval_requests "
                "WHERE status = 'PENDING' ORDER BY created_at",
            )
        return [_request(r) for r in rows]


# ---------------------------------------------------------------------------
# Encrypted records
# ---------------------------------------------------------------------------

_UPSERT_FIELD = """
INSERT INTO resource_fields (id, resource_id, name, value, created_at, updated_at)
VALUES ($1, $2, $3, $4, $5, $6)
ON CONFLICT (resource_id, name)
DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
RETURNING id, resource_id, name, value, created_at, updated_at
"""

_SELECT_FIELD = """
SELECT id, resource_id, name, value, created_at, updated_at
FROM resource_fields WHERE resource_id = $1 AND name = $2
"""

_SELECT_FIELDS = """
SELECT id, resource_id, name, value, created_at, updated_at
FROM resource_fields WHERE resource_id = $1 ORDER BY name
"""

_DELETE_FIELD = """
DELETE FROM resource_fields WHERE resource_id = $1 AND name = $2
"""


def _field(row) -> EncryptedField:
    return EncryptedField(
        id=row["id"],
        resource_id=row["resource_id"],
        name=row["name"],
        ciphertext=row["value"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresFieldRepository(FieldRepository):

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def upsert(self, record: EncryptedField) -> EncryptedField:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                _UPSERT_FIELD,
                record.id, record.resource_id, record.name, record.ciphertext,
                record.created_at, record.updated_at,
            )
        return _field(row)

    async def get(self, resource_id: str, name: str) -> Optional[EncryptedField]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_FIELD, resource_id, name)
        return _field(row) if row else None

    async def list_by_resource(self, resource_id: str) -> list[EncryptedField]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_FIELDS, resource_id)
        return [_field(r) for r in rows]

    async def delete(self, resource_id: str, name: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(_DELETE_FIELD, resource_id, name)
        return result.endswith(" 1")


_TOTP_COLUMNS = """
id, owner_id, account_name, secret_ciphertext, issuer, shared,
backup_key_ciphertext, created_at, updated_at
"""

_INSERT_TOTP = """
INSERT INTO totp_accounts (
    id, owner_id, account_name, secret_ciphertext, issuer, shared,
    backup_key_ciphertext, created_at, updated_at
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
"""

_UPDATE_TOTP = f"""
UPDATE totp_accounts
SET account_name = $2, secret_ciphertext = $3, issuer = $4, shared = $5,
    backup_key_ciphertext = $6, updated_at = NOW()
WHERE id = $1
RETURNING {_TOTP_COLUMNS}
"""


def _totp(row) -> TOTPSecretRecord:
    return TOTPSecretRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        account_name=row["account_name"],
        secret_ciphertext=row["secret_ciphertext"],
        issuer=row["issuer"],
        shared=row["shared"],
        backup_key_ciphertext=row["backup_key_ciphertext"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresTOTPRepository(TOTPRepository):

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def create(self, record: TOTPSecretRecord) -> TOTPSecretRecord:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    _INSERT_TOTP,
                    record.id, record.owner_id, record.account_name,
                    record.secret_ciphertext, record.issuer, record.shared,
                    record.backup_key_ciphertext, record.created_at, record.updated_at,
                )
        except asyncpg.UniqueViolationError as err:
            raise DuplicateError(
                f"TOTP account '{record.account_name}' already exists "
                f"for owner {record.owner_id}"
            ) from err
        return record

    async def update(self, record: TOTPSecretRecord) -> TOTPSecretRecord:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                _UPDATE_TOTP,
                record.id, record.account_name, record.secret_ciphertext,
                record.issuer, record.shared, record.backup_key_ciphertext,
            )
        if row is None:
            raise KeyError(f"TOTP account {record.id} not found")
        return _totp(row)

    async def get(self, account_id: str) -> Optional[TOTPSecretRecord]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_TOTP_COLUMNS} FROM totp_accounts WHERE id = $1", account_id,
            )
        return _totp(row) if row else None

    async def get_by_owner_and_name(
        self, owner_id: str, account_name: str,
    ) -> Optional[TOTPSecretRecord]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_TOTP_COLUMNS} FROM totp_accounts "
                "WHERE owner_id = $1 AND account_name = $2",
                owner_id, account_name,
            )
        return _totp(row) if row else None

    async def list_by_owner(self, owner_id: str) -> list[TOTPSecretRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_TOTP_COLUMNS} FROM totp_accounts "
                "WHERE owner_id = $1 ORDER BY account_name",
                owner_id,
            )
        return [_totp(r) for r in rows]

    async def delete(self, account_id: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM totp_accounts WHERE id = $1", account_id,
            )
        return result.endswith(" 1")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

_INSERT_AUDIT = """
INSERT INTO audit_log (id, action, status, resource_id, actor_id, resolver_id, context, created_at)
VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
"""

_SELECT_AUDIT = """
SELECT id, action, status, resource_id, actor_id, resolver_id, context, created_at
FROM audit_log WHERE resource_id = $1 ORDER BY created_at
"""


class PostgresAuditRepository(AuditRepository):

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def append(self, event: AuditEvent) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                _INSERT_AUDIT,
                event.id, event.action.value, event.status, event.resource_id,
                event.actor_id, event.resolver_id, _json(event.context),
                event.created_at,
            )

    async def list_by_resource(self, resource_id: str) -> list[AuditEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_AUDIT, resource_id)
        return [
            AuditEvent(
                id=r["id"],
                action=AuditAction(r["action"]),
                status=r["status"],
                resource_id=r["resource_id"],
                actor_id=r["actor_id"],
                resolver_id=r["resolver_id"],
                context=_load(r["context"]) or {},
                created_at=r["created_at"],
            )
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Rotation access
# ---------------------------------------------------------------------------

class PostgresEncryptedColumn(EncryptedColumn):
    """Raw access to one ciphertext column, paged in id order."""

    def __init__(
        self, pool: Any, name: str, table: str, column: str, label_column: str,
    ) -> None:
        self._pool = pool
        self.name = name
        self._count = f"SELECT COUNT(*) FROM {table}"
        self._select_batch = (
            f"SELECT id, {label_column} AS label, {column} AS value "
            f"FROM {table} ORDER BY id LIMIT $1 OFFSET $2"
        )
        self._select_one = f"SELECT {column} AS value FROM {table} WHERE id = $1"
        self._update = (
            f"UPDATE {table} SET {column} = $2, updated_at = NOW() WHERE id = $1"
        )

    async def count(self) -> int:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(self._count)

    async def fetch_batch(self, offset: int, limit: int) -> list[StoredCiphertext]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(self._select_batch, limit, offset)
        return [
            StoredCiphertext(record_id=r["id"], label=str(r["label"]), value=r["value"])
            for r in rows
        ]

    async def read(self, record_id: str) -> Optional[str]:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(self._select_one, record_id)

    async def write(self, record_id: str, value: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(self._update, record_id, value)


def encrypted_columns(pool: Any) -> list[EncryptedColumn]:
    return [
        PostgresEncryptedColumn(
            pool, "TOTPAccount.secret", "totp_accounts", "secret_ciphertext", "account_name",
        ),
        PostgresEncryptedColumn(
            pool, "TOTPAccount.backup_key", "totp_accounts", "backup_key_ciphertext", "account_name",
        ),
        PostgresEncryptedColumn(
            pool, "ResourceField.value", "resource_fields", "value", "name",
        ),
    ]


def create_postgres_repositories(pool: Any) -> Repositories:
    return Repositories(
        resources=PostgresResourceRepository(pool),
        guardians=PostgresGuardianRepository(pool),
        approvals=PostgresApprovalRequestRepository(pool),
        fields=PostgresFieldRepository(pool),
        totp=PostgresTOTPRepository(pool),
        audit=PostgresAuditRepository(pool),
        encrypted_columns=encrypted_columns(pool),
    )
