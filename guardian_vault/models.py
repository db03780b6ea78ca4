"""
Domain models for Guardian Vault.

- Resource: a protected entity whose secrets are gated by guardians
- Guardian: a (resource, actor) membership with an OWNER or GUARDIAN role
- ApprovalRequest: a single-decision, time-boundable access ask
- ResourceField / TOTPAccount: decrypted views of encrypted records
- EncryptedField / TOTPSecretRecord: what the persistence layer stores
- AuditEvent: append-only record of a sensitive action
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .exceptions import DomainError

T = TypeVar("T")


def utc_now() -> datetime:
    """Default clock. Every time-dependent component accepts a replacement."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ApprovalMode(str, Enum):
    """How many guardians must approve. Only one-of-n is supported."""

    ONE_OF_N = "ONE_OF_N"


class GuardianRole(str, Enum):
    OWNER = "OWNER"
    GUARDIAN = "GUARDIAN"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class ApprovalDecision(str, Enum):
    APPROVE = "APPROVE"
    DENY = "DENY"

    @property
    def outcome(self) -> ApprovalStatus:
        if self is ApprovalDecision.APPROVE:
            return ApprovalStatus.APPROVED
        return ApprovalStatus.DENIED


class Resource(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    mode: ApprovalMode = ApprovalMode.ONE_OF_N
    api_key: str
    totp_account_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class Guardian(BaseModel):
    id: str = Field(default_factory=new_id)
    resource_id: str
    actor_id: str
    role: GuardianRole = GuardianRole.GUARDIAN
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Approval request contexts (closed tagged variant)
# ---------------------------------------------------------------------------

class FieldAccessContext(BaseModel):
    """Access to a single named field of a resource."""

    kind: Literal["FIELD_ACCESS"] = "FIELD_ACCESS"
    requester_id: str = Field(min_length=1)
    field_name: str = Field(min_length=1)
    description: Optional[str] = None

    def describe(self) -> str:
        return self.description or f"read field '{self.field_name}'"


class TotpAccessContext(BaseModel):
    """Access to the 2FA account linked to a resource."""

    kind: Literal["TOTP_ACCESS"] = "TOTP_ACCESS"
    requester_id: str = Field(min_length=1)
    description: Optional[str] = None

    def describe(self) -> str:
        return self.description or "read 2FA code"


class ManualRequestContext(BaseModel):
    """A free-standing access ask with a human reason."""

    kind: Literal["MANUAL_REQUEST"] = "MANUAL_REQUEST"
    requester_id: str = Field(min_length=1)
    reason: str = Field(min_length=1)

    def describe(self) -> str:
        return self.reason


RequestContext = Annotated[
    Union[FieldAccessContext, TotpAccessContext, ManualRequestContext],
    Field(discriminator="kind"),
]

request_context_adapter: TypeAdapter = TypeAdapter(RequestContext)


class ApprovalRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    resource_id: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    context: RequestContext
    callback_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def requester_id(self) -> str:
        return self.context.requester_id

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


# ---------------------------------------------------------------------------
# Secrets: decrypted views and stored (encrypted) records
# ---------------------------------------------------------------------------

class ResourceField(BaseModel):
    """A named secret attached to a resource, decrypted."""

    id: str
    resource_id: str
    name: str
    value: str
    created_at: datetime
    updated_at: datetime


class TOTPAccount(BaseModel):
    """A 2FA account with its seed (BASE32) and backup key, decrypted."""

    id: str
    owner_id: str
    account_name: str
    secret: str
    issuer: Optional[str] = None
    shared: bool = False
    backup_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class EncryptedField(BaseModel):
    id: str = Field(default_factory=new_id)
    resource_id: str
    name: str = Field(min_length=1)
    ciphertext: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TOTPSecretRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    account_name: str = Field(min_length=1)
    secret_ciphertext: str
    issuer: Optional[str] = None
    shared: bool = False
    backup_key_ciphertext: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditAction(str, Enum):
    FIELD_READ = "FIELD_READ"
    TOTP_READ = "TOTP_READ"
    ACCESS_THROTTLED = "ACCESS_THROTTLED"
    ACCESS_REQUESTED = "ACCESS_REQUESTED"
    DECISION_MADE = "DECISION_MADE"
    GUARDIAN_GRANTED = "GUARDIAN_GRANTED"
    GUARDIAN_REVOKED = "GUARDIAN_REVOKED"


class AuditEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    action: AuditAction
    status: str
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    resolver_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if not v:
            raise ValueError("Audit status cannot be empty")
        return v.upper()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class AccessDecision(BaseModel):
    """Answer to "can this actor read this resource's secret right now?"."""

    allowed: bool
    requires_approval: bool
    reason: str
    approval_request_id: Optional[str] = None


@dataclass
class Outcome(Generic[T]):
    """Typed success/failure returned at the authorization boundary.

    ``value`` may be set on failure too, e.g. the unchanged request when a
    decision is rejected because the request is no longer pending.
    """

    success: bool
    value: Optional[T] = None
    error: Optional[DomainError] = None

    @classmethod
    def ok(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: DomainError, value: Optional[T] = None) -> "Outcome[T]":
        return cls(success=False, value=value, error=error)

    @property
    def message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None
