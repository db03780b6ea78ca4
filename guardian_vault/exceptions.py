"""
Guardian Vault errors.

Two families live here:

- Infrastructure errors (``ConfigurationError``, ``DecryptionError``,
  ``BackupError``, ``AuditWriteError``) are raised and propagate.
- ``DomainError`` subclasses describe authorization outcomes. The public
  operations of the registry, the workflow and the resource service catch
  them and hand them back inside an ``Outcome`` instead of raising.

Security Note:
    Messages may name key *roles*, record ids and environment variable names.
    They must never contain key material, plaintext or ciphertext.
"""
from typing import Optional


class VaultError(Exception):
    """Base exception for all Guardian Vault errors."""


class ConfigurationError(VaultError):
    """Master key missing or malformed. Fatal at startup, no degraded mode."""


class DecryptionError(VaultError):
    """An envelope could not be decrypted.

    Raised when the envelope has the wrong number of fields, a field is not
    valid base64, or AEAD tag verification fails (wrong key or corrupt data).
    """

    def __init__(self, message: str, record: Optional[str] = None) -> None:
        self.record = record
        if record:
            message = f"{message} (record: {record})"
        super().__init__(message)


class BackupError(VaultError):
    """The pre-rotation datastore backup could not be taken."""


class AuditWriteError(VaultError):
    """An audit event could not be persisted. Always swallowed and logged."""


class DomainError(VaultError):
    """Base class for authorization/domain failures."""


class DuplicateError(DomainError):
    """The entity already exists (guardian membership, pending request...)."""


class ResourceNotFoundError(DomainError):
    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource not found: {resource_id}")


class GuardianNotFoundError(DomainError):
    def __init__(self, resource_id: str, actor_id: str) -> None:
        self.resource_id = resource_id
        self.actor_id = actor_id
        super().__init__(
            f"User {actor_id} is not a guardian of resource {resource_id}"
        )


class PermissionDeniedError(DomainError):
    """The acting user lacks the role the operation requires."""


class OwnerRemovalError(DomainError):
    """Revoking the target would leave the resource without its owner."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(
            f"Cannot remove the resource owner of {resource_id}. "
            "Transfer ownership before removing this user."
        )


class NoGuardiansError(DomainError):
    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(
            f"Resource {resource_id} has no guardians configured; "
            "nobody could resolve an access request"
        )


class RequestNotFoundError(DomainError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Request not found: {request_id}")


class RequestNotPendingError(DomainError):
    """A decision was attempted on a request that is already terminal."""

    def __init__(self, request_id: str, status: str) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Request {request_id} is no longer pending (status: {status})"
        )


class RequestExpiredError(DomainError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Request {request_id} has expired")


class TOTPAccountNotFoundError(DomainError):
    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"TOTP account not found: {account_id}")


class TOTPAlreadyLinkedError(DomainError):
    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(
            f"Resource {resource_id} already has a linked 2FA account. "
            "Unlink it first."
        )
