"""
SecretStore: Encrypted persistence for resource fields and TOTP accounts.

Public API:
- ``set_field`` / ``get_field`` / ``list_field_names`` / ``delete_field``
- ``create_totp_account`` / ``get_totp_account`` / ``find_totp_account``
  / ``update_totp_secret`` / ``set_backup_key``
  / ``delete_totp_account`` / ``list_totp_accounts``

Values are encrypted before they reach the repository and decrypted on every
read. A decrypt failure on a read path is never masked: it propagates as
``DecryptionError`` naming the record, because it means the configured
ENCRYPTION_KEY is wrong or the stored data is corrupt.

Security Note:
    Never log plaintext or ciphertext values. Only log record ids, field
    names and resource/owner ids.
"""
import logging
from typing import Optional

from ..exceptions import DecryptionError, TOTPAccountNotFoundError
from ..models import (
    EncryptedField,
    ResourceField,
    TOTPAccount,
    TOTPSecretRecord,
)
from ..repositories import FieldRepository, TOTPRepository
from .crypto import _check_key, decrypt_value, encrypt_value

logger = logging.getLogger("guardian_vault.vault")

_CORRUPTION_HINT = "ENCRYPTION_KEY is wrong or data is corrupt"


class SecretStore:
    """Encrypt-on-write, decrypt-on-read wrapper over the secret repositories.

    The only component that decrypts persisted data on the live path.
    """

    def __init__(
        self,
        fields: FieldRepository,
        totp: TOTPRepository,
        encryption_key: bytes,
    ):
        _check_key(encryption_key)
        self._fields = fields
        self._totp = totp
        self._key = encryption_key

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decrypt(self, envelope: str, record: str) -> str:
        try:
            return decrypt_value(envelope, self._key)
        except DecryptionError as err:
            logger.error("Failed to decrypt %s: %s", record, _CORRUPTION_HINT)
            raise DecryptionError(
                f"{err}; {_CORRUPTION_HINT}", record=record,
            ) from err

    def _field_view(self, record: EncryptedField) -> ResourceField:
        return ResourceField(
            id=record.id,
            resource_id=record.resource_id,
            name=record.name,
            value=self._decrypt(record.ciphertext, f"ResourceField#{record.id}"),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def _totp_view(self, record: TOTPSecretRecord) -> TOTPAccount:
        label = f"TOTPAccount#{record.id}"
        backup_key = None
        if record.backup_key_ciphertext:
            backup_key = self._decrypt(record.backup_key_ciphertext, f"{label}.backup_key")
        return TOTPAccount(
            id=record.id,
            owner_id=record.owner_id,
            account_name=record.account_name,
            secret=self._decrypt(record.secret_ciphertext, label),
            issuer=record.issuer,
            shared=record.shared,
            backup_key=backup_key,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    # ------------------------------------------------------------------
    # Resource fields
    # ------------------------------------------------------------------

    async def set_field(self, resource_id: str, name: str, value: str) -> ResourceField:
        """Create or replace the named field of a resource."""
        if not name:
            raise ValueError("Field name cannot be empty")
        stored = await self._fields.upsert(EncryptedField(
            resource_id=resource_id,
            name=name,
            ciphertext=encrypt_value(value, self._key),
        ))
        logger.debug("Stored field '%s' for resource %s", name, resource_id)
        return ResourceField(
            id=stored.id,
            resource_id=stored.resource_id,
            name=stored.name,
            value=value,
            created_at=stored.created_at,
            updated_at=stored.updated_at,
        )

    async def get_field(self, resource_id: str, name: str) -> Optional[ResourceField]:
        """Return the decrypted field, or None if it does not exist.

        Raises:
            DecryptionError: If the stored value cannot be decrypted.
        """
        record = await self._fields.get(resource_id, name)
        if record is None:
            return None
        return self._field_view(record)

    async def list_field_names(self, resource_id: str) -> list[str]:
        """Names only; values are not decrypted."""
        return [r.name for r in await self._fields.list_by_resource(resource_id)]

    async def delete_field(self, resource_id: str, name: str) -> bool:
        """Remove a field. Removing an absent field is not an error."""
        removed = await self._fields.delete(resource_id, name)
        if removed:
            logger.debug("Deleted field '%s' for resource %s", name, resource_id)
        return removed

    # ------------------------------------------------------------------
    # TOTP accounts
    # ------------------------------------------------------------------

    async def create_totp_account(
        self,
        owner_id: str,
        account_name: str,
        secret: str,
        issuer: Optional[str] = None,
        shared: bool = False,
        backup_key: Optional[str] = None,
    ) -> TOTPAccount:
        """Store a new 2FA account.

        Raises:
            DuplicateError: If the owner already has an account with this name.
        """
        record = await self._totp.create(TOTPSecretRecord(
            owner_id=owner_id,
            account_name=account_name,
            secret_ciphertext=encrypt_value(secret, self._key),
            issuer=issuer,
            shared=shared,
            backup_key_ciphertext=(
                encrypt_value(backup_key, self._key) if backup_key else None
            ),
        ))
        logger.info("Created TOTP account %s for owner %s", record.id, owner_id)
        return self._totp_view(record)

    async def get_totp_account(self, account_id: str) -> Optional[TOTPAccount]:
        record = await self._totp.get(account_id)
        if record is None:
            return None
        return self._totp_view(record)

    async def find_totp_account(
        self, owner_id: str, account_name: str,
    ) -> Optional[TOTPAccount]:
        """Look an account up by its owner-scoped name."""
        record = await self._totp.get_by_owner_and_name(owner_id, account_name)
        if record is None:
            return None
        return self._totp_view(record)

    async def list_totp_accounts(self, owner_id: str) -> list[TOTPAccount]:
        return [self._totp_view(r) for r in await self._totp.list_by_owner(owner_id)]

    async def _require_record(self, account_id: str) -> TOTPSecretRecord:
        record = await self._totp.get(account_id)
        if record is None:
            raise TOTPAccountNotFoundError(account_id)
        return record

    async def update_totp_secret(self, account_id: str, secret: str) -> TOTPAccount:
        """Replace the seed of an existing account.

        Raises:
            TOTPAccountNotFoundError: If the account does not exist.
        """
        record = await self._require_record(account_id)
        record.secret_ciphertext = encrypt_value(secret, self._key)
        return self._totp_view(await self._totp.update(record))

    async def set_backup_key(
        self, account_id: str, backup_key: Optional[str],
    ) -> TOTPAccount:
        """Set or clear (None) the account's backup key."""
        record = await self._require_record(account_id)
        record.backup_key_ciphertext = (
            encrypt_value(backup_key, self._key) if backup_key else None
        )
        return self._totp_view(await self._totp.update(record))

    async def delete_totp_account(self, account_id: str) -> bool:
        """Remove an account. Removing an absent account is not an error."""
        removed = await self._totp.delete(account_id)
        if removed:
            logger.info("Deleted TOTP account %s", account_id)
        return removed
