"""Vault: At-rest encryption of stored secrets.

Security Note (Threat Model):
    Secrets are decrypted in process memory only for the duration of a read
    that the access policy allowed. A memory dump of the application process
    during that window could expose plaintext and the master key.
    This is an accepted limitation; mitigation requires HSM/secure enclave
    integration which is out of scope.
"""

from .crypto import decrypt_value, encrypt_value, is_current_format
from .config import (
    VaultConfig,
    generate_encryption_key,
    load_encryption_key,
    validate_encryption_config,
)
from .secret_store import SecretStore
from .key_rotation import ColumnStats, KeyRotationProcedure, RotationStats
from .backup import backup_database

__all__ = [
    "encrypt_value",
    "decrypt_value",
    "is_current_format",
    "VaultConfig",
    "generate_encryption_key",
    "load_encryption_key",
    "validate_encryption_config",
    "SecretStore",
    "KeyRotationProcedure",
    "RotationStats",
    "ColumnStats",
    "backup_database",
]
