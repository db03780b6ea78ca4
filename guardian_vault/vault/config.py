"""
Vault Configuration: Master key loading and validated settings.

Reads the master key from the environment:
    ENCRYPTION_KEY = <64 hexadecimal characters, 32 bytes>

There is no unencrypted fallback: a missing or malformed key is a
``ConfigurationError`` and the process must not start.

Security Note:
    Never log key material. Only log which variable was read.
"""
import os
import re
import secrets
import logging
import time
from collections.abc import Mapping
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import ConfigurationError, DecryptionError
from .crypto import KEY_LENGTH, decrypt_value, encrypt_value

logger = logging.getLogger("guardian_vault.vault")

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"
ENCRYPTION_KEY_OLD_ENV = "ENCRYPTION_KEY_OLD"
ENCRYPTION_KEY_NEW_ENV = "ENCRYPTION_KEY_NEW"


def parse_hex_key(value: Optional[str], source: str) -> bytes:
    """Decode a 64-char hex string into a 32-byte key.

    Args:
        value: Hex string (may be None when the source was not provided).
        source: Where the value came from, used in the error message.

    Raises:
        ConfigurationError: If the value is absent or not 64 hex characters.
    """
    if not value:
        raise ConfigurationError(f"{source} is not set")
    value = value.strip()
    if not _HEX_KEY_PATTERN.match(value):
        raise ConfigurationError(
            f"{source} must be a valid 32-byte hex string "
            f"(64 hexadecimal characters), got {len(value)} characters"
        )
    return bytes.fromhex(value)


def load_encryption_key(environ: Optional[Mapping[str, str]] = None) -> bytes:
    """Load the master key from ENCRYPTION_KEY.

    Returns:
        Raw 32-byte key.

    Raises:
        ConfigurationError: If the variable is missing or malformed.
    """
    env = os.environ if environ is None else environ
    key = parse_hex_key(env.get(ENCRYPTION_KEY_ENV), f"{ENCRYPTION_KEY_ENV} environment variable")
    logger.debug("Loaded master key from %s", ENCRYPTION_KEY_ENV)
    return key


def validate_encryption_config(key: bytes) -> None:
    """Run an encrypt/decrypt round trip with ``key``.

    Should be called at application startup.

    Raises:
        ConfigurationError: If the key has the wrong size or the round trip fails.
    """
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"Invalid key length: expected {KEY_LENGTH} bytes, got {len(key)}"
        )
    sample = f"guardian-vault-startup-check-{time.time_ns()}"
    try:
        recovered = decrypt_value(encrypt_value(sample, key), key)
    except DecryptionError as err:
        raise ConfigurationError(
            f"Encryption configuration validation failed: {err}"
        ) from err
    if recovered != sample:
        raise ConfigurationError(
            "Encryption configuration validation failed: "
            "decrypted value does not match original"
        )


def generate_encryption_key() -> str:
    """Generate a random 32-byte key and return it as 64 hex characters.

    This is a utility for operators to generate new keys.
    """
    return secrets.token_hex(KEY_LENGTH)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    encryption_key: bytes
    database_url: Optional[str] = None
    rate_limit_window: float = Field(default=60.0, gt=0)
    rate_limit_max_requests: int = Field(default=10, ge=1)
    default_request_ttl: Optional[float] = Field(default=None, gt=0)
    backup_dir: str = Field(default="backups")

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("encryption_key")
    @classmethod
    def validate_key_length(cls, v: bytes) -> bytes:
        """The master key must be exactly 32 bytes."""
        if len(v) != KEY_LENGTH:
            raise ValueError(
                f"encryption_key must be {KEY_LENGTH} bytes, got {len(v)}"
            )
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        encryption_key: Optional[bytes] = None,
        **overrides,
    ) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Args:
            environ: Mapping to read from (default ``os.environ``).
            encryption_key: Use this key instead of ENCRYPTION_KEY.
            **overrides: Field values that win over the environment,
                e.g. command-line flags. None values are ignored.

        Raises:
            ConfigurationError: If the key is missing/malformed or any other
                setting fails validation.
        """
        env = os.environ if environ is None else environ
        if encryption_key is None:
            encryption_key = load_encryption_key(env)
        values: dict = {
            "encryption_key": encryption_key,
            "database_url": env.get("DATABASE_URL"),
        }
        optional = {
            "RATE_LIMIT_WINDOW": "rate_limit_window",
            "RATE_LIMIT_MAX_REQUESTS": "rate_limit_max_requests",
            "APPROVAL_TTL": "default_request_ttl",
            "BACKUP_DIR": "backup_dir",
        }
        for name, field in optional.items():
            if env.get(name):
                values[field] = env[name]
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            config = cls(**values)
        except ValidationError as err:
            raise ConfigurationError(f"Invalid vault configuration: {err}") from err
        validate_encryption_config(config.encryption_key)
        return config
