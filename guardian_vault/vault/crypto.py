"""
Vault Crypto Core: Versioned AES-256-GCM envelope codec.

Two envelope forms are recognized for persisted column values:

- current: ``v1:base64(nonce):base64(authTag):base64(ciphertext)``
- legacy:  ``base64(nonce):base64(authTag):base64(ciphertext)`` (decrypt only)

New writes always produce the current form.

Security Note:
    Never log plaintext, ciphertext or key bytes.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import binascii
import logging
from typing import NamedTuple, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger("guardian_vault.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256

V1_PREFIX = "v1:"
LEGACY_VERSION = "legacy"
CURRENT_VERSION = "v1"


class Envelope(NamedTuple):
    """Decoded envelope parts."""

    version: str
    nonce: bytes
    tag: bytes
    ciphertext: bytes


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        size = len(key) if isinstance(key, (bytes, bytearray)) else type(key).__name__
        raise ConfigurationError(
            f"Encryption key must be exactly {KEY_LENGTH} bytes, got {size}"
        )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str, part: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise DecryptionError(
            f"Decryption failed: {part} is not valid base64"
        ) from err


# ---------------------------------------------------------------------------
# Envelope parsing
# ---------------------------------------------------------------------------

def is_current_format(value: str) -> bool:
    """True when ``value`` carries the current version tag and field count."""
    return value.startswith(V1_PREFIX) and len(value.split(":")) == 4


def parse_envelope(value: str) -> Envelope:
    """Split an envelope string into its binary parts.

    The format is detected by the presence of the ``v1:`` prefix; anything
    else is parsed as the legacy 3-field form.

    Raises:
        DecryptionError: If the field count is wrong or base64 decoding fails.
    """
    if value.startswith(V1_PREFIX):
        version = CURRENT_VERSION
        parts = value[len(V1_PREFIX):].split(":")
    else:
        version = LEGACY_VERSION
        parts = value.split(":")
    if len(parts) != 3:
        raise DecryptionError(
            f"Decryption failed: invalid {version} data format "
            f"(expected 3 fields, got {len(parts)})"
        )
    nonce = _unb64(parts[0], "nonce")
    tag = _unb64(parts[1], "auth tag")
    ciphertext = _unb64(parts[2], "ciphertext")
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError(
            f"Decryption failed: nonce must be {NONCE_SIZE} bytes, got {len(nonce)}"
        )
    if len(tag) != TAG_SIZE:
        raise DecryptionError(
            f"Decryption failed: auth tag must be {TAG_SIZE} bytes, got {len(tag)}"
        )
    return Envelope(version, nonce, tag, ciphertext)


def format_envelope(nonce: bytes, tag: bytes, ciphertext: bytes) -> str:
    """Serialize binary parts into the current (v1) envelope form."""
    return f"{V1_PREFIX}{_b64(nonce)}:{_b64(tag)}:{_b64(ciphertext)}"


def format_legacy_envelope(nonce: bytes, tag: bytes, ciphertext: bytes) -> str:
    """Serialize binary parts into the legacy form.

    Only used to build fixtures for records written before versioning.
    """
    return f"{_b64(nonce)}:{_b64(tag)}:{_b64(ciphertext)}"


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def encrypt_value(plaintext: str, key: bytes) -> str:
    """Encrypt a string under a 32-byte key into a v1 envelope.

    Args:
        plaintext: The string to encrypt (UTF-8 encoded before encryption).
        key: Raw 32-byte key.

    Returns:
        ``v1:nonce:tag:ciphertext`` with base64 parts.
    """
    _check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(bytes(key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return format_envelope(nonce, tag, ciphertext)


def decrypt_value(envelope: str, key: bytes, record: Optional[str] = None) -> str:
    """Decrypt a v1 or legacy envelope.

    Args:
        envelope: Stored envelope string.
        key: Raw 32-byte key.
        record: Optional label (``Model#id``) attached to the error message.

    Returns:
        The original plaintext string.

    Raises:
        DecryptionError: On malformed envelopes and on tag verification
            failure (wrong key or corrupted data). Partial plaintext is
            never returned.
    """
    _check_key(key)
    try:
        parts = parse_envelope(envelope)
    except DecryptionError as err:
        raise DecryptionError(str(err), record=record) from err
    try:
        data = AESGCM(bytes(key)).decrypt(
            parts.nonce, parts.ciphertext + parts.tag, None,
        )
    except InvalidTag as err:
        # Generic error to avoid leaking cryptographic details
        raise DecryptionError(
            "Decryption failed: invalid data or wrong key", record=record,
        ) from err
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise DecryptionError(
            "Decryption failed: plaintext is not valid UTF-8", record=record,
        ) from err
