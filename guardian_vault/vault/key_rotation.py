"""
Vault Key Rotation: Batch re-encryption of every stored secret.

Walks each encrypted column in index order, decrypts with the old key,
re-encrypts with the new key (which may equal the old one for a format-only
upgrade), writes, then re-reads and verifies the record under the new key.

Rules:
- A non-dry run takes a backup first and aborts if the backup fails.
- A record already in the current format under an unchanged key is left
  untouched, so a second same-key run reports 0 needing update.
- A value that fails to decrypt is counted as failed, unless
  ``assume_legacy_plaintext`` is set and the value looks like data written
  before encryption existed (no colon, or an ``otpauth://`` URI).
- The run is sequential and single-writer. It is not transactional across the
  dataset: an aborted run leaves already-written records at the new key.

Security Note:
    Plaintext exists in memory only during re-encryption of each row.
    Never log plaintext or ciphertext values.
"""
import logging
from collections.abc import Awaitable
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from ..exceptions import BackupError, DecryptionError
from ..repositories import EncryptedColumn, StoredCiphertext
from .crypto import (
    V1_PREFIX,
    _check_key,
    decrypt_value,
    encrypt_value,
    is_current_format,
)

logger = logging.getLogger("guardian_vault.vault")

DEFAULT_BATCH_SIZE = 100

BackupCallable = Callable[[], Awaitable[Any]]


@dataclass
class ColumnStats:
    """Counters for one encrypted column."""

    column: str
    scanned: int = 0
    needing_update: int = 0
    verified: int = 0
    failed: int = 0
    legacy_plaintext: int = 0
    empty: int = 0


@dataclass
class RotationStats:
    """Summary of a rotation run."""

    dry_run: bool
    columns: list[ColumnStats] = field(default_factory=list)
    backup: Optional[str] = None

    def _sum(self, name: str) -> int:
        return sum(getattr(c, name) for c in self.columns)

    @property
    def scanned(self) -> int:
        return self._sum("scanned")

    @property
    def needing_update(self) -> int:
        return self._sum("needing_update")

    @property
    def verified(self) -> int:
        return self._sum("verified")

    @property
    def failed(self) -> int:
        return self._sum("failed")

    @property
    def legacy_plaintext(self) -> int:
        return self._sum("legacy_plaintext")

    def column(self, name: str) -> ColumnStats:
        for stats in self.columns:
            if stats.column == name:
                return stats
        raise KeyError(name)

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "backup": self.backup,
            "total": {
                "scanned": self.scanned,
                "needing_update": self.needing_update,
                "verified": self.verified,
                "failed": self.failed,
                "legacy_plaintext": self.legacy_plaintext,
            },
            "columns": [asdict(c) for c in self.columns],
        }


def looks_like_legacy_plaintext(value: str) -> bool:
    """Heuristic for values stored before encryption was introduced."""
    if value.startswith("otpauth://"):
        return True
    return ":" not in value and not value.startswith(V1_PREFIX)


class KeyRotationProcedure:
    """Offline re-encryption of all encrypted columns.

    Args:
        columns: Encrypted columns to walk, in order.
        old_key: Key the stored values are currently encrypted with.
        new_key: Target key. Equal to ``old_key`` for a format-only upgrade.
        batch_size: Rows fetched per page.
        dry_run: Count only, never write.
        assume_legacy_plaintext: Re-encrypt undecryptable values that look like
            pre-encryption plaintext instead of counting them as failed.
        backup: Awaitable factory run before any write. Required unless
            ``dry_run`` is set.
    """

    def __init__(
        self,
        columns: list[EncryptedColumn],
        old_key: bytes,
        new_key: bytes,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
        assume_legacy_plaintext: bool = False,
        backup: Optional[BackupCallable] = None,
    ):
        _check_key(old_key)
        _check_key(new_key)
        if batch_size <= 0:
            raise ValueError("batch_size must be a positive number")
        self.columns = columns
        self.old_key = old_key
        self.new_key = new_key
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.assume_legacy_plaintext = assume_legacy_plaintext
        self._backup = backup

    @property
    def same_key(self) -> bool:
        return self.old_key == self.new_key

    async def _take_backup(self) -> Optional[str]:
        if self._backup is None:
            raise BackupError(
                "No backup configured; refusing to rotate without a backup"
            )
        try:
            location = await self._backup()
        except BackupError:
            raise
        except Exception as err:
            raise BackupError(f"Backup failed: {err}") from err
        return str(location) if location is not None else None

    async def run(self) -> RotationStats:
        """Rotate every column.

        Raises:
            BackupError: If the pre-rotation backup fails. No record is
                touched in that case.
        """
        stats = RotationStats(dry_run=self.dry_run)
        logger.info(
            "Starting key rotation (dry_run=%s, batch_size=%d, mode=%s)",
            self.dry_run, self.batch_size,
            "format upgrade" if self.same_key else "key change",
        )
        if not self.dry_run:
            stats.backup = await self._take_backup()
            logger.info("Backup complete: %s", stats.backup)

        for column in self.columns:
            stats.columns.append(await self.rotate_column(column))

        logger.info(
            "Key rotation complete: scanned=%d needing_update=%d verified=%d failed=%d",
            stats.scanned, stats.needing_update, stats.verified, stats.failed,
        )
        return stats

    async def rotate_column(self, column: EncryptedColumn) -> ColumnStats:
        stats = ColumnStats(column=column.name)
        total = await column.count()
        logger.info("Processing %s (%d rows)", column.name, total)

        for offset in range(0, total, self.batch_size):
            batch = await column.fetch_batch(offset, self.batch_size)
            logger.debug(
                "%s: batch %d (%d rows)",
                column.name, offset // self.batch_size + 1, len(batch),
            )
            for item in batch:
                stats.scanned += 1
                await self._rotate_record(column, item, stats)

        logger.info(
            "%s: scanned %d, needing update %d, verified %d, failed %d",
            column.name, stats.scanned, stats.needing_update,
            stats.verified, stats.failed,
        )
        return stats

    def _recover(self, column: EncryptedColumn, item: StoredCiphertext, stats: ColumnStats):
        """Return (plaintext, decrypted) or None when the record must be skipped."""
        label = f"{column.name}#{item.record_id}"
        try:
            return decrypt_value(item.value, self.old_key, record=label), True
        except DecryptionError as err:
            if not looks_like_legacy_plaintext(item.value):
                logger.error("Failed to decrypt %s with the old key: %s", label, err)
                stats.failed += 1
                return None
            if not self.assume_legacy_plaintext:
                logger.error(
                    "%s (%s) looks like unencrypted legacy data; rerun with "
                    "--assume-legacy-plaintext to encrypt it",
                    label, item.label,
                )
                stats.failed += 1
                return None
            logger.warning(
                "Treating %s (%s) as unencrypted legacy data", label, item.label,
            )
            stats.legacy_plaintext += 1
            return item.value, False

    async def _rotate_record(
        self, column: EncryptedColumn, item: StoredCiphertext, stats: ColumnStats,
    ) -> None:
        if not item.value:
            stats.empty += 1
            return

        recovered = self._recover(column, item, stats)
        if recovered is None:
            return
        plaintext, decrypted = recovered

        if decrypted and self.same_key and is_current_format(item.value):
            # Already at the target key and format
            stats.verified += 1
            return

        stats.needing_update += 1
        if self.dry_run:
            return

        label = f"{column.name}#{item.record_id}"
        try:
            await column.write(item.record_id, encrypt_value(plaintext, self.new_key))
            stored = await column.read(item.record_id)
            if stored is not None and decrypt_value(stored, self.new_key) == plaintext:
                stats.verified += 1
            else:
                logger.error("Verification failed for %s", label)
                stats.failed += 1
        except Exception as err:
            logger.error("Failed to rotate %s: %s", label, err)
            stats.failed += 1
