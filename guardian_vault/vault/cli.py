"""
Key rotation CLI.

Usage:
    guardian-vault-rotate --dry-run
    guardian-vault-rotate --from-key <hex64> --to-key <hex64>

Or run directly:
    python -m guardian_vault.vault.cli

Key sources, first match wins:
    old key: --from-key, ENCRYPTION_KEY_OLD, ENCRYPTION_KEY
    new key: --to-key,   ENCRYPTION_KEY_NEW, ENCRYPTION_KEY

Exit status:
    0  run completed (per-record failures are reported, not fatal)
    1  backup failed or the run aborted
    2  missing or invalid key material / configuration
"""
import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Mapping
from functools import partial
from typing import Optional

import asyncpg
from dotenv import load_dotenv

from ..exceptions import BackupError, ConfigurationError
from ..postgres import encrypted_columns
from ..repositories import EncryptedColumn
from .backup import POSTGRES_SCHEMES, backup_database
from .config import (
    ENCRYPTION_KEY_ENV,
    ENCRYPTION_KEY_NEW_ENV,
    ENCRYPTION_KEY_OLD_ENV,
    VaultConfig,
    parse_hex_key,
)
from .key_rotation import (
    DEFAULT_BATCH_SIZE,
    BackupCallable,
    KeyRotationProcedure,
    RotationStats,
)

logger = logging.getLogger("guardian_vault.vault")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        number = 0
    if number <= 0:
        raise argparse.ArgumentTypeError(
            f"invalid value {value!r}: must be a positive number"
        )
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="guardian-vault-rotate",
        description="Re-encrypt every stored secret under a new key "
                    "and/or upgrade legacy ciphertext to the v1 format.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--dry-run", dest="dry_run", action="store_true",
        help="count records needing update without writing anything",
    )
    mode.add_argument(
        "--apply", dest="dry_run", action="store_false",
        help="write re-encrypted values (default)",
    )
    parser.add_argument(
        "--batch-size", type=_positive_int, default=DEFAULT_BATCH_SIZE,
        help=f"rows fetched per batch (default {DEFAULT_BATCH_SIZE})",
    )
    parser.add_argument("--from-key", help="old key, 64 hex characters")
    parser.add_argument("--to-key", help="new key, 64 hex characters")
    parser.add_argument(
        "--assume-legacy-plaintext", action="store_true",
        help="encrypt undecryptable values that look like pre-encryption plaintext",
    )
    parser.add_argument(
        "--database-url", help="PostgreSQL URL (default: $DATABASE_URL)",
    )
    parser.add_argument(
        "--backup-dir", default=None,
        help="backup destination (default: $BACKUP_DIR or ./backups)",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.set_defaults(dry_run=False)
    return parser


def resolve_keys(
    args: argparse.Namespace, environ: Mapping[str, str],
) -> tuple[bytes, bytes]:
    """Pick the old and new keys from flags, then environment.

    Raises:
        ConfigurationError: If either key is missing or malformed.
    """
    if args.from_key:
        old_hex, old_source = args.from_key, "--from-key"
    elif environ.get(ENCRYPTION_KEY_OLD_ENV):
        old_hex, old_source = environ[ENCRYPTION_KEY_OLD_ENV], ENCRYPTION_KEY_OLD_ENV
    else:
        old_hex, old_source = environ.get(ENCRYPTION_KEY_ENV), ENCRYPTION_KEY_ENV
        logger.info("No old key specified, using %s as the old key", ENCRYPTION_KEY_ENV)

    if args.to_key:
        new_hex, new_source = args.to_key, "--to-key"
    elif environ.get(ENCRYPTION_KEY_NEW_ENV):
        new_hex, new_source = environ[ENCRYPTION_KEY_NEW_ENV], ENCRYPTION_KEY_NEW_ENV
    else:
        new_hex, new_source = environ.get(ENCRYPTION_KEY_ENV), ENCRYPTION_KEY_ENV
        logger.info("No new key specified, using %s as the new key", ENCRYPTION_KEY_ENV)

    old_key = parse_hex_key(
        old_hex, f"Old key ({old_source}; provide via --from-key or {ENCRYPTION_KEY_OLD_ENV})",
    )
    new_key = parse_hex_key(
        new_hex, f"New key ({new_source}; provide via --to-key or {ENCRYPTION_KEY_NEW_ENV})",
    )
    return old_key, new_key


def format_summary(stats: RotationStats) -> str:
    lines = [
        "Key rotation %s" % ("(dry run)" if stats.dry_run else "complete"),
    ]
    if stats.backup:
        lines.append(f"Backup: {stats.backup}")
    for column in stats.columns:
        lines.append(
            f"{column.column}: Scanned {column.scanned}, "
            f"Needing update {column.needing_update}, "
            f"Verified {column.verified}, Failed {column.failed}"
            + (f", Legacy plaintext {column.legacy_plaintext}" if column.legacy_plaintext else "")
        )
    lines.append(
        f"Total: Scanned {stats.scanned}, Needing update {stats.needing_update}, "
        f"Verified {stats.verified}, Failed {stats.failed}"
    )
    if stats.failed:
        lines.append(
            f"{stats.failed} record(s) failed; check the log and intervene manually."
        )
    return "\n".join(lines)


async def run_rotation(
    args: argparse.Namespace,
    columns: list[EncryptedColumn],
    old_key: bytes,
    new_key: bytes,
    backup: Optional[BackupCallable],
) -> RotationStats:
    if old_key == new_key:
        logger.info("Old key matches new key: upgrading ciphertext format only")
    else:
        logger.warning("Rotating keys: old and new keys differ")
    procedure = KeyRotationProcedure(
        columns,
        old_key=old_key,
        new_key=new_key,
        batch_size=args.batch_size,
        dry_run=args.dry_run,
        assume_legacy_plaintext=args.assume_legacy_plaintext,
        backup=backup,
    )
    return await procedure.run()


async def _rotate_database(
    args: argparse.Namespace,
    database_url: str,
    backup_dir: str,
    old_key: bytes,
    new_key: bytes,
) -> RotationStats:
    pool = await asyncpg.create_pool(database_url)
    try:
        return await run_rotation(
            args,
            encrypted_columns(pool),
            old_key,
            new_key,
            partial(backup_database, database_url, backup_dir),
        )
    finally:
        await pool.close()


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for the guardian-vault-rotate command."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv()
    environ = os.environ

    try:
        old_key, new_key = resolve_keys(args, environ)
        config = VaultConfig.from_env(
            environ,
            encryption_key=new_key,
            database_url=args.database_url,
            backup_dir=args.backup_dir,
        )
        if not config.database_url:
            raise ConfigurationError(
                "DATABASE_URL must be set in the environment, a .env file, "
                "or via --database-url"
            )
        if not config.database_url.startswith(POSTGRES_SCHEMES):
            raise ConfigurationError(
                "DATABASE_URL must be a postgres:// or postgresql:// URL"
            )
    except ConfigurationError as err:
        print(f"ERROR: {err}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        stats = asyncio.run(
            _rotate_database(
                args, config.database_url, config.backup_dir, old_key, new_key,
            )
        )
    except BackupError as err:
        print(f"ERROR: backup failed, no record was modified: {err}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as err:
        logger.exception("Fatal rotation error")
        print(f"ERROR: rotation aborted: {err}", file=sys.stderr)
        return EXIT_FAILURE

    print(format_summary(stats))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
