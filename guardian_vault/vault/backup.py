"""
Vault Backup: Timestamped datastore copy taken before a key rotation.

Supported DATABASE_URL forms:
- ``file:<path>`` / ``sqlite:///<path>``: the database file is copied
- ``postgres://`` / ``postgresql://``: ``pg_dump`` writes a plain SQL dump

Any other scheme, a missing source file, or a failed dump raises
``BackupError``. Rotation must not proceed in that case.

The rotation CLI only connects to PostgreSQL; the file forms serve library
callers that run ``KeyRotationProcedure`` over their own columns.
"""
import asyncio
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from ..exceptions import BackupError
from ..models import utc_now

logger = logging.getLogger("guardian_vault.vault")

POSTGRES_SCHEMES = ("postgres://", "postgresql://")


def _timestamp(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def _sqlite_path(database_url: str) -> Optional[Path]:
    if database_url.startswith("sqlite:///"):
        return Path(database_url[len("sqlite:///"):])
    if database_url.startswith("file:"):
        return Path(database_url[len("file:"):])
    return None


def _copy_file(source: Path, backup_dir: Path, stamp: str) -> Path:
    source = source.resolve()
    if not source.exists():
        raise BackupError(f"Database file not found at: {source}")
    backup_dir.mkdir(parents=True, exist_ok=True)
    target = backup_dir / f"{source.stem}-{stamp}{source.suffix}"
    try:
        shutil.copy2(source, target)
    except OSError as err:
        raise BackupError(f"Failed to copy {source} to {target}: {err}") from err
    return target


async def _pg_dump(database_url: str, backup_dir: Path, stamp: str) -> Path:
    backup_dir.mkdir(parents=True, exist_ok=True)
    target = backup_dir / f"pg-backup-{stamp}.sql"
    try:
        proc = await asyncio.create_subprocess_exec(
            "pg_dump", "--no-owner", "--file", str(target), database_url,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as err:
        raise BackupError("pg_dump executable not found on PATH") from err
    _, stderr = await proc.communicate()
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise BackupError(
            f"pg_dump exited with status {proc.returncode}: {detail}"
        )
    return target


async def backup_database(
    database_url: str,
    backup_dir: Union[str, Path] = "backups",
    now: Callable[[], datetime] = utc_now,
) -> Path:
    """Take a full, timestamped backup of the datastore.

    Args:
        database_url: Connection URL of the authoritative datastore.
        backup_dir: Directory receiving the backup (created if missing).
        now: Clock used to build the timestamp.

    Returns:
        Path of the backup file.

    Raises:
        BackupError: If the URL scheme is unsupported or the backup fails.
    """
    if not database_url:
        raise BackupError("DATABASE_URL is not set; cannot take a backup")
    backup_dir = Path(backup_dir)
    stamp = _timestamp(now())

    sqlite_path = _sqlite_path(database_url)
    if sqlite_path is not None:
        target = _copy_file(sqlite_path, backup_dir, stamp)
    elif database_url.startswith(POSTGRES_SCHEMES):
        target = await _pg_dump(database_url, backup_dir, stamp)
    else:
        scheme = database_url.split(":", 1)[0]
        raise BackupError(
            f"Automated backup is not supported for '{scheme}' databases"
        )

    logger.info("Database backup written to %s", target)
    return target
