"""
Tests for the guardian-vault-rotate command line.
"""
import pytest

from guardian_vault.exceptions import BackupError, ConfigurationError
from guardian_vault.vault import cli
from guardian_vault.vault.crypto import decrypt_value
from guardian_vault.vault.key_rotation import ColumnStats, RotationStats

from conftest import K1, K1_HEX, K2, K2_HEX, TOTP_SEED


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "ENCRYPTION_KEY", "ENCRYPTION_KEY_OLD", "ENCRYPTION_KEY_NEW",
        "DATABASE_URL", "BACKUP_DIR", "RATE_LIMIT_WINDOW",
        "RATE_LIMIT_MAX_REQUESTS", "APPROVAL_TTL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "load_dotenv", lambda *a, **kw: False)
    return monkeypatch


class TestParser:

    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert args.dry_run is False
        assert args.batch_size == 100
        assert args.assume_legacy_plaintext is False
        assert args.from_key is None

    def test_dry_run_and_apply(self):
        parser = cli.build_parser()
        assert parser.parse_args(["--dry-run"]).dry_run is True
        assert parser.parse_args(["--apply"]).dry_run is False

    def test_dry_run_and_apply_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--dry-run", "--apply"])

    @pytest.mark.parametrize("value", ["0", "-5", "ten"])
    def test_invalid_batch_size(self, value):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--batch-size", value])


class TestKeyResolution:

    def parse(self, *argv):
        return cli.build_parser().parse_args(list(argv))

    def test_flags_win(self):
        env = {"ENCRYPTION_KEY_OLD": K2_HEX, "ENCRYPTION_KEY": K2_HEX}
        old, new = cli.resolve_keys(self.parse("--from-key", K1_HEX, "--to-key", K2_HEX), env)
        assert (old, new) == (K1, K2)

    def test_rotation_env_vars(self):
        env = {"ENCRYPTION_KEY_OLD": K1_HEX, "ENCRYPTION_KEY_NEW": K2_HEX, "ENCRYPTION_KEY": K2_HEX}
        assert cli.resolve_keys(self.parse(), env) == (K1, K2)

    def test_current_key_for_both_sides(self):
        """Without explicit keys the run is a format-only upgrade."""
        assert cli.resolve_keys(self.parse(), {"ENCRYPTION_KEY": K1_HEX}) == (K1, K1)

    def test_missing_keys(self):
        with pytest.raises(ConfigurationError, match="Old key"):
            cli.resolve_keys(self.parse(), {})

    def test_invalid_new_key(self):
        with pytest.raises(ConfigurationError, match="New key.*--to-key"):
            cli.resolve_keys(self.parse("--to-key", "abc"), {"ENCRYPTION_KEY": K1_HEX})


class TestRunRotation:

    async def test_rotates_memory_columns(self, store, repos):
        account = await store.create_totp_account("alice", "github", TOTP_SEED)
        args = cli.build_parser().parse_args(["--apply", "--batch-size", "10"])

        async def backup():
            return "backup.sql"

        stats = await cli.run_rotation(args, repos.encrypted_columns, K1, K2, backup)
        assert stats.verified == 1
        stored = repos.totp.records[account.id].secret_ciphertext
        assert decrypt_value(stored, K2) == TOTP_SEED

    def test_summary_lists_counters(self):
        stats = RotationStats(dry_run=False, backup="backups/x.sql", columns=[
            ColumnStats("TOTPAccount.secret", scanned=3, needing_update=2, verified=2),
            ColumnStats("ResourceField.value", scanned=1, failed=1),
        ])
        summary = cli.format_summary(stats)
        assert "Backup: backups/x.sql" in summary
        assert "TOTPAccount.secret: Scanned 3, Needing update 2, Verified 2, Failed 0" in summary
        assert "Total: Scanned 4, Needing update 2, Verified 2, Failed 1" in summary
        assert "1 record(s) failed" in summary


class TestMain:

    def test_missing_key_exits_2(self, clean_env, capsys):
        assert cli.main(["--dry-run"]) == cli.EXIT_CONFIG
        assert "not set" in capsys.readouterr().err

    def test_malformed_key_exits_2(self, clean_env):
        clean_env.setenv("ENCRYPTION_KEY", "1234")
        assert cli.main([]) == cli.EXIT_CONFIG

    def test_missing_database_url_exits_2(self, clean_env, capsys):
        clean_env.setenv("ENCRYPTION_KEY", K1_HEX)
        assert cli.main([]) == cli.EXIT_CONFIG
        assert "DATABASE_URL" in capsys.readouterr().err

    def test_backup_failure_exits_1(self, clean_env, capsys):
        clean_env.setenv("ENCRYPTION_KEY", K1_HEX)

        async def failing(*args, **kwargs):
            raise BackupError("pg_dump executable not found on PATH")

        clean_env.setattr(cli, "_rotate_database", failing)
        assert cli.main(["--database-url", "postgresql://localhost/vault"]) == cli.EXIT_FAILURE
        assert "no record was modified" in capsys.readouterr().err

    def test_completed_run_with_failures_exits_0(self, clean_env, capsys):
        clean_env.setenv("ENCRYPTION_KEY", K1_HEX)
        clean_env.setenv("DATABASE_URL", "postgresql://localhost/vault")
        seen = {}

        async def fake(args, database_url, backup_dir, old_key, new_key):
            seen.update(url=database_url, backup_dir=backup_dir, same=old_key == new_key)
            return RotationStats(dry_run=False, columns=[
                ColumnStats("TOTPAccount.secret", scanned=2, needing_update=1, verified=1, failed=1),
            ])

        clean_env.setattr(cli, "_rotate_database", fake)
        assert cli.main(["--backup-dir", "/tmp/vault-backups"]) == cli.EXIT_OK
        assert seen == {
            "url": "postgresql://localhost/vault",
            "backup_dir": "/tmp/vault-backups",
            "same": True,
        }
        assert "Failed 1" in capsys.readouterr().out

    def test_non_postgres_url_exits_2(self, clean_env, capsys):
        """The rotation command only connects to PostgreSQL."""
        clean_env.setenv("ENCRYPTION_KEY", K1_HEX)
        assert cli.main(["--database-url", "sqlite:///vault.db"]) == cli.EXIT_CONFIG
        assert "postgres" in capsys.readouterr().err

    def test_settings_come_from_vault_config(self, clean_env):
        clean_env.setenv("ENCRYPTION_KEY", K1_HEX)
        clean_env.setenv("DATABASE_URL", "postgresql://localhost/vault")
        clean_env.setenv("BACKUP_DIR", "/srv/vault-backups")
        seen = {}

        async def fake(args, database_url, backup_dir, old_key, new_key):
            seen.update(url=database_url, backup_dir=backup_dir)
            return RotationStats(dry_run=True, columns=[])

        clean_env.setattr(cli, "_rotate_database", fake)
        assert cli.main(["--dry-run"]) == cli.EXIT_OK
        assert seen == {
            "url": "postgresql://localhost/vault",
            "backup_dir": "/srv/vault-backups",
        }

    def test_invalid_environment_setting_exits_2(self, clean_env, capsys):
        clean_env.setenv("ENCRYPTION_KEY", K1_HEX)
        clean_env.setenv("RATE_LIMIT_WINDOW", "-1")
        assert cli.main(["--database-url", "postgresql://localhost/vault"]) == cli.EXIT_CONFIG
        assert "Invalid vault configuration" in capsys.readouterr().err
