"""
Tests for master-key loading and VaultConfig.
"""
import pytest

from guardian_vault.exceptions import ConfigurationError
from guardian_vault.vault.config import (
    VaultConfig,
    generate_encryption_key,
    load_encryption_key,
    parse_hex_key,
    validate_encryption_config,
)

from conftest import K1, K1_HEX


class TestKeyLoading:

    def test_load_valid_key(self):
        assert load_encryption_key({"ENCRYPTION_KEY": K1_HEX}) == K1

    def test_uppercase_hex_accepted(self):
        assert load_encryption_key({"ENCRYPTION_KEY": K1_HEX.upper()}) == K1

    def test_missing_key_fails_fast(self):
        """No unencrypted fallback: a missing key is fatal."""
        with pytest.raises(ConfigurationError, match="ENCRYPTION_KEY environment variable is not set"):
            load_encryption_key({})

    @pytest.mark.parametrize("value", [
        "abc",
        K1_HEX[:-2],
        K1_HEX + "00",
        "zz" * 32,
    ])
    def test_malformed_key(self, value):
        """The error names the variable and the expected shape."""
        with pytest.raises(ConfigurationError) as exc:
            load_encryption_key({"ENCRYPTION_KEY": value})
        assert "ENCRYPTION_KEY" in str(exc.value)
        assert "64 hexadecimal characters" in str(exc.value)

    def test_error_never_contains_key_material(self):
        bad = "g" + K1_HEX[1:]
        with pytest.raises(ConfigurationError) as exc:
            parse_hex_key(bad, "--from-key")
        assert bad not in str(exc.value)


class TestValidation:

    def test_round_trip_check_passes(self):
        validate_encryption_config(K1)

    def test_round_trip_check_rejects_short_key(self):
        with pytest.raises(ConfigurationError, match="Invalid key length"):
            validate_encryption_config(b"x" * 16)

    def test_generated_key_is_usable(self):
        hex_key = generate_encryption_key()
        assert len(hex_key) == 64
        assert generate_encryption_key() != hex_key
        validate_encryption_config(parse_hex_key(hex_key, "generated"))


class TestVaultConfig:

    def test_defaults(self):
        config = VaultConfig.from_env({"ENCRYPTION_KEY": K1_HEX})
        assert config.encryption_key == K1
        assert config.database_url is None
        assert config.rate_limit_window == 60.0
        assert config.rate_limit_max_requests == 10
        assert config.default_request_ttl is None
        assert config.backup_dir == "backups"

    def test_reads_optional_settings(self):
        config = VaultConfig.from_env({
            "ENCRYPTION_KEY": K1_HEX,
            "DATABASE_URL": "postgresql://vault@localhost/vault",
            "RATE_LIMIT_WINDOW": "30",
            "RATE_LIMIT_MAX_REQUESTS": "5",
            "APPROVAL_TTL": "900",
            "BACKUP_DIR": "/var/backups/vault",
        })
        assert config.database_url == "postgresql://vault@localhost/vault"
        assert config.rate_limit_window == 30.0
        assert config.rate_limit_max_requests == 5
        assert config.default_request_ttl == 900.0
        assert config.backup_dir == "/var/backups/vault"

    def test_invalid_setting_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid vault configuration"):
            VaultConfig.from_env({
                "ENCRYPTION_KEY": K1_HEX,
                "RATE_LIMIT_MAX_REQUESTS": "0",
            })

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            VaultConfig.from_env({"DATABASE_URL": "postgresql://localhost/vault"})

    def test_direct_construction_validates_key_length(self):
        with pytest.raises(ValueError):
            VaultConfig(encryption_key=b"short")

    def test_overrides_win_over_environment(self):
        config = VaultConfig.from_env(
            {"ENCRYPTION_KEY": K1_HEX, "DATABASE_URL": "postgresql://env/vault"},
            database_url="postgresql://flag/vault",
            backup_dir=None,
        )
        assert config.database_url == "postgresql://flag/vault"
        assert config.backup_dir == "backups"

    def test_explicit_key_skips_environment(self):
        config = VaultConfig.from_env({}, encryption_key=K1)
        assert config.encryption_key == K1
