"""
Unit tests for configuration models and loading.
"""

import json

import pytest
from pydantic import ValidationError

from legacymigrate.config import (
    ImportConfig,
    MigrationConfig,
    ValidationConfig,
    describe_config,
    load_config,
)
from legacymigrate.exceptions import ConfigurationError

REQUIRED_ENV = {
    "MIGRATION_SSH__HOST": "bastion.example.com",
    "MIGRATION_SSH__USERNAME": "deploy",
    "MIGRATION_LEGACY_DB__DATABASE": "legacy",
    "MIGRATION_LEGACY_DB__USERNAME": "reader",
    "MIGRATION_IMPORT__API_BASE_URL": "https://api.example.com",
}


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """Run in an empty directory so no stray .env.migration file is read."""
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestModels:
    """Tests for the configuration models."""

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            ImportConfig(api_base_url="https://api.example.com", batch_size=0)

    def test_unknown_duplicate_strategy_rejected(self):
        with pytest.raises(ValidationError):
            ValidationConfig(duplicate_strategy="keep-last")

    @pytest.mark.parametrize("strategy", ["keep-first", "keep-all", "manual-review"])
    def test_known_duplicate_strategies(self, strategy):
        assert ValidationConfig(duplicate_strategy=strategy).duplicate_strategy == strategy

    def test_config_is_frozen(self, migration_config):
        with pytest.raises(ValidationError):
            migration_config.import_ = None

    def test_import_section_accepts_alias(self):
        config = MigrationConfig.model_validate(
            {
                "ssh": {"host": "h", "username": "u"},
                "legacy_db": {"database": "d", "username": "u"},
                "import": {"api_base_url": "https://api.example.com"},
            }
        )

        assert config.import_.api_base_url == "https://api.example.com"
        assert config.import_.batch_size == 50

    def test_retry_config_from_import_settings(self):
        config = ImportConfig(
            api_base_url="https://api.example.com",
            max_retries=5,
            retry_base_delay=0.5,
            retry_max_delay=4.0,
            retry_jitter=0.1,
        )

        retry = config.retry_config()

        assert retry.max_retries == 5
        assert retry.base_delay == 0.5
        assert retry.max_delay == 4.0
        assert retry.jitter == 0.1

    def test_with_overrides_returns_new_config(self, migration_config):
        dry = migration_config.with_overrides(import_={"dry_run": True, "batch_size": 7})

        assert dry.import_.dry_run is True
        assert dry.import_.batch_size == 7
        assert migration_config.import_.dry_run is False
        assert dry.ssh == migration_config.ssh

    def test_with_overrides_validates_values(self, migration_config):
        with pytest.raises(ConfigurationError, match="import_?.*batch_size"):
            migration_config.with_overrides(import_={"batch_size": 0})

    def test_with_overrides_keeps_secrets(self, migration_config):
        dry = migration_config.with_overrides(import_={"dry_run": True})

        assert dry.import_.auth_token.get_secret_value() == "test-token"

    def test_describe_config_omits_secrets(self, migration_config):
        lines = describe_config(migration_config, ["extract", "import"])

        assert lines[0] == "Phases to run: extract -> import"
        assert not any("test-token" in line for line in lines)
        assert "Batch size: 2" in lines


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_from_environment(self, clean_env):
        for key, value in REQUIRED_ENV.items():
            clean_env.setenv(key, value)
        clean_env.setenv("MIGRATION_IMPORT__BATCH_SIZE", "25")
        clean_env.setenv("MIGRATION_VALIDATION__DUPLICATE_STRATEGY", "keep-all")

        config = load_config()

        assert config.ssh.host == "bastion.example.com"
        assert config.legacy_db.database == "legacy"
        assert config.import_.batch_size == 25
        assert config.validation.duplicate_strategy == "keep-all"

    def test_load_from_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / "custom.env"
        env_file.write_text("\n".join(f"{k}={v}" for k, v in REQUIRED_ENV.items()))

        config = load_config(env_file=env_file)

        assert config.ssh.username == "deploy"

    def test_config_file_overrides_environment(self, clean_env, tmp_path):
        for key, value in REQUIRED_ENV.items():
            clean_env.setenv(key, value)
        config_path = tmp_path / "migration.json"
        config_path.write_text(json.dumps({"import": {"batch_size": 10, "dry_run": True}}))

        config = load_config(config_path=config_path)

        assert config.import_.batch_size == 10
        assert config.import_.dry_run is True
        assert config.import_.api_base_url == "https://api.example.com"

    def test_missing_required_settings(self, clean_env):
        with pytest.raises(ConfigurationError, match="Invalid migration configuration"):
            load_config()

    def test_invalid_batch_size_is_configuration_error(self, clean_env):
        for key, value in REQUIRED_ENV.items():
            clean_env.setenv(key, value)
        clean_env.setenv("MIGRATION_IMPORT__BATCH_SIZE", "0")

        with pytest.raises(ConfigurationError, match="batch_size"):
            load_config()

    def test_missing_config_file(self, clean_env, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(config_path=tmp_path / "absent.json")

    def test_malformed_config_file(self, clean_env, tmp_path):
        config_path = tmp_path / "broken.json"
        config_path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="not valid JSON"):
            load_config(config_path=config_path)
