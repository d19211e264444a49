"""
Configuration models for the migration pipeline.

Configuration is read once at start-up from environment variables (and an
optional ``.env`` file) and may be overlaid by a JSON file. The resulting
MigrationConfig is frozen for the rest of the run.

Environment variables use the ``MIGRATION_`` prefix and ``__`` as the
nesting delimiter, e.g. ``MIGRATION_SSH__HOST`` or
``MIGRATION_IMPORT__BATCH_SIZE``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from legacymigrate.exceptions import ConfigurationError
from legacymigrate.retry import RetryConfig

logger = logging.getLogger(__name__)

DuplicateStrategy = Literal["keep-first", "keep-all", "manual-review"]


class SSHConfig(BaseModel):
    """Connection settings for the SSH bastion in front of the legacy database."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    private_key_path: Path | None = None
    passphrase: SecretStr | None = None
    password: SecretStr | None = None
    known_hosts: Path | None = Field(
        default=None,
        description="known_hosts file; None disables host key checking",
    )
    connect_timeout: float = Field(default=30.0, gt=0)

    @property
    def expanded_key_path(self) -> Path | None:
        """Private key path with ``~`` expanded."""
        return self.private_key_path.expanduser() if self.private_key_path else None


class DatabaseConfig(BaseModel):
    """Legacy database location as seen from the SSH host."""

    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    username: str
    password: SecretStr = SecretStr("")
    pool_size: int = Field(default=5, ge=1)
    local_port: int = Field(
        default=5433,
        ge=0,
        le=65535,
        description="Local end of the tunnel (0 = ephemeral)",
    )
    connect_retries: int = Field(default=3, ge=1)
    connect_retry_delay: float = Field(default=1.0, ge=0)


class TunnelConfig(BaseModel):
    """Bootstrap policy for the SSH tunnel."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=2.0, ge=0)


class TransformConfig(BaseModel):
    """Options passed to the record transformer."""

    model_config = ConfigDict(frozen=True)

    default_visibility: Literal["private", "public"] = "private"
    preserve_timestamps: bool = True


class ValidationConfig(BaseModel):
    """Options for the validation stage."""

    model_config = ConfigDict(frozen=True)

    strict_mode: bool = False
    duplicate_strategy: DuplicateStrategy = "keep-first"


class ImportConfig(BaseModel):
    """Settings for the batch uploader."""

    model_config = ConfigDict(frozen=True)

    api_base_url: str
    auth_token: SecretStr = SecretStr("")
    batch_size: int = Field(default=50, ge=1)
    delay_between_batches: float = Field(default=0.1, ge=0, description="Seconds")
    dry_run: bool = False
    stop_on_error: bool = False
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=1.0, ge=0, description="Max random extra delay")
    request_timeout: float = Field(default=30.0, gt=0)

    def retry_config(self) -> RetryConfig:
        """Retry policy applied to each batch call."""
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=max(self.retry_max_delay, self.retry_base_delay),
            jitter=self.retry_jitter,
        )


class LoggingConfig(BaseModel):
    """Logging and output locations."""

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    output_dir: Path = Path("migration-data")
    log_to_file: bool = True
    enable_tracing: bool = False


class RecoveryConfig(BaseModel):
    """Error recovery policy."""

    model_config = ConfigDict(frozen=True)

    save_state_on_error: bool = True


class MigrationConfig(BaseModel):
    """
    Complete, immutable configuration for one migration run.

    Example:
        >>> config = MigrationConfig(
        ...     ssh=SSHConfig(host="bastion", username="deploy"),
        ...     legacy_db=DatabaseConfig(database="recipes", username="reader"),
        ...     import_=ImportConfig(api_base_url="https://new.example.com"),
        ... )
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ssh: SSHConfig
    legacy_db: DatabaseConfig
    tunnel: TunnelConfig = TunnelConfig()
    transform: TransformConfig = TransformConfig()
    validation: ValidationConfig = ValidationConfig()
    import_: ImportConfig = Field(alias="import")
    logging: LoggingConfig = LoggingConfig()
    recovery: RecoveryConfig = RecoveryConfig()

    def with_overrides(self, **sections: dict[str, Any]) -> MigrationConfig:
        """
        Return a copy with some section fields replaced.

        The replaced sections are validated again.

        Example:
            >>> dry = config.with_overrides(import_={"dry_run": True})

        Raises:
            ConfigurationError: If an overridden value is invalid
        """
        updates: dict[str, Any] = {}
        for name, values in sections.items():
            current: BaseModel = getattr(self, name)
            try:
                updates[name] = type(current).model_validate({**current.model_dump(), **values})
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid {name.rstrip('_')} override: {_format_problems(e)}"
                ) from e
        return self.model_copy(update=updates)


class MigrationSettings(BaseSettings):
    """Environment-backed source for MigrationConfig."""

    model_config = SettingsConfigDict(
        env_prefix="MIGRATION_",
        env_nested_delimiter="__",
        env_file=".env.migration",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    ssh: dict[str, Any] = Field(default_factory=dict)
    legacy_db: dict[str, Any] = Field(default_factory=dict)
    tunnel: dict[str, Any] = Field(default_factory=dict)
    transform: dict[str, Any] = Field(default_factory=dict)
    validation: dict[str, Any] = Field(default_factory=dict)
    import_: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("migration_import", "import"),
    )
    logging: dict[str, Any] = Field(default_factory=dict)
    recovery: dict[str, Any] = Field(default_factory=dict)


def _format_problems(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config_file(path: Path | str) -> dict[str, Any]:
    """
    Read a JSON configuration file.

    Raises:
        ConfigurationError: If the file is missing or not valid JSON
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return data


def load_config(
    env_file: Path | str | None = None,
    config_path: Path | str | None = None,
) -> MigrationConfig:
    """
    Load the migration configuration.

    Environment variables (and the env file) are read first; values from the
    JSON config file take precedence.

    Args:
        env_file: Path to a dotenv file (defaults to ``.env.migration``)
        config_path: Optional JSON config file

    Returns:
        Validated, frozen MigrationConfig

    Raises:
        ConfigurationError: If required settings are missing or invalid
    """
    settings_kwargs: dict[str, Any] = {}
    if env_file is not None:
        settings_kwargs["_env_file"] = str(env_file)

    settings = MigrationSettings(**settings_kwargs)
    data = settings.model_dump()
    data["import"] = data.pop("import_")

    if config_path is not None:
        data = _deep_merge(data, load_config_file(config_path))

    try:
        config = MigrationConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid migration configuration: {_format_problems(e)}"
        ) from e

    logger.debug(
        "Configuration loaded",
        extra={"env_file": str(env_file) if env_file else None, "config_path": str(config_path)},
    )
    return config


def describe_config(config: MigrationConfig, phases: list[str]) -> list[str]:
    """Human-readable configuration summary lines (secrets omitted)."""
    return [
        f"Phases to run: {' -> '.join(phases)}",
        f"SSH host: {config.ssh.host}:{config.ssh.port}",
        f"Legacy DB: {config.legacy_db.database}",
        f"API URL: {config.import_.api_base_url}",
        f"Batch size: {config.import_.batch_size}",
        f"Dry run: {'YES' if config.import_.dry_run else 'NO'}",
        f"Stop on error: {'YES' if config.import_.stop_on_error else 'NO'}",
        f"Duplicate strategy: {config.validation.duplicate_strategy}",
        f"Output directory: {config.logging.output_dir}",
    ]


__all__ = [
    "DatabaseConfig",
    "DuplicateStrategy",
    "ImportConfig",
    "LoggingConfig",
    "MigrationConfig",
    "MigrationSettings",
    "RecoveryConfig",
    "SSHConfig",
    "TransformConfig",
    "TunnelConfig",
    "ValidationConfig",
    "describe_config",
    "load_config",
    "load_config_file",
]
