"""Application settings with Pydantic Settings validation.

Secrets (platform app key and secret, database password) are loaded from the
environment or a .env file. Non-sensitive configuration is loaded from
config/main.yaml and config/*.yaml, merged and validated against JSON schemas.
"""

import json
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from inbox_relay.config.logging_config import get_logger

BACKFILL_MAX_AGE_MINUTES_DEFAULT: Final[int] = 60
MESSAGE_PAGE_SIZE_DEFAULT: Final[int] = 200
RATE_LIMIT_DEFAULT_RESET_SECONDS: Final[float] = 60.0

POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10

CONFIG_DIR: Final[Path] = Path("config")

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load JSON Schema from config/schemas/, or an empty dict if absent."""
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = CONFIG_DIR,
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load and merge all YAML configs from the config directory.

    Loading order (later overrides earlier):
    1. main.yaml
    2. All other *.yaml files (sorted alphabetically)

    Returns:
        Merged configuration dictionary
    """
    merged_config: dict[str, Any] = {}
    if not config_dir.is_dir():
        return merged_config

    main_path = config_dir / "main.yaml"
    yaml_files = [main_path] if main_path.exists() else []
    yaml_files.extend(
        sorted(f for f in config_dir.glob("*.yaml") if f.name != "main.yaml")
    )

    for yaml_file in yaml_files:
        schema_name = yaml_file.stem
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(
                "config_file_load_failed",
                path=str(yaml_file),
                error=str(e),
            )
            continue

        try:
            validate_config_section(
                file_config, schema_name, str(yaml_file), config_dir
            )
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=schema_name,
                error=str(e),
            )
            raise

        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=schema_name)

    logger.info("config_load_complete", file_count=len(yaml_files))
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Secrets are loaded from .env file.
    Non-sensitive config is loaded from config/*.yaml with fallback to defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    platform_api_key: SecretStr = Field(
        ..., description="Platform application consumer key (from .env)"
    )
    platform_api_secret: SecretStr = Field(
        ..., description="Platform application consumer secret (from .env)"
    )
    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    @field_validator("platform_api_key", "platform_api_secret", mode="before")
    @classmethod
    def _ensure_secret(
        cls, value: SecretStr | str | None, info: ValidationInfo
    ) -> SecretStr:
        if value is None:
            raise ValueError(f"{info.field_name} must be provided")

        if isinstance(value, SecretStr):
            secret_value = value.get_secret_value()
        else:
            secret_value = str(value)

        if not secret_value.strip():
            raise ValueError(f"{info.field_name} must not be empty")

        return value if isinstance(value, SecretStr) else SecretStr(secret_value)

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding explicit values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        platform_config = config.get("platform") or {}
        _assign("production", platform_config.get("production"))

        backfill_config = config.get("backfill") or {}
        _assign("backfill_max_age_minutes", backfill_config.get("max_age_minutes"))
        _assign("message_page_size", backfill_config.get("message_page_size"))
        _assign(
            "rate_limit_default_reset_seconds",
            backfill_config.get("rate_limit_default_reset_seconds"),
        )
        _assign("max_rate_limit_retries", backfill_config.get("max_rate_limit_retries"))

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("json_logs", logging_config.get("json"))

        metrics_config = config.get("metrics") or {}
        _assign("metrics_port", metrics_config.get("port"))

    # Platform
    production: bool = Field(
        default=False, description="Use production platform endpoints"
    )

    # Backfill configuration
    backfill_max_age_minutes: int = Field(
        default=BACKFILL_MAX_AGE_MINUTES_DEFAULT,
        ge=1,
        description="Messages older than this are never backfilled",
    )
    message_page_size: int = Field(
        default=MESSAGE_PAGE_SIZE_DEFAULT,
        ge=1,
        description="Number of direct messages requested per page",
    )
    rate_limit_default_reset_seconds: float = Field(
        default=RATE_LIMIT_DEFAULT_RESET_SECONDS,
        ge=0.0,
        description="Backoff used when the platform omits a rate-limit reset time",
    )
    max_rate_limit_retries: int | None = Field(
        default=None,
        description="Maximum rate-limit sleeps per walk (None = unlimited)",
    )

    # Database configuration
    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(
        default="data/inbox_relay.db", description="SQLite database path"
    )
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="inbox_relay", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="PostgreSQL connection timeout in seconds",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Emit JSON log lines")
    metrics_port: int | None = Field(
        default=None, description="Prometheus exporter port (None = METRICS_PORT env)"
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings
