"""Configuration management using YAML and Pydantic."""

import os
import re
import warnings
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_TIER_STORAGE_CLASSES = {
    "Hot": "STANDARD",
    "Cool": "STANDARD_IA",
    "Archive": "GLACIER",
}


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a parsed YAML tree."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class DatabaseConfig(BaseModel):
    """PostgreSQL connection settings."""

    name: str = Field(description="Logical database name referenced by table configurations")
    host: str = Field(description="Database host")
    port: int = Field(default=5432, description="Database port", gt=0, lt=65536)
    database: Optional[str] = Field(
        default=None,
        description="Physical database name (defaults to name)",
    )
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable name containing database password (preferred)",
    )
    password: Optional[str] = Field(
        default=None,
        description="Database password (development only - use password_env in production)",
    )
    pool_size: int = Field(default=5, description="Connection pool size", gt=0, le=50)
    command_timeout: float = Field(
        default=300.0,
        description="Statement timeout in seconds for pooled connections",
        gt=0,
    )

    @model_validator(mode="after")
    def validate_password_source(self) -> "DatabaseConfig":
        """Validate that exactly one password source is provided."""
        if not self.password_env and not self.password:
            raise ValueError("Either 'password_env' or 'password' must be provided.")
        if self.password_env and self.password:
            raise ValueError("Cannot specify both 'password_env' and 'password'.")
        return self

    @property
    def database_name(self) -> str:
        return self.database or self.name

    def get_password(self) -> str:
        """Get password from environment variable or config file.

        Raises:
            ValueError: If password cannot be retrieved
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if not password:
                raise ValueError(f"Environment variable {self.password_env} not set")
            return password
        warnings.warn(
            f"Using password from config file for database '{self.name}'. "
            f"Use 'password_env' instead.",
            UserWarning,
            stacklevel=2,
        )
        return self.password or ""


class StorageAccountConfig(BaseModel):
    """One S3-compatible storage account (endpoint plus credentials)."""

    name: str = Field(description="Account name referenced by table configurations")
    endpoint: Optional[str] = Field(
        default=None,
        description="S3 endpoint URL (null for AWS S3, or custom endpoint for S3-compatible)",
    )
    region: str = Field(default="us-east-1", description="AWS region")
    profile: Optional[str] = Field(default=None, description="Named boto3 profile")
    aws_access_key_id: Optional[str] = Field(default=None, alias="access_key_id")
    aws_secret_access_key: Optional[str] = Field(default=None, alias="secret_access_key")
    tier_storage_classes: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_STORAGE_CLASSES),
        description="Access tier name to S3 storage class",
    )

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("tier_storage_classes")
    @classmethod
    def validate_tiers(cls, v: dict[str, str]) -> dict[str, str]:
        """Fill in tiers the account does not override."""
        merged = dict(DEFAULT_TIER_STORAGE_CLASSES)
        for tier, storage_class in v.items():
            key = "Archive" if tier.strip().lower() in ("archive", "cold") else tier.strip().title()
            if key not in merged:
                raise ValueError(f"Unknown access tier: {tier}")
            merged[key] = storage_class
        return merged

    def get_credentials(self) -> Optional[dict[str, str]]:
        """Get explicit credentials, or None to use the default boto3 chain.

        Raises:
            ValueError: If credentials are partially specified
        """
        has_key = self.aws_access_key_id is not None
        has_secret = self.aws_secret_access_key is not None
        if has_key and has_secret:
            return {
                "aws_access_key_id": self.aws_access_key_id or "",
                "aws_secret_access_key": self.aws_secret_access_key or "",
            }
        if has_key or has_secret:
            raise ValueError(
                f"Storage account '{self.name}': access_key_id and secret_access_key "
                "must be provided together"
            )
        return None


class ExportSettings(BaseModel):
    """Columnar export tuning."""

    model_config = {"frozen": True}

    upload_parallelism: int = Field(default=16, description="Concurrent part uploads", gt=0)
    row_group_target_bytes: int = Field(
        default=8 * 1024 * 1024,
        description="Estimated bytes that trigger a row-group flush",
        gt=0,
    )
    spill_threshold_bytes: int = Field(
        default=16 * 1024 * 1024,
        description="In-memory bytes before a part spills to a temp file",
        gt=0,
    )
    max_rows_per_part: int = Field(default=50_000, description="Rows per part file", gt=0)
    upload_max_attempts: int = Field(default=3, description="Upload attempts per part", ge=1)
    upload_retry_base_delay: float = Field(
        default=2.0,
        description="Seconds before the first upload retry; doubles each attempt",
        ge=0,
    )
    compression: str = Field(default="snappy", description="Parquet compression codec")
    spill_directory: Optional[str] = Field(
        default=None,
        description="Directory for spill files (system temp dir when unset)",
    )


class DeletionSettings(BaseModel):
    """Source row deletion tuning."""

    model_config = {"frozen": True}

    batch_size: int = Field(default=10_000, description="Rows deleted per transaction", gt=0)


class LifecycleSettings(BaseModel):
    """Lifecycle enforcement tuning."""

    model_config = {"frozen": True}

    degree_of_parallelism: int = Field(default=8, description="Concurrent file actions", gt=0)
    min_age_between_tier_checks_hours: float = Field(
        default=24.0,
        description="Files checked more recently than this are not re-evaluated",
        ge=0,
    )
    dry_run_advances_last_checked: bool = Field(
        default=False,
        description="Stamp last-checked time on dry runs",
    )
    default_policy_id: Optional[int] = Field(
        default=None,
        description="Policy inherited by tables without their own policy",
    )
    account_parallelism: int = Field(default=1, description="Concurrent account scopes", gt=0)
    table_parallelism: int = Field(default=4, description="Concurrent table scopes", gt=0)


class RetentionSettings(BaseModel):
    """Which as-of dates stay in the source table."""

    model_config = {"frozen": True}

    min_age_days: int = Field(
        default=1,
        description="Dates younger than this many days are never archived",
        ge=0,
    )


class ColdVaultConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(description="Configuration version")
    metadata_database: DatabaseConfig = Field(description="Database holding archival metadata")
    source_databases: list[DatabaseConfig] = Field(
        default_factory=list,
        description="Databases that own archived source tables",
    )
    storage_accounts: list[StorageAccountConfig] = Field(
        description="Storage accounts archived parts are written to",
        min_length=1,
    )
    export: ExportSettings = Field(default_factory=ExportSettings)
    deletion: DeletionSettings = Field(default_factory=DeletionSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v != "1.0":
            raise ValueError(f"Unsupported configuration version: {v}")
        return v

    @model_validator(mode="after")
    def validate_unique_names(self) -> "ColdVaultConfig":
        """Reject duplicate database or account names."""
        for label, names in (
            ("source database", [db.name for db in self.source_databases]),
            ("storage account", [account.name for account in self.storage_accounts]),
        ):
            duplicates = sorted({name for name in names if names.count(name) > 1})
            if duplicates:
                raise ValueError(f"Duplicate {label} names: {', '.join(duplicates)}")
        return self

    def get_source_database(self, name: str) -> Optional[DatabaseConfig]:
        for db in self.source_databases:
            if db.name == name:
                return db
        if self.metadata_database.name == name:
            return self.metadata_database
        return None


def load_config(config_path: Path) -> ColdVaultConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ValueError: If configuration is missing or invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        if not raw_config:
            raise ValueError("Configuration file is empty")

        config_data = _substitute_env_in_dict(raw_config)
        return ColdVaultConfig.model_validate(config_data)

    except FileNotFoundError:
        raise ValueError(f"Configuration file not found: {config_path}") from None
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration file: {e}") from e
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
