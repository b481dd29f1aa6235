"""Configuration management for Skillgate."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from skillgate.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.skillgate/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.skillgate/skills.db").expanduser()
LOCAL_CONFIG_FILENAME = "skillgate.yaml"


class StorageConfig(BaseModel):
    """Durable package and database storage."""

    root: str = "./data/skills"
    db_path: str = str(DEFAULT_DB_PATH)


class GitHubConfig(BaseModel):
    """GitHub archive download configuration."""

    token: str = ""
    api_base_url: str = "https://api.github.com"
    timeout_seconds: int = 120


class ApprovalsConfig(BaseModel):
    """Human approval workflow configuration."""

    expires_in_seconds: float = 90.0
    wait_timeout_seconds: float = 95.0
    poll_interval_seconds: float = 1.0


class RuntimeConfig(BaseModel):
    """Skill runtime sandbox configuration."""

    default_timeout_ms: int = 30000
    default_max_output_chars: int = 20000
    python_path: str = ""
    node_path: str = "node"
    auto_install_on_missing: bool = True
    max_auto_install_rounds: int = 3
    pip_timeout_seconds: int = 240
    pip_index_url: str = ""
    pip_extra_index_urls: list[str] = Field(default_factory=list)
    pip_trusted_hosts: list[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Skillgate."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    approvals: ApprovalsConfig = Field(default_factory=ApprovalsConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SKILLGATE_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config in {config_path}: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; env vars are applied by pydantic-settings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(exclude_none=True)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_storage_root(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve package storage root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.storage.root).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
