"""Configuration management with hierarchical loading."""

import os
from pathlib import Path
from typing import Any

import keyring
import yaml
from pydantic import BaseModel, Field, field_validator

from conductor.infrastructure.credentials import (
    KEYRING_SERVICE,
    PROVIDER_ENV_VARS,
    SUPPORTED_PROVIDERS,
    keyring_username,
)
from conductor.infrastructure.logger import get_logger

logger = get_logger(__name__)


class QueueConfig(BaseModel):
    """Execution queue configuration."""

    poll_interval_seconds: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=5, ge=1)
    default_max_retries: int = Field(default=3, ge=0)
    retry_base_minutes: float = Field(default=1.0, gt=0)
    stats_window_hours: int = Field(default=24, ge=1)
    stale_after_seconds: int = Field(default=3600, ge=60)
    max_continuations: int = Field(default=10, ge=1)


class ProviderConfig(BaseModel):
    """LLM provider selection and failover configuration."""

    preference: list[str] = Field(default_factory=lambda: list(SUPPORTED_PROVIDERS))
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    cooldown_seconds: float = Field(default=300.0, ge=0)
    max_tokens: int = Field(default=2000, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    @field_validator("preference")
    @classmethod
    def validate_preference(cls, v: list[str]) -> list[str]:
        """Only known providers, no duplicates, order preserved."""
        seen: list[str] = []
        for name in v:
            name = name.strip().lower()
            if name not in SUPPORTED_PROVIDERS:
                raise ValueError(
                    f"Unknown provider '{name}', expected one of {list(SUPPORTED_PROVIDERS)}"
                )
            if name not in seen:
                seen.append(name)
        if not seen:
            raise ValueError("At least one provider must be listed")
        return seen


class WorkflowConfig(BaseModel):
    """Workflow generation configuration."""

    use_llm: bool = True
    max_tokens: int = Field(default=2000, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)


class Config(BaseModel):
    """Main configuration model."""

    version: str = "0.1.0"
    log_level: str = "INFO"
    default_user_id: str = "default"
    queue: QueueConfig = Field(default_factory=QueueConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)


class ConfigManager:
    """Manage configuration loading from multiple sources with hierarchy."""

    def __init__(self, project_root: Path | None = None) -> None:
        """Initialize config manager.

        Args:
            project_root: Root directory of the project (default: current directory)
        """
        self.project_root = project_root or Path.cwd()
        self._config: Config | None = None

    def load_config(self) -> Config:
        """Load configuration from all sources in hierarchy order.

        Configuration hierarchy (highest priority last):
        1. System defaults (embedded in Config model)
        2. Project defaults (.conductor/config.yaml)
        3. User overrides (~/.conductor/config.yaml)
        4. Project-local overrides (.conductor/local.yaml)
        5. Environment variables (CONDUCTOR_* prefix)

        Returns:
            Merged configuration
        """
        if self._config is not None:
            return self._config

        config_dict: dict[str, Any] = {}

        for path in (
            self.project_root / ".conductor" / "config.yaml",
            Path.home() / ".conductor" / "config.yaml",
            self.project_root / ".conductor" / "local.yaml",
        ):
            if path.exists():
                config_dict = self._merge_dicts(config_dict, self._load_yaml(path))

        config_dict = self._apply_env_vars(config_dict)

        self._config = Config(**config_dict)
        return self._config

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        """Load YAML configuration file."""
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _merge_dicts(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_vars(self, config_dict: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variables with CONDUCTOR_ prefix."""
        env_mappings = {
            "CONDUCTOR_LOG_LEVEL": ["log_level"],
            "CONDUCTOR_DEFAULT_USER": ["default_user_id"],
            "CONDUCTOR_POLL_INTERVAL": ["queue", "poll_interval_seconds"],
            "CONDUCTOR_BATCH_SIZE": ["queue", "batch_size"],
            "CONDUCTOR_MAX_RETRIES": ["queue", "default_max_retries"],
            "CONDUCTOR_REQUEST_TIMEOUT": ["providers", "request_timeout_seconds"],
        }

        for env_var, path in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                current = config_dict
                for key in path[:-1]:
                    if key not in current:
                        current[key] = {}
                    current = current[key]
                try:
                    current[path[-1]] = int(value)
                except ValueError:
                    current[path[-1]] = value

        # Comma-separated provider order, e.g. CONDUCTOR_PROVIDERS=anthropic,openai
        if providers := os.getenv("CONDUCTOR_PROVIDERS"):
            config_dict.setdefault("providers", {})["preference"] = [
                p for p in providers.split(",") if p.strip()
            ]

        return config_dict

    def get_api_key(self, provider: str, user_id: str | None = None) -> str | None:
        """Get a provider API key from environment, keychain, or .env file.

        Priority:
        1. Provider environment variable (e.g. OPENAI_API_KEY)
        2. System keychain (per user)
        3. .env file

        Args:
            provider: Provider name
            user_id: Credential owner (None for the default user)

        Returns:
            API key, or None if not configured anywhere
        """
        env_var = PROVIDER_ENV_VARS.get(provider)

        if env_var and (key := os.getenv(env_var)):
            return key

        try:
            key = keyring.get_password(KEYRING_SERVICE, keyring_username(provider, user_id))
            if key:
                return key
        except Exception as e:
            logger.debug("keychain_read_failed", provider=provider, error=str(e))

        env_file = self.project_root / ".env"
        if env_var and env_file.exists():
            with open(env_file) as f:
                for line in f:
                    line = line.strip()
                    if line.startswith(f"{env_var}="):
                        return line.split("=", 1)[1].strip().strip('"').strip("'")

        return None

    def set_api_key(
        self,
        provider: str,
        api_key: str,
        user_id: str | None = None,
        use_keychain: bool = True,
    ) -> None:
        """Store a provider API key in the keychain or .env file.

        Args:
            provider: Provider name
            api_key: The API key to store
            user_id: Credential owner (None for the default user)
            use_keychain: If True, store in keychain; otherwise in .env file

        Raises:
            ValueError: If the provider is unknown or keychain storage fails
        """
        if provider not in PROVIDER_ENV_VARS:
            raise ValueError(f"Unknown provider: {provider}")

        if use_keychain:
            try:
                keyring.set_password(
                    KEYRING_SERVICE, keyring_username(provider, user_id), api_key
                )
                logger.info("api_key_stored", provider=provider, storage="keychain")
                return
            except Exception as e:
                raise ValueError(f"Failed to store API key in keychain: {e}") from e

        env_file = self.project_root / ".env"
        with open(env_file, "a") as f:
            f.write(f"\n{PROVIDER_ENV_VARS[provider]}={api_key}\n")
        env_file.chmod(0o600)
        logger.info("api_key_stored", provider=provider, storage="env_file")

    def get_database_path(self) -> Path:
        """Get path to SQLite database."""
        db_dir = self.project_root / ".conductor"
        db_dir.mkdir(exist_ok=True)
        return db_dir / "conductor.db"

    def get_log_dir(self) -> Path:
        """Get path to log directory."""
        log_dir = self.project_root / ".conductor" / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir
