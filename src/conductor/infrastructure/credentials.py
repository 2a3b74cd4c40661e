"""Credential resolution and API key format validation."""

import re
from typing import TYPE_CHECKING

from conductor.domain.ports.credential_resolver import CredentialResolver
from conductor.infrastructure.logger import get_logger

if TYPE_CHECKING:
    from conductor.infrastructure.config import ConfigManager

logger = get_logger(__name__)

# Preference order used when nothing else is configured
SUPPORTED_PROVIDERS = ("openai", "anthropic", "groq", "xai")

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-haiku-20240307",
    "groq": "llama-3.1-8b-instant",
    "xai": "grok-beta",
}

PROVIDER_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "groq": "GROQ_API_KEY",
    "xai": "XAI_API_KEY",
}

PROVIDER_KEY_PREFIXES = {
    "openai": "sk-",
    "anthropic": "sk-ant-",
    "groq": "gsk_",
    "xai": "xai-",
}

KEYRING_SERVICE = "conductor"

MIN_KEY_LENGTH = 10

# Characters outside this set would corrupt an HTTP header
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9\-_.]+$")


def keyring_username(provider: str, user_id: str | None) -> str:
    """Keychain entry name for a (user, provider) credential."""
    return f"{user_id or 'default'}:{provider}_api_key"


def default_model(provider: str) -> str:
    """Hard-coded fallback model for a provider."""
    return DEFAULT_MODELS.get(provider, "default")


def validate_api_key(api_key: object, provider: str) -> str | None:
    """Return the trimmed key if it is usable for ``provider``, else None.

    A key that is present but malformed (wrong prefix, too short, characters
    that would break a header) is treated exactly like a missing key.
    """
    if not api_key or not isinstance(api_key, str):
        return None

    key = api_key.strip()
    if len(key) < MIN_KEY_LENGTH:
        logger.debug("api_key_too_short", provider=provider, length=len(key))
        return None

    if not _KEY_PATTERN.match(key):
        logger.debug("api_key_invalid_characters", provider=provider)
        return None

    prefix = PROVIDER_KEY_PREFIXES.get(provider.lower())
    if prefix and not key.startswith(prefix):
        logger.debug("api_key_wrong_prefix", provider=provider, expected_prefix=prefix)
        return None

    return key


class KeyringCredentialResolver(CredentialResolver):
    """Resolves keys through ConfigManager (env var, system keychain, .env file).

    Preferred models can be pinned per provider; otherwise the provider
    default is used.
    """

    def __init__(
        self,
        config_manager: "ConfigManager",
        preferred_models: dict[str, str] | None = None,
    ):
        self.config_manager = config_manager
        self.preferred_models = preferred_models or {}

    async def get_key(self, user_id: str | None, provider: str) -> str | None:
        return self.config_manager.get_api_key(provider, user_id)

    async def get_preferred_model(self, user_id: str | None, provider: str) -> str:
        return self.preferred_models.get(provider) or default_model(provider)


class StaticCredentialResolver(CredentialResolver):
    """In-memory resolver keyed by (user_id, provider).

    Useful for embedding the orchestrator in a host application that has
    already decrypted its users' keys.
    """

    def __init__(
        self,
        keys: dict[tuple[str | None, str], str] | None = None,
        models: dict[tuple[str | None, str], str] | None = None,
    ):
        self._keys = dict(keys or {})
        self._models = dict(models or {})

    def set_key(
        self, user_id: str | None, provider: str, api_key: str, model: str | None = None
    ) -> None:
        self._keys[(user_id, provider)] = api_key
        if model:
            self._models[(user_id, provider)] = model

    async def get_key(self, user_id: str | None, provider: str) -> str | None:
        return self._keys.get((user_id, provider))

    async def get_preferred_model(self, user_id: str | None, provider: str) -> str:
        return self._models.get((user_id, provider)) or default_model(provider)
