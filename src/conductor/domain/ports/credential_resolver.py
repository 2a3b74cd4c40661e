"""Abstract credential lookup for LLM providers."""

from abc import ABC, abstractmethod


class CredentialResolver(ABC):
    """Resolves a usable API key and preferred model for a (user, provider) pair.

    Implementations own decryption and storage. Callers treat ``None`` as
    "this user has not configured the provider".
    """

    @abstractmethod
    async def get_key(self, user_id: str | None, provider: str) -> str | None:
        """Return the decrypted API key, or None when absent.

        Args:
            user_id: Owner of the credential (None for process-wide keys)
            provider: Provider name (openai, anthropic, groq, xai)

        Returns:
            API key string or None
        """
        pass

    @abstractmethod
    async def get_preferred_model(self, user_id: str | None, provider: str) -> str:
        """Return the user's preferred model, or the provider default.

        Args:
            user_id: Owner of the credential
            provider: Provider name

        Returns:
            Model identifier
        """
        pass
