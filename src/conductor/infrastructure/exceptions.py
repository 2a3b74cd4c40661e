"""Exception hierarchy for Conductor."""


class ConductorError(Exception):
    """Base exception for all Conductor errors."""

    pass


class ConfigurationError(ConductorError):
    """Something the user must configure before work can proceed.

    Attributes:
        message: Error message describing what went wrong
        remediation: Optional guidance on how to fix the issue
    """

    def __init__(self, message: str, remediation: str | None = None):
        super().__init__(message)
        self.remediation = remediation

    def __str__(self) -> str:
        """Return formatted error message with remediation if available."""
        if self.remediation:
            return f"{self.args[0]}\n\nRemediation: {self.remediation}"
        return str(self.args[0])


class NoProvidersAvailableError(ConfigurationError):
    """No provider has a usable credential (or all are marked down)."""

    def __init__(self, message: str = "No available AI providers"):
        super().__init__(
            message=message,
            remediation="Add an OpenAI, Anthropic, Groq or xAI key with: conductor config set-key",
        )


class CredentialInvalidError(ConductorError):
    """API key is empty, not a string, or malformed for its provider."""

    def __init__(self, provider: str, message: str | None = None):
        super().__init__(message or f"Invalid or missing API key for provider: {provider}")
        self.provider = provider


class ProviderRequestError(ConductorError):
    """A vendor call failed (network, timeout, non-2xx or malformed body).

    Attributes:
        provider: Provider that failed
        status_code: HTTP status when the vendor answered, else None
    """

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider} API error: {message}")
        self.provider = provider
        self.status_code = status_code


class QueueError(ConductorError):
    """Base exception for execution queue errors."""

    pass


class AgentNotFoundError(ConductorError):
    """Raised when an agent ID doesn't exist or isn't owned by the caller."""

    pass


class TaskNotFoundError(ConductorError):
    """Raised when a task ID doesn't exist or isn't owned by the caller."""

    pass


class CircularDependencyError(ConductorError):
    """Raised when an edge would close a cycle in the task graph."""

    pass
