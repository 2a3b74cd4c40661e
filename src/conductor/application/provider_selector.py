"""Provider selection with fail-over, retry and health tracking."""

import asyncio
import time
from datetime import timedelta
from uuid import uuid4

from conductor.application.provider_clients import ProviderClient, build_default_clients
from conductor.domain.models import (
    LLMRequest,
    LLMResponse,
    ProviderStatus,
    ProviderTestResult,
    utcnow,
)
from conductor.domain.ports.credential_resolver import CredentialResolver
from conductor.infrastructure.config import ProviderConfig
from conductor.infrastructure.credentials import default_model, validate_api_key
from conductor.infrastructure.exceptions import NoProvidersAvailableError
from conductor.infrastructure.logger import get_logger

logger = get_logger(__name__)


class ProviderSelector:
    """Executes LLM requests against the first healthy, configured provider.

    Each attempt re-selects a provider, so a provider demoted by a failure is
    skipped on the next attempt. Provider health is process-local and advisory:
    a provider marked unavailable becomes eligible again after the configured
    cooldown.
    """

    def __init__(
        self,
        credentials: CredentialResolver,
        clients: dict[str, ProviderClient] | None = None,
        config: ProviderConfig | None = None,
    ):
        """Initialize the selector.

        Args:
            credentials: Resolves per-user keys and preferred models
            clients: Provider adapters by name (defaults to all supported vendors)
            config: Preference order, thresholds and timeouts
        """
        self.credentials = credentials
        self.clients = clients if clients is not None else build_default_clients()
        self.config = config or ProviderConfig()
        self._status: dict[str, ProviderStatus] = {
            name: ProviderStatus() for name in self.config.preference
        }
        self._status_lock = asyncio.Lock()

    @property
    def preference(self) -> list[str]:
        return [name for name in self.config.preference if name in self.clients]

    def _is_eligible(self, provider: str) -> bool:
        status = self._status.get(provider)
        if status is None or status.available:
            return True
        cooldown = timedelta(seconds=self.config.cooldown_seconds)
        return utcnow() - status.last_check >= cooldown

    async def _resolve_key(self, user_id: str | None, provider: str) -> str | None:
        try:
            raw_key = await self.credentials.get_key(user_id, provider)
        except Exception as e:
            logger.warning("credential_lookup_failed", provider=provider, error=str(e))
            return None
        return validate_api_key(raw_key, provider)

    async def _resolve_model(self, user_id: str | None, provider: str) -> str:
        try:
            return await self.credentials.get_preferred_model(user_id, provider)
        except Exception as e:
            logger.warning("preferred_model_lookup_failed", provider=provider, error=str(e))
            return default_model(provider)

    async def select_provider(self, user_id: str | None) -> tuple[str, str]:
        """Pick the first eligible provider with a valid credential.

        Returns:
            (provider name, validated api key)

        Raises:
            NoProvidersAvailableError: If no provider qualifies
        """
        for provider in self.preference:
            if not self._is_eligible(provider):
                logger.debug("provider_skipped_unavailable", provider=provider)
                continue
            key = await self._resolve_key(user_id, provider)
            if key:
                return provider, key
        raise NoProvidersAvailableError()

    async def _record_success(self, provider: str) -> None:
        async with self._status_lock:
            self._status[provider] = ProviderStatus(
                available=True, last_check=utcnow(), error_count=0
            )

    async def _record_failure(self, provider: str) -> ProviderStatus:
        async with self._status_lock:
            previous = self._status.get(provider, ProviderStatus())
            error_count = previous.error_count + 1
            status = ProviderStatus(
                available=error_count < self.config.failure_threshold,
                last_check=utcnow(),
                error_count=error_count,
            )
            self._status[provider] = status
            if previous.available and not status.available:
                logger.warning(
                    "provider_marked_unavailable", provider=provider, error_count=error_count
                )
            return status

    async def execute(self, request: LLMRequest) -> LLMResponse:
        """Execute a request with provider fail-over and exponential backoff.

        Never raises: configuration problems and exhausted retries are
        reported through ``LLMResponse.success``/``error``.

        Args:
            request: Canonical completion request

        Returns:
            Provider response, or a failure response with an ``error_id``
        """
        last_error: Exception | None = None
        attempts = request.retries

        for attempt in range(1, attempts + 1):
            try:
                provider, api_key = await self.select_provider(request.user_id)
            except NoProvidersAvailableError as e:
                logger.warning("no_providers_available", user_id=request.user_id)
                return LLMResponse(success=False, error=e.args[0])

            model = request.model or await self._resolve_model(request.user_id, provider)
            logger.info("llm_request_started", provider=provider, model=model, attempt=attempt)

            try:
                response = await asyncio.wait_for(
                    self.clients[provider].complete(api_key, model, request),
                    timeout=request.timeout,
                )
            except Exception as e:
                last_error = e
                status = await self._record_failure(provider)
                logger.warning(
                    "llm_request_attempt_failed",
                    provider=provider,
                    attempt=attempt,
                    error=str(e) or type(e).__name__,
                    error_count=status.error_count,
                )
                if attempt < attempts:
                    await asyncio.sleep(2**attempt)
                continue

            await self._record_success(provider)
            response.provider = provider
            logger.info(
                "llm_request_completed",
                provider=provider,
                model=response.model,
                tokens=response.usage.total_tokens if response.usage else None,
            )
            return response

        error_id = str(uuid4())
        logger.error(
            "llm_request_failed",
            error_id=error_id,
            attempts=attempts,
            error=str(last_error),
            error_type=type(last_error).__name__,
        )
        return LLMResponse(
            success=False,
            error=f"AI request failed after {attempts} attempts: {last_error}",
            error_id=error_id,
        )

    async def test_provider(self, provider: str, user_id: str | None = None) -> ProviderTestResult:
        """Send a tiny prompt to one provider. Health status is left untouched."""
        client = self.clients.get(provider)
        if client is None:
            return ProviderTestResult(provider=provider, success=False, error="Unknown provider")

        key = await self._resolve_key(user_id, provider)
        if not key:
            return ProviderTestResult(
                provider=provider, success=False, error="No valid API key configured"
            )

        model = await self._resolve_model(user_id, provider)
        request = LLMRequest(
            prompt="Say 'OK' if you can read this.",
            max_tokens=10,
            temperature=0.0,
            user_id=user_id,
            timeout=self.config.request_timeout_seconds,
            retries=1,
        )

        start = time.perf_counter()
        try:
            await asyncio.wait_for(client.complete(key, model, request), timeout=request.timeout)
        except Exception as e:
            return ProviderTestResult(
                provider=provider,
                success=False,
                error=str(e) or type(e).__name__,
                latency_ms=(time.perf_counter() - start) * 1000,
                model=model,
            )

        return ProviderTestResult(
            provider=provider,
            success=True,
            latency_ms=(time.perf_counter() - start) * 1000,
            model=model,
        )

    def get_provider_status(self) -> dict[str, ProviderStatus]:
        """Snapshot of provider health."""
        return {name: status.model_copy() for name, status in self._status.items()}

    async def available_providers(self, user_id: str | None = None) -> list[str]:
        """Providers, in preference order, for which the user has a valid key."""
        providers = []
        for provider in self.preference:
            if await self._resolve_key(user_id, provider):
                providers.append(provider)
        return providers
