"""Unit tests for ProviderSelector fail-over and health tracking."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conductor.application.provider_clients import ProviderClient
from conductor.application.provider_selector import ProviderSelector
from conductor.domain.models import LLMRequest, LLMResponse, ProviderStatus, utcnow
from conductor.infrastructure.config import ProviderConfig
from conductor.infrastructure.credentials import StaticCredentialResolver
from conductor.infrastructure.exceptions import (
    NoProvidersAvailableError,
    ProviderRequestError,
)

USER_ID = "user-1"
OPENAI_KEY = "sk-test-openai-key-0123456789"
ANTHROPIC_KEY = "sk-ant-REDACTED"


def _client(name: str, content: str = "hello") -> MagicMock:
    client = MagicMock(spec=ProviderClient)
    client.name = name
    client.complete = AsyncMock(
        return_value=LLMResponse(content=content, provider=name, model=f"{name}-model")
    )
    return client


@pytest.fixture
def credentials() -> StaticCredentialResolver:
    return StaticCredentialResolver(
        {(USER_ID, "openai"): OPENAI_KEY, (USER_ID, "anthropic"): ANTHROPIC_KEY}
    )


@pytest.fixture
def clients() -> dict[str, MagicMock]:
    return {"openai": _client("openai"), "anthropic": _client("anthropic")}


@pytest.fixture
def selector(credentials, clients) -> ProviderSelector:
    return ProviderSelector(
        credentials, clients, ProviderConfig(preference=["openai", "anthropic"])
    )


@pytest.fixture(autouse=True)
def no_sleep():
    with patch(
        "conductor.application.provider_selector.asyncio.sleep", new_callable=AsyncMock
    ) as sleep:
        yield sleep


@pytest.mark.asyncio
class TestSelection:
    """Tests for provider selection."""

    async def test_selects_first_configured_provider(self, selector):
        provider, key = await selector.select_provider(USER_ID)

        assert provider == "openai"
        assert key == OPENAI_KEY

    async def test_skips_provider_without_key(self, clients):
        credentials = StaticCredentialResolver({(USER_ID, "anthropic"): ANTHROPIC_KEY})
        selector = ProviderSelector(credentials, clients, ProviderConfig())

        provider, _ = await selector.select_provider(USER_ID)

        assert provider == "anthropic"

    async def test_malformed_key_treated_as_missing(self, clients):
        credentials = StaticCredentialResolver(
            {(USER_ID, "openai"): "not-a-real-key!", (USER_ID, "anthropic"): "sk-wrongprefix123"}
        )
        selector = ProviderSelector(credentials, clients, ProviderConfig())

        with pytest.raises(NoProvidersAvailableError):
            await selector.select_provider(USER_ID)
        assert await selector.available_providers(USER_ID) == []

    async def test_keys_are_per_user(self, selector):
        with pytest.raises(NoProvidersAvailableError):
            await selector.select_provider("someone-else")

    async def test_unavailable_provider_skipped_until_cooldown(self, selector):
        selector._status["openai"] = ProviderStatus(
            available=False, last_check=utcnow(), error_count=3
        )
        provider, _ = await selector.select_provider(USER_ID)
        assert provider == "anthropic"

        selector._status["openai"] = ProviderStatus(
            available=False, last_check=utcnow() - timedelta(seconds=301), error_count=3
        )
        provider, _ = await selector.select_provider(USER_ID)
        assert provider == "openai"

    async def test_credential_lookup_error_skips_provider(self, clients):
        credentials = MagicMock()
        credentials.get_key = AsyncMock(side_effect=[RuntimeError("vault down"), ANTHROPIC_KEY])
        selector = ProviderSelector(
            credentials, clients, ProviderConfig(preference=["openai", "anthropic"])
        )

        provider, _ = await selector.select_provider(USER_ID)

        assert provider == "anthropic"


@pytest.mark.asyncio
class TestExecute:
    """Tests for execute() retries and fail-over."""

    async def test_success_returns_response(self, selector, clients):
        response = await selector.execute(LLMRequest(prompt="hi", user_id=USER_ID))

        assert response.success is True
        assert response.content == "hello"
        assert response.provider == "openai"
        clients["openai"].complete.assert_awaited_once()
        args = clients["openai"].complete.await_args.args
        assert args[0] == OPENAI_KEY
        assert args[1] == "gpt-4o-mini"

    async def test_explicit_model_overrides_preference(self, selector, clients):
        await selector.execute(LLMRequest(prompt="hi", model="gpt-4o", user_id=USER_ID))

        assert clients["openai"].complete.await_args.args[1] == "gpt-4o"

    async def test_model_lookup_error_falls_back_to_default(self, clients):
        class BrokenModels(StaticCredentialResolver):
            async def get_preferred_model(self, user_id, provider):
                raise RuntimeError("credential store unavailable")

        selector = ProviderSelector(
            BrokenModels({(USER_ID, "openai"): OPENAI_KEY}),
            clients,
            ProviderConfig(preference=["openai"]),
        )

        response = await selector.execute(LLMRequest(prompt="hi", user_id=USER_ID))

        assert response.success is True
        assert clients["openai"].complete.await_args.args[1] == "gpt-4o-mini"

    async def test_no_providers_returns_immediately(self, clients, no_sleep):
        selector = ProviderSelector(StaticCredentialResolver(), clients, ProviderConfig())

        response = await selector.execute(LLMRequest(prompt="hi", user_id=USER_ID))

        assert response.success is False
        assert response.error == "No available AI providers"
        assert response.error_id is None
        no_sleep.assert_not_awaited()
        clients["openai"].complete.assert_not_awaited()

    async def test_retry_on_same_provider_then_success(self, selector, clients, no_sleep):
        clients["openai"].complete.side_effect = [
            ProviderRequestError("openai", "503 Service Unavailable", status_code=503),
            LLMResponse(content="recovered", provider="openai", model="m"),
        ]

        response = await selector.execute(LLMRequest(prompt="hi", user_id=USER_ID))

        assert response.success is True
        assert response.content == "recovered"
        no_sleep.assert_awaited_once_with(2)
        assert selector.get_provider_status()["openai"].error_count == 0
        assert selector.get_provider_status()["openai"].available is True

    async def test_provider_demoted_after_threshold(self, selector, clients, no_sleep):
        clients["openai"].complete.side_effect = ProviderRequestError("openai", "boom")

        response = await selector.execute(
            LLMRequest(prompt="hi", user_id=USER_ID, retries=4)
        )

        assert response.success is True
        assert response.provider == "anthropic"
        assert clients["openai"].complete.await_count == 3
        clients["anthropic"].complete.assert_awaited_once()
        status = selector.get_provider_status()["openai"]
        assert status.available is False
        assert status.error_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [2, 4, 8]

    async def test_failed_provider_skipped_on_next_request(self, selector, clients):
        clients["openai"].complete.side_effect = ProviderRequestError("openai", "boom")
        await selector.execute(LLMRequest(prompt="hi", user_id=USER_ID, retries=3))
        clients["openai"].complete.reset_mock()

        response = await selector.execute(LLMRequest(prompt="again", user_id=USER_ID))

        assert response.provider == "anthropic"
        clients["openai"].complete.assert_not_awaited()

    async def test_all_attempts_fail(self, selector, clients, no_sleep):
        clients["openai"].complete.side_effect = ProviderRequestError("openai", "boom")
        clients["anthropic"].complete.side_effect = ProviderRequestError("anthropic", "bang")

        response = await selector.execute(
            LLMRequest(prompt="hi", user_id=USER_ID, retries=2)
        )

        assert response.success is False
        assert response.error.startswith("AI request failed after 2 attempts:")
        assert response.error_id
        assert no_sleep.await_count == 1

    async def test_timeout_counts_as_failure(self, selector, clients):
        import asyncio

        async def hang(*args, **kwargs):
            await asyncio.Event().wait()

        clients["openai"].complete.side_effect = hang

        response = await selector.execute(
            LLMRequest(prompt="hi", user_id=USER_ID, timeout=0.05, retries=1)
        )

        assert response.success is False
        assert selector.get_provider_status()["openai"].error_count == 1


@pytest.mark.asyncio
class TestConnectivityCheck:
    """Tests for test_provider()."""

    async def test_connectivity_check_success_leaves_health_unchanged(self, selector):
        selector._status["openai"] = ProviderStatus(available=True, error_count=2)

        result = await selector.test_provider("openai", USER_ID)

        assert result.success is True
        assert result.model == "gpt-4o-mini"
        assert result.latency_ms is not None
        assert selector.get_provider_status()["openai"].error_count == 2

    async def test_connectivity_check_failure(self, selector, clients):
        clients["anthropic"].complete.side_effect = ProviderRequestError("anthropic", "401")

        result = await selector.test_provider("anthropic", USER_ID)

        assert result.success is False
        assert "401" in result.error
        assert selector.get_provider_status()["anthropic"].error_count == 0

    async def test_connectivity_check_unknown_or_unconfigured(self, selector):
        assert (await selector.test_provider("mystery", USER_ID)).error == "Unknown provider"
        assert (
            await selector.test_provider("openai", "nobody")
        ).error == "No valid API key configured"
