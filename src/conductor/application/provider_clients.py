"""Vendor adapters that turn an LLMRequest into one HTTP call.

Each adapter builds the vendor body and headers and normalizes the vendor
envelope into an ``LLMResponse``. Adapters never retry; the ProviderSelector
owns retries and fail-over.
"""

from abc import ABC, abstractmethod
from typing import Any

import anthropic
import httpx
from anthropic import AsyncAnthropic

from conductor.domain.models import LLMRequest, LLMResponse, TokenUsage
from conductor.infrastructure.exceptions import CredentialInvalidError, ProviderRequestError
from conductor.infrastructure.logger import get_logger

logger = get_logger(__name__)

OPENAI_COMPATIBLE_ENDPOINTS = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "groq": "https://api.groq.com/openai/v1/chat/completions",
    "xai": "https://api.x.ai/v1/chat/completions",
}


def _require_key(provider: str, api_key: Any) -> str:
    if not isinstance(api_key, str) or not api_key.strip():
        raise CredentialInvalidError(provider)
    return api_key.strip()


class ProviderClient(ABC):
    """One LLM vendor behind a common interface."""

    name: str

    @abstractmethod
    async def complete(self, api_key: str, model: str, request: LLMRequest) -> LLMResponse:
        """Run one completion.

        Args:
            api_key: Decrypted vendor credential
            model: Vendor model identifier
            request: Canonical request

        Returns:
            Successful response tagged with this provider and model

        Raises:
            CredentialInvalidError: If the key is empty or not a string
            ProviderRequestError: On network, timeout, HTTP or parse failure
        """
        pass


class OpenAICompatibleClient(ProviderClient):
    """Chat-completions style vendors (OpenAI, Groq, xAI)."""

    def __init__(self, name: str, endpoint: str):
        self.name = name
        self.endpoint = endpoint

    def build_payload(self, model: str, request: LLMRequest) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

    def parse_response(self, model: str, data: Any) -> LLMResponse:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderRequestError(self.name, "Malformed response body") from e
        if not isinstance(content, str):
            raise ProviderRequestError(self.name, "Response content is not text")

        usage = None
        raw_usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(raw_usage, dict):
            prompt_tokens = raw_usage.get("prompt_tokens") or 0
            completion_tokens = raw_usage.get("completion_tokens") or 0
            usage = TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=raw_usage.get("total_tokens") or prompt_tokens + completion_tokens,
            )

        return LLMResponse(
            content=content,
            usage=usage,
            provider=self.name,
            model=data.get("model") or model,
        )

    async def complete(self, api_key: str, model: str, request: LLMRequest) -> LLMResponse:
        key = _require_key(self.name, api_key)
        headers = {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=request.timeout) as client:
                response = await client.post(
                    self.endpoint,
                    headers=headers,
                    json=self.build_payload(model, request),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("provider_http_error", provider=self.name, status=status)
            raise ProviderRequestError(
                self.name, f"{status} {e.response.reason_phrase}", status_code=status
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderRequestError(self.name, "Request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderRequestError(self.name, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise ProviderRequestError(self.name, "Response body is not JSON") from e

        return self.parse_response(model, data)


class AnthropicProviderClient(ProviderClient):
    """Anthropic messages API through the official SDK."""

    name = "anthropic"

    def build_kwargs(self, model: str, request: LLMRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        return kwargs

    async def complete(self, api_key: str, model: str, request: LLMRequest) -> LLMResponse:
        key = _require_key(self.name, api_key)
        client = AsyncAnthropic(api_key=key, max_retries=0, timeout=request.timeout)

        try:
            response = await client.messages.create(**self.build_kwargs(model, request))
        except anthropic.APIStatusError as e:
            logger.warning("provider_http_error", provider=self.name, status=e.status_code)
            raise ProviderRequestError(self.name, e.message, status_code=e.status_code) from e
        except anthropic.APITimeoutError as e:
            raise ProviderRequestError(self.name, "Request timed out") from e
        except anthropic.APIError as e:
            raise ProviderRequestError(self.name, e.message) from e
        finally:
            await client.close()

        text_blocks = [block.text for block in response.content if hasattr(block, "text")]
        if not text_blocks:
            raise ProviderRequestError(self.name, "Response contained no text content")

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
            )

        return LLMResponse(
            content=text_blocks[0],
            usage=usage,
            provider=self.name,
            model=response.model or model,
        )


def build_default_clients() -> dict[str, ProviderClient]:
    """One adapter per supported provider."""
    clients: dict[str, ProviderClient] = {
        name: OpenAICompatibleClient(name, endpoint)
        for name, endpoint in OPENAI_COMPATIBLE_ENDPOINTS.items()
    }
    clients["anthropic"] = AnthropicProviderClient()
    return clients
