"""Application services for Conductor."""

from conductor.application.agent_executor import AgentExecutor
from conductor.application.execution_queue import ExecutionQueue
from conductor.application.provider_clients import (
    AnthropicProviderClient,
    OpenAICompatibleClient,
    ProviderClient,
    build_default_clients,
)
from conductor.application.provider_selector import ProviderSelector

__all__ = [
    "AgentExecutor",
    "AnthropicProviderClient",
    "ExecutionQueue",
    "OpenAICompatibleClient",
    "ProviderClient",
    "ProviderSelector",
    "build_default_clients",
]
