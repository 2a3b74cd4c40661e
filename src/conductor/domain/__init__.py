"""Domain models for Conductor."""

from conductor.domain.models import (
    Agent,
    AgentEvent,
    AgentStatus,
    DependencyEdge,
    EventType,
    ExecutionResult,
    GeneratedWorkflow,
    LLMRequest,
    LLMResponse,
    ProviderStatus,
    QueueItem,
    QueuePriority,
    QueueStatus,
    Task,
    TaskStatus,
)

__all__ = [
    "Agent",
    "AgentEvent",
    "AgentStatus",
    "DependencyEdge",
    "EventType",
    "ExecutionResult",
    "GeneratedWorkflow",
    "LLMRequest",
    "LLMResponse",
    "ProviderStatus",
    "QueueItem",
    "QueuePriority",
    "QueueStatus",
    "Task",
    "TaskStatus",
]
