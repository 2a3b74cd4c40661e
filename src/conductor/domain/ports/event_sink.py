"""Abstract append-only sink for human-visible agent events."""

from abc import ABC, abstractmethod
from typing import Any
from uuid import UUID

from conductor.domain.models import EventType


class EventSink(ABC):
    """Fire-and-forget event log.

    Implementations must never raise: a failure to record an event must not
    fail the operation that produced it.
    """

    @abstractmethod
    async def log_event(
        self,
        agent_id: UUID,
        user_id: str | None,
        event_type: EventType,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an event for an agent.

        Args:
            agent_id: Agent the event belongs to
            user_id: Owner of the agent (optional)
            event_type: Event category
            message: Human-readable message
            metadata: Additional structured context
        """
        pass
