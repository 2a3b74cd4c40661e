"""Event sink backed by the agent_events table."""

from typing import Any
from uuid import UUID

from conductor.domain.models import AgentEvent, EventType
from conductor.domain.ports.event_sink import EventSink
from conductor.infrastructure.database import Database
from conductor.infrastructure.logger import get_logger

logger = get_logger(__name__)


class DatabaseEventSink(EventSink):
    """Persists agent events. Write failures are logged and swallowed."""

    def __init__(self, database: Database):
        self.db = database

    async def log_event(
        self,
        agent_id: UUID,
        user_id: str | None,
        event_type: EventType,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.db.insert_event(
                AgentEvent(
                    agent_id=agent_id,
                    user_id=user_id,
                    event_type=event_type,
                    message=message,
                    metadata=metadata or {},
                )
            )
        except Exception as e:
            logger.warning(
                "event_log_failed",
                agent_id=str(agent_id),
                event_type=event_type.value,
                error=str(e),
            )
