"""Durable execution queue for agent runs.

At most one pending or running item exists per agent. A background loop
polls for due items, runs them one at a time through the unit of work, and
applies exponential backoff with a bounded retry count on failure.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import aiosqlite
from pydantic import ValidationError

from conductor.domain.models import (
    CancelResult,
    EnqueueResult,
    EventType,
    ExecutionResult,
    NextAction,
    QueueItem,
    QueuePriority,
    QueueStats,
    QueueStatus,
    utcnow,
)
from conductor.domain.ports.event_sink import EventSink
from conductor.infrastructure.config import QueueConfig
from conductor.infrastructure.database import Database
from conductor.infrastructure.exceptions import QueueError
from conductor.infrastructure.logger import get_logger

logger = get_logger(__name__)

UnitOfWork = Callable[[QueueItem], Awaitable[ExecutionResult]]


class ExecutionQueue:
    """Priority queue of agent runs with retry and backoff."""

    def __init__(
        self,
        database: Database,
        runner: UnitOfWork,
        events: EventSink,
        config: QueueConfig | None = None,
        auto_start: bool = True,
    ):
        """Initialize execution queue.

        Args:
            database: Queue store
            runner: Unit of work executed for each dequeued item
            events: Sink for terminal-failure events
            config: Polling, batching and retry settings
            auto_start: Start the polling loop on the first successful enqueue
        """
        self.db = database
        self.runner = runner
        self.events = events
        self.config = config or QueueConfig()
        self.auto_start = auto_start
        self._loop_task: asyncio.Task[None] | None = None
        self._wake_event = asyncio.Event()
        self._processing_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def enqueue(
        self,
        agent_id: UUID,
        user_id: str,
        priority: QueuePriority | str = QueuePriority.MEDIUM,
        max_retries: int | None = None,
        metadata: dict[str, Any] | None = None,
        scheduled_at: datetime | None = None,
    ) -> EnqueueResult:
        """Schedule a run for an agent.

        Args:
            agent_id: Agent to run
            user_id: Caller; must own the agent
            priority: low, medium, high or urgent
            max_retries: Retry budget (defaults to the configured value)
            metadata: Free-form context stored with the item
            scheduled_at: Earliest start time (defaults to now)

        Returns:
            EnqueueResult with the new queue id, or the rejection reason
        """
        agent = await self.db.get_agent(agent_id, user_id=user_id)
        if agent is None:
            return EnqueueResult(success=False, error="Agent not found or access denied")

        active = await self.db.get_active_queue_item(agent_id)
        if active is not None:
            return EnqueueResult(
                success=False, error=f"Agent execution is already {active.status.value}"
            )

        try:
            item = self._new_item(
                agent_id, user_id, priority, max_retries, metadata, scheduled_at
            )
        except QueueError as e:
            return EnqueueResult(success=False, error=str(e))

        try:
            await self.db.insert_queue_item(item)
        except aiosqlite.IntegrityError:
            # Lost a race with a concurrent enqueue for the same agent
            active = await self.db.get_active_queue_item(agent_id)
            status = active.status.value if active else QueueStatus.PENDING.value
            return EnqueueResult(success=False, error=f"Agent execution is already {status}")

        logger.info(
            "queue_item_enqueued",
            queue_id=str(item.id),
            agent_id=str(agent_id),
            priority=item.priority.value,
        )

        if self.auto_start:
            self.start()
            self.poke()

        return EnqueueResult(success=True, queue_id=item.id)

    def _new_item(
        self,
        agent_id: UUID,
        user_id: str,
        priority: QueuePriority | str,
        max_retries: int | None,
        metadata: dict[str, Any] | None,
        scheduled_at: datetime | None,
    ) -> QueueItem:
        if max_retries is None:
            max_retries = self.config.default_max_retries
        if max_retries < 0:
            raise QueueError(f"max_retries must be zero or greater, got {max_retries}")
        try:
            return QueueItem(
                agent_id=agent_id,
                user_id=user_id,
                priority=QueuePriority.coerce(priority),
                max_retries=max_retries,
                metadata=metadata or {},
                scheduled_at=scheduled_at or utcnow(),
            )
        except ValidationError as e:
            raise QueueError(f"Invalid queue item: {e.errors()[0]['msg']}") from e

    async def cancel(self, queue_id: UUID, user_id: str | None = None) -> CancelResult:
        """Cancel a pending item. Running and finished items are left untouched."""
        item = await self.db.get_queue_item(queue_id)
        if item is None or (user_id is not None and item.user_id != user_id):
            return CancelResult(success=False, error="Queue item not found")

        if not await self.db.cancel_queue_item(queue_id):
            current = await self.db.get_queue_item(queue_id)
            status = current.status.value if current else item.status.value
            return CancelResult(
                success=False, error=f"Cannot cancel execution in status: {status}"
            )

        logger.info("queue_item_cancelled", queue_id=str(queue_id), agent_id=str(item.agent_id))
        return CancelResult(success=True)

    async def cancel_agent(self, agent_id: UUID) -> bool:
        """Cancel the agent's pending item, if any."""
        active = await self.db.get_active_queue_item(agent_id)
        if active is None or active.status != QueueStatus.PENDING:
            return False
        return await self.db.cancel_queue_item(active.id)

    async def get_agent_queue_status(self, agent_id: UUID) -> QueueItem | None:
        """Newest pending or running item for an agent."""
        return await self.db.get_active_queue_item(agent_id)

    async def get_stats(self, window_hours: int | None = None) -> QueueStats:
        """Counts by status for items created within the window."""
        hours = self.config.stats_window_hours if window_hours is None else window_hours
        counts = await self.db.count_queue_items_by_status(utcnow() - timedelta(hours=hours))
        return QueueStats(
            pending=counts.get(QueueStatus.PENDING, 0),
            running=counts.get(QueueStatus.RUNNING, 0),
            completed=counts.get(QueueStatus.COMPLETED, 0),
            failed=counts.get(QueueStatus.FAILED, 0),
            cancelled=counts.get(QueueStatus.CANCELLED, 0),
            total=sum(counts.values()),
            window_hours=hours,
        )

    def start(self) -> None:
        """Start the background polling loop if it is not already running."""
        if not self.is_running:
            self._loop_task = asyncio.create_task(self._poll_loop())
            logger.info("queue_processor_started", interval=self.config.poll_interval_seconds)

    def poke(self) -> None:
        """Trigger an immediate poll."""
        self._wake_event.set()

    async def stop(self) -> None:
        """Stop the polling loop and wait for it to exit."""
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            logger.info("queue_processor_stopped")
        self._loop_task = None

    async def _poll_loop(self) -> None:
        try:
            while True:
                self._wake_event.clear()
                try:
                    await self.recover_stale_running()
                    await self.process_queue()
                except Exception as e:
                    logger.error("queue_poll_error", error=str(e))

                try:
                    await asyncio.wait_for(
                        self._wake_event.wait(), timeout=self.config.poll_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("queue_poll_loop_cancelled")
            raise

    async def process_queue(self) -> int:
        """Run one poll: process up to ``batch_size`` due items sequentially.

        Returns:
            Number of items processed
        """
        async with self._processing_lock:
            items = await self.db.get_due_queue_items(utcnow(), self.config.batch_size)
            processed = 0
            for item in items:
                if await self._process_item(item):
                    processed += 1
            if processed:
                logger.info("queue_batch_processed", processed=processed)
            return processed

    async def _process_item(self, item: QueueItem) -> bool:
        if not await self.db.mark_queue_item_running(item.id):
            # Cancelled between selection and start
            return False

        logger.info("queue_item_started", queue_id=str(item.id), agent_id=str(item.agent_id))

        try:
            result = await self.runner(item)
        except Exception as e:
            logger.error(
                "queue_item_runner_error",
                queue_id=str(item.id),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._handle_failure(item, str(e) or type(e).__name__)
            return True

        if not result.success:
            await self._handle_failure(item, result.error or "Execution failed")
            return True

        await self.db.complete_queue_item(item.id)
        logger.info(
            "queue_item_completed",
            queue_id=str(item.id),
            agent_id=str(item.agent_id),
            next_action=result.next_action.value,
        )

        if result.next_action == NextAction.CONTINUE:
            await self._schedule_continuation(item)
        return True

    async def _schedule_continuation(self, item: QueueItem) -> None:
        """Queue the agent's next run, up to ``max_continuations`` in a row."""
        iteration = int(item.metadata.get("iteration", 1))
        if iteration >= self.config.max_continuations:
            await self.events.log_event(
                item.agent_id,
                item.user_id,
                EventType.WARNING,
                "Agent execution stopped - maximum iterations reached",
                {"max_iterations": self.config.max_continuations},
            )
            return

        result = await self.enqueue(
            item.agent_id,
            item.user_id,
            priority=item.priority,
            max_retries=item.max_retries,
            metadata={**item.metadata, "iteration": iteration + 1},
        )
        if not result.success:
            logger.info("continuation_not_enqueued", agent_id=str(item.agent_id), reason=result.error)

    def _calculate_backoff(self, retry_count: int) -> timedelta:
        """Delay before retry number ``retry_count`` (1-based): base * 2^n minutes."""
        return timedelta(minutes=self.config.retry_base_minutes * (2**retry_count))

    async def _handle_failure(self, item: QueueItem, error: str) -> None:
        retry_count = item.retry_count + 1

        if retry_count <= item.max_retries:
            scheduled_at = utcnow() + self._calculate_backoff(retry_count)
            await self.db.reschedule_queue_item(item.id, retry_count, scheduled_at, error)
            logger.warning(
                "queue_item_retry_scheduled",
                queue_id=str(item.id),
                retry_count=retry_count,
                max_retries=item.max_retries,
                scheduled_at=scheduled_at.isoformat(),
                error=error,
            )
            return

        await self.db.fail_queue_item(item.id, retry_count, error)
        logger.error(
            "queue_item_failed",
            queue_id=str(item.id),
            agent_id=str(item.agent_id),
            retry_count=retry_count,
            error=error,
        )
        await self.events.log_event(
            item.agent_id,
            item.user_id,
            EventType.ERROR,
            f"Agent execution failed after {item.max_retries} retries: {error}",
            {"queue_id": str(item.id), "retry_count": retry_count},
        )

    async def recover_stale_running(self, max_age_seconds: int | None = None) -> int:
        """Put long-running items back through the retry policy.

        Returns:
            Number of items recovered
        """
        max_age = max_age_seconds or self.config.stale_after_seconds
        stale = await self.db.get_stale_running_queue_items(utcnow() - timedelta(seconds=max_age))
        for item in stale:
            logger.warning("queue_item_stale", queue_id=str(item.id), started_at=str(item.started_at))
            await self._handle_failure(item, "Execution timed out (no completion recorded)")
        return len(stale)
