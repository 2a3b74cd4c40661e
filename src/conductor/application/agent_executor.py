"""Agent executor: one unit of agent work per queue item."""

import time
from typing import Any
from uuid import UUID

from conductor.application.provider_selector import ProviderSelector
from conductor.domain.models import (
    Agent,
    AgentStatus,
    EventType,
    ExecutionResult,
    LLMRequest,
    NextAction,
    ProposedTask,
    QueueItem,
    QueuePriority,
    Task,
    TaskStatus,
    WorkflowDependency,
)
from conductor.domain.ports.event_sink import EventSink
from conductor.infrastructure.database import Database
from conductor.infrastructure.logger import get_logger
from conductor.services.dependency_resolver import DependencyResolver
from conductor.services.workflow_generator import extract_json_object

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are an intelligent AI agent working on behalf of the user. "
    "Be helpful, thorough, and create actionable next steps."
)

_AGENT_STATUS_BY_ACTION = {
    NextAction.COMPLETE: AgentStatus.COMPLETED,
    NextAction.PAUSE: AgentStatus.PAUSED,
    NextAction.WAIT_FOR_DEPENDENCY: AgentStatus.BLOCKED,
    NextAction.CONTINUE: AgentStatus.ACTIVE,
}

CONFIGURE_PROVIDER_TITLE = "Configure LLM Provider"


def agent_status_for(next_action: NextAction) -> AgentStatus:
    """Agent status implied by what the agent wants to do next."""
    return _AGENT_STATUS_BY_ACTION[next_action]


class AgentExecutor:
    """Executes an agent's next task through the provider selector."""

    def __init__(
        self,
        database: Database,
        selector: ProviderSelector,
        resolver: DependencyResolver,
        events: EventSink,
    ):
        """Initialize agent executor.

        Args:
            database: Task and agent store
            selector: Provider selector used for LLM calls
            resolver: Dependency resolver, used to unblock successors of finished tasks
            events: Sink for human-visible progress messages
        """
        self.db = database
        self.selector = selector
        self.resolver = resolver
        self.events = events

    async def run(self, item: QueueItem) -> ExecutionResult:
        """Run one unit of work for the agent behind ``item``.

        Returns a failed result (never raises for provider problems) so the
        queue can apply its retry policy.

        Args:
            item: Queue item being processed

        Returns:
            Execution result
        """
        start = time.perf_counter()

        agent = await self.db.get_agent(item.agent_id, user_id=item.user_id)
        if agent is None:
            return ExecutionResult(
                success=False,
                next_action=NextAction.PAUSE,
                error=f"Agent {item.agent_id} not found",
            )

        open_tasks = await self.db.list_tasks(
            agent_id=agent.id,
            statuses=[TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED],
            limit=500,
        )
        # A task left in progress by an interrupted run is picked up again
        task = next(
            (
                t
                for t in open_tasks
                if t.status in (TaskStatus.TODO, TaskStatus.IN_PROGRESS) and not t.is_dependency
            ),
            None,
        )

        if task is None:
            return await self._finish_without_work(agent, item, open_tasks)

        if not await self.selector.available_providers(item.user_id):
            return await self._block_on_configuration(agent, item, task)

        await self.events.log_event(
            agent.id,
            item.user_id,
            EventType.ACTION,
            "Starting intelligent task execution using your LLM providers",
            {"queue_id": str(item.id), "task_id": str(task.id)},
        )
        if task.status == TaskStatus.IN_PROGRESS:
            logger.warning("agent_task_resumed", agent_id=str(agent.id), task_id=str(task.id))
        await self.db.update_task_status(task.id, TaskStatus.IN_PROGRESS)

        try:
            return await self._execute_task(agent, item, task, open_tasks, start)
        except Exception as e:
            logger.error(
                "agent_task_execution_error",
                agent_id=str(agent.id),
                task_id=str(task.id),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._release_task(task.id)
            raise

    async def _release_task(self, task_id: UUID) -> None:
        """Put an interrupted task back to TODO unless it already finished."""
        current = await self.db.get_task(task_id)
        if current is not None and current.status == TaskStatus.IN_PROGRESS:
            await self.db.update_task_status(task_id, TaskStatus.TODO)

    async def _execute_task(
        self, agent: Agent, item: QueueItem, task: Task, open_tasks: list[Task], start: float
    ) -> ExecutionResult:
        await self.events.log_event(
            agent.id,
            item.user_id,
            EventType.PROGRESS,
            f"Working on: {task.title}",
            {"task_id": str(task.id), "task_title": task.title},
        )

        completed = await self.db.list_tasks(agent_id=agent.id, status=TaskStatus.DONE, limit=50)
        prompt = self.build_prompt(agent, task, completed, open_tasks)

        response = await self.selector.execute(
            LLMRequest(prompt=prompt, system_prompt=SYSTEM_PROMPT, user_id=item.user_id)
        )

        if not response.success:
            await self.db.update_task_status(task.id, TaskStatus.TODO)
            await self.events.log_event(
                agent.id,
                item.user_id,
                EventType.WARNING,
                f"AI execution failed for: {task.title}",
                {"task_id": str(task.id), "error": response.error, "error_id": response.error_id},
            )
            logger.warning(
                "agent_task_execution_failed",
                agent_id=str(agent.id),
                task_id=str(task.id),
                error=response.error,
            )
            return ExecutionResult(
                success=False,
                task_id=task.id,
                error=response.error,
                execution_time_seconds=time.perf_counter() - start,
            )

        result = self.parse_response(response.content)
        result.task_id = task.id
        result.provider = response.provider
        result.tokens_used = response.usage.total_tokens if response.usage else None

        await self._apply_result(agent, item, task, result)

        result.execution_time_seconds = time.perf_counter() - start
        logger.info(
            "agent_task_executed",
            agent_id=str(agent.id),
            task_id=str(task.id),
            next_action=result.next_action.value,
            provider=result.provider,
            new_tasks=len(result.new_tasks),
            dependencies=len(result.dependencies),
        )
        return result

    def build_prompt(
        self, agent: Agent, task: Task, completed: list[Task], open_tasks: list[Task]
    ) -> str:
        completed_lines = "\n".join(f"• {t.title}" for t in completed) or "None"
        remaining_lines = (
            "\n".join(f"• {t.title} ({t.status.value})" for t in open_tasks if t.id != task.id)
            or "None"
        )
        return f"""You are an AI agent named "{agent.name}" with the goal: "{agent.goal}"

Current Task: {task.title}
Task Description: {task.description or 'No description provided'}
Task Priority: {task.priority.value}

Context:
- Agent Type: {agent.agent_type}
- Completed Tasks: {completed_lines}
- Remaining Tasks: {remaining_lines}

Your job is to work on the current task and provide a structured response. You can either:
1. Complete the task with results
2. Create new subtasks if the task is complex
3. Create dependencies if you need human input/approval
4. Request additional information

IMPORTANT: Return ONLY valid JSON in this exact format:
{{
  "result": "Detailed description of what you accomplished or found",
  "nextAction": "continue|pause|wait_for_dependency|complete",
  "newTasks": [
    {{"title": "New task title", "description": "Detailed task description", "priority": "low|medium|high|urgent", "isDependency": false}}
  ],
  "dependencies": [
    {{"title": "Dependency title", "reason": "Why human input is needed", "priority": "low|medium|high|urgent"}}
  ]
}}

Focus on being helpful, thorough, and creating clear next steps. If you need human input for decisions, approvals, or access to external resources, create dependencies."""

    def parse_response(self, content: str) -> ExecutionResult:
        """Parse the model's JSON reply.

        Unparseable replies still count as a processed task with a
        placeholder result and ``continue``.
        """
        try:
            data = extract_json_object(content)
        except ValueError as e:
            logger.warning("agent_response_unparseable", error=str(e))
            return ExecutionResult(
                success=True,
                result="Task processed (response parsing failed)",
                next_action=NextAction.CONTINUE,
            )

        try:
            next_action = NextAction(data.get("nextAction"))
        except ValueError:
            next_action = NextAction.CONTINUE

        result = data.get("result")
        return ExecutionResult(
            success=True,
            result=result if isinstance(result, str) and result else "Task processing completed",
            next_action=next_action,
            new_tasks=self._parse_new_tasks(data.get("newTasks")),
            dependencies=self._parse_dependencies(data.get("dependencies")),
        )

    def _parse_new_tasks(self, raw: Any) -> list[ProposedTask]:
        tasks = []
        for item in raw if isinstance(raw, list) else []:
            if not isinstance(item, dict):
                continue
            title = item.get("title")
            if not isinstance(title, str) or not title.strip():
                continue
            description = item.get("description")
            blocked_reason = item.get("blockedReason")
            tasks.append(
                ProposedTask(
                    title=title.strip()[:200],
                    description=description if isinstance(description, str) else "",
                    priority=QueuePriority.coerce(item.get("priority")),
                    is_dependency=bool(item.get("isDependency")),
                    blocked_reason=blocked_reason if isinstance(blocked_reason, str) else None,
                )
            )
        return tasks

    def _parse_dependencies(self, raw: Any) -> list[WorkflowDependency]:
        dependencies = []
        for item in raw if isinstance(raw, list) else []:
            if not isinstance(item, dict):
                continue
            title = item.get("title")
            if not isinstance(title, str) or not title.strip():
                continue
            reason = item.get("reason")
            dependencies.append(
                WorkflowDependency(
                    title=title.strip()[:200],
                    reason=reason if isinstance(reason, str) and reason else "Requires human input",
                    blocked_by="user_input",
                    priority=QueuePriority.coerce(item.get("priority"), QueuePriority.HIGH),
                )
            )
        return dependencies

    async def _apply_result(
        self, agent: Agent, item: QueueItem, task: Task, result: ExecutionResult
    ) -> None:
        await self.db.update_task_status(task.id, TaskStatus.DONE, output_summary=result.result)
        await self.resolver.recompute_dependents(task.id)

        for proposed in result.new_tasks:
            await self.db.insert_task(
                Task(
                    agent_id=agent.id,
                    title=proposed.title,
                    description=proposed.description,
                    priority=proposed.priority,
                    status=TaskStatus.BLOCKED if proposed.is_dependency else TaskStatus.TODO,
                    is_dependency=proposed.is_dependency,
                    blocked_reason=(proposed.blocked_reason or "Requires human input")
                    if proposed.is_dependency
                    else None,
                    auto_generated=True,
                    metadata={"generated_by_task": str(task.id)},
                )
            )
        if result.new_tasks:
            await self.events.log_event(
                agent.id,
                item.user_id,
                EventType.INFO,
                f"Generated {len(result.new_tasks)} new tasks",
                {"new_tasks_count": len(result.new_tasks), "parent_task": str(task.id)},
            )

        for dep in result.dependencies:
            await self.db.insert_task(
                Task(
                    agent_id=agent.id,
                    title=dep.title,
                    description=dep.reason,
                    priority=dep.priority,
                    status=TaskStatus.BLOCKED,
                    is_dependency=True,
                    blocked_reason=dep.reason,
                    auto_generated=True,
                    metadata={"dependency_type": "human_input", "generated_by_task": str(task.id)},
                )
            )
        if result.dependencies:
            await self.events.log_event(
                agent.id,
                item.user_id,
                EventType.DEPENDENCY,
                f"Created {len(result.dependencies)} dependencies requiring attention",
                {
                    "dependencies_count": len(result.dependencies),
                    "dependency_titles": [d.title for d in result.dependencies],
                },
            )

        await self.db.update_agent_status(agent.id, agent_status_for(result.next_action))
        await self.events.log_event(
            agent.id,
            item.user_id,
            EventType.SUCCESS,
            f"Completed: {task.title}",
            {
                "task_id": str(task.id),
                "result_summary": (result.result or "")[:100],
                "tokens_used": result.tokens_used,
                "provider": result.provider,
            },
        )

    async def _finish_without_work(
        self, agent: Agent, item: QueueItem, open_tasks: list[Task]
    ) -> ExecutionResult:
        """No runnable task: the agent is either done or waiting on people.

        Any task still open, whatever its status, keeps the agent from completing.
        """
        if open_tasks:
            await self.db.update_agent_status(agent.id, AgentStatus.BLOCKED)
            await self.events.log_event(
                agent.id,
                item.user_id,
                EventType.INFO,
                "Agent paused - waiting for dependency resolution",
                {"open_tasks": len(open_tasks)},
            )
            return ExecutionResult(
                success=True,
                result=f"Waiting on {len(open_tasks)} open task(s)",
                next_action=NextAction.WAIT_FOR_DEPENDENCY,
            )

        await self.db.update_agent_status(agent.id, AgentStatus.COMPLETED)
        await self.events.log_event(
            agent.id, item.user_id, EventType.SUCCESS, "All tasks completed successfully"
        )
        return ExecutionResult(
            success=True,
            result="All tasks completed successfully",
            next_action=NextAction.COMPLETE,
        )

    async def _block_on_configuration(
        self, agent: Agent, item: QueueItem, task: Task
    ) -> ExecutionResult:
        """No usable provider key: ask the user for one instead of retrying."""
        reason = (
            "No API keys found. Please add OpenAI, Anthropic, Groq, or xAI API keys "
            "to enable AI execution."
        )
        existing = await self.db.list_tasks(
            agent_id=agent.id, status=TaskStatus.BLOCKED, is_dependency=True, limit=500
        )
        if not any(t.title == CONFIGURE_PROVIDER_TITLE for t in existing):
            await self.db.insert_task(
                Task(
                    agent_id=agent.id,
                    title=CONFIGURE_PROVIDER_TITLE,
                    description=reason,
                    priority=QueuePriority.HIGH,
                    status=TaskStatus.BLOCKED,
                    is_dependency=True,
                    blocked_reason=reason,
                    auto_generated=True,
                    metadata={"dependency_type": "configuration"},
                )
            )

        await self.db.update_agent_status(agent.id, AgentStatus.BLOCKED)
        await self.events.log_event(
            agent.id,
            item.user_id,
            EventType.WARNING,
            "No LLM providers configured. Please add API keys.",
            {"task_id": str(task.id), "available_providers": 0},
        )
        return ExecutionResult(
            success=True,
            task_id=task.id,
            result="Waiting for an LLM provider to be configured",
            next_action=NextAction.WAIT_FOR_DEPENDENCY,
            dependencies=[
                WorkflowDependency(
                    title=CONFIGURE_PROVIDER_TITLE,
                    reason=reason,
                    blocked_by="user_input",
                    priority=QueuePriority.HIGH,
                )
            ],
        )
