"""Initial workflow generation for newly activated agents.

Two generators produce the same ``GeneratedWorkflow`` shape:
- RuleBasedWorkflowGenerator: deterministic keyword matching on the goal
- LLMWorkflowGenerator: asks a provider for JSON, falls back to rules
"""

import json
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, Field

from conductor.domain.models import (
    AgentStatus,
    EventType,
    GeneratedWorkflow,
    LLMRequest,
    QueuePriority,
    Task,
    TaskStatus,
    WorkflowDependency,
    WorkflowTask,
    WorkingStatus,
    utcnow,
)
from conductor.infrastructure.config import WorkflowConfig
from conductor.infrastructure.exceptions import AgentNotFoundError
from conductor.infrastructure.logger import get_logger

if TYPE_CHECKING:
    from conductor.application.execution_queue import ExecutionQueue
    from conductor.application.provider_selector import ProviderSelector
    from conductor.domain.ports.event_sink import EventSink
    from conductor.infrastructure.database import Database

logger = get_logger(__name__)

BLOCKED_BY_KINDS = ("user_input", "approval", "external_resource", "prerequisite")

_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


class WorkflowContext(BaseModel):
    """Inputs available when an agent is activated."""

    agent_id: UUID
    agent_name: str
    goal: str
    user_id: str
    user_inputs: dict[str, Any] = Field(default_factory=dict)


class WorkflowGenerator(ABC):
    """Turns an agent goal into immediate tasks and human-blocked dependencies."""

    name: str

    @abstractmethod
    async def generate(self, context: WorkflowContext) -> GeneratedWorkflow:
        """Generate a workflow for the given context."""
        pass


class RuleBasedWorkflowGenerator(WorkflowGenerator):
    """Keyword-driven workflow. Always succeeds."""

    name = "rule_based"

    async def generate(self, context: WorkflowContext) -> GeneratedWorkflow:
        return self.build(context.goal)

    def build(self, goal: str) -> GeneratedWorkflow:
        keywords = goal.lower()
        is_strategy = "strategy" in keywords or "plan" in keywords
        is_analysis = "analyz" in keywords or "research" in keywords
        is_implementation = "implement" in keywords or "build" in keywords

        tasks: list[WorkflowTask] = []
        dependencies: list[WorkflowDependency] = []

        if is_strategy:
            tasks.append(
                WorkflowTask(
                    title="Analyze Current Situation",
                    priority=QueuePriority.HIGH,
                    category="analysis",
                    estimated_hours=3,
                )
            )
            tasks.append(
                WorkflowTask(
                    title="Research Best Practices",
                    priority=QueuePriority.MEDIUM,
                    category="research",
                    estimated_hours=2,
                )
            )
            dependencies.append(
                WorkflowDependency(
                    title="Define Success Metrics",
                    reason="Need stakeholder input on what success looks like",
                    blocked_by="user_input",
                    priority=QueuePriority.HIGH,
                )
            )

        if is_analysis:
            tasks.append(
                WorkflowTask(
                    title="Data Collection and Review",
                    priority=QueuePriority.HIGH,
                    category="analysis",
                    estimated_hours=4,
                )
            )
            dependencies.append(
                WorkflowDependency(
                    title="Access to Data Sources",
                    reason="Need credentials or permissions for data access",
                    blocked_by="external_resource",
                    priority=QueuePriority.URGENT,
                )
            )

        if is_implementation:
            tasks.append(
                WorkflowTask(
                    title="Technical Requirements Analysis",
                    priority=QueuePriority.HIGH,
                    category="planning",
                    estimated_hours=3,
                )
            )
            dependencies.append(
                WorkflowDependency(
                    title="Architecture Approval",
                    reason="Technical approach needs stakeholder approval",
                    blocked_by="approval",
                    priority=QueuePriority.HIGH,
                )
            )

        if not tasks:
            tasks.append(
                WorkflowTask(
                    title="Goal Analysis and Breakdown",
                    priority=QueuePriority.HIGH,
                    category="analysis",
                    estimated_hours=2,
                )
            )
            tasks.append(
                WorkflowTask(
                    title="Create Action Plan",
                    priority=QueuePriority.MEDIUM,
                    category="planning",
                    estimated_hours=3,
                )
            )

        dependencies.append(
            WorkflowDependency(
                title="Review and Approve Initial Analysis",
                reason="Human review needed before proceeding to next phase",
                blocked_by="approval",
                priority=QueuePriority.HIGH,
            )
        )
        dependencies.append(
            WorkflowDependency(
                title="Provide Additional Context",
                reason="Agent needs more specific information about requirements",
                blocked_by="user_input",
                priority=QueuePriority.MEDIUM,
            )
        )

        return GeneratedWorkflow(
            immediate_tasks=tasks,
            dependency_tasks=dependencies,
            status=WorkingStatus(
                current_focus=tasks[0].title,
                next_milestone="Complete initial analysis and planning phase",
                progress_indicator="Agent is actively working on initial tasks",
            ),
            generator=self.name,
        )


def extract_json_object(content: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating surrounding prose.

    Raises:
        ValueError: If no JSON object can be found
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_PATTERN.search(content)
        if not match:
            raise ValueError("No valid JSON found in response") from None
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def _clean_str(value: Any, max_length: int) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_length]


def _clean_hours(value: Any, default: float = 2.0) -> float:
    try:
        hours = float(value)
    except (TypeError, ValueError):
        return default
    return hours if 0.5 <= hours <= 40 else default


class LLMWorkflowGenerator(WorkflowGenerator):
    """Asks an LLM for a workflow; falls back to rules on any problem."""

    name = "llm"

    def __init__(
        self,
        selector: "ProviderSelector",
        fallback: RuleBasedWorkflowGenerator | None = None,
        config: WorkflowConfig | None = None,
    ):
        self.selector = selector
        self.fallback = fallback or RuleBasedWorkflowGenerator()
        self.config = config or WorkflowConfig()

    def build_prompt(self, context: WorkflowContext) -> str:
        inputs = context.user_inputs
        return f"""You are an intelligent agent orchestrator. Based on the following context, create a comprehensive workflow for an AI agent to start working immediately.

Agent Context:
- Name: {context.agent_name}
- Goal: {context.goal}
- User Goal Primer: {inputs.get('goal_primer') or 'Not provided'}
- User Answers: {json.dumps(inputs.get('answers') or [], default=str)}
- Plan Data: {json.dumps(inputs.get('plan_data') or {}, default=str)}

Create a workflow that:
1. Starts the agent working immediately on valuable tasks
2. Identifies what the agent can do autonomously
3. Creates dependencies for things requiring human input
4. Shows clear progress and next steps

IMPORTANT: Return ONLY valid JSON, no markdown formatting.

Return exactly this structure:
{{
  "immediateTasks": [
    {{"title": "Task the agent can start immediately", "priority": "high", "category": "analysis", "estimatedHours": 2}}
  ],
  "dependencies": [
    {{"title": "Task requiring human input", "reason": "Why this needs human involvement", "blockedBy": "user_input", "priority": "high"}}
  ],
  "workingStatus": {{
    "currentFocus": "What the agent is actively working on",
    "nextMilestone": "Next major deliverable",
    "progressIndicator": "Current progress description"
  }}
}}"""

    def parse_workflow(self, content: str) -> GeneratedWorkflow:
        """Validate model output into a GeneratedWorkflow.

        Items without a title are dropped; unknown priorities become medium
        (high for dependencies) and unknown blocker kinds become user_input.

        Raises:
            ValueError: If the output is not JSON or yields no tasks at all
        """
        data = extract_json_object(content)

        tasks: list[WorkflowTask] = []
        raw_tasks = data.get("immediateTasks")
        for item in raw_tasks if isinstance(raw_tasks, list) else []:
            if not isinstance(item, dict) or not (title := _clean_str(item.get("title"), 200)):
                continue
            tasks.append(
                WorkflowTask(
                    title=title,
                    description=_clean_str(item.get("description"), 500),
                    priority=QueuePriority.coerce(item.get("priority")),
                    category=_clean_str(item.get("category"), 50) or "analysis",
                    estimated_hours=_clean_hours(item.get("estimatedHours")),
                )
            )

        dependencies: list[WorkflowDependency] = []
        raw_deps = data.get("dependencies")
        for item in raw_deps if isinstance(raw_deps, list) else []:
            if not isinstance(item, dict) or not (title := _clean_str(item.get("title"), 200)):
                continue
            blocked_by = item.get("blockedBy")
            dependencies.append(
                WorkflowDependency(
                    title=title,
                    reason=_clean_str(item.get("reason"), 500) or "Requires human input",
                    blocked_by=blocked_by if blocked_by in BLOCKED_BY_KINDS else "user_input",
                    priority=QueuePriority.coerce(item.get("priority"), QueuePriority.HIGH),
                )
            )

        if not tasks and not dependencies:
            raise ValueError("Workflow contains no tasks")

        status = WorkingStatus()
        raw_status = data.get("workingStatus")
        if isinstance(raw_status, dict):
            status = WorkingStatus(
                current_focus=_clean_str(raw_status.get("currentFocus"), 200)
                or (tasks[0].title if tasks else status.current_focus),
                next_milestone=_clean_str(raw_status.get("nextMilestone"), 200)
                or status.next_milestone,
                progress_indicator=_clean_str(raw_status.get("progressIndicator"), 200)
                or status.progress_indicator,
            )

        return GeneratedWorkflow(
            immediate_tasks=tasks,
            dependency_tasks=dependencies,
            status=status,
            generator=self.name,
        )

    async def generate(self, context: WorkflowContext) -> GeneratedWorkflow:
        response = await self.selector.execute(
            LLMRequest(
                prompt=self.build_prompt(context),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                user_id=context.user_id,
            )
        )
        if not response.success:
            logger.warning(
                "workflow_llm_failed_using_rules",
                agent_id=str(context.agent_id),
                error=response.error,
            )
            return await self.fallback.generate(context)

        try:
            return self.parse_workflow(response.content)
        except ValueError as e:
            logger.warning(
                "workflow_llm_unparseable_using_rules",
                agent_id=str(context.agent_id),
                error=str(e),
            )
            return await self.fallback.generate(context)


class WorkflowService:
    """Activates an agent: generate, persist, announce, enqueue."""

    def __init__(
        self,
        database: "Database",
        events: "EventSink",
        queue: "ExecutionQueue | None" = None,
        selector: "ProviderSelector | None" = None,
        config: WorkflowConfig | None = None,
    ):
        self.db = database
        self.events = events
        self.queue = queue
        self.selector = selector
        self.config = config or WorkflowConfig()
        self.rule_based = RuleBasedWorkflowGenerator()

    async def choose_generator(self, user_id: str) -> WorkflowGenerator:
        """LLM generator when enabled and the user has a usable provider."""
        if self.config.use_llm and self.selector is not None:
            if await self.selector.available_providers(user_id):
                return LLMWorkflowGenerator(self.selector, self.rule_based, self.config)
        return self.rule_based

    async def persist_workflow(self, agent_id: UUID, workflow: GeneratedWorkflow) -> list[Task]:
        """Insert the workflow's tasks. Returns the created tasks."""
        created: list[Task] = []
        for item in workflow.immediate_tasks:
            task = Task(
                agent_id=agent_id,
                title=item.title,
                description=item.description,
                status=TaskStatus.TODO,
                priority=item.priority,
                is_dependency=False,
                auto_generated=True,
                metadata={
                    "category": item.category,
                    "estimated_hours": item.estimated_hours,
                    "workflow_type": "immediate",
                },
            )
            await self.db.insert_task(task)
            created.append(task)

        for dep in workflow.dependency_tasks:
            task = Task(
                agent_id=agent_id,
                title=dep.title,
                status=TaskStatus.BLOCKED,
                priority=dep.priority,
                is_dependency=True,
                blocked_reason=dep.reason,
                auto_generated=True,
                metadata={
                    "blocked_by": dep.blocked_by,
                    "workflow_type": "dependency",
                    "requires_human_input": True,
                },
            )
            await self.db.insert_task(task)
            created.append(task)

        return created

    async def activate_agent(
        self,
        agent_id: UUID,
        user_id: str,
        goal: str | None = None,
        user_inputs: dict[str, Any] | None = None,
    ) -> GeneratedWorkflow:
        """Generate and persist an initial workflow, then schedule the first run.

        Args:
            agent_id: Agent to activate
            user_id: Caller; must own the agent
            goal: Overrides the stored agent goal when given
            user_inputs: Onboarding answers passed to the LLM prompt

        Returns:
            The workflow that was persisted

        Raises:
            AgentNotFoundError: If the agent does not exist or is not owned by user_id
        """
        agent = await self.db.get_agent(agent_id, user_id=user_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")

        context = WorkflowContext(
            agent_id=agent.id,
            agent_name=agent.name,
            goal=goal or agent.goal,
            user_id=user_id,
            user_inputs=user_inputs or {},
        )

        generator = await self.choose_generator(user_id)
        workflow = await generator.generate(context)
        await self.persist_workflow(agent.id, workflow)

        logger.info(
            "workflow_created",
            agent_id=str(agent.id),
            generator=workflow.generator,
            immediate_tasks=len(workflow.immediate_tasks),
            dependency_tasks=len(workflow.dependency_tasks),
        )

        if workflow.dependency_tasks:
            await self.events.log_event(
                agent.id,
                user_id,
                EventType.DEPENDENCY,
                f"Created {len(workflow.dependency_tasks)} dependencies that need your attention",
                {
                    "dependency_count": len(workflow.dependency_tasks),
                    "dependency_titles": [d.title for d in workflow.dependency_tasks],
                    "dependency_reasons": [d.reason for d in workflow.dependency_tasks],
                },
            )

        await self.db.update_agent_status(agent.id, AgentStatus.ACTIVE)
        await self.db.update_agent_metadata(
            agent.id,
            {
                **agent.metadata,
                "workflow_status": workflow.status.model_dump(),
                "workflow_generator": workflow.generator,
                "last_activity": utcnow().isoformat(),
            },
        )

        await self.events.log_event(
            agent.id,
            user_id,
            EventType.INFO,
            f"Agent started working automatically. Current focus: {workflow.status.current_focus}",
            {
                "immediate_tasks_count": len(workflow.immediate_tasks),
                "dependencies_count": len(workflow.dependency_tasks),
            },
        )

        if self.queue is not None:
            result = await self.queue.enqueue(agent.id, user_id, priority=QueuePriority.HIGH)
            if not result.success:
                logger.info("activation_enqueue_skipped", agent_id=str(agent.id), reason=result.error)

        return workflow
