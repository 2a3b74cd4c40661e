"""Unit tests for workflow generation and agent activation."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from conductor.domain.models import (
    AgentStatus,
    EventType,
    LLMResponse,
    QueuePriority,
    QueueStatus,
    TaskStatus,
)
from conductor.infrastructure.config import WorkflowConfig
from conductor.infrastructure.exceptions import AgentNotFoundError
from conductor.services.workflow_generator import (
    LLMWorkflowGenerator,
    RuleBasedWorkflowGenerator,
    WorkflowContext,
    WorkflowService,
    extract_json_object,
)

USER_ID = "user-1"

LLM_WORKFLOW = {
    "immediateTasks": [
        {"title": "Survey competitors", "priority": "high", "category": "research", "estimatedHours": 3},
        {"title": "Draft outline", "priority": "someday", "estimatedHours": 400},
        {"description": "no title, dropped"},
    ],
    "dependencies": [
        {"title": "Budget sign-off", "reason": "Finance approval", "blockedBy": "approval"},
        {"title": "Brand assets", "reason": "Need logos", "blockedBy": "carrier pigeon"},
    ],
    "workingStatus": {"currentFocus": "Competitor survey", "nextMilestone": "Outline ready"},
}


def _selector(response: LLMResponse, available: list[str] | None = None) -> MagicMock:
    selector = MagicMock()
    selector.execute = AsyncMock(return_value=response)
    selector.available_providers = AsyncMock(return_value=available or [])
    return selector


def _context(goal: str = "Research the market") -> WorkflowContext:
    from uuid import uuid4

    return WorkflowContext(agent_id=uuid4(), agent_name="Bot", goal=goal, user_id=USER_ID)


class TestRuleBasedWorkflowGenerator:
    """Tests for keyword-driven workflows."""

    def test_strategy_goal(self):
        workflow = RuleBasedWorkflowGenerator().build("Create a marketing strategy")

        titles = [t.title for t in workflow.immediate_tasks]
        deps = [d.title for d in workflow.dependency_tasks]
        assert titles == ["Analyze Current Situation", "Research Best Practices"]
        assert deps == [
            "Define Success Metrics",
            "Review and Approve Initial Analysis",
            "Provide Additional Context",
        ]
        assert workflow.status.current_focus == "Analyze Current Situation"
        assert workflow.status.next_milestone == "Complete initial analysis and planning phase"
        assert workflow.generator == "rule_based"

    def test_combined_keywords(self):
        workflow = RuleBasedWorkflowGenerator().build("Analyze logs and build a dashboard")

        titles = [t.title for t in workflow.immediate_tasks]
        assert titles == ["Data Collection and Review", "Technical Requirements Analysis"]
        access = workflow.dependency_tasks[0]
        assert access.title == "Access to Data Sources"
        assert access.blocked_by == "external_resource"
        assert access.priority == QueuePriority.URGENT

    def test_generic_goal(self):
        workflow = RuleBasedWorkflowGenerator().build("Write a birthday poem")

        assert [t.title for t in workflow.immediate_tasks] == [
            "Goal Analysis and Breakdown",
            "Create Action Plan",
        ]
        assert len(workflow.dependency_tasks) == 2


class TestExtractJson:
    """Tests for extract_json_object."""

    def test_plain_json(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_json_inside_prose(self):
        content = 'Sure! Here it is:\n```json\n{"a": {"b": 2}}\n```\nHope that helps.'

        assert extract_json_object(content) == {"a": {"b": 2}}

    @pytest.mark.parametrize("content", ["no json here", "[1, 2, 3]"])
    def test_rejects_non_objects(self, content):
        with pytest.raises(ValueError):
            extract_json_object(content)


class TestLLMWorkflowParsing:
    """Tests for LLMWorkflowGenerator.parse_workflow."""

    def test_parse_sanitizes_items(self):
        generator = LLMWorkflowGenerator(_selector(LLMResponse()))

        workflow = generator.parse_workflow(json.dumps(LLM_WORKFLOW))

        assert [t.title for t in workflow.immediate_tasks] == ["Survey competitors", "Draft outline"]
        outline = workflow.immediate_tasks[1]
        assert outline.priority == QueuePriority.MEDIUM
        assert outline.estimated_hours == 2.0
        assert outline.category == "analysis"
        assert [d.blocked_by for d in workflow.dependency_tasks] == ["approval", "user_input"]
        assert workflow.dependency_tasks[0].priority == QueuePriority.HIGH
        assert workflow.status.current_focus == "Competitor survey"
        assert workflow.status.next_milestone == "Outline ready"
        assert workflow.generator == "llm"

    def test_parse_rejects_empty_workflow(self):
        generator = LLMWorkflowGenerator(_selector(LLMResponse()))

        with pytest.raises(ValueError, match="no tasks"):
            generator.parse_workflow('{"immediateTasks": [], "dependencies": []}')

    def test_prompt_includes_context(self):
        generator = LLMWorkflowGenerator(_selector(LLMResponse()))
        context = _context("Launch a podcast")
        context.user_inputs = {"goal_primer": "Weekly episodes"}

        prompt = generator.build_prompt(context)

        assert "Launch a podcast" in prompt
        assert "Weekly episodes" in prompt
        assert '"immediateTasks"' in prompt


@pytest.mark.asyncio
class TestLLMWorkflowGenerate:
    """Tests for LLM generation with rule-based fallback."""

    async def test_llm_and_rules_share_shape(self):
        selector = _selector(LLMResponse(content=json.dumps(LLM_WORKFLOW)))
        context = _context()

        llm = await LLMWorkflowGenerator(selector).generate(context)
        rules = await RuleBasedWorkflowGenerator().generate(context)

        assert type(llm) is type(rules)
        assert set(llm.model_dump()) == set(rules.model_dump())
        assert llm.generator == "llm"

    async def test_falls_back_when_provider_fails(self):
        selector = _selector(LLMResponse(success=False, error="No available AI providers"))

        workflow = await LLMWorkflowGenerator(selector).generate(_context())

        assert workflow.generator == "rule_based"
        assert workflow.immediate_tasks[0].title == "Data Collection and Review"

    async def test_falls_back_on_unparseable_output(self):
        selector = _selector(LLMResponse(content="I would rather not."))

        workflow = await LLMWorkflowGenerator(selector).generate(_context())

        assert workflow.generator == "rule_based"

    async def test_request_uses_workflow_config(self):
        selector = _selector(LLMResponse(content=json.dumps(LLM_WORKFLOW)))
        config = WorkflowConfig(max_tokens=900, temperature=0.2)

        await LLMWorkflowGenerator(selector, config=config).generate(_context())

        request = selector.execute.await_args.args[0]
        assert request.max_tokens == 900
        assert request.temperature == 0.2
        assert request.user_id == USER_ID


@pytest.mark.asyncio
class TestWorkflowService:
    """Tests for agent activation."""

    async def test_activate_with_rules(self, db, events, agent):
        queue = MagicMock()
        queue.enqueue = AsyncMock()
        service = WorkflowService(db, events, queue=queue, config=WorkflowConfig(use_llm=False))

        workflow = await service.activate_agent(agent.id, USER_ID)

        tasks = await db.list_tasks(agent_id=agent.id)
        work = [t for t in tasks if not t.is_dependency]
        deps = [t for t in tasks if t.is_dependency]
        assert len(work) == len(workflow.immediate_tasks)
        assert len(deps) == len(workflow.dependency_tasks)
        assert all(t.status == TaskStatus.TODO and t.auto_generated for t in work)
        assert all(t.status == TaskStatus.BLOCKED and t.blocked_reason for t in deps)

        stored = await db.get_agent(agent.id)
        assert stored.status == AgentStatus.ACTIVE
        assert stored.metadata["workflow_generator"] == "rule_based"
        assert stored.metadata["workflow_status"]["current_focus"] == workflow.status.current_focus

        dependency_events = await db.list_events(agent.id, event_type=EventType.DEPENDENCY)
        assert len(dependency_events) == 1
        queue.enqueue.assert_awaited_once_with(agent.id, USER_ID, priority=QueuePriority.HIGH)

    async def test_activate_enqueues_real_queue_item(self, db, events, agent):
        from conductor.application.execution_queue import ExecutionQueue

        queue = ExecutionQueue(db, AsyncMock(), events, auto_start=False)
        service = WorkflowService(db, events, queue=queue, config=WorkflowConfig(use_llm=False))

        await service.activate_agent(agent.id, USER_ID, goal="Plan a launch")

        item = await db.get_active_queue_item(agent.id)
        assert item.status == QueueStatus.PENDING
        assert item.priority == QueuePriority.HIGH

    async def test_llm_used_when_provider_available(self, db, events, agent):
        selector = _selector(LLMResponse(content=json.dumps(LLM_WORKFLOW)), available=["openai"])
        service = WorkflowService(db, events, selector=selector)

        workflow = await service.activate_agent(agent.id, USER_ID)

        assert workflow.generator == "llm"
        titles = {t.title for t in await db.list_tasks(agent_id=agent.id)}
        assert "Survey competitors" in titles

    async def test_rules_used_without_provider(self, db, events, agent):
        selector = _selector(LLMResponse(content=json.dumps(LLM_WORKFLOW)))
        service = WorkflowService(db, events, selector=selector)

        workflow = await service.activate_agent(agent.id, USER_ID)

        assert workflow.generator == "rule_based"
        selector.execute.assert_not_awaited()

    async def test_activate_foreign_agent(self, db, events, other_agent):
        service = WorkflowService(db, events)

        with pytest.raises(AgentNotFoundError):
            await service.activate_agent(other_agent.id, USER_ID)
