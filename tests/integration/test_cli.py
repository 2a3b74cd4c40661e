"""End-to-end CLI tests against a throwaway project directory."""

import json
import re
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conductor.cli.main import app
from conductor.cli.utils import console
from conductor.infrastructure.logger import setup_logging

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")

runner = CliRunner()


@pytest.fixture(autouse=True)
def project(tmp_path, monkeypatch):
    """Run every command in an empty project with no credentials anywhere."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "home")
    for var in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GROQ_API_KEY", "XAI_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("CONDUCTOR_PROVIDERS", raising=False)
    monkeypatch.setenv("CONDUCTOR_DEFAULT_USER", "cli-user")
    monkeypatch.setattr(console, "width", 200)
    setup_logging(log_level="WARNING")

    with patch("keyring.get_password", return_value=None), patch(
        "conductor.infrastructure.setup_logging"
    ):
        yield tmp_path


def invoke(*args: str):
    return runner.invoke(app, list(args))


def created_id(result) -> str:
    assert result.exit_code == 0, result.output
    match = UUID_RE.search(result.output)
    assert match, result.output
    return match.group(0)


def test_version():
    result = invoke("version")

    assert result.exit_code == 0
    assert "Conductor" in result.output


def test_init_creates_database(project):
    result = invoke("init")

    assert result.exit_code == 0
    assert (project / ".conductor" / "conductor.db").exists()


def test_agent_create_and_list():
    agent_id = created_id(invoke("agent", "create", "Research Bot", "--goal", "Research the market"))

    result = invoke("agent", "list")

    assert result.exit_code == 0
    assert agent_id[:8] in result.output
    assert "Research Bot" in result.output


def test_workflow_generate_falls_back_to_rules_and_queues():
    agent_id = created_id(invoke("agent", "create", "Planner", "--goal", "Plan a product launch"))

    result = invoke("workflow", "generate", agent_id[:8])

    assert result.exit_code == 0, result.output
    assert "rule_based" in result.output
    assert "Needs your input" in result.output

    status = invoke("queue", "status", agent_id)
    assert "pending" in status.output

    duplicate = invoke("queue", "enqueue", agent_id)
    assert duplicate.exit_code == 1
    assert "already pending" in duplicate.output


def test_workflow_generate_rejects_bad_inputs():
    agent_id = created_id(invoke("agent", "create", "Planner"))

    result = invoke("workflow", "generate", agent_id, "--inputs", "[1, 2]")

    assert result.exit_code == 1
    assert "JSON object" in result.output


def test_queue_run_without_keys_blocks_on_configuration():
    agent_id = created_id(invoke("agent", "create", "Writer", "--goal", "Write a poem"))
    invoke("task", "add", agent_id, "Draft stanza one")
    created_id(invoke("queue", "enqueue", agent_id, "--priority", "high"))

    result = invoke("queue", "run")

    assert result.exit_code == 0, result.output
    assert "Processed 1 item(s)" in result.output
    tasks = invoke("task", "list", agent_id, "--status", "blocked")
    assert "Configure LLM" in tasks.output

    stats = invoke("queue", "stats")
    assert stats.exit_code == 0
    assert "completed" in stats.output


def test_queue_cancel_validates_id():
    result = invoke("queue", "cancel", "not-a-uuid")

    assert result.exit_code == 1
    assert "Invalid queue ID" in result.output


def test_task_dependencies_flow():
    agent_id = created_id(invoke("agent", "create", "Builder"))
    first = created_id(invoke("task", "add", agent_id, "Design schema"))
    second_result = invoke("task", "add", agent_id, "Write migrations", "--after", first)
    second = created_id(second_result)
    assert "blocked" in second_result.output

    cycle = invoke("deps", "add", second, first)
    assert cycle.exit_code == 1
    assert "circular dependency" in cycle.output

    done = invoke("task", "complete", first[:8], "--summary", "Schema drafted")
    assert done.exit_code == 0, done.output
    assert second in done.output

    recomputed = invoke("deps", "recompute", second)
    assert "todo" in recomputed.output


def test_approve_rejects_work_task():
    agent_id = created_id(invoke("agent", "create", "Builder"))
    task_id = created_id(invoke("task", "add", agent_id, "Plain work"))

    result = invoke("task", "approve", task_id)

    assert result.exit_code == 1
    assert "Only dependency tasks" in result.output


def test_deps_graph_exports_json(project):
    agent_id = created_id(invoke("agent", "create", "Builder"))
    first = created_id(invoke("task", "add", agent_id, "First"))
    created_id(invoke("task", "add", agent_id, "Second", "--after", first))
    output = project / "graph.json"

    result = invoke("deps", "graph", agent_id, "--output", str(output))

    assert result.exit_code == 0, result.output
    exported = json.loads(output.read_text())
    assert len(exported["nodes"]) == 2
    assert len(exported["edges"]) == 1


def test_agent_delete_orphans_dependencies():
    agent_id = created_id(invoke("agent", "create", "Temp"))
    invoke("task", "add", agent_id, "Work")
    invoke("task", "add", agent_id, "Sign off", "--dependency")

    result = invoke("agent", "delete", agent_id, "--force")

    assert result.exit_code == 0, result.output
    assert "1 task(s) removed" in result.output
    assert "1 dependency task(s) orphaned" in result.output
    assert "No agents" in invoke("agent", "list").output


def test_unknown_agent_prefix():
    result = invoke("task", "list", "ffffffff")

    assert result.exit_code == 1
    assert "No agent found" in result.output


def test_config_show_uses_environment():
    result = invoke("config", "show")

    assert result.exit_code == 0
    assert "default_user_id: cli-user" in result.output


def test_config_set_key_to_env_file(project):
    rejected = invoke("config", "set-key", "openai", "--api-key", "nope", "--no-use-keychain")
    assert rejected.exit_code == 1

    result = invoke(
        "config", "set-key", "openai", "--api-key", "sk-test-0123456789abcdef", "--no-use-keychain"
    )

    assert result.exit_code == 0, result.output
    assert "OPENAI_API_KEY=sk-test-0123456789abcdef" in (project / ".env").read_text()


def test_providers_status_lists_missing_keys():
    result = invoke("providers", "status")

    assert result.exit_code == 0
    assert "openai" in result.output
    assert "missing" in result.output
