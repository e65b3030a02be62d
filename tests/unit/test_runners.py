import json
from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from evoflow.domain.workflow.entities.workflow import Workflow
from evoflow.domain.workflow.value_objects.events import ExecutionEventType
from evoflow.runner import WorkflowRunner, build_parser, main
from evoflow.shared.config import settings
from evoflow.shared.metrics import MetricsRegistry

SIMPLE_WORKFLOW = {
    "id": "wf-runner",
    "name": "Runner",
    "nodes": [
        {"id": "in", "type": "input", "data": {"name": "Input"}},
        {"id": "agent", "type": "claude-agent", "data": {"name": "Agent", "userQuery": "{{Input.result}}"}},
        {"id": "out", "type": "output", "data": {"name": "Output"}},
    ],
    "edges": [
        {"id": "e1", "source": "in", "target": "agent"},
        {"id": "e2", "source": "agent", "target": "out"},
    ],
}

REFLECTING_WORKFLOW = {
    "id": "wf-reflecting",
    "name": "Reflecting",
    "nodes": [
        {"id": "in", "type": "input", "data": {"name": "Input"}},
        {"id": "agent", "type": "claude-agent", "data": {"name": "Agent", "userQuery": "{{Input.result}}"}},
        {
            "id": "reflect",
            "type": "self-reflect",
            "data": {"name": "Reflect", "reflectionGoal": "Improve", "evolutionMode": "suggest"},
        },
    ],
    "edges": [
        {"id": "e1", "source": "in", "target": "agent"},
        {"id": "e2", "source": "agent", "target": "reflect"},
    ],
}

APPROVAL_WORKFLOW = {
    "id": "wf-approval",
    "name": "Approval",
    "nodes": [
        {"id": "in", "type": "input", "data": {"name": "Input"}},
        {"id": "agent", "type": "claude-agent", "data": {"name": "Agent", "userQuery": "{{Input.result}}"}},
        {
            "id": "review",
            "type": "approval",
            "data": {
                "name": "Review",
                "promptMessage": "Ship it?",
                "inputSelections": [{"nodeName": "Agent"}],
            },
        },
        {"id": "shipped", "type": "output", "data": {"name": "Shipped"}},
        {"id": "revised", "type": "output", "data": {"name": "Revised"}},
    ],
    "edges": [
        {"id": "e1", "source": "in", "target": "agent"},
        {"id": "e2", "source": "agent", "target": "review"},
        {"id": "e3", "source": "review", "target": "shipped", "sourceHandle": "approved"},
        {"id": "e4", "source": "review", "target": "revised", "sourceHandle": "rejected"},
    ],
}


@pytest.fixture
def config(tmp_path):
    return settings.model_copy(
        update={"EVOLUTIONS_DIR": str(tmp_path / "evolutions"), "SIMULATED_AGENT_DELAY_MS": 0}
    )


@pytest.fixture
def collector():
    return CollectorRegistry()


@pytest.mark.asyncio
async def test_runner_executes_workflow_in_memory(config, collector, capsys):
    async with WorkflowRunner(config, persistent=False, metrics=MetricsRegistry(collector)) as runner:
        terminal = await runner.execute(Workflow.model_validate(SIMPLE_WORKFLOW), "hello")

    assert terminal.type == ExecutionEventType.EXECUTION_COMPLETE
    assert terminal.data["status"] == "complete"
    assert terminal.data["result"]["out"]["result"] == "Processed: hello"

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
    event_types = [line["type"] for line in lines if "executionId" in line]
    assert event_types[0] == "execution-start"
    assert event_types[-1] == "execution-complete"

    assert collector.get_sample_value(
        "workflow_runs_total", {"workflow_id": "wf-runner", "status": "complete"}
    ) == 1.0
    assert collector.get_sample_value(
        "node_executions_total", {"node_type": "claude-agent", "status": "complete"}
    ) == 1.0


@pytest.mark.asyncio
async def test_runner_auto_approves_suggested_evolution(config, collector, tmp_path):
    async with WorkflowRunner(config, persistent=False, metrics=MetricsRegistry(collector)) as runner:
        terminal = await runner.execute(
            Workflow.model_validate(REFLECTING_WORKFLOW), "hello", auto_approve=True
        )

    assert terminal.data["status"] == "complete"
    assert terminal.data["statuses"]["reflect"] == "complete"

    history = (tmp_path / "evolutions" / "wf-reflecting" / "history.jsonl").read_text().splitlines()
    assert len(history) == 1
    assert json.loads(history[0])["applied"] is True
    assert collector.get_sample_value(
        "evolution_attempts_total", {"mode": "suggest", "applied": "true"}
    ) == 1.0


@pytest.mark.asyncio
async def test_runner_prefers_stored_workflow(config, collector):
    evolved = Workflow.model_validate(SIMPLE_WORKFLOW)
    evolved.get_node("agent").data.user_query = "again {{Input.result}}"

    async with WorkflowRunner(config, persistent=False, metrics=MetricsRegistry(collector)) as runner:
        await runner.workflow_repository.save(evolved)
        terminal = await runner.execute(Workflow.model_validate(SIMPLE_WORKFLOW), "hello")
        stored = await runner.workflow_repository.get_by_id("wf-runner")

    assert terminal.data["result"]["out"]["result"] == "Processed: again hello"
    assert stored.get_node("agent").data.user_query == "again {{Input.result}}"


@pytest.mark.asyncio
async def test_runner_overwrite_replaces_stored_workflow(config, collector):
    evolved = Workflow.model_validate(SIMPLE_WORKFLOW)
    evolved.get_node("agent").data.user_query = "again {{Input.result}}"

    async with WorkflowRunner(config, persistent=False, metrics=MetricsRegistry(collector)) as runner:
        await runner.workflow_repository.save(evolved)
        terminal = await runner.execute(
            Workflow.model_validate(SIMPLE_WORKFLOW), "hello", overwrite=True
        )
        stored = await runner.workflow_repository.get_by_id("wf-runner")

    assert terminal.data["result"]["out"]["result"] == "Processed: hello"
    assert stored.get_node("agent").data.user_query == "{{Input.result}}"


@pytest.mark.asyncio
async def test_runner_auto_approves_approval_node(config, collector):
    async with WorkflowRunner(config, persistent=False, metrics=MetricsRegistry(collector)) as runner:
        terminal = await runner.execute(
            Workflow.model_validate(APPROVAL_WORKFLOW), "hello", auto_approve=True
        )

    assert terminal.data["status"] == "complete"
    assert terminal.data["statuses"]["shipped"] == "complete"
    assert terminal.data["statuses"]["revised"] == "skipped"


def test_parser_defaults():
    args = build_parser().parse_args(["flow.json"])

    assert args.input == ""
    assert args.resume is None
    assert args.replay is None
    assert args.from_node is None
    assert args.overwrite is False
    assert args.in_memory is False
    assert args.auto_approve is False
    assert args.metrics_port is None


@pytest.mark.asyncio
async def test_main_runs_workflow_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "flow.json"
    path.write_text(json.dumps(SIMPLE_WORKFLOW))

    with patch("evoflow.runner.MetricsRegistry", lambda: MetricsRegistry(CollectorRegistry())):
        exit_code = await main([str(path), "--in-memory", "--input", "hi"])

    assert exit_code == 0


@pytest.mark.asyncio
async def test_replay_requires_from_node(tmp_path):
    with pytest.raises(SystemExit):
        await main([str(tmp_path / "flow.json"), "--replay", "exec-1"])


@pytest.mark.asyncio
async def test_main_rejects_invalid_workflow_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not a workflow")

    assert await main([str(path), "--in-memory"]) == 2


@pytest.mark.asyncio
async def test_main_reports_failed_run(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "empty-query.json"
    broken = json.loads(json.dumps(SIMPLE_WORKFLOW))
    broken["nodes"][1]["data"]["userQuery"] = ""
    path.write_text(json.dumps(broken))

    with patch("evoflow.runner.MetricsRegistry", lambda: MetricsRegistry(CollectorRegistry())):
        exit_code = await main([str(path), "--in-memory"])

    assert exit_code == 1
