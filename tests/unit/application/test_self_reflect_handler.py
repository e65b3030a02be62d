import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from evoflow.adapters.secondary.approval.in_memory_approval_gate import InMemoryApprovalGate
from evoflow.adapters.secondary.persistence.in_memory_workflow_repository import (
    InMemoryWorkflowRepository,
)
from evoflow.application.workflow.handlers.base import HandlerContext
from evoflow.application.workflow.handlers.self_reflect_handler import (
    SelfReflectNodeHandler,
    evolution_json_schema,
    parse_evolution,
)
from evoflow.application.workflow.use_cases.apply_evolution import ApplyEvolutionUseCase
from evoflow.domain.workflow.entities.execution import ExecutionContext
from evoflow.domain.workflow.entities.workflow import Workflow
from evoflow.domain.workflow.exceptions import (
    EvolutionParseError,
    ExecutionInterruptedError,
    WorkflowNotFoundError,
)
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.dag import DAG
from evoflow.domain.workflow.value_objects.events import HandlerEventKind
from evoflow.domain.workflow.value_objects.reference import ReferenceResolver
from evoflow.ports.secondary.agent_adapter import AgentEvent, IAgentAdapter
from evoflow.shared.config import settings

SWITCH_MODEL = json.dumps(
    {
        "reasoning": "A smaller model is enough",
        "mutations": [{"op": "update-model", "nodeId": "agent-1", "newModel": "haiku"}],
        "expectedImpact": "Lower cost",
    }
)


class ReplyingAgentAdapter(IAgentAdapter):
    def __init__(self, reply):
        self.reply = reply
        self.requests = []

    @property
    def agent_type(self):
        return "claude-agent"

    async def stream(self, request, cancellation):
        self.requests.append(request)
        yield AgentEvent(type="text-delta", content=self.reply)
        yield AgentEvent(type="complete", result=self.reply)


def _workflow(mode, **reflect_data):
    return Workflow.model_validate(
        {
            "id": "wf-reflect",
            "name": "Reflective",
            "nodes": [
                {"id": "in", "type": "input", "data": {"name": "Input"}},
                {
                    "id": "agent-1",
                    "type": "claude-agent",
                    "data": {"name": "Agent", "userQuery": "Answer {{Input.result}}", "model": "sonnet"},
                },
                {
                    "id": "reflect",
                    "type": "self-reflect",
                    "data": {
                        "name": "Reflect",
                        "reflectionGoal": "Cut cost",
                        "evolutionMode": mode,
                        **reflect_data,
                    },
                },
            ],
            "edges": [
                {"id": "e1", "source": "in", "target": "agent-1"},
                {"id": "e2", "source": "agent-1", "target": "reflect"},
            ],
        }
    )


def _context(workflow):
    execution = ExecutionContext.create(workflow.id, [n.id for n in workflow.nodes], "question")
    execution.set_node_running("in")
    execution.set_node_completed("in", "question")
    execution.set_node_running("agent-1")
    execution.set_node_completed("agent-1", {"result": "answer"})
    execution.set_variable("node.agent-1.transcript", "agent transcript")
    execution.set_node_running("reflect")
    return HandlerContext(
        workflow=workflow,
        dag=DAG.from_workflow(workflow),
        execution=execution,
        node_name_to_id=ReferenceResolver.build_node_name_map(workflow.nodes),
    )


@pytest.fixture
def mock_history_repo():
    return AsyncMock()


@pytest.fixture
def approval_gate():
    return InMemoryApprovalGate()


def _build(workflow, reply, history_repo, approval_gate=None, default_max_mutations=None):
    repo = InMemoryWorkflowRepository([workflow])
    adapter = ReplyingAgentAdapter(reply)
    handler = SelfReflectNodeHandler(
        adapters={"claude-agent": adapter},
        workflow_repository=repo,
        apply_evolution=ApplyEvolutionUseCase(repo, history_repo),
        approval_gate=approval_gate,
        default_max_mutations=default_max_mutations,
    )
    return handler, repo, adapter


async def _run(handler, workflow, context, cancellation=None):
    node = workflow.get_node("reflect")
    resolved = node.data.model_dump(by_alias=True, mode="json")
    events = handler.handle(node, resolved, context, cancellation or CancellationToken())
    return [event async for event in events]


async def _decide(gate, approved):
    while not gate.pending():
        await asyncio.sleep(0)
    (execution_id, node_id), = gate.pending()
    assert gate.respond(execution_id, node_id, approved, "reviewed")


def _evolution_events(events):
    return [
        e.payload
        for e in events
        if e.kind == HandlerEventKind.PROGRESS and e.payload.get("type") == "node-evolution"
    ]


@pytest.mark.asyncio
async def test_dry_run_records_without_applying(mock_history_repo):
    workflow = _workflow("dry-run")
    handler, repo, _ = _build(workflow, SWITCH_MODEL, mock_history_repo)

    events = await _run(handler, workflow, _context(workflow))

    output = events[-1].output
    assert events[-1].kind == HandlerEventKind.COMPLETE
    assert output["applied"] is False
    assert output["validationErrors"] == []
    assert output["evolution"]["mutations"][0]["newModel"] == "haiku"
    assert (await repo.get_by_id("wf-reflect")).get_node("agent-1").data.model == "sonnet"

    record = mock_history_repo.append.call_args.args[0]
    assert record.applied is False
    assert record.node_id == "reflect"
    assert record.mode.value == "dry-run"
    assert _evolution_events(events)[0]["mode"] == "dry-run"


@pytest.mark.asyncio
async def test_auto_apply_updates_stored_workflow(mock_history_repo):
    workflow = _workflow("auto-apply")
    handler, repo, _ = _build(workflow, SWITCH_MODEL, mock_history_repo)
    context = _context(workflow)

    events = await _run(handler, workflow, context)

    output = events[-1].output
    assert output["applied"] is True
    assert output["diff"]["changedNodes"] == ["agent-1"]
    assert output["afterSnapshot"]["nodes"][1]["data"]["model"] == "haiku"
    assert (await repo.get_by_id("wf-reflect")).get_node("agent-1").data.model == "haiku"

    record = mock_history_repo.append.call_args.args[0]
    assert record.applied is True
    assert record.execution_id == context.execution_id


@pytest.mark.asyncio
async def test_suggest_applies_after_approval(mock_history_repo, approval_gate):
    workflow = _workflow("suggest")
    handler, repo, _ = _build(workflow, SWITCH_MODEL, mock_history_repo, approval_gate)

    events, _ = await asyncio.wait_for(
        asyncio.gather(_run(handler, workflow, _context(workflow)), _decide(approval_gate, True)),
        timeout=2,
    )

    evolution_events = _evolution_events(events)
    assert evolution_events[0]["approvalRequested"] is True
    output = events[-1].output
    assert output["applied"] is True
    assert output["approvalResponse"]["approved"] is True
    assert output["approvalResponse"]["feedback"] == "reviewed"
    assert (await repo.get_by_id("wf-reflect")).get_node("agent-1").data.model == "haiku"


@pytest.mark.asyncio
async def test_suggest_rejected_leaves_workflow(mock_history_repo, approval_gate):
    workflow = _workflow("suggest")
    handler, repo, _ = _build(workflow, SWITCH_MODEL, mock_history_repo, approval_gate)

    events, _ = await asyncio.wait_for(
        asyncio.gather(_run(handler, workflow, _context(workflow)), _decide(approval_gate, False)),
        timeout=2,
    )

    output = events[-1].output
    assert output["applied"] is False
    assert output["approvalResponse"]["approved"] is False
    assert (await repo.get_by_id("wf-reflect")).get_node("agent-1").data.model == "sonnet"
    assert mock_history_repo.append.call_args.args[0].applied is False


@pytest.mark.asyncio
async def test_cancellation_while_awaiting_approval(mock_history_repo, approval_gate):
    workflow = _workflow("suggest")
    handler, _, _ = _build(workflow, SWITCH_MODEL, mock_history_repo, approval_gate)
    token = CancellationToken()

    async def cancel_when_pending():
        while not approval_gate.pending():
            await asyncio.sleep(0)
        token.cancel("user")

    with pytest.raises(ExecutionInterruptedError):
        await asyncio.wait_for(
            asyncio.gather(_run(handler, workflow, _context(workflow), token), cancel_when_pending()),
            timeout=2,
        )

    assert approval_gate.pending() == {}
    mock_history_repo.append.assert_not_called()


@pytest.mark.asyncio
async def test_invalid_evolution_completes_with_errors(mock_history_repo):
    workflow = _workflow("auto-apply")
    reply = json.dumps({"mutations": [{"op": "remove-node", "nodeId": "agent-1"}]})
    handler, repo, _ = _build(workflow, reply, mock_history_repo)

    events = await _run(handler, workflow, _context(workflow))

    output = events[-1].output
    assert output["applied"] is False
    assert any("connected to the self-reflect node" in error for error in output["validationErrors"])
    assert (await repo.get_by_id("wf-reflect")).get_node("agent-1") is not None
    record = mock_history_repo.append.call_args.args[0]
    assert record.validation_errors == output["validationErrors"]


@pytest.mark.asyncio
async def test_unparseable_answer_fails_node(mock_history_repo):
    workflow = _workflow("auto-apply")
    handler, _, _ = _build(workflow, "I would change the model.", mock_history_repo)

    with pytest.raises(EvolutionParseError):
        await _run(handler, workflow, _context(workflow))

    mock_history_repo.append.assert_not_called()


@pytest.mark.asyncio
async def test_missing_workflow_fails_node(mock_history_repo):
    workflow = _workflow("dry-run")
    adapter = ReplyingAgentAdapter(SWITCH_MODEL)
    repo = InMemoryWorkflowRepository()
    handler = SelfReflectNodeHandler({"claude-agent": adapter}, repo, ApplyEvolutionUseCase(repo, mock_history_repo))

    with pytest.raises(WorkflowNotFoundError):
        await _run(handler, workflow, _context(workflow))


@pytest.mark.asyncio
async def test_prompt_carries_goal_and_run_history(mock_history_repo):
    workflow = _workflow("dry-run", systemPrompt="Prefer cheap models", scope=["models"])
    handler, _, adapter = _build(workflow, SWITCH_MODEL, mock_history_repo)
    context = _context(workflow)

    await _run(handler, workflow, context)

    request = adapter.requests[0]
    assert request.output_format == "json"
    assert request.json_schema == evolution_json_schema()
    assert "Prefer cheap models" in request.system_prompt
    assert "Goal: Cut cost" in request.prompt
    assert "Allowed scope: models" in request.prompt

    payload = json.loads(request.prompt.split("Context payload:\n", 1)[1])
    assert payload["selfReflectNodeId"] == "reflect"
    assert payload["execution"]["input"] == "question"
    assert [n["nodeId"] for n in payload["execution"]["nodes"]] == ["in", "agent-1"]
    agent_record = payload["execution"]["nodes"][1]
    assert agent_record["status"] == "complete"
    assert agent_record["output"] == {"result": "answer"}
    assert agent_record["transcript"] == "agent transcript"
    assert context.execution.get_variable("node.reflect.transcript") == SWITCH_MODEL


@pytest.mark.asyncio
async def test_configured_default_limits_mutations(mock_history_repo):
    workflow = _workflow("auto-apply")
    reply = json.dumps(
        {
            "mutations": [
                {"op": "update-model", "nodeId": "agent-1", "newModel": "haiku"},
                {"op": "update-prompt", "nodeId": "agent-1", "field": "userQuery", "newValue": "Be brief"},
            ]
        }
    )
    handler, repo, adapter = _build(workflow, reply, mock_history_repo, default_max_mutations=1)

    events = await _run(handler, workflow, _context(workflow))

    output = events[-1].output
    assert output["applied"] is False
    assert output["validationErrors"] == ["Evolution has 2 mutations, limit is 1"]
    assert "Max mutations: 1" in adapter.requests[0].prompt
    assert (await repo.get_by_id("wf-reflect")).get_node("agent-1").data.model == "sonnet"


def test_node_limit_overrides_configured_default(mock_history_repo):
    handler, _, _ = _build(_workflow("dry-run"), SWITCH_MODEL, mock_history_repo, default_max_mutations=1)

    assert handler.max_mutations(_workflow("dry-run", maxMutations=4).get_node("reflect")) == 4
    assert handler.max_mutations(_workflow("dry-run").get_node("reflect")) == 1


def test_default_limit_comes_from_settings(mock_history_repo):
    handler, _, _ = _build(_workflow("dry-run"), SWITCH_MODEL, mock_history_repo)

    assert handler.max_mutations(_workflow("dry-run").get_node("reflect")) == settings.DEFAULT_MAX_MUTATIONS


def test_validate(mock_history_repo):
    workflow = _workflow("suggest", reflectionGoal=" ", maxMutations=0, scope=[], agentType="codex-agent")
    handler, _, _ = _build(workflow, SWITCH_MODEL, mock_history_repo)

    assert handler.validate(workflow.get_node("reflect")) == [
        "Reflection goal is required",
        "Max mutations must be greater than zero",
        "At least one scope must be selected",
        "No agent adapter available for 'codex-agent'",
        "Suggest mode requires an approval gate",
    ]


def test_parse_evolution_accepts_fenced_json():
    evolution = parse_evolution(f"```json\n{SWITCH_MODEL}\n```")

    assert evolution.mutations[0].new_model == "haiku"


def test_parse_evolution_rejects_wrong_shape():
    with pytest.raises(EvolutionParseError):
        parse_evolution(json.dumps({"mutations": "all of them"}))
