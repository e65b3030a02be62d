import json

import pytest
from pydantic import ValidationError

from evoflow.domain.workflow.entities.evolution import (
    AddNodeMutation,
    EvolutionHistoryRecord,
    UnknownMutation,
    UpdateModelMutation,
    WorkflowEvolution,
)
from evoflow.domain.workflow.entities.workflow import (
    ClaudeAgentNodeData,
    ConditionNodeData,
    NodeType,
    Workflow,
    WorkflowNode,
)
from evoflow.domain.workflow.exceptions import NodeValidationError, WorkflowNotFoundError
from evoflow.domain.workflow.value_objects.evolution_policy import ALL_SCOPES, EvolutionMode


class TestWorkflowNode:
    def test_data_type_is_taken_from_node_type(self):
        node = WorkflowNode.model_validate(
            {"id": "n1", "type": "claude-agent", "data": {"name": "Writer", "userQuery": "Write"}}
        )

        assert isinstance(node.data, ClaudeAgentNodeData)
        assert node.type == NodeType.CLAUDE_AGENT
        assert node.name == "Writer"
        assert node.data.conversation_mode == "fresh"

    def test_mismatched_data_type_is_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowNode.model_validate(
                {"id": "n1", "type": "input", "data": {"type": "output", "name": "x"}}
            )

    def test_unknown_data_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowNode.model_validate(
                {"id": "n1", "type": "input", "data": {"name": "x", "userQuery": "nope"}}
            )

    def test_document_uses_camel_case(self):
        node = WorkflowNode.model_validate(
            {
                "id": "n1",
                "type": "codex-agent",
                "data": {
                    "name": "Coder",
                    "userQuery": "Fix it",
                    "reasoningEffort": "high",
                    "outputConfig": {"format": "json", "schema": "{}"},
                },
            }
        )

        document = node.to_document()

        assert document["data"]["userQuery"] == "Fix it"
        assert document["data"]["reasoningEffort"] == "high"
        assert document["data"]["outputConfig"] == {"format": "json", "schema": "{}"}
        assert node.data.output_config.json_schema == "{}"

    def test_fingerprint_is_stable(self):
        raw = {"id": "n1", "type": "merge", "data": {"name": "Join"}}

        first = WorkflowNode.model_validate(raw)
        second = WorkflowNode.model_validate(raw)

        assert first.fingerprint() == second.fingerprint()

    def test_self_reflect_defaults(self):
        node = WorkflowNode.model_validate(
            {"id": "r", "type": "self-reflect", "data": {"name": "Reflect", "reflectionGoal": "Improve"}}
        )

        assert node.data.evolution_mode == EvolutionMode.SUGGEST
        assert node.data.max_mutations is None
        assert tuple(node.data.scope) == ALL_SCOPES


class TestConditionData:
    def test_single_rule_form(self):
        data = ConditionNodeData(name="Check", input_reference="{{A.result}}", operator="contains", compare_value="ok")

        rules = data.rules()

        assert len(rules) == 1
        assert rules[0].operator == "contains"
        assert rules[0].compare_value == "ok"

    def test_rule_list_wins_over_single_rule(self):
        data = ConditionNodeData.model_validate(
            {
                "name": "Check",
                "inputReference": "{{A.result}}",
                "conditions": [
                    {"inputReference": "{{B.result}}", "operator": "is_empty"},
                    {"inputReference": "{{C.result}}", "operator": "equals", "compareValue": 1, "joiner": "or"},
                ],
            }
        )

        rules = data.rules()

        assert [r.input_reference for r in rules] == ["{{B.result}}", "{{C.result}}"]
        assert rules[1].joiner == "or"

    def test_no_rules(self):
        assert ConditionNodeData(name="Empty").rules() == []


class TestWorkflow:
    def test_with_updates_revalidates_and_stamps(self):
        workflow = Workflow(id="wf", name="Old")

        updated = workflow.with_updates({"name": "New", "working_directory": "/srv"})

        assert updated.name == "New"
        assert updated.working_directory == "/srv"
        assert updated.updated_at is not None
        assert workflow.name == "Old"

    def test_with_updates_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            Workflow(id="wf", name="Old").with_updates({"color": "blue"})

    def test_round_trips_through_json(self):
        raw = {
            "id": "wf",
            "name": "Flow",
            "workingDirectory": "/repo",
            "nodes": [{"id": "in", "type": "input", "data": {"name": "Input"}}],
            "edges": [],
        }

        workflow = Workflow.model_validate(raw)

        assert Workflow.model_validate_json(json.dumps(workflow.to_document())) == workflow


class TestEvolutionModels:
    def test_mutations_are_parsed_by_op(self):
        evolution = WorkflowEvolution.model_validate(
            {
                "reasoning": "Faster",
                "mutations": [
                    {"op": "update-model", "nodeId": "a", "newModel": "haiku"},
                    {"op": "add-node", "node": {"id": "x", "type": "merge", "data": {"name": "X"}}},
                    {"op": "teleport", "where": "moon"},
                ],
                "expectedImpact": "Lower cost",
            }
        )

        first, second, third = evolution.mutations
        assert isinstance(first, UpdateModelMutation)
        assert first.new_model == "haiku"
        assert isinstance(second, AddNodeMutation)
        assert isinstance(third, UnknownMutation)
        assert third.op == "teleport"

    def test_known_op_with_bad_payload_is_an_error(self):
        with pytest.raises(ValidationError):
            WorkflowEvolution.model_validate({"mutations": [{"op": "update-model", "nodeId": "a"}]})

    def test_history_record_json_line(self):
        record = EvolutionHistoryRecord(
            workflow_id="wf",
            node_id="reflect",
            mode=EvolutionMode.DRY_RUN,
            evolution=WorkflowEvolution(reasoning="r"),
            applied=False,
            validation_errors=["too many"],
        )

        line = record.to_json_line()
        payload = json.loads(line)

        assert "\n" not in line
        assert payload["workflowId"] == "wf"
        assert payload["mode"] == "dry-run"
        assert payload["applied"] is False
        assert payload["validationErrors"] == ["too many"]
        assert "afterSnapshot" not in payload
        assert EvolutionHistoryRecord.model_validate_json(line) == record


class TestExceptions:
    def test_to_dict(self):
        error = WorkflowNotFoundError("wf-9")

        assert error.to_dict() == {
            "code": "WORKFLOW_NOT_FOUND",
            "message": "Workflow 'wf-9' not found",
            "context": {"workflow_id": "wf-9"},
        }

    def test_node_validation_error_carries_node(self):
        error = NodeValidationError("n1", ["userQuery is required"])

        assert error.node_id == "n1"
        assert error.error_code == "VALIDATION_FAILED"
        assert error.context == {"node_id": "n1", "errors": ["userQuery is required"]}
