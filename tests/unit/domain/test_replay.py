import pytest

from evoflow.domain.workflow.entities.execution import ExecutionCheckpoint, active_handle_key
from evoflow.domain.workflow.entities.workflow import Workflow
from evoflow.domain.workflow.services.replay import (
    build_replay_plan,
    compute_inactive_branch_nodes,
    descendant_ids,
    filter_replay_variables,
    prepare_replay,
    prepare_resume,
)
from evoflow.domain.workflow.value_objects.node_status import NodeStatus

COMPLETE = NodeStatus.COMPLETE
SKIPPED = NodeStatus.SKIPPED
ERROR = NodeStatus.ERROR


@pytest.fixture
def workflow():
    # in -> check -(true)-> yes -> join -> out
    #             -(false)-> no --^
    return Workflow.model_validate(
        {
            "id": "wf-1",
            "name": "Branches",
            "nodes": [
                {"id": "in", "type": "input", "data": {"name": "In"}},
                {
                    "id": "check",
                    "type": "condition",
                    "data": {"name": "Check", "inputReference": "{{In.result}}", "operator": "is_not_empty"},
                },
                {"id": "yes", "type": "claude-agent", "data": {"name": "Yes", "userQuery": "y"}},
                {"id": "no", "type": "claude-agent", "data": {"name": "No", "userQuery": "n"}},
                {"id": "join", "type": "merge", "data": {"name": "Join"}},
                {"id": "out", "type": "output", "data": {"name": "Out"}},
            ],
            "edges": [
                {"id": "e1", "source": "in", "target": "check"},
                {"id": "e2", "source": "check", "target": "yes", "sourceHandle": "true"},
                {"id": "e3", "source": "check", "target": "no", "sourceHandle": "false"},
                {"id": "e4", "source": "yes", "target": "join"},
                {"id": "e5", "source": "no", "target": "join"},
                {"id": "e6", "source": "join", "target": "out"},
            ],
        }
    )


def _checkpoint(statuses, outputs=None, variables=None):
    return ExecutionCheckpoint(
        execution_id="exec-1",
        workflow_id="wf-1",
        workflow_input="go",
        statuses=statuses,
        node_outputs=outputs or {},
        variables=variables or {},
    )


@pytest.fixture
def finished():
    return _checkpoint(
        {"in": COMPLETE, "check": COMPLETE, "yes": COMPLETE, "no": SKIPPED, "join": COMPLETE, "out": COMPLETE},
        outputs={"in": "go", "check": True, "yes": "Y", "join": {"Yes": "Y"}, "out": {"Yes": "Y"}},
        variables={
            active_handle_key("check"): "true",
            "node.yes.transcript": "t",
            "agent.session.yes": "s-1",
            "agent.session.in": "s-0",
            "run.label": "nightly",
        },
    )


def test_descendants(workflow):
    assert descendant_ids(workflow, "check") == {"yes", "no", "join", "out"}
    assert descendant_ids(workflow, "out") == set()


def test_plan_reruns_node_and_everything_downstream(workflow, finished):
    plan = build_replay_plan(workflow, finished, "yes")

    assert plan.valid
    assert plan.replay_node_ids == {"yes", "join", "out"}
    assert plan.inactive_node_ids == {"no"}


def test_plan_rejects_unknown_node(workflow, finished):
    plan = build_replay_plan(workflow, finished, "ghost")

    assert plan.errors == ["Node 'ghost' does not exist in the workflow"]


def test_plan_rejects_node_on_branch_not_taken(workflow, finished):
    plan = build_replay_plan(workflow, finished, "no")

    assert not plan.valid
    assert plan.errors == ["Node 'no' is on an inactive branch; replay from the branching node instead"]


def test_plan_requires_settled_ancestors_with_outputs(workflow):
    checkpoint = _checkpoint(
        {"in": COMPLETE, "check": ERROR, "yes": SKIPPED, "no": SKIPPED},
        variables={},
    )

    plan = build_replay_plan(workflow, checkpoint, "join")

    assert plan.errors == [
        "Upstream node 'check' did not settle in the source run",
        "Output of upstream node 'in' is missing from the checkpoint",
    ]


def test_join_fed_by_taken_branch_stays_active(workflow, finished):
    assert compute_inactive_branch_nodes(workflow, finished, set()) == {"no"}


def test_replayed_branching_node_decides_again(workflow, finished):
    assert compute_inactive_branch_nodes(workflow, finished, {"check"}) == set()


def test_filter_replay_variables(finished):
    kept = filter_replay_variables(finished.variables, {"yes", "join", "out"})

    assert kept == {
        active_handle_key("check"): "true",
        "agent.session.in": "s-0",
        "run.label": "nightly",
    }


def test_resume_resets_failed_node_and_its_skipped_descendants(workflow):
    checkpoint = _checkpoint(
        {"in": COMPLETE, "check": COMPLETE, "yes": ERROR, "no": SKIPPED, "join": SKIPPED, "out": SKIPPED},
        outputs={"in": "go", "check": True},
        variables={active_handle_key("check"): "true"},
    )

    resumed = prepare_resume(workflow, checkpoint)

    assert resumed.statuses == {"in": COMPLETE, "check": COMPLETE, "no": SKIPPED}
    assert resumed.execution_id == "exec-1"


def test_resume_keeps_completed_descendants(workflow):
    checkpoint = _checkpoint(
        {"in": COMPLETE, "check": COMPLETE, "yes": ERROR, "no": COMPLETE, "join": COMPLETE, "out": SKIPPED},
    )

    resumed = prepare_resume(workflow, checkpoint)

    assert resumed.statuses == {"in": COMPLETE, "check": COMPLETE, "no": COMPLETE, "join": COMPLETE}


def test_resume_of_interrupted_condition_recomputes_its_branches(workflow):
    checkpoint = _checkpoint({"in": COMPLETE, "check": NodeStatus.RUNNING, "no": SKIPPED})

    resumed = prepare_resume(workflow, checkpoint)

    assert resumed.statuses == {"in": COMPLETE}


def test_replay_starts_a_new_execution(workflow, finished):
    plan = build_replay_plan(workflow, finished, "yes")

    replayed = prepare_replay(workflow, finished, plan, execution_id="exec-2")

    assert replayed.execution_id == "exec-2"
    assert replayed.source_execution_id == "exec-1"
    assert replayed.workflow_input == "go"
    assert replayed.statuses == {"in": COMPLETE, "check": COMPLETE, "no": SKIPPED}
    assert replayed.node_outputs == {"in": "go", "check": True}
    assert "node.yes.transcript" not in replayed.variables
    assert replayed.variables[active_handle_key("check")] == "true"
    assert finished.statuses["yes"] == COMPLETE
