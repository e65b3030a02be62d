from evoflow.domain.workflow.entities.workflow import Workflow, WorkflowEdge
from evoflow.domain.workflow.services.workflow_diff import create_snapshot, describe_workflow_diff


def _workflow():
    return Workflow.model_validate(
        {
            "id": "wf-1",
            "name": "Flow",
            "nodes": [
                {"id": "a", "type": "input", "data": {"name": "A"}},
                {"id": "b", "type": "claude-agent", "data": {"name": "B", "userQuery": "q"}},
                {"id": "c", "type": "output", "data": {"name": "C"}},
            ],
            "edges": [
                {"id": "e1", "source": "a", "target": "b"},
                {"id": "e2", "source": "b", "target": "c"},
            ],
        }
    )


def test_snapshot_compared_to_itself_is_empty():
    snapshot = create_snapshot(_workflow())

    diff = describe_workflow_diff(snapshot, snapshot)

    assert diff.is_empty
    assert diff.model_dump() == {
        "added_nodes": [],
        "removed_nodes": [],
        "changed_nodes": [],
        "added_edges": [],
        "removed_edges": [],
    }


def test_two_snapshots_of_same_workflow_are_equal():
    workflow = _workflow()

    assert describe_workflow_diff(create_snapshot(workflow), create_snapshot(workflow)).is_empty


def test_snapshot_is_independent_of_later_changes():
    workflow = _workflow()
    snapshot = create_snapshot(workflow)

    workflow.nodes[1].data.user_query = "changed"

    assert snapshot.nodes[1].data.user_query == "q"


def test_added_removed_and_changed():
    before_workflow = _workflow()
    after_workflow = _workflow()
    after_workflow.nodes = [n for n in after_workflow.nodes if n.id != "c"]
    after_workflow.nodes[1].data.model = "opus"
    after_workflow.nodes.append(
        after_workflow.nodes[0].model_copy(update={"id": "d"}, deep=True)
    )
    after_workflow.edges = [
        after_workflow.edges[0],
        WorkflowEdge(id="e3", source="b", target="d"),
    ]

    diff = describe_workflow_diff(create_snapshot(before_workflow), create_snapshot(after_workflow))

    assert diff.added_nodes == ["d"]
    assert diff.removed_nodes == ["c"]
    assert diff.changed_nodes == ["b"]
    assert diff.added_edges == ["e3"]
    assert diff.removed_edges == ["e2"]


def test_edge_endpoint_change_under_same_id_is_not_reported():
    before_workflow = _workflow()
    after_workflow = _workflow()
    after_workflow.edges[1] = WorkflowEdge(id="e2", source="a", target="c")

    diff = describe_workflow_diff(create_snapshot(before_workflow), create_snapshot(after_workflow))

    assert diff.is_empty
