from evoflow.domain.workflow.entities.evolution import WorkflowDiff, WorkflowSnapshot
from evoflow.domain.workflow.entities.workflow import Workflow


def create_snapshot(workflow: Workflow) -> WorkflowSnapshot:
    """Immutable point-in-time capture of a workflow's graph."""
    return WorkflowSnapshot(
        id=workflow.id,
        name=workflow.name,
        nodes=[node.model_copy(deep=True) for node in workflow.nodes],
        edges=[edge.model_copy(deep=True) for edge in workflow.edges],
    )


def describe_workflow_diff(before: WorkflowSnapshot, after: WorkflowSnapshot) -> WorkflowDiff:
    """
    Structural diff between two snapshots.

    Nodes are matched by id and compared by their full serialized content.
    Edges are compared by id only; an edge keeping its id is never reported as changed.
    """
    before_nodes = {node.id: node for node in before.nodes}
    after_nodes = {node.id: node for node in after.nodes}
    before_edges = {edge.id for edge in before.edges}
    after_edges = {edge.id for edge in after.edges}

    return WorkflowDiff(
        added_nodes=[node_id for node_id in after_nodes if node_id not in before_nodes],
        removed_nodes=[node_id for node_id in before_nodes if node_id not in after_nodes],
        changed_nodes=[
            node_id
            for node_id, node in after_nodes.items()
            if node_id in before_nodes and before_nodes[node_id].fingerprint() != node.fingerprint()
        ],
        added_edges=[edge.id for edge in after.edges if edge.id not in before_edges],
        removed_edges=[edge.id for edge in before.edges if edge.id not in after_edges],
    )
