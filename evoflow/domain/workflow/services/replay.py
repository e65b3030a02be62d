from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Iterable
from uuid import uuid4

from evoflow.domain.workflow.entities.execution import ExecutionCheckpoint, active_handle_key
from evoflow.domain.workflow.entities.workflow import Workflow
from evoflow.domain.workflow.value_objects.node_status import NodeStatus

REUSABLE_STATUSES = frozenset({NodeStatus.COMPLETE, NodeStatus.SKIPPED})


def _walk(start: Iterable[str], step) -> set[str]:
    seen: set[str] = set()
    queue = deque(start)
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(step(current))
    return seen


def descendant_ids(workflow: Workflow, node_id: str) -> set[str]:
    return _walk(
        (e.target for e in workflow.edges if e.source == node_id),
        lambda current: (e.target for e in workflow.edges if e.source == current),
    )


def ancestor_ids(workflow: Workflow, node_id: str) -> set[str]:
    return _walk(
        (e.source for e in workflow.edges if e.target == node_id),
        lambda current: (e.source for e in workflow.edges if e.target == current),
    )


def variable_owner(key: str) -> str | None:
    """Node id a run variable belongs to (node.<id>.* and agent.session.<id>)."""
    parts = key.split(".")
    if parts[0] == "node" and len(parts) > 1:
        return parts[1]
    if key.startswith("agent.session.") and len(parts) > 2:
        return parts[2]
    return None


def filter_replay_variables(variables: dict[str, Any], replay_node_ids: set[str]) -> dict[str, Any]:
    """Drops the variables owned by nodes that are about to run again."""
    return {
        key: value
        for key, value in variables.items()
        if variable_owner(key) not in replay_node_ids
    }


def compute_inactive_branch_nodes(
    workflow: Workflow,
    checkpoint: ExecutionCheckpoint,
    replay_node_ids: set[str],
) -> set[str]:
    """
    Nodes cut off by an output handle a settled branching node did not take.

    A node is inactive when every incoming edge is a branch not taken or comes
    from an inactive node; a join still fed by the taken branch stays active.
    """
    dead_edges: set[str] = set()
    for node in workflow.nodes:
        if node.id in replay_node_ids or checkpoint.statuses.get(node.id) != NodeStatus.COMPLETE:
            continue
        handle = checkpoint.variables.get(active_handle_key(node.id))
        if handle is None:
            continue
        for edge in workflow.edges:
            if edge.source == node.id and edge.source_handle and edge.source_handle != handle:
                dead_edges.add(edge.id)

    inactive: set[str] = set()
    changed = bool(dead_edges)
    while changed:
        changed = False
        for node in workflow.nodes:
            if node.id in inactive:
                continue
            incoming = [e for e in workflow.edges if e.target == node.id]
            if incoming and all(e.id in dead_edges or e.source in inactive for e in incoming):
                inactive.add(node.id)
                changed = True
    return inactive


@dataclass(frozen=True)
class ReplayPlan:
    from_node_id: str
    replay_node_ids: set[str] = field(default_factory=set)
    inactive_node_ids: set[str] = field(default_factory=set)
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def build_replay_plan(workflow: Workflow, checkpoint: ExecutionCheckpoint, from_node_id: str) -> ReplayPlan:
    """
    Which nodes re-run when replaying a checkpointed execution from one node.

    The selected node and everything downstream of it run again. Every ancestor
    must have settled in the source run, completed ancestors with their output,
    and the selected node must not sit on a branch that was not taken.
    """
    if workflow.get_node(from_node_id) is None:
        return ReplayPlan(
            from_node_id, errors=[f"Node '{from_node_id}' does not exist in the workflow"]
        )

    replay_node_ids = descendant_ids(workflow, from_node_id) | {from_node_id}
    errors = []
    for ancestor_id in sorted(ancestor_ids(workflow, from_node_id)):
        status = checkpoint.statuses.get(ancestor_id)
        if status not in REUSABLE_STATUSES:
            errors.append(f"Upstream node '{ancestor_id}' did not settle in the source run")
        elif status == NodeStatus.COMPLETE and ancestor_id not in checkpoint.node_outputs:
            errors.append(f"Output of upstream node '{ancestor_id}' is missing from the checkpoint")

    inactive = compute_inactive_branch_nodes(workflow, checkpoint, replay_node_ids)
    if from_node_id in inactive:
        errors.append(
            f"Node '{from_node_id}' is on an inactive branch; replay from the branching node instead"
        )
    return ReplayPlan(from_node_id, replay_node_ids, inactive, errors)


def prepare_resume(workflow: Workflow, checkpoint: ExecutionCheckpoint) -> ExecutionCheckpoint:
    """
    Checkpoint to continue a run with.

    Nodes that did not settle start over, and so does everything downstream of
    them that did not complete: those nodes were skipped because of the failure.
    Branch skips behind a completed condition are recomputed from its stored handle.
    """
    unsettled = [
        node.id for node in workflow.nodes if checkpoint.statuses.get(node.id) not in REUSABLE_STATUSES
    ]
    reset = set(unsettled)
    for node_id in unsettled:
        reset |= descendant_ids(workflow, node_id)

    statuses = {
        node_id: status
        for node_id, status in checkpoint.statuses.items()
        if node_id not in reset or status == NodeStatus.COMPLETE
    }
    return replace(checkpoint, statuses=statuses)


def prepare_replay(
    workflow: Workflow,
    checkpoint: ExecutionCheckpoint,
    plan: ReplayPlan,
    execution_id: str | None = None,
) -> ExecutionCheckpoint:
    """Checkpoint for a new execution that re-runs plan.replay_node_ids on top of the source run."""
    replayed = ExecutionCheckpoint(
        execution_id=execution_id or str(uuid4()),
        workflow_id=checkpoint.workflow_id,
        workflow_input=checkpoint.workflow_input,
        statuses={
            node_id: status
            for node_id, status in checkpoint.statuses.items()
            if node_id not in plan.replay_node_ids
        },
        node_outputs={
            node_id: output
            for node_id, output in checkpoint.node_outputs.items()
            if node_id not in plan.replay_node_ids
        },
        variables=filter_replay_variables(checkpoint.variables, plan.replay_node_ids),
        source_execution_id=checkpoint.execution_id,
    )
    return prepare_resume(workflow, replayed)
