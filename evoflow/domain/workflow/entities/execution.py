from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from evoflow.domain.workflow.exceptions import InvalidNodeStatusTransitionError
from evoflow.domain.workflow.value_objects.node_status import NodeStatus


def active_handle_key(node_id: str) -> str:
    """Variable holding the output handle a branching node took."""
    return f"node.{node_id}.activeHandle"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    INTERRUPTED = "interrupted"


@dataclass
class NodeExecution:
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    error: str | None = None
    error_code: str | None = None
    skip_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def transition_to(self, target: NodeStatus) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidNodeStatusTransitionError(self.node_id, self.status.value, target.value)
        self.status = target

        if target == NodeStatus.RUNNING:
            self.started_at = datetime.now(timezone.utc)
        elif target.is_terminal:
            self.completed_at = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0


@dataclass
class ExecutionCheckpoint:
    """Persisted execution state a run can be resumed from."""

    execution_id: str
    workflow_id: str
    workflow_input: Any = ""
    statuses: dict[str, NodeStatus] = field(default_factory=dict)
    node_outputs: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    source_execution_id: str | None = None


@dataclass
class ExecutionContext:
    """
    Per-run mutable state: node outputs, named variables and a status per node.

    Created once per run and owned exclusively by it. Each node's entries are written
    only from that node's own task; all writes are synchronous so they never
    interleave on the event loop.
    """
    workflow_id: str
    execution_id: str = field(default_factory=lambda: str(uuid4()))
    status: ExecutionStatus = ExecutionStatus.RUNNING
    workflow_input: Any = ""
    node_outputs: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    node_states: dict[str, NodeExecution] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    @classmethod
    def create(
        cls,
        workflow_id: str,
        node_ids: list[str],
        workflow_input: Any = "",
        checkpoint: ExecutionCheckpoint | None = None,
    ) -> "ExecutionContext":
        if checkpoint is None:
            context = cls(workflow_id=workflow_id, workflow_input=workflow_input)
            context.initialize_nodes(node_ids)
            return context

        context = cls(
            workflow_id=workflow_id,
            execution_id=checkpoint.execution_id,
            workflow_input=workflow_input,
            variables=dict(checkpoint.variables),
        )
        context.initialize_nodes(node_ids)
        for node_id, status in checkpoint.statuses.items():
            # Statuses other than complete/skipped start over as pending.
            if node_id in context.node_states and status in (NodeStatus.COMPLETE, NodeStatus.SKIPPED):
                context.node_states[node_id].status = status
                if status == NodeStatus.COMPLETE and node_id in checkpoint.node_outputs:
                    context.node_outputs[node_id] = checkpoint.node_outputs[node_id]
        return context

    def initialize_nodes(self, node_ids: list[str]) -> None:
        for node_id in node_ids:
            self.node_states[node_id] = NodeExecution(node_id=node_id)

    def get_node_status(self, node_id: str) -> NodeStatus:
        return self.node_states[node_id].status

    @property
    def statuses(self) -> dict[str, NodeStatus]:
        return {node_id: node.status for node_id, node in self.node_states.items()}

    def set_node_running(self, node_id: str) -> None:
        self.node_states[node_id].transition_to(NodeStatus.RUNNING)

    def set_node_completed(self, node_id: str, output: Any) -> None:
        self.node_states[node_id].transition_to(NodeStatus.COMPLETE)
        self.node_outputs[node_id] = output

    def set_node_failed(self, node_id: str, error: str, error_code: str = "EXECUTION_FAILED") -> None:
        node = self.node_states[node_id]
        node.transition_to(NodeStatus.ERROR)
        node.error = error
        node.error_code = error_code

    def set_node_skipped(self, node_id: str, reason: str) -> None:
        node = self.node_states[node_id]
        node.transition_to(NodeStatus.SKIPPED)
        node.skip_reason = reason

    def pending_node_ids(self) -> list[str]:
        return [
            node_id for node_id, node in self.node_states.items() if node.status == NodeStatus.PENDING
        ]

    def has_failed(self) -> bool:
        return any(node.status == NodeStatus.ERROR for node in self.node_states.values())

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def set_variable(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def mark_finished(self, status: ExecutionStatus) -> None:
        self.status = status
        self.completed_at = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def checkpoint(self) -> ExecutionCheckpoint:
        return ExecutionCheckpoint(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            workflow_input=self.workflow_input,
            statuses=self.statuses,
            node_outputs=dict(self.node_outputs),
            variables=dict(self.variables),
        )
