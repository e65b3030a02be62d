from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

from evoflow.domain.workflow.entities.execution import ExecutionContext
from evoflow.domain.workflow.entities.workflow import NodeType, Workflow, WorkflowNode
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.dag import DAG
from evoflow.domain.workflow.value_objects.events import HandlerEvent
from evoflow.domain.workflow.value_objects.node_status import NodeStatus
from evoflow.domain.workflow.value_objects.reference import UNRESOLVED, ReferenceResolver


@dataclass
class HandlerContext:
    """Read access to the run a handler executes in, plus the variable table."""

    workflow: Workflow
    dag: DAG
    execution: ExecutionContext
    node_name_to_id: dict[str, str]

    @property
    def workflow_id(self) -> str:
        return self.workflow.id

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id

    def node_name(self, node_id: str) -> str:
        node = self.dag.nodes.get(node_id)
        return (node.name if node else "") or node_id

    def resolve_reference(self, text: str) -> Any:
        """Raw value of a text that is exactly one reference, or UNRESOLVED."""
        parsed = ReferenceResolver.parse_reference(text.strip())
        if parsed is None:
            return UNRESOLVED
        return ReferenceResolver.resolve_reference(
            parsed, self.execution.node_outputs, self.node_name_to_id, self.execution.variables
        )

    def interpolate(self, text: str) -> str:
        return ReferenceResolver.interpolate(
            text, self.execution.node_outputs, self.node_name_to_id, self.execution.variables
        )

    def completed_predecessor_outputs(self, node_id: str) -> dict[str, Any]:
        """Outputs of predecessors that completed, keyed by node id, in edge order."""
        return {
            pred: self.execution.node_outputs[pred]
            for pred in self.dag.get_predecessors(node_id)
            if self.execution.get_node_status(pred) == NodeStatus.COMPLETE
            and pred in self.execution.node_outputs
        }


class NodeHandler(ABC):
    """Executes one node type. Registered in a HandlerRegistry by node_type."""

    @property
    @abstractmethod
    def node_type(self) -> NodeType:
        pass

    def validate(self, node: WorkflowNode) -> list[str]:
        """Configuration problems that prevent running the node."""
        return []

    @abstractmethod
    def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        """
        Run the node, yielding progress events and finally exactly one
        complete or error event.

        resolved_inputs is the node's data (camelCase keys) with every
        string interpolated against the outputs available so far.
        """
        pass
