from typing import Any, AsyncIterator

from evoflow.application.workflow.handlers.base import HandlerContext, NodeHandler
from evoflow.domain.workflow.entities.workflow import NodeType, WorkflowNode
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.events import HandlerEvent


class InputNodeHandler(NodeHandler):
    @property
    def node_type(self) -> NodeType:
        return NodeType.INPUT

    async def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        yield HandlerEvent.complete(context.execution.workflow_input)


class OutputNodeHandler(NodeHandler):
    """A single upstream output passes through; several are keyed by node id."""

    @property
    def node_type(self) -> NodeType:
        return NodeType.OUTPUT

    async def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        outputs = context.completed_predecessor_outputs(node.id)
        if len(outputs) == 1:
            yield HandlerEvent.complete(next(iter(outputs.values())))
        else:
            yield HandlerEvent.complete(outputs)


class MergeNodeHandler(NodeHandler):
    """Combines the outputs of every completed branch, keyed by node name."""

    @property
    def node_type(self) -> NodeType:
        return NodeType.MERGE

    async def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        merged = {
            context.node_name(pred): output
            for pred, output in context.completed_predecessor_outputs(node.id).items()
        }
        yield HandlerEvent.complete(merged)
