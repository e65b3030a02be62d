from datetime import timedelta
from typing import Any, AsyncIterator

from evoflow.application.workflow.handlers.base import HandlerContext, NodeHandler
from evoflow.domain.workflow.entities.evolution import ApprovalResponse, utc_now
from evoflow.domain.workflow.entities.workflow import ApprovalNodeData, NodeType, WorkflowNode
from evoflow.domain.workflow.exceptions import ApprovalTimeoutError
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.events import HandlerEvent
from evoflow.domain.workflow.value_objects.reference import UNRESOLVED, ReferenceResolver
from evoflow.ports.secondary.approval_gate import IApprovalGate
from evoflow.shared.logger import get_logger

logger = get_logger(__name__)

APPROVED_HANDLE = "approved"
REJECTED_HANDLE = "rejected"
TIMEOUT_FEEDBACK = "Timed out waiting for approval"


def gather_display_data(data: ApprovalNodeData, context: HandlerContext) -> dict[str, Any]:
    """Outputs shown to the reviewer, keyed by node name. Nodes without output are left out."""
    display: dict[str, Any] = {}
    outputs = context.execution.node_outputs
    for selection in data.input_selections:
        node_id = context.node_name_to_id.get(selection.node_name) or selection.node_id
        if node_id is None or node_id not in outputs:
            continue
        output = outputs[node_id]
        if not selection.fields:
            display[selection.node_name] = output
            continue
        selected = {}
        for name in selection.fields:
            value = ReferenceResolver.navigate(output, name.split("."))
            if value is not UNRESOLVED:
                selected[name] = value
        display[selection.node_name] = selected
    return display


class ApprovalNodeHandler(NodeHandler):
    """
    Pauses the branch until a reviewer approves or rejects, then routes through
    the "approved" or "rejected" output handle.

    The decision is stored in node.<id>.approved and node.<id>.feedback. When
    timeoutMinutes passes without a decision the node applies timeoutAction.
    """

    def __init__(self, approval_gate: IApprovalGate):
        self._approval_gate = approval_gate

    @property
    def node_type(self) -> NodeType:
        return NodeType.APPROVAL

    def validate(self, node: WorkflowNode) -> list[str]:
        data: ApprovalNodeData = node.data
        errors = []
        if not data.prompt_message.strip():
            errors.append("Prompt message is required")
        if not data.input_selections:
            errors.append("At least one input selection is required")
        if data.timeout_minutes is not None and data.timeout_minutes < 0:
            errors.append("Timeout must be a positive number")
        return errors

    async def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        data: ApprovalNodeData = node.data
        display_data = gather_display_data(data, context)
        timeout = data.timeout_minutes * 60 if data.timeout_minutes else None

        request = {
            "nodeId": node.id,
            "nodeName": data.name,
            "promptMessage": resolved_inputs.get("promptMessage", data.prompt_message),
            "feedbackPrompt": data.feedback_prompt,
            "displayData": display_data,
            "timeoutAt": (utc_now() + timedelta(seconds=timeout)).isoformat() if timeout else None,
        }
        yield HandlerEvent.progress({"type": "node-waiting", "approval": request})

        # The gate registers the pending decision before its first await.
        try:
            response = await self._approval_gate.request_decision(
                context.execution_id, node.id, request, cancellation, timeout=timeout
            )
        except ApprovalTimeoutError:
            if data.timeout_action == "fail":
                raise
            logger.info("approval_timeout_applied", node_id=node.id, action=data.timeout_action)
            response = ApprovalResponse(
                approved=data.timeout_action == "approve",
                feedback=TIMEOUT_FEEDBACK if data.timeout_action == "reject" else None,
            )

        context.execution.set_variable(f"node.{node.id}.approved", response.approved)
        context.execution.set_variable(f"node.{node.id}.feedback", response.feedback or "")
        logger.info("approval_decided", node_id=node.id, approved=response.approved)

        output = {
            "approved": response.approved,
            "feedback": response.feedback,
            "respondedAt": response.responded_at.isoformat(),
            "displayedData": display_data,
        }
        yield HandlerEvent.complete(output, active_handle=APPROVED_HANDLE if response.approved else REJECTED_HANDLE)
