from typing import Any, Dict, Optional


class WorkflowException(Exception):
    def __init__(
        self,
        message: str,
        error_code: str = "WORKFLOW_ERROR",
        context: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.error_code, "message": self.message, "context": self.context}


# --- Graph validation -------------------------------------------------------

class CyclicDependencyError(WorkflowException):
    def __init__(self, cycle_nodes: list[str]):
        self.cycle_nodes = cycle_nodes
        super().__init__(
            message=f"Cyclic dependency detected involving nodes: {cycle_nodes}",
            error_code="CYCLIC_DEPENDENCY",
            context={"cycle_nodes": cycle_nodes}
        )

class EmptyWorkflowError(WorkflowException):
    def __init__(self):
        super().__init__(
            message="Workflow must contain at least one node",
            error_code="EMPTY_WORKFLOW",
            context={"error": "empty_workflow"}
        )

class InvalidEdgeReferenceError(WorkflowException):
    def __init__(self, edge_id: str, missing_node_id: str):
        self.edge_id = edge_id
        self.missing_node_id = missing_node_id
        super().__init__(
            message=f"Edge '{edge_id}' references missing node '{missing_node_id}'",
            error_code="INVALID_EDGE_REFERENCE",
            context={"edge_id": edge_id, "missing_node_id": missing_node_id}
        )

class DuplicateNodeIdError(WorkflowException):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(
            message=f"Duplicate node ID detected: {node_id}",
            error_code="DUPLICATE_NODE_ID",
            context={"node_id": node_id}
        )

class InvalidNodeStatusTransitionError(WorkflowException):
    def __init__(self, node_id: str, from_status: str, to_status: str):
        super().__init__(
            message=f"Invalid status transition for node '{node_id}' from '{from_status}' to '{to_status}'",
            error_code="INVALID_STATUS_TRANSITION",
            context={"node_id": node_id, "from_status": from_status, "to_status": to_status}
        )


# --- Lookup -----------------------------------------------------------------

class WorkflowNotFoundError(WorkflowException):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            message=f"Workflow '{workflow_id}' not found",
            error_code="WORKFLOW_NOT_FOUND",
            context={"workflow_id": workflow_id}
        )

class ExecutionNotFoundError(WorkflowException):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(
            message=f"Execution '{execution_id}' not found",
            error_code="EXECUTION_NOT_FOUND",
            context={"execution_id": execution_id}
        )


# --- Node execution ---------------------------------------------------------

class NodeExecutionError(WorkflowException):
    """Failure of a single node. Isolated to that node by the scheduler."""

    def __init__(
        self,
        node_id: str | None,
        message: str,
        error_code: str = "EXECUTION_FAILED",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.node_id = node_id
        super().__init__(
            message=message,
            error_code=error_code,
            context={"node_id": node_id, **(details or {})}
        )

class UnknownNodeTypeError(NodeExecutionError):
    def __init__(self, node_id: str, node_type: str):
        self.node_type = node_type
        super().__init__(
            node_id,
            f"No handler registered for node type '{node_type}'",
            error_code="UNKNOWN_NODE_TYPE",
            details={"node_type": node_type},
        )

class NodeValidationError(NodeExecutionError):
    def __init__(self, node_id: str, errors: list[str]):
        self.errors = errors
        super().__init__(
            node_id,
            f"Node '{node_id}' configuration is invalid: {'; '.join(errors)}",
            error_code="VALIDATION_FAILED",
            details={"errors": errors},
        )

class AgentError(NodeExecutionError):
    def __init__(self, node_id: str, message: str):
        super().__init__(node_id, message, error_code="AGENT_ERROR")

class ConditionEvaluationError(NodeExecutionError):
    def __init__(self, node_id: str, message: str):
        super().__init__(node_id, message, error_code="CONDITION_EVALUATION_FAILED")

class StalledExecutionError(WorkflowException):
    """No node is ready while some are still pending."""

    def __init__(self, pending_node_ids: list[str]):
        self.pending_node_ids = pending_node_ids
        super().__init__(
            message=f"Execution stalled with unsatisfiable nodes: {pending_node_ids}",
            error_code="CYCLE_DETECTED",
            context={"pending_node_ids": pending_node_ids}
        )

class ExecutionInterruptedError(WorkflowException):
    """Raised at a suspension point once the run's cancellation token fired."""

    def __init__(self, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(
            message="Execution interrupted",
            error_code="INTERRUPTED",
            context={"node_id": node_id}
        )


# --- Evolution --------------------------------------------------------------

class EvolutionParseError(WorkflowException):
    def __init__(self, message: str):
        super().__init__(message=message, error_code="EVOLUTION_PARSE_FAILED")

class EvolutionMutationError(WorkflowException):
    """A single mutation could not be applied; the whole batch is aborted."""

    def __init__(self, index: int | None, op: str, details: str):
        self.index = index
        self.op = op
        self.details = details
        super().__init__(
            message=f"Mutation {index} ({op}): {details}" if index is not None else details,
            error_code="EVOLUTION_APPLY_FAILED",
            context={"index": index, "op": op, "details": details}
        )

class EvolutionValidationError(WorkflowException):
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(
            message=f"Evolution failed validation: {'; '.join(errors)}",
            error_code="EVOLUTION_VALIDATION_FAILED",
            context={"errors": errors}
        )


# --- Replay and approval ----------------------------------------------------

class ReplayPlanError(WorkflowException):
    """A run cannot be replayed from the requested node."""

    def __init__(self, node_id: str, errors: list[str]):
        self.node_id = node_id
        self.errors = errors
        super().__init__(
            message=f"Cannot replay from '{node_id}': {'; '.join(errors)}",
            error_code="REPLAY_INVALID",
            context={"node_id": node_id, "errors": errors}
        )


class ApprovalTimeoutError(NodeExecutionError):
    def __init__(self, node_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            node_id,
            "Timed out waiting for approval",
            error_code="APPROVAL_TIMEOUT",
            details={"timeout_seconds": timeout_seconds},
        )
