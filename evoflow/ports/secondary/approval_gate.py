from abc import ABC, abstractmethod
from typing import Any

from evoflow.domain.workflow.entities.evolution import ApprovalResponse
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken


class IApprovalGate(ABC):
    """Where a run waits for a human decision: suggested evolutions and approval nodes."""

    @abstractmethod
    async def request_decision(
        self,
        execution_id: str,
        node_id: str,
        subject: Any,
        cancellation: CancellationToken,
        timeout: float | None = None,
    ) -> ApprovalResponse:
        """
        Blocks until a decision is submitted for (execution_id, node_id).
        Raises ExecutionInterruptedError when the run is cancelled first and
        ApprovalTimeoutError when timeout seconds pass without a decision.
        """
        pass
