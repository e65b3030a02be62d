import asyncio
from typing import Any

from evoflow.domain.workflow.entities.evolution import ApprovalResponse
from evoflow.domain.workflow.exceptions import ApprovalTimeoutError, ExecutionInterruptedError
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.ports.secondary.approval_gate import IApprovalGate
from evoflow.shared.logger import get_logger

logger = get_logger(__name__)


class InMemoryApprovalGate(IApprovalGate):
    """Pending decisions are futures keyed by (execution_id, node_id)."""

    def __init__(self):
        self._pending: dict[tuple[str, str], asyncio.Future] = {}
        self._subjects: dict[tuple[str, str], Any] = {}

    def pending(self) -> dict[tuple[str, str], Any]:
        return dict(self._subjects)

    async def request_decision(
        self,
        execution_id: str,
        node_id: str,
        subject: Any,
        cancellation: CancellationToken,
        timeout: float | None = None,
    ) -> ApprovalResponse:
        key = (execution_id, node_id)
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        self._subjects[key] = subject
        logger.info("awaiting_approval", execution_id=execution_id, node_id=node_id, timeout=timeout)

        cancel_waiter = asyncio.ensure_future(cancellation.wait())
        try:
            await asyncio.wait({future, cancel_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if future.done():
                return future.result()
            if cancel_waiter.done():
                raise ExecutionInterruptedError(node_id)
            logger.info("approval_timed_out", execution_id=execution_id, node_id=node_id)
            raise ApprovalTimeoutError(node_id, timeout)
        finally:
            cancel_waiter.cancel()
            if not future.done():
                future.cancel()
            self._pending.pop(key, None)
            self._subjects.pop(key, None)

    def respond(self, execution_id: str, node_id: str, approved: bool, feedback: str | None = None) -> bool:
        """Submit a decision. Returns False when nothing is waiting for it."""
        future = self._pending.get((execution_id, node_id))
        if future is None or future.done():
            return False
        future.set_result(ApprovalResponse(approved=approved, feedback=feedback))
        logger.info(
            "approval_decision_submitted",
            execution_id=execution_id,
            node_id=node_id,
            approved=approved,
        )
        return True
