import asyncio

from evoflow.domain.workflow.exceptions import ExecutionInterruptedError


class CancellationToken:
    """
    Run-scoped cooperative cancellation signal.

    Passed down every call chain (scheduler, handlers, agent adapters) and checked
    at each suspension point. Triggering it never kills a task.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, node_id: str | None = None) -> None:
        if self._event.is_set():
            raise ExecutionInterruptedError(node_id)
