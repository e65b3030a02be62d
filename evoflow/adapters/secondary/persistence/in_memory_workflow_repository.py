import asyncio
from typing import Any

from evoflow.domain.workflow.entities.workflow import Workflow
from evoflow.ports.secondary.workflow_repository import IWorkflowRepository


class InMemoryWorkflowRepository(IWorkflowRepository):
    """Process-local store. Callers always receive and hand over independent copies."""

    def __init__(self, workflows: list[Workflow] | None = None):
        self._workflows: dict[str, Workflow] = {}
        self._lock = asyncio.Lock()
        for workflow in workflows or []:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def save(self, workflow: Workflow) -> None:
        async with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_by_id(self, workflow_id: str) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def update(self, workflow_id: str, fields: dict[str, Any]) -> Workflow | None:
        async with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                return None
            updated = current.with_updates(fields).model_copy(deep=True)
            self._workflows[workflow_id] = updated
            return updated.model_copy(deep=True)
