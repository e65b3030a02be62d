import asyncio
import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evoflow.adapters.secondary.persistence.models import WorkflowModel, utc_now
from evoflow.domain.workflow.entities.workflow import Workflow
from evoflow.ports.secondary.workflow_repository import IWorkflowRepository


class PostgresWorkflowRepository(IWorkflowRepository):
    """
    Stores each workflow as a JSON document row.

    Updates lock the row (SELECT ... FOR UPDATE) so concurrent writers across
    processes are serialized; the local lock serializes callers sharing this session.
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._lock = asyncio.Lock()

    async def save(self, workflow: Workflow) -> None:
        model = WorkflowModel(
            id=workflow.id,
            name=workflow.name,
            document=json.dumps(workflow.to_document()),
            created_at=workflow.created_at or utc_now(),
            updated_at=workflow.updated_at,
        )
        async with self._lock:
            await self._session.merge(model)
            await self._session.commit()

    async def get_by_id(self, workflow_id: str) -> Workflow | None:
        async with self._lock:
            result = await self._session.execute(
                select(WorkflowModel).where(WorkflowModel.id == workflow_id)
            )
            model = result.scalar_one_or_none()

        if not model:
            return None

        return self._to_entity(model)

    async def update(self, workflow_id: str, fields: dict[str, Any]) -> Workflow | None:
        async with self._lock:
            result = await self._session.execute(
                select(WorkflowModel).where(WorkflowModel.id == workflow_id).with_for_update()
            )
            model = result.scalar_one_or_none()
            if not model:
                await self._session.rollback()
                return None

            updated = self._to_entity(model).with_updates(fields)
            model.name = updated.name
            model.document = json.dumps(updated.to_document())
            model.updated_at = updated.updated_at
            await self._session.commit()
            return updated

    @staticmethod
    def _to_entity(model: WorkflowModel) -> Workflow:
        workflow = Workflow.model_validate(json.loads(model.document))
        workflow.created_at = workflow.created_at or model.created_at
        workflow.updated_at = model.updated_at
        return workflow
