from abc import ABC, abstractmethod
from typing import Any

from evoflow.domain.workflow.entities.workflow import Workflow


class IWorkflowRepository(ABC):
    """
    Interface for persistence of workflow documents.

    Implementations must serialize concurrent update calls for the same workflow.
    """

    @abstractmethod
    async def save(self, workflow: Workflow) -> None:
        """Persists a workflow document, replacing any existing one with the same id."""
        pass

    @abstractmethod
    async def get_by_id(self, workflow_id: str) -> Workflow | None:
        """Retrieves an independent copy of a workflow document."""
        pass

    @abstractmethod
    async def update(self, workflow_id: str, fields: dict[str, Any]) -> Workflow | None:
        """
        Applies a partial update (python field names) and returns the stored result,
        or None when the workflow does not exist.
        """
        pass
