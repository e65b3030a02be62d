from abc import ABC, abstractmethod

from evoflow.domain.workflow.entities.evolution import EvolutionHistoryRecord


class IEvolutionHistoryRepository(ABC):
    """Append-only log of evolution attempts, one stream per workflow."""

    @abstractmethod
    async def append(self, record: EvolutionHistoryRecord) -> None:
        pass

    @abstractmethod
    async def list_for_workflow(self, workflow_id: str) -> list[EvolutionHistoryRecord]:
        """Records in append order; empty when nothing was recorded yet."""
        pass
