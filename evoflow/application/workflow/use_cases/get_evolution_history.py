from evoflow.domain.workflow.entities.evolution import EvolutionHistoryRecord
from evoflow.ports.secondary.evolution_history import IEvolutionHistoryRepository


class GetEvolutionHistoryUseCase:
    def __init__(self, history_repository: IEvolutionHistoryRepository):
        self._history_repository = history_repository

    async def execute(
        self,
        workflow_id: str,
        limit: int | None = None,
        applied_only: bool = False,
    ) -> list[EvolutionHistoryRecord]:
        """Records oldest first; with a limit, only the most recent ones."""
        records = await self._history_repository.list_for_workflow(workflow_id)
        if applied_only:
            records = [record for record in records if record.applied]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records
