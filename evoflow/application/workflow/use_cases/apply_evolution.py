from dataclasses import dataclass

from evoflow.domain.workflow.entities.evolution import (
    EvolutionHistoryRecord,
    WorkflowEvolution,
    WorkflowSnapshot,
)
from evoflow.domain.workflow.entities.workflow import Workflow
from evoflow.domain.workflow.exceptions import EvolutionMutationError, WorkflowNotFoundError
from evoflow.domain.workflow.services.graph_mutator import GraphMutator
from evoflow.domain.workflow.services.workflow_diff import create_snapshot, describe_workflow_diff
from evoflow.domain.workflow.value_objects.evolution_policy import EvolutionMode
from evoflow.ports.secondary.evolution_history import IEvolutionHistoryRepository
from evoflow.ports.secondary.metrics import IMetrics
from evoflow.ports.secondary.workflow_repository import IWorkflowRepository
from evoflow.shared.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EvolutionAttempt:
    """Who proposed an evolution, and in which mode."""

    node_id: str = "manual"
    execution_id: str | None = None
    mode: EvolutionMode = EvolutionMode.AUTO_APPLY


@dataclass(frozen=True)
class EvolutionResult:
    workflow: Workflow
    record: EvolutionHistoryRecord


class ApplyEvolutionUseCase:
    """
    Applies a WorkflowEvolution to a workflow and records the attempt.

    Mutations run on a deep copy; only a fully applied batch is persisted through
    the repository's update primitive. Failed batches leave the stored workflow
    untouched and are still written to the history with applied=False.
    """

    def __init__(
        self,
        workflow_repository: IWorkflowRepository,
        history_repository: IEvolutionHistoryRepository,
        metrics: IMetrics | None = None,
    ):
        self._workflow_repository = workflow_repository
        self._history_repository = history_repository
        self._metrics = metrics

    async def execute(
        self,
        workflow: Workflow,
        evolution: WorkflowEvolution,
        attempt: EvolutionAttempt = EvolutionAttempt(),
    ) -> EvolutionResult:
        before = create_snapshot(workflow)
        mutator = GraphMutator(workflow)

        try:
            working = mutator.apply_all(evolution.mutations)
        except EvolutionMutationError as e:
            logger.warning(
                "evolution_rejected",
                workflow_id=workflow.id,
                node_id=attempt.node_id,
                error=e.message,
            )
            await self.record_attempt(workflow, evolution, attempt, [e.message], before)
            raise

        if mutator.ignored_ops:
            logger.warning("evolution_ops_ignored", workflow_id=workflow.id, ops=mutator.ignored_ops)

        updated = await self._workflow_repository.update(
            workflow.id,
            {
                "name": working.name,
                "description": working.description,
                "working_directory": working.working_directory,
                "nodes": working.nodes,
                "edges": working.edges,
            },
        )
        if updated is None:
            error = WorkflowNotFoundError(workflow.id)
            await self.record_attempt(workflow, evolution, attempt, [error.message], before)
            raise error

        after = create_snapshot(updated)
        diff = describe_workflow_diff(before, after)
        record = EvolutionHistoryRecord(
            workflow_id=workflow.id,
            execution_id=attempt.execution_id,
            node_id=attempt.node_id,
            mode=attempt.mode,
            evolution=evolution,
            applied=True,
            before_snapshot=before,
            after_snapshot=after,
            diff=diff,
        )
        await self._history_repository.append(record)
        if self._metrics:
            self._metrics.record_evolution(attempt.mode.value, True)

        logger.info(
            "evolution_applied",
            workflow_id=workflow.id,
            node_id=attempt.node_id,
            mutations=len(evolution.mutations),
            added_nodes=diff.added_nodes,
            removed_nodes=diff.removed_nodes,
            changed_nodes=diff.changed_nodes,
        )
        return EvolutionResult(workflow=updated, record=record)

    async def execute_for_id(
        self,
        workflow_id: str,
        evolution: WorkflowEvolution,
        attempt: EvolutionAttempt = EvolutionAttempt(),
    ) -> EvolutionResult:
        workflow = await self._workflow_repository.get_by_id(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return await self.execute(workflow, evolution, attempt)

    async def record_attempt(
        self,
        workflow: Workflow,
        evolution: WorkflowEvolution,
        attempt: EvolutionAttempt,
        validation_errors: list[str] | None = None,
        before: WorkflowSnapshot | None = None,
    ) -> EvolutionHistoryRecord:
        """Record an attempt that did not change the workflow."""
        record = EvolutionHistoryRecord(
            workflow_id=workflow.id,
            execution_id=attempt.execution_id,
            node_id=attempt.node_id,
            mode=attempt.mode,
            evolution=evolution,
            applied=False,
            validation_errors=validation_errors or None,
            before_snapshot=before or create_snapshot(workflow),
        )
        await self._history_repository.append(record)
        if self._metrics:
            self._metrics.record_evolution(attempt.mode.value, False)
        return record
