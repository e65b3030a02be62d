from abc import ABC, abstractmethod
from typing import Any

from evoflow.domain.workflow.entities.execution import ExecutionCheckpoint
from evoflow.domain.workflow.value_objects.node_status import NodeStatus


class IStateStore(ABC):
    """
    Interface for the execution state store (Redis).

    Holds node statuses, outputs and variables of a run so that it can be resumed.
    """

    @abstractmethod
    async def set_execution_metadata(self, execution_id: str, metadata: dict) -> None:
        """Stores run metadata (workflow_id, status) for quick access."""
        pass

    @abstractmethod
    async def get_execution_metadata(self, execution_id: str) -> dict | None:
        pass

    @abstractmethod
    async def set_node_status(self, execution_id: str, node_id: str, status: NodeStatus) -> None:
        pass

    @abstractmethod
    async def get_all_node_statuses(self, execution_id: str) -> dict[str, NodeStatus]:
        pass

    @abstractmethod
    async def set_node_output(self, execution_id: str, node_id: str, output: Any) -> None:
        pass

    @abstractmethod
    async def get_all_outputs(self, execution_id: str) -> dict[str, Any]:
        pass

    @abstractmethod
    async def set_variables(self, execution_id: str, variables: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_variables(self, execution_id: str) -> dict[str, Any]:
        pass

    @abstractmethod
    async def load_checkpoint(self, execution_id: str) -> ExecutionCheckpoint | None:
        """Assembles a resumable checkpoint, or None if the run is unknown."""
        pass
