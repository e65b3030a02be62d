import asyncio
from collections import defaultdict
from pathlib import Path

from pydantic import ValidationError

from evoflow.domain.workflow.entities.evolution import EvolutionHistoryRecord
from evoflow.ports.secondary.evolution_history import IEvolutionHistoryRepository
from evoflow.shared.logger import get_logger

logger = get_logger(__name__)


class JsonlEvolutionHistoryRepository(IEvolutionHistoryRepository):
    """
    One append-only JSON Lines file per workflow: <base_dir>/<workflow_id>/history.jsonl
    """

    def __init__(self, base_dir: str | Path):
        self._base_dir = Path(base_dir)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def history_path(self, workflow_id: str) -> Path:
        return self._base_dir / workflow_id / "history.jsonl"

    async def append(self, record: EvolutionHistoryRecord) -> None:
        path = self.history_path(record.workflow_id)
        line = record.to_json_line() + "\n"
        async with self._locks[record.workflow_id]:
            await asyncio.to_thread(self._append_line, path, line)
        logger.info(
            "evolution_history_appended",
            workflow_id=record.workflow_id,
            node_id=record.node_id,
            applied=record.applied,
        )

    @staticmethod
    def _append_line(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(line)

    async def list_for_workflow(self, workflow_id: str) -> list[EvolutionHistoryRecord]:
        path = self.history_path(workflow_id)
        async with self._locks[workflow_id]:
            lines = await asyncio.to_thread(self._read_lines, path)

        records = []
        for line_number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(EvolutionHistoryRecord.model_validate_json(line))
            except ValidationError as e:
                logger.warning(
                    "evolution_history_line_skipped",
                    workflow_id=workflow_id,
                    line=line_number,
                    error=str(e),
                )
        return records

    @staticmethod
    def _read_lines(path: Path) -> list[str]:
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()
