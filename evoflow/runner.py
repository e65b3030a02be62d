import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

from prometheus_client import start_http_server

from evoflow.adapters.secondary.agents.simulated_agent import SimulatedAgentAdapter
from evoflow.adapters.secondary.approval.in_memory_approval_gate import InMemoryApprovalGate
from evoflow.adapters.secondary.persistence.in_memory_workflow_repository import InMemoryWorkflowRepository
from evoflow.adapters.secondary.persistence.jsonl_evolution_history import JsonlEvolutionHistoryRepository
from evoflow.adapters.secondary.persistence.models import Base
from evoflow.adapters.secondary.persistence.pg_workflow_repository import PostgresWorkflowRepository
from evoflow.adapters.secondary.redis.redis_state_store import RedisStateStore
from evoflow.application.workflow.handlers.agent_handler import AgentNodeHandler
from evoflow.application.workflow.handlers.approval_handler import ApprovalNodeHandler
from evoflow.application.workflow.handlers.condition_handler import ConditionNodeHandler
from evoflow.application.workflow.handlers.flow_handlers import (
    InputNodeHandler,
    MergeNodeHandler,
    OutputNodeHandler,
)
from evoflow.application.workflow.handlers.registry import HandlerRegistry
from evoflow.application.workflow.handlers.self_reflect_handler import SelfReflectNodeHandler
from evoflow.application.workflow.use_cases.apply_evolution import ApplyEvolutionUseCase
from evoflow.application.workflow.use_cases.run_workflow import RunWorkflowUseCase
from evoflow.domain.workflow.entities.workflow import NodeType, Workflow
from evoflow.domain.workflow.exceptions import WorkflowException
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.events import ExecutionEvent, ExecutionEventType
from evoflow.ports.secondary.agent_adapter import IAgentAdapter
from evoflow.shared.config import Settings, settings
from evoflow.shared.database import create_engine, create_session_factory
from evoflow.shared.logger import configure_logging, get_logger
from evoflow.shared.metrics import MetricsRegistry
from evoflow.shared.redis_client import create_redis_client

logger = get_logger(__name__)


class WorkflowRunner:
    """
    Wires repositories, state store, handlers and use cases for one process.

    Resources are created in open() and released in close(); nothing is shared
    through module-level singletons.
    """

    def __init__(
        self,
        config: Settings = settings,
        persistent: bool = True,
        adapters: list[IAgentAdapter] | None = None,
        metrics: MetricsRegistry | None = None,
    ):
        self._config = config
        self._persistent = persistent
        self._adapters = adapters
        self._metrics = metrics
        self._engine = None
        self._session = None
        self._redis = None
        self.approval_gate = InMemoryApprovalGate()
        self.workflow_repository = None
        self.run_workflow: RunWorkflowUseCase | None = None

    async def open(self) -> None:
        state_store = None
        if self._persistent:
            self._engine = create_engine(self._config)
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._session = create_session_factory(self._engine)()
            self.workflow_repository = PostgresWorkflowRepository(self._session)

            self._redis = create_redis_client(self._config)
            state_store = RedisStateStore(self._redis, ttl_seconds=self._config.CHECKPOINT_TTL_SECONDS)
        else:
            self.workflow_repository = InMemoryWorkflowRepository()

        if self._metrics is None:
            self._metrics = MetricsRegistry()

        adapters = self._adapters or [
            SimulatedAgentAdapter(node_type.value, delay_ms=self._config.SIMULATED_AGENT_DELAY_MS)
            for node_type in (NodeType.CLAUDE_AGENT, NodeType.CODEX_AGENT)
        ]
        apply_evolution = ApplyEvolutionUseCase(
            self.workflow_repository,
            JsonlEvolutionHistoryRepository(self._config.EVOLUTIONS_DIR),
            metrics=self._metrics,
        )

        registry = HandlerRegistry(
            [
                InputNodeHandler(),
                OutputNodeHandler(),
                MergeNodeHandler(),
                ConditionNodeHandler(),
                ApprovalNodeHandler(self.approval_gate),
            ]
        )
        for adapter in adapters:
            registry.register(AgentNodeHandler(adapter))
        registry.register(
            SelfReflectNodeHandler(
                {adapter.agent_type: adapter for adapter in adapters},
                self.workflow_repository,
                apply_evolution,
                approval_gate=self.approval_gate,
                default_max_mutations=self._config.DEFAULT_MAX_MUTATIONS,
            )
        )

        self.run_workflow = RunWorkflowUseCase(
            registry,
            state_store=state_store,
            metrics=self._metrics,
            max_concurrency=self._config.SCHEDULER_MAX_CONCURRENCY,
        )
        logger.info("runner_opened", persistent=self._persistent, node_types=registry.node_types)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
        if self._engine is not None:
            await self._engine.dispose()
        if self._redis is not None:
            await self._redis.aclose()
        logger.info("runner_closed")

    async def __aenter__(self) -> "WorkflowRunner":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def execute(
        self,
        workflow: Workflow,
        initial_input: Any = "",
        resume_execution_id: str | None = None,
        auto_approve: bool = False,
        replay_execution_id: str | None = None,
        from_node_id: str | None = None,
        overwrite: bool = False,
    ) -> ExecutionEvent | None:
        """
        Run, resume or replay a workflow, printing each event as a JSON line.
        Returns the terminal event.

        A workflow already in the repository (possibly evolved by earlier runs)
        takes precedence over the document passed in unless overwrite is set.
        """
        workflow = await self._load_workflow(workflow, overwrite)

        loop = asyncio.get_running_loop()
        cancellation = CancellationToken()

        def signal_handler():
            logger.info("shutdown_signal_received")
            cancellation.cancel("signal")

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

        if replay_execution_id:
            events = self.run_workflow.replay(
                workflow, replay_execution_id, from_node_id, cancellation=cancellation
            )
        elif resume_execution_id:
            events = self.run_workflow.resume(workflow, resume_execution_id, cancellation=cancellation)
        else:
            events = self.run_workflow.run(workflow, initial_input, cancellation)

        terminal = None
        async for event in events:
            print(json.dumps(event.to_dict(), default=str), flush=True)
            if auto_approve and self._is_approval_request(event):
                self.approval_gate.respond(event.execution_id, event.node_id, True, "auto-approved")
            if event.type.is_terminal:
                terminal = event
        return terminal

    async def _load_workflow(self, workflow: Workflow, overwrite: bool) -> Workflow:
        stored = await self.workflow_repository.get_by_id(workflow.id)
        if stored is None or overwrite:
            await self.workflow_repository.save(workflow)
            logger.info("workflow_saved", workflow_id=workflow.id, replaced=stored is not None)
            return workflow
        logger.info("workflow_loaded_from_store", workflow_id=workflow.id)
        return stored

    @staticmethod
    def _is_approval_request(event: ExecutionEvent) -> bool:
        if event.type != ExecutionEventType.NODE_OUTPUT or not isinstance(event.data, dict):
            return False
        if event.data.get("type") == "node-waiting":
            return True
        return event.data.get("type") == "node-evolution" and event.data.get("approvalRequested") is True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a self-evolving agent workflow")
    parser.add_argument("workflow_file", type=Path, help="Workflow document (JSON)")
    parser.add_argument("--input", default="", help="Initial input handed to input nodes")
    parser.add_argument("--resume", metavar="EXECUTION_ID", help="Resume a checkpointed execution")
    parser.add_argument(
        "--replay",
        metavar="EXECUTION_ID",
        help="Start a new execution that re-runs a checkpointed one from --from-node",
    )
    parser.add_argument("--from-node", metavar="NODE_ID", help="Node to replay from (with --replay)")
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace the stored workflow with the file, discarding applied evolutions",
    )
    parser.add_argument(
        "--in-memory",
        action="store_true",
        help="Keep workflows in memory and skip Postgres/Redis (no checkpoints)",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve approval nodes and evolutions proposed in suggest mode without asking",
    )
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    return parser


async def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.replay and not args.from_node:
        parser.error("--replay requires --from-node")

    try:
        workflow = Workflow.model_validate_json(args.workflow_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("workflow_file_invalid", path=str(args.workflow_file), error=str(e))
        return 2

    if args.metrics_port:
        start_http_server(args.metrics_port)

    try:
        async with WorkflowRunner(persistent=not args.in_memory) as runner:
            terminal = await runner.execute(
                workflow,
                initial_input=args.input,
                resume_execution_id=args.resume,
                auto_approve=args.auto_approve,
                replay_execution_id=args.replay,
                from_node_id=args.from_node,
                overwrite=args.overwrite,
            )
    except WorkflowException as e:
        logger.error("workflow_run_failed", **e.to_dict())
        return 1

    if terminal is None or terminal.type != ExecutionEventType.EXECUTION_COMPLETE:
        return 1
    return 0 if terminal.data.get("status") == "complete" else 1


def cli() -> None:
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
