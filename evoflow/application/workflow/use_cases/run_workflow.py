import asyncio
import hashlib
import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable

from cachetools import TTLCache

from evoflow.application.workflow.handlers.base import HandlerContext
from evoflow.application.workflow.handlers.registry import HandlerRegistry
from evoflow.domain.workflow.entities.execution import (
    ExecutionCheckpoint,
    ExecutionContext,
    ExecutionStatus,
    active_handle_key,
)
from evoflow.domain.workflow.entities.workflow import NodeType, Workflow, WorkflowNode
from evoflow.domain.workflow.exceptions import (
    ExecutionInterruptedError,
    ExecutionNotFoundError,
    NodeExecutionError,
    NodeValidationError,
    ReplayPlanError,
    StalledExecutionError,
    WorkflowException,
)
from evoflow.domain.workflow.services.replay import (
    build_replay_plan,
    prepare_replay,
    prepare_resume,
)
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.dag import DAG
from evoflow.domain.workflow.value_objects.events import (
    ExecutionEvent,
    ExecutionEventType,
    HandlerEvent,
    HandlerEventKind,
)
from evoflow.domain.workflow.value_objects.node_status import NodeStatus
from evoflow.domain.workflow.value_objects.reference import ReferenceResolver
from evoflow.ports.secondary.metrics import IMetrics
from evoflow.ports.secondary.state_store import IStateStore
from evoflow.shared.config import settings
from evoflow.shared.logger import bind_context, get_logger, unbind_context

logger = get_logger(__name__)

SKIP_CONDITION_NOT_MET = "condition_not_met"
SKIP_UPSTREAM_SKIPPED = "upstream_skipped"
SKIP_UPSTREAM_ERROR = "upstream_error"
SKIP_NO_INPUT = "no_completed_input"

_WAIT = "wait"
_RUN = "run"


class RunWorkflowUseCase:
    """
    DAG scheduler for a single workflow run.

    Runs the graph in waves: every node whose predecessors are all terminal is
    either skipped (the branch that leads to it was not taken, or its input
    failed) or executed. All executable nodes of a wave run concurrently and the
    next wave starts once every one of them has settled.

    Events are streamed to the caller as they happen; the last event is always
    one of execution-complete, execution-interrupted or execution-error.
    """

    _dag_cache: TTLCache = TTLCache(
        maxsize=settings.DAG_CACHE_SIZE, ttl=settings.DAG_CACHE_TTL_SECONDS
    )

    def __init__(
        self,
        handlers: HandlerRegistry,
        state_store: IStateStore | None = None,
        metrics: IMetrics | None = None,
        max_concurrency: int | None = None,
    ):
        self._handlers = handlers
        self._state_store = state_store
        self._metrics = metrics
        self._max_concurrency = (
            settings.SCHEDULER_MAX_CONCURRENCY if max_concurrency is None else max_concurrency
        )

    def _get_workflow_dag(self, workflow: Workflow) -> DAG:
        document = json.dumps(
            {
                "nodes": [node.to_document() for node in workflow.nodes],
                "edges": [edge.to_document() for edge in workflow.edges],
            },
            sort_keys=True,
        )
        key = (workflow.id, hashlib.sha256(document.encode()).hexdigest())
        dag = self._dag_cache.get(key)
        if dag is None:
            dag = DAG.from_workflow(workflow)
            self._dag_cache[key] = dag
        return dag

    async def run(
        self,
        workflow: Workflow,
        initial_input: Any = "",
        cancellation: CancellationToken | None = None,
        checkpoint: ExecutionCheckpoint | None = None,
    ) -> AsyncIterator[ExecutionEvent]:
        cancellation = cancellation or CancellationToken()
        queue: asyncio.Queue[ExecutionEvent | None] = asyncio.Queue()
        run = _WorkflowRun(self, workflow, initial_input, cancellation, checkpoint, queue.put_nowait)
        driver = asyncio.create_task(run.drive())

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await driver
        finally:
            if not driver.done():
                # The caller stopped listening; stop the run instead of orphaning it.
                cancellation.cancel("consumer_closed")
                driver.cancel()
                await asyncio.gather(driver, return_exceptions=True)

    async def resume(
        self,
        workflow: Workflow,
        execution_id: str,
        initial_input: Any = None,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Continue a checkpointed run under the same execution id.

        Completed and skipped nodes keep their state and output. Failed or
        interrupted nodes run again, together with whatever their failure skipped.
        """
        checkpoint = await self._load_checkpoint(workflow, execution_id)
        if initial_input is None:
            initial_input = checkpoint.workflow_input
        async for event in self.run(
            workflow, initial_input, cancellation, prepare_resume(workflow, checkpoint)
        ):
            yield event

    async def replay(
        self,
        workflow: Workflow,
        source_execution_id: str,
        from_node_id: str,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Start a new execution that reuses the outputs of a checkpointed one and
        re-runs from_node_id and everything downstream of it.
        """
        checkpoint = await self._load_checkpoint(workflow, source_execution_id)
        plan = build_replay_plan(workflow, checkpoint, from_node_id)
        if not plan.valid:
            raise ReplayPlanError(from_node_id, plan.errors)

        logger.info(
            "replay_planned",
            source_execution_id=source_execution_id,
            from_node_id=from_node_id,
            replay_nodes=sorted(plan.replay_node_ids),
        )
        async for event in self.run(
            workflow,
            checkpoint.workflow_input,
            cancellation,
            prepare_replay(workflow, checkpoint, plan),
        ):
            yield event

    async def _load_checkpoint(self, workflow: Workflow, execution_id: str) -> ExecutionCheckpoint:
        if self._state_store is None:
            raise ExecutionNotFoundError(execution_id)
        checkpoint = await self._state_store.load_checkpoint(execution_id)
        if checkpoint is None or checkpoint.workflow_id != workflow.id:
            raise ExecutionNotFoundError(execution_id)
        return checkpoint


class _WorkflowRun:
    """State of one run. Owned by the driver task of RunWorkflowUseCase.run."""

    def __init__(
        self,
        use_case: RunWorkflowUseCase,
        workflow: Workflow,
        initial_input: Any,
        cancellation: CancellationToken,
        checkpoint: ExecutionCheckpoint | None,
        emit: Callable[[ExecutionEvent | None], None],
    ):
        self._use_case = use_case
        self._handlers = use_case._handlers
        self._state_store = use_case._state_store
        self._metrics = use_case._metrics
        self._workflow = workflow
        self._cancellation = cancellation
        self._emit_raw = emit
        self._inactive_edges: set[str] = set()
        self._semaphore = (
            asyncio.Semaphore(use_case._max_concurrency) if use_case._max_concurrency > 0 else None
        )
        self._execution = ExecutionContext.create(
            workflow.id,
            [node.id for node in workflow.nodes],
            initial_input,
            checkpoint,
        )
        self._resumed = checkpoint is not None
        self._replay_of = checkpoint.source_execution_id if checkpoint else None
        self._dag: DAG | None = None
        self._context: HandlerContext | None = None

    def _emit(
        self,
        event_type: ExecutionEventType,
        node: WorkflowNode | None = None,
        data: Any = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        self._emit_raw(
            ExecutionEvent(
                type=event_type,
                execution_id=self._execution.execution_id,
                workflow_id=self._workflow.id,
                node_id=node.id if node else None,
                node_name=(node.name or node.id) if node else None,
                data=data,
                error=error,
            )
        )

    async def drive(self) -> None:
        execution = self._execution
        bind_context({"execution_id": execution.execution_id, "workflow_id": self._workflow.id})
        try:
            try:
                self._dag = self._use_case._get_workflow_dag(self._workflow)
            except WorkflowException as e:
                logger.warning("workflow_validation_failed", error=e.message, error_code=e.error_code)
                execution.mark_finished(ExecutionStatus.ERROR)
                self._emit(ExecutionEventType.EXECUTION_ERROR, error=e.to_dict())
                return

            self._context = HandlerContext(
                workflow=self._workflow,
                dag=self._dag,
                execution=execution,
                node_name_to_id=ReferenceResolver.build_node_name_map(self._workflow.nodes),
            )
            self._restore_inactive_edges()
            await self._save_metadata(ExecutionStatus.RUNNING)
            await self._save_restored_state()

            logger.info(
                "execution_started",
                resumed=self._resumed,
                replay_of=self._replay_of,
                nodes=len(self._dag.nodes),
            )
            self._emit(
                ExecutionEventType.EXECUTION_START,
                data={
                    "input": execution.workflow_input,
                    "resumed": self._resumed,
                    "replayOf": self._replay_of,
                    "statuses": {k: v.value for k, v in execution.statuses.items()},
                },
            )

            try:
                await self._schedule()
            except StalledExecutionError as e:
                logger.error("execution_stalled", pending=e.pending_node_ids)
                await self._finish(ExecutionStatus.ERROR)
                self._emit(ExecutionEventType.EXECUTION_ERROR, error=e.to_dict())
        finally:
            unbind_context("execution_id", "workflow_id")
            self._emit_raw(None)

    async def _schedule(self) -> None:
        execution = self._execution
        while True:
            if self._cancellation.is_cancelled:
                await self._interrupt()
                return

            ready = await self._settle()
            pending = execution.pending_node_ids()
            if not pending:
                await self._complete()
                return
            if not ready:
                raise StalledExecutionError(pending)

            logger.debug("wave_started", nodes=ready)
            results = await asyncio.gather(
                *(self._run_node(node_id) for node_id in ready), return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

    async def _settle(self) -> list[str]:
        """
        Skip every pending node that can no longer run and return the nodes that
        are ready to execute. Runs in topological order so skips cascade in one pass.
        """
        ready = []
        for node_id in self._dag.topological_sort():
            if self._execution.get_node_status(node_id) != NodeStatus.PENDING:
                continue
            verdict = self._readiness(node_id)
            if verdict == _WAIT:
                continue
            if verdict == _RUN:
                ready.append(node_id)
                continue
            await self._skip(self._dag.nodes[node_id], verdict)
        return ready

    def _readiness(self, node_id: str) -> str:
        """_WAIT, _RUN or the reason to skip the node."""
        incoming = self._dag.get_incoming_edges(node_id)
        if not incoming:
            return _RUN

        statuses = [self._execution.get_node_status(edge.source) for edge in incoming]
        if not all(status.is_terminal for status in statuses):
            return _WAIT

        is_merge = self._dag.nodes[node_id].type == NodeType.MERGE
        live = False
        branch_not_taken = False
        for edge, status in zip(incoming, statuses):
            if status == NodeStatus.ERROR:
                if not is_merge:
                    return SKIP_UPSTREAM_ERROR
                continue
            if edge.id in self._inactive_edges:
                branch_not_taken = True
                continue
            if status == NodeStatus.COMPLETE:
                live = True

        if live:
            return _RUN
        if branch_not_taken:
            return SKIP_CONDITION_NOT_MET
        if is_merge and NodeStatus.ERROR in statuses:
            return SKIP_NO_INPUT
        return SKIP_UPSTREAM_SKIPPED

    def _restore_inactive_edges(self) -> None:
        for node_id in self._dag.nodes:
            if self._execution.get_node_status(node_id) != NodeStatus.COMPLETE:
                continue
            handle = self._execution.get_variable(active_handle_key(node_id))
            if handle is not None:
                self._deactivate_branches(node_id, handle)

    def _deactivate_branches(self, node_id: str, active_handle: str) -> None:
        for edge in self._dag.get_outgoing_edges(node_id):
            if edge.source_handle and edge.source_handle != active_handle:
                self._inactive_edges.add(edge.id)

    async def _skip(self, node: WorkflowNode, reason: str) -> None:
        self._execution.set_node_skipped(node.id, reason)
        logger.info("node_skipped", node_id=node.id, reason=reason)
        await self._checkpoint_node(node.id)
        self._emit(ExecutionEventType.NODE_SKIPPED, node, data={"reason": reason})

    async def _run_node(self, node_id: str) -> None:
        node = self._dag.nodes[node_id]
        if self._semaphore is None:
            await self._execute(node)
            return
        async with self._semaphore:
            await self._execute(node)

    async def _execute(self, node: WorkflowNode) -> None:
        execution = self._execution
        if self._cancellation.is_cancelled:
            # Never started; stays pending for a resume.
            return

        execution.set_node_running(node.id)
        await self._checkpoint_node(node.id)
        logger.info("node_started", node_id=node.id, node_type=node.type.value)
        self._emit(ExecutionEventType.NODE_START, node, data={"nodeType": node.type.value})

        try:
            completion = await self._invoke_handler(node)
        except ExecutionInterruptedError:
            execution.set_node_failed(node.id, "Execution interrupted", "INTERRUPTED")
            logger.info("node_interrupted", node_id=node.id)
        except WorkflowException as e:
            self._fail(node, e.message, e.error_code)
        except Exception as e:
            logger.exception("node_unexpected_error", node_id=node.id)
            self._fail(node, str(e) or type(e).__name__, "EXECUTION_FAILED")
        else:
            execution.set_node_completed(node.id, completion.output)
            if completion.active_handle is not None:
                execution.set_variable(active_handle_key(node.id), completion.active_handle)
                self._deactivate_branches(node.id, completion.active_handle)

            state = execution.node_states[node.id]
            logger.info("node_completed", node_id=node.id, duration=state.duration_seconds)
            self._emit(
                ExecutionEventType.NODE_COMPLETE,
                node,
                data={
                    "output": completion.output,
                    "activeHandle": completion.active_handle,
                    "duration": state.duration_seconds,
                },
            )

        await self._checkpoint_node(node.id)
        if self._metrics:
            state = execution.node_states[node.id]
            self._metrics.record_node_completion(
                node.type.value, state.status.value, state.duration_seconds
            )

    async def _invoke_handler(self, node: WorkflowNode) -> HandlerEvent:
        handler = self._handlers.get(node)
        errors = handler.validate(node)
        if errors:
            raise NodeValidationError(node.id, errors)

        execution = self._execution
        resolved_inputs = ReferenceResolver.resolve_config(
            node.data.model_dump(by_alias=True, mode="json"),
            execution.node_outputs,
            self._context.node_name_to_id,
            execution.variables,
        )

        events = handler.handle(node, resolved_inputs, self._context, self._cancellation)
        async with aclosing(events):
            async for event in events:
                if event.kind == HandlerEventKind.COMPLETE:
                    return event
                if event.kind == HandlerEventKind.ERROR:
                    raise NodeExecutionError(node.id, event.error or "Node failed", event.error_code)
                if event.payload is not None:
                    self._emit(ExecutionEventType.NODE_OUTPUT, node, data=event.payload)

        self._cancellation.raise_if_cancelled(node.id)
        raise NodeExecutionError(node.id, "Handler finished without producing a result")

    def _fail(self, node: WorkflowNode, message: str, error_code: str) -> None:
        self._execution.set_node_failed(node.id, message, error_code)
        logger.warning("node_failed", node_id=node.id, error=message, error_code=error_code)
        self._emit(
            ExecutionEventType.NODE_ERROR,
            node,
            error={"code": error_code, "message": message},
        )

    async def _complete(self) -> None:
        execution = self._execution
        status = ExecutionStatus.ERROR if execution.has_failed() else ExecutionStatus.COMPLETE
        await self._finish(status)

        result = {
            node_id: execution.node_outputs[node_id]
            for node_id in self._dag.nodes
            if self._dag.nodes[node_id].type == NodeType.OUTPUT
            and execution.get_node_status(node_id) == NodeStatus.COMPLETE
        }
        logger.info("execution_completed", status=status.value, duration=execution.duration_seconds)
        self._emit(
            ExecutionEventType.EXECUTION_COMPLETE,
            data={
                "status": status.value,
                "result": result,
                "statuses": {k: v.value for k, v in execution.statuses.items()},
                "duration": execution.duration_seconds,
            },
        )

    async def _interrupt(self) -> None:
        execution = self._execution
        await self._finish(ExecutionStatus.INTERRUPTED)

        interrupted = [
            node_id
            for node_id, state in execution.node_states.items()
            if state.error_code == "INTERRUPTED"
        ]
        logger.info("execution_interrupted", reason=self._cancellation.reason, nodes=interrupted)
        self._emit(
            ExecutionEventType.EXECUTION_INTERRUPTED,
            data={
                "reason": self._cancellation.reason,
                "interruptedNodes": interrupted,
                "pendingNodes": execution.pending_node_ids(),
            },
        )

    async def _finish(self, status: ExecutionStatus) -> None:
        self._execution.mark_finished(status)
        await self._save_metadata(status)
        if self._metrics:
            self._metrics.record_workflow_completion(
                self._workflow.id, status.value, self._execution.duration_seconds
            )

    async def _save_metadata(self, status: ExecutionStatus) -> None:
        if self._state_store is None:
            return
        await self._state_store.set_execution_metadata(
            self._execution.execution_id,
            {
                "workflow_id": self._workflow.id,
                "status": status.value,
                "input": self._execution.workflow_input,
            },
        )

    async def _save_restored_state(self) -> None:
        """Write the state a resumed or replayed run starts from under its own execution id."""
        if self._state_store is None or not self._resumed:
            return
        execution = self._execution
        execution_id = execution.execution_id
        for node_id in self._dag.nodes:
            await self._state_store.set_node_status(execution_id, node_id, execution.get_node_status(node_id))
            if node_id in execution.node_outputs:
                await self._state_store.set_node_output(execution_id, node_id, execution.node_outputs[node_id])
        await self._state_store.set_variables(execution_id, execution.variables)

    async def _checkpoint_node(self, node_id: str) -> None:
        if self._state_store is None:
            return
        execution = self._execution
        execution_id = execution.execution_id
        await self._state_store.set_node_status(execution_id, node_id, execution.get_node_status(node_id))
        if node_id in execution.node_outputs:
            await self._state_store.set_node_output(execution_id, node_id, execution.node_outputs[node_id])
        await self._state_store.set_variables(execution_id, execution.variables)
