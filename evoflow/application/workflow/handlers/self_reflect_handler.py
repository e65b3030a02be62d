import json
from functools import lru_cache
from typing import Any, AsyncIterator

from pydantic import ValidationError

from evoflow.application.workflow.handlers.agent_handler import AgentRun, parse_json_output
from evoflow.application.workflow.handlers.base import HandlerContext, NodeHandler
from evoflow.application.workflow.use_cases.apply_evolution import (
    ApplyEvolutionUseCase,
    EvolutionAttempt,
)
from evoflow.application.workflow.use_cases.validate_evolution import EvolutionValidator
from evoflow.domain.workflow.entities.evolution import WorkflowEvolution
from evoflow.domain.workflow.entities.workflow import NodeType, Workflow, WorkflowNode
from evoflow.domain.workflow.exceptions import EvolutionParseError, WorkflowNotFoundError
from evoflow.domain.workflow.services.workflow_diff import create_snapshot
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.events import HandlerEvent
from evoflow.domain.workflow.value_objects.evolution_policy import EvolutionMode
from evoflow.ports.secondary.agent_adapter import AgentRequest, IAgentAdapter
from evoflow.ports.secondary.approval_gate import IApprovalGate
from evoflow.ports.secondary.workflow_repository import IWorkflowRepository
from evoflow.shared.config import settings
from evoflow.shared.logger import get_logger

logger = get_logger(__name__)

BASE_SYSTEM_PROMPT = "\n".join(
    [
        "You are a workflow self-reflection agent.",
        "Analyze the workflow configuration and execution logs provided.",
        "Return only valid JSON that matches the WorkflowEvolution schema.",
        "Do not include markdown or extra text.",
        "Do not modify the self-reflect node itself or its direct connections.",
    ]
)


@lru_cache(maxsize=1)
def evolution_json_schema() -> str:
    return json.dumps(WorkflowEvolution.model_json_schema(by_alias=True))


def parse_evolution(text: str | None) -> WorkflowEvolution:
    parsed = parse_json_output(text)
    if not isinstance(parsed, dict):
        raise EvolutionParseError("Unable to parse workflow evolution from agent output")
    try:
        return WorkflowEvolution.model_validate(parsed)
    except ValidationError as e:
        raise EvolutionParseError(f"Agent output is not a valid workflow evolution: {e}") from e


class SelfReflectNodeHandler(NodeHandler):
    """
    Asks an agent to review the workflow and the run so far, then proposes,
    suggests or applies the resulting WorkflowEvolution depending on the node's
    evolution mode.

    Every attempt ends up in the evolution history. An invalid or rejected
    proposal completes the node with applied=False; only a failure to parse the
    agent's answer or to apply an accepted evolution fails the node.
    """

    def __init__(
        self,
        adapters: dict[str, IAgentAdapter],
        workflow_repository: IWorkflowRepository,
        apply_evolution: ApplyEvolutionUseCase,
        validator: EvolutionValidator | None = None,
        approval_gate: IApprovalGate | None = None,
        default_max_mutations: int | None = None,
    ):
        self._adapters = adapters
        self._workflow_repository = workflow_repository
        self._apply_evolution = apply_evolution
        self._validator = validator or EvolutionValidator()
        self._approval_gate = approval_gate
        self._default_max_mutations = default_max_mutations or settings.DEFAULT_MAX_MUTATIONS

    @property
    def node_type(self) -> NodeType:
        return NodeType.SELF_REFLECT

    def validate(self, node: WorkflowNode) -> list[str]:
        data = node.data
        errors = []
        if not data.reflection_goal.strip():
            errors.append("Reflection goal is required")
        if data.max_mutations is not None and data.max_mutations <= 0:
            errors.append("Max mutations must be greater than zero")
        if not data.scope:
            errors.append("At least one scope must be selected")
        if data.agent_type not in self._adapters:
            errors.append(f"No agent adapter available for '{data.agent_type}'")
        if data.evolution_mode == EvolutionMode.SUGGEST and self._approval_gate is None:
            errors.append("Suggest mode requires an approval gate")
        return errors

    async def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        data = node.data
        workflow = await self._workflow_repository.get_by_id(context.workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(context.workflow_id)

        goal = resolved_inputs.get("reflectionGoal", data.reflection_goal)
        system_prompt = BASE_SYSTEM_PROMPT
        if resolved_inputs.get("systemPrompt"):
            system_prompt += f"\n\nAdditional Instructions:\n{resolved_inputs['systemPrompt']}"

        request = AgentRequest(
            node_id=node.id,
            prompt=self._build_prompt(node, goal, self.max_mutations(node), workflow, context),
            model=data.model,
            system_prompt=system_prompt,
            working_directory=data.working_directory or workflow.working_directory,
            output_format="json",
            json_schema=evolution_json_schema(),
        )
        run = AgentRun(self._adapters[data.agent_type], request, cancellation)
        async for event in run.events():
            yield event
        context.execution.set_variable(f"node.{node.id}.transcript", run.transcript)

        evolution = parse_evolution(run.result)
        yield HandlerEvent.progress(
            {"type": "evolution-proposed", "mutations": len(evolution.mutations)}
        )

        attempt = EvolutionAttempt(
            node_id=node.id, execution_id=context.execution_id, mode=data.evolution_mode
        )
        validation = self._validator.validate(
            workflow,
            evolution,
            max_mutations=self.max_mutations(node),
            scope=data.scope,
            self_node_id=node.id,
        )
        before = create_snapshot(workflow)
        output: dict[str, Any] = {
            "evolution": evolution.model_dump(by_alias=True, mode="json"),
            "applied": False,
            "validationErrors": validation.errors,
            "beforeSnapshot": before.model_dump(by_alias=True, mode="json"),
        }

        if not validation.valid or data.evolution_mode == EvolutionMode.DRY_RUN:
            logger.info(
                "evolution_not_applied",
                node_id=node.id,
                mode=data.evolution_mode.value,
                errors=validation.errors,
            )
            await self._apply_evolution.record_attempt(
                workflow, evolution, attempt, validation.errors, before
            )
            yield self._evolution_event(node, data.evolution_mode, output)
            yield HandlerEvent.complete(output)
            return

        if data.evolution_mode == EvolutionMode.SUGGEST:
            yield self._evolution_event(node, data.evolution_mode, {**output, "approvalRequested": True})
            response = await self._approval_gate.request_decision(
                context.execution_id, node.id, evolution, cancellation
            )
            output["approvalResponse"] = response.model_dump(by_alias=True, mode="json")
            if not response.approved:
                logger.info("evolution_rejected_by_reviewer", node_id=node.id, feedback=response.feedback)
                await self._apply_evolution.record_attempt(workflow, evolution, attempt, None, before)
                yield self._evolution_event(node, data.evolution_mode, output)
                yield HandlerEvent.complete(output)
                return

        result = await self._apply_evolution.execute(workflow, evolution, attempt)
        record = result.record
        output.update(
            {
                "applied": True,
                "beforeSnapshot": record.before_snapshot.model_dump(by_alias=True, mode="json"),
                "afterSnapshot": record.after_snapshot.model_dump(by_alias=True, mode="json"),
                "diff": record.diff.model_dump(by_alias=True, mode="json"),
            }
        )
        yield self._evolution_event(node, data.evolution_mode, output)
        yield HandlerEvent.complete(output)

    def max_mutations(self, node: WorkflowNode) -> int:
        """The node's own limit, or the configured default when it sets none."""
        if node.data.max_mutations is not None:
            return node.data.max_mutations
        return self._default_max_mutations

    @staticmethod
    def _evolution_event(node: WorkflowNode, mode: EvolutionMode, output: dict[str, Any]) -> HandlerEvent:
        return HandlerEvent.progress({"type": "node-evolution", "mode": mode.value, **output})

    @staticmethod
    def _build_prompt(
        node: WorkflowNode,
        goal: str,
        max_mutations: int,
        workflow: Workflow,
        context: HandlerContext,
    ) -> str:
        data = node.data
        ancestors = context.dag.get_ancestors(node.id)
        execution_nodes = []
        for ancestor_id in context.dag.topological_sort():
            if ancestor_id not in ancestors:
                continue
            state = context.execution.node_states.get(ancestor_id)
            record = {
                "nodeId": ancestor_id,
                "name": context.node_name(ancestor_id),
                "type": context.dag.nodes[ancestor_id].type.value,
                "status": state.status.value if state else None,
                "error": state.error if state else None,
                "output": context.execution.node_outputs.get(ancestor_id),
            }
            if data.include_transcripts:
                record["transcript"] = context.execution.get_variable(f"node.{ancestor_id}.transcript")
            execution_nodes.append(record)

        document = workflow.to_document()
        document.pop("createdAt", None)
        document.pop("updatedAt", None)
        payload = {
            "workflow": document,
            "execution": {"input": context.execution.workflow_input, "nodes": execution_nodes},
            "reflectionGoal": goal,
            "scope": [scope.value for scope in data.scope],
            "maxMutations": max_mutations,
            "evolutionMode": data.evolution_mode.value,
            "selfReflectNodeId": node.id,
        }
        return "\n".join(
            [
                "Reflection task: produce a WorkflowEvolution JSON payload.",
                f"Goal: {goal}",
                f"Allowed scope: {', '.join(payload['scope'])}",
                f"Max mutations: {max_mutations}",
                "",
                "Context payload:",
                json.dumps(payload, indent=2, default=str),
            ]
        )
