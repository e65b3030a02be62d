from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from evoflow.domain.workflow.entities.evolution import (
    AddEdgeMutation,
    AddNodeMutation,
    MutationOp,
    RemoveEdgeMutation,
    RemoveNodeMutation,
    UnknownMutation,
    UpdateModelMutation,
    UpdateNodeConfigMutation,
    UpdatePromptMutation,
    UpdateWorkflowSettingMutation,
    WorkflowEvolution,
)
from evoflow.domain.workflow.entities.workflow import NodeType, Workflow
from evoflow.domain.workflow.exceptions import EvolutionMutationError, WorkflowException
from evoflow.domain.workflow.services.graph_mutator import WORKFLOW_SETTING_FIELDS, GraphMutator
from evoflow.domain.workflow.value_objects.dag import DAG
from evoflow.domain.workflow.value_objects.evolution_policy import EvolutionScope

PROMPT_FIELDS = frozenset({"userQuery", "systemPrompt", "baseInstructions", "reflectionGoal"})
MODEL_FIELDS = frozenset({"model", "reasoningEffort"})
TOOL_FIELDS = frozenset({"tools", "mcpServers"})


def mutation_scope(mutation: MutationOp) -> EvolutionScope | None:
    """The scope a mutation falls into; None for unknown operations."""
    if isinstance(mutation, UpdatePromptMutation):
        return EvolutionScope.PROMPTS
    if isinstance(mutation, UpdateModelMutation):
        return EvolutionScope.MODELS
    if isinstance(mutation, UpdateNodeConfigMutation):
        root = mutation.path.split(".", 1)[0]
        if root in PROMPT_FIELDS:
            return EvolutionScope.PROMPTS
        if root in MODEL_FIELDS:
            return EvolutionScope.MODELS
        if root in TOOL_FIELDS:
            return EvolutionScope.TOOLS
        return EvolutionScope.PARAMETERS
    if isinstance(mutation, (AddNodeMutation, RemoveNodeMutation)):
        return EvolutionScope.NODES
    if isinstance(mutation, (AddEdgeMutation, RemoveEdgeMutation)):
        return EvolutionScope.EDGES
    if isinstance(mutation, UpdateWorkflowSettingMutation):
        return EvolutionScope.PARAMETERS
    return None


@dataclass(frozen=True)
class EvolutionValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class EvolutionValidator:
    """
    Checks a proposed evolution against a workflow without persisting anything.

    Mutations are trial-applied in order on a private copy so that later
    mutations are judged against the graph earlier ones produce.
    """

    def validate(
        self,
        workflow: Workflow,
        evolution: WorkflowEvolution,
        max_mutations: int | None = None,
        scope: Iterable[EvolutionScope] | None = None,
        self_node_id: str | None = None,
    ) -> EvolutionValidationResult:
        errors: list[str] = []
        mutations = evolution.mutations

        if max_mutations is not None and len(mutations) > max_mutations:
            errors.append(f"Evolution has {len(mutations)} mutations, limit is {max_mutations}")

        allowed = set(scope) if scope is not None else None
        protected = self._protected_nodes(workflow, self_node_id)
        mutator = GraphMutator(workflow)

        for index, mutation in enumerate(mutations):
            label = f"Mutation {index} ({mutation.op or 'unknown'})"

            if isinstance(mutation, UnknownMutation):
                errors.append(f"{label}: unknown operation")
                continue

            mutation_kind = mutation_scope(mutation)
            if allowed is not None and mutation_kind not in allowed:
                errors.append(f"{label}: outside the allowed scope '{mutation_kind.value}'")

            problems = self._protection_problems(mutation, mutator.workflow, self_node_id, protected)
            problems += self._structural_problems(mutation, mutator.workflow)
            errors.extend(f"{label}: {problem}" for problem in problems)

            try:
                mutator.apply(index, mutation)
            except EvolutionMutationError as e:
                errors.append(e.message)

        errors.extend(self._graph_problems(mutator.workflow))
        return EvolutionValidationResult(errors=errors)

    @staticmethod
    def _protected_nodes(workflow: Workflow, self_node_id: str | None) -> set[str]:
        if not self_node_id:
            return set()
        neighbours = {e.target for e in workflow.edges if e.source == self_node_id}
        neighbours |= {e.source for e in workflow.edges if e.target == self_node_id}
        return neighbours

    @staticmethod
    def _protection_problems(
        mutation: MutationOp,
        current: Workflow,
        self_node_id: str | None,
        neighbours: set[str],
    ) -> list[str]:
        if not self_node_id:
            return []
        problems = []
        target = getattr(mutation, "node_id", None)
        if target == self_node_id:
            problems.append("the self-reflect node cannot modify or remove itself")
        if isinstance(mutation, RemoveNodeMutation) and target in neighbours:
            problems.append(f"cannot remove '{target}', it is connected to the self-reflect node")
        if isinstance(mutation, AddNodeMutation) and self_node_id in (mutation.connect_from, mutation.connect_to):
            problems.append("cannot connect new nodes to the self-reflect node")
        if isinstance(mutation, AddEdgeMutation) and self_node_id in (mutation.edge.source, mutation.edge.target):
            problems.append("cannot add edges to the self-reflect node")
        if isinstance(mutation, RemoveEdgeMutation):
            edge = current.get_edge(mutation.edge_id)
            if edge is not None and self_node_id in (edge.source, edge.target):
                problems.append("cannot remove edges attached to the self-reflect node")
        return problems

    @staticmethod
    def _structural_problems(mutation: MutationOp, current: Workflow) -> list[str]:
        problems = []
        if isinstance(mutation, RemoveNodeMutation):
            node = current.get_node(mutation.node_id)
            if node is not None and node.type in (NodeType.INPUT, NodeType.OUTPUT):
                problems.append(f"{node.type.value} node '{node.id}' cannot be removed")
        if isinstance(mutation, UpdateWorkflowSettingMutation) and mutation.field not in WORKFLOW_SETTING_FIELDS:
            problems.append(f"unknown workflow setting '{mutation.field}'")
        return problems

    @staticmethod
    def _graph_problems(workflow: Workflow) -> list[str]:
        problems = []

        names = Counter(node.name for node in workflow.nodes if node.name)
        problems.extend(f"Duplicate node name '{name}'" for name, count in names.items() if count > 1)

        edge_ids = Counter(edge.id for edge in workflow.edges)
        problems.extend(f"Duplicate edge id '{edge_id}'" for edge_id, count in edge_ids.items() if count > 1)

        edge_keys = Counter(
            (e.source, e.target, e.source_handle, e.target_handle, e.edge_type) for e in workflow.edges
        )
        problems.extend(
            f"Duplicate edge {key[0]} -> {key[1]}" for key, count in edge_keys.items() if count > 1
        )

        try:
            DAG.from_workflow(workflow)
        except WorkflowException as e:
            problems.append(f"Resulting graph is invalid: {e.message}")
        return problems
