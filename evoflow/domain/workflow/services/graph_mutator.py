from typing import Any, Callable, Iterable
from uuid import uuid4

from pydantic import ValidationError

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
)
from evoflow.domain.workflow.entities.workflow import (
    Workflow,
    WorkflowEdge,
    WorkflowNode,
    node_data_adapter,
)
from evoflow.domain.workflow.exceptions import EvolutionMutationError, WorkflowException
from evoflow.domain.workflow.value_objects.dag import DAG

FORBIDDEN_PATH_SEGMENTS = frozenset({"__proto__", "prototype", "constructor"})

WORKFLOW_SETTING_FIELDS = {
    "name": "name",
    "description": "description",
    "workingDirectory": "working_directory",
}


def split_path(path: str) -> list[str]:
    """Split a dotted path, rejecting empty and forbidden segments."""
    parts = path.split(".")
    if any(not part for part in parts):
        raise ValueError(f"Invalid path '{path}'")
    forbidden = FORBIDDEN_PATH_SEGMENTS.intersection(parts)
    if forbidden:
        raise ValueError(f"Path '{path}' uses forbidden segment '{sorted(forbidden)[0]}'")
    return parts


def set_nested_value(target: dict, path: str, value: Any) -> None:
    """
    Set a value at a dotted path inside a plain dict/list structure.

    Numeric segments index lists; missing containers are created (a list when the
    next segment is numeric, a dict otherwise).
    """
    parts = split_path(path)
    current: Any = target
    for position, part in enumerate(parts[:-1]):
        container: Any = [] if parts[position + 1].isdigit() else {}
        current = _descend(current, part, container)
    _assign(current, parts[-1], value)


def _descend(current: Any, key: str, container: Any) -> Any:
    if isinstance(current, list):
        index = _index(key)
        _pad(current, index)
        if not isinstance(current[index], (dict, list)):
            current[index] = container
        return current[index]
    if not isinstance(current.get(key), (dict, list)):
        current[key] = container
    return current[key]


def _assign(current: Any, key: str, value: Any) -> None:
    if isinstance(current, list):
        index = _index(key)
        _pad(current, index)
        current[index] = value
    else:
        current[key] = value


def _index(key: str) -> int:
    if not key.isdigit():
        raise ValueError(f"Segment '{key}' is not a list index")
    return int(key)


def _pad(items: list, index: int) -> None:
    if index >= len(items):
        items.extend([None] * (index + 1 - len(items)))


class GraphMutator:
    """
    Applies mutation operations, in order, to a private deep copy of a workflow.

    The caller's workflow is never touched. Any failing mutation raises
    EvolutionMutationError and the working copy should be discarded.
    """

    def __init__(self, workflow: Workflow, id_factory: Callable[[], str] | None = None):
        self.workflow = workflow.model_copy(deep=True)
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self.ignored_ops: list[str] = []
        self._handlers = {
            UpdateNodeConfigMutation: self._update_node_config,
            UpdatePromptMutation: self._update_prompt,
            UpdateModelMutation: self._update_model,
            AddNodeMutation: self._add_node,
            RemoveNodeMutation: self._remove_node,
            AddEdgeMutation: self._add_edge,
            RemoveEdgeMutation: self._remove_edge,
            UpdateWorkflowSettingMutation: self._update_workflow_setting,
            UnknownMutation: self._ignore,
        }

    def apply_all(self, mutations: Iterable[MutationOp]) -> Workflow:
        for index, mutation in enumerate(mutations):
            self.apply(index, mutation)
        self.verify_graph()
        return self.workflow

    def apply(self, index: int, mutation: MutationOp) -> None:
        handler = self._handlers[type(mutation)]
        try:
            handler(mutation)
        except ValueError as e:
            raise EvolutionMutationError(index, mutation.op, str(e)) from e

    def verify_graph(self) -> None:
        try:
            DAG.from_workflow(self.workflow)
        except WorkflowException as e:
            raise EvolutionMutationError(None, "graph", f"Resulting graph is invalid: {e.message}") from e

    # --- node data -----------------------------------------------------------

    def _require_node(self, node_id: str) -> WorkflowNode:
        node = self.workflow.get_node(node_id)
        if node is None:
            raise ValueError(f"Node '{node_id}' not found")
        return node

    def _set_data_path(self, node: WorkflowNode, path: str, value: Any) -> None:
        data = node.data.model_dump(by_alias=True, mode="json")
        set_nested_value(data, path, value)
        self._replace_data(node, data)

    @staticmethod
    def _replace_data(node: WorkflowNode, data: dict) -> None:
        try:
            new_data = node_data_adapter.validate_python(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValueError(f"Invalid configuration for node '{node.id}': {problems}") from e
        if new_data.type != node.type.value:
            raise ValueError(f"Node '{node.id}' type cannot be changed")
        node.data = new_data

    def _update_node_config(self, mutation: UpdateNodeConfigMutation) -> None:
        self._set_data_path(self._require_node(mutation.node_id), mutation.path, mutation.value)

    def _update_prompt(self, mutation: UpdatePromptMutation) -> None:
        self._set_data_path(self._require_node(mutation.node_id), mutation.field, mutation.new_value)

    def _update_model(self, mutation: UpdateModelMutation) -> None:
        node = self._require_node(mutation.node_id)
        data = node.data.model_dump(by_alias=True, mode="json")
        data["model"] = mutation.new_model
        self._replace_data(node, data)

    # --- graph structure -----------------------------------------------------

    def _add_node(self, mutation: AddNodeMutation) -> None:
        node = mutation.node.model_copy(deep=True)
        if self.workflow.get_node(node.id) is not None:
            raise ValueError(f"Node '{node.id}' already exists")
        if mutation.connect_from:
            self._require_node(mutation.connect_from)
        if mutation.connect_to:
            self._require_node(mutation.connect_to)

        self.workflow.nodes.append(node)
        if mutation.connect_from:
            self.workflow.edges.append(
                WorkflowEdge(id=self._id_factory(), source=mutation.connect_from, target=node.id)
            )
        if mutation.connect_to:
            self.workflow.edges.append(
                WorkflowEdge(id=self._id_factory(), source=node.id, target=mutation.connect_to)
            )

    def _remove_node(self, mutation: RemoveNodeMutation) -> None:
        self._require_node(mutation.node_id)
        self.workflow.nodes = [n for n in self.workflow.nodes if n.id != mutation.node_id]
        self.workflow.edges = [
            e for e in self.workflow.edges
            if e.source != mutation.node_id and e.target != mutation.node_id
        ]

    def _add_edge(self, mutation: AddEdgeMutation) -> None:
        edge = mutation.edge.model_copy(deep=True)
        if self.workflow.get_edge(edge.id) is not None:
            raise ValueError(f"Edge '{edge.id}' already exists")
        self._require_node(edge.source)
        self._require_node(edge.target)
        self.workflow.edges.append(edge)

    def _remove_edge(self, mutation: RemoveEdgeMutation) -> None:
        if self.workflow.get_edge(mutation.edge_id) is None:
            raise ValueError(f"Edge '{mutation.edge_id}' not found")
        self.workflow.edges = [e for e in self.workflow.edges if e.id != mutation.edge_id]

    def _update_workflow_setting(self, mutation: UpdateWorkflowSettingMutation) -> None:
        attribute = WORKFLOW_SETTING_FIELDS.get(mutation.field)
        if attribute is None:
            self.ignored_ops.append(f"{mutation.op}:{mutation.field}")
            return
        if not isinstance(mutation.value, str):
            raise ValueError(f"Workflow setting '{mutation.field}' must be a string")
        setattr(self.workflow, attribute, mutation.value)

    def _ignore(self, mutation: UnknownMutation) -> None:
        self.ignored_ops.append(mutation.op)
