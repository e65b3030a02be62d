from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import ConfigDict, Discriminator, Field, Tag

from evoflow.domain.workflow.entities.workflow import CamelModel, WorkflowEdge, WorkflowNode
from evoflow.domain.workflow.value_objects.evolution_policy import EvolutionMode


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Mutation operations ----------------------------------------------------

class UpdateNodeConfigMutation(CamelModel):
    op: Literal["update-node-config"] = "update-node-config"
    node_id: str
    path: str
    value: Any = None


class UpdatePromptMutation(CamelModel):
    op: Literal["update-prompt"] = "update-prompt"
    node_id: str
    field: str
    new_value: str


class UpdateModelMutation(CamelModel):
    op: Literal["update-model"] = "update-model"
    node_id: str
    new_model: str


class AddNodeMutation(CamelModel):
    op: Literal["add-node"] = "add-node"
    node: WorkflowNode
    connect_from: str | None = None
    connect_to: str | None = None


class RemoveNodeMutation(CamelModel):
    op: Literal["remove-node"] = "remove-node"
    node_id: str


class AddEdgeMutation(CamelModel):
    op: Literal["add-edge"] = "add-edge"
    edge: WorkflowEdge


class RemoveEdgeMutation(CamelModel):
    op: Literal["remove-edge"] = "remove-edge"
    edge_id: str


class UpdateWorkflowSettingMutation(CamelModel):
    op: Literal["update-workflow-setting"] = "update-workflow-setting"
    field: str
    value: Any = None


class UnknownMutation(CamelModel):
    """A mutation kind this engine does not recognize. Kept verbatim, applied as a no-op."""

    model_config = ConfigDict(extra="allow")

    op: str = ""


KNOWN_MUTATION_OPS = frozenset(
    {
        "update-node-config",
        "update-prompt",
        "update-model",
        "add-node",
        "remove-node",
        "add-edge",
        "remove-edge",
        "update-workflow-setting",
    }
)


def _mutation_tag(value: Any) -> str:
    op = value.get("op") if isinstance(value, dict) else getattr(value, "op", None)
    return op if op in KNOWN_MUTATION_OPS else "unknown"


MutationOp = Annotated[
    Union[
        Annotated[UpdateNodeConfigMutation, Tag("update-node-config")],
        Annotated[UpdatePromptMutation, Tag("update-prompt")],
        Annotated[UpdateModelMutation, Tag("update-model")],
        Annotated[AddNodeMutation, Tag("add-node")],
        Annotated[RemoveNodeMutation, Tag("remove-node")],
        Annotated[AddEdgeMutation, Tag("add-edge")],
        Annotated[RemoveEdgeMutation, Tag("remove-edge")],
        Annotated[UpdateWorkflowSettingMutation, Tag("update-workflow-setting")],
        Annotated[UnknownMutation, Tag("unknown")],
    ],
    Discriminator(_mutation_tag),
]


class WorkflowEvolution(CamelModel):
    """A proposed batch of mutations. Nothing here has been applied yet."""

    reasoning: str = ""
    mutations: list[MutationOp] = Field(default_factory=list)
    expected_impact: str = ""
    risk_assessment: str | None = None
    rollback_plan: str | None = None


# --- Snapshots, diffs and history -------------------------------------------

class WorkflowSnapshot(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]
    captured_at: datetime = Field(default_factory=utc_now)


class WorkflowDiff(CamelModel):
    added_nodes: list[str] = Field(default_factory=list)
    removed_nodes: list[str] = Field(default_factory=list)
    changed_nodes: list[str] = Field(default_factory=list)
    added_edges: list[str] = Field(default_factory=list)
    removed_edges: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.added_nodes
            or self.removed_nodes
            or self.changed_nodes
            or self.added_edges
            or self.removed_edges
        )


class ApprovalResponse(CamelModel):
    approved: bool
    feedback: str | None = None
    responded_at: datetime = Field(default_factory=utc_now)


class EvolutionHistoryRecord(CamelModel):
    """One line of a workflow's append-only evolution log."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    workflow_id: str
    execution_id: str | None = None
    node_id: str
    mode: EvolutionMode
    evolution: WorkflowEvolution
    applied: bool
    validation_errors: list[str] | None = None
    before_snapshot: WorkflowSnapshot | None = None
    after_snapshot: WorkflowSnapshot | None = None
    diff: WorkflowDiff | None = None

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
