import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

from evoflow.domain.workflow.value_objects.evolution_policy import (
    ALL_SCOPES,
    EvolutionMode,
    EvolutionScope,
)


class CamelModel(BaseModel):
    """Base for documents exchanged in camelCase and handled in snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class NodeType(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    CONDITION = "condition"
    MERGE = "merge"
    CLAUDE_AGENT = "claude-agent"
    CODEX_AGENT = "codex-agent"
    SELF_REFLECT = "self-reflect"
    APPROVAL = "approval"


AGENT_NODE_TYPES = frozenset({NodeType.CLAUDE_AGENT, NodeType.CODEX_AGENT})


# --- Node data variants -----------------------------------------------------

class NodeData(CamelModel):
    model_config = ConfigDict(extra="forbid")

    name: str = ""


class InputNodeData(NodeData):
    type: Literal["input"] = "input"
    description: str | None = None


class OutputNodeData(NodeData):
    type: Literal["output"] = "output"


class ConditionRule(CamelModel):
    input_reference: str = ""
    operator: str = "equals"
    compare_value: Any = None
    joiner: Literal["and", "or"] = "and"


class ConditionNodeData(NodeData):
    type: Literal["condition"] = "condition"
    conditions: list[ConditionRule] = Field(default_factory=list)
    # Single-rule form
    input_reference: str | None = None
    operator: str | None = None
    compare_value: Any = None

    def rules(self) -> list[ConditionRule]:
        if self.conditions:
            return list(self.conditions)
        if self.input_reference is not None or self.operator is not None:
            return [
                ConditionRule(
                    input_reference=self.input_reference or "",
                    operator=self.operator or "equals",
                    compare_value=self.compare_value,
                )
            ]
        return []


class MergeNodeData(NodeData):
    type: Literal["merge"] = "merge"
    strategy: Literal["wait-all", "first-complete"] = "wait-all"


class OutputConfig(CamelModel):
    model_config = ConfigDict(extra="forbid")

    format: Literal["text", "json"] = "text"
    file_path: str | None = None
    json_schema: str | None = Field(default=None, alias="schema")


class AgentNodeData(NodeData):
    user_query: str = ""
    model: str | None = None
    working_directory: str | None = None
    conversation_mode: Literal["fresh", "persist"] = "fresh"
    output_config: OutputConfig | None = None
    timeout: float | None = None


class ClaudeAgentNodeData(AgentNodeData):
    type: Literal["claude-agent"] = "claude-agent"
    system_prompt: str | None = None
    tools: list[str] = Field(default_factory=list)
    mcp_servers: list[str] = Field(default_factory=list)
    max_turns: int | None = None


class CodexAgentNodeData(AgentNodeData):
    type: Literal["codex-agent"] = "codex-agent"
    reasoning_effort: str | None = None
    approval_policy: str | None = None
    sandbox: str | None = None
    base_instructions: str | None = None


class SelfReflectNodeData(NodeData):
    type: Literal["self-reflect"] = "self-reflect"
    agent_type: Literal["claude-agent", "codex-agent"] = "claude-agent"
    model: str | None = None
    reflection_goal: str = ""
    evolution_mode: EvolutionMode = EvolutionMode.SUGGEST
    scope: list[EvolutionScope] = Field(default_factory=lambda: list(ALL_SCOPES))
    max_mutations: int | None = None
    include_transcripts: bool = True
    system_prompt: str | None = None
    working_directory: str | None = None


class InputSelection(CamelModel):
    """Output of one node shown to the reviewer; all of it when no fields are listed."""

    node_name: str
    node_id: str | None = None
    fields: list[str] = Field(default_factory=list)


class ApprovalNodeData(NodeData):
    type: Literal["approval"] = "approval"
    prompt_message: str = ""
    feedback_prompt: str | None = None
    input_selections: list[InputSelection] = Field(default_factory=list)
    timeout_minutes: float | None = None
    timeout_action: Literal["approve", "reject", "fail"] = "reject"


AnyNodeData = Annotated[
    Union[
        InputNodeData,
        OutputNodeData,
        ConditionNodeData,
        MergeNodeData,
        ClaudeAgentNodeData,
        CodexAgentNodeData,
        SelfReflectNodeData,
        ApprovalNodeData,
    ],
    Field(discriminator="type"),
]

node_data_adapter: TypeAdapter[AnyNodeData] = TypeAdapter(AnyNodeData)


# --- Graph ------------------------------------------------------------------

class Position(CamelModel):
    x: float = 0
    y: float = 0


class WorkflowNode(CamelModel):
    id: str
    type: NodeType
    position: Position = Field(default_factory=Position)
    data: AnyNodeData

    @model_validator(mode="before")
    @classmethod
    def _default_data_type(cls, values: Any) -> Any:
        if isinstance(values, dict) and isinstance(values.get("data"), dict):
            data = values["data"]
            if "type" not in data and "type" in values:
                node_type = values["type"]
                values = {
                    **values,
                    "data": {**data, "type": node_type.value if isinstance(node_type, NodeType) else node_type},
                }
        return values

    @model_validator(mode="after")
    def _check_data_type(self) -> "WorkflowNode":
        if self.data.type != self.type.value:
            raise ValueError(
                f"Node '{self.id}' data.type '{self.data.type}' does not match type '{self.type.value}'"
            )
        return self

    @property
    def name(self) -> str:
        return self.data.name

    def fingerprint(self) -> str:
        """Canonical serialized content, used for structural comparison."""
        return json.dumps(self.to_document(), sort_keys=True, separators=(",", ":"))


class WorkflowEdge(CamelModel):
    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    edge_type: str | None = None


class Workflow(CamelModel):
    id: str
    name: str
    description: str | None = None
    working_directory: str | None = None
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def get_node(self, node_id: str) -> WorkflowNode | None:
        return next((node for node in self.nodes if node.id == node_id), None)

    def get_edge(self, edge_id: str) -> WorkflowEdge | None:
        return next((edge for edge in self.edges if edge.id == edge_id), None)

    def nodes_of_type(self, node_type: NodeType) -> list[WorkflowNode]:
        return [node for node in self.nodes if node.type == node_type]

    def with_updates(self, fields: dict[str, Any]) -> "Workflow":
        """New validated document with the given python-named fields replaced."""
        unknown = set(fields) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown workflow fields: {sorted(unknown)}")
        return Workflow.model_validate(
            {
                **{name: getattr(self, name) for name in type(self).model_fields},
                **fields,
                "updated_at": datetime.now(timezone.utc),
            }
        )
