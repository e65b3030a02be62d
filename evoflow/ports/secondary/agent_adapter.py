from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from evoflow.domain.workflow.value_objects.cancellation import CancellationToken


@dataclass(frozen=True)
class AgentRequest:
    """Uniform input handed to an agent adapter for one node run."""

    node_id: str
    prompt: str
    model: str | None = None
    system_prompt: str | None = None
    working_directory: str | None = None
    output_format: str = "text"
    json_schema: str | None = None
    session_id: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentEvent:
    """
    One event of an agent's stream.

    type is one of: text-delta, thinking, tool-use, tool-result, complete, error.
    A complete event carries the final result text and optionally a session id.
    """

    type: str
    content: str = ""
    tool_name: str | None = None
    tool_input: Any = None
    result: str | None = None
    session_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.content:
            payload["content"] = self.content
        if self.tool_name is not None:
            payload["toolName"] = self.tool_name
        if self.tool_input is not None:
            payload["toolInput"] = self.tool_input
        if self.result is not None:
            payload["result"] = self.result
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


class IAgentAdapter(ABC):
    """
    Turns a vendor agent SDK into a uniform, interruptible event stream.

    Adapters observe the cancellation token and stop promptly once it fires,
    ending the stream without an error event.
    """

    @property
    @abstractmethod
    def agent_type(self) -> str:
        """Node type served by this adapter (e.g. 'claude-agent')."""
        pass

    @abstractmethod
    def stream(self, request: AgentRequest, cancellation: CancellationToken) -> AsyncIterator[AgentEvent]:
        pass
