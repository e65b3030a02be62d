import json
import re
from typing import Any, AsyncIterator

from evoflow.application.workflow.handlers.base import HandlerContext, NodeHandler
from evoflow.domain.workflow.entities.workflow import NodeType, WorkflowNode
from evoflow.domain.workflow.exceptions import AgentError
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.events import HandlerEvent
from evoflow.ports.secondary.agent_adapter import AgentRequest, IAgentAdapter

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_output(text: str | None) -> Any:
    """Parse an agent's JSON answer, tolerating a surrounding code fence. None if unparseable."""
    if not text:
        return None
    candidate = text.strip()
    fenced = _FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


class AgentRun:
    """
    Drives one adapter stream, forwarding its events and collecting the
    final result, the session id and a readable transcript.
    """

    def __init__(self, adapter: IAgentAdapter, request: AgentRequest, cancellation: CancellationToken):
        self._adapter = adapter
        self._request = request
        self._cancellation = cancellation
        self._text: list[str] = []
        self._transcript: list[str] = []
        self.result: str | None = None
        self.session_id: str | None = None

    @property
    def transcript(self) -> str:
        return "".join(self._transcript)

    async def events(self) -> AsyncIterator[HandlerEvent]:
        node_id = self._request.node_id
        async for event in self._adapter.stream(self._request, self._cancellation):
            self._cancellation.raise_if_cancelled(node_id)

            if event.type == "error":
                raise AgentError(node_id, event.error or "Agent reported an error")
            if event.type == "text-delta":
                self._text.append(event.content)
                self._transcript.append(event.content)
            elif event.type == "thinking":
                self._transcript.append(f"\n[thinking] {event.content}\n")
            elif event.type == "tool-use":
                self._transcript.append(f"\n[tool-use] {event.tool_name}\n")
            elif event.type == "tool-result":
                self._transcript.append(f"\n[tool-result] {event.content}\n")
            elif event.type == "complete":
                self.result = event.result
                self.session_id = event.session_id

            yield HandlerEvent.progress(event.to_dict())

        # An adapter ends its stream early once cancellation fires.
        self._cancellation.raise_if_cancelled(node_id)
        if self.result is None:
            self.result = "".join(self._text)


class AgentNodeHandler(NodeHandler):
    """Runs claude-agent / codex-agent nodes through their agent adapter."""

    def __init__(self, adapter: IAgentAdapter):
        self._adapter = adapter

    @property
    def node_type(self) -> NodeType:
        return NodeType(self._adapter.agent_type)

    def validate(self, node: WorkflowNode) -> list[str]:
        if not node.data.user_query.strip():
            return ["userQuery is required"]
        return []

    async def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        data = node.data
        run_count_key = f"node.{node.id}.runCount"
        session_key = f"agent.session.{node.id}"

        run_count = context.execution.get_variable(run_count_key, 0) + 1
        context.execution.set_variable(run_count_key, run_count)
        yield HandlerEvent.progress({"type": "run-start", "runCount": run_count})

        output_config = data.output_config
        request = AgentRequest(
            node_id=node.id,
            prompt=resolved_inputs.get("userQuery", data.user_query),
            model=data.model,
            system_prompt=resolved_inputs.get("systemPrompt") or resolved_inputs.get("baseInstructions"),
            working_directory=data.working_directory or context.workflow.working_directory,
            output_format=output_config.format if output_config else "text",
            json_schema=output_config.json_schema if output_config else None,
            session_id=(
                context.execution.get_variable(session_key)
                if data.conversation_mode == "persist"
                else None
            ),
            options=self._options(resolved_inputs),
        )

        run = AgentRun(self._adapter, request, cancellation)
        async for event in run.events():
            yield event

        context.execution.set_variable(f"node.{node.id}.transcript", run.transcript)
        if run.session_id:
            context.execution.set_variable(session_key, run.session_id)

        output: dict[str, Any] = {}
        if request.output_format == "json":
            parsed = parse_json_output(run.result)
            if isinstance(parsed, dict):
                output.update(parsed)
        output.update({"result": run.result, "runCount": run_count, "transcript": run.transcript})
        yield HandlerEvent.complete(output)

    @staticmethod
    def _options(resolved_inputs: dict[str, Any]) -> dict[str, Any]:
        keys = (
            "tools",
            "mcpServers",
            "maxTurns",
            "timeout",
            "reasoningEffort",
            "approvalPolicy",
            "sandbox",
        )
        return {key: resolved_inputs[key] for key in keys if resolved_inputs.get(key) not in (None, [])}
