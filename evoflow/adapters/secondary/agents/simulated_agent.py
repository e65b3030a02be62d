import asyncio
import json
from typing import AsyncIterator
from uuid import uuid4

from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.ports.secondary.agent_adapter import AgentEvent, AgentRequest, IAgentAdapter


class SimulatedAgentAdapter(IAgentAdapter):
    """
    Stand-in agent that streams a canned answer word by word.

    Useful for local runs and demos without vendor credentials. JSON output
    requests receive an empty object, which parses as a no-op evolution.
    """

    def __init__(self, agent_type: str = "claude-agent", delay_ms: int = 50, reply: str | None = None):
        self._agent_type = agent_type
        self._delay = delay_ms / 1000
        self._reply = reply

    @property
    def agent_type(self) -> str:
        return self._agent_type

    async def stream(self, request: AgentRequest, cancellation: CancellationToken) -> AsyncIterator[AgentEvent]:
        if request.output_format == "json":
            answer = json.dumps({})
        else:
            answer = self._reply or f"Processed: {request.prompt}"

        session_id = request.session_id or str(uuid4())
        for word in answer.split(" "):
            if cancellation.is_cancelled:
                return
            await asyncio.sleep(self._delay)
            yield AgentEvent(type="text-delta", content=word + " ")

        if cancellation.is_cancelled:
            return
        yield AgentEvent(type="complete", result=answer, session_id=session_id)
