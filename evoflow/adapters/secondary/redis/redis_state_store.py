import json
from typing import Any

import redis.asyncio as redis

from evoflow.domain.workflow.entities.execution import ExecutionCheckpoint
from evoflow.domain.workflow.value_objects.node_status import NodeStatus
from evoflow.ports.secondary.state_store import IStateStore


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisStateStore(IStateStore):
    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 86400):
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    def _status_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}:status"

    def _output_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}:output"

    def _variables_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}:variables"

    def _execution_metadata_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}:metadata"

    async def _touch(self, key: str) -> None:
        await self._redis.expire(key, self._ttl_seconds)

    async def set_node_status(self, execution_id: str, node_id: str, status: NodeStatus) -> None:
        key = self._status_key(execution_id)
        await self._redis.hset(key, node_id, status.value)
        await self._touch(key)

    async def get_all_node_statuses(self, execution_id: str) -> dict[str, NodeStatus]:
        data = await self._redis.hgetall(self._status_key(execution_id))
        return {_text(k): NodeStatus(_text(v)) for k, v in data.items()}

    async def set_node_output(self, execution_id: str, node_id: str, output: Any) -> None:
        key = self._output_key(execution_id)
        await self._redis.hset(key, node_id, json.dumps(output, default=str))
        await self._touch(key)

    async def get_all_outputs(self, execution_id: str) -> dict[str, Any]:
        data = await self._redis.hgetall(self._output_key(execution_id))
        return {_text(k): json.loads(_text(v)) for k, v in data.items()}

    async def set_variables(self, execution_id: str, variables: dict[str, Any]) -> None:
        if not variables:
            return
        key = self._variables_key(execution_id)
        await self._redis.hset(
            key, mapping={name: json.dumps(value, default=str) for name, value in variables.items()}
        )
        await self._touch(key)

    async def get_variables(self, execution_id: str) -> dict[str, Any]:
        data = await self._redis.hgetall(self._variables_key(execution_id))
        return {_text(k): json.loads(_text(v)) for k, v in data.items()}

    async def set_execution_metadata(self, execution_id: str, metadata: dict) -> None:
        await self._redis.set(
            self._execution_metadata_key(execution_id),
            json.dumps(metadata),
            ex=self._ttl_seconds,
        )

    async def get_execution_metadata(self, execution_id: str) -> dict | None:
        value = await self._redis.get(self._execution_metadata_key(execution_id))
        if value:
            return json.loads(_text(value))
        return None

    async def load_checkpoint(self, execution_id: str) -> ExecutionCheckpoint | None:
        metadata = await self.get_execution_metadata(execution_id)
        if metadata is None:
            return None
        return ExecutionCheckpoint(
            execution_id=execution_id,
            workflow_id=metadata["workflow_id"],
            workflow_input=metadata.get("input", ""),
            statuses=await self.get_all_node_statuses(execution_id),
            node_outputs=await self.get_all_outputs(execution_id),
            variables=await self.get_variables(execution_id),
        )
