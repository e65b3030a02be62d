from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ExecutionEventType(str, Enum):
    EXECUTION_START = "execution-start"
    NODE_START = "node-start"
    NODE_OUTPUT = "node-output"
    NODE_COMPLETE = "node-complete"
    NODE_ERROR = "node-error"
    NODE_SKIPPED = "node-skipped"
    EXECUTION_COMPLETE = "execution-complete"
    EXECUTION_INTERRUPTED = "execution-interrupted"
    EXECUTION_ERROR = "execution-error"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionEventType.EXECUTION_COMPLETE,
            ExecutionEventType.EXECUTION_INTERRUPTED,
            ExecutionEventType.EXECUTION_ERROR,
        )


@dataclass(frozen=True)
class ExecutionEvent:
    """Normalized lifecycle event forwarded to the caller of a run."""

    type: ExecutionEventType
    execution_id: str
    workflow_id: str
    node_id: str | None = None
    node_name: str | None = None
    data: Any = None
    error: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type.value,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.node_id is not None:
            payload["nodeId"] = self.node_id
        if self.node_name is not None:
            payload["nodeName"] = self.node_name
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


class HandlerEventKind(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class HandlerEvent:
    """Event produced by a node-type handler while it runs."""

    kind: HandlerEventKind
    payload: Any = None
    output: Any = None
    active_handle: str | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def started(cls, payload: Any = None) -> "HandlerEvent":
        return cls(HandlerEventKind.STARTED, payload=payload)

    @classmethod
    def progress(cls, payload: Any) -> "HandlerEvent":
        return cls(HandlerEventKind.PROGRESS, payload=payload)

    @classmethod
    def complete(cls, output: Any, active_handle: str | None = None) -> "HandlerEvent":
        return cls(HandlerEventKind.COMPLETE, output=output, active_handle=active_handle)

    @classmethod
    def failed(cls, error: str, error_code: str = "EXECUTION_FAILED") -> "HandlerEvent":
        return cls(HandlerEventKind.ERROR, error=error, error_code=error_code)
