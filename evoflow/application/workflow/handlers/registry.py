from evoflow.application.workflow.handlers.base import NodeHandler
from evoflow.domain.workflow.entities.workflow import WorkflowNode
from evoflow.domain.workflow.exceptions import UnknownNodeTypeError
from evoflow.shared.logger import get_logger

logger = get_logger(__name__)


class HandlerRegistry:
    def __init__(self, handlers: list[NodeHandler] | None = None):
        self._handlers: dict[str, NodeHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: NodeHandler) -> None:
        self._handlers[handler.node_type.value] = handler
        logger.debug("node_handler_registered", node_type=handler.node_type.value)

    def get(self, node: WorkflowNode) -> NodeHandler:
        handler = self._handlers.get(node.type.value)
        if handler is None:
            raise UnknownNodeTypeError(node.id, node.type.value)
        return handler

    @property
    def node_types(self) -> list[str]:
        return sorted(self._handlers)
