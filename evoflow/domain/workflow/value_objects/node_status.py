from enum import Enum


class NodeStatus(str, Enum):
    """
    Enumeration of valid states for a workflow node within one run.

    States:
        PENDING: Initial state, waiting for predecessors.
        RUNNING: Currently executing.
        COMPLETE: Successfully finished.
        ERROR: Execution failed.
        SKIPPED: Not reachable in this run (branch not taken, upstream failure).
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETE, NodeStatus.ERROR, NodeStatus.SKIPPED)

    def can_transition_to(self, target: "NodeStatus") -> bool:
        """
        Validates if a transition from current state to target state is allowed.

        Transitions are monotonic: a node never returns to PENDING once it left it.
        """
        valid_transitions = {
            NodeStatus.PENDING: {NodeStatus.RUNNING, NodeStatus.SKIPPED},
            NodeStatus.RUNNING: {NodeStatus.COMPLETE, NodeStatus.ERROR},
            NodeStatus.COMPLETE: set(),
            NodeStatus.ERROR: set(),
            NodeStatus.SKIPPED: set(),
        }
        return target in valid_transitions[self]
