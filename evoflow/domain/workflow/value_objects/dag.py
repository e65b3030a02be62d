from collections import defaultdict
from dataclasses import dataclass, field

from evoflow.domain.workflow.entities.workflow import Workflow, WorkflowEdge, WorkflowNode
from evoflow.domain.workflow.exceptions import (
    CyclicDependencyError,
    DuplicateNodeIdError,
    EmptyWorkflowError,
    InvalidEdgeReferenceError,
)


@dataclass
class DAG:
    """Validated workflow graph with cycle detection (Kahn's algorithm) and traversal methods."""

    nodes: dict[str, WorkflowNode] = field(default_factory=dict)
    edges: list[WorkflowEdge] = field(default_factory=list)
    adjacency: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))
    reverse_adjacency: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))
    incoming: dict[str, list[WorkflowEdge]] = field(default_factory=lambda: defaultdict(list))
    outgoing: dict[str, list[WorkflowEdge]] = field(default_factory=lambda: defaultdict(list))

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "DAG":
        """Build and validate a DAG from a workflow document."""
        dag = cls()

        if not workflow.nodes:
            raise EmptyWorkflowError()

        for node in workflow.nodes:
            if node.id in dag.nodes:
                raise DuplicateNodeIdError(node.id)
            dag.nodes[node.id] = node

        dag.edges = list(workflow.edges)
        dag._validate_references()
        dag._build_adjacency_lists()
        dag._detect_cycles()

        return dag

    def _validate_references(self) -> None:
        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self.nodes:
                    raise InvalidEdgeReferenceError(edge.id, endpoint)

    def _build_adjacency_lists(self) -> None:
        for edge in self.edges:
            self.adjacency[edge.source].add(edge.target)
            self.reverse_adjacency[edge.target].add(edge.source)
            self.outgoing[edge.source].append(edge)
            self.incoming[edge.target].append(edge)

    def _detect_cycles(self) -> None:
        """Kahn's algorithm: iteratively remove zero in-degree nodes; remaining nodes form a cycle."""
        in_degree = {node_id: len(self.reverse_adjacency.get(node_id, ())) for node_id in self.nodes}

        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]
        visited_count = 0

        while queue:
            current = queue.pop(0)
            visited_count += 1

            for neighbor in self.adjacency.get(current, set()):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if visited_count != len(self.nodes):
            unvisited = [node_id for node_id in self.nodes if in_degree[node_id] > 0]
            raise CyclicDependencyError(unvisited)

    def get_root_nodes(self) -> list[str]:
        return [node_id for node_id in self.nodes if not self.reverse_adjacency.get(node_id)]

    def get_predecessors(self, node_id: str) -> list[str]:
        """Sources of incoming edges, in edge order, without duplicates."""
        return list(dict.fromkeys(edge.source for edge in self.incoming.get(node_id, ())))

    def get_successors(self, node_id: str) -> list[str]:
        return list(dict.fromkeys(edge.target for edge in self.outgoing.get(node_id, ())))

    def get_incoming_edges(self, node_id: str) -> list[WorkflowEdge]:
        return self.incoming.get(node_id, [])

    def get_outgoing_edges(self, node_id: str) -> list[WorkflowEdge]:
        return self.outgoing.get(node_id, [])

    def get_ancestors(self, node_id: str) -> set[str]:
        return self._walk(node_id, self.reverse_adjacency)

    def get_descendants(self, node_id: str) -> set[str]:
        return self._walk(node_id, self.adjacency)

    @staticmethod
    def _walk(start: str, links: dict[str, set[str]]) -> set[str]:
        seen: set[str] = set()
        stack = list(links.get(start, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(links.get(current, ()))
        return seen

    def topological_sort(self) -> list[str]:
        in_degree = {node_id: len(self.reverse_adjacency.get(node_id, ())) for node_id in self.nodes}

        queue = sorted([node_id for node_id, degree in in_degree.items() if degree == 0])
        result = []

        while queue:
            current = queue.pop(0)
            result.append(current)

            for neighbor in sorted(self.adjacency.get(current, set())):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        return result

