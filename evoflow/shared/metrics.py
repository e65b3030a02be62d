from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from evoflow.ports.secondary.metrics import IMetrics


class MetricsRegistry(IMetrics):
    """Prometheus metrics registry."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        # Workflow metrics
        self.WORKFLOW_RUNS_TOTAL = Counter(
            "workflow_runs_total",
            "Total number of finished workflow runs",
            ["workflow_id", "status"],
            registry=registry,
        )

        self.WORKFLOW_DURATION_SECONDS = Histogram(
            "workflow_duration_seconds",
            "Time taken for a workflow run to finish",
            ["workflow_id"],
            buckets=(1, 5, 10, 30, 60, 120, 300, 600),
            registry=registry,
        )

        # Node metrics
        self.NODE_EXECUTIONS_TOTAL = Counter(
            "node_executions_total",
            "Total number of node executions",
            ["node_type", "status"],
            registry=registry,
        )

        self.NODE_DURATION_SECONDS = Histogram(
            "node_duration_seconds",
            "Time taken for node to complete",
            ["node_type"],
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 120.0),
            registry=registry,
        )

        # Evolution metrics
        self.EVOLUTION_ATTEMPTS_TOTAL = Counter(
            "evolution_attempts_total",
            "Total number of recorded evolution attempts",
            ["mode", "applied"],
            registry=registry,
        )

    def record_workflow_completion(self, workflow_id: str, status: str, duration: float):
        self.WORKFLOW_RUNS_TOTAL.labels(workflow_id=workflow_id, status=status).inc()
        self.WORKFLOW_DURATION_SECONDS.labels(workflow_id=workflow_id).observe(duration)

    def record_node_completion(self, node_type: str, status: str, duration: float):
        self.NODE_EXECUTIONS_TOTAL.labels(node_type=node_type, status=status).inc()
        self.NODE_DURATION_SECONDS.labels(node_type=node_type).observe(duration)

    def record_evolution(self, mode: str, applied: bool):
        self.EVOLUTION_ATTEMPTS_TOTAL.labels(mode=mode, applied=str(applied).lower()).inc()
