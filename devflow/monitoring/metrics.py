"""
Workflow counters owned by one engine instance.

The engine creates a :class:`WorkflowMetrics` and passes it by reference to
its components. Each instance keeps its own Prometheus ``CollectorRegistry``,
so two engines in one process never share counters. Callers read values
through :meth:`WorkflowMetrics.snapshot` or export the registry in the
Prometheus text format with :meth:`WorkflowMetrics.export`.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

import structlog
from prometheus_client import CollectorRegistry, Counter, generate_latest

from devflow.models.domain import utcnow

log = structlog.get_logger(__name__)

NAMESPACE = "devflow"

COUNTERS = {
    "workflows_executed": "Top-level engine operations that ran to completion",
    "branches_created": "Branches actually created (existing branches are not counted)",
    "prs_created": "Pull requests opened",
    "conflicts_detected": "Conflict checks that reported conflicts",
    "cross_repo_operations": "Coordinated multi-repository operations",
    "releases_created": "Releases published",
    "rollbacks_performed": "Compensating actions that succeeded",
}


@dataclass(frozen=True)
class MetricsSnapshot:
    """Read-only copy of the counters at one point in time."""

    workflows_executed: int
    branches_created: int
    prs_created: int
    conflicts_detected: int
    cross_repo_operations: int
    releases_created: int
    rollbacks_performed: int
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class WorkflowMetrics:
    """Prometheus counters for one engine."""

    def __init__(self) -> None:
        self._build()

    def _build(self) -> None:
        self.registry = CollectorRegistry()
        self._counters = {
            name: Counter(name, description, namespace=NAMESPACE, registry=self.registry)
            for name, description in COUNTERS.items()
        }

    def increment(self, counter: str, amount: int = 1) -> None:
        """Add ``amount`` to a counter.

        Raises:
            AttributeError: If the counter does not exist
        """
        try:
            metric = self._counters[counter]
        except KeyError:
            raise AttributeError(f"Unknown metric: {counter}") from None
        metric.inc(amount)

    def value(self, counter: str) -> int:
        if counter not in COUNTERS:
            raise AttributeError(f"Unknown metric: {counter}")
        sample = self.registry.get_sample_value(f"{NAMESPACE}_{counter}_total")
        return int(sample or 0)

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(**{name: self.value(name) for name in COUNTERS})

    def export(self) -> bytes:
        """Render every counter in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def reset(self) -> None:
        # Counters only go up; a reset swaps in a fresh registry
        self._build()
        log.info("metrics_reset")
