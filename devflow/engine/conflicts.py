"""
Merge-risk prediction between two refs.

The predictor asks the gateway to compare the refs and classifies every
changed file by path. A file matching a critical-path pattern (dependency
manifests, CI definitions, build and environment configuration, database
schema) marks the comparison as conflicting. The size of a change is
recorded as ``high_volume`` but never triggers a conflict on its own.
"""

import re
from collections.abc import Iterable

import structlog

from devflow.config.settings import DEFAULT_CRITICAL_PATTERNS, ConflictConfig
from devflow.engine.events import EventEmitter
from devflow.enums import EventType, FileRisk
from devflow.gateway.base import RepositoryGateway
from devflow.models.domain import ConflictFile, ConflictReport
from devflow.monitoring.metrics import WorkflowMetrics

log = structlog.get_logger(__name__)


class ConflictPredictor:
    """Classifies ref comparisons by critical-path overlap."""

    def __init__(
        self,
        metrics: WorkflowMetrics,
        events: EventEmitter,
        critical_patterns: Iterable[str] = DEFAULT_CRITICAL_PATTERNS,
        large_change_threshold: int = 50,
    ) -> None:
        self.metrics = metrics
        self.events = events
        self.critical_patterns = [re.compile(p) for p in critical_patterns]
        self.large_change_threshold = large_change_threshold

    @classmethod
    def from_config(cls, config: ConflictConfig, metrics: WorkflowMetrics, events: EventEmitter) -> "ConflictPredictor":
        return cls(
            metrics,
            events,
            critical_patterns=config.critical_patterns,
            large_change_threshold=config.large_change_threshold,
        )

    def classify(self, path: str) -> FileRisk:
        if any(pattern.search(path) for pattern in self.critical_patterns):
            return FileRisk.CRITICAL_PATH
        return FileRisk.ORDINARY

    async def detect(self, gateway: RepositoryGateway, source: str, target: str) -> ConflictReport:
        """Estimate merge risk of ``source`` into ``target``.

        Args:
            gateway: Gateway of the repository holding both refs
            source: Branch to be merged
            target: Branch merged into

        Returns:
            Conflict report; ``has_conflicts`` is set when any changed file
            is on a critical path

        Raises:
            GatewayError: If the comparison fails
        """
        log.info("detecting_conflicts", repository=gateway.repository, source=source, target=target)

        comparison = await gateway.compare_refs(base=target, head=source)

        files = [
            ConflictFile(
                path=changed.path,
                status=changed.status,
                changes=changed.changes,
                classification=self.classify(changed.path),
                high_volume=changed.changes > self.large_change_threshold,
            )
            for changed in comparison.files
        ]

        report = ConflictReport(
            repository=gateway.repository,
            source=source,
            target=target,
            has_conflicts=any(f.classification == FileRisk.CRITICAL_PATH for f in files),
            files=files,
            ahead_by=comparison.ahead_by,
            behind_by=comparison.behind_by,
            total_commits=comparison.total_commits,
        )

        if report.has_conflicts:
            critical = [f.path for f in report.critical_files]
            self.metrics.increment("conflicts_detected")
            log.warning(
                "conflicts_detected",
                repository=gateway.repository,
                source=source,
                target=target,
                files=critical,
            )
            await self.events.emit(
                EventType.CONFLICTS_DETECTED,
                repository=gateway.repository,
                source=source,
                target=target,
                files=critical,
            )
        else:
            log.info("no_conflicts_detected", repository=gateway.repository, changed_files=len(files))

        return report
