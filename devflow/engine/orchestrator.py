"""
Workflow engine: the public entry point of devflow.

:class:`WorkflowEngine` wires the components together around one metrics
aggregate and one event emitter, and exposes the single-repository
operations (smart branch, automated PR, conflict detection) and the
multi-repository ones (registration, coordinated branches and PRs,
synchronization, releases).
"""

from collections.abc import Mapping
from typing import Any

import structlog

from devflow.config.settings import (
    BranchingConfig,
    ConflictConfig,
    CoordinationConfig,
    DevflowSettings,
    ReleaseSettings,
    RepositoryConfig,
)
from devflow.engine.branching import SmartBranchCreator
from devflow.engine.conflicts import ConflictPredictor
from devflow.engine.coordinator import CrossRepoCoordinator
from devflow.engine.events import EventCallback, EventEmitter
from devflow.engine.pull_requests import PullRequestAutomator
from devflow.engine.registry import RepositoryRegistry
from devflow.engine.release import ReleaseOrchestrator
from devflow.engine.rollback import RollbackExecutor
from devflow.engine.strategy import BranchStrategyResolver
from devflow.engine.sync import AutoSyncScheduler, RepositorySynchronizer
from devflow.gateway.base import GatewayFactory, RepositoryGateway
from devflow.gateway.factory import GatewayPool, create_gateway_factory
from devflow.models.domain import (
    BranchDescriptor,
    BranchSpec,
    BranchTarget,
    ConflictReport,
    CoordinatedOperationReport,
    Issue,
    PullRequestResult,
    PullRequestSpec,
    ReleaseReport,
    ReleaseSpec,
    RepoCoords,
    RepositoryDescriptor,
    SmartBranchOptions,
    SmartBranchResult,
    SyncReport,
    SyncSpec,
)
from devflow.monitoring.metrics import MetricsSnapshot, WorkflowMetrics

log = structlog.get_logger(__name__)


class WorkflowEngine:
    """Coordinates branch, pull request and release work across repositories.

    All remote access goes through gateways obtained from
    ``gateway_factory``. Each engine owns its metrics, registry and timers,
    so several engines can run side by side without sharing state.

    Example:
        >>> engine = WorkflowEngine(host.gateway)
        >>> await engine.register_repository(RepositoryDescriptor("acme", "lib", role="critical"))
        >>> await engine.register_repository(
        ...     RepositoryDescriptor("acme", "api", dependencies=frozenset({"acme/lib"}))
        ... )
        >>> report = await engine.create_coordinated_branch(BranchSpec(name="feature/shared-auth"))
    """

    def __init__(
        self,
        gateway_factory: GatewayFactory,
        branching: BranchingConfig | None = None,
        conflicts: ConflictConfig | None = None,
        coordination: CoordinationConfig | None = None,
        release: ReleaseSettings | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        """Wire the engine components.

        Args:
            gateway_factory: Returns the gateway for a repository
            branching: Branch policies and naming
            conflicts: Critical path patterns
            coordination: Conflict prevention, dependency tracking, auto-sync
            release: Release defaults and rollback policy
            on_event: Optional observer for workflow events (sync or async)
        """
        self.gateway_factory = gateway_factory
        self.coordination = coordination or CoordinationConfig()

        self.metrics = WorkflowMetrics()
        self.events = EventEmitter(on_event)

        self.resolver = BranchStrategyResolver.from_config(branching or BranchingConfig())
        self.predictor = ConflictPredictor.from_config(conflicts or ConflictConfig(), self.metrics, self.events)
        self.automator = PullRequestAutomator(self.metrics, self.events)
        self.branch_creator = SmartBranchCreator(
            self.resolver, self.predictor, self.automator, self.metrics, self.events
        )

        self.registry = RepositoryRegistry(gateway_factory, self.events)
        self.rollback = RollbackExecutor(gateway_factory, self.metrics, self.events)
        self.coordinator = CrossRepoCoordinator(
            self.registry,
            gateway_factory,
            self.rollback,
            self.metrics,
            self.events,
            enable_conflict_prevention=self.coordination.enable_conflict_prevention,
            enable_dependency_tracking=self.coordination.enable_dependency_tracking,
            continue_on_error=self.coordination.continue_on_error,
        )
        self.synchronizer = RepositorySynchronizer(self.coordinator, gateway_factory, self.events)
        self.auto_sync = AutoSyncScheduler(self.synchronizer, self.coordination.sync_interval)
        self.releases = ReleaseOrchestrator(self.coordinator, self.rollback, self.metrics, self.events, release)

    @classmethod
    def from_settings(
        cls,
        settings: DevflowSettings,
        gateway_factory: GatewayFactory | None = None,
        dry_run: bool = False,
        on_event: EventCallback | None = None,
    ) -> "WorkflowEngine":
        """Build an engine from loaded settings.

        Configured repositories are not registered here; call
        :meth:`register_repositories` from a running event loop.
        """
        return cls(
            gateway_factory or create_gateway_factory(settings, dry_run=dry_run),
            branching=settings.branching,
            conflicts=settings.conflicts,
            coordination=settings.coordination,
            release=settings.release,
            on_event=on_event,
        )

    def _gateway(self, repo: RepoCoords | str) -> RepositoryGateway:
        coords = repo if isinstance(repo, RepoCoords) else RepoCoords.parse(repo)
        return self.gateway_factory(coords)

    def _workflow_done(self, operation: str) -> None:
        self.metrics.increment("workflows_executed")
        log.debug("workflow_executed", operation=operation)

    async def create_smart_branch(
        self,
        issue: Issue | Mapping[str, Any],
        repo: RepoCoords | str,
        options: SmartBranchOptions | None = None,
    ) -> SmartBranchResult:
        """Create the branch for an issue (plus optional PR, protection, conflict check)."""
        if not isinstance(issue, Issue):
            issue = Issue.from_payload(issue)

        result = await self.branch_creator.create(self._gateway(repo), issue, options)
        self._workflow_done("create_smart_branch")
        return result

    async def create_automated_pr(
        self,
        descriptor: BranchDescriptor,
        repo: RepoCoords | str,
        labels: list[str] | None = None,
        draft: bool = False,
    ) -> PullRequestResult:
        """Open the pull request for a branch created by :meth:`create_smart_branch`."""
        result = await self.automator.create(self._gateway(repo), descriptor, labels=labels, draft=draft)
        self._workflow_done("create_automated_pr")
        return result

    async def detect_conflicts(self, branch: str, target_branch: str, repo: RepoCoords | str) -> ConflictReport:
        """Estimate merge risk of ``branch`` into ``target_branch``."""
        report = await self.predictor.detect(self._gateway(repo), branch, target_branch)
        self._workflow_done("detect_conflicts")
        return report

    async def register_repository(self, descriptor: RepositoryDescriptor) -> RepositoryDescriptor:
        """Register a repository; starts or stops its auto-sync timer to match."""
        stored = await self.registry.register(descriptor)

        if stored.auto_sync is not None and self.coordination.enable_auto_sync:
            self.auto_sync.schedule(stored.id, stored.auto_sync)
        else:
            # A re-registration without auto-sync replaces the old settings
            await self.auto_sync.unschedule(stored.id)

        return stored

    async def register_repositories(self, configs: list[RepositoryConfig]) -> list[RepositoryDescriptor]:
        """Register configured repositories in the order given."""
        return [await self.register_repository(config.to_descriptor()) for config in configs]

    async def create_coordinated_branch(
        self,
        spec: BranchSpec,
        repositories: list[str] | None = None,
    ) -> CoordinatedOperationReport:
        report = await self.coordinator.create_coordinated_branch(spec, repositories)
        self._workflow_done("create_coordinated_branch")
        return report

    async def create_coordinated_prs(
        self,
        spec: PullRequestSpec,
        branches: list[BranchTarget],
    ) -> CoordinatedOperationReport:
        report = await self.coordinator.create_coordinated_prs(spec, branches)
        self._workflow_done("create_coordinated_prs")
        return report

    async def synchronize_repositories(self, spec: SyncSpec | Mapping[str, Any]) -> SyncReport:
        if not isinstance(spec, SyncSpec):
            spec = SyncSpec.from_mapping(spec)

        report = await self.synchronizer.synchronize(spec)
        self._workflow_done("synchronize_repositories")
        return report

    async def orchestrate_release(self, spec: ReleaseSpec) -> ReleaseReport:
        report = await self.releases.orchestrate(spec)
        self._workflow_done("orchestrate_release")
        return report

    def get_status(self) -> dict[str, Any]:
        """Read-only snapshot of registry, graph, tasks and timers."""
        return {
            "repositories": [
                {
                    "id": d.id,
                    "role": d.role,
                    "dependencies": sorted(d.dependencies),
                    "registered_at": d.registered_at.isoformat() if d.registered_at else None,
                    "auto_sync": d.auto_sync is not None,
                }
                for d in self.registry.descriptors()
            ],
            "dependency_graph": self.registry.dependency_graph(),
            "active_tasks": [self.releases.task_summary(t) for t in self.releases.active_tasks()],
            "auto_sync": self.auto_sync.timers(),
            "metrics": self.get_metrics().to_dict(),
        }

    def get_metrics(self) -> MetricsSnapshot:
        return self.metrics.snapshot()

    def reset_metrics(self) -> None:
        self.metrics.reset()

    async def cleanup(self) -> None:
        """Stop timers, clear the registry and release network resources."""
        await self.auto_sync.cancel_all()
        self.registry.reset()

        if isinstance(self.gateway_factory, GatewayPool):
            await self.gateway_factory.close()

        log.info("engine_cleaned_up")
