"""
Cross-repository operation coordination.

A coordinated call runs one step per repository, sequentially, in dependency
order::

    pending -> conflict-check (optional) -> per-repository execution
            -> aggregation -> (rollback if needed) -> done

Every step returns an :class:`OperationOutcome` carrying the compensating
actions for what it created, or raises. A failure in a ``critical``
repository (unless the caller asked to continue on error) rolls back every
created outcome and aborts the call with :class:`CoordinationError`; any
other failure is recorded and the batch continues. Either way each
requested repository ends up in exactly one report bucket.
"""

from collections.abc import Awaitable, Callable

import structlog

from devflow.engine.events import EventEmitter
from devflow.engine.registry import RepositoryRegistry
from devflow.engine.rollback import RollbackExecutor, compensations_for
from devflow.enums import CompensationKind, EventType
from devflow.exceptions import (
    AlreadyExistsError,
    ConflictDetectedError,
    CoordinationError,
    DevflowError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from devflow.gateway.base import GatewayFactory, RepositoryGateway
from devflow.models.domain import (
    BranchSpec,
    BranchTarget,
    CompensatingAction,
    CoordinatedOperationReport,
    OperationOutcome,
    PullRequestSpec,
    RepositoryDescriptor,
    branch_ref,
    utcnow,
)
from devflow.monitoring.metrics import WorkflowMetrics
from devflow.utils.logging_config import operation_context

log = structlog.get_logger(__name__)

Step = Callable[[RepositoryDescriptor, RepositoryGateway], Awaitable[OperationOutcome]]


class CrossRepoCoordinator:
    """Runs operations across registered repositories with rollback."""

    def __init__(
        self,
        registry: RepositoryRegistry,
        gateway_factory: GatewayFactory,
        rollback: RollbackExecutor,
        metrics: WorkflowMetrics,
        events: EventEmitter,
        enable_conflict_prevention: bool = True,
        enable_dependency_tracking: bool = True,
        continue_on_error: bool = False,
    ) -> None:
        self.registry = registry
        self.gateway_factory = gateway_factory
        self.rollback = rollback
        self.metrics = metrics
        self.events = events
        self.enable_conflict_prevention = enable_conflict_prevention
        self.enable_dependency_tracking = enable_dependency_tracking
        self.continue_on_error = continue_on_error

    def resolve_targets(self, repositories: list[str] | None = None) -> list[RepositoryDescriptor]:
        """Resolve requested repository ids; all registered ones when None.

        Raises:
            ValidationError: If an id is not registered or nothing is targeted
        """
        ids = self.registry.ids() if repositories is None else list(dict.fromkeys(repositories))

        unknown = [repo_id for repo_id in ids if repo_id not in self.registry]
        if unknown:
            raise ValidationError(f"Unknown repositories: {', '.join(unknown)}")
        if not ids:
            raise ValidationError("No repositories to operate on")

        return [self.registry.get(repo_id) for repo_id in ids]

    def gateway_for(self, descriptor: RepositoryDescriptor) -> RepositoryGateway:
        return self.gateway_factory(descriptor.coords)

    async def precheck_refs(self, targets: list[RepositoryDescriptor], ref: str) -> list[dict[str, str]]:
        """Find targets where ``ref`` already exists. Read only."""
        conflicts = []
        for descriptor in targets:
            try:
                sha = await self.gateway_for(descriptor).get_ref(ref)
            except NotFoundError:
                continue
            conflicts.append({"repository": descriptor.id, "ref": ref, "sha": sha})
        return conflicts

    async def execute(
        self,
        operation: str,
        targets: list[RepositoryDescriptor],
        step: Step,
        continue_on_error: bool = False,
        precheck_ref: str | None = None,
        report: CoordinatedOperationReport | None = None,
    ) -> CoordinatedOperationReport:
        """Run ``step`` once per target repository.

        Args:
            operation: Operation name for outcomes and logs
            targets: Resolved target repositories
            step: Per-repository operation
            continue_on_error: Record critical failures instead of aborting
            precheck_ref: Ref the operation creates; with conflict
                prevention enabled the call fails before any mutation if
                the ref exists in any target
            report: Report instance to fill (for report subclasses)

        Returns:
            The aggregated report

        Raises:
            ConflictDetectedError: If the pre-check found the ref
            CoordinationError: If a critical repository failed; carries the
                report with the rollback summary, chains the original error
        """
        with operation_context(operation):
            return await self._execute(operation, targets, step, continue_on_error, precheck_ref, report)

    async def _execute(
        self,
        operation: str,
        targets: list[RepositoryDescriptor],
        step: Step,
        continue_on_error: bool,
        precheck_ref: str | None,
        report: CoordinatedOperationReport | None,
    ) -> CoordinatedOperationReport:
        report = report or CoordinatedOperationReport(operation=operation)
        report.operation = operation
        report.requested = [d.id for d in targets]
        continue_on_error = continue_on_error or self.continue_on_error

        log.info("coordinated_operation_started", operation=operation, repositories=report.requested)

        if precheck_ref and self.enable_conflict_prevention:
            conflicts = await self.precheck_refs(targets, precheck_ref)
            if conflicts:
                report.precheck_conflicts = conflicts
                report.finished_at = utcnow()
                repos = [c["repository"] for c in conflicts]
                log.warning("coordinated_precheck_conflicts", operation=operation, ref=precheck_ref, repositories=repos)
                await self.events.emit(
                    EventType.COORDINATED_OPERATION_ABORTED,
                    operation=operation,
                    reason="conflict-check",
                    repositories=repos,
                )
                raise ConflictDetectedError(
                    f"{operation}: {precheck_ref} already exists in {', '.join(repos)}",
                    conflicts=conflicts,
                    report=report,
                )

        order = report.requested
        if self.enable_dependency_tracking:
            order = self.registry.order(report.requested)

        for index, repo_id in enumerate(order):
            descriptor = self.registry.get(repo_id)
            try:
                outcome = await step(descriptor, self.gateway_for(descriptor))
            except Exception as e:
                report.record(OperationOutcome.failed(repo_id, operation, e))
                log.error(
                    "coordinated_step_failed",
                    operation=operation,
                    repository=repo_id,
                    role=descriptor.role,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=not isinstance(e, DevflowError),
                )
                if descriptor.is_critical and not continue_on_error:
                    await self._abort(report, repo_id, e, remaining=order[index + 1 :])
                continue

            report.record(outcome)
            log.info("coordinated_step_done", operation=operation, repository=repo_id, status=str(outcome.status))

        report.finished_at = utcnow()
        self.metrics.increment("cross_repo_operations")

        log.info(
            "coordinated_operation_completed",
            operation=operation,
            created=len(report.created),
            failed=len(report.failed),
            skipped=len(report.skipped),
        )
        await self.events.emit(
            EventType.COORDINATED_OPERATION_COMPLETED,
            operation=operation,
            created=[o.repository for o in report.created],
            failed=[o.repository for o in report.failed],
            skipped=[o.repository for o in report.skipped],
        )
        return report

    async def _abort(
        self,
        report: CoordinatedOperationReport,
        repo_id: str,
        error: Exception,
        remaining: list[str],
    ) -> None:
        for pending in remaining:
            report.record(OperationOutcome.skipped(pending, report.operation, f"aborted after {repo_id} failed"))

        report.rollback = await self.rollback.run(
            compensations_for(report.created),
            reason=f"{report.operation} failed in critical repository {repo_id}",
        )
        report.finished_at = utcnow()

        await self.events.emit(
            EventType.COORDINATED_OPERATION_ABORTED,
            operation=report.operation,
            reason="critical-failure",
            repository=repo_id,
            error=str(error),
        )
        raise CoordinationError(
            f"{report.operation} aborted: critical repository {repo_id} failed: {error}",
            report=report,
            original=error,
        ) from error

    async def create_coordinated_branch(
        self,
        spec: BranchSpec,
        repositories: list[str] | None = None,
    ) -> CoordinatedOperationReport:
        """Create the same branch in every target repository.

        An existing branch is a ``skipped`` outcome; with conflict prevention
        enabled the call fails before creating anything instead.
        """
        if not spec.name:
            raise ValidationError("Coordinated branch requires a name")

        targets = self.resolve_targets(repositories)
        ref = branch_ref(spec.name)

        async def step(descriptor: RepositoryDescriptor, gateway: RepositoryGateway) -> OperationOutcome:
            base_sha = await gateway.get_ref(branch_ref(spec.base_branch))
            try:
                sha = await gateway.create_ref(ref, base_sha)
            except AlreadyExistsError:
                log.warning("branch_already_exists", repository=descriptor.id, branch=spec.name)
                return OperationOutcome.skipped(
                    descriptor.id, "create_branch", "already exists", detail={"branch": spec.name}
                )

            self.metrics.increment("branches_created")
            await self.events.emit(EventType.BRANCH_CREATED, repository=descriptor.id, branch=spec.name)
            return OperationOutcome.created(
                descriptor.id,
                "create_branch",
                detail={"branch": spec.name, "base": spec.base_branch, "sha": sha},
                compensations=[CompensatingAction(descriptor.id, CompensationKind.REF, ref)],
            )

        return await self.execute(
            "create_branch",
            targets,
            step,
            continue_on_error=spec.continue_on_error,
            precheck_ref=ref,
        )

    async def create_coordinated_prs(
        self,
        spec: PullRequestSpec,
        branches: list[BranchTarget],
    ) -> CoordinatedOperationReport:
        """Open one pull request per ``(repository, branch)`` pair.

        With ``cross_link`` every created pull request gets a comment listing
        the others.
        """
        if not spec.title:
            raise ValidationError("Coordinated pull requests require a title")
        if not branches:
            raise ValidationError("Coordinated pull requests require at least one branch")

        branch_for: dict[str, str] = {}
        for target in branches:
            if target.repository in branch_for:
                raise ValidationError(f"Repository {target.repository} listed more than once")
            branch_for[target.repository] = target.branch

        targets = self.resolve_targets(list(branch_for))
        body = spec.body or spec.description

        async def step(descriptor: RepositoryDescriptor, gateway: RepositoryGateway) -> OperationOutcome:
            branch = branch_for[descriptor.id]
            pr = await gateway.create_pull_request(
                head=branch,
                base=spec.base_branch,
                title=spec.title,
                body=body,
                draft=spec.draft,
            )
            detail = {"number": pr.number, "url": pr.url, "branch": branch, "base": spec.base_branch}

            if spec.labels:
                try:
                    await gateway.add_labels(pr.number, spec.labels)
                    detail["labels"] = list(spec.labels)
                except GatewayError as e:
                    log.warning("pr_labels_failed", repository=descriptor.id, pr=pr.number, error=str(e))
                    detail["labels_error"] = str(e)

            self.metrics.increment("prs_created")
            await self.events.emit(
                EventType.PULL_REQUEST_CREATED,
                repository=descriptor.id,
                number=pr.number,
                url=pr.url,
                branch=branch,
            )
            return OperationOutcome.created(
                descriptor.id,
                "create_pull_request",
                detail=detail,
                compensations=[CompensatingAction(descriptor.id, CompensationKind.PULL_REQUEST, pr.number)],
            )

        report = await self.execute(
            "create_pull_request",
            targets,
            step,
            continue_on_error=spec.continue_on_error,
        )
        report.linked_prs = {o.repository: o.detail["number"] for o in report.created}

        if spec.cross_link and len(report.created) > 1:
            await self._cross_link(report)

        return report

    async def _cross_link(self, report: CoordinatedOperationReport) -> None:
        for outcome in report.created:
            related = [
                f"- {other.repository}#{other.detail['number']}: {other.detail['url']}"
                for other in report.created
                if other is not outcome
            ]
            body = "Related pull requests:\n\n" + "\n".join(related)
            gateway = self.gateway_for(self.registry.get(outcome.repository))
            try:
                await gateway.create_comment(outcome.detail["number"], body)
            except GatewayError as e:
                log.warning(
                    "cross_link_failed",
                    repository=outcome.repository,
                    pr=outcome.detail["number"],
                    error=str(e),
                )
