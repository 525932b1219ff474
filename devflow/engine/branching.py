"""
Smart branch creation.

Creates the branch resolved for an issue and, on request, protects it,
checks it for merge risk and opens its pull request. A branch that already
exists is a normal outcome (``exists``), not an error, so creating the branch
for the same issue twice is safe.
"""

import structlog

from devflow.engine.conflicts import ConflictPredictor
from devflow.engine.events import EventEmitter
from devflow.engine.pull_requests import PullRequestAutomator
from devflow.engine.strategy import BranchStrategyResolver
from devflow.enums import CompensationKind, EventType
from devflow.exceptions import AlreadyExistsError
from devflow.gateway.base import RepositoryGateway
from devflow.models.domain import (
    CompensatingAction,
    Issue,
    OperationOutcome,
    SmartBranchOptions,
    SmartBranchResult,
    branch_ref,
)
from devflow.monitoring.metrics import WorkflowMetrics

log = structlog.get_logger(__name__)

OPERATION = "create_smart_branch"


class SmartBranchCreator:
    def __init__(
        self,
        resolver: BranchStrategyResolver,
        predictor: ConflictPredictor,
        automator: PullRequestAutomator,
        metrics: WorkflowMetrics,
        events: EventEmitter,
    ) -> None:
        self.resolver = resolver
        self.predictor = predictor
        self.automator = automator
        self.metrics = metrics
        self.events = events

    async def create(
        self,
        gateway: RepositoryGateway,
        issue: Issue,
        options: SmartBranchOptions | None = None,
    ) -> SmartBranchResult:
        """Create the branch for an issue.

        Args:
            gateway: Gateway of the target repository
            issue: Originating issue
            options: Follow-up actions; by default only the branch is created

        Returns:
            Smart branch result; ``exists`` is set when the branch was
            already there, in which case no follow-up action runs

        Raises:
            NotFoundError: If the base ref does not exist
            GatewayError: For any other remote failure
        """
        options = options or SmartBranchOptions()
        descriptor = self.resolver.resolve(issue, base_ref=options.base_ref)
        repository = gateway.repository

        log.info(
            "creating_smart_branch",
            repository=repository,
            issue=issue.number,
            branch=descriptor.name,
            branch_type=str(descriptor.type),
            base=descriptor.base_ref,
        )

        base_sha = await gateway.get_ref(branch_ref(descriptor.base_ref))

        try:
            sha = await gateway.create_ref(branch_ref(descriptor.name), base_sha)
        except AlreadyExistsError:
            log.warning("branch_already_exists", repository=repository, branch=descriptor.name)
            outcome = OperationOutcome.skipped(
                repository, OPERATION, "already exists", detail={"branch": descriptor.name}
            )
            return SmartBranchResult(descriptor=descriptor, outcome=outcome, url=gateway.branch_url(descriptor.name))

        self.metrics.increment("branches_created")
        outcome = OperationOutcome.created(
            repository,
            OPERATION,
            detail={"branch": descriptor.name, "base": descriptor.base_ref, "sha": sha},
            compensations=[CompensatingAction(repository, CompensationKind.REF, branch_ref(descriptor.name))],
        )
        result = SmartBranchResult(
            descriptor=descriptor,
            outcome=outcome,
            sha=sha,
            url=gateway.branch_url(descriptor.name),
        )

        log.info("branch_created", repository=repository, branch=descriptor.name, sha=sha)
        await self.events.emit(
            EventType.BRANCH_CREATED,
            repository=repository,
            branch=descriptor.name,
            branch_type=str(descriptor.type),
            issue=issue.number,
        )

        if options.apply_protection and descriptor.policy.protection_rules:
            await gateway.set_branch_protection(descriptor.name, list(descriptor.policy.protection_rules))
            result.protection_applied = True

        if options.check_conflicts:
            result.conflict_report = await self.predictor.detect(gateway, descriptor.name, descriptor.base_ref)

        if options.create_pr:
            result.pull_request = await self.automator.create(
                gateway, descriptor, labels=options.labels, draft=options.draft
            )

        return result
