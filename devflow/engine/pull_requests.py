"""Pull request automation for issue branches."""

import structlog

from devflow.engine.events import EventEmitter
from devflow.enums import EventType
from devflow.exceptions import GatewayError
from devflow.gateway.base import RepositoryGateway
from devflow.models.domain import BranchDescriptor, PullRequestResult
from devflow.monitoring.metrics import WorkflowMetrics

log = structlog.get_logger(__name__)


def build_pr_title(descriptor: BranchDescriptor) -> str:
    return f"{descriptor.issue.title} (#{descriptor.issue.number})"


def build_pr_body(descriptor: BranchDescriptor) -> str:
    """Generate the markdown body linking the pull request to its issue."""
    issue = descriptor.issue
    auto_merge = "Enabled" if descriptor.policy.auto_merge else "Disabled"

    return f"""## Summary

This PR addresses Issue #{issue.number}: {issue.title}

## Changes

<!-- Describe the changes made in this PR -->

## Related Issues

Closes #{issue.number}

## Checklist

- [ ] Tests added/updated
- [ ] Documentation updated
- [ ] Self-review completed

---

**Branch Type**: {descriptor.type}
**Auto-merge**: {auto_merge}
"""


class PullRequestAutomator:
    """Opens the pull request for a resolved issue branch.

    PR creation failures propagate to the caller unchanged; retries happen
    in the gateway, not here.
    """

    def __init__(self, metrics: WorkflowMetrics, events: EventEmitter) -> None:
        self.metrics = metrics
        self.events = events

    async def create(
        self,
        gateway: RepositoryGateway,
        descriptor: BranchDescriptor,
        labels: list[str] | None = None,
        draft: bool = False,
    ) -> PullRequestResult:
        """Create a pull request from the branch into its base ref.

        Args:
            gateway: Gateway of the repository holding the branch
            descriptor: Branch to open the pull request for
            labels: Labels to apply instead of the issue's labels
            draft: Open as draft

        Returns:
            Pull request result

        Raises:
            GatewayError: If creating the pull request or applying labels fails
        """
        issue = descriptor.issue
        log.info(
            "creating_automated_pr",
            repository=gateway.repository,
            branch=descriptor.name,
            issue=issue.number,
        )

        pr = await gateway.create_pull_request(
            head=descriptor.name,
            base=descriptor.base_ref,
            title=build_pr_title(descriptor),
            body=build_pr_body(descriptor),
            draft=draft,
        )

        applied = list(labels) if labels is not None else list(issue.labels)
        if applied:
            await gateway.add_labels(pr.number, applied)

        issue_linked = await self._link_issue(gateway, pr.number, pr.url, issue.number)

        self.metrics.increment("prs_created")

        result = PullRequestResult(
            number=pr.number,
            url=pr.url,
            branch=descriptor.name,
            base=descriptor.base_ref,
            issue_number=issue.number,
            auto_merge_requested=descriptor.policy.auto_merge,
            labels=applied,
            issue_linked=issue_linked,
        )

        log.info("pr_created", repository=gateway.repository, pr_number=pr.number, branch=descriptor.name)
        await self.events.emit(
            EventType.PULL_REQUEST_CREATED,
            repository=gateway.repository,
            number=pr.number,
            url=pr.url,
            branch=descriptor.name,
            issue=issue.number,
        )
        return result

    async def _link_issue(self, gateway: RepositoryGateway, pr_number: int, pr_url: str, issue_number: int) -> bool:
        """Comment on the issue with the pull request link.

        The pull request already exists at this point, so a failure is
        reported instead of raised.
        """
        try:
            await gateway.create_comment(
                issue_number,
                f"Pull Request #{pr_number} has been created for this issue: {pr_url}",
            )
        except GatewayError as e:
            log.warning(
                "failed_to_link_pr_to_issue",
                repository=gateway.repository,
                pr=pr_number,
                issue=issue_number,
                error=str(e),
            )
            return False
        return True
