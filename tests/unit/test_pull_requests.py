"""Tests for devflow/engine/pull_requests.py - automated pull requests for issue branches."""

import pytest

from devflow.engine.pull_requests import build_pr_body, build_pr_title
from devflow.engine.strategy import BranchStrategyResolver
from devflow.enums import EventType
from devflow.exceptions import AlreadyExistsError, GatewayError
from devflow.models.domain import BranchDescriptor, Issue

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def descriptor(sample_issue) -> BranchDescriptor:
    return BranchStrategyResolver().resolve(sample_issue)


@pytest.fixture
def bugfix_descriptor() -> BranchDescriptor:
    return BranchStrategyResolver().resolve(Issue(number=7, title="Login fails", labels=["bug"]))


@pytest.fixture
def branch_on_host(host, descriptor):
    """Create the descriptor's branch on acme/api."""
    repository = host.repositories["acme/api"]
    repository.refs[f"heads/{descriptor.name}"] = repository.refs["heads/main"]
    return repository


# =============================================================================
# Title and body
# =============================================================================


class TestPullRequestText:
    """Tests for the generated title and body."""

    def test_title(self, descriptor) -> None:
        """Should append the issue number to the issue title."""
        assert build_pr_title(descriptor) == "Add new feature (#42)"

    def test_body_links_issue(self, descriptor) -> None:
        """Should close the issue and describe the branch."""
        body = build_pr_body(descriptor)

        assert "This PR addresses Issue #42: Add new feature" in body
        assert "Closes #42" in body
        assert "**Branch Type**: feature" in body
        assert "**Auto-merge**: Disabled" in body

    def test_body_auto_merge_enabled(self, bugfix_descriptor) -> None:
        """Should report auto-merge for policies that request it."""
        assert "**Auto-merge**: Enabled" in build_pr_body(bugfix_descriptor)


# =============================================================================
# Creation
# =============================================================================


class TestCreateAutomatedPr:
    """Tests for WorkflowEngine.create_automated_pr."""

    @pytest.mark.asyncio
    async def test_creates_pr(self, host, engine, descriptor, branch_on_host) -> None:
        """Should open the PR into the base ref and link it from the issue."""
        result = await engine.create_automated_pr(descriptor, "acme/api")

        opened = branch_on_host.pull_requests[result.number]
        assert opened["head"] == descriptor.name
        assert opened["base"] == "main"
        assert opened["draft"] is False
        assert result.branch == descriptor.name
        assert result.issue_number == 42
        assert result.labels == ["enhancement"]
        assert result.issue_linked is True
        assert result.auto_merge_requested is False
        assert engine.get_metrics().prs_created == 1

    @pytest.mark.asyncio
    async def test_auto_merge_reported(self, host, engine, bugfix_descriptor) -> None:
        """Should report auto-merge as requested for bugfix branches."""
        repository = host.repositories["acme/api"]
        repository.refs[f"heads/{bugfix_descriptor.name}"] = repository.refs["heads/main"]

        result = await engine.create_automated_pr(bugfix_descriptor, "acme/api")

        assert result.auto_merge_requested is True

    @pytest.mark.asyncio
    async def test_no_labels_skips_label_call(self, host, engine, branch_on_host) -> None:
        """Should not call the label endpoint when there is nothing to apply."""
        descriptor = BranchStrategyResolver().resolve(Issue(number=42, title="Add new feature"))

        result = await engine.create_automated_pr(descriptor, "acme/api")

        assert result.labels == []
        assert host.calls_for("acme/api", "add_labels") == []

    @pytest.mark.asyncio
    async def test_link_failure_is_reported(self, host, engine, descriptor, branch_on_host) -> None:
        """Should keep the PR and report issue_linked False when commenting fails."""
        host.fail("acme/api", "create_comment", GatewayError("comments disabled", status_code=403))

        result = await engine.create_automated_pr(descriptor, "acme/api")

        assert result.issue_linked is False
        assert result.number in branch_on_host.pull_requests
        assert engine.get_metrics().prs_created == 1

    @pytest.mark.asyncio
    async def test_existing_pr_raises(self, host, engine, descriptor, branch_on_host) -> None:
        """Should propagate the gateway error when a PR is already open for the branch."""
        await engine.create_automated_pr(descriptor, "acme/api")

        with pytest.raises(AlreadyExistsError):
            await engine.create_automated_pr(descriptor, "acme/api")

        assert engine.get_metrics().prs_created == 1

    @pytest.mark.asyncio
    async def test_emits_event(self, observed_engine, events, descriptor, branch_on_host) -> None:
        """Should notify the observer with the PR number and URL."""
        result = await observed_engine.create_automated_pr(descriptor, "acme/api")

        created = [e for e in events if e.type == EventType.PULL_REQUEST_CREATED]
        assert created[0].payload["number"] == result.number
        assert created[0].payload["url"] == result.url
        assert created[0].payload["issue"] == 42
