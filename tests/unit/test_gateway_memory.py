"""Tests for devflow/gateway/memory.py - in-memory hosting service."""

import pytest

from devflow.exceptions import (
    AlreadyExistsError,
    GatewayError,
    MergeConflictError,
    NotFoundError,
    RemoteServiceError,
)
from devflow.gateway.memory import InMemoryHost
from devflow.models.domain import ChangedFile, RepoCoords


@pytest.fixture
def memory_host():
    """Host with one repository."""
    host = InMemoryHost()
    host.add_repository("acme/api", branches=["main", "develop"], files={"VERSION": "1.0.0\n"})
    return host


@pytest.fixture
def api(memory_host):
    return memory_host.gateway(RepoCoords("acme", "api"))


class TestRefs:
    """Tests for ref operations."""

    @pytest.mark.asyncio
    async def test_branches_share_initial_commit(self, api) -> None:
        """Should point every initial branch at the same sha."""
        assert await api.get_ref("heads/main") == await api.get_ref("heads/develop")

    @pytest.mark.asyncio
    async def test_create_ref_copies_files(self, api, memory_host) -> None:
        """Should give a new branch the files of its source commit."""
        sha = await api.get_ref("heads/develop")

        await api.create_ref("heads/feature/x", sha)

        assert (await api.get_file_content("VERSION", ref="feature/x")).content == "1.0.0\n"
        assert "feature/x" in memory_host.repositories["acme/api"].branches()

    @pytest.mark.asyncio
    async def test_create_existing_ref(self, api) -> None:
        """Should reject a ref that already exists."""
        sha = await api.get_ref("heads/main")

        with pytest.raises(AlreadyExistsError):
            await api.create_ref("heads/develop", sha)

    @pytest.mark.asyncio
    async def test_delete_ref(self, api) -> None:
        """Should remove the ref and its files."""
        await api.delete_ref("heads/develop")

        with pytest.raises(NotFoundError):
            await api.get_ref("heads/develop")
        with pytest.raises(NotFoundError):
            await api.get_file_content("VERSION", ref="develop")

    @pytest.mark.asyncio
    async def test_unknown_repository(self, memory_host) -> None:
        """Should raise NotFoundError for unknown repositories."""
        gateway = memory_host.gateway(RepoCoords("acme", "ghost"))

        with pytest.raises(NotFoundError):
            await gateway.get_repository_metadata()

    @pytest.mark.asyncio
    async def test_auto_create(self) -> None:
        """Should create unknown repositories in auto-create mode."""
        host = InMemoryHost(auto_create=True)
        gateway = host.gateway(RepoCoords("acme", "new"))

        await gateway.get_ref("heads/production")

        assert sorted(host.repositories["acme/new"].branches()) == ["develop", "main", "production"]


class TestFiles:
    """Tests for file operations."""

    @pytest.mark.asyncio
    async def test_update_advances_branch(self, api) -> None:
        """Should commit the new content and move the branch."""
        before = await api.get_ref("heads/develop")
        current = await api.get_file_content("VERSION", ref="develop")

        commit = await api.put_file_content("VERSION", "2.0.0\n", "Bump", sha=current.sha, branch="develop")

        assert commit != before
        assert await api.get_ref("heads/develop") == commit
        assert (await api.get_file_content("VERSION", ref="develop")).content == "2.0.0\n"
        assert (await api.get_file_content("VERSION", ref="main")).content == "1.0.0\n"

    @pytest.mark.asyncio
    async def test_stale_sha(self, api) -> None:
        """Should reject updates based on a stale blob sha."""
        with pytest.raises(MergeConflictError):
            await api.put_file_content("VERSION", "2.0.0\n", "Bump", sha="stale", branch="develop")

    @pytest.mark.asyncio
    async def test_create_new_file(self, api) -> None:
        """Should create a file when no sha is given."""
        await api.put_file_content("NEW.md", "hi", "Add", branch="main")

        assert (await api.get_file_content("NEW.md")).content == "hi"


class TestPullRequestsAndReleases:
    """Tests for pull requests, labels and releases."""

    @pytest.mark.asyncio
    async def test_duplicate_open_pull_request(self, api) -> None:
        """Should reject a second open pull request for the same head."""
        await api.create_pull_request("develop", "main", "T", "B")

        with pytest.raises(AlreadyExistsError):
            await api.create_pull_request("develop", "main", "T", "B")

    @pytest.mark.asyncio
    async def test_pull_request_missing_branch(self, api) -> None:
        """Should reject pull requests for unknown branches."""
        with pytest.raises(GatewayError, match="does not exist"):
            await api.create_pull_request("feature/ghost", "main", "T", "B")

    @pytest.mark.asyncio
    async def test_close_and_label(self, api, memory_host) -> None:
        """Should close pull requests and store labels."""
        pr = await api.create_pull_request("develop", "main", "T", "B")

        await api.add_labels(pr.number, ["release"])
        await api.close_pull_request(pr.number)

        state = memory_host.repositories["acme/api"]
        assert state.labels[pr.number] == ["release"]
        assert state.pull_requests[pr.number]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_release_creates_tag(self, api) -> None:
        """Should tag the target branch when the tag is missing."""
        release = await api.create_release("v1.0.0", "main", "Release 1.0.0", "notes")

        tags = await api.list_tags()
        assert [t.name for t in tags] == ["v1.0.0"]
        assert tags[0].sha == await api.get_ref("heads/main")

        await api.delete_release(release.id)
        with pytest.raises(NotFoundError):
            await api.delete_release(release.id)

    @pytest.mark.asyncio
    async def test_compare_refs(self, api, memory_host) -> None:
        """Should return configured comparisons and empty ones otherwise."""
        memory_host.set_comparison("acme/api", "main", "develop", [ChangedFile("a.py", "modified", 3)], ahead_by=1)

        comparison = await api.compare_refs("main", "develop")

        assert comparison.ahead_by == 1
        assert (await api.compare_refs("develop", "main")).files == []


class TestFailureInjection:
    """Tests for InMemoryHost.fail."""

    @pytest.mark.asyncio
    async def test_fail_limited_times(self, api, memory_host) -> None:
        """Should fail the given number of calls and then recover."""
        memory_host.fail("acme/api", "get_ref", RemoteServiceError("boom"), times=1)

        with pytest.raises(RemoteServiceError):
            await api.get_ref("heads/main")
        assert await api.get_ref("heads/main")

    @pytest.mark.asyncio
    async def test_calls_recorded(self, api, memory_host) -> None:
        """Should record every call including failed ones."""
        memory_host.fail("acme/api", "delete_ref", RemoteServiceError("boom"))

        with pytest.raises(RemoteServiceError):
            await api.delete_ref("heads/develop")

        assert memory_host.calls_for("acme/api", "delete_ref") == [{"ref": "heads/develop"}]

        memory_host.clear_failures()
        await api.delete_ref("heads/develop")
