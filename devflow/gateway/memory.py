"""In-memory repository gateway.

Keeps repositories, refs, files, pull requests and releases in process memory
so the engine can run without a hosting service: ``devflow --dry-run`` uses
it to preview coordinated operations, and the test suite uses it with
failure injection to exercise rollback paths.

Example:
    >>> host = InMemoryHost()
    >>> host.add_repository("acme/api", branches=["main", "develop"])
    >>> host.fail("acme/api", "create_ref", RemoteServiceError("boom"))
    >>> gateway = host.gateway(RepoCoords("acme", "api"))
"""

import hashlib
import itertools
from dataclasses import dataclass, field
from typing import Any

import structlog

from devflow.exceptions import (
    AlreadyExistsError,
    GatewayError,
    MergeConflictError,
    NotFoundError,
)
from devflow.gateway.base import RepositoryGateway
from devflow.models.domain import (
    ChangedFile,
    FileContent,
    PullRequestRef,
    RefComparison,
    Release,
    RepoCoords,
    RepositoryMetadata,
    Tag,
)

log = structlog.get_logger(__name__)


@dataclass
class InMemoryRepository:
    """State of one simulated repository."""

    owner: str
    name: str
    default_branch: str = "main"
    refs: dict[str, str] = field(default_factory=dict)
    files: dict[str, dict[str, FileContent]] = field(default_factory=dict)
    """Branch name -> path -> content."""

    pull_requests: dict[int, dict[str, Any]] = field(default_factory=dict)
    comments: dict[int, list[str]] = field(default_factory=dict)
    labels: dict[int, list[str]] = field(default_factory=dict)
    releases: dict[int, Release] = field(default_factory=dict)
    protections: dict[str, list[str]] = field(default_factory=dict)
    comparisons: dict[tuple[str, str], RefComparison] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.owner}/{self.name}"

    def branches(self) -> list[str]:
        return [ref.removeprefix("heads/") for ref in self.refs if ref.startswith("heads/")]


class InMemoryHost:
    """A simulated hosting service shared by all in-memory gateways.

    Attributes:
        repositories: Repository id -> state
        calls: Every gateway call as ``(repository, operation, arguments)``
        auto_create: Create unknown repositories on first access instead of
            raising ``NotFoundError`` (used by dry runs)
    """

    def __init__(self, auto_create: bool = False) -> None:
        self.repositories: dict[str, InMemoryRepository] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.auto_create = auto_create
        self._failures: dict[tuple[str, str], list[Any]] = {}
        self._counter = itertools.count(1)

    def next_sha(self) -> str:
        return hashlib.sha1(str(next(self._counter)).encode()).hexdigest()

    def next_id(self) -> int:
        return next(self._counter)

    def add_repository(
        self,
        repo_id: str,
        branches: list[str] | None = None,
        default_branch: str = "main",
        files: dict[str, str] | None = None,
    ) -> InMemoryRepository:
        """Create a repository whose branches all point at one initial commit.

        Args:
            repo_id: ``owner/name``
            branches: Branch names to create (default: the default branch)
            default_branch: Default branch name
            files: Path -> content placed on every initial branch
        """
        coords = RepoCoords.parse(repo_id)
        repository = InMemoryRepository(owner=coords.owner, name=coords.name, default_branch=default_branch)

        sha = self.next_sha()
        for branch in branches or [default_branch]:
            repository.refs[f"heads/{branch}"] = sha
            repository.files[branch] = {
                path: FileContent(path=path, content=content, sha=self._blob_sha(content))
                for path, content in (files or {}).items()
            }

        self.repositories[repository.id] = repository
        return repository

    def get_repository(self, repo_id: str) -> InMemoryRepository:
        if repo_id not in self.repositories:
            if not self.auto_create:
                raise NotFoundError(f"Repository {repo_id} not found", status_code=404, repository=repo_id)
            self.add_repository(repo_id, branches=["main", "develop", "production"])
        return self.repositories[repo_id]

    def set_comparison(self, repo_id: str, base: str, head: str, files: list[ChangedFile], **counts: int) -> None:
        """Fix the result of ``compare_refs(base, head)`` for a repository."""
        self.get_repository(repo_id).comparisons[(base, head)] = RefComparison(files=files, **counts)

    def fail(self, repo_id: str, operation: str, error: Exception, times: int | None = None) -> None:
        """Make ``operation`` raise ``error`` for a repository.

        Args:
            repo_id: Repository whose gateway should fail
            operation: Gateway method name, e.g. ``create_ref``
            error: Exception instance to raise
            times: Number of calls to fail, or None for every call
        """
        self._failures[(repo_id, operation)] = [error, times]

    def clear_failures(self) -> None:
        self._failures.clear()

    def calls_for(self, repo_id: str, operation: str) -> list[dict[str, Any]]:
        """Arguments of every recorded call of ``operation`` on a repository."""
        return [args for repo, op, args in self.calls if repo == repo_id and op == operation]

    def gateway(self, coords: RepoCoords) -> "InMemoryGateway":
        """Gateway factory bound to this host."""
        return InMemoryGateway(self, coords.owner, coords.name)

    def record(self, repo_id: str, operation: str, arguments: dict[str, Any]) -> None:
        self.calls.append((repo_id, operation, arguments))

        failure = self._failures.get((repo_id, operation))
        if failure is None:
            return

        error, remaining = failure
        if remaining is not None:
            if remaining <= 0:
                return
            failure[1] = remaining - 1
        log.debug("injected_failure", repository=repo_id, operation=operation, error=str(error))
        raise error

    @staticmethod
    def _blob_sha(content: str) -> str:
        return hashlib.sha1(content.encode("utf-8")).hexdigest()


class InMemoryGateway(RepositoryGateway):
    """Gateway backed by an :class:`InMemoryHost`."""

    def __init__(self, host: InMemoryHost, owner: str, repo: str) -> None:
        self.host = host
        self.owner = owner
        self.repo = repo

    def _state(self, operation: str, **arguments: Any) -> InMemoryRepository:
        self.host.record(self.repository, operation, arguments)
        return self.host.get_repository(self.repository)

    def branch_url(self, branch: str) -> str:
        return f"memory://{self.repository}/tree/{branch}"

    def _not_found(self, what: str) -> NotFoundError:
        return NotFoundError(f"{what} not found", status_code=404, repository=self.repository)

    async def get_repository_metadata(self) -> RepositoryMetadata:
        state = self._state("get_repository_metadata")
        return RepositoryMetadata(id=state.id, full_name=state.id, default_branch=state.default_branch)

    async def get_ref(self, ref: str) -> str:
        state = self._state("get_ref", ref=ref)
        if ref not in state.refs:
            raise self._not_found(f"Ref {ref}")
        return state.refs[ref]

    async def create_ref(self, ref: str, sha: str) -> str:
        state = self._state("create_ref", ref=ref, sha=sha)
        if ref in state.refs:
            raise AlreadyExistsError(
                f"Reference refs/{ref} already exists", status_code=422, repository=self.repository
            )

        state.refs[ref] = sha
        if ref.startswith("heads/"):
            state.files[ref.removeprefix("heads/")] = dict(self._files_at(state, sha))
        return sha

    async def update_ref(self, ref: str, sha: str, force: bool = False) -> str:
        state = self._state("update_ref", ref=ref, sha=sha, force=force)
        if ref not in state.refs:
            raise self._not_found(f"Ref {ref}")

        state.refs[ref] = sha
        if ref.startswith("heads/"):
            state.files[ref.removeprefix("heads/")] = dict(self._files_at(state, sha))
        return sha

    async def delete_ref(self, ref: str) -> None:
        state = self._state("delete_ref", ref=ref)
        if ref not in state.refs:
            raise self._not_found(f"Ref {ref}")

        del state.refs[ref]
        if ref.startswith("heads/"):
            state.files.pop(ref.removeprefix("heads/"), None)

    async def compare_refs(self, base: str, head: str) -> RefComparison:
        state = self._state("compare_refs", base=base, head=head)
        return state.comparisons.get((base, head), RefComparison())

    async def create_pull_request(
        self,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> PullRequestRef:
        state = self._state("create_pull_request", head=head, base=base, title=title, body=body, draft=draft)
        for pr in state.pull_requests.values():
            if pr["head"] == head and pr["state"] == "open":
                raise AlreadyExistsError(
                    f"A pull request already exists for {self.owner}:{head}",
                    status_code=422,
                    repository=self.repository,
                )
        for branch in (head, base):
            if f"heads/{branch}" not in state.refs:
                raise GatewayError(f"Branch {branch} does not exist", status_code=422, repository=self.repository)

        number = self.host.next_id()
        url = f"memory://{self.repository}/pull/{number}"
        state.pull_requests[number] = {
            "number": number,
            "url": url,
            "head": head,
            "base": base,
            "title": title,
            "body": body,
            "draft": draft,
            "state": "open",
        }
        return PullRequestRef(number=number, url=url)

    async def close_pull_request(self, number: int) -> None:
        state = self._state("close_pull_request", number=number)
        if number not in state.pull_requests:
            raise self._not_found(f"Pull request #{number}")
        state.pull_requests[number]["state"] = "closed"

    async def add_labels(self, number: int, labels: list[str]) -> None:
        state = self._state("add_labels", number=number, labels=labels)
        state.labels.setdefault(number, []).extend(labels)

    async def create_comment(self, number: int, body: str) -> None:
        state = self._state("create_comment", number=number, body=body)
        state.comments.setdefault(number, []).append(body)

    async def get_file_content(self, path: str, ref: str | None = None) -> FileContent:
        state = self._state("get_file_content", path=path, ref=ref)
        branch = ref or state.default_branch
        content = state.files.get(branch, {}).get(path)
        if content is None:
            raise self._not_found(f"File {path} at {branch}")
        return content

    async def put_file_content(
        self,
        path: str,
        content: str,
        message: str,
        sha: str | None = None,
        branch: str | None = None,
    ) -> str:
        state = self._state("put_file_content", path=path, content=content, message=message, sha=sha, branch=branch)
        branch = branch or state.default_branch
        if f"heads/{branch}" not in state.refs:
            raise self._not_found(f"Branch {branch}")

        tree = state.files.setdefault(branch, {})
        existing = tree.get(path)
        if existing is None and sha is not None:
            raise self._not_found(f"File {path} at {branch}")
        if existing is not None and existing.sha != sha:
            raise MergeConflictError(
                f"{path} does not match {sha}", status_code=409, repository=self.repository
            )

        tree[path] = FileContent(path=path, content=content, sha=InMemoryHost._blob_sha(content))
        commit = self.host.next_sha()
        state.refs[f"heads/{branch}"] = commit
        return commit

    async def list_tags(self) -> list[Tag]:
        state = self._state("list_tags")
        return [
            Tag(name=ref.removeprefix("tags/"), sha=sha) for ref, sha in state.refs.items() if ref.startswith("tags/")
        ]

    async def create_release(
        self,
        tag_name: str,
        target_ref: str,
        name: str,
        body: str,
        draft: bool = False,
        prerelease: bool = False,
    ) -> Release:
        state = self._state(
            "create_release",
            tag_name=tag_name,
            target_ref=target_ref,
            name=name,
            body=body,
            draft=draft,
            prerelease=prerelease,
        )
        if any(r.tag_name == tag_name for r in state.releases.values()):
            raise AlreadyExistsError(
                f"Release tag_name {tag_name} already exists", status_code=422, repository=self.repository
            )
        if f"tags/{tag_name}" not in state.refs:
            target = state.refs.get(f"heads/{target_ref}")
            if target is None:
                raise self._not_found(f"Target {target_ref}")
            # Drafts are tagged on publish
            if not draft:
                state.refs[f"tags/{tag_name}"] = target

        release_id = self.host.next_id()
        release = Release(id=release_id, url=f"memory://{self.repository}/releases/{tag_name}", tag_name=tag_name)
        state.releases[release_id] = release
        return release

    async def delete_release(self, release_id: int) -> None:
        state = self._state("delete_release", release_id=release_id)
        if release_id not in state.releases:
            raise self._not_found(f"Release {release_id}")
        del state.releases[release_id]

    async def set_branch_protection(self, branch: str, rules: list[str]) -> None:
        state = self._state("set_branch_protection", branch=branch, rules=rules)
        if f"heads/{branch}" not in state.refs:
            raise self._not_found(f"Branch {branch}")
        state.protections[branch] = list(rules)

    @staticmethod
    def _files_at(state: InMemoryRepository, sha: str) -> dict[str, FileContent]:
        for branch in state.branches():
            if state.refs[f"heads/{branch}"] == sha and branch in state.files:
                return state.files[branch]
        return {}
