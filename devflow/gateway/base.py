"""
Abstract base class for the remote repository gateway.

The gateway is the only component that talks to the hosting service. One
instance is bound to one repository (``owner``/``repo``); the engine obtains
instances through a :data:`GatewayFactory`.

Every implementation normalizes remote failures into the
:mod:`devflow.exceptions` taxonomy:

- ``NotFoundError`` when a ref, file or repository is absent
- ``AlreadyExistsError`` when a ref or pull request name is taken
- ``MergeConflictError`` when a write races a concurrent change
- ``RemoteServiceError`` for network, 5xx and rate-limit failures, after the
  implementation's own retries are exhausted

Ref names are relative to ``refs/``: ``heads/<branch>`` or ``tags/<tag>``
(see :func:`devflow.models.domain.branch_ref` and ``tag_ref``).
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from devflow.models.domain import (
    FileContent,
    PullRequestRef,
    RefComparison,
    Release,
    RepoCoords,
    RepositoryMetadata,
    Tag,
)


class RepositoryGateway(ABC):
    """Remote operations for one repository.

    All methods are async; each call is a suspension point for the engine.
    """

    owner: str
    repo: str

    @property
    def repository(self) -> str:
        """Repository identifier, ``owner/name``."""
        return f"{self.owner}/{self.repo}"

    async def connect(self) -> None:
        """Prepare network resources. Optional for implementations."""

    async def disconnect(self) -> None:
        """Release network resources. Optional for implementations."""

    async def __aenter__(self) -> "RepositoryGateway":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    def branch_url(self, branch: str) -> str | None:
        """Web URL of a branch, when the service has one."""
        return None

    @abstractmethod
    async def get_repository_metadata(self) -> RepositoryMetadata:
        """Fetch repository metadata. Used to validate reachability.

        Raises:
            NotFoundError: If the repository does not exist or is not visible.
        """

    @abstractmethod
    async def get_ref(self, ref: str) -> str:
        """Return the commit sha a ref points to.

        Raises:
            NotFoundError: If the ref does not exist.
        """

    @abstractmethod
    async def create_ref(self, ref: str, sha: str) -> str:
        """Create a ref at ``sha`` and return the sha it points to.

        Raises:
            AlreadyExistsError: If the ref name is taken.
        """

    @abstractmethod
    async def update_ref(self, ref: str, sha: str, force: bool = False) -> str:
        """Move an existing ref to ``sha``.

        Raises:
            NotFoundError: If the ref does not exist.
        """

    @abstractmethod
    async def delete_ref(self, ref: str) -> None:
        """Delete a ref.

        Raises:
            NotFoundError: If the ref does not exist.
        """

    @abstractmethod
    async def compare_refs(self, base: str, head: str) -> RefComparison:
        """Compare two refs (branch names, tags or shas)."""

    @abstractmethod
    async def create_pull_request(
        self,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> PullRequestRef:
        """Open a pull request from ``head`` into ``base``.

        Raises:
            AlreadyExistsError: If a pull request for ``head`` is already open.
        """

    @abstractmethod
    async def close_pull_request(self, number: int) -> None:
        """Close an open pull request without merging it."""

    @abstractmethod
    async def add_labels(self, number: int, labels: list[str]) -> None:
        """Add labels to an issue or pull request."""

    @abstractmethod
    async def create_comment(self, number: int, body: str) -> None:
        """Comment on an issue or pull request."""

    @abstractmethod
    async def get_file_content(self, path: str, ref: str | None = None) -> FileContent:
        """Read a file, decoded as UTF-8, at ``ref`` (default branch when None).

        Raises:
            NotFoundError: If the file does not exist at that ref.
        """

    @abstractmethod
    async def put_file_content(
        self,
        path: str,
        content: str,
        message: str,
        sha: str | None = None,
        branch: str | None = None,
    ) -> str:
        """Create (``sha`` None) or update a file and return the commit sha.

        Raises:
            MergeConflictError: If ``sha`` no longer matches the file.
        """

    @abstractmethod
    async def list_tags(self) -> list[Tag]:
        """List tags with the commit they point to."""

    @abstractmethod
    async def create_release(
        self,
        tag_name: str,
        target_ref: str,
        name: str,
        body: str,
        draft: bool = False,
        prerelease: bool = False,
    ) -> Release:
        """Create a tagged release.

        Raises:
            AlreadyExistsError: If a release already uses ``tag_name``.
        """

    @abstractmethod
    async def delete_release(self, release_id: int) -> None:
        """Delete a release (the tag itself is left in place)."""

    @abstractmethod
    async def set_branch_protection(self, branch: str, rules: list[str]) -> None:
        """Apply protection rules (``require-pr-reviews``, ``require-approvals:N``, ...)."""


GatewayFactory = Callable[[RepoCoords], RepositoryGateway]
"""Returns the gateway bound to the given repository."""
