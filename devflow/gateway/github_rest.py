"""GitHub gateway implementation using direct REST API calls."""

import base64
import time
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from devflow.exceptions import (
    AlreadyExistsError,
    GatewayError,
    MergeConflictError,
    NotFoundError,
    RateLimitError,
    RemoteServiceError,
    ValidationError,
)
from devflow.gateway.base import RepositoryGateway
from devflow.models.domain import (
    ChangedFile,
    FileContent,
    PullRequestRef,
    RefComparison,
    Release,
    RepositoryMetadata,
    Tag,
)
from devflow.utils.connection_pool import HTTPConnectionPool, get_pool
from devflow.utils.retry import async_retry

log = structlog.get_logger(__name__)


class GitHubRestGateway(RepositoryGateway):
    """GitHub implementation using the REST v3 API over a shared connection pool."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
    ):
        """Initialize GitHub gateway.

        Args:
            token: Personal access token or App installation token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: API base URL (for GitHub Enterprise)
            timeout: Per-request timeout in seconds
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        # Pydantic HttpUrl adds a trailing slash
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._pool: HTTPConnectionPool | None = None

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def connect(self) -> None:
        """Attach to the shared connection pool for this API host."""
        self._pool = await get_pool(
            name=f"github-{self.base_url}",
            base_url=self.base_url,
            timeout=self.timeout,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
        log.debug("github_gateway_connected", repository=self.repository)

    async def disconnect(self) -> None:
        """Drop the pool reference (the pool manager owns the client)."""
        self._pool = None

    def branch_url(self, branch: str) -> str:
        if self.base_url == "https://api.github.com":
            web_url = "https://github.com"
        else:
            # GitHub Enterprise serves the API under /api/v3
            web_url = self.base_url.removesuffix("/api/v3")
        return f"{web_url}/{self.owner}/{self.repo}/tree/{branch}"

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(RemoteServiceError,))
    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request relative to the repository and map failures."""
        if self._pool is None:
            await self.connect()
        assert self._pool is not None

        try:
            response = await self._pool.request(method, f"{self._repo_path}{path}", **kwargs)
        except httpx.TransportError as e:
            raise RemoteServiceError(f"{method} {path} failed: {e}", repository=self.repository) from e

        self._raise_for_status(response, method, path)
        return response

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        if response.is_success:
            return

        status = response.status_code
        message = f"{method} {path or '/'}: {self._error_message(response)}"

        if status == 404:
            raise NotFoundError(message, status_code=status, repository=self.repository)
        if status == 409:
            raise MergeConflictError(message, status_code=status, repository=self.repository)
        if status == 422 and "already exists" in message.lower():
            raise AlreadyExistsError(message, status_code=status, repository=self.repository)
        if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            raise RateLimitError(
                message,
                status_code=status,
                repository=self.repository,
                retry_after=self._retry_after(response),
            )
        if status >= 500:
            raise RemoteServiceError(message, status_code=status, repository=self.repository)

        raise GatewayError(message, status_code=status, repository=self.repository)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or response.reason_phrase

        if not isinstance(data, dict):
            return str(data)

        parts = [str(data.get("message", ""))]
        for error in data.get("errors") or []:
            if isinstance(error, dict) and error.get("message"):
                parts.append(str(error["message"]))
            elif isinstance(error, str):
                parts.append(error)
        return "; ".join(p for p in parts if p)

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        header = response.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                return None

        reset = response.headers.get("x-ratelimit-reset")
        if reset:
            try:
                return max(float(reset) - time.time(), 0.0)
            except ValueError:
                return None
        return None

    async def get_repository_metadata(self) -> RepositoryMetadata:
        """Fetch repository metadata."""
        log.info("get_repository_metadata", repository=self.repository)

        data = (await self._request("GET", "")).json()
        return RepositoryMetadata(
            id=data["id"],
            full_name=data.get("full_name", self.repository),
            default_branch=data.get("default_branch", "main"),
            private=data.get("private", False),
        )

    async def get_ref(self, ref: str) -> str:
        """Resolve a ref to its commit sha."""
        log.debug("get_ref", repository=self.repository, ref=ref)

        data = (await self._request("GET", f"/git/ref/{quote(ref, safe='/')}")).json()
        return data["object"]["sha"]

    async def create_ref(self, ref: str, sha: str) -> str:
        """Create a ref."""
        log.info("create_ref", repository=self.repository, ref=ref, sha=sha)

        response = await self._request("POST", "/git/refs", json={"ref": f"refs/{ref}", "sha": sha})
        return response.json()["object"]["sha"]

    async def update_ref(self, ref: str, sha: str, force: bool = False) -> str:
        """Move a ref."""
        log.info("update_ref", repository=self.repository, ref=ref, sha=sha, force=force)

        response = await self._request(
            "PATCH",
            f"/git/refs/{quote(ref, safe='/')}",
            json={"sha": sha, "force": force},
        )
        return response.json()["object"]["sha"]

    async def delete_ref(self, ref: str) -> None:
        """Delete a ref."""
        log.info("delete_ref", repository=self.repository, ref=ref)

        await self._request("DELETE", f"/git/refs/{quote(ref, safe='/')}")

    async def compare_refs(self, base: str, head: str) -> RefComparison:
        """Compare two refs."""
        log.info("compare_refs", repository=self.repository, base=base, head=head)

        path = f"/compare/{quote(base, safe='/')}...{quote(head, safe='/')}"
        data = (await self._request("GET", path)).json()

        return RefComparison(
            files=[
                ChangedFile(
                    path=f["filename"],
                    status=f.get("status", "modified"),
                    changes=f.get("changes", 0),
                )
                for f in data.get("files") or []
            ],
            ahead_by=data.get("ahead_by", 0),
            behind_by=data.get("behind_by", 0),
            total_commits=data.get("total_commits", 0),
        )

    async def create_pull_request(
        self,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> PullRequestRef:
        """Open a pull request."""
        log.info("create_pull_request", repository=self.repository, head=head, base=base)

        response = await self._request(
            "POST",
            "/pulls",
            json={"title": title, "head": head, "base": base, "body": body, "draft": draft},
        )
        data = response.json()
        return PullRequestRef(number=data["number"], url=data.get("html_url", ""))

    async def close_pull_request(self, number: int) -> None:
        """Close a pull request."""
        log.info("close_pull_request", repository=self.repository, number=number)

        await self._request("PATCH", f"/pulls/{number}", json={"state": "closed"})

    async def add_labels(self, number: int, labels: list[str]) -> None:
        """Add labels to an issue or pull request."""
        log.info("add_labels", repository=self.repository, number=number, labels=labels)

        await self._request("POST", f"/issues/{number}/labels", json={"labels": labels})

    async def create_comment(self, number: int, body: str) -> None:
        """Comment on an issue or pull request."""
        log.info("create_comment", repository=self.repository, number=number)

        await self._request("POST", f"/issues/{number}/comments", json={"body": body})

    async def get_file_content(self, path: str, ref: str | None = None) -> FileContent:
        """Read and decode a file."""
        log.info("get_file_content", repository=self.repository, path=path, ref=ref)

        params = {"ref": ref} if ref else None
        data = (await self._request("GET", f"/contents/{quote(path, safe='/')}", params=params)).json()

        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise GatewayError(f"{path} is not a file", repository=self.repository)

        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return FileContent(path=path, content=content, sha=data["sha"])

    async def put_file_content(
        self,
        path: str,
        content: str,
        message: str,
        sha: str | None = None,
        branch: str | None = None,
    ) -> str:
        """Create or update a file."""
        log.info("put_file_content", repository=self.repository, path=path, branch=branch)

        data: dict[str, str] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if sha:
            data["sha"] = sha
        if branch:
            data["branch"] = branch

        response = await self._request("PUT", f"/contents/{quote(path, safe='/')}", json=data)
        return response.json()["commit"]["sha"]

    async def list_tags(self) -> list[Tag]:
        """List up to 100 tags."""
        log.info("list_tags", repository=self.repository)

        data = (await self._request("GET", "/tags", params={"per_page": 100})).json()
        return [Tag(name=t["name"], sha=t["commit"]["sha"]) for t in data]

    async def create_release(
        self,
        tag_name: str,
        target_ref: str,
        name: str,
        body: str,
        draft: bool = False,
        prerelease: bool = False,
    ) -> Release:
        """Create a release."""
        log.info("create_release", repository=self.repository, tag=tag_name, target=target_ref)

        response = await self._request(
            "POST",
            "/releases",
            json={
                "tag_name": tag_name,
                "target_commitish": target_ref,
                "name": name,
                "body": body,
                "draft": draft,
                "prerelease": prerelease,
            },
        )
        data = response.json()
        return Release(id=data["id"], url=data.get("html_url", ""), tag_name=data.get("tag_name", tag_name))

    async def delete_release(self, release_id: int) -> None:
        """Delete a release."""
        log.info("delete_release", repository=self.repository, release_id=release_id)

        await self._request("DELETE", f"/releases/{release_id}")

    async def set_branch_protection(self, branch: str, rules: list[str]) -> None:
        """Apply protection rules to a branch."""
        log.info("set_branch_protection", repository=self.repository, branch=branch, rules=rules)

        await self._request(
            "PUT",
            f"/branches/{quote(branch, safe='')}/protection",
            json=protection_payload(rules),
        )


def protection_payload(rules: list[str]) -> dict[str, Any]:
    """Translate protection rule identifiers into a GitHub protection body.

    Known rules: ``require-pr-reviews``, ``require-approvals:N``,
    ``dismiss-stale-reviews``, ``require-status-checks``.

    Raises:
        ValidationError: If a rule argument is malformed
    """
    reviews: dict[str, Any] | None = None
    status_checks: dict[str, Any] | None = None

    for rule in rules:
        name, _, arg = rule.partition(":")
        if name == "require-pr-reviews":
            reviews = {"required_approving_review_count": 1, **(reviews or {})}
        elif name == "require-approvals":
            try:
                count = int(arg or 1)
            except ValueError as e:
                raise ValidationError(f"Invalid protection rule: {rule}") from e
            reviews = {**(reviews or {}), "required_approving_review_count": count}
        elif name == "dismiss-stale-reviews":
            reviews = {"required_approving_review_count": 1, **(reviews or {}), "dismiss_stale_reviews": True}
        elif name == "require-status-checks":
            status_checks = {"strict": True, "contexts": []}
        else:
            log.warning("unknown_protection_rule", rule=rule)

    return {
        "required_status_checks": status_checks,
        "enforce_admins": False,
        "required_pull_request_reviews": reviews,
        "restrictions": None,
    }
