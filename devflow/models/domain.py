"""
Domain models for the coordination engine.

This module holds the data classes passed between the engine components:
issues coming in, branch/PR/release results going out, and the per-repository
outcomes aggregated by the cross-repository coordinator. Gateway
implementations convert provider payloads into these types; nothing above the
gateway sees raw API responses.

Example:
    Building an issue from a webhook payload::

        issue = Issue.from_payload(
            {
                "number": 42,
                "title": "Add new feature",
                "labels": [{"name": "enhancement"}],
                "html_url": "https://github.com/acme/api/issues/42",
            }
        )
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from devflow.enums import (
    BranchType,
    CompensationKind,
    FileRisk,
    OutcomeStatus,
    ReleasePhase,
    RepositoryRole,
    SyncType,
    TaskStatus,
)
from devflow.exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(UTC)


def branch_ref(branch: str) -> str:
    """Ref name of a branch as used by the gateway (``heads/<branch>``)."""
    return f"heads/{branch}"


def tag_ref(tag: str) -> str:
    """Ref name of a tag as used by the gateway (``tags/<tag>``)."""
    return f"tags/{tag}"


@dataclass(frozen=True)
class RepoCoords:
    """Coordinates of one repository on the hosting service."""

    owner: str
    name: str

    @property
    def id(self) -> str:
        """Repository identifier, ``owner/name``."""
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, repo_id: str) -> "RepoCoords":
        """Parse an ``owner/name`` identifier.

        Raises:
            ValidationError: If the identifier is not of the form owner/name
        """
        owner, sep, name = repo_id.strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValidationError(f"Invalid repository identifier: {repo_id!r} (expected owner/name)")
        return cls(owner=owner, name=name)

    def __str__(self) -> str:
        return self.id


def _label_names(labels: Iterable[Any]) -> list[str]:
    return [label["name"] if isinstance(label, Mapping) else str(label) for label in labels]


@dataclass
class Issue:
    """An issue delivered by the issue source. Read-only input."""

    number: int
    """Repository-scoped issue number."""

    title: str
    """Issue title. May be empty."""

    labels: list[str] = field(default_factory=list)
    """Label names. Provider label metadata (colors, ids) is dropped."""

    url: str = ""
    """Canonical web URL of the issue."""

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Issue":
        """Build an issue from a provider payload.

        Labels may be plain strings or objects with a ``name`` key.

        Raises:
            ValidationError: If ``number`` is missing or not an integer
        """
        try:
            number = int(data["number"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Issue payload has no valid number: {data!r}") from e

        return cls(
            number=number,
            title=data.get("title") or "",
            labels=_label_names(data.get("labels") or []),
            url=data.get("html_url") or data.get("url") or "",
        )


@dataclass(frozen=True)
class BranchPolicy:
    """Branch policy for one branch type. Fixed configuration."""

    prefix: str
    base_ref: str
    protection_rules: tuple[str, ...] = ()
    auto_merge: bool = False
    priority: str | None = None


@dataclass
class BranchDescriptor:
    """A resolved branch for an issue. Returned to the caller, never retained."""

    name: str
    type: BranchType
    base_ref: str
    issue: Issue
    policy: BranchPolicy
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RepositoryMetadata:
    """Subset of repository metadata returned by the gateway."""

    id: int | str
    full_name: str
    default_branch: str = "main"
    private: bool = False


@dataclass
class ChangedFile:
    """One file in a ref comparison."""

    path: str
    status: str
    changes: int = 0


@dataclass
class RefComparison:
    """Result of comparing two refs on the remote."""

    files: list[ChangedFile] = field(default_factory=list)
    ahead_by: int = 0
    behind_by: int = 0
    total_commits: int = 0


@dataclass
class FileContent:
    """Decoded file content and the blob sha needed to update it."""

    path: str
    content: str
    sha: str


@dataclass
class Tag:
    name: str
    sha: str


@dataclass
class PullRequestRef:
    number: int
    url: str


@dataclass
class Release:
    id: int
    url: str
    tag_name: str


@dataclass
class ConflictFile:
    """A changed file with its merge-risk classification."""

    path: str
    status: str
    changes: int
    classification: FileRisk
    high_volume: bool = False
    """More changed lines than the configured threshold. Informational only."""


@dataclass
class ConflictReport:
    """Heuristic merge-risk estimate between two refs.

    Inspects path overlap with critical-path patterns, not line-level hunks,
    so it can both under- and over-report real merge conflicts.
    """

    repository: str
    source: str
    target: str
    has_conflicts: bool
    files: list[ConflictFile] = field(default_factory=list)
    ahead_by: int = 0
    behind_by: int = 0
    total_commits: int = 0

    @property
    def critical_files(self) -> list[ConflictFile]:
        return [f for f in self.files if f.classification == FileRisk.CRITICAL_PATH]


@dataclass
class SmartBranchOptions:
    """Caller-controlled knobs for smart branch creation."""

    base_ref: str | None = None
    create_pr: bool = False
    apply_protection: bool = False
    check_conflicts: bool = False
    draft: bool = False
    labels: list[str] | None = None


@dataclass
class PullRequestResult:
    """Pull request opened for an issue branch."""

    number: int
    url: str
    branch: str
    base: str
    issue_number: int
    auto_merge_requested: bool = False
    labels: list[str] = field(default_factory=list)
    issue_linked: bool = False
    """Whether the back-link comment on the issue was posted."""


@dataclass
class CompensatingAction:
    """How to undo one object created on the remote."""

    repository: str
    kind: CompensationKind
    target: str | int
    """Ref name (``heads/x``), pull request number or release id."""


@dataclass
class OperationOutcome:
    """Result of one requested operation in one repository."""

    repository: str
    operation: str
    status: OutcomeStatus
    detail: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    error: str | None = None
    error_type: str | None = None
    compensations: list[CompensatingAction] = field(default_factory=list)

    @classmethod
    def created(
        cls,
        repository: str,
        operation: str,
        detail: dict[str, Any] | None = None,
        compensations: list[CompensatingAction] | None = None,
    ) -> "OperationOutcome":
        return cls(
            repository=repository,
            operation=operation,
            status=OutcomeStatus.CREATED,
            detail=detail or {},
            compensations=compensations or [],
        )

    @classmethod
    def skipped(
        cls, repository: str, operation: str, reason: str, detail: dict[str, Any] | None = None
    ) -> "OperationOutcome":
        return cls(
            repository=repository,
            operation=operation,
            status=OutcomeStatus.SKIPPED,
            reason=reason,
            detail=detail or {},
        )

    @classmethod
    def failed(cls, repository: str, operation: str, error: BaseException) -> "OperationOutcome":
        return cls(
            repository=repository,
            operation=operation,
            status=OutcomeStatus.FAILED,
            error=str(error),
            error_type=type(error).__name__,
        )


@dataclass
class SmartBranchResult:
    """Everything produced by one smart branch call."""

    descriptor: BranchDescriptor
    outcome: OperationOutcome
    sha: str | None = None
    url: str | None = None
    pull_request: PullRequestResult | None = None
    conflict_report: ConflictReport | None = None
    protection_applied: bool = False

    @property
    def exists(self) -> bool:
        """True when the branch was already there and nothing was created."""
        return self.outcome.status == OutcomeStatus.SKIPPED


@dataclass
class RollbackItem:
    """Result of one compensating action."""

    repository: str
    kind: CompensationKind
    target: str | int
    status: str
    """``deleted`` or ``failed``."""

    error: str | None = None


@dataclass
class BranchSpec:
    """Coordinated branch request."""

    name: str
    base_branch: str = "main"
    continue_on_error: bool = False


@dataclass
class BranchTarget:
    """An existing branch in one repository, input to coordinated PRs."""

    repository: str
    branch: str


@dataclass
class PullRequestSpec:
    """Coordinated pull request request."""

    title: str
    base_branch: str = "main"
    description: str = ""
    body: str = ""
    labels: list[str] = field(default_factory=list)
    draft: bool = False
    cross_link: bool = False
    continue_on_error: bool = False


@dataclass
class SyncSpec:
    """Synchronization request: copy files, a branch or tags from a source."""

    type: SyncType
    source: str
    targets: list[str] | None = None
    files: list[str] = field(default_factory=list)
    branch: str | None = None
    continue_on_error: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SyncSpec":
        """Build a spec from plain configuration data.

        Raises:
            ValidationError: If the type is unknown or the source is missing
        """
        try:
            sync_type = SyncType(data.get("type"))
        except ValueError as e:
            raise ValidationError(f"Unknown sync type: {data.get('type')!r}") from e

        source = data.get("source")
        if not source:
            raise ValidationError("Sync configuration requires a source repository")

        return cls(
            type=sync_type,
            source=source,
            targets=list(data["targets"]) if data.get("targets") else None,
            files=list(data.get("files") or []),
            branch=data.get("branch"),
            continue_on_error=bool(data.get("continue_on_error", False)),
        )


@dataclass
class RepositoryDescriptor:
    """A repository taking part in coordinated operations.

    Dependencies are fixed at registration time.
    """

    owner: str
    name: str
    role: str = RepositoryRole.STANDARD.value
    dependencies: frozenset[str] = field(default_factory=frozenset)
    """Identifiers (``owner/name``) of repositories this one depends on."""

    registered_at: datetime | None = None
    metadata: RepositoryMetadata | None = None
    auto_sync: SyncSpec | None = None
    """Synchronization run periodically for this repository, if any."""

    def __post_init__(self) -> None:
        self.dependencies = frozenset(self.dependencies)
        self.role = str(self.role)

    @property
    def id(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def coords(self) -> RepoCoords:
        return RepoCoords(self.owner, self.name)

    @property
    def is_critical(self) -> bool:
        return self.role == RepositoryRole.CRITICAL.value


@dataclass
class CoordinatedOperationReport:
    """Aggregated outcomes of one coordinated call.

    Every requested repository lands in exactly one of ``created``,
    ``failed`` or ``skipped``.
    """

    operation: str
    requested: list[str] = field(default_factory=list)
    created: list[OperationOutcome] = field(default_factory=list)
    failed: list[OperationOutcome] = field(default_factory=list)
    skipped: list[OperationOutcome] = field(default_factory=list)
    rollback: list[RollbackItem] = field(default_factory=list)
    precheck_conflicts: list[dict[str, Any]] = field(default_factory=list)
    linked_prs: dict[str, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    def record(self, outcome: OperationOutcome) -> None:
        bucket = {
            OutcomeStatus.CREATED: self.created,
            OutcomeStatus.FAILED: self.failed,
            OutcomeStatus.SKIPPED: self.skipped,
        }[outcome.status]
        bucket.append(outcome)

    @property
    def outcomes(self) -> list[OperationOutcome]:
        return [*self.created, *self.failed, *self.skipped]

    @property
    def success(self) -> bool:
        return not self.failed and not self.rollback

    def is_complete(self) -> bool:
        """Check the coverage invariant against the requested repositories."""
        seen = [o.repository for o in self.outcomes]
        return sorted(seen) == sorted(self.requested)


@dataclass
class SyncReport(CoordinatedOperationReport):
    """Coordinated report for a synchronization run."""

    sync_type: SyncType | None = None
    source: str | None = None

    @property
    def merge_conflicts(self) -> list[OperationOutcome]:
        """Targets whose write was rejected because they changed concurrently."""
        return [o for o in self.failed if o.error_type == "MergeConflictError"]


@dataclass
class ReleaseSpec:
    """Coordinated release request."""

    version: str
    repositories: list[str] | None = None
    base_branch: str | None = None
    release_notes: str | None = None
    draft: bool = False
    prerelease: bool = False

    @property
    def branch_name(self) -> str:
        return f"release/{self.version}"

    @property
    def tag_name(self) -> str:
        return f"v{self.version}"


@dataclass
class ReleaseCheck:
    """Result of one read-only pre-release check."""

    repository: str
    name: str
    passed: bool
    message: str = ""


@dataclass
class ReleaseTask:
    """Tracked state of one release orchestration."""

    id: str
    version: str
    phase: ReleasePhase = ReleasePhase.PRE_CHECKS
    status: TaskStatus = TaskStatus.IN_PROGRESS
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    branches: dict[str, OperationOutcome] = field(default_factory=dict)
    versions: dict[str, OperationOutcome] = field(default_factory=dict)
    releases: dict[str, OperationOutcome] = field(default_factory=dict)
    error: str | None = None


@dataclass
class ReleaseReport:
    """Result of a coordinated release."""

    version: str
    task_id: str
    status: TaskStatus = TaskStatus.IN_PROGRESS
    checks: list[ReleaseCheck] = field(default_factory=list)
    branches: list[OperationOutcome] = field(default_factory=list)
    version_updates: list[OperationOutcome] = field(default_factory=list)
    releases: list[OperationOutcome] = field(default_factory=list)
    post_release: list[str] = field(default_factory=list)
    rollbacks: list[RollbackItem] = field(default_factory=list)
    failed_phase: ReleasePhase | None = None
