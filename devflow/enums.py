"""Enumerations shared across the devflow engine."""

from enum import Enum


class BranchType(str, Enum):
    """Branch types an issue can resolve to."""

    FEATURE = "feature"
    BUGFIX = "bugfix"
    HOTFIX = "hotfix"
    RELEASE = "release"

    def __str__(self) -> str:
        return self.value


class RepositoryRole(str, Enum):
    """Well-known repository roles.

    Roles are free-form strings on a repository descriptor; only
    ``critical`` changes coordinator behavior (a failure there aborts and
    rolls back the whole batch).
    """

    CRITICAL = "critical"
    STANDARD = "standard"

    def __str__(self) -> str:
        return self.value


class OutcomeStatus(str, Enum):
    """Per-repository result of one coordinated operation."""

    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class FileRisk(str, Enum):
    """Merge-risk classification of a changed file."""

    CRITICAL_PATH = "critical-path"
    ORDINARY = "ordinary"

    def __str__(self) -> str:
        return self.value


class SyncType(str, Enum):
    """What a synchronization copies from source to targets."""

    FILES = "files"
    BRANCH = "branch"
    TAGS = "tags"

    def __str__(self) -> str:
        return self.value


class CompensationKind(str, Enum):
    """Kind of object a compensating action removes."""

    REF = "ref"
    PULL_REQUEST = "pull-request"
    RELEASE = "release"

    def __str__(self) -> str:
        return self.value


class ReleasePhase(str, Enum):
    """Ordered phases of a coordinated release."""

    PRE_CHECKS = "pre-checks"
    BRANCH_CREATION = "branch-creation"
    VERSION_UPDATE = "version-update"
    RELEASE_CREATION = "release-creation"
    POST_RELEASE = "post-release"

    def __str__(self) -> str:
        return self.value


class TaskStatus(str, Enum):
    """Overall status of a long-running engine task (releases)."""

    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class EventType(str, Enum):
    """Workflow events delivered to the engine's observer callback."""

    BRANCH_CREATED = "branch_created"
    PULL_REQUEST_CREATED = "pull_request_created"
    CONFLICTS_DETECTED = "conflicts_detected"
    REPOSITORY_REGISTERED = "repository_registered"
    COORDINATED_OPERATION_COMPLETED = "coordinated_operation_completed"
    COORDINATED_OPERATION_ABORTED = "coordinated_operation_aborted"
    ROLLBACK_PERFORMED = "rollback_performed"
    SYNC_COMPLETED = "sync_completed"
    RELEASE_COMPLETED = "release_completed"
    RELEASE_FAILED = "release_failed"

    def __str__(self) -> str:
        return self.value
