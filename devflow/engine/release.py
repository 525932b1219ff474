"""
Coordinated release orchestration.

A release runs five phases across the target repositories, each one only
after the previous succeeded:

1. ``pre-checks``: read only; base branch present, tag not yet used
2. ``branch-creation``: ``release/{version}`` from the base branch
3. ``version-update``: rewrite the version manifest on the release branch
4. ``release-creation``: tagged release ``v{version}``
5. ``post-release``: advisory back-merge reminders (optionally PRs)

Within a phase every repository must succeed. When a phase fails, every
release created so far is deleted before :class:`ReleaseError` is raised.
Release branches are left in place for inspection unless the
``rollback_branches`` option is set.
"""

import re
import uuid
from pathlib import PurePosixPath
from typing import Any

import structlog

from devflow.config.settings import ReleaseSettings
from devflow.engine.coordinator import CrossRepoCoordinator
from devflow.engine.events import EventEmitter
from devflow.engine.rollback import RollbackExecutor, compensations_for
from devflow.enums import CompensationKind, EventType, OutcomeStatus, ReleasePhase, TaskStatus
from devflow.exceptions import (
    AlreadyExistsError,
    DevflowError,
    GatewayError,
    NotFoundError,
    ReleaseError,
    ValidationError,
)
from devflow.gateway.base import RepositoryGateway
from devflow.models.domain import (
    CompensatingAction,
    OperationOutcome,
    ReleaseCheck,
    ReleaseReport,
    ReleaseSpec,
    ReleaseTask,
    RepositoryDescriptor,
    branch_ref,
    tag_ref,
    utcnow,
)
from devflow.monitoring.metrics import WorkflowMetrics
from devflow.utils.logging_config import operation_context

log = structlog.get_logger(__name__)

VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.-]+)?$")

# Manifest file name -> pattern whose groups surround the version value
VERSION_FIELDS: dict[str, re.Pattern[str]] = {
    "package.json": re.compile(r'("version"\s*:\s*")[^"]*(")'),
    "pyproject.toml": re.compile(r'(?m)^(version\s*=\s*["\'])[^"\']*(["\'])'),
    "setup.cfg": re.compile(r"(?m)^(version\s*=\s*)\S+()"),
}


def bump_version(path: str, content: str, version: str) -> str:
    """Return ``content`` with its version set to ``version``.

    Known manifests (``package.json``, ``pyproject.toml``, ``setup.cfg``)
    have their first version field rewritten in place; any other file is
    treated as a plain version file.

    Raises:
        ValidationError: If a known manifest has no version field
    """
    pattern = VERSION_FIELDS.get(PurePosixPath(path).name)
    if pattern is None:
        return f"{version}\n"

    updated, count = pattern.subn(lambda m: f"{m.group(1)}{version}{m.group(2)}", content, count=1)
    if count == 0:
        raise ValidationError(f"No version field found in {path}")
    return updated


class ReleaseOrchestrator:
    """Runs release tasks and keeps track of them."""

    def __init__(
        self,
        coordinator: CrossRepoCoordinator,
        rollback: RollbackExecutor,
        metrics: WorkflowMetrics,
        events: EventEmitter,
        settings: ReleaseSettings | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.rollback = rollback
        self.metrics = metrics
        self.events = events
        self.settings = settings or ReleaseSettings()
        self.tasks: dict[str, ReleaseTask] = {}

    def active_tasks(self) -> list[ReleaseTask]:
        return [task for task in self.tasks.values() if task.status == TaskStatus.IN_PROGRESS]

    async def orchestrate(self, spec: ReleaseSpec) -> ReleaseReport:
        """Run a coordinated release.

        Args:
            spec: Version, target repositories (default: all registered)
                and release options

        Returns:
            Completed release report

        Raises:
            ValidationError: If the request is malformed
            ReleaseError: If a phase failed; carries the report with the
                rollbacks performed
        """
        if not spec.version or not VERSION_PATTERN.match(spec.version):
            raise ValidationError(f"Invalid release version: {spec.version!r}")

        targets = self.coordinator.resolve_targets(spec.repositories)
        ids = [d.id for d in targets]
        if self.coordinator.enable_dependency_tracking:
            ids = self.coordinator.registry.order(ids)
        ordered = [self.coordinator.registry.get(repo_id) for repo_id in ids]

        base = spec.base_branch or self.settings.base_branch
        task = ReleaseTask(id=uuid.uuid4().hex[:12], version=spec.version)
        self.tasks[task.id] = task
        report = ReleaseReport(version=spec.version, task_id=task.id)

        with operation_context("release", operation_id=task.id, version=spec.version):
            log.info("release_started", task_id=task.id, version=spec.version, repositories=ids, base=base)
            return await self._run_phases(task, spec, ordered, base, report)

    async def _run_phases(
        self,
        task: ReleaseTask,
        spec: ReleaseSpec,
        ordered: list[RepositoryDescriptor],
        base: str,
        report: ReleaseReport,
    ) -> ReleaseReport:
        try:
            task.phase = ReleasePhase.PRE_CHECKS
            tags_present = await self._pre_checks(ordered, spec, base, report)

            task.phase = ReleasePhase.BRANCH_CREATION
            await self._create_branches(ordered, spec, base, task, report)

            task.phase = ReleasePhase.VERSION_UPDATE
            await self._update_versions(ordered, spec, task, report)

            task.phase = ReleasePhase.RELEASE_CREATION
            await self._create_releases(ordered, spec, tags_present, task, report)
        except Exception as e:
            await self._fail(task, report, e)

        task.phase = ReleasePhase.POST_RELEASE
        report.post_release = await self._post_release(ordered, spec)

        task.status = TaskStatus.COMPLETED
        task.finished_at = utcnow()
        report.status = TaskStatus.COMPLETED

        log.info("release_completed", task_id=task.id, version=spec.version, releases=len(report.releases))
        await self.events.emit(
            EventType.RELEASE_COMPLETED,
            task_id=task.id,
            version=spec.version,
            repositories=[d.id for d in ordered],
        )
        return report

    def _gateway(self, descriptor: RepositoryDescriptor) -> RepositoryGateway:
        return self.coordinator.gateway_for(descriptor)

    async def _pre_checks(
        self,
        targets: list[RepositoryDescriptor],
        spec: ReleaseSpec,
        base: str,
        report: ReleaseReport,
    ) -> dict[str, bool]:
        """Run read-only checks; returns whether the tag already exists per repository."""
        tags_present: dict[str, bool] = {}

        for descriptor in targets:
            gateway = self._gateway(descriptor)

            try:
                await gateway.get_ref(branch_ref(base))
                report.checks.append(ReleaseCheck(descriptor.id, "base-branch", True))
            except GatewayError as e:
                report.checks.append(ReleaseCheck(descriptor.id, "base-branch", False, e.message))

            try:
                present = any(tag.name == spec.tag_name for tag in await gateway.list_tags())
            except GatewayError as e:
                report.checks.append(ReleaseCheck(descriptor.id, "tag-available", False, e.message))
                continue

            tags_present[descriptor.id] = present
            message = f"tag {spec.tag_name} already exists" if present else ""
            report.checks.append(ReleaseCheck(descriptor.id, "tag-available", not present, message))

        failed = [c for c in report.checks if not c.passed]
        if failed:
            log.warning(
                "release_pre_checks_failed",
                version=spec.version,
                checks=[f"{c.repository}:{c.name}" for c in failed],
                strict=self.settings.strict_checks,
            )
            if self.settings.strict_checks:
                details = "; ".join(f"{c.repository} {c.name}: {c.message}" for c in failed)
                raise ValidationError(f"Pre-release checks failed: {details}")

        return tags_present

    async def _create_branches(
        self,
        targets: list[RepositoryDescriptor],
        spec: ReleaseSpec,
        base: str,
        task: ReleaseTask,
        report: ReleaseReport,
    ) -> None:
        ref = branch_ref(spec.branch_name)

        for descriptor in targets:
            gateway = self._gateway(descriptor)
            try:
                base_sha = await gateway.get_ref(branch_ref(base))
                sha = await gateway.create_ref(ref, base_sha)
            except AlreadyExistsError:
                log.info("release_branch_reused", repository=descriptor.id, branch=spec.branch_name)
                outcome = OperationOutcome.skipped(
                    descriptor.id, "create_release_branch", "already exists", detail={"branch": spec.branch_name}
                )
            except Exception as e:
                failure = OperationOutcome.failed(descriptor.id, "create_release_branch", e)
                self._record(task.branches, report.branches, failure)
                raise
            else:
                self.metrics.increment("branches_created")
                outcome = OperationOutcome.created(
                    descriptor.id,
                    "create_release_branch",
                    detail={"branch": spec.branch_name, "base": base, "sha": sha},
                    compensations=[CompensatingAction(descriptor.id, CompensationKind.REF, ref)],
                )
            self._record(task.branches, report.branches, outcome)

    async def _update_versions(
        self,
        targets: list[RepositoryDescriptor],
        spec: ReleaseSpec,
        task: ReleaseTask,
        report: ReleaseReport,
    ) -> None:
        path = self.settings.version_file

        for descriptor in targets:
            gateway = self._gateway(descriptor)
            try:
                try:
                    current = await gateway.get_file_content(path, ref=spec.branch_name)
                except NotFoundError:
                    outcome = OperationOutcome.skipped(descriptor.id, "update_version", f"{path} not found")
                    self._record(task.versions, report.version_updates, outcome)
                    continue

                updated = bump_version(path, current.content, spec.version)
                if updated == current.content:
                    outcome = OperationOutcome.skipped(descriptor.id, "update_version", "version already set")
                else:
                    commit = await gateway.put_file_content(
                        path,
                        updated,
                        message=f"chore(release): bump version to {spec.version}",
                        sha=current.sha,
                        branch=spec.branch_name,
                    )
                    outcome = OperationOutcome.created(
                        descriptor.id, "update_version", detail={"file": path, "commit": commit}
                    )
            except Exception as e:
                failure = OperationOutcome.failed(descriptor.id, "update_version", e)
                self._record(task.versions, report.version_updates, failure)
                raise

            self._record(task.versions, report.version_updates, outcome)

    async def _create_releases(
        self,
        targets: list[RepositoryDescriptor],
        spec: ReleaseSpec,
        tags_present: dict[str, bool],
        task: ReleaseTask,
        report: ReleaseReport,
    ) -> None:
        body = spec.release_notes or f"Release version {spec.version}"

        for descriptor in targets:
            gateway = self._gateway(descriptor)
            try:
                release = await gateway.create_release(
                    tag_name=spec.tag_name,
                    target_ref=spec.branch_name,
                    name=f"Release {spec.version}",
                    body=body,
                    draft=spec.draft,
                    prerelease=spec.prerelease,
                )
            except Exception as e:
                failure = OperationOutcome.failed(descriptor.id, "create_release", e)
                self._record(task.releases, report.releases, failure)
                raise

            compensations = [CompensatingAction(descriptor.id, CompensationKind.RELEASE, release.id)]
            if not spec.draft and not tags_present.get(descriptor.id, True):
                # The release created the tag; drafts get theirs only on publish
                compensations.append(CompensatingAction(descriptor.id, CompensationKind.REF, tag_ref(spec.tag_name)))

            self.metrics.increment("releases_created")
            log.info("release_created", repository=descriptor.id, tag=spec.tag_name, release_id=release.id)
            self._record(
                task.releases,
                report.releases,
                OperationOutcome.created(
                    descriptor.id,
                    "create_release",
                    detail={"id": release.id, "url": release.url, "tag": spec.tag_name},
                    compensations=compensations,
                ),
            )

    async def _post_release(self, targets: list[RepositoryDescriptor], spec: ReleaseSpec) -> list[str]:
        """Advisory follow-ups; failures become notes, never errors."""
        back_merge_base = self.settings.back_merge_base
        notes: list[str] = []

        for descriptor in targets:
            if not self.settings.create_back_merge_pr:
                notes.append(f"{descriptor.id}: merge {spec.branch_name} back into {back_merge_base}")
                continue

            try:
                pr = await self._gateway(descriptor).create_pull_request(
                    head=spec.branch_name,
                    base=back_merge_base,
                    title=f"Merge release {spec.version} into {back_merge_base}",
                    body=f"Back-merge of release {spec.version}.",
                )
            except GatewayError as e:
                log.warning("back_merge_pr_failed", repository=descriptor.id, error=str(e))
                notes.append(f"{descriptor.id}: back-merge pull request failed: {e.message}")
            else:
                notes.append(f"{descriptor.id}: back-merge pull request #{pr.number} opened: {pr.url}")

        return notes

    async def _fail(self, task: ReleaseTask, report: ReleaseReport, error: Exception) -> None:
        phase = task.phase
        task.status = TaskStatus.FAILED
        task.error = str(error)
        task.finished_at = utcnow()
        report.status = TaskStatus.FAILED
        report.failed_phase = phase

        log.error(
            "release_failed",
            task_id=task.id,
            version=task.version,
            phase=str(phase),
            error=str(error),
            exc_info=not isinstance(error, DevflowError),
        )

        actions = compensations_for(self._created(task.releases))
        if self.settings.rollback_branches:
            actions += compensations_for(self._created(task.branches))

        report.rollbacks = await self.rollback.run(actions, reason=f"release {task.version} failed in {phase}")

        await self.events.emit(
            EventType.RELEASE_FAILED,
            task_id=task.id,
            version=task.version,
            phase=str(phase),
            error=str(error),
        )
        raise ReleaseError(f"Release {task.version} failed: {error}", report=report, phase=str(phase)) from error

    @staticmethod
    def _created(outcomes: dict[str, OperationOutcome]) -> list[OperationOutcome]:
        return [o for o in outcomes.values() if o.status == OutcomeStatus.CREATED]

    @staticmethod
    def _record(
        by_repo: dict[str, OperationOutcome], ordered: list[OperationOutcome], outcome: OperationOutcome
    ) -> None:
        by_repo[outcome.repository] = outcome
        ordered.append(outcome)

    def task_summary(self, task: ReleaseTask) -> dict[str, Any]:
        return {
            "id": task.id,
            "version": task.version,
            "phase": str(task.phase),
            "status": str(task.status),
            "started_at": task.started_at.isoformat(),
        }
