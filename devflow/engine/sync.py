"""
Repository synchronization.

Copies files, a branch or tags from a source repository into target
repositories, through the coordinator so that ordering, critical-role
rollback and report bucketing work the same as for branches and pull
requests. File commits cannot be undone through the gateway, so only refs
a sync creates (new branches, new tags) carry compensating actions.

The :class:`AutoSyncScheduler` runs a repository's configured sync on a
fixed interval. Each repository has its own task; the next firing is only
scheduled after the previous one finished, so firings for one repository
never overlap.
"""

import asyncio
from typing import Any

import structlog

from devflow.engine.coordinator import CrossRepoCoordinator, Step
from devflow.engine.events import EventEmitter
from devflow.enums import CompensationKind, EventType, SyncType
from devflow.exceptions import AlreadyExistsError, DevflowError, NotFoundError, ValidationError
from devflow.gateway.base import GatewayFactory, RepositoryGateway
from devflow.models.domain import (
    CompensatingAction,
    FileContent,
    OperationOutcome,
    RepoCoords,
    RepositoryDescriptor,
    SyncReport,
    SyncSpec,
    Tag,
    branch_ref,
    tag_ref,
)

log = structlog.get_logger(__name__)


class RepositorySynchronizer:
    def __init__(
        self,
        coordinator: CrossRepoCoordinator,
        gateway_factory: GatewayFactory,
        events: EventEmitter,
    ) -> None:
        self.coordinator = coordinator
        self.gateway_factory = gateway_factory
        self.events = events

    def validate(self, spec: SyncSpec) -> None:
        """Reject malformed sync requests before any remote call.

        Raises:
            ValidationError: If the request is incomplete
        """
        if not isinstance(spec.type, SyncType):
            raise ValidationError(f"Unknown sync type: {spec.type!r}")
        RepoCoords.parse(spec.source)
        if spec.type == SyncType.FILES and not spec.files:
            raise ValidationError("File sync requires at least one file")
        if spec.type == SyncType.BRANCH and not spec.branch:
            raise ValidationError("Branch sync requires a branch name")
        if spec.targets is not None and spec.source in spec.targets:
            raise ValidationError(f"Source {spec.source} cannot also be a target")
        if spec.source not in self.coordinator.registry:
            raise ValidationError(f"Source repository {spec.source} is not registered")

    async def synchronize(self, spec: SyncSpec) -> SyncReport:
        """Synchronize targets with the source repository.

        Targets default to every registered repository except the source.

        Returns:
            Sync report; merge conflicts are listed in ``merge_conflicts``

        Raises:
            ValidationError: If the request is malformed
            GatewayError: If reading the source fails
            CoordinationError: If a critical target failed
        """
        self.validate(spec)

        target_ids = spec.targets
        if target_ids is None:
            target_ids = [repo_id for repo_id in self.coordinator.registry.ids() if repo_id != spec.source]
        targets = self.coordinator.resolve_targets(target_ids)

        source = self.gateway_factory(RepoCoords.parse(spec.source))
        operation = f"sync_{spec.type}"

        log.info("sync_started", sync_type=str(spec.type), source=spec.source, targets=[t.id for t in targets])

        if spec.type == SyncType.FILES:
            step = await self._files_step(source, spec, operation)
        elif spec.type == SyncType.BRANCH:
            step = await self._branch_step(source, spec, operation)
        else:
            step = await self._tags_step(source, operation)

        report = SyncReport(operation=operation, sync_type=spec.type, source=spec.source)
        await self.coordinator.execute(
            operation,
            targets,
            step,
            continue_on_error=spec.continue_on_error,
            report=report,
        )

        if report.merge_conflicts:
            log.warning("sync_merge_conflicts", repositories=[o.repository for o in report.merge_conflicts])

        await self.events.emit(
            EventType.SYNC_COMPLETED,
            sync_type=str(spec.type),
            source=spec.source,
            created=[o.repository for o in report.created],
            failed=[o.repository for o in report.failed],
        )
        return report

    async def _files_step(self, source: RepositoryGateway, spec: SyncSpec, operation: str) -> Step:
        source_files: list[FileContent] = [await source.get_file_content(path) for path in spec.files]

        async def step(descriptor: RepositoryDescriptor, gateway: RepositoryGateway) -> OperationOutcome:
            committed: list[str] = []
            unchanged: list[str] = []

            for file in source_files:
                try:
                    existing: FileContent | None = await gateway.get_file_content(file.path)
                except NotFoundError:
                    existing = None

                if existing is not None and existing.content == file.content:
                    unchanged.append(file.path)
                    continue

                await gateway.put_file_content(
                    file.path,
                    file.content,
                    message=f"Sync {file.path} from {spec.source}",
                    sha=existing.sha if existing else None,
                )
                committed.append(file.path)

            if not committed:
                return OperationOutcome.skipped(
                    descriptor.id, operation, "already in sync", detail={"unchanged": unchanged}
                )
            detail = {"files": committed, "unchanged": unchanged}
            return OperationOutcome.created(descriptor.id, operation, detail=detail)

        return step

    async def _branch_step(self, source: RepositoryGateway, spec: SyncSpec, operation: str) -> Step:
        assert spec.branch is not None
        ref = branch_ref(spec.branch)
        sha = await source.get_ref(ref)

        async def step(descriptor: RepositoryDescriptor, gateway: RepositoryGateway) -> OperationOutcome:
            try:
                current: str | None = await gateway.get_ref(ref)
            except NotFoundError:
                current = None

            if current == sha:
                return OperationOutcome.skipped(descriptor.id, operation, "already in sync", detail={"sha": sha})

            if current is None:
                await gateway.create_ref(ref, sha)
                return OperationOutcome.created(
                    descriptor.id,
                    operation,
                    detail={"branch": spec.branch, "sha": sha, "previous": None},
                    compensations=[CompensatingAction(descriptor.id, CompensationKind.REF, ref)],
                )

            await gateway.update_ref(ref, sha, force=True)
            return OperationOutcome.created(
                descriptor.id, operation, detail={"branch": spec.branch, "sha": sha, "previous": current}
            )

        return step

    async def _tags_step(self, source: RepositoryGateway, operation: str) -> Step:
        source_tags: list[Tag] = await source.list_tags()

        async def step(descriptor: RepositoryDescriptor, gateway: RepositoryGateway) -> OperationOutcome:
            existing = {tag.name for tag in await gateway.list_tags()}
            created: list[str] = []
            compensations: list[CompensatingAction] = []

            for tag in source_tags:
                if tag.name in existing:
                    continue
                try:
                    await gateway.create_ref(tag_ref(tag.name), tag.sha)
                except AlreadyExistsError:
                    continue
                created.append(tag.name)
                compensations.append(CompensatingAction(descriptor.id, CompensationKind.REF, tag_ref(tag.name)))

            if not created:
                return OperationOutcome.skipped(descriptor.id, operation, "already in sync")
            return OperationOutcome.created(
                descriptor.id, operation, detail={"tags": created}, compensations=compensations
            )

        return step


class AutoSyncScheduler:
    """Periodic per-repository synchronization tasks."""

    def __init__(self, synchronizer: RepositorySynchronizer, interval: float) -> None:
        self.synchronizer = synchronizer
        self.interval = interval
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._specs: dict[str, SyncSpec] = {}
        self._firings: dict[str, int] = {}

    def schedule(self, repo_id: str, spec: SyncSpec) -> None:
        """Start (or restart) the timer for a repository.

        A spec without targets syncs into ``repo_id`` itself.
        """
        if repo_id in self._tasks:
            self._tasks[repo_id].cancel()

        if spec.targets is None:
            spec = SyncSpec(
                type=spec.type,
                source=spec.source,
                targets=[repo_id],
                files=spec.files,
                branch=spec.branch,
                continue_on_error=spec.continue_on_error,
            )

        self._specs[repo_id] = spec
        self._firings.setdefault(repo_id, 0)
        self._tasks[repo_id] = asyncio.create_task(self._run(repo_id, spec), name=f"auto-sync:{repo_id}")
        log.info("auto_sync_scheduled", repository=repo_id, interval=self.interval, sync_type=str(spec.type))

    async def _run(self, repo_id: str, spec: SyncSpec) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._firings[repo_id] += 1
            try:
                await self.synchronizer.synchronize(spec)
            except DevflowError as e:
                log.error("auto_sync_failed", repository=repo_id, error=e.message)
            except Exception as e:
                log.error("auto_sync_failed_unexpected", repository=repo_id, error=str(e), exc_info=True)

    async def unschedule(self, repo_id: str) -> None:
        """Stop the timer for a repository, if it has one."""
        task = self._tasks.pop(repo_id, None)
        if task is None:
            return

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._specs.pop(repo_id, None)
        self._firings.pop(repo_id, None)
        log.info("auto_sync_unscheduled", repository=repo_id)

    def timers(self) -> dict[str, dict[str, Any]]:
        return {
            repo_id: {
                "interval": self.interval,
                "sync_type": str(self._specs[repo_id].type),
                "source": self._specs[repo_id].source,
                "firings": self._firings[repo_id],
                "running": not task.done(),
            }
            for repo_id, task in self._tasks.items()
        }

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._specs.clear()
        self._firings.clear()
        log.info("auto_sync_cancelled", timers=len(tasks))
