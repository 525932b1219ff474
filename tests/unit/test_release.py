"""Tests for devflow/engine/release.py - five-phase coordinated releases."""

import pytest

from devflow.config.settings import ReleaseSettings
from devflow.engine.orchestrator import WorkflowEngine
from devflow.engine.release import bump_version
from devflow.enums import CompensationKind, EventType, OutcomeStatus, ReleasePhase, TaskStatus
from devflow.exceptions import MergeConflictError, ReleaseError, RemoteServiceError, ValidationError
from devflow.models.domain import ReleaseSpec

VERSION = "1.4.0"
RELEASE_BRANCH = f"heads/release/{VERSION}"
TAG = f"tags/v{VERSION}"

# =============================================================================
# Helpers
# =============================================================================


async def registered_engine(host, descriptors, **release_settings) -> WorkflowEngine:
    engine = WorkflowEngine(host.gateway, release=ReleaseSettings(**release_settings))
    for descriptor in descriptors:
        await engine.register_repository(descriptor)
    return engine


def repo_ids(outcomes) -> list[str]:
    return [o.repository for o in outcomes]


# =============================================================================
# Version manifests
# =============================================================================


class TestBumpVersion:
    """Tests for bump_version."""

    def test_package_json(self) -> None:
        """Should rewrite the version field of package.json."""
        content = '{\n  "name": "acme-lib",\n  "version": "1.0.0",\n  "dependencies": {"x": "1.0.0"}\n}\n'

        updated = bump_version("package.json", content, "1.4.0")

        assert '"version": "1.4.0"' in updated
        assert '"x": "1.0.0"' in updated

    def test_pyproject(self) -> None:
        """Should rewrite the project version in pyproject.toml."""
        content = '[project]\nname = "acme"\nversion = "0.9.0"\n'

        assert bump_version("pyproject.toml", content, "1.0.0") == '[project]\nname = "acme"\nversion = "1.0.0"\n'

    def test_setup_cfg(self) -> None:
        """Should rewrite the metadata version in setup.cfg."""
        content = "[metadata]\nname = acme\nversion = 0.9.0\n"

        assert bump_version("setup.cfg", content, "1.0.0") == "[metadata]\nname = acme\nversion = 1.0.0\n"

    def test_plain_version_file(self) -> None:
        """Should replace the whole content of other files."""
        assert bump_version("VERSION", "0.9.0\n", "1.0.0") == "1.0.0\n"

    def test_nested_manifest_path(self) -> None:
        """Should recognize manifests by file name."""
        assert '"version": "2.0.0"' in bump_version("web/package.json", '{"version": "1.0.0"}', "2.0.0")

    def test_missing_field(self) -> None:
        """Should reject a manifest without a version field."""
        with pytest.raises(ValidationError, match="No version field"):
            bump_version("package.json", '{"name": "acme"}', "1.0.0")


# =============================================================================
# Orchestration
# =============================================================================


class TestOrchestrateRelease:
    """Tests for WorkflowEngine.orchestrate_release."""

    @pytest.mark.asyncio
    async def test_full_release(self, host, descriptors) -> None:
        """Should run every phase in every repository."""
        engine = await registered_engine(host, descriptors)

        report = await engine.orchestrate_release(ReleaseSpec(version=VERSION, release_notes="Shared auth"))

        assert report.status == TaskStatus.COMPLETED
        assert report.failed_phase is None
        assert all(check.passed for check in report.checks)
        assert repo_ids(report.branches) == ["acme/lib", "acme/api", "acme/web"]
        assert all(o.status == OutcomeStatus.CREATED for o in report.version_updates)
        assert repo_ids(report.releases) == ["acme/lib", "acme/api", "acme/web"]

        for repo_id in ("acme/lib", "acme/api", "acme/web"):
            repository = host.repositories[repo_id]
            assert RELEASE_BRANCH in repository.refs
            assert TAG in repository.refs
            assert '"version": "1.4.0"' in repository.files[f"release/{VERSION}"]["package.json"].content
            assert '"version": "1.0.0"' in repository.files["develop"]["package.json"].content
            (release,) = repository.releases.values()
            assert release.tag_name == "v1.4.0"

        release_call = host.calls_for("acme/lib", "create_release")[0]
        assert release_call["body"] == "Shared auth"
        assert release_call["name"] == "Release 1.4.0"
        assert release_call["target_ref"] == f"release/{VERSION}"

        assert report.post_release[0] == f"acme/lib: merge release/{VERSION} back into main"
        assert engine.get_metrics().releases_created == 3
        assert engine.get_metrics().branches_created == 3
        assert engine.releases.active_tasks() == []
        assert engine.releases.tasks[report.task_id].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_release_failure_deletes_created_releases(self, host, descriptors) -> None:
        """Should delete both releases created before the third one failed."""
        engine = await registered_engine(host, descriptors)
        host.fail("acme/web", "create_release", RemoteServiceError("boom", status_code=502))

        with pytest.raises(ReleaseError) as exc_info:
            await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        error = exc_info.value
        assert error.phase == "release-creation"
        assert isinstance(error.__cause__, RemoteServiceError)

        report = error.report
        assert report.status == TaskStatus.FAILED
        assert report.failed_phase == ReleasePhase.RELEASE_CREATION
        assert repo_ids(o for o in report.releases if o.status == OutcomeStatus.CREATED) == ["acme/lib", "acme/api"]
        assert [(r.repository, r.kind, r.status) for r in report.rollbacks] == [
            ("acme/lib", CompensationKind.RELEASE, "deleted"),
            ("acme/lib", CompensationKind.REF, "deleted"),
            ("acme/api", CompensationKind.RELEASE, "deleted"),
            ("acme/api", CompensationKind.REF, "deleted"),
        ]
        for repo_id in ("acme/lib", "acme/api"):
            assert host.repositories[repo_id].releases == {}
            assert TAG not in host.repositories[repo_id].refs
            # Branches are kept for inspection
            assert RELEASE_BRANCH in host.repositories[repo_id].refs

        assert engine.releases.tasks[report.task_id].status == TaskStatus.FAILED
        assert engine.releases.active_tasks() == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_task_and_rolls_back(self, host, descriptors) -> None:
        """Should fail the task and roll back when a phase raises a non-gateway error."""
        engine = await registered_engine(host, descriptors)
        failure = KeyError("id")
        host.fail("acme/web", "create_release", failure)

        with pytest.raises(ReleaseError) as exc_info:
            await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        error = exc_info.value
        assert error.__cause__ is failure
        assert error.report.failed_phase == ReleasePhase.RELEASE_CREATION
        assert error.report.releases[-1].error_type == "KeyError"
        assert {r.repository for r in error.report.rollbacks} == {"acme/lib", "acme/api"}
        assert host.repositories["acme/lib"].releases == {}
        assert engine.releases.tasks[error.report.task_id].status == TaskStatus.FAILED
        assert engine.releases.active_tasks() == []

    @pytest.mark.asyncio
    async def test_draft_release_rollback_skips_tag(self, host, descriptors) -> None:
        """Should only delete draft releases, since drafts create no tag."""
        engine = await registered_engine(host, descriptors)
        host.fail("acme/web", "create_release", RemoteServiceError("boom"))

        with pytest.raises(ReleaseError) as exc_info:
            await engine.orchestrate_release(ReleaseSpec(version=VERSION, draft=True))

        rollbacks = exc_info.value.report.rollbacks
        assert [(r.repository, r.kind, r.status) for r in rollbacks] == [
            ("acme/lib", CompensationKind.RELEASE, "deleted"),
            ("acme/api", CompensationKind.RELEASE, "deleted"),
        ]
        assert host.calls_for("acme/lib", "delete_ref") == []

    @pytest.mark.asyncio
    async def test_rollback_branches(self, host, descriptors) -> None:
        """Should also delete created release branches when configured to."""
        engine = await registered_engine(host, descriptors, rollback_branches=True)
        host.fail("acme/web", "create_release", RemoteServiceError("boom"))

        with pytest.raises(ReleaseError) as exc_info:
            await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        kinds = [(r.repository, r.target) for r in exc_info.value.report.rollbacks if r.target == RELEASE_BRANCH]
        assert kinds == [("acme/lib", RELEASE_BRANCH), ("acme/api", RELEASE_BRANCH), ("acme/web", RELEASE_BRANCH)]
        for repo_id in ("acme/lib", "acme/api", "acme/web"):
            assert RELEASE_BRANCH not in host.repositories[repo_id].refs

    @pytest.mark.asyncio
    async def test_version_update_failure(self, host, descriptors) -> None:
        """Should stop before creating any release when a version update fails."""
        engine = await registered_engine(host, descriptors)
        host.fail("acme/api", "put_file_content", MergeConflictError("sha mismatch", status_code=409))

        with pytest.raises(ReleaseError) as exc_info:
            await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        report = exc_info.value.report
        assert report.failed_phase == ReleasePhase.VERSION_UPDATE
        assert report.version_updates[-1].status == OutcomeStatus.FAILED
        assert report.rollbacks == []
        assert host.calls_for("acme/lib", "create_release") == []

    @pytest.mark.asyncio
    async def test_existing_release_branch_reused(self, host, descriptors) -> None:
        """Should reuse a release branch that already exists."""
        engine = await registered_engine(host, descriptors)
        api = host.repositories["acme/api"]
        api.refs[RELEASE_BRANCH] = api.refs["heads/develop"]
        api.files[f"release/{VERSION}"] = dict(api.files["develop"])

        report = await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        api_branch = next(o for o in report.branches if o.repository == "acme/api")
        assert api_branch.status == OutcomeStatus.SKIPPED
        assert api_branch.reason == "already exists"
        assert engine.get_metrics().branches_created == 2

    @pytest.mark.asyncio
    async def test_missing_version_file_skipped(self, host, descriptors) -> None:
        """Should skip the version update where the manifest does not exist."""
        engine = await registered_engine(host, descriptors, version_file="VERSION")

        report = await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        assert all(o.status == OutcomeStatus.SKIPPED for o in report.version_updates)
        assert report.version_updates[0].reason == "VERSION not found"
        assert report.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_existing_tag_is_warning(self, host, descriptors) -> None:
        """Should record a failed check but continue when checks are not strict."""
        engine = await registered_engine(host, descriptors)
        api = host.repositories["acme/api"]
        api.refs[TAG] = api.refs["heads/main"]

        report = await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        failed = [c for c in report.checks if not c.passed]
        assert [(c.repository, c.name) for c in failed] == [("acme/api", "tag-available")]
        api_release = next(o for o in report.releases if o.repository == "acme/api")
        # The tag was there before, so only the release would be rolled back
        assert [a.kind for a in api_release.compensations] == [CompensationKind.RELEASE]

    @pytest.mark.asyncio
    async def test_strict_checks_abort_before_changes(self, host, descriptors) -> None:
        """Should fail in pre-checks without creating anything when checks are strict."""
        engine = await registered_engine(host, descriptors, strict_checks=True)
        api = host.repositories["acme/api"]
        api.refs[TAG] = api.refs["heads/main"]

        with pytest.raises(ReleaseError) as exc_info:
            await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        assert exc_info.value.phase == "pre-checks"
        assert exc_info.value.report.rollbacks == []
        for repo_id in ("acme/lib", "acme/api", "acme/web"):
            assert host.calls_for(repo_id, "create_ref") == []

    @pytest.mark.asyncio
    async def test_back_merge_pull_requests(self, host, descriptors) -> None:
        """Should open back-merge pull requests when configured to."""
        engine = await registered_engine(host, descriptors, create_back_merge_pr=True)
        host.fail("acme/web", "create_pull_request", RemoteServiceError("boom"))

        report = await engine.orchestrate_release(ReleaseSpec(version=VERSION))

        assert report.status == TaskStatus.COMPLETED
        (pr,) = host.repositories["acme/lib"].pull_requests.values()
        assert pr["head"] == f"release/{VERSION}"
        assert pr["base"] == "main"
        assert "back-merge pull request #" in report.post_release[0]
        assert "back-merge pull request failed" in report.post_release[2]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("version", ["1.0 beta", "one", "1.0", "v1.2.3", "1.2.3-"])
    async def test_invalid_version(self, host, descriptors, version) -> None:
        """Should reject versions that are not semantic versions before starting a task."""
        engine = await registered_engine(host, descriptors)

        with pytest.raises(ValidationError):
            await engine.orchestrate_release(ReleaseSpec(version=version))

        assert engine.releases.tasks == {}

    @pytest.mark.asyncio
    async def test_subset_and_base_override(self, host, descriptors) -> None:
        """Should release only the requested repositories from the given base."""
        engine = await registered_engine(host, descriptors)

        report = await engine.orchestrate_release(
            ReleaseSpec(version=VERSION, repositories=["acme/api"], base_branch="main")
        )

        assert repo_ids(report.releases) == ["acme/api"]
        assert report.branches[0].detail["base"] == "main"
        assert RELEASE_BRANCH not in host.repositories["acme/lib"].refs

    @pytest.mark.asyncio
    async def test_events(self, host, descriptors) -> None:
        """Should emit release completed and failed events."""
        events = []
        engine = WorkflowEngine(host.gateway, on_event=events.append)
        for descriptor in descriptors:
            await engine.register_repository(descriptor)

        await engine.orchestrate_release(ReleaseSpec(version=VERSION))
        host.fail("acme/lib", "create_ref", RemoteServiceError("boom"))
        with pytest.raises(ReleaseError):
            await engine.orchestrate_release(ReleaseSpec(version="1.5.0"))

        types = [e.type for e in events]
        assert EventType.RELEASE_COMPLETED in types
        assert types[-1] == EventType.RELEASE_FAILED
        assert events[-1].payload["phase"] == "branch-creation"
