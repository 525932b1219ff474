"""CLI entry point for devflow."""

import asyncio
import dataclasses
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import structlog

from devflow.config.settings import DevflowSettings
from devflow.engine.orchestrator import WorkflowEngine
from devflow.exceptions import ConfigurationError, DevflowError
from devflow.models.domain import (
    BranchSpec,
    BranchTarget,
    Issue,
    PullRequestSpec,
    ReleaseSpec,
    SmartBranchOptions,
    SyncSpec,
)
from devflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default="devflow.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--dry-run", is_flag=True, help="Run against an in-memory host instead of the remote service")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, dry_run: bool) -> None:
    """devflow: cross-repository branch, pull request and release coordination."""
    configure_logging(log_level)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = DevflowSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings, "dry_run": dry_run}


@cli.command("smart-branch")
@click.option("--repo", required=True, help="Repository (owner/name)")
@click.option("--issue", "issue_number", type=int, required=True, help="Issue number")
@click.option("--title", required=True, help="Issue title")
@click.option("--label", "labels", multiple=True, help="Issue label (repeatable)")
@click.option("--base", default=None, help="Override the policy's base branch")
@click.option("--create-pr", is_flag=True, help="Open the pull request after creating the branch")
@click.option("--protect", is_flag=True, help="Apply the policy's protection rules")
@click.option("--check-conflicts", is_flag=True, help="Run conflict detection against the base branch")
@click.option("--draft", is_flag=True, help="Open the pull request as draft")
@click.pass_context
def smart_branch(
    ctx: click.Context,
    repo: str,
    issue_number: int,
    title: str,
    labels: tuple[str, ...],
    base: str | None,
    create_pr: bool,
    protect: bool,
    check_conflicts: bool,
    draft: bool,
) -> None:
    """Create the branch for an issue."""
    issue = Issue(number=issue_number, title=title, labels=list(labels))
    options = SmartBranchOptions(
        base_ref=base,
        create_pr=create_pr,
        apply_protection=protect,
        check_conflicts=check_conflicts,
        draft=draft,
    )
    _run(ctx, "smart_branch", lambda engine: engine.create_smart_branch(issue, repo, options))


@cli.command("detect-conflicts")
@click.option("--repo", required=True, help="Repository (owner/name)")
@click.option("--branch", required=True, help="Branch to be merged")
@click.option("--target", required=True, help="Branch merged into")
@click.pass_context
def detect_conflicts(ctx: click.Context, repo: str, branch: str, target: str) -> None:
    """Estimate merge risk between two branches."""
    _run(ctx, "detect_conflicts", lambda engine: engine.detect_conflicts(branch, target, repo))


@cli.command("coordinated-branch")
@click.option("--name", required=True, help="Branch name")
@click.option("--base", default="main", help="Base branch")
@click.option("--repo", "repos", multiple=True, help="Target repository (repeatable; default: all configured)")
@click.option("--continue-on-error", is_flag=True, help="Record critical failures instead of rolling back")
@click.pass_context
def coordinated_branch(
    ctx: click.Context,
    name: str,
    base: str,
    repos: tuple[str, ...],
    continue_on_error: bool,
) -> None:
    """Create the same branch across repositories."""
    spec = BranchSpec(name=name, base_branch=base, continue_on_error=continue_on_error)
    _run(ctx, "coordinated_branch", lambda engine: engine.create_coordinated_branch(spec, list(repos) or None))


@cli.command("coordinated-prs")
@click.option("--title", required=True, help="Pull request title")
@click.option("--branch", "branches", multiple=True, required=True, help="owner/name:branch (repeatable)")
@click.option("--base", default="main", help="Base branch")
@click.option("--body", default="", help="Pull request body")
@click.option("--label", "labels", multiple=True, help="Label (repeatable)")
@click.option("--draft", is_flag=True, help="Open as draft")
@click.option("--cross-link", is_flag=True, help="Comment on each pull request with links to the others")
@click.option("--continue-on-error", is_flag=True, help="Record critical failures instead of rolling back")
@click.pass_context
def coordinated_prs(
    ctx: click.Context,
    title: str,
    branches: tuple[str, ...],
    base: str,
    body: str,
    labels: tuple[str, ...],
    draft: bool,
    cross_link: bool,
    continue_on_error: bool,
) -> None:
    """Open related pull requests across repositories."""
    targets = []
    for value in branches:
        repository, sep, branch = value.partition(":")
        if not sep or not branch:
            raise click.BadParameter(f"expected owner/name:branch, got {value!r}", param_hint="--branch")
        targets.append(BranchTarget(repository=repository, branch=branch))

    spec = PullRequestSpec(
        title=title,
        base_branch=base,
        body=body,
        labels=list(labels),
        draft=draft,
        cross_link=cross_link,
        continue_on_error=continue_on_error,
    )
    _run(ctx, "coordinated_prs", lambda engine: engine.create_coordinated_prs(spec, targets))


@cli.command()
@click.option("--type", "sync_type", type=click.Choice(["files", "branch", "tags"]), required=True)
@click.option("--source", required=True, help="Source repository (owner/name)")
@click.option("--target", "targets", multiple=True, help="Target repository (repeatable; default: all others)")
@click.option("--file", "files", multiple=True, help="File to copy (repeatable, files sync)")
@click.option("--branch", default=None, help="Branch to copy (branch sync)")
@click.option("--continue-on-error", is_flag=True, help="Record critical failures instead of rolling back")
@click.pass_context
def sync(
    ctx: click.Context,
    sync_type: str,
    source: str,
    targets: tuple[str, ...],
    files: tuple[str, ...],
    branch: str | None,
    continue_on_error: bool,
) -> None:
    """Synchronize files, a branch or tags from a source repository."""
    spec = {
        "type": sync_type,
        "source": source,
        "targets": list(targets) or None,
        "files": list(files),
        "branch": branch,
        "continue_on_error": continue_on_error,
    }
    _run(ctx, "sync", lambda engine: engine.synchronize_repositories(SyncSpec.from_mapping(spec)))


@cli.command()
@click.option("--version", "version", required=True, help="Version to release, e.g. 1.4.0")
@click.option("--repo", "repos", multiple=True, help="Target repository (repeatable; default: all configured)")
@click.option("--base", default=None, help="Base branch for release branches")
@click.option("--notes", default=None, help="Release notes")
@click.option("--draft", is_flag=True, help="Create draft releases")
@click.option("--prerelease", is_flag=True, help="Mark releases as pre-releases")
@click.pass_context
def release(
    ctx: click.Context,
    version: str,
    repos: tuple[str, ...],
    base: str | None,
    notes: str | None,
    draft: bool,
    prerelease: bool,
) -> None:
    """Run a coordinated release."""
    spec = ReleaseSpec(
        version=version,
        repositories=list(repos) or None,
        base_branch=base,
        release_notes=notes,
        draft=draft,
        prerelease=prerelease,
    )
    _run(ctx, "release", lambda engine: engine.orchestrate_release(spec))


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show registered repositories and the dependency graph."""

    async def get_status(engine: WorkflowEngine) -> dict[str, Any]:
        return engine.get_status()

    _run(ctx, "status", get_status)


def _run(ctx: click.Context, name: str, operation: Callable[[WorkflowEngine], Awaitable[Any]]) -> None:
    """Run one engine operation and print its result as JSON."""
    try:
        result = asyncio.run(_with_engine(ctx.obj["settings"], ctx.obj["dry_run"], operation))
    except DevflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        report = getattr(e, "report", None)
        if report is not None:
            click.echo(_to_json(report))
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)

    click.echo(_to_json(result))


async def _with_engine(
    settings: DevflowSettings,
    dry_run: bool,
    operation: Callable[[WorkflowEngine], Awaitable[Any]],
) -> Any:
    engine = WorkflowEngine.from_settings(settings, dry_run=dry_run)
    try:
        await engine.register_repositories(settings.repositories)
        return await operation(engine)
    finally:
        await engine.cleanup()


def _to_json(value: Any) -> str:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    return json.dumps(value, indent=2, default=str)


if __name__ == "__main__":
    cli()
