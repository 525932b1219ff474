"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from devflow.engine.orchestrator import WorkflowEngine
from devflow.gateway.memory import InMemoryHost
from devflow.models.domain import Issue, RepositoryDescriptor

PACKAGE_JSON = '{\n  "name": "acme-lib",\n  "version": "1.0.0"\n}\n'


@pytest.fixture
def host() -> InMemoryHost:
    """In-memory host with three repositories sharing the usual branches."""
    host = InMemoryHost()
    for repo_id in ("acme/lib", "acme/api", "acme/web"):
        host.add_repository(
            repo_id,
            branches=["main", "develop", "production"],
            files={"package.json": PACKAGE_JSON, "README.md": f"# {repo_id}\n"},
        )
    return host


@pytest.fixture
def engine(host: InMemoryHost) -> WorkflowEngine:
    """Engine wired to the in-memory host."""
    return WorkflowEngine(host.gateway)


@pytest.fixture
def events() -> list:
    """Collector for events delivered to the observer callback."""
    return []


@pytest.fixture
def observed_engine(host: InMemoryHost, events: list) -> WorkflowEngine:
    """Engine whose observer records every event."""
    return WorkflowEngine(host.gateway, on_event=events.append)


@pytest.fixture
def sample_issue() -> Issue:
    """Sample feature issue."""
    return Issue(
        number=42,
        title="Add new feature",
        labels=["enhancement"],
        url="https://github.com/acme/api/issues/42",
    )


@pytest.fixture
def descriptors() -> list[RepositoryDescriptor]:
    """lib <- api <- web, lib and web critical."""
    return [
        RepositoryDescriptor("acme", "lib", role="critical"),
        RepositoryDescriptor("acme", "api", dependencies=frozenset({"acme/lib"})),
        RepositoryDescriptor("acme", "web", role="critical", dependencies=frozenset({"acme/api"})),
    ]


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Minimal configuration file with two repositories."""
    path = tmp_path / "devflow.yaml"
    path.write_text(
        """
gateway:
  provider_type: github
  api_token: test-token

repositories:
  - owner: acme
    name: lib
    role: critical
  - owner: acme
    name: api
    dependencies:
      - acme/lib
"""
    )
    return path
