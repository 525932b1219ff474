"""Registry of repositories taking part in coordinated operations."""

from dataclasses import replace

import structlog

from devflow.engine.events import EventEmitter
from devflow.engine.ordering import dependency_graph, find_cycle, order_repositories
from devflow.enums import EventType
from devflow.exceptions import ValidationError
from devflow.gateway.base import GatewayFactory
from devflow.models.domain import RepoCoords, RepositoryDescriptor, utcnow

log = structlog.get_logger(__name__)


class RepositoryRegistry:
    """In-memory mapping of ``owner/name`` to repository descriptor.

    Registration validates that the repository is reachable through the
    gateway. Re-registering an id replaces its descriptor (last write wins);
    because the dependency graph is derived from the live descriptors, the
    old descriptor's edges disappear with it.
    """

    def __init__(self, gateway_factory: GatewayFactory, events: EventEmitter) -> None:
        self.gateway_factory = gateway_factory
        self.events = events
        self._repositories: dict[str, RepositoryDescriptor] = {}

    def __contains__(self, repo_id: object) -> bool:
        return repo_id in self._repositories

    def __len__(self) -> int:
        return len(self._repositories)

    def ids(self) -> list[str]:
        """Registered ids in registration order."""
        return list(self._repositories)

    def descriptors(self) -> list[RepositoryDescriptor]:
        return list(self._repositories.values())

    def get(self, repo_id: str) -> RepositoryDescriptor:
        """Look up a registered repository.

        Raises:
            ValidationError: If the repository is not registered
        """
        try:
            return self._repositories[repo_id]
        except KeyError:
            raise ValidationError(f"Repository {repo_id} is not registered") from None

    async def register(self, descriptor: RepositoryDescriptor) -> RepositoryDescriptor:
        """Validate and store a repository descriptor.

        Args:
            descriptor: Repository to register

        Returns:
            The stored descriptor, stamped with registration time and
            remote metadata

        Raises:
            ValidationError: If a dependency id is malformed or the
                declared dependencies would form a cycle; the registry is
                left unchanged
            GatewayError: If the repository is not reachable
        """
        for dependency in descriptor.dependencies:
            RepoCoords.parse(dependency)

        dependencies = {d.id: d.dependencies for d in self._repositories.values()}
        dependencies[descriptor.id] = descriptor.dependencies
        cycle = find_cycle(dependencies)
        if cycle:
            raise ValidationError(f"Dependency cycle for {descriptor.id}: {' -> '.join(cycle)}")

        gateway = self.gateway_factory(descriptor.coords)
        metadata = await gateway.get_repository_metadata()

        stored = replace(descriptor, registered_at=utcnow(), metadata=metadata)
        replaced = descriptor.id in self._repositories
        self._repositories[descriptor.id] = stored

        log.info(
            "repository_registered",
            repository=stored.id,
            role=stored.role,
            dependencies=sorted(stored.dependencies),
            replaced=replaced,
        )
        await self.events.emit(
            EventType.REPOSITORY_REGISTERED,
            repository=stored.id,
            role=stored.role,
            dependencies=sorted(stored.dependencies),
        )
        return stored

    def dependency_graph(self) -> dict[str, list[str]]:
        """Dependency id -> dependent ids, derived from the live descriptors."""
        return dependency_graph(self._repositories.values())

    def order(self, repositories: list[str]) -> list[str]:
        """Order repositories by their declared dependencies."""
        dependencies = {d.id: d.dependencies for d in self._repositories.values()}
        order = order_repositories(repositories, dependencies)
        log.debug("repositories_ordered", order=order)
        return order

    def reset(self) -> None:
        self._repositories.clear()
        log.info("registry_reset")
