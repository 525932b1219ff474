"""Gateway factory for creating per-repository gateways from settings."""

import structlog

from devflow.config.settings import DevflowSettings
from devflow.exceptions import ConfigurationError
from devflow.gateway.base import GatewayFactory, RepositoryGateway
from devflow.gateway.github_rest import GitHubRestGateway
from devflow.gateway.memory import InMemoryHost
from devflow.models.domain import RepoCoords
from devflow.utils.connection_pool import close_all_pools

log = structlog.get_logger(__name__)


class GatewayPool:
    """Caches one gateway per repository.

    Callable as a :data:`GatewayFactory`. Gateways share the HTTP connection
    pool of their API host; :meth:`close` disconnects them and closes those
    pools.
    """

    def __init__(self, factory: GatewayFactory) -> None:
        self._factory = factory
        self._gateways: dict[str, RepositoryGateway] = {}

    def __call__(self, coords: RepoCoords) -> RepositoryGateway:
        if coords.id not in self._gateways:
            self._gateways[coords.id] = self._factory(coords)
        return self._gateways[coords.id]

    def __len__(self) -> int:
        return len(self._gateways)

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.disconnect()
        self._gateways.clear()
        await close_all_pools()


def create_gateway_factory(settings: DevflowSettings, dry_run: bool = False) -> GatewayPool:
    """Create the gateway factory for the configured provider.

    Args:
        settings: Devflow settings
        dry_run: Use an in-memory host instead of the remote service

    Returns:
        Gateway pool usable as a GatewayFactory

    Raises:
        ConfigurationError: If the provider type is not supported
    """
    if dry_run:
        host = InMemoryHost(auto_create=True)
        log.info("creating_in_memory_gateways")
        return GatewayPool(host.gateway)

    gateway_config = settings.gateway
    provider_type = gateway_config.provider_type
    base_url = str(gateway_config.base_url)

    if provider_type != "github":
        raise ConfigurationError(f"Unsupported provider type: {provider_type}")

    log.info("creating_github_gateways", base_url=base_url)

    def build(coords: RepoCoords) -> RepositoryGateway:
        return GitHubRestGateway(
            token=gateway_config.api_token,
            owner=coords.owner,
            repo=coords.name,
            base_url=base_url,
            timeout=gateway_config.timeout,
        )

    return GatewayPool(build)
