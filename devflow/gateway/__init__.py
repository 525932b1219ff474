"""Remote repository gateways.

Key Components:
    - RepositoryGateway: Abstract per-repository interface to the hosting service
    - GitHubRestGateway: GitHub REST v3 implementation over httpx
    - InMemoryGateway: Process-local implementation for dry runs and tests
    - GatewayPool: Caches one gateway per repository
"""

from devflow.gateway.base import GatewayFactory, RepositoryGateway

__all__ = [
    "GatewayFactory",
    "RepositoryGateway",
]
