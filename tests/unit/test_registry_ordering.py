"""Tests for devflow/engine/registry.py and devflow/engine/ordering.py - registration and dependency order."""

from itertools import permutations

import pytest

from devflow.engine.ordering import dependency_graph, find_cycle, order_repositories
from devflow.enums import EventType
from devflow.exceptions import NotFoundError, ValidationError
from devflow.models.domain import RepositoryDescriptor

# =============================================================================
# Ordering
# =============================================================================


class TestOrderRepositories:
    """Tests for order_repositories."""

    @pytest.mark.parametrize("order", list(permutations(["acme/lib", "acme/api", "acme/web"])))
    def test_chain_in_every_input_order(self, order) -> None:
        """Should place lib before api before web whatever the input order."""
        dependencies = {"acme/api": {"acme/lib"}, "acme/web": {"acme/api"}}

        assert order_repositories(list(order), dependencies) == ["acme/lib", "acme/api", "acme/web"]

    def test_independent_keep_input_order(self) -> None:
        """Should keep the caller's order when there are no dependencies."""
        assert order_repositories(["b/b", "a/a", "c/c"], {}) == ["b/b", "a/a", "c/c"]

    def test_dependencies_outside_set_ignored(self) -> None:
        """Should ignore dependencies that are not part of the candidate set."""
        dependencies = {"acme/web": {"acme/api"}, "acme/api": {"acme/lib"}}

        assert order_repositories(["acme/web", "acme/lib"], dependencies) == ["acme/web", "acme/lib"]

    def test_each_repository_once(self) -> None:
        """Should list each repository exactly once even for duplicated input."""
        dependencies = {"acme/api": {"acme/lib"}}

        assert order_repositories(["acme/api", "acme/lib", "acme/api"], dependencies) == ["acme/lib", "acme/api"]

    def test_terminates_on_cycle(self) -> None:
        """Should terminate and list everything even if declarations are cyclic."""
        dependencies = {"a/a": {"b/b"}, "b/b": {"a/a"}}

        assert sorted(order_repositories(["a/a", "b/b"], dependencies)) == ["a/a", "b/b"]


class TestFindCycle:
    """Tests for find_cycle."""

    def test_no_cycle(self) -> None:
        """Should return None for an acyclic graph."""
        assert find_cycle({"acme/api": {"acme/lib"}, "acme/lib": set()}) is None

    def test_two_node_cycle(self) -> None:
        """Should return the cycle path with the first node repeated."""
        assert find_cycle({"a/a": {"b/b"}, "b/b": {"a/a"}}) == ["a/a", "b/b", "a/a"]

    def test_self_dependency(self) -> None:
        """Should treat a self-dependency as a cycle."""
        assert find_cycle({"a/a": {"a/a"}}) == ["a/a", "a/a"]


class TestDependencyGraph:
    """Tests for dependency_graph."""

    def test_maps_dependency_to_dependents(self, descriptors) -> None:
        """Should map each dependency to the repositories depending on it."""
        assert dependency_graph(descriptors) == {"acme/lib": ["acme/api"], "acme/api": ["acme/web"]}


# =============================================================================
# Registry
# =============================================================================


class TestRepositoryRegistry:
    """Tests for RepositoryRegistry through the engine."""

    @pytest.mark.asyncio
    async def test_register(self, host, engine) -> None:
        """Should validate reachability and stamp registration metadata."""
        stored = await engine.register_repository(RepositoryDescriptor("acme", "lib", role="critical"))

        assert stored.registered_at is not None
        assert stored.metadata.full_name == "acme/lib"
        assert stored.is_critical is True
        assert "acme/lib" in engine.registry
        assert host.calls_for("acme/lib", "get_repository_metadata") == [{}]

    @pytest.mark.asyncio
    async def test_unreachable_repository(self, engine) -> None:
        """Should propagate NotFoundError and leave the registry unchanged."""
        with pytest.raises(NotFoundError):
            await engine.register_repository(RepositoryDescriptor("acme", "missing"))

        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_rejects_cycle(self, engine) -> None:
        """Should reject a registration that closes a dependency cycle."""
        await engine.register_repository(RepositoryDescriptor("acme", "lib", dependencies=frozenset({"acme/api"})))

        with pytest.raises(ValidationError, match="cycle"):
            await engine.register_repository(
                RepositoryDescriptor("acme", "api", dependencies=frozenset({"acme/lib"}))
            )

        assert engine.registry.ids() == ["acme/lib"]

    @pytest.mark.asyncio
    async def test_rejects_malformed_dependency(self, engine) -> None:
        """Should reject dependency ids that are not owner/name."""
        with pytest.raises(ValidationError):
            await engine.register_repository(RepositoryDescriptor("acme", "api", dependencies=frozenset({"lib"})))

    @pytest.mark.asyncio
    async def test_reregistration_replaces_edges(self, engine) -> None:
        """Should drop the old descriptor's edges when a repository is re-registered."""
        await engine.register_repository(RepositoryDescriptor("acme", "lib"))
        await engine.register_repository(RepositoryDescriptor("acme", "web"))
        await engine.register_repository(RepositoryDescriptor("acme", "api", dependencies=frozenset({"acme/lib"})))

        await engine.register_repository(RepositoryDescriptor("acme", "api", dependencies=frozenset({"acme/web"})))

        assert engine.registry.dependency_graph() == {"acme/web": ["acme/api"]}
        assert len(engine.registry) == 3

    @pytest.mark.asyncio
    async def test_order_uses_registered_dependencies(self, engine, descriptors) -> None:
        """Should order registered repositories by their dependencies."""
        for descriptor in reversed(descriptors):
            await engine.register_repository(descriptor)

        assert engine.registry.ids() == ["acme/web", "acme/api", "acme/lib"]
        assert engine.registry.order(engine.registry.ids()) == ["acme/lib", "acme/api", "acme/web"]

    def test_get_unknown(self, engine) -> None:
        """Should raise ValidationError for unregistered ids."""
        with pytest.raises(ValidationError, match="not registered"):
            engine.registry.get("acme/nope")

    @pytest.mark.asyncio
    async def test_emits_registered_event(self, observed_engine, events) -> None:
        """Should notify the observer of each registration."""
        await observed_engine.register_repository(RepositoryDescriptor("acme", "lib"))

        assert events[-1].type == EventType.REPOSITORY_REGISTERED
        assert events[-1].payload["repository"] == "acme/lib"

    @pytest.mark.asyncio
    async def test_status_lists_repositories(self, engine, descriptors) -> None:
        """Should expose registered repositories and the graph in the status snapshot."""
        for descriptor in descriptors:
            await engine.register_repository(descriptor)

        status = engine.get_status()

        assert [r["id"] for r in status["repositories"]] == ["acme/lib", "acme/api", "acme/web"]
        assert status["repositories"][0]["role"] == "critical"
        assert status["dependency_graph"]["acme/lib"] == ["acme/api"]
        assert status["active_tasks"] == []
        assert status["auto_sync"] == {}
