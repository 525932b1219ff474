"""
Dependency ordering of repositories.

The dependency graph is never stored: it is derived from the registered
descriptors every time it is needed, so re-registering a repository with
different dependencies cannot leave stale edges behind.
"""

from collections.abc import Iterable, Mapping, Sequence

from devflow.models.domain import RepositoryDescriptor


def dependency_graph(descriptors: Iterable[RepositoryDescriptor]) -> dict[str, list[str]]:
    """Build the dependency -> dependents adjacency mapping."""
    graph: dict[str, list[str]] = {}
    for descriptor in descriptors:
        for dependency in sorted(descriptor.dependencies):
            graph.setdefault(dependency, []).append(descriptor.id)
    return graph


def find_cycle(dependencies: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one dependency cycle as a path (first node repeated at the end), or None."""
    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in done:
            return None
        if node in visiting:
            return visiting[visiting.index(node) :] + [node]

        visiting.append(node)
        for dependency in sorted(dependencies.get(node, ())):
            cycle = visit(dependency)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in sorted(dependencies):
        cycle = visit(node)
        if cycle:
            return cycle
    return None


def order_repositories(repositories: Sequence[str], dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Order repositories so every one comes after its in-set dependencies.

    Depth-first: each repository's dependencies that are part of the
    candidate set are placed before it; dependencies outside the set are
    ignored. Repositories without in-set dependencies keep their input
    order. A visited set guarantees termination and that every repository
    appears exactly once, even if the declarations contain a cycle.

    Args:
        repositories: Candidate repository ids (duplicates are dropped)
        dependencies: Repository id -> ids it depends on

    Returns:
        Execution order
    """
    candidates = set(repositories)
    visited: set[str] = set()
    order: list[str] = []

    def visit(repo_id: str) -> None:
        if repo_id in visited:
            return
        visited.add(repo_id)

        for dependency in sorted(dependencies.get(repo_id, ())):
            if dependency in candidates:
                visit(dependency)

        order.append(repo_id)

    for repo_id in repositories:
        visit(repo_id)

    return order
