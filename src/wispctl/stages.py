"""Dependency-ordered build stages."""

from __future__ import annotations

from typing import Iterable, Optional

from .errors import ConfigError, DependencyCycleError
from .models import BuildStage, ServiceSpec


def find_cycle(graph: dict[str, tuple[str, ...]]) -> Optional[list[str]]:
    """Return one dependency cycle as a closed path (a -> b -> a), or None."""
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> Optional[list[str]]:
        visiting.add(node)
        path.append(node)
        for dep in sorted(graph.get(node, ())):
            if dep in visiting:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in sorted(graph):
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def compute_build_stages(services: Iterable[ServiceSpec]) -> list[BuildStage]:
    """
    Group locally built services into stages.

    Stage i holds every service whose dependencies all lie in stages 0..i-1.
    Members of a stage are sorted by name. Raises before any stage is
    returned on a cycle, an unknown dependency, or a dependency on a service
    that is pulled rather than built.
    """
    services = list(services)
    by_name = {spec.name: spec for spec in services}
    buildable = {spec.name: spec for spec in services if spec.build}

    for spec in buildable.values():
        for dep in spec.depends_on:
            if dep not in by_name:
                raise ConfigError(f"Service '{spec.name}' depends on unknown service '{dep}'")
            if dep not in buildable:
                raise ConfigError(
                    f"Service '{spec.name}' depends on '{dep}', which is not built locally"
                )

    graph = {name: spec.depends_on for name, spec in buildable.items()}
    cycle = find_cycle(graph)
    if cycle:
        raise DependencyCycleError(cycle)

    stages: list[BuildStage] = []
    placed: set[str] = set()
    remaining = dict(buildable)
    while remaining:
        ready = sorted(
            name for name, spec in remaining.items()
            if all(dep in placed for dep in spec.depends_on)
        )
        # Unreachable once cycles are rejected above
        if not ready:
            raise DependencyCycleError(sorted(remaining))
        stages.append(BuildStage(index=len(stages), services=tuple(remaining[n] for n in ready)))
        placed.update(ready)
        for name in ready:
            del remaining[name]
    return stages
