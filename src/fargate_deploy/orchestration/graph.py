"""Resource dependency graph with topological levels."""
import logging
from collections import OrderedDict
from typing import Dict, Iterable, List

from fargate_deploy.aws.base import Resource
from fargate_deploy.exceptions import ConfigError

logger = logging.getLogger(__name__)


class ResourceGraph:
    """Resources keyed by logical name, grouped into dependency levels.

    Level ``n`` holds the resources whose dependencies all sit in levels
    ``< n``, so everything in one level may be applied concurrently.
    """

    def __init__(self, resources: Iterable[Resource] = ()):
        self._resources: Dict[str, Resource] = OrderedDict()
        for resource in resources:
            self.add(resource)

    def add(self, resource: Resource) -> None:
        if resource.name in self._resources:
            raise ConfigError(f"duplicate resource name {resource.name!r}", step="graph")
        self._resources[resource.name] = resource

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    def __getitem__(self, name: str) -> Resource:
        return self._resources[name]

    def __iter__(self):
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def names(self) -> List[str]:
        return list(self._resources)

    def validate(self) -> None:
        for resource in self._resources.values():
            for dependency in resource.depends_on:
                if dependency not in self._resources:
                    raise ConfigError(
                        f"{resource.name!r} depends on unknown resource {dependency!r}", step="graph"
                    )

    def levels(self) -> List[List[Resource]]:
        """Kahn's algorithm, one list per level, in insertion order within a level.

        Raises ConfigError on unknown dependencies or cycles.
        """
        self.validate()
        indegree = {name: len(set(r.depends_on)) for name, r in self._resources.items()}
        dependents: Dict[str, List[str]] = {name: [] for name in self._resources}
        for name, resource in self._resources.items():
            for dependency in set(resource.depends_on):
                dependents[dependency].append(name)

        levels: List[List[Resource]] = []
        ready = [name for name, degree in indegree.items() if degree == 0]
        placed = 0
        while ready:
            levels.append([self._resources[name] for name in ready])
            placed += len(ready)
            next_ready = []
            for name in ready:
                for dependent in dependents[name]:
                    indegree[dependent] -= 1
                    if indegree[dependent] == 0:
                        next_ready.append(dependent)
            ready = [name for name in self._resources if name in set(next_ready)]

        if placed != len(self._resources):
            stuck = sorted(name for name, degree in indegree.items() if degree > 0)
            raise ConfigError(f"dependency cycle between: {', '.join(stuck)}", step="graph")
        return levels

    def reverse_levels(self) -> List[List[Resource]]:
        """Levels for teardown: dependents before their dependencies."""
        return list(reversed(self.levels()))
