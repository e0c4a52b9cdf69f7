"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, Iterable, List, Optional, Set

from ..errors import CycleError, ManifestError
from ..MODELS.manifest import Manifest


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve(self, manifest: Manifest, services: Optional[Iterable[str]] = None) -> List[List[str]]:
        """
        Groups services into stages using Kahn's algorithm. Every member of a
        stage has all its dependencies in earlier stages, so members of one
        stage may start concurrently. Members keep manifest declaration order.

        :param manifest: The validated manifest.
        :param services: Restrict the result to these services and their transitive dependencies.
        :return: Stages, first to start first.
        :raises CycleError: If the remaining services can never be scheduled.
        """
        selected = self.select(manifest, services) if services is not None else set(manifest.services)
        order = [name for name in manifest.services if name in selected]
        dependencies = {name: set(manifest.services[name].depends_on) for name in order}

        stages = []
        resolved: Set[str] = set()
        remaining = list(order)
        while remaining:
            stage = [name for name in remaining if dependencies[name] <= resolved]
            if not stage:
                raise CycleError(self.find_cycles(remaining, dependencies))
            stages.append(stage)
            resolved.update(stage)
            remaining = [name for name in remaining if name not in resolved]
        return stages

    def resolve_order(self, manifest: Manifest) -> List[str]:
        """
        Flattens the stages into a single start sequence.
        """
        return [name for stage in self.resolve(manifest) for name in stage]

    @staticmethod
    def teardown_stages(stages: List[List[str]]) -> List[List[str]]:
        """
        Stages in the order they should be stopped: last started, first stopped.
        """
        return [list(reversed(stage)) for stage in reversed(stages)]

    def select(self, manifest: Manifest, services: Iterable[str]) -> Set[str]:
        """
        Returns the given services together with everything they transitively depend on.

        :raises ManifestError: If a requested service is not declared.
        """
        selected: Set[str] = set()
        pending = list(services)
        while pending:
            name = pending.pop()
            if name in selected:
                continue
            if name not in manifest.services:
                raise ManifestError(f"no such service: {name}")
            selected.add(name)
            pending.extend(manifest.services[name].depends_on)
        return selected

    def dependents(self, manifest: Manifest, services: Iterable[str]) -> Set[str]:
        """
        Returns the given services together with everything that transitively depends on them.
        """
        selected: Set[str] = set()
        pending = list(services)
        while pending:
            name = pending.pop()
            if name in selected:
                continue
            selected.add(name)
            pending.extend(other for other, spec in manifest.services.items() if name in spec.depends_on)
        return selected

    @staticmethod
    def find_cycles(names: List[str], dependencies: Dict[str, Set[str]]) -> List[str]:
        """
        Returns the services that lie on a dependency cycle, in the given order.
        Services that only depend on a cycle without being part of one are excluded.
        Uses Tarjan's strongly connected components algorithm.
        """
        index: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        stack: List[str] = []
        on_stack: Set[str] = set()
        on_cycle: Set[str] = set()
        candidates = set(names)

        def visit(name):
            """
            Recursive strongconnect step.
            """
            index[name] = lowlink[name] = len(index)
            stack.append(name)
            on_stack.add(name)

            for dep in dependencies.get(name, ()):
                if dep not in candidates:
                    continue
                if dep not in index:
                    visit(dep)
                    lowlink[name] = min(lowlink[name], lowlink[dep])
                elif dep in on_stack:
                    lowlink[name] = min(lowlink[name], index[dep])

            if lowlink[name] == index[name]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == name:
                        break
                if len(component) > 1 or name in dependencies.get(name, ()):
                    on_cycle.update(component)

        for name in names:
            if name not in index:
                visit(name)

        return [name for name in names if name in on_cycle]
