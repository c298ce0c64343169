"""Dependency graph over expanded job instances.

``needs`` edges are declared between templates; a dependency on a matrixed
template means a dependency on every instance of it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from conduit.engine.models import JobTemplate
from conduit.errors import CyclicDependency, UnknownJob

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Immutable DAG of job instance ids.

    Build with :meth:`build`; construction validates unknown job references
    and cycles, so a graph object is always acyclic.
    """

    def __init__(self, deps: dict[str, list[str]]):
        self._deps = deps
        self._dependents: dict[str, list[str]] = {node: [] for node in deps}
        for node, needs in deps.items():
            for dep in needs:
                self._dependents[dep].append(node)

    @classmethod
    def build(
        cls,
        instances: Mapping[str, list[str]],
        templates: Mapping[str, JobTemplate],
    ) -> DependencyGraph:
        """Link instances by their templates' ``needs``.

        Args:
            instances: template name → ordered instance ids of that template.
            templates: template name → JobTemplate.

        Raises:
            UnknownJob: a ``needs`` entry names a template that does not exist.
            CyclicDependency: the graph has a cycle (self-loops included).
        """
        deps: dict[str, list[str]] = {}
        for name, template in templates.items():
            for need in template.needs:
                if need not in templates:
                    raise UnknownJob(name, need, list(templates))
            upstream: list[str] = []
            for need in dict.fromkeys(template.needs):
                upstream.extend(instances.get(need, []))
            for instance_id in instances.get(name, []):
                deps[instance_id] = list(upstream)

        cycle = _find_cycle(deps)
        if cycle:
            raise CyclicDependency(cycle)

        logger.debug("Built dependency graph with %d instances", len(deps))
        return cls(deps)

    # ── Queries ──────────────────────────────────────────────────────────────

    def __contains__(self, node: object) -> bool:
        return node in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    @property
    def nodes(self) -> list[str]:
        return list(self._deps)

    def dependencies(self, node: str) -> list[str]:
        return list(self._deps[node])

    def dependents(self, node: str) -> list[str]:
        return list(self._dependents[node])

    def descendants(self, node: str) -> set[str]:
        """All transitive dependents of a node."""
        seen: set[str] = set()
        stack = list(self._dependents[node])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def ready(self, completed: Iterable[str], failed: Iterable[str] = ()) -> set[str]:
        """Ids not yet completed whose dependencies all completed and none failed."""
        done = set(completed)
        bad = set(failed)
        return {
            node
            for node, needs in self._deps.items()
            if node not in done
            and node not in bad
            and all(d in done for d in needs)
            and not any(d in bad for d in needs)
        }

    def levels(self) -> list[list[str]]:
        """Group instances into stages that could run in parallel."""
        completed: set[str] = set()
        stages: list[list[str]] = []
        while len(completed) < len(self._deps):
            stage = sorted(self.ready(completed))
            if not stage:  # unreachable for a validated graph
                break
            stages.append(stage)
            completed.update(stage)
        return stages


def _find_cycle(deps: dict[str, list[str]]) -> list[str] | None:
    """Depth-first search with an explicit recursion stack.

    Returns the node sequence of the first cycle found (first node repeated
    at the end), or None.
    """
    visited: set[str] = set()
    on_stack: set[str] = set()

    for start in deps:
        if start in visited:
            continue
        path: list[str] = [start]
        iters = [iter(deps[start])]
        visited.add(start)
        on_stack.add(start)

        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                on_stack.discard(path.pop())
                iters.pop()
                continue
            if nxt in on_stack:
                return path[path.index(nxt) :] + [nxt]
            if nxt not in visited:
                visited.add(nxt)
                on_stack.add(nxt)
                path.append(nxt)
                iters.append(iter(deps.get(nxt, [])))

    return None
