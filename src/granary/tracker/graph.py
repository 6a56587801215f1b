"""Dependency graph engine over stable entity identifiers.

Edges are kept as adjacency sets keyed by id (``subject -> targets`` it
depends on); the reverse index answers "who depends on me". Nodes never hold
references to each other, so the graph is trivially serialisable and cycle
checks are plain reachability searches.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from granary.tracker.errors import CycleError, SelfDependencyError


class DependencyGraph:
    """Directed acyclic graph of ``subject depends on target`` edges."""

    def __init__(self, edges: Iterable[tuple[str, str]] = ()) -> None:
        self._depends_on: dict[str, set[str]] = defaultdict(set)
        self._dependents: dict[str, set[str]] = defaultdict(set)
        for subject, target in edges:
            self._link(subject, target)

    def dependencies(self, subject: str) -> set[str]:
        return set(self._depends_on.get(subject, ()))

    def dependents(self, target: str) -> set[str]:
        return set(self._dependents.get(target, ()))

    def has_edge(self, subject: str, target: str) -> bool:
        return target in self._depends_on.get(subject, ())

    def reaches(self, start: str, goal: str) -> bool:
        """Return True if ``goal`` is reachable from ``start`` along dependency edges."""

        if start == goal:
            return True
        stack = [start]
        seen = {start}
        while stack:
            node = stack.pop()
            for nxt in self._depends_on.get(node, ()):
                if nxt == goal:
                    return True
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        return False

    def check_edge(self, subject: str, target: str) -> None:
        """Raise if adding ``subject -> target`` would break the DAG."""

        if subject == target:
            raise SelfDependencyError(f"{subject} cannot depend on itself")
        # The new edge closes a cycle iff subject is already reachable from target.
        if self.reaches(target, subject):
            raise CycleError(f"Dependency {subject} -> {target} would create a cycle")

    def add_edge(self, subject: str, target: str) -> bool:
        """Add an edge after validating it; return False if it already existed."""

        if self.has_edge(subject, target):
            return False
        self.check_edge(subject, target)
        self._link(subject, target)
        return True

    def remove_edge(self, subject: str, target: str) -> bool:
        if not self.has_edge(subject, target):
            return False
        self._depends_on[subject].discard(target)
        self._dependents[target].discard(subject)
        return True

    def _link(self, subject: str, target: str) -> None:
        self._depends_on[subject].add(target)
        self._dependents[target].add(subject)
