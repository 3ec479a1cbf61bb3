"""Policy-aware dependency resolver.

Conflict-driven backtracking over (package, version) decisions:

- the next undecided package (breadth-first from the roots) takes the newest
  catalog version inside the intersection of every constraint placed on it;
- committing a decision adds its dependency specs as constraints and checks
  them eagerly (empty band intersection, missing package, an already decided
  version falling outside the new band, a cycle through the new node);
- every conflict names the decisions that caused it; that set is learned as a
  nogood and the search jumps back to its most recent member;
- a conflict implicating no decision at all means the search is exhausted.

The resolver never touches the store and holds no locks; it reads one catalog
snapshot per call and can be abandoned at any point.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import Constants
from errors import (
    CyclicDependency,
    MissingDependency,
    PolicyConflict,
    ResolutionConflict,
    UnknownPackage,
)
from catalog.base import Catalog
from versioning.models import DependencySpec, Version
from versioning.policy import intersect_bands

from .churn import prefer_active_versions
from .graph import Conflict, ConflictKind, Constraint, Decision, ResolvedGraph, find_cycle

logger = logging.getLogger(__name__)


class _Nogood:
    """A learned clause: these decisions must not all hold at once."""

    __slots__ = ("members", "origins")

    def __init__(self, members: FrozenSet[Decision], origins: FrozenSet[Conflict]):
        self.members = members
        self.origins = origins


def _disjoint_pair(new: Constraint, others: Iterable[Constraint]) -> Optional[Constraint]:
    """Return a constraint whose band is disjoint from ``new``'s, if any.

    Bands are intervals, so a set of them has an empty intersection exactly
    when some pair does.
    """
    band = new.spec.band()
    for other in others:
        other_band = other.spec.band()
        if band is None or other_band is None or band.intersect(other_band) is None:
            return other
    return None


class _Search:
    """State of one resolution attempt."""

    def __init__(self, catalog: Catalog, roots: Sequence[DependencySpec], max_steps: Optional[int]):
        self.catalog = catalog
        self.roots = list(roots)
        self.max_steps = max_steps
        self.steps = 0
        self.decisions: List[Decision] = []
        self.assigned: Dict[str, Version] = {}
        self.level: Dict[str, int] = {}
        self.nogoods: Dict[Decision, List[_Nogood]] = {}
        self.learned = 0
        self._deps_cache: Dict[Decision, List[DependencySpec]] = {}

    # -- helpers ---------------------------------------------------------

    def deps(self, name: str, version: Version) -> List[DependencySpec]:
        key = (name, version)
        cached = self._deps_cache.get(key)
        if cached is None:
            cached = sorted(self.catalog.dependencies_of(name, version), key=lambda d: (d.name, str(d.policy)))
            self._deps_cache[key] = cached
        return cached

    def constraints_on(self, name: str) -> List[Constraint]:
        found = [Constraint(r) for r in self.roots if r.name == name]
        for requester in self.decisions:
            for spec in self.deps(*requester):
                if spec.name == name:
                    found.append(Constraint(spec, requester))
        return found

    def next_undecided(self) -> Optional[str]:
        seen: Set[str] = set()
        queue = deque(r.name for r in self.roots)
        while queue:
            name = queue.popleft()
            if name in seen:
                continue
            seen.add(name)
            version = self.assigned.get(name)
            if version is None:
                return name
            queue.extend(spec.name for spec in self.deps(name, version))
        return None

    def edges(self) -> Dict[str, List[str]]:
        return {n: [d.name for d in self.deps(n, v)] for n, v in self.assigned.items()}

    def blocking_nogood(self, name: str, version: Version) -> Optional[_Nogood]:
        for nogood in self.nogoods.get((name, version), ()):
            if all(self.assigned.get(n) == v for n, v in nogood.members if n != name):
                return nogood
        return None

    def learn(self, members: FrozenSet[Decision], origins: FrozenSet[Conflict]) -> None:
        nogood = _Nogood(members, origins)
        for member in members:
            self.nogoods.setdefault(member, []).append(nogood)
        self.learned += 1

    def assign(self, name: str, version: Version) -> None:
        self.level[name] = len(self.decisions)
        self.decisions.append((name, version))
        self.assigned[name] = version

    def undo_to(self, level: int) -> None:
        while len(self.decisions) > level:
            name, _ = self.decisions.pop()
            del self.assigned[name]
            del self.level[name]

    # -- search ----------------------------------------------------------

    def check_roots(self) -> None:
        by_name: Dict[str, List[Constraint]] = {}
        for root in self.roots:
            if not self.catalog.has(root.name):
                raise UnknownPackage(root.name)
            new = Constraint(root)
            clash = _disjoint_pair(new, by_name.get(root.name, []) + [new])
            if clash is not None:
                pair = (new,) if clash is new else (clash, new)
                conflict = Conflict(ConflictKind.POLICY, root.name, pair)
                raise PolicyConflict(
                    f"conflicting root policies on '{root.name}'", [conflict], package=root.name)
            by_name.setdefault(root.name, []).append(new)

    def check_commit(self, name: str, version: Version) -> Optional[Conflict]:
        """Validate the consequences of the decision just made."""
        me = (name, version)
        for spec in self.deps(name, version):
            new = Constraint(spec, me)
            if not self.catalog.has(spec.name):
                return Conflict(ConflictKind.MISSING, spec.name, (new,), frozenset({me}))
            others = [c for c in self.constraints_on(spec.name) if c != new]
            clash = _disjoint_pair(new, [new] + others)
            if clash is not None:
                pair = (new,) if clash is new else (clash, new)
                culprits = {me}
                if clash.requester is not None:
                    culprits.add(clash.requester)
                return Conflict(ConflictKind.POLICY, spec.name, pair, frozenset(culprits))
            chosen = self.assigned.get(spec.name)
            if chosen is not None and chosen not in spec.band():
                return Conflict(
                    ConflictKind.INCOMPATIBLE, spec.name, (new,),
                    frozenset({me, (spec.name, chosen)}), version=chosen)
        cycle = self.cycle_through(name)
        if cycle is not None:
            members = frozenset((n, self.assigned[n]) for n in cycle)
            return Conflict(ConflictKind.CYCLE, name, (), members, cycle=tuple(cycle))
        return None

    def cycle_through(self, start: str) -> Optional[List[str]]:
        """Find a cycle passing through ``start`` among decided packages."""
        edges = self.edges()
        stack = [(start, [start])]
        visited: Set[str] = set()
        while stack:
            node, path = stack.pop()
            for nxt in sorted(edges.get(node, ()), reverse=True):
                if nxt == start:
                    return path + [start]
                if nxt in self.assigned and nxt not in visited:
                    visited.add(nxt)
                    stack.append((nxt, path + [nxt]))
        return None

    def decide(self, name: str) -> Optional[Tuple[Conflict, FrozenSet[Conflict]]]:
        """Decide ``name``.

        Returns:
            None on success, else the conflict and the raw conflicts it derives from.
        """
        constraints = self.constraints_on(name)
        band = intersect_bands(c.spec.band() for c in constraints)
        culprits: Set[Decision] = {c.requester for c in constraints if c.requester is not None}
        if band is None:
            conflict = Conflict(ConflictKind.POLICY, name, tuple(constraints), frozenset(culprits))
            return conflict, frozenset({conflict})

        in_band = [v for v in self.catalog.versions_of(name) if v in band]
        if not in_band:
            conflict = Conflict(ConflictKind.UNSATISFIABLE, name, tuple(constraints), frozenset(culprits))
            return conflict, frozenset({conflict})

        blocked: List[_Nogood] = []
        for version in in_band:
            nogood = self.blocking_nogood(name, version)
            if nogood is not None:
                blocked.append(nogood)
                continue
            self.assign(name, version)
            conflict = self.check_commit(name, version)
            return None if conflict is None else (conflict, frozenset({conflict}))

        # every candidate is excluded by a learned nogood
        origins: Set[Conflict] = set()
        for nogood in blocked:
            culprits.update(m for m in nogood.members if m[0] != name)
            origins.update(nogood.origins)
        derived = Conflict(ConflictKind.UNSATISFIABLE, name, tuple(constraints), frozenset(culprits))
        return derived, frozenset(origins)

    def handle(self, conflict: Conflict, origins: FrozenSet[Conflict]) -> None:
        if is_debug_enabled(logger):
            logger.debug(
                "Resolution conflict",
                extra=extra_context(
                    event="resolve_conflict",
                    component="resolver",
                    action="backjump",
                    outcome=conflict.kind,
                    target=conflict.package,
                ),
            )
        if not conflict.culprits:
            raise _failure(origins)
        self.learn(conflict.culprits, origins)
        self.undo_to(max(self.level[n] for n, _ in conflict.culprits))

    def run(self) -> Dict[str, Version]:
        self.check_roots()
        while True:
            self.steps += 1
            if self.max_steps is not None and self.steps > self.max_steps:
                raise ResolutionConflict(
                    f"resolution gave up after {self.max_steps} steps", [],
                    steps=self.max_steps)
            name = self.next_undecided()
            if name is None:
                cycle = find_cycle(self.assigned, self.edges())
                if cycle is None:
                    return dict(self.assigned)
                members = frozenset((n, self.assigned[n]) for n in cycle)
                conflict = Conflict(ConflictKind.CYCLE, cycle[0], (), members, cycle=tuple(cycle))
                self.handle(conflict, frozenset({conflict}))
                continue
            outcome = self.decide(name)
            if outcome is not None:
                self.handle(*outcome)


def _failure(origins: FrozenSet[Conflict]) -> Exception:
    """Choose the error reported once the search space is exhausted."""
    conflicts = sorted(origins, key=lambda c: (c.kind, c.package, c.describe()))
    kinds = {c.kind for c in conflicts}
    first = conflicts[0] if conflicts else None
    package = first.package if first is not None else None
    if kinds == {ConflictKind.POLICY}:
        return PolicyConflict(f"incompatible policies on '{package}'", conflicts, package=package)
    if kinds == {ConflictKind.CYCLE}:
        return CyclicDependency(
            "every candidate assignment contains a dependency cycle", conflicts,
            package=package, cycle=first.cycle if first is not None else None)
    if kinds == {ConflictKind.MISSING}:
        return MissingDependency(
            f"dependency '{package}' is not in the catalog", conflicts, package=package,
            required_by=sorted({f"{c.requester[0]}@{c.requester[1]}" for f in conflicts
                                for c in f.constraints if c.requester is not None}))
    return ResolutionConflict("no assignment satisfies all constraints", conflicts, package=package)


class Resolver:
    """Compute a consistent version assignment for a set of root specs."""

    def __init__(self, catalog: Catalog, *, prefer_active_transitive: bool = False,
                 max_steps: Optional[int] = Constants.DEFAULT_MAX_RESOLUTION_STEPS):
        """Initialize the resolver.

        Args:
            catalog: Catalog provider; a snapshot is taken per resolution.
            prefer_active_transitive: Hold transitive packages at the
                consumer's active version when it stays valid in the finished
                graph, instead of rolling them forward.
            max_steps: Search step budget (None for unbounded).
        """
        self.catalog = catalog
        self.prefer_active_transitive = prefer_active_transitive
        self.max_steps = max_steps

    def resolve(self, roots: Sequence[DependencySpec],
                current: Optional[Mapping[str, Version]] = None) -> ResolvedGraph:
        """Resolve ``roots`` against a catalog snapshot.

        Args:
            roots: Root dependency specs (already validated at the boundary).
            current: The consumer's currently active versions, used only when
                ``prefer_active_transitive`` is set.

        Returns:
            ResolvedGraph: Acyclic graph satisfying every constraint.

        Raises:
            UnknownPackage, PolicyConflict, MissingDependency, CyclicDependency,
            ResolutionConflict
        """
        snapshot = self.catalog.snapshot()
        search = _Search(snapshot, roots, self.max_steps)
        with Timer() as t:
            versions = search.run()
            graph = ResolvedGraph.build(roots, versions, snapshot)
            if self.prefer_active_transitive and current:
                graph = prefer_active_versions(graph, current, snapshot)

        cycle = graph.find_cycle()
        if cycle is not None:
            # the hold pass swaps versions after the search; recheck structurally
            raise CyclicDependency("resolved graph contains a cycle", [], cycle=cycle)

        logger.info("%s Resolved %d packages in %d steps (%d nogoods learned)",
                    Constants.RESOLVE, len(graph), search.steps, search.learned)
        if is_debug_enabled(logger):
            logger.debug(
                "Resolution finished",
                extra=extra_context(
                    event="resolve_done",
                    component="resolver",
                    action="resolve",
                    outcome="success",
                    duration_ms=t.duration_ms(),
                ),
            )
        return graph
