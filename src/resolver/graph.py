"""Resolution results: constraints, conflicts and the resolved dependency graph."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from catalog.base import Catalog
from versioning.models import DependencySpec, Version

# (package, version) decision pair
Decision = Tuple[str, Version]


class ConflictKind:  # pylint: disable=too-few-public-methods
    """Kinds of raw conflicts found during search."""

    POLICY = "policy"
    MISSING = "missing"
    CYCLE = "cycle"
    INCOMPATIBLE = "incompatible"
    UNSATISFIABLE = "unsatisfiable"


@dataclass(frozen=True)
class Constraint:
    """A dependency spec together with whoever requested it (None for a root)."""

    spec: DependencySpec
    requester: Optional[Decision] = None

    def describe(self) -> str:
        who = "root" if self.requester is None else f"{self.requester[0]}@{self.requester[1]}"
        return f"{who} requires {self.spec}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requester": None if self.requester is None else {
                "name": self.requester[0], "version": str(self.requester[1])},
            "spec": self.spec.to_dict(),
        }


@dataclass(frozen=True)
class Conflict:
    """A minimal set of facts that cannot hold together.

    ``culprits`` are the decisions implicated; ``constraints`` the policies
    involved; ``cycle`` the package path for cycle conflicts.
    """

    kind: str
    package: str
    constraints: Tuple[Constraint, ...] = ()
    culprits: FrozenSet[Decision] = field(default_factory=frozenset)
    cycle: Tuple[str, ...] = ()
    version: Optional[Version] = None

    def describe(self) -> str:
        if self.kind == ConflictKind.CYCLE:
            return "dependency cycle " + " -> ".join(self.cycle)
        if self.kind == ConflictKind.MISSING:
            who = ", ".join(c.describe() for c in self.constraints)
            return f"'{self.package}' is not in the catalog ({who})"
        if self.kind == ConflictKind.INCOMPATIBLE:
            who = ", ".join(c.describe() for c in self.constraints)
            return f"{self.package}@{self.version} does not satisfy: {who}"
        if self.kind == ConflictKind.UNSATISFIABLE:
            who = "; ".join(c.describe() for c in self.constraints)
            return f"no version of '{self.package}' satisfies: {who}"
        who = " vs ".join(c.describe() for c in self.constraints)
        return f"incompatible policies on '{self.package}': {who}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "package": self.package,
            "version": None if self.version is None else str(self.version),
            "constraints": [c.to_dict() for c in self.constraints],
            "decisions": [{"name": n, "version": str(v)} for n, v in sorted(self.culprits)],
            "cycle": list(self.cycle),
        }


def find_cycle(versions: Mapping[str, Version], edges: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
    """Return one cycle as ``[a, b, ..., a]`` or None if the graph is acyclic."""
    white, grey, black = 0, 1, 2
    color = {name: white for name in versions}
    for start in sorted(versions):
        if color[start] != white:
            continue
        path: List[str] = [start]
        stack = [iter(sorted(n for n in edges.get(start, ()) if n in versions))]
        color[start] = grey
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = black
                stack.pop()
                continue
            if color[nxt] == grey:
                return path[path.index(nxt):] + [nxt]
            if color[nxt] == white:
                color[nxt] = grey
                path.append(nxt)
                stack.append(iter(sorted(n for n in edges.get(nxt, ()) if n in versions)))
    return None


@dataclass(frozen=True)
class ResolvedGraph:
    """One chosen version per package plus the dependency edges between them."""

    roots: Tuple[DependencySpec, ...]
    versions: Mapping[str, Version]
    edges: Mapping[str, Tuple[DependencySpec, ...]]
    digests: Mapping[str, Optional[str]]

    @classmethod
    def build(cls, roots: Sequence[DependencySpec], versions: Mapping[str, Version],
              catalog: Catalog) -> "ResolvedGraph":
        """Build the graph of packages reachable from ``roots``.

        Args:
            roots: Root dependency specs.
            versions: Chosen version per package (may contain unreachable names).
            catalog: Catalog used to read edges and digests.
        """
        reachable: Dict[str, Version] = {}
        edges: Dict[str, Tuple[DependencySpec, ...]] = {}
        digests: Dict[str, Optional[str]] = {}
        queue = [r.name for r in roots]
        while queue:
            name = queue.pop(0)
            if name in reachable:
                continue
            version = versions[name]
            entry = catalog.entry(name, version)
            reachable[name] = version
            deps = tuple(sorted(entry.dependencies, key=lambda d: (d.name, str(d.policy))))
            edges[name] = deps
            digests[name] = entry.digest
            queue.extend(d.name for d in deps)
        return cls(
            roots=tuple(roots),
            versions=MappingProxyType(reachable),
            edges=MappingProxyType(edges),
            digests=MappingProxyType(digests),
        )

    def __len__(self) -> int:
        return len(self.versions)

    def __contains__(self, name: object) -> bool:
        return name in self.versions

    def version_of(self, name: str) -> Version:
        return self.versions[name]

    def dependencies_of(self, name: str) -> Dict[str, Version]:
        """Chosen versions of the direct dependencies of ``name``."""
        return {spec.name: self.versions[spec.name] for spec in self.edges.get(name, ())}

    def edge_list(self) -> List[Tuple[Decision, Decision]]:
        """Edges as ((package, version), (dependency, version)) pairs."""
        out = []
        for name in sorted(self.edges):
            for spec in self.edges[name]:
                out.append(((name, self.versions[name]), (spec.name, self.versions[spec.name])))
        return out

    def constraints_on(self, name: str) -> List[Constraint]:
        """Every constraint the graph places on ``name``."""
        found = [Constraint(r) for r in self.roots if r.name == name]
        for requester in sorted(self.edges):
            for spec in self.edges[requester]:
                if spec.name == name:
                    found.append(Constraint(spec, (requester, self.versions[requester])))
        return found

    def find_cycle(self) -> Optional[List[str]]:
        return find_cycle(self.versions, {n: [d.name for d in deps] for n, deps in self.edges.items()})

    def is_acyclic(self) -> bool:
        return self.find_cycle() is None

    def topological_order(self) -> List[str]:
        """Package names ordered so that dependencies come before dependents.

        Raises:
            ValueError: If the graph contains a cycle.
        """
        remaining = {name: {d.name for d in self.edges.get(name, ())} for name in self.versions}
        order: List[str] = []
        while remaining:
            ready = sorted(name for name, deps in remaining.items() if not deps)
            if not ready:
                raise ValueError(f"graph contains a cycle: {self.find_cycle()}")
            for name in ready:
                order.append(name)
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def with_digests(self, digests: Mapping[str, Optional[str]]) -> "ResolvedGraph":
        """Copy of the graph with some digests replaced."""
        merged = dict(self.digests)
        merged.update({k: v for k, v in digests.items() if k in self.versions})
        return replace(self, digests=MappingProxyType(merged))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roots": [r.to_dict() for r in self.roots],
            "packages": {
                name: {
                    "version": str(self.versions[name]),
                    "digest": self.digests.get(name),
                    "dependencies": {d.name: str(self.versions[d.name]) for d in self.edges.get(name, ())},
                }
                for name in sorted(self.versions)
            },
        }
