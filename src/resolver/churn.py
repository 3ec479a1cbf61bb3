"""Opt-in pass holding transitive packages at their currently active versions.

The search always picks the newest version a policy allows, and ties between
entries of the same version are settled by the store, which prefers the digest
a consumer already uses. This pass goes further when a caller asks for it
(``Settings.prefer_active_transitive``): a package reached only through other
packages keeps the consumer's active version, even an older one, when swapping
it into the finished graph keeps every constraint satisfied, needs no package
outside the graph and introduces no cycle. Roots are never held. The pass
compares the finished graph against the active state; it does not search again.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping

from catalog.base import Catalog
from errors import UnknownPackage
from versioning.models import Version
from versioning.policy import satisfies

from .graph import ResolvedGraph, find_cycle

logger = logging.getLogger(__name__)


def _constraints_hold(name: str, candidate: Version, versions: Mapping[str, Version], catalog: Catalog) -> bool:
    for requester, version in versions.items():
        if requester == name:
            continue
        for spec in catalog.dependencies_of(requester, version):
            if spec.name == name and not satisfies(candidate, spec):
                return False
    return True


def _own_dependencies_hold(name: str, candidate: Version, versions: Mapping[str, Version], catalog: Catalog) -> bool:
    for spec in catalog.dependencies_of(name, candidate):
        chosen = versions.get(spec.name)
        if spec.name == name or chosen is None or not satisfies(chosen, spec):
            return False
    return True


def prefer_active_versions(graph: ResolvedGraph, current: Mapping[str, Version], catalog: Catalog) -> ResolvedGraph:
    """Return ``graph`` with transitive packages held at still-valid active versions.

    Args:
        graph: Graph produced by the search.
        current: The consumer's active versions.
        catalog: The snapshot the graph was resolved against.
    """
    root_names = {r.name for r in graph.roots}
    versions: Dict[str, Version] = dict(graph.versions)
    kept: List[str] = []

    for name in graph.topological_order():
        active = current.get(name)
        if name in root_names or active is None or active == versions.get(name):
            continue
        try:
            catalog.entry(name, active)
        except UnknownPackage:
            continue
        if not _constraints_hold(name, active, versions, catalog):
            continue
        if not _own_dependencies_hold(name, active, versions, catalog):
            continue
        trial = dict(versions)
        trial[name] = active
        edges = {n: [d.name for d in catalog.dependencies_of(n, v)] for n, v in trial.items()}
        if find_cycle(trial, edges) is not None:
            continue
        versions = trial
        kept.append(name)

    if not kept:
        return graph
    logger.debug("Kept active versions for %s", ", ".join(f"{n}@{versions[n]}" for n in kept))
    return ResolvedGraph.build(graph.roots, versions, catalog)
