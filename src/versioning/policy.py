"""Pure predicates over versions and update policies."""

from __future__ import annotations

from typing import Iterable, Optional, Union

from .models import ChangeKind, DependencySpec, UpdatePolicy, Version, VersionBand

PolicyLike = Union[UpdatePolicy, DependencySpec]


def band_of(policy: PolicyLike) -> Optional[VersionBand]:
    """Band allowed by a policy or a dependency spec (None when empty)."""
    return policy.band()


def satisfies(version: Version, policy: PolicyLike) -> bool:
    """Return True if ``version`` lies inside the band allowed by ``policy``.

    Args:
        version: Candidate version.
        policy: An UpdatePolicy or a DependencySpec (whose extra minimum applies).

    Returns:
        bool: True when allowed.
    """
    band = band_of(policy)
    return band is not None and version in band


def compatible_upgrade(from_version: Version, to_version: Version, policy: PolicyLike) -> bool:
    """Return True if moving between the two versions stays inside ``policy``'s band."""
    return satisfies(from_version, policy) and satisfies(to_version, policy)


def intersect_bands(bands: Iterable[Optional[VersionBand]]) -> Optional[VersionBand]:
    """Intersect bands; None if any band is empty or the intersection is empty.

    An empty iterable yields the unbounded band from 0.0.0.
    """
    result: Optional[VersionBand] = VersionBand(Version(0, 0, 0), None)
    for band in bands:
        if band is None or result is None:
            return None
        result = result.intersect(band)
    return result


def classify_change(from_version: Optional[Version], to_version: Optional[Version]) -> ChangeKind:
    """Classify a change of active version for reporting and history."""
    if from_version is None and to_version is None:
        return ChangeKind.UNCHANGED
    if from_version is None:
        return ChangeKind.INSTALL
    if to_version is None:
        return ChangeKind.REMOVE
    if to_version == from_version:
        return ChangeKind.UNCHANGED
    if to_version < from_version:
        return ChangeKind.DOWNGRADE
    if to_version.major != from_version.major:
        return ChangeKind.MAJOR_UPDATE
    if to_version.minor != from_version.minor:
        return ChangeKind.MINOR_UPDATE
    return ChangeKind.PATCH_UPDATE
