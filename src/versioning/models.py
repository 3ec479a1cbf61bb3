"""Data models for versions, update policies and dependency specs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import semantic_version

from errors import PolicyValidationError


def _check_component(label: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PolicyValidationError(f"{label} must be an integer, got {value!r}")
    if value < 0:
        raise PolicyValidationError(f"{label} must be non-negative, got {value}")
    return value


@dataclass(frozen=True, order=True)
class Version:
    """Semantic version triple ordered lexicographically on (major, minor, patch)."""

    major: int
    minor: int = 0
    patch: int = 0

    def __post_init__(self) -> None:
        _check_component("major", self.major)
        _check_component("minor", self.minor)
        _check_component("patch", self.patch)

    @classmethod
    def parse(cls, text: str) -> "Version":
        """Parse "MAJOR.MINOR.PATCH".

        Pre-release and build metadata are rejected; the store and resolver only
        deal in release triples.

        Raises:
            PolicyValidationError: If ``text`` is not a plain release version.
        """
        try:
            parsed = semantic_version.Version(str(text).strip())
        except ValueError as e:
            raise PolicyValidationError(f"invalid version '{text}': {e}") from e
        if parsed.prerelease or parsed.build:
            raise PolicyValidationError(f"pre-release/build versions are not supported: '{text}'")
        return cls(parsed.major, parsed.minor, parsed.patch)

    def next_patch(self) -> "Version":
        return Version(self.major, self.minor, self.patch + 1)

    def next_minor(self) -> "Version":
        return Version(self.major, self.minor + 1, 0)

    def next_major(self) -> "Version":
        return Version(self.major + 1, 0, 0)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class VersionBand:
    """Half-open interval ``[lower, upper)``; ``upper=None`` means unbounded."""

    lower: Version
    upper: Optional[Version] = None

    def __contains__(self, version: Version) -> bool:
        if version < self.lower:
            return False
        return self.upper is None or version < self.upper

    def is_empty(self) -> bool:
        return self.upper is not None and self.lower >= self.upper

    def intersect(self, other: "VersionBand") -> Optional["VersionBand"]:
        """Intersection of two bands, or None when it is empty."""
        lower = max(self.lower, other.lower)
        if self.upper is None:
            upper = other.upper
        elif other.upper is None:
            upper = self.upper
        else:
            upper = min(self.upper, other.upper)
        band = VersionBand(lower, upper)
        return None if band.is_empty() else band

    def __str__(self) -> str:
        upper = "inf" if self.upper is None else str(self.upper)
        return f"[{self.lower}, {upper})"


class UpdatePolicy:
    """Base class of the four update policy variants."""

    kind = "policy"

    def band(self) -> VersionBand:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class Fixed(UpdatePolicy):
    """Exactly one version."""

    major: int
    minor: int
    patch: int
    kind = "fixed"

    def __post_init__(self) -> None:
        Version(self.major, self.minor, self.patch)

    @property
    def version(self) -> Version:
        return Version(self.major, self.minor, self.patch)

    def band(self) -> VersionBand:
        return VersionBand(self.version, self.version.next_patch())

    def to_dict(self) -> Dict[str, Any]:
        return {"rolling": self.kind, "major": self.major, "minor": self.minor, "patch": self.patch}

    def __str__(self) -> str:
        return f"={self.version}"


@dataclass(frozen=True)
class RollingPatch(UpdatePolicy):
    """Any patch within ``major.minor``."""

    major: int
    minor: int
    kind = "patch"

    def __post_init__(self) -> None:
        Version(self.major, self.minor, 0)

    def band(self) -> VersionBand:
        lower = Version(self.major, self.minor, 0)
        return VersionBand(lower, lower.next_minor())

    def to_dict(self) -> Dict[str, Any]:
        return {"rolling": self.kind, "major": self.major, "minor": self.minor}

    def __str__(self) -> str:
        return f"~{self.major}.{self.minor}"


@dataclass(frozen=True)
class RollingMinor(UpdatePolicy):
    """Any minor.patch within ``major``."""

    major: int
    kind = "minor"

    def __post_init__(self) -> None:
        Version(self.major, 0, 0)

    def band(self) -> VersionBand:
        lower = Version(self.major, 0, 0)
        return VersionBand(lower, lower.next_major())

    def to_dict(self) -> Dict[str, Any]:
        return {"rolling": self.kind, "major": self.major}

    def __str__(self) -> str:
        return f"^{self.major}"


@dataclass(frozen=True)
class RollingMajor(UpdatePolicy):
    """Any version at or above ``min_major``.0.0."""

    min_major: int
    kind = "major"

    def __post_init__(self) -> None:
        Version(self.min_major, 0, 0)

    def band(self) -> VersionBand:
        return VersionBand(Version(self.min_major, 0, 0), None)

    def to_dict(self) -> Dict[str, Any]:
        return {"rolling": self.kind, "major": self.min_major}

    def __str__(self) -> str:
        return f">={self.min_major}"


@dataclass(frozen=True)
class DependencySpec:
    """A named dependency under an update policy.

    ``minimum`` is an optional extra lower bound (e.g. a minimum patch) applied
    on top of the policy band.
    """

    name: str
    policy: UpdatePolicy
    minimum: Optional[Version] = field(default=None)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise PolicyValidationError(f"package name must be a non-empty string, got {self.name!r}")
        if not isinstance(self.policy, UpdatePolicy):
            raise PolicyValidationError(f"{self.name}: policy must be an UpdatePolicy, got {self.policy!r}")

    def band(self) -> Optional[VersionBand]:
        """Policy band narrowed by ``minimum``; None if the two are disjoint."""
        band = self.policy.band()
        if self.minimum is None:
            return band
        return band.intersect(VersionBand(self.minimum, None))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "policy": self.policy.to_dict()}
        if self.minimum is not None:
            out["minimum"] = str(self.minimum)
        return out

    def __str__(self) -> str:
        text = f"{self.name} {self.policy}"
        if self.minimum is not None:
            text += f" (>={self.minimum})"
        return text


class ChangeKind(Enum):
    """Classification of a change in a consumer's active version."""
    INSTALL = "install"
    REMOVE = "remove"
    UNCHANGED = "unchanged"
    PATCH_UPDATE = "patch_update"
    MINOR_UPDATE = "minor_update"
    MAJOR_UPDATE = "major_update"
    DOWNGRADE = "downgrade"
